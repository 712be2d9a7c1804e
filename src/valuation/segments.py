from __future__ import annotations

import re

from valuation.data_models import Segment, VehicleDescriptor


# Checked in order; first segment with a matching keyword wins.
SEGMENT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "exotic": (
        "ferrari", "lamborghini", "mclaren", "bentley", "rolls-royce", "aston martin",
        "bugatti", "maserati", "lotus",
    ),
    "ev": (
        "tesla", "model 3", "model y", "model s", "model x", "bolt", "leaf", "ioniq 5", "ioniq 6",
        "ev6", "ev9", "id.4", "mach-e", "rivian", "lucid", "polestar", "taycan", "e-tron",
        "bz4x", "ariya", "lyriq",
    ),
    "truck": (
        "f-150", "f150", "f-250", "silverado", "sierra", "ram", "tundra", "tacoma", "colorado",
        "ranger", "frontier", "titan", "gladiator", "ridgeline", "maverick",
    ),
    "suv": (
        "explorer", "tahoe", "suburban", "expedition", "highlander", "4runner", "pilot",
        "pathfinder", "armada", "sequoia", "telluride", "palisade", "grand cherokee", "wrangler",
        "bronco", "durango", "traverse", "yukon",
    ),
    "sports": (
        "mustang", "camaro", "corvette", "challenger", "charger", "911", "cayman", "boxster",
        "supra", "z", "370z", "brz", "gr86", "miata", "mx-5", "wrx", "sti", "type r", "gti",
        "golf r", "convertible", "roadster", "spyder", "cabriolet",
    ),
    "luxury": (
        "mercedes", "mercedes-benz", "bmw", "audi", "lexus", "porsche", "jaguar", "land rover",
        "range rover", "cadillac",
    ),
    "premium": (
        "acura", "infiniti", "genesis", "lincoln", "volvo", "buick", "alfa romeo", "mini",
    ),
    "economy": (
        "mirage", "versa", "spark", "rio", "accent", "yaris", "fit", "forte", "elantra",
        "sentra", "trax", "kicks",
    ),
}

KNOWN_MAKES: frozenset[str] = frozenset({
    "acura", "alfa romeo", "amc", "aston martin", "audi", "bentley", "bmw", "bugatti", "buick",
    "cadillac", "chevrolet", "chrysler", "daewoo", "dodge", "eagle", "ferrari", "fiat", "fisker",
    "ford", "genesis", "geo", "gmc", "honda", "hummer", "hyundai", "infiniti", "ineos", "isuzu",
    "jaguar", "jeep", "karma", "kia", "lamborghini", "land rover", "lexus", "lincoln", "lotus",
    "lucid", "maserati", "maybach", "mazda", "mclaren", "mercedes-benz", "mercedes", "mercury",
    "mini", "mitsubishi", "nissan", "oldsmobile", "plymouth", "polestar", "pontiac", "porsche",
    "ram", "rivian", "rolls-royce", "saab", "saturn", "scion", "smart", "subaru", "suzuki",
    "tesla", "toyota", "vinfast", "volkswagen", "volvo", "yugo",
})

_PATTERNS: dict[str, re.Pattern[str]] = {
    segment: re.compile(
        "|".join(rf"(?<![a-z0-9]){re.escape(kw)}(?![a-z0-9])" for kw in keywords)
    )
    for segment, keywords in SEGMENT_KEYWORDS.items()
}


def is_known_make(make: str) -> bool:
    return " ".join(make.lower().split()) in KNOWN_MAKES


def classify_segment(make: str, model: str, fuel_type: str | None = None) -> Segment:
    if (fuel_type or "").lower() == "electric":
        return "ev"
    search = f"{make} {model}".lower()
    for segment, pattern in _PATTERNS.items():
        if pattern.search(search):
            return segment  # type: ignore[return-value]
    return "mainstream"


def classify(descriptor: VehicleDescriptor) -> Segment:
    return classify_segment(descriptor.make, descriptor.model, descriptor.fuel_type)
