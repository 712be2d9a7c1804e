from __future__ import annotations

from typing import Protocol

from valuation.data_models import PLAN_DEFINITIONS, PlanLimits


class PlanProvider(Protocol):
    async def get_limits(self, user_id: str) -> PlanLimits: ...


class StaticPlanProvider:
    """In-process plan lookup; users without an assignment are on the free plan."""

    def __init__(self, assignments: dict[str, str] | None = None, default_plan: str = "free") -> None:
        self._assignments = dict(assignments or {})
        self.default_plan = default_plan

    async def get_limits(self, user_id: str) -> PlanLimits:
        return PLAN_DEFINITIONS[self._assignments.get(user_id, self.default_plan)]

    def set_plan(self, user_id: str, plan_type: str) -> PlanLimits:
        if plan_type not in PLAN_DEFINITIONS:
            raise ValueError(f"unknown plan {plan_type!r}")
        self._assignments[user_id] = plan_type
        return PLAN_DEFINITIONS[plan_type]
