from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any

from aiokafka import AIOKafkaProducer

logger = logging.getLogger(__name__)


VALUATION_RESULTS_TOPIC = "valuation_results"
REFRESH_EVENTS_TOPIC = "refresh_events"
MARKET_SHIFT_ALERTS_TOPIC = "market_shift_alerts"


class KafkaBus:
    """Event publisher; events queue in process while the broker is unreachable.

    Each topic buffers at most ``max_buffered`` events, dropping the oldest
    once full. Buffered events are flushed when a later ``connect`` succeeds.
    """

    def __init__(self, bootstrap_servers: str, client_id: str, max_buffered: int = 1000) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.max_buffered = max(1, max_buffered)
        self._producer: AIOKafkaProducer | None = None
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = defaultdict(
            lambda: asyncio.Queue(maxsize=self.max_buffered)
        )
        self.dropped = 0

    async def connect(self) -> None:
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=1.0)
            self._producer = producer
        except Exception:
            logger.warning("Kafka unreachable at %s, buffering events in process", self.bootstrap_servers)
            self._producer = None
            try:
                await producer.stop()
            except Exception:
                logger.debug("Producer cleanup after failed start raised", exc_info=True)
            return
        await self._flush_buffered()

    async def _flush_buffered(self) -> None:
        for topic in list(self._queues):
            events = self.drain(topic)
            if events:
                logger.info("Flushing %d buffered events to %s", len(events), topic)
            for event in events:
                await self.publish(topic, event)

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()

    async def ping(self) -> bool:
        if self._producer is None:
            return False
        try:
            partitions = await self._producer.partitions_for(VALUATION_RESULTS_TOPIC)
            return partitions is not None
        except Exception:
            return False

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> None:
        if self._producer is not None:
            try:
                encoded_key = None if key is None else key.encode("utf-8")
                await self._producer.send_and_wait(topic, value=value, key=encoded_key)
                return
            except Exception:
                logger.warning("Kafka publish to %s failed, buffering", topic)
        self._buffer(topic, value)

    def _buffer(self, topic: str, value: dict[str, Any]) -> None:
        queue = self._queues[topic]
        if queue.full():
            queue.get_nowait()
            self.dropped += 1
            logger.warning("Event buffer for %s full, dropped oldest event", topic)
        queue.put_nowait(value)

    def status(self) -> dict[str, Any]:
        return {
            "connected": self._producer is not None,
            "buffered": {topic: queue.qsize() for topic, queue in self._queues.items()},
            "dropped": self.dropped,
        }

    def drain(self, topic: str) -> list[dict[str, Any]]:
        queue = self._queues[topic]
        events: list[dict[str, Any]] = []
        while not queue.empty():
            events.append(queue.get_nowait())
        return events
