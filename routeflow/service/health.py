from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from routeflow.logging import get_logger
from routeflow.service.catalog import LatencyClass, ModelDescriptor

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass
class HealthRecord:
    model_id: str
    status: HealthStatus
    latency_ms: float
    error_rate: float
    last_checked: float
    availability: float

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def is_stale(self, now: float, stale_seconds: float) -> bool:
        return now - self.last_checked >= stale_seconds

    def to_dict(self) -> dict:
        return {
            "model_id": self.model_id,
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "error_rate": self.error_rate,
            "last_checked": self.last_checked,
            "availability": self.availability,
        }


HealthProbe = Callable[[ModelDescriptor], Awaitable[HealthRecord]]

_LATENCY_ESTIMATE_MS = {
    LatencyClass.LOW: 400.0,
    LatencyClass.MEDIUM: 1500.0,
    LatencyClass.HIGH: 6000.0,
}


async def catalog_probe(model: ModelDescriptor) -> HealthRecord:
    """Deterministic probe derived from the catalog entry itself.

    Used when no live probe is configured: an available entry is healthy with
    a latency estimate for its class; an unavailable entry is reported down.
    """
    if model.available:
        return HealthRecord(
            model_id=model.id,
            status=HealthStatus.HEALTHY,
            latency_ms=_LATENCY_ESTIMATE_MS[model.latency],
            error_rate=0.0,
            last_checked=time.time(),
            availability=1.0,
        )
    return HealthRecord(
        model_id=model.id,
        status=HealthStatus.UNAVAILABLE,
        latency_ms=0.0,
        error_rate=1.0,
        last_checked=time.time(),
        availability=0.0,
    )


class HealthMonitor:
    """Lazily refreshed health cache in front of an injected probe.

    A record is reused until it is older than ``stale_seconds``; the next
    ``check`` then probes again and overwrites it. Records are never deleted.
    """

    def __init__(
        self,
        probe: HealthProbe = catalog_probe,
        *,
        stale_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._probe = probe
        self.stale_seconds = stale_seconds
        self._clock = clock
        self._records: Dict[str, HealthRecord] = {}
        self._guard = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self.probe_count = 0

    def _lock_for(self, model_id: str) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get(model_id)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[model_id] = lock
            return lock

    def peek(self, model_id: str) -> Optional[HealthRecord]:
        with self._lock_for(model_id):
            return self._records.get(model_id)

    def records(self) -> List[HealthRecord]:
        with self._guard:
            model_ids = list(self._records)
        return [record for record in (self.peek(mid) for mid in model_ids) if record]

    async def check(self, model: ModelDescriptor) -> HealthRecord:
        now = self._clock()
        cached = self.peek(model.id)
        if cached is not None and not cached.is_stale(now, self.stale_seconds):
            return cached

        self.probe_count += 1
        try:
            record = await self._probe(model)
        except Exception as exc:
            logger.warning("health_probe_failed", model_id=model.id, error=str(exc))
            record = HealthRecord(
                model_id=model.id,
                status=HealthStatus.DEGRADED,
                latency_ms=0.0,
                error_rate=1.0,
                last_checked=now,
                availability=0.0,
            )
        else:
            # Stamp with the monitor's clock so staleness is judged consistently
            record = replace(record, model_id=model.id, last_checked=now)

        with self._lock_for(model.id):
            previous = self._records.get(model.id)
            self._records[model.id] = record
        if previous is not None and previous.status != record.status:
            logger.info(
                "model_health_changed",
                model_id=model.id,
                previous=previous.status.value,
                current=record.status.value,
            )
        return record

    async def check_all(self, models: Iterable[ModelDescriptor]) -> List[HealthRecord]:
        return [await self.check(model) for model in models]
