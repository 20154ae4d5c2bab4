"""Quota oracles: how many capacity units are free, and asking for more."""

from __future__ import annotations

import logging
import math
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol
from uuid import uuid4

from burstpool.clock import utc_now
from burstpool.config import QuotaSettings
from burstpool.errors import BurstpoolError

logger = logging.getLogger(__name__)

STANDARD_QUOTA_STEPS = (100, 200, 500, 1_000, 2_000, 5_000, 10_000)
QUOTA_BUFFER_RATIO = 1.25


class QuotaOracle(Protocol):
    """Reports free capacity per resource class and files increase requests."""

    def available(self, resource_class: str) -> int: ...

    def request_increase(self, resource_class: str, desired_value: int) -> str | None: ...


@dataclass(slots=True, frozen=True)
class QuotaRequest:
    request_id: str
    resource_class: str
    desired_value: int
    requested_at: datetime


@dataclass(slots=True, frozen=True)
class QuotaInfo:
    resource_class: str
    limit: int
    used: int
    available: int
    pending_requests: tuple[QuotaRequest, ...] = ()

    @property
    def increase_pending(self) -> bool:
        return bool(self.pending_requests)


def suggest_quota(units_needed: int) -> int:
    """Smallest standard step covering ``units_needed`` plus a 25% buffer."""

    needed_with_buffer = units_needed * QUOTA_BUFFER_RATIO
    for step in STANDARD_QUOTA_STEPS:
        if step >= needed_with_buffer:
            return step
    return math.ceil(needed_with_buffer / 1_000) * 1_000


@dataclass(slots=True)
class StaticQuotaOracle:
    """Configured limits minus tracked usage; increase requests stay pending until approved."""

    limits: dict[str, int]
    usage: dict[str, int] = field(default_factory=dict)
    requests: list[QuotaRequest] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def available(self, resource_class: str) -> int:
        return self.describe(resource_class).available

    def describe(self, resource_class: str) -> QuotaInfo:
        with self._lock:
            limit = self.limits.get(resource_class, 0)
            used = self.usage.get(resource_class, 0)
            pending = tuple(
                request for request in self.requests if request.resource_class == resource_class
            )
        return QuotaInfo(
            resource_class=resource_class,
            limit=limit,
            used=used,
            available=max(0, limit - used),
            pending_requests=pending,
        )

    def request_increase(self, resource_class: str, desired_value: int) -> str | None:
        info = self.describe(resource_class)
        if desired_value <= info.limit:
            logger.info(
                "Quota for %s (%d) already covers requested %d",
                resource_class,
                info.limit,
                desired_value,
            )
            return None
        if info.increase_pending:
            existing = info.pending_requests[0]
            logger.warning(
                "Quota increase for %s already pending: %s (%d)",
                resource_class,
                existing.request_id,
                existing.desired_value,
            )
            return existing.request_id
        request = QuotaRequest(
            request_id=f"quota-{uuid4().hex[:12]}",
            resource_class=resource_class,
            desired_value=desired_value,
            requested_at=utc_now(),
        )
        with self._lock:
            self.requests.append(request)
        logger.info(
            "Requested %s quota increase to %d: %s",
            resource_class,
            desired_value,
            request.request_id,
        )
        return request.request_id

    def approve(self, request_id: str) -> None:
        """Apply a pending request to the limits."""

        with self._lock:
            for request in self.requests:
                if request.request_id == request_id:
                    self.requests.remove(request)
                    self.limits[request.resource_class] = request.desired_value
                    return
        raise KeyError(request_id)

    def acquire(self, resource_class: str, units: int) -> None:
        with self._lock:
            self.usage[resource_class] = self.usage.get(resource_class, 0) + units

    def release(self, resource_class: str, units: int) -> None:
        with self._lock:
            self.usage[resource_class] = max(0, self.usage.get(resource_class, 0) - units)


class LocalCpuQuotaOracle:
    """Capacity of this machine: one unit per logical CPU."""

    def __init__(self, cpu_count: int | None = None) -> None:
        self.cpu_count = cpu_count or os.cpu_count() or 1

    def available(self, resource_class: str) -> int:
        return self.cpu_count

    def request_increase(self, resource_class: str, desired_value: int) -> str | None:
        raise BurstpoolError(
            f"Local CPU capacity is fixed at {self.cpu_count}; cannot raise {resource_class} "
            f"to {desired_value}",
        )


def build_quota_oracle(settings: QuotaSettings) -> StaticQuotaOracle:
    return StaticQuotaOracle(limits={settings.resource_class: settings.capacity})
