"""Controllers for quota CLI commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from burstpool.config import Settings
from burstpool.errors import BurstpoolError, QuotaExceededError
from burstpool.scheduling.quota import (
    LocalCpuQuotaOracle,
    QuotaOracle,
    build_quota_oracle,
    suggest_quota,
)
from burstpool.scheduling.waves import plan_waves

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QuotaPlanCommand:
    """CLI input for wave planning against the configured or local quota."""

    workers: int
    units_per_worker: int
    capacity: int | None = None
    resource_class: str | None = None
    local_cpu: bool = False


@dataclass(slots=True)
class QuotaRequestCommand:
    units_needed: int
    resource_class: str | None = None


class QuotaCliController:
    """Wave planning and quota increase suggestions."""

    def plan(self, command: QuotaPlanCommand) -> list[str]:
        settings = Settings.from_env()
        resource_class = command.resource_class or settings.quota.resource_class
        oracle = _oracle(settings, local_cpu=command.local_cpu)
        if command.capacity is not None:
            available = command.capacity
        else:
            available = oracle.available(resource_class)

        units_needed = command.workers * command.units_per_worker
        try:
            plan = plan_waves(
                command.workers,
                available,
                command.units_per_worker,
                resource_class=resource_class,
            )
        except QuotaExceededError as error:
            return [
                f"Cannot run: {error}",
                f"Suggested {resource_class} quota: {suggest_quota(units_needed)}",
            ]

        lines = [
            f"Workers: {plan.total_workers} x {plan.units_per_worker} {resource_class} "
            f"= {plan.units_needed} needed, {plan.quota_available} available",
        ]
        if plan.quota_limited:
            lines.append(
                f"Execution plan: {plan.num_waves} waves of up to {plan.workers_per_wave} workers "
                f"({', '.join(str(size) for size in plan.wave_sizes())})",
            )
            desired = suggest_quota(plan.units_needed)
            lines.append(f"Suggested {resource_class} quota: {desired}")
            if settings.quota.auto_request_increase:
                lines.append(_auto_request(oracle, resource_class, desired))
        else:
            lines.append(f"Execution plan: 1 wave of {plan.workers_per_wave} workers")
        return lines

    def request(self, command: QuotaRequestCommand) -> list[str]:
        settings = Settings.from_env()
        resource_class = command.resource_class or settings.quota.resource_class
        oracle = build_quota_oracle(settings.quota)
        desired = suggest_quota(command.units_needed)
        request_id = oracle.request_increase(resource_class, desired)
        if request_id is None:
            return [
                f"Current {resource_class} quota ({oracle.describe(resource_class).limit}) "
                f"already covers {desired}",
            ]
        return [f"Quota increase requested: id={request_id} {resource_class}={desired}"]


def _auto_request(oracle: QuotaOracle, resource_class: str, desired: int) -> str:
    try:
        request_id = oracle.request_increase(resource_class, desired)
    except BurstpoolError as error:
        logger.warning("Automatic quota increase request failed: %s", error)
        return f"Quota increase not requested: {error}"
    if request_id is None:
        return f"Current {resource_class} quota already covers {desired}"
    return f"Quota increase requested: id={request_id} {resource_class}={desired}"


def _oracle(settings: Settings, *, local_cpu: bool) -> QuotaOracle:
    if local_cpu:
        return LocalCpuQuotaOracle()
    return build_quota_oracle(settings.quota)
