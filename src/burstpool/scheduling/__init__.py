"""Quota-aware wave planning for runs larger than the available capacity."""

from burstpool.scheduling.quota import (
    LocalCpuQuotaOracle,
    QuotaInfo,
    QuotaOracle,
    QuotaRequest,
    StaticQuotaOracle,
    build_quota_oracle,
    suggest_quota,
)
from burstpool.scheduling.waves import (
    WaveItemResult,
    WavePlan,
    WaveQueue,
    WaveRunReport,
    WaveScheduler,
    plan_waves,
)

__all__ = [
    "LocalCpuQuotaOracle",
    "QuotaInfo",
    "QuotaOracle",
    "QuotaRequest",
    "StaticQuotaOracle",
    "WaveItemResult",
    "WavePlan",
    "WaveQueue",
    "WaveRunReport",
    "WaveScheduler",
    "build_quota_oracle",
    "plan_waves",
    "suggest_quota",
]
