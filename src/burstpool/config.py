"""Runtime configuration for stores, workers, sessions and quota."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_STORE_BACKENDS = ("sqlite", "http", "memory")
SUPPORTED_LAUNCHERS = ("process", "thread", "none")
SUPPORTED_EXECUTORS = ("import_path", "command")
SUPPORTED_SERIALIZERS = ("json", "pickle")


@dataclass(slots=True)
class StoreSettings:
    """Object store connection settings."""

    backend: str = "sqlite"
    path: Path = Path(".burstpool.db")
    endpoint: str = ""
    bucket: str = ""
    auth_token: str | None = None
    request_timeout_seconds: float = 30.0
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class RetrySettings:
    """Backoff policy for transient store faults."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0


@dataclass(slots=True)
class WorkerSettings:
    """Worker agent polling settings."""

    poll_initial_seconds: float = 1.0
    poll_max_seconds: float = 30.0
    idle_timeout_seconds: float = 300.0
    scan_limit: int = 100
    executor: str = "import_path"


@dataclass(slots=True)
class SessionDefaults:
    """Defaults applied to newly created sessions."""

    workers: int = 10
    cpu: int = 4
    memory: str = "8GB"
    region: str = "local"
    task_timeout_seconds: int = 3_600
    absolute_timeout_seconds: int = 86_400
    collect_poll_seconds: float = 2.0
    payload_serializer: str = "json"
    launcher: str = "process"


@dataclass(slots=True)
class QuotaSettings:
    """Capacity reported by the local quota oracle."""

    resource_class: str = "vcpu"
    capacity: int = 100
    auto_request_increase: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    store: StoreSettings = field(default_factory=StoreSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    session: SessionDefaults = field(default_factory=SessionDefaults)
    quota: QuotaSettings = field(default_factory=QuotaSettings)

    @classmethod
    def from_env(cls, store_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        return cls(
            store=StoreSettings(
                backend=os.getenv("BURSTPOOL_STORE_BACKEND", "sqlite").strip().lower(),
                path=store_path or Path(os.getenv("BURSTPOOL_STORE_PATH", ".burstpool.db")),
                endpoint=os.getenv("BURSTPOOL_STORE_ENDPOINT", "").strip(),
                bucket=os.getenv("BURSTPOOL_STORE_BUCKET", "").strip(),
                auth_token=os.getenv("BURSTPOOL_STORE_AUTH_TOKEN") or None,
                request_timeout_seconds=float(
                    os.getenv("BURSTPOOL_STORE_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                busy_timeout_ms=int(os.getenv("BURSTPOOL_STORE_BUSY_TIMEOUT_MS", "5000")),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("BURSTPOOL_RETRY_MAX_ATTEMPTS", "3")),
                base_delay_seconds=float(os.getenv("BURSTPOOL_RETRY_BASE_DELAY_SECONDS", "1.0")),
                max_delay_seconds=float(os.getenv("BURSTPOOL_RETRY_MAX_DELAY_SECONDS", "60.0")),
            ),
            worker=WorkerSettings(
                poll_initial_seconds=float(
                    os.getenv("BURSTPOOL_WORKER_POLL_INITIAL_SECONDS", "1.0"),
                ),
                poll_max_seconds=float(os.getenv("BURSTPOOL_WORKER_POLL_MAX_SECONDS", "30.0")),
                idle_timeout_seconds=float(
                    os.getenv("BURSTPOOL_WORKER_IDLE_TIMEOUT_SECONDS", "300.0"),
                ),
                scan_limit=int(os.getenv("BURSTPOOL_WORKER_SCAN_LIMIT", "100")),
                executor=os.getenv("BURSTPOOL_WORKER_EXECUTOR", "import_path").strip().lower(),
            ),
            session=SessionDefaults(
                workers=int(os.getenv("BURSTPOOL_SESSION_WORKERS", "10")),
                cpu=int(os.getenv("BURSTPOOL_SESSION_CPU", "4")),
                memory=os.getenv("BURSTPOOL_SESSION_MEMORY", "8GB"),
                region=os.getenv("BURSTPOOL_SESSION_REGION", "local"),
                task_timeout_seconds=int(
                    os.getenv("BURSTPOOL_SESSION_TASK_TIMEOUT_SECONDS", "3600"),
                ),
                absolute_timeout_seconds=int(
                    os.getenv("BURSTPOOL_SESSION_ABSOLUTE_TIMEOUT_SECONDS", "86400"),
                ),
                collect_poll_seconds=float(
                    os.getenv("BURSTPOOL_SESSION_COLLECT_POLL_SECONDS", "2.0"),
                ),
                payload_serializer=os.getenv("BURSTPOOL_PAYLOAD_SERIALIZER", "json")
                .strip()
                .lower(),
                launcher=os.getenv("BURSTPOOL_LAUNCHER", "process").strip().lower(),
            ),
            quota=QuotaSettings(
                resource_class=os.getenv("BURSTPOOL_QUOTA_RESOURCE_CLASS", "vcpu"),
                capacity=int(os.getenv("BURSTPOOL_QUOTA_CAPACITY", "100")),
                auto_request_increase=_env_bool(
                    "BURSTPOOL_QUOTA_AUTO_REQUEST_INCREASE",
                    default=False,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if self.store.backend not in SUPPORTED_STORE_BACKENDS:
            raise ValueError(
                f"BURSTPOOL_STORE_BACKEND must be one of {SUPPORTED_STORE_BACKENDS}: "
                f"{self.store.backend!r}",
            )
        if self.store.backend == "http":
            _validate_endpoint(self.store.endpoint)
            if not self.store.bucket:
                raise ValueError("BURSTPOOL_STORE_BUCKET is required for the http store.")
        if self.retry.max_attempts < 1:
            raise ValueError("BURSTPOOL_RETRY_MAX_ATTEMPTS must be >= 1.")
        if self.worker.poll_initial_seconds <= 0:
            raise ValueError("BURSTPOOL_WORKER_POLL_INITIAL_SECONDS must be > 0.")
        if self.worker.poll_max_seconds < self.worker.poll_initial_seconds:
            raise ValueError(
                "BURSTPOOL_WORKER_POLL_MAX_SECONDS must be >= BURSTPOOL_WORKER_POLL_INITIAL_SECONDS.",
            )
        if self.worker.idle_timeout_seconds <= 0:
            raise ValueError("BURSTPOOL_WORKER_IDLE_TIMEOUT_SECONDS must be > 0.")
        if self.worker.scan_limit < 1:
            raise ValueError("BURSTPOOL_WORKER_SCAN_LIMIT must be >= 1.")
        if self.worker.executor not in SUPPORTED_EXECUTORS:
            raise ValueError(
                f"BURSTPOOL_WORKER_EXECUTOR must be one of {SUPPORTED_EXECUTORS}: "
                f"{self.worker.executor!r}",
            )
        if self.session.workers < 0:
            raise ValueError("BURSTPOOL_SESSION_WORKERS must be >= 0.")
        if self.session.absolute_timeout_seconds <= 0:
            raise ValueError("BURSTPOOL_SESSION_ABSOLUTE_TIMEOUT_SECONDS must be > 0.")
        if self.session.payload_serializer not in SUPPORTED_SERIALIZERS:
            raise ValueError(
                f"BURSTPOOL_PAYLOAD_SERIALIZER must be one of {SUPPORTED_SERIALIZERS}: "
                f"{self.session.payload_serializer!r}",
            )
        if self.session.launcher not in SUPPORTED_LAUNCHERS:
            raise ValueError(
                f"BURSTPOOL_LAUNCHER must be one of {SUPPORTED_LAUNCHERS}: "
                f"{self.session.launcher!r}",
            )
        if self.quota.capacity < 0:
            raise ValueError("BURSTPOOL_QUOTA_CAPACITY must be >= 0.")


def _validate_endpoint(endpoint: str) -> None:
    parsed = urlparse(endpoint)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(f"Invalid BURSTPOOL_STORE_ENDPOINT: {endpoint!r}")


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}
