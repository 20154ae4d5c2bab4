"""Object store contract and retry policy for transient faults."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar

from burstpool.clock import Clock, SystemClock
from burstpool.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class StoredObject:
    """Object body together with the version token needed for conditional writes."""

    body: bytes
    version: str


@dataclass(slots=True, frozen=True)
class PutResult:
    """Outcome of a conditional write; ``ok=False`` means the precondition failed."""

    ok: bool
    version: str | None = None


class ObjectStore(Protocol):
    """Minimal object store API: get, conditional put, list by prefix, delete.

    ``put_if_match(key, body, None)`` creates the object only if it is absent.
    ``put_if_match(key, body, token)`` replaces it only if its current version
    is still ``token``. Implementations raise ``StoreUnavailableError`` for
    transient I/O faults and never for precondition failures.
    """

    def get(self, key: str) -> StoredObject | None: ...

    def put_if_match(self, key: str, body: bytes, version: str | None) -> PutResult: ...

    def list_keys(self, prefix: str, limit: int | None = None) -> list[str]: ...

    def delete(self, key: str) -> bool: ...

    def close(self) -> None: ...


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff with jitter for ``StoreUnavailableError``."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    jitter_ratio: float = 0.1

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay before the retry that follows ``attempt`` (1-based)."""

        capped = min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)
        jitter = (rng or random).uniform(0, capped * self.jitter_ratio)
        return capped + jitter


def call_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    clock: Clock | None = None,
    operation_name: str = "store operation",
) -> T:
    """Run ``operation`` and retry it while the store reports transient faults."""

    sleeper = clock or SystemClock()
    attempt = 1
    while True:
        try:
            return operation()
        except StoreUnavailableError as error:
            if attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                operation_name,
                attempt,
                policy.max_attempts,
                str(error)[:100],
                delay,
            )
            sleeper.sleep(delay)
            attempt += 1
