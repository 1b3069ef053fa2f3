from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, List

from procurement_workflow.errors import ExternalDependencyUnavailableError
from procurement_workflow.observability import observe_workflow_external_timeout, observe_workflow_lookup_backoff


logger = logging.getLogger("procurement_workflow.lookups")

_LOOKUP_EXECUTOR = ThreadPoolExecutor(max_workers=8, thread_name_prefix="workflow-lookup")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.1
    max_delay_seconds: float = 1.0
    multiplier: float = 2.0

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(config.get("LOOKUP_RETRY_ATTEMPTS", 3))),
            base_delay_seconds=max(0.0, int(config.get("LOOKUP_RETRY_BASE_DELAY_MS", 100)) / 1000.0),
            max_delay_seconds=max(0.0, int(config.get("LOOKUP_RETRY_MAX_DELAY_MS", 1000)) / 1000.0),
        )

    def delays(self) -> List[float]:
        """Backoff applied after each failed attempt except the last."""
        return [
            min(self.max_delay_seconds, self.base_delay_seconds * (self.multiplier**attempt))
            for attempt in range(max(0, self.max_attempts - 1))
        ]


class BoundedReader:
    """Runs idempotent collaborator reads with a per-attempt timeout and capped backoff.

    Only reads go through here. Writes are never retried blindly. When every attempt
    fails the caller gets ``ExternalDependencyUnavailableError`` and nothing is committed.
    Definitive answers raised as ``ExternalDependencyUnavailableError`` by the
    collaborator itself (an unknown currency, for instance) are not retried.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        timeout_seconds: float = 5.0,
        *,
        sleep: Callable[[float], None] = time.sleep,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.timeout_seconds = float(timeout_seconds or 0.0)
        self._sleep = sleep
        self._executor = executor or _LOOKUP_EXECUTOR

    def read(self, dependency: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        delays = self.policy.delays()
        attempts = len(delays) + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return self._call(fn, *args, **kwargs)
            except ExternalDependencyUnavailableError:
                raise
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "collaborator_lookup_failed",
                    extra={
                        "dependency": dependency,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "error": str(exc) or type(exc).__name__,
                    },
                )
            if attempt < attempts:
                delay = delays[attempt - 1]
                observe_workflow_lookup_backoff(delay)
                self._sleep(delay)

        observe_workflow_external_timeout(dependency)
        raise ExternalDependencyUnavailableError(
            dependency=dependency,
            details=f"{dependency} unavailable after {attempts} attempts: {last_error}",
        )

    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if self.timeout_seconds <= 0:
            return fn(*args, **kwargs)
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            raise TimeoutError(f"lookup exceeded {self.timeout_seconds:g}s") from exc
