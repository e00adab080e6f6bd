"""
Retry policy
------------
One policy object shared by every external call (embedding provider,
vector store, statistics store, conversion service).  It is a thin wrapper
around tenacity: bounded attempts, exponential backoff, and a predicate
that decides which exceptions are worth retrying.  Non-retryable errors
(ValidationError, QuotaExceededError, provider 4xx) propagate on the first
attempt.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, TypeVar

from loguru import logger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ragindex.config import RetryConfig
from ragindex.errors import is_retryable

T = TypeVar("T")


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    name = getattr(state.fn, "__qualname__", repr(state.fn))
    logger.warning(
        f"[Retry] {name} failed (attempt {state.attempt_number}): {exc!r} | "
        f"sleeping {state.next_action.sleep if state.next_action else 0:.2f}s"
    )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    multiplier: float = 1.0
    min_wait: float = 1.0
    max_wait: float = 4.0
    predicate: Callable[[BaseException], bool] = field(default=is_retryable)

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.max_attempts,
            multiplier=cfg.backoff_multiplier,
            min_wait=cfg.backoff_min_seconds,
            max_wait=cfg.backoff_max_seconds,
        )

    @classmethod
    def no_wait(cls, max_attempts: int = 3) -> "RetryPolicy":
        """Same attempts, zero backoff. Used by tests and CLI dry runs."""
        return cls(max_attempts=max_attempts, multiplier=0.0, min_wait=0.0, max_wait=0.0)

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.multiplier, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception(self.predicate),
            before_sleep=_log_retry,
            reraise=True,
        )

    def call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        """Run `fn(*args, **kwargs)` under this policy."""
        return self._retrying()(fn, *args, **kwargs)
