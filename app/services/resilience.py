from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener
from ratelimit import limits, sleep_and_retry
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from app.errors import UpstreamUnavailable
from app.logging_utils import sanitize_exception
from app.settings import Settings

logger = logging.getLogger("app.resilience")

T = TypeVar("T")


class _BreakerStateLogger(CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state) -> None:  # type: ignore[no-untyped-def]
        logger.warning(
            "circuit_breaker_state_change",
            extra={
                "breaker": cb.name,
                "old_state": getattr(old_state, "name", str(old_state)),
                "new_state": getattr(new_state, "name", str(new_state)),
            },
        )


class RateLimiter:
    """Blocks the calling thread until a call slot is free."""

    def __init__(self, *, calls: int, period_seconds: float):
        self.calls = max(1, int(calls))
        self.period_seconds = period_seconds
        self._acquire = sleep_and_retry(limits(calls=self.calls, period=period_seconds)(lambda: None))

    def acquire(self) -> None:
        self._acquire()


def is_retryable_http_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return False


def build_circuit_breaker(name: str, settings: Settings) -> CircuitBreaker:
    return CircuitBreaker(
        fail_max=max(1, settings.circuit_breaker_fail_max),
        reset_timeout=max(1, settings.circuit_breaker_reset_timeout_seconds),
        listeners=[_BreakerStateLogger()],
        name=name,
    )


def build_retrying(
    settings: Settings,
    *,
    retry_on: Callable[[BaseException], bool] = is_retryable_http_error,
) -> Retrying:
    return Retrying(
        stop=stop_after_attempt(max(1, settings.external_retry_attempts)),
        wait=wait_exponential(
            multiplier=settings.external_retry_wait_seconds,
            max=settings.external_retry_max_wait_seconds,
        ),
        retry=retry_if_exception(retry_on),
        reraise=True,
    )


HTTP_FAILURES: tuple[type[BaseException], ...] = (httpx.HTTPError, OSError, ValueError, KeyError)


class ResilientCaller:
    """Runs a call through retry (inner) and a circuit breaker (outer).

    Any failure that survives the retries, and any call rejected by an open breaker,
    surfaces as ``UpstreamUnavailable`` so that callers only deal with one error type.
    ``ValueError`` and ``KeyError`` cover a 2xx response whose body is not the JSON we expect.
    """

    def __init__(
        self,
        *,
        service: str,
        breaker: CircuitBreaker,
        retrying: Retrying,
        failure_types: tuple[type[BaseException], ...] = HTTP_FAILURES,
    ):
        self.service = service
        self.breaker = breaker
        self.retrying = retrying
        self.failure_types = failure_types

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return self.breaker.call(self.retrying.copy(), func, *args, **kwargs)
        except CircuitBreakerError as exc:
            logger.warning(
                "upstream_circuit_open",
                extra={"service": self.service, "breaker": self.breaker.name},
            )
            raise UpstreamUnavailable(self.service, f"{self.service} is temporarily unavailable") from exc
        except self.failure_types as exc:
            logger.warning(
                "upstream_call_failed",
                extra={"service": self.service, "error": sanitize_exception(exc)},
            )
            raise UpstreamUnavailable(self.service, f"{self.service} request failed") from exc
