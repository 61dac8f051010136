"""
Retry policy for model calls.

Bounded exponential backoff (with +/-20% jitter) built on tenacity. A
provider-supplied retry hint - structured RetryInfo detail, Retry-After
header, or "retry after N seconds" in the message - takes precedence over
the computed backoff. Only retryable failures are retried; the last error
is re-raised unchanged once attempts run out.
"""
import asyncio
import random
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import anthropic
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from a2mp.llm.errors import ModelError, TransientModelError
from a2mp.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.2

_RETRY_AFTER_TEXT = re.compile(r"retry after (\d+(?:\.\d+)?) seconds?", re.IGNORECASE)
_DURATION_TEXT = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*s?\s*$")
_TRANSIENT_TEXT = ("quota", "rate limit", "rate_limit", "resource_exhausted", "overloaded", "temporarily")

_FATAL_SDK_ERRORS = (
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
    anthropic.BadRequestError,
    anthropic.NotFoundError,
    anthropic.UnprocessableEntityError,
)
_RETRYABLE_SDK_ERRORS = (
    anthropic.RateLimitError,
    anthropic.InternalServerError,
    anthropic.APIConnectionError,
)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 4
    initial_delay: float = 2.0
    max_delay: float = 120.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            initial_delay=settings.RETRY_INITIAL_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
        )


def _status_code(error: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_retryable_error(error: BaseException) -> bool:
    """Rate limits, 5xx and network blips are retryable; everything else is fatal."""
    if isinstance(error, TransientModelError):
        return True
    if isinstance(error, ModelError):
        return False
    if isinstance(error, _FATAL_SDK_ERRORS):
        return False
    if isinstance(error, _RETRYABLE_SDK_ERRORS):
        return True

    status = _status_code(error)
    if status is not None:
        return status == 429 or 500 <= status < 600

    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_TEXT)


def _parse_duration(value: Any) -> Optional[float]:
    """'30s', '1.5', 12 or {'seconds': '30', 'nanos': 500000000}"""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, dict):
        try:
            seconds = float(value.get("seconds", 0) or 0)
            nanos = float(value.get("nanos", 0) or 0)
        except (TypeError, ValueError):
            return None
        return seconds + nanos / 1_000_000_000
    match = _DURATION_TEXT.match(str(value))
    return float(match.group(1)) if match else None


def _parse_retry_after(value: str) -> Optional[float]:
    """Retry-After is either delta-seconds or an HTTP date"""
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _structured_details(error: BaseException) -> list:
    details = getattr(error, "details", None)
    if isinstance(details, list):
        return details
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        inner = body.get("error", body)
        if isinstance(inner, dict) and isinstance(inner.get("details"), list):
            return inner["details"]
    return []


def extract_retry_hint(error: BaseException) -> Optional[float]:
    """Provider-advised delay in seconds, if the error carries one"""
    for detail in _structured_details(error):
        if isinstance(detail, dict) and "RetryInfo" in str(detail.get("@type", "")):
            delay = _parse_duration(detail.get("retryDelay"))
            if delay is not None:
                return delay

    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        try:
            retry_after = headers.get("retry-after")
        except AttributeError:
            retry_after = None
        if retry_after:
            delay = _parse_retry_after(retry_after)
            if delay is not None:
                return delay

    match = _RETRY_AFTER_TEXT.search(str(error))
    if match:
        return float(match.group(1))
    return None


def backoff_delay(attempt: int, config: RetryConfig, rand: Callable[[], float] = random.random) -> float:
    """Delay after the n-th failed attempt (0-based): initial * multiplier^n, +/-20%, capped"""
    base = config.initial_delay * (config.backoff_multiplier ** attempt)
    jitter = base * JITTER_RATIO * (2 * rand() - 1)
    return max(0.0, min(base + jitter, config.max_delay))


class wait_provider_hint(wait_base):
    """tenacity wait strategy: provider hint first, exponential backoff otherwise"""

    def __init__(self, config: RetryConfig):
        self.config = config

    def __call__(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        hint = extract_retry_hint(error) if error is not None else None
        if hint is not None:
            return min(hint, self.config.max_delay)
        return backoff_delay(retry_state.attempt_number - 1, self.config)


def _log_attempt(operation_name: str, config: RetryConfig):
    def before(retry_state: RetryCallState) -> None:
        logger.debug(
            f"[Retry] {operation_name} attempt {retry_state.attempt_number}/{config.max_attempts}"
        )
    return before


def _log_retry(operation_name: str, config: RetryConfig):
    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        logger.warning(
            f"[Retry] {operation_name} failed (attempt {retry_state.attempt_number}/"
            f"{config.max_attempts}). Retrying in {retry_state.next_action.sleep:.1f}s: {error}"
        )
    return before_sleep


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    operation_name: str = "model call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `operation` under the retry policy and return its result."""
    retrying = AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_provider_hint(config),
        retry=retry_if_exception(is_retryable_error),
        before=_log_attempt(operation_name, config),
        before_sleep=_log_retry(operation_name, config),
        sleep=sleep,
        reraise=True,
    )
    try:
        return await retrying(operation)
    except Exception as e:
        kind = "retryable" if is_retryable_error(e) else "non-retryable"
        logger.error(f"[Retry] {operation_name} gave up with {kind} error: {e}")
        raise
