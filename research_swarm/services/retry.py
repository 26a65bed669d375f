# =============================================================================
# Retry Envelope — Bounded Exponential Backoff for Gateway Calls
# =============================================================================
#
# Every Gateway call in the pipeline goes through `with_retry()`. It is
# the only place backoff policy lives.
#
# FAILURE CLASSES:
#   rate-limit / overload (HTTP 429, 503, 529, "quota", "overloaded")
#       → retry after base * 2^attempt + uniform(0, jitter) seconds
#   abort (token cancelled)
#       → raise Aborted immediately, never retried
#   anything else
#       → re-raised as-is on the first occurrence
#
# Running out of attempts on transient failures raises RetryExhausted.
# The token is checked before every attempt, so a request stopped
# before the first attempt issues zero Gateway calls.
# =============================================================================

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from research_swarm.config import settings
from research_swarm.services.cancellation import Aborted, CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_STATUS_CODES = {429, 503, 529}
_TRANSIENT_MARKERS = ("429", "503", "quota", "overloaded", "rate limit")


class RetryExhausted(Exception):
    """All attempts failed with transient (rate-limit / overload) errors."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(
            f"Gateway call failed after {attempts} attempts: {last_error}"
        )
        self.attempts = attempts
        self.last_error = last_error


def is_transient(error: BaseException) -> bool:
    """
    Classify an exception as a rate-limit or overload signal.

    Both the anthropic and openai SDKs raise APIStatusError subclasses
    carrying `status_code`; anything else is matched on its message.
    """
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    if status in _TRANSIENT_STATUS_CODES:
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    token: CancellationToken,
    max_attempts: int | None = None,
    base_delay: float | None = None,
    jitter: float | None = None,
    label: str = "gateway call",
) -> T:
    """
    Run `operation` with bounded retry on transient failures.

    Args:
        operation: Zero-argument factory returning a fresh awaitable per
            attempt (a coroutine can only be awaited once).
        token: Cancellation token of the current run.
        max_attempts: Attempt budget (default from settings).
        base_delay: Backoff base in seconds (default from settings).
        jitter: Upper bound of the random extra delay in seconds.
        label: Name used in log lines.

    Raises:
        Aborted: The token was cancelled before or during an attempt.
        RetryExhausted: Every attempt hit a transient failure.
        Exception: Any non-transient failure, unchanged.
    """
    attempts = max_attempts if max_attempts is not None else settings.retry_max_attempts
    base = base_delay if base_delay is not None else settings.retry_base_delay_seconds
    spread = jitter if jitter is not None else settings.retry_jitter_seconds

    last_error: BaseException | None = None
    for attempt in range(attempts):
        token.raise_if_cancelled()
        try:
            return await token.run(operation())
        except Aborted:
            raise
        except Exception as e:
            if token.cancelled:
                raise Aborted() from e
            if not is_transient(e):
                raise
            last_error = e

        if attempt < attempts - 1:
            delay = base * (2 ** attempt) + random.uniform(0, spread)
            logger.warning(
                "%s busy/limited (attempt %d/%d). Waiting %.1fs...",
                label, attempt + 1, attempts, delay,
            )
            await token.sleep(delay)

    raise RetryExhausted(attempts, last_error)
