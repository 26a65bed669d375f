# =============================================================================
# Cancellation — Per-Request Tokens and the Single-Active-Run Controller
# =============================================================================
#
# Every top-level user request gets exactly one CancellationToken. The
# token is threaded as a parameter through every stage, every Gateway
# call, and every backoff sleep. Cancelling it makes all of them raise
# `Aborted`, which unwinds the whole pipeline.
#
# RunController keeps the "at most one active run" rule: starting a new
# run cancels the token of whatever run was still in flight, then hands
# out a fresh token. Tokens are never reused or merged.
#
# ARCHITECTURE:
#   CancellationToken
#   ├── cancel() / cancelled     — flip and read the flag
#   ├── raise_if_cancelled()     — check before issuing a call
#   ├── run(awaitable)           — race a call against cancellation
#   └── sleep(seconds)           — interruptible backoff delay
#   RunController
#   ├── start_run()              — supersede the previous token
#   ├── cancel_active()          — the "stop" button
#   └── finish(token)            — clear when a run ends
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Aborted(Exception):
    """The user stopped the run (or a newer request superseded it)."""

    def __init__(self, message: str = "Execution stopped by user.") -> None:
        super().__init__(message)


class CancellationToken:
    """
    One-shot cancellation flag shared read-only with every downstream call.

    Backed by an asyncio.Event so in-flight calls and backoff sleeps can
    be interrupted, not just the next call.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("Cancellation requested")
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Aborted()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable`, aborting early if the token is cancelled.

        The underlying task is cancelled when the token wins the race,
        so sessions never record a half-finished turn.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise Aborted()

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, raising Aborted as soon as the token fires."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise Aborted()


class RunController:
    """
    Owns the token of the single active pipeline run.

    One instance per process (created in the FastAPI lifespan).
    """

    def __init__(self) -> None:
        self._active: CancellationToken | None = None

    @property
    def active(self) -> CancellationToken | None:
        return self._active

    def start_run(self) -> CancellationToken:
        """Cancel any in-flight run and return a fresh token for a new one."""
        if self._active is not None and not self._active.cancelled:
            logger.info("New request supersedes the active run")
            self._active.cancel()
        self._active = CancellationToken()
        return self._active

    def cancel_active(self) -> bool:
        """Cancel the active run. Returns False when nothing was running."""
        if self._active is None or self._active.cancelled:
            return False
        self._active.cancel()
        return True

    def finish(self, token: CancellationToken) -> None:
        # A superseded run must not clear its successor's token
        if self._active is token:
            self._active = None
