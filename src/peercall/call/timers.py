"""Session timers on top of ``loop.call_later``.

- DelayedCallTimer: run an arbitrary callback once after a delay; re-arming
  replaces the pending callback (used for the hangup timeout).
- DeadlineTimer: a fixed callback re-armed with different budgets (receive,
  ring) that aborts a call stuck in setup.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class DelayedCallTimer:
    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def call(self, delay_s: float, callback: Callable[[], None]) -> None:
        self.cancel()
        self._handle = self._loop.call_later(delay_s, self._fire, callback)

    def _fire(self, callback: Callable[[], None]) -> None:
        self._handle = None
        callback()

    def cancel(self) -> None:
        _cancel(self._handle)
        self._handle = None


class DeadlineTimer:
    def __init__(
        self, loop: asyncio.AbstractEventLoop, on_expired: Callable[[], None]
    ) -> None:
        self._loop = loop
        self._on_expired = on_expired
        self._handle: asyncio.TimerHandle | None = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def call_once(self, delay_s: float) -> None:
        """(Re)start the deadline ``delay_s`` seconds from now."""
        self.cancel()
        self._handle = self._loop.call_later(delay_s, self._fire)
        logger.debug("Deadline armed for %.1fs", delay_s)

    def _fire(self) -> None:
        self._handle = None
        self._on_expired()

    def cancel(self) -> None:
        _cancel(self._handle)
        self._handle = None


def _cancel(handle: asyncio.TimerHandle | None) -> None:
    if handle is not None:
        handle.cancel()
