"""Process-wide call owner.

Keeps the DH config cache, at most one live call, and a short history of
finished calls for the diagnostics page.  Acts as the ``Delegate`` for every
session it creates.
"""

from __future__ import annotations

import asyncio
import collections
import logging
from collections.abc import Callable, Coroutine, Mapping
from typing import Any

from peercall.call.interfaces import (
    ControllerFactory,
    SignalingClient,
    Sound,
)
from peercall.call.messages import (
    CallRequested,
    CallUpdate,
    DiscardReason,
    InputCall,
    RpcError,
)
from peercall.call.observable import Observable
from peercall.call.session import TERMINAL_STATES, CallDirection, CallSession, State
from peercall.dh.config import DhConfig, DhConfigCache
from peercall.dh.keyexchange import CallError, KeyExchangeError
from peercall.settings import CallSettings
from peercall.tones import render_sound

logger = logging.getLogger(__name__)

SoundPlayer = Callable[[Sound, list[float]], None]


class CallManager:
    def __init__(
        self,
        signaling: SignalingClient,
        *,
        self_id: int,
        controller_factory: ControllerFactory,
        settings: CallSettings | None = None,
        dh_cache: DhConfigCache | None = None,
        sound_player: SoundPlayer | None = None,
        history_size: int = 20,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._signaling = signaling
        self.self_id = self_id
        self._controller_factory = controller_factory
        self.settings = settings if settings is not None else CallSettings()
        self.dh_cache = dh_cache if dh_cache is not None else DhConfigCache()
        self._sound_player = sound_player
        self._loop = loop if loop is not None else asyncio.get_running_loop()
        self._current: CallSession | None = None
        self.current_call_changed: Observable[CallSession | None] = Observable(None)
        self.recent_calls: collections.deque[CallSession] = collections.deque(
            maxlen=history_size
        )
        self._sounds: dict[Sound, list[float]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def current_call(self) -> CallSession | None:
        return self._current

    def find_call(self, call_id: int) -> CallSession | None:
        for call in self.recent_calls:
            if call.call_id == call_id:
                return call
        return None

    def update_config(self, data: Mapping[str, str]) -> None:
        self.settings.update_from_server(data)

    # ------------------------------------------------------------------
    # Starting calls
    # ------------------------------------------------------------------

    async def start_outgoing_call(self, peer_id: int) -> CallSession | None:
        """Call ``peer_id``; None when another call is still in progress."""
        if self._current is not None and self._current.state not in TERMINAL_STATES:
            logger.info("Not calling %d: a call is already in progress", peer_id)
            return None
        call = self._create_call(peer_id, CallDirection.OUTGOING)
        await self._refresh_and_start(call)
        return call

    def handle_update(self, update: CallUpdate) -> bool:
        """Route a server update. Returns False when no call wants it."""
        if isinstance(update, CallRequested):
            self._handle_incoming(update)
            return True
        if self._current is not None and self._current.handle_update(update):
            return True
        logger.debug("Dropping update %r for unknown call", update)
        return False

    def _handle_incoming(self, update: CallRequested) -> None:
        if update.participant_id != self.self_id:
            logger.warning("Call %d is not for us, ignoring", update.id)
            return
        if self._current is not None and self._current.state not in TERMINAL_STATES:
            logger.info("Busy: declining call %d from %d", update.id, update.admin_id)
            self._spawn(self._discard_busy(update))
            return
        call = self._create_call(update.admin_id, CallDirection.INCOMING)
        call.handle_update(update)
        self._spawn(self._refresh_and_start(call))

    async def _discard_busy(self, update: CallRequested) -> None:
        try:
            await self._signaling.discard_call(
                InputCall(id=update.id, access_hash=update.access_hash),
                0,
                DiscardReason.BUSY,
                0,
            )
        except RpcError as exc:
            logger.warning("Could not decline call %d: %s", update.id, exc.type)

    def _create_call(self, peer_id: int, direction: CallDirection) -> CallSession:
        call = CallSession(
            self,
            self._signaling,
            self_id=self.self_id,
            peer_id=peer_id,
            direction=direction,
            controller_factory=self._controller_factory,
            settings=self.settings,
            loop=self._loop,
        )
        self._set_current(call)
        self.recent_calls.appendleft(call)
        return call

    def _set_current(self, call: CallSession | None) -> None:
        if call is self._current:
            return
        self._current = call
        self.current_call_changed.notify(call)

    async def _refresh_and_start(self, call: CallSession) -> None:
        try:
            random_seed = await self.dh_cache.refresh(self._signaling.get_dh_config)
        except KeyExchangeError as exc:
            call.abort(exc.code, str(exc))
            return
        except RpcError as exc:
            call.abort(CallError.RPC_FAILED, f"get_dh_config failed: {exc.type}")
            return
        if call.alive:
            call.start(random_seed)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Call manager task failed", exc_info=task.exception())

    # ------------------------------------------------------------------
    # Delegate
    # ------------------------------------------------------------------

    def fetch_dh_config(self) -> DhConfig | None:
        return self.dh_cache.snapshot()

    def call_finished(self, call: CallSession) -> None:
        logger.info("Call %d with %d finished", call.call_id, call.peer_id)
        self._release(call)

    def call_failed(self, call: CallSession) -> None:
        logger.info(
            "Call %d with %d failed: %s",
            call.call_id,
            call.peer_id,
            call.last_error.name,
        )
        self._release(call)

    def call_redial(self, call: CallSession) -> None:
        if call.state == State.BUSY:
            call.hangup()
        self._release(call)
        self._spawn(self._redial(call.peer_id))

    async def _redial(self, peer_id: int) -> None:
        await self.start_outgoing_call(peer_id)

    def play_sound(self, sound: Sound) -> None:
        if self._sound_player is None:
            logger.debug("Sound %s (no player)", sound)
            return
        samples = self._sounds.get(sound)
        if samples is None:
            samples = self._sounds[sound] = render_sound(sound)
        self._sound_player(sound, samples)

    def _release(self, call: CallSession) -> None:
        if call is self._current:
            self._set_current(None)
        # The session is still inside its own state notification.
        self._loop.call_soon(call.destroy)

    async def shutdown(self) -> None:
        if self._current is not None:
            self._current.hangup()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
