"""In-process signaling server and voice engine.

``LoopbackExchange`` plays the part of the signaling server for any number of
registered users and pushes updates to them on the event loop.  Its voice
controllers never move audio; they pair up by peer tag and only reach
``ESTABLISHED`` when both ends hold the same key.  Used by ``main.py`` for
the demo and by the end-to-end tests.
"""

from __future__ import annotations

import asyncio
import collections
import dataclasses
import itertools
import logging
import secrets
import threading
import time
from collections.abc import Callable

from peercall.call.interfaces import (
    ControllerError,
    ControllerParams,
    ControllerState,
    ControllerStateCallback,
)
from peercall.call.messages import (
    CallAccepted,
    CallDiscarded,
    CallProtocol,
    CallReady,
    CallRequested,
    CallUpdate,
    CallWaiting,
    DiscardReason,
    InputCall,
    PhoneConnection,
    RpcError,
)
from peercall.dh.config import DhConfig, DhConfigReply

logger = logging.getLogger(__name__)

UpdateHandler = Callable[[CallUpdate], object]


@dataclasses.dataclass
class _CallRecord:
    id: int
    admin_id: int
    participant_id: int
    admin_hash: int
    participant_hash: int
    g_a_hash: bytes
    protocol: CallProtocol
    g_b: bytes = b""
    receive_date: int = 0
    peer_tag: bytes = b""

    def access_hash_for(self, user_id: int) -> int:
        return self.admin_hash if user_id == self.admin_id else self.participant_hash

    def other(self, user_id: int) -> int:
        return self.participant_id if user_id == self.admin_id else self.admin_id


class LoopbackExchange:
    def __init__(
        self,
        dh_config: DhConfig,
        *,
        controller_step_s: float = 0.05,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.dh_config = dh_config
        self.controller_step_s = controller_step_s
        self._loop = loop if loop is not None else asyncio.get_running_loop()
        self._users: dict[int, UpdateHandler] = {}
        self._calls: dict[int, _CallRecord] = {}
        self._ended: collections.deque[int] = collections.deque(maxlen=256)
        self._ids = itertools.count(1000)
        self.debug_logs: dict[int, str] = {}
        self._media_lock = threading.Lock()
        self._media: dict[bytes, list[LoopbackVoiceController]] = {}

    def register(self, user_id: int, on_update: UpdateHandler) -> LoopbackSignaling:
        self._users[user_id] = on_update
        return LoopbackSignaling(self, user_id)

    def _push(self, user_id: int, update: CallUpdate) -> None:
        handler = self._users.get(user_id)
        if handler is None:
            return
        logger.debug("Push to %d: %s", user_id, type(update).__name__)
        self._loop.call_soon(handler, update)

    def _lookup(self, user_id: int, call: InputCall) -> _CallRecord:
        if call.id in self._ended:
            raise RpcError("CALL_ALREADY_DECLINED")
        record = self._calls.get(call.id)
        if record is None or user_id not in (record.admin_id, record.participant_id):
            raise RpcError("CALL_PEER_INVALID")
        if record.access_hash_for(user_id) != call.access_hash:
            raise RpcError("CALL_PEER_INVALID")
        return record

    def _waiting(self, record: _CallRecord, user_id: int) -> CallWaiting:
        return CallWaiting(
            id=record.id,
            access_hash=record.access_hash_for(user_id),
            admin_id=record.admin_id,
            participant_id=record.participant_id,
            protocol=record.protocol,
            receive_date=record.receive_date,
        )

    def _ready(
        self, record: _CallRecord, user_id: int, g_a: bytes, fp: int
    ) -> CallReady:
        connection = PhoneConnection(
            id=record.id,
            ip="127.0.0.1",
            ipv6="::1",
            port=0,
            peer_tag=record.peer_tag,
        )
        return CallReady(
            id=record.id,
            access_hash=record.access_hash_for(user_id),
            admin_id=record.admin_id,
            participant_id=record.participant_id,
            g_a_or_b=g_a if user_id == record.participant_id else record.g_b,
            key_fingerprint=fp,
            protocol=record.protocol,
            connection=connection,
            start_date=int(time.time()),
        )

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def get_dh_config(self, version: int, random_length: int) -> DhConfigReply:
        config = self.dh_config if version < self.dh_config.version else None
        return DhConfigReply(config=config, random=secrets.token_bytes(random_length))

    async def request_call(
        self,
        user_id: int,
        peer_id: int,
        g_a_hash: bytes,
        protocol: CallProtocol,
    ) -> CallWaiting:
        if peer_id not in self._users or peer_id == user_id:
            raise RpcError("USER_ID_INVALID")
        record = _CallRecord(
            id=next(self._ids),
            admin_id=user_id,
            participant_id=peer_id,
            admin_hash=secrets.randbits(62),
            participant_hash=secrets.randbits(62),
            g_a_hash=g_a_hash,
            protocol=protocol,
            peer_tag=secrets.token_bytes(16),
        )
        self._calls[record.id] = record
        self._push(
            peer_id,
            CallRequested(
                id=record.id,
                access_hash=record.participant_hash,
                admin_id=user_id,
                participant_id=peer_id,
                g_a_hash=g_a_hash,
                protocol=protocol,
            ),
        )
        return self._waiting(record, user_id)

    async def received_call(self, user_id: int, call: InputCall) -> bool:
        record = self._lookup(user_id, call)
        if user_id == record.participant_id and not record.receive_date:
            record.receive_date = int(time.time())
            self._push(record.admin_id, self._waiting(record, record.admin_id))
        return True

    async def accept_call(
        self, user_id: int, call: InputCall, g_b: bytes, protocol: CallProtocol
    ) -> CallWaiting:
        record = self._lookup(user_id, call)
        if user_id != record.participant_id or record.g_b:
            raise RpcError("CALL_ALREADY_ACCEPTED")
        record.g_b = g_b
        self._push(
            record.admin_id,
            CallAccepted(
                id=record.id,
                access_hash=record.admin_hash,
                admin_id=record.admin_id,
                participant_id=record.participant_id,
                g_b=g_b,
                protocol=record.protocol,
            ),
        )
        return self._waiting(record, user_id)

    async def confirm_call(
        self,
        user_id: int,
        call: InputCall,
        g_a: bytes,
        key_fingerprint: int,
        protocol: CallProtocol,
    ) -> CallReady:
        record = self._lookup(user_id, call)
        if user_id != record.admin_id or not record.g_b:
            raise RpcError("CALL_PEER_INVALID")
        # The server passes g_a through; only the callee can check the hash.
        self._push(
            record.participant_id,
            self._ready(record, record.participant_id, g_a, key_fingerprint),
        )
        return self._ready(record, user_id, g_a, key_fingerprint)

    async def discard_call(
        self,
        user_id: int,
        call: InputCall,
        duration: int,
        reason: DiscardReason,
        connection_id: int,
    ) -> None:
        record = self._lookup(user_id, call)
        del self._calls[record.id]
        self._ended.append(record.id)
        logger.info(
            "Call %d discarded by %d: %s after %ds",
            record.id,
            user_id,
            reason,
            duration,
        )
        self._push(
            record.other(user_id),
            CallDiscarded(id=record.id, reason=reason, duration=duration),
        )

    async def save_call_debug(self, user_id: int, call: InputCall, debug: str) -> None:
        self.debug_logs[call.id] = debug

    # ------------------------------------------------------------------
    # Voice engine
    # ------------------------------------------------------------------

    def controller_factory(
        self, params: ControllerParams, on_state: ControllerStateCallback
    ) -> LoopbackVoiceController:
        return LoopbackVoiceController(self, params, on_state)

    def _attach(self, controller: LoopbackVoiceController) -> None:
        with self._media_lock:
            ends = self._media.setdefault(controller.peer_tag, [])
            ends.append(controller)
            pair = list(ends) if len(ends) == 2 else None
        if pair is None:
            return
        first, second = pair
        if first.params.encryption_key == second.params.encryption_key:
            for end in pair:
                end.connected()
        else:
            for end in pair:
                end.failed(ControllerError.INCOMPATIBLE)

    def _detach(self, controller: LoopbackVoiceController) -> None:
        with self._media_lock:
            ends = self._media.get(controller.peer_tag, [])
            if controller in ends:
                ends.remove(controller)
            peers = list(ends)
            if not ends:
                self._media.pop(controller.peer_tag, None)
        for peer in peers:
            peer.closed()


class LoopbackSignaling:
    """``SignalingClient`` bound to one registered user."""

    def __init__(self, exchange: LoopbackExchange, user_id: int) -> None:
        self._exchange = exchange
        self.user_id = user_id

    async def get_dh_config(self, version: int, random_length: int) -> DhConfigReply:
        return await self._exchange.get_dh_config(version, random_length)

    async def request_call(
        self, user_id: int, random_id: int, g_a_hash: bytes, protocol: CallProtocol
    ) -> CallUpdate:
        return await self._exchange.request_call(
            self.user_id, user_id, g_a_hash, protocol
        )

    async def received_call(self, call: InputCall) -> bool:
        return await self._exchange.received_call(self.user_id, call)

    async def accept_call(
        self, call: InputCall, g_b: bytes, protocol: CallProtocol
    ) -> CallUpdate:
        return await self._exchange.accept_call(self.user_id, call, g_b, protocol)

    async def confirm_call(
        self, call: InputCall, g_a: bytes, key_fingerprint: int, protocol: CallProtocol
    ) -> CallUpdate:
        return await self._exchange.confirm_call(
            self.user_id, call, g_a, key_fingerprint, protocol
        )

    async def discard_call(
        self, call: InputCall, duration: int, reason: DiscardReason, connection_id: int
    ) -> None:
        await self._exchange.discard_call(
            self.user_id, call, duration, reason, connection_id
        )

    async def save_call_debug(self, call: InputCall, debug: str) -> None:
        await self._exchange.save_call_debug(self.user_id, call, debug)


class LoopbackVoiceController:
    """Reports engine states from a timer thread, like a real engine would."""

    def __init__(
        self,
        exchange: LoopbackExchange,
        params: ControllerParams,
        on_state: ControllerStateCallback,
    ) -> None:
        self._exchange = exchange
        self.params = params
        self._on_state = on_state
        self.peer_tag = params.endpoints[0].peer_tag if params.endpoints else b""
        self.preferred_relay_id = params.endpoints[0].id if params.endpoints else 0
        self.mute = params.mute
        self._lock = threading.Lock()
        self._timers: list[threading.Timer] = []
        self._stopped = False
        self._error = ControllerError.UNKNOWN
        self._log: list[str] = []

    def _report(self, state: ControllerState, error: int = 0) -> None:
        with self._lock:
            if self._stopped:
                return
            self._log.append(f"state {state.name}")
        self._on_state(state, error)

    def _later(self, state: ControllerState, error: int = 0, steps: int = 1) -> None:
        timer = threading.Timer(
            self._exchange.controller_step_s * steps, self._report, (state, error)
        )
        timer.daemon = True
        with self._lock:
            if self._stopped:
                return
            self._timers.append(timer)
        timer.start()

    def start(self) -> None:
        self._log.append(f"start, outgoing={self.params.is_outgoing}")
        self._report(ControllerState.WAIT_INIT)
        self._exchange._attach(self)

    def connected(self) -> None:
        self._later(ControllerState.WAIT_INIT_ACK)
        self._later(ControllerState.ESTABLISHED, steps=2)

    def failed(self, error: ControllerError) -> None:
        self._error = error
        self._later(ControllerState.FAILED, error)

    def closed(self) -> None:
        self._later(ControllerState.CLOSED)

    def stop(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            timers, self._timers = self._timers, []
            self._log.append("stop")
        for timer in timers:
            timer.cancel()
        self._exchange._detach(self)

    def set_mic_mute(self, mute: bool) -> None:
        self.mute = mute
        with self._lock:
            self._log.append(f"mute={mute}")

    def last_error(self) -> int:
        return int(self._error)

    def debug_log(self) -> str:
        with self._lock:
            return "\n".join(self._log)
