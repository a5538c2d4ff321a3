"""One call attempt: state machine, DH handshake and voice engine hand-off.

Outgoing (caller, "admin")::

    Requesting → Waiting → Ringing → ExchangingKeys → WaitingInit
               → WaitingInitAck → Established → HangingUp → Ended

Incoming (callee, "participant")::

    Starting → WaitingIncoming → ExchangingKeys → WaitingInit → ...

The caller commits to ``g_a`` by sending ``sha256(g_a)`` first; the callee
answers with ``g_b``; the caller then reveals ``g_a`` together with the key
fingerprint.  Either side fails the call on any validation error.

Everything here runs on the owning event loop.  Voice engine callbacks are
marshalled with ``call_soon_threadsafe``; RPC replies, timers and engine
callbacks all check ``_alive`` before touching state.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import time
from collections.abc import Awaitable, Callable
from enum import Enum, StrEnum
from typing import Any

from peercall.call.interfaces import (
    ControllerFactory,
    ControllerParams,
    ControllerState,
    ControllerError,
    Delegate,
    SignalingClient,
    Sound,
    VoiceTransportController,
)
from peercall.call.messages import (
    CallAccepted,
    CallDiscarded,
    CallEmpty,
    CallProtocol,
    CallReady,
    CallRequested,
    CallUpdate,
    CallWaiting,
    DiscardReason,
    InputCall,
    RpcError,
)
from peercall.call.observable import Observable
from peercall.call.timers import DeadlineTimer, DelayedCallTimer
from peercall.dh.config import DhConfig
from peercall.dh.keyexchange import (
    SHA256_SIZE,
    CallError,
    KeyExchangeError,
    compute_fingerprint,
    derive_key,
    generate_first_contribution,
    key_sha_for_fingerprint,
    sas_code,
    sha256,
)
from peercall.settings import CallSettings
from peercall.tones import WaitingTrack, waiting_peaks

logger = logging.getLogger(__name__)


class CallDirection(StrEnum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class State(StrEnum):
    STARTING = "starting"
    REQUESTING = "requesting"
    WAITING = "waiting"
    WAITING_INCOMING = "waiting_incoming"
    RINGING = "ringing"
    EXCHANGING_KEYS = "exchanging_keys"
    WAITING_INIT = "waiting_init"
    WAITING_INIT_ACK = "waiting_init_ack"
    ESTABLISHED = "established"
    BUSY = "busy"
    HANGING_UP = "hanging_up"
    FAILED_HANGING_UP = "failed_hanging_up"
    FAILED = "failed"
    ENDED = "ended"


class FinishType(Enum):
    NONE = 0
    ENDED = 1
    FAILED = 2


TERMINAL_STATES = frozenset({State.ENDED, State.FAILED})
# States during which the waiting sound plays.
_WAITING_STATES = frozenset(
    {
        State.STARTING,
        State.REQUESTING,
        State.WAITING,
        State.WAITING_INCOMING,
        State.RINGING,
    }
)
# Voice engine progress is only meaningful once keys are agreed.
_CONNECTING_STATES = frozenset(
    {State.EXCHANGING_KEYS, State.WAITING_INIT, State.WAITING_INIT_ACK}
)


class CallSession:
    def __init__(
        self,
        delegate: Delegate,
        signaling: SignalingClient,
        *,
        self_id: int,
        peer_id: int,
        direction: CallDirection,
        controller_factory: ControllerFactory,
        settings: CallSettings | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._delegate = delegate
        self._signaling = signaling
        self.self_id = self_id
        self.peer_id = peer_id
        self.direction = direction
        self._controller_factory = controller_factory
        self._settings = settings if settings is not None else CallSettings()
        self._loop = loop if loop is not None else asyncio.get_running_loop()

        self._state = State.STARTING
        self.state_changed: Observable[State] = Observable(State.STARTING)
        self._mute = False
        self.mute_changed: Observable[bool] = Observable(False)

        self._finish_type = FinishType.NONE
        self._finish_after_requesting = FinishType.NONE
        self._requesting = False
        self._answer_after_dh_config = False
        self._notified = False
        self._redial_requested = False
        self._alive = True

        self._created_at = time.monotonic()
        self._start_time = 0.0
        self._end_time = 0.0
        self._finish_timer = DelayedCallTimer(self._loop)
        self._discard_timer = DeadlineTimer(self._loop, self._on_discard_timeout)

        self._dh_config: DhConfig | None = None
        self._ga = b""
        self._gb = b""
        self._ga_hash = b""
        self._random_power = b""
        self._auth_key = b""
        self._key_fingerprint = 0
        self._protocol = CallProtocol(
            min_layer=self._settings.min_layer, max_layer=self._settings.max_layer
        )

        self.call_id = 0
        self._access_hash = 0
        self.discard_reason: DiscardReason | None = None
        self.last_error = CallError.NONE
        self.last_rpc_error: str | None = None

        self._controller: VoiceTransportController | None = None
        self._controller_generation = 0
        self._controller_debug = ""
        self._tasks: set[asyncio.Task[Any]] = set()
        self._waiting_track: WaitingTrack | None = None
        self._history: list[str] = []

        self._log("created %s call with %d", direction, peer_id)
        if direction == CallDirection.OUTGOING:
            self._set_state(State.REQUESTING)
        self._start_waiting_track()

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def state(self) -> State:
        return self._state

    @property
    def finish_type(self) -> FinishType:
        return self._finish_type

    @property
    def is_mute(self) -> bool:
        return self._mute

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def has_controller(self) -> bool:
        return self._controller is not None

    @property
    def key_fingerprint(self) -> int:
        return self._key_fingerprint

    @property
    def auth_key(self) -> bytes:
        return self._auth_key

    @property
    def offers_redial(self) -> bool:
        """Whether a UI should suggest calling again."""
        return self.direction == CallDirection.OUTGOING and self._state == State.FAILED

    def is_incoming_waiting(self) -> bool:
        return self.direction == CallDirection.INCOMING and self._state in (
            State.STARTING,
            State.WAITING_INCOMING,
        )

    def duration_ms(self) -> int:
        if not self._start_time:
            return 0
        end = self._end_time or time.monotonic()
        return int((end - self._start_time) * 1000)

    def waiting_sound_peak_value(self) -> float:
        if self._waiting_track is None:
            return 0.0
        return self._waiting_track.peak_value(time.monotonic())

    def is_key_sha_for_fingerprint_ready(self) -> bool:
        return self._key_fingerprint != 0

    def key_sha_for_fingerprint(self) -> bytes:
        if not self.is_key_sha_for_fingerprint_ready() or not self._ga:
            raise RuntimeError("Call key is not ready yet.")
        return key_sha_for_fingerprint(self._auth_key, self._ga)

    def fingerprint_code(self) -> str | None:
        """Short code both users read out to verify the key."""
        if not self.is_key_sha_for_fingerprint_ready():
            return None
        return sas_code(self.key_sha_for_fingerprint())

    def debug_log(self) -> str:
        lines = [
            f"call_id={self.call_id} direction={self.direction} state={self._state}",
            f"layers={self._protocol.min_layer}-{self._protocol.max_layer}"
            f" dh_version={self._dh_config.version if self._dh_config else 0}",
            f"key_fingerprint={self._key_fingerprint:016x}"
            f" last_error={self.last_error.name}"
            f" discard_reason={self.discard_reason}",
        ]
        lines.extend(self._history)
        engine_log = (
            self._controller.debug_log()
            if self._controller is not None
            else self._controller_debug
        )
        if engine_log:
            lines.append("--- voice engine ---")
            lines.append(engine_log)
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def start(self, random_seed: bytes) -> None:
        """Begin the handshake once the DH config has been refreshed."""
        if not self._alive or self._state in TERMINAL_STATES:
            return
        if self._random_power:
            raise RuntimeError("Call was already started.")
        # Keep the group captured here for the whole call, even if the
        # process-wide config is updated meanwhile.
        self._dh_config = self._delegate.fetch_dh_config()
        if self._dh_config is None:
            self._fail(CallError.BAD_DH_CONFIG, "no DH config available")
            return
        try:
            first = generate_first_contribution(
                self._dh_config.g, self._dh_config.p, random_seed
            )
        except KeyExchangeError as exc:
            self._fail(exc.code, str(exc))
            return
        self._random_power = first.random_power
        if self.direction == CallDirection.INCOMING:
            self._gb = first.modexp
        else:
            self._ga = first.modexp
            self._ga_hash = sha256(self._ga)
        self._log("generated first mod-exp, dh version %d", self._dh_config.version)

        if self._state in (State.STARTING, State.REQUESTING):
            if self.direction == CallDirection.OUTGOING:
                self._start_outgoing()
            else:
                self._start_incoming()
        if self._answer_after_dh_config:
            self.answer()

    def abort(self, code: CallError, message: str) -> None:
        """Fail the call from outside, e.g. when the DH config fetch failed."""
        self._fail(code, message)

    def answer(self) -> None:
        if self.direction != CallDirection.INCOMING:
            raise RuntimeError("Only incoming calls can be answered.")
        if self._state not in (State.STARTING, State.WAITING_INCOMING):
            return
        if not self._gb or self._dh_config is None:
            self._answer_after_dh_config = True
            self._log("answer deferred until DH config arrives")
            return
        self._answer_after_dh_config = False
        self._set_state(State.EXCHANGING_KEYS)
        self._request(
            self._signaling.accept_call(self._input_call(), self._gb, self._protocol),
            self._on_accept_done,
        )

    def hangup(self) -> None:
        if self._state == State.BUSY:
            self._finish_type = FinishType.ENDED
            self._set_state(State.ENDED, quiet=True)
            return
        missed = self._state == State.RINGING or (
            self._state == State.WAITING and self.direction == CallDirection.OUTGOING
        )
        declined = self.is_incoming_waiting()
        if missed:
            reason = DiscardReason.MISSED
        elif declined:
            reason = DiscardReason.BUSY
        else:
            reason = DiscardReason.HANGUP
        self.finish(FinishType.ENDED, reason)

    def redial(self) -> bool:
        """Ask the owner for a fresh session to the same peer."""
        if self.direction != CallDirection.OUTGOING:
            return False
        if self._state not in (State.BUSY, State.FAILED) or self._redial_requested:
            return False
        self._redial_requested = True
        self._log("redial requested")
        self._delegate.call_redial(self)
        return True

    def set_mute(self, mute: bool) -> None:
        if self._state in TERMINAL_STATES or mute == self._mute:
            return
        self._mute = mute
        if self._controller is not None:
            self._controller.set_mic_mute(mute)
        self.mute_changed.notify(mute)

    def destroy(self) -> None:
        """Release timers, engine and pending requests. Safe to call twice."""
        if not self._alive:
            return
        self._log("destroyed in state %s", self._state)
        self._alive = False
        self._finish_timer.cancel()
        self._discard_timer.cancel()
        self._destroy_controller()
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()
        self._waiting_track = None
        self.state_changed.clear()
        self.mute_changed.clear()

    # ------------------------------------------------------------------
    # Finishing
    # ------------------------------------------------------------------

    def finish(
        self, finish_type: FinishType, reason: DiscardReason = DiscardReason.DISCONNECT
    ) -> None:
        if finish_type == FinishType.NONE:
            raise ValueError("finish() needs a finish type")
        final_state = State.ENDED if finish_type == FinishType.ENDED else State.FAILED
        hangup_state = (
            State.HANGING_UP
            if finish_type == FinishType.ENDED
            else State.FAILED_HANGING_UP
        )
        if self._state == State.REQUESTING and self._requesting:
            # The call id is still unknown; act when request_call replies.
            self._finish_after_requesting = finish_type
            self._finish_timer.call(
                self._settings.hangup_timeout_ms / 1000,
                functools.partial(self._on_finish_timeout, final_state),
            )
            return
        if self._state in (
            State.HANGING_UP,
            State.FAILED_HANGING_UP,
            State.ENDED,
            State.FAILED,
        ):
            return
        self._finish_type = finish_type
        if self._state == State.BUSY or not self.call_id:
            self._set_state(final_state, quiet=self._state == State.BUSY)
            return

        duration = self.duration_ms() // 1000
        connection_id = (
            self._controller.preferred_relay_id if self._controller is not None else 0
        )
        self.discard_reason = reason
        self._set_state(hangup_state)
        self._finish_timer.call(
            self._settings.hangup_timeout_ms / 1000,
            functools.partial(self._on_finish_timeout, final_state),
        )
        self._request(
            self._signaling.discard_call(
                self._input_call(), duration, reason, connection_id
            ),
            lambda _result: self._set_state(final_state),
            lambda _error: self._set_state(final_state),
        )

    def _fail(self, code: CallError, message: str) -> None:
        logger.warning("Call Error: %s", message)
        self._log("error %s: %s", code.name, message)
        if self.last_error == CallError.NONE:
            self.last_error = code
        self.finish(FinishType.FAILED)

    def _on_finish_timeout(self, final_state: State) -> None:
        if not self._alive:
            return
        self._log("hangup timeout, forcing %s", final_state)
        if final_state == State.FAILED:
            self._finish_type = FinishType.FAILED
        elif self._finish_type == FinishType.NONE:
            self._finish_type = FinishType.ENDED
        self._set_state(final_state)

    def _on_discard_timeout(self) -> None:
        if not self._alive or self._state in TERMINAL_STATES:
            return
        if self._finish_type != FinishType.NONE or self._state in (
            State.HANGING_UP,
            State.FAILED_HANGING_UP,
        ):
            return
        self.last_error = CallError.TIMEOUT
        self._log("setup deadline expired in %s", self._state)
        logger.warning("Call Error: no progress in state %s", self._state)
        if self._state in (State.WAITING, State.RINGING, State.WAITING_INCOMING):
            self.finish(FinishType.FAILED, DiscardReason.MISSED)
        else:
            self.finish(FinishType.FAILED)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, state: State, *, quiet: bool = False) -> None:
        current = self._state
        if current in TERMINAL_STATES:
            if state != current:
                self._log("ignoring %s after %s", state, current)
            return
        # Once hanging up, only the matching final state may follow.
        if current == State.FAILED_HANGING_UP and state != State.FAILED:
            return
        if current == State.HANGING_UP and state != State.ENDED:
            return
        if current == state:
            return

        self._state = state
        self._log("state %s -> %s", current, state)

        if state not in _WAITING_STATES:
            self._waiting_track = None
        if state in (State.BUSY, State.ENDED, State.FAILED):
            self._discard_timer.cancel()
            self._finish_timer.cancel()
            self._destroy_controller()
            if state != State.BUSY:
                self._end_time = time.monotonic()
        elif state == State.ESTABLISHED:
            self._start_time = time.monotonic()
            self._discard_timer.cancel()
        elif state == State.EXCHANGING_KEYS:
            self._discard_timer.call_once(self._settings.connect_timeout_ms / 1000)

        self.state_changed.notify(state)

        if state == State.EXCHANGING_KEYS:
            self._delegate.play_sound(Sound.CONNECTING)
        elif state == State.ENDED:
            if not quiet:
                self._delegate.play_sound(Sound.ENDED)
            self._notify_terminal(failed=False)
        elif state == State.FAILED:
            self._delegate.play_sound(Sound.ENDED)
            self._notify_terminal(failed=True)
        elif state == State.BUSY:
            self._delegate.play_sound(Sound.BUSY)

    def _notify_terminal(self, *, failed: bool) -> None:
        if self._notified:
            return
        self._notified = True
        if failed:
            self._delegate.call_failed(self)
        else:
            self._delegate.call_finished(self)

    def _start_waiting_track(self) -> None:
        outgoing = self.direction == CallDirection.OUTGOING
        self._waiting_track = WaitingTrack(waiting_peaks(outgoing), time.monotonic())

    def _log(self, message: str, *args: object) -> None:
        text = message % args if args else message
        elapsed = time.monotonic() - self._created_at
        self._history.append(f"{elapsed:9.3f} {text}")
        logger.debug("Call %d (%s): %s", self.call_id, self.direction, text)

    # ------------------------------------------------------------------
    # Signaling
    # ------------------------------------------------------------------

    def _input_call(self) -> InputCall:
        return InputCall(id=self.call_id, access_hash=self._access_hash)

    def _request(
        self,
        request: Awaitable[Any],
        on_done: Callable[[Any], None],
        on_fail: Callable[[Exception], None] | None = None,
    ) -> None:
        task = self._loop.create_task(request)  # type: ignore[arg-type]
        self._tasks.add(task)
        task.add_done_callback(
            functools.partial(self._on_request_finished, on_done, on_fail)
        )

    def _on_request_finished(
        self,
        on_done: Callable[[Any], None],
        on_fail: Callable[[Exception], None] | None,
        task: asyncio.Task[Any],
    ) -> None:
        self._tasks.discard(task)
        if not self._alive or task.cancelled():
            return
        if self._state in TERMINAL_STATES:
            self._log("late reply ignored")
            return
        exc = task.exception()
        if exc is None:
            on_done(task.result())
            return
        if not isinstance(exc, Exception):
            raise exc
        if on_fail is not None:
            on_fail(exc)
        else:
            self._handle_request_error(exc)

    def _handle_request_error(self, error: Exception) -> None:
        if isinstance(error, RpcError):
            self.last_rpc_error = error.type
            self._fail(CallError.RPC_FAILED, f"request failed: {error.type}")
        else:
            logger.error("Signaling request crashed", exc_info=error)
            self._fail(CallError.RPC_FAILED, f"request crashed: {error!r}")

    def _start_outgoing(self) -> None:
        self._log("requesting call")
        self._requesting = True
        self._request(
            self._signaling.request_call(
                self.peer_id,
                random.randint(0, 0x7FFFFFFF),
                self._ga_hash,
                self._protocol,
            ),
            self._on_request_call_done,
            self._on_request_call_failed,
        )

    def _on_request_call_failed(self, error: Exception) -> None:
        self._requesting = False
        self._handle_request_error(error)

    def _on_request_call_done(self, result: CallUpdate) -> None:
        self._requesting = False
        if not isinstance(result, CallWaiting):
            self._fail(
                CallError.UNEXPECTED_REPLY,
                "expected CallWaiting in response to request_call",
            )
            return
        self._set_state(State.WAITING)
        self.call_id = result.id
        self._access_hash = result.access_hash
        if self._finish_after_requesting != FinishType.NONE:
            if self._finish_after_requesting == FinishType.FAILED:
                self.finish(FinishType.FAILED)
            else:
                self.hangup()
            return
        self._discard_timer.call_once(self._settings.receive_timeout_ms / 1000)
        self.handle_update(result)

    def _start_incoming(self) -> None:
        self._request(
            self._signaling.received_call(self._input_call()),
            self._on_received_call_done,
        )

    def _on_received_call_done(self, _result: bool) -> None:
        if self._state == State.STARTING:
            self._set_state(State.WAITING_INCOMING)
            self._discard_timer.call_once(self._settings.ring_timeout_ms / 1000)

    def _on_accept_done(self, result: CallUpdate) -> None:
        if not isinstance(result, CallWaiting):
            self._fail(
                CallError.UNEXPECTED_REPLY,
                "expected CallWaiting in response to accept_call",
            )
            return
        self.handle_update(result)

    def _on_confirm_done(self, result: CallUpdate) -> None:
        if not self._exchanging_keys():
            self._log("confirm reply ignored in %s", self._state)
            return
        if not isinstance(result, CallReady):
            self._fail(
                CallError.UNEXPECTED_REPLY,
                "expected CallReady in response to confirm_call",
            )
            return
        self._create_and_start_controller(result)

    def _save_debug_log(self) -> None:
        debug = self._controller.debug_log() if self._controller is not None else ""
        if not debug:
            return
        self._request(
            self._signaling.save_call_debug(self._input_call(), debug),
            lambda _result: None,
            lambda error: logger.warning("Could not save call debug: %s", error),
        )

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def handle_update(self, update: CallUpdate) -> bool:
        """Apply a call update; False when it belongs to another call."""
        if isinstance(update, CallRequested):
            if (
                self.direction != CallDirection.INCOMING
                or self.call_id != 0
                or update.admin_id != self.peer_id
            ):
                raise RuntimeError("CallRequested inside an existing call.")
            self._handle_requested(update)
            return True

        if update.id != self.call_id:
            return False
        if not self._alive or self._state in TERMINAL_STATES:
            self._log("update %s ignored", type(update).__name__)
            return True

        if isinstance(update, CallEmpty):
            self._fail(CallError.UNEXPECTED_REPLY, "CallEmpty received")
        elif isinstance(update, CallWaiting):
            if (
                self.direction == CallDirection.OUTGOING
                and self._state == State.WAITING
                and update.receive_date != 0
            ):
                self._discard_timer.call_once(self._settings.ring_timeout_ms / 1000)
                self._set_state(State.RINGING)
                self._start_waiting_track()
        elif isinstance(update, CallReady):
            if (
                self.direction == CallDirection.INCOMING
                and self._state == State.EXCHANGING_KEYS
            ):
                self._start_confirmed_call(update)
        elif isinstance(update, CallDiscarded):
            self._handle_discarded(update)
        elif isinstance(update, CallAccepted):
            if self.direction != CallDirection.OUTGOING:
                self._fail(
                    CallError.UNEXPECTED_REPLY, "CallAccepted for an incoming call"
                )
            elif self._auth_key:
                self._log("duplicate CallAccepted ignored")
            elif self._state not in (State.WAITING, State.RINGING):
                self._log("CallAccepted ignored in %s", self._state)
            elif self._check_common_fields(update):
                self._confirm_accepted_call(update)
        else:
            raise TypeError(f"Unexpected call update {update!r}")
        return True

    def _handle_requested(self, update: CallRequested) -> None:
        if update.participant_id != self.self_id:
            self._fail(CallError.WRONG_PARTICIPANT, "wrong call participant_id")
            return
        self.call_id = update.id
        self._access_hash = update.access_hash
        if len(update.g_a_hash) != SHA256_SIZE:
            self._fail(
                CallError.BAD_PEER_VALUE,
                f"wrong g_a_hash size {len(update.g_a_hash)}",
            )
            return
        if not self._protocol.compatible_with(update.protocol):
            self._fail(CallError.PROTOCOL_INCOMPATIBLE, "incompatible call protocol")
            return
        self._protocol = self._protocol.intersection(update.protocol)
        self._ga_hash = update.g_a_hash
        self._log("requested by %d, call id %d", update.admin_id, update.id)

    def _handle_discarded(self, update: CallDiscarded) -> None:
        self._log("discarded by server, reason %s", update.reason)
        if update.need_debug:
            self._save_debug_log()
        if self._state == State.FAILED_HANGING_UP:
            self._set_state(State.FAILED)
        elif update.reason == DiscardReason.BUSY and self._state != State.HANGING_UP:
            self._set_state(State.BUSY)
        else:
            if self._finish_type == FinishType.NONE:
                self._finish_type = FinishType.ENDED
            self._set_state(State.ENDED)

    def _check_common_fields(self, call: CallAccepted | CallReady) -> bool:
        if call.access_hash != self._access_hash:
            self._fail(CallError.WRONG_ACCESS_HASH, "wrong call access_hash")
            return False
        if self.direction == CallDirection.OUTGOING:
            admin_id, participant_id = self.self_id, self.peer_id
        else:
            admin_id, participant_id = self.peer_id, self.self_id
        if call.admin_id != admin_id:
            self._fail(CallError.WRONG_PARTICIPANT, "wrong call admin_id")
            return False
        if call.participant_id != participant_id:
            self._fail(CallError.WRONG_PARTICIPANT, "wrong call participant_id")
            return False
        if not self._protocol.compatible_with(call.protocol):
            self._fail(CallError.PROTOCOL_INCOMPATIBLE, "incompatible call protocol")
            return False
        self._protocol = self._protocol.intersection(call.protocol)
        return True

    def _derive(self, peer_value: bytes) -> bytes | None:
        if self._dh_config is None or not self._random_power:
            self._fail(CallError.BAD_DH_CONFIG, "key exchange before DH config")
            return None
        try:
            return derive_key(self._random_power, peer_value, self._dh_config.p)
        except KeyExchangeError as exc:
            self._fail(exc.code, f"could not compute mod-exp final: {exc}")
            return None

    def _exchanging_keys(self) -> bool:
        return (
            self._state == State.EXCHANGING_KEYS
            and self._finish_type == FinishType.NONE
        )

    def _set_auth_key(self, auth_key: bytes) -> None:
        if self._auth_key:
            raise RuntimeError("Call key is already set.")
        self._auth_key = auth_key
        self._key_fingerprint = compute_fingerprint(auth_key)
        self._log("key fingerprint %016x", self._key_fingerprint)

    def _confirm_accepted_call(self, call: CallAccepted) -> None:
        auth_key = self._derive(call.g_b)
        if auth_key is None:
            return
        self._gb = call.g_b
        self._set_auth_key(auth_key)
        self._set_state(State.EXCHANGING_KEYS)
        self._request(
            self._signaling.confirm_call(
                self._input_call(), self._ga, self._key_fingerprint, self._protocol
            ),
            self._on_confirm_done,
        )

    def _start_confirmed_call(self, call: CallReady) -> None:
        if sha256(call.g_a_or_b) != self._ga_hash:
            self._fail(CallError.GA_HASH_MISMATCH, "wrong g_a hash received")
            return
        auth_key = self._derive(call.g_a_or_b)
        if auth_key is None:
            return
        self._ga = call.g_a_or_b
        self._set_auth_key(auth_key)
        self._create_and_start_controller(call)

    # ------------------------------------------------------------------
    # Voice engine
    # ------------------------------------------------------------------

    def _create_and_start_controller(self, call: CallReady) -> None:
        if not self._exchanging_keys():
            return
        if not self._check_common_fields(call):
            return
        if call.key_fingerprint != self._key_fingerprint:
            self._fail(CallError.FINGERPRINT_MISMATCH, "wrong call fingerprint")
            return
        if call.connection is None:
            self._fail(
                CallError.MISSING_CONNECTION, "expected a connection in CallReady"
            )
            return
        if self._controller is not None:
            self._log("controller already started")
            return

        params = ControllerParams(
            encryption_key=self._auth_key,
            is_outgoing=self.direction == CallDirection.OUTGOING,
            endpoints=(call.connection, *call.alternative_connections),
            protocol=self._protocol,
            init_timeout=self._settings.connect_timeout_ms / 1000,
            recv_timeout=self._settings.packet_timeout_ms / 1000,
            mute=self._mute,
            server_config=dict(self._settings.server_config),
        )
        self._controller_generation += 1
        callback = functools.partial(
            self._on_controller_state_threadsafe, self._controller_generation
        )
        self._log("starting voice engine with %d endpoints", len(params.endpoints))
        try:
            self._controller = self._controller_factory(params, callback)
            self._controller.start()
        except Exception:
            logger.exception("Voice engine failed to start")
            self._fail(CallError.CONTROLLER_FAILED, "voice engine failed to start")

    def _on_controller_state_threadsafe(
        self, generation: int, state: ControllerState, error: int
    ) -> None:
        # Engine thread: only enqueue, never touch session fields here.
        try:
            self._loop.call_soon_threadsafe(
                self._handle_controller_state, generation, state, error
            )
        except RuntimeError:
            logger.debug("Dropping voice engine state %s: loop closed", state)

    def _handle_controller_state(
        self, generation: int, state: ControllerState, error: int
    ) -> None:
        if (
            not self._alive
            or generation != self._controller_generation
            or self._controller is None
        ):
            logger.debug("Stale voice engine state %s ignored", state)
            return
        self._log("voice engine state %s", ControllerState(state).name)
        if state == ControllerState.WAIT_INIT:
            if self._state in _CONNECTING_STATES:
                self._set_state(State.WAITING_INIT)
        elif state == ControllerState.WAIT_INIT_ACK:
            if self._state in _CONNECTING_STATES:
                self._set_state(State.WAITING_INIT_ACK)
        elif state == ControllerState.ESTABLISHED:
            if self._state in _CONNECTING_STATES:
                self._set_state(State.ESTABLISHED)
        elif state == ControllerState.FAILED:
            self._handle_controller_error(error)
        elif state == ControllerState.CLOSED:
            self.finish(FinishType.ENDED, DiscardReason.DISCONNECT)
        elif state == ControllerState.RECONNECTING:
            pass
        else:
            logger.error("Call Error: unexpected voice engine state %s", state)

    def _handle_controller_error(self, error: int) -> None:
        try:
            name = ControllerError(error).name
        except ValueError:
            name = str(error)
        self._fail(CallError.CONTROLLER_FAILED, f"voice engine error {name}")

    def _destroy_controller(self) -> None:
        if self._controller is None:
            return
        controller = self._controller
        # Bump first: anything the engine reports from now on is stale.
        self._controller_generation += 1
        self._log("destroying voice engine")
        self._controller_debug = controller.debug_log()
        controller.stop()
        self._controller = None
