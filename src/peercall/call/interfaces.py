"""Collaborators a call session talks to.

Production code and tests provide their own implementations; the session
only relies on the methods declared here.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from enum import IntEnum, StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from peercall.call.messages import (
    CallProtocol,
    CallUpdate,
    DiscardReason,
    InputCall,
    PhoneConnection,
)
from peercall.dh.config import DhConfig, DhConfigReply

if TYPE_CHECKING:
    from peercall.call.session import CallSession


class Sound(StrEnum):
    CONNECTING = "connecting"
    BUSY = "busy"
    ENDED = "ended"


class ControllerState(IntEnum):
    """States reported by the voice engine's state callback."""

    WAIT_INIT = 1
    WAIT_INIT_ACK = 2
    ESTABLISHED = 3
    FAILED = 4
    RECONNECTING = 5
    CLOSED = 6


class ControllerError(IntEnum):
    UNKNOWN = 0
    INCOMPATIBLE = 1
    TIMEOUT = 2
    AUDIO_IO = 3


class Delegate(Protocol):
    def fetch_dh_config(self) -> DhConfig | None: ...

    def call_finished(self, call: CallSession) -> None: ...

    def call_failed(self, call: CallSession) -> None: ...

    def call_redial(self, call: CallSession) -> None: ...

    def play_sound(self, sound: Sound) -> None: ...


class SignalingClient(Protocol):
    """RPC surface of the signaling channel. Failures raise ``RpcError``."""

    async def get_dh_config(
        self, version: int, random_length: int
    ) -> DhConfigReply: ...

    async def request_call(
        self,
        user_id: int,
        random_id: int,
        g_a_hash: bytes,
        protocol: CallProtocol,
    ) -> CallUpdate: ...

    async def received_call(self, call: InputCall) -> bool: ...

    async def accept_call(
        self, call: InputCall, g_b: bytes, protocol: CallProtocol
    ) -> CallUpdate: ...

    async def confirm_call(
        self,
        call: InputCall,
        g_a: bytes,
        key_fingerprint: int,
        protocol: CallProtocol,
    ) -> CallUpdate: ...

    async def discard_call(
        self,
        call: InputCall,
        duration: int,
        reason: DiscardReason,
        connection_id: int,
    ) -> None: ...

    async def save_call_debug(self, call: InputCall, debug: str) -> None: ...


@dataclasses.dataclass(frozen=True)
class ControllerParams:
    """Everything the voice engine needs once the key is agreed."""

    encryption_key: bytes
    is_outgoing: bool
    endpoints: tuple[PhoneConnection, ...]
    protocol: CallProtocol
    init_timeout: float
    recv_timeout: float
    mute: bool = False
    server_config: dict[str, Any] = dataclasses.field(default_factory=dict)


class VoiceTransportController(Protocol):
    preferred_relay_id: int

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def set_mic_mute(self, mute: bool) -> None: ...

    def last_error(self) -> int: ...

    def debug_log(self) -> str: ...


# Called from any thread the engine likes.
ControllerStateCallback = Callable[[ControllerState, int], None]
ControllerFactory = Callable[
    [ControllerParams, ControllerStateCallback], VoiceTransportController
]
