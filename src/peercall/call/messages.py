"""Structured fields of call signaling requests and updates.

Wire encoding belongs to the signaling transport; these dataclasses are the
shapes the session produces and consumes.
"""

from __future__ import annotations

import dataclasses
from enum import StrEnum


class DiscardReason(StrEnum):
    MISSED = "missed"
    DISCONNECT = "disconnect"
    HANGUP = "hangup"
    BUSY = "busy"


class RpcError(Exception):
    """A signaling request was rejected, e.g. ``USER_PRIVACY_RESTRICTED``."""

    def __init__(self, error_type: str, code: int = 400) -> None:
        super().__init__(f"{code} {error_type}")
        self.type = error_type
        self.code = code


@dataclasses.dataclass(frozen=True)
class CallProtocol:
    """Supported library layer range and connection kinds."""

    min_layer: int
    max_layer: int
    udp_p2p: bool = True
    udp_reflector: bool = True

    def compatible_with(self, other: CallProtocol) -> bool:
        return (
            self.min_layer <= other.max_layer
            and other.min_layer <= self.max_layer
            and (
                (self.udp_p2p and other.udp_p2p)
                or (self.udp_reflector and other.udp_reflector)
            )
        )

    def intersection(self, other: CallProtocol) -> CallProtocol:
        return CallProtocol(
            min_layer=max(self.min_layer, other.min_layer),
            max_layer=min(self.max_layer, other.max_layer),
            udp_p2p=self.udp_p2p and other.udp_p2p,
            udp_reflector=self.udp_reflector and other.udp_reflector,
        )


@dataclasses.dataclass(frozen=True)
class InputCall:
    """Reference to a server-side call: id plus access hash."""

    id: int
    access_hash: int


@dataclasses.dataclass(frozen=True)
class PhoneConnection:
    """A relay or peer endpoint the voice engine may connect to."""

    id: int
    ip: str
    ipv6: str
    port: int
    peer_tag: bytes


@dataclasses.dataclass(frozen=True)
class CallRequested:
    """Pushed to the callee: someone wants to call, ``g_a`` still hidden."""

    id: int
    access_hash: int
    admin_id: int
    participant_id: int
    g_a_hash: bytes
    protocol: CallProtocol


@dataclasses.dataclass(frozen=True)
class CallWaiting:
    """Call exists on the server; ``receive_date`` set once callee rings."""

    id: int
    access_hash: int
    admin_id: int
    participant_id: int
    protocol: CallProtocol
    receive_date: int = 0


@dataclasses.dataclass(frozen=True)
class CallAccepted:
    """Pushed to the caller: callee answered with ``g_b``."""

    id: int
    access_hash: int
    admin_id: int
    participant_id: int
    g_b: bytes
    protocol: CallProtocol


@dataclasses.dataclass(frozen=True)
class CallReady:
    """Keys confirmed; carries the other side's public value and endpoints."""

    id: int
    access_hash: int
    admin_id: int
    participant_id: int
    g_a_or_b: bytes
    key_fingerprint: int
    protocol: CallProtocol
    connection: PhoneConnection | None
    alternative_connections: tuple[PhoneConnection, ...] = ()
    start_date: int = 0


@dataclasses.dataclass(frozen=True)
class CallDiscarded:
    id: int
    reason: DiscardReason | None = None
    need_debug: bool = False
    duration: int = 0


@dataclasses.dataclass(frozen=True)
class CallEmpty:
    id: int


CallUpdate = (
    CallRequested | CallWaiting | CallAccepted | CallReady | CallDiscarded | CallEmpty
)
