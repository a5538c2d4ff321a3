"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from peercall.call.interfaces import (
    ControllerParams,
    ControllerState,
    ControllerStateCallback,
    Sound,
)
from peercall.call.messages import (
    CallProtocol,
    DiscardReason,
    InputCall,
    PhoneConnection,
)
from peercall.call.session import CallDirection, CallSession
from peercall.dh.config import KNOWN_GOOD_PRIME, DhConfig
from peercall.settings import CallSettings

SELF_ID = 1
PEER_ID = 2
CALL_ID = 77
ACCESS_HASH = 5555
PROTOCOL = CallProtocol(min_layer=65, max_layer=65)
TEST_DH_CONFIG = DhConfig(version=1, g=3, p=KNOWN_GOOD_PRIME)
CONNECTION = PhoneConnection(
    id=9, ip="127.0.0.1", ipv6="::1", port=1400, peer_tag=b"\x01" * 16
)


async def settle(rounds: int = 10) -> None:
    """Let pending tasks and their done callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeDelegate:
    """Records every delegate notification."""

    def __init__(self, config: DhConfig | None = TEST_DH_CONFIG) -> None:
        self.config = config
        self.finished: list[CallSession] = []
        self.failed: list[CallSession] = []
        self.redials: list[CallSession] = []
        self.sounds: list[Sound] = []

    def fetch_dh_config(self) -> DhConfig | None:
        return self.config

    def call_finished(self, call: CallSession) -> None:
        self.finished.append(call)

    def call_failed(self, call: CallSession) -> None:
        self.failed.append(call)

    def call_redial(self, call: CallSession) -> None:
        self.redials.append(call)

    def play_sound(self, sound: Sound) -> None:
        self.sounds.append(sound)


class FakeSignaling:
    """Scripted signaling client.

    ``replies[name]`` is returned as-is, raised when it is an exception, or
    called with the request arguments when callable.
    """

    def __init__(self) -> None:
        self.requests: list[tuple[str, tuple[Any, ...]]] = []
        self.replies: dict[str, Any] = {}

    async def _reply(self, name: str, *args: Any) -> Any:
        self.requests.append((name, args))
        reply = self.replies.get(name)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(*args)
        return reply

    def sent(self, name: str) -> list[tuple[Any, ...]]:
        return [args for request, args in self.requests if request == name]

    async def get_dh_config(self, version: int, random_length: int) -> Any:
        return await self._reply("get_dh_config", version, random_length)

    async def request_call(
        self, user_id: int, random_id: int, g_a_hash: bytes, protocol: CallProtocol
    ) -> Any:
        return await self._reply(
            "request_call", user_id, random_id, g_a_hash, protocol
        )

    async def received_call(self, call: InputCall) -> Any:
        return await self._reply("received_call", call)

    async def accept_call(
        self, call: InputCall, g_b: bytes, protocol: CallProtocol
    ) -> Any:
        return await self._reply("accept_call", call, g_b, protocol)

    async def confirm_call(
        self, call: InputCall, g_a: bytes, key_fingerprint: int, protocol: CallProtocol
    ) -> Any:
        return await self._reply(
            "confirm_call", call, g_a, key_fingerprint, protocol
        )

    async def discard_call(
        self,
        call: InputCall,
        duration: int,
        reason: DiscardReason,
        connection_id: int,
    ) -> Any:
        return await self._reply(
            "discard_call", call, duration, reason, connection_id
        )

    async def save_call_debug(self, call: InputCall, debug: str) -> Any:
        return await self._reply("save_call_debug", call, debug)


class FakeController:
    """Voice engine stand-in; tests drive ``report`` by hand."""

    def __init__(self, params: ControllerParams, on_state: ControllerStateCallback):
        self.params = params
        self.on_state = on_state
        self.preferred_relay_id = 42
        self.mute = params.mute
        self.started = False
        self.stopped = False

    def report(self, state: ControllerState, error: int = 0) -> None:
        self.on_state(state, error)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def set_mic_mute(self, mute: bool) -> None:
        self.mute = mute

    def last_error(self) -> int:
        return 0

    def debug_log(self) -> str:
        return "fake engine log"


class ControllerRecorder:
    def __init__(self) -> None:
        self.controllers: list[FakeController] = []

    def __call__(
        self, params: ControllerParams, on_state: ControllerStateCallback
    ) -> FakeController:
        controller = FakeController(params, on_state)
        self.controllers.append(controller)
        return controller


@pytest.fixture
def delegate() -> FakeDelegate:
    return FakeDelegate()


@pytest.fixture
def signaling() -> FakeSignaling:
    return FakeSignaling()


@pytest.fixture
def controllers() -> ControllerRecorder:
    return ControllerRecorder()


@pytest.fixture
def settings() -> CallSettings:
    return CallSettings()


def make_session(
    delegate: FakeDelegate,
    signaling: FakeSignaling,
    controllers: ControllerRecorder,
    direction: CallDirection,
    settings: CallSettings | None = None,
) -> CallSession:
    return CallSession(
        delegate,
        signaling,
        self_id=SELF_ID,
        peer_id=PEER_ID,
        direction=direction,
        controller_factory=controllers,
        settings=settings,
        loop=asyncio.get_running_loop(),
    )
