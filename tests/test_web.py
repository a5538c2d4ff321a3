"""Tests for the call diagnostics webapp."""

from __future__ import annotations

import pytest
from aiohttp.test_utils import TestClient, TestServer

from peercall.call.manager import CallManager
from peercall.call.messages import CallWaiting
from peercall.dh.config import DhConfigReply
from peercall.web import create_app

from .conftest import (
    ACCESS_HASH,
    CALL_ID,
    PEER_ID,
    PROTOCOL,
    SELF_ID,
    TEST_DH_CONFIG,
    ControllerRecorder,
    FakeSignaling,
    settle,
)


def _make_manager(signaling: FakeSignaling) -> CallManager:
    signaling.replies["get_dh_config"] = DhConfigReply(
        config=TEST_DH_CONFIG, random=b"\x03" * 256
    )
    signaling.replies["request_call"] = CallWaiting(
        id=CALL_ID,
        access_hash=ACCESS_HASH,
        admin_id=SELF_ID,
        participant_id=PEER_ID,
        protocol=PROTOCOL,
    )
    return CallManager(
        signaling, self_id=SELF_ID, controller_factory=ControllerRecorder()
    )


@pytest.mark.asyncio
async def test_index_renders_without_calls(signaling):
    app = create_app(_make_manager(signaling))
    async with TestClient(TestServer(app)) as client:
        resp = await client.get("/")
        assert resp.status == 200
        text = await resp.text()
        assert "Calls" in text
        assert "No calls yet." in text


@pytest.mark.asyncio
async def test_index_lists_recent_calls(signaling):
    manager = _make_manager(signaling)
    await manager.start_outgoing_call(PEER_ID)
    await settle()
    app = create_app(manager)
    async with TestClient(TestServer(app)) as client:
        resp = await client.get("/")
        assert resp.status == 200
        text = await resp.text()
        assert str(CALL_ID) in text
        assert "waiting" in text
        assert f"/calls/{CALL_ID}/debug" in text


@pytest.mark.asyncio
async def test_debug_log_export(signaling):
    manager = _make_manager(signaling)
    await manager.start_outgoing_call(PEER_ID)
    await settle()
    app = create_app(manager)
    async with TestClient(TestServer(app)) as client:
        resp = await client.get(f"/calls/{CALL_ID}/debug")
        assert resp.status == 200
        text = await resp.text()
        assert f"call_id={CALL_ID}" in text
        assert "state requesting -> waiting" in text


@pytest.mark.asyncio
async def test_debug_log_unknown_call_404(signaling):
    app = create_app(_make_manager(signaling))
    async with TestClient(TestServer(app)) as client:
        resp = await client.get("/calls/999/debug")
        assert resp.status == 404
        resp = await client.get("/calls/abc/debug")
        assert resp.status == 404


@pytest.mark.asyncio
async def test_post_starts_call(signaling):
    manager = _make_manager(signaling)
    app = create_app(manager)
    async with TestClient(TestServer(app)) as client:
        resp = await client.post(
            "/calls", data={"peer_id": str(PEER_ID)}, allow_redirects=False
        )
        assert resp.status == 303
        assert manager.current_call is not None
        assert manager.current_call.peer_id == PEER_ID

        resp = await client.post(
            "/calls", data={"peer_id": str(PEER_ID)}, allow_redirects=False
        )
        assert resp.status == 409


@pytest.mark.asyncio
async def test_post_rejects_bad_peer_id(signaling):
    app = create_app(_make_manager(signaling))
    async with TestClient(TestServer(app)) as client:
        resp = await client.post("/calls", data={"peer_id": "bob"})
        assert resp.status == 400


@pytest.mark.asyncio
async def test_hangup_ends_current_call(signaling):
    manager = _make_manager(signaling)
    call = await manager.start_outgoing_call(PEER_ID)
    await settle()
    app = create_app(manager)
    async with TestClient(TestServer(app)) as client:
        resp = await client.post("/hangup", allow_redirects=False)
        assert resp.status == 303
    await settle()
    assert signaling.sent("discard_call")
    assert call.state.value == "ended"
