"""Call diagnostics webapp, aiohttp-based."""

from __future__ import annotations

import aiohttp_jinja2
import jinja2
from aiohttp import web

from peercall.call.manager import CallManager
from peercall.call.session import CallSession

_manager_key = web.AppKey("manager", CallManager)


def _call_row(call: CallSession, current: CallSession | None) -> dict[str, object]:
    return {
        "call_id": call.call_id,
        "peer_id": call.peer_id,
        "direction": str(call.direction),
        "state": str(call.state),
        "duration_s": call.duration_ms() // 1000,
        "last_error": call.last_error.name,
        "fingerprint": call.fingerprint_code() or "",
        "current": call is current,
    }


async def _index_handler(request: web.Request) -> web.Response:
    manager = request.app[_manager_key]
    current = manager.current_call
    context = {
        "self_id": manager.self_id,
        "dh_version": manager.dh_cache.version,
        "calls": [_call_row(call, current) for call in manager.recent_calls],
    }
    return aiohttp_jinja2.render_template("calls.html", request, context)


async def _debug_handler(request: web.Request) -> web.Response:
    manager = request.app[_manager_key]
    try:
        call_id = int(request.match_info["call_id"])
    except ValueError:
        raise web.HTTPNotFound() from None
    call = manager.find_call(call_id)
    if call is None:
        raise web.HTTPNotFound()
    return web.Response(text=call.debug_log())


async def _start_call_handler(request: web.Request) -> web.Response:
    manager = request.app[_manager_key]
    data = await request.post()
    try:
        peer_id = int(str(data.get("peer_id", "")).strip())
    except ValueError:
        return web.Response(status=400, text="peer_id must be an integer")
    call = await manager.start_outgoing_call(peer_id)
    if call is None:
        return web.Response(status=409, text="A call is already in progress")
    raise web.HTTPSeeOther(location="/")


async def _hangup_handler(request: web.Request) -> web.Response:
    manager = request.app[_manager_key]
    if manager.current_call is not None:
        manager.current_call.hangup()
    raise web.HTTPSeeOther(location="/")


def create_app(manager: CallManager) -> web.Application:
    app = web.Application()
    aiohttp_jinja2.setup(
        app,
        loader=jinja2.PackageLoader("peercall"),
        autoescape=jinja2.select_autoescape(),
    )
    app[_manager_key] = manager
    app.router.add_get("/", _index_handler)
    app.router.add_get("/calls/{call_id}/debug", _debug_handler)
    app.router.add_post("/calls", _start_call_handler)
    app.router.add_post("/hangup", _hangup_handler)
    return app


async def start_webapp(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    return runner


async def stop_webapp(runner: web.AppRunner) -> None:
    await runner.cleanup()
