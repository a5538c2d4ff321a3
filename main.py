"""Peercall loopback demo entrypoint.

Runs two users on an in-process signaling exchange: user 1 is driven from
the diagnostics page, user 2 answers every call automatically.
"""

import asyncio
import logging
import os
import signal

from dotenv import load_dotenv

from peercall.call.interfaces import Sound
from peercall.call.manager import CallManager
from peercall.call.session import CallSession
from peercall.dh.config import KNOWN_GOOD_PRIME, DhConfig
from peercall.loopback import LoopbackExchange
from peercall.settings import CallSettings
from peercall.web import create_app, start_webapp, stop_webapp

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CALLER_ID = 1
CALLEE_ID = 2


def _log_sound(sound: Sound, samples: list[float]) -> None:
    logger.info("Playing %s (%d samples)", sound, len(samples))


def _auto_answer(call: CallSession | None) -> None:
    if call is not None and call.is_incoming_waiting():
        logger.info("Auto-answering call from %d", call.peer_id)
        call.answer()


async def main() -> None:
    load_dotenv()
    settings = CallSettings.from_env(os.environ)
    web_host = os.environ.get("WEB_HOST", "0.0.0.0")
    web_port = int(os.environ.get("WEB_PORT", "8080"))

    loop = asyncio.get_running_loop()
    exchange = LoopbackExchange(DhConfig(version=1, g=3, p=KNOWN_GOOD_PRIME))

    managers: dict[int, CallManager] = {}
    for user_id in (CALLER_ID, CALLEE_ID):
        signaling = exchange.register(
            user_id, lambda update, uid=user_id: managers[uid].handle_update(update)
        )
        managers[user_id] = CallManager(
            signaling,
            self_id=user_id,
            controller_factory=exchange.controller_factory,
            settings=settings,
            sound_player=_log_sound,
        )
    managers[CALLEE_ID].current_call_changed.subscribe(_auto_answer)

    app = create_app(managers[CALLER_ID])
    runner = await start_webapp(app, web_host, web_port)
    logger.info("Diagnostics page on http://%s:%d/", web_host, web_port)

    shutdown = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)
    try:
        await shutdown.wait()
        logger.info("Shutting down...")
    finally:
        for manager in managers.values():
            await manager.shutdown()
        await stop_webapp(runner)


if __name__ == "__main__":
    asyncio.run(main())
