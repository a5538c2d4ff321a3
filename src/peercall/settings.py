"""Call timing and protocol settings.

Defaults come from the environment (``main.py`` loads ``.env`` first); the
signaling server may later push overrides as a flat string map.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import Mapping

logger = logging.getLogger(__name__)

# Server config key -> settings field
_SERVER_KEYS = {
    "call_receive_timeout_ms": "receive_timeout_ms",
    "call_ring_timeout_ms": "ring_timeout_ms",
    "call_connect_timeout_ms": "connect_timeout_ms",
    "call_packet_timeout_ms": "packet_timeout_ms",
}

# Environment variable -> settings field
_ENV_KEYS = {
    "PEERCALL_RECEIVE_TIMEOUT_MS": "receive_timeout_ms",
    "PEERCALL_RING_TIMEOUT_MS": "ring_timeout_ms",
    "PEERCALL_CONNECT_TIMEOUT_MS": "connect_timeout_ms",
    "PEERCALL_PACKET_TIMEOUT_MS": "packet_timeout_ms",
    "PEERCALL_HANGUP_TIMEOUT_MS": "hangup_timeout_ms",
    "PEERCALL_MIN_LAYER": "min_layer",
    "PEERCALL_MAX_LAYER": "max_layer",
}


@dataclasses.dataclass
class CallSettings:
    receive_timeout_ms: int = 20000  # callee's device must acknowledge
    ring_timeout_ms: int = 90000  # callee must answer
    connect_timeout_ms: int = 30000  # voice engine init
    packet_timeout_ms: int = 10000  # voice engine silence
    hangup_timeout_ms: int = 5000  # discard reply before forcing final state
    min_layer: int = 65
    max_layer: int = 65
    server_config: dict[str, str] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> CallSettings:
        if environ is None:
            environ = os.environ
        settings = cls()
        for env_key, field in _ENV_KEYS.items():
            raw = environ.get(env_key)
            if raw is not None:
                settings._set_int(field, raw, env_key)
        if settings.min_layer > settings.max_layer:
            raise ValueError(
                f"min_layer {settings.min_layer} exceeds max_layer {settings.max_layer}"
            )
        return settings

    def update_from_server(self, data: Mapping[str, str]) -> None:
        """Apply a server-pushed config map; unknown keys are kept verbatim."""
        for key, raw in data.items():
            field = _SERVER_KEYS.get(key)
            if field is not None:
                self._set_int(field, raw, key)
            else:
                self.server_config[key] = raw

    def _set_int(self, field: str, raw: str, source: str) -> None:
        try:
            value = int(raw)
        except ValueError:
            logger.warning("Ignoring non-integer %s=%r", source, raw)
            return
        if value <= 0:
            logger.warning("Ignoring non-positive %s=%r", source, raw)
            return
        setattr(self, field, value)
