"""Tests for call settings loading."""

import pytest

from peercall.settings import CallSettings


def test_defaults():
    settings = CallSettings.from_env({})
    assert settings.receive_timeout_ms == 20000
    assert settings.ring_timeout_ms == 90000
    assert settings.hangup_timeout_ms == 5000
    assert (settings.min_layer, settings.max_layer) == (65, 65)


def test_env_overrides():
    settings = CallSettings.from_env(
        {
            "PEERCALL_RING_TIMEOUT_MS": "1500",
            "PEERCALL_MIN_LAYER": "60",
            "UNRELATED": "x",
        }
    )
    assert settings.ring_timeout_ms == 1500
    assert settings.min_layer == 60


def test_invalid_env_values_ignored():
    settings = CallSettings.from_env(
        {"PEERCALL_RING_TIMEOUT_MS": "soon", "PEERCALL_CONNECT_TIMEOUT_MS": "-4"}
    )
    assert settings.ring_timeout_ms == 90000
    assert settings.connect_timeout_ms == 30000


def test_layer_range_must_be_ordered():
    with pytest.raises(ValueError):
        CallSettings.from_env({"PEERCALL_MIN_LAYER": "70"})


def test_server_overrides():
    settings = CallSettings()
    settings.update_from_server(
        {"call_receive_timeout_ms": "3000", "audio_max_bitrate": "20000"}
    )
    assert settings.receive_timeout_ms == 3000
    assert settings.server_config == {"audio_max_bitrate": "20000"}
