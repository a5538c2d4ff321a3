"""Telephone-quality notification tones and the waiting-sound level meter.

All generators return ``list[float]`` normalised roughly to [-1, 1] at 8 kHz.
Playing them is up to the sound collaborator.
"""

from __future__ import annotations

import functools
import math

from peercall.call.interfaces import Sound

SAMPLE_RATE = 8000
# Level meter window for the waiting sound animation.
SOUND_SAMPLE_MS = 100


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------


def tone(freqs: tuple[float, ...], duration_s: float, gain: float = 0.5) -> list[float]:
    """Sum of sines with a 5ms linear attack/release to avoid clicks."""
    n = int(SAMPLE_RATE * duration_s)
    ramp = max(1, int(SAMPLE_RATE * 0.005))
    out: list[float] = []
    for i in range(n):
        t = i / SAMPLE_RATE
        val = sum(math.sin(2.0 * math.pi * f * t) for f in freqs) / len(freqs)
        env = min(1.0, i / ramp, (n - i) / ramp)
        out.append(gain * env * val)
    return out


def silence(duration_s: float) -> list[float]:
    return [0.0] * int(SAMPLE_RATE * duration_s)


def mix_into(dest: list[float], src: list[float], offset: int, gain: float) -> None:
    """Add src samples into dest at offset with gain."""
    for i, s in enumerate(src):
        pos = offset + i
        if pos < len(dest):
            dest[pos] += s * gain


def cadence(on: list[float], off_s: float, repeats: int) -> list[float]:
    """``repeats`` copies of ``on`` separated by ``off_s`` of silence."""
    gap = silence(off_s)
    out: list[float] = []
    for _ in range(repeats):
        out.extend(on)
        out.extend(gap)
    return out


# ---------------------------------------------------------------------------
# Sounds
# ---------------------------------------------------------------------------


def ringback_track() -> list[float]:
    """Caller hears this while the callee rings: 440+480 Hz, 2s on / 4s off."""
    return cadence(tone((440.0, 480.0), 2.0), 4.0, 1)


def incoming_ring_track() -> list[float]:
    """Callee's ring: two short bursts then a pause."""
    burst = tone((440.0, 480.0), 0.4, gain=0.7)
    pattern = burst + silence(0.2) + burst
    return pattern + silence(2.0)


def connecting_sound() -> list[float]:
    """Two rising blips while keys are exchanged."""
    return tone((660.0,), 0.08) + silence(0.05) + tone((880.0,), 0.08)


def busy_sound() -> list[float]:
    """480+620 Hz, 0.5s on / 0.5s off, three times."""
    return cadence(tone((480.0, 620.0), 0.5), 0.5, 3)


def ended_sound() -> list[float]:
    """Three descending notes."""
    out = silence(0.36)
    for idx, freq in enumerate((880.0, 660.0, 440.0)):
        mix_into(out, tone((freq,), 0.1), int(idx * 0.12 * SAMPLE_RATE), 1.0)
    return out


def render_sound(sound: Sound) -> list[float]:
    if sound == Sound.CONNECTING:
        return connecting_sound()
    if sound == Sound.BUSY:
        return busy_sound()
    return ended_sound()


# ---------------------------------------------------------------------------
# Waiting sound level
# ---------------------------------------------------------------------------


def peak_levels(samples: list[float], window_ms: int = SOUND_SAMPLE_MS) -> list[float]:
    """Absolute peak of each ``window_ms`` slice."""
    step = max(1, SAMPLE_RATE * window_ms // 1000)
    return [
        max((abs(s) for s in samples[i : i + step]), default=0.0)
        for i in range(0, len(samples), step)
    ]


@functools.cache
def waiting_peaks(outgoing: bool) -> tuple[float, ...]:
    samples = ringback_track() if outgoing else incoming_ring_track()
    return tuple(peak_levels(samples)) or (0.0,)


class WaitingTrack:
    """Looping waiting sound, reduced to its per-window peaks."""

    def __init__(self, peaks: tuple[float, ...], started_at: float) -> None:
        self._peaks = peaks or (0.0,)
        self._started_at = started_at

    def peak_value(self, now: float) -> float:
        elapsed_ms = max(0.0, now - self._started_at) * 1000.0
        index = int(elapsed_ms // SOUND_SAMPLE_MS) % len(self._peaks)
        return self._peaks[index]
