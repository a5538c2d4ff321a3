"""DH domain parameters: validation and the process-wide cache."""

from __future__ import annotations

import dataclasses
import logging
import secrets
from collections.abc import Awaitable, Callable

from peercall.dh.keyexchange import (
    PRIME_BITS,
    RANDOM_POWER_SIZE,
    CallError,
    KeyExchangeError,
    bytes_to_int,
)

logger = logging.getLogger(__name__)

# Server-issued 2048-bit safe prime; accepted without re-running primality
# tests when paired with one of its known generators.
KNOWN_GOOD_PRIME = bytes.fromhex(
    "C71CAEB9C6B1C9048E6C522F70F13F73980D40238E3E21C14934D037563D930F"
    "48198A0AA7C14058229493D22530F4DBFA336F6E0AC925139543AED44CCE7C37"
    "20FD51F69458705AC68CD4FE6B6B13ABDC9746512969328454F18FAF8C595F64"
    "2477FE96BB2A941D5BCD1D4AC8CC49880708FA9B378E3C4F3A9060BEE67CF9A4"
    "A4A695811051907E162753B56B0F6B410DBA74D8A84B2A14B3144E0EF1284754"
    "FD17ED950D5965B4B9DD46582DB1178D169C6BC465B0D6FF9CA3928FEF5B9AE4"
    "E418FC15E83EBEA0F87FA9FF5EED70050DED2849F47BF959D956850CE929851F"
    "0D8115F635B105EE2E4E15D04B2454BF6F4FADF034B10403119CD8E3B92FCC5B"
)
_KNOWN_GOOD_GENERATORS = (3, 4, 5, 7)

MILLER_RABIN_ROUNDS = 20
_SMALL_PRIMES = (3, 5, 7, 11, 13, 17, 19, 23, 29, 31, 37, 41, 43, 47, 53, 59, 61)


@dataclasses.dataclass(frozen=True)
class DhConfig:
    """Agreed Diffie-Hellman group. Frozen: sessions hold snapshots."""

    version: int
    g: int
    p: bytes


@dataclasses.dataclass(frozen=True)
class DhConfigReply:
    """Reply to a DH config request.

    ``config`` is None when the server's version equals the one we sent.
    ``random`` is server entropy mixed into the next secret exponent.
    """

    config: DhConfig | None
    random: bytes


DhConfigFetcher = Callable[[int, int], Awaitable[DhConfigReply]]


def is_probable_prime(n: int, rounds: int = MILLER_RABIN_ROUNDS) -> bool:
    """Miller-Rabin with random bases."""
    if n < 2:
        return False
    if n in (2, *_SMALL_PRIMES):
        return True
    if n % 2 == 0 or any(n % q == 0 for q in _SMALL_PRIMES):
        return False
    d = n - 1
    s = 0
    while d % 2 == 0:
        d //= 2
        s += 1
    for _ in range(rounds):
        a = 2 + secrets.randbelow(n - 3)
        x = pow(a, d, n)
        if x in (1, n - 1):
            continue
        for _ in range(s - 1):
            x = pow(x, 2, n)
            if x == n - 1:
                break
        else:
            return False
    return True


def _generator_residue_ok(prime: int, g: int) -> bool:
    """g must generate the subgroup of order (p-1)/2."""
    if g == 2:
        return prime % 8 == 7
    if g == 3:
        return prime % 3 == 2
    if g == 4:
        return True
    if g == 5:
        return prime % 5 in (1, 4)
    if g == 6:
        return prime % 24 in (19, 23)
    if g == 7:
        return prime % 7 in (3, 5, 6)
    logger.warning("Bad DH generator g=%d", g)
    return False


def is_prime_and_good(p: bytes, g: int) -> bool:
    """Full safe-prime group check for ``(p, g)``."""
    if p == KNOWN_GOOD_PRIME and g in _KNOWN_GOOD_GENERATORS:
        return True
    prime = bytes_to_int(p)
    if prime.bit_length() != PRIME_BITS:
        logger.warning("DH prime has %d bits", prime.bit_length())
        return False
    if not _generator_residue_ok(prime, g):
        return False
    if not is_probable_prime(prime):
        logger.warning("DH prime is not prime")
        return False
    if not is_probable_prime((prime - 1) // 2):
        logger.warning("DH prime is not a safe prime")
        return False
    return True


def validate_dh_config(config: DhConfig) -> None:
    if not config.p or not is_prime_and_good(config.p, config.g):
        raise KeyExchangeError(
            CallError.BAD_DH_CONFIG, f"bad DH config version {config.version}"
        )


class DhConfigCache:
    """Versioned holder for the current DH group.

    Single writer (``update``); readers take ``snapshot()`` and keep it.
    Because ``DhConfig`` is frozen, swapping the reference never mutates a
    group a running session already captured.
    """

    def __init__(self, initial: DhConfig | None = None) -> None:
        self._config: DhConfig | None = None
        if initial is not None:
            self.update(initial)

    @property
    def version(self) -> int:
        return self._config.version if self._config is not None else 0

    def snapshot(self) -> DhConfig | None:
        return self._config

    def update(self, config: DhConfig) -> bool:
        """Install ``config`` if it is newer. Returns True when swapped."""
        if self._config is not None and config.version <= self._config.version:
            logger.debug(
                "Ignoring DH config version %d (have %d)",
                config.version,
                self._config.version,
            )
            return False
        validate_dh_config(config)
        self._config = config
        logger.info("DH config updated to version %d", config.version)
        return True

    async def refresh(self, fetch: DhConfigFetcher) -> bytes:
        """Ask the server for a newer group; return its random seed."""
        reply = await fetch(self.version, RANDOM_POWER_SIZE)
        if reply.config is not None:
            self.update(reply.config)
        elif self._config is None:
            raise KeyExchangeError(
                CallError.BAD_DH_CONFIG, "server sent no DH config"
            )
        if len(reply.random) != RANDOM_POWER_SIZE:
            raise KeyExchangeError(
                CallError.BAD_DH_CONFIG,
                f"server random has bad length {len(reply.random)}",
            )
        return reply.random
