"""Tests for DH group validation and the config cache."""

import pytest

from peercall.dh.config import (
    KNOWN_GOOD_PRIME,
    DhConfig,
    DhConfigCache,
    DhConfigReply,
    is_prime_and_good,
    is_probable_prime,
)
from peercall.dh.keyexchange import CallError, KeyExchangeError, bytes_to_int

# RFC 3526 group 14: 2048-bit safe prime, p = 7 (mod 8) so g = 2 is valid.
RFC3526_PRIME = bytes.fromhex(
    "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD1"
    "29024E088A67CC74020BBEA63B139B22514A08798E3404DD"
    "EF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245"
    "E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7ED"
    "EE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3D"
    "C2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F"
    "83655D23DCA3AD961C62F356208552BB9ED529077096966D"
    "670C354E4ABC9804F1746C08CA18217C32905E462E36CE3B"
    "E39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9"
    "DE2BCBF6955817183995497CEA956AE515D2261898FA0510"
    "15728E5A8AACAA68FFFFFFFFFFFFFFFF"
)


def _config(version: int, g: int = 3, p: bytes = KNOWN_GOOD_PRIME) -> DhConfig:
    return DhConfig(version=version, g=g, p=p)


def test_probable_prime_small_values():
    assert is_probable_prime(2)
    assert is_probable_prime(2**127 - 1)
    assert not is_probable_prime(1)
    assert not is_probable_prime(561)  # Carmichael number
    assert not is_probable_prime((2**127 - 1) * (2**61 - 1))


def test_known_prime_fast_path():
    for g in (3, 4, 5, 7):
        assert is_prime_and_good(KNOWN_GOOD_PRIME, g)


def test_known_prime_is_a_safe_prime():
    prime = bytes_to_int(KNOWN_GOOD_PRIME)
    assert is_probable_prime(prime)
    assert is_probable_prime((prime - 1) // 2)


def test_rfc_prime_with_generator_two_accepted():
    assert is_prime_and_good(RFC3526_PRIME, 2)


def test_generator_residue_rule_rejects():
    # KNOWN_GOOD_PRIME is 3 mod 8, so 2 does not generate the right subgroup.
    assert not is_prime_and_good(KNOWN_GOOD_PRIME, 2)
    # g = 6 needs p = 19 or 23 (mod 24); KNOWN_GOOD_PRIME is 11.
    assert not is_prime_and_good(KNOWN_GOOD_PRIME, 6)


def test_unsupported_generator_rejected():
    assert not is_prime_and_good(RFC3526_PRIME, 11)


def test_composite_rejected():
    prime = bytes_to_int(RFC3526_PRIME)
    # Still 2048 bits and 7 mod 8, but divisible by 3.
    almost = (prime - 8).to_bytes(256, "big")
    assert not is_prime_and_good(almost, 2)


def test_short_prime_rejected():
    assert not is_prime_and_good(KNOWN_GOOD_PRIME[1:], 3)


def test_cache_starts_empty():
    cache = DhConfigCache()
    assert cache.version == 0
    assert cache.snapshot() is None


def test_cache_update_is_version_gated():
    cache = DhConfigCache(_config(2))
    assert not cache.update(_config(1, g=4))
    assert not cache.update(_config(2, g=4))
    assert cache.snapshot().g == 3
    assert cache.update(_config(3, g=5))
    assert cache.version == 3


def test_cache_rejects_bad_group():
    cache = DhConfigCache()
    with pytest.raises(KeyExchangeError) as exc_info:
        cache.update(_config(1, g=2))
    assert exc_info.value.code == CallError.BAD_DH_CONFIG
    assert cache.snapshot() is None


def test_snapshot_survives_update():
    cache = DhConfigCache(_config(1))
    held = cache.snapshot()
    cache.update(_config(2, g=5))
    assert held.version == 1
    assert held.g == 3


@pytest.mark.asyncio
async def test_refresh_installs_new_config():
    cache = DhConfigCache()
    seen = []

    async def fetch(version, length):
        seen.append((version, length))
        return DhConfigReply(config=_config(4), random=b"\x01" * length)

    random = await cache.refresh(fetch)
    assert seen == [(0, 256)]
    assert random == b"\x01" * 256
    assert cache.version == 4


@pytest.mark.asyncio
async def test_refresh_not_modified_keeps_config():
    cache = DhConfigCache(_config(4))

    async def fetch(version, length):
        return DhConfigReply(config=None, random=b"\x02" * length)

    await cache.refresh(fetch)
    assert cache.version == 4


@pytest.mark.asyncio
async def test_refresh_without_any_config_fails():
    cache = DhConfigCache()

    async def fetch(version, length):
        return DhConfigReply(config=None, random=b"\x02" * length)

    with pytest.raises(KeyExchangeError):
        await cache.refresh(fetch)


@pytest.mark.asyncio
async def test_refresh_bad_random_length_fails():
    cache = DhConfigCache(_config(1))

    async def fetch(version, length):
        return DhConfigReply(config=None, random=b"\x02" * 10)

    with pytest.raises(KeyExchangeError) as exc_info:
        await cache.refresh(fetch)
    assert exc_info.value.code == CallError.BAD_DH_CONFIG
