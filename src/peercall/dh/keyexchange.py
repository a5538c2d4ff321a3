"""Diffie-Hellman arithmetic for the call key exchange.

Every function here is pure: group parameters and random material come in
as arguments, results go out as bytes/ints.  The session layer owns all
state.

Byte strings are big-endian unsigned integers.  Group elements and derived
keys are always ``MODEXP_SIZE`` bytes long, left-padded with zeros, so both
peers hash exactly the same bytes.
"""

from __future__ import annotations

import dataclasses
import hashlib
import secrets
from enum import IntEnum

RANDOM_POWER_SIZE = 256
SHA256_SIZE = 32
MODEXP_SIZE = 256
PRIME_BITS = 2048
# Both g^x and p - g^x must keep at least this many significant bits
MIN_DIFF_BITS = PRIME_BITS - 64


class CallError(IntEnum):
    """Internal failure codes recorded on a session before it fails."""

    NONE = 0
    BAD_DH_CONFIG = 1
    MODEXP_FIRST_FAILED = 2
    BAD_PEER_VALUE = 3
    GA_HASH_MISMATCH = 4
    FINGERPRINT_MISMATCH = 5
    WRONG_ACCESS_HASH = 6
    WRONG_PARTICIPANT = 7
    PROTOCOL_INCOMPATIBLE = 8
    UNEXPECTED_REPLY = 9
    RPC_FAILED = 10
    CONTROLLER_FAILED = 11
    MISSING_CONNECTION = 12
    TIMEOUT = 13


class KeyExchangeError(Exception):
    """Handshake material was rejected."""

    def __init__(self, code: CallError, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclasses.dataclass(frozen=True)
class ModExpFirst:
    """Own secret exponent and the public value ``g^power mod p``."""

    random_power: bytes
    modexp: bytes


def bytes_to_int(data: bytes) -> int:
    return int.from_bytes(data, "big")


def int_to_bytes(value: int, size: int = MODEXP_SIZE) -> bytes:
    return value.to_bytes(size, "big")


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def is_good_modexp_first(value: int, prime: int) -> bool:
    """Check a public group element against the prime.

    The element must lie strictly inside ``(1, p - 1)``, and both it and its
    distance to ``p`` need at least ``MIN_DIFF_BITS`` significant bits.
    """
    if value <= 1 or value >= prime - 1:
        return False
    diff = prime - value
    if diff.bit_length() < MIN_DIFF_BITS or value.bit_length() < MIN_DIFF_BITS:
        return False
    return True


def validate_peer_contribution(value: bytes | int, p: bytes | int) -> int:
    """Return the peer's public value as an int, or raise KeyExchangeError."""
    prime = bytes_to_int(p) if isinstance(p, bytes) else p
    if isinstance(value, bytes):
        if not value or len(value) > MODEXP_SIZE:
            raise KeyExchangeError(
                CallError.BAD_PEER_VALUE,
                f"peer value has bad length {len(value)}",
            )
        number = bytes_to_int(value)
    else:
        number = value
    if not is_good_modexp_first(number, prime):
        raise KeyExchangeError(
            CallError.BAD_PEER_VALUE, "peer value outside the safe range"
        )
    return number


def _mix_random_power(random_seed: bytes) -> bytes:
    """Fresh random bytes XOR-ed with the server-provided seed."""
    own = secrets.token_bytes(RANDOM_POWER_SIZE)
    seed = random_seed[:RANDOM_POWER_SIZE].ljust(RANDOM_POWER_SIZE, b"\x00")
    return bytes(a ^ b for a, b in zip(own, seed, strict=True))


def generate_first_contribution(g: int, p: bytes, random_seed: bytes) -> ModExpFirst:
    """Draw a secret exponent and compute ``g^power mod p``."""
    if g <= 1 or not p:
        raise KeyExchangeError(CallError.BAD_DH_CONFIG, "empty DH parameters")
    prime = bytes_to_int(p)
    random_power = _mix_random_power(random_seed)
    value = pow(g, bytes_to_int(random_power), prime)
    if not is_good_modexp_first(value, prime):
        raise KeyExchangeError(
            CallError.MODEXP_FIRST_FAILED, "could not compute mod-exp first"
        )
    return ModExpFirst(random_power=random_power, modexp=int_to_bytes(value))


def derive_key(random_power: bytes, peer_value: bytes, p: bytes) -> bytes:
    """Compute the shared auth key ``peer^power mod p``.

    Side A with ``(a, g^b)`` and side B with ``(b, g^a)`` get identical bytes.
    """
    if not random_power:
        raise KeyExchangeError(
            CallError.MODEXP_FIRST_FAILED, "own exponent is missing"
        )
    prime = bytes_to_int(p)
    number = validate_peer_contribution(peer_value, prime)
    shared = pow(number, bytes_to_int(random_power), prime)
    return int_to_bytes(shared)


def compute_fingerprint(auth_key: bytes) -> int:
    """64-bit key id: trailing 8 bytes of SHA-1, little-endian."""
    digest = hashlib.sha1(auth_key).digest()
    return int.from_bytes(digest[-8:], "little")


def key_sha_for_fingerprint(auth_key: bytes, ga: bytes) -> bytes:
    """Digest both users compare visually to rule out a man in the middle."""
    return sha256(auth_key + ga)


def sas_code(digest: bytes, num_groups: int = 4) -> str:
    """Render a digest as a short code like ``"49-14-71-02"``."""
    return "-".join(f"{digest[i] % 100:02d}" for i in range(num_groups))
