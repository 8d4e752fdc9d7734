"""
Scope and context identifiers.

Ids are ``<prefix>-<ULID>``: a 48-bit millisecond timestamp followed by 80
random bits, rendered as 26 Crockford Base32 characters. Scope ids sort by
creation time in logs; uniqueness against live scopes is checked by the
caller-supplied ``live_ids``.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable, Container
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

SCOPE_ID_PREFIX: Final[str] = "scope"
CONTEXT_ID_PREFIX: Final[str] = "ctx"

_RANDOM_BITS: Final[int] = 80
_CHAR_VALUES: Final[dict[str, int]] = {
    char: value for value, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}
_COLLISION_RETRIES: Final[int] = 16

RandBytes = Callable[[int], bytes]


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    stamp = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(stamp, bool) or not isinstance(stamp, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(stamp).__name__}")
    if not 0 <= stamp <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range 0..{ULID_MAX_TIMESTAMP_MS}: {stamp}")

    entropy = (randbytes or secrets.token_bytes)(_RANDOM_BITS // 8)
    if len(entropy) != _RANDOM_BITS // 8:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BITS // 8} bytes")

    value = (stamp << _RANDOM_BITS) | int.from_bytes(entropy, "big")
    return "".join(
        CROCKFORD_BASE32_ALPHABET[(value >> shift) & 0x1F]
        for shift in range(5 * (ULID_LENGTH - 1), -1, -5)
    )


def _ulid_value(text: object) -> int:
    if not isinstance(text, str):
        raise ValueError(f"ulid must be a string, got {type(text).__name__}")
    if len(text) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(text)}")
    value = 0
    for position, char in enumerate(text.upper()):
        if char not in _CHAR_VALUES:
            raise ValueError(f"invalid ULID character {text[position]!r} at index {position}")
        value = (value << 5) | _CHAR_VALUES[char]
    # 26 chars hold 130 bits; a ULID may only use 128
    if value >> 128:
        raise ValueError("ulid overflow: value exceeds 128 bits")
    return value


def validate_ulid(text: str) -> None:
    _ulid_value(text)


def parse_ulid_timestamp_ms(text: str) -> int:
    return _ulid_value(text) >> _RANDOM_BITS


def generate_prefixed_id(
    prefix: str, *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    if not prefix or "-" in prefix:
        raise ValueError(f"invalid id prefix {prefix!r}")
    return f"{prefix}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    lead = f"{expected_prefix}-"
    if not isinstance(id_str, str) or not id_str.startswith(lead):
        raise ValueError(f"expected prefix {lead!r} in {id_str!r}")
    try:
        _ulid_value(id_str[len(lead) :])
    except ValueError as exc:
        raise ValueError(f"malformed {expected_prefix} id {id_str!r}: {exc}") from exc


def generate_scope_id(
    *,
    live_ids: Container[str] = (),
    timestamp_ms: int | None = None,
    randbytes: RandBytes | None = None,
) -> str:
    """New scope id not present in ``live_ids``."""
    for _ in range(_COLLISION_RETRIES):
        candidate = generate_prefixed_id(
            SCOPE_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes
        )
        if candidate not in live_ids:
            return candidate
    raise RuntimeError(f"unable to generate a unique scope id after {_COLLISION_RETRIES} attempts")


def validate_scope_id(id_str: str) -> None:
    validate_prefixed_id(id_str, SCOPE_ID_PREFIX)


def generate_context_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(CONTEXT_ID_PREFIX, timestamp_ms=timestamp_ms)


def short_id(id_str: str) -> str:
    """Trailing 8 characters, for compact log fields."""
    if not isinstance(id_str, str) or len(id_str) < 8:
        raise ValueError(f"id too short for short_id: {id_str!r}")
    return id_str[-8:]


__all__ = [
    "CONTEXT_ID_PREFIX",
    "CROCKFORD_BASE32_ALPHABET",
    "SCOPE_ID_PREFIX",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "RandBytes",
    "generate_context_id",
    "generate_prefixed_id",
    "generate_scope_id",
    "generate_ulid",
    "parse_ulid_timestamp_ms",
    "short_id",
    "validate_prefixed_id",
    "validate_scope_id",
    "validate_ulid",
]
