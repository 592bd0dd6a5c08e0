"""
Proof-of-Money Hashing Primitives

Every digest the settlement engine produces flows through one injectable hash
function so that state roots, asset ids and idempotency tokens can never drift
apart. SHA-256 is the default.

Encodings:
    asset_id       = H(code_utf8 || 0x00 || issuer)
    balance leaf   = H("BAL" || user_id || code_utf8 || 0x00 || issuer || amount_be16)
    withdrawal leaf= H("WD" || withdrawal_id || user_id || code_utf8 || 0x00
                       || issuer || amount_be16 || destination)
    merkle node    = H(left || right)
    state root     = H(balances_root || withdrawals_root || nonce_be8)
    token          = H(subnet_id || block_number_be8)[:28]

issuer is the ASCII string "NATIVE" or the 32 raw issuer bytes. Amounts are
signed 128-bit two's complement, big-endian.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import re
from typing import Callable, Iterable, List

HashFunction = Callable[[bytes], bytes]

NATIVE_ISSUER = "NATIVE"
ZERO_HASH = b"\x00" * 32
TOKEN_LENGTH = 28
MEMO_LENGTH = 32

I128_MIN = -(2 ** 127)
I128_MAX = 2 ** 127 - 1
U128_MAX = 2 ** 128 - 1
U64_MAX = 2 ** 64 - 1

_HEX32_RE = re.compile(r"^[0-9a-f]{64}$")


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


# =============================================================================
# HEX / INTEGER ENCODING
# =============================================================================

def is_hex32(value: object) -> bool:
    return isinstance(value, str) and bool(_HEX32_RE.match(value))


def normalize_hex32(value: str, field_name: str = "value") -> str:
    """Lowercase a 32-byte hex string, tolerating a 0x prefix."""
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a hex string")
    v = value.strip().lower()
    if v.startswith("0x"):
        v = v[2:]
    if not _HEX32_RE.match(v):
        raise ValueError(f"{field_name} must be 32 bytes of hex, got {value!r}")
    return v


def hex32_to_bytes(value: str, field_name: str = "value") -> bytes:
    return bytes.fromhex(normalize_hex32(value, field_name))


def encode_amount_be16(amount: int) -> bytes:
    """Signed 128-bit big-endian encoding."""
    if not I128_MIN <= amount <= I128_MAX:
        raise OverflowError(f"amount {amount} does not fit in a signed 128-bit integer")
    return amount.to_bytes(16, "big", signed=True)


def encode_u64_be8(value: int) -> bytes:
    if not 0 <= value <= U64_MAX:
        raise OverflowError(f"value {value} does not fit in an unsigned 64-bit integer")
    return value.to_bytes(8, "big")


def issuer_bytes(issuer: str) -> bytes:
    if issuer == NATIVE_ISSUER:
        return NATIVE_ISSUER.encode("ascii")
    return hex32_to_bytes(issuer, "issuer")


def asset_preimage(code: str, issuer: str) -> bytes:
    return code.encode("utf-8") + b"\x00" + issuer_bytes(issuer)


# =============================================================================
# DERIVED IDENTIFIERS
# =============================================================================

def asset_id(code: str, issuer: str, hash_fn: HashFunction = sha256) -> str:
    """Canonical asset key, lowercase hex."""
    return hash_fn(asset_preimage(code, issuer)).hex()


def idempotency_token(
    subnet_id: str,
    block_number: int,
    hash_fn: HashFunction = sha256,
) -> bytes:
    """Replay-protection key attached to every transaction of a settlement."""
    digest = hash_fn(hex32_to_bytes(subnet_id, "subnet_id") + encode_u64_be8(block_number))
    return digest[:TOKEN_LENGTH]


def memo_from_token(token: bytes) -> bytes:
    """Right-pad a token with zeros to the 32-byte memo-hash width."""
    if len(token) > MEMO_LENGTH:
        raise ValueError(f"token longer than {MEMO_LENGTH} bytes")
    return token + b"\x00" * (MEMO_LENGTH - len(token))


def balance_leaf(
    user_id: str,
    code: str,
    issuer: str,
    amount: int,
    hash_fn: HashFunction = sha256,
) -> bytes:
    return hash_fn(
        b"BAL"
        + hex32_to_bytes(user_id, "user_id")
        + asset_preimage(code, issuer)
        + encode_amount_be16(amount)
    )


def withdrawal_leaf(
    withdrawal_id: str,
    user_id: str,
    code: str,
    issuer: str,
    amount: int,
    destination: str,
    hash_fn: HashFunction = sha256,
) -> bytes:
    return hash_fn(
        b"WD"
        + hex32_to_bytes(withdrawal_id, "withdrawal_id")
        + hex32_to_bytes(user_id, "user_id")
        + asset_preimage(code, issuer)
        + encode_amount_be16(amount)
        + hex32_to_bytes(destination, "destination")
    )


# =============================================================================
# MERKLE TREE
# =============================================================================

def merkle_root(leaves: Iterable[bytes], hash_fn: HashFunction = sha256) -> bytes:
    """
    Binary Merkle root over leaves sorted by byte order.

    An odd node at any level is paired with itself. An empty set yields
    ZERO_HASH and a single leaf is its own root.
    """
    level: List[bytes] = sorted(leaves)
    if not level:
        return ZERO_HASH

    while len(level) > 1:
        if len(level) % 2 == 1:
            level.append(level[-1])
        level = [hash_fn(level[i] + level[i + 1]) for i in range(0, len(level), 2)]

    return level[0]
