"""Ed25519 signing for auditor commitments and settlement transactions.

Public keys travel as lowercase hex of the 32 raw key bytes. Auditors sign

    subnet_id (32 bytes) || block_number (u64 BE) || state_root (32 bytes)

and treasury signers sign H(canonical JSON of the transaction).
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from pomsettle.hashing import HashFunction, encode_u64_be8, hex32_to_bytes, sha256
from pomsettle.models import SettlementTransaction


def canonicalize_json(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def public_key_hex(pub: Ed25519PublicKey) -> str:
    return pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    ).hex()


@dataclass(frozen=True)
class Signer:
    """An Ed25519 key held by this process."""
    private_key: Ed25519PrivateKey

    @classmethod
    def generate(cls) -> "Signer":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_hex(cls, seed_hex: str) -> "Signer":
        return cls(Ed25519PrivateKey.from_private_bytes(hex32_to_bytes(seed_hex, "private_key")))

    @property
    def public_key(self) -> str:
        return public_key_hex(self.private_key.public_key())

    def sign(self, message: bytes) -> bytes:
        return self.private_key.sign(message)


def commitment_message(subnet_id: str, block_number: int, state_root: str) -> bytes:
    return (
        hex32_to_bytes(subnet_id, "subnet_id")
        + encode_u64_be8(block_number)
        + hex32_to_bytes(state_root, "state_root")
    )


def verify_signature(public_key: str, signature: bytes, message: bytes) -> bool:
    """False for any malformed key or signature rather than raising."""
    try:
        pub = Ed25519PublicKey.from_public_bytes(hex32_to_bytes(public_key, "public_key"))
        if len(signature) != 64:
            return False
        pub.verify(signature, message)
        return True
    except (InvalidSignature, ValueError):
        return False


def count_valid_signatures(
    signatures: Mapping[str, bytes],
    allowed_keys: Iterable[str],
    message: bytes,
) -> int:
    """Distinct allowed keys with a verifying signature on message."""
    allowed = {k.lower() for k in allowed_keys}
    valid = set()
    for key, sig in signatures.items():
        if key.lower() in allowed and verify_signature(key, sig, message):
            valid.add(key.lower())
    return len(valid)


def sign_commitment(signer: Signer, subnet_id: str, block_number: int, state_root: str) -> bytes:
    return signer.sign(commitment_message(subnet_id, block_number, state_root))


def transaction_digest(tx: SettlementTransaction, hash_fn: HashFunction = sha256) -> bytes:
    return hash_fn(canonicalize_json(tx.to_dict()))


def sign_transaction(
    tx: SettlementTransaction,
    signers: Iterable[Signer],
    hash_fn: HashFunction = sha256,
) -> Dict[str, bytes]:
    digest = transaction_digest(tx, hash_fn)
    return {s.public_key: s.sign(digest) for s in signers}
