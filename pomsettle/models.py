"""
Proof-of-Money Data Model

Value types shared by every stage of the settlement pipeline. All types are
immutable once built; wire conversion goes through to_dict/from_dict, with
bytes32 fields as lowercase hex and amounts as decimal strings.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from pomsettle.hardening import ValidationError, Validators
from pomsettle.hashing import (
    NATIVE_ISSUER,
    HashFunction,
    asset_id as compute_asset_id,
    memo_from_token,
    normalize_hex32,
    sha256,
)

ZERO_ID = "0" * 64

_SIGNED_DECIMAL_RE = re.compile(r"^-?(0|[1-9][0-9]*)$")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_int(value: Any, field_name: str) -> int:
    """Accept an int or a canonical (signed) decimal string."""
    if isinstance(value, bool):
        raise ValidationError(field_name, "Expected integer, got bool", value)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _SIGNED_DECIMAL_RE.match(value) and value != "-0":
        return int(value)
    raise ValidationError(field_name, "Expected integer or canonical decimal string", value)


def _hex_field(value: Any, field_name: str) -> str:
    return Validators.validate_hex32(value, field_name).value_or_raise()


# =============================================================================
# ASSETS AND BALANCES
# =============================================================================

@dataclass(frozen=True)
class Asset:
    """An asset code plus its issuer ("NATIVE" or a 32-byte hex key)."""
    code: str
    issuer: str = NATIVE_ISSUER

    def __post_init__(self):
        if not isinstance(self.code, str):
            raise ValidationError("asset.code", "Expected string", self.code)
        if self.issuer != NATIVE_ISSUER:
            object.__setattr__(self, "issuer", normalize_hex32(self.issuer, "asset.issuer"))

    @property
    def is_native(self) -> bool:
        return self.issuer == NATIVE_ISSUER

    def asset_id(self, hash_fn: HashFunction = sha256) -> str:
        return compute_asset_id(self.code, self.issuer, hash_fn)

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "issuer": self.issuer}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Asset":
        try:
            return cls(code=data["code"], issuer=data.get("issuer", NATIVE_ISSUER))
        except (KeyError, TypeError) as e:
            raise ValidationError("asset", f"Malformed asset: {e}", data)
        except ValueError as e:
            raise ValidationError("asset.issuer", str(e), data)

    def __str__(self) -> str:
        return f"{self.code}:{'native' if self.is_native else self.issuer[:8]}"


@dataclass(frozen=True)
class Balance:
    user_id: str
    asset: Asset
    amount: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "asset": self.asset.to_dict(),
            "amount": str(self.amount),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Balance":
        return cls(
            user_id=_hex_field(data.get("user_id"), "user_id"),
            asset=Asset.from_dict(data.get("asset") or {}),
            amount=_parse_int(data.get("amount"), "amount"),
        )


@dataclass(frozen=True)
class WithdrawalIntent:
    """
    A request to move funds out of a subnet to an external destination.

    Well-formedness (positive amount, non-zero destination, asset code length)
    is deliberately not enforced here: malformed intents must reach the
    PoM validator so they can be reported as non-constructible.
    """
    withdrawal_id: str
    user_id: str
    asset: Asset
    amount: int
    destination: str

    def asset_id(self, hash_fn: HashFunction = sha256) -> str:
        return self.asset.asset_id(hash_fn)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "withdrawal_id": self.withdrawal_id,
            "user_id": self.user_id,
            "asset": self.asset.to_dict(),
            "amount": str(self.amount),
            "destination": self.destination,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WithdrawalIntent":
        return cls(
            withdrawal_id=_hex_field(data.get("withdrawal_id"), "withdrawal_id"),
            user_id=_hex_field(data.get("user_id"), "user_id"),
            asset=Asset.from_dict(data.get("asset") or {}),
            amount=_parse_int(data.get("amount"), "amount"),
            destination=_hex_field(data.get("destination"), "destination"),
        )


def withdrawals_from_json(items: Iterable[Mapping[str, Any]]) -> List[WithdrawalIntent]:
    return [WithdrawalIntent.from_dict(item) for item in items]


# =============================================================================
# POM DELTA
# =============================================================================

class PomDelta(Mapping[str, int]):
    """
    Ordered map of asset id (hex) to unsigned net outflow.

    Iteration is always in ascending asset id order so that two deltas with the
    same content serialize identically.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Union[Mapping[str, int], Iterable[Tuple[str, int]], None] = None):
        source = dict(items or {})
        cleaned: Dict[str, int] = {}
        for key, amount in source.items():
            asset_key = _hex_field(key, "asset_id")
            value = Validators.validate_unsigned_amount(amount, f"delta[{asset_key}]").value_or_raise()
            cleaned[asset_key] = value
        self._items: Dict[str, int] = dict(sorted(cleaned.items()))

    def __getitem__(self, asset_id: str) -> int:
        return self._items[asset_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, PomDelta):
            return self._items == other._items
        if isinstance(other, Mapping):
            return self._items == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"PomDelta({self._items!r})"

    def get_amount(self, asset_id: str) -> int:
        return self._items.get(asset_id, 0)

    def total(self) -> int:
        return sum(self._items.values())

    def to_json(self) -> Dict[str, str]:
        """Wire object: {asset_id_hex: decimal_string}."""
        return {k: str(v) for k, v in self._items.items()}

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "PomDelta":
        if not isinstance(data, Mapping):
            raise ValidationError("pom_delta", "Expected JSON object", data)
        items: Dict[str, int] = {}
        for key, value in data.items():
            if not isinstance(value, str):
                raise ValidationError(f"pom_delta[{key}]", "Amount must be a decimal string", value)
            if not isinstance(key, str) or not Validators.HEX64_PATTERN.match(key):
                raise ValidationError("pom_delta", "Keys must be lowercase 64-char hex", key)
            items[key] = Validators.validate_unsigned_amount(value, f"pom_delta[{key}]").value_or_raise()
        return cls(items)

    def dumps(self) -> str:
        return json.dumps(self.to_json(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def loads(cls, text: str) -> "PomDelta":
        return cls.from_json(json.loads(text))


# =============================================================================
# TREASURY SNAPSHOT
# =============================================================================

@dataclass(frozen=True)
class TreasurySnapshot:
    """Read-only view of the custodial treasury at one point in time."""
    balances: Mapping[str, int]
    signers: FrozenSet[str]
    threshold: int
    fetched_at: str = field(default_factory=_utc_now, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "balances", PomDelta(self.balances))
        object.__setattr__(self, "signers", frozenset(s.lower() for s in self.signers))
        if isinstance(self.threshold, bool) or not isinstance(self.threshold, int) or self.threshold < 0:
            raise ValidationError("threshold", "Must be a non-negative integer", self.threshold)

    def balance_of(self, asset_id: str) -> int:
        """Balance for an asset; a missing entry counts as zero."""
        return self.balances.get(asset_id, 0)

    def to_json(self) -> Dict[str, Any]:
        return {
            "balances": {k: str(v) for k, v in self.balances.items()},
            "signers": sorted(self.signers),
            "threshold": self.threshold,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "TreasurySnapshot":
        if not isinstance(data, Mapping):
            raise ValidationError("treasury", "Expected JSON object", data)
        balances = PomDelta.from_json(data.get("balances") or {})
        signers = data.get("signers") or []
        if not isinstance(signers, list) or not all(isinstance(s, str) for s in signers):
            raise ValidationError("signers", "Expected list of public keys", signers)
        threshold = data.get("threshold")
        if isinstance(threshold, bool) or not isinstance(threshold, int):
            raise ValidationError("threshold", "Expected integer", threshold)
        return cls(balances=balances, signers=frozenset(signers), threshold=threshold)


# =============================================================================
# STATE ROOT AND COMMITMENTS
# =============================================================================

@dataclass(frozen=True)
class StateRoot:
    balances_root: bytes
    withdrawals_root: bytes
    nonce: int
    root: bytes

    @property
    def hex(self) -> str:
        return self.root.hex()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balances_root": self.balances_root.hex(),
            "withdrawals_root": self.withdrawals_root.hex(),
            "nonce": self.nonce,
            "state_root": self.root.hex(),
        }


@dataclass(frozen=True)
class Commitment:
    """An accepted state root. Immutable once stored."""
    subnet_id: str
    block_number: int
    state_root: str
    committed_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subnet_id": self.subnet_id,
            "block_number": self.block_number,
            "state_root": self.state_root,
            "committed_at": self.committed_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Commitment":
        return cls(
            subnet_id=data["subnet_id"],
            block_number=int(data["block_number"]),
            state_root=data["state_root"],
            committed_at=data.get("committed_at", ""),
        )


@dataclass(frozen=True)
class CommitmentEvent:
    """Notification fired once per successful commitment."""
    subnet_id: str
    block_number: int
    state_root: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subnet_id": self.subnet_id,
            "block_number": self.block_number,
            "state_root": self.state_root,
        }


# =============================================================================
# SETTLEMENT PLAN
# =============================================================================

class OperationKind(Enum):
    PAYMENT = "payment"
    PATH_PAYMENT = "path_payment"


@dataclass(frozen=True)
class SettlementOperation:
    """One withdrawal rendered as an external-ledger operation."""
    withdrawal_id: str
    destination: str
    asset: Asset
    amount: int
    kind: OperationKind = OperationKind.PAYMENT
    send_asset: Optional[Asset] = None
    send_max: Optional[int] = None
    path: Tuple[Asset, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "withdrawal_id": self.withdrawal_id,
            "destination": self.destination,
            "asset": self.asset.to_dict(),
            "amount": str(self.amount),
            "kind": self.kind.value,
        }
        if self.kind == OperationKind.PATH_PAYMENT:
            d["send_asset"] = self.send_asset.to_dict() if self.send_asset else None
            d["send_max"] = str(self.send_max) if self.send_max is not None else None
            d["path"] = [a.to_dict() for a in self.path]
        return d


@dataclass(frozen=True)
class SettlementTransaction:
    """A batch of operations sharing one asset, bound to the settlement token."""
    index: int
    kind: OperationKind
    asset_id: str
    operations: Tuple[SettlementOperation, ...]
    idempotency_token: bytes
    fee: int

    @property
    def memo(self) -> bytes:
        return memo_from_token(self.idempotency_token)

    @property
    def total_amount(self) -> int:
        return sum(op.amount for op in self.operations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "kind": self.kind.value,
            "asset_id": self.asset_id,
            "operations": [op.to_dict() for op in self.operations],
            "idempotency_token": self.idempotency_token.hex(),
            "memo": self.memo.hex(),
            "fee": self.fee,
        }


@dataclass(frozen=True)
class SettlementPlan:
    subnet_id: str
    block_number: int
    idempotency_token: bytes
    transactions: Tuple[SettlementTransaction, ...]
    totals_by_asset: PomDelta

    @property
    def operation_count(self) -> int:
        return sum(len(tx.operations) for tx in self.transactions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subnet_id": self.subnet_id,
            "block_number": self.block_number,
            "idempotency_token": self.idempotency_token.hex(),
            "transactions": [tx.to_dict() for tx in self.transactions],
            "totals_by_asset": self.totals_by_asset.to_json(),
        }


# =============================================================================
# SETTLEMENT RECORDS
# =============================================================================

class SettlementStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    ALREADY_SETTLED = "already_settled"


@dataclass(frozen=True)
class SettlementRecord:
    """Outcome of settling one (subnet, block) commitment."""
    subnet_id: str
    block_number: int
    status: SettlementStatus
    idempotency_token: str
    tx_refs: Tuple[str, ...] = ()
    failure: Optional[str] = None
    failed_index: Optional[int] = None
    retryable: bool = False
    failed_withdrawals: Tuple[str, ...] = ()
    message: str = ""
    updated_at: str = field(default_factory=_utc_now)

    @property
    def is_terminal(self) -> bool:
        if self.status == SettlementStatus.CONFIRMED:
            return True
        return self.status == SettlementStatus.FAILED and not self.retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subnet_id": self.subnet_id,
            "block_number": self.block_number,
            "status": self.status.value,
            "idempotency_token": self.idempotency_token,
            "tx_refs": list(self.tx_refs),
            "failure": self.failure,
            "failed_index": self.failed_index,
            "retryable": self.retryable,
            "failed_withdrawals": list(self.failed_withdrawals),
            "message": self.message,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SettlementRecord":
        return cls(
            subnet_id=data["subnet_id"],
            block_number=int(data["block_number"]),
            status=SettlementStatus(data["status"]),
            idempotency_token=data["idempotency_token"],
            tx_refs=tuple(data.get("tx_refs") or ()),
            failure=data.get("failure"),
            failed_index=data.get("failed_index"),
            retryable=bool(data.get("retryable", False)),
            failed_withdrawals=tuple(data.get("failed_withdrawals") or ()),
            message=data.get("message", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass(frozen=True)
class SettlementConfirmation:
    """Delivered back to the execution ledger once a settlement is confirmed."""
    subnet_id: str
    block_number: int
    tx_refs: Tuple[str, ...]
    idempotency_token: str
    timestamp: str = field(default_factory=_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subnet_id": self.subnet_id,
            "block_number": self.block_number,
            "tx_refs": list(self.tx_refs),
            "idempotency_token": self.idempotency_token,
            "timestamp": self.timestamp,
        }
