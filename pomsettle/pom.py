"""
Proof-of-Money Validator

The liquidity-only check that gates whether a commitment may settle. It never
trusts the execution ledger's internal correctness: it looks only at the
withdrawal queue, a fresh treasury snapshot and the subnet's auditor set.

Checks run in a fixed order and the first failure is reported:

    1. Constructibility  every withdrawal has a non-zero destination, a
                         positive amount within i128 and an asset code
                         of 1..12 chars
    2. Solvency          treasury balance >= net outflow, per asset
                         (a missing treasury entry counts as zero)
    3. Authorization     auditors present among the treasury signers must
                         reach both the treasury and the subnet threshold

Net outflow exceeding an unsigned 128-bit amount is a hard error
(PomOverflowError), not a validation result.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from pomsettle.hardening import Validators
from pomsettle.hashing import I128_MAX, U128_MAX, HashFunction, sha256
from pomsettle.models import ZERO_ID, PomDelta, TreasurySnapshot, WithdrawalIntent
from pomsettle.observability import Component, get_logger

logger = get_logger("validator", Component.POM)


class PomOverflowError(ArithmeticError):
    """Net outflow for an asset exceeds the unsigned 128-bit range."""

    def __init__(self, asset_id: str, partial: int):
        self.asset_id = asset_id
        self.partial = partial
        super().__init__(f"Net outflow overflow for asset {asset_id}")


class PomResult(Enum):
    OK = "Ok"
    INSOLVENT = "Insolvent"
    NON_CONSTRUCTIBLE = "NonConstructible"
    UNAUTHORIZED = "Unauthorized"


@dataclass(frozen=True)
class PomReport:
    """Validation outcome with the specific discrepancy behind a failure."""
    result: PomResult
    delta: PomDelta = field(default_factory=PomDelta)
    reason: str = ""
    asset_id: Optional[str] = None
    required: Optional[int] = None
    available: Optional[int] = None
    withdrawal_id: Optional[str] = None
    matching_signers: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.result == PomResult.OK

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"result": self.result.value, "delta": self.delta.to_json()}
        for key in ("reason", "asset_id", "required", "available", "withdrawal_id", "matching_signers"):
            value = getattr(self, key)
            if value not in (None, ""):
                d[key] = str(value) if key in ("required", "available") else value
        return d


def compute_net_outflow(
    withdrawals: Iterable[WithdrawalIntent],
    hash_fn: HashFunction = sha256,
) -> PomDelta:
    """Sum withdrawal amounts per asset id."""
    totals: Dict[str, int] = {}
    for w in withdrawals:
        key = w.asset_id(hash_fn)
        running = totals.get(key, 0) + w.amount
        if running > U128_MAX:
            raise PomOverflowError(key, running)
        totals[key] = running
    return PomDelta(totals)


class DiscrepancyKind(Enum):
    MISSING = "missing"      # expected asset absent from the candidate
    EXTRA = "extra"          # candidate asset absent from the expectation
    MISMATCH = "mismatch"    # present in both with different amounts


@dataclass(frozen=True)
class DeltaDiscrepancy:
    asset_id: str
    kind: DiscrepancyKind
    expected: int
    actual: int

    def to_dict(self) -> Dict[str, str]:
        return {
            "asset_id": self.asset_id,
            "kind": self.kind.value,
            "expected": str(self.expected),
            "actual": str(self.actual),
        }


def verify_delta_match(expected: Mapping[str, int], actual: Mapping[str, int]) -> List[DeltaDiscrepancy]:
    """Every per-asset difference between two deltas, in asset id order."""
    discrepancies: List[DeltaDiscrepancy] = []
    for key in sorted(set(expected) | set(actual)):
        if key not in actual:
            discrepancies.append(DeltaDiscrepancy(key, DiscrepancyKind.MISSING, expected[key], 0))
        elif key not in expected:
            discrepancies.append(DeltaDiscrepancy(key, DiscrepancyKind.EXTRA, 0, actual[key]))
        elif expected[key] != actual[key]:
            discrepancies.append(DeltaDiscrepancy(key, DiscrepancyKind.MISMATCH, expected[key], actual[key]))
    return discrepancies


def find_shortfalls(delta: Mapping[str, int], snapshot: TreasurySnapshot) -> Dict[str, Dict[str, int]]:
    """Assets whose outflow exceeds the treasury balance."""
    shortfalls: Dict[str, Dict[str, int]] = {}
    for key, required in delta.items():
        available = snapshot.balance_of(key)
        if available < required:
            shortfalls[key] = {"required": required, "available": available}
    return shortfalls


def count_matching_signers(candidates: Iterable[str], snapshot: TreasurySnapshot) -> int:
    return len({c.lower() for c in candidates} & snapshot.signers)


class PoMValidator:
    """Pure, read-only Proof-of-Money checks."""

    def __init__(self, hash_fn: HashFunction = sha256):
        self.hash_fn = hash_fn

    def check_constructibility(self, withdrawals: Sequence[WithdrawalIntent]) -> Optional[PomReport]:
        for w in withdrawals:
            reason = ""
            if w.destination == ZERO_ID:
                reason = "zero destination"
            elif w.amount <= 0:
                reason = "non-positive amount"
            elif w.amount > I128_MAX:
                reason = "amount exceeds i128"
            elif not Validators.validate_asset_code(w.asset.code).is_valid:
                reason = f"asset code length {len(w.asset.code)} outside 1..12"
            if reason:
                return PomReport(
                    result=PomResult.NON_CONSTRUCTIBLE,
                    reason=reason,
                    withdrawal_id=w.withdrawal_id,
                )
        return None

    def check_solvency(self, delta: PomDelta, snapshot: TreasurySnapshot) -> Optional[PomReport]:
        for key, required in delta.items():
            available = snapshot.balance_of(key)
            if available < required:
                return PomReport(
                    result=PomResult.INSOLVENT,
                    delta=delta,
                    reason="treasury balance below net outflow",
                    asset_id=key,
                    required=required,
                    available=available,
                )
        return None

    def check_authorization(
        self,
        snapshot: TreasurySnapshot,
        subnet_auditors: Iterable[str],
        subnet_threshold: int,
        delta: PomDelta,
    ) -> Optional[PomReport]:
        matching = count_matching_signers(subnet_auditors, snapshot)
        if matching < snapshot.threshold or matching < subnet_threshold:
            return PomReport(
                result=PomResult.UNAUTHORIZED,
                delta=delta,
                reason=(
                    f"{matching} auditors are treasury signers; need "
                    f"{max(snapshot.threshold, subnet_threshold)}"
                ),
                matching_signers=matching,
            )
        return None

    def evaluate(
        self,
        withdrawals: Sequence[WithdrawalIntent],
        snapshot: TreasurySnapshot,
        subnet_auditors: Iterable[str],
        subnet_threshold: int,
    ) -> PomReport:
        withdrawals = list(withdrawals)

        report = self.check_constructibility(withdrawals)
        if report is not None:
            logger.info("PoM rejected withdrawal set", result=report.result.value, reason=report.reason)
            return report

        delta = compute_net_outflow(withdrawals, self.hash_fn)

        report = self.check_solvency(delta, snapshot)
        if report is None:
            report = self.check_authorization(snapshot, subnet_auditors, subnet_threshold, delta)
        if report is not None:
            logger.info(
                "PoM rejected withdrawal set",
                result=report.result.value,
                reason=report.reason,
                asset_id=report.asset_id,
            )
            return report

        return PomReport(result=PomResult.OK, delta=delta)

    def validate(
        self,
        withdrawals: Sequence[WithdrawalIntent],
        snapshot: TreasurySnapshot,
        subnet_auditors: Iterable[str],
        subnet_threshold: int,
    ) -> PomResult:
        return self.evaluate(withdrawals, snapshot, subnet_auditors, subnet_threshold).result
