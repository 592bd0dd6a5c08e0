"""
Treasury Snapshot Service

Builds TreasurySnapshot values from custodial vault account documents:

    {
      "balances":   [{"asset_type": "native", "balance": "100.0000000"},
                     {"asset_type": "credit_alphanum4", "asset_code": "USDC",
                      "asset_issuer": "<hex32>", "balance": "12.5"},
                     {"liquidity_pool_id": "...", "balance": "..."}],
      "signers":    [{"key": "<hex32>", "weight": 1, "type": "ed25519_public_key"}],
      "thresholds": {"low_threshold": 0, "med_threshold": 2, "high_threshold": 2}
    }

Balances carry 7 decimal places and are converted to integer base units
(stroops); extra digits are truncated, never rounded up. Liquidity pool
shares are skipped, and only ed25519 signers with positive weight count.
Payments are authorized at the medium threshold.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from pomsettle.hardening import ValidationError, Validators
from pomsettle.hashing import NATIVE_ISSUER, HashFunction, asset_id, sha256
from pomsettle.models import TreasurySnapshot
from pomsettle.observability import Component, get_logger
from pomsettle.pom import find_shortfalls
from pomsettle.resilience import RetryExhaustedError, RetryPolicy

logger = get_logger("treasury", Component.SNAPSHOT)

STROOP_DECIMALS = 7
NATIVE_CODE = "XLM"
ED25519_SIGNER = "ed25519_public_key"
MIN_VAULT_SIGNERS = 3

_STROOP_SCALE = Decimal(10) ** STROOP_DECIMALS


class AccountNotFoundError(LookupError):
    """The vault account does not exist; never retried."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Vault account not found: {address}")


class AccountSource(Protocol):
    def load_account(self, address: str) -> Mapping[str, Any]:
        ...


class InMemoryAccountSource:
    """Account documents held in memory; fail_next() scripts transient errors."""

    def __init__(self, accounts: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._accounts: Dict[str, Mapping[str, Any]] = dict(accounts or {})
        self._failures = 0
        self._lock = threading.Lock()
        self.loads = 0

    def set_account(self, address: str, document: Mapping[str, Any]) -> None:
        with self._lock:
            self._accounts[address] = document

    def fail_next(self, count: int = 1) -> None:
        with self._lock:
            self._failures += count

    def load_account(self, address: str) -> Mapping[str, Any]:
        with self._lock:
            self.loads += 1
            if self._failures:
                self._failures -= 1
                raise ConnectionError("simulated account fetch failure")
            document = self._accounts.get(address)
        if document is None:
            raise AccountNotFoundError(address)
        return document


# =============================================================================
# CONVERSIONS
# =============================================================================

def decimal_to_stroops(balance: str) -> int:
    """Decimal string to base units: 100.5 -> 1005000000, extra digits dropped."""
    try:
        value = Decimal(balance)
    except (InvalidOperation, TypeError) as e:
        raise ValidationError("balance", "Not a decimal amount", balance) from e
    if not value.is_finite() or value < 0:
        raise ValidationError("balance", "Must be a finite non-negative amount", balance)
    return int((value * _STROOP_SCALE).to_integral_value(rounding=ROUND_DOWN))


def stroops_to_decimal(stroops: int, decimals: int = STROOP_DECIMALS) -> str:
    sign = "-" if stroops < 0 else ""
    digits = str(abs(stroops)).rjust(decimals + 1, "0")
    return f"{sign}{digits[:-decimals]}.{digits[-decimals:]}"


# =============================================================================
# DOCUMENT PARSING
# =============================================================================

def parse_balances(entries: Iterable[Mapping[str, Any]], hash_fn: HashFunction = sha256) -> Dict[str, int]:
    balances: Dict[str, int] = {}
    for entry in entries:
        if entry.get("liquidity_pool_id"):
            continue
        if entry.get("asset_type") == "native":
            code, issuer = NATIVE_CODE, NATIVE_ISSUER
        else:
            code = Validators.validate_asset_code(entry.get("asset_code")).value_or_raise()
            issuer = Validators.validate_hex32(entry.get("asset_issuer"), "asset_issuer").value_or_raise()
        key = asset_id(code, issuer, hash_fn)
        balances[key] = balances.get(key, 0) + decimal_to_stroops(entry.get("balance", "0"))
    return balances


def parse_signers(entries: Iterable[Mapping[str, Any]]) -> List[str]:
    signers = []
    for entry in entries:
        if entry.get("type") != ED25519_SIGNER or int(entry.get("weight", 0)) <= 0:
            continue
        signers.append(Validators.validate_hex32(entry.get("key"), "signer").value_or_raise())
    return signers


def parse_account(document: Mapping[str, Any], hash_fn: HashFunction = sha256) -> TreasurySnapshot:
    thresholds = document.get("thresholds") or {}
    return TreasurySnapshot(
        balances=parse_balances(document.get("balances") or [], hash_fn),
        signers=frozenset(parse_signers(document.get("signers") or [])),
        threshold=int(thresholds.get("med_threshold", 0)),
    )


def check_vault_policy(signers: Iterable[str], threshold: int) -> List[str]:
    """Problems with a vault's signer set; empty when the policy holds."""
    keys = list(signers)
    errors = []
    if len(keys) < MIN_VAULT_SIGNERS:
        errors.append(f"Minimum {MIN_VAULT_SIGNERS} auditors required, got {len(keys)}")
    minimum = len(keys) // 2 + 1
    if threshold < minimum:
        errors.append(f"Threshold must be >= floor(n/2)+1 = {minimum}, got {threshold}")
    if threshold > len(keys):
        errors.append(f"Threshold {threshold} exceeds auditor count {len(keys)}")
    for key in keys:
        if not Validators.validate_hex32(key, "signer").is_valid:
            errors.append(f"Invalid auditor public key: {key}")
    return errors


# =============================================================================
# SERVICE
# =============================================================================

class TreasurySnapshotService:
    """TreasurySource backed by vault account documents, one vault per subnet."""

    def __init__(
        self,
        accounts: AccountSource,
        vaults: Optional[Mapping[str, str]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        hash_fn: HashFunction = sha256,
    ):
        self._accounts = accounts
        self._vaults: Dict[str, str] = dict(vaults or {})
        self._retry = retry_policy or RetryPolicy(
            max_attempts=3,
            non_retryable_exceptions=(AccountNotFoundError,),
        )
        self.hash_fn = hash_fn

    def register_vault(self, subnet_id: str, address: str) -> None:
        self._vaults[subnet_id] = address

    def vault_for(self, subnet_id: str) -> str:
        try:
            return self._vaults[subnet_id]
        except KeyError:
            raise KeyError(f"No vault registered for subnet {subnet_id}") from None

    def fetch_account(self, address: str) -> Mapping[str, Any]:
        try:
            return self._retry.execute(lambda: self._accounts.load_account(address))
        except RetryExhaustedError as e:
            logger.error(
                "Account fetch failed",
                error_code="ACCOUNT_FETCH",
                address=address,
                attempts=e.attempts,
                error=str(e.last_exception),
            )
            raise

    def snapshot_for_address(self, address: str) -> TreasurySnapshot:
        snapshot = parse_account(self.fetch_account(address), self.hash_fn)
        logger.debug(
            "Fetched treasury snapshot",
            address=address,
            assets=len(snapshot.balances),
            signers=len(snapshot.signers),
            threshold=snapshot.threshold,
        )
        return snapshot

    def get_snapshot(self, subnet_id: str) -> TreasurySnapshot:
        return self.snapshot_for_address(self.vault_for(subnet_id))

    def get_asset_balance(self, subnet_id: str, code: str, issuer: str = NATIVE_ISSUER) -> int:
        return self.get_snapshot(subnet_id).balance_of(asset_id(code, issuer, self.hash_fn))

    def check_solvency(self, subnet_id: str, delta: Mapping[str, int]) -> Dict[str, Any]:
        shortfalls = find_shortfalls(delta, self.get_snapshot(subnet_id))
        return {"solvent": not shortfalls, "shortfalls": shortfalls}

    def can_meet_threshold(self, subnet_id: str, available_signers: Iterable[str]) -> Dict[str, Any]:
        snapshot = self.get_snapshot(subnet_id)
        valid = {s.lower() for s in available_signers} & snapshot.signers
        return {
            "can_meet": len(valid) >= snapshot.threshold,
            "required": snapshot.threshold,
            "available": len(valid),
        }

    def verify_vault(self, subnet_id: str) -> List[str]:
        snapshot = self.get_snapshot(subnet_id)
        return check_vault_policy(snapshot.signers, snapshot.threshold)
