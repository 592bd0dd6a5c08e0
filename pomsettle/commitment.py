"""
Commitment Manager

The synchronization point between the execution ledger and settlement. A
proposed (block number, state root, signatures) either becomes an immutable
Commitment or is rejected; there is no partial commit.

State machine:

    PROPOSED ──┬──► COMMITTED   (stored, last block advanced, handlers fired once)
               └──► REJECTED    (prior state untouched)

Rejection rules, evaluated in order:
    1. block_number <= last committed block for the subnet
    2. state_root is the zero sentinel
    3. valid auditor signatures below the subnet threshold
    4. Proof-of-Money check not Ok (fresh treasury snapshot)

Only one commitment per subnet is in flight at a time; the last-block slot
is advanced with compare-and-swap so that managers sharing a store cannot
both commit the same height.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

from pomsettle.hardening import AtomicCounter, ValidationError, Validators
from pomsettle.hashing import ZERO_HASH, HashFunction, sha256
from pomsettle.models import Commitment, CommitmentEvent, WithdrawalIntent
from pomsettle.network import TreasurySource
from pomsettle.observability import Component, get_logger
from pomsettle.pom import PoMValidator, PomReport
from pomsettle.signing import commitment_message, count_valid_signatures
from pomsettle.store import EphemeralStore, Store

logger = get_logger("manager", Component.COMMITMENT)

CommitmentHandler = Callable[[CommitmentEvent], None]


class CommitmentStatus(Enum):
    PROPOSED = "proposed"
    COMMITTED = "committed"
    REJECTED = "rejected"


class RejectReason(Enum):
    UNKNOWN_SUBNET = "unknown_subnet"
    NON_MONOTONIC = "non_monotonic"
    ZERO_STATE_ROOT = "zero_state_root"
    INSUFFICIENT_SIGNATURES = "insufficient_signatures"
    POM_REJECTED = "pom_rejected"
    CONCURRENT_COMMIT = "concurrent_commit"


@dataclass(frozen=True)
class SubnetRegistration:
    subnet_id: str
    auditors: FrozenSet[str]
    threshold: int
    registration_index: int


@dataclass(frozen=True)
class CommitmentResult:
    subnet_id: str
    block_number: int
    status: CommitmentStatus
    reason: Optional[RejectReason] = None
    detail: str = ""
    pom_report: Optional[PomReport] = None
    commitment: Optional[Commitment] = None

    @property
    def committed(self) -> bool:
        return self.status == CommitmentStatus.COMMITTED

    def to_dict(self) -> Dict:
        d = {
            "subnet_id": self.subnet_id,
            "block_number": self.block_number,
            "status": self.status.value,
        }
        if self.reason is not None:
            d["reason"] = self.reason.value
        if self.detail:
            d["detail"] = self.detail
        if self.pom_report is not None:
            d["pom"] = self.pom_report.to_dict()
        if self.commitment is not None:
            d["commitment"] = self.commitment.to_dict()
        return d


class CommitmentManager:
    """Accepts or rejects proposed state roots per subnet."""

    def __init__(
        self,
        treasury: TreasurySource,
        store: Optional[Store] = None,
        validator: Optional[PoMValidator] = None,
        hash_fn: HashFunction = sha256,
    ):
        self._treasury = treasury
        self._store = store if store is not None else EphemeralStore()
        self._validator = validator or PoMValidator(hash_fn)
        self._subnets: Dict[str, SubnetRegistration] = {}
        self._subnet_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._handlers: List[CommitmentHandler] = []
        self._handlers_lock = threading.Lock()
        self._registrations = AtomicCounter(0)
        self._commit_count = AtomicCounter(0)
        self._reject_count = AtomicCounter(0)

    # -------------------------------------------------------------------------
    # Subnet registry
    # -------------------------------------------------------------------------

    def register_subnet(self, subnet_id: str, auditors: Iterable[str], threshold: int) -> SubnetRegistration:
        subnet_id = Validators.validate_hex32(subnet_id, "subnet_id").value_or_raise()
        keys = [Validators.validate_hex32(a, "auditor").value_or_raise() for a in auditors]
        if len(set(keys)) != len(keys):
            raise ValidationError("auditors", "Duplicate auditor keys", keys)
        if not keys:
            raise ValidationError("auditors", "At least one auditor is required", keys)
        if isinstance(threshold, bool) or not isinstance(threshold, int) or not 1 <= threshold <= len(keys):
            raise ValidationError("threshold", f"Must be between 1 and {len(keys)}", threshold)

        with self._registry_lock:
            if subnet_id in self._subnets:
                raise ValidationError("subnet_id", "Subnet already registered", subnet_id)
            registration = SubnetRegistration(
                subnet_id=subnet_id,
                auditors=frozenset(keys),
                threshold=threshold,
                registration_index=self._registrations.increment(),
            )
            self._subnets[subnet_id] = registration
            self._subnet_locks[subnet_id] = threading.Lock()

        logger.info("Registered subnet", subnet_id=subnet_id, auditors=len(keys), threshold=threshold)
        return registration

    def get_subnet(self, subnet_id: str) -> Optional[SubnetRegistration]:
        with self._registry_lock:
            return self._subnets.get(subnet_id)

    @property
    def registration_count(self) -> int:
        return self._registrations.get()

    # -------------------------------------------------------------------------
    # Commitment queries
    # -------------------------------------------------------------------------

    @staticmethod
    def _last_key(subnet_id: str) -> str:
        return f"commitment:{subnet_id}:last"

    @staticmethod
    def _commitment_key(subnet_id: str, block_number: int) -> str:
        return f"commitment:{subnet_id}:{block_number:020d}"

    def last_committed_block(self, subnet_id: str) -> Optional[int]:
        value = self._store.get_value(self._last_key(subnet_id))
        return value["block_number"] if value else None

    def get_commitment(self, subnet_id: str, block_number: int) -> Optional[Commitment]:
        value = self._store.get_value(self._commitment_key(subnet_id, block_number))
        return Commitment.from_dict(value) if value else None

    def list_commitments(self, subnet_id: str) -> List[Commitment]:
        prefix = f"commitment:{subnet_id}:0"
        return [Commitment.from_dict(self._store.get_value(k)) for k in self._store.keys(prefix)]

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "subnets": self.registration_count,
            "committed": self._commit_count.get(),
            "rejected": self._reject_count.get(),
        }

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def on_commitment(self, handler: CommitmentHandler) -> Callable[[], None]:
        """Register a handler; returns a callable that unregisters it."""
        with self._handlers_lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            with self._handlers_lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def _notify(self, event: CommitmentEvent) -> None:
        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.error(
                    "Commitment handler failed",
                    error_code="HANDLER_ERROR",
                    exc_info=True,
                    subnet_id=event.subnet_id,
                    block_number=event.block_number,
                )

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def _reject(
        self,
        subnet_id: str,
        block_number: int,
        reason: RejectReason,
        detail: str,
        pom_report: Optional[PomReport] = None,
    ) -> CommitmentResult:
        self._reject_count.increment()
        logger.warning(
            "Commitment rejected",
            subnet_id=subnet_id,
            block_number=block_number,
            reason=reason.value,
            detail=detail,
        )
        return CommitmentResult(
            subnet_id=subnet_id,
            block_number=block_number,
            status=CommitmentStatus.REJECTED,
            reason=reason,
            detail=detail,
            pom_report=pom_report,
        )

    def submit(
        self,
        subnet_id: str,
        block_number: int,
        state_root: str,
        signatures: Mapping[str, bytes],
        withdrawals: Sequence[WithdrawalIntent],
    ) -> CommitmentResult:
        """
        Attempt to commit a state root.

        The treasury snapshot is fetched fresh for every call. PomOverflowError
        propagates as a hard error and leaves no state behind.
        """
        subnet_check = Validators.validate_hex32(subnet_id, "subnet_id")
        if subnet_check.is_valid:
            subnet_id = subnet_check.sanitized_value
        registration = self.get_subnet(subnet_id)
        if registration is None:
            return self._reject(subnet_id, block_number, RejectReason.UNKNOWN_SUBNET, "subnet not registered")

        with self._subnet_locks[subnet_id]:
            last_entry = self._store.get(self._last_key(subnet_id))
            last_block = last_entry.value["block_number"] if last_entry else None

            if last_block is not None and block_number <= last_block:
                return self._reject(
                    subnet_id, block_number, RejectReason.NON_MONOTONIC,
                    f"block {block_number} <= last committed {last_block}",
                )

            root_check = Validators.validate_hex32(state_root, "state_root")
            if not root_check.is_valid:
                return self._reject(subnet_id, block_number, RejectReason.ZERO_STATE_ROOT, "malformed state root")
            state_root = root_check.sanitized_value
            if bytes.fromhex(state_root) == ZERO_HASH:
                return self._reject(subnet_id, block_number, RejectReason.ZERO_STATE_ROOT, "state root is zero")

            message = commitment_message(subnet_id, block_number, state_root)
            valid = count_valid_signatures(signatures, registration.auditors, message)
            if valid < registration.threshold:
                return self._reject(
                    subnet_id, block_number, RejectReason.INSUFFICIENT_SIGNATURES,
                    f"{valid} valid auditor signatures, need {registration.threshold}",
                )

            snapshot = self._treasury.get_snapshot(subnet_id)
            report = self._validator.evaluate(
                withdrawals, snapshot, registration.auditors, registration.threshold,
            )
            if not report.ok:
                return self._reject(
                    subnet_id, block_number, RejectReason.POM_REJECTED, report.result.value, report,
                )

            commitment = Commitment(subnet_id=subnet_id, block_number=block_number, state_root=state_root)
            swapped, _ = self._store.compare_and_swap(
                self._last_key(subnet_id),
                last_entry.version if last_entry else 0,
                {"block_number": block_number, "state_root": state_root},
            )
            if not swapped:
                return self._reject(
                    subnet_id, block_number, RejectReason.CONCURRENT_COMMIT,
                    "last committed block changed concurrently",
                )
            self._store.put(self._commitment_key(subnet_id, block_number), commitment.to_dict())
            self._commit_count.increment()

        logger.info(
            "Commitment stored",
            subnet_id=subnet_id,
            block_number=block_number,
            state_root=state_root,
            withdrawals=len(withdrawals),
        )
        self._notify(CommitmentEvent(subnet_id=subnet_id, block_number=block_number, state_root=state_root))

        return CommitmentResult(
            subnet_id=subnet_id,
            block_number=block_number,
            status=CommitmentStatus.COMMITTED,
            pom_report=report,
            commitment=commitment,
        )
