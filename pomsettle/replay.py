"""
Replay Protection

One SettlementRecord per (subnet_id, block_number). The record is the only
thing that stands between a retried settlement and a double payout, so every
transition goes through the store's put_if_absent / compare_and_swap.

Record lifecycle:

    (none) ──begin──► PENDING ──┬──► CONFIRMED                   terminal
                                └──► FAILED ──┬─ retryable ──► PENDING (begin)
                                              └─ terminal

A PENDING record found by begin() means an earlier attempt may have submitted
transactions whose outcome is unknown. It is never replayed automatically;
an operator must call resolve_pending() first.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple

from pomsettle.failures import SettlementFailure, SettlementPendingError
from pomsettle.hardening import InvariantChecker
from pomsettle.models import SettlementRecord, SettlementStatus
from pomsettle.observability import Component, get_logger
from pomsettle.store import EphemeralStore, Store

logger = get_logger("replay", Component.REPLAY)

VALID_TRANSITIONS = {
    SettlementStatus.PENDING: {SettlementStatus.CONFIRMED, SettlementStatus.FAILED},
    SettlementStatus.FAILED: {SettlementStatus.PENDING},
    SettlementStatus.CONFIRMED: set(),
}

# Failures that leave the external ledger untouched and can be retried from scratch.
RETRYABLE_RECORD_FAILURES = frozenset({
    SettlementFailure.INSUFFICIENT_BALANCE,
    SettlementFailure.THRESHOLD_NOT_MET,
    SettlementFailure.CANCELLED,
})


class ReplayProtectionService:
    """Settlement records keyed by (subnet, block), with a token index."""

    def __init__(self, store: Optional[Store] = None):
        self._store = store if store is not None else EphemeralStore()

    @property
    def store(self) -> Store:
        return self._store

    @staticmethod
    def _key(subnet_id: str, block_number: int) -> str:
        return f"settlement:{subnet_id}:{block_number:020d}"

    @staticmethod
    def _token_key(token_hex: str) -> str:
        return f"token:{token_hex}"

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_record(self, subnet_id: str, block_number: int) -> Optional[SettlementRecord]:
        value = self._store.get_value(self._key(subnet_id, block_number))
        return SettlementRecord.from_dict(value) if value else None

    def get_by_token(self, token_hex: str) -> Optional[SettlementRecord]:
        pointer = self._store.get_value(self._token_key(token_hex.lower()))
        if not pointer:
            return None
        return self.get_record(pointer["subnet_id"], pointer["block_number"])

    def is_already_settled(self, subnet_id: str, block_number: int) -> bool:
        """True for a Confirmed or terminally Failed record."""
        record = self.get_record(subnet_id, block_number)
        return record is not None and record.is_terminal

    def list_records(
        self,
        subnet_id: Optional[str] = None,
        status: Optional[SettlementStatus] = None,
    ) -> List[SettlementRecord]:
        prefix = f"settlement:{subnet_id}:" if subnet_id else "settlement:"
        records = [SettlementRecord.from_dict(self._store.get_value(k)) for k in self._store.keys(prefix)]
        if status is not None:
            records = [r for r in records if r.status == status]
        return records

    def count_by_status(self) -> Dict[str, int]:
        counts = Counter(r.status.value for r in self.list_records())
        return {s.value: counts.get(s.value, 0) for s in SettlementStatus if s != SettlementStatus.ALREADY_SETTLED}

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def begin(self, subnet_id: str, block_number: int, token: bytes) -> Tuple[bool, SettlementRecord]:
        """
        Claim the (subnet, block) slot by writing a Pending record.

        Returns (True, pending record) when this caller now owns the attempt,
        or (False, existing record) when the slot is already terminal.
        Raises SettlementPendingError when an earlier attempt is unresolved.
        """
        key = self._key(subnet_id, block_number)
        pending = SettlementRecord(
            subnet_id=subnet_id,
            block_number=block_number,
            status=SettlementStatus.PENDING,
            idempotency_token=token.hex(),
        )

        created, entry = self._store.put_if_absent(key, pending.to_dict())
        if created:
            self._store.put(self._token_key(pending.idempotency_token), {
                "subnet_id": subnet_id,
                "block_number": block_number,
            })
            logger.info("Settlement pending", subnet_id=subnet_id, block_number=block_number)
            return (True, pending)

        existing = SettlementRecord.from_dict(entry.value)
        if existing.status == SettlementStatus.PENDING:
            raise SettlementPendingError(subnet_id, block_number)
        if existing.is_terminal:
            return (False, existing)

        InvariantChecker.check_state_transition(existing.status, SettlementStatus.PENDING, VALID_TRANSITIONS)
        swapped, _ = self._store.compare_and_swap(key, entry.version, pending.to_dict())
        if not swapped:
            raise SettlementPendingError(subnet_id, block_number)
        logger.info(
            "Reopened retryable settlement",
            subnet_id=subnet_id,
            block_number=block_number,
            previous_failure=existing.failure,
        )
        return (True, pending)

    def record_pending(self, subnet_id: str, block_number: int, token: bytes) -> SettlementRecord:
        return self.begin(subnet_id, block_number, token)[1]

    def _transition(self, record: SettlementRecord) -> SettlementRecord:
        key = self._key(record.subnet_id, record.block_number)
        entry = self._store.get(key)
        if entry is None:
            raise SettlementPendingError(record.subnet_id, record.block_number)
        current = SettlementRecord.from_dict(entry.value)
        InvariantChecker.check_state_transition(current.status, record.status, VALID_TRANSITIONS)

        swapped, _ = self._store.compare_and_swap(key, entry.version, record.to_dict())
        if not swapped:
            raise SettlementPendingError(record.subnet_id, record.block_number)
        return record

    def record_confirmed(
        self,
        subnet_id: str,
        block_number: int,
        tx_refs: Iterable[str],
        failed_withdrawals: Iterable[str] = (),
        message: str = "",
    ) -> SettlementRecord:
        current = self.get_record(subnet_id, block_number)
        token = current.idempotency_token if current else ""
        record = self._transition(SettlementRecord(
            subnet_id=subnet_id,
            block_number=block_number,
            status=SettlementStatus.CONFIRMED,
            idempotency_token=token,
            tx_refs=tuple(tx_refs),
            failed_withdrawals=tuple(failed_withdrawals),
            message=message,
        ))
        logger.info(
            "Settlement confirmed",
            subnet_id=subnet_id,
            block_number=block_number,
            tx_refs=len(record.tx_refs),
            failed_withdrawals=len(record.failed_withdrawals),
        )
        return record

    def record_failed(
        self,
        subnet_id: str,
        block_number: int,
        failure: SettlementFailure,
        message: str = "",
        tx_refs: Iterable[str] = (),
        failed_index: Optional[int] = None,
        submitted: bool = False,
    ) -> SettlementRecord:
        """
        Mark the attempt Failed.

        A failure is retryable only when nothing reached the external ledger;
        once any transaction was submitted the record stays terminal until
        reconciled manually.
        """
        tx_refs = tuple(tx_refs)
        retryable = failure in RETRYABLE_RECORD_FAILURES and not submitted and not tx_refs
        current = self.get_record(subnet_id, block_number)
        token = current.idempotency_token if current else ""
        record = self._transition(SettlementRecord(
            subnet_id=subnet_id,
            block_number=block_number,
            status=SettlementStatus.FAILED,
            idempotency_token=token,
            tx_refs=tx_refs,
            failure=failure.value,
            failed_index=failed_index,
            retryable=retryable,
            message=message,
        ))
        logger.warning(
            "Settlement failed",
            subnet_id=subnet_id,
            block_number=block_number,
            failure=failure.value,
            failed_index=failed_index,
            retryable=retryable,
        )
        return record

    def resolve_pending(
        self,
        subnet_id: str,
        block_number: int,
        tx_refs: Optional[Iterable[str]] = None,
        note: str = "resolved by operator",
    ) -> SettlementRecord:
        """
        Operator decision on a stuck Pending record.

        With tx_refs the attempt is recorded Confirmed; without them it is
        recorded as a retryable cancellation so the next begin() may reopen it.
        """
        record = self.get_record(subnet_id, block_number)
        if record is None or record.status != SettlementStatus.PENDING:
            raise ValueError(f"No pending settlement for subnet {subnet_id} block {block_number}")
        if tx_refs is not None:
            return self.record_confirmed(subnet_id, block_number, tx_refs, message=note)
        return self.record_failed(subnet_id, block_number, SettlementFailure.CANCELLED, message=note)
