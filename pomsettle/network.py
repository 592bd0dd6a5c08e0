"""
External Collaborator Interfaces

The settlement engine talks to four external systems. Each is a Protocol here,
with an in-memory implementation used by tests, demos and the CLI.

    TreasurySource      fresh treasury snapshots per subnet
    WithdrawalSource    sealed withdrawal queues per (subnet, block)
    SettlementNetwork   signed transaction submission
    ConfirmationSink    settlement confirmations back to the ledger

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple, Union

from pomsettle.failures import SettlementError, SettlementFailure
from pomsettle.hashing import HashFunction, sha256
from pomsettle.models import SettlementConfirmation, SettlementTransaction, TreasurySnapshot, WithdrawalIntent
from pomsettle.observability import Component, get_logger
from pomsettle.signing import transaction_digest, verify_signature

logger = get_logger("network", Component.NETWORK)


class TransactionRejected(Exception):
    """The settlement network definitively refused a transaction."""

    def __init__(self, reason: str, tx_index: Optional[int] = None):
        self.reason = reason
        self.tx_index = tx_index
        super().__init__(f"Transaction rejected: {reason}")


# =============================================================================
# PROTOCOLS
# =============================================================================

class TreasurySource(Protocol):
    def get_snapshot(self, subnet_id: str) -> TreasurySnapshot:
        """Fetch a fresh snapshot; never served from a cache."""
        ...


class WithdrawalSource(Protocol):
    def fetch_withdrawals(self, subnet_id: str, block_number: int) -> List[WithdrawalIntent]:
        ...


class SettlementNetwork(Protocol):
    def submit(self, tx: SettlementTransaction, signatures: Mapping[str, bytes]) -> str:
        """
        Submit a signed transaction and return its external reference.

        Raises SettlementError(HORIZON_TIMEOUT) when the outcome is unknown
        and TransactionRejected when the network refused it.
        """
        ...


class ConfirmationSink(Protocol):
    def send_confirmation(self, confirmation: SettlementConfirmation) -> bool:
        ...


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryTreasury:
    """Treasury snapshots held in memory, keyed by subnet."""

    def __init__(self, snapshots: Optional[Mapping[str, TreasurySnapshot]] = None,
                 default: Optional[TreasurySnapshot] = None):
        self._snapshots: Dict[str, TreasurySnapshot] = dict(snapshots or {})
        self._default = default
        self._lock = threading.Lock()
        self.fetch_count = 0

    def set_snapshot(self, subnet_id: str, snapshot: TreasurySnapshot) -> None:
        with self._lock:
            self._snapshots[subnet_id] = snapshot

    def get_snapshot(self, subnet_id: str) -> TreasurySnapshot:
        with self._lock:
            self.fetch_count += 1
            snapshot = self._snapshots.get(subnet_id, self._default)
        if snapshot is None:
            raise KeyError(f"No treasury snapshot for subnet {subnet_id}")
        return TreasurySnapshot(
            balances=snapshot.balances,
            signers=snapshot.signers,
            threshold=snapshot.threshold,
        )


class InMemoryWithdrawalSource:
    def __init__(self):
        self._queues: Dict[Tuple[str, int], List[WithdrawalIntent]] = {}
        self._lock = threading.Lock()

    def put(self, subnet_id: str, block_number: int, withdrawals: Iterable[WithdrawalIntent]) -> None:
        with self._lock:
            self._queues[(subnet_id, block_number)] = list(withdrawals)

    def fetch_withdrawals(self, subnet_id: str, block_number: int) -> List[WithdrawalIntent]:
        with self._lock:
            return list(self._queues.get((subnet_id, block_number), []))


@dataclass
class Submission:
    tx: SettlementTransaction
    signatures: Dict[str, bytes]
    tx_ref: str
    submitted_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class InMemorySettlementNetwork:
    """
    Simulated settlement network.

    Verifies that each transaction carries at least `threshold` valid
    signatures from `signers`. Re-submitting an already applied transaction
    returns the original reference without applying it again, the way a
    sequence-numbered source account would. Failures can be scripted with
    fail_next().
    """

    def __init__(self, signers: Iterable[str], threshold: int, hash_fn: HashFunction = sha256):
        self.signers = {s.lower() for s in signers}
        self.threshold = threshold
        self.hash_fn = hash_fn
        self._applied: Dict[bytes, Submission] = {}
        self._order: List[Submission] = []
        self._script: Deque[Tuple[Exception, bool]] = deque()
        self._lock = threading.Lock()
        self.attempts = 0

    def fail_next(
        self,
        count: int = 1,
        error: Optional[Exception] = None,
        apply_before_failing: bool = False,
    ) -> None:
        """
        Make the next `count` submissions raise `error` (a timeout by default).

        With apply_before_failing the transaction is applied before the error
        is raised, modelling a timeout whose transaction did land.
        """
        error = error or SettlementError(SettlementFailure.HORIZON_TIMEOUT, "simulated timeout")
        with self._lock:
            for _ in range(count):
                self._script.append((error, apply_before_failing))

    def submit(self, tx: SettlementTransaction, signatures: Mapping[str, bytes]) -> str:
        digest = transaction_digest(tx, self.hash_fn)
        with self._lock:
            self.attempts += 1
            scripted = self._script.popleft() if self._script else None

        if scripted is not None and not scripted[1]:
            raise scripted[0]

        valid = sum(
            1 for key, sig in signatures.items()
            if key.lower() in self.signers and verify_signature(key, sig, digest)
        )
        if valid < self.threshold:
            raise TransactionRejected(f"{valid} valid signatures, need {self.threshold}", tx.index)

        with self._lock:
            existing = self._applied.get(digest)
            if existing is None:
                tx_ref = self.hash_fn(digest + tx.memo).hex()
                existing = Submission(tx=tx, signatures=dict(signatures), tx_ref=tx_ref)
                self._applied[digest] = existing
                self._order.append(existing)

        if scripted is not None:
            raise scripted[0]
        return existing.tx_ref

    @property
    def submissions(self) -> List[Submission]:
        with self._lock:
            return list(self._order)

    @property
    def submission_count(self) -> int:
        with self._lock:
            return len(self._order)


class InMemoryConfirmationSink:
    def __init__(self):
        self._sent: List[SettlementConfirmation] = []
        self._by_key: Dict[Tuple[str, int], SettlementConfirmation] = {}
        self._lock = threading.Lock()

    def send_confirmation(self, confirmation: SettlementConfirmation) -> bool:
        with self._lock:
            self._sent.append(confirmation)
            self._by_key[(confirmation.subnet_id, confirmation.block_number)] = confirmation
        return True

    @property
    def sent(self) -> List[SettlementConfirmation]:
        with self._lock:
            return list(self._sent)

    def get(self, subnet_id: str, block_number: int) -> Optional[SettlementConfirmation]:
        with self._lock:
            return self._by_key.get((subnet_id, block_number))


class FileConfirmationSink:
    """Appends each confirmation as one JSON line, for audit and replay."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()

    def send_confirmation(self, confirmation: SettlementConfirmation) -> bool:
        line = json.dumps(confirmation.to_dict(), sort_keys=True) + "\n"
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
        except OSError as e:
            logger.error("Failed to write confirmation", error_code="CONFIRMATION_WRITE", path=str(self.path), error=str(e))
            return False
        return True

    def read_all(self) -> List[Dict]:
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]
