"""
Multisig Orchestrator

Executes a SettlementPlan against the external settlement network.

Pre-flight (all must pass before any signature is produced):
    1. PoM re-match: every transaction carries the plan's idempotency token,
       and plan totals and the summed transaction operations equal the delta
       recomputed from the same withdrawal queue.
    2. Solvency: every FX leg is quoted, then a fresh treasury snapshot must
       cover what the plan actually spends: direct payment amounts in their
       own asset and each path payment's send_max in its source asset.
    3. Signers: the signers held by this process that appear in the snapshot
       meet the treasury threshold.

Execution:
    Transactions are signed by exactly `threshold` signers and submitted in
    plan order. Only HORIZON_TIMEOUT is retried; a timed-out submission is
    resubmitted, never assumed to have failed. Once a transaction cannot be
    landed, nothing after it is attempted and the failing index is reported.

FX atomicity:
    Each path payment is its own transaction, quoted once during pre-flight
    and submitted with that send_max. If no path exists or slippage exceeds
    the bound after the FX retry budget, that one withdrawal is reported as
    failed and the rest of the plan continues.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import dataclasses
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pomsettle.failures import FailureHandler, SettlementError, SettlementFailure
from pomsettle.fx import FXEngine
from pomsettle.hardening import secure_compare
from pomsettle.hashing import HashFunction, sha256
from pomsettle.models import (
    OperationKind,
    PomDelta,
    SettlementPlan,
    SettlementTransaction,
    TreasurySnapshot,
    WithdrawalIntent,
)
from pomsettle.network import SettlementNetwork, TreasurySource
from pomsettle.observability import AuditLogger, Component, get_logger
from pomsettle.pom import compute_net_outflow, find_shortfalls, verify_delta_match
from pomsettle.resilience import RetryExhaustedError, RetryPolicy
from pomsettle.signing import Signer, sign_transaction

logger = get_logger("orchestrator", Component.ORCHESTRATOR)

FX_FAILURES = (SettlementFailure.PATH_NOT_FOUND, SettlementFailure.SLIPPAGE_EXCEEDED)


def is_submission_retryable(exc: Exception) -> bool:
    return isinstance(exc, SettlementError) and exc.failure == SettlementFailure.HORIZON_TIMEOUT


def _is_fx_failure(exc: Exception) -> bool:
    return isinstance(exc, SettlementError) and exc.failure in FX_FAILURES


class CancellationToken:
    """
    Cancels a settlement only while nothing has been submitted.

    After the first submission cancel() returns False and the attempt runs
    to a definitive outcome.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self._submitting = False

    def cancel(self) -> bool:
        with self._lock:
            if self._submitting:
                return False
            self._cancelled = True
            return True

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def submitting(self) -> bool:
        with self._lock:
            return self._submitting

    def begin_submission(self) -> None:
        """Called before every submission; raises CANCELLED before the first."""
        with self._lock:
            if self._submitting:
                return
            if self._cancelled:
                raise SettlementError(SettlementFailure.CANCELLED, "Settlement cancelled before submission")
            self._submitting = True


@dataclass
class ExecutionResult:
    subnet_id: str
    block_number: int
    tx_refs: Tuple[str, ...] = ()
    submitted: int = 0
    failed_withdrawals: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "subnet_id": self.subnet_id,
            "block_number": self.block_number,
            "tx_refs": list(self.tx_refs),
            "submitted": self.submitted,
            "failed_withdrawals": dict(self.failed_withdrawals),
        }


@dataclass
class Preflight:
    """Outcome of the pre-flight checks; transactions have FX legs prepared."""
    snapshot: TreasurySnapshot
    transactions: Tuple[SettlementTransaction, ...]
    outflow: Dict[str, int]
    failed_withdrawals: Dict[str, str] = field(default_factory=dict)


class MultisigOrchestrator:
    """Pre-flight checks, signing and ordered submission for one plan at a time."""

    def __init__(
        self,
        treasury: TreasurySource,
        network: SettlementNetwork,
        signers: Sequence[Signer],
        retry_policy: Optional[RetryPolicy] = None,
        fx_engine: Optional[FXEngine] = None,
        fx_retries: int = 2,
        max_network_retries: int = 3,
        audit: Optional[AuditLogger] = None,
        failure_handler: Optional[FailureHandler] = None,
        hash_fn: HashFunction = sha256,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._treasury = treasury
        self._network = network
        self._signers = {s.public_key: s for s in signers}
        self._fx = fx_engine
        self._hash_fn = hash_fn
        self._audit = audit or AuditLogger()
        self._failures = failure_handler or FailureHandler(max_network_retries)
        self._retry = retry_policy or RetryPolicy(
            max_attempts=max_network_retries + 1,
            retry_if=is_submission_retryable,
            on_retry=self._log_retry,
            sleep=sleep,
        )
        self._fx_retry = RetryPolicy(
            max_attempts=fx_retries + 1,
            retry_if=_is_fx_failure,
            on_retry=self._log_retry,
            sleep=sleep,
        )

    @property
    def audit(self) -> AuditLogger:
        return self._audit

    @property
    def failure_handler(self) -> FailureHandler:
        return self._failures

    @staticmethod
    def _log_retry(attempt: int, exc: Exception, delay: float) -> None:
        logger.warning("Retrying after transient failure", attempt=attempt, delay_seconds=delay, error=str(exc))

    def _halt(self, plan: SettlementPlan, error: SettlementError) -> SettlementError:
        self._failures.handle(error, plan.subnet_id, plan.block_number)
        self._audit.alert(
            error.failure.value,
            f"{plan.subnet_id}:{plan.block_number}",
            message=error.message,
            **error.details,
        )
        return error

    # -------------------------------------------------------------------------
    # Pre-flight
    # -------------------------------------------------------------------------

    def _operation_totals(self, plan: SettlementPlan) -> PomDelta:
        totals: Dict[str, int] = {}
        for tx in plan.transactions:
            for op in tx.operations:
                key = op.asset.asset_id(self._hash_fn)
                totals[key] = totals.get(key, 0) + op.amount
        return PomDelta(totals)

    def available_signers(self, snapshot: TreasurySnapshot) -> List[str]:
        return sorted(k for k in self._signers if k in snapshot.signers)

    def treasury_outflow(self, transactions: Sequence[SettlementTransaction]) -> Dict[str, int]:
        """Per-asset spend of the treasury: amounts for payments, send_max for path payments."""
        outflow: Dict[str, int] = {}
        for tx in transactions:
            for op in tx.operations:
                if op.kind == OperationKind.PATH_PAYMENT:
                    key, amount = op.send_asset.asset_id(self._hash_fn), op.send_max
                else:
                    key, amount = op.asset.asset_id(self._hash_fn), op.amount
                outflow[key] = outflow.get(key, 0) + amount
        return dict(sorted(outflow.items()))

    def _prepare_transactions(
        self, plan: SettlementPlan
    ) -> Tuple[Tuple[SettlementTransaction, ...], Dict[str, str]]:
        prepared: List[SettlementTransaction] = []
        failed: Dict[str, str] = {}
        for tx in plan.transactions:
            if tx.kind != OperationKind.PATH_PAYMENT:
                prepared.append(tx)
                continue
            try:
                prepared.append(self._prepare_fx(tx))
            except (RetryExhaustedError, SettlementError) as e:
                cause = e.last_exception if isinstance(e, RetryExhaustedError) else e
                if not _is_fx_failure(cause):
                    raise
                self._failures.handle(cause, plan.subnet_id, plan.block_number)
                for op in tx.operations:
                    failed[op.withdrawal_id] = cause.failure.value
        return tuple(prepared), failed

    def preflight(self, plan: SettlementPlan, withdrawals: Sequence[WithdrawalIntent]) -> Preflight:
        """Run the three checks; returns the fresh snapshot and the transactions to sign."""
        unbound = [tx.index for tx in plan.transactions if not secure_compare(tx.idempotency_token, plan.idempotency_token)]
        if unbound:
            raise self._halt(plan, SettlementError(
                SettlementFailure.POM_MISMATCH,
                "Transactions not bound to the settlement idempotency token",
                {"transaction_indexes": unbound, "idempotency_token": plan.idempotency_token.hex()},
            ))

        delta = compute_net_outflow(withdrawals, self._hash_fn)

        discrepancies = verify_delta_match(delta, plan.totals_by_asset)
        op_discrepancies = verify_delta_match(delta, self._operation_totals(plan))
        if discrepancies or op_discrepancies:
            raise self._halt(plan, SettlementError(
                SettlementFailure.POM_MISMATCH,
                "Settlement plan totals differ from the PoM delta",
                {
                    "discrepancies": [d.to_dict() for d in discrepancies],
                    "transaction_discrepancies": [d.to_dict() for d in op_discrepancies],
                },
            ))

        snapshot = self._treasury.get_snapshot(plan.subnet_id)
        transactions, failed = self._prepare_transactions(plan)
        outflow = self.treasury_outflow(transactions)
        shortfalls = find_shortfalls(outflow, snapshot)
        if shortfalls:
            raise self._halt(plan, SettlementError(
                SettlementFailure.INSUFFICIENT_BALANCE,
                f"Treasury short on {len(shortfalls)} asset(s)",
                {"shortfalls": {k: {n: str(v) for n, v in s.items()} for k, s in shortfalls.items()}},
            ))

        available = self.available_signers(snapshot)
        if len(available) < snapshot.threshold:
            raise self._halt(plan, SettlementError(
                SettlementFailure.THRESHOLD_NOT_MET,
                f"{len(available)} of {snapshot.threshold} required signers available",
                {
                    "available_signers": available,
                    "required": snapshot.threshold,
                    "treasury_signers": sorted(snapshot.signers),
                },
            ))

        return Preflight(snapshot, transactions, outflow, failed)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _prepare_fx(self, tx: SettlementTransaction) -> SettlementTransaction:
        op = tx.operations[0]
        if self._fx is None or op.send_asset is None:
            raise SettlementError(
                SettlementFailure.PATH_NOT_FOUND,
                "No FX engine configured for path payment",
                {"withdrawal_id": op.withdrawal_id},
            )
        fx_path = self._fx_retry.execute(
            lambda: self._fx.prepare_conversion(op.send_asset, op.asset, op.amount)
        )
        prepared = dataclasses.replace(op, send_max=fx_path.send_max, path=fx_path.path)
        return dataclasses.replace(tx, operations=(prepared,))

    def _submit(self, tx: SettlementTransaction, signatures: Dict[str, bytes]) -> str:
        return self._retry.execute(lambda: self._network.submit(tx, signatures))

    def execute(
        self,
        plan: SettlementPlan,
        withdrawals: Sequence[WithdrawalIntent],
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """
        Settle the plan.

        Raises SettlementError for halts (with details), for CANCELLED before
        the first submission, and PARTIAL_SUBMISSION with `failed_index` and
        the refs already landed when a transaction cannot be submitted.
        """
        checked = self.preflight(plan, withdrawals)
        snapshot = checked.snapshot
        keys = self.available_signers(snapshot)[:snapshot.threshold]
        signers = [self._signers[k] for k in keys]

        result = ExecutionResult(
            subnet_id=plan.subnet_id,
            block_number=plan.block_number,
            failed_withdrawals=dict(checked.failed_withdrawals),
        )
        refs: List[str] = []

        for tx in checked.transactions:
            if cancel_token is not None:
                cancel_token.begin_submission()

            signatures = sign_transaction(tx, signers, self._hash_fn)
            try:
                ref = self._submit(tx, signatures)
            except Exception as e:
                cause = e.last_exception if isinstance(e, RetryExhaustedError) else e
                raise self._halt(plan, SettlementError(
                    SettlementFailure.PARTIAL_SUBMISSION,
                    f"Transaction {tx.index} failed after {len(refs)} submitted",
                    {
                        "failed_index": tx.index,
                        "submitted_refs": list(refs),
                        "cause": str(cause),
                    },
                )) from e

            refs.append(ref)
            result.submitted += 1
            logger.info(
                "Transaction submitted",
                subnet_id=plan.subnet_id,
                block_number=plan.block_number,
                index=tx.index,
                tx_ref=ref,
                operations=len(tx.operations),
            )

        result.tx_refs = tuple(refs)
        return result
