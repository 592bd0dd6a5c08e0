"""
Settlement Executor

End-to-end settlement of committed blocks:

    commitment event
      → replay check (Confirmed / terminal Failed: return it, submit nothing)
      → fresh treasury snapshot
      → plan
      → Pending record
      → orchestrator (pre-flight, sign, submit in order)
      → Confirmed / Failed record
      → settlement confirmation back to the execution ledger

Each (subnet, block) runs as its own task on a worker pool. Tasks never
share plan state; scheduling the same pair while it is running returns the
running task.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from pomsettle.config import PomSettleConfig, get_config
from pomsettle.failures import SettlementError, SettlementFailure, SettlementPendingError
from pomsettle.fx import FXEngine, MarketAdapter
from pomsettle.hardening import AtomicCounter
from pomsettle.hashing import NATIVE_ISSUER, HashFunction, idempotency_token, sha256
from pomsettle.models import (
    Asset,
    CommitmentEvent,
    SettlementConfirmation,
    SettlementRecord,
    SettlementStatus,
    WithdrawalIntent,
)
from pomsettle.network import ConfirmationSink, SettlementNetwork, TreasurySource, WithdrawalSource
from pomsettle.observability import (
    AuditLogger,
    Component,
    generate_correlation_id,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
)
from pomsettle.orchestrator import CancellationToken, MultisigOrchestrator, is_submission_retryable
from pomsettle.planner import SettlementPlanner
from pomsettle.replay import ReplayProtectionService
from pomsettle.resilience import RetryPolicy
from pomsettle.signing import Signer
from pomsettle.store import EphemeralStore, PersistentStore

logger = get_logger("executor", Component.EXECUTOR)


@dataclass(frozen=True)
class SettlementOutcome:
    """What one execute_settlement call observed and did."""
    subnet_id: str
    block_number: int
    status: SettlementStatus
    idempotency_token: str
    tx_refs: Tuple[str, ...] = ()
    submissions: int = 0
    failure: Optional[str] = None
    failed_index: Optional[int] = None
    failed_withdrawals: Tuple[str, ...] = ()
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_record(
        cls,
        record: SettlementRecord,
        status: Optional[SettlementStatus] = None,
        submissions: int = 0,
        details: Optional[Dict[str, Any]] = None,
    ) -> "SettlementOutcome":
        return cls(
            subnet_id=record.subnet_id,
            block_number=record.block_number,
            status=status or record.status,
            idempotency_token=record.idempotency_token,
            tx_refs=record.tx_refs,
            submissions=submissions,
            failure=record.failure,
            failed_index=record.failed_index,
            failed_withdrawals=record.failed_withdrawals,
            message=record.message,
            details=details or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "subnet_id": self.subnet_id,
            "block_number": self.block_number,
            "status": self.status.value,
            "idempotency_token": self.idempotency_token,
            "tx_refs": list(self.tx_refs),
            "submissions": self.submissions,
        }
        if self.failure:
            d["failure"] = self.failure
            d["failed_index"] = self.failed_index
            d["details"] = self.details
        if self.failed_withdrawals:
            d["failed_withdrawals"] = list(self.failed_withdrawals)
        if self.message:
            d["message"] = self.message
        return d


class IntegrationStats:
    """Counters for the commitment → settlement → confirmation loop."""

    def __init__(self):
        self.events_processed = AtomicCounter(0)
        self.settlements_succeeded = AtomicCounter(0)
        self.settlements_failed = AtomicCounter(0)
        self.withdrawals_processed = AtomicCounter(0)
        self.confirmations_sent = AtomicCounter(0)

    def to_dict(self) -> Dict[str, int]:
        return {
            "events_processed": self.events_processed.get(),
            "settlements_succeeded": self.settlements_succeeded.get(),
            "settlements_failed": self.settlements_failed.get(),
            "withdrawals_processed": self.withdrawals_processed.get(),
            "confirmations_sent": self.confirmations_sent.get(),
        }


class SettlementTask:
    """Handle for one scheduled (subnet, block) settlement."""

    def __init__(self, subnet_id: str, block_number: int, future: Future, cancel_token: CancellationToken):
        self.subnet_id = subnet_id
        self.block_number = block_number
        self.future = future
        self.cancel_token = cancel_token

    def result(self, timeout: Optional[float] = None) -> SettlementOutcome:
        return self.future.result(timeout)

    def done(self) -> bool:
        return self.future.done()

    def cancel(self) -> bool:
        """Succeeds only before the first transaction is submitted."""
        if self.future.cancel():
            return True
        return self.cancel_token.cancel()


class SettlementExecutor:
    """Runs settlements for committed blocks, one task per (subnet, block)."""

    def __init__(
        self,
        planner: SettlementPlanner,
        orchestrator: MultisigOrchestrator,
        replay: ReplayProtectionService,
        treasury: TreasurySource,
        withdrawals: Optional[WithdrawalSource] = None,
        confirmations: Optional[ConfirmationSink] = None,
        max_workers: int = 4,
        hash_fn: HashFunction = sha256,
    ):
        self.planner = planner
        self.orchestrator = orchestrator
        self.replay = replay
        self._treasury = treasury
        self._withdrawals = withdrawals
        self._confirmations = confirmations
        self._hash_fn = hash_fn
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pomsettle")
        self._tasks: Dict[Tuple[str, int], SettlementTask] = {}
        self._tasks_lock = threading.Lock()
        self.stats = IntegrationStats()

    @classmethod
    def from_config(
        cls,
        treasury: TreasurySource,
        network: SettlementNetwork,
        signers: Sequence[Signer],
        withdrawals: Optional[WithdrawalSource] = None,
        confirmations: Optional[ConfirmationSink] = None,
        market: Optional[MarketAdapter] = None,
        held_assets: Optional[Iterable[str]] = None,
        config: Optional[PomSettleConfig] = None,
        audit: Optional[AuditLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "SettlementExecutor":
        config = config or get_config()

        fx_source = None
        if config.fx.source_asset_code.get():
            fx_source = Asset(config.fx.source_asset_code.get(), config.fx.source_asset_issuer.get() or NATIVE_ISSUER)

        planner = SettlementPlanner(
            max_operations_per_tx=config.settlement.max_operations_per_tx.get(),
            base_fee_per_operation=config.settlement.base_fee_per_operation.get(),
            fx_source_asset=fx_source,
            held_assets=held_assets,
        )
        retry = RetryPolicy(
            max_attempts=config.retry.max_retries.get() + 1,
            base_delay_seconds=config.retry.base_delay_seconds.get(),
            max_delay_seconds=config.retry.max_delay_seconds.get(),
            backoff_multiplier=config.retry.backoff_multiplier.get(),
            retry_if=is_submission_retryable,
            sleep=sleep,
        )
        fx_engine = FXEngine(market, config.fx.max_slippage_percent.get()) if market is not None else None
        orchestrator = MultisigOrchestrator(
            treasury=treasury,
            network=network,
            signers=signers,
            retry_policy=retry,
            fx_engine=fx_engine,
            fx_retries=config.fx.max_path_retries.get(),
            max_network_retries=config.retry.max_retries.get(),
            audit=audit,
            sleep=sleep,
        )
        store_path = config.replay.store_path.get()
        store = PersistentStore(store_path) if store_path else EphemeralStore()

        return cls(
            planner=planner,
            orchestrator=orchestrator,
            replay=ReplayProtectionService(store),
            treasury=treasury,
            withdrawals=withdrawals,
            confirmations=confirmations,
            max_workers=config.settlement.worker_threads.get(),
        )

    # -------------------------------------------------------------------------
    # Synchronous settlement
    # -------------------------------------------------------------------------

    def execute_settlement(
        self,
        event: CommitmentEvent,
        withdrawals: Sequence[WithdrawalIntent],
        cancel_token: Optional[CancellationToken] = None,
    ) -> SettlementOutcome:
        """
        Settle one committed block.

        Halts and partial submissions are recorded Failed and returned as a
        FAILED outcome carrying the error details. SettlementPendingError
        propagates: an earlier attempt must be resolved first.
        """
        subnet_id, block_number = event.subnet_id, event.block_number
        cancel_token = cancel_token or CancellationToken()
        withdrawals = list(withdrawals)

        existing = self.replay.get_record(subnet_id, block_number)
        if existing is not None:
            if existing.status == SettlementStatus.PENDING:
                raise SettlementPendingError(subnet_id, block_number)
            if existing.is_terminal:
                return self._replayed(existing)

        token = idempotency_token(subnet_id, block_number, self._hash_fn)

        if not withdrawals:
            started, record = self.replay.begin(subnet_id, block_number, token)
            if not started:
                return self._replayed(record)
            record = self.replay.record_confirmed(subnet_id, block_number, ())
            self.stats.settlements_succeeded.increment()
            self._confirm(record)
            return SettlementOutcome.from_record(record)

        snapshot = self._treasury.get_snapshot(subnet_id)
        plan = self.planner.build_plan(subnet_id, block_number, withdrawals, snapshot)

        started, record = self.replay.begin(subnet_id, block_number, token)
        if not started:
            return self._replayed(record)

        try:
            result = self.orchestrator.execute(plan, withdrawals, cancel_token)
        except SettlementError as e:
            return self._failed(subnet_id, block_number, e, cancel_token)
        except Exception as e:
            if cancel_token.submitting:
                raise
            self.replay.record_failed(
                subnet_id, block_number, SettlementFailure.CANCELLED,
                message=f"aborted before submission: {e}",
            )
            self.stats.settlements_failed.increment()
            raise

        record = self.replay.record_confirmed(
            subnet_id,
            block_number,
            result.tx_refs,
            failed_withdrawals=sorted(result.failed_withdrawals),
        )
        self.stats.settlements_succeeded.increment()
        self.stats.withdrawals_processed.increment(len(withdrawals) - len(result.failed_withdrawals))
        self._confirm(record)

        logger.info(
            "Settlement confirmed",
            subnet_id=subnet_id,
            block_number=block_number,
            tx_refs=len(record.tx_refs),
            failed_withdrawals=len(result.failed_withdrawals),
        )
        return SettlementOutcome.from_record(record, submissions=result.submitted)

    def _replayed(self, record: SettlementRecord) -> SettlementOutcome:
        logger.info(
            "Settlement already recorded",
            subnet_id=record.subnet_id,
            block_number=record.block_number,
            status=record.status.value,
        )
        status = SettlementStatus.ALREADY_SETTLED if record.status == SettlementStatus.CONFIRMED else record.status
        return SettlementOutcome.from_record(record, status=status)

    def _failed(
        self,
        subnet_id: str,
        block_number: int,
        error: SettlementError,
        cancel_token: CancellationToken,
    ) -> SettlementOutcome:
        submitted_refs = error.details.get("submitted_refs", [])
        record = self.replay.record_failed(
            subnet_id,
            block_number,
            error.failure,
            message=error.message,
            tx_refs=submitted_refs,
            failed_index=error.details.get("failed_index"),
            submitted=cancel_token.submitting,
        )
        self.stats.settlements_failed.increment()
        return SettlementOutcome.from_record(record, submissions=len(submitted_refs), details=error.details)

    def _confirm(self, record: SettlementRecord) -> None:
        if self._confirmations is None:
            return
        confirmation = SettlementConfirmation(
            subnet_id=record.subnet_id,
            block_number=record.block_number,
            tx_refs=record.tx_refs,
            idempotency_token=record.idempotency_token,
        )
        if self._confirmations.send_confirmation(confirmation):
            self.stats.confirmations_sent.increment()
        else:
            logger.error(
                "Confirmation delivery failed",
                error_code="CONFIRMATION_FAILED",
                subnet_id=record.subnet_id,
                block_number=record.block_number,
            )

    # -------------------------------------------------------------------------
    # Task scheduling
    # -------------------------------------------------------------------------

    def _run(
        self,
        event: CommitmentEvent,
        withdrawals: Optional[Sequence[WithdrawalIntent]],
        cancel_token: CancellationToken,
    ) -> SettlementOutcome:
        token = set_correlation_id(generate_correlation_id())
        try:
            if withdrawals is None:
                if self._withdrawals is None:
                    raise RuntimeError("No withdrawal source configured")
                withdrawals = self._withdrawals.fetch_withdrawals(event.subnet_id, event.block_number)
            return self.execute_settlement(event, withdrawals, cancel_token)
        except Exception:
            logger.error(
                "Settlement task failed",
                error_code="TASK_FAILED",
                exc_info=True,
                subnet_id=event.subnet_id,
                block_number=event.block_number,
            )
            raise
        finally:
            reset_correlation_id(token)

    def schedule(
        self,
        event: CommitmentEvent,
        withdrawals: Optional[Sequence[WithdrawalIntent]] = None,
    ) -> SettlementTask:
        """
        Run the settlement as an independent task.

        Without explicit withdrawals the sealed queue is fetched from the
        configured WithdrawalSource inside the task.
        """
        key = (event.subnet_id, event.block_number)
        with self._tasks_lock:
            running = self._tasks.get(key)
            if running is not None and not running.done():
                return running
            cancel_token = CancellationToken()
            future = self._pool.submit(self._run, event, withdrawals, cancel_token)
            task = SettlementTask(event.subnet_id, event.block_number, future, cancel_token)
            self._tasks[key] = task
            return task

    def handle_commitment(self, event: CommitmentEvent) -> SettlementTask:
        """on_commitment hook for the CommitmentManager."""
        self.stats.events_processed.increment()
        logger.info("Commitment received", subnet_id=event.subnet_id, block_number=event.block_number)
        return self.schedule(event)

    def tasks(self) -> List[SettlementTask]:
        with self._tasks_lock:
            return list(self._tasks.values())

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> "SettlementExecutor":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()
