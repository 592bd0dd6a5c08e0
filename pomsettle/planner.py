"""
Settlement Planner

Turns a committed withdrawal queue into a deterministic, batched set of
external-ledger transactions.

Planning rules:
    - Every transaction carries the idempotency token
      H(subnet_id || block_number_be8)[:28], never a random id.
    - Withdrawals are grouped by asset id and sorted by withdrawal id
      within each group; repeated planning yields the same transactions.
    - Direct groups are split into batches of at most max_operations_per_tx.
    - Assets the treasury does not pay directly become path payments from
      the FX source asset, one withdrawal per transaction so that an FX
      failure stays isolated to that withdrawal.
    - totals_by_asset is recomputed independently of the batching for the
      orchestrator's pre-flight cross-check.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set

from pomsettle.hashing import HashFunction, idempotency_token, sha256
from pomsettle.models import (
    Asset,
    OperationKind,
    SettlementOperation,
    SettlementPlan,
    SettlementTransaction,
    TreasurySnapshot,
    WithdrawalIntent,
)
from pomsettle.observability import Component, get_logger, timed_operation
from pomsettle.pom import compute_net_outflow

logger = get_logger("planner", Component.PLANNER)

MAX_OPERATIONS_PER_TX = 100
BASE_FEE_PER_OPERATION = 100


class PlanningError(ValueError):
    """The withdrawal set cannot be turned into a plan."""
    pass


class SettlementPlanner:
    """Deterministic batch planner."""

    def __init__(
        self,
        max_operations_per_tx: int = MAX_OPERATIONS_PER_TX,
        base_fee_per_operation: int = BASE_FEE_PER_OPERATION,
        fx_source_asset: Optional[Asset] = None,
        held_assets: Optional[Iterable[str]] = None,
        hash_fn: HashFunction = sha256,
    ):
        if max_operations_per_tx < 1:
            raise ValueError("max_operations_per_tx must be >= 1")
        self.max_operations_per_tx = max_operations_per_tx
        self.base_fee_per_operation = base_fee_per_operation
        self.fx_source_asset = fx_source_asset
        self.held_assets: Optional[FrozenSet[str]] = frozenset(held_assets) if held_assets is not None else None
        self.hash_fn = hash_fn

    def _directly_payable(self, treasury: Optional[TreasurySnapshot]) -> Optional[Set[str]]:
        """
        Asset ids the treasury pays out as-is; None means every asset.

        An explicit held_assets set wins. Without an FX source everything is
        paid directly and solvency is left to pre-flight; otherwise any asset
        with a positive snapshot balance counts as held.
        """
        if self.held_assets is not None:
            return set(self.held_assets)
        if self.fx_source_asset is not None and treasury is not None:
            return {k for k, v in treasury.balances.items() if v > 0}
        return None

    def _fee(self, operation_count: int) -> int:
        return self.base_fee_per_operation * operation_count

    @timed_operation(logger, "build_plan")
    def build_plan(
        self,
        subnet_id: str,
        block_number: int,
        withdrawals: Sequence[WithdrawalIntent],
        treasury: Optional[TreasurySnapshot] = None,
    ) -> SettlementPlan:
        token = idempotency_token(subnet_id, block_number, self.hash_fn)
        payable = self._directly_payable(treasury)

        groups: Dict[str, List[WithdrawalIntent]] = defaultdict(list)
        for w in withdrawals:
            groups[w.asset_id(self.hash_fn)].append(w)

        seen: Set[str] = set()
        for w in withdrawals:
            if w.withdrawal_id in seen:
                raise PlanningError(f"Duplicate withdrawal id {w.withdrawal_id}")
            seen.add(w.withdrawal_id)

        direct: List[SettlementTransaction] = []
        fx: List[SettlementTransaction] = []

        for key in sorted(groups):
            group = sorted(groups[key], key=lambda w: bytes.fromhex(w.withdrawal_id))

            if payable is None or key in payable:
                for start in range(0, len(group), self.max_operations_per_tx):
                    batch = group[start:start + self.max_operations_per_tx]
                    ops = tuple(
                        SettlementOperation(
                            withdrawal_id=w.withdrawal_id,
                            destination=w.destination,
                            asset=w.asset,
                            amount=w.amount,
                        )
                        for w in batch
                    )
                    direct.append(self._transaction(OperationKind.PAYMENT, key, ops, token))
                continue

            if self.fx_source_asset is None:
                raise PlanningError(
                    f"Treasury does not hold asset {key} and no FX source asset is configured"
                )
            for w in group:
                op = SettlementOperation(
                    withdrawal_id=w.withdrawal_id,
                    destination=w.destination,
                    asset=w.asset,
                    amount=w.amount,
                    kind=OperationKind.PATH_PAYMENT,
                    send_asset=self.fx_source_asset,
                )
                fx.append(self._transaction(OperationKind.PATH_PAYMENT, key, (op,), token))

        transactions = tuple(
            SettlementTransaction(
                index=i,
                kind=tx.kind,
                asset_id=tx.asset_id,
                operations=tx.operations,
                idempotency_token=tx.idempotency_token,
                fee=tx.fee,
            )
            for i, tx in enumerate(direct + fx)
        )

        plan = SettlementPlan(
            subnet_id=subnet_id,
            block_number=block_number,
            idempotency_token=token,
            transactions=transactions,
            totals_by_asset=compute_net_outflow(withdrawals, self.hash_fn),
        )
        logger.info(
            "Built settlement plan",
            subnet_id=subnet_id,
            block_number=block_number,
            transactions=len(transactions),
            fx_transactions=len(fx),
            operations=plan.operation_count,
        )
        return plan

    def _transaction(
        self,
        kind: OperationKind,
        asset_key: str,
        ops: tuple,
        token: bytes,
    ) -> SettlementTransaction:
        return SettlementTransaction(
            index=-1,
            kind=kind,
            asset_id=asset_key,
            operations=ops,
            idempotency_token=token,
            fee=self._fee(len(ops)),
        )
