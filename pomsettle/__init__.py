"""
pomsettle: Proof-of-Money Settlement Core

Commits an execution ledger's state to a single hash, proves that every
withdrawal it intends to pay is backed by the custodial treasury, and settles
committed withdrawal queues against an external ledger exactly once.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                        SETTLEMENT PIPELINE                               │
    │                                                                          │
    │  COMMIT                                                                  │
    │    state_root.py   Order-independent Merkle commitment of ledger state  │
    │    pom.py          Proof-of-Money: constructible, solvent, authorized   │
    │    commitment.py   Monotonic per-subnet commitments, signed by auditors │
    │                                                                          │
    │  SETTLE                                                                  │
    │    planner.py      Deterministic batches bound to an idempotency token  │
    │    orchestrator.py Pre-flight re-checks, multisig, ordered submission   │
    │    fx.py           Strict-receive path payments with slippage bounds    │
    │    replay.py       Exactly-once settlement records                      │
    │    executor.py     Commitment event to confirmation, one task per block │
    │                                                                          │
    │  FOUNDATION                                                              │
    │    hashing.py      Injectable hash, asset ids, leaves, Merkle roots     │
    │    store.py        Versioned store with compare-and-swap                │
    │    failures.py     Halt and retry taxonomy                              │
    │    resilience.py   Bounded retry with backoff                           │
    │    observability.py Structured logs, correlation ids, audit chain       │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Fail Closed: a plan that differs from the PoM delta by any amount is never
    submitted. Halts carry the exact asset, amount, signer or index at fault.

    Exactly Once: every transaction of a settlement carries the same token
    derived from (subnet, block). A Confirmed record short-circuits replays.

    Never Assume: a timed-out submission may still land. It is retried, and
    once anything is submitted the attempt runs to a definitive outcome.

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.3.0"

# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import pomsettle modules on first access."""

    # Model exports
    if name in ("Asset", "Balance", "WithdrawalIntent", "PomDelta", "TreasurySnapshot",
                "StateRoot", "Commitment", "CommitmentEvent", "SettlementPlan",
                "SettlementTransaction", "SettlementOperation", "SettlementRecord",
                "SettlementStatus", "SettlementConfirmation", "OperationKind"):
        from pomsettle import models
        return getattr(models, name)

    # Hashing exports
    if name in ("sha256", "asset_id", "idempotency_token", "merkle_root", "NATIVE_ISSUER", "ZERO_HASH"):
        from pomsettle import hashing
        return getattr(hashing, name)

    if name in ("StateRootBuilder", "compute_state_root"):
        from pomsettle import state_root
        return getattr(state_root, name)

    # PoM exports
    if name in ("PoMValidator", "PomResult", "PomReport", "PomOverflowError",
                "compute_net_outflow", "verify_delta_match"):
        from pomsettle import pom
        return getattr(pom, name)

    if name in ("CommitmentManager", "CommitmentResult", "CommitmentStatus", "RejectReason"):
        from pomsettle import commitment
        return getattr(commitment, name)

    if name in ("SettlementPlanner", "PlanningError"):
        from pomsettle import planner
        return getattr(planner, name)

    if name in ("MultisigOrchestrator", "CancellationToken", "ExecutionResult"):
        from pomsettle import orchestrator
        return getattr(orchestrator, name)

    if name in ("ReplayProtectionService",):
        from pomsettle import replay
        return getattr(replay, name)

    if name in ("FXEngine", "StaticMarket", "PathQuote", "FxPath"):
        from pomsettle import fx
        return getattr(fx, name)

    if name in ("SettlementExecutor", "SettlementOutcome", "SettlementTask"):
        from pomsettle import executor
        return getattr(executor, name)

    if name in ("LedgerStore",):
        from pomsettle import ledger
        return getattr(ledger, name)

    if name in ("TreasurySnapshotService",):
        from pomsettle import snapshot
        return getattr(snapshot, name)

    # Failure exports
    if name in ("SettlementError", "SettlementFailure", "SettlementPendingError"):
        from pomsettle import failures
        return getattr(failures, name)

    if name in ("Signer",):
        from pomsettle import signing
        return getattr(signing, name)

    raise AttributeError(f"module 'pomsettle' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Models
    "Asset", "Balance", "WithdrawalIntent", "PomDelta", "TreasurySnapshot",
    "StateRoot", "Commitment", "CommitmentEvent", "SettlementPlan",
    "SettlementTransaction", "SettlementOperation", "SettlementRecord",
    "SettlementStatus", "SettlementConfirmation", "OperationKind",
    # Hashing
    "sha256", "asset_id", "idempotency_token", "merkle_root", "NATIVE_ISSUER", "ZERO_HASH",
    "StateRootBuilder", "compute_state_root",
    # PoM
    "PoMValidator", "PomResult", "PomReport", "PomOverflowError",
    "compute_net_outflow", "verify_delta_match",
    # Commitment and settlement
    "CommitmentManager", "CommitmentResult", "CommitmentStatus", "RejectReason",
    "SettlementPlanner", "PlanningError",
    "MultisigOrchestrator", "CancellationToken", "ExecutionResult",
    "ReplayProtectionService",
    "FXEngine", "StaticMarket", "PathQuote", "FxPath",
    "SettlementExecutor", "SettlementOutcome", "SettlementTask",
    "LedgerStore", "TreasurySnapshotService",
    # Failures
    "SettlementError", "SettlementFailure", "SettlementPendingError",
    "Signer",
]
