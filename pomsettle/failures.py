"""
Settlement Failure Taxonomy

Classifies every way a settlement can fail and decides between halting and
retrying. Halt conditions exist to prevent fund loss or an inconsistent
external ledger; they are never retried automatically.

    Failure               Severity   Action   Retries
    ───────────────────   ────────   ──────   ───────
    POM_MISMATCH          CRITICAL   HALT     0
    PARTIAL_SUBMISSION    CRITICAL   HALT     0
    THRESHOLD_NOT_MET     CRITICAL   HALT     0
    INSUFFICIENT_BALANCE  CRITICAL   HALT     0
    HORIZON_TIMEOUT       ERROR      RETRY    configured (3)
    PATH_NOT_FOUND        ERROR      RETRY    2
    SLIPPAGE_EXCEEDED     WARNING    RETRY    2
    CANCELLED             INFO       NONE     0

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pomsettle.observability import Component, get_logger

logger = get_logger("failures", Component.ORCHESTRATOR)


class SettlementFailure(Enum):
    POM_MISMATCH = "POM_MISMATCH"
    PARTIAL_SUBMISSION = "PARTIAL_SUBMISSION"
    THRESHOLD_NOT_MET = "THRESHOLD_NOT_MET"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    HORIZON_TIMEOUT = "HORIZON_TIMEOUT"
    PATH_NOT_FOUND = "PATH_NOT_FOUND"
    SLIPPAGE_EXCEEDED = "SLIPPAGE_EXCEEDED"
    CANCELLED = "CANCELLED"


class FailureSeverity(Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RecoveryAction(Enum):
    NONE = "NONE"
    RETRY = "RETRY"
    HALT = "HALT"
    MANUAL = "MANUAL"


class SettlementError(Exception):
    """
    A classified settlement failure.

    details carries the specific asset, amount, signer or index discrepancy
    so that an operator can reconcile without re-deriving it from logs.
    """

    def __init__(
        self,
        failure: SettlementFailure,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.failure = failure
        self.message = message
        self.details = details or {}
        super().__init__(f"{failure.value}: {message}")

    @property
    def should_halt(self) -> bool:
        return should_halt(self.failure)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.failure)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failure": self.failure.value,
            "message": self.message,
            "details": self.details,
        }


class SettlementPendingError(Exception):
    """A previous attempt is still Pending and must be investigated first."""

    def __init__(self, subnet_id: str, block_number: int):
        self.subnet_id = subnet_id
        self.block_number = block_number
        super().__init__(
            f"Settlement for subnet {subnet_id} block {block_number} is pending; "
            f"resolve it before retrying"
        )


@dataclass(frozen=True)
class FailureClassification:
    severity: FailureSeverity
    action: RecoveryAction
    retryable: bool
    max_retries: int
    halt_reason: str = ""


HALT_CONDITIONS = frozenset({
    SettlementFailure.POM_MISMATCH,
    SettlementFailure.PARTIAL_SUBMISSION,
    SettlementFailure.THRESHOLD_NOT_MET,
    SettlementFailure.INSUFFICIENT_BALANCE,
})

RETRYABLE_CONDITIONS = frozenset({
    SettlementFailure.HORIZON_TIMEOUT,
    SettlementFailure.PATH_NOT_FOUND,
    SettlementFailure.SLIPPAGE_EXCEEDED,
})

_HALT_REASONS = {
    SettlementFailure.POM_MISMATCH:
        "Settlement plan does not match the Proof-of-Money delta",
    SettlementFailure.PARTIAL_SUBMISSION:
        "Partial transaction submission; external state may be inconsistent",
    SettlementFailure.THRESHOLD_NOT_MET:
        "Insufficient signers to meet the treasury threshold",
    SettlementFailure.INSUFFICIENT_BALANCE:
        "Treasury balance insufficient for settlement",
}


def should_halt(failure: SettlementFailure) -> bool:
    return failure in HALT_CONDITIONS


def is_retryable(failure: SettlementFailure) -> bool:
    return failure in RETRYABLE_CONDITIONS


def classify_failure(failure: SettlementFailure, max_network_retries: int = 3) -> FailureClassification:
    """Severity, action and retry budget for a failure kind."""
    if failure in HALT_CONDITIONS:
        return FailureClassification(
            severity=FailureSeverity.CRITICAL,
            action=RecoveryAction.HALT,
            retryable=False,
            max_retries=0,
            halt_reason=_HALT_REASONS[failure],
        )
    if failure == SettlementFailure.HORIZON_TIMEOUT:
        return FailureClassification(FailureSeverity.ERROR, RecoveryAction.RETRY, True, max_network_retries)
    if failure == SettlementFailure.PATH_NOT_FOUND:
        return FailureClassification(FailureSeverity.ERROR, RecoveryAction.RETRY, True, 2)
    if failure == SettlementFailure.SLIPPAGE_EXCEEDED:
        return FailureClassification(FailureSeverity.WARNING, RecoveryAction.RETRY, True, 2)
    if failure == SettlementFailure.CANCELLED:
        return FailureClassification(FailureSeverity.INFO, RecoveryAction.NONE, False, 0)
    return FailureClassification(FailureSeverity.ERROR, RecoveryAction.MANUAL, False, 0)


@dataclass
class FailureContext:
    failure: SettlementFailure
    severity: FailureSeverity
    action: RecoveryAction
    message: str
    subnet_id: str = ""
    block_number: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failure": self.failure.value,
            "severity": self.severity.value,
            "action": self.action.value,
            "message": self.message,
            "subnet_id": self.subnet_id,
            "block_number": self.block_number,
            "details": self.details,
            "timestamp": self.timestamp,
        }


class FailureHandler:
    """Keeps the failure log for a settlement service and emits it as logs."""

    def __init__(self, max_network_retries: int = 3):
        self.max_network_retries = max_network_retries
        self._log: List[FailureContext] = []
        self._lock = threading.Lock()

    def classify(self, failure: SettlementFailure) -> FailureClassification:
        return classify_failure(failure, self.max_network_retries)

    def handle(
        self,
        error: SettlementError,
        subnet_id: str = "",
        block_number: Optional[int] = None,
    ) -> FailureContext:
        classification = self.classify(error.failure)
        context = FailureContext(
            failure=error.failure,
            severity=classification.severity,
            action=classification.action,
            message=error.message,
            subnet_id=subnet_id,
            block_number=block_number,
            details=dict(error.details),
        )
        with self._lock:
            self._log.append(context)

        if classification.severity == FailureSeverity.CRITICAL:
            logger.critical(
                f"{error.failure.value}: {error.message}",
                error_code=error.failure.value,
                subnet_id=subnet_id,
                block_number=block_number,
                halt_reason=classification.halt_reason,
                details=error.details,
            )
        elif classification.severity == FailureSeverity.INFO:
            logger.info(f"{error.failure.value}: {error.message}", subnet_id=subnet_id)
        else:
            logger.warning(
                f"{error.failure.value}: {error.message}",
                subnet_id=subnet_id,
                block_number=block_number,
                details=error.details,
            )
        return context

    def failure_log(self) -> List[FailureContext]:
        with self._lock:
            return list(self._log)
