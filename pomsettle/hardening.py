"""
Proof-of-Money Validation and Hardening

Input validation for wire data entering the settlement engine, plus the
thread-safety and invariant primitives shared by the ledger, the commitment
manager and the replay service.

Security Model:
    - All wire inputs are untrusted until validated
    - Signature and digest comparisons are constant-time
    - Shared counters mutate only through atomic operations
    - Amounts are integers with explicit 128-bit bounds

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hmac
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pomsettle.hashing import I128_MAX, U128_MAX


# =============================================================================
# VALIDATION ERROR TYPES
# =============================================================================

class ValidationError(Exception):
    """Base exception for validation failures."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ValidationErrors(Exception):
    """Collection of validation errors."""

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(f"Validation failed: {messages}")


class InvariantViolation(Exception):
    """State invariant violated."""
    pass


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise ValidationErrors if validation failed."""
        if not self.is_valid:
            raise ValidationErrors(self.errors)

    def value_or_raise(self) -> Any:
        self.raise_if_invalid()
        return self.sanitized_value

    @classmethod
    def success(cls, sanitized_value: Any = None) -> "ValidationResult":
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> "ValidationResult":
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of wire-input validators."""

    HEX64_PATTERN = re.compile(r"^[a-f0-9]{64}$")
    DECIMAL_PATTERN = re.compile(r"^(0|[1-9][0-9]*)$")

    MIN_ASSET_CODE_LENGTH = 1
    MAX_ASSET_CODE_LENGTH = 12

    @classmethod
    def validate_hex32(cls, value: Any, field_name: str = "digest") -> ValidationResult:
        """Validate a 32-byte hex value; accepts a 0x prefix and upper case."""
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected string, got {type(value).__name__}", value)
            ])

        lower = value.strip().lower()
        if lower.startswith("0x"):
            lower = lower[2:]
        if not cls.HEX64_PATTERN.match(lower):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be 64 hex characters", value)
            ])
        return ValidationResult.success(lower)

    @classmethod
    def validate_asset_code(cls, value: Any, field_name: str = "asset.code") -> ValidationResult:
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected string, got {type(value).__name__}", value)
            ])
        if "\x00" in value:
            return ValidationResult.failure([
                ValidationError(field_name, "Must not contain NUL bytes", value)
            ])
        if not cls.MIN_ASSET_CODE_LENGTH <= len(value) <= cls.MAX_ASSET_CODE_LENGTH:
            return ValidationResult.failure([
                ValidationError(
                    field_name,
                    f"Length must be {cls.MIN_ASSET_CODE_LENGTH}..{cls.MAX_ASSET_CODE_LENGTH}",
                    value,
                )
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_amount(
        cls,
        value: Any,
        field_name: str = "amount",
        min_value: int = 0,
        max_value: int = I128_MAX,
    ) -> ValidationResult:
        """Validate an integer amount given as int or canonical decimal string."""
        if isinstance(value, bool):
            return ValidationResult.failure([
                ValidationError(field_name, "Expected integer amount, got bool", value)
            ])

        if isinstance(value, str):
            if not cls.DECIMAL_PATTERN.match(value):
                return ValidationResult.failure([
                    ValidationError(field_name, "Must be a canonical non-negative decimal string", value)
                ])
            amount = int(value)
        elif isinstance(value, int):
            amount = value
        else:
            return ValidationResult.failure([
                ValidationError(field_name, f"Cannot convert {type(value).__name__} to int", value)
            ])

        errors = []
        if amount < min_value:
            errors.append(ValidationError(field_name, f"Below minimum ({min_value})", value))
        if amount > max_value:
            errors.append(ValidationError(field_name, f"Exceeds maximum ({max_value})", value))
        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(amount)

    @classmethod
    def validate_unsigned_amount(cls, value: Any, field_name: str = "amount") -> ValidationResult:
        return cls.validate_amount(value, field_name, min_value=0, max_value=U128_MAX)


def secure_compare(a: bytes, b: bytes) -> bool:
    """Constant-time comparison of byte strings."""
    return hmac.compare_digest(a, b)


# =============================================================================
# THREAD-SAFE PRIMITIVES
# =============================================================================

class AtomicCounter:
    """Thread-safe counter."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, delta: int = 1) -> int:
        """Atomically increment and return new value."""
        with self._lock:
            self._value += delta
            return self._value

    def get(self) -> int:
        with self._lock:
            return self._value

    def compare_and_set(self, expected: int, new_value: int) -> bool:
        """Atomically set value if it equals expected."""
        with self._lock:
            if self._value == expected:
                self._value = new_value
                return True
            return False


# =============================================================================
# STATE MACHINE INVARIANTS
# =============================================================================

class InvariantChecker:
    """Enforces state machine invariants."""

    @staticmethod
    def check_state_transition(
        current_state: Enum,
        target_state: Enum,
        valid_transitions: Dict[Enum, Set[Enum]],
    ) -> None:
        """Verify state transition is valid."""
        valid_targets = valid_transitions.get(current_state, set())
        if target_state not in valid_targets:
            raise InvariantViolation(
                f"Invalid state transition: {current_state.value} -> {target_state.value}. "
                f"Valid targets: {sorted(s.value for s in valid_targets)}"
            )

    @staticmethod
    def check_strictly_increasing(
        field_name: str,
        old_value: Optional[int],
        new_value: int,
    ) -> None:
        if old_value is not None and new_value <= old_value:
            raise InvariantViolation(
                f"{field_name} must be strictly increasing: "
                f"cannot go from {old_value} to {new_value}"
            )

    @staticmethod
    def check_balance_sufficient(
        available: int,
        required: int,
        field_name: str = "balance",
    ) -> None:
        """Ensure sufficient balance for operation."""
        if available < required:
            raise InvariantViolation(
                f"Insufficient {field_name}: have {available}, need {required}"
            )
