"""
Settlement Retry Policy

Bounded retries with backoff for calls into the external settlement network
and FX market. Only failures classified as transient are retried; a submitted
transaction whose outcome timed out is retried, never assumed not to have
happened.

Usage
─────

    retry = RetryPolicy(
        max_attempts=4,
        base_delay_seconds=1.0,
        max_delay_seconds=30.0,
        retry_if=lambda exc: isinstance(exc, SettlementError) and exc.retryable,
    )
    tx_ref = retry.execute(lambda: network.submit(signed_tx))

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import functools
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


class BackoffStrategy(Enum):
    """Retry backoff strategies."""
    FIXED = auto()               # Fixed delay between retries
    EXPONENTIAL = auto()         # base * multiplier^(n-1)
    EXPONENTIAL_JITTER = auto()  # Exponential with random jitter
    LINEAR = auto()              # Linear increase


@dataclass
class RetryConfig:
    """Retry policy configuration."""
    max_attempts: int = 4
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    jitter_factor: float = 0.5
    retryable_exceptions: tuple = (Exception,)
    non_retryable_exceptions: tuple = ()


@dataclass
class RetryMetrics:
    """Retry metrics."""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retries_exhausted: int = 0
    total_retry_delay_seconds: float = 0.0


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""
    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


class RetryPolicy:
    """
    Retry policy with configurable backoff.

    A failure is retried when it matches retryable_exceptions, does not match
    non_retryable_exceptions, and passes the optional retry_if predicate.
    Anything else propagates immediately after a single attempt.
    """

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        backoff_multiplier: float = 2.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL,
        jitter_factor: float = 0.5,
        retryable_exceptions: tuple = (Exception,),
        non_retryable_exceptions: tuple = (),
        retry_if: Optional[Callable[[Exception], bool]] = None,
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.config = RetryConfig(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            backoff_multiplier=backoff_multiplier,
            backoff_strategy=backoff_strategy,
            jitter_factor=jitter_factor,
            retryable_exceptions=retryable_exceptions,
            non_retryable_exceptions=non_retryable_exceptions,
        )
        self._retry_if = retry_if
        self._on_retry = on_retry
        self._sleep = sleep
        self._metrics = RetryMetrics()
        self._lock = threading.Lock()

    @property
    def metrics(self) -> RetryMetrics:
        """Current retry metrics."""
        with self._lock:
            return RetryMetrics(
                total_attempts=self._metrics.total_attempts,
                successful_attempts=self._metrics.successful_attempts,
                failed_attempts=self._metrics.failed_attempts,
                retries_exhausted=self._metrics.retries_exhausted,
                total_retry_delay_seconds=self._metrics.total_retry_delay_seconds,
            )

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the retry that follows the given 1-based attempt."""
        base = self.config.base_delay_seconds
        multiplier = self.config.backoff_multiplier
        strategy = self.config.backoff_strategy

        if strategy == BackoffStrategy.FIXED:
            delay = base
        elif strategy == BackoffStrategy.LINEAR:
            delay = base * attempt
        elif strategy == BackoffStrategy.EXPONENTIAL:
            delay = base * (multiplier ** (attempt - 1))
        elif strategy == BackoffStrategy.EXPONENTIAL_JITTER:
            exp_delay = base * (multiplier ** (attempt - 1))
            delay = exp_delay + random.uniform(0, self.config.jitter_factor * exp_delay)
        else:
            delay = base

        return min(delay, self.config.max_delay_seconds)

    def _is_retryable(self, exc: Exception) -> bool:
        if isinstance(exc, self.config.non_retryable_exceptions):
            return False
        if not isinstance(exc, self.config.retryable_exceptions):
            return False
        if self._retry_if is not None:
            return self._retry_if(exc)
        return True

    def execute(self, func: Callable[[], T]) -> T:
        """Execute function with retry policy."""
        last_exception: Optional[Exception] = None

        for attempt in range(1, self.config.max_attempts + 1):
            with self._lock:
                self._metrics.total_attempts += 1

            try:
                result = func()
                with self._lock:
                    self._metrics.successful_attempts += 1
                return result
            except Exception as e:
                last_exception = e
                with self._lock:
                    self._metrics.failed_attempts += 1

                if not self._is_retryable(e):
                    raise

                if attempt < self.config.max_attempts:
                    delay = self.calculate_delay(attempt)
                    with self._lock:
                        self._metrics.total_retry_delay_seconds += delay

                    if self._on_retry:
                        self._on_retry(attempt, e, delay)

                    self._sleep(delay)

        with self._lock:
            self._metrics.retries_exhausted += 1

        raise RetryExhaustedError(self.config.max_attempts, last_exception)

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorator for retry protection."""
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper
