"""
Retry policy and the settlement failure taxonomy.
"""

import pytest

from pomsettle.failures import (
    FailureHandler,
    FailureSeverity,
    RecoveryAction,
    SettlementError,
    SettlementFailure,
    classify_failure,
    is_retryable,
    should_halt,
)
from pomsettle.resilience import BackoffStrategy, RetryExhaustedError, RetryPolicy


class Flaky:
    """Fails a fixed number of times, then returns a value."""

    def __init__(self, failures, exc=ConnectionError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return "ok"


@pytest.fixture
def slept():
    return []


class TestRetryPolicy:
    def test_success_after_failures(self, slept):
        policy = RetryPolicy(max_attempts=3, sleep=slept.append)
        func = Flaky(2)
        assert policy.execute(func) == "ok"
        assert func.calls == 3
        assert slept == [1.0, 2.0]

    def test_exhausted(self, slept):
        policy = RetryPolicy(max_attempts=3, sleep=slept.append)
        with pytest.raises(RetryExhaustedError) as exc_info:
            policy.execute(Flaky(5))
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_exception, ConnectionError)
        assert len(slept) == 2

    def test_non_retryable_propagates(self, slept):
        policy = RetryPolicy(max_attempts=3, non_retryable_exceptions=(KeyError,), sleep=slept.append)
        func = Flaky(1, exc=KeyError)
        with pytest.raises(KeyError):
            policy.execute(func)
        assert func.calls == 1
        assert slept == []

    def test_retry_if_predicate(self, slept):
        policy = RetryPolicy(
            max_attempts=4,
            retry_if=lambda e: "failure 1" in str(e),
            sleep=slept.append,
        )
        func = Flaky(3)
        with pytest.raises(ConnectionError):
            policy.execute(func)
        assert func.calls == 2

    def test_delay_strategies(self):
        exp = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0)
        assert [exp.calculate_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

        linear = RetryPolicy(base_delay_seconds=0.5, backoff_strategy=BackoffStrategy.LINEAR)
        assert linear.calculate_delay(3) == 1.5

        fixed = RetryPolicy(base_delay_seconds=0.5, backoff_strategy=BackoffStrategy.FIXED)
        assert fixed.calculate_delay(7) == 0.5

        jitter = RetryPolicy(base_delay_seconds=1.0, backoff_strategy=BackoffStrategy.EXPONENTIAL_JITTER)
        assert 2.0 <= jitter.calculate_delay(2) <= 3.0

    def test_metrics(self, slept):
        policy = RetryPolicy(max_attempts=2, sleep=slept.append)
        policy.execute(Flaky(1))
        with pytest.raises(RetryExhaustedError):
            policy.execute(Flaky(2))

        metrics = policy.metrics
        assert metrics.total_attempts == 4
        assert metrics.successful_attempts == 1
        assert metrics.failed_attempts == 3
        assert metrics.retries_exhausted == 1
        assert metrics.total_retry_delay_seconds == 2.0

    def test_on_retry_callback(self, slept):
        seen = []
        policy = RetryPolicy(
            max_attempts=3,
            on_retry=lambda attempt, exc, delay: seen.append((attempt, delay)),
            sleep=slept.append,
        )
        policy.execute(Flaky(2))
        assert seen == [(1, 1.0), (2, 2.0)]

    def test_decorator(self, slept):
        func = Flaky(1)

        @RetryPolicy(max_attempts=2, sleep=slept.append)
        def call():
            return func()

        assert call() == "ok"

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestFailureTaxonomy:
    """Halt versus retry decisions per failure kind."""

    @pytest.mark.parametrize("failure", [
        SettlementFailure.POM_MISMATCH,
        SettlementFailure.PARTIAL_SUBMISSION,
        SettlementFailure.THRESHOLD_NOT_MET,
        SettlementFailure.INSUFFICIENT_BALANCE,
    ])
    def test_halt_conditions(self, failure):
        classification = classify_failure(failure)
        assert should_halt(failure)
        assert not is_retryable(failure)
        assert classification.action == RecoveryAction.HALT
        assert classification.severity == FailureSeverity.CRITICAL
        assert classification.max_retries == 0
        assert classification.halt_reason

    def test_network_timeout_uses_configured_budget(self):
        assert classify_failure(SettlementFailure.HORIZON_TIMEOUT).max_retries == 3
        assert classify_failure(SettlementFailure.HORIZON_TIMEOUT, max_network_retries=6).max_retries == 6

    def test_fx_failures_retry_twice(self):
        path = classify_failure(SettlementFailure.PATH_NOT_FOUND)
        slippage = classify_failure(SettlementFailure.SLIPPAGE_EXCEEDED)
        assert (path.action, path.max_retries) == (RecoveryAction.RETRY, 2)
        assert (slippage.severity, slippage.max_retries) == (FailureSeverity.WARNING, 2)

    def test_cancelled_is_informational(self):
        classification = classify_failure(SettlementFailure.CANCELLED)
        assert classification.severity == FailureSeverity.INFO
        assert classification.action == RecoveryAction.NONE
        assert not should_halt(SettlementFailure.CANCELLED)

    def test_error_properties(self):
        error = SettlementError(SettlementFailure.SLIPPAGE_EXCEEDED, "quote moved", {"asset_id": "ab" * 32})
        assert error.retryable
        assert not error.should_halt
        assert str(error) == "SLIPPAGE_EXCEEDED: quote moved"
        assert error.to_dict()["details"] == {"asset_id": "ab" * 32}


class TestFailureHandler:
    def test_log_keeps_context(self):
        handler = FailureHandler(max_network_retries=5)
        error = SettlementError(SettlementFailure.PARTIAL_SUBMISSION, "tx 1 rejected", {"failed_index": 1})

        context = handler.handle(error, subnet_id="ab" * 32, block_number=3)

        assert context.action == RecoveryAction.HALT
        assert context.details == {"failed_index": 1}
        assert handler.failure_log() == [context]
        assert context.to_dict()["block_number"] == 3

    def test_classify_uses_budget(self):
        handler = FailureHandler(max_network_retries=5)
        assert handler.classify(SettlementFailure.HORIZON_TIMEOUT).max_retries == 5

    def test_info_and_warning_logged(self):
        handler = FailureHandler()
        handler.handle(SettlementError(SettlementFailure.CANCELLED, "shutdown"))
        handler.handle(SettlementError(SettlementFailure.PATH_NOT_FOUND, "no route"))
        assert [c.severity for c in handler.failure_log()] == [FailureSeverity.INFO, FailureSeverity.ERROR]
