"""
Replay protection: one settlement record per (subnet, block).
"""

import threading

import pytest

from pomsettle.failures import SettlementFailure, SettlementPendingError
from pomsettle.hardening import InvariantViolation
from pomsettle.hashing import idempotency_token
from pomsettle.models import SettlementStatus
from pomsettle.replay import ReplayProtectionService
from pomsettle.store import PersistentStore


def h(n: int) -> str:
    return f"{n:064x}"


SUBNET = h(0x5B)
TOKEN = idempotency_token(SUBNET, 1)


@pytest.fixture
def replay():
    return ReplayProtectionService()


class TestBegin:
    """Claiming the (subnet, block) slot."""

    def test_first_begin_creates_pending(self, replay):
        started, record = replay.begin(SUBNET, 1, TOKEN)
        assert started
        assert record.status == SettlementStatus.PENDING
        assert record.idempotency_token == TOKEN.hex()
        assert replay.get_by_token(TOKEN.hex()) == replay.get_record(SUBNET, 1)

    def test_begin_while_pending_raises(self, replay):
        replay.begin(SUBNET, 1, TOKEN)
        with pytest.raises(SettlementPendingError):
            replay.begin(SUBNET, 1, TOKEN)

    def test_begin_after_confirmed_returns_record(self, replay):
        replay.begin(SUBNET, 1, TOKEN)
        replay.record_confirmed(SUBNET, 1, ["ref-a", "ref-b"])

        started, record = replay.begin(SUBNET, 1, TOKEN)
        assert not started
        assert record.status == SettlementStatus.CONFIRMED
        assert record.tx_refs == ("ref-a", "ref-b")
        assert record.idempotency_token == TOKEN.hex()

    def test_retryable_failure_reopens(self, replay):
        replay.begin(SUBNET, 1, TOKEN)
        failed = replay.record_failed(SUBNET, 1, SettlementFailure.INSUFFICIENT_BALANCE, "short")
        assert failed.retryable
        assert not replay.is_already_settled(SUBNET, 1)

        started, record = replay.begin(SUBNET, 1, TOKEN)
        assert started
        assert record.status == SettlementStatus.PENDING

    def test_terminal_failure_is_settled(self, replay):
        replay.begin(SUBNET, 1, TOKEN)
        replay.record_failed(SUBNET, 1, SettlementFailure.POM_MISMATCH, "plan differs")

        assert replay.is_already_settled(SUBNET, 1)
        started, record = replay.begin(SUBNET, 1, TOKEN)
        assert not started
        assert record.failure == "POM_MISMATCH"

    def test_failure_after_submission_not_retryable(self, replay):
        replay.begin(SUBNET, 1, TOKEN)
        record = replay.record_failed(
            SUBNET, 1, SettlementFailure.CANCELLED, tx_refs=["ref-a"], failed_index=1,
        )
        assert not record.retryable
        assert record.failed_index == 1

    def test_concurrent_begin_single_owner(self, replay):
        owners = []
        pending_errors = []
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            try:
                started, _ = replay.begin(SUBNET, 1, TOKEN)
                if started:
                    owners.append(1)
            except SettlementPendingError:
                pending_errors.append(1)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(owners) == 1
        assert len(pending_errors) == 5


class TestTransitions:
    def test_confirmed_is_terminal(self, replay):
        replay.begin(SUBNET, 1, TOKEN)
        replay.record_confirmed(SUBNET, 1, ["ref"])
        with pytest.raises(InvariantViolation):
            replay.record_failed(SUBNET, 1, SettlementFailure.CANCELLED)

    def test_confirm_without_record(self, replay):
        with pytest.raises(SettlementPendingError):
            replay.record_confirmed(SUBNET, 9, [])

    def test_confirmed_keeps_failed_withdrawals(self, replay):
        replay.begin(SUBNET, 1, TOKEN)
        record = replay.record_confirmed(SUBNET, 1, ["ref"], failed_withdrawals=[h(1)])
        assert record.failed_withdrawals == (h(1),)


class TestResolvePending:
    """Operator resolution of an unknown outcome."""

    def test_resolve_with_refs_confirms(self, replay):
        replay.begin(SUBNET, 1, TOKEN)
        record = replay.resolve_pending(SUBNET, 1, tx_refs=["ref-x"])
        assert record.status == SettlementStatus.CONFIRMED
        assert record.tx_refs == ("ref-x",)

    def test_resolve_without_refs_allows_retry(self, replay):
        replay.begin(SUBNET, 1, TOKEN)
        record = replay.resolve_pending(SUBNET, 1)
        assert record.failure == SettlementFailure.CANCELLED.value
        assert record.retryable
        assert replay.begin(SUBNET, 1, TOKEN)[0]

    def test_resolve_not_pending(self, replay):
        with pytest.raises(ValueError):
            replay.resolve_pending(SUBNET, 1)


class TestQueries:
    def test_list_and_count(self, replay):
        for block in (1, 2, 3):
            replay.begin(SUBNET, block, idempotency_token(SUBNET, block))
        replay.record_confirmed(SUBNET, 1, ["r"])
        replay.record_failed(SUBNET, 2, SettlementFailure.POM_MISMATCH)
        replay.begin(h(0x6C), 1, idempotency_token(h(0x6C), 1))

        assert [r.block_number for r in replay.list_records(SUBNET)] == [1, 2, 3]
        assert len(replay.list_records(status=SettlementStatus.PENDING)) == 2
        assert replay.count_by_status() == {"pending": 2, "confirmed": 1, "failed": 1}

    def test_unknown_token(self, replay):
        assert replay.get_by_token("ff" * 28) is None

    def test_records_survive_restart(self, tmp_path):
        path = tmp_path / "replay.json"
        first = ReplayProtectionService(PersistentStore(path))
        first.begin(SUBNET, 1, TOKEN)
        first.record_confirmed(SUBNET, 1, ["ref-a"])

        second = ReplayProtectionService(PersistentStore(path))
        assert second.is_already_settled(SUBNET, 1)
        assert second.get_by_token(TOKEN.hex()).tx_refs == ("ref-a",)
