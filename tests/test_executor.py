"""
End-to-end settlement: commitment event to confirmation, exactly once.
"""

import threading

import pytest

from pomsettle.commitment import CommitmentManager
from pomsettle.config import get_config_manager
from pomsettle.executor import SettlementExecutor
from pomsettle.failures import SettlementFailure, SettlementPendingError
from pomsettle.hashing import idempotency_token
from pomsettle.models import Asset, CommitmentEvent, SettlementStatus, TreasurySnapshot, WithdrawalIntent
from pomsettle.network import (
    FileConfirmationSink,
    InMemoryConfirmationSink,
    InMemorySettlementNetwork,
    InMemoryTreasury,
    InMemoryWithdrawalSource,
)
from pomsettle.signing import Signer, sign_commitment


def h(n: int) -> str:
    return f"{n:064x}"


SUBNET = h(0x5B)
USDC = Asset("USDC", "cd" * 32)


def wd(n: int, amount: int) -> WithdrawalIntent:
    return WithdrawalIntent(h(0x1000 + n), h(n), USDC, amount, h(0x9000 + n))


def event(block: int = 1) -> CommitmentEvent:
    return CommitmentEvent(subnet_id=SUBNET, block_number=block, state_root=h(0xACE + block))


def no_sleep(seconds):
    pass


class GatedNetwork(InMemorySettlementNetwork):
    """Blocks every submission until released."""

    def __init__(self, signers, threshold):
        super().__init__(signers, threshold)
        self.entered = threading.Event()
        self.release = threading.Event()

    def submit(self, tx, signatures):
        self.entered.set()
        self.release.wait(5)
        return super().submit(tx, signatures)


class World:
    def __init__(self, usdc=5_000_000, network_cls=InMemorySettlementNetwork, store_path=None):
        self.signers = [Signer.generate() for _ in range(3)]
        keys = [s.public_key for s in self.signers]
        self.treasury = InMemoryTreasury()
        self.set_balance(usdc)
        self.network = network_cls(keys, 2)
        self.withdrawals = InMemoryWithdrawalSource()
        self.confirmations = InMemoryConfirmationSink()
        if store_path:
            get_config_manager().set("replay.store_path", str(store_path))
        self.executor = SettlementExecutor.from_config(
            self.treasury,
            self.network,
            self.signers,
            withdrawals=self.withdrawals,
            confirmations=self.confirmations,
            sleep=no_sleep,
        )

    def set_balance(self, usdc):
        self.treasury.set_snapshot(SUBNET, TreasurySnapshot(
            balances={USDC.asset_id(): usdc},
            signers=frozenset(s.public_key for s in self.signers),
            threshold=2,
        ))


@pytest.fixture
def world():
    w = World()
    yield w
    w.executor.shutdown()


class TestExecuteSettlement:
    """Synchronous settlement of one committed block."""

    def test_simple_settlement(self, world):
        withdrawals = [wd(1, 1_000_000), wd(2, 500_000)]
        outcome = world.executor.execute_settlement(event(), withdrawals)

        assert outcome.status == SettlementStatus.CONFIRMED
        assert len(outcome.tx_refs) == 1
        assert outcome.submissions == 1
        assert outcome.idempotency_token == idempotency_token(SUBNET, 1).hex()

        confirmation = world.confirmations.get(SUBNET, 1)
        assert confirmation.tx_refs == outcome.tx_refs
        assert world.executor.stats.to_dict()["withdrawals_processed"] == 2

    def test_replay_returns_already_settled(self, world):
        withdrawals = [wd(1, 1_000_000), wd(2, 500_000)]
        first = world.executor.execute_settlement(event(), withdrawals)
        attempts = world.network.attempts

        second = world.executor.execute_settlement(event(), withdrawals)

        assert second.status == SettlementStatus.ALREADY_SETTLED
        assert second.tx_refs == first.tx_refs
        assert second.submissions == 0
        assert world.network.attempts == attempts
        assert world.network.submission_count == 1
        assert len(world.confirmations.sent) == 1

    def test_every_transaction_carries_token(self, world):
        get_config_manager().set("settlement.max_operations_per_tx", 10)
        executor = SettlementExecutor.from_config(world.treasury, world.network, world.signers, sleep=no_sleep)
        executor.execute_settlement(event(4), [wd(i, 10) for i in range(25)])

        token = idempotency_token(SUBNET, 4)
        assert world.network.submission_count == 3
        assert {s.tx.idempotency_token for s in world.network.submissions} == {token}
        executor.shutdown()

    def test_empty_queue_confirmed(self, world):
        outcome = world.executor.execute_settlement(event(), [])
        assert outcome.status == SettlementStatus.CONFIRMED
        assert outcome.tx_refs == ()
        assert world.network.attempts == 0
        assert world.confirmations.get(SUBNET, 1).tx_refs == ()

    def test_insufficient_balance_then_retry(self, world):
        world.set_balance(1_000_000)
        withdrawals = [wd(1, 1_500_000)]

        failed = world.executor.execute_settlement(event(), withdrawals)
        assert failed.status == SettlementStatus.FAILED
        assert failed.failure == SettlementFailure.INSUFFICIENT_BALANCE.value
        assert failed.details["shortfalls"][USDC.asset_id()]["available"] == "1000000"
        assert world.network.attempts == 0
        assert world.confirmations.sent == []

        world.set_balance(2_000_000)
        retried = world.executor.execute_settlement(event(), withdrawals)
        assert retried.status == SettlementStatus.CONFIRMED
        assert world.network.submission_count == 1

    def test_partial_submission_is_terminal(self, world):
        world.network.fail_next(4)
        withdrawals = [wd(1, 100)]

        outcome = world.executor.execute_settlement(event(), withdrawals)
        assert outcome.status == SettlementStatus.FAILED
        assert outcome.failure == SettlementFailure.PARTIAL_SUBMISSION.value
        assert outcome.failed_index == 0

        again = world.executor.execute_settlement(event(), withdrawals)
        assert again.status == SettlementStatus.FAILED
        assert world.network.attempts == 4

    def test_pending_record_blocks(self, world):
        world.executor.replay.begin(SUBNET, 1, idempotency_token(SUBNET, 1))
        with pytest.raises(SettlementPendingError):
            world.executor.execute_settlement(event(), [wd(1, 100)])
        assert world.network.attempts == 0

    def test_resolved_pending_can_retry(self, world):
        world.executor.replay.begin(SUBNET, 1, idempotency_token(SUBNET, 1))
        world.executor.replay.resolve_pending(SUBNET, 1)

        outcome = world.executor.execute_settlement(event(), [wd(1, 100)])
        assert outcome.status == SettlementStatus.CONFIRMED

    def test_independent_blocks(self, world):
        a = world.executor.execute_settlement(event(1), [wd(1, 100)])
        b = world.executor.execute_settlement(event(2), [wd(1, 100)])
        assert a.tx_refs != b.tx_refs
        assert world.network.submission_count == 2

    def test_outcome_to_dict(self, world):
        world.set_balance(50)
        d = world.executor.execute_settlement(event(), [wd(1, 100)]).to_dict()
        assert d["status"] == "failed"
        assert d["failure"] == "INSUFFICIENT_BALANCE"
        assert "shortfalls" in d["details"]


class TestScheduling:
    """Per-(subnet, block) tasks on the worker pool."""

    def test_schedule_fetches_queue(self, world):
        world.withdrawals.put(SUBNET, 3, [wd(1, 100), wd(2, 200)])
        outcome = world.executor.schedule(event(3)).result(timeout=10)

        assert outcome.status == SettlementStatus.CONFIRMED
        assert world.confirmations.get(SUBNET, 3) is not None

    def test_running_task_reused(self):
        world = World(network_cls=GatedNetwork)
        try:
            first = world.executor.schedule(event(), [wd(1, 100)])
            assert world.network.entered.wait(5)
            second = world.executor.schedule(event(), [wd(1, 100)])
            assert second is first
            assert not first.cancel()

            world.network.release.set()
            assert first.result(timeout=10).status == SettlementStatus.CONFIRMED
        finally:
            world.network.release.set()
            world.executor.shutdown()

    def test_rescheduling_finished_block_replays(self, world):
        first = world.executor.schedule(event(), [wd(1, 100)]).result(timeout=10)
        second = world.executor.schedule(event(), [wd(1, 100)]).result(timeout=10)
        assert first.status == SettlementStatus.CONFIRMED
        assert second.status == SettlementStatus.ALREADY_SETTLED
        assert world.network.submission_count == 1

    def test_commitment_drives_settlement(self, world):
        manager = CommitmentManager(world.treasury)
        manager.register_subnet(SUBNET, [s.public_key for s in world.signers], 2)
        tasks = []
        manager.on_commitment(lambda e: tasks.append(world.executor.handle_commitment(e)))

        withdrawals = [wd(1, 1_000_000), wd(2, 500_000)]
        world.withdrawals.put(SUBNET, 1, withdrawals)
        root = h(0xBEEF)
        sigs = {s.public_key: sign_commitment(s, SUBNET, 1, root) for s in world.signers[:2]}
        assert manager.submit(SUBNET, 1, root, sigs, withdrawals).committed

        assert len(tasks) == 1
        outcome = tasks[0].result(timeout=10)
        assert outcome.status == SettlementStatus.CONFIRMED
        assert world.executor.stats.to_dict()["events_processed"] == 1
        assert world.executor.stats.to_dict()["confirmations_sent"] == 1


class TestPersistence:
    def test_replay_survives_restart(self, tmp_path):
        store = tmp_path / "replay.json"
        first = World(store_path=store)
        withdrawals = [wd(1, 100)]
        outcome = first.executor.execute_settlement(event(), withdrawals)
        first.executor.shutdown()

        second = World(store_path=store)
        again = second.executor.execute_settlement(event(), withdrawals)
        second.executor.shutdown()

        assert again.status == SettlementStatus.ALREADY_SETTLED
        assert again.tx_refs == outcome.tx_refs

    def test_file_confirmation_sink(self, tmp_path):
        world = World()
        sink = FileConfirmationSink(tmp_path / "out" / "confirmations.jsonl")
        executor = SettlementExecutor.from_config(
            world.treasury, world.network, world.signers, confirmations=sink, sleep=no_sleep,
        )
        executor.execute_settlement(event(), [wd(1, 100)])
        executor.shutdown()
        world.executor.shutdown()

        lines = sink.read_all()
        assert len(lines) == 1
        assert lines[0]["block_number"] == 1
