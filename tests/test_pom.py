"""
Proof-of-Money validator.

Check order is constructibility, then solvency, then authorization; the
first failing check decides the result.
"""

import pytest

from pomsettle.hashing import I128_MAX, U128_MAX
from pomsettle.models import ZERO_ID, Asset, PomDelta, TreasurySnapshot, WithdrawalIntent
from pomsettle.pom import (
    DiscrepancyKind,
    PoMValidator,
    PomOverflowError,
    PomResult,
    compute_net_outflow,
    find_shortfalls,
    verify_delta_match,
)


def h(n: int) -> str:
    return f"{n:064x}"


USDC = Asset("USDC", "cd" * 32)
XLM = Asset("XLM")
AUDITORS = [h(0xA1), h(0xA2), h(0xA3)]


def wd(n: int, amount: int, asset: Asset = USDC, destination: str = None) -> WithdrawalIntent:
    return WithdrawalIntent(
        withdrawal_id=h(0x1000 + n),
        user_id=h(n),
        asset=asset,
        amount=amount,
        destination=destination or h(0x9000 + n),
    )


def treasury(usdc: int = 5_000_000, xlm: int = 0, signers=AUDITORS, threshold: int = 2) -> TreasurySnapshot:
    balances = {USDC.asset_id(): usdc}
    if xlm:
        balances[XLM.asset_id()] = xlm
    return TreasurySnapshot(balances=balances, signers=frozenset(signers), threshold=threshold)


class TestNetOutflow:
    """compute_net_outflow sums amounts per asset id."""

    def test_sum_per_asset(self):
        withdrawals = [wd(1, 1_000_000), wd(2, 500_000), wd(3, 42, XLM)]
        delta = compute_net_outflow(withdrawals)

        assert delta[USDC.asset_id()] == 1_500_000
        assert delta[XLM.asset_id()] == 42
        assert delta.total() == sum(w.amount for w in withdrawals)

    def test_empty_queue(self):
        assert len(compute_net_outflow([])) == 0

    def test_keys_sorted(self):
        delta = compute_net_outflow([wd(1, 5, XLM), wd(2, 7, USDC)])
        assert list(delta) == sorted([XLM.asset_id(), USDC.asset_id()])

    def test_overflow_is_hard_error(self):
        with pytest.raises(PomOverflowError) as exc_info:
            compute_net_outflow([wd(1, U128_MAX), wd(2, 1)])
        assert exc_info.value.asset_id == USDC.asset_id()

    def test_exact_u128_max_allowed(self):
        delta = compute_net_outflow([wd(1, U128_MAX - 1), wd(2, 1)])
        assert delta[USDC.asset_id()] == U128_MAX


class TestValidator:
    """PoMValidator.evaluate and validate."""

    def setup_method(self):
        self.validator = PoMValidator()

    def test_ok(self):
        report = self.validator.evaluate([wd(1, 1_000_000), wd(2, 500_000)], treasury(), AUDITORS, 2)
        assert report.ok
        assert report.delta[USDC.asset_id()] == 1_500_000

    def test_insolvent_reports_asset_and_amounts(self):
        report = self.validator.evaluate([wd(1, 1_500_000)], treasury(usdc=1_000_000), AUDITORS, 2)

        assert report.result == PomResult.INSOLVENT
        assert report.asset_id == USDC.asset_id()
        assert report.required == 1_500_000
        assert report.available == 1_000_000
        assert report.to_dict()["required"] == "1500000"

    def test_missing_treasury_asset_is_zero(self):
        report = self.validator.evaluate([wd(1, 1, XLM)], treasury(), AUDITORS, 2)
        assert report.result == PomResult.INSOLVENT
        assert report.available == 0

    def test_unauthorized_when_auditors_not_signers(self):
        snapshot = treasury(signers=[h(0xB1), h(0xB2), h(0xB3)])
        report = self.validator.evaluate([wd(1, 100)], snapshot, AUDITORS, 2)

        assert report.result == PomResult.UNAUTHORIZED
        assert report.matching_signers == 0

    def test_unauthorized_below_subnet_threshold(self):
        snapshot = treasury(threshold=1)
        assert self.validator.validate([wd(1, 100)], snapshot, AUDITORS[:1], 2) == PomResult.UNAUTHORIZED

    def test_unauthorized_below_treasury_threshold(self):
        snapshot = treasury(threshold=3)
        assert self.validator.validate([wd(1, 100)], snapshot, AUDITORS[:2], 2) == PomResult.UNAUTHORIZED

    def test_auditor_case_ignored(self):
        upper = [a.upper() for a in AUDITORS]
        assert self.validator.validate([wd(1, 100)], treasury(), upper, 2) == PomResult.OK

    def test_zero_destination_not_constructible(self):
        report = self.validator.evaluate([wd(1, 100, destination=ZERO_ID)], treasury(), AUDITORS, 2)
        assert report.result == PomResult.NON_CONSTRUCTIBLE
        assert report.withdrawal_id == h(0x1001)

    def test_non_positive_amount_not_constructible(self):
        assert self.validator.validate([wd(1, 0)], treasury(), AUDITORS, 2) == PomResult.NON_CONSTRUCTIBLE
        assert self.validator.validate([wd(1, -5)], treasury(), AUDITORS, 2) == PomResult.NON_CONSTRUCTIBLE

    def test_amount_beyond_i128_not_constructible(self):
        report = self.validator.evaluate([wd(1, I128_MAX + 1)], treasury(usdc=U128_MAX), AUDITORS, 2)
        assert report.result == PomResult.NON_CONSTRUCTIBLE
        assert report.reason == "amount exceeds i128"

    def test_asset_code_length_not_constructible(self):
        long_code = Asset("ABCDEFGHIJKLM", "cd" * 32)
        empty_code = Asset("", "cd" * 32)
        assert self.validator.validate([wd(1, 1, long_code)], treasury(), AUDITORS, 2) == PomResult.NON_CONSTRUCTIBLE
        assert self.validator.validate([wd(1, 1, empty_code)], treasury(), AUDITORS, 2) == PomResult.NON_CONSTRUCTIBLE

    def test_constructibility_checked_before_solvency(self):
        snapshot = treasury(usdc=0, signers=[h(0xB1)])
        report = self.validator.evaluate([wd(1, 0)], snapshot, AUDITORS, 2)
        assert report.result == PomResult.NON_CONSTRUCTIBLE

    def test_solvency_checked_before_authorization(self):
        snapshot = treasury(usdc=10, signers=[h(0xB1)])
        assert self.validator.validate([wd(1, 100)], snapshot, AUDITORS, 2) == PomResult.INSOLVENT

    def test_empty_queue_needs_authorization_only(self):
        assert self.validator.validate([], treasury(usdc=0), AUDITORS, 2) == PomResult.OK


class TestDeltaMatch:
    """verify_delta_match and find_shortfalls."""

    def test_identical_deltas(self):
        delta = PomDelta({h(1): 5, h(2): 6})
        assert verify_delta_match(delta, {h(1): 5, h(2): 6}) == []

    def test_every_kind_reported(self):
        expected = {h(1): 5, h(2): 6}
        actual = {h(2): 7, h(3): 1}
        found = {d.asset_id: d for d in verify_delta_match(expected, actual)}

        assert found[h(1)].kind == DiscrepancyKind.MISSING
        assert found[h(2)].kind == DiscrepancyKind.MISMATCH
        assert (found[h(2)].expected, found[h(2)].actual) == (6, 7)
        assert found[h(3)].kind == DiscrepancyKind.EXTRA

    def test_shortfalls(self):
        delta = PomDelta({USDC.asset_id(): 2_000_000, XLM.asset_id(): 1})
        shortfalls = find_shortfalls(delta, treasury(usdc=1_000_000))
        assert shortfalls == {
            USDC.asset_id(): {"required": 2_000_000, "available": 1_000_000},
            XLM.asset_id(): {"required": 1, "available": 0},
        }
