"""
Wire format schemas for the documents exchanged with the execution ledger
and the treasury.
"""

import pytest

from pomsettle.hashing import idempotency_token
from pomsettle.models import Asset, SettlementConfirmation, TreasurySnapshot, WithdrawalIntent
from pomsettle.pom import compute_net_outflow
from pomsettle.schema import WIRE_KINDS, load_schema, validate_wire


def h(n: int) -> str:
    return f"{n:064x}"


SUBNET = h(0x5B)
USDC = Asset("USDC", "cd" * 32)
XLM = Asset("XLM")


def queue():
    return [
        WithdrawalIntent(h(0x101), h(1), USDC, 1_000_000, h(0x77)),
        WithdrawalIntent(h(0x102), h(2), XLM, 25, h(0x78)),
    ]


class TestSchemaLoading:
    def test_every_kind_loads(self):
        for kind in WIRE_KINDS:
            schema = load_schema(kind)
            assert schema["$id"].endswith(WIRE_KINDS[kind])

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            load_schema("ledger-dump")
        with pytest.raises(ValueError):
            validate_wire("ledger-dump", {})


class TestWithdrawalIntents:
    """Withdrawal queues as produced by WithdrawalIntent.to_dict."""

    def test_model_output_valid(self):
        assert validate_wire("withdrawal-intents", [w.to_dict() for w in queue()]) == []

    def test_empty_queue_valid(self):
        assert validate_wire("withdrawal-intents", []) == []

    def test_uppercase_hex_rejected(self):
        item = queue()[0].to_dict()
        item["destination"] = item["destination"].upper()
        errors = validate_wire("withdrawal-intents", [item])
        assert len(errors) == 1
        assert errors[0].startswith("$[0].destination")

    def test_amount_must_be_decimal_string(self):
        item = queue()[0].to_dict()
        item["amount"] = 1_000_000
        assert validate_wire("withdrawal-intents", [item]) != []
        item["amount"] = "0100"
        assert validate_wire("withdrawal-intents", [item]) != []

    def test_missing_field(self):
        item = queue()[0].to_dict()
        del item["user_id"]
        assert any("user_id" in e for e in validate_wire("withdrawal-intents", [item]))

    def test_asset_issuer(self):
        item = queue()[1].to_dict()
        assert item["asset"]["issuer"] == "NATIVE"
        item["asset"]["issuer"] = "native"
        assert validate_wire("withdrawal-intents", [item]) != []

    def test_asset_code_length(self):
        item = queue()[0].to_dict()
        item["asset"]["code"] = "ABCDEFGHIJKLM"
        assert validate_wire("withdrawal-intents", [item]) != []

    def test_asset_extra_property(self):
        item = queue()[0].to_dict()
        item["asset"]["type"] = "credit_alphanum4"
        assert validate_wire("withdrawal-intents", [item]) != []


class TestPomDelta:
    def test_model_output_valid(self):
        assert validate_wire("pom-delta", compute_net_outflow(queue()).to_json()) == []

    def test_bad_key(self):
        assert validate_wire("pom-delta", {"USDC": "1"}) != []

    def test_integer_value_rejected(self):
        assert validate_wire("pom-delta", {USDC.asset_id(): 1}) != []


class TestTreasurySnapshot:
    def test_model_output_valid(self):
        snapshot = TreasurySnapshot(
            balances={USDC.asset_id(): 5_000_000},
            signers=frozenset([h(0xA1), h(0xA2)]),
            threshold=2,
        )
        assert validate_wire("treasury-snapshot", snapshot.to_json()) == []

    def test_duplicate_signers(self):
        doc = {"balances": {}, "signers": [h(0xA1), h(0xA1)], "threshold": 1}
        assert validate_wire("treasury-snapshot", doc) != []

    def test_negative_threshold(self):
        doc = {"balances": {}, "signers": [], "threshold": -1}
        assert any(e.startswith("$.threshold") for e in validate_wire("treasury-snapshot", doc))

    def test_missing_threshold(self):
        assert validate_wire("treasury-snapshot", {"balances": {}, "signers": []}) != []


class TestSettlementConfirmation:
    def test_model_output_valid(self):
        confirmation = SettlementConfirmation(
            subnet_id=SUBNET,
            block_number=7,
            tx_refs=("ab" * 32,),
            idempotency_token=idempotency_token(SUBNET, 7).hex(),
        )
        assert validate_wire("settlement-confirmation", confirmation.to_dict()) == []

    def test_token_is_28_bytes(self):
        doc = SettlementConfirmation(
            subnet_id=SUBNET,
            block_number=7,
            tx_refs=(),
            idempotency_token=h(7),
        ).to_dict()
        assert any(e.startswith("$.idempotency_token") for e in validate_wire("settlement-confirmation", doc))

    def test_negative_block(self):
        doc = SettlementConfirmation(
            subnet_id=SUBNET,
            block_number=-1,
            tx_refs=(),
            idempotency_token=idempotency_token(SUBNET, 0).hex(),
        ).to_dict()
        assert validate_wire("settlement-confirmation", doc) != []
