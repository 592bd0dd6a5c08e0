"""
Operator CLI: offline hashing, PoM, planning, record and config commands.
"""

import json

import pytest

from pomsettle.cli import PomSettleCLI
from pomsettle.hashing import asset_id, idempotency_token
from pomsettle.models import Asset, Balance, WithdrawalIntent
from pomsettle.replay import ReplayProtectionService
from pomsettle.state_root import compute_state_root
from pomsettle.store import PersistentStore


def h(n: int) -> str:
    return f"{n:064x}"


SUBNET = h(0x5B)
ISSUER = "cd" * 32
USDC = Asset("USDC", ISSUER)
EURC = Asset("EURC", ISSUER)
AUDITORS = [h(0xA1), h(0xA2), h(0xA3)]


def run(capsys, *argv):
    code = PomSettleCLI().run(list(argv))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


def write_json(path, data):
    path.write_text(json.dumps(data))
    return str(path)


@pytest.fixture
def withdrawals_file(tmp_path):
    queue = [
        WithdrawalIntent(h(0x102), h(2), USDC, 500_000, h(0x78)),
        WithdrawalIntent(h(0x101), h(1), USDC, 1_000_000, h(0x77)),
    ]
    return write_json(tmp_path / "withdrawals.json", [w.to_dict() for w in queue])


@pytest.fixture
def treasury_file(tmp_path):
    return write_json(tmp_path / "treasury.json", {
        "balances": {USDC.asset_id(): "5000000"},
        "signers": AUDITORS,
        "threshold": 2,
    })


class TestHashingCommands:
    def test_asset_id(self, capsys):
        code, out, _ = run(capsys, "asset-id", "--code", "USDC", "--issuer", ISSUER.upper())
        assert code == 0
        result = json.loads(out)
        assert result["asset_id"] == asset_id("USDC", ISSUER)
        assert result["issuer"] == ISSUER

    def test_native_asset_id(self, capsys):
        _, out, _ = run(capsys, "asset-id", "--code", "XLM")
        assert json.loads(out)["asset_id"] == asset_id("XLM", "NATIVE")

    def test_bad_issuer(self, capsys):
        code, _, err = run(capsys, "asset-id", "--code", "USDC", "--issuer", "bank")
        assert code == 1
        assert err.startswith("Error:")

    def test_state_root(self, tmp_path, capsys):
        balances = [Balance(h(1), USDC, 250), Balance(h(2), USDC, 0)]
        path = write_json(tmp_path / "state.json", {
            "balances": [b.to_dict() for b in balances],
            "withdrawals": [],
            "nonce": 4,
        })
        code, out, _ = run(capsys, "state-root", path)
        assert code == 0
        assert json.loads(out)["state_root"] == compute_state_root(balances, [], 4).hex

    def test_missing_input(self, tmp_path, capsys):
        code, _, err = run(capsys, "state-root", str(tmp_path / "absent.json"))
        assert code == 2
        assert "File not found" in err

    def test_invalid_json(self, tmp_path, capsys):
        path = tmp_path / "broken.json"
        path.write_text("{")
        code, _, _ = run(capsys, "state-root", str(path))
        assert code == 2


class TestPomCommands:
    def test_delta(self, withdrawals_file, capsys):
        code, out, _ = run(capsys, "pom", "delta", withdrawals_file)
        assert code == 0
        assert json.loads(out) == {USDC.asset_id(): "1500000"}

    def test_validate_ok(self, withdrawals_file, treasury_file, capsys):
        code, out, _ = run(
            capsys, "pom", "validate",
            "-w", withdrawals_file, "-t", treasury_file,
            "-a", AUDITORS[0], "-a", AUDITORS[1], "--threshold", "2",
        )
        assert code == 0
        assert json.loads(out)["result"] == "Ok"

    def test_validate_unauthorized(self, withdrawals_file, treasury_file, capsys):
        _, out, _ = run(
            capsys, "pom", "validate",
            "-w", withdrawals_file, "-t", treasury_file,
            "-a", AUDITORS[0], "--threshold", "2",
        )
        report = json.loads(out)
        assert report["result"] == "Unauthorized"
        assert report["matching_signers"] == 1

    def test_validate_insolvent(self, tmp_path, withdrawals_file, capsys):
        treasury = write_json(tmp_path / "poor.json", {
            "balances": {USDC.asset_id(): "1000000"},
            "signers": AUDITORS,
            "threshold": 2,
        })
        _, out, _ = run(
            capsys, "pom", "validate", "-w", withdrawals_file, "-t", treasury,
            "-a", AUDITORS[0], "-a", AUDITORS[1], "--threshold", "2",
        )
        report = json.loads(out)
        assert report["result"] == "Insolvent"
        assert report["required"] == "1500000"
        assert report["available"] == "1000000"


class TestPlanCommand:
    def test_plan_preview(self, withdrawals_file, capsys):
        code, out, _ = run(capsys, "plan", "--subnet", SUBNET.upper(), "--block", "9", "-w", withdrawals_file)
        assert code == 0
        plan = json.loads(out)
        assert plan["subnet_id"] == SUBNET
        assert plan["idempotency_token"] == idempotency_token(SUBNET, 9).hex()
        assert len(plan["transactions"]) == 1
        ops = plan["transactions"][0]["operations"]
        assert [op["withdrawal_id"] for op in ops] == [h(0x101), h(0x102)]

    def test_plan_with_config_file(self, tmp_path, withdrawals_file, capsys):
        config = tmp_path / "pomsettle.yaml"
        config.write_text("settlement:\n  max_operations_per_tx: 1\n  base_fee_per_operation: 250\n")
        _, out, _ = run(capsys, "--config", str(config), "plan", "--subnet", SUBNET, "--block", "9", "-w", withdrawals_file)
        plan = json.loads(out)
        assert len(plan["transactions"]) == 2
        assert {tx["fee"] for tx in plan["transactions"]} == {250}

    def test_fx_routing(self, tmp_path, treasury_file, capsys):
        queue = [WithdrawalIntent(h(0x103), h(3), EURC, 900, h(0x79))]
        withdrawals = write_json(tmp_path / "eurc.json", [w.to_dict() for w in queue])
        config = tmp_path / "pomsettle.yaml"
        config.write_text(f"fx:\n  source_asset_code: USDC\n  source_asset_issuer: '{ISSUER}'\n")

        _, out, _ = run(
            capsys, "--config", str(config), "plan",
            "--subnet", SUBNET, "--block", "9", "-w", withdrawals, "-t", treasury_file,
        )
        tx = json.loads(out)["transactions"][0]
        assert tx["kind"] == "path_payment"
        assert tx["operations"][0]["send_asset"] == USDC.to_dict()

    def test_yaml_output(self, withdrawals_file, capsys):
        code, out, _ = run(capsys, "--format", "yaml", "pom", "delta", withdrawals_file)
        assert code == 0
        assert f"{USDC.asset_id()}: '1500000'" in out


class TestReplayCommand:
    """Inspecting a persisted record store."""

    @pytest.fixture
    def store_path(self, tmp_path):
        path = tmp_path / "replay.json"
        replay = ReplayProtectionService(PersistentStore(path))
        replay.begin(SUBNET, 1, idempotency_token(SUBNET, 1))
        replay.record_confirmed(SUBNET, 1, ["ab" * 32])
        replay.begin(SUBNET, 2, idempotency_token(SUBNET, 2))
        return str(path)

    def test_single_record(self, store_path, capsys):
        code, out, _ = run(capsys, "replay", "status", "--store", store_path, "--subnet", SUBNET, "--block", "1")
        assert code == 0
        record = json.loads(out)
        assert record["status"] == "confirmed"
        assert record["tx_refs"] == ["ab" * 32]

    def test_listing(self, store_path, capsys):
        _, out, _ = run(capsys, "replay", "status", "--store", store_path)
        result = json.loads(out)
        assert result["counts"] == {"pending": 1, "confirmed": 1, "failed": 0}
        assert len(result["records"]) == 2

    def test_record_not_found(self, store_path, capsys):
        code, _, _ = run(capsys, "replay", "status", "--store", store_path, "--subnet", SUBNET, "--block", "3")
        assert code == 3

    def test_store_from_config(self, store_path, tmp_path, capsys):
        config = tmp_path / "pomsettle.yaml"
        config.write_text(f"replay:\n  store_path: '{store_path}'\n")
        code, out, _ = run(capsys, "--config", str(config), "replay", "status")
        assert code == 0
        assert len(json.loads(out)["records"]) == 2

    def test_no_store(self, capsys):
        code, _, err = run(capsys, "replay", "status")
        assert code == 1
        assert "replay.store_path" in err

    def test_missing_store(self, tmp_path, capsys):
        code, _, _ = run(capsys, "replay", "status", "--store", str(tmp_path / "none.json"))
        assert code == 2


class TestConfigCommands:
    def test_get(self, capsys):
        _, out, _ = run(capsys, "config", "get", "settlement.max_operations_per_tx")
        assert json.loads(out) == {"path": "settlement.max_operations_per_tx", "value": 100}

    def test_show(self, capsys):
        _, out, _ = run(capsys, "config", "show")
        assert json.loads(out)["fx"]["max_slippage_percent"] == 1

    def test_validate(self, capsys):
        _, out, _ = run(capsys, "config", "validate")
        assert json.loads(out) == {"valid": True, "errors": []}

    def test_schema(self, capsys):
        _, out, _ = run(capsys, "config", "schema")
        assert "settlement" in json.loads(out)["properties"]

    def test_unknown_path(self, capsys):
        code, _, _ = run(capsys, "config", "get", "settlement.nope")
        assert code == 1

    def test_quiet_suppresses_errors(self, capsys):
        code, _, err = run(capsys, "--quiet", "config", "get", "settlement.nope")
        assert code == 1
        assert err == ""


class TestSchemaCommand:
    def test_valid_document(self, withdrawals_file, capsys):
        code, out, _ = run(capsys, "schema", "validate", "withdrawal-intents", withdrawals_file)
        assert code == 0
        assert json.loads(out)["valid"]

    def test_invalid_document(self, tmp_path, capsys):
        path = write_json(tmp_path / "delta.json", {"USDC": 5})
        code, _, err = run(capsys, "schema", "validate", "pom-delta", path)
        assert code == 1
        assert "schema error" in err

    def test_unknown_kind(self, withdrawals_file, capsys):
        code, _, _ = run(capsys, "schema", "validate", "ledger-dump", withdrawals_file)
        assert code == 2


class TestMisc:
    def test_no_command_prints_help(self, capsys):
        code, out, _ = run(capsys)
        assert code == 0
        assert "pomsettle" in out
