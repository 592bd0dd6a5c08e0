#!/usr/bin/env python3
"""
pomsettle CLI

Offline tooling for operators: compute asset ids and state roots, evaluate
Proof-of-Money on a withdrawal queue, preview a settlement plan, inspect
settlement records, and manage configuration.

Usage:
    pomsettle <command> [subcommand] [options]

Commands:
    asset-id    Canonical asset id for a code and issuer
    state-root  State root over balances, withdrawals and nonce
    pom         PoM delta and validation
    plan        Deterministic settlement plan preview
    replay      Settlement record inspection
    config      Configuration management
    schema      Wire format validation

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

import yaml

from pomsettle import __version__


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, sort_keys=True, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=True)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _read_json(path: str) -> Any:
    """Read JSON from a file path, or from stdin when path is '-'."""
    try:
        if path == "-":
            return json.load(sys.stdin)
        with open(Path(path), encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        raise CLIError(f"File not found: {path}", exit_code=2) from None
    except json.JSONDecodeError as e:
        raise CLIError(f"Invalid JSON in {path}: {e}", exit_code=2) from None


class PomSettleCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="pomsettle",
            description="Proof-of-Money settlement tooling",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"pomsettle {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        asset = self.subparsers.add_parser("asset-id", help="Compute an asset id")
        asset.add_argument("--code", required=True, help="Asset code (1..12 characters)")
        asset.add_argument("--issuer", default="NATIVE", help="NATIVE or 32-byte hex issuer")

        root = self.subparsers.add_parser("state-root", help="Compute a state root")
        root.add_argument("input", help="JSON file with balances, withdrawals and nonce ('-' for stdin)")

        self._register_pom_commands()

        plan = self.subparsers.add_parser("plan", help="Preview a settlement plan")
        plan.add_argument("--subnet", required=True, help="Subnet id (hex32)")
        plan.add_argument("--block", required=True, type=int, help="Block number")
        plan.add_argument("--withdrawals", "-w", required=True, help="Withdrawal queue JSON file")
        plan.add_argument("--treasury", "-t", help="Treasury snapshot JSON file")
        plan.add_argument("--held-asset", action="append", dest="held_assets", help="Directly payable asset id")

        self._register_replay_commands()
        self._register_config_commands()

        schema = self.subparsers.add_parser("schema", help="Wire format validation")
        schema_sub = schema.add_subparsers(dest="subcommand")
        validate = schema_sub.add_parser("validate", help="Validate a wire document")
        validate.add_argument("kind", help="treasury-snapshot, pom-delta, withdrawal-intents or settlement-confirmation")
        validate.add_argument("input", help="JSON file ('-' for stdin)")

    def _register_pom_commands(self) -> None:
        pom = self.subparsers.add_parser("pom", help="Proof-of-Money operations")
        pom_sub = pom.add_subparsers(dest="subcommand")

        delta = pom_sub.add_parser("delta", help="Net outflow per asset")
        delta.add_argument("withdrawals", help="Withdrawal queue JSON file")

        validate = pom_sub.add_parser("validate", help="Evaluate PoM against a treasury snapshot")
        validate.add_argument("--withdrawals", "-w", required=True, help="Withdrawal queue JSON file")
        validate.add_argument("--treasury", "-t", required=True, help="Treasury snapshot JSON file")
        validate.add_argument("--auditor", "-a", action="append", default=[], dest="auditors",
                              help="Subnet auditor public key (repeatable)")
        validate.add_argument("--threshold", type=int, required=True, help="Subnet auditor threshold")

    def _register_replay_commands(self) -> None:
        replay = self.subparsers.add_parser("replay", help="Settlement records")
        replay_sub = replay.add_subparsers(dest="subcommand")

        status = replay_sub.add_parser("status", help="Show settlement records")
        status.add_argument("--store", help="Record store file (default: replay.store_path)")
        status.add_argument("--subnet", help="Subnet id")
        status.add_argument("--block", type=int, help="Block number")

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., settlement.max_operations_per_tx)")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            fmt = OutputFormat(parsed.format)
            if parsed.config:
                from pomsettle.config import get_config_manager
                get_config_manager().load_from_file(parsed.config)
            self._configure_logging()

            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except Exception as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    @staticmethod
    def _configure_logging() -> None:
        from pomsettle.config import get_config
        from pomsettle.observability import configure_logging
        observability = get_config().observability
        configure_logging(observability.log_level.get(), observability.log_format.get())

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command.replace("-", "_")
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {args.command} {subcmd or ''}")

        return handler(args)

    # Hashing handlers
    def _handle_asset_id(self, args: argparse.Namespace) -> Any:
        from pomsettle.models import Asset
        asset = Asset(args.code, args.issuer)
        return {"code": asset.code, "issuer": asset.issuer, "asset_id": asset.asset_id()}

    def _handle_state_root(self, args: argparse.Namespace) -> Any:
        from pomsettle.models import Balance, withdrawals_from_json
        from pomsettle.state_root import compute_state_root

        data = _read_json(args.input)
        if not isinstance(data, dict):
            raise CLIError("state-root input must be a JSON object")
        balances = [Balance.from_dict(b) for b in data.get("balances", [])]
        withdrawals = withdrawals_from_json(data.get("withdrawals", []))
        return compute_state_root(balances, withdrawals, int(data.get("nonce", 0))).to_dict()

    # PoM handlers
    def _handle_pom_delta(self, args: argparse.Namespace) -> Any:
        from pomsettle.models import withdrawals_from_json
        from pomsettle.pom import compute_net_outflow
        return compute_net_outflow(withdrawals_from_json(_read_json(args.withdrawals))).to_json()

    def _handle_pom_validate(self, args: argparse.Namespace) -> Any:
        from pomsettle.models import TreasurySnapshot, withdrawals_from_json
        from pomsettle.pom import PoMValidator

        withdrawals = withdrawals_from_json(_read_json(args.withdrawals))
        snapshot = TreasurySnapshot.from_json(_read_json(args.treasury))
        report = PoMValidator().evaluate(withdrawals, snapshot, args.auditors, args.threshold)
        return report.to_dict()

    # Planning handlers
    def _handle_plan(self, args: argparse.Namespace) -> Any:
        from pomsettle.config import get_config
        from pomsettle.hashing import NATIVE_ISSUER
        from pomsettle.models import Asset, TreasurySnapshot, withdrawals_from_json
        from pomsettle.planner import SettlementPlanner

        config = get_config()
        fx_source = None
        if config.fx.source_asset_code.get():
            fx_source = Asset(config.fx.source_asset_code.get(), config.fx.source_asset_issuer.get() or NATIVE_ISSUER)

        planner = SettlementPlanner(
            max_operations_per_tx=config.settlement.max_operations_per_tx.get(),
            base_fee_per_operation=config.settlement.base_fee_per_operation.get(),
            fx_source_asset=fx_source,
            held_assets=args.held_assets,
        )
        snapshot = TreasurySnapshot.from_json(_read_json(args.treasury)) if args.treasury else None
        withdrawals = withdrawals_from_json(_read_json(args.withdrawals))
        return planner.build_plan(args.subnet.lower(), args.block, withdrawals, snapshot).to_dict()

    # Replay handlers
    def _handle_replay_status(self, args: argparse.Namespace) -> Any:
        from pomsettle.config import get_config
        from pomsettle.replay import ReplayProtectionService
        from pomsettle.store import PersistentStore

        path = args.store or get_config().replay.store_path.get()
        if not path:
            raise CLIError("No record store: pass --store or set replay.store_path")
        if not Path(path).exists():
            raise CLIError(f"Record store not found: {path}", exit_code=2)

        replay = ReplayProtectionService(PersistentStore(path))
        if args.subnet and args.block is not None:
            record = replay.get_record(args.subnet.lower(), args.block)
            if record is None:
                raise CLIError(f"No settlement record for {args.subnet} block {args.block}", exit_code=3)
            return record.to_dict()

        subnet = args.subnet.lower() if args.subnet else None
        return {
            "counts": replay.count_by_status(),
            "records": [r.to_dict() for r in replay.list_records(subnet)],
        }

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        from pomsettle.config import get_config_manager
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from pomsettle.config import get_config_manager
        mgr = get_config_manager()
        return mgr.config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from pomsettle.config import get_config_manager
        mgr = get_config_manager()
        errors = mgr.validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        from pomsettle.config import get_config_manager
        mgr = get_config_manager()
        return mgr.export_schema()

    # Schema handlers
    def _handle_schema_validate(self, args: argparse.Namespace) -> Any:
        from pomsettle.schema import validate_wire

        try:
            errors = validate_wire(args.kind, _read_json(args.input))
        except ValueError as e:
            raise CLIError(str(e), exit_code=2) from None
        if errors:
            print(format_output({"valid": False, "errors": errors}), file=sys.stderr)
            raise CLIError(f"{len(errors)} schema error(s)", exit_code=1)
        return {"valid": True, "kind": args.kind}


def main() -> int:
    """CLI entry point."""
    cli = PomSettleCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
