#!/usr/bin/env python3
"""
SAFEFLOW CLI

Command-line interface for validating, executing, assembling and inspecting
SAFEFLOW bytecode.

Usage:
    safeflow <command> [subcommand] [options]

Commands:
    validate     Statically validate code against a jump table
    run          Execute code on the reference host
    assemble     Assemble mnemonics into bytecode
    disassemble  Disassemble bytecode
    config       Configuration management

Code arguments accept a hex string (optional 0x prefix) or a file path. Files
holding hex text are decoded; any other file is read as raw bytes. Jump
tables are read from JSON or YAML documents, or from ``.bin`` files holding
6-byte records.

Exit codes:
    0  success
    1  usage or input error
    2  code rejected by the validator
    3  execution fault or revert

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

from safeflow import __version__
from safeflow.hardening import SafeflowError, Validators
from safeflow.observability import Layer, get_logger, timed_operation

EXIT_REJECTED = 2
EXIT_FAULT = 3

logger = get_logger("cli", Layer.CLI)


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    elif fmt == OutputFormat.TABLE:
        return _format_table(data)
    return _format_text(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, dict):
        rows = next((v for v in data.values() if isinstance(v, list) and v and isinstance(v[0], dict)), None)
        if rows is None:
            return "\n".join(f"{k}: {v}" for k, v in data.items())
        data = rows

    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:40] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = []
        lines.append(" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    return str(data)


def _format_text(data: Any) -> str:
    if isinstance(data, dict):
        if "listing" in data:
            return "\n".join(data["listing"])
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


# =============================================================================
# INPUT LOADING
# =============================================================================

def load_code(value: str) -> bytes:
    """Read code from a hex string or a file."""
    path = Path(value)
    if path.is_file():
        raw = path.read_bytes()
        try:
            text = raw.decode("ascii")
        except UnicodeDecodeError:
            return raw
        if Validators.HEX_PATTERN.match("".join(text.split())):
            return Validators.validate_code(text)
        return raw
    return Validators.validate_code(value)


@timed_operation(logger, "load_jumptable")
def load_jumptable(value: Optional[str]):
    """Read a jump table file (JSON, YAML, or 6-byte binary records)."""
    from safeflow.jumptable import JumpTable

    if not value:
        return None
    path = Path(value)
    if not path.is_file():
        raise CLIError(f"Jump table file not found: {value}")
    if path.suffix == ".bin":
        return JumpTable.decode(path.read_bytes())
    try:
        document = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise CLIError(f"Malformed jump table document {value}: {e}") from e
    return JumpTable.from_document(document if document is not None else [])


# =============================================================================
# CLI
# =============================================================================

class SafeflowCLI:
    """Main CLI application."""

    def __init__(self):
        self.exit_code = 0
        self.parser = argparse.ArgumentParser(
            prog="safeflow",
            description="SAFEFLOW bytecode validator and subroutine runtime",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"safeflow {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="Configuration file to load before running the command",
        )
        self.parser.add_argument(
            "--log-level",
            choices=["debug", "info", "warning", "error"],
            help="Override observability.log_level",
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
        self._register_code_commands()
        self._register_config_commands()

    @staticmethod
    def _add_operand_argument(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--operand", "-o",
            choices=["immediate", "stack"],
            help="JUMPSUB destination source (default: validator.subroutine_operand)",
        )

    def _register_code_commands(self) -> None:
        """Register validate/run/assemble/disassemble."""
        validate = self.subparsers.add_parser("validate", help="Validate code")
        validate.add_argument("code", help="Hex bytecode or file path")
        validate.add_argument("--jumptable", "-j", help="Jump table file")
        self._add_operand_argument(validate)

        run = self.subparsers.add_parser("run", help="Execute code on the reference host")
        run.add_argument("code", help="Hex bytecode or file path")
        run.add_argument("--jumptable", "-j", help="Jump table file")
        run.add_argument("--calldata", "-d", default="", help="Hex call data")
        run.add_argument("--max-steps", "-s", type=int, help="Instruction budget")
        run.add_argument(
            "--no-validate",
            action="store_true",
            help="Execute without validating first (runtime checks still apply)",
        )
        self._add_operand_argument(run)

        assemble = self.subparsers.add_parser("assemble", help="Assemble from mnemonics")
        assemble.add_argument("input", help="Assembly file ('-' for stdin)")
        assemble.add_argument("--output", help="Write raw bytecode to this file")
        self._add_operand_argument(assemble)

        disassemble = self.subparsers.add_parser("disassemble", help="Disassemble bytecode")
        disassemble.add_argument("code", help="Hex bytecode or file path")
        self._add_operand_argument(disassemble)

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., validator.stack_limit)")

        set_cmd = config_sub.add_parser("set", help="Set configuration value")
        set_cmd.add_argument("path", help="Config path")
        set_cmd.add_argument("value", help="Value to set")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)
        self.exit_code = 0

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            self._apply_global_options(parsed)
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return self.exit_code

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (SafeflowError, OSError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _apply_global_options(self, args: argparse.Namespace) -> None:
        from safeflow.config import get_config_manager
        from safeflow.observability import configure_logging

        mgr = get_config_manager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()
        if args.log_level:
            mgr.set("observability.log_level", args.log_level)
        configure_logging(mgr.get("observability.log_level"), mgr.get("observability.log_format"))

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    # Code handlers
    def _handle_validate(self, args: argparse.Namespace) -> Any:
        from safeflow.validator import Validator, load_program

        program = load_program(load_code(args.code), args.operand)
        validator = Validator(program, load_jumptable(args.jumptable))
        verdict = validator.validate()
        if not verdict:
            self.exit_code = EXIT_REJECTED

        result = verdict.to_dict()
        result["operand"] = program.operand.value
        result["code_size"] = program.length
        result["subroutines"] = [s.to_dict() for s in validator.subroutines.values()]
        return result

    def _handle_run(self, args: argparse.Namespace) -> Any:
        from safeflow.hardening import CodeRejected
        from safeflow.vm import ExecutionContext, StackMachine

        machine = StackMachine(operand=args.operand)
        code = load_code(args.code)
        jumptable = load_jumptable(args.jumptable)

        if args.no_validate:
            program = code
        else:
            try:
                program = machine.deploy(code, jumptable)
            except CodeRejected as e:
                raise CLIError(str(e), exit_code=EXIT_REJECTED) from e

        ctx = ExecutionContext(
            calldata=Validators.validate_code(args.calldata, "calldata"),
            max_steps=args.max_steps,
        )
        result = machine.execute(program, jumptable, ctx)
        if not result.success:
            self.exit_code = EXIT_FAULT
        return result.to_dict()

    def _handle_assemble(self, args: argparse.Namespace) -> Any:
        from safeflow.config import default_subroutine_operand
        from safeflow.opcodes import SubroutineOperand
        from safeflow.vm import Assembler

        source = sys.stdin.read() if args.input == "-" else Path(args.input).read_text()
        operand = SubroutineOperand(args.operand) if args.operand else default_subroutine_operand()
        bytecode = Assembler.assemble(Assembler.parse(source), operand)

        if args.output:
            Path(args.output).write_bytes(bytecode)
        return {"bytecode": "0x" + bytecode.hex(), "size": len(bytecode), "operand": operand.value}

    def _handle_disassemble(self, args: argparse.Namespace) -> Any:
        from safeflow.config import default_subroutine_operand
        from safeflow.opcodes import SubroutineOperand
        from safeflow.vm import Assembler

        operand = SubroutineOperand(args.operand) if args.operand else default_subroutine_operand()
        instructions = Assembler.disassemble(load_code(args.code), operand)
        listing = [
            f"{offset:04x}: {mnemonic}" + (f" 0x{immediate:x}" if immediate is not None else "")
            for offset, mnemonic, immediate in instructions
        ]
        return {
            "instructions": [
                {"offset": offset, "mnemonic": mnemonic, "immediate": immediate}
                for offset, mnemonic, immediate in instructions
            ],
            "listing": listing,
        }

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        from safeflow.config import get_config_manager
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}

    def _handle_config_set(self, args: argparse.Namespace) -> Any:
        from safeflow.config import get_config_manager
        mgr = get_config_manager()
        mgr.set(args.path, args.value)
        return {"path": args.path, "value": mgr.get(args.path), "status": "updated"}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from safeflow.config import get_config_manager
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from safeflow.config import get_config_manager
        errors = get_config_manager().validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        from safeflow.config import get_config_manager
        return get_config_manager().export_schema()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = SafeflowCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
