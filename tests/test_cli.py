"""
SAFEFLOW CLI Tests

Run with: pytest tests/test_cli.py -v

Copyright (c) 2026 Momentum. All rights reserved.
"""

import json

import pytest
import yaml

from safeflow.cli import EXIT_FAULT, EXIT_REJECTED, load_code, load_jumptable, main
from safeflow.hardening import InputError, JumpTableError


def run_cli(capsys, *argv):
    code = main(list(argv))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


# =============================================================================
# INPUT LOADING
# =============================================================================

class TestInputLoading:
    """Code and jump table arguments."""

    def test_hex_argument(self):
        assert load_code("0x5c5e") == b"\x5c\x5e"

    def test_hex_file(self, tmp_path):
        path = tmp_path / "code.hex"
        path.write_text("5d000005\n00\n5c 5e\n")
        assert load_code(str(path)) == bytes.fromhex("5d000005005c5e")

    def test_binary_file(self, tmp_path):
        path = tmp_path / "code.bin"
        path.write_bytes(b"\x5e\xff")
        assert load_code(str(path)) == b"\x5e\xff"

    def test_bad_hex(self):
        with pytest.raises(InputError):
            load_code("not-hex-and-not-a-file")

    def test_jumptable_json(self, tmp_path):
        path = tmp_path / "table.json"
        path.write_text(json.dumps([[3, 4]]))
        assert load_jumptable(str(path)).is_valid_dynamic_edge(3, 4)

    def test_jumptable_yaml_objects(self, tmp_path):
        path = tmp_path / "table.yaml"
        path.write_text(yaml.safe_dump([{"source": 3, "dest": 4}]))
        assert load_jumptable(str(path)).targets(3) == (4,)

    def test_jumptable_binary(self, tmp_path):
        path = tmp_path / "table.bin"
        path.write_bytes(bytes.fromhex("000003000004"))
        assert len(load_jumptable(str(path))) == 1

    def test_jumptable_unsorted(self, tmp_path):
        path = tmp_path / "table.json"
        path.write_text("[[9, 1], [3, 4]]")
        with pytest.raises(JumpTableError):
            load_jumptable(str(path))

    def test_no_jumptable(self):
        assert load_jumptable(None) is None


# =============================================================================
# COMMANDS
# =============================================================================

class TestValidateCommand:
    """safeflow validate"""

    def test_accepted(self, capsys):
        code, out, _ = run_cli(capsys, "validate", "5d000005005c5e")
        assert code == 0
        result = json.loads(out)
        assert result["accepted"] is True
        assert result["operand"] == "immediate"
        assert result["subroutines"] == [
            {"entry": 5, "required_inputs": 0, "net_effect": 0, "peak_height": 0},
        ]

    def test_rejected_exit_code(self, capsys):
        code, out, _ = run_cli(capsys, "validate", "5e")
        assert code == EXIT_REJECTED
        result = json.loads(out)
        assert result["reason"] == "UnbalancedReturn"
        assert result["pc"] == 0

    def test_with_jumptable(self, capsys, tmp_path):
        table = tmp_path / "table.json"
        table.write_text("[[3, 4]]")
        code, _, _ = run_cli(capsys, "validate", "600035565b00", "-j", str(table))
        assert code == 0
        code, _, _ = run_cli(capsys, "validate", "600035565b00")
        assert code == EXIT_REJECTED

    def test_operand_option(self, capsys):
        code, out, _ = run_cli(capsys, "validate", "60045d005c5e", "-o", "stack")
        assert code == 0
        assert json.loads(out)["operand"] == "stack"

    def test_operand_from_config_file(self, capsys, tmp_path):
        config = tmp_path / "safeflow.yaml"
        config.write_text(yaml.safe_dump({"validator": {"subroutine_operand": "stack"}}))
        code, _, _ = run_cli(capsys, "--config", str(config), "validate", "60045d005c5e")
        assert code == 0

    def test_project_config_picked_up(self, capsys, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "safeflow.yaml").write_text("validator:\n  subroutine_operand: stack\n")
        code, out, _ = run_cli(capsys, "validate", "60045d005c5e")
        assert code == 0
        assert json.loads(out)["operand"] == "stack"

    def test_yaml_output(self, capsys):
        code, out, _ = run_cli(capsys, "-f", "yaml", "validate", "00")
        assert code == 0
        assert yaml.safe_load(out)["accepted"] is True

    def test_bad_input(self, capsys):
        code, _, err = run_cli(capsys, "validate", "zz")
        assert code == 1
        assert "Error:" in err

    def test_quiet_suppresses_errors(self, capsys):
        code, _, err = run_cli(capsys, "--quiet", "validate", "zz")
        assert code == 1
        assert err == ""


class TestRunCommand:
    """safeflow run"""

    def test_success(self, capsys):
        code, out, _ = run_cli(capsys, "run", "5d000005005c5d00000b5e5c5e")
        assert code == 0
        result = json.loads(out)
        assert result["halt_reason"] == "stop"
        assert result["return_stack_peak"] == 2

    def test_rejected_before_execution(self, capsys):
        code, out, err = run_cli(capsys, "run", "5e")
        assert code == EXIT_REJECTED
        assert out == ""
        assert "UnbalancedReturn" in err

    def test_fault_without_validation(self, capsys):
        code, out, _ = run_cli(capsys, "run", "--no-validate", "5e")
        assert code == EXIT_FAULT
        result = json.loads(out)
        assert result["fault"]["kind"] == "ReturnStackUnderflow"

    def test_calldata_and_budget(self, capsys):
        code, out, _ = run_cli(capsys, "run", "600035600757005b", "-d", "07")
        assert code == 0
        code, out, _ = run_cli(capsys, "run", "5b600056", "-s", "5")
        assert code == EXIT_FAULT
        assert json.loads(out)["fault"]["kind"] == "OutOfSteps"


class TestAssemblyCommands:
    """safeflow assemble / disassemble"""

    SOURCE = """
        PUSH1 3
        JUMPSUB square
        STOP
    square:
        BEGINSUB
        DUP1
        MUL
        RETURNSUB
    """

    def test_assemble(self, capsys, tmp_path):
        source = tmp_path / "square.asm"
        source.write_text(self.SOURCE)
        output = tmp_path / "square.bin"
        code, out, _ = run_cli(capsys, "assemble", str(source), "--output", str(output))
        assert code == 0
        result = json.loads(out)
        assert result["bytecode"] == "0x60035d00000700" "5c80025e"
        assert result["size"] == 11
        assert output.read_bytes() == bytes.fromhex("60035d000007005c80025e")

    def test_assemble_error(self, capsys, tmp_path):
        source = tmp_path / "bad.asm"
        source.write_text("JUMPSUB nowhere\n")
        code, _, err = run_cli(capsys, "assemble", str(source))
        assert code == 1
        assert "undefined label" in err

    def test_disassemble_text(self, capsys):
        code, out, _ = run_cli(capsys, "-f", "text", "disassemble", "6001fe5d000007")
        assert code == 0
        assert out.splitlines() == [
            "0000: PUSH1 0x1",
            "0002: UNKNOWN(0xfe)",
            "0003: JUMPSUB 0x7",
        ]

    def test_disassemble_table(self, capsys):
        code, out, _ = run_cli(capsys, "-f", "table", "disassemble", "6001")
        assert code == 0
        assert out.splitlines()[0].split(" | ")[0].strip() == "offset"


class TestConfigCommands:
    """safeflow config"""

    def test_get(self, capsys):
        code, out, _ = run_cli(capsys, "config", "get", "validator.stack_limit")
        assert code == 0
        assert json.loads(out) == {"path": "validator.stack_limit", "value": 1024}

    def test_set(self, capsys):
        code, out, _ = run_cli(capsys, "config", "set", "runtime.max_steps", "500")
        assert code == 0
        assert json.loads(out)["value"] == 500

    def test_set_invalid(self, capsys):
        code, _, err = run_cli(capsys, "config", "set", "validator.stack_limit", "lots")
        assert code == 1
        assert "Invalid value" in err

    def test_show_and_validate(self, capsys):
        code, out, _ = run_cli(capsys, "config", "show")
        assert json.loads(out)["runtime"]["return_stack_limit"] == 1024
        code, out, _ = run_cli(capsys, "config", "validate")
        assert json.loads(out) == {"valid": True, "errors": []}

    def test_schema(self, capsys):
        code, out, _ = run_cli(capsys, "config", "schema")
        schema = json.loads(out)
        assert "subroutine_operand" in schema["properties"]["validator"]

    def test_version(self, capsys):
        with pytest.raises(SystemExit):
            main(["--version"])
        assert "safeflow" in capsys.readouterr().out
