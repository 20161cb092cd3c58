"""
SAFEFLOW Code Model Tests

Tests for the instruction table, program image decoding, the 3-byte
destination codec and input sanitisation.

Run with: pytest tests/test_program.py -v

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest

from safeflow.hardening import InputError, RejectReason, ValidationFailure, Validators
from safeflow.opcodes import (
    InstructionKind,
    OpCode,
    SubroutineOperand,
    get_instruction_set,
)
from safeflow.program import (
    OFFSET_WIDTH,
    Program,
    decode_offset,
    decode_uint,
    encode_offset,
    encode_uint,
)


# =============================================================================
# INSTRUCTION TABLE TESTS
# =============================================================================

class TestInstructionSet:
    """Tests for opcode metadata."""

    def test_subroutine_opcode_bytes(self):
        """Subroutine opcodes occupy their fixed byte values."""
        assert OpCode.BEGINSUB == 0x5C
        assert OpCode.JUMPSUB == 0x5D
        assert OpCode.RETURNSUB == 0x5E
        assert OpCode.JUMPDEST == 0x5B

    def test_jumpsub_immediate_mode(self):
        """In immediate mode JUMPSUB carries 3 bytes and pops nothing."""
        descriptor = get_instruction_set(SubroutineOperand.IMMEDIATE).lookup(0x5D)
        assert descriptor.kind is InstructionKind.JUMPSUB
        assert descriptor.immediate_width == 3
        assert descriptor.stack_inputs == 0
        assert descriptor.stack_delta == 0

    def test_jumpsub_stack_mode(self):
        """In stack mode JUMPSUB pops its destination."""
        descriptor = get_instruction_set(SubroutineOperand.STACK).lookup(0x5D)
        assert descriptor.immediate_width == 0
        assert descriptor.stack_inputs == 1
        assert descriptor.stack_outputs == 0
        assert descriptor.stack_delta == -1

    def test_invalid_and_unassigned_bytes(self):
        """0xFE and unassigned bytes are not recognised."""
        instruction_set = get_instruction_set()
        assert instruction_set.lookup(0xFE) is None
        assert instruction_set.lookup(0x0C) is None
        assert 0xFE not in instruction_set
        assert 0x01 in instruction_set

    def test_dup_swap_arity(self):
        """DUPn and SWAPn declare the items they touch."""
        instruction_set = get_instruction_set()
        dup3 = instruction_set.lookup(OpCode.DUP3)
        swap2 = instruction_set.lookup(OpCode.SWAP2)
        assert (dup3.stack_inputs, dup3.stack_outputs) == (3, 4)
        assert (swap2.stack_inputs, swap2.stack_outputs) == (3, 3)

    def test_push_widths(self):
        instruction_set = get_instruction_set()
        assert instruction_set.by_mnemonic("push1").immediate_width == 1
        assert instruction_set.by_mnemonic("PUSH32").immediate_width == 32
        assert instruction_set.by_mnemonic("PUSH32").kind is InstructionKind.PUSH

    def test_unknown_mnemonic(self):
        with pytest.raises(KeyError):
            get_instruction_set().by_mnemonic("HALT")

    def test_instruction_set_cached(self):
        """Instruction sets are built once per operand mode."""
        assert get_instruction_set(SubroutineOperand.STACK) is get_instruction_set(SubroutineOperand.STACK)
        assert get_instruction_set(SubroutineOperand.STACK) is not get_instruction_set()

    def test_control_flow_classification(self):
        instruction_set = get_instruction_set()
        assert instruction_set.lookup(OpCode.JUMPI).is_control_flow
        assert instruction_set.lookup(OpCode.RETURNSUB).is_control_flow
        assert not instruction_set.lookup(OpCode.JUMPDEST).is_control_flow
        assert instruction_set.lookup(OpCode.RETURN).kind is InstructionKind.TERMINAL


# =============================================================================
# PROGRAM TESTS
# =============================================================================

class TestProgram:
    """Tests for program decoding."""

    def test_boundaries_skip_immediates(self):
        """PUSH data is never an instruction boundary."""
        program = Program(bytes.fromhex("6001" "6002" "01" "00"))
        assert [pc for pc, _ in program.instructions()] == [0, 2, 4, 5]
        assert program.is_boundary(4)
        assert not program.is_boundary(1)

    def test_marker_inside_push_data(self):
        """A JUMPDEST byte inside PUSH data is not a destination."""
        program = Program(bytes.fromhex("605b" "5b"))
        assert program.jumpdests == frozenset({2})
        assert not program.is_jumpdest(1)

    def test_subroutine_entries(self):
        program = Program(bytes.fromhex("5d000004" "5c" "5e"))
        assert program.subroutine_entries == frozenset({4})
        assert program.is_subroutine_entry(4)

    def test_beginsub_inside_jumpsub_immediate(self):
        """Immediate bytes of JUMPSUB are data, even when they look like BEGINSUB."""
        program = Program(bytes.fromhex("5d5c5c5c" "00"))
        assert program.subroutine_entries == frozenset()

    def test_decode_jumpsub_immediate(self):
        insn = Program(bytes.fromhex("5d000104")).decode_at(0)
        assert insn.opcode == OpCode.JUMPSUB
        assert insn.immediate == 0x000104
        assert insn.next_pc == 4

    def test_decode_inside_immediate_data(self):
        """Decoding in the middle of PUSH data is an invalid instruction."""
        program = Program(bytes.fromhex("6001" "00"))
        with pytest.raises(ValidationFailure) as exc_info:
            program.decode_at(1)
        assert exc_info.value.reason is RejectReason.INVALID_INSTRUCTION
        assert exc_info.value.pc == 1

    def test_decode_unrecognised_byte(self):
        program = Program(bytes.fromhex("00fe"))
        with pytest.raises(ValidationFailure) as exc_info:
            program.decode_at(1)
        assert exc_info.value.reason is RejectReason.INVALID_INSTRUCTION
        assert exc_info.value.opcode == 0xFE

    def test_decode_past_end_is_implicit_stop(self):
        """The position one past the last byte decodes to an implicit STOP."""
        program = Program(bytes.fromhex("00"))
        insn = program.decode_at(1)
        assert insn.implicit
        assert insn.kind is InstructionKind.TERMINAL
        assert program.decode_at(100).implicit

    def test_empty_program(self):
        program = Program(b"")
        assert len(program) == 0
        assert program.decode_at(0).implicit
        assert list(program.instructions()) == []

    def test_truncated_immediate_zero_padded(self):
        """An immediate cut short by the end of code reads as zero-padded."""
        insn = Program(bytes.fromhex("61ab")).decode_at(0)
        assert insn.immediate == 0xAB00
        assert insn.next_pc == 3

    def test_instructions_report_unknown_bytes(self):
        listing = list(Program(bytes.fromhex("60fe" "fe" "00")).instructions())
        assert [pc for pc, _ in listing] == [0, 2, 3]
        assert listing[0][1].immediate == 0xFE
        assert listing[1][1] is None

    def test_hex_string_input(self):
        assert Program("0x6001").code == b"\x60\x01"
        assert Program("60 01\n00").length == 3

    def test_stack_mode_layout(self):
        """JUMPSUB carries no immediate in stack mode."""
        program = Program(bytes.fromhex("6004" "5d" "00" "5c" "5e"), operand=SubroutineOperand.STACK)
        assert program.decode_at(2).mnemonic == "JUMPSUB"
        assert program.decode_at(3).opcode == OpCode.STOP
        assert program.is_subroutine_entry(4)

    def test_instruction_str(self):
        program = Program(bytes.fromhex("6005" "00"))
        assert str(program.decode_at(0)) == "0000: PUSH1 0x5"
        assert str(program.decode_at(2)) == "0002: STOP"


# =============================================================================
# CODEC TESTS
# =============================================================================

class TestOffsetCodec:
    """Tests for the 3-byte big-endian destination encoding."""

    def test_most_significant_byte_first(self):
        assert encode_offset(0x010203) == b"\x01\x02\x03"
        assert decode_offset(b"\x01\x02\x03") == 0x010203

    def test_edge_offsets(self):
        for offset in (0, 1, 0xFF, 0x100, 0xFFFF, 0x10000, (1 << 24) - 1):
            assert decode_offset(encode_offset(offset)) == offset

    def test_out_of_range(self):
        with pytest.raises(ValueError):
            encode_offset(1 << 24)
        with pytest.raises(ValueError):
            encode_offset(-1)

    def test_wrong_width(self):
        with pytest.raises(ValueError):
            decode_offset(b"\x00\x01")

    def test_generic_uint(self):
        assert encode_uint(0x1234, 4) == b"\x00\x00\x12\x34"
        assert decode_uint(b"\x12\x34") == 0x1234
        assert OFFSET_WIDTH == 3

    def test_sampled_offset_space(self):
        """A stride through the 24-bit range, both ends included."""
        for offset in list(range(0, 1 << 24, 4093)) + [(1 << 24) - 1]:
            encoded = encode_offset(offset)
            assert len(encoded) == OFFSET_WIDTH
            assert decode_offset(encoded) == offset

    @pytest.mark.slow
    def test_full_offset_space(self):
        """Every 24-bit offset survives encode then decode."""
        for offset in range(1 << 24):
            assert decode_offset(encode_offset(offset)) == offset


# =============================================================================
# INPUT HARDENING TESTS
# =============================================================================

class TestValidators:
    """Tests for code and offset sanitisation."""

    def test_code_from_bytes(self):
        assert Validators.validate_code(bytearray(b"\x00")) == b"\x00"

    def test_code_from_hex(self):
        assert Validators.validate_code("0x5c5e") == b"\x5c\x5e"

    def test_rejects_odd_hex(self):
        with pytest.raises(InputError):
            Validators.validate_code("5c5")

    def test_rejects_non_hex(self):
        with pytest.raises(InputError) as exc_info:
            Validators.validate_code("zz")
        assert exc_info.value.field == "code"

    def test_rejects_wrong_type(self):
        with pytest.raises(InputError):
            Validators.validate_code(1234)

    def test_offset_range(self):
        assert Validators.validate_offset(0) == 0
        with pytest.raises(InputError):
            Validators.validate_offset(1 << 24)
        with pytest.raises(InputError):
            Validators.validate_offset(True)
