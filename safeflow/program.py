"""
SAFEFLOW Program Image

The immutable code byte sequence plus a decoding pass that locates
instruction boundaries (skipping immediate data) and the positions of the
jump-destination and subroutine-entry markers.

Program counter space includes one terminal sentinel beyond the last byte:
decoding at or past the end of code yields an implicit STOP, never an error.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterator, Optional, Tuple, Union

from safeflow.hardening import RejectReason, ValidationFailure, Validators
from safeflow.opcodes import (
    InstructionDescriptor,
    InstructionKind,
    InstructionSet,
    OpCode,
    SubroutineOperand,
    get_instruction_set,
)


OFFSET_WIDTH = 3


# =============================================================================
# IMMEDIATE CODEC
# =============================================================================

def decode_uint(data: bytes) -> int:
    """Decode a most-significant-byte-first unsigned integer."""
    return int.from_bytes(data, 'big')


def encode_uint(value: int, width: int) -> bytes:
    """Encode an unsigned integer into exactly ``width`` big-endian bytes."""
    if value < 0 or value >= 1 << (8 * width):
        raise ValueError(f"{value} does not fit in {width} bytes")
    return value.to_bytes(width, 'big')


def encode_offset(offset: int) -> bytes:
    """Encode a code offset as a 3-byte destination immediate."""
    return encode_uint(offset, OFFSET_WIDTH)


def decode_offset(data: bytes) -> int:
    if len(data) != OFFSET_WIDTH:
        raise ValueError(f"offset immediates are {OFFSET_WIDTH} bytes, got {len(data)}")
    return decode_uint(data)


# =============================================================================
# INSTRUCTION
# =============================================================================

_IMPLICIT_STOP = InstructionDescriptor(OpCode.STOP, 0, 0, 0, InstructionKind.TERMINAL)


@dataclass(frozen=True)
class Instruction:
    """An instruction decoded at a specific program counter."""
    pc: int
    descriptor: InstructionDescriptor
    immediate: Optional[int] = None
    implicit: bool = False

    @property
    def opcode(self) -> OpCode:
        return self.descriptor.opcode

    @property
    def kind(self) -> InstructionKind:
        return self.descriptor.kind

    @property
    def mnemonic(self) -> str:
        return self.descriptor.mnemonic

    @property
    def next_pc(self) -> int:
        return self.pc + 1 + self.descriptor.immediate_width

    def __str__(self) -> str:
        if self.implicit:
            return f"{self.pc:04x}: <end of code>"
        if self.immediate is None:
            return f"{self.pc:04x}: {self.mnemonic}"
        return f"{self.pc:04x}: {self.mnemonic} 0x{self.immediate:x}"


# =============================================================================
# PROGRAM
# =============================================================================

class Program:
    """
    Immutable program image.

    Example:
        program = Program(bytes.fromhex("6004" "5d" "00" "5c" "5e"),
                          operand=SubroutineOperand.STACK)
        program.decode_at(2).mnemonic   # 'JUMPSUB'
        program.is_subroutine_entry(4)  # True
    """

    def __init__(
        self,
        code: Union[bytes, bytearray, memoryview, str],
        operand: SubroutineOperand = SubroutineOperand.IMMEDIATE,
        instruction_set: Optional[InstructionSet] = None,
    ):
        self.code = Validators.validate_code(code)
        self.length = len(self.code)
        self.instruction_set = instruction_set or get_instruction_set(operand)
        self.operand = self.instruction_set.operand

        boundaries = set()
        jumpdests = set()
        entries = set()
        pc = 0
        while pc < self.length:
            boundaries.add(pc)
            descriptor = self.instruction_set.lookup(self.code[pc])
            if descriptor is None:
                # Unrecognised bytes still occupy one boundary so the scan
                # stays aligned; decode_at rejects them.
                pc += 1
                continue
            if descriptor.opcode == OpCode.JUMPDEST:
                jumpdests.add(pc)
            elif descriptor.opcode == OpCode.BEGINSUB:
                entries.add(pc)
            pc += 1 + descriptor.immediate_width

        self._boundaries: FrozenSet[int] = frozenset(boundaries)
        self.jumpdests: FrozenSet[int] = frozenset(jumpdests)
        self.subroutine_entries: FrozenSet[int] = frozenset(entries)

    def __len__(self) -> int:
        return self.length

    def __repr__(self) -> str:
        return f"Program(length={self.length}, operand={self.operand.value})"

    def is_boundary(self, pc: int) -> bool:
        return pc in self._boundaries

    def is_jumpdest(self, pc: int) -> bool:
        return pc in self.jumpdests

    def is_subroutine_entry(self, pc: int) -> bool:
        return pc in self.subroutine_entries

    def decode_at(self, pc: int) -> Instruction:
        """
        Decode the instruction beginning at ``pc``.

        Raises:
            ValidationFailure: INVALID_INSTRUCTION if ``pc`` is negative, lands
                inside immediate data, or holds an unrecognised byte.
        """
        if pc >= self.length:
            return Instruction(pc, _IMPLICIT_STOP, implicit=True)
        if pc < 0:
            raise ValidationFailure(
                RejectReason.INVALID_INSTRUCTION, pc, "negative program counter"
            )
        if pc not in self._boundaries:
            raise ValidationFailure(
                RejectReason.INVALID_INSTRUCTION, pc,
                "program counter lands inside immediate data",
            )

        byte = self.code[pc]
        descriptor = self.instruction_set.lookup(byte)
        if descriptor is None:
            raise ValidationFailure(
                RejectReason.INVALID_INSTRUCTION, pc, "unrecognised opcode", opcode=byte
            )

        immediate = None
        width = descriptor.immediate_width
        if width:
            # Immediates cut short by the end of code read as zero-padded.
            raw = self.code[pc + 1:pc + 1 + width]
            immediate = decode_uint(raw.ljust(width, b'\x00'))
        return Instruction(pc, descriptor, immediate)

    def instructions(self) -> Iterator[Tuple[int, Optional[Instruction]]]:
        """Linear sweep over every instruction boundary, in code order.

        Unrecognised bytes are yielded as ``None`` at their offset.
        """
        pc = 0
        while pc < self.length:
            if self.instruction_set.lookup(self.code[pc]) is None:
                yield pc, None
                pc += 1
                continue
            instruction = self.decode_at(pc)
            yield pc, instruction
            pc = instruction.next_pc
