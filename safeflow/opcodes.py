"""
SAFEFLOW Instruction Table

Static metadata for every recognised opcode: byte value, immediate width,
declared stack inputs/outputs and a control-flow classification. Pure lookup
data, built once per subroutine-operand mode and never mutated.

Instruction Categories:

    0x00-0x0B: Stop and Arithmetic
    0x10-0x1D: Comparison and Bitwise
    0x20     : SHA3
    0x30-0x47: Environment and Block
    0x50-0x5B: Stack, Memory, Storage and Flow
    0x5C-0x5E: Subroutines (BEGINSUB, JUMPSUB, RETURNSUB)
    0x60-0x9F: PUSH, DUP, SWAP
    0xA0-0xA4: Logging
    0xF0-0xFF: System

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from functools import lru_cache
from typing import Dict, Iterator, List, Optional, Tuple


# =============================================================================
# OPCODES
# =============================================================================

class OpCode(IntEnum):
    """Recognised opcode byte values."""

    # Stop and Arithmetic (0x00-0x0B)
    STOP = 0x00
    ADD = 0x01
    MUL = 0x02
    SUB = 0x03
    DIV = 0x04
    SDIV = 0x05
    MOD = 0x06
    SMOD = 0x07
    ADDMOD = 0x08
    MULMOD = 0x09
    EXP = 0x0A
    SIGNEXTEND = 0x0B

    # Comparison and Bitwise (0x10-0x1D)
    LT = 0x10
    GT = 0x11
    SLT = 0x12
    SGT = 0x13
    EQ = 0x14
    ISZERO = 0x15
    AND = 0x16
    OR = 0x17
    XOR = 0x18
    NOT = 0x19
    BYTE = 0x1A
    SHL = 0x1B
    SHR = 0x1C
    SAR = 0x1D

    SHA3 = 0x20

    # Environment and Block (0x30-0x47)
    ADDRESS = 0x30
    BALANCE = 0x31
    ORIGIN = 0x32
    CALLER = 0x33
    CALLVALUE = 0x34
    CALLDATALOAD = 0x35
    CALLDATASIZE = 0x36
    CALLDATACOPY = 0x37
    CODESIZE = 0x38
    CODECOPY = 0x39
    GASPRICE = 0x3A
    EXTCODESIZE = 0x3B
    EXTCODECOPY = 0x3C
    RETURNDATASIZE = 0x3D
    RETURNDATACOPY = 0x3E
    EXTCODEHASH = 0x3F
    BLOCKHASH = 0x40
    COINBASE = 0x41
    TIMESTAMP = 0x42
    NUMBER = 0x43
    DIFFICULTY = 0x44
    GASLIMIT = 0x45
    CHAINID = 0x46
    SELFBALANCE = 0x47

    # Stack, Memory, Storage and Flow (0x50-0x5B)
    POP = 0x50
    MLOAD = 0x51
    MSTORE = 0x52
    MSTORE8 = 0x53
    SLOAD = 0x54
    SSTORE = 0x55
    JUMP = 0x56
    JUMPI = 0x57
    PC = 0x58
    MSIZE = 0x59
    GAS = 0x5A
    JUMPDEST = 0x5B

    # Subroutines (0x5C-0x5E)
    BEGINSUB = 0x5C
    JUMPSUB = 0x5D
    RETURNSUB = 0x5E

    # Push (0x60-0x7F)
    PUSH1 = 0x60
    PUSH2 = 0x61
    PUSH3 = 0x62
    PUSH4 = 0x63
    PUSH5 = 0x64
    PUSH6 = 0x65
    PUSH7 = 0x66
    PUSH8 = 0x67
    PUSH9 = 0x68
    PUSH10 = 0x69
    PUSH11 = 0x6A
    PUSH12 = 0x6B
    PUSH13 = 0x6C
    PUSH14 = 0x6D
    PUSH15 = 0x6E
    PUSH16 = 0x6F
    PUSH17 = 0x70
    PUSH18 = 0x71
    PUSH19 = 0x72
    PUSH20 = 0x73
    PUSH21 = 0x74
    PUSH22 = 0x75
    PUSH23 = 0x76
    PUSH24 = 0x77
    PUSH25 = 0x78
    PUSH26 = 0x79
    PUSH27 = 0x7A
    PUSH28 = 0x7B
    PUSH29 = 0x7C
    PUSH30 = 0x7D
    PUSH31 = 0x7E
    PUSH32 = 0x7F

    # Duplication (0x80-0x8F)
    DUP1 = 0x80
    DUP2 = 0x81
    DUP3 = 0x82
    DUP4 = 0x83
    DUP5 = 0x84
    DUP6 = 0x85
    DUP7 = 0x86
    DUP8 = 0x87
    DUP9 = 0x88
    DUP10 = 0x89
    DUP11 = 0x8A
    DUP12 = 0x8B
    DUP13 = 0x8C
    DUP14 = 0x8D
    DUP15 = 0x8E
    DUP16 = 0x8F

    # Exchange (0x90-0x9F)
    SWAP1 = 0x90
    SWAP2 = 0x91
    SWAP3 = 0x92
    SWAP4 = 0x93
    SWAP5 = 0x94
    SWAP6 = 0x95
    SWAP7 = 0x96
    SWAP8 = 0x97
    SWAP9 = 0x98
    SWAP10 = 0x99
    SWAP11 = 0x9A
    SWAP12 = 0x9B
    SWAP13 = 0x9C
    SWAP14 = 0x9D
    SWAP15 = 0x9E
    SWAP16 = 0x9F

    # Logging (0xA0-0xA4)
    LOG0 = 0xA0
    LOG1 = 0xA1
    LOG2 = 0xA2
    LOG3 = 0xA3
    LOG4 = 0xA4

    # System (0xF0-0xFF)
    CREATE = 0xF0
    CALL = 0xF1
    CALLCODE = 0xF2
    RETURN = 0xF3
    DELEGATECALL = 0xF4
    CREATE2 = 0xF5
    STATICCALL = 0xFA
    REVERT = 0xFD
    SELFDESTRUCT = 0xFF

    @property
    def is_push(self) -> bool:
        return OpCode.PUSH1 <= self <= OpCode.PUSH32

    @property
    def is_dup(self) -> bool:
        return OpCode.DUP1 <= self <= OpCode.DUP16

    @property
    def is_swap(self) -> bool:
        return OpCode.SWAP1 <= self <= OpCode.SWAP16


class InstructionKind(Enum):
    """Control-flow classification used by the validator and runtime."""
    PLAIN = "plain"
    JUMP = "jump"
    JUMPI = "jumpi"
    BEGINSUB = "beginsub"
    JUMPSUB = "jumpsub"
    RETURNSUB = "returnsub"
    TERMINAL = "terminal"
    PUSH = "push"


class SubroutineOperand(Enum):
    """Where JUMPSUB finds its destination."""
    IMMEDIATE = "immediate"
    STACK = "stack"


JUMPSUB_IMMEDIATE_WIDTH = 3


# =============================================================================
# INSTRUCTION DESCRIPTOR
# =============================================================================

@dataclass(frozen=True)
class InstructionDescriptor:
    """Immutable metadata for one opcode."""
    opcode: OpCode
    immediate_width: int
    stack_inputs: int
    stack_outputs: int
    kind: InstructionKind

    @property
    def mnemonic(self) -> str:
        return self.opcode.name

    @property
    def stack_delta(self) -> int:
        return self.stack_outputs - self.stack_inputs

    @property
    def is_control_flow(self) -> bool:
        return self.kind in _CONTROL_KINDS


_CONTROL_KINDS = frozenset({
    InstructionKind.JUMP,
    InstructionKind.JUMPI,
    InstructionKind.BEGINSUB,
    InstructionKind.JUMPSUB,
    InstructionKind.RETURNSUB,
})


# Value, inputs, outputs. Kind defaults to PLAIN.
_ARITY: Tuple[Tuple[OpCode, int, int], ...] = (
    (OpCode.ADD, 2, 1), (OpCode.MUL, 2, 1), (OpCode.SUB, 2, 1),
    (OpCode.DIV, 2, 1), (OpCode.SDIV, 2, 1), (OpCode.MOD, 2, 1),
    (OpCode.SMOD, 2, 1), (OpCode.ADDMOD, 3, 1), (OpCode.MULMOD, 3, 1),
    (OpCode.EXP, 2, 1), (OpCode.SIGNEXTEND, 2, 1),
    (OpCode.LT, 2, 1), (OpCode.GT, 2, 1), (OpCode.SLT, 2, 1),
    (OpCode.SGT, 2, 1), (OpCode.EQ, 2, 1), (OpCode.ISZERO, 1, 1),
    (OpCode.AND, 2, 1), (OpCode.OR, 2, 1), (OpCode.XOR, 2, 1),
    (OpCode.NOT, 1, 1), (OpCode.BYTE, 2, 1), (OpCode.SHL, 2, 1),
    (OpCode.SHR, 2, 1), (OpCode.SAR, 2, 1),
    (OpCode.SHA3, 2, 1),
    (OpCode.ADDRESS, 0, 1), (OpCode.BALANCE, 1, 1), (OpCode.ORIGIN, 0, 1),
    (OpCode.CALLER, 0, 1), (OpCode.CALLVALUE, 0, 1),
    (OpCode.CALLDATALOAD, 1, 1), (OpCode.CALLDATASIZE, 0, 1),
    (OpCode.CALLDATACOPY, 3, 0), (OpCode.CODESIZE, 0, 1),
    (OpCode.CODECOPY, 3, 0), (OpCode.GASPRICE, 0, 1),
    (OpCode.EXTCODESIZE, 1, 1), (OpCode.EXTCODECOPY, 4, 0),
    (OpCode.RETURNDATASIZE, 0, 1), (OpCode.RETURNDATACOPY, 3, 0),
    (OpCode.EXTCODEHASH, 1, 1), (OpCode.BLOCKHASH, 1, 1),
    (OpCode.COINBASE, 0, 1), (OpCode.TIMESTAMP, 0, 1), (OpCode.NUMBER, 0, 1),
    (OpCode.DIFFICULTY, 0, 1), (OpCode.GASLIMIT, 0, 1),
    (OpCode.CHAINID, 0, 1), (OpCode.SELFBALANCE, 0, 1),
    (OpCode.POP, 1, 0), (OpCode.MLOAD, 1, 1), (OpCode.MSTORE, 2, 0),
    (OpCode.MSTORE8, 2, 0), (OpCode.SLOAD, 1, 1), (OpCode.SSTORE, 2, 0),
    (OpCode.PC, 0, 1), (OpCode.MSIZE, 0, 1), (OpCode.GAS, 0, 1),
    (OpCode.JUMPDEST, 0, 0),
    (OpCode.LOG0, 2, 0), (OpCode.LOG1, 3, 0), (OpCode.LOG2, 4, 0),
    (OpCode.LOG3, 5, 0), (OpCode.LOG4, 6, 0),
    (OpCode.CREATE, 3, 1), (OpCode.CALL, 7, 1), (OpCode.CALLCODE, 7, 1),
    (OpCode.DELEGATECALL, 6, 1), (OpCode.CREATE2, 4, 1),
    (OpCode.STATICCALL, 6, 1),
)

_TERMINALS: Tuple[Tuple[OpCode, int], ...] = (
    (OpCode.STOP, 0),
    (OpCode.RETURN, 2),
    (OpCode.REVERT, 2),
    (OpCode.SELFDESTRUCT, 1),
)


def _build_descriptors(operand: SubroutineOperand) -> List[InstructionDescriptor]:
    plain = InstructionKind.PLAIN
    table = [InstructionDescriptor(op, 0, ins, outs, plain) for op, ins, outs in _ARITY]
    table.extend(
        InstructionDescriptor(op, 0, ins, 0, InstructionKind.TERMINAL)
        for op, ins in _TERMINALS
    )

    for op in OpCode:
        if op.is_push:
            width = op - OpCode.PUSH1 + 1
            table.append(InstructionDescriptor(op, width, 0, 1, InstructionKind.PUSH))
        elif op.is_dup:
            n = op - OpCode.DUP1 + 1
            table.append(InstructionDescriptor(op, 0, n, n + 1, plain))
        elif op.is_swap:
            n = op - OpCode.SWAP1 + 2
            table.append(InstructionDescriptor(op, 0, n, n, plain))

    table.append(InstructionDescriptor(OpCode.JUMP, 0, 1, 0, InstructionKind.JUMP))
    table.append(InstructionDescriptor(OpCode.JUMPI, 0, 2, 0, InstructionKind.JUMPI))
    table.append(InstructionDescriptor(OpCode.BEGINSUB, 0, 0, 0, InstructionKind.BEGINSUB))
    table.append(InstructionDescriptor(OpCode.RETURNSUB, 0, 0, 0, InstructionKind.RETURNSUB))

    if operand is SubroutineOperand.IMMEDIATE:
        jumpsub = InstructionDescriptor(
            OpCode.JUMPSUB, JUMPSUB_IMMEDIATE_WIDTH, 0, 0, InstructionKind.JUMPSUB
        )
    else:
        jumpsub = InstructionDescriptor(OpCode.JUMPSUB, 0, 1, 0, InstructionKind.JUMPSUB)
    table.append(jumpsub)
    return table


# =============================================================================
# INSTRUCTION SET
# =============================================================================

class InstructionSet:
    """
    Byte-indexed descriptor table.

    Lookup is a single tuple index; unassigned bytes (and 0xFE, the
    designated invalid instruction) map to None.
    """

    def __init__(self, operand: SubroutineOperand = SubroutineOperand.IMMEDIATE):
        self.operand = operand
        slots: List[Optional[InstructionDescriptor]] = [None] * 256
        for descriptor in _build_descriptors(operand):
            slots[descriptor.opcode] = descriptor
        self._slots: Tuple[Optional[InstructionDescriptor], ...] = tuple(slots)
        self._by_name: Dict[str, InstructionDescriptor] = {
            d.mnemonic: d for d in self._slots if d is not None
        }

    def lookup(self, byte: int) -> Optional[InstructionDescriptor]:
        return self._slots[byte]

    def by_mnemonic(self, mnemonic: str) -> InstructionDescriptor:
        try:
            return self._by_name[mnemonic.upper()]
        except KeyError:
            raise KeyError(f"unknown mnemonic: {mnemonic}") from None

    def __contains__(self, byte: int) -> bool:
        return 0 <= byte <= 0xFF and self._slots[byte] is not None

    def __iter__(self) -> Iterator[InstructionDescriptor]:
        return (d for d in self._slots if d is not None)

    def __len__(self) -> int:
        return len(self._by_name)


@lru_cache(maxsize=None)
def get_instruction_set(
    operand: SubroutineOperand = SubroutineOperand.IMMEDIATE,
) -> InstructionSet:
    """Shared, cached instruction set for a subroutine-operand mode."""
    return InstructionSet(operand)
