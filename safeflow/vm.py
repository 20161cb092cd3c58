"""
SAFEFLOW Reference Host Interpreter

A small stack machine that hosts the subroutine runtime so validated programs
can be executed end to end. It interprets the stack, arithmetic, comparison,
bitwise and memory subset of the instruction table; every other recognised
opcode (storage, environment, calls, logs) faults as unsupported. It is a
harness for the control-flow semantics, not an EVM.

Architecture:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                          STACK MACHINE                               │
    │  ┌─────────────┐  ┌─────────────┐  ┌─────────────────────────────┐  │
    │  │ DATA STACK  │  │   MEMORY    │  │        RETURN STACK          │  │
    │  │ (1024 words)│  │ (bounded)   │  │  (SubroutineRuntime, 1024)   │  │
    │  └─────────────┘  └─────────────┘  └─────────────────────────────┘  │
    │                                                                      │
    │  ┌───────────────────────────────────────────────────────────────┐  │
    │  │                    DISPATCH LOOP                               │  │
    │  │  Push | Stack | Arithmetic | Bitwise | Memory | Control (rt)  │  │
    │  └───────────────────────────────────────────────────────────────┘  │
    └─────────────────────────────────────────────────────────────────────┘

Faults never escape ``execute``: they end the run and are reported on the
ExecutionResult. Only code that passed validation is accepted by ``deploy``.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from safeflow.config import default_subroutine_operand, get_config
from safeflow.hardening import (
    ExecutionFault,
    FaultKind,
    SafeflowError,
    ValidationFailure,
)
from safeflow.jumptable import JumpTable
from safeflow.observability import Layer, get_logger
from safeflow.opcodes import (
    InstructionKind,
    OpCode,
    SubroutineOperand,
    get_instruction_set,
)
from safeflow.program import Instruction, Program, encode_uint
from safeflow.runtime import SubroutineRuntime
from safeflow.validator import Validator, load_program


logger = get_logger("vm", Layer.VM)


# =============================================================================
# VM WORD TYPE
# =============================================================================

WORD_BITS = 256
WORD_MASK = (1 << WORD_BITS) - 1
SIGN_BIT = 1 << (WORD_BITS - 1)


@dataclass(frozen=True)
class Word:
    """256-bit unsigned machine word."""
    value: int

    def __post_init__(self):
        if not 0 <= self.value <= WORD_MASK:
            raise ValueError(f"Word out of range: {self.value}")

    @classmethod
    def from_int(cls, value: int) -> 'Word':
        """Wrap an arbitrary integer (two's complement for negatives)."""
        return cls(value & WORD_MASK)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Word':
        """Big-endian, right-aligned; longer inputs keep the last 32 bytes."""
        return cls(int.from_bytes(data[-32:], 'big'))

    @classmethod
    def zero(cls) -> 'Word':
        return cls(0)

    def to_int(self, signed: bool = False) -> int:
        if signed and self.value & SIGN_BIT:
            return self.value - (1 << WORD_BITS)
        return self.value

    def to_bytes(self) -> bytes:
        return self.value.to_bytes(32, 'big')

    def to_hex(self) -> str:
        return hex(self.value)

    def __bool__(self) -> bool:
        return self.value != 0


def _signed(value: int) -> int:
    return value - (1 << WORD_BITS) if value & SIGN_BIT else value


def _sdiv(a: int, b: int) -> int:
    if b == 0:
        return 0
    sa, sb = _signed(a), _signed(b)
    quotient = abs(sa) // abs(sb)
    return (-quotient if (sa < 0) != (sb < 0) else quotient) & WORD_MASK


def _smod(a: int, b: int) -> int:
    if b == 0:
        return 0
    sa, sb = _signed(a), _signed(b)
    remainder = abs(sa) % abs(sb)
    return (-remainder if sa < 0 else remainder) & WORD_MASK


def _signextend(size: int, value: int) -> int:
    if size >= 31:
        return value
    sign = 1 << (8 * size + 7)
    if value & sign:
        return value | (WORD_MASK ^ (sign - 1))
    return value & (sign - 1)


def _byte(index: int, value: int) -> int:
    if index >= 32:
        return 0
    return (value >> (8 * (31 - index))) & 0xFF


def _sar(shift: int, value: int) -> int:
    if shift >= WORD_BITS:
        return WORD_MASK if value & SIGN_BIT else 0
    return (_signed(value) >> shift) & WORD_MASK


# First argument is the top of the stack.
_BINARY: Dict[OpCode, Callable[[int, int], int]] = {
    OpCode.ADD: lambda a, b: (a + b) & WORD_MASK,
    OpCode.MUL: lambda a, b: (a * b) & WORD_MASK,
    OpCode.SUB: lambda a, b: (a - b) & WORD_MASK,
    OpCode.DIV: lambda a, b: a // b if b else 0,
    OpCode.SDIV: _sdiv,
    OpCode.MOD: lambda a, b: a % b if b else 0,
    OpCode.SMOD: _smod,
    OpCode.EXP: lambda a, b: pow(a, b, 1 << WORD_BITS),
    OpCode.SIGNEXTEND: _signextend,
    OpCode.LT: lambda a, b: int(a < b),
    OpCode.GT: lambda a, b: int(a > b),
    OpCode.SLT: lambda a, b: int(_signed(a) < _signed(b)),
    OpCode.SGT: lambda a, b: int(_signed(a) > _signed(b)),
    OpCode.EQ: lambda a, b: int(a == b),
    OpCode.AND: lambda a, b: a & b,
    OpCode.OR: lambda a, b: a | b,
    OpCode.XOR: lambda a, b: a ^ b,
    OpCode.BYTE: _byte,
    OpCode.SHL: lambda a, b: (b << a) & WORD_MASK if a < WORD_BITS else 0,
    OpCode.SHR: lambda a, b: b >> a if a < WORD_BITS else 0,
    OpCode.SAR: _sar,
}

_UNARY: Dict[OpCode, Callable[[int], int]] = {
    OpCode.ISZERO: lambda a: int(a == 0),
    OpCode.NOT: lambda a: a ^ WORD_MASK,
}

_TERNARY: Dict[OpCode, Callable[[int, int, int], int]] = {
    OpCode.ADDMOD: lambda a, b, n: (a + b) % n if n else 0,
    OpCode.MULMOD: lambda a, b, n: (a * b) % n if n else 0,
}


# =============================================================================
# EXECUTION CONTEXT
# =============================================================================

@dataclass
class ExecutionContext:
    """Inputs and budgets for one execution."""
    calldata: bytes = b''
    value: int = 0
    max_steps: Optional[int] = None
    max_memory: int = 1 << 20

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calldata": self.calldata.hex(),
            "value": self.value,
            "max_steps": self.max_steps,
            "max_memory": self.max_memory,
        }


class HaltReason(Enum):
    STOP = "stop"
    RETURN = "return"
    REVERT = "revert"
    END_OF_CODE = "end_of_code"
    FAULT = "fault"


# =============================================================================
# VM STATE
# =============================================================================

@dataclass
class VMState:
    """Mutable state of one execution."""
    program: Program
    stack_limit: int = 1024
    max_memory: int = 1 << 20
    pc: int = 0
    stack: List[Word] = field(default_factory=list)
    memory: bytearray = field(default_factory=bytearray)
    steps: int = 0
    halt_reason: Optional[HaltReason] = None
    return_data: bytes = b''

    @property
    def halted(self) -> bool:
        return self.halt_reason is not None

    def _fault(self, kind: FaultKind, message: str) -> ExecutionFault:
        opcode = self.program.code[self.pc] if self.pc < self.program.length else None
        return ExecutionFault(kind, self.pc, message, opcode=opcode)

    def push(self, word: Word) -> None:
        if len(self.stack) >= self.stack_limit:
            raise self._fault(FaultKind.STACK_OVERFLOW, f"data stack holds {self.stack_limit} items")
        self.stack.append(word)

    def pop(self) -> Word:
        if not self.stack:
            raise self._fault(FaultKind.STACK_UNDERFLOW, "pop from an empty data stack")
        return self.stack.pop()

    def pop_operand(self) -> int:
        return self.pop().value

    def peek(self, depth: int = 0) -> Word:
        if depth >= len(self.stack):
            raise self._fault(FaultKind.STACK_UNDERFLOW, f"data stack has no item at depth {depth}")
        return self.stack[-(depth + 1)]

    def dup(self, depth: int) -> None:
        self.push(self.peek(depth))

    def swap(self, depth: int) -> None:
        self.peek(depth)
        self.stack[-1], self.stack[-(depth + 1)] = self.stack[-(depth + 1)], self.stack[-1]

    def read_memory(self, offset: int, size: int) -> bytes:
        if size == 0:
            return b''
        self._expand_memory(offset + size)
        return bytes(self.memory[offset:offset + size])

    def mload(self, offset: int) -> Word:
        return Word.from_bytes(self.read_memory(offset, 32))

    def mstore(self, offset: int, word: Word) -> None:
        self._expand_memory(offset + 32)
        self.memory[offset:offset + 32] = word.to_bytes()

    def mstore8(self, offset: int, value: int) -> None:
        self._expand_memory(offset + 1)
        self.memory[offset] = value & 0xFF

    def _expand_memory(self, size: int) -> None:
        """Grow memory in 32-byte words."""
        if size > self.max_memory:
            raise self._fault(
                FaultKind.MEMORY_LIMIT_EXCEEDED,
                f"memory access up to {size} exceeds {self.max_memory} bytes",
            )
        words = (size + 31) // 32
        if len(self.memory) < words * 32:
            self.memory.extend(b'\x00' * (words * 32 - len(self.memory)))


# =============================================================================
# EXECUTION RESULT
# =============================================================================

@dataclass
class ExecutionResult:
    """Outcome of one execution."""
    success: bool
    halt_reason: HaltReason
    return_data: bytes = b''
    steps: int = 0
    stack: List[int] = field(default_factory=list)
    return_stack: List[int] = field(default_factory=list)
    return_stack_peak: int = 0
    fault: Optional[ExecutionFault] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "halt_reason": self.halt_reason.value,
            "return_data": self.return_data.hex(),
            "steps": self.steps,
            "stack": [hex(v) for v in self.stack],
            "return_stack": self.return_stack,
            "return_stack_peak": self.return_stack_peak,
            "fault": self.fault.to_dict() if self.fault else None,
        }


# =============================================================================
# STACK MACHINE
# =============================================================================

class StackMachine:
    """
    Reference host for validated SAFEFLOW programs.

    Example:
        machine = StackMachine(operand=SubroutineOperand.STACK)
        program = machine.deploy(bytes.fromhex("6004" "5d" "00" "5c" "5e"))
        result = machine.execute(program)
        assert result.success and result.halt_reason is HaltReason.STOP
    """

    def __init__(
        self,
        operand: Optional[Union[SubroutineOperand, str]] = None,
        data_stack_limit: Optional[int] = None,
        return_stack_limit: Optional[int] = None,
        max_steps: Optional[int] = None,
    ):
        runtime_config = get_config().runtime
        self.operand = SubroutineOperand(operand) if operand is not None else default_subroutine_operand()
        if data_stack_limit is None:
            data_stack_limit = runtime_config.data_stack_limit.get()
        if return_stack_limit is None:
            return_stack_limit = runtime_config.return_stack_limit.get()
        if max_steps is None:
            max_steps = runtime_config.max_steps.get()
        self.data_stack_limit = data_stack_limit
        self.return_stack_limit = return_stack_limit
        self.max_steps = max_steps

    def deploy(
        self,
        code: Union[Program, bytes, bytearray, str],
        jumptable: Optional[JumpTable] = None,
    ) -> Program:
        """
        Validate code once and return the program ready for execution.

        Raises:
            CodeRejected: the validator refused the code.
        """
        program = load_program(code, self.operand)
        verdict = Validator(program, jumptable).validate()
        verdict.raise_if_rejected()
        return program

    def execute(
        self,
        code: Union[Program, bytes, bytearray, str],
        jumptable: Optional[JumpTable] = None,
        context: Optional[ExecutionContext] = None,
    ) -> ExecutionResult:
        """
        Run a program to completion.

        Execution does not validate; runtime bounds checks apply either way.
        """
        program = load_program(code, self.operand)
        context = context or ExecutionContext()
        budget = context.max_steps if context.max_steps is not None else self.max_steps
        state = VMState(program, stack_limit=self.data_stack_limit, max_memory=context.max_memory)
        runtime = SubroutineRuntime(program, jumptable, self.return_stack_limit)

        start = time.monotonic()
        try:
            while not state.halted:
                insn = self._fetch(program, state.pc)
                if insn.implicit:
                    state.halt_reason = HaltReason.END_OF_CODE
                    break
                if state.steps >= budget:
                    raise ExecutionFault(
                        FaultKind.OUT_OF_STEPS, insn.pc,
                        f"step budget of {budget} exhausted",
                        opcode=insn.opcode,
                    )
                state.steps += 1
                state.pc = self._step(insn, state, runtime, context)
        except ExecutionFault as fault:
            logger.warning(
                "execution fault",
                error_code=fault.kind.value,
                pc=fault.pc,
                opcode=fault.opcode,
                detail=fault.message,
                steps=state.steps,
            )
            return ExecutionResult(
                success=False,
                halt_reason=HaltReason.FAULT,
                steps=state.steps,
                stack=[w.value for w in state.stack],
                return_stack=runtime.return_stack.snapshot(),
                return_stack_peak=runtime.return_stack.high_water,
                fault=fault,
            )

        logger.operation(
            "execute",
            (time.monotonic() - start) * 1000,
            success=state.halt_reason is not HaltReason.REVERT,
            steps=state.steps,
            halt_reason=state.halt_reason.value,
        )
        return ExecutionResult(
            success=state.halt_reason is not HaltReason.REVERT,
            halt_reason=state.halt_reason,
            return_data=state.return_data,
            steps=state.steps,
            stack=[w.value for w in state.stack],
            return_stack=runtime.return_stack.snapshot(),
            return_stack_peak=runtime.return_stack.high_water,
        )

    @staticmethod
    def _fetch(program: Program, pc: int) -> Instruction:
        try:
            return program.decode_at(pc)
        except ValidationFailure as e:
            raise ExecutionFault(FaultKind.INVALID_INSTRUCTION, pc, e.message, opcode=e.opcode) from e

    def _step(
        self,
        insn: Instruction,
        state: VMState,
        runtime: SubroutineRuntime,
        context: ExecutionContext,
    ) -> int:
        """Execute one instruction and return the next program counter."""
        op = insn.opcode
        kind = insn.kind

        if insn.descriptor.is_control_flow:
            return runtime.execute(insn, state)

        if kind is InstructionKind.PUSH:
            state.push(Word(insn.immediate))
        elif kind is InstructionKind.TERMINAL:
            self._halt(insn, state)
            return insn.pc
        elif op in _BINARY:
            a, b = state.pop_operand(), state.pop_operand()
            state.push(Word(_BINARY[op](a, b)))
        elif op in _UNARY:
            state.push(Word(_UNARY[op](state.pop_operand())))
        elif op in _TERNARY:
            a, b, n = state.pop_operand(), state.pop_operand(), state.pop_operand()
            state.push(Word(_TERNARY[op](a, b, n)))
        elif op.is_dup:
            state.dup(op - OpCode.DUP1)
        elif op.is_swap:
            state.swap(op - OpCode.SWAP1 + 1)
        elif op == OpCode.POP:
            state.pop()
        elif op == OpCode.JUMPDEST:
            pass
        elif op == OpCode.MLOAD:
            state.push(state.mload(state.pop_operand()))
        elif op == OpCode.MSTORE:
            offset = state.pop_operand()
            state.mstore(offset, state.pop())
        elif op == OpCode.MSTORE8:
            offset = state.pop_operand()
            state.mstore8(offset, state.pop_operand())
        elif op == OpCode.MSIZE:
            state.push(Word(len(state.memory)))
        elif op == OpCode.PC:
            state.push(Word(insn.pc))
        elif op == OpCode.CODESIZE:
            state.push(Word(state.program.length))
        elif op == OpCode.CALLVALUE:
            state.push(Word.from_int(context.value))
        elif op == OpCode.CALLDATASIZE:
            state.push(Word(len(context.calldata)))
        elif op == OpCode.CALLDATALOAD:
            offset = state.pop_operand()
            chunk = context.calldata[offset:offset + 32]
            state.push(Word.from_bytes(chunk.ljust(32, b'\x00')))
        else:
            raise ExecutionFault(
                FaultKind.UNSUPPORTED_INSTRUCTION, insn.pc,
                f"{insn.mnemonic} is not implemented by the reference host",
                opcode=op,
            )
        return insn.next_pc

    @staticmethod
    def _halt(insn: Instruction, state: VMState) -> None:
        op = insn.opcode
        if op == OpCode.STOP:
            state.halt_reason = HaltReason.STOP
        elif op in (OpCode.RETURN, OpCode.REVERT):
            offset, size = state.pop_operand(), state.pop_operand()
            state.return_data = state.read_memory(offset, size)
            state.halt_reason = HaltReason.RETURN if op == OpCode.RETURN else HaltReason.REVERT
        else:
            raise ExecutionFault(
                FaultKind.UNSUPPORTED_INSTRUCTION, insn.pc,
                f"{insn.mnemonic} is not implemented by the reference host",
                opcode=op,
            )


# =============================================================================
# BYTECODE ASSEMBLER
# =============================================================================

class AssemblyError(SafeflowError):
    """Source could not be assembled."""
    pass


AsmItem = Union[str, Tuple[Any, ...]]

_LABEL = re.compile(r'^([A-Za-z_][A-Za-z0-9_]*):$')


class Assembler:
    """Assembler for SAFEFLOW bytecode with symbolic labels."""

    @staticmethod
    def assemble(
        instructions: Iterable[AsmItem],
        operand: SubroutineOperand = SubroutineOperand.IMMEDIATE,
    ) -> bytes:
        """
        Assemble instructions to bytecode.

        Items are ``(mnemonic,)``, ``(mnemonic, operand)`` or ``"label:"``.
        Operands are integers or label names.

        Example:
            code = Assembler.assemble([
                ("JUMPSUB", "square"),
                ("STOP",),
                "square:",
                ("BEGINSUB",),
                ("DUP1",),
                ("MUL",),
                ("RETURNSUB",),
            ])
        """
        instruction_set = get_instruction_set(operand)
        items = list(instructions)

        labels: Dict[str, int] = {}
        pending: List[Tuple[int, Any, Any]] = []
        offset = 0
        for item in items:
            if isinstance(item, str):
                match = _LABEL.match(item)
                if not match:
                    raise AssemblyError(f"malformed label: {item!r}")
                name = match.group(1)
                if name in labels:
                    raise AssemblyError(f"duplicate label: {name}")
                labels[name] = offset
                continue
            try:
                descriptor = instruction_set.by_mnemonic(str(item[0]))
            except KeyError as e:
                raise AssemblyError(str(e.args[0])) from None
            argument = item[1] if len(item) > 1 else None
            if descriptor.immediate_width and argument is None:
                raise AssemblyError(f"{descriptor.mnemonic} at {offset} needs an operand")
            if not descriptor.immediate_width and argument is not None:
                raise AssemblyError(f"{descriptor.mnemonic} takes no operand")
            pending.append((offset, descriptor, argument))
            offset += 1 + descriptor.immediate_width

        bytecode = bytearray()
        for offset, descriptor, argument in pending:
            bytecode.append(descriptor.opcode)
            if argument is None:
                continue
            if isinstance(argument, str):
                if argument not in labels:
                    raise AssemblyError(f"undefined label: {argument}")
                argument = labels[argument]
            try:
                bytecode.extend(encode_uint(argument, descriptor.immediate_width))
            except ValueError as e:
                raise AssemblyError(f"{descriptor.mnemonic} at {offset}: {e}") from None
        return bytes(bytecode)

    @staticmethod
    def parse(source: str) -> List[AsmItem]:
        """
        Parse assembly text: one instruction or ``label:`` per line, comments
        after ``;`` or ``#``.
        """
        items: List[AsmItem] = []
        for lineno, raw in enumerate(source.splitlines(), 1):
            line = re.split(r'[;#]', raw, maxsplit=1)[0].strip()
            if not line:
                continue
            if line.endswith(':'):
                items.append(line)
                continue
            parts = line.split()
            if len(parts) > 2:
                raise AssemblyError(f"line {lineno}: too many operands")
            if len(parts) == 1:
                items.append((parts[0],))
                continue
            try:
                argument: Any = int(parts[1], 0)
            except ValueError:
                argument = parts[1]
            items.append((parts[0], argument))
        return items

    @staticmethod
    def disassemble(
        bytecode: bytes,
        operand: SubroutineOperand = SubroutineOperand.IMMEDIATE,
    ) -> List[Tuple[int, str, Optional[int]]]:
        """
        Disassemble bytecode to instructions.

        Returns list of (offset, mnemonic, immediate_value).
        """
        program = Program(bytecode, operand=operand)
        listing: List[Tuple[int, str, Optional[int]]] = []
        for offset, insn in program.instructions():
            if insn is None:
                listing.append((offset, f"UNKNOWN(0x{program.code[offset]:02x})", None))
            else:
                listing.append((offset, insn.mnemonic, insn.immediate))
        return listing
