"""
SAFEFLOW Subroutine Runtime

Execution-time semantics of the control-flow instructions: the subroutine
trio (BEGINSUB, JUMPSUB, RETURNSUB) against a private bounded return stack,
plus JUMP and JUMPI checked against jump-destination markers and the jump
table.

    JUMPSUB target     target must be BEGINSUB, push next_pc, pc = target
    RETURNSUB          pc = pop()            (pc >= len(code) halts normally)
    BEGINSUB           no-op

The return stack is private to one execution and is a separate fault domain
from the host data stack. Runtime checks stay active for validated code.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from safeflow.config import get_config
from safeflow.hardening import ExecutionFault, FaultKind
from safeflow.jumptable import EMPTY_JUMP_TABLE, JumpTable
from safeflow.opcodes import InstructionKind
from safeflow.program import Instruction, Program


class OperandStack(Protocol):
    """The slice of the host data stack the control instructions consume."""

    def pop_operand(self) -> int:
        """Pop the top item as an unsigned integer."""
        ...


# =============================================================================
# RETURN STACK
# =============================================================================

class ReturnStack:
    """Bounded LIFO of resumption program counters."""

    def __init__(self, limit: Optional[int] = None):
        self.limit = limit if limit is not None else get_config().runtime.return_stack_limit.get()
        self._items: List[int] = []
        self.high_water = 0

    def push(self, pc: int, at: Instruction) -> None:
        if len(self._items) >= self.limit:
            raise ExecutionFault(
                FaultKind.RETURN_STACK_OVERFLOW, at.pc,
                f"return stack holds {self.limit} items",
                opcode=at.opcode,
            )
        self._items.append(pc)
        self.high_water = max(self.high_water, len(self._items))

    def pop(self, at: Instruction) -> int:
        if not self._items:
            raise ExecutionFault(
                FaultKind.RETURN_STACK_UNDERFLOW, at.pc,
                "RETURNSUB with an empty return stack",
                opcode=at.opcode,
            )
        return self._items.pop()

    def peek(self) -> Optional[int]:
        return self._items[-1] if self._items else None

    def snapshot(self) -> List[int]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


# =============================================================================
# SUBROUTINE RUNTIME
# =============================================================================

class SubroutineRuntime:
    """
    Control-flow executor for one run of one program.

    Each handler takes the decoded instruction and returns the next program
    counter. A program counter at or past the end of code means the run
    halts normally.
    """

    def __init__(
        self,
        program: Program,
        jumptable: Optional[JumpTable] = None,
        return_stack_limit: Optional[int] = None,
    ):
        self.program = program
        self.jumptable = jumptable if jumptable is not None else EMPTY_JUMP_TABLE
        self.return_stack = ReturnStack(return_stack_limit)

    def halted(self, pc: int) -> bool:
        return pc >= self.program.length

    def execute(self, insn: Instruction, stack: OperandStack) -> int:
        """Dispatch one control-flow instruction."""
        kind = insn.kind
        if kind is InstructionKind.BEGINSUB:
            return self.begin_sub(insn)
        if kind is InstructionKind.JUMPSUB:
            return self.jump_sub(insn, stack)
        if kind is InstructionKind.RETURNSUB:
            return self.return_sub(insn)
        if kind is InstructionKind.JUMP:
            return self.jump(insn, stack)
        if kind is InstructionKind.JUMPI:
            return self.jump_if(insn, stack)
        raise ValueError(f"{insn.mnemonic} is not a control-flow instruction")

    def begin_sub(self, insn: Instruction) -> int:
        return insn.next_pc

    def jump_sub(self, insn: Instruction, stack: OperandStack) -> int:
        if insn.immediate is not None:
            target = insn.immediate
        else:
            target = stack.pop_operand()
            self._check_edge(insn, target)

        if not self.program.is_subroutine_entry(target):
            raise ExecutionFault(
                FaultKind.INVALID_JUMP_DESTINATION, insn.pc,
                f"subroutine target {target} is not a BEGINSUB",
                opcode=insn.opcode,
            )
        self.return_stack.push(insn.next_pc, insn)
        return target

    def return_sub(self, insn: Instruction) -> int:
        # Popped values were pushed by JUMPSUB and need no revalidation.
        return self.return_stack.pop(insn)

    def jump(self, insn: Instruction, stack: OperandStack) -> int:
        dest = stack.pop_operand()
        self._check_jump(insn, dest)
        return dest

    def jump_if(self, insn: Instruction, stack: OperandStack) -> int:
        dest = stack.pop_operand()
        condition = stack.pop_operand()
        if not condition:
            return insn.next_pc
        self._check_jump(insn, dest)
        return dest

    def _check_jump(self, insn: Instruction, dest: int) -> None:
        self._check_edge(insn, dest)
        if not self.program.is_jumpdest(dest):
            raise ExecutionFault(
                FaultKind.INVALID_JUMP_DESTINATION, insn.pc,
                f"jump target {dest} is not a JUMPDEST",
                opcode=insn.opcode,
            )

    def _check_edge(self, insn: Instruction, dest: int) -> None:
        """Sites listed in the jump table may only take listed edges."""
        table = self.jumptable
        if table.has_source(insn.pc) and not table.is_valid_dynamic_edge(insn.pc, dest):
            raise ExecutionFault(
                FaultKind.INVALID_JUMP_DESTINATION, insn.pc,
                f"edge {insn.pc} -> {dest} is not in the jump table",
                opcode=insn.opcode,
            )
