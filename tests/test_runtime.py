"""
SAFEFLOW Subroutine Runtime Tests

Tests for the return stack and the control-flow handlers, driven directly
with a minimal operand stack.

Run with: pytest tests/test_runtime.py -v

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest

from safeflow.hardening import ExecutionFault, FaultKind
from safeflow.jumptable import JumpTable
from safeflow.opcodes import SubroutineOperand
from safeflow.program import Program
from safeflow.runtime import ReturnStack, SubroutineRuntime


class FakeStack:
    """Operand stack backed by a list; the last element is the top."""

    def __init__(self, items=None):
        self.items = list(items or [])

    def pop_operand(self) -> int:
        return self.items.pop()


def code(hex_text: str) -> bytes:
    return bytes.fromhex(hex_text.replace(" ", ""))


# =============================================================================
# RETURN STACK
# =============================================================================

class TestReturnStack:
    """Bounded LIFO behaviour."""

    def test_push_pop_order(self):
        program = Program(code("5d000004 5c"))
        at = program.decode_at(0)
        stack = ReturnStack(limit=4)
        stack.push(4, at)
        stack.push(9, at)
        assert stack.peek() == 9
        assert stack.pop(at) == 9
        assert stack.pop(at) == 4
        assert len(stack) == 0
        assert stack.peek() is None

    def test_overflow_reports_pushing_instruction(self):
        program = Program(code("00 5d000005 5c"))
        at = program.decode_at(1)
        stack = ReturnStack(limit=2)
        stack.push(5, at)
        stack.push(5, at)
        with pytest.raises(ExecutionFault) as exc_info:
            stack.push(5, at)
        assert exc_info.value.kind is FaultKind.RETURN_STACK_OVERFLOW
        assert exc_info.value.pc == 1
        assert len(stack) == 2

    def test_underflow(self):
        at = Program(code("5e")).decode_at(0)
        with pytest.raises(ExecutionFault) as exc_info:
            ReturnStack().pop(at)
        assert exc_info.value.kind is FaultKind.RETURN_STACK_UNDERFLOW
        assert exc_info.value.opcode == 0x5E

    def test_high_water(self):
        at = Program(code("5d000004 5c")).decode_at(0)
        stack = ReturnStack(limit=8)
        for pc in (4, 4, 4):
            stack.push(pc, at)
        stack.pop(at)
        stack.pop(at)
        assert stack.high_water == 3
        assert stack.snapshot() == [4]

    def test_limit_from_config(self, monkeypatch):
        monkeypatch.setenv("SAFEFLOW_RETURN_STACK_LIMIT", "16")
        assert ReturnStack().limit == 16

    def test_default_limit(self):
        assert ReturnStack().limit == 1024


# =============================================================================
# SUBROUTINE INSTRUCTIONS
# =============================================================================

class TestSubroutineInstructions:
    """BEGINSUB, JUMPSUB and RETURNSUB."""

    def test_jumpsub_stack_operand(self):
        """Popped destination, return address is the next instruction."""
        program = Program(code("6004 5d 00 5c 5e"), operand=SubroutineOperand.STACK)
        runtime = SubroutineRuntime(program)
        stack = FakeStack([4])
        assert runtime.execute(program.decode_at(2), stack) == 4
        assert runtime.return_stack.snapshot() == [3]
        assert stack.items == []

    def test_jumpsub_immediate_operand(self):
        program = Program(code("5d000005 00 5c 5e"))
        runtime = SubroutineRuntime(program)
        assert runtime.jump_sub(program.decode_at(0), FakeStack()) == 5
        assert runtime.return_stack.snapshot() == [4]

    def test_beginsub_is_noop(self):
        program = Program(code("5c 5e"))
        runtime = SubroutineRuntime(program)
        assert runtime.execute(program.decode_at(0), FakeStack()) == 1
        assert len(runtime.return_stack) == 0

    def test_returnsub_resumes_after_call(self):
        program = Program(code("5d000005 00 5c 5e"))
        runtime = SubroutineRuntime(program)
        stack = FakeStack()
        target = runtime.execute(program.decode_at(0), stack)
        assert runtime.execute(program.decode_at(target), stack) == 6
        assert runtime.execute(program.decode_at(6), stack) == 4
        assert len(runtime.return_stack) == 0

    def test_return_to_end_of_code_halts(self):
        """A call as the last instruction returns to the end of code."""
        program = Program(code("6005 56 5c 5e 5b 5d000003"))
        runtime = SubroutineRuntime(program)
        runtime.jump_sub(program.decode_at(6), FakeStack())
        resume = runtime.return_sub(program.decode_at(4))
        assert resume == 10
        assert runtime.halted(resume)

    def test_jumpsub_to_non_beginsub(self):
        program = Program(code("5d000004 00"))
        runtime = SubroutineRuntime(program)
        with pytest.raises(ExecutionFault) as exc_info:
            runtime.jump_sub(program.decode_at(0), FakeStack())
        assert exc_info.value.kind is FaultKind.INVALID_JUMP_DESTINATION
        assert exc_info.value.pc == 0
        assert len(runtime.return_stack) == 0

    def test_jumpsub_past_end(self):
        program = Program(code("5d0000ff"))
        with pytest.raises(ExecutionFault) as exc_info:
            SubroutineRuntime(program).jump_sub(program.decode_at(0), FakeStack())
        assert exc_info.value.kind is FaultKind.INVALID_JUMP_DESTINATION

    def test_stack_operand_checked_against_table(self):
        """A listed call site may only reach its declared subroutines."""
        program = Program(code("5c 5e 5c 5e 5d"), operand=SubroutineOperand.STACK)
        runtime = SubroutineRuntime(program, JumpTable([(4, 0)]))
        assert runtime.jump_sub(program.decode_at(4), FakeStack([0])) == 0
        with pytest.raises(ExecutionFault) as exc_info:
            runtime.jump_sub(program.decode_at(4), FakeStack([2]))
        assert exc_info.value.kind is FaultKind.INVALID_JUMP_DESTINATION

    def test_returnsub_empty(self):
        program = Program(code("5e"))
        with pytest.raises(ExecutionFault) as exc_info:
            SubroutineRuntime(program).execute(program.decode_at(0), FakeStack())
        assert exc_info.value.kind is FaultKind.RETURN_STACK_UNDERFLOW
        assert exc_info.value.pc == 0

    def test_return_stack_limit(self):
        program = Program(code("5d000004 5c"))
        runtime = SubroutineRuntime(program, return_stack_limit=2)
        insn = program.decode_at(0)
        runtime.jump_sub(insn, FakeStack())
        runtime.jump_sub(insn, FakeStack())
        with pytest.raises(ExecutionFault) as exc_info:
            runtime.jump_sub(insn, FakeStack())
        assert exc_info.value.kind is FaultKind.RETURN_STACK_OVERFLOW


# =============================================================================
# JUMPS
# =============================================================================

class TestJumps:
    """JUMP and JUMPI against markers and the jump table."""

    def test_jump_to_jumpdest(self):
        program = Program(code("6003 56 5b 00"))
        runtime = SubroutineRuntime(program)
        assert runtime.execute(program.decode_at(2), FakeStack([3])) == 3

    def test_jump_to_non_jumpdest(self):
        program = Program(code("6003 56 00"))
        with pytest.raises(ExecutionFault) as exc_info:
            SubroutineRuntime(program).jump(program.decode_at(2), FakeStack([3]))
        assert exc_info.value.kind is FaultKind.INVALID_JUMP_DESTINATION
        assert exc_info.value.pc == 2

    def test_jump_into_push_data(self):
        program = Program(code("6004 56 605b"))
        with pytest.raises(ExecutionFault):
            SubroutineRuntime(program).jump(program.decode_at(2), FakeStack([4]))

    def test_jumpi_operand_order(self):
        """Destination on top, condition below."""
        program = Program(code("6001 6007 57 00 00 5b 00"))
        runtime = SubroutineRuntime(program)
        assert runtime.jump_if(program.decode_at(4), FakeStack([1, 7])) == 7
        assert runtime.jump_if(program.decode_at(4), FakeStack([0, 7])) == 5

    def test_jumpi_not_taken_skips_destination_check(self):
        program = Program(code("6000 6003 57 00"))
        runtime = SubroutineRuntime(program)
        assert runtime.jump_if(program.decode_at(4), FakeStack([0, 3])) == 5

    def test_listed_site_restricted_to_table(self):
        program = Program(code("6000 35 56 5b 00 5b 00"))
        runtime = SubroutineRuntime(program, JumpTable([(3, 4)]))
        insn = program.decode_at(3)
        assert runtime.jump(insn, FakeStack([4])) == 4
        with pytest.raises(ExecutionFault) as exc_info:
            runtime.jump(insn, FakeStack([6]))
        assert "jump table" in exc_info.value.message

    def test_unlisted_site_uses_markers_only(self):
        program = Program(code("6000 35 56 5b 00 5b 00"))
        runtime = SubroutineRuntime(program, JumpTable([(9, 4)]))
        assert runtime.jump(program.decode_at(3), FakeStack([6])) == 6

    def test_non_control_instruction_rejected(self):
        program = Program(code("6001"))
        with pytest.raises(ValueError):
            SubroutineRuntime(program).execute(program.decode_at(0), FakeStack())
