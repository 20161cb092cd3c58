"""
SAFEFLOW Static Validator

Decides whether a program is free of invalid-instruction,
invalid-jump-destination and non-recursive stack-depth faults. The
control-flow graph is never materialised: a depth-first worklist follows
every edge once per frame, memoising the stack depth first seen at each
program counter. Work is linear in program size for each analysed frame
(the top-level code plus one frame per called subroutine); code shared by
several subroutines is walked once in each of them.

Architecture:

    ┌──────────────────────────────────────────────────────────────────┐
    │                          VALIDATOR                                │
    │                                                                   │
    │   worklist of paths ──► follow: decode, memo, arity, dispatch     │
    │        ▲                    │                                     │
    │        │      JUMP/JUMPI ───┤ symbolic constants / jump table     │
    │        │      JUMPSUB ──────┤ open subroutine frame (base = 0)    │
    │        └──────RETURNSUB ────┘ fix net effect, resume callers      │
    │                                                                   │
    │   call-site pass: required inputs (fixpoint), peak height (SCCs)  │
    └──────────────────────────────────────────────────────────────────┘

Subroutine policy:

    Every subroutine body is analysed once, in its own frame, with depths
    relative to its entry. Its summary is a single static triple applied at
    every call site:

        required inputs   deepest dip below the entry base, propagated
                          through nested calls
        net effect        relative depth at RETURNSUB, identical on every
                          returning path
        peak height       highest relative depth, propagated through
                          non-recursive calls only

    Growth through recursion is left to the runtime return stack and data
    stack checks.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union

from safeflow.config import default_subroutine_operand, get_config
from safeflow.hardening import RejectReason, ValidationFailure, Verdict
from safeflow.jumptable import EMPTY_JUMP_TABLE, JumpTable
from safeflow.observability import Layer, LogLevel, SafeflowLogger, get_logger
from safeflow.opcodes import InstructionDescriptor, InstructionKind, OpCode, SubroutineOperand
from safeflow.program import Instruction, Program


MAIN_FRAME = -1


# =============================================================================
# TRAVERSAL STATE
# =============================================================================

@dataclass(frozen=True)
class _CallSite:
    caller: int
    callee: int
    pc: int
    resume_pc: int
    depth: int


@dataclass
class _Frame:
    """Analysis state of one subroutine body, or of the top-level code."""
    entry: int
    depths: Dict[int, int] = field(default_factory=dict)
    min_depth: int = 0
    max_depth: int = 0
    net_effect: Optional[int] = None
    callers: List[_CallSite] = field(default_factory=list)
    calls: List[_CallSite] = field(default_factory=list)

    @property
    def is_main(self) -> bool:
        return self.entry == MAIN_FRAME


@dataclass(frozen=True)
class _Path:
    frame: int
    pc: int
    depth: int
    constants: Tuple[Optional[int], ...] = ()


@dataclass(frozen=True)
class SubroutineSummary:
    """Verified stack contract of one subroutine."""
    entry: int
    required_inputs: int
    net_effect: Optional[int]
    peak_height: int

    @property
    def returns(self) -> bool:
        return self.net_effect is not None

    def to_dict(self) -> Dict[str, Optional[int]]:
        return {
            "entry": self.entry,
            "required_inputs": self.required_inputs,
            "net_effect": self.net_effect,
            "peak_height": self.peak_height,
        }


# =============================================================================
# CALL GRAPH
# =============================================================================

def strongly_connected(
    nodes: Iterable[int],
    edges: Dict[int, Sequence[int]],
) -> List[FrozenSet[int]]:
    """
    Tarjan's algorithm, iterative.

    Components are returned in reverse topological order: every component
    appears after all components it has edges into.
    """
    index: Dict[int, int] = {}
    low: Dict[int, int] = {}
    stack: List[int] = []
    on_stack = set()
    components: List[FrozenSet[int]] = []
    counter = 0

    for root in nodes:
        if root in index:
            continue
        index[root] = low[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work = [(root, iter(edges.get(root, ())))]

        while work:
            node, children = work[-1]
            descended = False
            for child in children:
                if child not in index:
                    index[child] = low[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(edges.get(child, ()))))
                    descended = True
                    break
                if child in on_stack:
                    low[node] = min(low[node], index[child])
            if descended:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index[node]:
                component = set()
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.add(member)
                    if member == node:
                        break
                components.append(frozenset(component))

    return components


# =============================================================================
# SYMBOLIC CONSTANTS
# =============================================================================

def _track_plain(
    descriptor: InstructionDescriptor,
    constants: List[Optional[int]],
    capacity: int,
) -> List[Optional[int]]:
    """Apply a plain instruction to the known-constant top of the stack."""
    op = descriptor.opcode
    if op == OpCode.JUMPDEST:
        return []
    if op.is_dup:
        n = op - OpCode.DUP1 + 1
        value = constants[-n] if len(constants) >= n else None
        result = constants + [value]
    elif op.is_swap:
        n = op - OpCode.SWAP1 + 1
        result = [None] * max(0, n + 1 - len(constants)) + constants
        result[-1], result[-n - 1] = result[-n - 1], result[-1]
    else:
        keep = max(0, len(constants) - descriptor.stack_inputs)
        result = constants[:keep] + [None] * descriptor.stack_outputs
    return result[-capacity:]


# =============================================================================
# VALIDATOR
# =============================================================================

class Validator:
    """
    Static validator for one (program, jump table) pair.

    Example:
        program = Program(code)
        verdict = Validator(program, JumpTable([(7, 12)])).validate()
        if not verdict:
            print(verdict.reason, verdict.pc)

    Validation is pure: every call to ``validate`` starts from fresh state
    and yields the same verdict for the same inputs.
    """

    def __init__(
        self,
        program: Program,
        jumptable: Optional[JumpTable] = None,
        *,
        stack_limit: Optional[int] = None,
        step_ceiling_factor: Optional[int] = None,
        logger: Optional[SafeflowLogger] = None,
    ):
        config = get_config().validator
        self.program = program
        self.jumptable = jumptable if jumptable is not None else EMPTY_JUMP_TABLE
        self.stack_limit = stack_limit if stack_limit is not None else config.stack_limit.get()
        if step_ceiling_factor is None:
            step_ceiling_factor = config.step_ceiling_factor.get()
        # Steps allowed per analysed frame; each frame walks the code at most once.
        self.step_budget = step_ceiling_factor * (program.length + len(self.jumptable) + 1)
        self.subroutines: Dict[int, SubroutineSummary] = {}
        self._logger = logger or get_logger("validator", Layer.VALIDATOR)

        self._frames: Dict[int, _Frame] = {}
        self._worklist: List[_Path] = []
        self._steps = 0
        self._ceiling = self.step_budget

    @property
    def step_ceiling(self) -> int:
        """Traversal steps allowed with the frames opened so far."""
        return self.step_budget * max(1, len(self._frames))

    def validate(self) -> Verdict:
        """Run the traversal and return Accept or Reject(reason, pc)."""
        start = time.monotonic()
        self.subroutines = {}
        try:
            self._traverse()
            self._check_call_sites()
        except ValidationFailure as failure:
            verdict = Verdict.reject(failure)
        else:
            verdict = Verdict.accept()

        duration_ms = (time.monotonic() - start) * 1000
        self._logger.operation(
            "validate",
            duration_ms,
            accepted=verdict.accepted,
            code_size=self.program.length,
            jumptable_size=len(self.jumptable),
            steps=self._steps,
            frames=len(self._frames),
            verdict=verdict.describe(),
        )
        return verdict

    # -------------------------------------------------------------------------
    # Traversal
    # -------------------------------------------------------------------------

    def _traverse(self) -> None:
        self._frames = {MAIN_FRAME: _Frame(MAIN_FRAME)}
        self._worklist = [_Path(MAIN_FRAME, 0, 0)]
        self._steps = 0
        self._ceiling = self.step_ceiling

        while self._worklist:
            self._follow(self._worklist.pop())

    def _follow(self, path: _Path) -> None:
        """Follow one path until it terminates, jumps, calls or rejoins."""
        frame = self._frames[path.frame]
        program = self.program
        limit = self.stack_limit
        pc = path.pc
        depth = path.depth
        constants = list(path.constants)

        while pc < program.length:
            self._steps += 1
            if self._steps > self._ceiling:
                raise ValidationFailure(
                    RejectReason.STEP_LIMIT_EXCEEDED, pc,
                    f"traversal exceeded {self._ceiling} steps",
                )

            insn = program.decode_at(pc)
            descriptor = insn.descriptor

            seen = frame.depths.get(pc)
            if seen is not None:
                if seen != depth:
                    raise ValidationFailure(
                        RejectReason.INCONSISTENT_STACK_DEPTH, pc,
                        f"reached with stack depth {depth}, previously {seen}",
                        opcode=insn.opcode,
                    )
                return
            frame.depths[pc] = depth

            low = depth - descriptor.stack_inputs
            if low < 0 and frame.is_main:
                raise ValidationFailure(
                    RejectReason.STACK_UNDERFLOW, pc,
                    f"{insn.mnemonic} needs {descriptor.stack_inputs} items, stack depth is {depth}",
                    opcode=insn.opcode,
                )
            if low < -limit:
                raise ValidationFailure(
                    RejectReason.STACK_UNDERFLOW, pc,
                    f"subroutine at {frame.entry} consumes more than {limit} caller items",
                    opcode=insn.opcode,
                )
            depth += descriptor.stack_delta
            if depth > limit:
                raise ValidationFailure(
                    RejectReason.STACK_OVERFLOW, pc,
                    f"stack depth {depth} exceeds {limit}",
                    opcode=insn.opcode,
                )
            frame.min_depth = min(frame.min_depth, low)
            frame.max_depth = max(frame.max_depth, depth)

            kind = descriptor.kind
            if kind is InstructionKind.PUSH:
                constants = (constants + [insn.immediate])[-limit:]
            elif kind is InstructionKind.PLAIN:
                constants = _track_plain(descriptor, constants, limit)
            elif kind is InstructionKind.BEGINSUB:
                constants = []
            elif kind is InstructionKind.TERMINAL:
                return
            elif kind is InstructionKind.RETURNSUB:
                self._return(frame, insn, depth)
                return
            elif kind is InstructionKind.JUMP:
                for target in self._jump_targets(insn, constants, program.is_jumpdest, "JUMPDEST"):
                    self._worklist.append(_Path(frame.entry, target, depth))
                return
            elif kind is InstructionKind.JUMPI:
                for target in self._jump_targets(insn, constants, program.is_jumpdest, "JUMPDEST"):
                    self._worklist.append(_Path(frame.entry, target, depth))
                constants = constants[:-2]
            elif kind is InstructionKind.JUMPSUB:
                for target in self._subroutine_targets(insn, constants):
                    self._call(frame, insn, depth, target)
                return

            pc = insn.next_pc

    def _jump_targets(
        self,
        insn: Instruction,
        constants: List[Optional[int]],
        is_marker: Callable[[int], bool],
        marker: str,
    ) -> Tuple[int, ...]:
        """Resolve the destination operand on top of the symbolic stack."""
        known = constants[-1] if constants else None
        if known is not None:
            if not is_marker(known):
                raise ValidationFailure(
                    RejectReason.INVALID_JUMP_DESTINATION, insn.pc,
                    f"static target {known} is not a {marker}",
                    opcode=insn.opcode,
                )
            table = self.jumptable
            if table.has_source(insn.pc) and not table.is_valid_dynamic_edge(insn.pc, known):
                raise ValidationFailure(
                    RejectReason.INVALID_JUMP_DESTINATION, insn.pc,
                    f"static target {known} is not among the declared edges of this site",
                    opcode=insn.opcode,
                )
            return (known,)

        targets = self.jumptable.targets(insn.pc)
        if not targets:
            raise ValidationFailure(
                RejectReason.INVALID_JUMP_DESTINATION, insn.pc,
                "dynamic jump has no jump table entries",
                opcode=insn.opcode,
            )
        for target in targets:
            if not is_marker(target):
                raise ValidationFailure(
                    RejectReason.INVALID_JUMP_DESTINATION, insn.pc,
                    f"jump table target {target} is not a {marker}",
                    opcode=insn.opcode,
                )
        return targets

    def _subroutine_targets(
        self,
        insn: Instruction,
        constants: List[Optional[int]],
    ) -> Tuple[int, ...]:
        is_entry = self.program.is_subroutine_entry
        if insn.immediate is not None:
            if not is_entry(insn.immediate):
                raise ValidationFailure(
                    RejectReason.INVALID_JUMP_DESTINATION, insn.pc,
                    f"subroutine target {insn.immediate} is not a BEGINSUB",
                    opcode=insn.opcode,
                )
            return (insn.immediate,)
        return self._jump_targets(insn, constants, is_entry, "BEGINSUB")

    # -------------------------------------------------------------------------
    # Subroutines
    # -------------------------------------------------------------------------

    def _call(self, frame: _Frame, insn: Instruction, depth: int, target: int) -> None:
        callee = self._frames.get(target)
        if callee is None:
            callee = self._frames[target] = _Frame(target)
            self._ceiling = self.step_ceiling
            self._worklist.append(_Path(target, target, 0))

        site = _CallSite(frame.entry, target, insn.pc, insn.next_pc, depth)
        callee.callers.append(site)
        frame.calls.append(site)
        if callee.net_effect is not None:
            self._resume(site, callee.net_effect)

    def _resume(self, site: _CallSite, net_effect: int) -> None:
        depth = site.depth + net_effect
        caller = self._frames[site.caller]
        if caller.is_main and depth < 0:
            raise ValidationFailure(
                RejectReason.STACK_UNDERFLOW, site.pc,
                f"subroutine at {site.callee} returns {-depth} items below the stack base",
                opcode=OpCode.JUMPSUB,
            )
        if depth > self.stack_limit:
            raise ValidationFailure(
                RejectReason.STACK_OVERFLOW, site.pc,
                f"stack depth {depth} after return exceeds {self.stack_limit}",
                opcode=OpCode.JUMPSUB,
            )
        self._worklist.append(_Path(site.caller, site.resume_pc, depth))

    def _return(self, frame: _Frame, insn: Instruction, depth: int) -> None:
        if frame.is_main:
            raise ValidationFailure(
                RejectReason.UNBALANCED_RETURN, insn.pc,
                "RETURNSUB reachable outside of any subroutine",
                opcode=insn.opcode,
            )
        if frame.net_effect is None:
            frame.net_effect = depth
            for site in list(frame.callers):
                self._resume(site, depth)
        elif frame.net_effect != depth:
            raise ValidationFailure(
                RejectReason.INCONSISTENT_STACK_DEPTH, insn.pc,
                f"subroutine at {frame.entry} returns with depth {depth}, "
                f"elsewhere {frame.net_effect}",
                opcode=insn.opcode,
            )

    def _check_call_sites(self) -> None:
        """Apply subroutine input requirements and peaks at every call site."""
        frames = self._frames
        limit = self.stack_limit

        need = {key: -frame.min_depth for key, frame in frames.items()}
        pending = list(frames)
        queued = set(pending)
        while pending:
            key = pending.pop()
            queued.discard(key)
            for site in frames[key].callers:
                required = need[key] - site.depth
                if required <= need[site.caller]:
                    continue
                if site.caller == MAIN_FRAME or required > limit:
                    raise ValidationFailure(
                        RejectReason.STACK_UNDERFLOW, site.pc,
                        f"subroutine at {key} needs {need[key]} items, "
                        f"{site.depth} available relative to the caller",
                        opcode=OpCode.JUMPSUB,
                    )
                need[site.caller] = required
                if site.caller not in queued:
                    pending.append(site.caller)
                    queued.add(site.caller)

        edges = {key: [site.callee for site in frame.calls] for key, frame in frames.items()}
        peak: Dict[int, int] = {}
        peak_site: Dict[int, Optional[int]] = {}
        for component in strongly_connected(list(frames), edges):
            for key in component:
                frame = frames[key]
                best, where = frame.max_depth, None
                for site in frame.calls:
                    if site.callee in component:
                        continue
                    reach = site.depth + peak[site.callee]
                    if reach > best:
                        best, where = reach, site.pc
                peak[key] = best
                peak_site[key] = where

        if peak[MAIN_FRAME] > limit:
            raise ValidationFailure(
                RejectReason.STACK_OVERFLOW, peak_site[MAIN_FRAME],
                f"call chain reaches stack depth {peak[MAIN_FRAME]}, limit {limit}",
                opcode=OpCode.JUMPSUB,
            )

        for key, frame in frames.items():
            if frame.is_main:
                continue
            self.subroutines[key] = SubroutineSummary(
                entry=key,
                required_inputs=need[key],
                net_effect=frame.net_effect,
                peak_height=peak[key],
            )
            if self._logger.is_enabled_for(LogLevel.DEBUG):
                self._logger.debug("subroutine summary", **self.subroutines[key].to_dict())


# =============================================================================
# CONVENIENCE
# =============================================================================

def load_program(
    code: Union[Program, bytes, bytearray, str],
    operand: Optional[Union[SubroutineOperand, str]] = None,
) -> Program:
    """Wrap raw code in a Program, honouring the configured JUMPSUB operand."""
    if isinstance(code, Program):
        return code
    if operand is None:
        operand = default_subroutine_operand()
    return Program(code, operand=SubroutineOperand(operand))


def validate(
    code: Union[Program, bytes, bytearray, str],
    jumptable: Optional[Union[JumpTable, Iterable[Tuple[int, int]]]] = None,
    *,
    operand: Optional[Union[SubroutineOperand, str]] = None,
) -> Verdict:
    """
    Validate code against a jump table.

    Raises:
        JumpTableError: the table is malformed (a load-time rejection, not a
            verdict).
    """
    program = load_program(code, operand)
    if jumptable is not None and not isinstance(jumptable, JumpTable):
        jumptable = JumpTable(jumptable)
    return Validator(program, jumptable).validate()
