"""
SAFEFLOW: Static Control-Flow Validation for Stack-Machine Bytecode

A static validator and subroutine runtime for EVM-style bytecode. Code is
validated once, at creation time, in time linear in its size; validated code
cannot reach invalid-instruction, invalid-jump-destination or non-recursive
stack-depth faults at run time. Subroutines (BEGINSUB, JUMPSUB, RETURNSUB)
execute against a bounded return stack kept apart from the data stack.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                               SAFEFLOW                                   │
    │                                                                          │
    │  LAYER 3: HOSTS                                                         │
    │    vm.py          Reference stack machine and assembler                 │
    │    cli.py         validate / run / assemble / disassemble / config      │
    │                                                                          │
    │  LAYER 2: CONTROL FLOW                                                  │
    │    validator.py   Worklist traversal with per-subroutine summaries      │
    │    runtime.py     Return stack, JUMPSUB / RETURNSUB / JUMP / JUMPI      │
    │                                                                          │
    │  LAYER 1: CODE MODEL                                                    │
    │    opcodes.py     Instruction table (arity, immediates, kinds)          │
    │    program.py     Program image, boundary scan, decoder                 │
    │    jumptable.py   Sorted legal dynamic-jump edges                       │
    │                                                                          │
    │  AMBIENT                                                                │
    │    hardening.py   Reject reasons, fault kinds, verdicts, input guards   │
    │    config.py      YAML + environment configuration                      │
    │    observability.py  Structured logging                                 │
    └─────────────────────────────────────────────────────────────────────────┘

Two Error Domains
─────────────────

    Validation-time: the code is refused at creation, the system continues.
    Execution-time: one run aborts, the host continues. Validation never
    replaces the runtime bounds checks on the data and return stacks.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

__version__ = "0.3.1"


# Lazy imports to keep ``import safeflow`` free of configuration side effects
def __getattr__(name):
    """Lazy import SAFEFLOW modules on first access."""

    if name in ("OpCode", "InstructionKind", "InstructionDescriptor",
                "InstructionSet", "SubroutineOperand", "get_instruction_set"):
        from safeflow import opcodes
        return getattr(opcodes, name)

    if name in ("Program", "Instruction", "encode_offset", "decode_offset"):
        from safeflow import program
        return getattr(program, name)

    if name in ("JumpTable", "JumpTableEntry", "EMPTY_JUMP_TABLE"):
        from safeflow import jumptable
        return getattr(jumptable, name)

    if name in ("Validator", "SubroutineSummary", "validate", "load_program"):
        from safeflow import validator
        return getattr(validator, name)

    if name in ("ReturnStack", "SubroutineRuntime"):
        from safeflow import runtime
        return getattr(runtime, name)

    if name in ("StackMachine", "ExecutionContext", "ExecutionResult",
                "HaltReason", "Word", "Assembler", "AssemblyError"):
        from safeflow import vm
        return getattr(vm, name)

    if name in ("SafeflowError", "ValidationFailure", "ExecutionFault",
                "JumpTableError", "InputError", "CodeRejected", "Verdict",
                "RejectReason", "FaultKind"):
        from safeflow import hardening
        return getattr(hardening, name)

    raise AttributeError(f"module 'safeflow' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Code model
    "OpCode",
    "SubroutineOperand",
    "Program",
    "Instruction",
    "JumpTable",
    # Control flow
    "Validator",
    "SubroutineSummary",
    "validate",
    "ReturnStack",
    "SubroutineRuntime",
    # Hosts
    "StackMachine",
    "ExecutionContext",
    "ExecutionResult",
    "Assembler",
    # Errors
    "Verdict",
    "RejectReason",
    "FaultKind",
    "ValidationFailure",
    "ExecutionFault",
    "CodeRejected",
    "JumpTableError",
]
