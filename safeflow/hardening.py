"""
SAFEFLOW Error Taxonomy and Input Hardening

This module provides the error types, verdict objects and input guards shared
by every SAFEFLOW component. It addresses:

1. Validation-time rejections (creation time, the code is refused)
2. Execution-time faults (fatal to one run, the host continues)
3. Load-time rejections of malformed jump tables
4. Sanitisation of untrusted code and offset inputs

Security Model:
    - All inputs are untrusted until validated
    - A validation pass never replaces runtime bounds checks
    - Every error carries the program counter and opcode that caused it

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


# =============================================================================
# REASON CODES
# =============================================================================

class RejectReason(Enum):
    """Why the validator refused a program."""
    INVALID_INSTRUCTION = "InvalidInstruction"
    INVALID_JUMP_DESTINATION = "InvalidJumpDestination"
    STACK_UNDERFLOW = "StackUnderflow"
    STACK_OVERFLOW = "StackOverflow"
    INCONSISTENT_STACK_DEPTH = "InconsistentStackDepth"
    UNBALANCED_RETURN = "UnbalancedReturn"
    STEP_LIMIT_EXCEEDED = "StepLimitExceeded"


class FaultKind(Enum):
    """Why a single execution aborted."""
    INVALID_INSTRUCTION = "InvalidInstruction"
    INVALID_JUMP_DESTINATION = "InvalidJumpDestination"
    RETURN_STACK_OVERFLOW = "ReturnStackOverflow"
    RETURN_STACK_UNDERFLOW = "ReturnStackUnderflow"
    STACK_UNDERFLOW = "StackUnderflow"
    STACK_OVERFLOW = "StackOverflow"
    OUT_OF_STEPS = "OutOfSteps"
    MEMORY_LIMIT_EXCEEDED = "MemoryLimitExceeded"
    UNSUPPORTED_INSTRUCTION = "UnsupportedInstruction"


# =============================================================================
# ERROR TYPES
# =============================================================================

class SafeflowError(Exception):
    """Base exception for all SAFEFLOW failures."""
    pass


def _describe(code: str, message: str, pc: Optional[int], opcode: Optional[int]) -> str:
    parts = [code]
    if pc is not None:
        parts.append(f"at pc={pc}")
    if opcode is not None:
        parts.append(f"(opcode 0x{opcode:02x})")
    text = " ".join(parts)
    return f"{text}: {message}" if message else text


class ValidationFailure(SafeflowError):
    """A validation-time rejection. Terminal for the whole validation run."""

    def __init__(
        self,
        reason: RejectReason,
        pc: Optional[int],
        message: str = "",
        opcode: Optional[int] = None,
    ):
        self.reason = reason
        self.pc = pc
        self.message = message
        self.opcode = opcode
        super().__init__(_describe(reason.value, message, pc, opcode))


class ExecutionFault(SafeflowError):
    """An execution-time fault. Fatal to the current execution only."""

    def __init__(
        self,
        kind: FaultKind,
        pc: Optional[int],
        message: str = "",
        opcode: Optional[int] = None,
    ):
        self.kind = kind
        self.pc = pc
        self.message = message
        self.opcode = opcode
        super().__init__(_describe(kind.value, message, pc, opcode))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "pc": self.pc,
            "opcode": self.opcode,
            "message": self.message,
        }


class JumpTableError(SafeflowError):
    """Jump table rejected at load time (unsorted, duplicated, out of range)."""
    pass


class InputError(SafeflowError):
    """An untrusted input failed sanitisation."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class CodeRejected(SafeflowError):
    """Raised by hosts that refuse to deploy code the validator rejected."""

    def __init__(self, verdict: "Verdict"):
        self.verdict = verdict
        super().__init__(f"code rejected: {verdict.describe()}")


# =============================================================================
# VERDICT
# =============================================================================

@dataclass(frozen=True)
class Verdict:
    """Result of validating one program against one jump table."""
    accepted: bool
    reason: Optional[RejectReason] = None
    pc: Optional[int] = None
    opcode: Optional[int] = None
    message: str = ""

    def __bool__(self) -> bool:
        return self.accepted

    @classmethod
    def accept(cls) -> 'Verdict':
        return cls(accepted=True)

    @classmethod
    def reject(cls, failure: ValidationFailure) -> 'Verdict':
        return cls(
            accepted=False,
            reason=failure.reason,
            pc=failure.pc,
            opcode=failure.opcode,
            message=failure.message,
        )

    def raise_if_rejected(self) -> None:
        """Raise CodeRejected if validation failed."""
        if not self.accepted:
            raise CodeRejected(self)

    def describe(self) -> str:
        if self.accepted:
            return "accepted"
        return _describe(self.reason.value, self.message, self.pc, self.opcode)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "reason": self.reason.value if self.reason else None,
            "pc": self.pc,
            "opcode": self.opcode,
            "message": self.message,
        }


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Sanitisers for code and offset inputs arriving from hosts and the CLI."""

    HEX_PATTERN = re.compile(r'^(0x)?([0-9a-fA-F]{2})*$')

    MAX_OFFSET = (1 << 24) - 1
    MAX_CODE_SIZE = 1 << 24

    @classmethod
    def validate_code(cls, value: Any, field_name: str = "code") -> bytes:
        """Accept bytes-like values or a hex string and return immutable bytes."""
        if isinstance(value, (bytes, bytearray, memoryview)):
            data = bytes(value)
        elif isinstance(value, str):
            text = "".join(value.split())
            if not cls.HEX_PATTERN.match(text):
                raise InputError(field_name, "not an even-length hex string", value)
            data = bytes.fromhex(text[2:] if text.startswith("0x") else text)
        else:
            raise InputError(field_name, f"expected bytes or hex, got {type(value).__name__}", value)

        if len(data) > cls.MAX_CODE_SIZE:
            raise InputError(field_name, f"code exceeds {cls.MAX_CODE_SIZE} bytes", len(data))
        return data

    @classmethod
    def validate_offset(cls, value: Any, field_name: str = "offset") -> int:
        """Require an unsigned 24-bit code offset."""
        if isinstance(value, bool) or not isinstance(value, int):
            raise InputError(field_name, "must be an integer", value)
        if not 0 <= value <= cls.MAX_OFFSET:
            raise InputError(field_name, f"must be within [0, {cls.MAX_OFFSET}]", value)
        return value
