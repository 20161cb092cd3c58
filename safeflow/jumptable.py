"""
SAFEFLOW Jump Table

An immutable, ascending-sorted sequence of (source, destination) pairs naming
the pre-declared legal edges of dynamic jumps. A source may list several
destinations; the runtime value picks one, the table only bounds the choice.

Wire format: 6-byte records, a 3-byte big-endian source followed by a 3-byte
big-endian destination.

Document format (JSON or YAML):

    [[12, 40], [12, 57], [90, 40]]
    [{"source": 12, "dest": 40}, ...]

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Sequence, Tuple, Union

from jsonschema import Draft202012Validator

from safeflow.hardening import InputError, JumpTableError, Validators
from safeflow.program import OFFSET_WIDTH, decode_offset, encode_offset


ENTRY_SIZE = 2 * OFFSET_WIDTH

JUMP_TABLE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "SAFEFLOW jump table",
    "type": "array",
    "items": {
        "oneOf": [
            {
                "type": "array",
                "prefixItems": [
                    {"type": "integer", "minimum": 0, "maximum": Validators.MAX_OFFSET},
                    {"type": "integer", "minimum": 0, "maximum": Validators.MAX_OFFSET},
                ],
                "minItems": 2,
                "maxItems": 2,
            },
            {
                "type": "object",
                "properties": {
                    "source": {"type": "integer", "minimum": 0, "maximum": Validators.MAX_OFFSET},
                    "dest": {"type": "integer", "minimum": 0, "maximum": Validators.MAX_OFFSET},
                },
                "required": ["source", "dest"],
                "additionalProperties": False,
            },
        ],
    },
}

_document_validator = Draft202012Validator(JUMP_TABLE_SCHEMA)


@dataclass(frozen=True, order=True)
class JumpTableEntry:
    """One legal dynamic-jump edge."""
    source: int
    dest: int

    def to_bytes(self) -> bytes:
        return encode_offset(self.source) + encode_offset(self.dest)


EntryLike = Union[JumpTableEntry, Tuple[int, int], Sequence[int]]


class JumpTable:
    """
    Sorted table of legal dynamic-jump edges.

    The loader must hand over entries already sorted by (source, dest) with
    no duplicate pairs; anything else is a load-time rejection, never
    silently corrected.
    """

    def __init__(self, entries: Iterable[EntryLike] = ()):
        loaded: List[JumpTableEntry] = []
        for index, item in enumerate(entries):
            entry = self._coerce(item, index)
            if loaded and entry <= loaded[-1]:
                kind = "duplicate" if entry == loaded[-1] else "unsorted"
                raise JumpTableError(
                    f"{kind} jump table entry {index}: "
                    f"({entry.source}, {entry.dest}) after "
                    f"({loaded[-1].source}, {loaded[-1].dest})"
                )
            loaded.append(entry)

        self._entries: Tuple[JumpTableEntry, ...] = tuple(loaded)
        self._sources: Tuple[int, ...] = tuple(e.source for e in loaded)

    @staticmethod
    def _coerce(item: EntryLike, index: int) -> JumpTableEntry:
        if isinstance(item, JumpTableEntry):
            source, dest = item.source, item.dest
        else:
            try:
                source, dest = item
            except (TypeError, ValueError):
                raise JumpTableError(f"jump table entry {index} is not a (source, dest) pair") from None
        try:
            Validators.validate_offset(source, "source")
            Validators.validate_offset(dest, "dest")
        except InputError as e:
            raise JumpTableError(f"jump table entry {index}: {e}") from e
        return JumpTableEntry(source, dest)

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[int, int]]) -> 'JumpTable':
        return cls(pairs)

    @classmethod
    def decode(cls, data: bytes) -> 'JumpTable':
        """Decode the 6-byte record wire format."""
        if len(data) % ENTRY_SIZE:
            raise JumpTableError(
                f"jump table length {len(data)} is not a multiple of {ENTRY_SIZE}"
            )
        pairs = (
            (
                decode_offset(data[i:i + OFFSET_WIDTH]),
                decode_offset(data[i + OFFSET_WIDTH:i + ENTRY_SIZE]),
            )
            for i in range(0, len(data), ENTRY_SIZE)
        )
        return cls(pairs)

    @classmethod
    def from_document(cls, document: Any) -> 'JumpTable':
        """Build a table from a parsed JSON/YAML document."""
        errors = list(_document_validator.iter_errors(document))
        if errors:
            messages = "; ".join(f"{e.json_path}: {e.message}" for e in errors[:5])
            raise JumpTableError(f"invalid jump table document: {messages}")

        pairs = []
        for item in document:
            if isinstance(item, dict):
                pairs.append((item["source"], item["dest"]))
            else:
                pairs.append((item[0], item[1]))
        return cls(pairs)

    def encode(self) -> bytes:
        return b"".join(entry.to_bytes() for entry in self._entries)

    def to_list(self) -> List[List[int]]:
        return [[e.source, e.dest] for e in self._entries]

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def is_valid_dynamic_edge(self, source: int, dest: int) -> bool:
        """True iff (source, dest) is a declared edge. O(log n)."""
        probe = JumpTableEntry(source, dest)
        i = bisect_left(self._entries, probe)
        return i < len(self._entries) and self._entries[i] == probe

    def targets(self, source: int) -> Tuple[int, ...]:
        """All declared destinations of the jump at ``source``, ascending."""
        lo = bisect_left(self._sources, source)
        hi = bisect_right(self._sources, source)
        return tuple(e.dest for e in self._entries[lo:hi])

    def has_source(self, source: int) -> bool:
        i = bisect_left(self._sources, source)
        return i < len(self._sources) and self._sources[i] == source

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[JumpTableEntry]:
        return iter(self._entries)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, JumpTable):
            return self._entries == other._entries
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._entries)

    def __repr__(self) -> str:
        return f"JumpTable({len(self._entries)} entries)"


EMPTY_JUMP_TABLE = JumpTable()
