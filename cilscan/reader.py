"""Decode raw CIL method bodies into opcode streams.

Only the opcode identifiers are of interest.  Operands are skipped by size so
the cursor stays aligned with instruction boundaries; their values are never
read, with the single exception of the ``switch`` target count which decides
how long the operand is.

A body that ends in the middle of an instruction, or that contains a byte
sequence outside of the opcode table, is not treated as an error.  Decoding
stops at that point and callers still see every opcode that preceded it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from .opcodes import (
    PREFIX_BYTE,
    SWITCH_COUNT_SIZE,
    SWITCH_TARGET_SIZE,
    OpCode,
    OperandKind,
    lookup,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Instruction:
    """Position and length of one decoded instruction."""

    offset: int
    opcode: OpCode
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length

    def format(self) -> str:
        return f"IL_{self.offset:04X}: {self.opcode.label():>4}  {self.opcode.name}"


class OpcodeReader:
    """Re-iterable view over the opcodes of a single method body.

    Each call to :meth:`__iter__` or :meth:`instructions` starts from offset
    zero with its own cursor, so the same reader can be consumed any number of
    times and always produces the same sequence.  ``truncated`` reflects the
    most recently completed pass.
    """

    def __init__(self, body: bytes) -> None:
        self.body = bytes(body)
        self.truncated = False

    def __iter__(self) -> Iterator[OpCode]:
        for instruction in self.instructions():
            yield instruction.opcode

    def instructions(self) -> Iterator[Instruction]:
        body = self.body
        total = len(body)
        cursor = 0
        self.truncated = False

        while cursor < total:
            start = cursor
            opcode, cursor = _read_opcode(body, cursor)
            if opcode is None:
                self._stop(start, "unknown or incomplete opcode")
                return

            operand_size = _operand_size(body, cursor, opcode)
            if operand_size is None or cursor + operand_size > total:
                self._stop(start, f"operand of {opcode.name} runs past end of body")
                return

            cursor += operand_size
            yield Instruction(start, opcode, cursor - start)

    def opcodes(self) -> Tuple[OpCode, ...]:
        return tuple(self)

    def _stop(self, offset: int, reason: str) -> None:
        self.truncated = True
        logger.debug(
            "decoding stopped at offset 0x%04X of %d byte body: %s",
            offset,
            len(self.body),
            reason,
        )


def read_opcodes(body: bytes) -> Iterator[OpCode]:
    """Lazily yield the opcodes encoded in ``body``."""

    return iter(OpcodeReader(body))


def read_instructions(body: bytes) -> Tuple[List[Instruction], bool]:
    """Decode ``body`` eagerly.

    Returns the decoded instructions together with a flag telling whether the
    tail of the body could not be decoded.
    """

    reader = OpcodeReader(body)
    instructions = list(reader.instructions())
    return instructions, reader.truncated


def _read_opcode(body: bytes, cursor: int) -> Tuple[Optional[OpCode], int]:
    first = body[cursor]
    if first != PREFIX_BYTE:
        return lookup(first), cursor + 1
    if cursor + 1 >= len(body):
        return None, cursor
    value = (first << 8) | body[cursor + 1]
    return lookup(value), cursor + 2


def _operand_size(body: bytes, cursor: int, opcode: OpCode) -> Optional[int]:
    if opcode.operand is not OperandKind.SWITCH:
        return opcode.operand.size

    if cursor + SWITCH_COUNT_SIZE > len(body):
        return None
    count = int.from_bytes(body[cursor : cursor + SWITCH_COUNT_SIZE], "little")
    return SWITCH_COUNT_SIZE + count * SWITCH_TARGET_SIZE
