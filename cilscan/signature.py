"""Opcode signatures and the contiguous run search."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Sequence, Tuple, Union

from .opcodes import OpCode, by_name


class MemberKind(Enum):
    METHOD = "method"
    CONSTRUCTOR = "constructor"

    @classmethod
    def parse(cls, text: str) -> "MemberKind":
        token = text.strip().lower()
        if token in {"ctor", ".ctor", "cctor", ".cctor"}:
            return cls.CONSTRUCTOR
        try:
            return cls(token)
        except ValueError:
            raise ValueError(f"unknown member kind {text!r}") from None


@dataclass(frozen=True)
class Signature:
    """Ordered opcode sequence used as a structural fingerprint.

    Signatures are immutable.  An empty signature can be built, but it never
    matches anything; matchers return "not found" for it without scanning.
    """

    opcodes: Tuple[OpCode, ...]

    def __init__(self, opcodes: Iterable[OpCode]) -> None:
        object.__setattr__(self, "opcodes", tuple(opcodes))

    @classmethod
    def parse(cls, text: Union[str, Sequence[str]]) -> "Signature":
        """Build a signature from mnemonics.

        ``text`` is either a whitespace/comma separated string such as
        ``"neg stloc.0 ldarg.0"`` or a sequence of mnemonic strings.
        """

        if isinstance(text, str):
            names = text.replace(",", " ").split()
        else:
            names = list(text)
        return cls(by_name(name) for name in names)

    def __len__(self) -> int:
        return len(self.opcodes)

    def __iter__(self) -> Iterator[OpCode]:
        return iter(self.opcodes)

    def __getitem__(self, index: int) -> OpCode:
        return self.opcodes[index]

    def __bool__(self) -> bool:
        return bool(self.opcodes)

    def describe(self) -> str:
        return " ".join(opcode.name for opcode in self.opcodes)


def contains_run(opcodes: Iterable[OpCode], signature: Sequence[OpCode]) -> bool:
    """Return ``True`` when ``signature`` occurs as a contiguous run.

    The run counter drops back to zero on a mismatch; the mismatching opcode
    is then only re-tested as a possible first element.  Partial overlaps are
    never recovered, so a signature with a self-overlapping prefix can be
    missed: ``[A, A, B]`` is not found in ``[A, A, A, B]``.  Catalogued
    signatures are written to be non-repetitive.
    """

    length = len(signature)
    if length == 0:
        return False

    first = signature[0]
    matched = 0
    for opcode in opcodes:
        if opcode == signature[matched]:
            matched += 1
        elif opcode == first:
            matched = 1
        else:
            matched = 0

        if matched == length:
            return True
    return False
