"""CIL opcode table.

Every instruction defined by ECMA-335 Partition III is listed together with
the size class of its inline operand.  The scanner never interprets operand
values; the size is all it needs to step from one instruction to the next.
Operand families that the standard distinguishes (metadata tokens, branch
targets, local indices, floats) therefore collapse onto a handful of
:class:`OperandKind` members.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple


PREFIX_BYTE = 0xFE
SWITCH_TARGET_SIZE = 4
SWITCH_COUNT_SIZE = 4


class OperandKind(Enum):
    """Size class of the operand that follows an opcode."""

    NONE = 0
    INT8 = 1
    INT16 = 2
    INT32 = 4
    INT64 = 8
    SWITCH = -1

    @property
    def size(self) -> Optional[int]:
        """Fixed operand size in bytes, ``None`` for the variable switch table."""

        if self is OperandKind.SWITCH:
            return None
        return self.value


class UnknownOpcodeError(ValueError):
    """Raised when a mnemonic does not name a known opcode."""


@dataclass(frozen=True)
class OpCode:
    name: str = field(compare=False)
    value: int
    operand: OperandKind = field(default=OperandKind.NONE, compare=False)

    @property
    def size(self) -> int:
        return 2 if self.value > 0xFF else 1

    @property
    def encoding(self) -> bytes:
        return self.value.to_bytes(self.size, "big")

    def label(self) -> str:
        return f"{self.value:04X}" if self.size == 2 else f"{self.value:02X}"

    def __str__(self) -> str:
        return self.name


_N = OperandKind.NONE
_I1 = OperandKind.INT8
_I2 = OperandKind.INT16
_I4 = OperandKind.INT32
_I8 = OperandKind.INT64
_SW = OperandKind.SWITCH

# Tokens, 32-bit branch targets and ``ldc.r4`` all take four bytes; ``ldc.r8``
# takes eight.  Short branches and short local/argument indices take one.
_TABLE: Tuple[Tuple[int, str, OperandKind], ...] = (
    (0x00, "nop", _N),
    (0x01, "break", _N),
    (0x02, "ldarg.0", _N),
    (0x03, "ldarg.1", _N),
    (0x04, "ldarg.2", _N),
    (0x05, "ldarg.3", _N),
    (0x06, "ldloc.0", _N),
    (0x07, "ldloc.1", _N),
    (0x08, "ldloc.2", _N),
    (0x09, "ldloc.3", _N),
    (0x0A, "stloc.0", _N),
    (0x0B, "stloc.1", _N),
    (0x0C, "stloc.2", _N),
    (0x0D, "stloc.3", _N),
    (0x0E, "ldarg.s", _I1),
    (0x0F, "ldarga.s", _I1),
    (0x10, "starg.s", _I1),
    (0x11, "ldloc.s", _I1),
    (0x12, "ldloca.s", _I1),
    (0x13, "stloc.s", _I1),
    (0x14, "ldnull", _N),
    (0x15, "ldc.i4.m1", _N),
    (0x16, "ldc.i4.0", _N),
    (0x17, "ldc.i4.1", _N),
    (0x18, "ldc.i4.2", _N),
    (0x19, "ldc.i4.3", _N),
    (0x1A, "ldc.i4.4", _N),
    (0x1B, "ldc.i4.5", _N),
    (0x1C, "ldc.i4.6", _N),
    (0x1D, "ldc.i4.7", _N),
    (0x1E, "ldc.i4.8", _N),
    (0x1F, "ldc.i4.s", _I1),
    (0x20, "ldc.i4", _I4),
    (0x21, "ldc.i8", _I8),
    (0x22, "ldc.r4", _I4),
    (0x23, "ldc.r8", _I8),
    (0x25, "dup", _N),
    (0x26, "pop", _N),
    (0x27, "jmp", _I4),
    (0x28, "call", _I4),
    (0x29, "calli", _I4),
    (0x2A, "ret", _N),
    (0x2B, "br.s", _I1),
    (0x2C, "brfalse.s", _I1),
    (0x2D, "brtrue.s", _I1),
    (0x2E, "beq.s", _I1),
    (0x2F, "bge.s", _I1),
    (0x30, "bgt.s", _I1),
    (0x31, "ble.s", _I1),
    (0x32, "blt.s", _I1),
    (0x33, "bne.un.s", _I1),
    (0x34, "bge.un.s", _I1),
    (0x35, "bgt.un.s", _I1),
    (0x36, "ble.un.s", _I1),
    (0x37, "blt.un.s", _I1),
    (0x38, "br", _I4),
    (0x39, "brfalse", _I4),
    (0x3A, "brtrue", _I4),
    (0x3B, "beq", _I4),
    (0x3C, "bge", _I4),
    (0x3D, "bgt", _I4),
    (0x3E, "ble", _I4),
    (0x3F, "blt", _I4),
    (0x40, "bne.un", _I4),
    (0x41, "bge.un", _I4),
    (0x42, "bgt.un", _I4),
    (0x43, "ble.un", _I4),
    (0x44, "blt.un", _I4),
    (0x45, "switch", _SW),
    (0x46, "ldind.i1", _N),
    (0x47, "ldind.u1", _N),
    (0x48, "ldind.i2", _N),
    (0x49, "ldind.u2", _N),
    (0x4A, "ldind.i4", _N),
    (0x4B, "ldind.u4", _N),
    (0x4C, "ldind.i8", _N),
    (0x4D, "ldind.i", _N),
    (0x4E, "ldind.r4", _N),
    (0x4F, "ldind.r8", _N),
    (0x50, "ldind.ref", _N),
    (0x51, "stind.ref", _N),
    (0x52, "stind.i1", _N),
    (0x53, "stind.i2", _N),
    (0x54, "stind.i4", _N),
    (0x55, "stind.i8", _N),
    (0x56, "stind.r4", _N),
    (0x57, "stind.r8", _N),
    (0x58, "add", _N),
    (0x59, "sub", _N),
    (0x5A, "mul", _N),
    (0x5B, "div", _N),
    (0x5C, "div.un", _N),
    (0x5D, "rem", _N),
    (0x5E, "rem.un", _N),
    (0x5F, "and", _N),
    (0x60, "or", _N),
    (0x61, "xor", _N),
    (0x62, "shl", _N),
    (0x63, "shr", _N),
    (0x64, "shr.un", _N),
    (0x65, "neg", _N),
    (0x66, "not", _N),
    (0x67, "conv.i1", _N),
    (0x68, "conv.i2", _N),
    (0x69, "conv.i4", _N),
    (0x6A, "conv.i8", _N),
    (0x6B, "conv.r4", _N),
    (0x6C, "conv.r8", _N),
    (0x6D, "conv.u4", _N),
    (0x6E, "conv.u8", _N),
    (0x6F, "callvirt", _I4),
    (0x70, "cpobj", _I4),
    (0x71, "ldobj", _I4),
    (0x72, "ldstr", _I4),
    (0x73, "newobj", _I4),
    (0x74, "castclass", _I4),
    (0x75, "isinst", _I4),
    (0x76, "conv.r.un", _N),
    (0x79, "unbox", _I4),
    (0x7A, "throw", _N),
    (0x7B, "ldfld", _I4),
    (0x7C, "ldflda", _I4),
    (0x7D, "stfld", _I4),
    (0x7E, "ldsfld", _I4),
    (0x7F, "ldsflda", _I4),
    (0x80, "stsfld", _I4),
    (0x81, "stobj", _I4),
    (0x82, "conv.ovf.i1.un", _N),
    (0x83, "conv.ovf.i2.un", _N),
    (0x84, "conv.ovf.i4.un", _N),
    (0x85, "conv.ovf.i8.un", _N),
    (0x86, "conv.ovf.u1.un", _N),
    (0x87, "conv.ovf.u2.un", _N),
    (0x88, "conv.ovf.u4.un", _N),
    (0x89, "conv.ovf.u8.un", _N),
    (0x8A, "conv.ovf.i.un", _N),
    (0x8B, "conv.ovf.u.un", _N),
    (0x8C, "box", _I4),
    (0x8D, "newarr", _I4),
    (0x8E, "ldlen", _N),
    (0x8F, "ldelema", _I4),
    (0x90, "ldelem.i1", _N),
    (0x91, "ldelem.u1", _N),
    (0x92, "ldelem.i2", _N),
    (0x93, "ldelem.u2", _N),
    (0x94, "ldelem.i4", _N),
    (0x95, "ldelem.u4", _N),
    (0x96, "ldelem.i8", _N),
    (0x97, "ldelem.i", _N),
    (0x98, "ldelem.r4", _N),
    (0x99, "ldelem.r8", _N),
    (0x9A, "ldelem.ref", _N),
    (0x9B, "stelem.i", _N),
    (0x9C, "stelem.i1", _N),
    (0x9D, "stelem.i2", _N),
    (0x9E, "stelem.i4", _N),
    (0x9F, "stelem.i8", _N),
    (0xA0, "stelem.r4", _N),
    (0xA1, "stelem.r8", _N),
    (0xA2, "stelem.ref", _N),
    (0xA3, "ldelem", _I4),
    (0xA4, "stelem", _I4),
    (0xA5, "unbox.any", _I4),
    (0xB3, "conv.ovf.i1", _N),
    (0xB4, "conv.ovf.u1", _N),
    (0xB5, "conv.ovf.i2", _N),
    (0xB6, "conv.ovf.u2", _N),
    (0xB7, "conv.ovf.i4", _N),
    (0xB8, "conv.ovf.u4", _N),
    (0xB9, "conv.ovf.i8", _N),
    (0xBA, "conv.ovf.u8", _N),
    (0xC2, "refanyval", _I4),
    (0xC3, "ckfinite", _N),
    (0xC6, "mkrefany", _I4),
    (0xD0, "ldtoken", _I4),
    (0xD1, "conv.u2", _N),
    (0xD2, "conv.u1", _N),
    (0xD3, "conv.i", _N),
    (0xD4, "conv.ovf.i", _N),
    (0xD5, "conv.ovf.u", _N),
    (0xD6, "add.ovf", _N),
    (0xD7, "add.ovf.un", _N),
    (0xD8, "mul.ovf", _N),
    (0xD9, "mul.ovf.un", _N),
    (0xDA, "sub.ovf", _N),
    (0xDB, "sub.ovf.un", _N),
    (0xDC, "endfinally", _N),
    (0xDD, "leave", _I4),
    (0xDE, "leave.s", _I1),
    (0xDF, "stind.i", _N),
    (0xE0, "conv.u", _N),
    # Two-byte forms, 0xFE prefix.
    (0xFE00, "arglist", _N),
    (0xFE01, "ceq", _N),
    (0xFE02, "cgt", _N),
    (0xFE03, "cgt.un", _N),
    (0xFE04, "clt", _N),
    (0xFE05, "clt.un", _N),
    (0xFE06, "ldftn", _I4),
    (0xFE07, "ldvirtftn", _I4),
    (0xFE09, "ldarg", _I2),
    (0xFE0A, "ldarga", _I2),
    (0xFE0B, "starg", _I2),
    (0xFE0C, "ldloc", _I2),
    (0xFE0D, "ldloca", _I2),
    (0xFE0E, "stloc", _I2),
    (0xFE0F, "localloc", _N),
    (0xFE11, "endfilter", _N),
    (0xFE12, "unaligned.", _I1),
    (0xFE13, "volatile.", _N),
    (0xFE14, "tail.", _N),
    (0xFE15, "initobj", _I4),
    (0xFE16, "constrained.", _I4),
    (0xFE17, "cpblk", _N),
    (0xFE18, "initblk", _N),
    (0xFE19, "no.", _I1),
    (0xFE1A, "rethrow", _N),
    (0xFE1C, "sizeof", _I4),
    (0xFE1D, "refanytype", _N),
    (0xFE1E, "readonly.", _N),
)

# ``System.Reflection.Emit.OpCodes`` field names that do not follow the
# ``Ldarg_0`` -> ``ldarg.0`` convention.
_IDENTIFIER_ALIASES = {
    "tailcall": "tail.",
}


OPCODES: Tuple[OpCode, ...] = tuple(OpCode(name, value, operand) for value, name, operand in _TABLE)
_BY_VALUE: Dict[int, OpCode] = {opcode.value: opcode for opcode in OPCODES}
_BY_NAME: Dict[str, OpCode] = {opcode.name: opcode for opcode in OPCODES}


def lookup(value: int) -> Optional[OpCode]:
    """Return the opcode for an encoded value (``0x2A`` or ``0xFE01``)."""

    return _BY_VALUE.get(value)


def by_name(name: str) -> OpCode:
    """Resolve a mnemonic to its :class:`OpCode`.

    Both the ECMA spelling (``brtrue.s``) and the reflection field spelling
    (``Brtrue_S``) are accepted.  Prefix instructions may omit their trailing
    dot.
    """

    token = name.strip().lower()
    token = _IDENTIFIER_ALIASES.get(token, token)
    for candidate in (token, token.replace("_", "."), token.replace("_", ".") + "."):
        opcode = _BY_NAME.get(candidate)
        if opcode is not None:
            return opcode
    raise UnknownOpcodeError(f"unknown CIL opcode {name!r}")
