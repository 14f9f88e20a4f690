"""Build a :class:`~cilscan.module.ModuleIndex` from a .NET PE image.

Only the pieces of ECMA-335 Partition II needed to enumerate method bodies are
parsed: the PE section table, the CLI header, the metadata root, the ``#~``
table stream with the ``#Strings`` heap, the ``Module``, ``TypeDef`` and
``MethodDef`` tables and finally the tiny or fat header in front of each
method body.  Metadata tokens inside the bodies are left alone.

Types are reported in ``TypeDef`` order and each type's methods in the order
of its ``MethodList`` range, which is the declaration order the compiler
emitted.  Nested types keep their simple name; the enclosing type is not
resolved.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .module import MemberDescriptor, MemberIdentity, ModuleIndex, TypeDescriptor, member_kind_for

logger = logging.getLogger(__name__)

METADATA_SIGNATURE = 0x424A5342  # "BSJB"
CLI_HEADER_DIRECTORY = 14

TABLE_MODULE = 0x00
TABLE_TYPEREF = 0x01
TABLE_TYPEDEF = 0x02
TABLE_FIELDPTR = 0x03
TABLE_FIELD = 0x04
TABLE_METHODPTR = 0x05
TABLE_METHODDEF = 0x06
TABLE_PARAM = 0x08
TABLE_MODULEREF = 0x1A
TABLE_TYPESPEC = 0x1B
TABLE_ASSEMBLYREF = 0x23

HEAP_STRINGS_WIDE = 0x01
HEAP_GUID_WIDE = 0x02
HEAP_BLOB_WIDE = 0x04
HEAP_EXTRA_DATA = 0x40

METHOD_ACCESS_MASK = 0x0007
METHOD_PUBLIC = 0x0006
METHOD_STATIC = 0x0010
METHOD_ABSTRACT = 0x0400
METHOD_IMPL_CODE_TYPE_MASK = 0x0003

TINY_HEADER = 0x2
FAT_HEADER = 0x3

METHODDEF_TOKEN = 0x06000000


class MetadataError(ValueError):
    """Raised when a file is not a well formed .NET PE image."""


@dataclass(frozen=True)
class _Section:
    virtual_address: int
    virtual_size: int
    raw_size: int
    raw_pointer: int

    def contains(self, rva: int) -> bool:
        return self.virtual_address <= rva < self.virtual_address + max(self.virtual_size, self.raw_size)


@dataclass(frozen=True)
class _MethodRow:
    rva: int
    impl_flags: int
    flags: int
    name: str


def read_assembly(path: Path) -> ModuleIndex:
    """Parse ``path`` and return the module index of its manifest module."""

    data = path.read_bytes()
    reader = AssemblyReader(data, source=str(path))
    return reader.read(path=path)


class AssemblyReader:
    """Parser for the metadata of a single PE image held in memory."""

    def __init__(self, data: bytes, *, source: str = "<memory>") -> None:
        self.data = data
        self.source = source
        self._sections: List[_Section] = []
        self._strings_offset = 0
        self._strings_size = 0
        self._string_index = 2

    def read(self, *, path: Optional[Path] = None) -> ModuleIndex:
        self._sections, cli_rva = self._parse_pe_headers()
        metadata_offset = self._parse_cli_header(cli_rva)
        streams = self._parse_metadata_root(metadata_offset)

        if "#~" in streams:
            tables_offset, _ = streams["#~"]
        elif "#-" in streams:
            tables_offset, _ = streams["#-"]
        else:
            raise self._error("metadata has no table stream")
        if "#Strings" not in streams:
            raise self._error("metadata has no #Strings heap")
        self._strings_offset, self._strings_size = streams["#Strings"]

        module_name, types = self._parse_tables(tables_offset)
        logger.debug(
            "read %d types from %s (module %s)", len(types), self.source, module_name
        )
        return ModuleIndex(Path(module_name).stem or module_name, types, path=path)

    # ------------------------------------------------------------------
    # PE container
    # ------------------------------------------------------------------
    def _parse_pe_headers(self) -> Tuple[List[_Section], int]:
        if self.data[:2] != b"MZ":
            raise self._error("missing MZ signature")
        pe_offset = self._u32(0x3C)
        if self.data[pe_offset : pe_offset + 4] != b"PE\0\0":
            raise self._error("missing PE signature")

        coff = pe_offset + 4
        section_count = self._u16(coff + 2)
        optional_size = self._u16(coff + 16)
        optional = coff + 20

        magic = self._u16(optional)
        if magic == 0x10B:
            rva_count_offset, directories = optional + 92, optional + 96
        elif magic == 0x20B:
            rva_count_offset, directories = optional + 108, optional + 112
        else:
            raise self._error(f"unknown optional header magic 0x{magic:04X}")

        if self._u32(rva_count_offset) <= CLI_HEADER_DIRECTORY:
            raise self._error("image has no CLI header directory")
        cli_rva = self._u32(directories + CLI_HEADER_DIRECTORY * 8)
        if cli_rva == 0:
            raise self._error("image is not a .NET assembly")

        sections: List[_Section] = []
        table = optional + optional_size
        for index in range(section_count):
            entry = table + index * 40
            virtual_size, virtual_address, raw_size, raw_pointer = self._unpack("<IIII", entry + 8)
            sections.append(_Section(virtual_address, virtual_size, raw_size, raw_pointer))
        return sections, cli_rva

    def _rva_to_offset(self, rva: int) -> int:
        for section in self._sections:
            if section.contains(rva):
                return rva - section.virtual_address + section.raw_pointer
        raise self._error(f"RVA 0x{rva:08X} is not mapped by any section")

    def _parse_cli_header(self, cli_rva: int) -> int:
        offset = self._rva_to_offset(cli_rva)
        metadata_rva = self._u32(offset + 8)
        return self._rva_to_offset(metadata_rva)

    def _parse_metadata_root(self, offset: int) -> Dict[str, Tuple[int, int]]:
        if self._u32(offset) != METADATA_SIGNATURE:
            raise self._error("bad metadata root signature")
        version_length = self._u32(offset + 12)
        cursor = offset + 16 + version_length
        stream_count = self._u16(cursor + 2)
        cursor += 4

        streams: Dict[str, Tuple[int, int]] = {}
        for _ in range(stream_count):
            stream_offset, stream_size = self._unpack("<II", cursor)
            cursor += 8
            end = self.data.find(b"\0", cursor)
            if end < 0:
                raise self._error("unterminated stream name")
            name = self.data[cursor:end].decode("ascii", "replace")
            cursor += (end - cursor + 4) & ~3
            streams[name] = (offset + stream_offset, stream_size)
        return streams

    # ------------------------------------------------------------------
    # Metadata tables
    # ------------------------------------------------------------------
    def _parse_tables(self, offset: int) -> Tuple[str, List[TypeDescriptor]]:
        if offset + 24 > len(self.data):
            raise self._error("table stream header is truncated")
        heap_sizes = self.data[offset + 6]
        valid = self._unpack("<Q", offset + 8)[0]

        rows = [0] * 64
        cursor = offset + 24
        for table in range(64):
            if (valid >> table) & 1:
                rows[table] = self._u32(cursor)
                cursor += 4
        if heap_sizes & HEAP_EXTRA_DATA:
            cursor += 4

        self._string_index = 4 if heap_sizes & HEAP_STRINGS_WIDE else 2
        guid = 4 if heap_sizes & HEAP_GUID_WIDE else 2
        blob = 4 if heap_sizes & HEAP_BLOB_WIDE else 2
        string = self._string_index

        def index(table: int) -> int:
            return 2 if rows[table] < 0x10000 else 4

        def coded(tag_bits: int, tables: Sequence[int]) -> int:
            limit = 1 << (16 - tag_bits)
            return 2 if max(rows[table] for table in tables) < limit else 4

        resolution_scope = coded(2, (TABLE_MODULE, TABLE_MODULEREF, TABLE_ASSEMBLYREF, TABLE_TYPEREF))
        type_def_or_ref = coded(2, (TABLE_TYPEDEF, TABLE_TYPEREF, TABLE_TYPESPEC))

        row_sizes = {
            TABLE_MODULE: 2 + string + 3 * guid,
            TABLE_TYPEREF: resolution_scope + 2 * string,
            TABLE_TYPEDEF: 4 + 2 * string + type_def_or_ref + index(TABLE_FIELD) + index(TABLE_METHODDEF),
            TABLE_FIELDPTR: index(TABLE_FIELD),
            TABLE_FIELD: 2 + string + blob,
            TABLE_METHODPTR: index(TABLE_METHODDEF),
            TABLE_METHODDEF: 4 + 2 + 2 + string + blob + index(TABLE_PARAM),
        }
        starts: Dict[int, int] = {}
        for table in range(TABLE_METHODDEF + 1):
            starts[table] = cursor
            cursor += rows[table] * row_sizes[table]

        module_name = ""
        if rows[TABLE_MODULE]:
            module_name = self._string(self._read_index(starts[TABLE_MODULE] + 2, string))

        methods = self._read_methods(starts[TABLE_METHODDEF], rows[TABLE_METHODDEF], row_sizes[TABLE_METHODDEF])
        method_order = self._read_method_pointers(
            starts[TABLE_METHODPTR], rows[TABLE_METHODPTR], row_sizes[TABLE_METHODPTR]
        )

        type_rows: List[Tuple[str, int]] = []
        typedef_size = row_sizes[TABLE_TYPEDEF]
        method_list_offset = 4 + 2 * string + type_def_or_ref + index(TABLE_FIELD)
        for row in range(rows[TABLE_TYPEDEF]):
            base = starts[TABLE_TYPEDEF] + row * typedef_size
            name = self._string(self._read_index(base + 4, string))
            namespace = self._string(self._read_index(base + 4 + string, string))
            method_list = self._read_index(base + method_list_offset, index(TABLE_METHODDEF))
            full_name = f"{namespace}.{name}" if namespace else name
            type_rows.append((full_name, method_list))

        list_length = len(method_order) if method_order else len(methods)
        types: List[TypeDescriptor] = []
        for position, (type_name, first) in enumerate(type_rows):
            last = type_rows[position + 1][1] if position + 1 < len(type_rows) else list_length + 1
            members: List[MemberDescriptor] = []
            for list_index in range(first, min(last, list_length + 1)):
                row_number = method_order[list_index - 1] if method_order else list_index
                if not 1 <= row_number <= len(methods):
                    raise self._error(f"{type_name}: method row {row_number} out of range")
                members.append(self._describe_method(type_name, row_number, methods[row_number - 1]))
            types.append(TypeDescriptor(type_name, members))
        return module_name, types

    def _read_methods(self, start: int, count: int, size: int) -> List[_MethodRow]:
        string = self._string_index
        methods: List[_MethodRow] = []
        for row in range(count):
            base = start + row * size
            rva, impl_flags, flags = self._unpack("<IHH", base)
            name = self._string(self._read_index(base + 8, string))
            methods.append(_MethodRow(rva, impl_flags, flags, name))
        return methods

    def _read_method_pointers(self, start: int, count: int, size: int) -> List[int]:
        return [self._read_index(start + row * size, size) for row in range(count)]

    def _describe_method(self, type_name: str, row_number: int, row: _MethodRow) -> MemberDescriptor:
        identity = MemberIdentity(
            type_name,
            row.name,
            member_kind_for(row.name),
            METHODDEF_TOKEN | row_number,
        )
        body: Optional[bytes] = None
        if row.rva and (row.impl_flags & METHOD_IMPL_CODE_TYPE_MASK) == 0:
            body = self._read_body(identity, row.rva)
        return MemberDescriptor(
            identity=identity,
            body=body,
            is_static=bool(row.flags & METHOD_STATIC),
            is_public=(row.flags & METHOD_ACCESS_MASK) == METHOD_PUBLIC,
            is_abstract=bool(row.flags & METHOD_ABSTRACT),
        )

    def _read_body(self, identity: MemberIdentity, rva: int) -> Optional[bytes]:
        try:
            offset = self._rva_to_offset(rva)
        except MetadataError:
            logger.warning("%s: body RVA 0x%08X is unmapped", identity, rva)
            return None
        if offset >= len(self.data):
            logger.warning("%s: body offset 0x%X lies outside of the image", identity, offset)
            return None

        header = self.data[offset]
        if header & 0x3 == TINY_HEADER:
            start, size = offset + 1, header >> 2
        elif header & 0x3 == FAT_HEADER:
            if offset + 12 > len(self.data):
                logger.warning("%s: fat method header is truncated", identity)
                return None
            header_dwords = self._u16(offset) >> 12
            start, size = offset + header_dwords * 4, self._u32(offset + 4)
        else:
            logger.warning("%s: unknown method header format 0x%02X", identity, header)
            return None

        if start + size > len(self.data):
            logger.warning("%s: body of %d bytes extends past end of image", identity, size)
        return self.data[start : start + size]

    # ------------------------------------------------------------------
    # Primitive readers
    # ------------------------------------------------------------------
    def _string(self, index: int) -> str:
        if index >= self._strings_size:
            raise self._error(f"#Strings index 0x{index:X} out of range")
        start = self._strings_offset + index
        end = self.data.find(b"\0", start)
        if end < 0:
            end = self._strings_offset + self._strings_size
        return self.data[start:end].decode("utf-8", "replace")

    def _read_index(self, offset: int, width: int) -> int:
        return self._u16(offset) if width == 2 else self._u32(offset)

    def _unpack(self, fmt: str, offset: int) -> Tuple[int, ...]:
        try:
            return struct.unpack_from(fmt, self.data, offset)
        except struct.error:
            raise self._error(f"read past end of image at 0x{offset:X}") from None

    def _u16(self, offset: int) -> int:
        return self._unpack("<H", offset)[0]

    def _u32(self, offset: int) -> int:
        return self._unpack("<I", offset)[0]

    def _error(self, message: str) -> MetadataError:
        return MetadataError(f"{self.source}: {message}")
