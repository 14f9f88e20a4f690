"""In-memory snapshot of one compiled module.

The matcher never talks to an assembly directly.  It is handed a
:class:`ModuleIndex`, an ordered collection of :class:`TypeDescriptor` objects
each holding its members in declaration order, and asks it for candidates of
one :class:`~cilscan.signature.MemberKind`.  How the index was built is not the
matcher's concern: :mod:`cilscan.metadata` reads it from a PE image while
:meth:`ModuleIndex.from_manifest` loads a JSON snapshot.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from .signature import MemberKind

CONSTRUCTOR_NAMES = frozenset({".ctor", ".cctor"})


@dataclass(frozen=True)
class MemberIdentity:
    """Owning type plus member reference of a method or constructor."""

    type_name: str
    member_name: str
    kind: MemberKind = MemberKind.METHOD
    token: Optional[int] = None

    def __str__(self) -> str:
        return f"{self.type_name}::{self.member_name}"

    def to_dict(self) -> dict:
        payload = {
            "type": self.type_name,
            "member": self.member_name,
            "kind": self.kind.value,
        }
        if self.token is not None:
            payload["token"] = f"0x{self.token:08X}"
        return payload


@dataclass(frozen=True)
class MemberDescriptor:
    identity: MemberIdentity
    body: Optional[bytes] = None
    is_static: bool = False
    is_public: bool = True
    is_abstract: bool = False

    @property
    def kind(self) -> MemberKind:
        return self.identity.kind

    @property
    def name(self) -> str:
        return self.identity.member_name


@dataclass(frozen=True)
class Candidate:
    """A member considered during a scan; ``body`` is ``None`` when absent."""

    identity: MemberIdentity
    body: Optional[bytes]


@dataclass
class TypeDescriptor:
    name: str
    members: List[MemberDescriptor] = field(default_factory=list)

    def iter_members(self, kind: MemberKind) -> Iterator[MemberDescriptor]:
        for member in self.members:
            if member.kind is kind:
                yield member


class ModuleIndex(Sequence[TypeDescriptor]):
    """Ordered, read-only collection of the types declared by a module."""

    def __init__(self, name: str, types: Iterable[TypeDescriptor], *, path: Optional[Path] = None) -> None:
        self.name = name
        self.path = path
        self._types: Tuple[TypeDescriptor, ...] = tuple(types)

    @classmethod
    def from_manifest(cls, manifest_path: Path) -> "ModuleIndex":
        """Load a module snapshot from a JSON manifest file."""

        data = json.loads(manifest_path.read_text("utf-8"))
        if not isinstance(data, Mapping):
            raise ValueError(f"{manifest_path}: manifest root must be an object")
        return cls.from_mapping(data, path=manifest_path)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, path: Optional[Path] = None) -> "ModuleIndex":
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError("module manifest requires a non-empty 'name'")

        raw_types = data.get("types", [])
        if not isinstance(raw_types, list):
            raise ValueError("module manifest 'types' must be a list")

        types = [_type_from_mapping(entry) for entry in raw_types]
        return cls(name, types, path=path)

    @classmethod
    def from_assembly(cls, assembly_path: Path) -> "ModuleIndex":
        from .metadata import read_assembly  # local import keeps module.py light

        return read_assembly(assembly_path)

    def __len__(self) -> int:
        return len(self._types)

    def __getitem__(self, index: int) -> TypeDescriptor:
        return self._types[index]

    def __iter__(self) -> Iterator[TypeDescriptor]:
        return iter(self._types)

    def iter_members(self, kind: Optional[MemberKind] = None) -> Iterator[MemberDescriptor]:
        for type_descriptor in self._types:
            for member in type_descriptor.members:
                if kind is None or member.kind is kind:
                    yield member

    def candidates(self, kind: MemberKind) -> Iterator[Candidate]:
        """Yield candidates of ``kind`` in declaration order."""

        for member in self.iter_members(kind):
            yield Candidate(member.identity, member.body)

    def find_member(self, reference: str) -> Optional[MemberDescriptor]:
        """Look up a member by its ``Type::member`` rendering."""

        for member in self.iter_members():
            if str(member.identity) == reference:
                return member
        return None

    def describe(self) -> dict:
        methods = sum(1 for _ in self.iter_members(MemberKind.METHOD))
        constructors = sum(1 for _ in self.iter_members(MemberKind.CONSTRUCTOR))
        return {
            "name": self.name,
            "types": len(self._types),
            "methods": methods,
            "constructors": constructors,
        }


def member_kind_for(name: str) -> MemberKind:
    return MemberKind.CONSTRUCTOR if name in CONSTRUCTOR_NAMES else MemberKind.METHOD


def _type_from_mapping(entry: Any) -> TypeDescriptor:
    if not isinstance(entry, Mapping):
        raise ValueError("module manifest type entries must be objects")

    type_name = entry.get("name")
    if not isinstance(type_name, str) or not type_name:
        raise ValueError("module manifest type entries require a 'name'")
    namespace = entry.get("namespace")
    if namespace:
        type_name = f"{namespace}.{type_name}"

    raw_members = entry.get("members", [])
    if not isinstance(raw_members, list):
        raise ValueError(f"{type_name}: 'members' must be a list")

    members: List[MemberDescriptor] = []
    for raw_member in raw_members:
        if not isinstance(raw_member, Mapping):
            raise ValueError(f"{type_name}: member entries must be objects")
        member_name = raw_member.get("name")
        if not isinstance(member_name, str) or not member_name:
            raise ValueError(f"{type_name}: member entries require a 'name'")

        raw_kind = raw_member.get("kind")
        if raw_kind is not None and not isinstance(raw_kind, str):
            raise ValueError(f"{type_name}::{member_name}: 'kind' must be a string")
        kind = MemberKind.parse(raw_kind) if raw_kind else member_kind_for(member_name)
        body = _parse_body(raw_member.get("body"), f"{type_name}::{member_name}")

        members.append(
            MemberDescriptor(
                identity=MemberIdentity(type_name, member_name, kind, _parse_token(raw_member.get("token"))),
                body=body,
                is_static=bool(raw_member.get("static", False)),
                is_public=bool(raw_member.get("public", True)),
                is_abstract=bool(raw_member.get("abstract", False)),
            )
        )
    return TypeDescriptor(type_name, members)


def _parse_body(raw: Any, where: str) -> Optional[bytes]:
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            return bytes.fromhex(raw)
        except ValueError:
            raise ValueError(f"{where}: body is not a valid hex string") from None
    if isinstance(raw, list) and all(isinstance(value, int) for value in raw):
        return bytes(raw)
    raise ValueError(f"{where}: body must be a hex string, a byte list or null")


def _parse_token(raw: Any) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, int):
        return raw
    return int(str(raw), 0)
