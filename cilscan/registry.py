"""Named signatures with lazily cached resolution.

Callers refer to target members by a human label such as
``"Player#AllowDoubleSkip.get"``.  Each label owns a :class:`LazySignature`
cell which asks the matcher for its member the first time it is requested and
remembers the outcome, found or not, for the lifetime of the process.  Using
a handle that did not resolve raises :class:`UnresolvedSignatureError`; a
missing member nearly always means the target build changed shape and must
not be ignored.

The catalog of labels is usually loaded from JSON::

    {
        "Player#AllowDoubleSkip.get": {
            "kind": "method",
            "opcodes": ["neg", "stloc.0", "ldarg.0", "isinst"],
            "summary": "optional free text"
        }
    }
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from .loader import ModuleLocator
from .matcher import SignatureMatcher
from .module import MemberIdentity
from .signature import MemberKind, Signature

logger = logging.getLogger(__name__)

Resolver = Callable[[Signature, MemberKind], Optional[MemberIdentity]]
DEFAULT_CATALOG_NAME = "signatures.json"


class ResolutionState(Enum):
    UNRESOLVED = auto()
    RESOLVED = auto()
    ABSENT = auto()


class UnresolvedSignatureError(LookupError):
    """Raised when a handle without a resolved member is used."""


class LazySignature:
    """A labelled signature whose member is resolved at most once."""

    def __init__(
        self,
        label: str,
        signature: Signature,
        kind: MemberKind = MemberKind.METHOD,
        *,
        summary: Optional[str] = None,
    ) -> None:
        self.label = label
        self.signature = signature
        self.kind = kind
        self.summary = summary
        self._state = ResolutionState.UNRESOLVED
        self._member: Optional[MemberIdentity] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> ResolutionState:
        return self._state

    @property
    def found(self) -> bool:
        return self._state is ResolutionState.RESOLVED

    @property
    def member(self) -> MemberIdentity:
        """The resolved member; raises unless resolution succeeded."""

        if self._state is ResolutionState.RESOLVED and self._member is not None:
            return self._member
        if self._state is ResolutionState.ABSENT:
            raise UnresolvedSignatureError(f"no {self.kind.value} matches signature {self.label!r}")
        raise UnresolvedSignatureError(f"signature {self.label!r} has not been resolved")

    def resolve(self, resolver: Resolver) -> Optional[MemberIdentity]:
        """Resolve through ``resolver`` unless an outcome is already settled."""

        if self._state is not ResolutionState.UNRESOLVED:
            return self._member
        with self._lock:
            if self._state is ResolutionState.UNRESOLVED:
                member = resolver(self.signature, self.kind)
                self._member = member
                self._state = ResolutionState.RESOLVED if member is not None else ResolutionState.ABSENT
                if member is None:
                    logger.warning("signature %s did not match any %s", self.label, self.kind.value)
                else:
                    logger.info("signature %s resolved to %s", self.label, member)
        return self._member

    def __repr__(self) -> str:
        return f"LazySignature({self.label!r}, {self.kind.value}, {self._state.name.lower()})"


@dataclass(frozen=True)
class CatalogEntry:
    label: str
    signature: Signature
    kind: MemberKind = MemberKind.METHOD
    summary: Optional[str] = None


class SignatureRegistry:
    """Label catalog backed by a lazily created :class:`SignatureMatcher`.

    ``matcher_factory`` is only called on the first resolution, so building a
    registry never touches the module.
    """

    def __init__(
        self,
        matcher_factory: Callable[[], SignatureMatcher],
        entries: Optional[List[CatalogEntry]] = None,
    ) -> None:
        self._matcher_factory = matcher_factory
        self._matcher: Optional[SignatureMatcher] = None
        self._matcher_lock = threading.Lock()
        self._signatures: Dict[str, LazySignature] = {}
        for entry in entries or []:
            self.register(entry.label, entry.signature, entry.kind, summary=entry.summary)

    @classmethod
    def for_locator(cls, locator: ModuleLocator, *, memoize: bool = False) -> "SignatureRegistry":
        return cls(lambda: SignatureMatcher(locator.module(), memoize=memoize))

    @classmethod
    def load(
        cls, catalog_path: Path, matcher_factory: Callable[[], SignatureMatcher]
    ) -> "SignatureRegistry":
        """Create a registry from a JSON catalog file or directory."""

        return cls(matcher_factory, load_catalog(catalog_path))

    def register(
        self,
        label: str,
        signature: Signature,
        kind: MemberKind = MemberKind.METHOD,
        *,
        summary: Optional[str] = None,
    ) -> LazySignature:
        if label in self._signatures:
            raise ValueError(f"signature label {label!r} registered twice")
        handle = LazySignature(label, signature, kind, summary=summary)
        self._signatures[label] = handle
        return handle

    def handle(self, label: str) -> LazySignature:
        """Return the cell for ``label`` without resolving it."""

        try:
            return self._signatures[label]
        except KeyError:
            raise KeyError(f"unknown signature label {label!r}") from None

    def get(self, label: str) -> LazySignature:
        """Return the cell for ``label``, resolving it on first request."""

        handle = self.handle(label)
        handle.resolve(self.resolve)
        return handle

    __getitem__ = get

    def resolve(self, signature: Signature, kind: MemberKind) -> Optional[MemberIdentity]:
        return self.matcher.resolve(signature, kind)

    @property
    def matcher(self) -> SignatureMatcher:
        if self._matcher is None:
            with self._matcher_lock:
                if self._matcher is None:
                    self._matcher = self._matcher_factory()
        return self._matcher

    def labels(self) -> List[str]:
        return list(self._signatures)

    def __contains__(self, label: object) -> bool:
        return label in self._signatures

    def __iter__(self) -> Iterator[LazySignature]:
        return iter(self._signatures.values())

    def __len__(self) -> int:
        return len(self._signatures)


def load_catalog(catalog_path: Path) -> List[CatalogEntry]:
    """Read catalog entries from ``catalog_path``.

    A directory resolves to the ``signatures.json`` file inside it.
    """

    resolved = catalog_path
    if catalog_path.is_dir():
        resolved = catalog_path / DEFAULT_CATALOG_NAME

    data = json.loads(resolved.read_text("utf-8"))
    if not isinstance(data, Mapping):
        raise ValueError(f"{resolved}: catalog root must be an object")

    entries: List[CatalogEntry] = []
    for label, entry in data.items():
        if not isinstance(entry, Mapping):
            raise ValueError(f"{resolved}: entry {label!r} must be an object")
        entries.append(_entry_from_json(str(label), entry))
    return entries


def _entry_from_json(label: str, entry: Mapping[str, Any]) -> CatalogEntry:
    opcodes = entry.get("opcodes")
    if isinstance(opcodes, str):
        signature = Signature.parse(opcodes)
    elif isinstance(opcodes, list):
        signature = Signature.parse([str(name) for name in opcodes])
    else:
        raise ValueError(f"catalog entry {label!r} requires an 'opcodes' list")

    kind = MemberKind.parse(str(entry.get("kind", MemberKind.METHOD.value)))
    summary = entry.get("summary")
    return CatalogEntry(label, signature, kind, str(summary) if summary is not None else None)
