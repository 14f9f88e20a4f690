"""Search a module for the member whose body matches an opcode signature."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .module import Candidate, MemberIdentity, ModuleIndex
from .opcodes import OpCode
from .reader import OpcodeReader
from .signature import MemberKind, contains_run

logger = logging.getLogger(__name__)


def find_by_signature(
    candidates: Iterable[Candidate], signature: Sequence[OpCode]
) -> Optional[MemberIdentity]:
    """Return the first candidate whose body contains ``signature``.

    Candidates are visited in the order supplied.  Members without a body are
    skipped and the scan stops on the first hit.  An empty signature never
    matches and does not trigger a scan.
    """

    if len(signature) == 0:
        return None

    for candidate in candidates:
        if candidate.body is None:
            continue
        if contains_run(OpcodeReader(candidate.body), signature):
            return candidate.identity
    return None


class SignatureMatcher:
    """Resolve signatures against one :class:`ModuleIndex`.

    With ``memoize`` enabled the decoded opcode sequence of every body is
    kept after its first decode so later resolutions against the same module
    skip the decoding step.  Entries are keyed on the body bytes; overloads
    share an identity.  Results are identical either way.
    """

    def __init__(self, module: ModuleIndex, *, memoize: bool = False) -> None:
        self.module = module
        self.memoize = memoize
        self._decoded: Dict[bytes, Tuple[OpCode, ...]] = {}

    def find_method(self, signature: Sequence[OpCode]) -> Optional[MemberIdentity]:
        return self.resolve(signature, MemberKind.METHOD)

    def find_constructor(self, signature: Sequence[OpCode]) -> Optional[MemberIdentity]:
        return self.resolve(signature, MemberKind.CONSTRUCTOR)

    def resolve(self, signature: Sequence[OpCode], kind: MemberKind) -> Optional[MemberIdentity]:
        if len(signature) == 0:
            logger.debug("empty %s signature, nothing to scan", kind.value)
            return None

        if not self.memoize:
            result = find_by_signature(self.module.candidates(kind), signature)
        else:
            result = next(self._iter_matches(signature, kind), None)

        if result is None:
            logger.debug(
                "no %s in %s matches %d-opcode signature",
                kind.value,
                self.module.name,
                len(signature),
            )
        else:
            logger.debug("signature matched %s", result)
        return result

    def find_all(self, signature: Sequence[OpCode], kind: MemberKind) -> List[MemberIdentity]:
        """Return every matching member in enumeration order."""

        if len(signature) == 0:
            return []
        return list(self._iter_matches(signature, kind))

    def _iter_matches(self, signature: Sequence[OpCode], kind: MemberKind) -> Iterator[MemberIdentity]:
        for candidate in self.module.candidates(kind):
            if candidate.body is None:
                continue
            if contains_run(self._opcodes(candidate), signature):
                yield candidate.identity

    def _opcodes(self, candidate: Candidate) -> Iterable[OpCode]:
        if not self.memoize:
            return OpcodeReader(candidate.body or b"")
        body = candidate.body or b""
        decoded = self._decoded.get(body)
        if decoded is None:
            decoded = OpcodeReader(body).opcodes()
            self._decoded[body] = decoded
        return decoded
