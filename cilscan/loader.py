"""Locate the module to scan.

The scanner works against exactly one module, identified by its name.  A
:class:`ModuleLocator` looks for it among the assemblies (``*.dll``,
``*.exe``) and JSON manifests found under a set of search paths, the first
time :meth:`ModuleLocator.module` is called, and keeps the resulting
:class:`~cilscan.module.ModuleIndex` for as long as the locator lives.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence

from .metadata import read_assembly
from .module import ModuleIndex

logger = logging.getLogger(__name__)

ASSEMBLY_SUFFIXES = (".dll", ".exe")
MANIFEST_SUFFIX = ".json"


class ModuleUnavailableError(RuntimeError):
    """Raised when the module with the expected name cannot be found."""


def load_module(path: Path) -> ModuleIndex:
    """Load a module index from an assembly or a JSON manifest."""

    if path.suffix.lower() == MANIFEST_SUFFIX:
        return ModuleIndex.from_manifest(path)
    return read_assembly(path)


class ModuleLocator:
    """Resolve a module by exact name match, once.

    A failed lookup is not cached: every call to :meth:`module` raises
    :class:`ModuleUnavailableError` again, since nothing can be scanned
    without the module.
    """

    def __init__(self, name: str, search_paths: Sequence[Path]) -> None:
        self.name = name
        self.search_paths = tuple(Path(path) for path in search_paths)
        self._module: Optional[ModuleIndex] = None
        self._lock = threading.Lock()

    @classmethod
    def for_file(cls, path: Path) -> "ModuleLocator":
        """Build a locator already bound to the module stored at ``path``."""

        module = load_module(path)
        locator = cls(module.name, [path])
        locator._module = module
        return locator

    @property
    def resolved(self) -> bool:
        return self._module is not None

    def module(self) -> ModuleIndex:
        if self._module is not None:
            return self._module
        with self._lock:
            if self._module is None:
                self._module = self._locate()
                logger.info(
                    "resolved module %s from %s", self.name, self._module.path or "<memory>"
                )
        return self._module

    def _locate(self) -> ModuleIndex:
        matches: List[ModuleIndex] = []
        for path in self._iter_files():
            module = self._try_load(path)
            if module is not None and module.name == self.name:
                matches.append(module)

        if not matches:
            searched = ", ".join(str(path) for path in self.search_paths) or "<none>"
            raise ModuleUnavailableError(
                f"unable to find a loaded {self.name} module (searched: {searched})"
            )
        if len(matches) > 1:
            sources = ", ".join(str(module.path) for module in matches)
            raise ModuleUnavailableError(f"module {self.name} is ambiguous: {sources}")
        return matches[0]

    def _iter_files(self) -> Iterator[Path]:
        for root in self.search_paths:
            if root.is_file():
                yield root
            elif root.is_dir():
                yield from _candidate_files(root.iterdir())
            else:
                logger.warning("search path %s does not exist", root)

    @staticmethod
    def _try_load(path: Path) -> Optional[ModuleIndex]:
        try:
            return load_module(path)
        except (OSError, ValueError) as exc:
            logger.warning("skipping %s: %s", path, exc)
            return None


def _candidate_files(entries: Iterable[Path]) -> Iterator[Path]:
    for entry in sorted(entries):
        if entry.is_file() and entry.suffix.lower() in ASSEMBLY_SUFFIXES + (MANIFEST_SUFFIX,):
            yield entry
