#!/usr/bin/env python3
"""Locate methods and constructors in a .NET module by CIL opcode signature."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from cilscan import (
    MemberKind,
    ModuleIndex,
    ModuleLocator,
    ModuleUnavailableError,
    Signature,
    SignatureMatcher,
    SignatureRegistry,
    read_instructions,
)

EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_ERROR = 2


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "module",
        help="Path to an assembly (.dll/.exe) or JSON manifest. With --search-path"
        " this is the exact module name to look for instead.",
    )
    parser.add_argument(
        "--search-path",
        type=Path,
        action="append",
        dest="search_paths",
        help="Directory or file searched for the named module (repeatable)",
    )
    parser.add_argument(
        "--catalog",
        type=Path,
        default=Path("knowledge/signatures.json"),
        help="Location of the named signature catalog",
    )
    parser.add_argument(
        "--label",
        action="append",
        dest="labels",
        help="Resolve only the selected catalog labels",
    )
    parser.add_argument(
        "--signature",
        default=None,
        help="Ad hoc signature, e.g. 'ldarg.0 ldfld ret'; bypasses the catalog",
    )
    parser.add_argument(
        "--kind",
        choices=[kind.value for kind in MemberKind],
        default=MemberKind.METHOD.value,
        help="Member kind searched by --signature",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Report every member matching --signature instead of the first",
    )
    parser.add_argument(
        "--dump",
        metavar="TYPE::MEMBER",
        default=None,
        help="Print the decoded opcode listing of one member and exit",
    )
    parser.add_argument("--json", action="store_true", help="Emit results as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def resolve_locator(args: argparse.Namespace) -> ModuleLocator:
    if args.search_paths:
        return ModuleLocator(args.module, args.search_paths)
    path = Path(args.module)
    if not path.exists():
        raise FileNotFoundError(f"missing input file: {path}")
    return ModuleLocator.for_file(path)


def dump_member(module: ModuleIndex, reference: str) -> int:
    member = module.find_member(reference)
    if member is None:
        print(f"error: no member {reference} in module {module.name}", file=sys.stderr)
        return EXIT_ERROR
    print(f"; {member.identity} ({member.kind.value})")
    if member.body is None:
        print("; no method body")
        return EXIT_OK
    instructions, truncated = read_instructions(member.body)
    for instruction in instructions:
        print(instruction.format())
    if truncated:
        end = instructions[-1].end if instructions else 0
        print(f"; trailing {len(member.body) - end} byte(s) not decoded")
    return EXIT_OK


def scan_adhoc(matcher: SignatureMatcher, args: argparse.Namespace) -> List[dict]:
    signature = Signature.parse(args.signature)
    kind = MemberKind(args.kind)
    if args.all:
        members = matcher.find_all(signature, kind)
    else:
        found = matcher.resolve(signature, kind)
        members = [found] if found is not None else []
    return [
        {
            "label": signature.describe(),
            "kind": kind.value,
            "matches": [member.to_dict() for member in members],
        }
    ]


def scan_catalog(matcher: SignatureMatcher, args: argparse.Namespace) -> List[dict]:
    registry = SignatureRegistry.load(args.catalog, lambda: matcher)
    results: List[dict] = []
    for label in args.labels or registry.labels():
        handle = registry.get(label)
        results.append(
            {
                "label": label,
                "kind": handle.kind.value,
                "matches": [handle.member.to_dict()] if handle.found else [],
            }
        )
    return results


def render_text(module: ModuleIndex, results: Sequence[dict]) -> str:
    summary = module.describe()
    lines = [
        "module {name}: {types} types, {methods} methods, {constructors} constructors".format(**summary)
    ]
    for result in results:
        if not result["matches"]:
            lines.append(f"{result['label']}: not found")
            continue
        for match in result["matches"]:
            token = f" [{match['token']}]" if "token" in match else ""
            lines.append(f"{result['label']}: {match['type']}::{match['member']} ({match['kind']}){token}")
    return "\n".join(lines)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        module = resolve_locator(args).module()
    except (ModuleUnavailableError, OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    if args.dump:
        return dump_member(module, args.dump)

    matcher = SignatureMatcher(module, memoize=True)
    try:
        if args.signature is not None:
            results = scan_adhoc(matcher, args)
        else:
            if not args.catalog.exists():
                print(f"error: missing signature catalog: {args.catalog}", file=sys.stderr)
                return EXIT_ERROR
            results = scan_catalog(matcher, args)
    except (KeyError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    if args.json:
        print(json.dumps({"module": module.describe(), "results": results}, indent=2))
    else:
        print(render_text(module, results))

    return EXIT_OK if all(result["matches"] for result in results) else EXIT_NOT_FOUND


if __name__ == "__main__":
    raise SystemExit(main())
