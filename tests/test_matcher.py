from typing import Optional

from cilscan.matcher import SignatureMatcher, find_by_signature
from cilscan.module import Candidate, MemberDescriptor, MemberIdentity, ModuleIndex, TypeDescriptor
from cilscan.signature import MemberKind, Signature

# Bodies are plain opcode byte strings: 0x02 ldarg.0, 0x03 ldarg.1, 0x06 ldloc.0,
# 0x0A stloc.0, 0x58 add, 0x65 neg, 0x2A ret, 0x7B ldfld <token>.
X, Y, Z = 0x65, 0x0A, 0x06
SIGNATURE = Signature.parse("neg stloc.0 ldloc.0")


def method(type_name: str, name: str, body: Optional[bytes], **flags) -> MemberDescriptor:
    kind = MemberKind.CONSTRUCTOR if name in {".ctor", ".cctor"} else MemberKind.METHOD
    return MemberDescriptor(MemberIdentity(type_name, name, kind), body, **flags)


def make_module(*types: TypeDescriptor) -> ModuleIndex:
    return ModuleIndex("Sample", types)


def three_method_module() -> ModuleIndex:
    return make_module(
        TypeDescriptor(
            "Game.Player",
            [
                method("Game.Player", "First", bytes([0x02, X, Y, 0x2A])),
                method("Game.Player", "Second", bytes([0x02, 0x03, X, Y, Z, 0x58, 0x2A])),
                method("Game.Player", "Third", bytes([X, 0x02, Y, Z, 0x2A])),
            ],
        )
    )


def test_end_to_end_second_method_is_found() -> None:
    module = three_method_module()
    found = SignatureMatcher(module).find_method(SIGNATURE)
    assert found == MemberIdentity("Game.Player", "Second")


def test_methods_without_the_run_are_not_found_in_isolation() -> None:
    module = three_method_module()
    for member in module[0].members:
        if member.name == "Second":
            continue
        isolated = make_module(TypeDescriptor("Game.Player", [member]))
        assert SignatureMatcher(isolated).find_method(SIGNATURE) is None


def test_empty_signature_returns_none_without_scanning() -> None:
    class ExplodingIterable:
        def __iter__(self):
            raise AssertionError("candidates must not be enumerated")

    assert find_by_signature(ExplodingIterable(), Signature([])) is None
    assert SignatureMatcher(three_method_module()).find_method(Signature([])) is None


def test_members_without_body_are_skipped() -> None:
    candidates = [
        Candidate(MemberIdentity("T", "Abstract"), None),
        Candidate(MemberIdentity("T", "Concrete"), bytes([X, Y, Z])),
    ]
    assert find_by_signature(candidates, SIGNATURE) == MemberIdentity("T", "Concrete")


def test_first_match_in_declaration_order_wins() -> None:
    body = bytes([X, Y, Z, 0x2A])
    module = make_module(
        TypeDescriptor("A", [method("A", "NoMatch", b"\x2a"), method("A", "Early", body)]),
        TypeDescriptor("B", [method("B", "Late", body)]),
    )
    matcher = SignatureMatcher(module)
    assert matcher.find_method(SIGNATURE) == MemberIdentity("A", "Early")
    assert matcher.find_all(SIGNATURE, MemberKind.METHOD) == [
        MemberIdentity("A", "Early"),
        MemberIdentity("B", "Late"),
    ]


def test_scan_stops_on_first_hit() -> None:
    visited = []

    def candidates():
        for name in ("One", "Two", "Three"):
            visited.append(name)
            yield Candidate(MemberIdentity("T", name), bytes([X, Y, Z]))

    assert find_by_signature(candidates(), SIGNATURE) == MemberIdentity("T", "One")
    assert visited == ["One"]


def test_constructors_and_methods_are_searched_separately() -> None:
    body = bytes([0x02, X, Y, Z, 0x2A])
    module = make_module(
        TypeDescriptor(
            "Game.Menu",
            [
                method("Game.Menu", ".ctor", body, is_public=True),
                method("Game.Menu", "Update", b"\x2a", is_static=True, is_public=False),
            ],
        )
    )
    matcher = SignatureMatcher(module)
    assert matcher.find_method(SIGNATURE) is None
    found = matcher.find_constructor(SIGNATURE)
    assert found is not None
    assert found.member_name == ".ctor"
    assert found.kind is MemberKind.CONSTRUCTOR


def test_non_public_and_static_members_are_candidates() -> None:
    module = make_module(
        TypeDescriptor(
            "Hidden",
            [method("Hidden", "Secret", bytes([X, Y, Z]), is_static=True, is_public=False)],
        )
    )
    assert SignatureMatcher(module).find_method(SIGNATURE) == MemberIdentity("Hidden", "Secret")


def test_truncated_body_prefix_is_still_searched() -> None:
    # ldfld with a two byte token is cut short after the run.
    module = make_module(TypeDescriptor("T", [method("T", "Broken", bytes([X, Y, Z, 0x7B, 0x01, 0x00]))]))
    assert SignatureMatcher(module).find_method(SIGNATURE) == MemberIdentity("T", "Broken")


def test_memoized_matcher_agrees_with_plain_matcher() -> None:
    module = three_method_module()
    plain = SignatureMatcher(module)
    memoized = SignatureMatcher(module, memoize=True)
    for text in ("neg stloc.0 ldloc.0", "ldarg.0 neg", "add ret", "ldarg.1 ldarg.0"):
        signature = Signature.parse(text)
        assert memoized.find_method(signature) == plain.find_method(signature)
        assert memoized.find_method(signature) == plain.find_method(signature)


def test_memoized_matcher_keeps_overloads_apart() -> None:
    module = make_module(
        TypeDescriptor(
            "T",
            [
                method("T", "Foo", bytes([0x02, 0x2A])),
                method("T", "Foo", bytes([X, Y, Z, 0x2A])),
            ],
        )
    )
    memoized = SignatureMatcher(module, memoize=True)
    assert memoized.find_method(Signature.parse("ldarg.0 ret")) == MemberIdentity("T", "Foo")
    assert memoized.find_method(SIGNATURE) == MemberIdentity("T", "Foo")
    assert memoized.find_all(SIGNATURE, MemberKind.METHOD) == [MemberIdentity("T", "Foo")]
    assert SignatureMatcher(module).find_method(SIGNATURE) == MemberIdentity("T", "Foo")
