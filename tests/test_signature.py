import pytest

from cilscan.opcodes import UnknownOpcodeError, by_name
from cilscan.signature import MemberKind, Signature, contains_run

A = by_name("ldarg.0")
B = by_name("ldfld")
C = by_name("ret")
D = by_name("nop")


def test_run_after_mismatch_is_found() -> None:
    assert contains_run([A, B, A, C], [A, C])


def test_run_starting_at_repeated_first_opcode_is_found() -> None:
    assert contains_run([A, A, B], [A, B])


def test_run_with_surrounding_opcodes() -> None:
    assert contains_run([D, D, A, B, C, D], [A, B, C])


def test_interrupted_run_is_not_found() -> None:
    assert not contains_run([A, B, D, C], [A, B, C])
    assert not contains_run([C, B, A], [A, B, C])


def test_empty_signature_never_matches() -> None:
    assert not contains_run([A, B, C], [])


def test_self_overlapping_prefix_is_missed() -> None:
    # Partial overlaps are not recovered after a mismatch.
    assert not contains_run([A, A, A, B], [A, A, B])


def test_signature_parse_accepts_strings_and_lists() -> None:
    parsed = Signature.parse("ldarg.0, ldfld  ret")
    assert parsed == Signature([A, B, C])
    assert Signature.parse(["Ldarg_0", "Ldfld", "Ret"]) == parsed
    assert parsed.describe() == "ldarg.0 ldfld ret"
    assert len(parsed) == 3


def test_empty_signature_is_falsey() -> None:
    assert not Signature.parse("")
    assert len(Signature([])) == 0


def test_signature_parse_rejects_unknown_mnemonics() -> None:
    with pytest.raises(UnknownOpcodeError):
        Signature.parse("ldarg.0 bogus")


def test_signature_is_immutable() -> None:
    signature = Signature([A])
    with pytest.raises(AttributeError):
        signature.opcodes = (B,)


def test_member_kind_parse() -> None:
    assert MemberKind.parse("Method") is MemberKind.METHOD
    assert MemberKind.parse(".ctor") is MemberKind.CONSTRUCTOR
    with pytest.raises(ValueError):
        MemberKind.parse("field")
