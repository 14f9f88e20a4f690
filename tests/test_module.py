import json
from pathlib import Path

import pytest

from cilscan.loader import ModuleLocator, ModuleUnavailableError, load_module
from cilscan.module import MemberIdentity, ModuleIndex
from cilscan.signature import MemberKind


def _write_manifest(base: Path, name: str = "osu!", filename: str = "osu.json") -> Path:
    payload = {
        "name": name,
        "types": [
            {
                "namespace": "osu.GameModes.Play",
                "name": "Player",
                "members": [
                    {"name": ".ctor", "body": "022a"},
                    {"name": "Update", "body": "02 7b 01 00 00 04 2a", "static": False},
                    {"name": "Dispose", "abstract": True, "body": None},
                    {"name": "Tick", "kind": "method", "body": [0x65, 0x0A, 0x2A], "token": "0x06000004"},
                ],
            },
            {"name": "Empty"},
        ],
    }
    path = base / filename
    path.write_text(json.dumps(payload, indent=2), "utf-8")
    return path


def test_manifest_preserves_declaration_order(tmp_path: Path) -> None:
    module = ModuleIndex.from_manifest(_write_manifest(tmp_path))

    assert module.name == "osu!"
    assert [t.name for t in module] == ["osu.GameModes.Play.Player", "Empty"]
    names = [c.identity.member_name for c in module.candidates(MemberKind.METHOD)]
    assert names == ["Update", "Dispose", "Tick"]
    ctors = list(module.candidates(MemberKind.CONSTRUCTOR))
    assert [c.identity.member_name for c in ctors] == [".ctor"]
    assert ctors[0].body == b"\x02\x2a"


def test_manifest_member_details(tmp_path: Path) -> None:
    module = ModuleIndex.from_manifest(_write_manifest(tmp_path))

    dispose = module.find_member("osu.GameModes.Play.Player::Dispose")
    assert dispose is not None
    assert dispose.body is None
    assert dispose.is_abstract

    tick = module.find_member("osu.GameModes.Play.Player::Tick")
    assert tick.body == b"\x65\x0a\x2a"
    assert tick.identity.token == 0x06000004
    assert module.describe() == {"name": "osu!", "types": 2, "methods": 3, "constructors": 1}


def test_member_identity_rendering() -> None:
    identity = MemberIdentity("Game.Player", "Update", MemberKind.METHOD, 0x06000002)
    assert str(identity) == "Game.Player::Update"
    assert identity.to_dict()["token"] == "0x06000002"


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"types": []},
        {"name": "x", "types": {}},
        {"name": "x", "types": [{"members": []}]},
        {"name": "x", "types": [{"name": "T", "members": [{"name": "M", "body": "zz"}]}]},
        {"name": "x", "types": [{"name": "T", "members": None}]},
        {"name": "x", "types": [{"name": "T", "members": 5}]},
        {"name": "x", "types": [{"name": "T", "members": [{"name": "M", "kind": 3}]}]},
        {"name": "x", "types": [{"name": "T", "members": [{"name": "M", "kind": "field"}]}]},
    ],
)
def test_malformed_manifest_raises(tmp_path: Path, payload) -> None:
    path = tmp_path / "bad.json"
    path.write_text(json.dumps(payload), "utf-8")
    with pytest.raises(ValueError):
        load_module(path)


def test_locator_resolves_by_exact_name_once(tmp_path: Path) -> None:
    _write_manifest(tmp_path, name="osu!", filename="a.json")
    _write_manifest(tmp_path, name="osu!framework", filename="b.json")
    (tmp_path / "notes.txt").write_text("ignored", "utf-8")

    locator = ModuleLocator("osu!", [tmp_path])
    assert not locator.resolved
    module = locator.module()
    assert module.name == "osu!"
    assert module.path == tmp_path / "a.json"
    assert locator.module() is module


def test_locator_missing_module_is_fatal(tmp_path: Path) -> None:
    _write_manifest(tmp_path, name="something-else")
    locator = ModuleLocator("osu!", [tmp_path])
    with pytest.raises(ModuleUnavailableError):
        locator.module()
    with pytest.raises(ModuleUnavailableError):
        locator.module()


def test_locator_rejects_ambiguous_module(tmp_path: Path) -> None:
    _write_manifest(tmp_path, filename="a.json")
    _write_manifest(tmp_path, filename="b.json")
    with pytest.raises(ModuleUnavailableError):
        ModuleLocator("osu!", [tmp_path]).module()


def test_locator_skips_unreadable_files(tmp_path: Path) -> None:
    (tmp_path / "broken.dll").write_bytes(b"not a pe file")
    (tmp_path / "broken.json").write_text("{", "utf-8")
    _write_manifest(tmp_path, filename="good.json")
    assert ModuleLocator("osu!", [tmp_path]).module().name == "osu!"


def test_locator_skips_manifests_with_bad_member_lists(tmp_path: Path) -> None:
    bad = {"name": "osu!", "types": [{"name": "T", "members": None}]}
    (tmp_path / "a.json").write_text(json.dumps(bad), "utf-8")
    good = _write_manifest(tmp_path, filename="b.json")
    assert ModuleLocator("osu!", [tmp_path]).module().path == good


def test_locator_for_file_is_pre_resolved(tmp_path: Path) -> None:
    locator = ModuleLocator.for_file(_write_manifest(tmp_path))
    assert locator.resolved
    assert locator.name == "osu!"
