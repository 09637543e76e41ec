"""Tests for ChangeSet validation and helpers."""

import pytest

from devpilot.changeset import ChangeSet, PathMove, diff_files
from devpilot.errors import ChangeSetError
from devpilot.file_store import from_map


def test_from_dict_normalizes_and_validates():
    cs = ChangeSet.from_dict({
        "create": {"/src/new.js": "x", "empty.txt": None},
        "delete": ["a.txt", "a.txt", "/b.txt"],
        "move": [{"from": "old.js", "to": "new.js"}],
        "unknown": 123,
    })
    assert cs.create == {"src/new.js": "x", "empty.txt": ""}
    assert cs.delete == ["a.txt", "b.txt"]
    assert cs.move == [PathMove("old.js", "new.js")]
    assert cs.update == {}


@pytest.mark.parametrize("data", [
    ["not", "an", "object"],
    {"create": ["a.txt"]},
    {"update": {"a.txt": 5}},
    {"delete": "a.txt"},
    {"move": [{"from": "a.txt"}]},
    {"copy": [{"from": "", "to": "b.txt"}]},
    {"create": {"../../escaped.txt": "x"}},
    {"delete": ["src/../../etc"]},
    {"move": [{"from": "a.txt", "to": "./b.txt"}]},
])
def test_from_dict_rejects_bad_shapes(data):
    with pytest.raises(ChangeSetError):
        ChangeSet.from_dict(data)


def test_from_dict_none_is_empty():
    assert ChangeSet.from_dict(None).is_empty


def test_from_json_rejects_invalid_json():
    with pytest.raises(ChangeSetError):
        ChangeSet.from_json("{not json")


def test_to_dict_omits_empty_keys():
    cs = ChangeSet(update={"a.txt": "1"}, copy=[PathMove("a.txt", "b.txt")])
    assert cs.to_dict() == {"update": {"a.txt": "1"}, "copy": [{"from": "a.txt", "to": "b.txt"}]}
    assert ChangeSet.from_json(cs.to_json()) == cs


def test_conflicts_reports_races():
    cs = ChangeSet(
        update={"a.txt": "1", "moved.txt": "2"},
        delete=["a.txt"],
        move=[PathMove("src.txt", "moved.txt")],
    )
    problems = cs.conflicts()
    assert "'a.txt' is both updated and deleted" in problems
    assert "'moved.txt' is a move target and also updated" in problems
    assert ChangeSet(create={"x": ""}).conflicts() == []


def test_restrict_to_drops_unplanned_paths():
    cs = ChangeSet(
        create={"ok.txt": "1", "sneaky.txt": "2"},
        delete=["gone.txt"],
        move=[PathMove("a.txt", "outside.txt")],
    )
    restricted, dropped = cs.restrict_to(["ok.txt", "gone.txt", "a.txt"])
    assert restricted.create == {"ok.txt": "1"}
    assert restricted.delete == ["gone.txt"]
    assert restricted.move == []
    assert dropped == ["outside.txt", "sneaky.txt"]


def test_merge_prefers_other():
    merged = ChangeSet(create={"a": "1"}, delete=["x"]).merge(ChangeSet(create={"a": "2"}, delete=["x", "y"]))
    assert merged.create == {"a": "2"}
    assert merged.delete == ["x", "y"]


def test_diff_files():
    before = from_map({"same.txt": "1", "changed.txt": "old", "removed.txt": "x"})
    after = from_map({"same.txt": "1", "changed.txt": "new", "added.txt": "y"})
    cs = diff_files(before, after)
    assert cs.create == {"added.txt": "y"}
    assert cs.update == {"changed.txt": "new"}
    assert cs.delete == ["removed.txt"]
    assert diff_files(before, before).is_empty


def test_from_dict_rejects_paths_leaving_the_project():
    with pytest.raises(ChangeSetError, match="inside the project"):
        ChangeSet.from_dict({"create": {"../../escaped.txt": "pwned"}})
