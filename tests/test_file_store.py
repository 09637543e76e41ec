"""Tests for the virtual file tree projections."""

from devpilot.file_store import (
    FileNode,
    FileType,
    children_of,
    descendants_of,
    find_by_path,
    folder_paths,
    from_map,
    is_descendant,
    is_safe_path,
    node_name,
    normalize_path,
    to_map,
)


def test_normalize_path_collapses_slashes():
    assert normalize_path("/src//components/Button.js/") == "src/components/Button.js"
    assert normalize_path("src\\lib\\x.ts") == "src/lib/x.ts"
    assert normalize_path("///") == ""


def test_is_safe_path():
    assert is_safe_path("src/app.js")
    assert is_safe_path("/src/.env")
    assert not is_safe_path("../escaped.txt")
    assert not is_safe_path("src/../../etc/passwd")
    assert not is_safe_path("./index.html")
    assert not is_safe_path("")


def test_node_name_is_last_segment():
    assert node_name("src/components/Button.js") == "Button.js"
    assert node_name("README.md") == "README.md"


def test_is_descendant_requires_segment_boundary():
    assert is_descendant("src/app.js", "src")
    assert not is_descendant("src2/app.js", "src")
    assert not is_descendant("src", "src")


def test_file_node_defaults():
    folder = FileNode(id="1", path="/assets/", type="folder", content="ignored")
    assert folder.path == "assets"
    assert folder.type == FileType.FOLDER
    assert folder.content is None
    assert folder.name == "assets"

    empty = FileNode(id="2", path="a.txt")
    assert empty.is_file
    assert empty.content == ""


def test_to_map_includes_files_only():
    nodes = [
        FileNode(id="1", path="src", type=FileType.FOLDER),
        FileNode(id="2", path="src/app.js", content="x"),
    ]
    assert to_map(nodes) == {"src/app.js": "x"}


def test_folder_paths_are_implicit_and_explicit():
    nodes = from_map({"src/components/Button.js": "", "README.md": ""})
    nodes.append(FileNode(id="f", path="empty", type=FileType.FOLDER))
    assert folder_paths(nodes) == {"src", "src/components", "empty"}


def test_from_map_uses_id_factory():
    ids = iter(["a", "b"])
    nodes = from_map({"x.txt": "1", "y.txt": "2"}, id_factory=lambda: next(ids))
    assert [(n.id, n.path, n.content) for n in nodes] == [("a", "x.txt", "1"), ("b", "y.txt", "2")]


def test_tree_queries():
    nodes = from_map({
        "src/app.js": "",
        "src/lib/util.js": "",
        "index.html": "",
    })
    assert find_by_path(nodes, "/src/app.js").path == "src/app.js"
    assert find_by_path(nodes, "missing") is None
    assert [n.path for n in children_of(nodes, "src")] == ["src/app.js"]
    assert {n.path for n in descendants_of(nodes, "src")} == {"src/app.js", "src/lib/util.js"}
    assert {n.path for n in children_of(nodes, "")} == {"index.html"}


def test_round_trip_through_dict():
    node = FileNode(id="1", path="a/b.txt", content="hi")
    data = node.to_dict()
    assert data["name"] == "b.txt"
    assert FileNode.from_dict(data) == node
