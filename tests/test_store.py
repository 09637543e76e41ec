"""Tests for the in-memory and directory-backed stores."""

import json

import pytest

from devpilot.applier import DeleteNode, SetNode, SetProjectField, UpdateNode, apply_changes
from devpilot.changeset import ChangeSet, PathMove
from devpilot.errors import ChangeSetError
from devpilot.file_store import FileNode, to_map
from devpilot.store import ChatMessage, DirectoryFileStore, InMemoryFileStore, ProjectNotFound


# =============================================================================
# InMemoryFileStore
# =============================================================================

async def test_get_returns_copies(store):
    files = await store.get("project-1")
    files[0].content = "mutated"
    assert "mutated" not in to_map(await store.get("project-1")).values()


async def test_apply_batch_commits_and_notifies(store):
    seen = []
    unsubscribe = store.subscribe("project-1", seen.append)

    files = await store.get("project-1")
    result = apply_changes(files, ChangeSet(
        create={"public/icon.svg": "<svg/>"},
        delete=["src/utils.js"],
    ))
    await store.apply_batch("project-1", result.operations)

    mapping = to_map(await store.get("project-1"))
    assert mapping["public/icon.svg"] == "<svg/>"
    assert "src/utils.js" not in mapping
    assert (await store.get_project("project-1"))["icon_svg"] == "<svg/>"
    assert store.batches_committed == 1
    assert len(seen) == 1 and to_map(seen[0]) == mapping

    unsubscribe()
    await store.apply_batch("project-1", [])
    assert len(seen) == 1


async def test_failed_batch_commits_nothing(store):
    before = to_map(await store.get("project-1"))
    files = await store.get("project-1")
    target = next(n for n in files if n.path == "index.html")
    with pytest.raises(ChangeSetError):
        await store.apply_batch("project-1", [
            UpdateNode(target.id, {"content": "changed"}),
            DeleteNode("no-such-node"),
        ])
    assert to_map(await store.get("project-1")) == before
    assert store.batches_committed == 0


async def test_subscriber_errors_are_isolated(store, caplog):
    def broken(files):
        raise RuntimeError("ui crashed")

    store.subscribe("project-1", broken)
    await store.apply_batch("project-1", [SetProjectField("name", "Renamed")])
    assert (await store.get_project("project-1"))["name"] == "Renamed"
    assert "ui crashed" in caplog.text


async def test_unknown_project(store):
    with pytest.raises(ProjectNotFound):
        await store.get("nope")


async def test_chat_history_and_project_actions(store):
    await store.append("project-1", ChatMessage(sender="user", text="hi"))
    assert [m.text for m in await store.chat_history("project-1")] == ["hi"]

    new_id = await store.copy_project("project-1", "Demo Copy")
    assert new_id != "project-1"
    assert (await store.get_project(new_id))["name"] == "Demo Copy"
    assert to_map(await store.get(new_id)) == to_map(await store.get("project-1"))

    await store.rename_project("project-1", "Renamed")
    assert (await store.get_project("project-1"))["name"] == "Renamed"

    await store.clear_chat_history("project-1")
    assert await store.chat_history("project-1") == []

    await store.delete_project("project-1")
    with pytest.raises(ProjectNotFound):
        await store.get_project("project-1")


def test_chat_message_round_trip():
    message = ChatMessage(sender="ai", text="plan ready", plan={"thoughts": "x"}, plan_status="pending")
    data = message.to_dict()
    assert "agent_state" not in data
    assert ChatMessage.from_dict({**data, "extra": 1}) == message


# =============================================================================
# DirectoryFileStore
# =============================================================================

@pytest.fixture
def project_dir(tmp_path):
    root = tmp_path / "site"
    (root / "src").mkdir(parents=True)
    (root / "index.html").write_text("<h1>Hi</h1>")
    (root / "src" / "app.js").write_text("app")
    (root / "node_modules" / "lib").mkdir(parents=True)
    (root / "node_modules" / "lib" / "index.js").write_text("vendored")
    (root / ".devpilot" / "logs").mkdir(parents=True)
    (root / ".devpilot" / "logs" / "run_calls.txt").write_text("log")
    (root / ".devpilot" / "chat.jsonl").write_text("")
    (root / ".devpilot" / "memory.md").write_text("memory")
    return root


@pytest.fixture
def dir_store(project_dir):
    return DirectoryFileStore(project_dir.parent)


async def test_directory_get_skips_internal_files(dir_store):
    mapping = to_map(await dir_store.get("site"))
    assert mapping == {
        ".devpilot/memory.md": "memory",
        "index.html": "<h1>Hi</h1>",
        "src/app.js": "app",
    }


async def test_directory_apply_batch_writes_to_disk(dir_store, project_dir):
    files = await dir_store.get("site")
    result = apply_changes(files, ChangeSet(
        create={"public/icon.svg": "<svg/>"},
        update={"index.html": "<h1>Bye</h1>"},
        move=[PathMove("src/app.js", "lib/main.js")],
    ))
    await dir_store.apply_batch("site", result.operations)

    assert (project_dir / "index.html").read_text() == "<h1>Bye</h1>"
    assert (project_dir / "lib" / "main.js").read_text() == "app"
    assert not (project_dir / "src").exists()
    assert (project_dir / "public" / "icon.svg").exists()

    metadata = json.loads((project_dir / ".devpilot" / "project.json").read_text())
    assert metadata["icon_svg"] == "<svg/>"
    assert (await dir_store.get_project("site"))["icon_svg"] == "<svg/>"


async def test_directory_explicit_folders(dir_store, project_dir):
    await dir_store.apply_batch("site", [SetNode(FileNode(id="f", path="assets", type="folder"))])
    assert (project_dir / "assets").is_dir()
    assert any(n.path == "assets" and n.is_folder for n in await dir_store.get("site"))


async def test_directory_chat_and_project_actions(dir_store, tmp_path):
    await dir_store.append("site", ChatMessage(sender="user", text="hello"))
    assert [m.text for m in await dir_store.chat_history("site")] == ["hello"]

    assert (await dir_store.get_project("site"))["name"] == "site"
    await dir_store.rename_project("site", "My Site")
    assert (await dir_store.get_project("site"))["name"] == "My Site"

    new_id = await dir_store.copy_project("site", "site copy")
    assert (tmp_path / new_id / "index.html").exists()
    assert (await dir_store.get_project(new_id))["name"] == "site copy"

    await dir_store.clear_chat_history("site")
    assert await dir_store.chat_history("site") == []

    await dir_store.delete_project(new_id)
    assert not (tmp_path / new_id).exists()


async def test_directory_unknown_project(dir_store):
    with pytest.raises(ProjectNotFound):
        await dir_store.get("missing")


async def test_directory_refuses_paths_outside_project(dir_store, project_dir, tmp_path):
    operations = [
        SetNode(FileNode(id="ok", path="notes.txt", content="fine")),
        SetNode(FileNode(id="bad", path="../escaped.txt", content="pwned")),
    ]
    with pytest.raises(ChangeSetError, match="outside the project"):
        await dir_store.apply_batch("site", operations)
    assert not (tmp_path / "escaped.txt").exists()
    assert not (project_dir / "notes.txt").exists()
