"""
Persistent file/chat store

The backing store is the single source of truth for a project's files,
metadata and chat history. It accepts persistence operations produced by
the applier as one batch and pushes the committed file set to subscribers.

Two implementations:
- InMemoryFileStore: dict-backed, used by tests and embedders
- DirectoryFileStore: each project is a directory on disk (used by the CLI)
"""

import json
import logging
import shutil
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .applier import replay
from .errors import ChangeSetError, DevPilotError
from .file_store import FileNode, FileType, folder_paths, normalize_path, to_map

logger = logging.getLogger(__name__)

Subscriber = Callable[[list[FileNode]], None]


@dataclass
class ChatMessage:
    """One entry of a project's chat history."""
    sender: str  # "user" or "ai"
    text: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    thoughts: Optional[str] = None
    plan: Optional[dict] = None
    plan_status: Optional[str] = None
    agent_state: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


class ProjectNotFound(DevPilotError):
    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class FileStore(ABC):
    """
    Interface to the persistent store.

    Subscriptions are synchronous callbacks invoked after each committed
    batch with the project's new file list.
    """

    def __init__(self):
        self._subscribers: dict[str, list[Subscriber]] = {}

    # --- files -------------------------------------------------------------

    @abstractmethod
    async def get(self, project_id: str) -> list[FileNode]:
        """Current files of a project."""
        pass

    @abstractmethod
    async def apply_batch(self, project_id: str, operations: list) -> None:
        """Commit persistence operations as one batch. All or nothing."""
        pass

    # --- metadata ----------------------------------------------------------

    @abstractmethod
    async def get_project(self, project_id: str) -> dict:
        """Project metadata (name, icon_svg, ...)."""
        pass

    # --- chat --------------------------------------------------------------

    @abstractmethod
    async def append(self, project_id: str, message: ChatMessage) -> None:
        pass

    @abstractmethod
    async def chat_history(self, project_id: str) -> list[ChatMessage]:
        pass

    # --- project-level actions --------------------------------------------

    @abstractmethod
    async def delete_project(self, project_id: str) -> None:
        pass

    @abstractmethod
    async def copy_project(self, project_id: str, new_name: str) -> str:
        """Duplicate a project. Returns the new project id."""
        pass

    @abstractmethod
    async def rename_project(self, project_id: str, new_name: str) -> None:
        pass

    @abstractmethod
    async def clear_chat_history(self, project_id: str) -> None:
        pass

    # --- subscriptions -----------------------------------------------------

    def subscribe(self, project_id: str, callback: Subscriber) -> Callable[[], None]:
        """Register `callback`; returns a function that unsubscribes it."""
        self._subscribers.setdefault(project_id, []).append(callback)

        def unsubscribe():
            callbacks = self._subscribers.get(project_id, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def _notify(self, project_id: str, files: list[FileNode]):
        for callback in list(self._subscribers.get(project_id, [])):
            try:
                callback([node.copy() for node in files])
            except Exception as e:
                logger.error("Store subscriber for %s failed: %s", project_id, e)


def _apply_fields(fields: dict, updates: dict):
    for name, value in updates.items():
        if value is None:
            fields.pop(name, None)
        else:
            fields[name] = value


# =============================================================================
# In-memory store
# =============================================================================

@dataclass
class _ProjectRecord:
    files: list[FileNode] = field(default_factory=list)
    fields: dict = field(default_factory=dict)
    chat: list[ChatMessage] = field(default_factory=list)


class InMemoryFileStore(FileStore):
    """
    Dict-backed store with single-writer batch semantics.

    Usage:
        store = InMemoryFileStore()
        store.create_project("p1", from_map({"index.html": "<h1>Hi</h1>"}), name="Demo")
    """

    def __init__(self):
        super().__init__()
        self.projects: dict[str, _ProjectRecord] = {}
        self.batches_committed = 0

    def create_project(
        self,
        project_id: str,
        files: Optional[Iterable[FileNode]] = None,
        **fields: Any,
    ) -> str:
        self.projects[project_id] = _ProjectRecord(
            files=[node.copy() for node in files or []],
            fields=dict(fields),
        )
        return project_id

    def _record(self, project_id: str) -> _ProjectRecord:
        if project_id not in self.projects:
            raise ProjectNotFound(project_id)
        return self.projects[project_id]

    async def get(self, project_id: str) -> list[FileNode]:
        return [node.copy() for node in self._record(project_id).files]

    async def apply_batch(self, project_id: str, operations: list) -> None:
        record = self._record(project_id)
        # replay() works on copies and raises before anything is committed
        files, field_updates = replay(record.files, operations)
        record.files = files
        _apply_fields(record.fields, field_updates)
        self.batches_committed += 1
        self._notify(project_id, files)

    async def get_project(self, project_id: str) -> dict:
        return dict(self._record(project_id).fields)

    async def append(self, project_id: str, message: ChatMessage) -> None:
        self._record(project_id).chat.append(message)

    async def chat_history(self, project_id: str) -> list[ChatMessage]:
        return list(self._record(project_id).chat)

    async def delete_project(self, project_id: str) -> None:
        self._record(project_id)
        del self.projects[project_id]
        self._subscribers.pop(project_id, None)

    async def copy_project(self, project_id: str, new_name: str) -> str:
        record = self._record(project_id)
        new_id = uuid.uuid4().hex
        files = [node.copy(id=uuid.uuid4().hex) for node in record.files]
        self.create_project(new_id, files, **{**record.fields, "name": new_name})
        return new_id

    async def rename_project(self, project_id: str, new_name: str) -> None:
        self._record(project_id).fields["name"] = new_name

    async def clear_chat_history(self, project_id: str) -> None:
        self._record(project_id).chat.clear()


# =============================================================================
# Directory store
# =============================================================================

INTERNAL_DIR = ".devpilot"
CHAT_FILE = "chat.jsonl"
PROJECT_FILE = "project.json"

# Never projected into the file tree
IGNORED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv"}
INTERNAL_FILES = {CHAT_FILE, PROJECT_FILE, "agent_state.json", "config.json", "audit.jsonl"}
INTERNAL_SUBDIRS = {"logs"}


class DirectoryFileStore(FileStore):
    """
    Projects stored as directories under `base_dir`; the project id is the
    directory name.

    Node ids are the file paths at load time, so they are only stable
    within a single read.
    """

    def __init__(self, base_dir: str | Path):
        super().__init__()
        self.base_dir = Path(base_dir).resolve()

    def project_dir(self, project_id: str) -> Path:
        return self.base_dir / project_id

    def _require(self, project_id: str) -> Path:
        path = self.project_dir(project_id)
        if not path.is_dir():
            raise ProjectNotFound(project_id)
        return path

    def _is_ignored(self, rel_parts: tuple) -> bool:
        if any(part in IGNORED_DIRS for part in rel_parts[:-1]):
            return True
        if rel_parts and rel_parts[0] == INTERNAL_DIR:
            if len(rel_parts) == 2 and rel_parts[1] in INTERNAL_FILES:
                return True
            if len(rel_parts) >= 2 and rel_parts[1] in INTERNAL_SUBDIRS:
                return True
        return False

    async def get(self, project_id: str) -> list[FileNode]:
        root = self._require(project_id)
        nodes = []
        for path in sorted(root.rglob("*")):
            rel = path.relative_to(root)
            if rel.parts[0] in IGNORED_DIRS or self._is_ignored(rel.parts):
                continue
            rel_path = rel.as_posix()
            if path.is_dir():
                if not any(path.iterdir()):
                    nodes.append(FileNode(id=rel_path, path=rel_path, type=FileType.FOLDER))
                continue
            try:
                content = path.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                logger.debug("Skipping binary file %s", rel_path)
                continue
            nodes.append(FileNode(id=rel_path, path=rel_path, content=content))
        return nodes

    async def apply_batch(self, project_id: str, operations: list) -> None:
        root = self._require(project_id)
        before = await self.get(project_id)
        after, field_updates = replay(before, operations)

        old_map, new_map = to_map(before), to_map(after)
        old_folders = {n.path for n in before if n.is_folder}
        new_folders = {n.path for n in after if n.is_folder}

        # Every write is checked before anything touches the disk
        writes = {
            self._inside(root, path): content
            for path, content in new_map.items()
            if old_map.get(path) != content
        }
        folders = [self._inside(root, path) for path in new_folders - old_folders]

        for path in old_map:
            if path not in new_map:
                target = root / path
                if target.exists():
                    target.unlink()
                self._prune_empty_dirs(root, target.parent)

        for target, content in writes.items():
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

        for folder in folders:
            folder.mkdir(parents=True, exist_ok=True)
        for path in old_folders - new_folders - folder_paths(after):
            folder = root / path
            if folder.is_dir() and not any(folder.iterdir()):
                folder.rmdir()

        if field_updates:
            fields = await self.get_project(project_id)
            _apply_fields(fields, field_updates)
            self._write_project_fields(root, fields)

        self._notify(project_id, await self.get(project_id))

    def _inside(self, root: Path, path: str) -> Path:
        """
        Resolve `path` under `root`.

        Raises:
            ChangeSetError: if the resolved path leaves `root`
        """
        root = root.resolve()
        target = (root / path).resolve()
        if target == root or not target.is_relative_to(root):
            raise ChangeSetError(f"Path '{path}' resolves outside the project directory")
        return target

    def _prune_empty_dirs(self, root: Path, folder: Path):
        while folder != root and folder.is_dir() and not any(folder.iterdir()):
            folder.rmdir()
            folder = folder.parent

    def _write_project_fields(self, root: Path, fields: dict):
        path = root / INTERNAL_DIR / PROJECT_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(fields, indent=2), encoding="utf-8")

    async def get_project(self, project_id: str) -> dict:
        root = self._require(project_id)
        path = root / INTERNAL_DIR / PROJECT_FILE
        fields = {"name": project_id}
        if path.exists():
            try:
                fields.update(json.loads(path.read_text(encoding="utf-8")))
            except json.JSONDecodeError:
                logger.warning("Ignoring corrupt project metadata at %s", path)
        return fields

    async def append(self, project_id: str, message: ChatMessage) -> None:
        path = self._require(project_id) / INTERNAL_DIR / CHAT_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(message.to_dict()) + "\n")

    async def chat_history(self, project_id: str) -> list[ChatMessage]:
        path = self._require(project_id) / INTERNAL_DIR / CHAT_FILE
        if not path.exists():
            return []
        messages = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                messages.append(ChatMessage.from_dict(json.loads(line)))
        return messages

    async def delete_project(self, project_id: str) -> None:
        shutil.rmtree(self._require(project_id))
        self._subscribers.pop(project_id, None)

    async def copy_project(self, project_id: str, new_name: str) -> str:
        source = self._require(project_id)
        new_id = normalize_path(new_name).replace("/", "-").strip(".") or f"{project_id}-copy"
        if self.project_dir(new_id).exists():
            new_id = f"{new_id}-{uuid.uuid4().hex[:6]}"
        shutil.copytree(source, self.project_dir(new_id))
        fields = await self.get_project(new_id)
        fields["name"] = new_name
        self._write_project_fields(self.project_dir(new_id), fields)
        return new_id

    async def rename_project(self, project_id: str, new_name: str) -> None:
        root = self._require(project_id)
        fields = await self.get_project(project_id)
        fields["name"] = new_name
        self._write_project_fields(root, fields)

    async def clear_chat_history(self, project_id: str) -> None:
        path = self._require(project_id) / INTERNAL_DIR / CHAT_FILE
        if path.exists():
            path.unlink()
