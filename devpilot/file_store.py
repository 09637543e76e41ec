"""
Virtual File Store

In-memory representation of a project's files and folders, plus the pure
projections used to serialize project context into model prompts.

Folders are implicit: any prefix of a file path is a folder. Explicit
folder nodes exist only to track empty folders.
"""

import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterable, Optional


class FileType(Enum):
    """Kind of node in the virtual tree."""
    FILE = "file"
    FOLDER = "folder"


def normalize_path(path: str) -> str:
    """Collapse a path to `a/b/c` form: no leading/trailing or doubled slashes."""
    return "/".join(segment for segment in path.replace("\\", "/").split("/") if segment)


def is_safe_path(path: str) -> bool:
    """True for a non-empty relative path with no `.` or `..` segments."""
    normalized = normalize_path(path)
    return bool(normalized) and not any(s in (".", "..") for s in normalized.split("/"))


def node_name(path: str) -> str:
    """Last segment of a path."""
    return normalize_path(path).rsplit("/", 1)[-1]


def is_descendant(path: str, ancestor: str) -> bool:
    """True when `path` lies strictly below `ancestor`."""
    return path.startswith(ancestor + "/")


def new_node_id() -> str:
    return uuid.uuid4().hex


@dataclass
class FileNode:
    """One file or folder. `id` survives renames; `path` is unique per project."""
    id: str
    path: str
    type: FileType = FileType.FILE
    content: Optional[str] = None

    def __post_init__(self):
        self.path = normalize_path(self.path)
        if isinstance(self.type, str):
            self.type = FileType(self.type)
        if self.type == FileType.FOLDER:
            self.content = None
        elif self.content is None:
            self.content = ""

    @property
    def name(self) -> str:
        return node_name(self.path)

    @property
    def is_file(self) -> bool:
        return self.type == FileType.FILE

    @property
    def is_folder(self) -> bool:
        return self.type == FileType.FOLDER

    def copy(self, **changes) -> "FileNode":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "type": self.type.value,
        }
        if self.is_file:
            data["content"] = self.content
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "FileNode":
        return cls(
            id=data["id"],
            path=data["path"],
            type=FileType(data.get("type", "file")),
            content=data.get("content"),
        )


def to_map(nodes: Iterable[FileNode]) -> dict[str, str]:
    """Project nodes to a path -> content map. Files only."""
    return {node.path: node.content or "" for node in nodes if node.is_file}


def folder_paths(nodes: Iterable[FileNode]) -> set[str]:
    """All folders: explicit folder nodes plus every prefix of a file path."""
    folders = set()
    for node in nodes:
        if node.is_folder:
            folders.add(node.path)
        segments = node.path.split("/")[:-1]
        for i in range(1, len(segments) + 1):
            folders.add("/".join(segments[:i]))
    return folders


def from_map(
    mapping: dict[str, str],
    id_factory: Callable[[], str] = new_node_id,
) -> list[FileNode]:
    """Build file nodes from a path -> content map."""
    return [FileNode(id=id_factory(), path=path, content=content) for path, content in mapping.items()]


def find_by_path(nodes: Iterable[FileNode], path: str) -> Optional[FileNode]:
    path = normalize_path(path)
    for node in nodes:
        if node.path == path:
            return node
    return None


def children_of(nodes: Iterable[FileNode], folder_path: str) -> list[FileNode]:
    """Direct children of a folder (one segment deeper)."""
    folder_path = normalize_path(folder_path)
    prefix = folder_path + "/" if folder_path else ""
    return [
        node for node in nodes
        if node.path.startswith(prefix) and "/" not in node.path[len(prefix):]
    ]


def descendants_of(nodes: Iterable[FileNode], folder_path: str) -> list[FileNode]:
    folder_path = normalize_path(folder_path)
    return [node for node in nodes if is_descendant(node.path, folder_path)]
