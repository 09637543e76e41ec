"""
Change-Set Applier

Turns a ChangeSet plus the current file list into the ordered persistence
operations a backing store commits as one batch, and the file set that
results from them.

Ordering: move, copy, delete, update, create. A path that is both deleted
and updated ends up deleted. Updates and creates address paths as they
stand after moves and deletes have been resolved.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Union

from .changeset import ChangeSet
from .errors import ChangeSetError
from .file_store import FileNode, FileType, is_descendant, new_node_id, node_name

logger = logging.getLogger(__name__)

DEFAULT_ICON_PATH = "public/icon.svg"
ICON_FIELD = "icon_svg"

BEST_EFFORT = "best_effort"
STRICT = "strict"


# =============================================================================
# Persistence operations
# =============================================================================

@dataclass(frozen=True)
class SetNode:
    """Insert a new node."""
    node: FileNode


@dataclass(frozen=True)
class UpdateNode:
    """Overwrite some fields (`path`, `name`, `content`) of an existing node."""
    node_id: str
    fields: dict


@dataclass(frozen=True)
class DeleteNode:
    node_id: str


@dataclass(frozen=True)
class SetProjectField:
    """Write a project-level metadata field."""
    name: str
    value: Any


@dataclass(frozen=True)
class DeleteProjectField:
    name: str


PersistenceOp = Union[SetNode, UpdateNode, DeleteNode, SetProjectField, DeleteProjectField]


@dataclass
class ApplyResult:
    """Outcome of applying a change-set in memory."""
    operations: list = field(default_factory=list)
    files: list[FileNode] = field(default_factory=list)
    project_updates: dict[str, Optional[str]] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.operations


# =============================================================================
# Applier
# =============================================================================

class ChangeSetApplier:
    """
    Resolves a change-set against a file list.

    Usage:
        applier = ChangeSetApplier(icon_path="public/icon.svg")
        result = applier.apply(files, change_set)
        store.apply_batch(project_id, result.operations)
    """

    def __init__(
        self,
        icon_path: str = DEFAULT_ICON_PATH,
        conflict_policy: str = BEST_EFFORT,
        id_factory: Callable[[], str] = new_node_id,
    ):
        if conflict_policy not in (BEST_EFFORT, STRICT):
            raise ValueError(f"Unknown conflict policy: {conflict_policy}")
        self.icon_path = icon_path
        self.conflict_policy = conflict_policy
        self.id_factory = id_factory

    def apply(self, files: Iterable[FileNode], change_set: ChangeSet) -> ApplyResult:
        """
        Apply `change_set` to a copy of `files`.

        Raises:
            ChangeSetError: under the strict policy, if the change-set has
                racing operations
        """
        if self.conflict_policy == STRICT:
            problems = change_set.conflicts()
            if problems:
                raise ChangeSetError("Conflicting change-set: " + "; ".join(problems))

        self._nodes = [node.copy() for node in files]
        self._result = ApplyResult()

        for op in change_set.move:
            self._move(op.from_path, op.to_path)
        for op in change_set.copy:
            self._copy(op.from_path, op.to_path)

        deleted = set(change_set.delete)
        for path in change_set.delete:
            self._delete(path)

        for path, content in change_set.update.items():
            if path in deleted:
                self._skip(f"update of '{path}' ignored: path is deleted in the same change-set")
                continue
            self._update(path, content)

        for path, content in change_set.create.items():
            self._create(path, content)

        self._mirror_icon(change_set, deleted)

        result = self._result
        result.files = self._nodes
        del self._nodes, self._result
        return result

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _find(self, path: str) -> Optional[FileNode]:
        for node in self._nodes:
            if node.path == path:
                return node
        return None

    def _subtree(self, path: str, node: Optional[FileNode]) -> list[FileNode]:
        """The node at `path` plus its descendants when it is (or implies) a folder."""
        nodes = [node] if node else []
        if node is None or node.is_folder:
            nodes += [n for n in self._nodes if is_descendant(n.path, path)]
        return nodes

    def _occupants(self, path: str) -> list[FileNode]:
        """Nodes at `path` or below it, whether the folder there is explicit or implicit."""
        return [n for n in self._nodes if n.path == path or is_descendant(n.path, path)]

    def _file_ancestor(self, path: str) -> Optional[FileNode]:
        """A file sitting where one of the folders of `path` would be."""
        for node in self._nodes:
            if node.is_file and is_descendant(path, node.path):
                return node
        return None

    def _remove(self, nodes: list[FileNode]):
        doomed = [n.id for n in nodes]
        self._nodes = [n for n in self._nodes if n.id not in doomed]
        for node_id in doomed:
            self._result.operations.append(DeleteNode(node_id))

    def _skip(self, message: str):
        logger.warning(message)
        self._result.skipped.append(message)

    def _move(self, source: str, target: str):
        node = self._find(source)
        moving = self._subtree(source, node)
        if not moving:
            self._skip(f"move of '{source}' ignored: source not found")
            return
        if source == target:
            return
        if is_descendant(target, source) or is_descendant(source, target):
            self._skip(f"move of '{source}' ignored: source and target '{target}' are nested")
            return
        blocker = self._file_ancestor(target)
        if blocker is not None:
            self._skip(f"move of '{source}' ignored: '{blocker.path}' is a file")
            return

        self._remove(self._occupants(target))

        for moved in moving:
            new_path = target + moved.path[len(source):]
            moved.path = new_path
            self._result.operations.append(
                UpdateNode(moved.id, {"path": new_path, "name": node_name(new_path)})
            )

    def _copy(self, source: str, target: str):
        node = self._find(source)
        if node is None or not node.is_file:
            self._skip(f"copy of '{source}' ignored: source is not an existing file")
            return
        self._put(target, node.content or "", "copy to")

    def _delete(self, path: str):
        node = self._find(path)
        doomed = self._subtree(path, node)
        if not doomed:
            self._skip(f"delete of '{path}' ignored: path not found")
            return
        self._remove(doomed)

    def _update(self, path: str, content: str):
        node = self._find(path)
        if node is None or not node.is_file:
            self._skip(f"update of '{path}' ignored: no file at that path")
            return
        self._write(node, content)

    def _create(self, path: str, content: str):
        self._put(path, content, "create of")

    def _put(self, path: str, content: str, verb: str):
        """Write a file at `path`, overwriting a file there but never a folder."""
        existing = self._find(path)
        if existing is not None and existing.is_file:
            self._write(existing, content)
            return
        if existing is not None or self._occupants(path):
            self._skip(f"{verb} '{path}' ignored: a folder already exists there")
            return
        blocker = self._file_ancestor(path)
        if blocker is not None:
            self._skip(f"{verb} '{path}' ignored: '{blocker.path}' is a file")
            return
        self._insert(path, content)

    def _write(self, node: FileNode, content: str):
        node.content = content
        self._result.operations.append(UpdateNode(node.id, {"content": content}))

    def _insert(self, path: str, content: str):
        node = FileNode(id=self.id_factory(), path=path, type=FileType.FILE, content=content)
        self._nodes.append(node)
        self._result.operations.append(SetNode(node.copy()))

    def _mirror_icon(self, change_set: ChangeSet, deleted: set[str]):
        icon = self.icon_path
        if icon in change_set.create:
            value = change_set.create[icon]
        elif icon in change_set.update and icon not in deleted:
            value = change_set.update[icon]
        elif icon in deleted:
            self._result.operations.append(DeleteProjectField(ICON_FIELD))
            self._result.project_updates[ICON_FIELD] = None
            return
        else:
            return
        self._result.operations.append(SetProjectField(ICON_FIELD, value))
        self._result.project_updates[ICON_FIELD] = value


def apply_changes(
    files: Iterable[FileNode],
    change_set: ChangeSet,
    icon_path: str = DEFAULT_ICON_PATH,
    conflict_policy: str = BEST_EFFORT,
) -> ApplyResult:
    """Convenience wrapper around `ChangeSetApplier.apply`."""
    return ChangeSetApplier(icon_path=icon_path, conflict_policy=conflict_policy).apply(files, change_set)


def replay(files: Iterable[FileNode], operations: Iterable) -> tuple[list[FileNode], dict]:
    """
    Replay node operations onto a file list.

    Returns the new file list and the project field changes (None = removed).
    Used by stores to commit a batch produced by the applier.

    Raises:
        ChangeSetError: if an operation references a node that does not exist
    """
    nodes = {node.id: node.copy() for node in files}
    project_fields: dict[str, Optional[str]] = {}

    for op in operations:
        if isinstance(op, SetNode):
            nodes[op.node.id] = op.node.copy()
        elif isinstance(op, UpdateNode):
            if op.node_id not in nodes:
                raise ChangeSetError(f"Cannot update unknown node {op.node_id}")
            node = nodes[op.node_id]
            if "path" in op.fields:
                node.path = op.fields["path"]
            if "content" in op.fields:
                node.content = op.fields["content"]
        elif isinstance(op, DeleteNode):
            if op.node_id not in nodes:
                raise ChangeSetError(f"Cannot delete unknown node {op.node_id}")
            del nodes[op.node_id]
        elif isinstance(op, SetProjectField):
            project_fields[op.name] = op.value
        elif isinstance(op, DeleteProjectField):
            project_fields[op.name] = None
        else:
            raise ChangeSetError(f"Unknown persistence operation: {op!r}")

    return list(nodes.values()), project_fields
