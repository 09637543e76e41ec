"""
Change-Sets

A ChangeSet is the unit of mutation for a project's virtual file tree:
creations and updates carry full file contents, deletions name paths,
moves and copies pair a source with a target.

Model output is untrusted, so `ChangeSet.from_dict` validates the shape
of every key before anything reaches the applier.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Iterable

from .errors import ChangeSetError
from .file_store import FileNode, is_safe_path, normalize_path, to_map


@dataclass(frozen=True)
class PathMove:
    """A `from` -> `to` pair, used for both move and copy."""
    from_path: str
    to_path: str

    def to_dict(self) -> dict:
        return {"from": self.from_path, "to": self.to_path}


@dataclass
class ChangeSet:
    """Batch description of file creations, updates, deletions, moves and copies."""
    create: dict[str, str] = field(default_factory=dict)
    update: dict[str, str] = field(default_factory=dict)
    delete: list[str] = field(default_factory=list)
    move: list[PathMove] = field(default_factory=list)
    copy: list[PathMove] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.create or self.update or self.delete or self.move or self.copy)

    def touched_paths(self) -> set[str]:
        """Every path the change-set reads from or writes to."""
        paths = set(self.create) | set(self.update) | set(self.delete)
        for op in self.move + self.copy:
            paths.add(op.from_path)
            paths.add(op.to_path)
        return paths

    def written_paths(self) -> set[str]:
        """Paths whose content or existence changes after apply."""
        paths = set(self.create) | set(self.update) | set(self.delete)
        for op in self.move:
            paths.add(op.from_path)
            paths.add(op.to_path)
        for op in self.copy:
            paths.add(op.to_path)
        return paths

    def conflicts(self) -> list[str]:
        """
        Describe operations that race within this change-set.

        The applier resolves these by its fixed ordering; this only reports
        them so a strict caller can refuse the whole batch.
        """
        problems = []
        move_sources = [op.from_path for op in self.move]
        move_targets = {op.to_path for op in self.move}
        deleted = set(self.delete)

        for path in sorted(set(self.update) & deleted):
            problems.append(f"'{path}' is both updated and deleted")
        for path in sorted(set(self.create) & deleted):
            problems.append(f"'{path}' is both created and deleted")
        for path in sorted(set(self.create) & set(self.update)):
            problems.append(f"'{path}' is both created and updated")
        for path in sorted(set(move_sources) & set(self.update)):
            problems.append(f"'{path}' is moved away and also updated")
        for path in sorted(move_targets & set(self.update)):
            problems.append(f"'{path}' is a move target and also updated")
        for path in sorted(set(move_sources) & deleted):
            problems.append(f"'{path}' is both moved and deleted")
        for path in sorted({p for p in move_sources if move_sources.count(p) > 1}):
            problems.append(f"'{path}' is moved more than once")

        targets = [op.to_path for op in self.move + self.copy] + list(self.create)
        for path in sorted({p for p in targets if targets.count(p) > 1}):
            problems.append(f"'{path}' is the target of more than one operation")
        return problems

    def merge(self, other: "ChangeSet") -> "ChangeSet":
        """Combine two change-sets; entries in `other` win on equal keys."""
        return ChangeSet(
            create={**self.create, **other.create},
            update={**self.update, **other.update},
            delete=self.delete + [p for p in other.delete if p not in self.delete],
            move=self.move + other.move,
            copy=self.copy + other.copy,
        )

    def restrict_to(self, allowed: Iterable[str]) -> tuple["ChangeSet", list[str]]:
        """
        Keep only entries whose paths are in `allowed`.

        Returns the restricted change-set and the sorted list of dropped paths.
        """
        allowed = {normalize_path(p) for p in allowed}
        dropped = set()

        def keep(path: str) -> bool:
            if path in allowed:
                return True
            dropped.add(path)
            return False

        def keep_pair(op: PathMove) -> bool:
            kept_from, kept_to = keep(op.from_path), keep(op.to_path)
            return kept_from and kept_to

        restricted = ChangeSet(
            create={p: c for p, c in self.create.items() if keep(p)},
            update={p: c for p, c in self.update.items() if keep(p)},
            delete=[p for p in self.delete if keep(p)],
            move=[op for op in self.move if keep_pair(op)],
            copy=[op for op in self.copy if keep_pair(op)],
        )
        return restricted, sorted(dropped)

    def to_dict(self) -> dict:
        """Serialize, omitting empty operation kinds."""
        data: dict[str, Any] = {}
        if self.create:
            data["create"] = dict(self.create)
        if self.update:
            data["update"] = dict(self.update)
        if self.delete:
            data["delete"] = list(self.delete)
        if self.move:
            data["move"] = [op.to_dict() for op in self.move]
        if self.copy:
            data["copy"] = [op.to_dict() for op in self.copy]
        return data

    def to_json(self, indent: int | None = None) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: Any) -> "ChangeSet":
        """
        Build a ChangeSet from decoded JSON, validating every key.

        Unknown top-level keys are ignored; `null` values count as absent.

        Raises:
            ChangeSetError: if a known key has the wrong shape
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ChangeSetError(f"Change-set must be a JSON object, got {type(data).__name__}")

        return cls(
            create=_path_map(data.get("create"), "create"),
            update=_path_map(data.get("update"), "update"),
            delete=_path_list(data.get("delete"), "delete"),
            move=_path_moves(data.get("move"), "move"),
            copy=_path_moves(data.get("copy"), "copy"),
        )

    @classmethod
    def from_json(cls, text: str) -> "ChangeSet":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ChangeSetError(f"Failed to parse change-set payload: {e}")
        return cls.from_dict(data)


def _checked_path(path: Any, key: str) -> str:
    if not isinstance(path, str) or not normalize_path(path):
        raise ChangeSetError(f"'{key}' contains an invalid path: {path!r}")
    if not is_safe_path(path):
        raise ChangeSetError(f"'{key}' path must stay inside the project: {path!r}")
    return normalize_path(path)


def _path_map(value: Any, key: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ChangeSetError(f"'{key}' must map paths to file contents")
    result = {}
    for path, content in value.items():
        path = _checked_path(path, key)
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise ChangeSetError(f"'{key}' content for '{path}' must be a string")
        result[path] = content
    return result


def _path_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ChangeSetError(f"'{key}' must be a list of paths")
    paths = []
    for path in value:
        path = _checked_path(path, key)
        if path not in paths:
            paths.append(path)
    return paths


def _path_moves(value: Any, key: str) -> list[PathMove]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ChangeSetError(f"'{key}' must be a list of {{from, to}} objects")
    moves = []
    for item in value:
        if not isinstance(item, dict):
            raise ChangeSetError(f"'{key}' entries must be {{from, to}} objects")
        source, target = item.get("from"), item.get("to")
        if not isinstance(source, str) or not isinstance(target, str):
            raise ChangeSetError(f"'{key}' entry is missing 'from' or 'to': {item!r}")
        if not normalize_path(source) or not normalize_path(target):
            raise ChangeSetError(f"'{key}' entry has an empty path: {item!r}")
        moves.append(PathMove(_checked_path(source, key), _checked_path(target, key)))
    return moves


def diff_files(before: Iterable[FileNode], after: Iterable[FileNode]) -> ChangeSet:
    """
    Derive the create/update/delete change-set that turns `before` into `after`.

    Only file contents are compared; folder nodes are ignored.
    """
    old, new = to_map(before), to_map(after)
    return ChangeSet(
        create={p: c for p, c in new.items() if p not in old},
        update={p: c for p, c in new.items() if p in old and old[p] != c},
        delete=[p for p in old if p not in new],
    )
