"""
Modification Plan Protocol

Two-phase editing:

1. propose_plan(): one model call turns a request into a Plan (reasoning
   plus the paths each operation will touch, no content)
2. approve_plan(): a second call expands the plan into a ChangeSet limited
   to the plan's paths, the applier commits it, and a third call summarizes
   the work into the memory log

Plan lifecycle:
    pending -> executing -> approved
    executing -> pending      (execution failed; can be retried)
    pending -> rejected

Plans may instead carry a special action (delete/copy/rename the project,
clear chat history) that bypasses file changes and requires confirmation.
"""

import inspect
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from .applier import ApplyResult, ChangeSetApplier
from .changeset import ChangeSet, PathMove
from .config import DevPilotConfig
from .errors import ChangeSetError, ParseFailure, PlanStateError
from .file_store import FileNode, is_descendant, normalize_path
from .memory_log import append_entry, format_memory_context, read_memory
from .prompts import EXECUTE_PLAN_PROMPT, PLAN_PROMPT, PLAN_SUMMARY_PROMPT, files_json

logger = logging.getLogger(__name__)


class PlanStatus(Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    APPROVED = "approved"
    REJECTED = "rejected"


ALLOWED_TRANSITIONS = {
    PlanStatus.PENDING: {PlanStatus.EXECUTING, PlanStatus.REJECTED},
    PlanStatus.EXECUTING: {PlanStatus.APPROVED, PlanStatus.PENDING},
    PlanStatus.APPROVED: set(),
    PlanStatus.REJECTED: set(),
}


class SpecialActionType(Enum):
    DELETE_PROJECT = "DELETE_PROJECT"
    COPY_PROJECT = "COPY_PROJECT"
    RENAME_PROJECT = "RENAME_PROJECT"
    CLEAR_CHAT_HISTORY = "CLEAR_CHAT_HISTORY"


@dataclass
class SpecialAction:
    """A project-level side effect outside normal file edits."""
    action: SpecialActionType
    payload: dict = field(default_factory=dict)
    confirmation_prompt: Optional[str] = None

    @property
    def prompt(self) -> str:
        return self.confirmation_prompt or f"Are you sure you want to perform the action: {self.action.value}?"

    @property
    def new_name(self) -> Optional[str]:
        name = self.payload.get("newName") or self.payload.get("new_name")
        return str(name) if name else None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"action": self.action.value}
        if self.payload:
            data["payload"] = dict(self.payload)
        if self.confirmation_prompt:
            data["confirmation_prompt"] = self.confirmation_prompt
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "SpecialAction":
        if not isinstance(data, dict):
            raise ParseFailure(f"special_action must be an object, got {type(data).__name__}", text=str(data))
        try:
            action = SpecialActionType(str(data.get("action", "")).upper())
        except ValueError:
            raise ParseFailure(f"Unknown special action: {data.get('action')!r}", text=json.dumps(data))
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            payload = {"value": payload}
        return cls(action=action, payload=payload, confirmation_prompt=data.get("confirmation_prompt"))


def _path_names(value: Any, key: str) -> list[str]:
    # Models sometimes send {path: ...} maps where a list is expected
    if value is None:
        return []
    if isinstance(value, dict):
        value = list(value)
    if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
        raise ParseFailure(f"plan.{key} must be a list of paths", text=json.dumps(value))
    return [normalize_path(p) for p in value if normalize_path(p)]


def _path_pairs(value: Any, key: str) -> list[PathMove]:
    if value is None:
        return []
    try:
        return getattr(ChangeSet.from_dict({key: value}), key)
    except ChangeSetError as e:
        raise ParseFailure(f"plan.{key} is malformed: {e}", text=json.dumps(value))


@dataclass
class PlanOperations:
    """Paths each operation of a plan will touch. No content."""
    create: list[str] = field(default_factory=list)
    update: list[str] = field(default_factory=list)
    delete: list[str] = field(default_factory=list)
    move: list[PathMove] = field(default_factory=list)
    copy: list[PathMove] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.create or self.update or self.delete or self.move or self.copy)

    def paths(self) -> set[str]:
        """Every path the plan names, including move/copy sources and targets."""
        paths = set(self.create) | set(self.update) | set(self.delete)
        for op in self.move + self.copy:
            paths.add(op.from_path)
            paths.add(op.to_path)
        return paths

    def to_dict(self) -> dict:
        data: dict[str, Any] = {}
        for key in ("create", "update", "delete"):
            if getattr(self, key):
                data[key] = list(getattr(self, key))
        if self.move:
            data["move"] = [op.to_dict() for op in self.move]
        if self.copy:
            data["copy"] = [op.to_dict() for op in self.copy]
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "PlanOperations":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ParseFailure(f"plan must be an object, got {type(data).__name__}", text=str(data))
        return cls(
            create=_path_names(data.get("create"), "create"),
            update=_path_names(data.get("update"), "update"),
            delete=_path_names(data.get("delete"), "delete"),
            move=_path_pairs(data.get("move"), "move"),
            copy=_path_pairs(data.get("copy"), "copy"),
        )


@dataclass
class Plan:
    """A proposed, not-yet-executed set of file operations plus rationale."""
    thoughts: str = ""
    reasoning: str = ""
    operations: PlanOperations = field(default_factory=PlanOperations)
    special_action: Optional[SpecialAction] = None
    request: str = ""
    status: PlanStatus = PlanStatus.PENDING
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def needs_clarification(self) -> bool:
        """True when the model asked a question instead of planning."""
        return self.operations.is_empty and self.special_action is None

    def transition(self, new_status: PlanStatus):
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise PlanStateError(f"Cannot move plan from {self.status.value} to {new_status.value}")
        self.status = new_status

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "thoughts": self.thoughts,
            "reasoning": self.reasoning,
            "plan": self.operations.to_dict(),
        }
        if self.special_action:
            data["special_action"] = self.special_action.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Any, request: str = "") -> "Plan":
        if not isinstance(data, dict):
            raise ParseFailure(f"Plan must be a JSON object, got {type(data).__name__}", text=str(data))
        special = data.get("special_action")
        return cls(
            thoughts=str(data.get("thoughts") or ""),
            reasoning=str(data.get("reasoning") or ""),
            operations=PlanOperations.from_dict(data.get("plan")),
            special_action=SpecialAction.from_dict(special) if special else None,
            request=request,
        )


# =============================================================================
# Project-level actions
# =============================================================================

class ProjectActions(ABC):
    """Handler for special actions."""

    @abstractmethod
    async def delete_project(self) -> None:
        pass

    @abstractmethod
    async def copy_project(self, new_name: str) -> None:
        pass

    @abstractmethod
    async def rename_project(self, new_name: str) -> None:
        pass

    @abstractmethod
    async def clear_chat_history(self) -> None:
        pass


class StoreProjectActions(ProjectActions):
    """Routes special actions to a FileStore for one project."""

    def __init__(self, store, project_id: str):
        self.store = store
        self.project_id = project_id
        self.copied_project_id: Optional[str] = None

    async def delete_project(self) -> None:
        await self.store.delete_project(self.project_id)

    async def copy_project(self, new_name: str) -> None:
        self.copied_project_id = await self.store.copy_project(self.project_id, new_name)

    async def rename_project(self, new_name: str) -> None:
        await self.store.rename_project(self.project_id, new_name)

    async def clear_chat_history(self) -> None:
        await self.store.clear_chat_history(self.project_id)


Confirm = Callable[[str], Union[bool, Awaitable[bool]]]


# =============================================================================
# Planner
# =============================================================================

class ModificationPlanner:
    """
    Proposes and executes modification plans.

    Usage:
        planner = ModificationPlanner(model_call, parser, config,
                                      store=store, project_id="p1")
        plan = await planner.propose_plan("Add a footer", files)
        changes = await planner.approve_plan(plan, files)
    """

    def __init__(
        self,
        model_call,
        parser,
        config: DevPilotConfig,
        store=None,
        project_id: Optional[str] = None,
        applier: Optional[ChangeSetApplier] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.model_call = model_call
        self.parser = parser
        self.config = config
        self.store = store
        self.project_id = project_id
        self.applier = applier or ChangeSetApplier(
            icon_path=config.icon_path,
            conflict_policy=config.conflict_policy,
        )
        self.provider = provider
        self.model = model
        self.on_status = on_status or (lambda x: None)

        self.last_result: Optional[ApplyResult] = None

    def _log(self, message: str):
        self.on_status(message)

    async def _call(self, prompt: str, function_name: str) -> str:
        return await self.model_call.call(prompt, self.provider, self.model, function_name=function_name)

    async def propose_plan(
        self,
        request: str,
        files: list[FileNode],
        memory: Optional[str] = None,
    ) -> Plan:
        """One model call: turn a user request into a pending Plan."""
        if memory is None:
            memory = read_memory(files, self.config.memory_path)

        self._log("[Plan] Generating modification plan...")
        prompt = PLAN_PROMPT.format(
            memory=format_memory_context(memory, self.config.memory_excerpt_chars),
            files=files_json(files),
            request=request,
            icon_path=self.config.icon_path,
        )
        text = await self._call(prompt, "generate_modification_plan")
        plan = Plan.from_dict(await self.parser.parse(text, expect=dict), request=request)

        if plan.special_action:
            self._log(f"[Plan] Special action requested: {plan.special_action.action.value}")
        elif plan.needs_clarification:
            self._log("[Plan] Model asked for clarification")
        else:
            self._log(f"[Plan] Plan touches {len(plan.operations.paths())} path(s)")
        return plan

    async def execute_plan(self, plan: Plan, files: list[FileNode]) -> ChangeSet:
        """
        Expand a plan into a ChangeSet. Entries for paths the plan does not
        name are dropped.
        """
        prompt = EXECUTE_PLAN_PROMPT.format(
            request=plan.request,
            plan=json.dumps(plan.to_dict(), indent=2),
            files=files_json(files),
            icon_path=self.config.icon_path,
        )
        text = await self._call(prompt, "execute_modification_plan")
        data = await self.parser.parse(text, expect=dict)

        changes, dropped = ChangeSet.from_dict(data).restrict_to(plan.operations.paths())
        if dropped:
            logger.warning("Dropped change-set entries outside the plan: %s", ", ".join(dropped))
            self._log(f"[Plan] Ignored {len(dropped)} path(s) not in the approved plan")
        return self._align_with_plan(plan, changes, files)

    def _align_with_plan(self, plan: Plan, changes: ChangeSet, files: list[FileNode]) -> ChangeSet:
        """Move updates of files the plan creates back under `create`; report updates of missing files."""
        existing = {node.path for node in files if node.is_file}
        arriving = {op.to_path for op in changes.move + changes.copy}
        planned = set(plan.operations.create)
        for path in list(changes.update):
            if path in existing or any(path == t or is_descendant(path, t) for t in arriving):
                continue
            if path in planned:
                changes.create[path] = changes.update.pop(path)
                self._log(f"[Plan] '{path}' is a new file; treating its update as a create")
            else:
                self._log(f"[Plan] '{path}' does not exist; its update will be skipped")
        return changes

    async def approve_plan(self, plan: Plan, files: list[FileNode]) -> ChangeSet:
        """
        Execute and commit an approved plan.

        On any failure the plan returns to pending and the error propagates.

        Returns:
            The ChangeSet that was applied
        """
        if plan.special_action is not None:
            raise PlanStateError("Plans with a special action are performed with perform_special_action()")
        if plan.needs_clarification:
            raise PlanStateError("Plan has no operations to execute")

        plan.transition(PlanStatus.EXECUTING)
        try:
            self._log("[Plan] Generating code for the approved plan...")
            changes = await self.execute_plan(plan, files)

            result = self.applier.apply(files, changes)
            for message in result.skipped:
                self._log(f"[Plan] Skipped: {message}")
            await self._commit(result)
            self._log(f"[Plan] Applied {len(result.operations)} operation(s)")
        except Exception as e:
            plan.transition(PlanStatus.PENDING)
            self._log(f"[Plan] Execution failed: {e}")
            raise

        await self._remember(plan, changes, result.files)
        plan.transition(PlanStatus.APPROVED)
        return changes

    async def _commit(self, result: ApplyResult):
        self.last_result = result
        if self.store is not None and self.project_id and result.operations:
            await self.store.apply_batch(self.project_id, result.operations)

    async def _remember(self, plan: Plan, changes: ChangeSet, files: list[FileNode]):
        """Append a summary of applied work to the memory log."""
        def listing(paths) -> str:
            return ", ".join(paths) or "None"

        prompt = PLAN_SUMMARY_PROMPT.format(
            request=plan.request,
            reasoning=plan.reasoning,
            created=listing(changes.create),
            updated=listing(changes.update),
            deleted=listing(changes.delete),
            moved=listing(f"{op.from_path} -> {op.to_path}" for op in changes.move),
            copied=listing(f"{op.from_path} -> {op.to_path}" for op in changes.copy),
        )
        # The change-set is already committed; a failed summary does not undo it
        try:
            summary = await self._call(prompt, "summarize_changes_for_memory")
            memory_changes = append_entry(files, summary, self.config.memory_path)
            await self._commit(self.applier.apply(files, memory_changes))
        except Exception as e:
            logger.warning("Failed to update memory log: %s", e)
            self._log(f"[Plan] Memory log not updated: {e}")

    def reject_plan(self, plan: Plan):
        plan.transition(PlanStatus.REJECTED)
        self._log("[Plan] Plan rejected")

    async def perform_special_action(
        self,
        plan: Plan,
        handler: ProjectActions,
        confirm: Confirm,
    ) -> bool:
        """
        Run a plan's special action after explicit confirmation.

        Returns:
            True if the action ran, False if the user declined
        """
        special = plan.special_action
        if special is None:
            raise PlanStateError("Plan has no special action")

        answer = confirm(special.prompt)
        if inspect.isawaitable(answer):
            answer = await answer
        if not answer:
            plan.transition(PlanStatus.REJECTED)
            self._log(f"[Plan] {special.action.value} cancelled by user")
            return False

        if special.action in (SpecialActionType.COPY_PROJECT, SpecialActionType.RENAME_PROJECT) and not special.new_name:
            raise PlanStateError(f"{special.action.value} requires a newName payload")

        plan.transition(PlanStatus.EXECUTING)
        try:
            if special.action == SpecialActionType.DELETE_PROJECT:
                await handler.delete_project()
            elif special.action == SpecialActionType.COPY_PROJECT:
                await handler.copy_project(special.new_name)
            elif special.action == SpecialActionType.RENAME_PROJECT:
                await handler.rename_project(special.new_name)
            elif special.action == SpecialActionType.CLEAR_CHAT_HISTORY:
                await handler.clear_chat_history()
        except Exception:
            plan.transition(PlanStatus.PENDING)
            raise

        plan.transition(PlanStatus.APPROVED)
        self._log(f"[Plan] {special.action.value} completed")
        return True
