"""
Action-Queue Executor

A multi-agent pipeline that drives external side effects one step at a time:

- Planner: turns the objective into an ordered list of actions ending in FINISH
- Coder: writes the ChangeSet for every MODIFY_FILES action up front
- Reviewer: adds a one-sentence justification to every action

The runner then consumes the queue strictly in order. Exactly one action is
current at a time; pause/resume/stop are honoured between actions. Any
failure halts the queue without undoing completed actions.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from .applier import ChangeSetApplier
from .changeset import ChangeSet
from .config import DevPilotConfig
from .errors import ActionFailed, ChangeSetError, DevPilotError, ParseFailure
from .file_store import FileNode
from .prompts import ACTION_CODER_PROMPT, ACTION_PLANNER_PROMPT, ACTION_REVIEWER_PROMPT, files_json
from .ui import UiAffordances

logger = logging.getLogger(__name__)


class ActionType(Enum):
    CLICK_ELEMENT = "CLICK_ELEMENT"
    TYPE_IN_INPUT = "TYPE_IN_INPUT"
    SELECT_OPTION = "SELECT_OPTION"
    MODIFY_FILES = "MODIFY_FILES"
    ASK_USER = "ASK_USER"
    FINISH = "FINISH"


@dataclass
class GodModeAction:
    """One step of the queue."""
    type: ActionType
    selector: Optional[str] = None
    payload: Any = None
    reasoning: str = ""

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"type": self.type.value, "reasoning": self.reasoning}
        if self.selector is not None:
            data["selector"] = self.selector
        if self.payload not in (None, ""):
            data["payload"] = self.payload
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "GodModeAction":
        if not isinstance(data, dict):
            raise ParseFailure(f"Action must be an object, got {type(data).__name__}", text=str(data))
        try:
            action_type = ActionType(str(data.get("type", "")).upper())
        except ValueError:
            raise ParseFailure(f"Unknown action type: {data.get('type')!r}", text=json.dumps(data))
        selector = data.get("selector")
        return cls(
            type=action_type,
            selector=str(selector) if selector else None,
            payload=data.get("payload"),
            reasoning=str(data.get("reasoning") or ""),
        )


class EventKind(Enum):
    PLANNING = "planning"
    PLANNED = "planned"
    STARTED = "started"
    COMPLETED = "completed"
    PAUSED = "paused"
    RESUMED = "resumed"
    STOPPED = "stopped"
    FAILED = "failed"
    FINISHED = "finished"


@dataclass
class ActionEvent:
    """Progress event emitted by the runner."""
    kind: EventKind
    action: Optional[GodModeAction] = None
    index: Optional[int] = None
    message: str = ""
    error: Optional[Exception] = None


def normalize_queue(actions: list[GodModeAction]) -> list[GodModeAction]:
    """Drop anything after the first FINISH and append one if missing."""
    queue = []
    for action in actions:
        queue.append(action)
        if action.type == ActionType.FINISH:
            return queue
    queue.append(GodModeAction(ActionType.FINISH, reasoning="All steps are complete."))
    return queue


# =============================================================================
# Planner
# =============================================================================

class ActionPlanner:
    """
    Builds a fully-prepared action queue.

    Usage:
        planner = ActionPlanner(model_call, parser, config)
        actions = await planner.plan("Add a dark mode toggle", files, ui)
    """

    def __init__(self, model_call, parser, config: DevPilotConfig):
        self.model_call = model_call
        self.parser = parser
        self.config = config

    async def plan(
        self,
        objective: str,
        files: list[FileNode],
        affordances: Union[UiAffordances, str, None] = None,
    ) -> list[GodModeAction]:
        if isinstance(affordances, UiAffordances):
            ui_context = affordances.describe()
        else:
            ui_context = affordances or "[]"
        project_files = files_json(files)

        text = await self.model_call.call(
            ACTION_PLANNER_PROMPT.format(objective=objective, files=project_files, ui_context=ui_context),
            self.config.planner_provider,
            self.config.planner_model,
            function_name="god_mode_planner",
        )
        data = await self.parser.parse(text, expect=list)
        if not data:
            raise ParseFailure("Planner returned an empty action plan", text=text)

        actions = normalize_queue([GodModeAction.from_dict(item) for item in data])
        for action in actions:
            intent = action.reasoning
            if action.type == ActionType.MODIFY_FILES:
                action.payload = await self._write_code(intent, project_files)
            review = await self._review(action, intent)
            action.reasoning = f"[{review}] {intent}" if intent else review
        return actions

    async def _write_code(self, intent: str, project_files: str) -> str:
        text = await self.model_call.call(
            ACTION_CODER_PROMPT.format(request=intent, files=project_files),
            self.config.coder_provider,
            self.config.coder_model,
            function_name="god_mode_coder",
        )
        data = await self.parser.parse(text, expect=dict)
        try:
            return ChangeSet.from_dict(data).to_json()
        except ChangeSetError as e:
            raise ParseFailure(f"Coder returned an invalid change-set: {e}", text=text)

    async def _review(self, action: GodModeAction, intent: str) -> str:
        payload = action.payload if isinstance(action.payload, str) else json.dumps(action.payload)
        text = await self.model_call.call(
            ACTION_REVIEWER_PROMPT.format(
                action_type=action.type.value,
                selector=action.selector or "-",
                intent=intent,
                payload=payload[:4000],
            ),
            self.config.reviewer_provider,
            self.config.reviewer_model,
            function_name="god_mode_reviewer",
        )
        return " ".join(text.split())


# =============================================================================
# Runner
# =============================================================================

AskUser = Callable[[str], Union[str, Awaitable[str]]]


class ActionQueueRunner:
    """
    Consumes an action queue one action at a time.

    Usage:
        runner = ActionQueueRunner(planner, config, store=store, project_id="p1",
                                   ask_user=prompt_user)
        async for event in runner.run("Add a dark mode toggle", files, ui):
            print(event.kind.value, event.message)
    """

    def __init__(
        self,
        planner: ActionPlanner,
        config: DevPilotConfig,
        store=None,
        project_id: Optional[str] = None,
        applier: Optional[ChangeSetApplier] = None,
        ask_user: Optional[AskUser] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.planner = planner
        self.config = config
        self.store = store
        self.project_id = project_id
        self.applier = applier or ChangeSetApplier(
            icon_path=config.icon_path,
            conflict_policy=config.conflict_policy,
        )
        self.ask_user = ask_user
        self.sleep = sleep
        self.on_status = on_status or (lambda x: None)

        self.queue: list[GodModeAction] = []
        self.current_index: Optional[int] = None
        self.files: list[FileNode] = []
        self.answers: list[tuple[str, str]] = []
        self.error: Optional[Exception] = None

        self._running = False
        self._stopped = False
        self._resume_event = asyncio.Event()
        self._resume_event.set()

    def _log(self, message: str):
        self.on_status(message)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return not self._resume_event.is_set()

    def pause(self):
        self._resume_event.clear()

    def resume(self):
        self._resume_event.set()

    def stop(self):
        """Abandon the remaining queue. Completed actions are not reverted."""
        self._stopped = True
        self._resume_event.set()

    async def run(
        self,
        objective: str,
        files: list[FileNode],
        ui: Optional[UiAffordances] = None,
    ) -> AsyncIterator[ActionEvent]:
        if self._running:
            raise DevPilotError("An action queue is already running")
        self._running = True
        self._stopped = False
        self.error = None
        self.files = [node.copy() for node in files]
        try:
            yield ActionEvent(EventKind.PLANNING, message="Planning actions...")
            try:
                self.queue = await self.planner.plan(objective, self.files, ui)
            except Exception as e:
                self.error = e
                self._log(f"[Action Queue] Planning failed: {e}")
                yield ActionEvent(EventKind.FAILED, message=str(e), error=e)
                return

            self._log(f"[Action Queue] Planned {len(self.queue)} action(s)")
            yield ActionEvent(EventKind.PLANNED, message=f"{len(self.queue)} actions planned")

            index = 0
            while index < len(self.queue):
                if self.is_paused and not self._stopped:
                    yield ActionEvent(EventKind.PAUSED, index=index, message="Paused")
                    await self._resume_event.wait()
                    if not self._stopped:
                        yield ActionEvent(EventKind.RESUMED, index=index, message="Resumed")

                if not self._stopped:
                    await self.sleep(self.config.action_delay)
                if self._stopped:
                    remaining = len(self.queue) - index
                    self.queue = self.queue[:index]
                    self._log(f"[Action Queue] Stopped; {remaining} action(s) abandoned")
                    yield ActionEvent(EventKind.STOPPED, index=index, message=f"Stopped by user; {remaining} action(s) abandoned")
                    return

                action = self.queue[index]
                self.current_index = index
                self._log(f"[Action Queue] {index + 1}/{len(self.queue)} {action.type.value}")
                yield ActionEvent(EventKind.STARTED, action, index, action.reasoning)

                try:
                    message = await self._execute(action, ui)
                except Exception as e:
                    error = ActionFailed(
                        f"Action {index + 1} ({action.type.value}) failed: {e}",
                        action=action,
                        index=index,
                    )
                    self.error = error
                    self._log(f"[Action Queue] {error}")
                    yield ActionEvent(EventKind.FAILED, action, index, str(error), error)
                    return

                if action.type == ActionType.FINISH:
                    self._log("[Action Queue] Finished")
                    yield ActionEvent(EventKind.FINISHED, action, index, message or "Objective complete")
                    return

                yield ActionEvent(EventKind.COMPLETED, action, index, message)
                index += 1
        finally:
            self.current_index = None
            self._running = False

    async def _execute(self, action: GodModeAction, ui: Optional[UiAffordances]) -> str:
        if action.type in (ActionType.CLICK_ELEMENT, ActionType.TYPE_IN_INPUT, ActionType.SELECT_OPTION):
            if ui is None:
                raise ValueError("No UI is attached")
            if not action.selector:
                raise ValueError(f"{action.type.value} requires a selector")

        if action.type == ActionType.CLICK_ELEMENT:
            await ui.click(action.selector)
            return f"Clicked {action.selector}"

        if action.type == ActionType.TYPE_IN_INPUT:
            await ui.set_value(action.selector, "" if action.payload is None else str(action.payload))
            return f"Typed into {action.selector}"

        if action.type == ActionType.SELECT_OPTION:
            await ui.select_option(action.selector, "" if action.payload is None else str(action.payload))
            return f"Selected {action.payload} in {action.selector}"

        if action.type == ActionType.MODIFY_FILES:
            return await self._modify_files(action)

        if action.type == ActionType.ASK_USER:
            if self.ask_user is None:
                raise ValueError("No ask_user handler is attached")
            question = str(action.payload or "")
            answer = self.ask_user(question)
            if inspect.isawaitable(answer):
                answer = await answer
            self.answers.append((question, str(answer)))
            return f"User answered: {answer}"

        return ""

    async def _modify_files(self, action: GodModeAction) -> str:
        payload = action.payload
        if isinstance(payload, ChangeSet):
            changes = payload
        elif isinstance(payload, str):
            changes = ChangeSet.from_json(payload)
        else:
            changes = ChangeSet.from_dict(payload)

        # Fresh read: earlier actions may have changed the project
        if self.store is not None and self.project_id:
            self.files = await self.store.get(self.project_id)

        result = self.applier.apply(self.files, changes)
        if self.store is not None and self.project_id and result.operations:
            await self.store.apply_batch(self.project_id, result.operations)
        self.files = result.files
        return f"Applied {len(result.operations)} file operation(s)"
