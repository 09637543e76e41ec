"""
Autonomous Agent Loop

Decomposes an objective into ordered tasks, then for each task:

1. Execute: one model call proposes a ChangeSet for that task alone
2. Analyze: a second call reviews the would-be file set and answers
   taskCompleted (anything other than JSON `true` counts as false)
3. Commit or retry: a completed task is merged into the working file set;
   otherwise the analysis feeds the next attempt

A task that is still incomplete after `max_task_attempts` aborts the run.
After the last task a memory entry is appended. Completed change-sets are
replayed in order through the applier and committed as one batch (once at
the end, or after every task in `per_task` mode), so moves keep node ids.
Cancellation is checked before and after every model call.

State machine:
    planning -> executing(i, j) -> analyzing(i, j)
        -> self_correcting -> executing(i, j+1)
        -> executing(i+1, 1)
        -> error
    ... -> finished
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from .applier import ChangeSetApplier
from .changeset import ChangeSet
from .config import DevPilotConfig
from .errors import ChangeSetError, ParseFailure, TaskExhausted
from .file_store import FileNode
from .memory_log import append_entry, format_memory_context, read_memory
from .prompts import (
    AGENT_ANALYZE_PROMPT,
    AGENT_EXECUTE_PROMPT,
    AGENT_MEMORY_PROMPT,
    AGENT_PLANNING_PROMPT,
    AGENT_SYSTEM_PROMPT,
    files_json,
)

logger = logging.getLogger(__name__)

FIRST_ATTEMPT = "This is the first attempt."

PERSIST_ON_FINISH = "on_finish"
PERSIST_PER_TASK = "per_task"


class AgentStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    FINISHED = "finished"
    ERROR = "error"


class AgentPhase(Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    ANALYZING = "analyzing"
    SELF_CORRECTING = "self_correcting"
    FINISHED = "finished"
    ERROR = "error"


@dataclass
class AgentState:
    """Live state of one agent run. Serializable so a run can resume."""
    objective: str = ""
    status: AgentStatus = AgentStatus.IDLE
    plan: list[str] = field(default_factory=list)
    current_task_index: int = 0
    logs: list[str] = field(default_factory=list)
    last_error: Optional[str] = None
    thoughts: str = ""
    phase: Optional[AgentPhase] = None
    attempt: int = 0
    last_analysis: str = FIRST_ATTEMPT
    pending_changes: list[ChangeSet] = field(default_factory=list)

    @property
    def current_task(self) -> Optional[str]:
        if 0 <= self.current_task_index < len(self.plan):
            return self.plan[self.current_task_index]
        return None

    def log(self, message: str):
        self.logs.append(message)

    def to_dict(self) -> dict:
        return {
            "objective": self.objective,
            "status": self.status.value,
            "plan": list(self.plan),
            "current_task_index": self.current_task_index,
            "logs": list(self.logs),
            "last_error": self.last_error,
            "thoughts": self.thoughts,
            "phase": self.phase.value if self.phase else None,
            "attempt": self.attempt,
            "last_analysis": self.last_analysis,
            "pending_changes": [changes.to_dict() for changes in self.pending_changes],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AgentState":
        return cls(
            objective=data.get("objective", ""),
            status=AgentStatus(data.get("status", "idle")),
            plan=list(data.get("plan", [])),
            current_task_index=int(data.get("current_task_index", 0)),
            logs=list(data.get("logs", [])),
            last_error=data.get("last_error"),
            thoughts=data.get("thoughts", ""),
            phase=AgentPhase(data["phase"]) if data.get("phase") else None,
            attempt=int(data.get("attempt", 0)),
            last_analysis=data.get("last_analysis", FIRST_ATTEMPT),
            pending_changes=_pending_from(data.get("pending_changes")),
        )

    def snapshot(self) -> "AgentState":
        return AgentState.from_dict(self.to_dict())


def _pending_from(value) -> list[ChangeSet]:
    """Completed-task change-sets, oldest first. A bare object is one change-set."""
    if value is None:
        return []
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list):
        raise ChangeSetError("pending_changes must be a list of change-sets")
    return [ChangeSet.from_dict(item) for item in value]


class AgentStateStore:
    """
    Persists AgentState as JSON at `<project>/.devpilot/agent_state.json`.

    Usage:
        states = AgentStateStore("/path/to/project")
        saved = states.load()
        if saved and saved.status == AgentStatus.PAUSED:
            async for state in agent.run(saved.objective, files, resume=saved):
                ...
    """

    def __init__(self, project_path: str | Path, file_name: str = "agent_state.json"):
        self.project_path = Path(project_path).resolve()
        self.state_path = self.project_path / ".devpilot" / file_name

    def save(self, state: AgentState):
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        self.state_path.write_text(json.dumps(state.to_dict(), indent=2), encoding="utf-8")

    def load(self) -> Optional[AgentState]:
        if not self.state_path.exists():
            return None
        try:
            return AgentState.from_dict(json.loads(self.state_path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValueError, KeyError, ChangeSetError) as e:
            logger.warning("Ignoring unreadable agent state at %s: %s", self.state_path, e)
            return None

    def clear(self):
        if self.state_path.exists():
            self.state_path.unlink()


class AutonomousAgent:
    """
    Runs the plan/execute/analyze loop and streams AgentState snapshots.

    Usage:
        agent = AutonomousAgent(model_call, parser, config, store=store, project_id="p1")
        async for state in agent.run("Add a contact form", files):
            print(state.phase, state.logs[-1])
    """

    def __init__(
        self,
        model_call,
        parser,
        config: DevPilotConfig,
        store=None,
        project_id: Optional[str] = None,
        applier: Optional[ChangeSetApplier] = None,
        state_store: Optional[AgentStateStore] = None,
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
        self.state_store = state_store
        self.provider = provider
        self.model = model
        self.on_status = on_status or (lambda x: None)

        self.final_files: Optional[list[FileNode]] = None
        self.error: Optional[Exception] = None
        self.persisted_batches = 0
        self._cancelled = False

    def cancel(self):
        """Request cooperative cancellation; honoured between steps."""
        self._cancelled = True

    def _log(self, state: AgentState, message: str):
        state.log(message)
        self.on_status(message)

    def _save(self, state: AgentState):
        if self.state_store is not None:
            self.state_store.save(state)

    async def _call(self, prompt: str, function_name: str) -> str:
        return await self.model_call.call(prompt, self.provider, self.model, function_name=function_name)

    async def run(
        self,
        objective: str,
        files: list[FileNode],
        resume: Optional[AgentState] = None,
    ) -> AsyncIterator[AgentState]:
        """
        Run the agent, yielding a snapshot after every state change.

        The stream ends with a state whose status is finished, error or
        paused (after cancel()). Failures are reported on the final state
        and kept in `self.error`; they are not raised.
        """
        self._cancelled = False
        self.error = None

        if resume is not None:
            state = resume.snapshot()
            state.status = AgentStatus.RUNNING
            state.last_error = None
        else:
            state = AgentState(objective=objective, status=AgentStatus.RUNNING)

        working = [node.copy() for node in files]
        for changes in state.pending_changes:
            working = self.applier.apply(working, changes).files

        try:
            if not state.plan:
                state.phase = AgentPhase.PLANNING
                state.thoughts = "I need to break the objective down into smaller, concrete tasks."
                self._log(state, "Agent started. Creating initial plan...")
                yield state.snapshot()

                if self._cancelled:
                    yield self._pause(state)
                    return
                text = await self._call(self._planning_prompt(state, working), "agent_plan")
                if self._cancelled:
                    yield self._pause(state)
                    return
                data = await self.parser.parse(text, expect=dict)
                state.plan = self._validate_plan(data.get("plan"), text)
                state.thoughts = str(data.get("thoughts") or "")
                state.current_task_index = 0
                self._log(state, f"Plan created with {len(state.plan)} steps.")
                self._save(state)
                yield state.snapshot()
            else:
                self._log(state, f"Resuming at task {state.current_task_index + 1}/{len(state.plan)}")
                yield state.snapshot()

            total = len(state.plan)
            for index in range(state.current_task_index, total):
                task = state.plan[index]
                state.current_task_index = index
                self._log(state, f"Executing task {index + 1}/{total}: {task}")

                completed = False
                state.last_analysis = FIRST_ATTEMPT
                attempts = self.config.max_task_attempts

                for attempt in range(1, attempts + 1):
                    state.attempt = attempt
                    state.phase = AgentPhase.EXECUTING
                    state.thoughts = (
                        f"Attempt {attempt}. My previous attempt failed because: {state.last_analysis}"
                        if attempt > 1 else f"Generating the changes for: {task}"
                    )
                    self._log(state, f"Attempt {attempt} for task: {task}")
                    yield state.snapshot()

                    if self._cancelled:
                        yield self._pause(state)
                        return
                    text = await self._call(self._execute_prompt(state, task, working), "agent_execute")
                    if self._cancelled:
                        yield self._pause(state)
                        return
                    data = await self.parser.parse(text, expect=dict)

                    try:
                        changes = ChangeSet.from_dict(data.get("changes"))
                        tentative = self.applier.apply(working, changes)
                    except ChangeSetError as e:
                        # Malformed output is one more thing to self-correct
                        state.last_analysis = f"The proposed changes were invalid: {e}"
                        state.phase = AgentPhase.SELF_CORRECTING
                        self._log(state, f"Self-correction attempt {attempt}: {state.last_analysis}")
                        yield state.snapshot()
                        continue

                    state.thoughts = str(data.get("thoughts") or "")
                    state.phase = AgentPhase.ANALYZING
                    yield state.snapshot()

                    if self._cancelled:
                        yield self._pause(state)
                        return
                    text = await self._call(
                        self._analyze_prompt(state, task, changes, tentative.files),
                        "agent_analyze",
                    )
                    if self._cancelled:
                        yield self._pause(state)
                        return
                    review = await self.parser.parse(text, expect=dict)

                    completed = review.get("taskCompleted") is True
                    state.last_analysis = str(review.get("analysis") or "No analysis provided.")
                    state.thoughts = str(review.get("thoughts") or "")
                    self._log(state, f"Analysis: {state.last_analysis}")

                    if completed:
                        working = tentative.files
                        state.pending_changes.append(changes)
                        self._log(state, f'Task "{task}" completed successfully.')
                        break

                    state.phase = AgentPhase.SELF_CORRECTING
                    self._log(state, f"Self-correction attempt {attempt}: {state.last_analysis}")
                    yield state.snapshot()

                if not completed:
                    raise TaskExhausted(task, attempts, state.last_analysis)

                if self.config.agent_persist_mode == PERSIST_PER_TASK:
                    await self._persist(state.pending_changes)
                    state.pending_changes = []
                state.current_task_index = index + 1
                state.attempt = 0
                self._save(state)
                yield state.snapshot()

            self._log(state, "All tasks completed successfully. Creating memory log...")
            state.thoughts = "The objective is complete. I need to summarize my work for future context."
            yield state.snapshot()

            if self._cancelled:
                yield self._pause(state)
                return
            summary = await self._call(
                AGENT_MEMORY_PROMPT.format(objective=state.objective, files=files_json(working)),
                "agent_memory",
            )
            memory_changes = append_entry(working, summary, self.config.memory_path)
            working = self.applier.apply(working, memory_changes).files
            state.pending_changes.append(memory_changes)

            await self._persist(state.pending_changes)
            self.final_files = working

            state.pending_changes = []
            state.status = AgentStatus.FINISHED
            state.phase = AgentPhase.FINISHED
            self._log(state, "Objective complete. Memory log updated.")
            if self.state_store is not None:
                self.state_store.clear()
            yield state.snapshot()

        except Exception as e:
            self.error = e
            state.status = AgentStatus.ERROR
            state.phase = AgentPhase.ERROR
            state.last_error = str(e)
            self._log(state, f"Agent failed: {e}")
            logger.error("Agent run failed: %s", e)
            self._save(state)
            yield state.snapshot()

    def _pause(self, state: AgentState) -> AgentState:
        """Stop at a step boundary, keeping completed work for resume."""
        state.status = AgentStatus.PAUSED
        state.attempt = 0
        self._log(state, "Agent paused. Any in-flight result was discarded.")
        self._save(state)
        return state.snapshot()

    async def _persist(self, change_sets: list[ChangeSet]):
        """
        Replay completed change-sets, in order, against the stored files and
        commit the resulting operations as one batch.
        """
        if self.store is None or not self.project_id or not change_sets:
            return
        current = await self.store.get(self.project_id)
        operations = []
        for changes in change_sets:
            result = self.applier.apply(current, changes)
            operations.extend(result.operations)
            current = result.files
        if operations:
            await self.store.apply_batch(self.project_id, operations)
            self.persisted_batches += 1

    def _validate_plan(self, plan, text: str) -> list[str]:
        if not isinstance(plan, list) or not all(isinstance(t, str) for t in plan):
            raise ParseFailure("Agent plan must be a list of task strings", text=text)
        tasks = [t.strip() for t in plan if t.strip()]
        if not tasks:
            raise ParseFailure("Agent produced an empty plan", text=text)
        return tasks

    # -------------------------------------------------------------------------
    # Prompts
    # -------------------------------------------------------------------------

    def _planning_prompt(self, state: AgentState, files: list[FileNode]) -> str:
        memory = read_memory(files, self.config.memory_path)
        return AGENT_PLANNING_PROMPT.format(
            system=AGENT_SYSTEM_PROMPT,
            objective=state.objective,
            memory=format_memory_context(memory, self.config.memory_excerpt_chars),
            files=files_json(files),
        )

    def _execute_prompt(self, state: AgentState, task: str, files: list[FileNode]) -> str:
        return AGENT_EXECUTE_PROMPT.format(
            system=AGENT_SYSTEM_PROMPT,
            objective=state.objective,
            plan=json.dumps(state.plan),
            index=state.current_task_index + 1,
            total=len(state.plan),
            task=task,
            last_analysis=state.last_analysis,
            files=files_json(files),
        )

    def _analyze_prompt(self, state: AgentState, task: str, changes: ChangeSet, files: list[FileNode]) -> str:
        return AGENT_ANALYZE_PROMPT.format(
            system=AGENT_SYSTEM_PROMPT,
            objective=state.objective,
            task=task,
            changes=changes.to_json(indent=2),
            files=files_json(files),
        )
