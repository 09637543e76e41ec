"""
DevPilot facade

Wires the model call layer, parser, applier and store together for one
project and caller, and exposes the outward API:

    async with DevPilot(config, store, transport, budget, project_id="p1", user_id="u1") as pilot:
        plan = await pilot.propose_plan("Add a footer")
        await pilot.approve_plan(plan)

        async for state in pilot.run_agent("Build a todo list"):
            ...
"""

import logging
import random
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from .action_queue import ActionEvent, ActionPlanner, ActionQueueRunner, AskUser
from .agent_loop import AgentState, AgentStateStore, AutonomousAgent
from .applier import ApplyResult, ChangeSetApplier
from .assistant import ICON_ASSET, ProjectAssistant, ScaffoldEvent
from .changeset import ChangeSet
from .config import DevPilotConfig
from .debug_log import CallTranscriptLogger
from .file_store import FileNode
from .llm_client import CompletionTransport
from .model_call import AuditSink, BudgetLedger, CallContext, InMemoryBudgetLedger, KeyPool, ModelCallLayer
from .plan_protocol import Confirm, ModificationPlanner, Plan, ProjectActions, StoreProjectActions
from .response_parser import ResponseParser
from .store import ChatMessage, FileStore
from .ui import UiAffordances

logger = logging.getLogger(__name__)


class DevPilot:
    """Orchestration engine for one project."""

    def __init__(
        self,
        config: DevPilotConfig,
        store: FileStore,
        transport: CompletionTransport,
        budget: Optional[BudgetLedger] = None,
        audit: Optional[AuditSink] = None,
        project_id: str = "default",
        user_id: Optional[str] = None,
        key_pool: Optional[KeyPool] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        state_store: Optional[AgentStateStore] = None,
        on_status: Optional[Callable[[str], None]] = None,
        rng: Optional[random.Random] = None,
        sleep=None,
    ):
        self.config = config
        self.store = store
        self.transport = transport
        self.project_id = project_id
        self.user_id = user_id
        self.provider = provider
        self.model = model
        self.state_store = state_store
        self.on_status = on_status or (lambda x: None)

        self.transcript = None
        if config.debug_logging:
            self.transcript = CallTranscriptLogger(Path(config.log_dir), session=project_id)

        call_kwargs = {}
        if sleep is not None:
            call_kwargs["sleep"] = sleep
        self.model_call = ModelCallLayer(
            transport,
            config,
            budget or InMemoryBudgetLedger(),
            audit=audit,
            key_pool=key_pool,
            context=CallContext(user_id=user_id, project_id=project_id),
            rng=rng,
            transcript=self.transcript,
            **call_kwargs,
        )
        self.parser = ResponseParser(self.model_call, config, transcript=self.transcript)
        self.applier = ChangeSetApplier(icon_path=config.icon_path, conflict_policy=config.conflict_policy)
        self.planner = ModificationPlanner(
            self.model_call,
            self.parser,
            config,
            store=store,
            project_id=project_id,
            applier=self.applier,
            provider=provider,
            model=model,
            on_status=self.on_status,
        )
        self.assistant = ProjectAssistant(
            self.model_call,
            self.parser,
            config,
            provider=provider,
            model=model,
            on_status=self.on_status,
        )
        self._sleep = sleep
        self.agent: Optional[AutonomousAgent] = None
        self.runner: Optional[ActionQueueRunner] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.transport.close()

    async def files(self) -> list[FileNode]:
        return await self.store.get(self.project_id)

    async def _files_or(self, files: Optional[list[FileNode]]) -> list[FileNode]:
        return files if files is not None else await self.files()

    # -------------------------------------------------------------------------
    # Plan protocol
    # -------------------------------------------------------------------------

    async def propose_plan(
        self,
        request: str,
        files: Optional[list[FileNode]] = None,
        memory: Optional[str] = None,
    ) -> Plan:
        await self.store.append(self.project_id, ChatMessage(sender="user", text=request))
        plan = await self.planner.propose_plan(request, await self._files_or(files), memory)
        await self.store.append(self.project_id, ChatMessage(
            sender="ai",
            text=plan.reasoning,
            thoughts=plan.thoughts,
            plan=plan.to_dict(),
            plan_status=plan.status.value,
        ))
        return plan

    async def approve_plan(self, plan: Plan, files: Optional[list[FileNode]] = None) -> ChangeSet:
        changes = await self.planner.approve_plan(plan, await self._files_or(files))
        await self.store.append(self.project_id, ChatMessage(
            sender="ai",
            text="I've applied the approved changes.",
            plan_status=plan.status.value,
        ))
        return changes

    def reject_plan(self, plan: Plan):
        self.planner.reject_plan(plan)

    async def perform_special_action(
        self,
        plan: Plan,
        confirm: Confirm,
        handler: Optional[ProjectActions] = None,
    ) -> bool:
        return await self.planner.perform_special_action(
            plan,
            handler or StoreProjectActions(self.store, self.project_id),
            confirm,
        )

    # -------------------------------------------------------------------------
    # Agent loop and action queue
    # -------------------------------------------------------------------------

    async def run_agent(
        self,
        objective: str,
        files: Optional[list[FileNode]] = None,
        resume: Optional[AgentState] = None,
    ) -> AsyncIterator[AgentState]:
        self.agent = AutonomousAgent(
            self.model_call,
            self.parser,
            self.config,
            store=self.store,
            project_id=self.project_id,
            applier=self.applier,
            state_store=self.state_store,
            provider=self.provider,
            model=self.model,
            on_status=self.on_status,
        )
        async for state in self.agent.run(objective, await self._files_or(files), resume=resume):
            yield state

    async def run_action_queue(
        self,
        objective: str,
        files: Optional[list[FileNode]] = None,
        ui: Optional[UiAffordances] = None,
        ask_user: Optional[AskUser] = None,
    ) -> AsyncIterator[ActionEvent]:
        runner_kwargs = {}
        if self._sleep is not None:
            runner_kwargs["sleep"] = self._sleep
        self.runner = ActionQueueRunner(
            ActionPlanner(self.model_call, self.parser, self.config),
            self.config,
            store=self.store,
            project_id=self.project_id,
            applier=self.applier,
            ask_user=ask_user,
            on_status=self.on_status,
            **runner_kwargs,
        )
        async for event in self.runner.run(objective, await self._files_or(files), ui):
            yield event

    # -------------------------------------------------------------------------
    # Direct application
    # -------------------------------------------------------------------------

    async def apply_changes(self, change_set: ChangeSet, files: Optional[list[FileNode]] = None) -> ApplyResult:
        """Apply a change-set and commit the resulting operations as one batch."""
        result = self.applier.apply(await self._files_or(files), change_set)
        if result.operations:
            await self.store.apply_batch(self.project_id, result.operations)
        return result

    # -------------------------------------------------------------------------
    # Assistant
    # -------------------------------------------------------------------------

    async def ask(self, question: str, files: Optional[list[FileNode]] = None) -> str:
        """Answer a question about the project and record the exchange in chat."""
        await self.store.append(self.project_id, ChatMessage(sender="user", text=question))
        answer = await self.assistant.answer_question(question, await self._files_or(files))
        await self.store.append(self.project_id, ChatMessage(sender="ai", text=answer))
        return answer

    async def ask_general(self, question: str) -> str:
        return await self.assistant.ask_general(question)

    async def analyze_code(self, files: Optional[list[FileNode]] = None) -> str:
        return await self.assistant.analyze_code(await self._files_or(files))

    async def propose_fixes(
        self,
        problem: str,
        paths: list[str],
        files: Optional[list[FileNode]] = None,
    ) -> ChangeSet:
        """Proposed update-only change-set; commit it with apply_changes()."""
        return await self.assistant.propose_fixes(problem, await self._files_or(files), paths)

    async def generate_code_snippet(self, request: str) -> str:
        return await self.assistant.generate_code_snippet(request)

    async def generate_svg_asset(self, request: str, asset_type: str = ICON_ASSET) -> str:
        return await self.assistant.generate_svg_asset(request, asset_type)

    async def design_icon(self, request: str) -> ApplyResult:
        """Generate an icon, write it to the icon path and commit it."""
        files = await self.files()
        return await self.apply_changes(await self.assistant.design_icon(request, files), files)

    async def scaffold_project(self, prompt: str, project_type: str = "web") -> AsyncIterator[ScaffoldEvent]:
        """
        Generate a project into this one, streaming progress.

        The generated files are committed as one batch and the project is
        renamed once the final event is reached.
        """
        async for event in self.assistant.scaffold_project(prompt, project_type):
            if event.project is not None:
                await self.apply_changes(event.project.to_change_set())
                await self.store.rename_project(self.project_id, event.project.name)
            yield event
