"""
DevPilot

Orchestration engine that turns natural-language requests into file edits
against a project's virtual file tree.

- Modification plans: propose, approve, apply
- Autonomous agent loop with bounded self-correction
- Multi-agent action queue driving external UI affordances
- Assistant features: project scaffolding, Q&A, code analysis and fixes,
  snippets and SVG assets

Custom providers plug in through the CompletionTransport protocol; storage
through the FileStore interface.
"""

__version__ = "0.1.0"

from .config import DevPilotConfig
from .errors import (
    DevPilotError,
    InsufficientBudget,
    MissingCredential,
    ProviderError,
    ParseFailure,
    TaskExhausted,
    ActionFailed,
    ChangeSetError,
    PlanStateError,
)

# Virtual file tree
from .file_store import FileNode, FileType, to_map, from_map, folder_paths
from .changeset import ChangeSet, PathMove, diff_files
from .applier import ChangeSetApplier, ApplyResult, apply_changes

# Model calls
from .llm_client import CompletionTransport, SimpleTransport, TransportError
from .providers import HttpCompletionTransport
from .model_call import (
    ModelCallLayer,
    CallContext,
    KeyPool,
    PoolKey,
    BudgetLedger,
    InMemoryBudgetLedger,
    AuditSink,
    AuditRecord,
    InMemoryAuditSink,
    JsonlAuditSink,
)
from .response_parser import ResponseParser, extract_json

# Collaborators
from .store import FileStore, InMemoryFileStore, DirectoryFileStore, ChatMessage
from .ui import UiAffordance, UiAffordances, StaticUiAffordances

# Engines
from .plan_protocol import Plan, PlanStatus, SpecialAction, SpecialActionType, ModificationPlanner
from .agent_loop import AgentState, AgentStatus, AgentPhase, AgentStateStore, AutonomousAgent
from .action_queue import ActionType, GodModeAction, ActionEvent, EventKind, ActionPlanner, ActionQueueRunner
from .assistant import ProjectAssistant, GeneratedProject, ScaffoldEvent
from .engine import DevPilot

__all__ = [
    "DevPilotConfig",

    # Errors
    "DevPilotError",
    "InsufficientBudget",
    "MissingCredential",
    "ProviderError",
    "ParseFailure",
    "TaskExhausted",
    "ActionFailed",
    "ChangeSetError",
    "PlanStateError",

    # File tree
    "FileNode",
    "FileType",
    "to_map",
    "from_map",
    "folder_paths",
    "ChangeSet",
    "PathMove",
    "diff_files",
    "ChangeSetApplier",
    "ApplyResult",
    "apply_changes",

    # Model calls
    "CompletionTransport",
    "SimpleTransport",
    "TransportError",
    "HttpCompletionTransport",
    "ModelCallLayer",
    "CallContext",
    "KeyPool",
    "PoolKey",
    "BudgetLedger",
    "InMemoryBudgetLedger",
    "AuditSink",
    "AuditRecord",
    "InMemoryAuditSink",
    "JsonlAuditSink",
    "ResponseParser",
    "extract_json",

    # Collaborators
    "FileStore",
    "InMemoryFileStore",
    "DirectoryFileStore",
    "ChatMessage",
    "UiAffordance",
    "UiAffordances",
    "StaticUiAffordances",

    # Plan protocol
    "Plan",
    "PlanStatus",
    "SpecialAction",
    "SpecialActionType",
    "ModificationPlanner",

    # Agent loop
    "AgentState",
    "AgentStatus",
    "AgentPhase",
    "AgentStateStore",
    "AutonomousAgent",

    # Action queue
    "ActionType",
    "GodModeAction",
    "ActionEvent",
    "EventKind",
    "ActionPlanner",
    "ActionQueueRunner",

    # Assistant
    "ProjectAssistant",
    "GeneratedProject",
    "ScaffoldEvent",

    # Facade
    "DevPilot",
]
