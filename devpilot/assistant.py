"""
Project Assistant

Single-shot model features that sit beside the plan, agent and action
engines and share their metered call layer and parser:

- Project generation from a prompt, plus a streamed scaffolding run
- Questions about the current project (memory-aware) or general questions
- Code analysis and update-only fix proposals
- Code snippets and SVG assets; an icon asset becomes a change-set for the
  project icon path, which the applier mirrors into project metadata
"""

import logging
import re
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Iterable, Optional

from .agent_loop import AgentPhase
from .changeset import ChangeSet
from .config import DevPilotConfig
from .errors import ChangeSetError, ParseFailure
from .file_store import FileNode, find_by_path
from .memory_log import format_memory_context, read_memory
from .prompts import (
    CODE_ANALYSIS_PROMPT,
    CODE_SNIPPET_PROMPT,
    GENERAL_QUESTION_PROMPT,
    PROJECT_GENERATION_PROMPT,
    PROJECT_QUESTION_PROMPT,
    PROPOSE_FIXES_PROMPT,
    REACT_PROJECT_DETAILS,
    SVG_BACKGROUND_PROMPT,
    SVG_ICON_PROMPT,
    files_json,
)

logger = logging.getLogger(__name__)

ICON_ASSET = "icon"
BACKGROUND_ASSET = "background"

_SVG_PATTERN = re.compile(r"<svg\b.*</svg>", re.DOTALL | re.IGNORECASE)
_FENCE_PATTERN = re.compile(r"^```[\w+-]*\s*\n(.*?)\n?```\s*$", re.DOTALL)


@dataclass
class GeneratedProject:
    """A project produced from a prompt: a name and a path -> content map."""
    name: str
    files: dict[str, str] = field(default_factory=dict)

    def to_change_set(self) -> ChangeSet:
        return ChangeSet(create=dict(self.files))


@dataclass
class ScaffoldEvent:
    """Progress message from a scaffolding run. The last one carries the project."""
    phase: AgentPhase
    text: str
    thoughts: Optional[str] = None
    current_task: Optional[str] = None
    project: Optional[GeneratedProject] = None


def strip_fence(text: str) -> str:
    """Remove one surrounding markdown code fence, if present."""
    text = text.strip()
    match = _FENCE_PATTERN.match(text)
    return match.group(1).strip() if match else text


def extract_svg(text: str) -> str:
    """
    Pull the `<svg>...</svg>` element out of a model response.

    Raises:
        ParseFailure: if the response holds no SVG element
    """
    match = _SVG_PATTERN.search(text)
    if not match:
        raise ParseFailure("Response does not contain an <svg> element", text=text)
    return match.group(0)


class ProjectAssistant:
    """
    Question answering, analysis, fixes and asset generation for a project.

    Usage:
        assistant = ProjectAssistant(model_call, parser, config)
        answer = await assistant.answer_question("Where is routing set up?", files)
        changes = await assistant.propose_fixes("The counter never resets", files, ["src/App.tsx"])
    """

    def __init__(
        self,
        model_call,
        parser,
        config: DevPilotConfig,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.model_call = model_call
        self.parser = parser
        self.config = config
        self.provider = provider
        self.model = model
        self.on_status = on_status or (lambda x: None)

    def _log(self, message: str):
        self.on_status(message)

    async def _call(
        self,
        prompt: str,
        function_name: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        project_scoped: bool = True,
    ) -> str:
        return await self.model_call.call(
            prompt,
            provider or self.provider,
            model or self.model,
            function_name=function_name,
            project_scoped=project_scoped,
        )

    # -------------------------------------------------------------------------
    # Project generation
    # -------------------------------------------------------------------------

    async def generate_project(self, prompt: str, project_type: str = "web") -> GeneratedProject:
        """
        Generate a whole project from a prompt.

        Raises:
            ParseFailure: if the response lacks a name or a valid file map
        """
        details = REACT_PROJECT_DETAILS if "react" in project_type.lower() else ""
        text = await self._call(
            PROJECT_GENERATION_PROMPT.format(project_type_details=details, request=prompt),
            "generate_initial_project",
            project_scoped=False,
        )
        data = await self.parser.parse(text, expect=dict)

        name = data.get("projectName")
        files = data.get("files")
        if not isinstance(name, str) or not name.strip() or not isinstance(files, dict):
            raise ParseFailure("Generated project is missing 'projectName' or 'files'", text=text)
        try:
            changes = ChangeSet.from_dict({"create": files})
        except ChangeSetError as e:
            raise ParseFailure(f"Generated project has an invalid file map: {e}", text=text)
        return GeneratedProject(name=name.strip(), files=changes.create)

    async def scaffold_project(self, prompt: str, project_type: str = "web") -> AsyncIterator[ScaffoldEvent]:
        """
        Generate a project and stream progress, one event per created file.

        The final event has phase FINISHED and carries the GeneratedProject.
        """
        yield ScaffoldEvent(
            AgentPhase.PLANNING,
            "Okay, I'm starting on your request. First, I'll create a plan...",
            thoughts=f"The user wants a new {project_type} project. I will design the file structure and generate every file.",
        )

        project = await self.generate_project(prompt, project_type)
        self._log(f"[Assistant] Generated project '{project.name}' with {len(project.files)} file(s)")

        yield ScaffoldEvent(
            AgentPhase.EXECUTING,
            f'Plan complete for project "{project.name}". I will now generate the files.',
            thoughts="The file structure is ready. Now I'll create each file.",
        )
        for path in project.files:
            yield ScaffoldEvent(
                AgentPhase.EXECUTING,
                f"Creating file: `{path}`",
                current_task=f"Generate content for {path}",
            )

        yield ScaffoldEvent(
            AgentPhase.FINISHED,
            f'All files have been generated for "{project.name}". Project is ready!',
            thoughts="All files are created. The project is ready to view.",
            project=project,
        )

    # -------------------------------------------------------------------------
    # Questions and analysis
    # -------------------------------------------------------------------------

    async def answer_question(self, question: str, files: list[FileNode]) -> str:
        """Markdown answer about the project, informed by its memory log."""
        memory = read_memory(files, self.config.memory_path)
        prompt = PROJECT_QUESTION_PROMPT.format(
            memory=format_memory_context(memory, self.config.memory_excerpt_chars),
            files=files_json(files),
            question=question,
        )
        return (await self._call(prompt, "answer_project_question")).strip()

    async def ask_general(self, question: str) -> str:
        """Markdown answer with no project context."""
        text = await self._call(
            GENERAL_QUESTION_PROMPT.format(question=question),
            "ask_general_question",
            project_scoped=False,
        )
        return text.strip()

    async def analyze_code(self, files: list[FileNode]) -> str:
        """Markdown review of the project for bugs and improvements."""
        return (await self._call(CODE_ANALYSIS_PROMPT.format(files=files_json(files)), "analyze_code")).strip()

    async def propose_fixes(self, problem: str, files: list[FileNode], paths: Iterable[str]) -> ChangeSet:
        """
        Ask for full-content fixes to the given files.

        Only updates of the named, existing files are kept; anything else
        the model sends is dropped. Nothing is applied.

        Raises:
            ParseFailure: if the response is not a valid change-set
        """
        targets = []
        for path in paths:
            node = find_by_path(files, path)
            if node is None or not node.is_file:
                raise ValueError(f"No file to fix at '{path}'")
            targets.append(node)
        if not targets:
            raise ValueError("propose_fixes needs at least one file")

        contents = "\n\n---\n\n".join(f"// File: {n.path}\n\n{n.content}" for n in targets)
        text = await self._call(
            PROPOSE_FIXES_PROMPT.format(problem=problem, file_contents=contents),
            "propose_fixes",
        )
        data = await self.parser.parse(text, expect=dict)
        try:
            proposed = ChangeSet.from_dict(data)
        except ChangeSetError as e:
            raise ParseFailure(f"Fix proposal is not a valid change-set: {e}", text=text)

        allowed = {n.path for n in targets}
        update = {p: c for p, c in proposed.update.items() if p in allowed}
        # Some models send whole-file rewrites under "create"
        for path, content in proposed.create.items():
            if path in allowed and path not in update:
                update[path] = content

        ignored = proposed.touched_paths() - set(update)
        if ignored:
            logger.warning("Ignored fix entries outside the selected files: %s", ", ".join(sorted(ignored)))
            self._log(f"[Assistant] Ignored {len(ignored)} path(s) outside the selected files")
        return ChangeSet(update=update)

    # -------------------------------------------------------------------------
    # Snippets and assets
    # -------------------------------------------------------------------------

    async def generate_code_snippet(self, request: str) -> str:
        text = await self._call(CODE_SNIPPET_PROMPT.format(request=request), "generate_code_snippet")
        return strip_fence(text)

    async def generate_svg_asset(self, request: str, asset_type: str = ICON_ASSET) -> str:
        """
        Generate raw SVG with the fixed asset provider and model.

        Raises:
            ValueError: for an unknown asset type
            ParseFailure: if the response holds no SVG element
        """
        if asset_type == ICON_ASSET:
            template = SVG_ICON_PROMPT
        elif asset_type == BACKGROUND_ASSET:
            template = SVG_BACKGROUND_PROMPT
        else:
            raise ValueError(f"Unknown asset type: {asset_type}")

        text = await self._call(
            template.format(request=request),
            "generate_svg_asset",
            provider=self.config.asset_provider,
            model=self.config.asset_model,
        )
        return extract_svg(text)

    async def design_icon(self, request: str, files: list[FileNode]) -> ChangeSet:
        """Generate an icon and return the change-set that writes it to the icon path."""
        svg = await self.generate_svg_asset(request, ICON_ASSET)
        icon = self.config.icon_path
        existing = find_by_path(files, icon)
        if existing is not None and existing.is_file:
            return ChangeSet(update={icon: svg})
        return ChangeSet(create={icon: svg})
