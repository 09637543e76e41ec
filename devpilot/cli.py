"""
DevPilot CLI

Command-line front end for a project directory on disk.
Uses Rich for terminal output.

Commands:
- plan:   propose a modification plan, approve it, apply it
- agent:  run the autonomous agent loop
- ask:    answer questions about the project (or general ones)
- analyze: review the code for bugs and improvements
- fix:    propose and apply fixes to specific files
- icon:   design the project icon
- new:    generate project files from a prompt
- config: show the effective configuration
"""

import asyncio
import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.markdown import Markdown
from rich.markup import escape
from rich.prompt import Confirm
from rich.theme import Theme
from rich.rule import Rule
from rich.table import Table

from .agent_loop import AgentStateStore, AgentStatus
from .config import DevPilotConfig, PROVIDERS
from .engine import DevPilot
from .errors import DevPilotError
from .model_call import InMemoryBudgetLedger, JsonlAuditSink
from .plan_protocol import Plan
from .providers import HttpCompletionTransport
from .store import DirectoryFileStore


DEVPILOT_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "red bold",
    "success": "green bold",
    "heading": "magenta bold",
    "muted": "dim white",
})

console = Console(theme=DEVPILOT_THEME)


def status_callback(message: str):
    """Render a status line from the engines."""
    lowered = message.lower()
    if "failed" in lowered or "error" in lowered:
        console.print(message, style="warning", markup=False)
    elif "completed successfully" in lowered or "objective complete" in lowered:
        console.print(message, style="success", markup=False)
    elif message.startswith("["):
        console.print(message, style="info", markup=False)
    else:
        console.print(message, style="muted", markup=False)


def display_plan(plan: Plan):
    """Show a proposed plan as a table of operations."""
    console.print(Panel(Markdown(plan.reasoning or "_No reasoning given._"), title="Proposed Plan", border_style="magenta"))

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Operation")
    table.add_column("Path")
    ops = plan.operations
    for path in ops.create:
        table.add_row("[green]create[/green]", escape(path))
    for path in ops.update:
        table.add_row("[cyan]update[/cyan]", escape(path))
    for path in ops.delete:
        table.add_row("[red]delete[/red]", escape(path))
    for move in ops.move:
        table.add_row("[yellow]move[/yellow]", escape(f"{move.from_path} -> {move.to_path}"))
    for copy in ops.copy:
        table.add_row("[blue]copy[/blue]", escape(f"{copy.from_path} -> {copy.to_path}"))
    console.print(table)


def build_pilot(project_dir: Path, config: DevPilotConfig, provider: Optional[str], model: Optional[str]) -> DevPilot:
    store = DirectoryFileStore(project_dir.parent)
    return DevPilot(
        config,
        store,
        HttpCompletionTransport(timeout=config.request_timeout),
        budget=InMemoryBudgetLedger(),
        audit=JsonlAuditSink(project_dir / ".devpilot" / "audit.jsonl"),
        project_id=project_dir.name,
        provider=provider,
        model=model,
        state_store=AgentStateStore(project_dir),
        on_status=status_callback,
    )


async def run_plan(pilot: DevPilot, request: str, auto_approve: bool = False):
    """Propose, confirm and apply a modification plan."""
    plan = await pilot.propose_plan(request)

    if plan.special_action is not None:
        ran = await pilot.perform_special_action(
            plan,
            confirm=lambda prompt: Confirm.ask(f"[bold]{escape(prompt)}[/]", default=False),
        )
        if ran:
            console.print(f"[success]{plan.special_action.action.value} completed.[/]")
        else:
            console.print("[muted]Cancelled.[/]")
        return

    if plan.needs_clarification:
        console.print(Panel(escape(plan.reasoning or plan.thoughts or "Could you clarify the request?"), title="Clarification Needed", border_style="yellow"))
        return

    display_plan(plan)
    if not auto_approve and not Confirm.ask("[bold]Apply this plan?[/]", default=True):
        pilot.reject_plan(plan)
        console.print("[muted]Plan rejected.[/]")
        return

    changes = await pilot.approve_plan(plan)
    touched = len(changes.written_paths())
    console.print(Panel(f"[success]Plan applied[/]\n\nPaths changed: {touched}", title="Done", border_style="green"))


async def run_agent(pilot: DevPilot, objective: str, resume: bool = False):
    """Run the autonomous agent and render its state stream."""
    saved = pilot.state_store.load() if resume and pilot.state_store else None
    if resume and saved is None:
        console.print("[warning]No saved agent run to resume; starting fresh.[/]")
    if saved is not None:
        objective = saved.objective

    console.print(Rule(f"Agent: {objective}", style="magenta"))
    final = None
    async for state in pilot.run_agent(objective, resume=saved):
        final = state

    if final is None:
        return
    if final.status == AgentStatus.FINISHED:
        console.print(Panel(
            f"[success]Objective complete[/]\n\nTasks: {len(final.plan)}",
            title="Agent Finished",
            border_style="green",
        ))
    elif final.status == AgentStatus.PAUSED:
        console.print(Panel("Run paused. Resume with --resume.", title="Agent Paused", border_style="yellow"))
    else:
        console.print(Panel(f"[error]{escape(final.last_error or 'unknown error')}[/]", title="Agent Failed", border_style="red"))


async def run_ask(pilot: DevPilot, question: str, general: bool = False):
    """Answer a question about the project, or a general one."""
    console.print("[muted]Thinking...[/]")
    if general:
        answer = await pilot.ask_general(question)
    else:
        answer = await pilot.ask(question)
    console.print(Panel(Markdown(answer), title="Answer", border_style="cyan"))


async def run_analyze(pilot: DevPilot):
    console.print("[muted]Analyzing project...[/]")
    report = await pilot.analyze_code()
    console.print(Panel(Markdown(report), title="Code Analysis", border_style="cyan"))


async def run_fix(pilot: DevPilot, problem: str, paths: list[str], auto_approve: bool = False):
    """Propose full-file fixes for the given files and apply them on confirmation."""
    console.print("[muted]Proposing fixes...[/]")
    changes = await pilot.propose_fixes(problem, paths)
    if changes.is_empty:
        console.print("[muted]No fix was proposed.[/]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Operation")
    table.add_column("Path")
    for path in changes.update:
        table.add_row("[cyan]update[/cyan]", escape(path))
    console.print(table)

    if not auto_approve and not Confirm.ask("[bold]Apply these fixes?[/]", default=True):
        console.print("[muted]Fixes discarded.[/]")
        return
    await pilot.apply_changes(changes)
    console.print(f"[success]Updated {len(changes.update)} file(s).[/]")


async def run_icon(pilot: DevPilot, request: str):
    console.print("[muted]Designing icon...[/]")
    result = await pilot.design_icon(request)
    if result.is_noop:
        console.print("[warning]The icon could not be written.[/]")
        return
    console.print(f"[success]Icon written to {escape(pilot.config.icon_path)}[/]")


async def run_new(pilot: DevPilot, prompt: str, project_type: str):
    """Scaffold files into the project directory from a prompt."""
    console.print(Rule(f"New {project_type} project", style="magenta"))
    async for event in pilot.scaffold_project(prompt, project_type):
        status_callback(event.text)
        if event.project is not None:
            console.print(Panel(
                f"[success]{escape(event.project.name)}[/]\n\nFiles: {len(event.project.files)}",
                title="Project Ready",
                border_style="green",
            ))


def show_config(config: DevPilotConfig):
    console.print(Panel(json.dumps(config.to_dict(), indent=2), title="Configuration", border_style="blue"))
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Provider")
    table.add_column("API key")
    for provider in PROVIDERS:
        table.add_row(provider, "[green]set[/green]" if config.api_keys.get(provider) else "[muted]missing[/muted]")
    console.print(table)


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="DevPilot - natural-language project editing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  devpilot plan "Add a footer" -p ./site      # Propose and apply a plan
  devpilot agent "Build a todo app" -p ./app  # Run the autonomous agent
  devpilot agent --resume -p ./app            # Resume a paused agent run
  devpilot ask "Where is routing set up?"     # Ask about the project
  devpilot fix "Counter never resets" -f src/App.tsx
  devpilot new "A pomodoro timer" -t react    # Generate project files
  devpilot config -p ./app                    # Show effective configuration
        """
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def add_common(sub):
        sub.add_argument(
            "--project", "-p",
            type=str,
            default=".",
            help="Project directory (default: current directory)"
        )
        sub.add_argument(
            "--provider",
            type=str,
            choices=PROVIDERS,
            help="Provider to use (default: from configuration)"
        )
        sub.add_argument(
            "--model", "-m",
            type=str,
            help="Model to use (default: provider default)"
        )
        sub.add_argument(
            "--api-key", "-k",
            type=str,
            help="API key for the selected provider (or set the provider's env var)"
        )

    plan_parser = subparsers.add_parser("plan", help="Propose and apply a modification plan")
    plan_parser.add_argument("request", type=str, help="What to change")
    plan_parser.add_argument("--yes", "-y", action="store_true", help="Apply without asking")
    add_common(plan_parser)

    agent_parser = subparsers.add_parser("agent", help="Run the autonomous agent loop")
    agent_parser.add_argument("objective", type=str, nargs="?", default="", help="Objective for the agent")
    agent_parser.add_argument("--resume", action="store_true", help="Resume the last paused or failed run")
    add_common(agent_parser)

    ask_parser = subparsers.add_parser("ask", help="Ask a question about the project")
    ask_parser.add_argument("question", type=str, help="The question")
    ask_parser.add_argument("--general", "-g", action="store_true", help="Answer without project context")
    add_common(ask_parser)

    analyze_parser = subparsers.add_parser("analyze", help="Review the project for bugs and improvements")
    add_common(analyze_parser)

    fix_parser = subparsers.add_parser("fix", help="Propose and apply fixes to specific files")
    fix_parser.add_argument("problem", type=str, help="Problem description or refactor goal")
    fix_parser.add_argument("--file", "-f", dest="files", action="append", required=True, help="File to fix (repeatable)")
    fix_parser.add_argument("--yes", "-y", action="store_true", help="Apply without asking")
    add_common(fix_parser)

    icon_parser = subparsers.add_parser("icon", help="Design the project icon")
    icon_parser.add_argument("request", type=str, help="What the icon should show")
    add_common(icon_parser)

    new_parser = subparsers.add_parser("new", help="Generate project files from a prompt")
    new_parser.add_argument("prompt", type=str, help="What to build")
    new_parser.add_argument("--type", "-t", dest="project_type", default="web", help="Project type, e.g. web or react")
    add_common(new_parser)

    config_parser = subparsers.add_parser("config", help="Show the effective configuration")
    add_common(config_parser)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    project_dir = Path(args.project).resolve()
    if not project_dir.is_dir():
        console.print(f"[error]Error: Project directory does not exist: {project_dir}[/]")
        sys.exit(1)

    config = DevPilotConfig.load(project_dir)
    if args.provider:
        config.default_provider = args.provider
    if args.api_key:
        config.api_keys[config.default_provider] = args.api_key

    if args.command == "config":
        show_config(config)
        return

    if args.command == "agent" and not args.objective and not args.resume:
        console.print("[error]Error: an objective is required unless --resume is given[/]")
        sys.exit(1)

    async def run():
        async with build_pilot(project_dir, config, args.provider, args.model) as pilot:
            if args.command == "plan":
                await run_plan(pilot, args.request, auto_approve=args.yes)
            elif args.command == "agent":
                await run_agent(pilot, args.objective, resume=args.resume)
            elif args.command == "ask":
                await run_ask(pilot, args.question, general=args.general)
            elif args.command == "analyze":
                await run_analyze(pilot)
            elif args.command == "fix":
                await run_fix(pilot, args.problem, args.files, auto_approve=args.yes)
            elif args.command == "icon":
                await run_icon(pilot, args.request)
            else:
                await run_new(pilot, args.prompt, args.project_type)

    try:
        asyncio.run(run())
    except (DevPilotError, ValueError) as e:
        console.print(f"[error]{escape(str(e))}[/]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[warning]Interrupted[/]")
        sys.exit(130)


if __name__ == "__main__":
    main()
