"""
Memory Log

An append-only markdown journal stored as an ordinary file in the project
tree. Entries are separated by a horizontal rule and start with an ISO
timestamp. The applier treats it like any other file.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from .changeset import ChangeSet
from .file_store import FileNode, find_by_path

DEFAULT_MEMORY_PATH = ".devpilot/memory.md"
ENTRY_SEPARATOR = "\n\n---\n\n"

NO_MEMORY = "This is a new project, or no memory has been recorded yet."


def read_memory(files: Iterable[FileNode], path: str = DEFAULT_MEMORY_PATH) -> Optional[str]:
    """Current memory content, or None when the log is absent or empty."""
    node = find_by_path(files, path)
    if node is None or not node.is_file or not node.content:
        return None
    return node.content


def memory_excerpt(text: Optional[str], limit: int = 8000) -> str:
    """The most recent `limit` characters of the log."""
    if not text:
        return ""
    if limit <= 0 or len(text) <= limit:
        return text
    return "...\n" + text[-limit:]


def format_memory_context(text: Optional[str], limit: int = 8000) -> str:
    """Prompt section describing prior work on the project."""
    if not text:
        return NO_MEMORY
    return f"""---
## Project Memory & History
Here is a summary of previous work done on this project. Use it to inform your plan.
{memory_excerpt(text, limit)}
---"""


def append_entry(
    files: Iterable[FileNode],
    summary: str,
    path: str = DEFAULT_MEMORY_PATH,
    now: Optional[datetime] = None,
) -> ChangeSet:
    """
    Build the change-set that appends `summary` to the memory log.

    Updates the log when it exists and creates it otherwise.
    """
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    entry = f"{stamp}\n\n{summary.strip()}"

    existing = read_memory(files, path)
    if existing is not None:
        return ChangeSet(update={path: existing + ENTRY_SEPARATOR + entry})
    if find_by_path(files, path) is not None:
        # Present but empty
        return ChangeSet(update={path: entry})
    return ChangeSet(create={path: entry})
