"""
Call transcripts

Human-readable debug logs of every model call: prompt, raw response,
retries and parse outcomes. Written only when `debug_logging` is enabled.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional


class CallTranscriptLogger:
    """
    Appends sectioned, timestamped entries to `<log_dir>/<session>_calls.txt`.
    """

    def __init__(self, log_dir: Path, session: str = "session"):
        self.log_dir = Path(log_dir)
        self.log_file = self.log_dir / f"{session}_calls.txt"
        self.call_num = 0
        self._ensure_dir()

    def _ensure_dir(self):
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def _timestamp(self) -> str:
        return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    def _write_log(self, content: str):
        with open(self.log_file, "a", encoding="utf-8") as f:
            f.write(content)

    def log_request(self, provider: str, model: str, attempt: int, prompt: str) -> int:
        """Log an outgoing prompt. Returns the call number."""
        self.call_num += 1
        entry = f"""
================================================================================
CALL {self.call_num} - {provider} / {model} (attempt {attempt})
Time: {self._timestamp()}
================================================================================
--- PROMPT ({len(prompt)} chars) ---
{prompt[:5000]}
"""
        if len(prompt) > 5000:
            entry += f"\n... [truncated, {len(prompt)} total chars]\n"
        self._write_log(entry)
        return self.call_num

    def log_response(self, text: str):
        self._write_log(f"""
--- RESPONSE ({len(text)} chars) at {self._timestamp()} ---
{text[:5000]}
""")

    def log_failure(self, attempt: int, error: str, retrying: bool):
        action = "retrying" if retrying else "giving up"
        self._write_log(f"""
--- ATTEMPT {attempt} FAILED ({action}) at {self._timestamp()} ---
{error}
""")

    def log_parse(self, strategy: Optional[str], error: Optional[str] = None):
        if strategy:
            self._write_log(f"\n--- PARSED via {strategy} ---\n")
        else:
            self._write_log(f"\n--- PARSE FAILED ---\n{error or ''}\n")
