"""
Error taxonomy

Every fatal path in devpilot ends in one of these exceptions. Each carries
the last known diagnostic text so callers can surface it without digging
through chained causes.
"""

from typing import Optional


class DevPilotError(Exception):
    """Base class for all devpilot errors."""

    def __init__(self, message: str, diagnostic: Optional[str] = None):
        super().__init__(message)
        self.diagnostic = diagnostic or message


class InsufficientBudget(DevPilotError):
    """The caller has no remaining token budget. Never retried."""

    def __init__(self, user_id: Optional[str], remaining: int = 0):
        super().__init__(
            "Insufficient tokens. Please contact an administrator to add more.",
            diagnostic=f"user={user_id} remaining={remaining}",
        )
        self.user_id = user_id
        self.remaining = remaining


class MissingCredential(DevPilotError):
    """No caller key and no usable pool key for a provider. Never retried."""

    def __init__(self, provider: str):
        super().__init__(
            f"API key for {provider} is not configured. "
            "Please add your key or enable the shared key pool."
        )
        self.provider = provider


class ProviderError(DevPilotError):
    """A provider call failed on every attempt."""

    def __init__(
        self,
        provider: str,
        attempts: int,
        cause: Optional[BaseException] = None,
        status: Optional[int] = None,
        body: Optional[str] = None,
    ):
        last = str(cause) if cause else "unknown error"
        super().__init__(
            f"AI model call failed after {attempts} attempts. Last error: {last}",
            diagnostic=last,
        )
        self.provider = provider
        self.attempts = attempts
        self.cause = cause
        self.status = status
        self.body = body


class ParseFailure(DevPilotError):
    """Model output could not be turned into JSON, even after self-correction."""

    def __init__(self, message: str, text: str = ""):
        super().__init__(message, diagnostic=text[:500] if text else message)
        self.text = text


class TaskExhausted(DevPilotError):
    """An agent task was not completed within its attempt budget."""

    def __init__(self, task: str, attempts: int, last_analysis: str):
        super().__init__(
            f'Agent failed to complete task "{task}" after {attempts} attempts. '
            f"Last analysis: {last_analysis}",
            diagnostic=last_analysis,
        )
        self.task = task
        self.attempts = attempts
        self.last_analysis = last_analysis


class ActionFailed(DevPilotError):
    """An action-queue step failed; the remaining queue is abandoned."""

    def __init__(self, message: str, action=None, index: Optional[int] = None):
        super().__init__(message)
        self.action = action
        self.index = index


class ChangeSetError(DevPilotError):
    """A change-set has the wrong shape or conflicting operations."""
    pass


class PlanStateError(DevPilotError):
    """An illegal plan status transition was requested."""
    pass
