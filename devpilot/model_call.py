"""
Model Call Layer

Single chokepoint for every call to a text-completion provider:

1. Token check: fail fast with InsufficientBudget when the caller's budget is spent
2. Key resolution: caller key, else a random shared-pool key, else MissingCredential
3. Dispatch through the transport with a provider default model
4. Retry: fixed delay between attempts; on final failure one audit record
   is written and ProviderError is raised
5. Success accounting: one budget unit is deducted per successful call

Plan generation, the agent loop and the action queue all call through here,
so they share the same failure and metering semantics.
"""

import asyncio
import json
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .config import DevPilotConfig
from .debug_log import CallTranscriptLogger
from .errors import InsufficientBudget, MissingCredential, ProviderError
from .llm_client import CompletionTransport, TransportError

logger = logging.getLogger(__name__)


# =============================================================================
# Shared key pool
# =============================================================================

@dataclass
class PoolKey:
    """One administrator-provided key in the shared pool."""
    id: str
    key: str
    provider: str


@dataclass
class KeyPool:
    """Shared provider keys, used only when enabled and the caller has none."""
    enabled: bool = False
    keys: list[PoolKey] = field(default_factory=list)

    def keys_for(self, provider: str) -> list[PoolKey]:
        return [k for k in self.keys if k.provider == provider]

    def pick(self, provider: str, rng: random.Random = None) -> Optional[str]:
        """Pick one key for `provider` uniformly at random, or None."""
        if not self.enabled:
            return None
        candidates = self.keys_for(provider)
        if not candidates:
            return None
        return (rng or random).choice(candidates).key


# =============================================================================
# Token budget
# =============================================================================

class BudgetLedger(ABC):
    """Per-user token balance held by an external store."""

    @abstractmethod
    async def remaining(self, user_id: Optional[str]) -> int:
        pass

    @abstractmethod
    async def deduct(self, user_id: Optional[str], units: int = 1) -> None:
        pass


class InMemoryBudgetLedger(BudgetLedger):
    """
    Balances kept in a dict.

    Users without an entry get `default_balance`; pass None for an
    unmetered ledger.
    """

    def __init__(self, balances: Optional[dict] = None, default_balance: Optional[int] = None):
        self.balances = dict(balances or {})
        self.default_balance = default_balance

    async def remaining(self, user_id: Optional[str]) -> int:
        if user_id in self.balances:
            return self.balances[user_id]
        if self.default_balance is None:
            return 1
        return self.default_balance

    async def deduct(self, user_id: Optional[str], units: int = 1) -> None:
        if user_id not in self.balances and self.default_balance is None:
            return
        self.balances[user_id] = await self.remaining(user_id) - units


# =============================================================================
# Audit sink
# =============================================================================

@dataclass
class AuditRecord:
    """Structured record of a model call that failed on every attempt."""
    user_id: Optional[str]
    provider: str
    model: str
    attempts: int
    error: str
    project_id: Optional[str] = None
    function_name: str = "call"
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return asdict(self)


class AuditSink(ABC):
    """Fire-and-forget error log."""

    @abstractmethod
    async def log_error(self, record: AuditRecord) -> None:
        pass


class InMemoryAuditSink(AuditSink):
    def __init__(self):
        self.records: list[AuditRecord] = []

    async def log_error(self, record: AuditRecord) -> None:
        self.records.append(record)


class JsonlAuditSink(AuditSink):
    """Appends one JSON object per failed call to a file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    async def log_error(self, record: AuditRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record.to_dict()) + "\n")


# =============================================================================
# Call layer
# =============================================================================

@dataclass
class CallContext:
    """Who a call is made for; attached to budget checks and audit records."""
    user_id: Optional[str] = None
    project_id: Optional[str] = None


class ModelCallLayer:
    """
    Metered, retried access to completion providers.

    Usage:
        layer = ModelCallLayer(transport, config, budget, audit=sink,
                               context=CallContext(user_id="u1", project_id="p1"))
        text = await layer.call(prompt, provider="openrouter")
    """

    def __init__(
        self,
        transport: CompletionTransport,
        config: DevPilotConfig,
        budget: BudgetLedger,
        audit: Optional[AuditSink] = None,
        key_pool: Optional[KeyPool] = None,
        context: Optional[CallContext] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        transcript: Optional[CallTranscriptLogger] = None,
    ):
        self.transport = transport
        self.config = config
        self.budget = budget
        self.audit = audit
        self.key_pool = key_pool or KeyPool()
        self.context = context or CallContext()
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.transcript = transcript

        # Metering
        self.calls_made = 0
        self.tokens_spent = 0

    def _resolve_key(self, provider: str) -> Optional[str]:
        key = self.config.api_keys.get(provider)
        if key:
            return key
        if self.config.key_pool_enabled or self.key_pool.enabled:
            pool = KeyPool(enabled=True, keys=self.key_pool.keys)
            key = pool.pick(provider, self.rng)
            if key:
                logger.info("Using a pooled API key for %s", provider)
        return key

    async def call(
        self,
        prompt: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        *,
        function_name: str = "call",
        project_scoped: bool = True,
    ) -> str:
        """
        Send `prompt` to a provider and return the raw completion text.

        Calls with `project_scoped=False` are audited without a project id.

        Raises:
            InsufficientBudget: budget is zero or less; no request is made
            MissingCredential: no key available for the provider
            ProviderError: every attempt failed (an audit record was written)
        """
        provider = provider or self.config.default_provider
        model = self.config.model_for(provider, model)
        user_id = self.context.user_id

        remaining = await self.budget.remaining(user_id)
        if remaining <= 0:
            raise InsufficientBudget(user_id, remaining)

        if not self._resolve_key(provider):
            raise MissingCredential(provider)

        max_attempts = max(1, self.config.max_call_attempts)
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            api_key = self._resolve_key(provider)
            self.calls_made += 1
            if self.transcript:
                self.transcript.log_request(provider, model, attempt, prompt)

            try:
                text = await self.transport.complete(prompt, provider, model, api_key)
                if not isinstance(text, str):
                    raise TransportError(f"Invalid API response: expected text, got {type(text).__name__}")
            except Exception as e:
                last_error = e
                retrying = attempt < max_attempts
                logger.warning("AI model call attempt %d/%d to %s failed: %s", attempt, max_attempts, provider, e)
                if self.transcript:
                    self.transcript.log_failure(attempt, str(e), retrying)
                if retrying:
                    await self.sleep(self.config.retry_delay)
                continue

            if self.transcript:
                self.transcript.log_response(text)
            await self.budget.deduct(user_id, 1)
            self.tokens_spent += 1
            return text

        await self._audit(provider, model, max_attempts, last_error, function_name, project_scoped)
        raise ProviderError(
            provider,
            attempts=max_attempts,
            cause=last_error,
            status=getattr(last_error, "status", None),
            body=getattr(last_error, "body", None),
        )

    async def _audit(
        self,
        provider: str,
        model: str,
        attempts: int,
        error: Optional[BaseException],
        function_name: str,
        project_scoped: bool = True,
    ):
        if self.audit is None:
            return
        record = AuditRecord(
            user_id=self.context.user_id,
            provider=provider,
            model=model,
            attempts=attempts,
            error=str(error) if error else "unknown error",
            project_id=self.context.project_id if project_scoped else None,
            function_name=function_name,
        )
        try:
            await self.audit.log_error(record)
        except Exception as e:
            logger.error("Failed to log platform error: %s", e)
