"""Tests for the Model Call Layer: budget, keys, retry, audit."""

import json
import random

import pytest

from devpilot.config import DevPilotConfig
from devpilot.errors import InsufficientBudget, MissingCredential, ProviderError
from devpilot.llm_client import TransportError
from devpilot.model_call import (
    AuditRecord,
    AuditSink,
    CallContext,
    InMemoryBudgetLedger,
    JsonlAuditSink,
    KeyPool,
    ModelCallLayer,
    PoolKey,
)
from tests.conftest import RecordingSleep, ScriptedTransport


async def test_success_deducts_one_unit(model_call, transport, budget):
    transport.queue("hello")
    assert await model_call.call("prompt", "groq") == "hello"
    assert budget.balances["user-1"] == 99
    assert model_call.calls_made == 1
    assert model_call.tokens_spent == 1


async def test_default_provider_and_model(model_call, transport):
    transport.queue("ok")
    await model_call.call("prompt")
    assert transport.requests[0]["provider"] == "gemini"
    assert transport.requests[0]["model"] == "gemini-2.5-flash"
    assert transport.requests[0]["api_key"] == "gemini-key"


async def test_zero_budget_never_calls_transport(config, audit, sleep):
    transport = ScriptedTransport(["unused"])
    layer = ModelCallLayer(
        transport, config, InMemoryBudgetLedger({"broke": 0}),
        audit=audit, context=CallContext(user_id="broke"), sleep=sleep,
    )
    with pytest.raises(InsufficientBudget):
        await layer.call("prompt", "groq")
    assert transport.requests == []
    assert audit.records == []


async def test_retry_ceiling_and_single_audit_record(model_call, transport, audit, sleep, budget):
    transport.queue(TransportError("down", status=503, body="unavailable"), TransportError("still down", status=503))

    with pytest.raises(ProviderError) as exc_info:
        await model_call.call("prompt", "openrouter", function_name="generate_plan")

    error = exc_info.value
    assert len(transport.requests) == 2
    assert error.attempts == 2
    assert error.status == 503
    assert "still down" in str(error)
    assert sleep.delays == [1.5]
    assert budget.balances["user-1"] == 100

    assert len(audit.records) == 1
    record = audit.records[0]
    assert record.user_id == "user-1"
    assert record.project_id == "project-1"
    assert record.provider == "openrouter"
    assert record.attempts == 2
    assert record.function_name == "generate_plan"
    assert "still down" in record.error


async def test_retry_then_success(model_call, transport, audit):
    transport.queue(TransportError("flaky"), "recovered")
    assert await model_call.call("prompt", "groq") == "recovered"
    assert len(transport.requests) == 2
    assert audit.records == []


async def test_missing_credential_is_not_retried(budget, audit, sleep):
    transport = ScriptedTransport(["unused"])
    layer = ModelCallLayer(
        transport, DevPilotConfig(), budget,
        audit=audit, context=CallContext(user_id="user-1"), sleep=sleep,
    )
    with pytest.raises(MissingCredential) as exc_info:
        await layer.call("prompt", "groq")
    assert exc_info.value.provider == "groq"
    assert transport.requests == []
    assert audit.records == []


async def test_pool_key_used_when_enabled(budget, sleep):
    transport = ScriptedTransport(["ok"])
    pool = KeyPool(enabled=True, keys=[
        PoolKey(id="1", key="pool-a", provider="groq"),
        PoolKey(id="2", key="pool-b", provider="groq"),
        PoolKey(id="3", key="pool-gemini", provider="gemini"),
    ])
    layer = ModelCallLayer(
        transport, DevPilotConfig(), budget,
        key_pool=pool, context=CallContext(user_id="user-1"), sleep=sleep, rng=random.Random(7),
    )
    await layer.call("prompt", "groq")
    assert transport.requests[0]["api_key"] in {"pool-a", "pool-b"}


async def test_disabled_pool_is_ignored(budget, sleep):
    pool = KeyPool(enabled=False, keys=[PoolKey(id="1", key="pool-a", provider="groq")])
    layer = ModelCallLayer(
        ScriptedTransport(["ok"]), DevPilotConfig(), budget,
        key_pool=pool, context=CallContext(user_id="user-1"), sleep=sleep,
    )
    with pytest.raises(MissingCredential):
        await layer.call("prompt", "groq")


async def test_caller_key_preferred_over_pool(config, budget, sleep):
    transport = ScriptedTransport(["ok"])
    pool = KeyPool(enabled=True, keys=[PoolKey(id="1", key="pool-a", provider="groq")])
    layer = ModelCallLayer(transport, config, budget, key_pool=pool, sleep=sleep)
    await layer.call("prompt", "groq")
    assert transport.requests[0]["api_key"] == "groq-key"


def test_pool_pick_is_uniform_over_provider_keys():
    pool = KeyPool(enabled=True, keys=[
        PoolKey(id="1", key="a", provider="groq"),
        PoolKey(id="2", key="b", provider="groq"),
        PoolKey(id="3", key="c", provider="gemini"),
    ])
    rng = random.Random(0)
    picks = {pool.pick("groq", rng) for _ in range(50)}
    assert picks == {"a", "b"}
    assert pool.pick("openrouter", rng) is None


async def test_failing_audit_sink_does_not_mask_provider_error(config, budget, caplog):
    class BrokenSink(AuditSink):
        async def log_error(self, record):
            raise RuntimeError("sink offline")

    layer = ModelCallLayer(
        ScriptedTransport([TransportError("a"), TransportError("b")]),
        config, budget, audit=BrokenSink(), sleep=RecordingSleep(),
    )
    with pytest.raises(ProviderError):
        await layer.call("prompt", "groq")
    assert "sink offline" in caplog.text


async def test_jsonl_audit_sink(tmp_path):
    sink = JsonlAuditSink(tmp_path / "logs" / "audit.jsonl")
    await sink.log_error(AuditRecord(user_id="u", provider="groq", model="m", attempts=2, error="boom"))
    await sink.log_error(AuditRecord(user_id="u", provider="gemini", model="m", attempts=2, error="bang"))
    lines = (tmp_path / "logs" / "audit.jsonl").read_text().splitlines()
    assert [json.loads(line)["error"] for line in lines] == ["boom", "bang"]


async def test_unmetered_ledger():
    ledger = InMemoryBudgetLedger()
    assert await ledger.remaining("anyone") > 0
    await ledger.deduct("anyone")
    assert await ledger.remaining("anyone") > 0


async def test_transcript_written_when_enabled(config, budget, tmp_path):
    from devpilot.debug_log import CallTranscriptLogger

    transcript = CallTranscriptLogger(tmp_path, session="run")
    layer = ModelCallLayer(
        ScriptedTransport([TransportError("first"), "second"]),
        config, budget, sleep=RecordingSleep(), transcript=transcript,
    )
    await layer.call("the prompt", "groq")
    text = (tmp_path / "run_calls.txt").read_text()
    assert "the prompt" in text
    assert "ATTEMPT 1 FAILED (retrying)" in text
    assert "second" in text
