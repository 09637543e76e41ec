"""
Shared fixtures: a scripted completion transport, a no-op sleep, and an
in-memory project.
"""

import json

import pytest

from devpilot.config import DevPilotConfig
from devpilot.file_store import from_map
from devpilot.llm_client import CompletionTransport, TransportError
from devpilot.model_call import CallContext, InMemoryAuditSink, InMemoryBudgetLedger, ModelCallLayer
from devpilot.response_parser import ResponseParser
from devpilot.store import InMemoryFileStore


class ScriptedTransport(CompletionTransport):
    """
    Replays queued responses in order.

    Entries may be strings, exceptions (raised), dicts/lists (sent as JSON)
    or callables taking (prompt, provider, model).
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.requests: list[dict] = []
        self.closed = False

    def queue(self, *responses):
        self.responses.extend(responses)

    async def complete(self, prompt, provider, model, api_key):
        self.requests.append({
            "prompt": prompt,
            "provider": provider,
            "model": model,
            "api_key": api_key,
        })
        if not self.responses:
            raise TransportError("No scripted response left")
        item = self.responses.pop(0)
        if callable(item):
            item = item(prompt, provider, model)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, (dict, list)):
            return json.dumps(item)
        return item

    async def close(self):
        self.closed = True


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def config():
    return DevPilotConfig(
        api_keys={"gemini": "gemini-key", "openrouter": "openrouter-key", "groq": "groq-key"},
        retry_delay=1.5,
        action_delay=1.5,
    )


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def budget():
    return InMemoryBudgetLedger({"user-1": 100})


@pytest.fixture
def audit():
    return InMemoryAuditSink()


@pytest.fixture
def model_call(transport, config, budget, audit, sleep):
    return ModelCallLayer(
        transport,
        config,
        budget,
        audit=audit,
        context=CallContext(user_id="user-1", project_id="project-1"),
        sleep=sleep,
    )


@pytest.fixture
def parser(model_call, config):
    return ResponseParser(model_call, config)


@pytest.fixture
def project_files():
    return from_map({
        "index.html": "<h1>Hello</h1>",
        "src/app.js": "console.log('app');",
        "src/utils.js": "export const add = (a, b) => a + b;",
    })


@pytest.fixture
def store(project_files):
    store = InMemoryFileStore()
    store.create_project("project-1", project_files, name="Demo")
    return store
