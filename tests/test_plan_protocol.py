"""Tests for the propose/approve modification plan protocol."""

import pytest

from devpilot.applier import apply_changes
from devpilot.changeset import PathMove
from devpilot.errors import ParseFailure, PlanStateError, ProviderError
from devpilot.file_store import to_map
from devpilot.llm_client import TransportError
from devpilot.memory_log import NO_MEMORY, append_entry
from devpilot.plan_protocol import (
    ModificationPlanner,
    Plan,
    PlanOperations,
    PlanStatus,
    SpecialActionType,
    StoreProjectActions,
)
from devpilot.store import ChatMessage

FOOTER_PLAN = {
    "thoughts": "Add a footer component and include it in the page.",
    "reasoning": "A separate module keeps the page markup small.",
    "plan": {"create": ["src/footer.js"], "update": ["index.html"]},
}

FOOTER_CHANGES = {
    "create": {"src/footer.js": "export const footer = '<footer/>';", "sneaky.js": "alert(1)"},
    "update": {"index.html": "<h1>Hello</h1><footer></footer>"},
}


@pytest.fixture
def planner(model_call, parser, config, store):
    return ModificationPlanner(model_call, parser, config, store=store, project_id="project-1")


async def propose(planner, store, transport, response=FOOTER_PLAN, request="Add a footer"):
    transport.queue(response)
    return await planner.propose_plan(request, await store.get("project-1"))


async def test_propose_plan(planner, store, transport):
    plan = await propose(planner, store, transport)

    assert plan.status == PlanStatus.PENDING
    assert plan.request == "Add a footer"
    assert plan.operations.create == ["src/footer.js"]
    assert plan.operations.paths() == {"src/footer.js", "index.html"}
    assert not plan.needs_clarification

    prompt = transport.requests[0]["prompt"]
    assert "Add a footer" in prompt
    assert NO_MEMORY in prompt
    assert "src/utils.js" in prompt


async def test_propose_includes_memory(planner, store, transport):
    files = await store.get("project-1")
    await store.apply_batch("project-1", apply_changes(files, append_entry(files, "Built the navbar.")).operations)

    await propose(planner, store, transport)
    assert "Built the navbar." in transport.requests[0]["prompt"]


async def test_clarification_plan(planner, store, transport):
    plan = await propose(planner, store, transport, {"thoughts": "Which color should the footer be?", "plan": {}})
    assert plan.needs_clarification
    with pytest.raises(PlanStateError):
        await planner.approve_plan(plan, await store.get("project-1"))
    assert plan.status == PlanStatus.PENDING


async def test_approve_applies_only_planned_paths(planner, store, transport):
    plan = await propose(planner, store, transport)
    transport.queue(FOOTER_CHANGES, "Added a footer module and wired it into index.html.")

    changes = await planner.approve_plan(plan, await store.get("project-1"))

    assert plan.status == PlanStatus.APPROVED
    assert "sneaky.js" not in changes.create
    mapping = to_map(await store.get("project-1"))
    assert mapping["index.html"] == "<h1>Hello</h1><footer></footer>"
    assert "src/footer.js" in mapping
    assert "sneaky.js" not in mapping
    assert "Added a footer module" in mapping[".devpilot/memory.md"]

    summary_prompt = transport.requests[2]["prompt"]
    assert "src/footer.js" in summary_prompt
    assert "sneaky.js" not in summary_prompt


async def test_failed_execution_returns_plan_to_pending(planner, store, transport):
    plan = await propose(planner, store, transport)
    before = to_map(await store.get("project-1"))
    # execution output and the self-correction reply are both unparseable
    transport.queue("I could not do it", "still not json")

    with pytest.raises(ParseFailure):
        await planner.approve_plan(plan, await store.get("project-1"))

    assert plan.status == PlanStatus.PENDING
    assert to_map(await store.get("project-1")) == before

    transport.queue(FOOTER_CHANGES, "Added a footer.")
    await planner.approve_plan(plan, await store.get("project-1"))
    assert plan.status == PlanStatus.APPROVED


async def test_memory_failure_does_not_undo_changes(planner, store, transport, audit):
    plan = await propose(planner, store, transport)
    transport.queue(FOOTER_CHANGES, TransportError("summary down"), TransportError("summary down"))

    await planner.approve_plan(plan, await store.get("project-1"))

    assert plan.status == PlanStatus.APPROVED
    mapping = to_map(await store.get("project-1"))
    assert "src/footer.js" in mapping
    assert ".devpilot/memory.md" not in mapping
    assert len(audit.records) == 1


async def test_provider_failure_on_execution_propagates(planner, store, transport):
    plan = await propose(planner, store, transport)
    transport.queue(TransportError("down"), TransportError("down"))
    with pytest.raises(ProviderError):
        await planner.approve_plan(plan, await store.get("project-1"))
    assert plan.status == PlanStatus.PENDING


async def test_move_plan(planner, store, transport):
    plan = await propose(planner, store, transport, {
        "thoughts": "Rename the helpers.",
        "plan": {"move": [{"from": "src/utils.js", "to": "src/helpers.js"}]},
    })
    assert plan.operations.move == [PathMove("src/utils.js", "src/helpers.js")]

    transport.queue({"move": [{"from": "src/utils.js", "to": "src/helpers.js"}]}, "Renamed utils.")
    await planner.approve_plan(plan, await store.get("project-1"))
    mapping = to_map(await store.get("project-1"))
    assert "src/helpers.js" in mapping
    assert "src/utils.js" not in mapping


async def test_reject_plan(planner, store, transport):
    plan = await propose(planner, store, transport)
    planner.reject_plan(plan)
    assert plan.status == PlanStatus.REJECTED
    with pytest.raises(PlanStateError):
        await planner.approve_plan(plan, await store.get("project-1"))
    with pytest.raises(PlanStateError):
        planner.reject_plan(plan)


def test_plan_from_dict_accepts_path_maps():
    plan = Plan.from_dict({"thoughts": "t", "plan": {"delete": {"old.js": None}, "update": ["/index.html"]}})
    assert plan.operations.delete == ["old.js"]
    assert plan.operations.update == ["index.html"]


@pytest.mark.parametrize("data", [
    "not a plan",
    {"plan": {"create": [1, 2]}},
    {"plan": {"move": [{"from": "a.js"}]}},
    {"plan": {}, "special_action": {"action": "FORMAT_DISK"}},
])
def test_plan_from_dict_rejects_bad_shapes(data):
    with pytest.raises(ParseFailure):
        Plan.from_dict(data)


def test_plan_operations_round_trip():
    ops = PlanOperations(create=["a.js"], copy=[PathMove("a.js", "b.js")])
    assert PlanOperations.from_dict(ops.to_dict()) == ops


# =============================================================================
# Special actions
# =============================================================================

def special_plan(action, payload=None):
    data = {"thoughts": "Project-level request.", "plan": {}, "special_action": {"action": action}}
    if payload:
        data["special_action"]["payload"] = payload
    return data


async def test_special_action_requires_confirmation(planner, store, transport):
    plan = await propose(planner, store, transport, special_plan("DELETE_PROJECT"))
    assert plan.special_action.action == SpecialActionType.DELETE_PROJECT
    assert not plan.needs_clarification

    with pytest.raises(PlanStateError):
        await planner.approve_plan(plan, await store.get("project-1"))

    prompts = []

    def decline(prompt):
        prompts.append(prompt)
        return False

    handler = StoreProjectActions(store, "project-1")
    assert await planner.perform_special_action(plan, handler, decline) is False
    assert prompts == ["Are you sure you want to perform the action: DELETE_PROJECT?"]
    assert plan.status == PlanStatus.REJECTED
    assert await store.get_project("project-1")


async def test_rename_with_async_confirmation(planner, store, transport):
    plan = await propose(planner, store, transport, special_plan("RENAME_PROJECT", {"newName": "Portfolio"}))

    async def accept(prompt):
        return True

    assert await planner.perform_special_action(plan, StoreProjectActions(store, "project-1"), accept)
    assert plan.status == PlanStatus.APPROVED
    assert (await store.get_project("project-1"))["name"] == "Portfolio"


async def test_copy_records_new_project(planner, store, transport):
    plan = await propose(planner, store, transport, special_plan("COPY_PROJECT", {"newName": "Demo v2"}))
    handler = StoreProjectActions(store, "project-1")
    await planner.perform_special_action(plan, handler, lambda prompt: True)
    assert (await store.get_project(handler.copied_project_id))["name"] == "Demo v2"


async def test_copy_without_name(planner, store, transport):
    plan = await propose(planner, store, transport, special_plan("COPY_PROJECT"))
    with pytest.raises(PlanStateError, match="newName"):
        await planner.perform_special_action(plan, StoreProjectActions(store, "project-1"), lambda prompt: True)


async def test_clear_chat_history(planner, store, transport):
    await store.append("project-1", ChatMessage(sender="user", text="old"))
    plan = await propose(planner, store, transport, special_plan("clear_chat_history"))
    await planner.perform_special_action(plan, StoreProjectActions(store, "project-1"), lambda prompt: True)
    assert await store.chat_history("project-1") == []


async def test_new_file_sent_as_update_is_created(model_call, parser, config, store, transport):
    messages = []
    planner = ModificationPlanner(
        model_call, parser, config, store=store, project_id="project-1", on_status=messages.append,
    )
    plan = await propose(planner, store, transport)
    transport.queue(
        {"update": {"src/footer.js": "export const footer = 1;", "index.html": "<footer></footer>"}},
        "Added a footer.",
    )

    changes = await planner.approve_plan(plan, await store.get("project-1"))

    assert changes.create == {"src/footer.js": "export const footer = 1;"}
    assert changes.update == {"index.html": "<footer></footer>"}
    assert to_map(await store.get("project-1"))["src/footer.js"] == "export const footer = 1;"
    assert any("treating its update as a create" in m for m in messages)
