import pytest

from graphagent.executor import extract_edge_key, tool_signature, validate_worker_summary
from tests.fakes import WORKER_MODEL, FakeTavilyClient, text_turn, tool_turn

VALID = "Task: t\nActions: a\nResult: Done.\nNode: None\nContext sources used: 4\nFollow-up: None"


async def prepare(service, task, context=None):
    delegation = await service.create_delegation(task, context, agent_type="worker")
    events = []
    service.broadcaster.subscribe(delegation.session_id, events.append)
    return delegation, events


def test_validate_worker_summary_rules():
    assert validate_worker_summary(VALID, [4]) is None
    assert validate_worker_summary("", []) == "Worker returned an empty summary."
    assert validate_worker_summary(VALID.replace("Result: Done.", "Result:"), []) == (
        "Missing or empty Result line in worker summary."
    )
    multi_line = VALID.replace("Result: Done.", "Result:\nThe edge now exists.")
    assert validate_worker_summary(multi_line, [4]) is None
    assert validate_worker_summary(VALID.replace("Follow-up: None", ""), []) == (
        "Missing Follow-up line in worker summary."
    )
    assert "Context sources used" in validate_worker_summary(VALID.replace("Context sources used: 4", ""), [])
    uncited = VALID.replace("Context sources used: 4", "Context sources used: none")
    assert validate_worker_summary(uncited, []) is None
    assert validate_worker_summary(uncited, [4]) == (
        "Worker did not cite any node IDs even though a capsule was provided."
    )


def test_extract_edge_key_from_task_or_context():
    assert extract_edge_key({"task": "Link [NODE:3:\"A\"] to [NODE:8]"}) == (3, 8)
    assert extract_edge_key({"task": "Link", "context": ["from_node_id=5", "to_node_id: 6"]}) == (5, 6)
    assert extract_edge_key({"task": "Only [NODE:3]"}) is None


def test_tool_signature_normalizes_search_queries():
    assert tool_signature("web_search", {"query": " Heat  Pumps "}) == tool_signature("web_search", {"query": "heat pumps"})
    assert tool_signature("query_nodes", {"query": "A"}) != tool_signature("query_nodes", {"query": "a"})


@pytest.mark.asyncio
async def test_worker_creates_edge_and_completes(service_factory, db):
    a = (await db.insert_node("A"))["id"]
    b = (await db.insert_node("B"))["id"]
    summary = f"Task: link\nActions: create_edge\nResult: Created edge.\nNode: None\nContext sources used: {a}, {b}\nFollow-up: None"
    service, llm = service_factory(
        {WORKER_MODEL: [tool_turn(("create_edge", {"from_node_id": a, "to_node_id": b})), text_turn(summary)]}
    )
    delegation, events = await prepare(service, "Link A to B", [str(a), str(b)])
    result = await service.execute(delegation)

    assert (result.status, result.summary) == ("completed", summary)
    assert await db.edge_exists(a, b)
    assert "think" in llm.calls_for(WORKER_MODEL)[0]["tools"]
    assert "delegate_to_worker" not in llm.calls_for(WORKER_MODEL)[0]["tools"]
    assert [e["type"] for e in events][:3] == ["assistant-message", "tool-input-start", "tool-output-available"]


@pytest.mark.asyncio
async def test_worker_skips_existing_edge(service_factory, db):
    a = (await db.insert_node("A"))["id"]
    b = (await db.insert_node("B"))["id"]
    await db.insert_edge(a, b)
    service, _ = service_factory(
        {
            WORKER_MODEL: [
                tool_turn(("create_edge", {"from_node_id": a, "to_node_id": b})),
                text_turn(VALID.replace("Context sources used: 4", f"Context sources used: {a}")),
            ]
        }
    )
    delegation, events = await prepare(service, "Link A to B", [str(a), str(b)])
    await service.execute(delegation)

    output = [e for e in events if e["type"] == "tool-output-available"][0]
    assert output["summary"] == f"Edge already exists between node {a} and node {b}; skipping create_edge."
    assert len(await db.list_edges()) == 1


@pytest.mark.asyncio
async def test_invalid_summary_fails_with_reason(service_factory):
    service, _ = service_factory({WORKER_MODEL: [text_turn("Result: Done.\nContext sources used: none")]})
    delegation, _ = await prepare(service, "Summarize")
    result = await service.execute(delegation)

    assert result.status == "failed"
    assert result.summary.endswith("\nValidation: Missing Follow-up line in worker summary.")
    row = await service.ledger.get(delegation.session_id)
    assert (row.status, row.summary) == ("failed", result.summary)


@pytest.mark.asyncio
async def test_iteration_limit_falls_back_to_last_tool_summary(service_factory):
    service, _ = service_factory(
        {WORKER_MODEL: [tool_turn(("create_node", {"title": "Grid batteries"}))]},
        worker_max_iterations=1,
    )
    delegation, _ = await prepare(service, "Create a node for grid batteries")
    result = await service.execute(delegation)

    assert result.summary.startswith('Created node [NODE:1:"Grid batteries"]')
    assert result.status == "failed"
    assert "Validation: Missing or empty Result line" in result.summary


@pytest.mark.asyncio
async def test_tool_exception_becomes_error_output(service_factory):
    service, _ = service_factory(
        {WORKER_MODEL: [tool_turn(("update_node", {"content": "no id"})), text_turn(VALID)]}
    )
    delegation, events = await prepare(service, "Update the node")
    result = await service.execute(delegation)

    assert result.status == "completed"
    output = [e for e in events if e["type"] == "tool-output-available"][0]
    assert output["status"] == "error"


@pytest.mark.asyncio
async def test_quick_add_extracts_once_then_summarizes(service_factory, db):
    web = FakeTavilyClient(
        api_key="test-key",
        extract_response={"url": "https://a.test", "title": "Article", "content": "Body text"},
    )
    extract = ("website_extract", {"url": "https://a.test"})
    service, llm = service_factory(
        {WORKER_MODEL: [tool_turn(extract, extract), text_turn(VALID)]},
        web=web,
    )
    delegation, events = await prepare(service, "Quick add https://a.test")
    result = await service.execute(delegation)

    assert result.status == "completed"
    assert web.extract_calls == ["https://a.test"]
    nodes = await db.search_nodes("Body")
    assert [n["title"] for n in nodes] == ["Article"]
    summaries = [e["summary"] for e in events if e["type"] == "tool-output-available"]
    assert summaries[1].startswith("Extraction already completed")
    last = llm.calls_for(WORKER_MODEL)[-1]
    assert last["messages"][-1]["content"].startswith("Extraction completed successfully")


@pytest.mark.asyncio
async def test_direct_edit_worker_only_gets_edge_and_update_tools(service_factory):
    service, llm = service_factory({WORKER_MODEL: [text_turn(VALID)]})
    delegation, _ = await prepare(service, "Integrate")
    await service.execute(delegation, workflow_key="integrate")
    assert sorted(llm.calls_for(WORKER_MODEL)[0]["tools"]) == ["create_edge", "update_node"]
