import base64

import pytest

from bioflow.agents import (
    AgentContext,
    DraftAgent,
    FindingsAgent,
    FormattingAgent,
    IngestionAgent,
    LiteratureAgent,
    PlanningAgent,
    extract_json,
)
from bioflow.config import BackoffConfig
from bioflow.contracts import Stage, WorkflowSnapshot
from bioflow.errors import AgentError, DatasetError
from tests.fixtures.fakes import (
    RESEARCH_REPLIES,
    FlakySearchBackend,
    ScriptedProvider,
    StaticSearchBackend,
    sample_csv,
    scripted_gateway,
)

AGENTS = (IngestionAgent, PlanningAgent, LiteratureAgent, FindingsAgent, DraftAgent, FormattingAgent)

INPUT = {
    "question": "Does treatment change expression?",
    "dataset": {"filename": "expression.csv", "content": sample_csv(120)},
}


def _context(search=None, provider=None) -> AgentContext:
    provider = provider or ScriptedProvider("a", replies=RESEARCH_REPLIES)
    return AgentContext(
        gateway=scripted_gateway(provider),
        provider_order=[provider.provider_id],
        search=search or StaticSearchBackend(),
        backend_backoff=BackoffConfig(base=0.0, cap=0.0, jitter=0.0),
    )


def _snapshot(stage: Stage, payload=None, workflow_input=None) -> WorkflowSnapshot:
    payload = payload or {}
    return WorkflowSnapshot(
        workflow_id="wf-1",
        conversation_id="conv-1",
        stage=stage,
        version=len(payload),
        input=INPUT if workflow_input is None else workflow_input,
        payload=payload,
    )


async def _run_until(context: AgentContext, stop: Stage) -> dict:
    payload = {}
    for agent_cls in AGENTS:
        if agent_cls.stage == stop:
            break
        payload[agent_cls.stage.value] = await agent_cls(context).run(
            _snapshot(agent_cls.stage, payload)
        )
    return payload


@pytest.mark.asyncio
async def test_ingestion_parses_inline_csv():
    artifact = await IngestionAgent(AgentContext()).run(_snapshot(Stage.INGESTION))
    assert artifact["question"] == "Does treatment change expression?"
    dataset = artifact["datasets"][0]
    assert dataset["filename"] == "expression.csv"
    assert dataset["row_count"] == 120
    assert dataset["columns"] == ["sample_id", "condition", "expression"]
    assert dataset["truncated"] is False
    assert artifact["descriptions"] == []


@pytest.mark.asyncio
async def test_ingestion_accepts_base64_and_descriptions():
    encoded = base64.b64encode(sample_csv(5).encode()).decode()
    workflow_input = {
        "datasets": [
            {"filename": "small.csv", "content_base64": encoded},
            "120 rows of bulk RNA-seq counts",
        ]
    }
    artifact = await IngestionAgent(AgentContext()).run(
        _snapshot(Stage.INGESTION, workflow_input=workflow_input)
    )
    assert artifact["datasets"][0]["row_count"] == 5
    assert artifact["descriptions"] == ["120 rows of bulk RNA-seq counts"]


@pytest.mark.asyncio
async def test_ingestion_rejects_missing_and_invalid_datasets():
    with pytest.raises(AgentError) as excinfo:
        await IngestionAgent(AgentContext()).run(_snapshot(Stage.INGESTION, workflow_input={}))
    assert not excinfo.value.retryable

    bad = {"dataset": {"filename": "table.xlsx", "content": "a,b"}}
    with pytest.raises(DatasetError) as excinfo:
        await IngestionAgent(AgentContext()).run(_snapshot(Stage.INGESTION, workflow_input=bad))
    assert excinfo.value.kind == DatasetError.UNSUPPORTED_FORMAT
    assert not excinfo.value.retryable

    for wrong in ({"dataset": 120}, {"datasets": "120 rows"}, {"datasets": [None]}):
        with pytest.raises(AgentError) as excinfo:
            await IngestionAgent(AgentContext()).run(
                _snapshot(Stage.INGESTION, workflow_input=wrong)
            )
        assert not excinfo.value.retryable


@pytest.mark.asyncio
async def test_planning_builds_typed_tasks_with_stable_request_key():
    provider = ScriptedProvider("a", replies=RESEARCH_REPLIES)
    context = _context(provider=provider)
    payload = await _run_until(context, Stage.LITERATURE)

    plan = payload["planning"]
    assert plan["objective"].startswith("Compare expression")
    assert [t["id"] for t in plan["tasks"]] == ["task-1", "task-2"]
    assert [t["task_type"] for t in plan["tasks"]] == ["LITERATURE", "ANALYSIS"]
    assert provider.calls[0].idempotency_key == "wf-1:planning:1:main"
    assert "expression.csv: 120 rows" in provider.calls[0].messages[-1]["content"]


@pytest.mark.asyncio
async def test_planning_rejects_replies_without_json():
    provider = ScriptedProvider("a", ["I would start by reading papers."])
    context = _context(provider=provider)
    ingestion = await IngestionAgent(context).run(_snapshot(Stage.INGESTION))
    with pytest.raises(AgentError) as excinfo:
        await PlanningAgent(context).run(_snapshot(Stage.PLANNING, {"ingestion": ingestion}))
    assert excinfo.value.retryable


@pytest.mark.asyncio
async def test_agents_need_a_gateway():
    with pytest.raises(AgentError) as excinfo:
        await PlanningAgent(AgentContext()).run(_snapshot(Stage.PLANNING, {"ingestion": {}}))
    assert not excinfo.value.retryable


@pytest.mark.asyncio
async def test_literature_retries_flaky_search_and_dedupes_sources():
    search = FlakySearchBackend(failures=1)
    context = _context(search=search)
    payload = await _run_until(context, Stage.FINDINGS)

    literature = payload["literature"]
    assert literature["queries"] == ["treatment response in hepatocytes"]
    assert len(search.queries) == 2
    assert len(literature["sources"]) == 1
    assert literature["synthesis"].startswith("Prior work")


@pytest.mark.asyncio
async def test_findings_combine_analysis_and_discoveries():
    payload = await _run_until(_context(), Stage.DRAFT)

    findings = payload["findings"]
    assert [(a["task_id"], a["filename"]) for a in findings["analyses"]] == [
        ("task-2", "expression.csv")
    ]
    columns = findings["analyses"][0]["result"]["columns"]
    assert columns["expression"]["kind"] == "numeric"
    assert columns["condition"]["distinct"] == 2
    discovery = findings["discoveries"][0]
    assert discovery["title"] == "Treatment raises expression"
    assert discovery["evidence"][0]["task_id"] == "task-2"


@pytest.mark.asyncio
async def test_draft_and_formatting_produce_final_document():
    payload = await _run_until(_context(), stop=None)

    assert payload["draft"]["title"] == "Treatment response"
    report = payload["formatting"]
    assert report["title"] == "Treatment response"
    assert report["document"].startswith("# Treatment response\n")
    assert "## Key discoveries" in report["document"]
    assert "1. **Treatment raises expression**" in report["document"]
    assert report["references"] == [
        "A Author, B Author. Single-cell atlas of the human liver (2021). "
        "https://doi.org/10.1000/liver.2021"
    ]
    assert report["word_count"] == len(report["document"].split())


def test_extract_json_variants():
    assert extract_json('```json\n{"a": 1}\n```') == {"a": 1}
    assert extract_json('Here you go: {"a": [1, 2]} hope it helps') == {"a": [1, 2]}
    assert extract_json("[1, 2, 3]") == [1, 2, 3]
    with pytest.raises(AgentError):
        extract_json("no structure here")
