"""The six stage agents of the research pipeline."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..contracts import Stage, WorkflowSnapshot
from ..errors import AgentError
from .base import StageAgent, dataset_overview, extract_json

logger = logging.getLogger(__name__)

MAX_INGESTED_ROWS = 5000


class PlanTask(BaseModel):
    id: str
    objective: str
    task_type: Literal["LITERATURE", "ANALYSIS"]
    datasets: List[str] = Field(default_factory=list)

    @field_validator("task_type", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


class DiscoveryEvidence(BaseModel):
    task_id: str
    explanation: str


class Discovery(BaseModel):
    title: str
    claim: str
    summary: str = ""
    evidence: List[DiscoveryEvidence] = Field(default_factory=list)
    novelty: str = ""


def _question(snapshot: WorkflowSnapshot) -> str:
    ingestion = snapshot.artifact(Stage.INGESTION) or {}
    return ingestion.get("question") or "Characterise the submitted dataset."


def _tasks(snapshot: WorkflowSnapshot, task_type: str) -> List[Dict[str, Any]]:
    plan = snapshot.artifact(Stage.PLANNING) or {}
    return [t for t in plan.get("tasks", []) if t.get("task_type") == task_type]


class IngestionAgent(StageAgent):
    """Validate the submitted datasets. Makes no LLM calls."""

    stage = Stage.INGESTION

    async def run(self, snapshot: WorkflowSnapshot) -> Dict[str, Any]:
        supplied = snapshot.input.get("datasets")
        if supplied is None and "dataset" in snapshot.input:
            supplied = [snapshot.input["dataset"]]
        if not supplied:
            raise AgentError("No dataset supplied with the workflow input", retryable=False)
        if not isinstance(supplied, list):
            raise AgentError(
                f"datasets must be a list, got {type(supplied).__name__}", retryable=False
            )

        required = snapshot.input.get("required_columns")
        datasets = []
        descriptions = []
        for entry in supplied:
            if isinstance(entry, str):
                # Described rather than uploaded, e.g. "120 rows of expression data".
                descriptions.append(entry)
                continue
            if not isinstance(entry, dict):
                raise AgentError(
                    f"Dataset entry must be an object or a description, got {type(entry).__name__}",
                    retryable=False,
                )
            filename = entry.get("filename") or "dataset.csv"
            rows = self.context.validator.validate(
                self._content(entry, filename), filename, required_columns=required
            )
            datasets.append(
                {
                    "filename": rows.filename,
                    "format": rows.format,
                    "columns": rows.columns,
                    "row_count": rows.row_count,
                    "records": rows.records[:MAX_INGESTED_ROWS],
                    "truncated": rows.row_count > MAX_INGESTED_ROWS,
                }
            )
            logger.info(
                f"Ingested {filename} for workflow {snapshot.workflow_id}: "
                f"{rows.row_count} rows, {len(rows.columns)} columns"
            )

        return {
            "question": snapshot.input.get("question"),
            "datasets": datasets,
            "descriptions": descriptions,
        }

    @staticmethod
    def _content(entry: Dict[str, Any], filename: str) -> bytes:
        if entry.get("content_base64") is not None:
            try:
                return base64.b64decode(entry["content_base64"], validate=True)
            except (binascii.Error, ValueError):
                raise AgentError(f"{filename}: content_base64 is not valid base64", retryable=False)
        content = entry.get("content")
        if content is None:
            raise AgentError(f"{filename}: dataset entry has no content", retryable=False)
        if isinstance(content, (list, dict)):
            return json.dumps(content).encode("utf-8")
        return str(content).encode("utf-8")


PLANNING_SYSTEM = (
    "You plan computational biology research. Reply with JSON only: "
    '{"objective": str, "tasks": [{"objective": str, "task_type": '
    '"LITERATURE" | "ANALYSIS", "datasets": [filename, ...]}]}.'
)


class PlanningAgent(StageAgent):
    """Turn the question and datasets into literature and analysis tasks."""

    stage = Stage.PLANNING

    async def run(self, snapshot: WorkflowSnapshot) -> Dict[str, Any]:
        prompt = (
            f"Research question:\n{_question(snapshot)}\n\n"
            f"Datasets:\n{dataset_overview(snapshot)}\n\n"
            "Propose at most five tasks. Include at least one LITERATURE task "
            "and one ANALYSIS task per dataset."
        )
        reply = extract_json(await self.complete(snapshot, prompt, system=PLANNING_SYSTEM))
        if isinstance(reply, list):
            reply = {"tasks": reply}
        if not isinstance(reply, dict) or not reply.get("tasks"):
            raise AgentError("Planner returned no tasks")

        try:
            tasks = [
                PlanTask(
                    id=f"task-{n}",
                    objective=raw.get("objective", ""),
                    task_type=raw.get("task_type") or raw.get("type"),
                    datasets=raw.get("datasets") or [],
                )
                for n, raw in enumerate(reply["tasks"], start=1)
            ]
        except (ValidationError, AttributeError) as e:
            raise AgentError(f"Planner returned malformed tasks: {e}")

        return {
            "objective": reply.get("objective") or _question(snapshot),
            "tasks": [task.model_dump() for task in tasks],
        }


LITERATURE_SYSTEM = (
    "You are a scientific reviewer. Synthesise the sources into a concise "
    "literature review in markdown. Cite sources as [n]."
)


class LiteratureAgent(StageAgent):
    """Search for sources on each literature task and synthesise them."""

    stage = Stage.LITERATURE

    async def run(self, snapshot: WorkflowSnapshot) -> Dict[str, Any]:
        plan = snapshot.artifact(Stage.PLANNING) or {}
        queries = [t["objective"] for t in _tasks(snapshot, "LITERATURE")]
        if not queries:
            queries = [plan.get("objective") or _question(snapshot)]

        sources: List[Dict[str, Any]] = []
        seen = set()
        for query in queries:
            hits = await self.call_backend(
                lambda query=query: self.context.search.call(query), label=f"search {query!r}"
            )
            for hit in hits:
                key = hit.get("doi") or hit.get("link") or hit.get("title")
                if key in seen:
                    continue
                seen.add(key)
                sources.append(hit)

        if sources:
            listing = "\n".join(
                f"[{n}] {s.get('title')} ({s.get('year') or 'n.d.'}): {s.get('snippet', '')}"
                for n, s in enumerate(sources, start=1)
            )
        else:
            listing = "No external sources were found; rely on established knowledge and say so."
        prompt = (
            f"Objective: {plan.get('objective') or _question(snapshot)}\n\n"
            f"Questions:\n" + "\n".join(f"- {q}" for q in queries) + f"\n\nSources:\n{listing}"
        )
        synthesis = await self.complete(snapshot, prompt, system=LITERATURE_SYSTEM)
        return {"queries": queries, "sources": sources, "synthesis": synthesis.strip()}


FINDINGS_SYSTEM = (
    "You interpret dataset statistics. Reply with JSON only: a list of "
    '{"title": str, "claim": str, "summary": str, "evidence": '
    '[{"task_id": str, "explanation": str}], "novelty": str}.'
)


class FindingsAgent(StageAgent):
    """Run the analysis backend per task and derive discoveries."""

    stage = Stage.FINDINGS

    async def run(self, snapshot: WorkflowSnapshot) -> Dict[str, Any]:
        ingestion = snapshot.artifact(Stage.INGESTION) or {}
        datasets = {d["filename"]: d for d in ingestion.get("datasets", [])}
        tasks = _tasks(snapshot, "ANALYSIS") or [
            {"id": "overview", "objective": "Describe each dataset", "datasets": []}
        ]

        analyses = []
        cache: Dict[str, Dict[str, Any]] = {}
        for task in tasks:
            targets = [name for name in task.get("datasets", []) if name in datasets]
            for filename in targets or list(datasets):
                if filename not in cache:
                    dataset = datasets[filename]
                    query = {
                        "filename": filename,
                        "columns": dataset.get("columns", []),
                        "records": dataset.get("records", []),
                    }
                    cache[filename] = await self.call_backend(
                        lambda query=query: self.context.analysis.call(query),
                        label=f"analysis {filename}",
                    )
                analyses.append(
                    {"task_id": task["id"], "filename": filename, "result": cache[filename]}
                )

        literature = snapshot.artifact(Stage.LITERATURE) or {}
        prompt = (
            f"Research question: {_question(snapshot)}\n\n"
            f"Analysis results:\n{json.dumps(analyses, indent=2, default=str)}\n\n"
            f"Literature context:\n{literature.get('synthesis', 'none')}"
        )
        reply = extract_json(await self.complete(snapshot, prompt, system=FINDINGS_SYSTEM))
        if isinstance(reply, dict):
            reply = reply.get("discoveries", [reply])
        try:
            discoveries = [Discovery.model_validate(item) for item in reply]
        except (ValidationError, TypeError) as e:
            raise AgentError(f"Findings reply did not match the discovery shape: {e}")
        return {
            "analyses": analyses,
            "discoveries": [d.model_dump() for d in discoveries],
        }


DRAFT_SYSTEM = (
    "You write research reports in markdown. Start with a '# ' title, then "
    "Abstract, Background, Methods, Results and Discussion sections."
)


class DraftAgent(StageAgent):
    """Write the report draft from the plan, literature and discoveries."""

    stage = Stage.DRAFT

    async def run(self, snapshot: WorkflowSnapshot) -> Dict[str, Any]:
        plan = snapshot.artifact(Stage.PLANNING) or {}
        literature = snapshot.artifact(Stage.LITERATURE) or {}
        findings = snapshot.artifact(Stage.FINDINGS) or {}
        discoveries = "\n".join(
            f"- {d['title']}: {d['claim']}" for d in findings.get("discoveries", [])
        )
        prompt = (
            f"Objective: {plan.get('objective') or _question(snapshot)}\n\n"
            f"Datasets:\n{dataset_overview(snapshot)}\n\n"
            f"Literature review:\n{literature.get('synthesis', '')}\n\n"
            f"Discoveries:\n{discoveries or '- none'}"
        )
        markdown = (await self.complete(snapshot, prompt, system=DRAFT_SYSTEM)).strip()
        if not markdown:
            raise AgentError("Draft model returned an empty report")
        return {"title": self._title(markdown, plan), "markdown": markdown}

    @staticmethod
    def _title(markdown: str, plan: Dict[str, Any]) -> str:
        for line in markdown.splitlines():
            if line.startswith("# "):
                return line[2:].strip()
        return plan.get("objective") or "Research report"


class FormattingAgent(StageAgent):
    """Assemble the final document. Deterministic."""

    stage = Stage.FORMATTING

    async def run(self, snapshot: WorkflowSnapshot) -> Dict[str, Any]:
        draft = snapshot.artifact(Stage.DRAFT) or {}
        literature = snapshot.artifact(Stage.LITERATURE) or {}
        findings = snapshot.artifact(Stage.FINDINGS) or {}
        title = draft.get("title") or "Research report"

        body = self._strip_title(draft.get("markdown", ""))
        references = [self._reference(s) for s in literature.get("sources", [])]

        sections = [f"# {title}", body.strip()]
        discoveries = findings.get("discoveries", [])
        if discoveries:
            lines = ["## Key discoveries"]
            for n, d in enumerate(discoveries, start=1):
                lines.append(f"{n}. **{d['title']}**: {d['claim']}")
            sections.append("\n".join(lines))
        if references:
            sections.append(
                "## References\n"
                + "\n".join(f"[{n}] {ref}" for n, ref in enumerate(references, start=1))
            )
        document = "\n\n".join(s for s in sections if s) + "\n"
        return {
            "title": title,
            "document": document,
            "references": references,
            "word_count": len(document.split()),
        }

    @staticmethod
    def _strip_title(markdown: str) -> str:
        lines = markdown.splitlines()
        if lines and lines[0].startswith("# "):
            lines = lines[1:]
        return "\n".join(lines)

    @staticmethod
    def _reference(source: Dict[str, Any]) -> str:
        parts = [source.get("authors"), source.get("title"), source.get("publication")]
        text = ". ".join(p for p in parts if p)
        if source.get("year"):
            text += f" ({source['year']})"
        link = source.get("doi") and f"https://doi.org/{source['doi']}" or source.get("link")
        return f"{text}. {link}" if link else text


DEFAULT_AGENTS = (
    IngestionAgent,
    PlanningAgent,
    LiteratureAgent,
    FindingsAgent,
    DraftAgent,
    FormattingAgent,
)
