"""External collaborators used by stage agents.

The dataset validator returns ``Rows`` or raises ``DatasetError``. Search and
analysis backends expose ``await call(query)`` and raise
``TransientBackendError`` for failures worth retrying.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import math
import re
import statistics
from collections import Counter
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel, Field

from ..config import SearchConfig
from ..errors import BioflowError, DatasetError, TransientBackendError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".csv": "csv", ".tsv": "tsv", ".json": "json", ".jsonl": "jsonl"}


class Rows(BaseModel):
    """Parsed tabular dataset."""

    filename: str
    format: str
    columns: List[str]
    records: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.records)


class DatasetValidator:
    """Parse CSV, TSV, JSON and JSON Lines uploads into ``Rows``."""

    def __init__(self, required_columns: Sequence[str] = ()) -> None:
        self.required_columns = tuple(required_columns)

    def validate(
        self,
        data: bytes,
        filename: str,
        required_columns: Optional[Sequence[str]] = None,
    ) -> Rows:
        fmt = self._detect_format(filename)
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise DatasetError(DatasetError.PARSE_ERROR, f"not UTF-8 text: {e}", filename)

        if fmt in ("csv", "tsv"):
            columns, records = self._parse_delimited(text, "\t" if fmt == "tsv" else ",", filename)
        elif fmt == "json":
            columns, records = self._parse_json(text, filename)
        else:
            columns, records = self._parse_jsonl(text, filename)

        if not records:
            raise DatasetError(DatasetError.PARSE_ERROR, "dataset has no data rows", filename)

        required = self.required_columns if required_columns is None else tuple(required_columns)
        missing = [col for col in required if col not in columns]
        if missing:
            raise DatasetError(
                DatasetError.MISSING_COLUMN, f"missing column(s): {', '.join(missing)}", filename
            )
        return Rows(filename=filename, format=fmt, columns=columns, records=records)

    def _detect_format(self, filename: str) -> str:
        lowered = filename.lower()
        for extension, fmt in SUPPORTED_EXTENSIONS.items():
            if lowered.endswith(extension):
                return fmt
        raise DatasetError(
            DatasetError.UNSUPPORTED_FORMAT,
            f"expected one of {', '.join(SUPPORTED_EXTENSIONS)}",
            filename,
        )

    def _parse_delimited(self, text: str, delimiter: str, filename: str):
        reader = csv.DictReader(io.StringIO(text), delimiter=delimiter)
        try:
            columns = [c.strip() for c in (reader.fieldnames or [])]
            if not columns or any(not c for c in columns):
                raise DatasetError(DatasetError.PARSE_ERROR, "missing or blank header", filename)
            records = []
            for line_no, row in enumerate(reader, start=2):
                if None in row:
                    raise DatasetError(
                        DatasetError.PARSE_ERROR, f"line {line_no} has extra fields", filename
                    )
                if all(value in (None, "") for value in row.values()):
                    continue
                records.append({k.strip(): v for k, v in row.items()})
        except csv.Error as e:
            raise DatasetError(DatasetError.PARSE_ERROR, str(e), filename)
        return columns, records

    def _parse_json(self, text: str, filename: str):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise DatasetError(DatasetError.PARSE_ERROR, str(e), filename)
        if isinstance(data, dict) and isinstance(data.get("rows"), list):
            data = data["rows"]
        if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
            raise DatasetError(
                DatasetError.PARSE_ERROR, "expected a list of objects", filename
            )
        return _columns_of(data), data

    def _parse_jsonl(self, text: str, filename: str):
        records = []
        for line_no, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise DatasetError(DatasetError.PARSE_ERROR, f"line {line_no}: {e}", filename)
            if not isinstance(record, dict):
                raise DatasetError(
                    DatasetError.PARSE_ERROR, f"line {line_no} is not an object", filename
                )
            records.append(record)
        return _columns_of(records), records


def _columns_of(records: List[Dict[str, Any]]) -> List[str]:
    columns: List[str] = []
    for record in records:
        for key in record:
            if key not in columns:
                columns.append(key)
    return columns


# ----------------------------------------------------------------------
# Search


class SearchBackend(Protocol):
    async def call(self, query: str) -> List[Dict[str, Any]]:
        """Return literature hits for ``query``."""


class NullSearchBackend:
    """Backend used when no search key is configured."""

    async def call(self, query: str) -> List[Dict[str, Any]]:
        logger.info(f"Search disabled; no results for {query!r}")
        return []


_YEAR = re.compile(r"\b(19\d{2}|20\d{2})\b")
_DOI = re.compile(r"\b10\.\d{4,9}/[^\s\"<>]+", re.IGNORECASE)


def parse_scholar_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """Normalise one SerpAPI ``google_scholar`` organic result."""
    summary = (result.get("publication_info") or {}).get("summary") or ""
    parts = summary.split(" - ")
    year_match = _YEAR.search(summary)
    link = result.get("link")
    snippet = result.get("snippet") or ""
    doi_match = _DOI.search(link or "") or _DOI.search(snippet)
    resources = result.get("resources") or []
    return {
        "source": "scholar",
        "title": result.get("title") or "Untitled",
        "authors": parts[0] if summary else None,
        "publication": " - ".join(parts[1:]) if len(parts) > 1 else None,
        "year": int(year_match.group(1)) if year_match else None,
        "snippet": snippet,
        "link": link,
        "citations": ((result.get("inline_links") or {}).get("cited_by") or {}).get("total"),
        "doi": doi_match.group(0).rstrip(".") if doi_match else None,
        "pdf_link": resources[0].get("link") if resources else None,
    }


def parse_light_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """Normalise one SerpAPI ``google_light`` organic result."""
    link = result.get("link") or ""
    source = result.get("source")
    if not source and link.count("/") >= 2:
        source = link.split("/")[2]
    return {
        "source": "web",
        "title": result.get("title") or "Untitled",
        "snippet": result.get("snippet") or "",
        "link": link,
        "domain": source,
        "date": result.get("date"),
    }


class SerpApiSearchBackend:
    """Google Scholar search with a Google Light fallback, through SerpAPI."""

    BASE_URL = "https://serpapi.com/search.json"
    MIN_SCHOLAR_RESULTS = 3

    def __init__(
        self,
        api_key: str,
        scholar_enabled: bool = True,
        light_enabled: bool = True,
        max_results: int = 10,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.scholar_enabled = scholar_enabled
        self.light_enabled = light_enabled
        self.max_results = max_results
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_config(cls, config: SearchConfig) -> "SerpApiSearchBackend":
        return cls(
            api_key=config.serpapi_key or "",
            scholar_enabled=config.scholar_enabled,
            light_enabled=config.light_enabled,
            max_results=config.max_results,
        )

    async def call(self, query: str) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        scholar_error: Optional[BioflowError] = None
        if self.scholar_enabled:
            try:
                organic = await self._search("google_scholar", query)
                results.extend(parse_scholar_result(r) for r in organic)
            except TransientBackendError as e:
                logger.warning(f"Scholar search failed for {query!r}: {e}")
                scholar_error = e

        if self.light_enabled and len(results) < self.MIN_SCHOLAR_RESULTS:
            organic = await self._search("google_light", query, gl="us")
            results.extend(parse_light_result(r) for r in organic)
        elif scholar_error is not None:
            raise scholar_error

        logger.info(f"Search for {query!r} returned {len(results)} result(s)")
        return results[: self.max_results]

    async def _search(self, engine: str, query: str, **extra: str) -> List[Dict[str, Any]]:
        params = {
            "engine": engine,
            "q": query,
            "hl": "en",
            "num": str(self.max_results),
            "api_key": self.api_key,
            **extra,
        }
        try:
            if self._client is not None:
                response = await self._client.get(self.BASE_URL, params=params)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.BASE_URL, params=params)
        except httpx.HTTPError as e:
            raise TransientBackendError(f"{engine} request failed: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientBackendError(f"{engine} returned HTTP {response.status_code}")
        if response.status_code != 200:
            raise BioflowError(f"{engine} returned HTTP {response.status_code}: {response.text[:200]}")
        body = response.json()
        if body.get("error"):
            # "hasn't returned any results" is an empty page, not a failure.
            if "any results" in str(body["error"]):
                return []
            raise BioflowError(f"{engine} error: {body['error']}")
        return list(body.get("organic_results") or [])[: self.max_results]


# ----------------------------------------------------------------------
# Analysis


class AnalysisBackend(Protocol):
    async def call(self, query: Dict[str, Any]) -> Dict[str, Any]:
        """Analyse the dataset described by ``query``."""


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    return number if math.isfinite(number) else None


class DescriptiveAnalysisBackend:
    """Per-column descriptive statistics over ingested rows.

    ``query`` carries ``filename``, ``columns`` and ``records``; the result
    maps each column to numeric or categorical summaries.
    """

    def __init__(self, top_values: int = 5) -> None:
        self.top_values = top_values

    async def call(self, query: Dict[str, Any]) -> Dict[str, Any]:
        records = query.get("records") or []
        columns = query.get("columns") or _columns_of(records)
        summary: Dict[str, Any] = {}
        for column in columns:
            values = [r.get(column) for r in records if r.get(column) not in (None, "")]
            numbers = [n for n in (_as_number(v) for v in values) if n is not None]
            if values and len(numbers) == len(values):
                summary[column] = {
                    "kind": "numeric",
                    "count": len(numbers),
                    "mean": round(statistics.fmean(numbers), 6),
                    "stdev": round(statistics.stdev(numbers), 6) if len(numbers) > 1 else 0.0,
                    "min": min(numbers),
                    "max": max(numbers),
                    "median": statistics.median(numbers),
                }
            else:
                counts = Counter(str(v) for v in values)
                summary[column] = {
                    "kind": "categorical",
                    "count": len(values),
                    "distinct": len(counts),
                    "top": counts.most_common(self.top_values),
                }
            summary[column]["missing"] = len(records) - len(values)
        return {
            "filename": query.get("filename"),
            "row_count": len(records),
            "columns": summary,
        }
