import httpx
import pytest

from bioflow.agents import DescriptiveAnalysisBackend, NullSearchBackend, SerpApiSearchBackend
from bioflow.agents.collaborators import parse_light_result, parse_scholar_result
from bioflow.errors import BioflowError, TransientBackendError

SCHOLAR_HIT = {
    "title": "Hepatocyte zonation in single-cell data",
    "link": "https://doi.org/10.1038/nature21065",
    "snippet": "Spatial reconstruction of liver zonation.",
    "publication_info": {"summary": "KB Halpern, R Shenhav - Nature, 2017 - nature.com"},
    "inline_links": {"cited_by": {"total": 812}},
    "resources": [{"link": "https://example.org/paper.pdf"}],
}

LIGHT_HIT = {
    "title": "Liver zonation explained",
    "link": "https://www.example.com/articles/zonation",
    "snippet": "An overview.",
}


def _backend(handler, **kwargs) -> SerpApiSearchBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SerpApiSearchBackend(api_key="serp-test", client=client, **kwargs)


def test_parse_scholar_result():
    parsed = parse_scholar_result(SCHOLAR_HIT)
    assert parsed["authors"] == "KB Halpern, R Shenhav"
    assert parsed["publication"] == "Nature, 2017 - nature.com"
    assert parsed["year"] == 2017
    assert parsed["citations"] == 812
    assert parsed["doi"] == "10.1038/nature21065"
    assert parsed["pdf_link"] == "https://example.org/paper.pdf"


def test_parse_light_result_derives_domain():
    parsed = parse_light_result(LIGHT_HIT)
    assert parsed["source"] == "web"
    assert parsed["domain"] == "www.example.com"


@pytest.mark.asyncio
async def test_scholar_results_are_returned():
    engines = []

    def handler(request: httpx.Request) -> httpx.Response:
        engines.append(request.url.params["engine"])
        assert request.url.params["api_key"] == "serp-test"
        return httpx.Response(200, json={"organic_results": [SCHOLAR_HIT] * 3})

    results = await _backend(handler).call("liver zonation")
    assert engines == ["google_scholar"]
    assert len(results) == 3
    assert results[0]["source"] == "scholar"


@pytest.mark.asyncio
async def test_light_fills_in_when_scholar_is_sparse_or_down():
    engines = []

    def handler(request: httpx.Request) -> httpx.Response:
        engine = request.url.params["engine"]
        engines.append(engine)
        if engine == "google_scholar":
            return httpx.Response(503)
        return httpx.Response(200, json={"organic_results": [LIGHT_HIT]})

    results = await _backend(handler).call("liver zonation")
    assert engines == ["google_scholar", "google_light"]
    assert [r["source"] for r in results] == ["web"]


@pytest.mark.asyncio
async def test_scholar_failure_without_fallback_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429)

    with pytest.raises(TransientBackendError):
        await _backend(handler, light_enabled=False).call("q")


@pytest.mark.asyncio
async def test_client_errors_are_permanent_and_empty_pages_are_not_errors():
    def forbidden(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="Invalid API key")

    with pytest.raises(BioflowError) as excinfo:
        await _backend(forbidden, light_enabled=False).call("q")
    assert not excinfo.value.retryable

    def empty(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"error": "Google hasn't returned any results for this query."}
        )

    assert await _backend(empty).call("q") == []


@pytest.mark.asyncio
async def test_null_search_backend():
    assert await NullSearchBackend().call("anything") == []


@pytest.mark.asyncio
async def test_descriptive_analysis():
    records = [
        {"condition": "control", "expression": "1.0", "batch": ""},
        {"condition": "treated", "expression": "3.0", "batch": "b1"},
        {"condition": "treated", "expression": "2.0", "batch": "b1"},
    ]
    result = await DescriptiveAnalysisBackend().call(
        {"filename": "expr.csv", "columns": ["condition", "expression", "batch"], "records": records}
    )
    assert result["row_count"] == 3
    expression = result["columns"]["expression"]
    assert expression["kind"] == "numeric"
    assert expression["mean"] == 2.0
    assert expression["median"] == 2.0
    assert expression["min"] == 1.0 and expression["max"] == 3.0
    condition = result["columns"]["condition"]
    assert condition["kind"] == "categorical"
    assert condition["top"][0] == ("treated", 2)
    assert result["columns"]["batch"]["missing"] == 1
