import httpx
import pytest

from app.clients.registry import NonprofitRegistryClient, RegistryRateLimitError
from app.clients.serpapi import (
    SearchError,
    SearchRateLimitError,
    SearchSchemaError,
    SerpApiClient,
)


def _serpapi(handler) -> SerpApiClient:
    http_client = httpx.Client(base_url="https://serpapi.com", transport=httpx.MockTransport(handler))
    return SerpApiClient("test-key", http_client=http_client)


def _registry(handler) -> NonprofitRegistryClient:
    http_client = httpx.Client(
        base_url="https://projects.propublica.org/nonprofits/api/v2",
        transport=httpx.MockTransport(handler),
    )
    return NonprofitRegistryClient(http_client=http_client)


def test_serpapi_search_maps_organic_results():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={
                "organic_results": [
                    {"link": "https://harborrescue.org/gala", "title": "Paws Gala", "snippet": "Silent auction"},
                    {"title": "No link"},
                ]
            },
        )

    results = _serpapi(handler).search(query='"travel auction" "March 2025"', limit=3)

    assert results == [{"url": "https://harborrescue.org/gala", "title": "Paws Gala", "snippet": "Silent auction"}]
    assert seen["path"] == "/search.json"
    assert seen["params"]["q"] == '"travel auction" "March 2025"'
    assert seen["params"]["num"] == "3"
    assert seen["params"]["gl"] == "us"
    assert seen["params"]["api_key"] == "test-key"


def test_serpapi_no_results_is_empty_list():
    payload = {"error": "Google hasn't returned any results for this query."}
    client = _serpapi(lambda request: httpx.Response(200, json=payload))

    assert client.search(query="obscure", limit=3) == []


def test_serpapi_rate_limit_is_typed():
    client = _serpapi(lambda request: httpx.Response(429))

    with pytest.raises(SearchRateLimitError) as excinfo:
        client.search(query="q", limit=3)

    assert excinfo.value.code == "SEARCH_429"


def test_serpapi_error_detail_is_reported():
    client = _serpapi(lambda request: httpx.Response(401, json={"error": "Invalid API key."}))

    with pytest.raises(SearchError, match="Invalid API key"):
        client.search(query="q", limit=3)


def test_serpapi_schema_errors():
    client = _serpapi(lambda request: httpx.Response(200, json={"organic_results": {"link": "x"}}))

    with pytest.raises(SearchSchemaError):
        client.search(query="q", limit=3)


def test_serpapi_requires_api_key():
    with pytest.raises(ValueError):
        SerpApiClient("")


def test_registry_returns_organizations():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["q"] == "Metro Food Bank"
        return httpx.Response(
            200,
            json={"organizations": [{"ein": 456789123, "name": "METRO FOOD BANK INC"}, {"ein": 1, "name": "Other"}]},
        )

    records = _registry(handler).search_organizations("Metro Food Bank", limit=1)

    assert records == [{"ein": 456789123, "name": "METRO FOOD BANK INC"}]


def test_registry_not_found_is_empty():
    assert _registry(lambda request: httpx.Response(404)).search_organizations("Nobody") == []


def test_registry_rate_limit_is_typed():
    with pytest.raises(RegistryRateLimitError) as excinfo:
        _registry(lambda request: httpx.Response(429)).search_organizations("Metro Food Bank")

    assert excinfo.value.code == "REGISTRY_429"
