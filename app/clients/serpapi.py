"""Client for the SerpAPI Google search endpoint."""

from __future__ import annotations

from typing import Any

import httpx


class SearchError(RuntimeError):
    """Base error for search client failures."""

    def __init__(self, message: str, code: str = "SEARCH_ERROR") -> None:
        super().__init__(message)
        self.code = code


class SearchRateLimitError(SearchError):
    """Raised when SerpAPI responds with HTTP 429."""

    def __init__(self, message: str = "Rate limited by SerpAPI") -> None:
        super().__init__(message, code="SEARCH_429")


class SearchTimeoutError(SearchError):
    """Raised when a SerpAPI request times out."""

    def __init__(self, message: str = "SerpAPI request timed out") -> None:
        super().__init__(message, code="SEARCH_TIMEOUT")


class SearchSchemaError(SearchError):
    """Raised when the SerpAPI response schema is not as expected."""

    def __init__(self, message: str = "Unexpected SerpAPI response schema") -> None:
        super().__init__(message, code="SEARCH_SCHEMA_ERR")


class SerpApiClient:
    """Minimal SerpAPI client returning organic results as ``{url, title, snippet}`` dicts."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://serpapi.com",
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("SERPAPI_API_KEY is required to create a SerpApiClient.")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._owns_http_client:
            self._http.close()

    def search(self, *, query: str, limit: int) -> list[dict[str, Any]]:
        """Run a US-localized Google search and return up to ``limit`` organic results."""
        if limit <= 0:
            raise ValueError("limit must be a positive integer.")

        params = {
            "q": query,
            "engine": "google",
            "num": limit,
            "gl": "us",
            "hl": "en",
            "safe": "active",
            "api_key": self._api_key,
        }
        try:
            response = self._http.get("/search.json", params=params)
        except httpx.TimeoutException as exc:  # pragma: no cover - network failures
            raise SearchTimeoutError() from exc
        except httpx.HTTPError as exc:  # pragma: no cover - network failures
            raise SearchError(f"HTTP error calling SerpAPI: {exc}") from exc

        if response.status_code == 429:
            raise SearchRateLimitError()

        if response.status_code in (408, 504):
            raise SearchTimeoutError()

        if response.status_code >= 400:
            detail: str | None = None
            try:
                detail = response.json().get("error")
            except ValueError:
                detail = response.text[:200]
            message = f"SerpAPI request failed: {response.status_code}"
            if detail:
                message = f"{message} - {detail}"
            raise SearchError(message)

        try:
            data = response.json()
        except ValueError as exc:
            raise SearchSchemaError("Failed to decode SerpAPI response JSON.") from exc

        if not isinstance(data, dict):
            raise SearchSchemaError("SerpAPI response must be a JSON object.")
        if data.get("error"):
            # SerpAPI reports "no results" as an error string on a 200 response.
            if "hasn't returned any results" in str(data["error"]):
                return []
            raise SearchError(f"SerpAPI error: {data['error']}")

        organic = data.get("organic_results", [])
        if not isinstance(organic, list):
            raise SearchSchemaError("`organic_results` must be a list.")

        results: list[dict[str, Any]] = []
        for entry in organic[:limit]:
            if not isinstance(entry, dict):
                raise SearchSchemaError("Entries in `organic_results` must be JSON objects.")
            link = entry.get("link")
            if not link:
                continue
            results.append(
                {
                    "url": link,
                    "title": entry.get("title") or "",
                    "snippet": entry.get("snippet") or "",
                }
            )
        return results

    def __enter__(self) -> "SerpApiClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
