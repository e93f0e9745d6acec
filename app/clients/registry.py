"""Client for the ProPublica Nonprofit Explorer registry API."""

from __future__ import annotations

from typing import Any

import httpx

from app.config import settings


class RegistryError(RuntimeError):
    """Base error for nonprofit registry failures."""

    def __init__(self, message: str, code: str = "REGISTRY_ERROR") -> None:
        super().__init__(message)
        self.code = code


class RegistryRateLimitError(RegistryError):
    def __init__(self, message: str = "Rate limited by nonprofit registry") -> None:
        super().__init__(message, code="REGISTRY_429")


class RegistryTimeoutError(RegistryError):
    def __init__(self, message: str = "Nonprofit registry request timed out") -> None:
        super().__init__(message, code="REGISTRY_TIMEOUT")


class RegistrySchemaError(RegistryError):
    def __init__(self, message: str = "Unexpected nonprofit registry response schema") -> None:
        super().__init__(message, code="REGISTRY_SCHEMA_ERR")


class NonprofitRegistryClient:
    """Looks up tax-exempt organizations by name. No API key is required."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        resolved = (base_url or settings.registry_base_url).rstrip("/")
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(base_url=resolved, timeout=timeout)

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()

    def search_organizations(self, name: str, *, limit: int = 10) -> list[dict[str, Any]]:
        """Return registry records (``ein``, ``name``, ``city``, ``state``...) matching ``name``."""
        if not name.strip():
            return []
        try:
            response = self._http.get("/search.json", params={"q": name})
        except httpx.TimeoutException as exc:  # pragma: no cover - network failures
            raise RegistryTimeoutError() from exc
        except httpx.HTTPError as exc:  # pragma: no cover - network failures
            raise RegistryError(f"HTTP error calling nonprofit registry: {exc}") from exc

        # The registry answers 404 when a search has no hits.
        if response.status_code == 404:
            return []
        if response.status_code == 429:
            raise RegistryRateLimitError()
        if response.status_code in (408, 504):
            raise RegistryTimeoutError()
        if response.status_code >= 400:
            raise RegistryError(f"Nonprofit registry request failed: {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise RegistrySchemaError("Failed to decode registry response JSON.") from exc
        organizations = data.get("organizations") if isinstance(data, dict) else None
        if organizations is None:
            return []
        if not isinstance(organizations, list) or not all(isinstance(entry, dict) for entry in organizations):
            raise RegistrySchemaError("`organizations` must be a list of JSON objects.")
        return organizations[:limit]

    def __enter__(self) -> "NonprofitRegistryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
