"""Collaborator contracts and runtime selection for online vs. fixture modes."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from functools import cached_property
from pathlib import Path
from typing import Any, Protocol

from app.clients.registry import NonprofitRegistryClient
from app.clients.serpapi import SerpApiClient
from app.config import settings
from app.core.names import strip_org_suffixes
from app.models.candidate import CandidateRecord, SearchQuery
from app.models.lead import ClassificationOutcome, Lead, VerificationOutcome
from app.services.classification.engine import ClassificationContext, LeadClassifier
from app.services.verification.verifier import NonprofitVerifier

logger = logging.getLogger("pipelines.collaborators")

MODE_ENV = "LEAD_MINER_MODE"
FIXTURE_DIR_ENV = "LEAD_MINER_FIXTURE_DIR"


class RuntimeMode(str, Enum):
    """Available runtime behaviors."""

    ONLINE = "online"
    FIXTURE = "fixture"


class ModeError(RuntimeError):
    """Raised when runtime mode configuration is invalid."""

    def __init__(self, message: str, code: str = "E_MODE_UNSUPPORTED") -> None:
        super().__init__(message)
        self.code = code


class FixtureNotFoundError(ModeError):
    """Raised when a requested fixture artifact cannot be located."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Fixture not found: {path}", code="E_FIXTURE_NOT_FOUND")
        self.path = path


@dataclass(frozen=True)
class RuntimeConfig:
    """Resolved runtime configuration."""

    mode: RuntimeMode
    fixture_base: Path | None = None


class QueryGeneratorProtocol(Protocol):
    def generate(self) -> list[SearchQuery]:
        ...


class SearchClientProtocol(Protocol):
    """Subset of search client behavior used by the pipeline."""

    def search(self, *, query: str, limit: int) -> list[dict[str, Any]]:
        ...


class ClassifierProtocol(Protocol):
    def classify(self, candidate: CandidateRecord, *, threshold: float) -> ClassificationOutcome:
        ...


class VerifierProtocol(Protocol):
    def verify_by_name(self, name: str) -> VerificationOutcome:
        ...


class LeadSinkProtocol(Protocol):
    """Destination for a run's leads. Raises on failure."""

    def write(self, leads: Sequence[Lead]) -> None:
        ...


def parse_mode(value: str | None, *, default: RuntimeMode = RuntimeMode.FIXTURE) -> RuntimeMode:
    if not value:
        return default
    normalized = value.strip().lower()
    for mode in RuntimeMode:
        if normalized == mode.value:
            return mode
    raise ModeError(f"Unsupported {MODE_ENV} value: {value}")


def get_runtime_config() -> RuntimeConfig:
    """Resolve runtime configuration from the environment, falling back to settings."""
    mode = parse_mode(os.getenv(MODE_ENV) or settings.lead_miner_mode)
    fixture_base: Path | None = None
    if mode is RuntimeMode.FIXTURE:
        fixture_base = Path(os.getenv(FIXTURE_DIR_ENV, settings.lead_miner_fixture_dir)).expanduser()
    config = RuntimeConfig(mode=mode, fixture_base=fixture_base)
    logger.info("Lead miner runtime mode=%s fixtures=%s", config.mode.value, config.fixture_base)
    return config


def get_search_client(config: RuntimeConfig | None = None) -> SearchClientProtocol:
    """Return an appropriate search client implementation."""
    config = config or get_runtime_config()
    if config.mode is RuntimeMode.FIXTURE:
        return FixtureSearchClient(_build_fixture_store(config))
    return SerpApiClient(settings.serpapi_api_key or os.getenv("SERPAPI_API_KEY", ""))


def get_classifier(config: RuntimeConfig | None = None) -> ClassifierProtocol:
    config = config or get_runtime_config()
    return LeadClassifier(
        context=ClassificationContext(
            mode=config.mode.value,
            model=settings.classification_model,
            temperature=settings.classification_temperature,
        )
    )


def get_verifier(config: RuntimeConfig | None = None) -> VerifierProtocol:
    config = config or get_runtime_config()
    if config.mode is RuntimeMode.FIXTURE:
        return NonprofitVerifier(FixtureRegistryClient(_build_fixture_store(config)))
    return NonprofitVerifier(NonprofitRegistryClient())


class LocalFixtureStore:
    """Loads fixtures from the repository tree."""

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = base_dir

    def load_json(self, relative_path: str) -> Any:
        target = (self._base_dir / relative_path).resolve()
        if not target.exists():
            raise FixtureNotFoundError(str(target))
        with target.open("r", encoding="utf-8") as infile:
            return json.load(infile)


def _build_fixture_store(config: RuntimeConfig) -> LocalFixtureStore:
    if not config.fixture_base:
        raise ModeError("Fixture base path is required in fixture mode.")
    return LocalFixtureStore(config.fixture_base)


class _FixtureClientBase:
    """Shared helpers for fixture-backed clients."""

    def __init__(self, store: LocalFixtureStore, artifact: str) -> None:
        self._store = store
        self._artifact = artifact

    @cached_property
    def _records(self) -> Sequence[dict[str, Any]]:
        payload = self._store.load_json(self._artifact)
        if not isinstance(payload, list):
            raise FixtureNotFoundError(self._artifact)
        return payload


class FixtureSearchClient(_FixtureClientBase):
    """Fixture-backed search client that pages through a static result snapshot.

    Each call returns the next ``limit`` results so that distinct queries see
    distinct pages until the snapshot runs out.
    """

    def __init__(self, store: LocalFixtureStore, artifact: str = "search/results.json") -> None:
        super().__init__(store, artifact)
        self._offset = 0

    def search(self, *, query: str, limit: int) -> list[dict[str, Any]]:
        _ = query  # Fixtures are static snapshots.
        if limit <= 0:
            return []
        page = list(self._records[self._offset : self._offset + limit])
        self._offset += len(page)
        return page


class FixtureRegistryClient(_FixtureClientBase):
    """Fixture-backed registry lookup matching on suffix-stripped names."""

    def __init__(self, store: LocalFixtureStore, artifact: str = "registry/organizations.json") -> None:
        super().__init__(store, artifact)

    def search_organizations(self, name: str, *, limit: int = 10) -> list[dict[str, Any]]:
        target = strip_org_suffixes(name)
        if not target:
            return []
        matches: list[dict[str, Any]] = []
        for record in self._records:
            candidate = strip_org_suffixes(record.get("name"))
            if candidate and (target in candidate or candidate in target):
                matches.append(record)
        return matches[:limit]
