"""Nonprofit status verification against the registry, exact match first then fuzzy."""

from __future__ import annotations

import difflib
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from app.core.names import normalize_org_name, strip_org_suffixes
from app.models.lead import VerificationOutcome, VerificationSource

logger = logging.getLogger("app.services.verification")

FALLBACK_SIMILARITY = 0.9


class RegistryLookup(Protocol):
    """Subset of registry client behavior used for verification."""

    def search_organizations(self, name: str, *, limit: int = 10) -> list[dict[str, Any]]:
        ...


def _format_registry_id(record: Mapping[str, Any]) -> str | None:
    raw = record.get("ein") or record.get("strein")
    if raw is None:
        return None
    digits = "".join(ch for ch in str(raw) if ch.isdigit())
    if len(digits) == 9:
        return f"{digits[:2]}-{digits[2:]}"
    return str(raw)


class NonprofitVerifier:
    """Resolves an organization name to a registry record.

    The primary path accepts an exact normalized name match. The fallback path
    retries with corporate suffixes removed and accepts a close fuzzy match.
    Anything else is returned unverified with ``source=manual`` for review.
    """

    def __init__(self, registry: RegistryLookup, *, fallback_similarity: float = FALLBACK_SIMILARITY) -> None:
        self._registry = registry
        self._fallback_similarity = fallback_similarity

    def verify_by_name(self, name: str) -> VerificationOutcome:
        target = normalize_org_name(name)
        if not target:
            return VerificationOutcome(details={"reason": "missing organization name"})

        records = self._registry.search_organizations(name)
        for record in records:
            if normalize_org_name(record.get("name")) == target:
                return self._outcome(record, VerificationSource.REGISTRY_PRIMARY, similarity=1.0)

        stripped = strip_org_suffixes(name)
        if stripped and stripped != target:
            records = [*records, *self._registry.search_organizations(stripped)]
        best: tuple[float, Mapping[str, Any]] | None = None
        for record in records:
            candidate = strip_org_suffixes(record.get("name"))
            if not candidate:
                continue
            ratio = difflib.SequenceMatcher(None, stripped, candidate).ratio()
            if best is None or ratio > best[0]:
                best = (ratio, record)
        if best is not None and best[0] >= self._fallback_similarity:
            return self._outcome(best[1], VerificationSource.REGISTRY_FALLBACK, similarity=best[0])

        logger.info("No registry match for organization=%s; flagging for manual review.", name)
        return VerificationOutcome(
            verified=False,
            source=VerificationSource.MANUAL,
            details={"reason": "no registry match", "candidates": len(records)},
        )

    @staticmethod
    def _outcome(record: Mapping[str, Any], source: VerificationSource, *, similarity: float) -> VerificationOutcome:
        return VerificationOutcome(
            registry_id=_format_registry_id(record),
            verified=True,
            source=source,
            details={
                "registry_name": record.get("name"),
                "city": record.get("city"),
                "state": record.get("state"),
                "similarity": round(similarity, 3),
            },
        )
