"""Shared builders for candidate, outcome and lead test records."""

from __future__ import annotations

import hashlib
from datetime import UTC, date, datetime

from app.models.candidate import CandidateRecord, EventInfo, Provenance
from app.models.lead import ClassificationOutcome, Lead

FIXED_NOW = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)


def distinct_text(idx: int) -> str:
    """Deterministic text that is dissimilar between indexes."""
    digest = hashlib.sha256(str(idx).encode("utf-8")).hexdigest()
    return digest + hashlib.sha256(digest.encode("utf-8")).hexdigest()


def make_candidate(
    idx: int,
    *,
    url: str | None = None,
    title: str | None = None,
    content: str | None = None,
    organization: str | None = None,
    event_date: date | None = None,
    provenance: Provenance = Provenance.ORGANIC,
) -> CandidateRecord:
    organization = organization or f"Community Org {idx}"
    title = title or f"{organization} - Annual Travel Auction {idx}"
    return CandidateRecord(
        id=f"cand-{idx}",
        url=url or f"https://org{idx}.example.org/events/{idx}",
        title=title,
        content=content if content is not None else distinct_text(idx),
        event_info=EventInfo(
            title=title,
            date=event_date.isoformat() if event_date else None,
            parsed_date=event_date,
            has_future_date=event_date is not None,
        ),
        organization_name=organization,
        provenance=provenance,
    )


def make_outcome(candidate_id: str, *, relevant: bool = True, confidence: float = 0.8) -> ClassificationOutcome:
    return ClassificationOutcome(
        candidate_id=candidate_id,
        is_relevant=relevant,
        confidence_score=confidence,
        has_auction_keywords=relevant,
        has_travel_keywords=relevant,
        reasoning="stub",
        model_used="stub-model",
    )


def make_lead(
    url: str,
    *,
    organization: str = "Harbor Animal Rescue",
    registry_id: str | None = None,
    event_date: date | None = None,
) -> Lead:
    return Lead(
        id=f"lead-{url.rsplit('/', 1)[-1]}",
        organization_name=organization,
        registry_id=registry_id,
        event_name="Paws for a Cause",
        event_date=event_date,
        url=url,
        confidence_score=0.9,
        threshold=0.6,
    )
