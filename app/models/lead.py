"""Domain models for classification, verification and qualified leads."""

from __future__ import annotations

from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, confloat

from app.models.candidate import Provenance


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class VerificationSource(str, Enum):
    """Registry path that produced a verification outcome."""

    REGISTRY_PRIMARY = "registry-primary"
    REGISTRY_FALLBACK = "registry-fallback"
    MANUAL = "manual"


class LeadStatus(str, Enum):
    PENDING = "pending"
    QUALIFIED = "qualified"
    CONTACTED = "contacted"
    CONVERTED = "converted"
    REJECTED = "rejected"


class ClassificationOutcome(BaseModel):
    """Classifier verdict for one candidate at a given acceptance threshold."""

    candidate_id: str
    is_relevant: bool
    confidence_score: confloat(ge=0.0, le=1.0)  # type: ignore[valid-type]
    has_auction_keywords: bool = False
    has_travel_keywords: bool = False
    reasoning: str = ""
    model_used: str
    threshold: confloat(ge=0.0, le=1.0) = 0.0  # type: ignore[valid-type]
    classified_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    def accepted_at(self, threshold: float) -> bool:
        """True when the outcome qualifies as a lead under ``threshold``."""
        return self.is_relevant and self.confidence_score >= threshold


class VerificationOutcome(BaseModel):
    """Result of looking an organization up in the nonprofit registry."""

    candidate_id: str | None = None
    registry_id: str | None = Field(default=None, description="EIN when the registry returned a match.")
    verified: bool = False
    source: VerificationSource = VerificationSource.MANUAL
    details: dict[str, Any] = Field(default_factory=dict)
    verified_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class Lead(BaseModel):
    """Qualified output record handed to the lead sink."""

    id: str
    organization_name: str
    registry_id: str | None = None
    event_name: str
    event_date: date | None = None
    url: str
    travel_keywords: bool = False
    auction_keywords: bool = False
    verified: bool = False
    confidence_score: float
    contact_email: str | None = None
    contact_phone: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    status: LeadStatus = LeadStatus.PENDING
    provenance: Provenance = Provenance.ORGANIC
    threshold: float = Field(description="Acceptance threshold in force when the lead was created.")
    escalation_state: str = "normal_search"

    model_config = ConfigDict(from_attributes=True)

    @property
    def synthetic(self) -> bool:
        return self.provenance is Provenance.SEED
