"""Domain models for search queries and raw discovery candidates."""

from __future__ import annotations

import datetime as dt
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


def _new_id() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class QueryStatus(str, Enum):
    """Lifecycle of a search query within a single run."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Provenance(str, Enum):
    """Where a candidate entered the pipeline."""

    ORGANIC = "organic"
    SEED = "seed"


class SearchQuery(BaseModel):
    """Query text plus the period tag it was generated for."""

    id: str = Field(default_factory=_new_id)
    query: str
    date_range: str
    geographic: str = "US"
    status: QueryStatus = QueryStatus.PENDING
    results_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    processed_at: datetime | None = None


class EventInfo(BaseModel):
    """Event details heuristically extracted from a search result."""

    title: str
    date: str | None = Field(default=None, description="Raw date phrase as found in the result text.")
    parsed_date: dt.date | None = None
    has_future_date: bool = False
    event_types: list[str] = Field(default_factory=list)


class ContactInfo(BaseModel):
    emails: list[str] = Field(default_factory=list)
    phones: list[str] = Field(default_factory=list)
    location: str | None = None


class CandidateRecord(BaseModel):
    """A search result shaped for classification and verification."""

    id: str = Field(default_factory=_new_id)
    url: str
    title: str
    content: str = ""
    event_info: EventInfo
    contact_info: ContactInfo = Field(default_factory=ContactInfo)
    organization_name: str
    query_id: str | None = None
    provenance: Provenance = Provenance.ORGANIC
    discovered_at: datetime = Field(default_factory=_utcnow)

    @property
    def synthetic(self) -> bool:
        return self.provenance is Provenance.SEED
