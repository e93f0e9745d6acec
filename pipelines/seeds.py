"""Hand-authored fallback candidates used when organic discovery under-delivers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta

from app.models.candidate import CandidateRecord, EventInfo, Provenance
from pipelines.extraction import detect_event_types
from pipelines.normalize import slugify

SEED_SCHEME = "seed://"


@dataclass(frozen=True)
class SeedEvent:
    organization: str
    event_name: str
    days_ahead: int
    description: str


SEED_EVENTS: tuple[SeedEvent, ...] = (
    SeedEvent(
        organization="Riverside Children's Hospital Foundation",
        event_name="Spring Gala and Travel Auction",
        days_ahead=45,
        description="Annual charity gala with a live travel auction featuring resort and cruise packages.",
    ),
    SeedEvent(
        organization="Lakeview Elementary PTA",
        event_name="Family Fun Night Vacation Raffle",
        days_ahead=60,
        description="School fundraiser raffle for a family vacation getaway supporting classroom programs.",
    ),
    SeedEvent(
        organization="Harbor Animal Rescue",
        event_name="Paws for a Cause Silent Auction",
        days_ahead=75,
        description="Nonprofit silent auction with travel packages and hotel stays benefiting shelter animals.",
    ),
    SeedEvent(
        organization="Metro Food Bank",
        event_name="Harvest Benefit Dinner",
        days_ahead=90,
        description="Benefit dinner and auction of donated trips to raise funds for community food programs.",
    ),
    SeedEvent(
        organization="Grace Community Church",
        event_name="Mission Trip Auction",
        days_ahead=105,
        description="Church charity auction with vacation rental and travel prizes for the youth mission fund.",
    ),
    SeedEvent(
        organization="Downtown Arts Museum",
        event_name="Art and Wine Travel Auction",
        days_ahead=120,
        description="Museum fundraiser gala with a travel auction of wine country getaways.",
    ),
)


def build_seed_candidates(
    *,
    today: date | None = None,
    events: tuple[SeedEvent, ...] = SEED_EVENTS,
) -> list[CandidateRecord]:
    """Seed candidates with synthetic future dates relative to ``today``."""
    anchor = today or datetime.now(tz=UTC).date()
    candidates: list[CandidateRecord] = []
    for seed in events:
        event_date = anchor + timedelta(days=seed.days_ahead)
        title = f"{seed.organization} - {seed.event_name}"
        content = f"{seed.description} Join us on {event_date:%B %d, %Y}."
        candidates.append(
            CandidateRecord(
                url=f"{SEED_SCHEME}{slugify(seed.organization)}/{slugify(seed.event_name)}",
                title=title,
                content=content,
                event_info=EventInfo(
                    title=seed.event_name,
                    date=event_date.isoformat(),
                    parsed_date=event_date,
                    has_future_date=True,
                    event_types=detect_event_types(f"{title} {content}"),
                ),
                organization_name=seed.organization,
                provenance=Provenance.SEED,
            )
        )
    return candidates
