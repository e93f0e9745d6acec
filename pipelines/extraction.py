"""Turn raw search results into candidate records."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from app.models.candidate import CandidateRecord, ContactInfo, EventInfo, Provenance, SearchQuery
from pipelines.date_filter import DateRelevanceFilter, extract_dates
from pipelines.normalize import normalize_host

logger = logging.getLogger("pipelines.extraction")

SearchResult = Mapping[str, Any]

BLOCKED_DOMAINS = (
    "facebook.com",
    "twitter.com",
    "x.com",
    "instagram.com",
    "linkedin.com",
    "youtube.com",
    "tiktok.com",
    "pinterest.com",
    "reddit.com",
    "amazon.com",
    "ebay.com",
    "craigslist.org",
)
EVENT_KEYWORDS = ("silent auction", "auction", "gala", "fundraiser", "benefit", "charity event", "raffle")
EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE_PATTERN = re.compile(r"\(?\b\d{3}\)?[-.\s]?\d{3}[-.]?\d{4}\b")
TITLE_SEPARATORS = re.compile(r"\s+[-|–—]\s+")
RESULT_TEXT_FIELDS = ("snippet", "content", "description")


@dataclass
class ExtractionReport:
    """Candidates built from one query's results plus why the rest were skipped."""

    candidates: list[CandidateRecord] = field(default_factory=list)
    blocked: int = 0
    incomplete: int = 0
    past_dated: int = 0
    undated: int = 0
    future_dated: int = 0


def is_allowed_url(url: str | None) -> bool:
    """False for social, marketplace and other known non-target domains."""
    host = normalize_host(url)
    if not host:
        return False
    return not any(host == domain or host.endswith(f".{domain}") for domain in BLOCKED_DOMAINS)


def extract_organization_name(title: str) -> str:
    """Best-effort organization name: the leading segment of a ``Org - Event`` style title."""
    cleaned = title.strip()
    head = TITLE_SEPARATORS.split(cleaned, maxsplit=1)[0].strip()
    return head or cleaned


def extract_contact_info(text: str) -> ContactInfo:
    emails = list(dict.fromkeys(match.group(0).rstrip(".") for match in EMAIL_PATTERN.finditer(text)))
    phones = list(dict.fromkeys(match.group(0).strip() for match in PHONE_PATTERN.finditer(text)))
    return ContactInfo(emails=emails, phones=phones)


def detect_event_types(text: str) -> list[str]:
    lowered = text.lower()
    return [keyword for keyword in EVENT_KEYWORDS if keyword in lowered]


def _compose_result_text(result: SearchResult) -> str:
    parts = [value for name in RESULT_TEXT_FIELDS if isinstance(value := result.get(name), str) and value]
    return " ".join(parts)


def build_candidate(
    result: SearchResult,
    *,
    date_filter: DateRelevanceFilter,
    query: SearchQuery | None = None,
    report: ExtractionReport | None = None,
    provenance: Provenance = Provenance.ORGANIC,
) -> CandidateRecord | None:
    """Shape one search result into a candidate, or ``None`` when it should be skipped.

    Results on blocked domains, without a URL or title, or whose dates all
    fall outside the event window are skipped. Results with no parsable date
    are kept with ``has_future_date=False``.
    """
    report = report if report is not None else ExtractionReport()
    url = (result.get("url") or result.get("link") or "").strip()
    title = (result.get("title") or "").strip()
    if not url or not title:
        report.incomplete += 1
        return None
    if not is_allowed_url(url):
        report.blocked += 1
        logger.debug("Skipping blocked domain url=%s", url)
        return None

    content = _compose_result_text(result)
    full_text = f"{title} {content}"
    future_date = date_filter.first_future_date(full_text)
    if future_date is None and extract_dates(full_text):
        report.past_dated += 1
        logger.debug("Skipping candidate with no upcoming event date url=%s", url)
        return None
    if future_date is None:
        report.undated += 1
        logger.info("Keeping undated candidate url=%s", url)
    else:
        report.future_dated += 1

    event = EventInfo(
        title=title,
        date=future_date.isoformat() if future_date else None,
        parsed_date=future_date,
        has_future_date=future_date is not None,
        event_types=detect_event_types(full_text),
    )
    return CandidateRecord(
        url=url,
        title=title,
        content=content,
        event_info=event,
        contact_info=extract_contact_info(full_text),
        organization_name=extract_organization_name(title),
        query_id=query.id if query else None,
        provenance=provenance,
    )


def extract_candidates(
    results: Iterable[SearchResult],
    *,
    date_filter: DateRelevanceFilter,
    query: SearchQuery | None = None,
    limit: int | None = None,
) -> ExtractionReport:
    """Build candidates from a query's results, keeping at most ``limit``."""
    report = ExtractionReport()
    for result in results:
        if limit is not None and len(report.candidates) >= limit:
            break
        candidate = build_candidate(result, date_filter=date_filter, query=query, report=report)
        if candidate is not None:
            report.candidates.append(candidate)
    return report
