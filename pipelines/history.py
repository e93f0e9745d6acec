"""Durable cross-run identity history for search queries and accepted leads."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from app.core.names import normalize_org_name
from app.models.lead import Lead
from pipelines.normalize import canonicalize_url

logger = logging.getLogger("pipelines.history")

SEARCH_HISTORY_FILE = "search-history.json"
LEADS_HISTORY_FILE = "leads-history.json"

ClockFn = Callable[[], datetime]


class HistoryCorruptionError(RuntimeError):
    """Raised when a history file exists but cannot be parsed."""

    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(f"History file {path} is unreadable: {detail}")
        self.code = "HISTORY_CORRUPT"
        self.path = path


class LeadHistoryEntry(BaseModel):
    """Identity facts remembered about an accepted lead."""

    url: str
    registry_id: str | None = None
    organization_name: str
    event_date: date | None = None
    lead_id: str | None = None
    seen_at: datetime


@dataclass
class HistorySnapshot:
    queries: dict[str, datetime] = field(default_factory=dict)
    leads: dict[str, LeadHistoryEntry] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def atomic_write(path: Path, payload: str) -> None:
    temp_path = path.with_suffix(path.suffix + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path.write_text(payload, encoding="utf-8")
    temp_path.replace(path)


class IdentityHistoryStore:
    """Remembers which queries and leads were already surfaced.

    Queries are keyed by exact text and become eligible again once
    ``query_window`` has elapsed. Leads are matched, in priority order, by
    canonical URL, by registry id, and by organization name within
    ``lead_window`` (unless both sides carry event dates further apart than
    ``event_date_tolerance``).

    With ``directory=None`` the store lives purely in memory. Otherwise every
    accepted query or lead is persisted immediately with an atomic replace,
    unless ``persist=False`` (dry runs read history without writing it).
    """

    def __init__(
        self,
        directory: Path | str | None,
        *,
        query_window: timedelta = timedelta(hours=24),
        lead_window: timedelta = timedelta(days=7),
        event_date_tolerance: timedelta = timedelta(days=7),
        clock: ClockFn | None = None,
        persist: bool = True,
    ) -> None:
        self._directory = Path(directory) if directory is not None else None
        self._persist = persist
        self._query_window = query_window
        self._lead_window = lead_window
        self._event_date_tolerance = event_date_tolerance
        self._clock = clock or _utcnow
        self._queries: dict[str, datetime] = {}
        self._leads: dict[str, LeadHistoryEntry] = {}
        self.load()

    @property
    def query_count(self) -> int:
        return len(self._queries)

    @property
    def lead_count(self) -> int:
        return len(self._leads)

    @property
    def search_history_path(self) -> Path | None:
        return self._directory / SEARCH_HISTORY_FILE if self._directory else None

    @property
    def leads_history_path(self) -> Path | None:
        return self._directory / LEADS_HISTORY_FILE if self._directory else None

    def load(self) -> HistorySnapshot:
        """(Re)load both histories from disk; missing files mean empty history."""
        if self._directory is None:
            return self.snapshot()
        self._queries = self._load_queries(self._directory / SEARCH_HISTORY_FILE)
        self._leads = self._load_leads(self._directory / LEADS_HISTORY_FILE)
        logger.info(
            "Loaded identity history queries=%s leads=%s from %s",
            len(self._queries),
            len(self._leads),
            self._directory,
        )
        return self.snapshot()

    def save(self) -> None:
        if self._directory is None or not self._persist:
            return
        queries = {text: seen_at.isoformat() for text, seen_at in self._queries.items()}
        leads = {key: entry.model_dump(mode="json") for key, entry in self._leads.items()}
        atomic_write(self._directory / SEARCH_HISTORY_FILE, json.dumps(queries, indent=2, sort_keys=True) + "\n")
        atomic_write(self._directory / LEADS_HISTORY_FILE, json.dumps(leads, indent=2, sort_keys=True) + "\n")

    def snapshot(self) -> HistorySnapshot:
        return HistorySnapshot(queries=dict(self._queries), leads=dict(self._leads))

    def is_duplicate_query(self, text: str) -> bool:
        """True when ``text`` was seen inside the re-admission window; otherwise records it."""
        now = self._clock()
        seen_at = self._queries.get(text)
        if seen_at is not None and now - seen_at < self._query_window:
            return True
        self._queries[text] = now
        self.save()
        return False

    def is_duplicate_lead(self, lead: Lead) -> bool:
        """True when ``lead`` matches a remembered lead; otherwise records it."""
        now = self._clock()
        url_key = canonicalize_url(lead.url) or lead.url
        reason = self._match_lead(lead, url_key, now)
        if reason is not None:
            logger.debug("Lead %s is a duplicate by %s", lead.url, reason)
            return True
        self._leads[url_key] = LeadHistoryEntry(
            url=url_key,
            registry_id=lead.registry_id,
            organization_name=normalize_org_name(lead.organization_name),
            event_date=lead.event_date,
            lead_id=lead.id,
            seen_at=now,
        )
        self.save()
        return False

    def _match_lead(self, lead: Lead, url_key: str, now: datetime) -> str | None:
        if url_key in self._leads:
            return "url"
        if lead.registry_id and any(entry.registry_id == lead.registry_id for entry in self._leads.values()):
            return "registry_id"
        name = normalize_org_name(lead.organization_name)
        if not name:
            return None
        for entry in self._leads.values():
            if entry.organization_name != name:
                continue
            if now - entry.seen_at > self._lead_window:
                continue
            if self._distinct_events(entry.event_date, lead.event_date):
                continue
            return "organization_name"
        return None

    def _distinct_events(self, previous: date | None, current: date | None) -> bool:
        if previous is None or current is None:
            return False
        return abs(current - previous) > self._event_date_tolerance

    @staticmethod
    def _read_json(path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise HistoryCorruptionError(path, str(exc)) from exc

    def _load_queries(self, path: Path) -> dict[str, datetime]:
        payload = self._read_json(path)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise HistoryCorruptionError(path, "expected a JSON object")
        queries: dict[str, datetime] = {}
        for text, raw in payload.items():
            try:
                seen_at = datetime.fromisoformat(str(raw))
            except ValueError as exc:
                raise HistoryCorruptionError(path, f"bad timestamp for {text!r}") from exc
            queries[text] = seen_at if seen_at.tzinfo else seen_at.replace(tzinfo=UTC)
        return queries

    def _load_leads(self, path: Path) -> dict[str, LeadHistoryEntry]:
        payload = self._read_json(path)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise HistoryCorruptionError(path, "expected a JSON object")
        leads: dict[str, LeadHistoryEntry] = {}
        for key, raw in payload.items():
            try:
                entry = LeadHistoryEntry.model_validate(raw)
            except ValidationError as exc:
                raise HistoryCorruptionError(path, str(exc)) from exc
            if entry.seen_at.tzinfo is None:
                entry = entry.model_copy(update={"seen_at": entry.seen_at.replace(tzinfo=UTC)})
            leads[key] = entry
        return leads
