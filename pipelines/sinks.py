"""Output sinks for qualified leads."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx

from app.models.lead import Lead
from pipelines.collaborators import LeadSinkProtocol
from pipelines.history import atomic_write

logger = logging.getLogger("pipelines.sinks")


class SinkError(RuntimeError):
    """Raised when leads cannot be delivered to a sink."""

    def __init__(self, message: str, code: str = "SINK_ERROR") -> None:
        super().__init__(message)
        self.code = code


class JsonFileLeadSink:
    """Persists leads to a JSON array with idempotent upsert keyed by URL."""

    def __init__(self, output_path: Path | str) -> None:
        self.output_path = Path(output_path)

    def write(self, leads: Sequence[Lead]) -> None:
        existing = self._load_existing_records()
        for lead in leads:
            data = lead.model_dump(mode="json")
            data["synthetic"] = lead.synthetic
            existing[data["url"]] = data
        try:
            atomic_write(self.output_path, json.dumps(list(existing.values()), indent=2) + "\n")
        except OSError as exc:
            raise SinkError(f"Unable to write leads to {self.output_path}: {exc}", code="SINK_IO_ERROR") from exc
        logger.info("Persisted %s leads to %s (%s total).", len(leads), self.output_path, len(existing))

    def _load_existing_records(self) -> dict[str, dict[str, Any]]:
        if not self.output_path.exists():
            return {}
        try:
            payload = json.loads(self.output_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Existing file %s is not valid JSON. Overwriting.", self.output_path)
            return {}
        if not isinstance(payload, list):
            logger.warning("Existing file %s is not a list. Overwriting.", self.output_path)
            return {}
        return {entry["url"]: entry for entry in payload if isinstance(entry, dict) and entry.get("url")}


def build_slack_payload(leads: Sequence[Lead], *, run_label: str | None = None) -> dict[str, Any]:
    """Return a Slack-compatible payload listing one section per lead."""
    timestamp = datetime.now(tz=UTC).isoformat(timespec="seconds")
    label = run_label or timestamp
    blocks: list[dict[str, Any]] = [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Lead Miner run {label}*\n{len(leads)} new leads"},
        },
        {"type": "divider"},
    ]
    for index, lead in enumerate(leads, start=1):
        lines = [
            f"*{index}. {lead.organization_name}* ({lead.confidence_score:.2f})",
            f"*Event:* {lead.event_name}",
            f"*Date:* {lead.event_date.isoformat() if lead.event_date else 'unknown'}",
            f"*Link:* {lead.url}",
        ]
        if lead.synthetic:
            lines.append("_Seed fallback lead_")
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}})
    return {"text": f"Lead Miner found {len(leads)} leads.", "blocks": blocks}


class SlackWebhookLeadSink:
    """Posts a lead summary to a Slack incoming webhook."""

    def __init__(self, webhook_url: str, *, timeout: float = 10.0, http_client: httpx.Client | None = None) -> None:
        if not webhook_url:
            raise ValueError("A Slack webhook URL is required.")
        self._webhook_url = webhook_url
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout)

    def write(self, leads: Sequence[Lead]) -> None:
        payload = build_slack_payload(leads)
        try:
            response = self._http.post(self._webhook_url, json=payload)
        except httpx.HTTPError as exc:
            raise SinkError(f"Slack webhook request failed: {exc}", code="SINK_SLACK_ERROR") from exc
        if response.status_code >= 400:
            raise SinkError(f"Slack webhook rejected payload: {response.status_code}", code="SINK_SLACK_ERROR")
        logger.info("delivery.slack.posted", extra={"count": len(leads)})

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()


class MultiLeadSink:
    """Writes to each sink in order; the first failure propagates."""

    def __init__(self, sinks: Iterable[LeadSinkProtocol]) -> None:
        self._sinks = list(sinks)

    def write(self, leads: Sequence[Lead]) -> None:
        for sink in self._sinks:
            sink.write(leads)
