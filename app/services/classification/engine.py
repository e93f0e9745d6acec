"""Lead relevance classifier: OpenAI when online, deterministic keyword rubric otherwise."""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from openai import APIError as OpenAIAPIError
from openai import OpenAI
from openai import OpenAIError as OpenAIBaseError

from app.config import settings
from app.models.candidate import CandidateRecord
from app.models.lead import ClassificationOutcome
from app.observability.metrics import metrics
from app.services.classification.errors import (
    ClassificationError,
    ClassificationProviderError,
    ClassificationValidationError,
)

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

RUBRIC_MODEL = "fixture-rubric"
DEFAULT_SYSTEM_PROMPT = (
    "You classify web pages about nonprofit fundraising events. A page is relevant only when a "
    "nonprofit organization (501(c)(3), school, church, foundation, museum, shelter, food bank...) "
    "is running its own auction, raffle or gala that offers travel packages or vacations as prizes. "
    "Vendors and companies that sell services to nonprofits are NOT relevant. "
    "Respond with a single JSON object with keys: is_relevant (bool), confidence_score (0-1 float), "
    "has_auction_keywords (bool), has_travel_keywords (bool), reasoning (short string)."
)

AUCTION_PATTERN = re.compile(
    r"\b(auction|raffle|gala|fundraiser|benefit|silent auction|live auction|prize drawing|bidding)\b"
)
TRAVEL_PATTERN = re.compile(
    r"\b(travel|vacation|cruise|trip|trips|resort|getaway|hotel|flight|airline|tour|destination|retreat)\b"
)
NONPROFIT_PATTERN = re.compile(
    r"(nonprofit|non-profit|charity|charitable|foundation|501c3|501\(c\)\(3\)|school|university|church"
    r"|hospital|museum|rescue|shelter|food bank|pta|community center|mission)"
)
VENDOR_PATTERN = re.compile(
    r"(we provide|our services|contact for pricing|vendor|supplier|consulting|marketing agency|our clients)"
)
STRONG_PHRASES = ("travel auction", "vacation raffle", "travel raffle", "travel packages")


class OpenAIChatClient(Protocol):
    """Minimal contract for OpenAI text generation."""

    def generate(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        model: str,
        temperature: float,
    ) -> str:
        ...


class OpenAIResponseClient(OpenAIChatClient):
    """Thin wrapper around the official OpenAI Responses API."""

    def __init__(self, api_key: str) -> None:
        if not api_key:
            raise ValueError("OPENAI_API_KEY is required to classify in online mode.")
        self._client = OpenAI(api_key=api_key)

    def generate(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        model: str,
        temperature: float,
    ) -> str:
        response = self._client.responses.create(
            model=model,
            temperature=temperature,
            input=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )
        text = getattr(response, "output_text", None)
        if not text:
            raise ClassificationProviderError(
                "OpenAI response did not include text output.",
                code="502_OPENAI_UPSTREAM",
            )
        return text.strip()


@dataclass(frozen=True)
class ClassificationContext:
    """Configuration bundle for the classifier."""

    mode: str
    model: str
    temperature: float
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class LeadClassifier:
    """Decides whether a candidate describes a nonprofit travel-prize fundraising event."""

    def __init__(
        self,
        *,
        client: OpenAIChatClient | None = None,
        context: ClassificationContext | None = None,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.2,
    ) -> None:
        self._client = client
        self._context = context or _build_context()
        self._retry_attempts = retry_attempts
        self._retry_backoff_seconds = retry_backoff_seconds

    @property
    def mode(self) -> str:
        return self._context.mode

    def classify(self, candidate: CandidateRecord, *, threshold: float) -> ClassificationOutcome:
        """Classify one candidate; ``threshold`` is the acceptance bar currently in force."""
        tags = {"mode": self._context.mode}
        start = time.perf_counter()
        try:
            if self._context.mode == "online":
                outcome = self._classify_with_openai(candidate, threshold=threshold)
            else:
                outcome = self._classify_with_rubric(candidate, threshold=threshold)
            metrics.increment("classification.success", tags=tags)
            return outcome
        except ClassificationError as exc:
            metrics.increment("classification.errors", tags={**tags, "code": exc.code})
            raise
        finally:
            metrics.timing("classification.latency_ms", (time.perf_counter() - start) * 1000, tags=tags)

    def _classify_with_openai(self, candidate: CandidateRecord, *, threshold: float) -> ClassificationOutcome:
        client = self._ensure_client()
        user_prompt = _render_user_prompt(candidate, threshold=threshold)

        def _invoke() -> ClassificationOutcome:
            try:
                response_text = client.generate(
                    system_prompt=self._context.system_prompt,
                    user_prompt=user_prompt,
                    model=self._context.model,
                    temperature=self._context.temperature,
                )
            except OpenAIAPIError as exc:  # pragma: no cover - depends on SDK
                code = "429_RATE_LIMIT" if getattr(exc, "status_code", 500) == 429 else "502_OPENAI_UPSTREAM"
                message = getattr(exc, "message", str(exc))
                raise ClassificationProviderError(f"OpenAI request failed: {message}", code=code) from exc
            except OpenAIBaseError as exc:  # pragma: no cover - depends on SDK
                message = getattr(exc, "message", str(exc))
                raise ClassificationProviderError(
                    f"OpenAI request failed: {message}", code="502_OPENAI_UPSTREAM"
                ) from exc

            try:
                payload = _parse_json_payload(response_text)
            except ValueError as exc:
                logger.error("classification.parse_error", extra={"url": candidate.url})
                raise ClassificationValidationError(
                    "Model response was not valid JSON.", code="502_OPENAI_UPSTREAM"
                ) from exc
            return _convert_payload(payload, candidate=candidate, model=self._context.model, threshold=threshold)

        return self._execute_with_retry(_invoke)

    def _execute_with_retry(self, func: Callable[[], _T]) -> _T:
        """Retry rate-limited provider calls with exponential backoff."""
        delay = self._retry_backoff_seconds
        for attempt in range(1, self._retry_attempts + 1):
            try:
                return func()
            except ClassificationProviderError as exc:
                logger.warning("classification.retry", extra={"attempt": attempt, "code": exc.code})
                if attempt == self._retry_attempts or exc.code != "429_RATE_LIMIT":
                    raise
                time.sleep(delay)
                delay *= 2
        raise ClassificationProviderError("Classification retries exhausted.")  # pragma: no cover

    def _classify_with_rubric(self, candidate: CandidateRecord, *, threshold: float) -> ClassificationOutcome:
        """Deterministic fallback for fixture/offline mode."""
        text = f"{candidate.title} {candidate.content}".lower()
        has_auction = bool(AUCTION_PATTERN.search(text))
        has_travel = bool(TRAVEL_PATTERN.search(text))
        has_nonprofit = bool(NONPROFIT_PATTERN.search(text))
        looks_like_vendor = bool(VENDOR_PATTERN.search(text))

        confidence = 0.1
        if has_auction:
            confidence += 0.25
        if has_travel:
            confidence += 0.2
        if has_nonprofit:
            confidence += 0.2
        if has_auction and has_travel:
            confidence += 0.1
        if any(phrase in text for phrase in STRONG_PHRASES):
            confidence += 0.1
        if candidate.event_info.has_future_date:
            confidence += 0.05
        if looks_like_vendor:
            confidence -= 0.3
        confidence = round(max(0.0, min(1.0, confidence)), 4)

        is_relevant = has_auction and (has_travel or has_nonprofit) and not looks_like_vendor
        signals = [
            name
            for name, present in (
                ("auction", has_auction),
                ("travel", has_travel),
                ("nonprofit", has_nonprofit),
                ("vendor", looks_like_vendor),
            )
            if present
        ]
        return ClassificationOutcome(
            candidate_id=candidate.id,
            is_relevant=is_relevant,
            confidence_score=confidence,
            has_auction_keywords=has_auction,
            has_travel_keywords=has_travel,
            reasoning=f"Keyword rubric signals: {', '.join(signals) or 'none'}",
            model_used=RUBRIC_MODEL,
            threshold=threshold,
        )

    def _ensure_client(self) -> OpenAIChatClient:
        if self._client:
            return self._client
        if not settings.openai_api_key:
            raise ClassificationProviderError(
                "OPENAI_API_KEY is required for online classification.",
                code="502_OPENAI_UPSTREAM",
            )
        self._client = OpenAIResponseClient(settings.openai_api_key)
        return self._client


def _build_context() -> ClassificationContext:
    return ClassificationContext(
        mode=settings.lead_miner_mode.lower(),
        model=settings.classification_model,
        temperature=settings.classification_temperature,
    )


def _render_user_prompt(candidate: CandidateRecord, *, threshold: float) -> str:
    event_date = candidate.event_info.date or "unknown"
    return (
        "Classify this search result and return JSON only.\n"
        f"Only mark is_relevant=true when you are at least {threshold:.2f} confident.\n"
        f"URL: {candidate.url}\n"
        f"Title: {candidate.title}\n"
        f"Organization: {candidate.organization_name}\n"
        f"Event date: {event_date}\n"
        f"Content: {candidate.content[:2000]}\n"
    )


def _parse_json_payload(raw_text: str) -> dict[str, Any]:
    """Best-effort JSON decoding that tolerates code fences or prose."""
    candidate = raw_text.strip()
    if candidate.startswith("```"):
        candidate = "\n".join(line for line in candidate.splitlines() if not line.strip().startswith("```")).strip()
    if candidate.startswith("{") and candidate.endswith("}"):
        return json.loads(candidate)
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start != -1 and end != -1 and end > start:
        return json.loads(candidate[start : end + 1])
    raise ValueError("Response did not contain JSON object.")


def _convert_payload(
    payload: dict[str, Any],
    *,
    candidate: CandidateRecord,
    model: str,
    threshold: float,
) -> ClassificationOutcome:
    try:
        confidence = float(payload["confidence_score"])
        is_relevant = payload["is_relevant"]
        if not isinstance(is_relevant, bool):
            raise TypeError("is_relevant must be a boolean.")
    except (KeyError, TypeError, ValueError) as exc:
        raise ClassificationValidationError(
            f"Model response missing required fields: {exc}",
            code="502_OPENAI_UPSTREAM",
        ) from exc
    return ClassificationOutcome(
        candidate_id=candidate.id,
        is_relevant=is_relevant,
        confidence_score=max(0.0, min(1.0, confidence)),
        has_auction_keywords=bool(payload.get("has_auction_keywords", False)),
        has_travel_keywords=bool(payload.get("has_travel_keywords", False)),
        reasoning=str(payload.get("reasoning", "")).strip(),
        model_used=model,
        threshold=threshold,
    )
