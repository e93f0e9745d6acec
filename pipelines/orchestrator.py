"""Daily lead discovery run: search, dedupe, classify, verify, filter by history, escalate, deliver."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from app.config import Settings, settings
from app.core.names import normalize_org_name
from app.models.candidate import CandidateRecord, QueryStatus, SearchQuery
from app.models.lead import (
    ClassificationOutcome,
    Lead,
    LeadStatus,
    VerificationOutcome,
    VerificationSource,
)
from app.observability.metrics import metrics
from pipelines.cache import BudgetExceededError, ContentCache
from pipelines.collaborators import (
    ClassifierProtocol,
    LeadSinkProtocol,
    ModeError,
    QueryGeneratorProtocol,
    SearchClientProtocol,
    VerifierProtocol,
    get_classifier,
    get_runtime_config,
    get_search_client,
    get_verifier,
)
from pipelines.date_filter import DateRelevanceFilter, parse_date_range
from pipelines.dedup import SimilarityDeduplicator
from pipelines.extraction import extract_candidates
from pipelines.history import HistoryCorruptionError, IdentityHistoryStore
from pipelines.queries import QueryGenerator
from pipelines.rate_limit import ExternalCaller, ExternalCallError, TokenBucket
from pipelines.seeds import build_seed_candidates
from pipelines.sinks import JsonFileLeadSink, MultiLeadSink, SlackWebhookLeadSink

logger = logging.getLogger("pipelines.orchestrator")

ClockFn = Callable[[], datetime]
SeedFactory = Callable[[], list[CandidateRecord]]


class PipelineError(RuntimeError):
    """Raised when a run cannot proceed or complete."""

    def __init__(self, message: str, code: str = "PIPELINE_ERROR") -> None:
        super().__init__(message)
        self.code = code


class LeadSinkError(PipelineError):
    """Raised when the sink rejects a run's leads. ``result`` holds everything computed."""

    def __init__(self, message: str, result: "RunResult") -> None:
        super().__init__(message, code="SINK_WRITE_FAILED")
        self.result = result


class EscalationState(str, Enum):
    """Minimum-yield escalation states."""

    NORMAL_SEARCH = "normal_search"
    RELAXED_SEARCH = "relaxed_search"
    SEED_FALLBACK = "seed_fallback"
    COMPLETE = "complete"


@dataclass(frozen=True)
class PipelineConfig:
    """Run-level knobs, frozen for the duration of one run."""

    confidence_threshold: float = 0.60
    min_leads_floor: int = 5
    max_escalation_attempts: int = 3
    threshold_decrement: float = 0.10
    threshold_floor: float = 0.40
    seed_fallback_attempt: int = 3
    seed_threshold: float = 0.30
    max_leads_per_run: int = 10
    queries_per_pass: int = 15
    max_results_per_query: int = 3
    max_candidates_per_pass: int = 40
    search_cost: float = 0.02
    classification_cost: float = 0.01
    verification_cost: float = 0.005
    dry_run: bool = False

    def __post_init__(self) -> None:
        for name in ("confidence_threshold", "threshold_floor", "seed_threshold", "threshold_decrement"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1]; got {value}")
        if self.threshold_floor > self.confidence_threshold:
            raise ValueError("threshold_floor must not exceed confidence_threshold.")
        if self.max_leads_per_run < 1:
            raise ValueError("max_leads_per_run must be >= 1")
        if not 0 <= self.min_leads_floor <= self.max_leads_per_run:
            raise ValueError("min_leads_floor must be between 0 and max_leads_per_run.")
        if self.max_escalation_attempts < 0:
            raise ValueError("max_escalation_attempts must be >= 0")
        if self.seed_fallback_attempt < 1:
            raise ValueError("seed_fallback_attempt must be >= 1")
        if min(self.queries_per_pass, self.max_results_per_query, self.max_candidates_per_pass) < 1:
            raise ValueError("Per-pass query, result and candidate limits must be >= 1.")

    @classmethod
    def from_settings(cls, source: Settings) -> "PipelineConfig":
        return cls(
            confidence_threshold=source.confidence_threshold,
            min_leads_floor=source.min_leads_floor,
            max_escalation_attempts=source.max_escalation_attempts,
            threshold_decrement=source.threshold_decrement,
            threshold_floor=source.threshold_floor,
            seed_fallback_attempt=source.seed_fallback_attempt,
            seed_threshold=source.seed_threshold,
            max_leads_per_run=source.max_leads_per_run,
            queries_per_pass=source.queries_per_pass,
            max_results_per_query=source.max_results_per_query,
            max_candidates_per_pass=source.max_candidates_per_pass,
            search_cost=source.search_cost,
            classification_cost=source.classification_cost,
            verification_cost=source.verification_cost,
            dry_run=source.dry_run,
        )

    def threshold_for_attempt(self, attempt: int) -> float:
        """Organic acceptance threshold for escalation ``attempt`` (0 is the normal pass)."""
        if attempt <= 0:
            return self.confidence_threshold
        relaxed = self.confidence_threshold - attempt * self.threshold_decrement
        return round(max(self.threshold_floor, relaxed), 4)


@dataclass
class EscalationStep:
    attempt: int
    state: EscalationState
    threshold: float
    queries_run: int = 0
    candidates: int = 0
    leads_added: int = 0


@dataclass
class RunStats:
    total_processed: int = 0
    success_rate: float = 0.0
    avg_processing_ms: float = 0.0
    quality_score: float = 0.0
    budget_used: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0


@dataclass
class RunResult:
    """Everything a run computed, returned even when delivery fails."""

    queries: list[SearchQuery] = field(default_factory=list)
    candidates: list[CandidateRecord] = field(default_factory=list)
    classifications: dict[str, ClassificationOutcome] = field(default_factory=dict)
    verifications: dict[str, VerificationOutcome] = field(default_factory=dict)
    leads: list[Lead] = field(default_factory=list)
    duplicates_removed: int = 0
    duplicate_queries: int = 0
    duplicate_leads: int = 0
    escalation: list[EscalationStep] = field(default_factory=list)
    final_state: EscalationState = EscalationState.NORMAL_SEARCH
    shortfall: int = 0
    stats: RunStats = field(default_factory=RunStats)
    errors: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def seed_leads(self) -> list[Lead]:
        return [lead for lead in self.leads if lead.synthetic]


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class PipelineOrchestrator:
    """Sequences one discovery run over injected collaborators.

    The run keeps a minimum-yield guarantee: while fewer than
    ``min_leads_floor`` leads have been accepted it moves from the normal
    pass to relaxed passes (lower threshold, fresh queries) and finally
    injects seed candidates, stopping after ``max_escalation_attempts``.
    """

    def __init__(
        self,
        *,
        query_generator: QueryGeneratorProtocol,
        search_client: SearchClientProtocol,
        classifier: ClassifierProtocol,
        verifier: VerifierProtocol,
        sink: LeadSinkProtocol,
        history: IdentityHistoryStore,
        config: PipelineConfig | None = None,
        cache: ContentCache | None = None,
        search_caller: ExternalCaller | None = None,
        classification_caller: ExternalCaller | None = None,
        verification_caller: ExternalCaller | None = None,
        date_filter: DateRelevanceFilter | None = None,
        deduplicator: SimilarityDeduplicator | None = None,
        seed_factory: SeedFactory | None = None,
        clock: ClockFn | None = None,
    ) -> None:
        self._query_generator = query_generator
        self._search_client = search_client
        self._classifier = classifier
        self._verifier = verifier
        self._sink = sink
        self._history = history
        self._config = config or PipelineConfig()
        self._cache = cache or ContentCache()
        self._search_caller = search_caller or ExternalCaller("search")
        self._classification_caller = classification_caller or ExternalCaller("classifier")
        self._verification_caller = verification_caller or ExternalCaller("registry")
        self._date_filter = date_filter or DateRelevanceFilter()
        self._deduplicator = deduplicator or SimilarityDeduplicator()
        self._clock = clock or _utcnow
        self._seed_factory = seed_factory or (lambda: build_seed_candidates(today=self._clock().date()))

    @property
    def config(self) -> PipelineConfig:
        return self._config

    def execute(self) -> RunResult:
        result = RunResult(started_at=self._clock())
        started = time.perf_counter()
        decided: set[str] = set()

        queries = self._generate_queries()
        result.queries = queries
        pending = deque(query for query in queries if not self._history.is_duplicate_query(query.query))
        result.duplicate_queries = len(queries) - len(pending)
        logger.info(
            "Generated %s queries; %s already searched within the re-admission window; %s to run.",
            len(queries),
            result.duplicate_queries,
            len(pending),
        )

        state = EscalationState.NORMAL_SEARCH
        attempt = 0
        seeds_injected = False
        while True:
            threshold = self._config.threshold_for_attempt(attempt)
            step = EscalationStep(attempt=attempt, state=state, threshold=threshold)
            if state is EscalationState.SEED_FALLBACK:
                raw = self._seed_factory()
                seeds_injected = True
                pass_threshold = self._config.seed_threshold
            else:
                batch = [pending.popleft() for _ in range(min(self._config.queries_per_pass, len(pending)))]
                step.queries_run = len(batch)
                raw = self._search(batch, result)
                pass_threshold = threshold

            fresh = self._deduplicate(raw, result)
            step.candidates = len(fresh)
            self._classify_and_verify(fresh, pass_threshold, result)
            step.leads_added = self._assemble_leads(threshold, state, result, decided)
            result.escalation.append(step)
            if attempt > 0:
                metrics.increment("escalation.attempts", tags={"state": state.value})
            logger.info(
                "Pass %s (%s) threshold=%.2f queries=%s candidates=%s leads_added=%s total_leads=%s",
                attempt,
                state.value,
                threshold,
                step.queries_run,
                step.candidates,
                step.leads_added,
                len(result.leads),
            )

            if len(result.leads) >= self._config.min_leads_floor or attempt >= self._config.max_escalation_attempts:
                break
            attempt += 1
            state = self._next_state(attempt, bool(pending), seeds_injected)

        result.final_state = EscalationState.COMPLETE
        result.shortfall = max(0, self._config.min_leads_floor - len(result.leads))
        if result.shortfall:
            logger.error(
                "pipeline.degraded_yield",
                extra={
                    "leads": len(result.leads),
                    "floor": self._config.min_leads_floor,
                    "attempts": attempt,
                    "shortfall": result.shortfall,
                },
            )
            result.errors.append(
                f"Degraded yield: {len(result.leads)} leads after {attempt} escalation attempts "
                f"(floor {self._config.min_leads_floor})."
            )

        elapsed_ms = (time.perf_counter() - started) * 1000
        result.finished_at = self._clock()
        result.stats = self._compute_stats(result, elapsed_ms)
        metrics.gauge("leads.accepted", len(result.leads))
        metrics.gauge("budget.used", result.stats.budget_used)

        if result.leads and not self._config.dry_run:
            try:
                self._sink.write(result.leads)
            except Exception as exc:
                logger.error("Lead sink failed: %s (code=%s)", exc, getattr(exc, "code", "SINK_ERROR"))
                raise LeadSinkError(f"Lead sink failed: {exc}", result) from exc
        elif result.leads:
            logger.info("Dry run: skipping delivery of %s leads.", len(result.leads))
        return result

    def _next_state(self, attempt: int, has_pending: bool, seeds_injected: bool) -> EscalationState:
        if not seeds_injected and (attempt >= self._config.seed_fallback_attempt or not has_pending):
            return EscalationState.SEED_FALLBACK
        return EscalationState.RELAXED_SEARCH

    def _generate_queries(self) -> list[SearchQuery]:
        try:
            queries = self._query_generator.generate()
        except Exception as exc:
            raise PipelineError(f"Query generation failed: {exc}", code="QUERY_GENERATION_FAILED") from exc
        if not queries:
            raise PipelineError("Query generation produced no queries.", code="QUERY_GENERATION_FAILED")
        return list(queries)

    def _search(self, batch: Sequence[SearchQuery], result: RunResult) -> list[CandidateRecord]:
        candidates: list[CandidateRecord] = []
        for query in batch:
            if len(candidates) >= self._config.max_candidates_per_pass:
                logger.info("Candidate cap of %s reached for this pass.", self._config.max_candidates_per_pass)
                break
            query.status = QueryStatus.PROCESSING
            try:
                raw_results = self._cache.cached_operation(
                    f"search:{query.query}",
                    self._config.search_cost,
                    lambda query=query: self._search_caller.call(
                        lambda: self._search_client.search(
                            query=query.query, limit=self._config.max_results_per_query
                        ),
                        context=query.query,
                    ),
                )
            except (ExternalCallError, BudgetExceededError) as exc:
                query.status = QueryStatus.FAILED
                query.processed_at = self._clock()
                result.errors.append(f"search failed for {query.query!r}: {exc}")
                logger.warning("Search failed for query=%r (code=%s); skipping.", query.query, exc.code)
                continue
            report = extract_candidates(
                raw_results,
                date_filter=self._date_filter,
                query=query,
                limit=self._config.max_results_per_query,
            )
            query.results_count = len(report.candidates)
            query.status = QueryStatus.COMPLETED
            query.processed_at = self._clock()
            remaining = self._config.max_candidates_per_pass - len(candidates)
            candidates.extend(report.candidates[:remaining])
            logger.debug(
                "Query %r: kept=%s future=%s undated=%s past=%s blocked=%s",
                query.query,
                len(report.candidates),
                report.future_dated,
                report.undated,
                report.past_dated,
                report.blocked,
            )
        return candidates

    def _deduplicate(self, raw: Sequence[CandidateRecord], result: RunResult) -> list[CandidateRecord]:
        """Dedupe ``raw`` against itself and every candidate already kept this run."""
        prior = len(result.candidates)
        survivors = self._deduplicator.deduplicate_batch([*result.candidates, *raw])
        fresh = survivors[prior:]
        result.duplicates_removed += self._deduplicator.last_removed
        result.candidates.extend(fresh)
        return fresh

    def _classify_and_verify(
        self,
        candidates: Sequence[CandidateRecord],
        threshold: float,
        result: RunResult,
    ) -> None:
        for candidate in candidates:
            outcome = self._classify(candidate, threshold, result)
            if outcome is None:
                continue
            result.classifications[candidate.id] = outcome
            result.verifications[candidate.id] = self._verify(candidate, result)

    def _classify(
        self,
        candidate: CandidateRecord,
        threshold: float,
        result: RunResult,
    ) -> ClassificationOutcome | None:
        key = f"classification:{candidate.url}:{candidate.title}:{threshold:.2f}"
        try:
            return self._cache.cached_operation(
                key,
                self._config.classification_cost,
                lambda: self._classification_caller.call(
                    lambda: self._classifier.classify(candidate, threshold=threshold),
                    context=candidate.url,
                ),
            )
        except (ExternalCallError, BudgetExceededError) as exc:
            result.errors.append(f"classification failed for {candidate.url}: {exc}")
            logger.warning("Classification failed for url=%s (code=%s); skipping.", candidate.url, exc.code)
            return None

    def _verify(self, candidate: CandidateRecord, result: RunResult) -> VerificationOutcome:
        key = f"verification:{normalize_org_name(candidate.organization_name)}"
        try:
            outcome = self._cache.cached_operation(
                key,
                self._config.verification_cost,
                lambda: self._verification_caller.call(
                    lambda: self._verifier.verify_by_name(candidate.organization_name),
                    context=candidate.organization_name,
                ),
            )
        except (ExternalCallError, BudgetExceededError) as exc:
            result.errors.append(f"verification failed for {candidate.organization_name}: {exc}")
            logger.warning(
                "Verification failed for organization=%s (code=%s); marking for manual review.",
                candidate.organization_name,
                exc.code,
            )
            return VerificationOutcome(
                candidate_id=candidate.id,
                source=VerificationSource.MANUAL,
                details={"error": exc.code},
            )
        return outcome.model_copy(update={"candidate_id": candidate.id})

    def _assemble_leads(
        self,
        threshold: float,
        state: EscalationState,
        result: RunResult,
        decided: set[str],
    ) -> int:
        """Accept qualifying candidates in discovery order, re-assessing earlier passes at ``threshold``."""
        added = 0
        for candidate in result.candidates:
            if len(result.leads) >= self._config.max_leads_per_run:
                break
            if candidate.id in decided:
                continue
            outcome = result.classifications.get(candidate.id)
            if outcome is None:
                continue
            bar = self._config.seed_threshold if candidate.synthetic else threshold
            if not outcome.accepted_at(bar):
                continue
            lead = self._build_lead(candidate, outcome, result.verifications.get(candidate.id), bar, state)
            decided.add(candidate.id)
            if self._history.is_duplicate_lead(lead):
                result.duplicate_leads += 1
                logger.info("Lead %s already surfaced recently; skipping.", lead.url)
                continue
            result.leads.append(lead)
            added += 1
        return added

    def _build_lead(
        self,
        candidate: CandidateRecord,
        outcome: ClassificationOutcome,
        verification: VerificationOutcome | None,
        threshold: float,
        state: EscalationState,
    ) -> Lead:
        verified = bool(verification and verification.verified)
        now = self._clock()
        return Lead(
            id=f"lead-{candidate.id}",
            organization_name=candidate.organization_name,
            registry_id=verification.registry_id if verification else None,
            event_name=candidate.event_info.title,
            event_date=candidate.event_info.parsed_date,
            url=candidate.url,
            travel_keywords=outcome.has_travel_keywords,
            auction_keywords=outcome.has_auction_keywords,
            verified=verified,
            confidence_score=outcome.confidence_score,
            contact_email=next(iter(candidate.contact_info.emails), None),
            contact_phone=next(iter(candidate.contact_info.phones), None),
            created_at=now,
            updated_at=now,
            status=LeadStatus.QUALIFIED if verified else LeadStatus.PENDING,
            provenance=candidate.provenance,
            threshold=threshold,
            escalation_state=state.value,
        )

    def _compute_stats(self, result: RunResult, elapsed_ms: float) -> RunStats:
        processed = len(result.candidates)
        cache_stats = self._cache.stats
        quality = sum(lead.confidence_score for lead in result.leads) / len(result.leads) if result.leads else 0.0
        return RunStats(
            total_processed=processed,
            success_rate=round(len(result.leads) / processed, 4) if processed else 0.0,
            avg_processing_ms=round(elapsed_ms / processed, 2) if processed else 0.0,
            quality_score=round(quality, 4),
            budget_used=self._cache.budget_used,
            cache_hits=cache_stats["hits"],
            cache_misses=cache_stats["misses"],
        )


def build_orchestrator(source: Settings, *, overrides: dict[str, Any] | None = None) -> PipelineOrchestrator:
    """Wire a production orchestrator from settings."""
    config = PipelineConfig.from_settings(source)
    if overrides:
        config = replace(config, **overrides)
    runtime = get_runtime_config()
    today = _utcnow().date()
    date_filter = DateRelevanceFilter(
        parse_date_range(source.event_date_range),
        forward_window_days=source.event_forward_window_days,
        today=today,
    )
    history = IdentityHistoryStore(
        source.history_dir,
        query_window=timedelta(hours=source.query_readmission_hours),
        lead_window=timedelta(days=source.lead_readmission_days),
        event_date_tolerance=timedelta(days=source.event_date_tolerance_days),
        persist=not config.dry_run,
    )
    sinks = [JsonFileLeadSink(source.leads_output_path)]
    if source.slack_webhook_url:
        sinks.append(SlackWebhookLeadSink(source.slack_webhook_url))

    def caller(provider: str, delay: float) -> ExternalCaller:
        return ExternalCaller(
            provider,
            limiter=TokenBucket.from_delay(delay),
            max_attempts=source.external_call_max_attempts,
            base_delay=source.retry_base_delay_seconds,
            timeout=source.external_call_timeout_seconds,
        )

    return PipelineOrchestrator(
        query_generator=QueryGenerator(
            months=source.search_months,
            quarters=source.search_quarters,
            max_queries=source.max_search_queries,
            year=today.year,
            date_filter=date_filter if source.expand_date_variants else None,
        ),
        search_client=get_search_client(runtime),
        classifier=get_classifier(runtime),
        verifier=get_verifier(runtime),
        sink=MultiLeadSink(sinks),
        history=history,
        config=config,
        cache=ContentCache(
            max_entries=source.cache_max_entries,
            ttl_seconds=source.cache_ttl_seconds,
            budget_limit=source.budget_limit,
        ),
        search_caller=caller("search", source.search_delay_seconds),
        classification_caller=caller("classifier", source.classification_delay_seconds),
        verification_caller=caller("registry", source.verification_delay_seconds),
        date_filter=date_filter,
        deduplicator=SimilarityDeduplicator(source.similarity_threshold),
    )


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """CLI argument parsing."""
    parser = argparse.ArgumentParser(description="Run the daily nonprofit event lead discovery pipeline.")
    parser.add_argument("--dry-run", action="store_true", help="Run every stage but skip lead delivery.")
    parser.add_argument("--max-leads", type=int, default=None, help="Override the per-run lead cap.")
    parser.add_argument("--history-dir", type=Path, default=None, help="Directory holding identity history files.")
    parser.add_argument("--output", type=Path, default=None, help="Path to the leads JSON file.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint for the lead discovery pipeline."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    args = parse_args(argv if argv is not None else sys.argv[1:])
    updates: dict[str, Any] = {}
    if args.history_dir is not None:
        updates["history_dir"] = str(args.history_dir)
    if args.output is not None:
        updates["leads_output_path"] = str(args.output)
    source = settings.model_copy(update=updates) if updates else settings

    overrides: dict[str, Any] = {}
    if args.dry_run:
        overrides["dry_run"] = True
    if args.max_leads is not None:
        overrides["max_leads_per_run"] = args.max_leads
        overrides["min_leads_floor"] = min(source.min_leads_floor, args.max_leads)

    try:
        orchestrator = build_orchestrator(source, overrides=overrides)
        result = orchestrator.execute()
    except (PipelineError, HistoryCorruptionError, ModeError) as exc:
        logger.error("Lead discovery failed: %s (code=%s)", exc, exc.code)
        return 1
    except ValueError as exc:
        logger.error("Invalid pipeline configuration: %s", exc)
        return 1
    except Exception as exc:  # pragma: no cover - safety net
        logger.exception("Unexpected error during lead discovery: %s", exc)
        return 1

    logger.info(
        "Run complete: leads=%s seeds=%s duplicates_removed=%s duplicate_queries=%s duplicate_leads=%s "
        "budget_used=%.3f quality=%.2f",
        len(result.leads),
        len(result.seed_leads),
        result.duplicates_removed,
        result.duplicate_queries,
        result.duplicate_leads,
        result.stats.budget_used,
        result.stats.quality_score,
    )
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
