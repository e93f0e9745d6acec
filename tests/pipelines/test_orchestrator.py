from datetime import UTC, date, datetime

import pytest

from app.config import Settings
from app.models.candidate import QueryStatus, SearchQuery
from app.models.lead import VerificationOutcome, VerificationSource
from pipelines import orchestrator as orchestrator_module
from pipelines.date_filter import DateRelevanceFilter
from pipelines.history import IdentityHistoryStore
from pipelines.orchestrator import (
    EscalationState,
    LeadSinkError,
    PipelineConfig,
    PipelineError,
    PipelineOrchestrator,
    RunResult,
    main,
)
from pipelines.queries import QUERY_TEMPLATES, QueryGenerator
from pipelines.rate_limit import ExternalCaller
from pipelines.seeds import build_seed_candidates
from pipelines.sinks import SinkError
from tests.utils import FIXED_NOW, distinct_text, make_lead, make_outcome


def _clock():
    return FIXED_NOW


def _result(n):
    return {
        "url": f"https://org{n}.example.org/events/{n}",
        "title": f"Community Org {n} - Annual Travel Auction",
        "snippet": distinct_text(n),
    }


def _index(candidate):
    return int(candidate.url.rsplit("/", 1)[-1])


class StaticQueryGenerator:
    def __init__(self, texts):
        self._texts = list(texts)

    def generate(self):
        return [SearchQuery(query=text, date_range="March") for text in self._texts]


class FakeSearchClient:
    """Returns ``per_query`` fresh results for each query, numbered across the run."""

    def __init__(self, per_query=3, *, empty=False, failing=()):
        self.per_query = per_query
        self.empty = empty
        self.failing = set(failing)
        self.calls = []
        self._next = 0

    def search(self, *, query, limit):
        self.calls.append(query)
        if query in self.failing:
            raise RuntimeError("search backend unavailable")
        if self.empty:
            return []
        count = min(limit, self.per_query)
        results = [_result(self._next + offset) for offset in range(count)]
        self._next += count
        return results


class FakeClassifier:
    def __init__(self, score):
        self._score = score
        self.calls = []

    def classify(self, candidate, *, threshold):
        self.calls.append((candidate.url, threshold))
        relevant, confidence = self._score(candidate)
        return make_outcome(candidate.id, relevant=relevant, confidence=confidence)


class FakeVerifier:
    def __init__(self):
        self.calls = []

    def verify_by_name(self, name):
        self.calls.append(name)
        return VerificationOutcome(source=VerificationSource.MANUAL, details={"reason": "no registry match"})


class RecordingSink:
    def __init__(self):
        self.batches = []

    def write(self, leads):
        self.batches.append(list(leads))


class FailingSink:
    def write(self, leads):
        raise SinkError("sheet unavailable", code="SINK_IO_ERROR")


def _build(
    *,
    queries=("q1",),
    generator=None,
    search=None,
    classifier=None,
    sink=None,
    history=None,
    config=None,
    seed_factory=None,
):
    return PipelineOrchestrator(
        query_generator=generator or StaticQueryGenerator(queries),
        search_client=search or FakeSearchClient(),
        classifier=classifier or FakeClassifier(lambda candidate: (True, 0.8)),
        verifier=FakeVerifier(),
        sink=sink or RecordingSink(),
        history=history or IdentityHistoryStore(None, clock=_clock),
        config=config or PipelineConfig(),
        search_caller=ExternalCaller("search", max_attempts=1),
        classification_caller=ExternalCaller("classifier", max_attempts=1),
        verification_caller=ExternalCaller("registry", max_attempts=1),
        date_filter=DateRelevanceFilter(today=FIXED_NOW.date()),
        seed_factory=seed_factory or (lambda: build_seed_candidates(today=FIXED_NOW.date())),
        clock=_clock,
    )


def test_end_to_end_run_respects_history_threshold_and_cap(stub_metrics):
    periods = {"months": ["March", "April", "May", "October", "November"], "quarters": ["Q2", "Q4"]}
    assert len(QueryGenerator(**periods, year=2025).generate()) == len(QUERY_TEMPLATES) * 7
    generator = QueryGenerator(**periods, max_queries=15, year=2025)
    queries = [query.query for query in generator.generate()]
    history = IdentityHistoryStore(None, clock=_clock)
    for text in queries[:3]:
        history.is_duplicate_query(text)
    search = FakeSearchClient(per_query=3)
    sink = RecordingSink()

    def forty_percent_relevant(candidate):
        relevant = _index(candidate) % 5 in (0, 1)
        return relevant, 0.75 if relevant else 0.2

    orchestrator = _build(
        generator=generator,
        search=search,
        classifier=FakeClassifier(forty_percent_relevant),
        sink=sink,
        history=history,
    )

    result = orchestrator.execute()

    assert search.calls == queries[3:]
    assert result.duplicate_queries == 3
    assert len(result.candidates) == 36
    assert len(result.leads) == 10
    assert [_index(lead) for lead in result.leads] == [0, 1, 5, 6, 10, 11, 15, 16, 20, 21]
    assert len({lead.url for lead in result.leads}) == 10
    assert all(lead.confidence_score >= 0.60 and lead.threshold == 0.60 for lead in result.leads)
    assert not result.seed_leads
    assert [step.state for step in result.escalation] == [EscalationState.NORMAL_SEARCH]
    assert result.final_state is EscalationState.COMPLETE
    assert result.shortfall == 0
    assert sink.batches == [result.leads]
    assert history.lead_count == 10
    assert result.stats.total_processed == 36
    assert result.stats.success_rate == pytest.approx(0.2778)
    assert result.stats.quality_score == pytest.approx(0.75)
    assert result.stats.budget_used == pytest.approx(12 * 0.02 + 36 * 0.01 + 36 * 0.005)


def test_minimum_yield_falls_back_to_seed_candidates(stub_metrics):
    config = PipelineConfig(queries_per_pass=1, seed_fallback_attempt=2)

    def seeds_only(candidate):
        return (True, 0.35) if candidate.synthetic else (False, 0.1)

    orchestrator = _build(
        queries=["a", "b", "c"],
        search=FakeSearchClient(empty=True),
        classifier=FakeClassifier(seeds_only),
        config=config,
    )

    result = orchestrator.execute()

    assert [step.state for step in result.escalation] == [
        EscalationState.NORMAL_SEARCH,
        EscalationState.RELAXED_SEARCH,
        EscalationState.SEED_FALLBACK,
    ]
    assert [step.threshold for step in result.escalation] == [0.6, 0.5, 0.4]
    assert len(result.leads) == 6
    assert len(result.leads) >= config.min_leads_floor
    assert result.seed_leads == result.leads
    assert all(lead.url.startswith("seed://") for lead in result.leads)
    assert all(lead.threshold == 0.30 for lead in result.leads)
    assert {lead.escalation_state for lead in result.leads} == {"seed_fallback"}
    assert result.shortfall == 0
    assert stub_metrics.counted("escalation.attempts") == 2


def test_relaxed_pass_reassesses_earlier_candidates_without_reclassifying(stub_metrics):
    config = PipelineConfig(queries_per_pass=1, max_results_per_query=5)
    classifier = FakeClassifier(lambda candidate: (True, 0.55))
    search = FakeSearchClient(per_query=5, failing={"second"})

    orchestrator = _build(queries=["first", "second"], search=search, classifier=classifier, config=config)

    result = orchestrator.execute()

    assert len(classifier.calls) == 5
    assert len(result.leads) == 5
    assert {lead.threshold for lead in result.leads} == {0.5}
    assert {lead.escalation_state for lead in result.leads} == {"relaxed_search"}
    assert [step.leads_added for step in result.escalation] == [0, 5]


def test_failed_search_is_skipped_and_recorded(stub_metrics):
    search = FakeSearchClient(per_query=3, failing={"broken"})

    result = _build(queries=["broken", "working"], search=search, config=PipelineConfig(min_leads_floor=1)).execute()

    assert search.calls == ["broken", "working"]
    assert result.queries[0].status is QueryStatus.FAILED
    assert result.queries[1].status is QueryStatus.COMPLETED
    assert result.queries[1].results_count == 3
    assert any("search failed" in error for error in result.errors)
    assert len(result.candidates) == 3


def test_history_duplicate_leads_are_not_delivered(stub_metrics):
    history = IdentityHistoryStore(None, clock=_clock)
    history.is_duplicate_lead(make_lead("https://org0.example.org/events/0", organization="Community Org 0"))
    sink = RecordingSink()

    result = _build(history=history, sink=sink, config=PipelineConfig(min_leads_floor=2)).execute()

    assert result.duplicate_leads == 1
    assert [_index(lead) for lead in result.leads] == [1, 2]
    assert sink.batches == [result.leads]


def test_degraded_yield_is_reported_not_raised(stub_metrics):
    config = PipelineConfig(max_escalation_attempts=1)

    result = _build(
        classifier=FakeClassifier(lambda candidate: (False, 0.1)),
        config=config,
        seed_factory=list,
    ).execute()

    assert result.leads == []
    assert result.shortfall == config.min_leads_floor
    assert result.final_state is EscalationState.COMPLETE
    assert [step.state for step in result.escalation] == [
        EscalationState.NORMAL_SEARCH,
        EscalationState.SEED_FALLBACK,
    ]
    assert any(error.startswith("Degraded yield") for error in result.errors)


def test_sink_failure_surfaces_with_computed_result(stub_metrics):
    orchestrator = _build(sink=FailingSink(), config=PipelineConfig(min_leads_floor=1))

    with pytest.raises(LeadSinkError) as excinfo:
        orchestrator.execute()

    assert excinfo.value.code == "SINK_WRITE_FAILED"
    assert len(excinfo.value.result.leads) == 3
    assert isinstance(excinfo.value.__cause__, SinkError)


def test_dry_run_skips_delivery(stub_metrics):
    sink = RecordingSink()

    result = _build(sink=sink, config=PipelineConfig(min_leads_floor=1, dry_run=True)).execute()

    assert len(result.leads) == 3
    assert sink.batches == []


class ExplodingGenerator:
    def generate(self):
        raise ValueError("bad template")


class EmptyGenerator:
    def generate(self):
        return []


@pytest.mark.parametrize("generator", [ExplodingGenerator(), EmptyGenerator()])
def test_query_generation_failure_is_fatal(stub_metrics, generator):
    orchestrator = _build(generator=generator)

    with pytest.raises(PipelineError) as excinfo:
        orchestrator.execute()

    assert excinfo.value.code == "QUERY_GENERATION_FAILED"


def test_threshold_relaxes_to_floor():
    config = PipelineConfig()

    assert [config.threshold_for_attempt(n) for n in range(4)] == [0.6, 0.5, 0.4, 0.4]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"threshold_floor": 0.7},
        {"min_leads_floor": 11},
        {"confidence_threshold": 1.5},
        {"queries_per_pass": 0},
    ],
)
def test_invalid_config_is_rejected(kwargs):
    with pytest.raises(ValueError):
        PipelineConfig(**kwargs)


def test_main_passes_cli_overrides(monkeypatch):
    captured = {}

    class StubOrchestrator:
        def execute(self):
            return RunResult()

    def fake_build(source, *, overrides=None):
        captured["source"] = source
        captured["overrides"] = overrides
        return StubOrchestrator()

    monkeypatch.setattr(orchestrator_module, "build_orchestrator", fake_build)

    exit_code = main(["--dry-run", "--max-leads", "3", "--history-dir", "/tmp/lead-history"])

    assert exit_code == 0
    assert captured["overrides"] == {"dry_run": True, "max_leads_per_run": 3, "min_leads_floor": 3}
    assert captured["source"].history_dir == "/tmp/lead-history"


def test_main_reports_pipeline_errors(monkeypatch):
    def fake_build(source, *, overrides=None):
        raise PipelineError("nothing to search", code="QUERY_GENERATION_FAILED")

    monkeypatch.setattr(orchestrator_module, "build_orchestrator", fake_build)

    assert main([]) == 1


def test_seed_candidates_are_dated_relative_to_today():
    seeds = build_seed_candidates(today=date(2025, 3, 1))

    assert len(seeds) == 6
    assert all(seed.synthetic and seed.event_info.has_future_date for seed in seeds)
    assert seeds[0].event_info.parsed_date == date(2025, 4, 15)
    assert len({seed.url for seed in seeds}) == 6


def test_build_orchestrator_dates_everything_from_the_utc_clock(monkeypatch, tmp_path):
    late_evening = datetime(2025, 3, 1, 23, 30, tzinfo=UTC)
    monkeypatch.setattr(orchestrator_module, "_utcnow", lambda: late_evening)
    monkeypatch.setenv("LEAD_MINER_MODE", "fixture")
    source = Settings(
        history_dir=str(tmp_path / "history"),
        leads_output_path=str(tmp_path / "leads.json"),
        search_months=["March"],
        search_quarters=[],
        max_search_queries=4,
        expand_date_variants=True,
    )

    orchestrator = orchestrator_module.build_orchestrator(source)

    assert orchestrator._date_filter.today == date(2025, 3, 1)
    assert [query.query for query in orchestrator._query_generator.generate()] == [
        'site:org "travel auction" "March 2025"',
        'site:org "travel auction" "March"',
        'site:org "travel auction" "Mar 2025"',
        'site:org "travel auction" "Mar"',
    ]
