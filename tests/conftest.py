import pytest

from tests.helpers.metrics_stub import StubMetrics


@pytest.fixture
def stub_metrics(monkeypatch):
    """Route every module-level metrics emitter to a capturing stub."""
    stub = StubMetrics()
    import app.services.classification.engine as engine
    import pipelines.cache as cache
    import pipelines.orchestrator as orchestrator
    import pipelines.rate_limit as rate_limit

    for module in (cache, orchestrator, rate_limit, engine):
        monkeypatch.setattr(module, "metrics", stub)
    return stub
