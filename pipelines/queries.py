"""Fixed-template search query generation across configured month/quarter periods."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from app.models.candidate import SearchQuery
from pipelines.date_filter import DateRelevanceFilter, configured_periods, months_for_period

logger = logging.getLogger("pipelines.queries")

QUERY_TEMPLATES: tuple[str, ...] = (
    'site:org "travel auction"',
    'site:org "vacation raffle"',
    'site:org "silent auction" travel',
    'site:org "gala" "travel packages"',
    'site:edu "travel auction" fundraiser',
    '"school travel auction"',
    '"church travel auction"',
    '"nonprofit travel fundraiser"',
    '"501c3" "travel auction"',
    '"foundation" "travel raffle"',
    '"museum" "travel auction"',
    '"annual gala" "travel packages"',
    '"benefit dinner" "travel auction"',
    '"live auction" "travel packages"',
)


def period_phrase(period: str, year: int) -> str:
    """Quoted month phrase, or an OR-group of the three months for a quarter."""
    months = months_for_period(period)
    quoted = [f'"{month} {year}"' for month in months]
    if len(quoted) == 1:
        return quoted[0]
    return f"({' OR '.join(quoted)})"


class QueryGenerator:
    """Produces one query per (period, template) pair, period-major, capped at ``max_queries``.

    With a ``date_filter`` each pair expands into its date-aware variants
    (long and abbreviated month phrasings) instead of a single period phrase.
    """

    def __init__(
        self,
        *,
        months: Sequence[str],
        quarters: Sequence[str] = (),
        templates: Sequence[str] = QUERY_TEMPLATES,
        max_queries: int | None = None,
        year: int | None = None,
        date_filter: DateRelevanceFilter | None = None,
    ) -> None:
        if not templates:
            raise ValueError("At least one query template is required.")
        if max_queries is not None and max_queries < 1:
            raise ValueError("max_queries must be >= 1")
        self._periods = configured_periods(months, quarters)
        self._templates = tuple(templates)
        self._max_queries = max_queries
        self._year = year
        self._date_filter = date_filter

    @property
    def periods(self) -> list[str]:
        return list(self._periods)

    def generate(self) -> list[SearchQuery]:
        year = self._year or datetime.now(tz=UTC).year
        queries: list[SearchQuery] = []
        seen: set[str] = set()
        for period in self._periods:
            for template in self._templates:
                for text in self._expand(template, period, year):
                    if text in seen:
                        continue
                    seen.add(text)
                    queries.append(SearchQuery(query=text, date_range=period))
                    if self._max_queries is not None and len(queries) >= self._max_queries:
                        logger.info("Query generation capped at %s queries.", self._max_queries)
                        return queries
        logger.info(
            "Generated %s queries from %s templates x %s periods.",
            len(queries),
            len(self._templates),
            len(self._periods),
        )
        return queries

    def _expand(self, template: str, period: str, year: int) -> list[str]:
        if self._date_filter is not None:
            return self._date_filter.generate_date_aware_variants(template, period, year=year)
        return [f"{template} {period_phrase(period, year)}"]
