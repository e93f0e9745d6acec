"""Near-duplicate removal within one batch of discovery candidates."""

from __future__ import annotations

import difflib
import logging
from collections.abc import Sequence

from app.models.candidate import CandidateRecord
from pipelines.normalize import canonicalize_url, normalize_text

logger = logging.getLogger("pipelines.dedup")

DEFAULT_SIMILARITY_THRESHOLD = 0.85


class SimilarityDeduplicator:
    """Keeps the first of any group of candidates that share a URL or near-identical text.

    Each record is compared against every record already kept, so the pass is
    quadratic in batch size and stable: survivors keep their input order, and
    running the pass again over its own output removes nothing.
    """

    def __init__(self, threshold: float = DEFAULT_SIMILARITY_THRESHOLD) -> None:
        if not 0.0 < threshold <= 1.0:
            raise ValueError("threshold must be in (0, 1].")
        self.threshold = threshold
        self.last_removed = 0

    def deduplicate_batch(self, records: Sequence[CandidateRecord]) -> list[CandidateRecord]:
        kept: list[CandidateRecord] = []
        kept_keys: list[tuple[str | None, str]] = []
        removed = 0
        for record in records:
            url = canonicalize_url(record.url)
            text = normalize_text(f"{record.title} {record.content}")
            if any(self._is_duplicate(url, text, prior_url, prior_text) for prior_url, prior_text in kept_keys):
                removed += 1
                logger.debug("Dropping near-duplicate candidate url=%s", record.url)
                continue
            kept.append(record)
            kept_keys.append((url, text))
        self.last_removed = removed
        if removed:
            logger.info("Similarity dedup removed %s of %s candidates.", removed, len(records))
        return kept

    def _is_duplicate(self, url: str | None, text: str, prior_url: str | None, prior_text: str) -> bool:
        if url is not None and url == prior_url:
            return True
        matcher = difflib.SequenceMatcher(None, prior_text, text)
        # quick_ratio is an upper bound on ratio, so it can rule pairs out cheaply.
        if matcher.real_quick_ratio() < self.threshold or matcher.quick_ratio() < self.threshold:
            return False
        return matcher.ratio() >= self.threshold
