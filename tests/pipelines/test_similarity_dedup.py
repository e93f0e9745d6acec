import pytest

from pipelines.dedup import SimilarityDeduplicator
from tests.utils import make_candidate


def test_identical_urls_keep_exactly_one():
    first = make_candidate(1, url="https://gala.example.org/auction")
    second = make_candidate(2, url="https://gala.example.org/auction")
    third = make_candidate(3)

    dedup = SimilarityDeduplicator()
    kept = dedup.deduplicate_batch([first, second, third])

    assert [record.id for record in kept] == ["cand-1", "cand-3"]
    assert dedup.last_removed == 1


def test_tracking_parameters_do_not_defeat_url_match():
    first = make_candidate(1, url="https://gala.example.org/auction?utm_source=newsletter")
    second = make_candidate(2, url="https://gala.example.org/auction#tickets")

    kept = SimilarityDeduplicator().deduplicate_batch([first, second])

    assert [record.id for record in kept] == ["cand-1"]


def test_near_identical_text_is_removed_and_earlier_record_kept():
    text = "Harbor Animal Rescue hosts its annual silent auction with travel packages and hotel stays."
    first = make_candidate(1, title="Harbor Animal Rescue - Silent Auction", content=text)
    second = make_candidate(2, title="Harbor Animal Rescue - Silent Auction", content=text.replace("annual", "yearly"))

    kept = SimilarityDeduplicator(threshold=0.85).deduplicate_batch([first, second])

    assert [record.id for record in kept] == ["cand-1"]


def test_distinct_records_survive_in_order():
    records = [make_candidate(idx) for idx in range(6)]

    kept = SimilarityDeduplicator().deduplicate_batch(records)

    assert [record.id for record in kept] == [record.id for record in records]


def test_deduplication_is_idempotent():
    text = "Metro Food Bank benefit dinner and auction of donated trips for community food programs."
    records = [
        make_candidate(1, title="Metro Food Bank - Benefit", content=text),
        make_candidate(2, title="Metro Food Bank - Benefit", content=text + " Tickets on sale."),
        make_candidate(3, url="https://org1.example.org/events/1"),
        make_candidate(4),
        make_candidate(5),
    ]
    dedup = SimilarityDeduplicator()

    once = dedup.deduplicate_batch(records)
    twice = dedup.deduplicate_batch(once)

    assert [record.id for record in twice] == [record.id for record in once]
    assert dedup.last_removed == 0


@pytest.mark.parametrize("threshold", [0.0, -0.1, 1.5])
def test_rejects_out_of_range_threshold(threshold):
    with pytest.raises(ValueError):
        SimilarityDeduplicator(threshold=threshold)
