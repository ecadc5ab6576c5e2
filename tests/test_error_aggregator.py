"""Tests for rundiag.events.error_aggregator."""

import threading

import pytest

from rundiag.config import AggregatorLimits
from rundiag.events.error_aggregator import (
    ErrorAggregator,
    ErrorEvent,
    ErrorFingerprint,
    classify_cause,
    normalize_message,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(message: str, ts: float = 0.0, source: str = "app.js", line: int = 42) -> ErrorEvent:
    return ErrorEvent(message=message, timestamp=ts, source_file=source, line=line)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestNormalizeMessage:
    def test_numbers(self):
        assert normalize_message("Timeout after 3000 ms") == "Timeout after <num> ms"

    def test_hex(self):
        assert normalize_message("bad pointer 0xdeadBEEF") == "bad pointer <num>"

    def test_double_quoted(self):
        assert normalize_message('Unexpected token "foo" in JSON') == 'Unexpected token "<str>" in JSON'

    def test_backtick(self):
        assert normalize_message("Missing `user-42` entry") == "Missing `<str>` entry"

    def test_single_quoted_identifier_kept(self):
        message = "Cannot read property 'name' of undefined"
        assert normalize_message(message) == message

    def test_single_quoted_value_collapsed(self):
        assert (
            normalize_message("Failed to load 'https://x.test/a.png'")
            == "Failed to load '<str>'"
        )

    def test_contraction_does_not_open_literal(self):
        assert normalize_message("Can't parse 'a b' here") == "Can't parse '<str>' here"
        assert normalize_message("Can't parse 'a b' here") == normalize_message("Can't parse 'c d' here")

    def test_whitespace(self):
        assert normalize_message("  a\n\tb  ") == "a b"


class TestClassifyCause:
    def test_reference(self):
        cause, fix = classify_cause("Cannot read property 'x' of undefined")
        assert cause == "reference error"
        assert "null check" in fix

    def test_network(self):
        assert classify_cause("TypeError: Failed to fetch")[0] == "network failure"

    def test_unknown(self):
        assert classify_cause("Something odd")[0] == "unknown"


class TestErrorFingerprint:
    def test_key_includes_location(self):
        key = ErrorFingerprint.of(_make_event("Error 500", line=7)).key
        assert key == "Error <num> @ app.js:7"

    def test_same_message_different_line(self):
        a = ErrorFingerprint.of(_make_event("boom", line=1))
        b = ErrorFingerprint.of(_make_event("boom", line=2))
        assert a != b


class TestErrorEvent:
    def test_from_dict(self):
        event = ErrorEvent.from_dict({
            "message": "boom", "timestamp": 12, "source": "x.js", "line": "3",
        })
        assert event.source_file == "x.js"
        assert event.line == 3
        assert event.timestamp == 12.0


# ---------------------------------------------------------------------------
# ErrorAggregator
# ---------------------------------------------------------------------------


class TestGroupPatterns:
    def test_property_name_patterns_stay_separate(self):
        aggregator = ErrorAggregator()
        aggregator.ingest(_make_event("Cannot read property 'name' of undefined", ts=1))
        aggregator.ingest(_make_event("Cannot read property 'name' of undefined", ts=2))
        aggregator.ingest(_make_event("Cannot read property 'id' of undefined", ts=3))

        patterns = aggregator.group_patterns(min_occurrences=2)
        assert len(patterns) == 1
        pattern = patterns[0]
        assert "'name'" in pattern.fingerprint
        assert pattern.frequency == 2
        assert pattern.first_seen == 1
        assert pattern.last_seen == 2
        assert pattern.common_cause == "reference error"

    def test_literals_grouped(self):
        aggregator = ErrorAggregator()
        for i in range(5):
            aggregator.ingest(_make_event(f"Request {i} failed with 404", ts=i))
        patterns = aggregator.group_patterns()
        assert len(patterns) == 1
        assert patterns[0].frequency == 5

    def test_ordered_by_frequency(self):
        aggregator = ErrorAggregator()
        for i in range(2):
            aggregator.ingest(_make_event("rare", ts=i))
        for i in range(4):
            aggregator.ingest(_make_event("common", ts=10 + i))
        assert [p.message for p in aggregator.group_patterns()] == ["common", "rare"]


class TestRingBuffer:
    def test_evicts_oldest_by_count(self):
        aggregator = ErrorAggregator(AggregatorLimits(max_events=3, max_duration_ms=None))
        for i in range(5):
            aggregator.ingest(_make_event(f"e{'x' * i}", ts=i))
        assert len(aggregator) == 3
        messages = [event.message for _, event in aggregator.snapshot()]
        assert messages == ["exx", "exxx", "exxxx"]
        stats = aggregator.stats()
        assert stats.ingested == 5
        assert stats.evicted == 2
        assert stats.distinct_fingerprints == 3

    def test_evicts_by_age(self):
        aggregator = ErrorAggregator(AggregatorLimits(max_events=100, max_duration_ms=1000))
        aggregator.ingest(_make_event("old", ts=0))
        aggregator.ingest(_make_event("new", ts=5000))
        assert [e.message for _, e in aggregator.snapshot()] == ["new"]

    def test_clear(self):
        aggregator = ErrorAggregator()
        aggregator.ingest(_make_event("boom"))
        aggregator.clear()
        assert len(aggregator) == 0
        assert aggregator.group_patterns(min_occurrences=1) == []

    def test_concurrent_reads_during_writes(self):
        aggregator = ErrorAggregator(AggregatorLimits(max_events=50))
        stop = threading.Event()
        seen = []

        def _reader():
            while not stop.is_set():
                seen.append(len(aggregator.snapshot()))

        reader = threading.Thread(target=_reader)
        reader.start()
        for i in range(500):
            aggregator.ingest(_make_event(f"boom {i}", ts=i))
        stop.set()
        reader.join()
        assert all(n <= 50 for n in seen)
        assert len(aggregator) == 50

    def test_invalid_limits(self):
        with pytest.raises(ValueError):
            AggregatorLimits(max_events=0)


class TestComputeTrends:
    def test_increasing(self):
        aggregator = ErrorAggregator()
        # One event in the first minute, four in the second.
        aggregator.ingest(_make_event("boom", ts=0))
        for ts in (60_000, 70_000, 80_000, 90_000):
            aggregator.ingest(_make_event("boom", ts=ts))
        trends = aggregator.compute_trends(window_size_ms=60_000)
        assert len(trends) == 1
        trend = trends[0]
        assert trend.bucket_counts == (1, 4)
        assert trend.direction == "increasing"
        assert trend.percent_change == pytest.approx(300.0)
        assert trend.total == 5

    def test_decreasing_and_stable(self):
        aggregator = ErrorAggregator()
        for ts in (0, 1000, 2000, 3000):
            aggregator.ingest(_make_event("fading", ts=ts))
        aggregator.ingest(_make_event("fading", ts=15_000))
        aggregator.ingest(_make_event("steady", ts=500))
        aggregator.ingest(_make_event("steady", ts=12_000))
        trends = {t.fingerprint.split(" @")[0]: t for t in aggregator.compute_trends(window_size_ms=10_000)}
        assert trends["fading"].direction == "decreasing"
        assert trends["fading"].percent_change == pytest.approx(-75.0)
        assert trends["steady"].direction == "stable"

    def test_new_error_counts_as_increase(self):
        aggregator = ErrorAggregator()
        aggregator.ingest(_make_event("other", ts=0))
        aggregator.ingest(_make_event("fresh", ts=20_000))
        trends = {t.fingerprint.split(" @")[0]: t for t in aggregator.compute_trends(window_size_ms=10_000)}
        assert trends["fresh"].bucket_counts == (0, 0, 1)
        assert trends["fresh"].percent_change == 100.0
        assert trends["fresh"].direction == "increasing"

    def test_single_bucket_is_stable(self):
        aggregator = ErrorAggregator()
        aggregator.ingest(_make_event("boom", ts=0))
        aggregator.ingest(_make_event("boom", ts=10))
        trend = aggregator.compute_trends(window_size_ms=60_000)[0]
        assert trend.direction == "stable"
        assert trend.percent_change == 0.0

    def test_sorted_by_magnitude(self):
        aggregator = ErrorAggregator()
        aggregator.ingest(_make_event("small", ts=0))
        aggregator.ingest(_make_event("small", ts=1000))
        aggregator.ingest(_make_event("small", ts=11_000))
        aggregator.ingest(_make_event("big", ts=12_000))
        trends = aggregator.compute_trends(window_size_ms=10_000)
        assert [abs(t.percent_change) for t in trends] == sorted(
            (abs(t.percent_change) for t in trends), reverse=True,
        )
        assert trends[0].fingerprint.startswith("big")

    def test_empty(self):
        assert ErrorAggregator().compute_trends() == []

    def test_invalid_window(self):
        aggregator = ErrorAggregator()
        aggregator.ingest(_make_event("boom"))
        with pytest.raises(ValueError):
            aggregator.compute_trends(window_size_ms=0)

    def test_to_dict(self):
        aggregator = ErrorAggregator()
        aggregator.ingest(_make_event("boom", ts=0))
        data = aggregator.compute_trends()[0].to_dict()
        assert data["bucket_counts"] == [1]
