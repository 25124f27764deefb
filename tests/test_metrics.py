from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from market_persister.common.metrics.persist_metrics import PersistMetrics, parse_collected_at
from market_persister.common.metrics.reporter import MetricsSummaryReporter
from market_persister.core.types import Counter, Outcome, Segment


def test_timer_stats_in_milliseconds() -> None:
    metrics = PersistMetrics()
    for seconds in (0.001, 0.002, 0.003, 0.004):
        metrics.record_timer(Segment.PERSIST, "trade", Outcome.SUCCESS, seconds)

    stats = metrics.snapshot().timer("persist", "trade", "success")

    assert stats.count == 4
    assert stats.avg_ms == pytest.approx(2.5)
    assert stats.max_ms == pytest.approx(4.0)
    assert stats.p99_ms == pytest.approx(4.0)


def test_timers_are_tagged_by_type_and_outcome() -> None:
    metrics = PersistMetrics()
    metrics.record_timer(Segment.TOTAL, "ticker", Outcome.SUCCESS, 0.01)
    metrics.record_timer(Segment.TOTAL, "ticker", Outcome.ERROR, 0.02)

    snap = metrics.snapshot()

    assert snap.timer("total", "ticker", "success").count == 1
    assert snap.timer("total", "ticker", "error").count == 1
    assert snap.timer("total", "trade", "success").count == 0


def test_counter_sums_across_tags() -> None:
    metrics = PersistMetrics()
    metrics.increment(Counter.ACKED, "ticker", Outcome.SUCCESS)
    metrics.increment(Counter.ACKED, "ticker", Outcome.DUPLICATE)
    metrics.increment(Counter.ACKED, "trade", Outcome.SUCCESS, count=3)

    snap = metrics.snapshot()

    assert snap.counter(Counter.ACKED) == 5
    assert snap.counter(Counter.ACKED, "ticker") == 2
    assert snap.counter(Counter.ACKED, outcome=Outcome.SUCCESS) == 4


def test_ingest_lag_measured_from_collected_at() -> None:
    metrics = PersistMetrics()
    now = datetime(2025, 8, 28, 16, 49, 1, 123000, tzinfo=timezone.utc)

    lag = metrics.record_ingest_lag("ticker", "2025-08-28T16:49:00.123Z", now=now)

    assert lag == pytest.approx(1000.0)
    assert metrics.snapshot().ingest_lag["ticker"].count == 1


@pytest.mark.parametrize("value", [None, "", "yesterday", 12345])
def test_unparseable_collected_at_is_skipped_and_counted(value: object) -> None:
    metrics = PersistMetrics()

    assert metrics.record_ingest_lag("trade", value) is None

    snap = metrics.snapshot()
    assert "trade" not in snap.ingest_lag
    assert snap.counter(Counter.LAG_SKIPPED, "trade") == 1


def test_future_collected_at_clamps_to_zero() -> None:
    metrics = PersistMetrics()
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    future = (now + timedelta(seconds=5)).isoformat()

    assert metrics.record_ingest_lag("ticker", future, now=now) == 0.0


def test_naive_collected_at_is_treated_as_utc() -> None:
    parsed = parse_collected_at("2025-08-28T16:49:00")
    assert parsed is not None and parsed.tzinfo is timezone.utc


def test_sample_buffer_is_bounded() -> None:
    metrics = PersistMetrics(max_samples=10)
    for i in range(25):
        metrics.record_timer(Segment.PARSE, "ticker", Outcome.SUCCESS, i / 1000)

    stats = metrics.snapshot().timer("parse", "ticker", "success")

    # count/max 는 전체 누적, 백분위는 최근 샘플 기준
    assert stats.count == 25
    assert stats.max_ms == pytest.approx(24.0)


def test_concurrent_increments_are_not_lost() -> None:
    metrics = PersistMetrics()

    def _work() -> None:
        for _ in range(1000):
            metrics.increment(Counter.PROCESSED, "ticker", Outcome.SUCCESS)

    threads = [threading.Thread(target=_work) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert metrics.snapshot().counter(Counter.PROCESSED) == 4000


def test_reset_clears_everything() -> None:
    metrics = PersistMetrics()
    metrics.increment(Counter.RETRIES, "trade")
    metrics.record_timer(Segment.TOTAL, "trade", Outcome.SUCCESS, 0.1)

    metrics.reset()

    snap = metrics.snapshot()
    assert not snap.counters and not snap.timers


def test_reporter_summary_contains_counters_and_totals() -> None:
    metrics = PersistMetrics()
    metrics.increment(Counter.PROCESSED, "ticker", Outcome.SUCCESS, count=2)
    metrics.increment(Counter.DEAD_LETTERED, "trade")
    metrics.record_timer(Segment.TOTAL, "ticker", Outcome.SUCCESS, 0.005)
    metrics.record_timer(Segment.PERSIST, "ticker", Outcome.SUCCESS, 0.003)

    summary = MetricsSummaryReporter(metrics, interval_sec=60).report()

    assert summary["processed"] == 2
    assert summary["dead_lettered"] == 1
    assert list(summary["total_timers"]) == ["ticker/success"]


@pytest.mark.asyncio
async def test_reporter_start_stop_emits_final_report(monkeypatch: pytest.MonkeyPatch) -> None:
    reporter = MetricsSummaryReporter(PersistMetrics(), interval_sec=60)
    calls: list[int] = []
    monkeypatch.setattr(reporter, "report", lambda: calls.append(1) or {})

    reporter.start()
    await reporter.stop()

    assert calls == [1]


@pytest.mark.asyncio
async def test_disabled_reporter_never_starts() -> None:
    reporter = MetricsSummaryReporter(PersistMetrics(), interval_sec=0)

    reporter.start()
    await reporter.stop()

    assert not reporter.enabled
