from __future__ import annotations

import asyncio

from market_persister.common.logger import PipelineLogger
from market_persister.common.metrics.persist_metrics import PersistMetrics
from market_persister.core.types import Counter, Segment

logger = PipelineLogger.get_logger("metrics_reporter", "metrics")


class MetricsSummaryReporter:
    """주기적으로 메트릭 스냅샷 요약을 로그로 남깁니다.

    interval_sec <= 0 이면 실행하지 않습니다.
    """

    def __init__(self, metrics: PersistMetrics, interval_sec: float) -> None:
        self._metrics = metrics
        self._interval = interval_sec
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    @property
    def enabled(self) -> bool:
        return self._interval > 0

    def start(self) -> None:
        if not self.enabled or self._task is not None:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="metrics-reporter")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        # 종료 직전 마지막 요약
        self.report()

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                self.report()

    def report(self) -> dict[str, object]:
        """스냅샷 요약 로그 1건 출력 후 요약 dict 반환."""
        snap = self._metrics.snapshot()
        totals: dict[str, dict[str, float]] = {}
        for (segment, data_type, outcome), stats in snap.timers.items():
            if segment != Segment.TOTAL:
                continue
            totals[f"{data_type}/{outcome}"] = {
                "count": stats.count,
                "avg_ms": stats.avg_ms,
                "p95_ms": stats.p95_ms,
                "p99_ms": stats.p99_ms,
                "max_ms": stats.max_ms,
            }

        summary: dict[str, object] = {
            "processed": snap.counter(Counter.PROCESSED),
            "acked": snap.counter(Counter.ACKED),
            "nacked": snap.counter(Counter.NACKED),
            "retries": snap.counter(Counter.RETRIES),
            "dead_lettered": snap.counter(Counter.DEAD_LETTERED),
            "lag_skipped": snap.counter(Counter.LAG_SKIPPED),
            "total_timers": totals,
            "ingest_lag_p95_ms": {k: v.p95_ms for k, v in snap.ingest_lag.items()},
        }
        logger.info("metrics summary", extra={"summary": summary})
        return summary
