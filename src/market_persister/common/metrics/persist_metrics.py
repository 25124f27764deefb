"""소비 파이프라인 메트릭 수집기.

메시지 처리 구간별 타이머와 카운터를 수집합니다.
- 구간 타이머: parse / persist / commit / total (data_type, outcome 태그)
- 수집 지연(ingest lag): now - metadata.collectedAt
- 카운터: processed / acked / nacked / retries / dead_lettered / lag_skipped

워커 태스크와 Kafka poll 스레드가 동시에 기록하므로 모든 변경은 락 안에서 수행합니다.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from market_persister.core.types import Counter, Segment

TimerKey = tuple[str, str, str]  # (segment, data_type, outcome)
CounterKey = tuple[str, str, str]  # (counter, data_type, outcome)

# outcome 태그가 없는 카운터(retries, lag_skipped 등)
NO_OUTCOME = ""


@dataclass(slots=True, frozen=True)
class TimerStats:
    """타이머 통계 (밀리초, 불변)."""

    count: int = 0
    avg_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0
    max_ms: float = 0.0


@dataclass(slots=True, frozen=True)
class PersistMetricsSnapshot:
    """메트릭 스냅샷 (불변).

    Attributes:
        timers: (segment, data_type, outcome) → 통계
        ingest_lag: data_type → 수집 지연 통계
        counters: (counter, data_type, outcome) → 누적 카운트
    """

    timers: dict[TimerKey, TimerStats] = field(default_factory=dict)
    ingest_lag: dict[str, TimerStats] = field(default_factory=dict)
    counters: dict[CounterKey, int] = field(default_factory=dict)

    def counter(
        self, name: str, data_type: str | None = None, outcome: str | None = None
    ) -> int:
        """카운터 합계 (data_type/outcome 이 None 이면 해당 태그 전체 합산)."""
        return sum(
            value
            for (c_name, c_type, c_outcome), value in self.counters.items()
            if c_name == name
            and (data_type is None or c_type == data_type)
            and (outcome is None or c_outcome == outcome)
        )

    def timer(self, segment: str, data_type: str, outcome: str) -> TimerStats:
        return self.timers.get((segment, data_type, outcome), TimerStats())


class _Samples:
    """최대 샘플 수가 제한된 지연 샘플 버퍼"""

    __slots__ = ("values", "count", "total", "max")

    def __init__(self) -> None:
        self.values: list[float] = []
        self.count = 0
        self.total = 0.0
        self.max = 0.0

    def add(self, value_ms: float, max_samples: int) -> None:
        # 메모리 제한: 오래된 샘플 절반 제거 (FIFO)
        if len(self.values) >= max_samples:
            self.values = self.values[max_samples // 2 :]
        self.values.append(value_ms)
        self.count += 1
        self.total += value_ms
        self.max = max(self.max, value_ms)

    def stats(self) -> TimerStats:
        if not self.count:
            return TimerStats()
        return TimerStats(
            count=self.count,
            avg_ms=round(self.total / self.count, 3),
            p95_ms=round(_percentile(self.values, 95), 3),
            p99_ms=round(_percentile(self.values, 99), 3),
            max_ms=round(self.max, 3),
        )


def _percentile(data: list[float], percentile: int) -> float:
    if not data:
        return 0.0
    sorted_data = sorted(data)
    index = int(len(sorted_data) * percentile / 100.0)
    index = min(index, len(sorted_data) - 1)
    return sorted_data[index]


def parse_collected_at(value: object) -> datetime | None:
    """ISO-8601 collectedAt 파싱 (실패 시 None, 타임존 없으면 UTC 가정)."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class PersistMetrics:
    """소비 파이프라인 메트릭 수집기 (스레드 안전).

    관측 전용이며 처리 결과에 영향을 주지 않습니다.
    """

    __slots__ = ("_lock", "_max_samples", "_timers", "_lag", "_counters")

    def __init__(self, max_samples: int = 1000) -> None:
        """
        Args:
            max_samples: 타이머별 최대 보관 샘플 수 (메모리 제한)
        """
        self._lock = threading.Lock()
        self._max_samples = max_samples
        self._timers: defaultdict[TimerKey, _Samples] = defaultdict(_Samples)
        self._lag: defaultdict[str, _Samples] = defaultdict(_Samples)
        self._counters: defaultdict[CounterKey, int] = defaultdict(int)

    def record_timer(
        self, segment: Segment | str, data_type: str, outcome: str, seconds: float
    ) -> None:
        """구간 소요 시간 기록.

        Args:
            segment: parse / persist / commit / total
            data_type: 정규화된 데이터 타입 (없으면 "unknown")
            outcome: 처리 결과 태그
            seconds: 소요 시간 (초)
        """
        with self._lock:
            self._timers[(str(segment), data_type, outcome)].add(
                max(0.0, seconds) * 1000.0, self._max_samples
            )

    def record_ingest_lag(
        self, data_type: str, collected_at: object, now: datetime | None = None
    ) -> float | None:
        """수집 지연 기록 (collectedAt 부재/파싱 실패 시 건너뛰고 lag_skipped 증가).

        Returns:
            기록된 지연(밀리초) 또는 None
        """
        parsed = parse_collected_at(collected_at)
        if parsed is None:
            self.increment(Counter.LAG_SKIPPED, data_type)
            return None

        current = now or datetime.now(timezone.utc)
        lag_ms = max(0.0, (current - parsed).total_seconds() * 1000.0)
        with self._lock:
            self._lag[data_type].add(lag_ms, self._max_samples)
        return lag_ms

    def increment(
        self,
        name: Counter | str,
        data_type: str,
        outcome: str = NO_OUTCOME,
        count: int = 1,
    ) -> None:
        with self._lock:
            self._counters[(str(name), data_type, str(outcome))] += count

    def snapshot(self) -> PersistMetricsSnapshot:
        """현재 메트릭 스냅샷 반환 (불변)."""
        with self._lock:
            return PersistMetricsSnapshot(
                timers={key: samples.stats() for key, samples in self._timers.items()},
                ingest_lag={key: samples.stats() for key, samples in self._lag.items()},
                counters=dict(self._counters),
            )

    def reset(self) -> None:
        with self._lock:
            self._timers.clear()
            self._lag.clear()
            self._counters.clear()
