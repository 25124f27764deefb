"""수동 ack 를 위한 오프셋 추적 / prefetch 크레딧 게이트

Kafka 는 파티션별로 "여기까지 처리했다"는 단일 오프셋만 저장할 수 있으므로,
워커들이 순서와 무관하게 완료한 메시지 중 연속 구간의 끝만 store 합니다.
- track(): poll 스레드에서 수신 즉시 등록
- complete(): 워커가 ack/nack 완료 시 호출, 저장할 다음 오프셋 반환
- revoke(): 리밸런싱으로 회수된 파티션 정리 (이후 complete 는 무시)
- rewind(): 재발행 실패 시 파티션 상태를 비우고 seek 할 최저 미완료 오프셋 반환
"""

from __future__ import annotations

import heapq
import threading
from collections.abc import Iterable

PartitionKey = tuple[str, int]  # (topic, partition)


class OffsetTracker:
    """파티션별 in-flight 오프셋 추적 (스레드 안전)"""

    __slots__ = ("_lock", "_pending", "_done")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[PartitionKey, list[int]] = {}
        self._done: dict[PartitionKey, set[int]] = {}

    def track(self, topic: str, partition: int, offset: int) -> None:
        key = (topic, partition)
        with self._lock:
            heapq.heappush(self._pending.setdefault(key, []), offset)
            self._done.setdefault(key, set())

    def complete(self, topic: str, partition: int, offset: int) -> int | None:
        """처리 완료 표시

        Returns:
            store 할 다음 오프셋 (마지막 연속 완료 오프셋 + 1), 전진이 없으면 None
        """
        key = (topic, partition)
        with self._lock:
            heap = self._pending.get(key)
            if heap is None:
                return None
            done = self._done[key]
            done.add(offset)

            last: int | None = None
            while heap and heap[0] in done:
                last = heapq.heappop(heap)
                done.discard(last)
            return None if last is None else last + 1

    def revoke(self, partitions: Iterable[PartitionKey]) -> None:
        with self._lock:
            for key in partitions:
                self._pending.pop(key, None)
                self._done.pop(key, None)

    def rewind(self, topic: str, partition: int) -> int | None:
        """파티션 추적 상태 초기화

        Returns:
            가장 낮은 미완료 오프셋 (seek 대상), 추적 중인 오프셋이 없으면 None
        """
        key = (topic, partition)
        with self._lock:
            heap = self._pending.pop(key, None)
            self._done.pop(key, None)
            return heap[0] if heap else None

    def in_flight(self, topic: str | None = None, partition: int | None = None) -> int:
        with self._lock:
            if topic is not None and partition is not None:
                return len(self._pending.get((topic, partition), ()))
            return sum(len(heap) for heap in self._pending.values())


class CreditGate:
    """prefetch 크레딧 게이트

    poll 스레드는 미완료 메시지가 ``prefetch × 활성 워커 수`` 이상이면 대기합니다.
    release() 는 이벤트 루프(워커)에서 호출됩니다.
    """

    __slots__ = ("_cond", "_per_worker", "_workers", "_in_flight")

    def __init__(self, per_worker: int, workers: int = 1) -> None:
        self._cond = threading.Condition()
        self._per_worker = per_worker
        self._workers = max(1, workers)
        self._in_flight = 0

    @property
    def limit(self) -> int:
        return self._per_worker * self._workers

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def set_workers(self, workers: int) -> None:
        with self._cond:
            self._workers = max(1, workers)
            self._cond.notify_all()

    def acquire(self, timeout: float) -> bool:
        """크레딧 1개 획득 (timeout 내 여유가 없으면 False)"""
        with self._cond:
            if not self._cond.wait_for(lambda: self._in_flight < self.limit, timeout):
                return False
            self._in_flight += 1
            return True

    def release(self) -> None:
        with self._cond:
            if self._in_flight > 0:
                self._in_flight -= 1
            self._cond.notify()
