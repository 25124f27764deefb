"""
탄력적 워커 풀

- 최소 워커(concurrent_consumers)는 항상 유지
- 백로그가 prefetch 이상이면 최대 워커(max_concurrent_consumers)까지 증설
- 추가 워커는 idle_timeout 동안 메시지가 없으면 퇴장 (최소 워커 수 이상일 때만)
- 종료: 수신 중단 → 큐 소진 대기 → 워커 종료
메시지 1건은 정확히 하나의 워커가 처음부터 끝까지 처리하며, 처리 중 취소하지 않습니다.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Protocol

from market_persister.common.logger import PipelineLogger

logger = PipelineLogger.get_logger("worker_pool", "app")

# 워커 큐 대기 단위 (종료/퇴장 조건 확인 주기)
WORKER_WAIT_SEC = 0.5


class MessageSource(Protocol):
    async def get(self, timeout: float | None = None) -> Any | None: ...

    @property
    def backlog(self) -> int: ...

    def set_active_workers(self, workers: int) -> None: ...


class MessageHandler(Protocol):
    async def handle(self, message: Any) -> Any: ...


@dataclass(slots=True, frozen=True)
class PoolSizing:
    min_workers: int = 2
    max_workers: int = 4
    prefetch_count: int = 50
    idle_timeout_sec: float = 60.0
    scale_interval_sec: float = 1.0


class WorkerPool:
    """메시지 소비 워커 풀 (asyncio 태스크 기반)"""

    def __init__(
        self, source: MessageSource, handler: MessageHandler, sizing: PoolSizing
    ) -> None:
        self._source = source
        self._handler = handler
        self._sizing = sizing
        self._workers: dict[int, asyncio.Task[None]] = {}
        self._next_id = 0
        self._busy = 0
        self._stopping = False
        self._supervisor: asyncio.Task[None] | None = None

    @property
    def size(self) -> int:
        return len(self._workers)

    @property
    def busy(self) -> int:
        return self._busy

    async def start(self) -> None:
        for _ in range(self._sizing.min_workers):
            self._spawn(elastic=False)
        self._supervisor = asyncio.create_task(self._supervise(), name="worker-supervisor")
        logger.info(
            "worker pool started",
            extra={"min_workers": self._sizing.min_workers, "max_workers": self._sizing.max_workers},
        )

    async def drain(self, timeout: float | None = None) -> bool:
        """남은 메시지를 모두 처리하고 워커 종료 (수신은 호출 전에 중단되어 있어야 함)

        Returns:
            timeout 내 정상 종료 여부
        """
        self._stopping = True
        if self._supervisor is not None:
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
            self._supervisor = None

        tasks = list(self._workers.values())
        if not tasks:
            return True

        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("drain timed out, workers cancelled", extra={"cancelled": len(pending)})
        logger.info("worker pool drained", extra={"finished": len(done)})
        return not pending

    def _spawn(self, elastic: bool) -> None:
        worker_id = self._next_id
        self._next_id += 1
        task = asyncio.create_task(self._run_worker(worker_id, elastic), name=f"worker-{worker_id}")
        self._workers[worker_id] = task
        self._source.set_active_workers(len(self._workers))

    def _retire(self, worker_id: int) -> None:
        self._workers.pop(worker_id, None)
        self._source.set_active_workers(max(1, len(self._workers)))

    async def _run_worker(self, worker_id: int, elastic: bool) -> None:
        idle_since = time.monotonic()
        try:
            while True:
                message = await self._source.get(timeout=WORKER_WAIT_SEC)
                if message is None:
                    if self._stopping and self._source.backlog == 0:
                        break
                    if (
                        elastic
                        and not self._stopping
                        and time.monotonic() - idle_since >= self._sizing.idle_timeout_sec
                        and len(self._workers) > self._sizing.min_workers
                    ):
                        logger.info("idle worker retired", extra={"worker_id": worker_id})
                        break
                    continue

                self._busy += 1
                try:
                    await self._handler.handle(message)
                except Exception as e:
                    logger.error(f"worker {worker_id} handler error: {e}", exc_info=True)
                finally:
                    self._busy -= 1
                    idle_since = time.monotonic()
        finally:
            self._retire(worker_id)

    async def _supervise(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self._sizing.scale_interval_sec)
            backlog = self._source.backlog
            if backlog >= self._sizing.prefetch_count and self.size < self._sizing.max_workers:
                self._spawn(elastic=True)
                logger.info(
                    "worker added",
                    extra={"backlog": backlog, "workers": self.size},
                )
