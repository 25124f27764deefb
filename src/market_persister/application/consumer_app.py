"""
시장 데이터 저장 컨슈머 애플리케이션

구성요소(DI 주입):
- MarketDataConsumer: Kafka 수신 + ack/nack
- WorkerPool: DeliveryController.handle 을 실행하는 탄력적 워커
- DeadLetterProducer: DLQ 전송 (종료 시 flush)
- MetricsSummaryReporter: 주기적 메트릭 요약 로그

종료 순서: 수신 중단 → 진행 중 메시지 소진 → 리포터 정지 → DLQ flush → Consumer close
"""

from __future__ import annotations

import asyncio

from market_persister.application.worker_pool import WorkerPool
from market_persister.common.logger import PipelineLogger
from market_persister.common.metrics.reporter import MetricsSummaryReporter
from market_persister.infra.messaging.clients.consumer import MarketDataConsumer
from market_persister.infra.messaging.producers.dead_letter import DeadLetterProducer

logger = PipelineLogger.get_logger("persister_app", "app")


class PersisterApplication:
    """컨슈머 애플리케이션 (시작/정상 종료 관리)"""

    def __init__(
        self,
        consumer: MarketDataConsumer,
        pool: WorkerPool,
        reporter: MetricsSummaryReporter,
        dead_letter: DeadLetterProducer | None = None,
        shutdown_timeout_sec: float = 30.0,
    ) -> None:
        self.consumer = consumer
        self.pool = pool
        self.reporter = reporter
        self.dead_letter = dead_letter
        self.shutdown_timeout_sec = shutdown_timeout_sec
        self._stop_event = asyncio.Event()
        self._stopped = False

    async def start(self) -> None:
        await self.pool.start()
        await self.consumer.start()
        self.reporter.start()
        logger.info("persister application started")

    def request_stop(self) -> None:
        """시그널 핸들러에서 호출 (멱등)"""
        self._stop_event.set()

    async def run_until_stopped(self) -> None:
        await self._stop_event.wait()

    async def shutdown(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        logger.info("shutdown requested, stopping intake")

        await self.consumer.stop_intake()
        drained = await self.pool.drain(timeout=self.shutdown_timeout_sec)
        if not drained:
            logger.warning("in-flight messages left unsettled; they will be redelivered")

        await self.reporter.stop()
        if self.dead_letter is not None:
            await self.dead_letter.stop()
        await self.consumer.close()
        logger.info("persister application stopped")
