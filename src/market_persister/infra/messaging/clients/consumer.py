"""
시장 데이터 Kafka Consumer

- 전용 poll 스레드로 메시지 수신, 이벤트 루프의 asyncio.Queue 로 전달
- prefetch 크레딧 게이트로 미완료 메시지 수 제한 (백프레셔)
- 메시지마다 KafkaDelivery(ack/nack) 를 발급, 완료된 연속 오프셋만 store_offsets
- 파티션 회수 시 해당 파티션의 오프셋 추적 정리
- 재발행(requeue) 실패 시 파티션을 최저 미완료 오프셋으로 seek 하여 프로세스 내 재전달
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from confluent_kafka import Consumer, KafkaException, TopicPartition

from market_persister.common.logger import PipelineLogger
from market_persister.infra.messaging.clients.offsets import CreditGate, OffsetTracker

logger = PipelineLogger.get_logger("market_data_consumer", "infra")

POLL_TIMEOUT_SEC = 0.1


class Requeuer(Protocol):
    async def republish(self, message: KafkaDelivery) -> None: ...


class KafkaDelivery:
    """수신 메시지 1건 (ack/nack 은 1회만 유효)"""

    __slots__ = ("_consumer", "_body", "_key", "_headers", "topic", "partition", "offset", "_settled")

    def __init__(
        self,
        consumer: MarketDataConsumer,
        topic: str,
        partition: int,
        offset: int,
        body: bytes,
        key: bytes | None = None,
        headers: Sequence[tuple[str, bytes]] | None = None,
    ) -> None:
        self._consumer = consumer
        self.topic = topic
        self.partition = partition
        self.offset = offset
        self._body = body
        self._key = key
        self._headers = list(headers or ())
        self._settled = False

    @property
    def body(self) -> bytes:
        return self._body

    @property
    def key(self) -> bytes | None:
        return self._key

    @property
    def headers(self) -> list[tuple[str, bytes]]:
        return self._headers

    @property
    def origin(self) -> Mapping[str, Any]:
        return {"topic": self.topic, "partition": self.partition, "offset": self.offset}

    @property
    def settled(self) -> bool:
        return self._settled

    async def ack(self) -> None:
        if self._settled:
            return
        self._settled = True
        self._consumer.settle(self)

    async def nack(self, requeue: bool) -> None:
        """requeue=True 면 원래 토픽에 재발행 후 완료, False 면 폐기(완료)

        재발행 실패 시 파티션을 되감아(seek) 같은 오프셋부터 다시 수신합니다.
        """
        if self._settled:
            return
        if requeue:
            try:
                await self._consumer.requeue(self)
            except Exception:
                self._settled = True
                self._consumer.rewind(self)
                raise
        self._settled = True
        self._consumer.settle(self)


class MarketDataConsumer:
    """prefetch 기반 수동 ack Kafka Consumer"""

    def __init__(
        self,
        config: dict[str, Any],
        topics: list[str],
        prefetch_count: int,
        requeuer: Requeuer | None = None,
        consumer: Any | None = None,
    ) -> None:
        """
        Args:
            config: confluent-kafka Consumer 설정
            topics: 구독 토픽 (``^`` 로 시작하면 정규식)
            prefetch_count: 워커당 미완료 메시지 한도
            requeuer: nack(requeue=True) 재발행기
            consumer: 주입할 Consumer 인스턴스 (테스트용)
        """
        self.config = config
        self.topics = topics
        self.requeuer = requeuer
        self.consumer = consumer
        self.tracker = OffsetTracker()
        self.gate = CreditGate(per_worker=prefetch_count)
        self.queue: asyncio.Queue[KafkaDelivery | None] = asyncio.Queue()

        self._poll_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._started = False

    # ------------------------------------------------------------------
    # 수명주기
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Consumer 시작 - 구독 후 전용 poll 스레드 시작"""
        if self._started:
            return

        self._loop = asyncio.get_running_loop()
        if self.consumer is None:
            self.consumer = Consumer(self.config)
        self.consumer.subscribe(self.topics, on_assign=self._on_assign, on_revoke=self._on_revoke)

        self._shutdown_event.clear()
        self._poll_thread = threading.Thread(
            target=self._poll_worker,
            daemon=True,
            name=f"{self.__class__.__name__}-poll",
        )
        self._poll_thread.start()
        self._started = True
        logger.info("Kafka 소비 시작", extra={"topics": self.topics})

    async def stop_intake(self) -> None:
        """신규 수신 중단 (poll 스레드 종료, 이미 큐에 들어온 메시지는 유지)"""
        self._shutdown_event.set()
        if self._poll_thread and self._poll_thread.is_alive():
            await asyncio.to_thread(self._poll_thread.join, 5.0)

    async def close(self) -> None:
        """Consumer 종료 (저장된 오프셋은 close 시 커밋됨)"""
        if not self._started:
            return
        await self.stop_intake()
        if self.consumer is not None:
            await asyncio.to_thread(self.consumer.close)
        self._started = False
        logger.info("Kafka 소비 종료")

    # ------------------------------------------------------------------
    # 워커 인터페이스
    # ------------------------------------------------------------------

    async def get(self, timeout: float | None = None) -> KafkaDelivery | None:
        """다음 메시지 (timeout 초과 시 None)"""
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    @property
    def backlog(self) -> int:
        return self.queue.qsize()

    def set_active_workers(self, workers: int) -> None:
        self.gate.set_workers(workers)

    def settle(self, delivery: KafkaDelivery) -> None:
        """처리 완료: 연속 오프셋 store + 크레딧 반환"""
        try:
            next_offset = self.tracker.complete(delivery.topic, delivery.partition, delivery.offset)
            if next_offset is not None and self.consumer is not None:
                self.consumer.store_offsets(
                    offsets=[TopicPartition(delivery.topic, delivery.partition, next_offset)]
                )
        except KafkaException as e:
            # 리밸런싱으로 파티션이 회수된 경우 (재할당 시 재전달)
            logger.warning(f"store_offsets 실패: {e}", extra={"origin": dict(delivery.origin)})
        finally:
            self.gate.release()

    def rewind(self, delivery: KafkaDelivery) -> None:
        """재발행 실패: 파티션을 최저 미완료 오프셋으로 seek + 크레딧 반환

        이미 큐에 들어온 같은 파티션의 후속 메시지는 그대로 처리되고 (중복은 멱등 저장),
        seek 이후 재수신분부터 새로 추적합니다.
        """
        origin = dict(delivery.origin)
        try:
            offset = self.tracker.rewind(delivery.topic, delivery.partition)
            if offset is not None and self.consumer is not None:
                self.consumer.seek(TopicPartition(delivery.topic, delivery.partition, offset))
                logger.warning(
                    "requeue 실패, 파티션 되감기", extra={"origin": origin, "seek_offset": offset}
                )
        except KafkaException as e:
            # 파티션이 회수된 경우 새 소유자가 커밋 지점부터 재처리
            logger.error(f"seek 실패: {e}", extra={"origin": origin})
        finally:
            self.gate.release()

    async def requeue(self, delivery: KafkaDelivery) -> None:
        if self.requeuer is None:
            raise RuntimeError("requeue requested but no requeuer configured")
        await self.requeuer.republish(delivery)

    # ------------------------------------------------------------------
    # poll 스레드
    # ------------------------------------------------------------------

    def _poll_worker(self) -> None:
        """전용 poll 스레드 - 크레딧 확보 후 poll, 이벤트 루프 큐에 전달"""
        while not self._shutdown_event.is_set():
            if not self.gate.acquire(timeout=POLL_TIMEOUT_SEC):
                continue
            delivered = False
            try:
                raw_msg = self.consumer.poll(timeout=POLL_TIMEOUT_SEC)
                if raw_msg is None:
                    continue
                if raw_msg.error():
                    logger.error(f"{self.__class__.__name__} Kafka error: {raw_msg.error()}")
                    continue

                delivery = KafkaDelivery(
                    consumer=self,
                    topic=raw_msg.topic(),
                    partition=raw_msg.partition(),
                    offset=raw_msg.offset(),
                    body=raw_msg.value() or b"",
                    key=raw_msg.key(),
                    headers=raw_msg.headers(),
                )
                self.tracker.track(delivery.topic, delivery.partition, delivery.offset)
                if self._loop and not self._loop.is_closed():
                    self._loop.call_soon_threadsafe(self.queue.put_nowait, delivery)
                    delivered = True
            except Exception as e:
                logger.error(f"{self.__class__.__name__} poll worker error: {e}", exc_info=True)
            finally:
                if not delivered:
                    self.gate.release()

    def _on_assign(self, consumer: Any, partitions: list[TopicPartition]) -> None:
        logger.info(
            "partitions assigned",
            extra={"partitions": [(p.topic, p.partition) for p in partitions]},
        )

    def _on_revoke(self, consumer: Any, partitions: list[TopicPartition]) -> None:
        self.tracker.revoke((p.topic, p.partition) for p in partitions)
        logger.info(
            "partitions revoked",
            extra={"partitions": [(p.topic, p.partition) for p in partitions]},
        )
