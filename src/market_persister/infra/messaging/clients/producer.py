"""
전송 확인형 비동기 Producer

DLQ 전송/requeue 재발행은 전송 성공이 확인된 뒤에만 원본을 ack 해야 하므로
produce() 후 delivery report 를 Future 로 기다립니다.
- 전용 poll 스레드에서 delivery report 처리 (콜백은 poll 스레드에서 호출됨)
- 결과는 call_soon_threadsafe 로 이벤트 루프의 Future 에 전달
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Sequence
from typing import Any

from confluent_kafka import KafkaError, KafkaException, Producer

from market_persister.common.logger import PipelineLogger

logger = PipelineLogger.get_logger("kafka_producer", "infra")

Headers = Sequence[tuple[str, bytes]]

# librdkafka 가 delivery.timeout.ms 에 최종 실패를 보고할 때까지 기다리는 여유
DELIVERY_WAIT_MARGIN_SEC = 5.0
DEFAULT_DELIVERY_TIMEOUT_MS = 300000


def delivery_wait_sec(config: dict[str, Any]) -> float:
    """delivery report 대기 상한 (delivery.timeout.ms 보다 항상 김)

    먼저 포기하면 늦게 성공한 DLQ 전송과 원본 재전달이 동시에 일어납니다.
    """
    timeout_ms = config.get("delivery.timeout.ms", DEFAULT_DELIVERY_TIMEOUT_MS)
    return int(timeout_ms) / 1000 + DELIVERY_WAIT_MARGIN_SEC


class AsyncDeliveryProducer:
    """전송 결과를 await 할 수 있는 Producer 래퍼"""

    def __init__(
        self,
        config: dict[str, Any],
        delivery_timeout_sec: float | None = None,
        producer: Any | None = None,
    ) -> None:
        """
        Args:
            config: confluent-kafka Producer 설정
            delivery_timeout_sec: delivery report 대기 상한 (기본은 delivery.timeout.ms + 여유)
            producer: 주입할 Producer 인스턴스 (테스트용, 기본은 config 로 생성)
        """
        self.config = config
        self.delivery_timeout_sec = (
            delivery_wait_sec(config) if delivery_timeout_sec is None else delivery_timeout_sec
        )
        self.producer = producer
        self._poll_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._started = False

    async def start(self) -> None:
        """Producer 시작 - poll 스레드 시작"""
        if self._started:
            return

        self._loop = asyncio.get_running_loop()
        if self.producer is None:
            self.producer = Producer(self.config)

        self._shutdown_event.clear()
        self._poll_thread = threading.Thread(
            target=self._poll_worker,
            name=f"{self.__class__.__name__}-poll",
            daemon=True,
        )
        self._poll_thread.start()
        self._started = True

    async def stop(self, flush_timeout_sec: float = 30.0) -> None:
        """Producer 종료 - 남은 메시지 flush 후 poll 스레드 종료"""
        if not self._started or self.producer is None:
            return

        remaining = await asyncio.to_thread(self.producer.flush, flush_timeout_sec)
        if remaining:
            logger.warning(
                f"{self.__class__.__name__} flush incomplete",
                extra={"remaining": remaining},
            )

        self._shutdown_event.set()
        if self._poll_thread and self._poll_thread.is_alive():
            self._poll_thread.join(timeout=5.0)

        self._started = False

    async def produce_and_wait(
        self,
        topic: str,
        value: bytes,
        key: bytes | str | None = None,
        headers: Headers | None = None,
    ) -> None:
        """메시지 전송 후 브로커 확인까지 대기

        Raises:
            RuntimeError: Producer 미시작
            KafkaException: 전송 실패 (delivery report 오류)
            asyncio.TimeoutError: delivery report 대기 초과
        """
        if not self._started or self.producer is None or self._loop is None:
            raise RuntimeError(f"{self.__class__.__name__} not started")

        loop = self._loop
        future: asyncio.Future[None] = loop.create_future()

        def _on_delivery(err: KafkaError | None, msg: Any) -> None:
            loop.call_soon_threadsafe(_resolve, err)

        def _resolve(err: KafkaError | None) -> None:
            if future.done():
                return
            if err is not None:
                future.set_exception(KafkaException(err))
            else:
                future.set_result(None)

        try:
            self.producer.produce(
                topic=topic,
                value=value,
                key=key,
                headers=list(headers) if headers else None,
                on_delivery=_on_delivery,
            )
        except BufferError:
            # 로컬 큐 가득 참: delivery report 처리 후 1회 재시도
            await asyncio.to_thread(self.producer.poll, 1.0)
            self.producer.produce(
                topic=topic,
                value=value,
                key=key,
                headers=list(headers) if headers else None,
                on_delivery=_on_delivery,
            )

        await asyncio.wait_for(future, timeout=self.delivery_timeout_sec)

    def _poll_worker(self) -> None:
        """전용 poll 스레드 - delivery report 처리"""
        while not self._shutdown_event.is_set():
            try:
                if self.producer:
                    self.producer.poll(0.1)
                else:
                    self._shutdown_event.wait(0.1)
            except Exception as e:
                logger.error(
                    f"{self.__class__.__name__} poll worker error: {e}", exc_info=True
                )
