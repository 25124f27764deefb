"""Dead Letter / Requeue Producer.

- DLQ 토픽: dead_letter_settings.exchange (기본: market-data.dlx)
- DLQ 키: dead_letter_settings.routing_key (기본: market-data.persist.dlq)
- 본문은 원본 그대로, 실패 정보는 헤더에 담습니다.
- requeue: 원본 레코드를 같은 토픽에 그대로 재발행 (legacy nack 모드)
"""

from __future__ import annotations

import traceback
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from market_persister.common.logger import PipelineLogger
from market_persister.config.settings import DeadLetterSettings
from market_persister.infra.messaging.clients.producer import AsyncDeliveryProducer

logger = PipelineLogger.get_logger("dead_letter_producer", "infra")

# 스택트레이스 헤더 상한 (브로커 message.max.bytes 보호)
MAX_STACKTRACE_BYTES = 8192


class DeliverySource(Protocol):
    """DLQ/requeue 대상 원본 메시지"""

    @property
    def body(self) -> bytes: ...

    @property
    def key(self) -> bytes | None: ...

    @property
    def headers(self) -> Sequence[tuple[str, bytes]]: ...

    @property
    def origin(self) -> Mapping[str, Any]: ...


def _encode(value: object) -> bytes:
    return str(value).encode("utf-8", errors="replace")


def build_dead_letter_headers(
    origin: Mapping[str, Any],
    error: BaseException,
    reason: str,
    attempts: int,
) -> list[tuple[str, bytes]]:
    """DLQ 레코드 헤더 구성"""
    stacktrace = "".join(
        traceback.format_exception(type(error), error, error.__traceback__)
    ).encode("utf-8", errors="replace")[:MAX_STACKTRACE_BYTES]

    return [
        ("x-exception-type", _encode(f"{type(error).__module__}.{type(error).__qualname__}")),
        ("x-exception-message", _encode(error)),
        ("x-exception-stacktrace", stacktrace),
        ("x-original-topic", _encode(origin.get("topic", ""))),
        ("x-original-partition", _encode(origin.get("partition", ""))),
        ("x-original-offset", _encode(origin.get("offset", ""))),
        ("x-failure-reason", _encode(reason)),
        ("x-attempts", _encode(attempts)),
    ]


class DeadLetterProducer:
    """DLQ 전송 + requeue 재발행 (전송 확인 후 반환)"""

    def __init__(self, producer: AsyncDeliveryProducer, settings: DeadLetterSettings) -> None:
        self.producer = producer
        self.topic = settings.exchange
        self.key = settings.routing_key

    async def start(self) -> None:
        await self.producer.start()

    async def stop(self) -> None:
        await self.producer.stop()

    async def publish(
        self,
        message: DeliverySource,
        error: BaseException,
        reason: str,
        attempts: int,
    ) -> None:
        """실패 메시지를 DLQ 로 전송합니다 (실패 시 예외 전파)."""
        headers = build_dead_letter_headers(message.origin, error, reason, attempts)
        await self.producer.produce_and_wait(
            topic=self.topic,
            value=message.body,
            key=self.key,
            headers=headers,
        )
        logger.info(
            "dead-letter published",
            extra={"dlq_topic": self.topic, "reason": reason, "origin": dict(message.origin)},
        )

    async def republish(self, message: DeliverySource) -> None:
        """원본 레코드를 원래 토픽으로 재발행 (nack requeue)"""
        topic = message.origin["topic"]
        await self.producer.produce_and_wait(
            topic=topic,
            value=message.body,
            key=message.key,
            headers=message.headers,
        )
        logger.debug("message requeued", extra={"origin": dict(message.origin)})
