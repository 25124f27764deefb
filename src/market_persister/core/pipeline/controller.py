"""메시지 전달 컨트롤러 (상태 머신)

received → decoding → routed → validating → persisting → {acked, nacked}

종료 동작:
- ack: 저장 성공 / 중복 / dataType 누락·미지원 (drop)
- DLQ 전송 후 ack: 디코딩·검증 실패, 재시도 소진, 미분류 예외
- nack: DLQ 비활성(legacy) 모드, 또는 DLQ 전송 실패 시 requeue

모든 예외는 메시지 경계에서 처리되며 워커로 전파되지 않습니다.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import ValidationError as PydanticValidationError

from market_persister.common.exceptions.errors import (
    DecodeError,
    UnclassifiedError,
    ValidationError,
)
from market_persister.common.exceptions.exception_rule import (
    Classification,
    ExceptionClassifier,
    default_classifier,
)
from market_persister.common.logger import PipelineLogger
from market_persister.common.metrics.persist_metrics import PersistMetrics
from market_persister.core.dto.internal.policy import DeliveryPolicyDomain
from market_persister.core.dto.internal.records import PersistRecord
from market_persister.core.pipeline.backoff import compute_next_backoff
from market_persister.core.pipeline.decoder import DecodedMessage, decode
from market_persister.core.pipeline.mappers import MAPPERS, Mapper
from market_persister.core.pipeline.router import TypeRouter
from market_persister.core.types import (
    UNKNOWN_DATA_TYPE,
    Counter,
    DataType,
    DeliveryState,
    Disposition,
    Outcome,
    Segment,
)

logger = PipelineLogger.get_logger("delivery_controller", "core")


class InboundMessage(Protocol):
    """브로커 수신 메시지 (ack/nack 은 메시지당 정확히 1회)"""

    @property
    def body(self) -> bytes: ...

    @property
    def origin(self) -> Mapping[str, Any]: ...

    async def ack(self) -> None: ...

    async def nack(self, requeue: bool) -> None: ...


class DeadLetterPublisher(Protocol):
    async def publish(
        self,
        message: InboundMessage,
        error: BaseException,
        reason: str,
        attempts: int,
    ) -> None: ...


class RecordSink(Protocol):
    async def save(self, record: PersistRecord) -> None: ...


@dataclass(slots=True, frozen=True)
class DeliveryReport:
    """메시지 1건 처리 결과

    Attributes:
        state: 최종 상태 (acked / nacked)
        outcome: 메트릭 결과 태그
        data_type: 정규화된 데이터 타입 태그 ("unknown" 포함)
        attempts: 저장 시도 횟수 (저장 단계 미도달 시 0)
        dead_lettered: DLQ 전송 여부
        error: 실패 원인 (성공/중복/drop 이면 None)
    """

    state: DeliveryState
    outcome: Outcome
    data_type: str
    attempts: int = 0
    dead_lettered: bool = False
    error: BaseException | None = None


class _Timeline:
    """메시지 1건의 상태 + 구간 타이머"""

    __slots__ = ("clock", "received", "mark", "state")

    def __init__(self, clock: Callable[[], float]) -> None:
        self.clock = clock
        self.state = DeliveryState.RECEIVED
        self.received = clock()
        self.mark = self.received

    def lap(self) -> float:
        now = self.clock()
        elapsed = now - self.mark
        self.mark = now
        return elapsed

    def total(self) -> float:
        return self.clock() - self.received


def failure_reason(classification: Classification, error: BaseException) -> str:
    """DLQ x-failure-reason 헤더 값 (표면 예외 우선, 없으면 분류된 원인)"""
    if not classification.classified:
        return "unclassified"
    if classification.disposition is Disposition.RETRY:
        return "retries_exhausted"
    for candidate in (error, classification.cause):
        if isinstance(candidate, DecodeError):
            return "decode_error"
        if isinstance(candidate, (ValidationError, PydanticValidationError)):
            return "validation_error"
    return "non_retryable"


def _raw_text(body: bytes | str) -> str:
    if isinstance(body, str):
        return body
    return bytes(body).decode("utf-8", errors="replace")


class DeliveryController:
    """메시지 1건을 끝까지 처리하고 ack/nack/DLQ 를 결정합니다."""

    def __init__(
        self,
        gateway: RecordSink,
        metrics: PersistMetrics,
        policy: DeliveryPolicyDomain,
        dead_letter: DeadLetterPublisher | None = None,
        classifier: ExceptionClassifier = default_classifier,
        mappers: Mapping[DataType, Mapper] = MAPPERS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._gateway = gateway
        self._metrics = metrics
        self._policy = policy
        self._dead_letter = dead_letter
        self._classifier = classifier
        self._router: TypeRouter[Mapper] = TypeRouter(mappers)
        self._sleep = sleep
        self._clock = clock

    async def handle(self, message: InboundMessage) -> DeliveryReport:
        timeline = _Timeline(self._clock)
        try:
            report = await self._process(message, timeline)
        except Exception as exc:  # 메시지 경계: 워커로 전파 금지
            logger.critical(
                "unexpected failure at message boundary",
                extra={"state": timeline.state, "origin": dict(message.origin)},
                exc_info=exc,
            )
            report = DeliveryReport(
                state=DeliveryState.NACKED,
                outcome=Outcome.ERROR,
                data_type=UNKNOWN_DATA_TYPE,
                error=exc,
            )

        self._metrics.record_timer(
            Segment.TOTAL, report.data_type, report.outcome, timeline.total()
        )
        self._metrics.increment(Counter.PROCESSED, report.data_type, report.outcome)
        return report

    async def _process(self, message: InboundMessage, timeline: _Timeline) -> DeliveryReport:
        timeline.state = DeliveryState.DECODING
        try:
            decoded: DecodedMessage = decode(message.body)
        except DecodeError as exc:
            self._metrics.record_timer(
                Segment.PARSE, UNKNOWN_DATA_TYPE, Outcome.ERROR, timeline.lap()
            )
            return await self._escalate(message, timeline, UNKNOWN_DATA_TYPE, exc, attempts=0)

        route = self._router.route(decoded.data_type)
        timeline.state = DeliveryState.ROUTED
        tag = route.tag
        if route.dropped:
            outcome = route.outcome or Outcome.UNSUPPORTED_TYPE
            self._metrics.record_timer(Segment.PARSE, tag, outcome, timeline.lap())
            logger.warning(
                f"dropping message: {outcome}",
                extra={
                    "data_type_tag": decoded.data_type,
                    "origin": dict(message.origin),
                    "raw_body": _raw_text(message.body),
                },
            )
            return await self._ack(message, timeline, tag, outcome, attempts=0)

        self._metrics.record_timer(Segment.PARSE, tag, Outcome.SUCCESS, timeline.lap())
        self._metrics.record_ingest_lag(tag, decoded.metadata.get("collectedAt"))

        timeline.state = DeliveryState.VALIDATING
        try:
            record = route.handler(decoded.text)
        except Exception as exc:
            return await self._escalate(message, timeline, tag, exc, attempts=0)
        timeline.lap()

        timeline.state = DeliveryState.PERSISTING
        max_attempts = self._policy.retry.max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._gateway.save(record)
            except Exception as exc:
                classification = self._classifier.classify(exc)
                if classification.disposition is Disposition.DUPLICATE:
                    self._metrics.record_timer(
                        Segment.PERSIST, tag, Outcome.DUPLICATE, timeline.lap()
                    )
                    dup = classification.cause
                    logger.warning(
                        "duplicate delivery ignored",
                        extra={
                            "data_type": tag,
                            "table": getattr(dup, "table", None),
                            "natural_key": getattr(dup, "natural_key", None),
                        },
                    )
                    return await self._ack(message, timeline, tag, Outcome.DUPLICATE, attempt)

                if classification.retryable and attempt < max_attempts:
                    delay = compute_next_backoff(self._policy.retry, attempt - 1)
                    self._metrics.increment(Counter.RETRIES, tag)
                    logger.warning(
                        f"transient storage failure, retrying ({attempt}/{max_attempts})",
                        extra={"data_type": tag, "delay_sec": round(delay, 3), "error": str(exc)},
                    )
                    await self._sleep(delay)
                    continue

                self._metrics.record_timer(Segment.PERSIST, tag, Outcome.ERROR, timeline.lap())
                return await self._escalate(
                    message, timeline, tag, exc, attempts=attempt, classification=classification
                )

            self._metrics.record_timer(Segment.PERSIST, tag, Outcome.SUCCESS, timeline.lap())
            return await self._ack(message, timeline, tag, Outcome.SUCCESS, attempt)

    async def _ack(
        self,
        message: InboundMessage,
        timeline: _Timeline,
        tag: str,
        outcome: Outcome,
        attempts: int,
    ) -> DeliveryReport:
        await message.ack()
        self._metrics.record_timer(Segment.COMMIT, tag, outcome, timeline.lap())
        self._metrics.increment(Counter.ACKED, tag, outcome)
        return DeliveryReport(
            state=DeliveryState.ACKED, outcome=outcome, data_type=tag, attempts=attempts
        )

    async def _escalate(
        self,
        message: InboundMessage,
        timeline: _Timeline,
        tag: str,
        exc: BaseException,
        attempts: int,
        classification: Classification | None = None,
    ) -> DeliveryReport:
        """실패 메시지 처리: DLQ 전송 후 ack, 또는 nack"""
        classification = classification or self._classifier.classify(exc)
        reason = failure_reason(classification, exc)
        error: BaseException = exc
        if not classification.classified:
            error = UnclassifiedError(f"{type(exc).__name__}: {exc}")
            error.__cause__ = exc

        if not self._policy.dead_letter_enabled or self._dead_letter is None:
            requeue = self._policy.nack_requeue
            logger.error(
                f"message rejected ({reason}), nack requeue={requeue}",
                extra={"data_type": tag, "origin": dict(message.origin)},
                exc_info=exc,
            )
            return await self._nack(message, timeline, tag, requeue, attempts, error)

        try:
            await self._dead_letter.publish(message, error, reason, attempts)
        except Exception as dlq_exc:
            logger.error(
                "dead-letter publish failed, requeueing original",
                extra={"data_type": tag, "origin": dict(message.origin)},
                exc_info=dlq_exc,
            )
            return await self._nack(message, timeline, tag, True, attempts, error)

        logger.error(
            f"message dead-lettered ({reason})",
            extra={"data_type": tag, "attempts": attempts, "origin": dict(message.origin)},
            exc_info=exc,
        )
        await message.ack()
        self._metrics.record_timer(Segment.COMMIT, tag, Outcome.ERROR, timeline.lap())
        self._metrics.increment(Counter.DEAD_LETTERED, tag)
        self._metrics.increment(Counter.NACKED, tag, Outcome.ERROR)
        return DeliveryReport(
            state=DeliveryState.ACKED,
            outcome=Outcome.ERROR,
            data_type=tag,
            attempts=attempts,
            dead_lettered=True,
            error=error,
        )

    async def _nack(
        self,
        message: InboundMessage,
        timeline: _Timeline,
        tag: str,
        requeue: bool,
        attempts: int,
        error: BaseException,
    ) -> DeliveryReport:
        try:
            await message.nack(requeue)
        except Exception as nack_exc:
            # 소비자가 파티션을 되감아 재전달
            logger.critical(
                "nack failed, partition rewound for redelivery",
                extra={"data_type": tag, "origin": dict(message.origin)},
                exc_info=nack_exc,
            )
        self._metrics.record_timer(Segment.COMMIT, tag, Outcome.ERROR, timeline.lap())
        self._metrics.increment(Counter.NACKED, tag, Outcome.ERROR)
        return DeliveryReport(
            state=DeliveryState.NACKED,
            outcome=Outcome.ERROR,
            data_type=tag,
            attempts=attempts,
            error=error,
        )
