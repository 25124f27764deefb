"""워커 풀 + 전달 컨트롤러 + SQLite 저장 통합 시나리오

Kafka 대신 인메모리 소스를 사용합니다.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import pytest
from sqlalchemy import func, select

from market_persister.application import worker_pool
from market_persister.application.consumer_app import PersisterApplication
from market_persister.application.worker_pool import PoolSizing, WorkerPool
from market_persister.common.metrics.persist_metrics import PersistMetrics
from market_persister.common.metrics.reporter import MetricsSummaryReporter
from market_persister.core.pipeline.controller import DeliveryController
from market_persister.core.types import Counter, Outcome
from market_persister.infra.storage.gateway import PersistenceGateway
from market_persister.infra.storage.models import OrderBookUnitRow, TickerRow, TradeRow
from tests.factory_builders import (
    build_delivery_policy,
    build_envelope,
    build_trade_payload,
    encode_body,
)


class _FakeMessage:
    def __init__(self, body: bytes, offset: int) -> None:
        self._body = body
        self.offset = offset
        self.settled_as: str | None = None

    @property
    def body(self) -> bytes:
        return self._body

    @property
    def origin(self) -> Mapping[str, Any]:
        return {"topic": "market-data.upbit.trade.krw-btc", "partition": 0, "offset": self.offset}

    async def ack(self) -> None:
        assert self.settled_as is None
        self.settled_as = "ack"

    async def nack(self, requeue: bool) -> None:
        assert self.settled_as is None
        self.settled_as = f"nack:{requeue}"


class _FakeSource:
    """MarketDataConsumer 의 워커 인터페이스를 흉내내는 인메모리 큐"""

    def __init__(self, messages: list[_FakeMessage]) -> None:
        self.queue: asyncio.Queue[_FakeMessage] = asyncio.Queue()
        for message in messages:
            self.queue.put_nowait(message)
        self.active_workers: list[int] = []
        self.intake_stopped = False
        self.closed = False

    async def get(self, timeout: float | None = None) -> _FakeMessage | None:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    @property
    def backlog(self) -> int:
        return self.queue.qsize()

    def set_active_workers(self, workers: int) -> None:
        self.active_workers.append(workers)

    async def start(self) -> None:
        return None

    async def stop_intake(self) -> None:
        self.intake_stopped = True

    async def close(self) -> None:
        self.closed = True


class _FakeDeadLetter:
    def __init__(self) -> None:
        self.published: list[tuple[int, str]] = []
        self.stopped = False

    async def publish(self, message: Any, error: BaseException, reason: str, attempts: int) -> None:
        self.published.append((message.offset, reason))

    async def stop(self) -> None:
        self.stopped = True


async def _no_sleep(delay: float) -> None:
    return None


def _messages() -> list[_FakeMessage]:
    bodies = [
        encode_body(build_envelope("TICKER")),
        encode_body(build_envelope("TRADE"), double=True),
        encode_body(build_envelope("ORDERBOOK")),
        # 같은 체결 재전달 → 중복
        encode_body(build_envelope("TRADE")),
        # 검증 실패 → DLQ
        encode_body(build_envelope("TRADE", payload=build_trade_payload(sequentialId=None))),
        # 디코딩 실패 → DLQ
        b"<<not json>>",
        # 미지원 타입 → drop
        encode_body(build_envelope("CANDLE", payload={"marketCode": "KRW-BTC"})),
        encode_body(build_envelope("TRADE", payload=build_trade_payload(sequentialId=1001))),
    ]
    return [_FakeMessage(body, offset) for offset, body in enumerate(bodies)]


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_pool_processes_mixed_stream_end_to_end(session_factory) -> None:
    messages = _messages()
    source = _FakeSource(messages)
    dead_letter = _FakeDeadLetter()
    metrics = PersistMetrics()
    controller = DeliveryController(
        gateway=PersistenceGateway(session_factory),
        metrics=metrics,
        policy=build_delivery_policy(),
        dead_letter=dead_letter,
        sleep=_no_sleep,
    )
    # 인메모리 SQLite 는 단일 커넥션 공유이므로 워커 1개로 직렬 처리
    pool = WorkerPool(source, controller, PoolSizing(min_workers=1, max_workers=1))

    await pool.start()
    assert pool.size == 1
    assert await pool.drain(timeout=10.0)

    # 모든 메시지가 정확히 1회 종료
    assert all(m.settled_as == "ack" for m in messages)
    assert sorted(dead_letter.published) == [(4, "validation_error"), (5, "decode_error")]

    assert await _count(session_factory, TickerRow) == 1
    assert await _count(session_factory, TradeRow) == 2
    assert await _count(session_factory, OrderBookUnitRow) == 2

    snap = metrics.snapshot()
    assert snap.counter(Counter.PROCESSED) == len(messages)
    assert snap.counter(Counter.ACKED, "trade", Outcome.DUPLICATE) == 1
    assert snap.counter(Counter.ACKED, "unknown", Outcome.UNSUPPORTED_TYPE) == 1
    assert snap.counter(Counter.DEAD_LETTERED) == 2
    assert pool.size == 0


@pytest.mark.asyncio
async def test_application_shutdown_order(session_factory) -> None:
    source = _FakeSource([_FakeMessage(encode_body(build_envelope("TICKER")), 0)])
    dead_letter = _FakeDeadLetter()
    metrics = PersistMetrics()
    controller = DeliveryController(
        gateway=PersistenceGateway(session_factory),
        metrics=metrics,
        policy=build_delivery_policy(),
        dead_letter=dead_letter,
        sleep=_no_sleep,
    )
    pool = WorkerPool(source, controller, PoolSizing(min_workers=1, max_workers=1))
    app = PersisterApplication(
        consumer=source,
        pool=pool,
        reporter=MetricsSummaryReporter(metrics, interval_sec=0),
        dead_letter=dead_letter,
        shutdown_timeout_sec=10.0,
    )

    await app.start()
    app.request_stop()
    await app.run_until_stopped()
    await app.shutdown()
    await app.shutdown()

    assert source.intake_stopped and source.closed
    assert dead_letter.stopped
    assert metrics.snapshot().counter(Counter.ACKED) == 1
    assert await _count(session_factory, TickerRow) == 1


class _SlowHandler:
    def __init__(self) -> None:
        self.handled = 0

    async def handle(self, message: Any) -> None:
        await asyncio.sleep(0.01)
        self.handled += 1


@pytest.mark.asyncio
async def test_pool_scales_up_on_backlog() -> None:
    source = _FakeSource([_FakeMessage(b"{}", i) for i in range(30)])
    handler = _SlowHandler()
    pool = WorkerPool(
        source,
        handler,
        PoolSizing(min_workers=1, max_workers=3, prefetch_count=5, scale_interval_sec=0.01),
    )

    await pool.start()
    await asyncio.sleep(0.05)
    peak = pool.size
    assert await pool.drain(timeout=10.0)

    assert peak > 1
    assert max(source.active_workers) <= 3
    assert handler.handled == 30


@pytest.mark.asyncio
@pytest.mark.parametrize(("min_workers", "max_workers"), [(1, 3), (2, 3)])
async def test_idle_elastic_workers_retire_down_to_minimum(
    monkeypatch: pytest.MonkeyPatch, min_workers: int, max_workers: int
) -> None:
    monkeypatch.setattr(worker_pool, "WORKER_WAIT_SEC", 0.01)
    source = _FakeSource([_FakeMessage(b"{}", i) for i in range(40)])
    handler = _SlowHandler()
    pool = WorkerPool(
        source,
        handler,
        PoolSizing(
            min_workers=min_workers,
            max_workers=max_workers,
            prefetch_count=5,
            idle_timeout_sec=0.05,
            scale_interval_sec=0.01,
        ),
    )

    await pool.start()
    peak = 0
    for _ in range(200):
        peak = max(peak, pool.size)
        if handler.handled == 40 and pool.size == min_workers:
            break
        await asyncio.sleep(0.01)

    assert peak == max_workers
    assert handler.handled == 40
    assert pool.size == min_workers
    # 퇴장 시 크레딧 게이트 워커 수도 함께 감소
    assert source.active_workers[-1] == min_workers

    # 최소 워커는 idle 이어도 유지
    await asyncio.sleep(0.2)
    assert pool.size == min_workers

    assert await pool.drain(timeout=5.0)
    assert pool.size == 0

