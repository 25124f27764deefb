"""봉투 → 저장 레코드 검증/매핑

매퍼는 순수 함수입니다 (I/O 없음, 부수효과 없음).
pydantic 검증 오류는 첫 번째 위반 필드의 점 경로(예: ``payload.tradePrice``)를 담은
ValidationError 로 변환됩니다. null 값은 누락과 동일하게 취급합니다.

입력은 디코더가 풀어낸 JSON 텍스트입니다. pydantic-core 가 숫자 리터럴을 곧바로
Decimal 로 파싱하므로 가격 자릿수가 보존됩니다. 이미 파싱된 dict 도 받지만
그 경우 숫자 정밀도는 호출자 책임입니다.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from market_persister.common.exceptions.errors import ValidationError
from market_persister.core.dto.internal.records import (
    OrderBookRecord,
    OrderBookUnitRecord,
    PersistRecord,
    TickerRecord,
    TradeRecord,
)
from market_persister.core.dto.io.market_data import (
    OrderBookEnvelope,
    TickerEnvelope,
    TradeEnvelope,
)
from market_persister.core.types import DataType

ModelT = TypeVar("ModelT", bound=BaseModel)

Document = str | bytes | dict[str, Any]

Mapper = Callable[[Document], PersistRecord]

MISSING_REASON = "required field is missing"


def _field_path(loc: tuple[int | str, ...]) -> str:
    """pydantic loc 튜플 → 점 경로 (리스트 인덱스는 [i])"""
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path = f"{path}.{part}" if path else str(part)
    return path


def _to_validation_error(exc: PydanticValidationError) -> ValidationError:
    first = exc.errors(include_url=False)[0]
    field = _field_path(first["loc"]) or "<root>"
    if first["type"] == "missing" or ("input" in first and first["input"] is None):
        reason = MISSING_REASON
    else:
        reason = first["msg"]
    return ValidationError(field, reason)


def _validate(model: type[ModelT], document: Document) -> ModelT:
    try:
        if isinstance(document, dict):
            return model.model_validate(document)
        return model.model_validate_json(document)
    except PydanticValidationError as exc:
        raise _to_validation_error(exc) from exc


def map_ticker(document: Document) -> TickerRecord:
    envelope = _validate(TickerEnvelope, document)
    p = envelope.payload
    return TickerRecord(
        exchange=envelope.metadata.exchange,
        market_code=p.market_code,
        trade_price=p.trade_price,
        trade_volume=p.trade_volume,
        opening_price=p.opening_price,
        high_price=p.high_price,
        low_price=p.low_price,
        prev_closing_price=p.prev_closing_price,
        acc_trade_price_24h=p.acc_trade_price_24h,
        acc_trade_volume_24h=p.acc_trade_volume_24h,
        timestamp=p.timestamp,
    )


def map_trade(document: Document) -> TradeRecord:
    envelope = _validate(TradeEnvelope, document)
    p = envelope.payload
    return TradeRecord(
        exchange=envelope.metadata.exchange,
        market_code=p.market_code,
        timestamp=p.timestamp,
        trade_date=p.trade_date,
        trade_time=p.trade_time,
        trade_timestamp=p.trade_timestamp,
        trade_price=p.trade_price,
        trade_volume=p.trade_volume,
        ask_bid=p.ask_bid,
        prev_closing_price=p.prev_closing_price,
        change=p.change,
        change_price=p.change_price,
        sequential_id=p.sequential_id,
        best_ask_price=p.best_ask_price,
        best_ask_size=p.best_ask_size,
        best_bid_price=p.best_bid_price,
        best_bid_size=p.best_bid_size,
        stream_type=p.stream_type,
    )


def map_orderbook(document: Document) -> OrderBookRecord:
    envelope = _validate(OrderBookEnvelope, document)
    p = envelope.payload
    return OrderBookRecord(
        exchange=envelope.metadata.exchange,
        market_code=p.market_code,
        timestamp=p.timestamp,
        total_ask_size=p.total_ask_size,
        total_bid_size=p.total_bid_size,
        units=tuple(
            OrderBookUnitRecord(
                unit_index=index,
                ask_price=unit.ask_price,
                ask_size=unit.ask_size,
                bid_price=unit.bid_price,
                bid_size=unit.bid_size,
            )
            for index, unit in enumerate(p.orderbook_units)
        ),
    )


# 정규화된 dataType → 매퍼 (라우터 테이블)
MAPPERS: dict[DataType, Mapper] = {
    DataType.TICKER: map_ticker,
    DataType.TRADE: map_trade,
    DataType.ORDERBOOK: map_orderbook,
}
