"""수신 시장 데이터 DTO 통합 모듈

상류 수집기가 발행하는 ``{metadata, payload}`` 봉투를 검증합니다.
JSON 키는 camelCase(alias), 파이썬 필드는 snake_case 입니다.
재사용 패턴: INBOUND_CONFIG + Generic 봉투(MarketDataEnvelope[PayloadT])
"""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal
from typing import Annotated, Generic, TypeVar

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

# ========================================
# ConfigDict (수신 전용)
# ========================================

INBOUND_CONFIG = ConfigDict(
    alias_generator=to_camel,  # marketCode ↔ market_code
    populate_by_name=True,
    extra="ignore",  # 상류 필드 추가에 관대
    str_strip_whitespace=True,
    frozen=True,
)

# ========================================
# 타입 제약
# ========================================

# NUMERIC(p, 8) 정수부 자릿수 = p - 8
PRICE_WHOLE_DIGITS = 12
ACC_PRICE_WHOLE_DIGITS = 22


def whole_digits_within(limit: int) -> Callable[[Decimal], Decimal]:
    """소수점 앞 자릿수 상한 검사기 (초과 시 DB 에서 overflow 대신 검증 실패)"""

    def check(value: Decimal) -> Decimal:
        _, digits, exponent = value.as_tuple()
        whole = max(len(digits) + int(exponent), 0)
        if whole > limit:
            raise ValueError(f"must have no more than {limit} digits before the decimal point")
        return value

    return check


# 가격/수량 (NUMERIC(20, 8) 저장, NaN/Infinity 금지)
Amount = Annotated[
    Decimal, Field(allow_inf_nan=False), AfterValidator(whole_digits_within(PRICE_WHOLE_DIGITS))
]

# 24시간 누적 거래대금 (NUMERIC(30, 8))
AccAmount = Annotated[
    Decimal,
    Field(allow_inf_nan=False),
    AfterValidator(whole_digits_within(ACC_PRICE_WHOLE_DIGITS)),
]

# 에폭 밀리초 / 일련번호 (양수)
PositiveInt = Annotated[int, Field(gt=0)]

# 거래소/마켓 코드 (VARCHAR(20), 공백 불가)
CodeStr = Annotated[str, StringConstraints(min_length=1, max_length=20)]

# 체결 문자열 필드 (컬럼 길이와 동일: 일자 10, 시각 8, 매수매도/변동 10, 스트림 20)
DateStr = Annotated[str, StringConstraints(max_length=10)]
TimeStr = Annotated[str, StringConstraints(max_length=8)]
FlagStr = Annotated[str, StringConstraints(max_length=10)]
StreamStr = Annotated[str, StringConstraints(max_length=20)]


class InboundModel(BaseModel):
    model_config = INBOUND_CONFIG


# ========================================
# Metadata
# ========================================


class MetadataDTO(InboundModel):
    """봉투 메타데이터

    dataType/collectedAt 은 파이프라인 단계(라우터, 메트릭)가 원본 트리에서 직접 읽으므로
    여기서는 검증하지 않고 보존만 합니다.
    """

    message_id: str | None = None
    exchange: CodeStr
    data_type: str | None = None
    collected_at: str | None = None
    version: str | None = None


# ========================================
# Payload
# ========================================


class TickerPayloadDTO(InboundModel):
    market_code: CodeStr
    trade_price: Amount
    trade_volume: Amount
    opening_price: Amount
    high_price: Amount
    low_price: Amount
    prev_closing_price: Amount
    acc_trade_price_24h: AccAmount = Field(alias="accTradePrice24h")
    acc_trade_volume_24h: Amount = Field(alias="accTradeVolume24h")
    timestamp: int


class TradePayloadDTO(InboundModel):
    market_code: CodeStr
    timestamp: PositiveInt
    trade_date: DateStr
    trade_time: TimeStr
    trade_timestamp: PositiveInt
    trade_price: Amount
    trade_volume: Amount
    ask_bid: FlagStr
    prev_closing_price: Amount
    change: FlagStr
    change_price: Amount
    sequential_id: PositiveInt
    best_ask_price: Amount
    best_ask_size: Amount
    best_bid_price: Amount
    best_bid_size: Amount
    stream_type: StreamStr


class OrderBookUnitDTO(InboundModel):
    ask_price: Amount
    ask_size: Amount
    bid_price: Amount
    bid_size: Amount


class OrderBookPayloadDTO(InboundModel):
    market_code: CodeStr
    timestamp: PositiveInt
    total_ask_size: Amount
    total_bid_size: Amount
    # 원본 배열 순서 = unit_index
    orderbook_units: list[OrderBookUnitDTO] = Field(min_length=1)


# ========================================
# Generic 봉투
# ========================================

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class MarketDataEnvelope(InboundModel, Generic[PayloadT]):
    """Generic 시장 데이터 봉투 (Envelope Pattern)

    Example:
        >>> MarketDataEnvelope[TickerPayloadDTO].model_validate(tree)
    """

    metadata: MetadataDTO
    payload: PayloadT


TickerEnvelope = MarketDataEnvelope[TickerPayloadDTO]
TradeEnvelope = MarketDataEnvelope[TradePayloadDTO]
OrderBookEnvelope = MarketDataEnvelope[OrderBookPayloadDTO]
