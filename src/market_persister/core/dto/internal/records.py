"""저장 레코드 내부 도메인 모델.

매퍼가 봉투(envelope)를 검증한 뒤 만들어 내는 불변 도메인 객체 (dataclass 기반).
ORM 행(row)은 저장 게이트웨이에서 이 객체로부터 생성합니다.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TypeAlias


@dataclass(slots=True, frozen=True, eq=True, repr=True, match_args=False, kw_only=True)
class TickerRecord:
    """티커 저장 레코드

    자연키: (exchange, market_code, timestamp)
    """

    exchange: str
    market_code: str
    trade_price: Decimal
    trade_volume: Decimal
    opening_price: Decimal
    high_price: Decimal
    low_price: Decimal
    prev_closing_price: Decimal
    acc_trade_price_24h: Decimal
    acc_trade_volume_24h: Decimal
    timestamp: int

    @property
    def natural_key(self) -> dict[str, object]:
        return {
            "exchange": self.exchange,
            "market_code": self.market_code,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True, frozen=True, eq=True, repr=True, match_args=False, kw_only=True)
class TradeRecord:
    """체결 저장 레코드

    자연키: (exchange, market_code, sequential_id)
    """

    exchange: str
    market_code: str
    timestamp: int
    trade_date: str
    trade_time: str
    trade_timestamp: int
    trade_price: Decimal
    trade_volume: Decimal
    ask_bid: str
    prev_closing_price: Decimal
    change: str
    change_price: Decimal
    sequential_id: int
    best_ask_price: Decimal
    best_ask_size: Decimal
    best_bid_price: Decimal
    best_bid_size: Decimal
    stream_type: str

    @property
    def natural_key(self) -> dict[str, object]:
        return {
            "exchange": self.exchange,
            "market_code": self.market_code,
            "sequential_id": self.sequential_id,
        }


@dataclass(slots=True, frozen=True, eq=True, repr=True, match_args=False, kw_only=True)
class OrderBookUnitRecord:
    """호가 단위 (unit_index 는 원본 배열 순서)"""

    unit_index: int
    ask_price: Decimal
    ask_size: Decimal
    bid_price: Decimal
    bid_size: Decimal


@dataclass(slots=True, frozen=True, eq=True, repr=True, match_args=False, kw_only=True)
class OrderBookRecord:
    """호가 스냅샷 저장 레코드

    자연키: (exchange, market_code, timestamp)
    units 는 부모와 같은 트랜잭션에서 저장되며 독립 수명주기가 없습니다.
    """

    exchange: str
    market_code: str
    timestamp: int
    total_ask_size: Decimal
    total_bid_size: Decimal
    units: tuple[OrderBookUnitRecord, ...]

    @property
    def natural_key(self) -> dict[str, object]:
        return {
            "exchange": self.exchange,
            "market_code": self.market_code,
            "timestamp": self.timestamp,
        }


PersistRecord: TypeAlias = TickerRecord | TradeRecord | OrderBookRecord
