"""시장 데이터 저장 ORM 모델 (SQLAlchemy 2.0 선언형)

- 자연키 UNIQUE 제약으로 재전달 메시지의 중복 저장을 막습니다.
  ticker/orderbook: (exchange, market_code, timestamp), trade: (exchange, market_code, sequential_id)
- 가격/수량은 NUMERIC(20, 8), 24시간 누적 거래대금은 NUMERIC(30, 8)
- created_at 은 DB 시계로 채웁니다.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from market_persister.core.dto.internal.records import (
    OrderBookRecord,
    TickerRecord,
    TradeRecord,
)

# SQLite 는 INTEGER PRIMARY KEY 만 자동 증가
SurrogateId = BigInteger().with_variant(Integer(), "sqlite")

Price = Numeric(20, 8)
AccPrice = Numeric(30, 8)
Code = String(20)


class Base(DeclarativeBase):
    """시장 데이터 ORM 모델 베이스"""


class TickerRow(Base):
    __tablename__ = "ticker"
    __table_args__ = (
        UniqueConstraint("exchange", "market_code", "timestamp", name="uk_ticker_unique"),
    )

    id: Mapped[int] = mapped_column(SurrogateId, primary_key=True, autoincrement=True)
    exchange: Mapped[str] = mapped_column(Code)
    market_code: Mapped[str] = mapped_column(Code)
    trade_price: Mapped[Decimal] = mapped_column(Price)
    trade_volume: Mapped[Decimal] = mapped_column(Price)
    opening_price: Mapped[Decimal] = mapped_column(Price)
    high_price: Mapped[Decimal] = mapped_column(Price)
    low_price: Mapped[Decimal] = mapped_column(Price)
    prev_closing_price: Mapped[Decimal] = mapped_column(Price)
    acc_trade_price_24h: Mapped[Decimal] = mapped_column(AccPrice)
    acc_trade_volume_24h: Mapped[Decimal] = mapped_column(Price)
    timestamp: Mapped[int] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    @classmethod
    def from_record(cls, record: TickerRecord) -> TickerRow:
        return cls(
            exchange=record.exchange,
            market_code=record.market_code,
            trade_price=record.trade_price,
            trade_volume=record.trade_volume,
            opening_price=record.opening_price,
            high_price=record.high_price,
            low_price=record.low_price,
            prev_closing_price=record.prev_closing_price,
            acc_trade_price_24h=record.acc_trade_price_24h,
            acc_trade_volume_24h=record.acc_trade_volume_24h,
            timestamp=record.timestamp,
        )


class TradeRow(Base):
    __tablename__ = "trade"
    __table_args__ = (
        UniqueConstraint("exchange", "market_code", "sequential_id", name="uk_trade_unique"),
    )

    id: Mapped[int] = mapped_column(SurrogateId, primary_key=True, autoincrement=True)
    exchange: Mapped[str] = mapped_column(Code)
    market_code: Mapped[str] = mapped_column(Code)
    timestamp: Mapped[int] = mapped_column(BigInteger)
    trade_date: Mapped[str] = mapped_column(String(10))
    trade_time: Mapped[str] = mapped_column(String(8))
    trade_timestamp: Mapped[int] = mapped_column(BigInteger)
    trade_price: Mapped[Decimal] = mapped_column(Price)
    trade_volume: Mapped[Decimal] = mapped_column(Price)
    ask_bid: Mapped[str] = mapped_column(String(10))
    prev_closing_price: Mapped[Decimal] = mapped_column(Price)
    change: Mapped[str] = mapped_column(String(10))
    change_price: Mapped[Decimal] = mapped_column(Price)
    sequential_id: Mapped[int] = mapped_column(BigInteger)
    best_ask_price: Mapped[Decimal] = mapped_column(Price)
    best_ask_size: Mapped[Decimal] = mapped_column(Price)
    best_bid_price: Mapped[Decimal] = mapped_column(Price)
    best_bid_size: Mapped[Decimal] = mapped_column(Price)
    stream_type: Mapped[str] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    @classmethod
    def from_record(cls, record: TradeRecord) -> TradeRow:
        return cls(
            exchange=record.exchange,
            market_code=record.market_code,
            timestamp=record.timestamp,
            trade_date=record.trade_date,
            trade_time=record.trade_time,
            trade_timestamp=record.trade_timestamp,
            trade_price=record.trade_price,
            trade_volume=record.trade_volume,
            ask_bid=record.ask_bid,
            prev_closing_price=record.prev_closing_price,
            change=record.change,
            change_price=record.change_price,
            sequential_id=record.sequential_id,
            best_ask_price=record.best_ask_price,
            best_ask_size=record.best_ask_size,
            best_bid_price=record.best_bid_price,
            best_bid_size=record.best_bid_size,
            stream_type=record.stream_type,
        )


class OrderBookRow(Base):
    __tablename__ = "orderbook"
    __table_args__ = (
        UniqueConstraint("exchange", "market_code", "timestamp", name="uk_orderbook_unique"),
    )

    id: Mapped[int] = mapped_column(SurrogateId, primary_key=True, autoincrement=True)
    exchange: Mapped[str] = mapped_column(Code)
    market_code: Mapped[str] = mapped_column(Code)
    timestamp: Mapped[int] = mapped_column(BigInteger)
    total_ask_size: Mapped[Decimal] = mapped_column(Price)
    total_bid_size: Mapped[Decimal] = mapped_column(Price)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # 부모와 함께 저장/삭제되는 순서 있는 호가 단위
    units: Mapped[list[OrderBookUnitRow]] = relationship(
        back_populates="orderbook",
        cascade="all, delete-orphan",
        order_by="OrderBookUnitRow.unit_index",
        lazy="selectin",
    )

    @classmethod
    def from_record(cls, record: OrderBookRecord) -> OrderBookRow:
        return cls(
            exchange=record.exchange,
            market_code=record.market_code,
            timestamp=record.timestamp,
            total_ask_size=record.total_ask_size,
            total_bid_size=record.total_bid_size,
            units=[
                OrderBookUnitRow(
                    unit_index=unit.unit_index,
                    ask_price=unit.ask_price,
                    ask_size=unit.ask_size,
                    bid_price=unit.bid_price,
                    bid_size=unit.bid_size,
                )
                for unit in record.units
            ],
        )


class OrderBookUnitRow(Base):
    __tablename__ = "orderbook_unit"

    orderbook_id: Mapped[int] = mapped_column(
        ForeignKey("orderbook.id", ondelete="CASCADE"), primary_key=True
    )
    unit_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    ask_price: Mapped[Decimal] = mapped_column(Price)
    ask_size: Mapped[Decimal] = mapped_column(Price)
    bid_price: Mapped[Decimal] = mapped_column(Price)
    bid_size: Mapped[Decimal] = mapped_column(Price)

    orderbook: Mapped[OrderBookRow] = relationship(back_populates="units")
