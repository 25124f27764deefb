"""멱등 저장 게이트웨이

레코드 1건 = 세션 1개 + 트랜잭션 1개.
- 자연키 UNIQUE 위반 → DuplicateError (성공과 동일 취급)
- 그 밖의 저장 실패(커넥션 유실, 타임아웃, 풀 고갈 등) → TransientStorageError (재시도 대상)
호가 부모 행과 단위 행은 같은 트랜잭션에서 저장됩니다.
"""

from __future__ import annotations

import asyncio

from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_persister.common.exceptions.errors import DuplicateError, TransientStorageError
from market_persister.core.dto.internal.records import (
    OrderBookRecord,
    PersistRecord,
    TickerRecord,
    TradeRecord,
)
from market_persister.infra.storage.models import Base, OrderBookRow, TickerRow, TradeRow

# PostgreSQL unique_violation
UNIQUE_VIOLATION_SQLSTATE = "23505"
_UNIQUE_MESSAGE_MARKERS = ("unique constraint failed", "duplicate key", "unique violation")


def is_unique_violation(exc: IntegrityError) -> bool:
    """IntegrityError 가 UNIQUE 제약 위반인지 판별 (NOT NULL/FK 위반과 구분)"""
    orig = exc.orig
    for attr in ("sqlstate", "pgcode"):
        if getattr(orig, attr, None) == UNIQUE_VIOLATION_SQLSTATE:
            return True
    message = str(orig if orig is not None else exc).lower()
    return any(marker in message for marker in _UNIQUE_MESSAGE_MARKERS)


def _to_row(record: PersistRecord) -> Base:
    match record:
        case TickerRecord():
            return TickerRow.from_record(record)
        case TradeRecord():
            return TradeRow.from_record(record)
        case OrderBookRecord():
            return OrderBookRow.from_record(record)
    raise TypeError(f"unsupported record type: {type(record).__name__}")


class PersistenceGateway:
    """레코드 단위 원자적 저장"""

    __slots__ = ("_session_factory",)

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def save(self, record: PersistRecord) -> None:
        """레코드 1건 저장

        Raises:
            DuplicateError: 자연키가 이미 존재
            TransientStorageError: 재시도 가능한 저장 장애
        """
        row = _to_row(record)
        table = row.__tablename__
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(row)
        except IntegrityError as exc:
            if is_unique_violation(exc):
                raise DuplicateError(table, record.natural_key) from exc
            raise TransientStorageError(f"integrity error on {table}: {exc.orig}") from exc
        except (DBAPIError, SQLAlchemyError) as exc:
            raise TransientStorageError(f"storage failure on {table}: {exc}") from exc
        except (asyncio.TimeoutError, TimeoutError, OSError) as exc:
            raise TransientStorageError(f"storage I/O failure on {table}: {exc}") from exc
