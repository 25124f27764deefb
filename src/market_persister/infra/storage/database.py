"""비동기 DB 엔진/세션 팩토리

- 운영: postgresql+asyncpg (command_timeout 으로 쿼리 타임아웃)
- 테스트: sqlite+aiosqlite 인메모리 (StaticPool 로 단일 커넥션 공유)
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from market_persister.common.logger import PipelineLogger
from market_persister.config.settings import DatabaseSettings
from market_persister.infra.storage.models import Base

logger = PipelineLogger.get_logger("database", "storage")


def build_engine(settings: DatabaseSettings) -> AsyncEngine:
    """설정으로부터 AsyncEngine 생성"""
    url = settings.url
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=settings.echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    connect_args: dict[str, object] = {}
    if url.startswith("postgresql+asyncpg"):
        connect_args["command_timeout"] = settings.command_timeout_sec

    return create_async_engine(
        url,
        echo=settings.echo,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout_sec,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """테이블 생성 (이미 있으면 건너뜀)"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("schema ensured", extra={"tables": sorted(Base.metadata.tables)})


async def dispose_engine(engine: AsyncEngine) -> None:
    await engine.dispose()
    logger.info("database engine disposed")
