from __future__ import annotations

import os
from collections.abc import AsyncIterator

import pytest_asyncio

# 테스트 중 logs/ 파일 생성 방지 (settings import 전에 설정)
os.environ.setdefault("LOG_TO_FILE", "false")

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402

from market_persister.config.settings import DatabaseSettings  # noqa: E402
from market_persister.infra.storage.database import (  # noqa: E402
    build_engine,
    build_session_factory,
    create_schema,
    dispose_engine,
)

SQLITE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    eng = build_engine(DatabaseSettings(url=SQLITE_URL))
    await create_schema(eng)
    yield eng
    await dispose_engine(eng)


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)
