from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine

from market_persister.application.worker_pool import PoolSizing
from market_persister.config.settings import (
    ConsumerSettings,
    DatabaseSettings,
    DeadLetterSettings,
    KafkaSettings,
)
from market_persister.core.dto.internal.policy import DeliveryPolicyDomain, RetryPolicyDomain
from market_persister.infra.messaging.clients.config import producer_config
from market_persister.infra.messaging.clients.producer import AsyncDeliveryProducer
from market_persister.infra.messaging.clients.topics import topic_matches
from market_persister.infra.messaging.producers.dead_letter import DeadLetterProducer
from market_persister.infra.storage.database import build_engine, create_schema, dispose_engine


@asynccontextmanager
async def init_database(settings: DatabaseSettings) -> AsyncIterator[AsyncEngine]:
    """DB 엔진 초기화(필요 시 스키마 생성) 및 정리"""
    engine = build_engine(settings)
    if settings.create_schema:
        await create_schema(engine)
    yield engine
    await dispose_engine(engine)


@asynccontextmanager
async def init_dead_letter_producer(
    kafka: KafkaSettings, dead_letter: DeadLetterSettings
) -> AsyncIterator[DeadLetterProducer]:
    """DeadLetterProducer 초기화 및 정리 (종료 시 flush)

    Raises:
        ValueError: DLQ 토픽이 소비 구독 패턴에 걸림 (실패 메시지가 다시 소비됨)
    """
    if topic_matches(dead_letter.exchange, kafka.exchange, kafka.routing_keys):
        raise ValueError(
            f"dead-letter topic {dead_letter.exchange!r} matches the consumer subscription"
        )
    producer = DeadLetterProducer(
        producer=AsyncDeliveryProducer(producer_config(kafka)),
        settings=dead_letter,
    )
    await producer.start()
    yield producer
    await producer.stop()


def build_delivery_policy(settings: ConsumerSettings) -> DeliveryPolicyDomain:
    """CONSUMER_* 설정 → 실패 처리 정책"""
    return DeliveryPolicyDomain(
        retry=RetryPolicyDomain(
            max_attempts=settings.retry_max_attempts,
            initial_backoff=settings.retry_initial_backoff_ms / 1000.0,
            max_backoff=settings.retry_max_backoff_ms / 1000.0,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter=settings.retry_jitter,
        ),
        dead_letter_enabled=settings.dead_letter_enabled,
        nack_requeue=settings.nack_requeue,
    )


def build_pool_sizing(settings: ConsumerSettings) -> PoolSizing:
    """CONSUMER_* 설정 → 워커 풀 크기 (max < min 이면 min 으로 보정)"""
    return PoolSizing(
        min_workers=settings.concurrent_consumers,
        max_workers=max(settings.concurrent_consumers, settings.max_concurrent_consumers),
        prefetch_count=settings.prefetch_count,
        idle_timeout_sec=settings.worker_idle_timeout_sec,
    )
