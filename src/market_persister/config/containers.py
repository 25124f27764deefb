"""
Dependency Injection Containers

이 모듈은 애플리케이션의 모든 의존성을 관리하는 DI 컨테이너를 정의합니다.

아키텍처:
- StorageContainer: DB 엔진(Resource) + 세션 팩토리 + 멱등 저장 게이트웨이
- MessagingContainer: DLQ Producer(Resource) + 시장 데이터 Consumer
- ApplicationContainer: 최상위 컨테이너 (메트릭, 전달 컨트롤러, 워커 풀, 앱)

주요 패턴:
- Resource Provider: async init/shutdown 자동 관리
- Object Provider: settings.py 싱글톤 주입 (DI)
- Callable Provider: 설정 → 도메인 정책 변환

Usage:
    container = ApplicationContainer()
    await container.init_resources()
    app = await container.app()
"""

from dependency_injector import containers, providers

from market_persister.application.consumer_app import PersisterApplication
from market_persister.application.worker_pool import WorkerPool
from market_persister.common.exceptions.exception_rule import DEFAULT_RULES, ExceptionClassifier
from market_persister.common.metrics.persist_metrics import PersistMetrics
from market_persister.common.metrics.reporter import MetricsSummaryReporter
from market_persister.config.init_infra import (
    build_delivery_policy,
    build_pool_sizing,
    init_database,
    init_dead_letter_producer,
)
from market_persister.config.settings import (
    consumer_settings,
    database_settings,
    dead_letter_settings,
    kafka_settings,
    metrics_settings,
)
from market_persister.core.pipeline.controller import DeliveryController
from market_persister.infra.messaging.clients.config import consumer_config
from market_persister.infra.messaging.clients.consumer import MarketDataConsumer
from market_persister.infra.messaging.clients.topics import subscription_topics
from market_persister.infra.storage.database import build_session_factory
from market_persister.infra.storage.gateway import PersistenceGateway


# ========================================
# 1. Storage Container (저장 레이어)
# ========================================
class StorageContainer(containers.DeclarativeContainer):
    """저장 컨테이너

    - 엔진은 Resource 로 생성/정리 (dispose)
    - 세션 팩토리/게이트웨이는 싱글톤으로 공유 (커넥션 풀 공유)
    """

    database_config = providers.Object(database_settings)

    engine = providers.Resource(init_database, settings=database_config)
    session_factory = providers.Singleton(build_session_factory, engine=engine)
    gateway = providers.Singleton(PersistenceGateway, session_factory=session_factory)


# ========================================
# 2. Messaging Container (메시징 레이어)
# ========================================
class MessagingContainer(containers.DeclarativeContainer):
    """메시징 레이어: Kafka Consumer + DLQ Producer

    Features:
    - Resource provider 로 DLQ Producer 라이프사이클 자동 관리
    - Consumer 는 AMQP 바인딩 패턴을 정규식 구독으로 변환해 구독
    """

    kafka_config = providers.Object(kafka_settings)
    consumer_policy_config = providers.Object(consumer_settings)
    dead_letter_config = providers.Object(dead_letter_settings)

    dead_letter_producer = providers.Resource(
        init_dead_letter_producer,
        kafka=kafka_config,
        dead_letter=dead_letter_config,
    )

    consumer = providers.Singleton(
        MarketDataConsumer,
        config=providers.Callable(consumer_config, settings=kafka_config),
        topics=providers.Callable(
            subscription_topics,
            exchange=kafka_config.provided.exchange,
            routing_patterns=kafka_config.provided.routing_keys,
        ),
        prefetch_count=consumer_policy_config.provided.prefetch_count,
        requeuer=dead_letter_producer,
    )


# ========================================
# 3. Application Container (최상위)
# ========================================
class ApplicationContainer(containers.DeclarativeContainer):
    """애플리케이션 최상위 컨테이너

    Features:
    - 하위 컨테이너 통합
    - DeliveryController 의존성 주입 (게이트웨이, 메트릭, 정책, DLQ, 분류 규칙)
    """

    consumer_policy_config = providers.Object(consumer_settings)
    metrics_config = providers.Object(metrics_settings)

    # ===== 하위 컨테이너 포함 =====
    storage = providers.Container(StorageContainer)
    messaging = providers.Container(MessagingContainer)

    # ===== Core Components =====
    metrics = providers.Singleton(
        PersistMetrics, max_samples=metrics_config.provided.max_samples
    )
    classifier = providers.Singleton(ExceptionClassifier, rules=DEFAULT_RULES)
    delivery_policy = providers.Singleton(build_delivery_policy, settings=consumer_policy_config)

    controller = providers.Singleton(
        DeliveryController,
        gateway=storage.gateway,
        metrics=metrics,
        policy=delivery_policy,
        dead_letter=messaging.dead_letter_producer,
        classifier=classifier,
    )

    worker_pool = providers.Singleton(
        WorkerPool,
        source=messaging.consumer,
        handler=controller,
        sizing=providers.Callable(build_pool_sizing, settings=consumer_policy_config),
    )

    reporter = providers.Singleton(
        MetricsSummaryReporter,
        metrics=metrics,
        interval_sec=metrics_config.provided.report_interval_sec,
    )

    app = providers.Singleton(
        PersisterApplication,
        consumer=messaging.consumer,
        pool=worker_pool,
        reporter=reporter,
        dead_letter=messaging.dead_letter_producer,
        shutdown_timeout_sec=consumer_policy_config.provided.shutdown_timeout_sec,
    )
