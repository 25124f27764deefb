"""
Kafka 클라이언트 설정 관리

Consumer(시장 데이터 수신)와 Producer(DLQ 전송, requeue 재발행) 설정을
confluent-kafka 형식으로 구성하는 공통 함수들을 제공합니다.
"""

from typing import Any

from market_persister.config.settings import KafkaSettings, kafka_settings


def producer_config(settings: KafkaSettings = kafka_settings, **overrides: Any) -> dict:
    """DLQ/requeue Producer 설정 - 유실 방지 우선

    Args:
        settings: Kafka 설정 (기본: 환경변수 기반 싱글톤)
        **overrides: 사용자 지정 설정으로 덮어쓸 값들

    Returns:
        confluent-kafka Producer 설정 딕셔너리
    """
    cfg = {
        # 필수
        "bootstrap.servers": settings.bootstrap_servers,
        # 안정성: Idempotent + acks=all (+ in-flight ≤5, retries>0)
        "enable.idempotence": True,
        "acks": "all",
        "max.in.flight.requests.per.connection": 5,
        # 재시도/타임아웃 (전송 결과를 기다린 뒤 원본 ack 하므로 상한을 짧게)
        "request.timeout.ms": 10000,
        "delivery.timeout.ms": 30000,
        # DLQ 는 저빈도라 배칭 최소화
        "linger.ms": 5,
        "compression.type": "lz4",
    }

    cfg.update(overrides)
    return cfg


def consumer_config(settings: KafkaSettings = kafka_settings, **overrides: Any) -> dict:
    """시장 데이터 Consumer 설정

    - group.id = 큐 이름 (모든 워커가 하나의 그룹 공유)
    - enable.auto.offset.store=False: 처리 완료된 연속 오프셋만 store_offsets 로 저장
    - cooperative-sticky 전략으로 증분 리밸런싱

    Args:
        settings: Kafka 설정 (기본: 환경변수 기반 싱글톤)
        **overrides: 사용자 지정 설정으로 덮어쓸 값들

    Returns:
        confluent-kafka Consumer 설정 딕셔너리
    """
    cfg = {
        # 필수 기본 설정
        "bootstrap.servers": settings.bootstrap_servers,
        "security.protocol": "PLAINTEXT",
        "group.id": settings.queue,
        # 오프셋 관리
        "enable.auto.commit": True,
        "enable.auto.offset.store": False,
        "auto.offset.reset": settings.auto_offset_reset,
        "auto.commit.interval.ms": 5000,
        # 세션 관리
        "session.timeout.ms": 30000,
        "heartbeat.interval.ms": 10000,
        "max.poll.interval.ms": 300000,
        # 정규식 구독 시 신규 토픽 감지 주기
        "topic.metadata.refresh.interval.ms": 30000,
        "partition.assignment.strategy": "cooperative-sticky",
    }

    cfg.update(overrides)
    return cfg
