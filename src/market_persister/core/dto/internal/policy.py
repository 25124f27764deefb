from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class RetryPolicyDomain:
    """저장 재시도 정책(도메인).

    max_attempts 는 첫 시도를 포함한 총 시도 횟수입니다.
    """

    max_attempts: int = 3

    # 백오프 (초)
    initial_backoff: float = 0.1
    max_backoff: float = 2.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.1  # +/- 10%


@dataclass(slots=True, frozen=True)
class DeliveryPolicyDomain:
    """실패 메시지 처리 정책(도메인).

    - dead_letter_enabled=False 이면 DLQ 대신 nack(requeue=nack_requeue)
    """

    retry: RetryPolicyDomain
    dead_letter_enabled: bool = True
    nack_requeue: bool = True
