"""소비 파이프라인 상태/결과 타입 정의 모듈."""

from __future__ import annotations

from enum import StrEnum
from typing import Final


class DataType(StrEnum):
    """라우팅 가능한 데이터 종류 (metadata.dataType 정규화 값)"""

    TICKER = "ticker"
    TRADE = "trade"
    ORDERBOOK = "orderbook"


class Outcome(StrEnum):
    """메시지 처리 결과 (메트릭/로그 태그)"""

    SUCCESS = "success"
    DUPLICATE = "duplicate"
    ERROR = "error"
    MISSING_TYPE = "missing_type"
    UNSUPPORTED_TYPE = "unsupported_type"


class DeliveryState(StrEnum):
    """메시지 단위 상태 머신

    received → decoding → routed → validating → persisting → {acked, nacked}
    """

    RECEIVED = "received"
    DECODING = "decoding"
    ROUTED = "routed"
    VALIDATING = "validating"
    PERSISTING = "persisting"
    ACKED = "acked"
    NACKED = "nacked"


class Disposition(StrEnum):
    """예외 분류 결과에 따른 처리 방식"""

    RETRY = "retry"  # 로컬 재시도 후 소진 시 DLQ
    DEAD_LETTER = "dead_letter"  # 즉시 DLQ
    DUPLICATE = "duplicate"  # 성공과 동일 취급 (ack)


# 태그가 없거나 인식 불가한 경우 메트릭 태그
UNKNOWN_DATA_TYPE: Final[str] = "unknown"


class Segment(StrEnum):
    """메시지 처리 구간 타이머"""

    PARSE = "parse"  # 수신 → 디코딩+라우팅 결정
    PERSIST = "persist"  # 매핑 완료 → 저장 시도 완료
    COMMIT = "commit"  # 저장 완료 → ack 발행
    TOTAL = "total"


class Counter(StrEnum):
    """처리 카운터 이름"""

    PROCESSED = "processed"
    ACKED = "acked"
    NACKED = "nacked"
    RETRIES = "retries"
    DEAD_LETTERED = "dead_lettered"
    LAG_SKIPPED = "lag_skipped"
