"""파이프라인 예외 계층

- DecodeError: 본문 JSON 파싱 실패 (재시도 없이 DLQ)
- ValidationError: 필수 필드 누락/형식/범위 위반 (재시도 없이 DLQ)
- DuplicateError: 자연키 UNIQUE 제약 위반 (성공과 동일 취급)
- TransientStorageError: 타임아웃/커넥션 유실 등 일시적 저장 장애 (재시도 대상)
- UnclassifiedError: 분류되지 않은 예외 보고용 래퍼 (재시도 없이 DLQ)
"""

from __future__ import annotations

from typing import Any


class PersisterError(Exception):
    """모든 파이프라인 예외의 베이스"""


class DecodeError(PersisterError):
    """메시지 본문을 JSON 봉투로 해석하지 못한 경우"""


class ValidationError(PersisterError):
    """매퍼 검증 실패

    Attributes:
        field: 문제 필드 경로 (예: "payload.tradePrice")
        reason: 실패 사유
    """

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class DuplicateError(PersisterError):
    """이미 저장된 자연키 재전달 (멱등 저장)"""

    def __init__(self, table: str, natural_key: dict[str, Any]) -> None:
        self.table = table
        self.natural_key = natural_key
        super().__init__(f"duplicate {table} row: {natural_key}")


class TransientStorageError(PersisterError):
    """재시도로 회복 가능한 저장 장애"""


class UnclassifiedError(PersisterError):
    """분류 규칙에 해당하지 않는 예외 (보존 우선)"""
