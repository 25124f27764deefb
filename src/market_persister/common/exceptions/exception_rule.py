"""예외 → 처리 방식(Disposition) 분류 규칙 테이블

- 재시도 O: 저장소 일시 장애(TransientStorageError), 타임아웃/네트워크(OSError 계열)
  → 로컬 재시도 후 소진 시 DLQ
- 재시도 X: JSON 파싱/매핑 실패, 형식 오류, 검증 실패 → 즉시 DLQ
- 중복(DuplicateError): 성공과 동일 취급 → ack
- 분류되지 않은 예외: 재시도 없이 DLQ (알 수 없는 오류는 반복 재시도보다 보존·검토가 우선)

cause 체인을 가장 안쪽(근본 원인)부터 바깥쪽으로 탐색하므로
RuntimeError(...) from TransientStorageError 처럼 감싸도 원인 예외 기준으로 분류됩니다.
"""

from __future__ import annotations

import asyncio
import decimal
from dataclasses import dataclass
from typing import Iterator, TypeAlias

from pydantic import ValidationError as PydanticValidationError

from market_persister.common.exceptions.errors import (
    DecodeError,
    DuplicateError,
    TransientStorageError,
    ValidationError,
)
from market_persister.core.types import Disposition

ExceptionGroup_: TypeAlias = type[BaseException] | tuple[type[BaseException], ...]

# 파싱/매핑/형식 오류 (재시도해도 성공 불가)
DESERIALIZATION_ERRORS = (
    DecodeError,
    ValidationError,
    PydanticValidationError,
    decimal.InvalidOperation,
    ValueError,
    TypeError,
    KeyError,
    AttributeError,
)

# 타임아웃/네트워크 등 일시적 I/O 오류
TRANSIENT_IO_ERRORS = (
    TransientStorageError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    OSError,
)


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    """단일 분류 규칙 (예외 타입 → 처리 방식)"""

    exc: ExceptionGroup_
    disposition: Disposition


@dataclass(frozen=True, slots=True)
class Classification:
    """분류 결과

    Attributes:
        disposition: 처리 방식
        cause: 규칙에 매칭된 예외 (매칭 실패 시 근본 원인)
        classified: 규칙 매칭 여부 (False면 미분류 기본값 적용)
    """

    disposition: Disposition
    cause: BaseException
    classified: bool

    @property
    def retryable(self) -> bool:
        return self.disposition is Disposition.RETRY


# 구체 -> 포괄 순서 (선언 순서가 매칭 우선순위)
DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(exc=DuplicateError, disposition=Disposition.DUPLICATE),
    ClassificationRule(exc=TRANSIENT_IO_ERRORS, disposition=Disposition.RETRY),
    ClassificationRule(exc=DESERIALIZATION_ERRORS, disposition=Disposition.DEAD_LETTER),
)


def iter_cause_chain(err: BaseException) -> Iterator[BaseException]:
    """예외 체인을 가장 안쪽(근본 원인)부터 바깥쪽 순서로 순회합니다.

    ``raise ... from exc``(__cause__)를 우선하고, 명시적 cause가 없으면
    억제되지 않은 암시적 컨텍스트(__context__)를 따라갑니다.
    """
    chain: list[BaseException] = []
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        chain.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None
    return reversed(chain)


class ExceptionClassifier:
    """규칙 테이블 기반 예외 분류기

    - if-else 분기 대신 선언적 규칙을 순서대로 평가합니다.
    - 규칙은 생성자에서 주입되며, 기본값은 DEFAULT_RULES 입니다.
    """

    __slots__ = ("_rules", "_default")

    def __init__(
        self,
        rules: tuple[ClassificationRule, ...] = DEFAULT_RULES,
        default: Disposition = Disposition.DEAD_LETTER,
    ) -> None:
        self._rules = rules
        self._default = default

    def classify(self, err: BaseException) -> Classification:
        chain = list(iter_cause_chain(err))
        for cause in chain:
            for rule in self._rules:
                if isinstance(cause, rule.exc):
                    return Classification(
                        disposition=rule.disposition, cause=cause, classified=True
                    )

        # 알 수 없는 경우 기본값 (재시도 없음)
        return Classification(disposition=self._default, cause=chain[0], classified=False)


default_classifier = ExceptionClassifier()


def classify_exception(err: BaseException) -> Classification:
    """기본 규칙 테이블로 예외를 분류합니다."""
    return default_classifier.classify(err)
