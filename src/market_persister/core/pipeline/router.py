"""dataType 태그 라우터

정규화(소문자)된 태그로 매퍼 테이블을 조회합니다.
- None/공백 → missing_type (문자열이 아닌 값은 str 변환 후 판정) (ack + drop)
- 테이블에 없는 태그 → unsupported_type (ack + drop)
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from market_persister.core.types import UNKNOWN_DATA_TYPE, DataType, Outcome

HandlerT = TypeVar("HandlerT", bound=Callable[..., Any])


def normalize_data_type(tag: Any) -> str | None:
    """태그 정규화 (None 또는 공백이면 None).

    숫자 등 문자열이 아닌 값은 문자열로 변환해 비교합니다 (123 → "123" → unsupported).
    """
    if tag is None:
        return None
    normalized = str(tag).strip().lower()
    return normalized or None


@dataclass(slots=True, frozen=True)
class Route(Generic[HandlerT]):
    """라우팅 결정

    Attributes:
        data_type: 인식된 데이터 타입 (drop 이면 None)
        handler: 매퍼 (drop 이면 None)
        outcome: drop 사유 (missing_type / unsupported_type), 정상 라우팅이면 None
        tag: 메트릭 태그 (인식 불가 시 "unknown")
    """

    data_type: DataType | None
    handler: HandlerT | None
    outcome: Outcome | None

    @property
    def dropped(self) -> bool:
        return self.handler is None

    @property
    def tag(self) -> str:
        return self.data_type.value if self.data_type else UNKNOWN_DATA_TYPE


class TypeRouter(Generic[HandlerT]):
    """데이터 타입 → 매퍼 디스패치 테이블"""

    __slots__ = ("_table",)

    def __init__(self, table: Mapping[DataType, HandlerT]) -> None:
        self._table: dict[str, tuple[DataType, HandlerT]] = {
            data_type.value: (data_type, handler) for data_type, handler in table.items()
        }

    def route(self, tag: Any) -> Route[HandlerT]:
        normalized = normalize_data_type(tag)
        if normalized is None:
            return Route(data_type=None, handler=None, outcome=Outcome.MISSING_TYPE)

        entry = self._table.get(normalized)
        if entry is None:
            return Route(data_type=None, handler=None, outcome=Outcome.UNSUPPORTED_TYPE)

        data_type, handler = entry
        return Route(data_type=data_type, handler=handler, outcome=None)
