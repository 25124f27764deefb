"""메시지 본문 디코더

- UTF-8 JSON 본문을 파싱합니다.
- 상류 직렬화 설정에 따라 본문 전체가 JSON 문자열 리터럴로 한 번 더 감싸여 올 수 있으므로
  (``"{\\"metadata\\":...}"``) 트림 후 양끝이 ``"`` 이면 한 단계 풀어서 다시 파싱합니다.
- 전체 스키마 검증 없이 metadata.dataType 태그만 읽습니다 (검증은 매퍼 단계).
- 풀어낸 JSON 텍스트를 함께 보관합니다. 매퍼는 트리가 아니라 이 텍스트를 검증해야
  숫자가 float 을 거치지 않고 정확한 Decimal 로 파싱됩니다.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import orjson

from market_persister.common.exceptions.errors import DecodeError


@dataclass(slots=True, frozen=True)
class DecodedMessage:
    """디코딩 결과

    Attributes:
        tree: 파싱된 봉투 트리 (metadata, payload 존재 보장)
        data_type: metadata.dataType 원본 값 (정규화 전, 없으면 None)
        text: 이중 인코딩을 풀어낸 봉투 JSON 텍스트 (매퍼 입력)
    """

    tree: dict[str, Any]
    data_type: Any
    text: str

    @property
    def metadata(self) -> dict[str, Any]:
        return self.tree["metadata"]


def _loads(raw: bytes | str, stage: str) -> Any:
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise DecodeError(f"malformed JSON ({stage}): {exc}") from exc


def decode(body: bytes | bytearray | memoryview | str) -> DecodedMessage:
    """원시 본문을 봉투 트리로 디코딩합니다.

    Raises:
        DecodeError: UTF-8/JSON 오류, 최상위가 객체가 아님, metadata/payload 누락
    """
    if isinstance(body, str):
        text = body
    else:
        try:
            text = bytes(body).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"body is not valid UTF-8: {exc}") from exc

    text = text.strip()
    if not text:
        raise DecodeError("empty body")

    # 이중 인코딩된 본문 한 단계 해제
    if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
        inner = _loads(text, "outer string")
        if not isinstance(inner, str):
            raise DecodeError("double-encoded body is not a JSON string")
        text = inner.strip()
        tree = _loads(text, "inner document")
    else:
        tree = _loads(text, "document")

    if not isinstance(tree, dict):
        raise DecodeError(f"top level must be an object, got {type(tree).__name__}")

    metadata = tree.get("metadata")
    if not isinstance(metadata, dict):
        raise DecodeError("metadata is missing or not an object")
    if tree.get("payload") is None:
        raise DecodeError("payload is missing")

    return DecodedMessage(tree=tree, data_type=metadata.get("dataType"), text=text)
