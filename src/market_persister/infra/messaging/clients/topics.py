"""AMQP topic 바인딩 패턴 → Kafka 정규식 구독 변환

토픽 이름 규칙: ``{exchange}.{routing key}`` (예: ``market-data.upbit.ticker.krw-btc``)
- ``*`` : 정확히 한 단어
- ``#`` : 0개 이상의 단어
단어 구분자는 ``.`` 입니다. exchange 는 (점을 포함하더라도) 하나의 리터럴 접두사로 취급합니다.

librdkafka 정규식 엔진 호환을 위해 비캡처 그룹/룩어라운드는 사용하지 않습니다.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

_WORD = "[^.]+"


def _literal(text: str) -> str:
    # Kafka 토픽 문자 집합([a-zA-Z0-9._-]) 중 정규식 메타문자는 '.' 뿐
    return text.replace(".", r"\.")


def routing_key_regex(exchange: str, routing_pattern: str) -> str:
    """바인딩 패턴 1개의 토픽 정규식 (``^...$`` 앵커 포함)

    ``("market-data", "*.ticker.#")`` → ``^market-data\\.[^.]+\\.ticker(\\.[^.]+)*$``
    """
    regex = _literal(exchange)
    for word in routing_pattern.split("."):
        if word == "#":
            regex += rf"(\.{_WORD})*"
        elif word == "*":
            regex += rf"\.{_WORD}"
        else:
            regex += r"\." + _literal(word)
    return f"^{regex}$"


def subscription_topics(exchange: str, routing_patterns: Iterable[str]) -> list[str]:
    """Consumer.subscribe() 에 넘길 정규식 토픽 목록 (중복 제거, 순서 유지)"""
    return list(dict.fromkeys(routing_key_regex(exchange, p) for p in routing_patterns))


def topic_matches(topic: str, exchange: str, routing_patterns: Iterable[str]) -> bool:
    """토픽이 바인딩 패턴 중 하나와 일치하는지 확인"""
    return any(
        re.fullmatch(regex[1:-1], topic) is not None
        for regex in subscription_topics(exchange, routing_patterns)
    )
