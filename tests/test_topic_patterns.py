from __future__ import annotations

import pytest

from market_persister.config.init_infra import init_dead_letter_producer
from market_persister.config.settings import DeadLetterSettings, KafkaSettings
from market_persister.infra.messaging.clients.topics import (
    routing_key_regex,
    subscription_topics,
    topic_matches,
)

EXCHANGE = "market-data"
PATTERNS = ("*.ticker.#", "*.trade.#", "*.orderbook.#")


def test_routing_key_regex_shape() -> None:
    assert routing_key_regex(EXCHANGE, "*.ticker.#") == r"^market-data\.[^.]+\.ticker(\.[^.]+)*$"


def test_subscription_topics_are_anchored_and_deduplicated() -> None:
    topics = subscription_topics(EXCHANGE, ["*.ticker.#", "*.ticker.#", "*.trade.#"])

    assert len(topics) == 2
    assert all(t.startswith("^") and t.endswith("$") for t in topics)


@pytest.mark.parametrize(
    "topic",
    [
        "market-data.upbit.ticker",
        "market-data.upbit.ticker.krw-btc",
        "market-data.bithumb.trade.krw-eth.extra",
        "market-data.korbit.orderbook.krw-xrp",
    ],
)
def test_bound_topics_match(topic: str) -> None:
    assert topic_matches(topic, EXCHANGE, PATTERNS)


@pytest.mark.parametrize(
    "topic",
    [
        "market-data.ticker",  # '*' 는 정확히 한 단어
        "market-data.upbit.candle.krw-btc",
        "other.upbit.ticker.krw-btc",
        "market-dataX.upbit.ticker",
        "market-data.dlx",
        "market-data.upbit.tickers",
    ],
)
def test_unbound_topics_do_not_match(topic: str) -> None:
    assert not topic_matches(topic, EXCHANGE, PATTERNS)


def test_hash_matches_zero_words() -> None:
    assert topic_matches("market-data", EXCHANGE, ["#"])
    assert topic_matches("market-data.a.b.c", EXCHANGE, ["#"])


def test_dotted_exchange_is_literal() -> None:
    assert topic_matches("market.data.upbit.ticker", "market.data", ["*.ticker"])
    assert not topic_matches("marketXdata.upbit.ticker", "market.data", ["*.ticker"])


@pytest.mark.asyncio
async def test_dead_letter_topic_inside_subscription_is_rejected() -> None:
    kafka = KafkaSettings(exchange=EXCHANGE, routing_key_ticker="#")
    dead_letter = DeadLetterSettings(exchange="market-data.dlx")

    with pytest.raises(ValueError, match="market-data.dlx"):
        async with init_dead_letter_producer(kafka, dead_letter):
            pass


def test_default_dead_letter_topic_is_outside_subscription() -> None:
    kafka = KafkaSettings()

    assert not topic_matches(DeadLetterSettings().exchange, kafka.exchange, kafka.routing_keys)
