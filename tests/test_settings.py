import importlib
import os
from types import ModuleType

import pytest

from market_persister.config.init_infra import build_delivery_policy, build_pool_sizing


def _reload_settings_with_env(
    monkeypatch: pytest.MonkeyPatch, env: dict[str, str | None]
) -> ModuleType:
    # Clear related envs first to avoid leakage across tests
    prefixes = ("KAFKA_", "CONSUMER_", "DLQ_", "DB_", "METRICS_", "APP_")
    for key in list(os.environ.keys()):
        if key.startswith(prefixes):
            monkeypatch.delenv(key, raising=False)

    # Apply desired env values
    for k, v in env.items():
        if v is None:
            monkeypatch.delenv(k, raising=False)
        else:
            monkeypatch.setenv(k, str(v))

    # Import and reload the settings module to reconstruct settings instances with new env
    import market_persister.config.settings as settings

    settings = importlib.reload(settings)
    return settings


def test_kafka_settings_defaults(monkeypatch: pytest.MonkeyPatch):
    settings = _reload_settings_with_env(monkeypatch, {})

    assert settings.kafka_settings.bootstrap_servers == "localhost:9092"
    assert settings.kafka_settings.exchange == "market-data"
    assert settings.kafka_settings.queue == "market-data.persist"
    assert settings.kafka_settings.routing_keys == (
        "*.ticker.#",
        "*.trade.#",
        "*.orderbook.#",
    )
    assert settings.kafka_settings.auto_offset_reset == "earliest"


def test_kafka_settings_env_override(monkeypatch: pytest.MonkeyPatch):
    settings = _reload_settings_with_env(
        monkeypatch,
        {
            "KAFKA_BOOTSTRAP_SERVERS": "kafka1:19092,kafka2:19093",
            "KAFKA_EXCHANGE": "md",
            "KAFKA_QUEUE": "md.persist",
            "KAFKA_ROUTING_KEY_TRADE": "upbit.trade.*",
        },
    )

    assert settings.kafka_settings.bootstrap_servers == "kafka1:19092,kafka2:19093"
    assert settings.kafka_settings.exchange == "md"
    assert settings.kafka_settings.queue == "md.persist"
    assert settings.kafka_settings.routing_keys[1] == "upbit.trade.*"


def test_consumer_settings_defaults(monkeypatch: pytest.MonkeyPatch):
    settings = _reload_settings_with_env(monkeypatch, {})
    consumer = settings.consumer_settings

    assert consumer.concurrent_consumers == 2
    assert consumer.max_concurrent_consumers == 4
    assert consumer.prefetch_count == 50
    assert consumer.retry_max_attempts == 3
    assert consumer.dead_letter_enabled is True
    assert consumer.nack_requeue is True


def test_consumer_settings_env_override(monkeypatch: pytest.MonkeyPatch):
    settings = _reload_settings_with_env(
        monkeypatch,
        {
            "CONSUMER_PREFETCH_COUNT": "100",
            "CONSUMER_RETRY_MAX_ATTEMPTS": "5",
            "CONSUMER_DEAD_LETTER_ENABLED": "false",
            "CONSUMER_NACK_REQUEUE": "false",
        },
    )
    consumer = settings.consumer_settings

    assert consumer.prefetch_count == 100
    assert consumer.retry_max_attempts == 5
    assert consumer.dead_letter_enabled is False
    assert consumer.nack_requeue is False


def test_consumer_settings_reject_invalid_values(monkeypatch: pytest.MonkeyPatch):
    from pydantic import ValidationError

    settings = _reload_settings_with_env(monkeypatch, {})
    monkeypatch.setenv("CONSUMER_PREFETCH_COUNT", "0")

    with pytest.raises(ValidationError):
        settings.ConsumerSettings()


def test_dead_letter_and_database_defaults(monkeypatch: pytest.MonkeyPatch):
    settings = _reload_settings_with_env(monkeypatch, {"DB_URL": "sqlite+aiosqlite:///:memory:"})

    assert settings.dead_letter_settings.exchange == "market-data.dlx"
    assert settings.dead_letter_settings.routing_key == "market-data.persist.dlq"
    assert settings.database_settings.url == "sqlite+aiosqlite:///:memory:"
    assert settings.database_settings.create_schema is False


def test_delivery_policy_converts_milliseconds(monkeypatch: pytest.MonkeyPatch):
    settings = _reload_settings_with_env(
        monkeypatch,
        {
            "CONSUMER_RETRY_INITIAL_BACKOFF_MS": "250",
            "CONSUMER_RETRY_MAX_BACKOFF_MS": "4000",
        },
    )
    policy = build_delivery_policy(settings.consumer_settings)

    assert policy.retry.initial_backoff == pytest.approx(0.25)
    assert policy.retry.max_backoff == pytest.approx(4.0)
    assert policy.retry.max_attempts == 3
    assert policy.dead_letter_enabled is True


def test_pool_sizing_clamps_max_to_min(monkeypatch: pytest.MonkeyPatch):
    settings = _reload_settings_with_env(
        monkeypatch,
        {
            "CONSUMER_CONCURRENT_CONSUMERS": "6",
            "CONSUMER_MAX_CONCURRENT_CONSUMERS": "3",
        },
    )
    sizing = build_pool_sizing(settings.consumer_settings)

    assert sizing.min_workers == 6
    assert sizing.max_workers == 6
