"""Checking that the ledger topics exist with the expected partition counts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

_log = logging.getLogger(__name__)

LEDGER_TOPIC_PARTITIONS = 2
DIAL_TIMEOUT = 10.0


@dataclass
class TopicValidationConfig:
    """What is needed to inspect the ledger topics."""

    brokers: list[str] = field(default_factory=list)
    template: str = ""
    zones: list[str] = field(default_factory=list)
    public_topic: str = ""
    public_partitions: int = 0


def read_ledger_partitions(conn, topic: str) -> int:
    """Count the distinct partitions the connection reports for the topic."""
    try:
        partitions = conn.read_partitions(topic)
    except (OSError, RuntimeError, ValueError) as exc:
        raise RuntimeError(f"ledger topic {topic} metadata: {exc}") from exc
    return len({p.id for p in partitions if p.topic == topic})


def _close(conn, label: str) -> None:
    try:
        conn.close()
    except OSError as exc:
        _log.warning("%s err=%s", label, exc)


def _dial(connect, address: str, what: str):
    try:
        return connect(address, DIAL_TIMEOUT)
    except OSError as exc:
        raise ConnectionError(f"dial {what} {address}: {exc}") from exc


def validate_ledger_topics(config: TopicValidationConfig, connect) -> None:
    """Raise unless every zone topic and the public topic have the expected partitions.

    ``connect(address, timeout)`` opens a broker connection offering
    ``controller()`` (a ``(host, port)`` pair), ``read_partitions(topic)``
    (objects with ``topic`` and ``id``) and ``close()``.
    """
    if not config.brokers:
        raise ValueError("ledger topic validation requires at least one broker")
    if not config.zones:
        raise ValueError("ledger topic validation requires at least one zone")
    if not config.template.strip():
        raise ValueError("ledger topic validation requires a topic template")
    if not config.public_topic.strip():
        raise ValueError("ledger topic validation requires a public topic name")
    if config.public_partitions < 1:
        raise ValueError("ledger topic validation requires at least one public partition")

    conn = _dial(connect, config.brokers[0], "broker")
    try:
        try:
            host, port = conn.controller()
        except (OSError, RuntimeError, ValueError) as exc:
            raise RuntimeError(f"fetch controller metadata: {exc}") from exc
        admin = _dial(connect, f"{host}:{port}", "controller")
        try:
            _check_topics(config, admin)
        finally:
            _close(admin, "ledger_topic_admin_close")
    finally:
        _close(conn, "ledger_topic_validation_close")


def _check_topics(config: TopicValidationConfig, admin) -> None:
    for zone in config.zones:
        topic = config.template.replace("{zone}", zone)
        count = read_ledger_partitions(admin, topic)
        if count != LEDGER_TOPIC_PARTITIONS:
            raise RuntimeError(
                f"ledger topic {topic} has {count} partitions; expected "
                f"{LEDGER_TOPIC_PARTITIONS} (run topic-init before starting ledger)"
            )
        _log.info("ledger_topic_valid topic=%s partitions=%d", topic, count)
    public_count = read_ledger_partitions(admin, config.public_topic)
    if public_count != config.public_partitions:
        raise RuntimeError(
            f"public topic {config.public_topic} has {public_count} partitions; expected "
            f"{config.public_partitions} (check LEDGER_PUBLIC_PARTITIONS and rerun topic-init)"
        )
    _log.info("ledger_public_topic_valid topic=%s partitions=%d", config.public_topic, public_count)
    _log.info(
        "ledger_topics_validated zones=%d expected_partitions=%d publicTopic=%s publicPartitions=%d",
        len(config.zones), LEDGER_TOPIC_PARTITIONS, config.public_topic, config.public_partitions,
    )