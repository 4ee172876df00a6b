from types import SimpleNamespace

import pytest

from zoneledger.topics import (
    LEDGER_TOPIC_PARTITIONS,
    TopicValidationConfig,
    read_ledger_partitions,
    validate_ledger_topics,
)


def partitions(topic, count):
    return [SimpleNamespace(topic=topic, id=i) for i in range(count)]


class FakeConn:
    def __init__(self, address, layout):
        self.address = address
        self.layout = layout
        self.closed = False

    def controller(self):
        return ("controller", 9093)

    def read_partitions(self, topic):
        if topic not in self.layout:
            raise RuntimeError("unknown topic")
        return self.layout[topic]

    def close(self):
        self.closed = True


class Connector:
    def __init__(self, layout, fail=()):
        self.layout = layout
        self.fail = set(fail)
        self.opened = []

    def __call__(self, address, timeout):
        if address in self.fail:
            raise ConnectionRefusedError("refused")
        conn = FakeConn(address, self.layout)
        self.opened.append(conn)
        return conn


def make_config(**overrides):
    values = dict(
        brokers=["kafka:9092"],
        template="zone.ledger.{zone}",
        zones=["zone-A", "zone-B"],
        public_topic="ledger.public.epochs",
        public_partitions=3,
    )
    values.update(overrides)
    return TopicValidationConfig(**values)


def good_layout():
    return {
        "zone.ledger.zone-A": partitions("zone.ledger.zone-A", 2),
        "zone.ledger.zone-B": partitions("zone.ledger.zone-B", 2),
        "ledger.public.epochs": partitions("ledger.public.epochs", 3),
    }


def test_valid_layout_passes_and_closes_connections():
    connect = Connector(good_layout())
    validate_ledger_topics(make_config(), connect)
    assert [c.address for c in connect.opened] == ["kafka:9092", "controller:9093"]
    assert all(c.closed for c in connect.opened)


def test_zone_topic_with_wrong_partition_count_fails():
    layout = good_layout()
    layout["zone.ledger.zone-B"] = partitions("zone.ledger.zone-B", 1)
    connect = Connector(layout)
    with pytest.raises(RuntimeError, match="zone.ledger.zone-B has 1 partitions; expected 2"):
        validate_ledger_topics(make_config(), connect)
    assert all(c.closed for c in connect.opened)


def test_public_topic_with_wrong_partition_count_fails():
    with pytest.raises(RuntimeError, match="public topic ledger.public.epochs has 3 partitions; expected 4"):
        validate_ledger_topics(make_config(public_partitions=4), Connector(good_layout()))


def test_missing_topic_reports_metadata_error():
    layout = good_layout()
    del layout["zone.ledger.zone-A"]
    with pytest.raises(RuntimeError, match="ledger topic zone.ledger.zone-A metadata"):
        validate_ledger_topics(make_config(), Connector(layout))


def test_broker_dial_failure_is_reported():
    with pytest.raises(ConnectionError, match="dial broker kafka:9092"):
        validate_ledger_topics(make_config(), Connector(good_layout(), fail={"kafka:9092"}))


def test_controller_dial_failure_closes_broker_connection():
    connect = Connector(good_layout(), fail={"controller:9093"})
    with pytest.raises(ConnectionError, match="dial controller controller:9093"):
        validate_ledger_topics(make_config(), connect)
    assert connect.opened[0].closed


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"brokers": []}, "at least one broker"),
        ({"zones": []}, "at least one zone"),
        ({"template": " "}, "requires a topic template"),
        ({"public_topic": ""}, "requires a public topic name"),
        ({"public_partitions": 0}, "at least one public partition"),
    ],
)
def test_incomplete_config_is_rejected(overrides, message):
    connect = Connector(good_layout())
    with pytest.raises(ValueError, match=message):
        validate_ledger_topics(make_config(**overrides), connect)
    assert connect.opened == []


def test_read_partitions_counts_distinct_ids_of_topic_only():
    conn = FakeConn("x", {
        "t": [
            SimpleNamespace(topic="t", id=0),
            SimpleNamespace(topic="t", id=0),
            SimpleNamespace(topic="t", id=1),
            SimpleNamespace(topic="other", id=5),
        ]
    })
    assert read_ledger_partitions(conn, "t") == LEDGER_TOPIC_PARTITIONS