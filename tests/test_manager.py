import json
import queue
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from zoneledger.manager import IngestConfig, start
from zoneledger.models import (
    AggregatedEpoch,
    EpochWindow,
    KafkaMessage,
    MAPELedgerEvent,
)
from zoneledger.storage import FileLedger


class FakeReader:
    def __init__(self, topic):
        self.topic = topic
        self.messages = queue.Queue()
        self.commits = []
        self.closed = False
        self._lock = threading.Lock()

    def fetch_message(self, timeout):
        try:
            return self.messages.get(timeout=min(timeout, 0.02))
        except queue.Empty:
            raise TimeoutError("idle") from None

    def commit_messages(self, *messages):
        with self._lock:
            self.commits.extend(messages)

    def close(self):
        self.closed = True


class ReaderFactory:
    def __init__(self):
        self.readers = {}

    def __call__(self, topic, config):
        reader = FakeReader(topic)
        self.readers[topic] = reader
        return reader


def aggregator_message(zone, index, offset):
    start_at = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    agg = AggregatedEpoch(
        schema_version="v1",
        zone_id=zone,
        epoch=EpochWindow(
            start=start_at,
            end=start_at + timedelta(minutes=1),
            index=index,
            len=timedelta(minutes=1),
        ),
        by_device={},
        summary={"targetC": 21.0},
        produced_at=start_at,
    )
    return KafkaMessage(partition=0, offset=offset, value=json.dumps(agg.to_dict()).encode())


def mape_message(zone, index, offset):
    led = MAPELedgerEvent(
        schema_version="v1",
        epoch_index=index,
        zone_id=zone,
        planned="cool",
        target_c=21.0,
        hyst_c=0.5,
        delta_c=1.0,
        fan=2,
        start="2024-01-01T12:00:00Z",
        end="2024-01-01T12:01:00Z",
        timestamp=1704110400000,
    )
    return KafkaMessage(partition=1, offset=offset, value=json.dumps(led.to_dict()).encode())


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def ledger(tmp_path):
    with FileLedger(tmp_path / "ledger.jsonl") as st:
        yield st


def config(**overrides):
    values = dict(
        brokers=["kafka:9092"],
        group_id="ledger",
        topic_template="zone.ledger.{zone}",
        zones=["zone-A"],
        grace_period=0.05,
        buffer_max_epochs=10,
    )
    values.update(overrides)
    return IngestConfig(**values)


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"brokers": []}, "no kafka brokers configured"),
        ({"topic_template": "  "}, "topic template must not be empty"),
        ({"zones": []}, "no zones configured"),
    ],
)
def test_start_rejects_incomplete_config(ledger, overrides, message):
    with pytest.raises(ValueError, match=message):
        start(config(**overrides), ledger, ReaderFactory())


def test_start_requires_storage():
    with pytest.raises(ValueError, match="storage must not be nil"):
        start(config(), None, ReaderFactory())


def test_topic_template_is_expanded_per_zone(ledger):
    factory = ReaderFactory()
    manager = start(config(zones=["zone-A", "zone-B"]), ledger, factory)
    try:
        assert sorted(factory.readers) == ["zone.ledger.zone-A", "zone.ledger.zone-B"]
        assert [c.zone for c in manager.consumers] == ["zone-A", "zone-B"]
    finally:
        manager.stop()
        assert manager.wait(5)


def test_matched_epoch_is_committed_and_acknowledged(ledger):
    factory = ReaderFactory()
    manager = start(config(), ledger, factory)
    reader = factory.readers["zone.ledger.zone-A"]
    reader.messages.put(aggregator_message("zone-A", 1, 10))
    reader.messages.put(mape_message("zone-A", 1, 11))
    assert wait_for(lambda: ledger.query(zone_id="zone-A")[1] == 1)
    assert wait_for(lambda: len(reader.commits) == 2)
    manager.stop()
    assert manager.wait(5)
    assert reader.closed
    assert sorted(m.offset for m in reader.commits) == [10, 11]


def test_stop_forces_pending_epochs_with_imputation(ledger):
    factory = ReaderFactory()
    manager = start(config(grace_period=30.0), ledger, factory)
    reader = factory.readers["zone.ledger.zone-A"]
    reader.messages.put(aggregator_message("zone-A", 4, 3))
    assert wait_for(lambda: reader.messages.empty())
    time.sleep(0.05)
    manager.stop()
    assert manager.wait(5)
    events, total = ledger.query(zone_id="zone-A")
    assert total == 1
    assert events[0].payload["mape"]["planned"] == "hold"
    assert [m.offset for m in reader.commits] == [3]