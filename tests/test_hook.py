import queue
from datetime import datetime, timezone

import pytest

from zoneledger import metrics
from zoneledger.epoch import Epoch
from zoneledger.hook import PublisherHook, transform_matched_transaction
from zoneledger.models import AggregatedEpoch, MAPELedgerEvent, Transaction
from zoneledger.publisher import KeyMode, Partitioner, Publisher, PublisherConfig
from zoneledger.storage import BlockMetadata


class RecordingWriter:
    def __init__(self):
        self.messages = queue.Queue()

    def write_messages(self, *msgs):
        for msg in msgs:
            self.messages.put(msg)

    def close(self):
        pass


def make_tx(summary=None):
    return Transaction(
        zone_id="zone-1",
        epoch_index=42,
        matched_at=datetime.now(timezone.utc),
        aggregator=AggregatedEpoch(summary=summary),
        mape=MAPELedgerEvent(planned="cool", target_c=21.5, delta_c=0.8, fan=2),
    )


def make_publisher(writer):
    config = PublisherConfig(
        enabled=True,
        topic="ledger.public.epochs",
        brokers=["kafka:9092"],
        acks=-1,
        partitioner=Partitioner.HASH,
        key_mode=KeyMode.ZONE,
        schema_version="v1",
    )
    return Publisher(config, writer, writer)


def test_transform_success():
    summary = {"targetC": 21.5, "avgTemp": 22.0}
    meta = BlockMetadata(height=7, header_hash="abc123", data_hash="def456")
    epoch = transform_matched_transaction(make_tx(summary), meta)
    assert epoch.zone_id == "zone-1"
    assert epoch.epoch_index == 42
    assert epoch.block.height == 7
    assert epoch.block.header_hash == "abc123"
    assert epoch.block.data_hash == "def456"
    assert epoch.aggregator.summary["targetC"] == 21.5
    assert epoch.aggregator.summary["avgTemp"] == 22.0
    summary["targetC"] = 99.0
    assert epoch.aggregator.summary["targetC"] != 99.0
    assert epoch.mape.planned == "cool"
    assert epoch.mape.target_c == 21.5
    assert epoch.mape.delta_c == 0.8
    assert epoch.mape.fan == 2


def test_transform_errors():
    with pytest.raises(ValueError, match="transaction must not be nil"):
        transform_matched_transaction(None, BlockMetadata())
    tx = Transaction(zone_id="zone", epoch_index=1, matched_at=datetime.now(timezone.utc))
    with pytest.raises(ValueError):
        transform_matched_transaction(tx, BlockMetadata(height=1))


def test_hook_publishes_finalized_epoch():
    writer = RecordingWriter()
    publisher = make_publisher(writer)
    publisher.start()
    hook = PublisherHook(publisher)
    try:
        hook.on_epoch_finalized(
            make_tx({"targetC": 21.5}),
            BlockMetadata(height=7, header_hash="abc123", data_hash="def456"),
        )
        msg = writer.messages.get(timeout=2)
    finally:
        publisher.stop(timeout=5)
    assert msg.key == b"zone-1"
    decoded = Epoch.from_json(msg.value)
    assert decoded.block.height == 7
    assert decoded.epoch_index == 42
    assert decoded.mape.planned == "cool"


def test_hook_counts_transform_failure():
    metrics.reset()
    writer = RecordingWriter()
    publisher = make_publisher(writer)
    publisher.start()
    hook = PublisherHook(publisher)
    try:
        hook.on_epoch_finalized(make_tx(), BlockMetadata(height=1))
    finally:
        publisher.stop(timeout=5)
    assert 'ledger_public_publish_total{result="fail"} 1' in metrics.render()
    assert writer.messages.empty()