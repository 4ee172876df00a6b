import hashlib
import json
from datetime import datetime, timedelta, timezone

import pytest

from zoneledger.models import (
    BLOCK_VERSION_V2,
    TRANSACTION_SCHEMA_VERSION_V1,
    AggregatedEpoch,
    AggregatedReading,
    BlockDataV2,
    BlockHeaderV2,
    BlockV2,
    EpochWindow,
    Event,
    KafkaMessage,
    MAPELedgerEvent,
    MatchRecord,
    Transaction,
    compute_data_hash_v2,
    compute_header_hash_v2,
    dumps,
    format_time,
    merkle_root,
    parse_time,
)

MATCHED = datetime(2024, 2, 2, 15, 4, 5, tzinfo=timezone.utc)


def sample_transaction(matched=MATCHED):
    return Transaction(
        type="epoch.match",
        schema_version=TRANSACTION_SCHEMA_VERSION_V1,
        zone_id="ZoneA",
        epoch_index=7,
        aggregator=AggregatedEpoch(
            schema_version="v1",
            zone_id="ZoneA",
            epoch=EpochWindow(
                start=matched - timedelta(minutes=5),
                end=matched,
                index=7,
                len=timedelta(minutes=5),
            ),
            by_device={
                "sensor-1": [
                    AggregatedReading(
                        device_id="sensor-1",
                        zone_id="ZoneA",
                        device_type="thermometer",
                        timestamp=matched - timedelta(minutes=3),
                    )
                ]
            },
            summary={"targetC": 20.5},
            produced_at=matched - timedelta(seconds=30),
        ),
        aggregator_received_at=matched - timedelta(seconds=2),
        mape=MAPELedgerEvent(
            schema_version="v1",
            epoch_index=7,
            zone_id="ZoneA",
            planned="hold",
            target_c=20.5,
            timestamp=1706886245000,
        ),
        mape_received_at=matched - timedelta(seconds=1),
        matched_at=matched,
        prev_hash="abc123",
    )


def test_transaction_canonical_round_trip():
    tx = sample_transaction()
    tx.hash = tx.compute_hash()
    first = compute_data_hash_v2([tx])
    payload = dumps(BlockDataV2(transactions=[tx]).to_dict())
    decoded = BlockDataV2.from_dict(json.loads(payload))
    second = compute_data_hash_v2(decoded.transactions)
    assert first == second
    assert len(first) == 64


def test_transaction_dict_round_trip_is_equal():
    tx = sample_transaction()
    tx.hash = tx.compute_hash()
    assert Transaction.from_dict(json.loads(dumps(tx.to_dict()))) == tx


def test_single_leaf_data_hash_is_transaction_digest():
    tx = sample_transaction()
    assert compute_data_hash_v2([tx]) == hashlib.sha256(tx.canonical_json()).hexdigest()


def test_canonical_json_field_order():
    keys = list(json.loads(sample_transaction().canonical_json()))
    assert keys == [
        "type",
        "schemaVersion",
        "zoneId",
        "epochIndex",
        "aggregator",
        "aggregatorReceivedAt",
        "mape",
        "mapeReceivedAt",
        "matchedAt",
        "prevHash",
    ]


def test_hash_ignores_timezone_of_timestamps():
    plus_two = timezone(timedelta(hours=2))
    utc_tx = sample_transaction()
    local_tx = sample_transaction(MATCHED.astimezone(plus_two))
    assert local_tx.compute_hash() == utc_tx.compute_hash()
    assert b'"matchedAt":"2024-02-02T15:04:05Z"' in local_tx.canonical_json()


def test_hash_excludes_id_and_hash_but_covers_prev_hash():
    tx = sample_transaction()
    original = tx.compute_hash()
    tx.id = 99
    tx.hash = "deadbeef"
    assert tx.compute_hash() == original
    tx.prev_hash = "other"
    assert tx.compute_hash() != original


def test_to_dict_keeps_offset_and_clone_converts_to_utc():
    tx = sample_transaction(MATCHED.astimezone(timezone(timedelta(hours=2))))
    assert tx.to_dict()["matchedAt"] == "2024-02-02T17:04:05+02:00"
    assert tx.clone().to_dict()["matchedAt"] == "2024-02-02T15:04:05Z"


def test_clone_is_independent():
    tx = sample_transaction()
    cp = tx.clone()
    cp.aggregator.summary["targetC"] = 99.0
    cp.aggregator.by_device["sensor-1"][0].device_type = "changed"
    cp.mape.planned = "heat"
    assert tx.aggregator.summary["targetC"] == 20.5
    assert tx.aggregator.by_device["sensor-1"][0].device_type == "thermometer"
    assert tx.mape.planned == "hold"


def test_match_record_round_trip():
    record = sample_transaction().match_record()
    assert record.zone_id == "ZoneA"
    assert record.epoch_index == 7
    assert MatchRecord.from_dict(json.loads(dumps(record.to_dict()))) == record


def test_epoch_window_length_is_nanoseconds():
    window = EpochWindow(index=3, len=timedelta(minutes=5))
    assert window.to_dict()["len"] == 300_000_000_000
    assert EpochWindow.from_dict(window.to_dict()).len == timedelta(minutes=5)


def test_reading_omits_missing_optionals():
    reading = AggregatedReading(device_id="dev-1", temperature=21.5)
    data = reading.to_dict()
    assert "temperature" in data
    assert "powerW" not in data
    assert "actuatorState" not in data
    assert AggregatedReading.from_dict(data) == reading


def test_aggregated_epoch_sorts_map_keys_and_keeps_null():
    agg = AggregatedEpoch(summary={"b": 1.0, "a": 2.0})
    encoded = dumps(agg.to_dict())
    assert '"byDevice":null' in encoded
    assert '"summary":{"a":2,"b":1}' in encoded


def test_event_hash_and_round_trip():
    ev = Event(
        id=1,
        type="legacy",
        zone_id="Z0",
        timestamp=MATCHED,
        source="test",
        payload={"x": "<a>"},
    )
    ev.hash = ev.compute_hash()
    restored = Event.from_dict(json.loads(dumps(ev.to_dict())))
    assert restored == ev
    assert restored.compute_hash() == ev.hash
    shifted = Event.from_dict(ev.to_dict())
    shifted.timestamp = MATCHED.astimezone(timezone(timedelta(hours=-8)))
    assert shifted.compute_hash() == ev.hash
    shifted.prev_hash = "x"
    assert shifted.compute_hash() != ev.hash


def test_event_canonical_json_uses_utc():
    ev = Event(id=2, timestamp=MATCHED.astimezone(timezone(timedelta(hours=3))))
    decoded = json.loads(ev.canonical_json())
    assert decoded["timestamp"] == "2024-02-02T15:04:05Z"
    assert decoded["payload"] is None


def test_header_hash_ignores_header_hash_field():
    header = BlockHeaderV2(version=BLOCK_VERSION_V2, height=1, timestamp=MATCHED, nonce="00ff")
    first = compute_header_hash_v2(header)
    header.header_hash = "something"
    assert compute_header_hash_v2(header) == first
    header.nonce = "11ee"
    assert compute_header_hash_v2(header) != first


def test_header_hash_requires_header():
    with pytest.raises(ValueError, match="nil header"):
        compute_header_hash_v2(None)


def test_block_round_trip_and_validate():
    tx = sample_transaction()
    block = BlockV2(
        header=BlockHeaderV2(version=BLOCK_VERSION_V2, timestamp=MATCHED),
        data=BlockDataV2(transactions=[tx]),
    )
    block.validate()
    restored = BlockV2.from_dict(json.loads(block.to_json()))
    assert restored == block


@pytest.mark.parametrize(
    "block, message",
    [
        (BlockV2(header=BlockHeaderV2(version="v1")), "unsupported block version"),
        (BlockV2(header=BlockHeaderV2(version=BLOCK_VERSION_V2)), "at least one transaction"),
        (
            BlockV2(header=BlockHeaderV2(version=BLOCK_VERSION_V2), data=BlockDataV2([None])),
            "nil transaction",
        ),
        (
            BlockV2(
                header=BlockHeaderV2(version=BLOCK_VERSION_V2),
                data=BlockDataV2([Transaction(schema_version="vX")]),
            ),
            "unsupported transaction schema version: vX",
        ),
    ],
)
def test_block_validate_errors(block, message):
    with pytest.raises(ValueError, match=message):
        block.validate()


def test_data_hash_errors():
    with pytest.raises(ValueError, match="at least one transaction"):
        compute_data_hash_v2([])
    with pytest.raises(ValueError, match="nil transaction"):
        compute_data_hash_v2([None])


def test_merkle_root_properties():
    a, b, c = (hashlib.sha256(x).digest() for x in (b"a", b"b", b"c"))
    assert merkle_root([a]) == a
    assert merkle_root([a, b, c]) == merkle_root([a, b, c, c])
    assert merkle_root([a, b]) != merkle_root([b, a])
    assert len(merkle_root([a, b, c])) == 32
    with pytest.raises(ValueError):
        merkle_root([])


@pytest.mark.parametrize(
    "value, expected",
    [
        ({"a": 1.0}, '{"a":1}'),
        ("<&>", '"\\u003c\\u0026\\u003e"'),
        (1e21, "1e+21"),
        (1e-7, "1e-7"),
        ([True, None, 2.5], "[true,null,2.5]"),
    ],
)
def test_dumps_number_and_string_format(value, expected):
    assert dumps(value) == expected


def test_dumps_rejects_nan_and_unknown_types():
    with pytest.raises(ValueError):
        dumps(float("nan"))
    with pytest.raises(TypeError):
        dumps(object())


def test_format_and_parse_time():
    assert format_time(None) == "0001-01-01T00:00:00Z"
    assert format_time(MATCHED) == "2024-02-02T15:04:05Z"
    assert format_time(MATCHED.replace(microsecond=500000)) == "2024-02-02T15:04:05.5Z"
    assert parse_time("2024-02-02T15:04:05Z") == MATCHED
    assert parse_time("0001-01-01T00:00:00Z") is None
    with pytest.raises(ValueError):
        parse_time("not a time")


def test_kafka_message_defaults():
    msg = KafkaMessage(partition=1, offset=5, value=b"{}")
    assert (msg.partition, msg.offset, msg.key, msg.value) == (1, 5, None, b"{}")