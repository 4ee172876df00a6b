"""Ledger records, blocks and the hashing that chains them together."""

from __future__ import annotations

import copy
import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from .epoch import _field, _format_time, _json_number, _json_string, _mapping, _parse_time

BLOCK_VERSION_V2 = "v2"
BLOCK_NONCE_BYTES = 16
TRANSACTION_SCHEMA_VERSION_V1 = "v1"

_NS_PER_SECOND = 1_000_000_000


def format_time(value: datetime | None) -> str:
    """Format a timestamp as RFC 3339 with trimmed fractional seconds; None is the zero time."""
    return _format_time(value)


def parse_time(text: str) -> datetime | None:
    """Parse an RFC 3339 timestamp; the zero time comes back as None."""
    return _parse_time(text)


def dumps(value: Any) -> str:
    """Encode a value as compact JSON, keeping dict order and fixed number formatting."""
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _json_number(value)
    if isinstance(value, str):
        return _json_string(value)
    if isinstance(value, datetime):
        return _json_string(format_time(value))
    if isinstance(value, timedelta):
        return str(_nanoseconds(value))
    if isinstance(value, dict):
        items = []
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"object keys must be strings, not {type(key).__name__}")
            items.append(f"{_json_string(key)}:{dumps(item)}")
        return "{" + ",".join(items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(dumps(item) for item in value) + "]"
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


def _sha256_hex(payload: str | bytes) -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _nanoseconds(value: timedelta) -> int:
    return (value.days * 86_400 + value.seconds) * _NS_PER_SECOND + value.microseconds * 1_000


def _duration(ns: int) -> timedelta:
    if ns < 0:
        return -timedelta(microseconds=(-ns) // 1_000)
    return timedelta(microseconds=ns // 1_000)


def _time_field(data: dict, key: str) -> datetime | None:
    raw = _field(data, key, str, None)
    return parse_time(raw) if raw is not None else None


def _sub_mapping(data: dict, key: str) -> dict:
    return _mapping(data.get(key) or {}, key)


@dataclass
class KafkaMessage:
    """A record read from or written to a topic partition."""

    topic: str = ""
    partition: int = 0
    offset: int = 0
    key: bytes | None = None
    value: bytes = b""


@dataclass
class Event:
    """A ledger entry as served to readers; payload holds decoded JSON."""

    id: int = 0
    type: str = ""
    zone_id: str = ""
    timestamp: datetime | None = None
    source: str = ""
    correlation_id: str = ""
    payload: Any = None
    prev_hash: str = ""
    hash: str = ""

    def compute_hash(self) -> str:
        """Hash every field except id and hash, with the timestamp in UTC."""
        body = {
            "type": self.type,
            "zoneId": self.zone_id,
            "timestamp": format_time(_utc(self.timestamp)),
            "source": self.source,
            "correlationId": self.correlation_id,
            "payload": self.payload,
            "prevHash": self.prev_hash,
        }
        return _sha256_hex(dumps(body))

    def canonical_json(self) -> bytes:
        """Encode the whole event with its timestamp in UTC."""
        data = self.to_dict()
        data["timestamp"] = format_time(_utc(self.timestamp))
        return dumps(data).encode("utf-8")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "zoneId": self.zone_id,
            "timestamp": format_time(self.timestamp),
            "source": self.source,
            "correlationId": self.correlation_id,
            "payload": copy.deepcopy(self.payload),
            "prevHash": self.prev_hash,
            "hash": self.hash,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Event:
        data = _mapping(data, "event")
        return cls(
            id=_field(data, "id", int, 0),
            type=_field(data, "type", str, ""),
            zone_id=_field(data, "zoneId", str, ""),
            timestamp=_time_field(data, "timestamp"),
            source=_field(data, "source", str, ""),
            correlation_id=_field(data, "correlationId", str, ""),
            payload=copy.deepcopy(data.get("payload")),
            prev_hash=_field(data, "prevHash", str, ""),
            hash=_field(data, "hash", str, ""),
        )


@dataclass
class EpochWindow:
    """The time span and index of one epoch."""

    start: datetime | None = None
    end: datetime | None = None
    index: int = 0
    len: timedelta = field(default_factory=timedelta)

    def canonical(self) -> EpochWindow:
        return replace(self, start=_utc(self.start), end=_utc(self.end))

    def to_dict(self) -> dict:
        return {
            "start": format_time(self.start),
            "end": format_time(self.end),
            "index": self.index,
            "len": _nanoseconds(self.len),
        }

    @classmethod
    def from_dict(cls, data: dict) -> EpochWindow:
        data = _mapping(data, "epoch")
        return cls(
            start=_time_field(data, "start"),
            end=_time_field(data, "end"),
            index=_field(data, "index", int, 0),
            len=_duration(_field(data, "len", int, 0)),
        )


@dataclass
class AggregatedReading:
    """One device reading within an aggregated epoch."""

    device_id: str = ""
    zone_id: str = ""
    device_type: str = ""
    timestamp: datetime | None = None
    temperature: float | None = None
    actuator_state: str | None = None
    power_w: float | None = None
    energy_kwh: float | None = None

    def to_dict(self) -> dict:
        out: dict[str, Any] = {
            "deviceId": self.device_id,
            "zoneId": self.zone_id,
            "deviceType": self.device_type,
            "timestamp": format_time(self.timestamp),
        }
        optional = (
            ("temperature", self.temperature),
            ("actuatorState", self.actuator_state),
            ("powerW", self.power_w),
            ("energyKWh", self.energy_kwh),
        )
        out.update((key, value) for key, value in optional if value is not None)
        return out

    @classmethod
    def from_dict(cls, data: dict) -> AggregatedReading:
        data = _mapping(data, "reading")
        return cls(
            device_id=_field(data, "deviceId", str, ""),
            zone_id=_field(data, "zoneId", str, ""),
            device_type=_field(data, "deviceType", str, ""),
            timestamp=_time_field(data, "timestamp"),
            temperature=_field(data, "temperature", float, None),
            actuator_state=_field(data, "actuatorState", str, None),
            power_w=_field(data, "powerW", float, None),
            energy_kwh=_field(data, "energyKWh", float, None),
        )


@dataclass
class AggregatedEpoch:
    """The aggregator's summary of one zone epoch."""

    schema_version: str = ""
    zone_id: str = ""
    epoch: EpochWindow = field(default_factory=EpochWindow)
    by_device: dict[str, list[AggregatedReading]] | None = None
    summary: dict[str, float] | None = None
    produced_at: datetime | None = None

    def canonical(self) -> AggregatedEpoch:
        """Return an independent copy with every timestamp in UTC."""
        by_device = None
        if self.by_device is not None:
            by_device = {
                key: [replace(reading, timestamp=_utc(reading.timestamp)) for reading in readings]
                for key, readings in self.by_device.items()
            }
        return replace(
            self,
            epoch=self.epoch.canonical(),
            by_device=by_device,
            summary=dict(self.summary) if self.summary is not None else None,
            produced_at=_utc(self.produced_at),
        )

    def to_dict(self) -> dict:
        by_device = None
        if self.by_device is not None:
            by_device = {
                key: [reading.to_dict() for reading in self.by_device[key]]
                for key in sorted(self.by_device)
            }
        summary = None
        if self.summary is not None:
            summary = {key: self.summary[key] for key in sorted(self.summary)}
        return {
            "schemaVersion": self.schema_version,
            "zoneId": self.zone_id,
            "epoch": self.epoch.to_dict(),
            "byDevice": by_device,
            "summary": summary,
            "producedAt": format_time(self.produced_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> AggregatedEpoch:
        data = _mapping(data, "aggregator")
        by_device = None
        raw_devices = data.get("byDevice")
        if raw_devices is not None:
            raw_devices = _mapping(raw_devices, "byDevice")
            by_device = {}
            for key, readings in raw_devices.items():
                readings = readings or []
                if not isinstance(readings, list):
                    raise ValueError(f"byDevice.{key}: expected a list")
                by_device[key] = [AggregatedReading.from_dict(item) for item in readings]
        summary = None
        raw_summary = data.get("summary")
        if raw_summary is not None:
            raw_summary = _mapping(raw_summary, "summary")
            summary = {key: _field(raw_summary, key, float, 0.0) for key in raw_summary}
        return cls(
            schema_version=_field(data, "schemaVersion", str, ""),
            zone_id=_field(data, "zoneId", str, ""),
            epoch=EpochWindow.from_dict(_sub_mapping(data, "epoch")),
            by_device=by_device,
            summary=summary,
            produced_at=_time_field(data, "producedAt"),
        )


@dataclass
class MAPELedgerEvent:
    """The planner's decision for one zone epoch."""

    schema_version: str = ""
    epoch_index: int = 0
    zone_id: str = ""
    planned: str = ""
    target_c: float = 0.0
    hyst_c: float = 0.0
    delta_c: float = 0.0
    fan: int = 0
    start: str = ""
    end: str = ""
    timestamp: int = 0

    def to_dict(self) -> dict:
        return {
            "schemaVersion": self.schema_version,
            "epochIndex": self.epoch_index,
            "zoneId": self.zone_id,
            "planned": self.planned,
            "targetC": float(self.target_c),
            "hysteresisC": float(self.hyst_c),
            "deltaC": float(self.delta_c),
            "fan": self.fan,
            "epochStart": self.start,
            "epochEnd": self.end,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> MAPELedgerEvent:
        data = _mapping(data, "mape")
        return cls(
            schema_version=_field(data, "schemaVersion", str, ""),
            epoch_index=_field(data, "epochIndex", int, 0),
            zone_id=_field(data, "zoneId", str, ""),
            planned=_field(data, "planned", str, ""),
            target_c=_field(data, "targetC", float, 0.0),
            hyst_c=_field(data, "hysteresisC", float, 0.0),
            delta_c=_field(data, "deltaC", float, 0.0),
            fan=_field(data, "fan", int, 0),
            start=_field(data, "epochStart", str, ""),
            end=_field(data, "epochEnd", str, ""),
            timestamp=_field(data, "timestamp", int, 0),
        )


@dataclass
class MatchRecord:
    """Both sides of a matched epoch, as stored in an event payload."""

    zone_id: str = ""
    epoch_index: int = 0
    aggregator: AggregatedEpoch = field(default_factory=AggregatedEpoch)
    aggregator_received_at: datetime | None = None
    mape: MAPELedgerEvent = field(default_factory=MAPELedgerEvent)
    mape_received_at: datetime | None = None
    matched_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "zoneId": self.zone_id,
            "epochIndex": self.epoch_index,
            "aggregator": self.aggregator.to_dict(),
            "aggregatorReceivedAt": format_time(self.aggregator_received_at),
            "mape": self.mape.to_dict(),
            "mapeReceivedAt": format_time(self.mape_received_at),
            "matchedAt": format_time(self.matched_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> MatchRecord:
        data = _mapping(data, "match record")
        return cls(
            zone_id=_field(data, "zoneId", str, ""),
            epoch_index=_field(data, "epochIndex", int, 0),
            aggregator=AggregatedEpoch.from_dict(_sub_mapping(data, "aggregator")),
            aggregator_received_at=_time_field(data, "aggregatorReceivedAt"),
            mape=MAPELedgerEvent.from_dict(_sub_mapping(data, "mape")),
            mape_received_at=_time_field(data, "mapeReceivedAt"),
            matched_at=_time_field(data, "matchedAt"),
        )


@dataclass
class Transaction:
    """A matched epoch chained into the ledger by hash."""

    id: int = 0
    type: str = ""
    schema_version: str = ""
    zone_id: str = ""
    epoch_index: int = 0
    aggregator: AggregatedEpoch = field(default_factory=AggregatedEpoch)
    aggregator_received_at: datetime | None = None
    mape: MAPELedgerEvent = field(default_factory=MAPELedgerEvent)
    mape_received_at: datetime | None = None
    matched_at: datetime | None = None
    prev_hash: str = ""
    hash: str = ""

    def match_record(self) -> MatchRecord:
        """Return the payload view of this transaction in UTC."""
        return MatchRecord(
            zone_id=self.zone_id,
            epoch_index=self.epoch_index,
            aggregator=self.aggregator.canonical(),
            aggregator_received_at=_utc(self.aggregator_received_at),
            mape=replace(self.mape),
            mape_received_at=_utc(self.mape_received_at),
            matched_at=_utc(self.matched_at),
        )

    def canonical_json(self) -> bytes:
        """Encode the hashed fields (all but id and hash) in canonical form."""
        body = {
            "type": self.type,
            "schemaVersion": self.schema_version,
            "zoneId": self.zone_id,
            "epochIndex": self.epoch_index,
            "aggregator": self.aggregator.canonical().to_dict(),
            "aggregatorReceivedAt": format_time(_utc(self.aggregator_received_at)),
            "mape": self.mape.to_dict(),
            "mapeReceivedAt": format_time(_utc(self.mape_received_at)),
            "matchedAt": format_time(_utc(self.matched_at)),
            "prevHash": self.prev_hash,
        }
        return dumps(body).encode("utf-8")

    def compute_hash(self) -> str:
        return _sha256_hex(self.canonical_json())

    def clone(self) -> Transaction:
        """Return an independent copy with every timestamp in UTC."""
        return replace(
            self,
            aggregator=self.aggregator.canonical(),
            aggregator_received_at=_utc(self.aggregator_received_at),
            mape=replace(self.mape),
            mape_received_at=_utc(self.mape_received_at),
            matched_at=_utc(self.matched_at),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "schemaVersion": self.schema_version,
            "zoneId": self.zone_id,
            "epochIndex": self.epoch_index,
            "aggregator": self.aggregator.to_dict(),
            "aggregatorReceivedAt": format_time(self.aggregator_received_at),
            "mape": self.mape.to_dict(),
            "mapeReceivedAt": format_time(self.mape_received_at),
            "matchedAt": format_time(self.matched_at),
            "prevHash": self.prev_hash,
            "hash": self.hash,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Transaction:
        data = _mapping(data, "transaction")
        return cls(
            id=_field(data, "id", int, 0),
            type=_field(data, "type", str, ""),
            schema_version=_field(data, "schemaVersion", str, ""),
            zone_id=_field(data, "zoneId", str, ""),
            epoch_index=_field(data, "epochIndex", int, 0),
            aggregator=AggregatedEpoch.from_dict(_sub_mapping(data, "aggregator")),
            aggregator_received_at=_time_field(data, "aggregatorReceivedAt"),
            mape=MAPELedgerEvent.from_dict(_sub_mapping(data, "mape")),
            mape_received_at=_time_field(data, "mapeReceivedAt"),
            matched_at=_time_field(data, "matchedAt"),
            prev_hash=_field(data, "prevHash", str, ""),
            hash=_field(data, "hash", str, ""),
        )


@dataclass
class BlockHeaderV2:
    """Header of a version 2 block."""

    version: str = ""
    height: int = 0
    prev_header_hash: str = ""
    data_hash: str = ""
    timestamp: datetime | None = None
    block_size: int = 0
    nonce: str = ""
    header_hash: str = ""

    def canonical_json(self) -> bytes:
        """Encode every field except the header hash, with the timestamp in UTC."""
        body = {
            "version": self.version,
            "height": self.height,
            "prevHeaderHash": self.prev_header_hash,
            "dataHash": self.data_hash,
            "timestamp": format_time(_utc(self.timestamp)),
            "blockSize": self.block_size,
            "nonce": self.nonce,
        }
        return dumps(body).encode("utf-8")

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "height": self.height,
            "prevHeaderHash": self.prev_header_hash,
            "dataHash": self.data_hash,
            "timestamp": format_time(self.timestamp),
            "blockSize": self.block_size,
            "nonce": self.nonce,
            "headerHash": self.header_hash,
        }

    @classmethod
    def from_dict(cls, data: dict) -> BlockHeaderV2:
        data = _mapping(data, "header")
        return cls(
            version=_field(data, "version", str, ""),
            height=_field(data, "height", int, 0),
            prev_header_hash=_field(data, "prevHeaderHash", str, ""),
            data_hash=_field(data, "dataHash", str, ""),
            timestamp=_time_field(data, "timestamp"),
            block_size=_field(data, "blockSize", int, 0),
            nonce=_field(data, "nonce", str, ""),
            header_hash=_field(data, "headerHash", str, ""),
        )


@dataclass
class BlockDataV2:
    """Transactions carried by a version 2 block."""

    transactions: list[Transaction | None] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "transactions": [tx.to_dict() if tx is not None else None for tx in self.transactions]
        }

    @classmethod
    def from_dict(cls, data: dict) -> BlockDataV2:
        data = _mapping(data, "data")
        raw = data.get("transactions") or []
        if not isinstance(raw, list):
            raise ValueError("transactions: expected a list")
        return cls(
            transactions=[Transaction.from_dict(item) if item is not None else None for item in raw]
        )


@dataclass
class BlockV2:
    """A version 2 block: header plus transactions."""

    header: BlockHeaderV2 = field(default_factory=BlockHeaderV2)
    data: BlockDataV2 = field(default_factory=BlockDataV2)

    def validate(self) -> None:
        """Raise ValueError unless the block has a supported version and transactions."""
        if self.header.version != BLOCK_VERSION_V2:
            raise ValueError(f"unsupported block version: {self.header.version}")
        if not self.data.transactions:
            raise ValueError("block must contain at least one transaction")
        for tx in self.data.transactions:
            if tx is None:
                raise ValueError("nil transaction")
            if tx.schema_version != TRANSACTION_SCHEMA_VERSION_V1:
                raise ValueError(f"unsupported transaction schema version: {tx.schema_version}")

    def to_dict(self) -> dict:
        return {"header": self.header.to_dict(), "data": self.data.to_dict()}

    def to_json(self) -> str:
        return dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> BlockV2:
        data = _mapping(data, "block")
        return cls(
            header=BlockHeaderV2.from_dict(_sub_mapping(data, "header")),
            data=BlockDataV2.from_dict(_sub_mapping(data, "data")),
        )


def merkle_root(leaves: list[bytes]) -> bytes:
    """Fold leaf digests pairwise with SHA-256, pairing an odd last node with itself."""
    if not leaves:
        raise ValueError("merkle root requires at least one leaf")
    level = [bytes(leaf) for leaf in leaves]
    while len(level) > 1:
        pairs = zip(level[0::2], level[1::2] + [level[-1]] * (len(level) % 2))
        level = [hashlib.sha256(left + right).digest() for left, right in pairs]
    return level[0]


def compute_data_hash_v2(transactions: list[Transaction | None]) -> str:
    """Return the hex Merkle root over the transactions' canonical JSON."""
    if not transactions:
        raise ValueError("block data requires at least one transaction")
    leaves = []
    for tx in transactions:
        if tx is None:
            raise ValueError("nil transaction")
        leaves.append(hashlib.sha256(tx.canonical_json()).digest())
    return merkle_root(leaves).hex()


def compute_header_hash_v2(header: BlockHeaderV2 | None) -> str:
    """Return the hex SHA-256 of the header's canonical JSON."""
    if header is None:
        raise ValueError("nil header")
    return _sha256_hex(header.canonical_json())