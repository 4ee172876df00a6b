"""Public epoch document: canonical form, validation and deterministic JSON."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

EVENT_TYPE_EPOCH_PUBLIC = "epoch.public"
SCHEMA_VERSION_V1 = "v1"
VALID_PLANS = frozenset({"heat", "cool", "hold"})

_HEX = re.compile(r"[0-9a-f]+")
_TIME = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(?:(Z)|([+-])(\d{2}):(\d{2}))"
)
_ZERO_TIME = "0001-01-01T00:00:00Z"
_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\b": "\\b",
    "\f": "\\f",
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def format_float(value: float) -> str:
    """Format a float with the shortest exact digits and no exponent."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "-0" if math.copysign(1.0, value) < 0 else "0"
    return format(Decimal(repr(float(value))).normalize(), "f")


@dataclass
class BlockSummary:
    """The block that holds the epoch transaction."""

    height: int = 0
    header_hash: str = ""
    data_hash: str = ""

    def validate(self) -> None:
        if self.height < 0:
            raise ValueError("block.height must be non-negative")
        if not self.header_hash:
            raise ValueError("block.headerHash is required")
        if not _HEX.fullmatch(self.header_hash):
            raise ValueError(f"block.headerHash must be lowercase hex: {self.header_hash}")
        if not self.data_hash:
            raise ValueError("block.dataHash is required")
        if not _HEX.fullmatch(self.data_hash):
            raise ValueError(f"block.dataHash must be lowercase hex: {self.data_hash}")

    def to_dict(self) -> dict:
        return {"height": self.height, "headerHash": self.header_hash, "dataHash": self.data_hash}


@dataclass
class AggregatorEnvelope:
    """Stable aggregator summary metrics."""

    summary: dict[str, float] | None = None

    def validate(self) -> None:
        for key, value in (self.summary or {}).items():
            if not key.strip():
                raise ValueError("aggregator.summary keys must be non-empty")
            if math.isnan(value) or math.isinf(value):
                raise ValueError(f"aggregator.summary contains invalid value for {key}")

    def to_dict(self) -> dict:
        return {"summary": dict(self.summary or {})}

    def to_json(self) -> str:
        """Serialise with sorted keys and exact float digits."""
        summary = self.summary or {}
        items = []
        for key in sorted(summary):
            value = summary[key]
            if math.isnan(value) or math.isinf(value):
                raise ValueError(f"aggregator.summary contains invalid value for {key}")
            items.append(f"{_json_string(key)}:{format_float(value)}")
        return '{"summary":{' + ",".join(items) + "}}"


@dataclass
class MAPESummary:
    """The planned HVAC adjustment for the epoch."""

    planned: str = ""
    target_c: float = 0.0
    delta_c: float = 0.0
    fan: int = 0

    def validate(self) -> None:
        if self.planned not in VALID_PLANS:
            raise ValueError(f"mape.planned must be heat, cool, or hold: {self.planned}")
        if not math.isfinite(self.target_c):
            raise ValueError("mape.targetC must be finite")
        if not math.isfinite(self.delta_c):
            raise ValueError("mape.deltaC must be finite")

    def to_dict(self) -> dict:
        return {"planned": self.planned, "targetC": self.target_c, "deltaC": self.delta_c, "fan": self.fan}


@dataclass
class Epoch:
    """The publicly shareable epoch document."""

    type: str = ""
    schema_version: str = ""
    zone_id: str = ""
    epoch_index: int = 0
    matched_at: datetime | None = None
    block: BlockSummary = field(default_factory=BlockSummary)
    aggregator: AggregatorEnvelope = field(default_factory=AggregatorEnvelope)
    mape: MAPESummary = field(default_factory=MAPESummary)

    def canonical(self) -> Epoch:
        """Return a normalised copy: trimmed text, UTC time, lowercase hashes."""
        matched = self.matched_at
        if matched is not None:
            matched = (
                matched.replace(tzinfo=timezone.utc)
                if matched.tzinfo is None
                else matched.astimezone(timezone.utc)
            )
        return replace(
            self,
            type=self.type.strip(),
            schema_version=self.schema_version.strip(),
            zone_id=self.zone_id.strip(),
            matched_at=matched,
            block=BlockSummary(
                height=self.block.height,
                header_hash=self.block.header_hash.strip().lower(),
                data_hash=self.block.data_hash.strip().lower(),
            ),
            aggregator=AggregatorEnvelope(summary=_clone_summary(self.aggregator.summary)),
            mape=MAPESummary(
                planned=self.mape.planned.strip().lower(),
                target_c=self.mape.target_c,
                delta_c=self.mape.delta_c,
                fan=self.mape.fan,
            ),
        )

    def validate(self) -> None:
        """Raise ValueError unless the document meets the public schema."""
        c = self.canonical()
        if c.type != EVENT_TYPE_EPOCH_PUBLIC:
            raise ValueError(f"invalid type: {c.type}")
        if c.schema_version != SCHEMA_VERSION_V1:
            raise ValueError(f"unsupported schema version: {c.schema_version}")
        if not c.zone_id:
            raise ValueError("zoneId is required")
        if c.epoch_index < 0:
            raise ValueError("epochIndex must be non-negative")
        if c.matched_at is None:
            raise ValueError("matchedAt is required")
        if c.matched_at.utcoffset() != timedelta(0):
            raise ValueError("matchedAt must be in UTC")
        c.block.validate()
        c.aggregator.validate()
        c.mape.validate()

    def to_dict(self) -> dict:
        c = self.canonical()
        return {
            "type": c.type,
            "schemaVersion": c.schema_version,
            "zoneId": c.zone_id,
            "epochIndex": c.epoch_index,
            "matchedAt": _format_time(c.matched_at),
            "block": c.block.to_dict(),
            "aggregator": c.aggregator.to_dict(),
            "mape": c.mape.to_dict(),
        }

    def to_json(self) -> str:
        """Serialise the canonical form deterministically."""
        c = self.canonical()
        block = (
            f'{{"height":{c.block.height},"headerHash":{_json_string(c.block.header_hash)},'
            f'"dataHash":{_json_string(c.block.data_hash)}}}'
        )
        mape = (
            f'{{"planned":{_json_string(c.mape.planned)},"targetC":{_json_number(c.mape.target_c)},'
            f'"deltaC":{_json_number(c.mape.delta_c)},"fan":{c.mape.fan}}}'
        )
        parts = [
            f'"type":{_json_string(c.type)}',
            f'"schemaVersion":{_json_string(c.schema_version)}',
            f'"zoneId":{_json_string(c.zone_id)}',
            f'"epochIndex":{c.epoch_index}',
            f'"matchedAt":{_json_string(_format_time(c.matched_at))}',
            f'"block":{block}',
            f'"aggregator":{c.aggregator.to_json()}',
            f'"mape":{mape}',
        ]
        return "{" + ",".join(parts) + "}"

    @classmethod
    def from_dict(cls, data: dict) -> Epoch:
        """Build a canonical epoch from decoded JSON."""
        data = _mapping(data, "epoch")
        block = _mapping(data.get("block") or {}, "block")
        aggregator = _mapping(data.get("aggregator") or {}, "aggregator")
        mape = _mapping(data.get("mape") or {}, "mape")
        raw_summary = aggregator.get("summary")
        summary = None
        if raw_summary is not None:
            summary = {
                key: _field(_mapping(raw_summary, "summary"), key, float, 0.0)
                for key in raw_summary
            }
        matched = _field(data, "matchedAt", str, None)
        epoch = cls(
            type=_field(data, "type", str, ""),
            schema_version=_field(data, "schemaVersion", str, ""),
            zone_id=_field(data, "zoneId", str, ""),
            epoch_index=_field(data, "epochIndex", int, 0),
            matched_at=_parse_time(matched) if matched is not None else None,
            block=BlockSummary(
                height=_field(block, "height", int, 0),
                header_hash=_field(block, "headerHash", str, ""),
                data_hash=_field(block, "dataHash", str, ""),
            ),
            aggregator=AggregatorEnvelope(summary=summary),
            mape=MAPESummary(
                planned=_field(mape, "planned", str, ""),
                target_c=_field(mape, "targetC", float, 0.0),
                delta_c=_field(mape, "deltaC", float, 0.0),
                fan=_field(mape, "fan", int, 0),
            ),
        )
        return epoch.canonical()

    @classmethod
    def from_json(cls, data: str | bytes) -> Epoch:
        return cls.from_dict(json.loads(data, parse_constant=_reject_constant))


def _reject_constant(name: str):
    raise ValueError(f"invalid JSON number: {name}")


def _clone_summary(summary: dict[str, float] | None) -> dict[str, float] | None:
    return dict(summary) if summary else None


def _mapping(value, name: str) -> dict:
    if not isinstance(value, dict):
        raise ValueError(f"{name}: expected an object")
    return value


def _field(data: dict, key: str, kind: type, default):
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"{key}: expected {kind.__name__}")
    if kind is float and isinstance(value, int):
        return float(value)
    if not isinstance(value, kind):
        raise ValueError(f"{key}: expected {kind.__name__}")
    return value


def _json_string(text: str) -> str:
    escaped = "".join(
        _ESCAPES.get(ch) or (f"\\u{ord(ch):04x}" if ch < " " else ch) for ch in text
    )
    return f'"{escaped}"'


def _json_number(value: float) -> str:
    if not math.isfinite(value):
        raise ValueError(f"unsupported float value: {value}")
    magnitude = abs(value)
    if magnitude == 0 or 1e-6 <= magnitude < 1e21:
        return format_float(value)
    sign, digits, exponent = Decimal(repr(float(value))).normalize().as_tuple()
    text = "".join(str(d) for d in digits)
    exp = len(text) + exponent - 1
    mantissa = text[0] + ("." + text[1:] if len(text) > 1 else "")
    return f"{'-' if sign else ''}{mantissa}e{'-' if exp < 0 else '+'}{abs(exp)}"


def _format_time(value: datetime | None) -> str:
    if value is None:
        return _ZERO_TIME
    base = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        base += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return base + "Z"
    minutes = int(offset.total_seconds() // 60)
    sign = "+" if minutes >= 0 else "-"
    minutes = abs(minutes)
    return f"{base}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_time(text: str) -> datetime | None:
    match = _TIME.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid time: {text}")
    year, month, day, hour, minute, second, frac, zulu, sign, off_h, off_m = match.groups()
    if zulu:
        tz = timezone.utc
    else:
        delta = timedelta(hours=int(off_h), minutes=int(off_m))
        tz = timezone(-delta if sign == "-" else delta)
    micro = int((frac or "").ljust(6, "0")[:6])
    try:
        parsed = datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
        )
    except ValueError as exc:
        raise ValueError(f"invalid time: {text}") from exc
    if parsed == datetime(1, 1, 1, tzinfo=timezone.utc):
        return None
    return parsed