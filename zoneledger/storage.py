"""Append-only, hash-chained ledger kept as one JSON document per line."""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from . import metrics
from .models import (
    BLOCK_NONCE_BYTES,
    BLOCK_VERSION_V2,
    TRANSACTION_SCHEMA_VERSION_V1,
    BlockDataV2,
    BlockHeaderV2,
    BlockV2,
    Event,
    Transaction,
    compute_data_hash_v2,
    compute_header_hash_v2,
    parse_time,
)

_log = logging.getLogger(__name__)

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_INTEGER = re.compile(r"[+-]?\d+")
_DEFAULT_PAGE_SIZE = 50
_FINALIZE_ATTEMPTS = 5


class NotFoundError(LookupError):
    """Raised when no ledger entry has the requested id."""


@dataclass(frozen=True)
class BlockMetadata:
    """Header attributes of a block that has been committed to disk."""

    height: int = 0
    header_hash: str = ""
    data_hash: str = ""


@dataclass
class VerifyReport:
    """Counts gathered while verifying a ledger file."""

    v1_events: int = 0
    v2_blocks: int = 0
    last_height: int = -1

    def to_dict(self) -> dict:
        return {"v1Events": self.v1_events, "v2Blocks": self.v2_blocks, "lastHeight": self.last_height}


class _VerifyFailed(ValueError):
    """A verification failure; ``report`` holds what was verified before it."""

    def __init__(self, message: str, report: VerifyReport) -> None:
        super().__init__(message)
        self.report = report


@dataclass
class _ChainState:
    prev_event_hash: str = ""
    prev_header_hash: str = ""
    prev_height: int = -1


def _to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _reject_constant(name: str):
    raise ValueError(f"invalid JSON number: {name}")


def _iter_lines(content: bytes):
    for number, raw in enumerate(content.split(b"\n"), start=1):
        raw = raw.strip()
        if raw:
            yield number, raw


def _decode_block(data) -> BlockV2 | None:
    if not isinstance(data, dict):
        return None
    header = data.get("header")
    if not isinstance(header, dict) or header.get("version") != BLOCK_VERSION_V2:
        return None
    try:
        return BlockV2.from_dict(data)
    except (ValueError, TypeError):
        return None


def _normalize_transaction_schemas(block: BlockV2, line: int, *, count_metric: bool, warn: bool) -> list[bool]:
    """Promote empty transaction schema versions to v1 and report which were defaulted."""
    defaulted = []
    for idx, tx in enumerate(block.data.transactions):
        empty = tx is not None and tx.schema_version == ""
        if empty:
            if count_metric:
                metrics.inc_ledger_load_tx_schema_empty()
            if warn:
                _log.warning(
                    "ledger_default_transaction_schema_version line=%d transactionIndex=%d "
                    "transactionID=%d blockHeight=%d fallback=%s",
                    line, idx, tx.id, block.header.height, TRANSACTION_SCHEMA_VERSION_V1,
                )
            tx.schema_version = TRANSACTION_SCHEMA_VERSION_V1
        defaulted.append(empty)
    return defaulted


def _restore_transaction_schemas(block: BlockV2, defaulted: list[bool]) -> None:
    for tx, was_defaulted in zip(block.data.transactions, defaulted):
        if tx is not None and was_defaulted:
            tx.schema_version = ""


def _transaction_to_event(tx: Transaction) -> Event:
    record = tx.match_record()
    return Event(
        id=tx.id,
        type=tx.type,
        zone_id=tx.zone_id,
        timestamp=record.matched_at,
        source="ledger.kafka",
        correlation_id=f"{tx.zone_id}-{tx.epoch_index}",
        payload=record.to_dict(),
        prev_hash=tx.prev_hash,
        hash=tx.hash,
    )


def finalize_block(block: BlockV2) -> bytes:
    """Fill in the header hash and block size until they agree; return the encoded block."""
    if block is None:
        raise ValueError("nil block")
    block.validate()
    block.header.timestamp = _to_utc(block.header.timestamp)
    block.header.block_size = 0
    block.header.header_hash = ""
    for _ in range(_FINALIZE_ATTEMPTS):
        block.header.header_hash = compute_header_hash_v2(block.header)
        payload = block.to_json().encode("utf-8")
        if block.header.block_size == len(payload):
            return payload
        block.header.block_size = len(payload)
    raise RuntimeError("failed to finalize block")


def parse_query_time(text: str) -> datetime:
    """Parse an RFC 3339 timestamp or whole unix seconds into a UTC datetime."""
    try:
        parsed = parse_time(text)
    except ValueError:
        pass
    else:
        return _ZERO_TIME if parsed is None else parsed.astimezone(timezone.utc)
    if _INTEGER.fullmatch(text):
        try:
            return _EPOCH + timedelta(seconds=int(text))
        except OverflowError:
            pass
    raise ValueError(f"invalid time: {text}")


class FileLedger:
    """A ledger file holding legacy events and version 2 blocks, one per line."""

    def __init__(self, path: str | os.PathLike) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a+b")
        self._last_id = 0
        self._last_hash = ""
        self._last_height = -1
        self._last_header_hash = ""
        self._events: list[Event] = []
        self._transactions: list[Transaction] = []
        try:
            self._load()
        except BaseException:
            self._file.close()
            raise

    def __enter__(self) -> FileLedger:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying file."""
        self._file.close()

    def _load(self) -> None:
        _log.info("loading path=%s", self._path)
        self._file.seek(0)
        content = self._file.read()
        self._events = []
        self._transactions = []
        self._last_id = 0
        self._last_hash = ""
        self._last_header_hash = ""
        self._last_height = -1
        v1_events = v2_blocks = 0
        for line, raw in _iter_lines(content):
            try:
                data = json.loads(raw, parse_constant=_reject_constant)
                block = _decode_block(data)
                if block is not None:
                    self._load_block(block, line)
                    v2_blocks += 1
                else:
                    self._load_event(Event.from_dict(data))
                    v1_events += 1
            except ValueError as exc:
                raise ValueError(f"line {line}: {exc}") from exc
        _log.info(
            "loaded records=%d v1Events=%d v2Blocks=%d lastID=%d lastHeight=%d",
            len(self._events), v1_events, v2_blocks, self._last_id, self._last_height,
        )

    def _load_block(self, block: BlockV2, line: int) -> None:
        defaulted = _normalize_transaction_schemas(block, line, count_metric=True, warn=True)
        block.validate()
        _restore_transaction_schemas(block, defaulted)
        for tx, was_defaulted in zip(block.data.transactions, defaulted):
            self._validate_transaction_chain(tx)
            stored = tx.clone()
            if was_defaulted:
                stored.schema_version = TRANSACTION_SCHEMA_VERSION_V1
            event = _transaction_to_event(stored)
            self._transactions.append(stored)
            self._events.append(event)
            self._last_id = max(self._last_id, stored.id)
            self._last_hash = stored.hash
        self._last_header_hash = block.header.header_hash
        self._last_height = block.header.height

    def _load_event(self, event: Event) -> None:
        self._validate_event_chain(event)
        event.timestamp = _to_utc(event.timestamp)
        self._events.append(event)
        self._last_id = max(self._last_id, event.id)
        self._last_hash = event.hash

    def _validate_event_chain(self, event: Event) -> None:
        expected = self._last_hash if self._events else ""
        if event.prev_hash != expected:
            raise ValueError(f"prevHash mismatch id={event.id}")
        if event.compute_hash() != event.hash:
            raise ValueError(f"hash mismatch id={event.id}")

    def _validate_transaction_chain(self, tx: Transaction) -> None:
        expected = self._last_hash if (self._events or self._transactions) else ""
        if tx.prev_hash != expected:
            raise ValueError(f"prevHash mismatch id={tx.id}")
        if tx.compute_hash() != tx.hash:
            raise ValueError(f"hash mismatch id={tx.id}")

    def append(self, tx: Transaction) -> tuple[Transaction, BlockMetadata]:
        """Chain the transaction into a new block, write it durably and return a copy with its metadata."""
        with self._lock:
            if tx is None:
                raise ValueError("transaction must not be nil")
            if tx.schema_version != TRANSACTION_SCHEMA_VERSION_V1:
                raise ValueError(f'unsupported transaction schema version "{tx.schema_version}"')
            self._last_id += 1
            tx.id = self._last_id
            tx.matched_at = _to_utc(tx.matched_at) or datetime.now(timezone.utc)
            tx.aggregator_received_at = _to_utc(tx.aggregator_received_at)
            tx.mape_received_at = _to_utc(tx.mape_received_at)
            tx.prev_hash = self._last_hash
            tx.hash = tx.compute_hash()
            stored = tx.clone()
            block = BlockV2(
                header=BlockHeaderV2(
                    version=BLOCK_VERSION_V2,
                    height=self._last_height + 1,
                    prev_header_hash=self._last_header_hash,
                    timestamp=datetime.now(timezone.utc),
                ),
                data=BlockDataV2(transactions=[stored]),
            )
            block.header.data_hash = compute_data_hash_v2(block.data.transactions)
            block.header.nonce = secrets.token_hex(BLOCK_NONCE_BYTES)
            payload = finalize_block(block)
            self._file.write(payload + b"\n")
            self._file.flush()
            os.fsync(self._file.fileno())
            event = _transaction_to_event(stored)
            self._last_hash = stored.hash
            self._last_header_hash = block.header.header_hash
            self._last_height = block.header.height
            self._transactions.append(stored)
            self._events.append(event)
            _log.info(
                "appended block height=%d headerHash=%s transactionID=%d",
                block.header.height, block.header.header_hash, stored.id,
            )
            meta = BlockMetadata(
                height=block.header.height,
                header_hash=block.header.header_hash,
                data_hash=block.header.data_hash,
            )
            return stored.clone(), meta

    def get_by_id(self, event_id: int) -> Event:
        """Return a copy of the entry with the given id."""
        with self._lock:
            for event in self._events:
                if event.id == event_id:
                    return copy.deepcopy(event)
        raise NotFoundError("not found")

    def query(
        self,
        type_: str = "",
        zone_id: str = "",
        from_: str = "",
        to: str = "",
        page: int = 0,
        size: int = 0,
    ) -> tuple[list[Event], int]:
        """Filter entries and return one page of copies with the total match count."""
        lower = upper = None
        if from_:
            try:
                lower = parse_query_time(from_)
            except ValueError:
                lower = None
        if to:
            try:
                upper = parse_query_time(to)
            except ValueError:
                upper = None
        with self._lock:
            filtered = [
                copy.deepcopy(event)
                for event in self._events
                if (not type_ or event.type.casefold() == type_.casefold())
                and (not zone_id or event.zone_id.casefold() == zone_id.casefold())
                and (lower is None or (event.timestamp or _ZERO_TIME) >= lower)
                and (upper is None or (event.timestamp or _ZERO_TIME) <= upper)
            ]
        total = len(filtered)
        size = size if size > 0 else _DEFAULT_PAGE_SIZE
        page = page if page > 0 else 1
        start = (page - 1) * size
        if start >= total:
            return [], total
        return filtered[start:start + size], total

    def verify(self) -> VerifyReport:
        """Re-read the file and check every hash link.

        On failure a ValueError is raised whose ``report`` attribute holds the
        counts gathered before the failing line.
        """
        with self._lock:
            report = VerifyReport()
            content = self._path.read_bytes()
            state = _ChainState()
            for line, raw in _iter_lines(content):
                try:
                    data = json.loads(raw, parse_constant=_reject_constant)
                    block = _decode_block(data)
                    if block is not None:
                        self._verify_block(block, raw, line, state)
                        report.v2_blocks += 1
                        report.last_height = block.header.height
                    else:
                        self._verify_event(Event.from_dict(data), state)
                        report.v1_events += 1
                except ValueError as exc:
                    raise _VerifyFailed(f"line {line}: {exc}", report) from exc
            return report

    @staticmethod
    def _verify_block(block: BlockV2, raw: bytes, line: int, state: _ChainState) -> None:
        defaulted = _normalize_transaction_schemas(block, line, count_metric=False, warn=False)
        block.validate()
        _restore_transaction_schemas(block, defaulted)
        header = block.header
        if state.prev_height == -1:
            if header.height != 0:
                raise ValueError("height mismatch")
            if header.prev_header_hash != "":
                raise ValueError("prevHeaderHash mismatch")
        elif header.height != state.prev_height + 1:
            raise ValueError("height mismatch")
        if state.prev_height >= 0 and header.prev_header_hash != state.prev_header_hash:
            raise ValueError("prevHeaderHash mismatch")
        if compute_data_hash_v2(block.data.transactions) != header.data_hash:
            raise ValueError("dataHash mismatch")
        if compute_header_hash_v2(header) != header.header_hash:
            raise ValueError("headerHash mismatch")
        if len(raw) != header.block_size:
            raise ValueError("blockSize mismatch")
        for tx in block.data.transactions:
            if tx.compute_hash() != tx.hash:
                raise ValueError(f"transaction hash mismatch id={tx.id}")
            if tx.prev_hash != state.prev_event_hash:
                raise ValueError(f"prevHash mismatch id={tx.id}")
            state.prev_event_hash = tx.hash
        state.prev_header_hash = header.header_hash
        state.prev_height = header.height

    @staticmethod
    def _verify_event(event: Event, state: _ChainState) -> None:
        if event.compute_hash() != event.hash:
            raise ValueError(f"hash mismatch id={event.id}")
        if event.prev_hash != state.prev_event_hash:
            raise ValueError(f"prevHash mismatch id={event.id}")
        state.prev_event_hash = event.hash