"""Matching aggregator and planner records per zone epoch and committing them to the ledger."""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, NamedTuple

from . import metrics
from .models import (
    TRANSACTION_SCHEMA_VERSION_V1,
    AggregatedEpoch,
    EpochWindow,
    KafkaMessage,
    MAPELedgerEvent,
    Transaction,
    parse_time,
)
from .storage import BlockMetadata, FileLedger

_log = logging.getLogger(__name__)

SCHEMA_VERSION_V1 = "v1"
_DEFAULT_GRACE = 2.0
_DEFAULT_BUFFER = 200
_INITIAL_BACKOFF = 1.0
_MAX_BACKOFF = 10.0


@dataclass
class _Pending:
    msg: KafkaMessage
    data: Any
    received: datetime


@dataclass
class MatchState:
    """What has arrived so far for one epoch while waiting for its counterpart."""

    agg: _Pending | None = None
    mape: _Pending | None = None
    first_seen: datetime | None = None

    def messages(self) -> list[KafkaMessage]:
        """Messages to acknowledge once the epoch is persisted."""
        return [side.msg for side in (self.agg, self.mape) if side is not None]


@dataclass(frozen=True)
class PendingFinalize:
    """An epoch taken out of the pending set to be persisted."""

    epoch: int
    state: MatchState


class _ImputedMatch(NamedTuple):
    aggregator: AggregatedEpoch
    aggregator_received_at: datetime
    aggregator_imputed: bool
    mape: MAPELedgerEvent
    mape_received_at: datetime
    mape_imputed: bool


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_rfc3339(text: str) -> datetime | None:
    try:
        return parse_time(text)
    except (ValueError, TypeError):
        return None


def _format_seconds(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def impute_missing_side(zone: str, epoch: int, agg: _Pending | None, mape: _Pending | None) -> _ImputedMatch:
    """Fill in placeholder data for whichever side of the epoch is missing."""
    now = _now()

    if agg is not None:
        agg_data: AggregatedEpoch = agg.data
        agg_received = agg.received
        agg_imputed = False
    else:
        agg_imputed = True
        window = EpochWindow(index=epoch)
        if mape is not None:
            start = _parse_rfc3339(mape.data.start)
            if start is not None:
                window.start = start
            end = _parse_rfc3339(mape.data.end)
            if end is not None:
                window.end = end
                if window.start is not None:
                    window.len = end - window.start
        agg_data = AggregatedEpoch(
            schema_version=SCHEMA_VERSION_V1,
            zone_id=zone,
            epoch=window,
            by_device={},
            summary={"imputed": 1.0},
            produced_at=now,
        )
        agg_received = now
    agg_data = replace(
        agg_data,
        zone_id=zone,
        epoch=replace(agg_data.epoch, index=epoch),
        schema_version=agg_data.schema_version or SCHEMA_VERSION_V1,
    )

    if mape is not None:
        mape_data: MAPELedgerEvent = mape.data
        mape_received = mape.received
        mape_imputed = False
    else:
        mape_imputed = True
        start_text = _format_seconds(agg_data.epoch.start) if agg_data.epoch.start is not None else ""
        end_text = _format_seconds(agg_data.epoch.end) if agg_data.epoch.end is not None else ""
        target = (agg_data.summary or {}).get("targetC", 0.0)
        mape_data = MAPELedgerEvent(
            schema_version=SCHEMA_VERSION_V1,
            epoch_index=epoch,
            zone_id=zone,
            planned="hold",
            target_c=target,
            hyst_c=0.0,
            delta_c=0.0,
            fan=0,
            start=start_text,
            end=end_text,
            timestamp=int(now.timestamp() * 1000),
        )
        mape_received = now
    mape_data = replace(
        mape_data,
        zone_id=zone,
        epoch_index=epoch,
        schema_version=mape_data.schema_version or SCHEMA_VERSION_V1,
    )

    return _ImputedMatch(agg_data, agg_received, agg_imputed, mape_data, mape_received, mape_imputed)


class ZoneConsumer:
    """Pairs the aggregator and planner records of one zone and writes matched epochs.

    Messages on ``partition_aggregator`` carry aggregated epochs, those on
    ``partition_mape`` carry planner decisions.  A side left alone longer than
    ``grace`` seconds is persisted with the other side imputed.  The optional
    reader needs ``fetch_message(timeout)`` (raising TimeoutError when idle),
    ``commit_messages(*messages)`` and ``close()``.  The optional hook needs
    ``on_epoch_finalized(tx, meta)``.
    """

    def __init__(
        self,
        zone: str,
        topic: str,
        storage: FileLedger,
        partition_aggregator: int = 0,
        partition_mape: int = 1,
        grace: float = _DEFAULT_GRACE,
        buffer: int = _DEFAULT_BUFFER,
        hook=None,
        reader=None,
    ) -> None:
        self.zone = zone
        self.topic = topic
        self._storage = storage
        self._part_agg = partition_aggregator
        self._part_mape = partition_mape
        self._grace = grace
        self._buffer = buffer
        self._hook = hook
        self._reader = reader
        self._lock = threading.Lock()
        self._pending: dict[int, MatchState] = {}
        self._finalized: dict[int, datetime] = {}
        self._order: deque[int] = deque()
        self._agg_version_unknown = 0
        self._mape_version_unknown = 0

    @property
    def agg_version_unknown(self) -> int:
        """Aggregator messages rejected for an unknown schema version."""
        with self._lock:
            return self._agg_version_unknown

    @property
    def mape_version_unknown(self) -> int:
        """Planner messages rejected for an unknown schema version."""
        with self._lock:
            return self._mape_version_unknown

    def handle_message(self, msg: KafkaMessage) -> list[KafkaMessage]:
        """Route a message by partition; return the messages now safe to acknowledge."""
        if msg.partition == self._part_agg:
            return self.handle_aggregator(msg)
        if msg.partition == self._part_mape:
            return self.handle_mape(msg)
        _log.error("unexpected_partition partition=%d zone=%s", msg.partition, self.zone)
        raise ValueError(f"unexpected partition {msg.partition} for zone {self.zone}")

    def handle_aggregator(self, msg: KafkaMessage) -> list[KafkaMessage]:
        """Accept an aggregated epoch and finalize it if its planner side is present."""
        _log.debug("aggregator_msg offset=%d partition=%d", msg.offset, msg.partition)
        data = self._decode(msg, "aggregator", AggregatedEpoch.from_dict)
        if data.schema_version != SCHEMA_VERSION_V1:
            with self._lock:
                self._agg_version_unknown += 1
            _log.error(
                "aggregator_schema_version_unknown schemaVersion=%s missing=%s",
                data.schema_version, data.schema_version == "",
            )
            raise ValueError(f'unsupported aggregator schema version "{data.schema_version}"')
        return self._accept("aggregator", "agg", "mape", msg, data, data.zone_id, data.epoch.index)

    def handle_mape(self, msg: KafkaMessage) -> list[KafkaMessage]:
        """Accept a planner decision and finalize it if its aggregator side is present."""
        _log.debug("mape_msg offset=%d partition=%d", msg.offset, msg.partition)
        data = self._decode(msg, "mape", MAPELedgerEvent.from_dict)
        if data.schema_version != SCHEMA_VERSION_V1:
            with self._lock:
                self._mape_version_unknown += 1
            _log.error(
                "mape_schema_version_unknown schemaVersion=%s missing=%s",
                data.schema_version, data.schema_version == "",
            )
            raise ValueError(f'unsupported mape schema version "{data.schema_version}"')
        return self._accept("mape", "mape", "agg", msg, data, data.zone_id, data.epoch_index)

    @staticmethod
    def _decode(msg: KafkaMessage, side: str, factory: Callable[[dict], Any]):
        try:
            return factory(json.loads(msg.value))
        except (ValueError, TypeError) as exc:
            metrics.inc_decode_error(side)
            raise ValueError(f"decode {side}: {exc}") from exc

    def _accept(self, side: str, own: str, other: str, msg: KafkaMessage, data, payload_zone: str, epoch: int):
        if payload_zone and payload_zone.casefold() != self.zone.casefold():
            _log.warning("zone_mismatch payloadZone=%s topic=%s", payload_zone, self.topic)
        now = _now()
        with self._lock:
            if epoch in self._finalized:
                _log.info("%s_duplicate_finalized epoch=%d offset=%d", side, epoch, msg.offset)
                return [msg]
            state = self._get_or_create(epoch, now)
            if getattr(state, own) is not None:
                _log.warning("duplicate_%s epoch=%d offset=%d", side, epoch, msg.offset)
                return [msg]
            setattr(state, own, _Pending(msg=msg, data=data, received=now))
            ready = getattr(state, other) is not None
            if ready:
                del self._pending[epoch]
        if not ready:
            _log.info("%s_pending epoch=%d offset=%d", side, epoch, msg.offset)
            return []
        try:
            return self.finalize(epoch, state, False)
        except Exception:
            self.requeue(epoch, state)
            raise

    def finalize(self, epoch: int, state: MatchState, allow_impute: bool = False) -> list[KafkaMessage]:
        """Persist the epoch, imputing a missing side if allowed; return messages to acknowledge."""
        if state is None:
            raise ValueError("missing match state")
        latency = None
        if state.first_seen is not None:
            latency = (_now() - state.first_seen).total_seconds()

        with self._lock:
            if epoch in self._finalized:
                _log.info("epoch_already_finalized epoch=%d", epoch)
                return state.messages()

        match = impute_missing_side(self.zone, epoch, state.agg, state.mape)
        imputed = match.aggregator_imputed or match.mape_imputed
        if not allow_impute and imputed:
            raise ValueError(f"imputation not allowed for epoch {epoch}")

        stored, meta = self._persist_match(epoch, match)
        self._invoke_hook(stored, meta)

        if latency is not None:
            metrics.observe_match_latency(latency)
        if imputed:
            metrics.inc_imputed(self.zone)
            _log.info(
                "imputation_summary zone=%s epoch=%d aggregatorImputed=%s mapeImputed=%s",
                self.zone, epoch, match.aggregator_imputed, match.mape_imputed,
            )

        with self._lock:
            self._mark_finalized(epoch)

        _log.info(
            "epoch_committed epoch=%d aggregatorImputed=%s mapeImputed=%s",
            epoch, match.aggregator_imputed, match.mape_imputed,
        )
        return state.messages()

    def _persist_match(self, epoch: int, match: _ImputedMatch) -> tuple[Transaction, BlockMetadata]:
        tx = Transaction(
            type="epoch.match",
            schema_version=TRANSACTION_SCHEMA_VERSION_V1,
            zone_id=self.zone,
            epoch_index=epoch,
            aggregator=match.aggregator,
            aggregator_received_at=match.aggregator_received_at.astimezone(timezone.utc),
            mape=match.mape,
            mape_received_at=match.mape_received_at.astimezone(timezone.utc),
            matched_at=_now(),
        )
        try:
            return self._storage.append(tx)
        except (ValueError, OSError, RuntimeError) as exc:
            raise RuntimeError(f"append ledger: {exc}") from exc

    def _invoke_hook(self, tx: Transaction | None, meta: BlockMetadata) -> None:
        if self._hook is None or tx is None:
            return
        try:
            self._hook.on_epoch_finalized(tx, meta)
        except Exception as exc:  # a failing hook must not undo a committed epoch
            _log.error("finalized_hook_panic panic=%s zone=%s epoch=%d", exc, self.zone, tx.epoch_index)

    def _get_or_create(self, epoch: int, now: datetime) -> MatchState:
        state = self._pending.get(epoch)
        if state is not None:
            if state.first_seen is None or now < state.first_seen:
                state.first_seen = now
            return state
        state = MatchState(first_seen=now)
        self._pending[epoch] = state
        return state

    def _mark_finalized(self, epoch: int) -> None:
        if self._buffer <= 0:
            self._buffer = _DEFAULT_BUFFER
        self._finalized[epoch] = _now()
        self._order.append(epoch)
        if len(self._order) > self._buffer:
            oldest = self._order.popleft()
            self._finalized.pop(oldest, None)

    def requeue(self, epoch: int, state: MatchState | None) -> None:
        """Put a state back into the pending set after persistence failed."""
        if state is None:
            return
        now = _now()
        with self._lock:
            existing = self._pending.get(epoch)
            if existing is not None:
                if state.agg is not None:
                    existing.agg = state.agg
                if state.mape is not None:
                    existing.mape = state.mape
                if (
                    existing.first_seen is None
                    or state.first_seen is None
                    or state.first_seen < existing.first_seen
                ):
                    existing.first_seen = state.first_seen
                return
            if state.first_seen is None:
                state.first_seen = now
            self._pending[epoch] = state

    def collect_expired(self, now: datetime, force: bool = False) -> list[PendingFinalize]:
        """Remove and return half-matched epochs whose grace period ran out, or all of them if forced."""
        out = []
        grace = timedelta(seconds=self._grace) if self._grace > 0 else None
        with self._lock:
            for epoch, state in list(self._pending.items()):
                if state is None:
                    del self._pending[epoch]
                    continue
                if state.agg is not None and state.mape is not None:
                    continue
                if not force:
                    if grace is None or state.first_seen is None:
                        continue
                    if now - state.first_seen < grace:
                        continue
                out.append(PendingFinalize(epoch=epoch, state=state))
                del self._pending[epoch]
        return out

    def handle_expired(self, now: datetime, force: bool = False) -> None:
        """Persist expired epochs with imputation and acknowledge their messages."""
        for expired in self.collect_expired(now, force):
            try:
                commits = self.finalize(expired.epoch, expired.state, True)
            except (ValueError, RuntimeError) as exc:
                _log.error("expire_finalize_err err=%s epoch=%d", exc, expired.epoch)
                self.requeue(expired.epoch, expired.state)
                continue
            if commits and self._reader is not None:
                self._commit(commits)

    def _commit(self, commits: list[KafkaMessage]) -> None:
        try:
            self._reader.commit_messages(*commits)
        except Exception as exc:  # commit failures are retried by redelivery
            _log.error("commit_err err=%s", exc)

    def run(self, stop_event: threading.Event) -> None:
        """Consume until ``stop_event`` is set or a message cannot be handled."""
        if self._reader is None:
            raise ValueError("consumer has no reader")
        _log.info("consumer_start topic=%s zone=%s", self.topic, self.zone)
        try:
            self._loop(stop_event)
        finally:
            try:
                self._reader.close()
            except Exception as exc:  # closing is best effort
                _log.error("reader_close err=%s", exc)

    def _loop(self, stop_event: threading.Event) -> None:
        backoff = _INITIAL_BACKOFF
        wait = self._grace if self._grace > 0 else _DEFAULT_GRACE
        while True:
            if stop_event.is_set():
                _log.info("consumer_stop reason=context zone=%s", self.zone)
                self.handle_expired(_now(), True)
                return
            try:
                msg = self._reader.fetch_message(wait)
            except TimeoutError:
                if not stop_event.is_set():
                    self.handle_expired(_now(), False)
                continue
            except Exception as exc:  # transient reader failures back off and retry
                _log.error("fetch_err err=%s", exc)
                if stop_event.wait(backoff):
                    _log.info("consumer_stop reason=shutdown zone=%s", self.zone)
                    return
                if backoff < _MAX_BACKOFF:
                    backoff *= 2
                continue
            backoff = _INITIAL_BACKOFF
            try:
                commits = self.handle_message(msg)
            except (ValueError, RuntimeError) as exc:
                _log.error("handle_err err=%s offset=%d partition=%d", exc, msg.offset, msg.partition)
                return
            if commits:
                self._commit(commits)