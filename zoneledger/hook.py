"""Turning finalized ledger transactions into published public epochs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from . import metrics
from .epoch import (
    EVENT_TYPE_EPOCH_PUBLIC,
    SCHEMA_VERSION_V1,
    AggregatorEnvelope,
    BlockSummary,
    Epoch,
    MAPESummary,
)
from .models import Transaction
from .publisher import Publisher
from .storage import BlockMetadata

_log = logging.getLogger(__name__)

PUBLISH_TIMEOUT = 5.0


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def transform_matched_transaction(tx: Transaction | None, meta: BlockMetadata) -> Epoch:
    """Build a validated public epoch from a finalized transaction and its block."""
    if tx is None:
        raise ValueError("transaction must not be nil")
    summary = tx.aggregator.summary
    payload = Epoch(
        type=EVENT_TYPE_EPOCH_PUBLIC,
        schema_version=SCHEMA_VERSION_V1,
        zone_id=tx.zone_id,
        epoch_index=tx.epoch_index,
        matched_at=_utc(tx.matched_at),
        block=BlockSummary(height=meta.height, header_hash=meta.header_hash, data_hash=meta.data_hash),
        aggregator=AggregatorEnvelope(summary=dict(summary) if summary else None),
        mape=MAPESummary(
            planned=tx.mape.planned,
            target_c=tx.mape.target_c,
            delta_c=tx.mape.delta_c,
            fan=tx.mape.fan,
        ),
    )
    payload.validate()
    return payload


class PublisherHook:
    """Publishes each finalized epoch; does nothing without a publisher."""

    def __init__(self, publisher: Publisher | None) -> None:
        self._publisher = publisher

    def on_epoch_finalized(self, tx: Transaction | None, meta: BlockMetadata) -> None:
        if self._publisher is None or tx is None:
            return
        try:
            epoch = transform_matched_transaction(tx, meta)
        except ValueError as exc:
            metrics.inc_public_publish("fail")
            metrics.set_public_last_error(datetime.now(timezone.utc))
            _log.error(
                "public_transform_err err=%s zone=%s epoch=%d", exc, tx.zone_id, tx.epoch_index
            )
            return
        try:
            self._publisher.publish(epoch, timeout=PUBLISH_TIMEOUT)
        except (RuntimeError, ValueError, TimeoutError) as exc:
            # The publisher has already logged and counted the failure.
            _log.debug(
                "public_publish_delegate_err err=%s zone=%s epoch=%d",
                exc, epoch.zone_id, epoch.epoch_index,
            )