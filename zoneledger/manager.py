"""Starting and supervising one consumer per configured zone."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

from .consumer import ZoneConsumer
from .storage import FileLedger

_log = logging.getLogger(__name__)

_DEFAULT_GRACE = 2.0
_DEFAULT_BUFFER = 200
ZONE_PLACEHOLDER = "{zone}"


@dataclass
class IngestConfig:
    """Settings for the ingestion pipelines that fill the ledger."""

    brokers: list[str] = field(default_factory=list)
    group_id: str = ""
    topic_template: str = ""
    zones: list[str] = field(default_factory=list)
    partition_aggregator: int = 0
    partition_mape: int = 1
    grace_period: float = 0.0
    buffer_max_epochs: int = 0

    def topic_for(self, zone: str) -> str:
        """The topic name of one zone."""
        return self.topic_template.replace(ZONE_PLACEHOLDER, zone)


class Manager:
    """Tracks the background consumer threads."""

    def __init__(self) -> None:
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self.consumers: list[ZoneConsumer] = []

    def _launch(self, consumer: ZoneConsumer) -> None:
        thread = threading.Thread(
            target=consumer.run,
            args=(self._stop_event,),
            name=f"ledger-consumer-{consumer.zone}",
            daemon=True,
        )
        self.consumers.append(consumer)
        self._threads.append(thread)
        thread.start()

    def stop(self) -> None:
        """Ask every consumer to flush what is pending and finish."""
        self._stop_event.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every consumer has finished; return whether they all did in time."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(thread.is_alive() for thread in self._threads)


def start(config: IngestConfig, storage: FileLedger, reader_factory, hook=None) -> Manager:
    """Create a reader per zone with ``reader_factory(topic, config)`` and start consuming.

    The optional hook is called after every epoch that is committed to storage.
    """
    if storage is None:
        raise ValueError("storage must not be nil")
    if reader_factory is None:
        raise ValueError("reader factory must not be nil")
    if not config.brokers:
        raise ValueError("no kafka brokers configured")
    if not config.topic_template.strip():
        raise ValueError("topic template must not be empty")
    if not config.zones:
        raise ValueError("no zones configured")

    grace = config.grace_period if config.grace_period > 0 else _DEFAULT_GRACE
    buffer = config.buffer_max_epochs if config.buffer_max_epochs > 0 else _DEFAULT_BUFFER
    manager = Manager()
    for zone in config.zones:
        topic = config.topic_for(zone)
        reader = reader_factory(topic, config)
        consumer = ZoneConsumer(
            zone,
            topic,
            storage,
            config.partition_aggregator,
            config.partition_mape,
            grace,
            buffer,
            hook,
            reader,
        )
        manager._launch(consumer)
        _log.info("consumer_launched zone=%s topic=%s", zone, topic)
    return manager