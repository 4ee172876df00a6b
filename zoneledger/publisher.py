"""Asynchronous publisher for public epoch documents."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from . import metrics
from .epoch import EVENT_TYPE_EPOCH_PUBLIC, SCHEMA_VERSION_V1, Epoch
from .models import KafkaMessage

_log = logging.getLogger(__name__)

QUEUE_SIZE = 256
_POLL_INTERVAL = 0.05


class Partitioner(str, Enum):
    """Supported partition strategies for public publishing."""

    HASH = "hash"
    ROUND_ROBIN = "roundrobin"


class KeyMode(str, Enum):
    """How the message key is derived when publishing."""

    ZONE = "zone"
    EPOCH = "epoch"
    NONE = "none"


def _label(value) -> str:
    return value.value if isinstance(value, Enum) else str(value)


@dataclass
class PublisherConfig:
    """Runtime options for publishing public epoch documents."""

    enabled: bool = False
    topic: str = ""
    brokers: list[str] = field(default_factory=list)
    acks: int = -1
    partitioner: Partitioner | str = Partitioner.HASH
    key_mode: KeyMode | str = KeyMode.ZONE
    schema_version: str = SCHEMA_VERSION_V1


class PublisherNotStartedError(RuntimeError):
    """Raised when publishing through a publisher that is not running."""


class PublisherStoppedError(RuntimeError):
    """Raised when publishing through a publisher that is shutting down."""


@dataclass(frozen=True)
class _PublishRequest:
    key: bytes | None
    value: bytes
    zone_id: str
    epoch_index: int


class Publisher:
    """Queues epochs and delivers them to a writer from a background thread.

    The writer needs a ``write_messages(*messages)`` method; the optional
    closer needs a ``close()`` method and is closed when the publisher stops.
    """

    def __init__(self, config: PublisherConfig, writer=None, closer=None) -> None:
        self._config = config
        self._enabled = config.enabled
        self._writer = writer
        self._closer = closer
        self._queue: queue.Queue[_PublishRequest] = queue.Queue(maxsize=QUEUE_SIZE)
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._start_attempted = False
        self._stop_attempted = False
        self._started = False
        if not self._enabled:
            _log.info("public_publisher_disabled")
            return
        if not config.topic.strip():
            raise ValueError("public topic must not be empty")
        if not config.brokers:
            raise ValueError("at least one broker is required")
        if config.partitioner not in (Partitioner.HASH, Partitioner.ROUND_ROBIN):
            raise ValueError(f"unsupported partitioner: {_label(config.partitioner)}")
        if writer is None:
            raise ValueError("publisher requires a writer")
        metrics.set_public_queue_depth(0)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        """Launch the background delivery loop; a stopped publisher cannot restart."""
        if not self._enabled:
            _log.info("public_publisher_start_skipped reason=disabled")
            return
        with self._state_lock:
            if not self._start_attempted:
                self._start_attempted = True
                self._started = True
                self._thread = threading.Thread(
                    target=self._run, name="public-publisher", daemon=True
                )
                self._thread.start()
                _log.info("public_publisher_started topic=%s", self._config.topic)
            if not self._started:
                raise PublisherNotStartedError("public publisher not started")

    def stop(self, timeout: float | None = None) -> None:
        """Stop the loop, deliver what is queued and close the writer.

        Raises TimeoutError if the loop has not finished within ``timeout`` seconds.
        """
        if not self._enabled:
            _log.info("public_publisher_stop_skipped reason=disabled")
            return
        with self._state_lock:
            if self._stop_attempted:
                return
            self._stop_attempted = True
        self._stop_event.set()
        error = None
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                error = TimeoutError("public publisher did not stop in time")
        if self._closer is not None:
            try:
                self._closer.close()
            except Exception as exc:  # the closer is an external resource
                _log.error("public_publisher_close_err err=%s", exc)
        metrics.set_public_queue_depth(0)
        if error is not None:
            _log.error("public_publisher_stop_err err=%s", error)
        _log.info("public_publisher_stopped")
        if error is not None:
            raise error

    def publish(self, epoch: Epoch, timeout: float | None = None) -> None:
        """Queue an epoch for delivery, waiting up to ``timeout`` seconds for room."""
        if not self._enabled:
            _log.info("public_publish_skipped reason=disabled")
            return
        if not self._started:
            _log.error("public_publish_not_started")
            raise PublisherNotStartedError("public publisher not started")
        payload = replace(epoch.canonical(), type=EVENT_TYPE_EPOCH_PUBLIC)
        if not payload.schema_version.strip():
            payload.schema_version = self._config.schema_version.strip()
        try:
            key = self.message_key(payload)
            value = payload.to_json().encode("utf-8")
        except ValueError as exc:
            self._record_failure()
            _log.error(
                "public_publish_encode_err err=%s zone=%s epoch=%d",
                exc, payload.zone_id, payload.epoch_index,
            )
            raise
        request = _PublishRequest(key, value, payload.zone_id, payload.epoch_index)
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self._stop_event.is_set():
                self._record_failure()
                _log.error(
                    "public_publish_stopped zone=%s epoch=%d", payload.zone_id, payload.epoch_index
                )
                raise PublisherStoppedError("public publisher stopped")
            wait = _POLL_INTERVAL
            if deadline is not None:
                wait = min(wait, deadline - time.monotonic())
                if wait <= 0:
                    self._record_failure()
                    _log.error(
                        "public_publish_ctx_err zone=%s epoch=%d",
                        payload.zone_id, payload.epoch_index,
                    )
                    raise TimeoutError("timed out queueing public epoch")
            try:
                self._queue.put(request, timeout=wait)
            except queue.Full:
                continue
            metrics.set_public_queue_depth(self._queue.qsize())
            _log.info(
                "public_publish_enqueued zone=%s epoch=%d", payload.zone_id, payload.epoch_index
            )
            return

    def message_key(self, epoch: Epoch) -> bytes | None:
        """Derive the message key for the epoch from the configured key mode."""
        mode = self._config.key_mode
        if mode == KeyMode.ZONE:
            if not epoch.zone_id.strip():
                raise ValueError("zoneId is required for zone key mode")
            return epoch.zone_id.encode("utf-8")
        if mode == KeyMode.EPOCH:
            if not epoch.zone_id.strip():
                raise ValueError("zoneId is required for epoch key mode")
            return f"{epoch.zone_id}:{epoch.epoch_index}".encode("utf-8")
        if mode == KeyMode.NONE:
            return None
        raise ValueError(f"unsupported key mode: {_label(mode)}")

    @staticmethod
    def _record_failure() -> None:
        metrics.inc_public_publish("fail")
        metrics.set_public_last_error(datetime.now(timezone.utc))

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                request = self._queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            metrics.set_public_queue_depth(self._queue.qsize())
            self._deliver(request)
        self._drain()
        self._started = False
        _log.info("public_publisher_loop_exit")

    def _drain(self) -> None:
        while True:
            try:
                request = self._queue.get_nowait()
            except queue.Empty:
                return
            metrics.set_public_queue_depth(self._queue.qsize())
            self._deliver(request)

    def _deliver(self, request: _PublishRequest) -> None:
        try:
            self._writer.write_messages(KafkaMessage(key=request.key, value=request.value))
        except Exception as exc:  # any writer failure is counted, not propagated
            self._record_failure()
            _log.error(
                "public_publish_err err=%s zone=%s epoch=%d",
                exc, request.zone_id, request.epoch_index,
            )
            return
        metrics.inc_public_publish("ok")
        _log.info("public_publish_success zone=%s epoch=%d", request.zone_id, request.epoch_index)