"""Minimal Prometheus-compatible registry for ledger instrumentation."""

from __future__ import annotations

import math
import threading
from collections import Counter
from datetime import datetime, timezone
from decimal import Decimal

_LATENCY_BUCKETS = (0.5, 1.0, 2.0, 5.0, 10.0, 30.0)


class _CounterVec:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Counter[str] = Counter()

    def inc(self, label: str) -> None:
        with self._lock:
            self._values[label] += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._values)

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class _Counter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def inc(self) -> None:
        with self._lock:
            self._value += 1

    def snapshot(self) -> int:
        with self._lock:
            return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = 0


class _Gauge:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def snapshot(self) -> float:
        with self._lock:
            return self._value

    def reset(self) -> None:
        self.set(0.0)


class _Histogram:
    def __init__(self, edges) -> None:
        self._lock = threading.Lock()
        self._buckets = sorted(float(edge) for edge in edges)
        self._counts = [0] * len(self._buckets)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        if math.isnan(value) or math.isinf(value):
            return
        with self._lock:
            self._counts = [
                count + (value <= upper) for count, upper in zip(self._counts, self._buckets)
            ]
            self._count += 1
            self._sum += value

    def snapshot(self) -> tuple[list[float], list[int], float, int]:
        with self._lock:
            return list(self._buckets), list(self._counts), self._sum, self._count

    def reset(self) -> None:
        with self._lock:
            self._counts = [0] * len(self._buckets)
            self._sum = 0.0
            self._count = 0


_imputed_total = _CounterVec()
_decode_err_total = _CounterVec()
_match_latency = _Histogram(_LATENCY_BUCKETS)
_load_tx_schema_empty_total = _Counter()
_public_publish_total = _CounterVec()
_public_last_error = _Gauge()
_public_queue = _Gauge()


def inc_imputed(zone: str) -> None:
    """Count one imputed epoch for the zone."""
    _imputed_total.inc(zone.strip())


def inc_decode_error(side: str) -> None:
    """Count one decode failure for the given side."""
    _decode_err_total.inc(side.strip())


def inc_ledger_load_tx_schema_empty() -> None:
    """Count one loaded transaction that lacked a schema version."""
    _load_tx_schema_empty_total.inc()


def observe_match_latency(seconds: float) -> None:
    """Record the seconds needed to match both sides of an epoch."""
    if seconds < 0:
        return
    _match_latency.observe(seconds)


def inc_public_publish(result: str) -> None:
    """Count one public publish attempt with the given result label."""
    _public_publish_total.inc(result.strip())


def set_public_last_error(ts: datetime | None) -> None:
    """Record the unix time of the last publish failure; None clears it."""
    if ts is None:
        _public_last_error.set(0)
        return
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    _public_last_error.set(math.floor(ts.timestamp()))


def set_public_queue_depth(depth: int) -> None:
    """Record the current publisher queue depth."""
    _public_queue.set(max(depth, 0))


def reset() -> None:
    """Clear every registered metric."""
    for metric in (
        _imputed_total,
        _decode_err_total,
        _match_latency,
        _load_tx_schema_empty_total,
        _public_publish_total,
        _public_last_error,
        _public_queue,
    ):
        metric.reset()


def render() -> str:
    """Build the text exposition for all registered metrics."""
    sections = [
        ("ledger_ingest_imputed_total", "counter",
         _counter_lines("ledger_ingest_imputed_total", "zone", _imputed_total.snapshot())),
        ("ledger_ingest_decode_errors_total", "counter",
         _counter_lines("ledger_ingest_decode_errors_total", "side", _decode_err_total.snapshot())),
        ("ledger_load_tx_schema_empty_total", "counter",
         [f"ledger_load_tx_schema_empty_total{{}} {_load_tx_schema_empty_total.snapshot()}"]),
        ("ledger_ingest_match_latency_seconds", "histogram",
         _histogram_lines("ledger_ingest_match_latency_seconds", _match_latency)),
        ("ledger_public_publish_total", "counter",
         _counter_lines("ledger_public_publish_total", "result", _public_publish_total.snapshot())),
        ("ledger_public_last_error_ts", "gauge",
         [f"ledger_public_last_error_ts{{}} {_format_g(_public_last_error.snapshot())}"]),
        ("ledger_public_queue_depth", "gauge",
         [f"ledger_public_queue_depth{{}} {_format_g(_public_queue.snapshot())}"]),
    ]
    out = []
    for name, kind, lines in sections:
        out.append(f"# TYPE {name} {kind}\n")
        out.extend(line + "\n" for line in lines)
        out.append("\n")
    return "".join(out)


def _counter_lines(name: str, label: str, values: dict[str, int]) -> list[str]:
    if not values:
        return [f"{name}{{}} 0"]
    return [f'{name}{{{label}="{_escape_label(key)}"}} {values[key]}' for key in sorted(values)]


def _histogram_lines(name: str, histogram: _Histogram) -> list[str]:
    buckets, counts, total, count = histogram.snapshot()
    lines = []
    cumulative = 0
    for upper, bucket_count in zip(buckets, counts):
        cumulative += bucket_count
        lines.append(f'{name}_bucket{{le="{_format_g(upper)}"}} {cumulative}')
    lines.append(f'{name}_bucket{{le="+Inf"}} {count}')
    lines.append(f"{name}_sum {total:f}")
    lines.append(f"{name}_count {count}")
    return lines


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _shortest(value: float) -> tuple[int, str, int]:
    """Return sign, shortest significant digits and decimal exponent of the first digit."""
    if value == 0:
        return (1 if math.copysign(1.0, value) < 0 else 0), "0", 0
    sign, digits, exponent = Decimal(repr(float(value))).normalize().as_tuple()
    text = "".join(str(d) for d in digits)
    return sign, text, len(text) + exponent - 1


def _format_g(value: float) -> str:
    """Format a float the way a shortest %g conversion does."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    sign, digits, exp = _shortest(value)
    prefix = "-" if sign else ""
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        return f"{prefix}{mantissa}e{'-' if exp < 0 else '+'}{abs(exp):02d}"
    if exp < 0:
        return prefix + "0." + "0" * (-exp - 1) + digits
    if len(digits) <= exp + 1:
        return prefix + digits + "0" * (exp + 1 - len(digits))
    return prefix + digits[: exp + 1] + "." + digits[exp + 1:]