"""HTTP interface to the ledger as a WSGI application."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from http import HTTPStatus
from urllib.parse import parse_qs

from . import metrics
from .storage import FileLedger, NotFoundError, VerifyReport

_INTEGER = re.compile(r"[+-]?\d+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_HTML_ESCAPES = str.maketrans({
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
})


@dataclass(frozen=True)
class _Response:
    status: int
    content_type: str
    body: bytes


def _json(status: int, value) -> _Response:
    text = json.dumps(value, indent=2, ensure_ascii=False).translate(_HTML_ESCAPES) + "\n"
    return _Response(status, "application/json", text.encode("utf-8"))


def _error(status: int, message: str) -> _Response:
    return _json(status, {"error": message})


def _atoi(text: str) -> int:
    return int(text) if _INTEGER.fullmatch(text) else 0


def _at_least_one(value: int) -> int:
    return value if value > 0 else 1


def _parse_id(text: str) -> int | None:
    if not _INTEGER.fullmatch(text):
        return None
    value = int(text)
    return value if _INT64_MIN <= value <= _INT64_MAX else None


class LedgerApp:
    """Serves health, event listing, single events and metrics."""

    def __init__(self, ledger: FileLedger) -> None:
        self._ledger = ledger

    def __call__(self, environ, start_response):
        response = self._dispatch(
            environ.get("REQUEST_METHOD", "GET"),
            environ.get("PATH_INFO", "") or "/",
            environ.get("QUERY_STRING", ""),
        )
        status = f"{response.status} {HTTPStatus(response.status).phrase}"
        start_response(status, [
            ("Content-Type", response.content_type),
            ("Content-Length", str(len(response.body))),
        ])
        return [response.body]

    def _dispatch(self, method: str, path: str, query: str) -> _Response:
        if path == "/health":
            handler = self._health
        elif path == "/events":
            handler = self._events
        elif path.startswith("/events/"):
            handler = self._event_by_id
        elif path == "/metrics":
            handler = self._metrics
        else:
            return _Response(404, "text/plain; charset=utf-8", b"404 page not found\n")
        if method != "GET":
            return _error(405, "method not allowed")
        return handler(path, query)

    def _health(self, path: str, query: str) -> _Response:
        try:
            report = self._ledger.verify()
        except (ValueError, OSError) as exc:
            failed = getattr(exc, "report", None) or VerifyReport()
            return _json(200, {"error": str(exc), "status": "degraded", "versions": failed.to_dict()})
        return _json(200, {"status": "ok", "versions": report.to_dict()})

    def _events(self, path: str, query: str) -> _Response:
        params = {key: values[0] for key, values in parse_qs(query, keep_blank_values=True).items()}
        page = _atoi(params.get("page", ""))
        size = _atoi(params.get("size", ""))
        items, total = self._ledger.query(
            params.get("type", ""),
            params.get("zoneId", ""),
            params.get("from", ""),
            params.get("to", ""),
            page,
            size,
        )
        return _json(200, {
            "items": [item.to_dict() for item in items],
            "page": _at_least_one(page),
            "size": _at_least_one(size),
            "total": total,
        })

    def _event_by_id(self, path: str, query: str) -> _Response:
        event_id = _parse_id(path.rsplit("/", 1)[-1])
        if event_id is None:
            return _error(400, "invalid id")
        try:
            event = self._ledger.get_by_id(event_id)
        except NotFoundError:
            return _error(404, "not found")
        except Exception:  # any other storage failure is an internal error
            return _error(500, "internal error")
        return _json(200, event.to_dict())

    def _metrics(self, path: str, query: str) -> _Response:
        return _Response(200, "text/plain; version=0.0.4", metrics.render().encode("utf-8"))