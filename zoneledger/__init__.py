"""Hash-chained epoch ledger with zone matching, verification, public publishing and a WSGI API."""

__version__ = "0.1.0"

__all__ = [
    "api",
    "config",
    "consumer",
    "epoch",
    "hook",
    "manager",
    "metrics",
    "models",
    "publisher",
    "storage",
    "topics",
]