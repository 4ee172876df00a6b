[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "zoneledger"
version = "0.1.0"
description = "Append-only, hash-chained ledger that matches per-zone aggregator and planner epochs and publishes public epoch summaries."
requires-python = ">=3.10"
dependencies = []
keywords = ["ledger", "hash-chain", "merkle", "kafka", "epoch", "hvac", "jsonl", "wsgi"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["zoneledger"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
