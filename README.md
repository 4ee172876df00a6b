# zoneledger

zoneledger keeps a tamper-evident ledger of matched control epochs.

Each zone has two streams that report on the same epoch:

- The aggregator sends sensor summaries.
- The planner sends the planned HVAC action.

A `ZoneConsumer` pairs the two reports by epoch index. If one side has not arrived when the grace period runs out, the consumer fills in placeholder data for it. It then appends the match to a JSON-lines ledger file.

Each ledger line is a version-2 block. A block carries three things:

- a Merkle data hash over its transactions,
- a header hash that is chained to the previous block,
- its own encoded size.

The package has no runtime dependencies.

## Modules

- **`zoneledger.models`** holds the record types and the hashing.
  - The record types are dataclasses: `Event`, `Transaction`, `AggregatedEpoch`, `MAPELedgerEvent`, `MatchRecord`, `BlockV2`, `BlockHeaderV2`, `BlockDataV2` and `KafkaMessage`.
  - The hashing helpers are `compute_data_hash_v2`, `compute_header_hash_v2` and `merkle_root`.
  - `dumps` is the deterministic JSON encoder that the hashes are computed over.
- **`zoneledger.storage`** provides `FileLedger`.
  - `append(tx)` writes a new block, fsyncs the file, and returns a copy of the stored transaction together with a `BlockMetadata`.
  - `verify()` re-reads the file and returns a `VerifyReport`. It raises `ValueError` at the first broken hash, height, prev-hash link or block size. The exception's `report` attribute holds the counts gathered before the failure.
  - `get_by_id(id)` raises `NotFoundError` when no event has that id.
  - `query(type_, zone_id, from_, to, page, size)` pages through the events. It matches type and zone case-insensitively. The time bounds can be RFC 3339 timestamps or unix seconds. The default page size is 50.
  - Legacy version-1 event lines are loaded and verified alongside blocks. A transaction with an empty schema version is treated as `v1`.
- **`zoneledger.consumer`** provides `ZoneConsumer`.
  - `handle_message` routes each message by partition.
  - Duplicates of epochs that are already finalized are acknowledged without being written again. The consumer remembers a bounded number of finalized epochs for this.
  - `collect_expired` / `handle_expired` flush half-matched epochs once their grace period has run out.
  - An optional hook is called after every commit.
  - `run(stop_event)` drives a reader that you supply.
- **`zoneledger.manager`** provides `start(config, storage, reader_factory, hook)`.
  - It starts one consumer thread per zone listed in an `IngestConfig`.
  - It returns a `Manager`, which has `stop()` and `wait(timeout)`.
- **`zoneledger.epoch`** provides `Epoch`, the public epoch document.
  - It supports canonical normalisation, schema validation and deterministic JSON (`to_json`, `from_json`).
- **`zoneledger.publisher`** provides `Publisher`, a queue-backed background publisher.
  - Message keys follow `KeyMode`: `zone`, `epoch` or `none`.
- **`zoneledger.hook`** provides `transform_matched_transaction` and `PublisherHook`, which connect ledger commits to the publisher.
- **`zoneledger.config`** provides `PublicPublisherConfig`, with `validate()` and `clone()`.
- **`zoneledger.topics`** provides `validate_ledger_topics`.
  - It checks that every zone topic has 2 partitions and that the public topic has the configured count.
  - It uses a connection factory that you supply.
- **`zoneledger.metrics`** is a process-wide counter/gauge/histogram registry.
  - `render()` returns the registry in the Prometheus text format.
  - `reset()` clears the registry.
- **`zoneledger.api`** provides `LedgerApp`, a WSGI application.
  - It serves `GET /health`, `/events`, `/events/<id>` and `/metrics`.

## Installing

```
pip install .
```

## Example

```python
from datetime import datetime, timezone

from zoneledger.models import AggregatedEpoch, EpochWindow, MAPELedgerEvent, Transaction
from zoneledger.storage import FileLedger

matched = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
tx = Transaction(
    type="epoch.match",
    schema_version="v1",
    zone_id="zone-A",
    epoch_index=1,
    aggregator=AggregatedEpoch(schema_version="v1", zone_id="zone-A",
                               epoch=EpochWindow(index=1), summary={"targetC": 21.5}),
    mape=MAPELedgerEvent(schema_version="v1", epoch_index=1, zone_id="zone-A",
                         planned="hold", target_c=21.5),
    matched_at=matched,
)

with FileLedger("data/ledger.jsonl") as ledger:
    stored, meta = ledger.append(tx)
    print(meta.height, meta.header_hash)
    print(ledger.verify().to_dict())
    items, total = ledger.query("epoch.match", "zone-A", "", "", 1, 10)
```

### Serving the ledger over HTTP

`LedgerApp` runs under any WSGI server, including the one in the standard library:

```python
from wsgiref.simple_server import make_server

from zoneledger.api import LedgerApp
from zoneledger.storage import FileLedger

ledger = FileLedger("data/ledger.jsonl")
make_server("127.0.0.1", 8080, LedgerApp(ledger)).serve_forever()
```

### Consuming and publishing

You supply the objects that talk to the message broker.

The consumer needs a reader with these methods:

- `fetch_message(timeout)`, which returns a `KafkaMessage` or raises `TimeoutError` when idle,
- `commit_messages(*messages)`,
- `close()`.

`start` builds one reader per zone by calling `reader_factory(topic, config)`.

`Publisher(config, writer, closer)` needs a writer with a `write_messages(*messages)` method. The closer is optional and needs a `close()` method.

To publish each finalized epoch as a public `Epoch`:

1. Call `start()` on the publisher.
2. Wrap the publisher in a `PublisherHook`.
3. Pass the hook to `ZoneConsumer` or to `start`.

## What the package does not do

- It has no message-broker client. Readers, writers and the connections used by `validate_ledger_topics` must come from you.
- It has no command-line program.
- It does not read settings from the environment or from files. Configuration objects are built in code.
- There is no circuit breaker around reads or writes.

## Running the tests

```
pip install .[test]
pytest
```