# parcastore

Building blocks for a continuous profiling server: content-addressed keys
for profiling metadata, an in-memory metastore, scrape configuration
loading and live reloading, query request validation, and bookkeeping for
uploaded debug information.

## Installation

Install the package with pip; the test suite needs the `test` extra.

## What is inside

| Module | Purpose |
| --- | --- |
| `parcastore.hashing` | Pure-Python incremental `XXHash64` (`update`, `digest`, `hexdigest`, `intdigest`), `xxh64(data, seed)` returning an integer, and `hash_file` / `hash_reader` returning 16-character hex digests. |
| `parcastore.kv` | `Mapping`, `Function`, `Location`, `Line` and `Stacktrace` records and the functions that derive their stable IDs and storage keys (`make_mapping_id`, `make_location_key`, `make_stacktrace_id`, `location_id_from_key`, ...). |
| `parcastore.metastore` | `KVStore`, an ordered in-memory store with `view()` and `update()` transactions, and `Metastore`, which gets or creates mappings, functions, locations and stacktraces and pages through unsymbolized locations. `new_test_metastore()` returns a fresh in-memory instance. |
| `parcastore.client` | `InProcessClient`, which offers the `Metastore` operations through a client object. |
| `parcastore.query_validation` | Query request types (`QueryRequest`, `QueryRangeRequest`, `SingleProfile`, `MergeProfile`, `DiffProfile`, `ProfileDiffSelection`) whose `validate()` raises `QueryValidationError`; its `errors` attribute maps field names to messages. |
| `parcastore.config` | YAML configuration: `load`, `load_file`, `default_scrape_config`, `parse_duration` / `format_duration`, `check_target_address`, and `Config.validate()`, `Config.set_directory()`, `Config.to_yaml()`. |
| `parcastore.reloader` | `ConfigReloader`, which watches a configuration file and hands each valid new `Config` to registered `ComponentReloader`s, recording the outcome in two `Gauge`s. |
| `parcastore.metadata` | `FilesystemBucket`, object storage in a local directory, and `ObjectStoreMetadata`, which records the upload state (`MetadataState`) of each build ID as a JSON `Metadata` record. |
| `parcastore.debuginfod` | `HTTPDebugInfodClient` for fetching debug information from debuginfod servers, `CachingDebugInfodClient` to copy what is read into a bucket, and `NopDebugInfodClient`, which never finds anything. |

## Examples

Hashing a file:

```python
from parcastore.hashing import hash_file

digest = hash_file("/usr/bin/env")  # 16 hex characters
```

Loading a scrape configuration:

```python
from parcastore.config import load

config = load("""
scrape_configs:
  - job_name: parca
    scrape_interval: 10s
    static_configs:
      - targets: ['localhost:10902']
""")
scrape = config.scrape_configs[0]
print(scrape.job_name, scrape.scrape_interval, scrape.scrape_timeout)  # parca 10.0 10.0
```

Durations are held in seconds. Every scrape configuration is filled in with
the default pprof endpoints (memory, block, goroutine, mutex and process
CPU); endpoints given in the file keep their own settings, with a missing
`enabled` taken as true and a missing `path` taken from the default. A
`path_prefix` under `profiling_config` is joined in front of each endpoint
path. Unknown fields and invalid input, such as an empty `job_name`, a
timeout longer than the interval, a process CPU timeout under two seconds,
or a target written as a URL, raise `ConfigError`. `Config.validate()`
additionally requires `object_storage.bucket` with a `type` and a `config`.

Reloading the configuration when the file changes:

```python
import threading

from parcastore.reloader import ComponentReloader, ConfigReloader

stop = threading.Event()
reloader = ConfigReloader(
    "parca.yaml",
    [ComponentReloader("printer", lambda cfg: print(cfg.scrape_configs))],
)
threading.Thread(target=reloader.run, args=(stop,)).start()
# ... later
stop.set()
```

A failed reload is logged and leaves `reloader.config_success.value` at 0;
`reload()` can also be called directly and raises `ConfigError` on failure.

Working with the metastore:

```python
from parcastore.kv import Location, Mapping
from parcastore.metastore import new_test_metastore

metastore = new_test_metastore()
[mapping] = metastore.get_or_create_mappings(
    [Mapping(start=0x400000, limit=0x464000, build_id="abcd")]
)
metastore.get_or_create_locations([Location(mapping_id=mapping.id, address=0x463781)])
page = metastore.unsymbolized_locations(limit=10)
print(len(page.locations), page.max_key)
```

Records are stored under keys derived from their content, so asking to
create the same mapping, function, location or stacktrace twice returns
the record that is already there. Locations with a mapping and an address
but no lines are tracked as unsymbolized until `create_location_lines`
supplies them; `unsymbolized_locations(limit, min_key)` pages through them
in key order, starting after `min_key`. Reading an ID that is not stored
raises `KeyNotFoundError`. A `KVStore` may be given `max_txn_entries` or
`max_txn_bytes`; stacktrace creation then spreads over at most two
transactions and raises `TransactionTooBigError` if that is not enough.

Tracking debug information uploads:

```python
from parcastore.metadata import FilesystemBucket, ObjectStoreMetadata

bucket = FilesystemBucket("bucket")
metadata = ObjectStoreMetadata(bucket)
metadata.mark_as_uploading("abcd")
print(metadata.fetch("abcd").state)  # METADATA_STATE_UPLOADING
metadata.mark_as_uploaded("abcd", "0123456789abcdef")
```

Fetching metadata for an unknown build ID raises `MetadataNotFoundError`;
marking as uploaded without a record raises `MetadataShouldExistError`.

## What this package does not do

It has no command-line program and no network server: the metastore, the
query types and the debug information clients are plain Python objects to
be used from your own code. It does not scrape targets, store or query
profile samples, or symbolize locations, and it does not accept debug
information uploads or serve downloads itself; `parcastore.metadata` only
records their state. Only local-directory object storage
(`FilesystemBucket`) is provided.