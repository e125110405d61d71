"""Metastore for mappings, functions, locations and stacktraces over a sorted KV store."""

from __future__ import annotations

import dataclasses
import heapq
import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, TypeVar

from sortedcontainers import SortedDict

from parcastore.kv import (
    UNSYMBOLIZED_LOCATION_LINES_KEY_PREFIX,
    Function,
    Line,
    Location,
    Mapping,
    Stacktrace,
    function_id_from_key,
    location_id_from_key,
    location_id_from_unsymbolized_key,
    make_function_key,
    make_function_key_with_id,
    make_location_key,
    make_location_key_with_id,
    make_mapping_key,
    make_mapping_key_with_id,
    make_stacktrace_key,
    make_stacktrace_key_with_id,
    make_unsymbolized_location_key_with_id,
    mapping_id_from_key,
    stacktrace_id_from_key,
)

_log = logging.getLogger(__name__)

_T = TypeVar("_T")

_MAX_STACKTRACE_ATTEMPTS = 2


class KeyNotFoundError(KeyError):
    """Raised when a key is not present in the store."""


class TransactionTooBigError(Exception):
    """Raised when a write would exceed the limits of a single transaction."""


class Transaction:
    """A view of the store with pending writes layered on top."""

    def __init__(self, db: KVStore, writable: bool) -> None:
        self._db = db
        self._writable = writable
        self._writes: dict[str, bytes | None] = {}
        self._entries = 0
        self._bytes = 0

    def get(self, key: str) -> bytes:
        """Return the value stored at ``key``."""
        if key in self._writes:
            value = self._writes[key]
            if value is None:
                raise KeyNotFoundError(key)
            return value
        try:
            return self._db._data[key]
        except KeyError:
            raise KeyNotFoundError(key) from None

    def _stage(self, key: str, value: bytes | None) -> None:
        if not self._writable:
            raise RuntimeError("transaction is read-only")
        size = len(key.encode()) + (len(value) if value is not None else 0)
        entries = self._entries + 1
        total = self._bytes + size
        max_entries = self._db.max_txn_entries
        max_bytes = self._db.max_txn_bytes
        if (max_entries is not None and entries > max_entries) or (
            max_bytes is not None and total > max_bytes
        ):
            raise TransactionTooBigError("transaction is too big")
        self._entries = entries
        self._bytes = total
        self._writes[key] = value

    def set(self, key: str, value: bytes) -> None:
        """Stage ``value`` to be stored at ``key`` on commit."""
        self._stage(key, bytes(value))

    def delete(self, key: str) -> None:
        """Stage removal of ``key`` on commit."""
        self._stage(key, None)

    def seek(self, key: str) -> Iterator[tuple[str, bytes]]:
        """Yield ``(key, value)`` pairs in key order, starting at ``key``."""
        committed = self._db._data.irange(minimum=key)
        pending = sorted(k for k in self._writes if k >= key)
        last: str | None = None
        for current in heapq.merge(committed, pending):
            if current == last:
                continue
            last = current
            if current in self._writes:
                value = self._writes[current]
                if value is None:
                    continue
                yield current, value
            else:
                yield current, self._db._data[current]

    def _commit(self) -> None:
        for key, value in self._writes.items():
            if value is None:
                self._db._data.pop(key, None)
            else:
                self._db._data[key] = value
        self._writes.clear()


class KVStore:
    """An in-memory, ordered key-value store with transactions."""

    def __init__(
        self,
        max_txn_entries: int | None = None,
        max_txn_bytes: int | None = None,
    ) -> None:
        self._data: SortedDict = SortedDict()
        self._lock = threading.RLock()
        self.max_txn_entries = max_txn_entries
        self.max_txn_bytes = max_txn_bytes

    @contextmanager
    def view(self) -> Iterator[Transaction]:
        """Open a read-only transaction."""
        with self._lock:
            yield Transaction(self, writable=False)

    @contextmanager
    def update(self) -> Iterator[Transaction]:
        """Open a read-write transaction, committed when the block exits cleanly."""
        with self._lock:
            txn = Transaction(self, writable=True)
            yield txn
            txn._commit()


@dataclass
class UnsymbolizedLocations:
    """A page of unsymbolized locations and the key to continue after."""

    locations: list[Location] = field(default_factory=list)
    max_key: str = ""


def _encode(entity: object) -> bytes:
    return json.dumps(dataclasses.asdict(entity), sort_keys=True).encode()


def _decode_mapping(data: bytes) -> Mapping:
    return Mapping(**json.loads(data))


def _decode_function(data: bytes) -> Function:
    return Function(**json.loads(data))


def _decode_location(data: bytes) -> Location:
    fields = json.loads(data)
    lines = [Line(**line) for line in fields.pop("lines", [])]
    return Location(lines=lines, **fields)


def _decode_stacktrace(data: bytes) -> Stacktrace:
    return Stacktrace(**json.loads(data))


class Metastore:
    """Stores and deduplicates profile metadata in a :class:`KVStore`."""

    def __init__(self, db: KVStore, logger: logging.Logger | None = None) -> None:
        self._db = db
        self._logger = logger or _log

    @staticmethod
    def _read_all(
        txn: Transaction, keys: list[str], decode: Callable[[bytes], _T]
    ) -> list[_T]:
        return [decode(txn.get(key)) for key in keys]

    def _get_all(self, keys: list[str], decode: Callable[[bytes], _T]) -> list[_T]:
        with self._db.view() as txn:
            return self._read_all(txn, keys, decode)

    def _get_or_create(
        self,
        entities: list[_T],
        make_key: Callable[[_T], str],
        id_from_key: Callable[[str], str],
        decode: Callable[[bytes], _T],
        on_create: Callable[[Transaction, _T], None] | None = None,
    ) -> list[_T]:
        keyed = [(make_key(entity), entity) for entity in entities]
        result: list[_T] = []
        with self._db.update() as txn:
            for key, entity in keyed:
                try:
                    result.append(decode(txn.get(key)))
                    continue
                except KeyNotFoundError:
                    pass
                created = dataclasses.replace(entity, id=id_from_key(key))
                txn.set(key, _encode(created))
                result.append(created)
                if on_create is not None:
                    on_create(txn, created)
        return result

    def mappings(self, mapping_ids: list[str]) -> list[Mapping]:
        """Return the mappings with the given ids."""
        keys = [make_mapping_key_with_id(i) for i in mapping_ids]
        return self._get_all(keys, _decode_mapping)

    def get_or_create_mappings(self, mappings: list[Mapping]) -> list[Mapping]:
        """Return stored mappings, creating any that are new."""
        return self._get_or_create(
            mappings, make_mapping_key, mapping_id_from_key, _decode_mapping
        )

    def functions(self, function_ids: list[str]) -> list[Function]:
        """Return the functions with the given ids."""
        keys = [make_function_key_with_id(i) for i in function_ids]
        return self._get_all(keys, _decode_function)

    def get_or_create_functions(self, functions: list[Function]) -> list[Function]:
        """Return stored functions, creating any that are new."""
        return self._get_or_create(
            functions, make_function_key, function_id_from_key, _decode_function
        )

    def locations(self, location_ids: list[str]) -> list[Location]:
        """Return the locations with the given ids."""
        keys = [make_location_key_with_id(i) for i in location_ids]
        return self._get_all(keys, _decode_location)

    def get_or_create_locations(self, locations: list[Location]) -> list[Location]:
        """Return stored locations, creating new ones and flagging those needing symbols."""

        def mark_unsymbolized(txn: Transaction, location: Location) -> None:
            if location.mapping_id and location.address != 0 and not location.lines:
                txn.set(make_unsymbolized_location_key_with_id(location.id), b"")

        return self._get_or_create(
            locations,
            make_location_key,
            location_id_from_key,
            _decode_location,
            mark_unsymbolized,
        )

    def unsymbolized_locations(
        self, limit: int = 0, min_key: str = ""
    ) -> UnsymbolizedLocations:
        """Return up to ``limit`` unsymbolized locations after ``min_key``.

        A limit of 0 returns all of them.
        """
        prefix = UNSYMBOLIZED_LOCATION_LINES_KEY_PREFIX
        max_key = ""
        with self._db.view() as txn:
            entries = txn.seek(min_key or prefix)
            if min_key:
                first = next(entries, None)
                if first is None or not first[0].startswith(prefix):
                    return UnsymbolizedLocations()
                # The min key itself is excluded.
            keys: list[str] = []
            for key, _ in entries:
                if not key.startswith(prefix):
                    break
                max_key = key
                keys.append(
                    make_location_key_with_id(location_id_from_unsymbolized_key(key))
                )
                if len(keys) == limit:
                    break
            locations = self._read_all(txn, keys, _decode_location)
        return UnsymbolizedLocations(locations=locations, max_key=max_key)

    def create_location_lines(self, locations: list[Location]) -> None:
        """Store symbolized locations and clear their unsymbolized flags."""
        with self._db.update() as txn:
            for location in locations:
                txn.set(make_location_key_with_id(location.id), _encode(location))
                txn.delete(make_unsymbolized_location_key_with_id(location.id))

    def get_or_create_stacktraces(
        self, stacktraces: list[Stacktrace]
    ) -> list[Stacktrace]:
        """Return stored stacktraces, creating new ones across up to two transactions."""
        pending = [(make_stacktrace_key(s), s) for s in stacktraces]
        result: list[Stacktrace] = []
        self._logger.debug("GetOrCreateStacktraces stacktrace_keys_len=%d", len(pending))
        for attempt in range(_MAX_STACKTRACE_ATTEMPTS):
            created, pending = self._store_stacktraces(pending)
            result.extend(created)
            if not pending:
                break
            if attempt + 1 < _MAX_STACKTRACE_ATTEMPTS:
                self._logger.debug(
                    "retrying GetOrCreateStacktraces stacktrace_keys_len=%d",
                    len(pending),
                )
        if pending:
            self._logger.debug(
                "failed to GetOrCreateStacktraces all stacktraces stacktrace_keys_len=%d",
                len(pending),
            )
            raise TransactionTooBigError("partial commit of stacktraces")
        return result

    def _store_stacktraces(
        self, pending: list[tuple[str, Stacktrace]]
    ) -> tuple[list[Stacktrace], list[tuple[str, Stacktrace]]]:
        stored: list[Stacktrace] = []
        remaining: list[tuple[str, Stacktrace]] = []
        with self._db.update() as txn:
            for index, (key, stacktrace) in enumerate(pending):
                try:
                    stored.append(_decode_stacktrace(txn.get(key)))
                    continue
                except KeyNotFoundError:
                    pass
                created = dataclasses.replace(stacktrace, id=stacktrace_id_from_key(key))
                try:
                    txn.set(key, _encode(created))
                except TransactionTooBigError:
                    # Commit what fits and continue from here in a new transaction.
                    remaining = pending[index:]
                    break
                stored.append(created)
        return stored, remaining

    def stacktraces(self, stacktrace_ids: list[str]) -> list[Stacktrace]:
        """Return the stacktraces with the given ids."""
        keys = [make_stacktrace_key_with_id(i) for i in stacktrace_ids]
        return self._get_all(keys, _decode_stacktrace)


def new_test_metastore() -> Metastore:
    """Return a metastore backed by a fresh in-memory store."""
    return Metastore(KVStore())