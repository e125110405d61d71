import pytest

from parcastore.kv import (
    Function,
    Line,
    Location,
    Mapping,
    Stacktrace,
    make_function_id,
    make_mapping_id,
    make_stacktrace_id,
    make_unsymbolized_location_key_with_id,
)
from parcastore.metastore import (
    KeyNotFoundError,
    KVStore,
    Metastore,
    TransactionTooBigError,
    new_test_metastore,
)


def _mapping(store):
    res = store.get_or_create_mappings(
        [
            Mapping(
                start=4194304,
                limit=4603904,
                build_id="2d6912fd3dd64542f6f6294f4bf9cb6c265b3085",
            )
        ]
    )
    assert len(res) == 1
    return res[0]


def test_unsymbolized_locations_paging():
    store = new_test_metastore()
    m = _mapping(store)
    store.get_or_create_locations(
        [
            Location(mapping_id=m.id, address=0x463781),
            Location(mapping_id=m.id, address=0x463782),
            Location(mapping_id=m.id, address=0x463783),
        ]
    )

    lres1 = store.unsymbolized_locations(limit=1)
    assert len(lres1.locations) == 1
    assert lres1.locations[0].address == 0x463781

    lres2 = store.unsymbolized_locations(limit=1, min_key=lres1.max_key)
    assert len(lres2.locations) == 1
    assert lres2.locations[0].address == 0x463783

    lres3 = store.unsymbolized_locations(limit=1, min_key=lres2.max_key)
    assert len(lres3.locations) == 1
    assert lres3.locations[0].address == 0x463782

    lres4 = store.unsymbolized_locations(limit=1, min_key=lres3.max_key)
    assert lres4.locations == []
    assert lres4.max_key == ""


def test_unsymbolized_locations_without_limit_returns_all():
    store = new_test_metastore()
    m = _mapping(store)
    store.get_or_create_locations(
        [Location(mapping_id=m.id, address=a) for a in (1, 2, 3)]
    )
    res = store.unsymbolized_locations()
    assert sorted(loc.address for loc in res.locations) == [1, 2, 3]


def test_mappings_are_deduplicated():
    store = new_test_metastore()
    mapping = Mapping(start=0x1000, limit=0x2000, file="/bin/app")
    first = store.get_or_create_mappings([mapping])
    second = store.get_or_create_mappings([Mapping(start=0x1000, limit=0x2000, file="/bin/app")])
    assert first[0].id == make_mapping_id(mapping)
    assert second[0].id == first[0].id
    fetched = store.mappings([first[0].id])
    assert fetched == first


def test_functions_round_trip():
    store = new_test_metastore()
    fn = Function(name="main", system_name="main", filename="main.go", start_line=10)
    created = store.get_or_create_functions([fn, fn])
    assert created[0].id == make_function_id(fn)
    assert created[1] == created[0]
    assert store.functions([created[0].id]) == [created[0]]


def test_locations_with_lines_are_not_unsymbolized():
    store = new_test_metastore()
    m = _mapping(store)
    fn = store.get_or_create_functions([Function(name="f", filename="f.py")])[0]
    loc = Location(mapping_id=m.id, address=0, lines=[Line(function_id=fn.id, line=3)])
    created = store.get_or_create_locations([loc])[0]
    assert store.locations([created.id])[0].lines == [Line(function_id=fn.id, line=3)]
    assert store.unsymbolized_locations().locations == []


def test_create_location_lines_clears_unsymbolized():
    store = new_test_metastore()
    m = _mapping(store)
    loc = store.get_or_create_locations([Location(mapping_id=m.id, address=0x10)])[0]
    assert len(store.unsymbolized_locations().locations) == 1

    loc.lines = [Line(function_id="fn", line=7)]
    store.create_location_lines([loc])
    assert store.unsymbolized_locations().locations == []
    assert store.locations([loc.id])[0].lines == [Line(function_id="fn", line=7)]


def test_missing_ids_raise():
    store = new_test_metastore()
    with pytest.raises(KeyNotFoundError):
        store.mappings(["nope"])
    with pytest.raises(KeyNotFoundError):
        store.stacktraces(["nope"])


def test_stacktraces_round_trip():
    store = new_test_metastore()
    st = Stacktrace(location_ids=["a/1", "b/2"])
    created = store.get_or_create_stacktraces([st])
    assert created[0].id == make_stacktrace_id(st)
    assert created[0].id.startswith("b/2/")
    assert store.stacktraces([created[0].id]) == created


def test_stacktraces_retry_when_transaction_too_big():
    store = Metastore(KVStore(max_txn_entries=2))
    traces = [Stacktrace(location_ids=[f"loc/{i}"]) for i in range(3)]
    created = store.get_or_create_stacktraces(traces)
    assert [s.location_ids for s in created] == [t.location_ids for t in traces]
    assert store.stacktraces([s.id for s in created]) == created


def test_stacktraces_partial_commit_raises():
    store = Metastore(KVStore(max_txn_entries=2))
    traces = [Stacktrace(location_ids=[f"loc/{i}"]) for i in range(5)]
    with pytest.raises(TransactionTooBigError):
        store.get_or_create_stacktraces(traces)
    committed = store.stacktraces([make_stacktrace_id(t) for t in traces[:4]])
    assert len(committed) == 4
    with pytest.raises(KeyNotFoundError):
        store.stacktraces([make_stacktrace_id(traces[4])])


def test_update_rolls_back_on_error():
    db = KVStore()
    with pytest.raises(ValueError):
        with db.update() as txn:
            txn.set("k", b"v")
            raise ValueError("boom")
    with db.view() as txn:
        with pytest.raises(KeyNotFoundError):
            txn.get("k")


def test_view_is_read_only():
    db = KVStore()
    with db.view() as txn:
        with pytest.raises(RuntimeError):
            txn.set("k", b"v")


def test_seek_merges_pending_writes_and_deletes():
    db = KVStore()
    with db.update() as txn:
        txn.set("a", b"1")
        txn.set("c", b"3")
    with db.update() as txn:
        txn.set("b", b"2")
        txn.delete("c")
        txn.set("d", b"4")
        assert list(txn.seek("b")) == [("b", b"2"), ("d", b"4")]
    with db.view() as txn:
        assert list(txn.seek("")) == [("a", b"1"), ("b", b"2"), ("d", b"4")]


def test_unsymbolized_key_written_for_new_location():
    db = KVStore()
    store = Metastore(db)
    m = _mapping(store)
    loc = store.get_or_create_locations([Location(mapping_id=m.id, address=5)])[0]
    with db.view() as txn:
        assert txn.get(make_unsymbolized_location_key_with_id(loc.id)) == b""