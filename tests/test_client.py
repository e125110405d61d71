import pytest

from parcastore.client import InProcessClient
from parcastore.kv import (
    Function,
    Line,
    Location,
    Mapping,
    Stacktrace,
    make_function_id,
    make_mapping_id,
    make_stacktrace_id,
)
from parcastore.metastore import KeyNotFoundError, new_test_metastore


@pytest.fixture
def client():
    return InProcessClient(new_test_metastore())


def _mapping(client):
    (mapping,) = client.get_or_create_mappings(
        [
            Mapping(
                start=4194304,
                limit=4603904,
                build_id="2d6912fd3dd64542f6f6294f4bf9cb6c265b3085",
            )
        ]
    )
    return mapping


def test_mappings_round_trip(client):
    mapping = _mapping(client)
    assert mapping.id == make_mapping_id(mapping)
    assert client.mappings([mapping.id]) == [mapping]


def test_get_or_create_mappings_is_idempotent(client):
    first = _mapping(client)
    second = _mapping(client)
    assert first == second


def test_functions_round_trip(client):
    (function,) = client.get_or_create_functions(
        [Function(name="main", system_name="main", filename="main.go", start_line=3)]
    )
    assert function.id == make_function_id(function)
    assert client.functions([function.id]) == [function]


def test_locations_round_trip(client):
    mapping = _mapping(client)
    (location,) = client.get_or_create_locations(
        [Location(mapping_id=mapping.id, address=0x463781)]
    )
    assert client.locations([location.id]) == [location]


def test_unknown_location_raises(client):
    with pytest.raises(KeyNotFoundError):
        client.locations(["missing"])


def test_unsymbolized_locations_paging(client):
    mapping = _mapping(client)
    client.get_or_create_locations(
        [
            Location(mapping_id=mapping.id, address=0x463781),
            Location(mapping_id=mapping.id, address=0x463782),
            Location(mapping_id=mapping.id, address=0x463783),
        ]
    )
    page1 = client.unsymbolized_locations(limit=1)
    assert [loc.address for loc in page1.locations] == [0x463781]
    page2 = client.unsymbolized_locations(limit=1, min_key=page1.max_key)
    assert [loc.address for loc in page2.locations] == [0x463783]
    page3 = client.unsymbolized_locations(limit=1, min_key=page2.max_key)
    assert [loc.address for loc in page3.locations] == [0x463782]
    page4 = client.unsymbolized_locations(limit=1, min_key=page3.max_key)
    assert page4.locations == []


def test_create_location_lines_clears_unsymbolized(client):
    mapping = _mapping(client)
    (location,) = client.get_or_create_locations(
        [Location(mapping_id=mapping.id, address=0x463781)]
    )
    (function,) = client.get_or_create_functions([Function(name="f", filename="f.go")])
    location.lines = [Line(function_id=function.id, line=7)]
    client.create_location_lines([location])
    assert client.unsymbolized_locations().locations == []
    assert client.locations([location.id])[0].lines == location.lines


def test_stacktraces_round_trip(client):
    (stacktrace,) = client.get_or_create_stacktraces(
        [Stacktrace(location_ids=["a", "b"])]
    )
    assert stacktrace.id == make_stacktrace_id(stacktrace)
    assert stacktrace.id.startswith("b/")
    assert client.stacktraces([stacktrace.id]) == [stacktrace]