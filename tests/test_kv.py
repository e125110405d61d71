import base64

import pytest

from parcastore.kv import (
    Function,
    Line,
    Location,
    Mapping,
    Stacktrace,
    function_id_from_key,
    location_id_from_key,
    location_id_from_unsymbolized_key,
    make_function_id,
    make_function_key,
    make_function_key_with_id,
    make_location_id,
    make_location_key,
    make_location_key_with_id,
    make_mapping_id,
    make_mapping_key,
    make_mapping_key_with_id,
    make_stacktrace_id,
    make_stacktrace_key,
    make_stacktrace_key_with_id,
    make_unsymbolized_location_key_with_id,
    mapping_id_from_key,
    stacktrace_id_from_key,
)

BUILD_ID = "2d6912fd3dd64542f6f6294f4bf9cb6c265b3085"


def _digest_len(encoded):
    return len(base64.urlsafe_b64decode(encoded))


def test_key_prefixes():
    assert make_location_key_with_id("a/b") == "v1/locations/by-key/a/b"
    assert make_unsymbolized_location_key_with_id("a/b") == "v1/unsymbolized-locations/by-key/a/b"
    assert make_function_key_with_id("f") == "v1/functions/by-key/f"
    assert make_mapping_key_with_id("m") == "v1/mappings/by-key/m"
    assert make_stacktrace_key_with_id("s") == "v1/stacktraces/by-key/s"


def test_key_round_trips():
    assert location_id_from_key(make_location_key_with_id("x/y")) == "x/y"
    assert location_id_from_unsymbolized_key(make_unsymbolized_location_key_with_id("x/y")) == "x/y"
    assert function_id_from_key(make_function_key_with_id("fid")) == "fid"
    assert mapping_id_from_key(make_mapping_key_with_id("mid")) == "mid"
    assert stacktrace_id_from_key(make_stacktrace_key_with_id("sid")) == "sid"


def test_wrong_prefix_rejected():
    with pytest.raises(ValueError):
        location_id_from_key("v1/functions/by-key/abc")


def test_mapping_id_is_sha512_256_base64():
    mid = make_mapping_id(Mapping(start=4194304, limit=4603904, build_id=BUILD_ID))
    assert _digest_len(mid) == 32
    assert len(mid) == 44
    assert make_mapping_key(Mapping(start=4194304, limit=4603904, build_id=BUILD_ID)) == make_mapping_key_with_id(mid)


def test_mapping_size_rounding():
    a = make_mapping_id(Mapping(start=0, limit=0x1001, build_id=BUILD_ID))
    b = make_mapping_id(Mapping(start=0, limit=0x2000, build_id=BUILD_ID))
    c = make_mapping_id(Mapping(start=0, limit=0x2001, build_id=BUILD_ID))
    assert a == b
    assert b != c


def test_mapping_build_id_precedence_over_file():
    with_file = make_mapping_id(Mapping(limit=0x1000, build_id=BUILD_ID, file="/bin/a"))
    other_file = make_mapping_id(Mapping(limit=0x1000, build_id=BUILD_ID, file="/bin/b"))
    assert with_file == other_file
    assert make_mapping_id(Mapping(limit=0x1000, file="/bin/a")) != make_mapping_id(Mapping(limit=0x1000, file="/bin/b"))


def test_mapping_offset_matters():
    assert make_mapping_id(Mapping(limit=0x1000, offset=0)) != make_mapping_id(Mapping(limit=0x1000, offset=4096))


def test_location_id_prefixed_by_mapping():
    lid = make_location_id(Location(mapping_id="mid", address=0x463781))
    prefix, digest = lid.split("/", 1)
    assert prefix == "mid"
    assert _digest_len(digest) == 32


def test_location_id_unknown_mapping():
    assert make_location_id(Location(address=10)).startswith("unknown-mapping/")


def test_location_folded_flag_does_not_change_id():
    assert make_location_id(Location(mapping_id="m", address=5, is_folded=True)) == make_location_id(
        Location(mapping_id="m", address=5)
    )


def test_location_lines_only_count_without_address():
    lines = [Line(function_id="f1", line=3)]
    assert make_location_id(Location(mapping_id="m", address=5, lines=lines)) == make_location_id(
        Location(mapping_id="m", address=5)
    )
    assert make_location_id(Location(mapping_id="m", lines=lines)) != make_location_id(Location(mapping_id="m"))
    assert make_location_id(Location(lines=[Line("f1", 3)])) != make_location_id(Location(lines=[Line("f1", 4)]))


def test_location_key_round_trip():
    loc = Location(mapping_id="m", address=0x463782)
    assert location_id_from_key(make_location_key(loc)) == make_location_id(loc)


def test_function_id_unknown_filename():
    fid = make_function_id(Function(name="main", start_line=1))
    assert fid.startswith("unknown-filename/")


def test_function_id_namespaced_by_filename():
    a = make_function_id(Function(name="a", filename="main.go", start_line=1))
    b = make_function_id(Function(name="b", filename="main.go", start_line=1))
    assert a.split("/")[0] == b.split("/")[0]
    assert a != b
    assert _digest_len(a.split("/")[0]) == 32
    assert function_id_from_key(make_function_key(Function(name="a", filename="main.go", start_line=1))) == a


def test_function_negative_start_line_accepted():
    assert make_function_id(Function(name="a", start_line=-1)) != make_function_id(Function(name="a", start_line=1))


def test_empty_stacktrace():
    assert make_stacktrace_id(Stacktrace()) == "empty-stacktrace"
    assert make_stacktrace_key(Stacktrace()) == "v1/stacktraces/by-key/empty-stacktrace"


def test_stacktrace_id_prefixed_by_root_and_ordered():
    st = Stacktrace(location_ids=["leaf", "mid", "root"])
    sid = make_stacktrace_id(st)
    assert sid.startswith("root/")
    reordered = make_stacktrace_id(Stacktrace(location_ids=["mid", "leaf", "root"]))
    assert reordered != sid
    assert stacktrace_id_from_key(make_stacktrace_key(st)) == sid