import io
import json

import pytest

from parcastore.metadata import (
    FilesystemBucket,
    Metadata,
    MetadataError,
    MetadataNotFoundError,
    MetadataShouldExistError,
    MetadataState,
    ObjectNotFoundError,
    ObjectStoreMetadata,
    metadata_from_json,
    metadata_object_path,
)


@pytest.fixture
def bucket(tmp_path):
    return FilesystemBucket(tmp_path / "bucket")


@pytest.fixture
def store(bucket):
    return ObjectStoreMetadata(bucket, clock=lambda: 1000.0)


def test_metadata_lifecycle(store):
    with pytest.raises(MetadataNotFoundError):
        store.fetch("fake-build-id")
    store.mark_as_uploading("fake-build-id")
    md = store.fetch("fake-build-id")
    assert md.state is MetadataState.UPLOADING
    assert md.build_id == "fake-build-id"
    assert md.upload_started_at == 1000


CASES = [
    (MetadataState.UNKNOWN, "METADATA_STATE_UNKNOWN"),
    (MetadataState.UPLOADING, "METADATA_STATE_UPLOADING"),
    (MetadataState.UPLOADED, "METADATA_STATE_UPLOADED"),
    (MetadataState.CORRUPTED, "METADATA_STATE_CORRUPTED"),
]


@pytest.mark.parametrize("state,name", CASES)
def test_metadata_to_json(state, name):
    md = Metadata(state=state, build_id="build_id", hash="hash")
    assert md.to_json() == (
        f'{{"state":"{name}","build_id":"build_id","hash":"hash",'
        '"upload_started_at":0,"upload_finished_at":0}'
    )


@pytest.mark.parametrize("state,name", CASES)
def test_metadata_from_json(state, name):
    data = (
        f'{{"state":"{name}","build_id":"build_id","hash":"hash",'
        '"upload_started_at":0,"upload_finished_at":0}'
    ).encode()
    assert metadata_from_json(data) == Metadata(state=state, build_id="build_id", hash="hash")


def test_state_string_and_unknown_name():
    assert str(MetadataState.UPLOADED) == "METADATA_STATE_UPLOADED"
    assert MetadataState.from_name("bogus") is MetadataState.UNKNOWN
    assert metadata_from_json('{"state":"nope"}').state is MetadataState.UNKNOWN


def test_from_json_rejects_malformed():
    with pytest.raises(MetadataError):
        metadata_from_json("{")
    with pytest.raises(MetadataError):
        metadata_from_json('{"state": 1}')


def test_mark_as_uploaded(store):
    store.mark_as_uploading("abcd")
    store.mark_as_uploaded("abcd", "hash1")
    md = store.fetch("abcd")
    assert md.state is MetadataState.UPLOADED
    assert md.hash == "hash1"
    assert md.upload_finished_at == 1000


def test_mark_as_uploaded_twice_keeps_first(store):
    store.mark_as_uploading("abcd")
    store.mark_as_uploaded("abcd", "hash1")
    store.mark_as_uploaded("abcd", "hash2")
    assert store.fetch("abcd").hash == "hash1"


def test_mark_as_uploaded_requires_metadata(store):
    with pytest.raises(MetadataShouldExistError):
        store.mark_as_uploaded("abcd", "hash1")


def test_mark_as_uploaded_build_id_mismatch(store, bucket):
    record = Metadata(state=MetadataState.UPLOADING, build_id="other").to_json()
    bucket.upload(metadata_object_path("abcd"), record.encode())
    with pytest.raises(MetadataError, match="build ids do not match"):
        store.mark_as_uploaded("abcd", "hash1")


def test_mark_as_uploading_keeps_existing_record(store):
    store.mark_as_corrupted("abcd")
    store.mark_as_uploading("abcd")
    assert store.fetch("abcd").state is MetadataState.CORRUPTED


def test_mark_as_corrupted_writes_only_state(store, bucket):
    store.mark_as_corrupted("abcd")
    raw = json.loads(bucket.get("abcd/metadata"))
    assert raw == {
        "state": "METADATA_STATE_CORRUPTED",
        "build_id": "",
        "hash": "",
        "upload_started_at": 0,
        "upload_finished_at": 0,
    }


def test_bucket_round_trip_and_iter(bucket):
    bucket.upload("abcd/debuginfo", io.BytesIO(b"\x7fELF"))
    bucket.upload("abcd/metadata", b"{}")
    assert bucket.get("abcd/debuginfo") == b"\x7fELF"
    assert list(bucket.iter("abcd")) == ["abcd/debuginfo", "abcd/metadata"]
    assert list(bucket.iter("")) == ["abcd/"]
    assert list(bucket.iter("missing")) == []


def test_bucket_errors(bucket):
    with pytest.raises(ObjectNotFoundError):
        bucket.get("nothing/here")
    with pytest.raises(ValueError):
        bucket.upload("../escape", b"x")


def test_metadata_object_path():
    assert metadata_object_path("abcd") == "abcd/metadata"