"""Tests for the concurrent upload sink."""

from typing import List

import pytest

from s3unzip.archive import ArchiveEntry, EntryType, extract
from s3unzip.exceptions import ExtractError, UploadAbortedError, UploadError
from s3unzip.sink import UploadResult, UploadSink, build_key, build_upload_result
from tests.conftest import FakeRemoteClient

FILE_DATA = {
    "Location": "location",
    "Bucket": "bucket",
    "Key": "key",
    "ETag": "etag",
    "size": 4,
}


def make_entries(names: List[str], body: bytes = b"test") -> List[ArchiveEntry]:
    return [
        ArchiveEntry(path=name, type=EntryType.FILE, content=iter([body[:2], body[2:]]), size=len(body))
        for name in names
    ]


def test_builds_upload_result():
    result = build_upload_result(FILE_DATA)
    assert result == UploadResult(location="location", bucket="bucket", key="key", etag="etag", size_bytes=4)
    assert result.to_dict()["size_bytes"] == 4


def test_build_key_concatenates_prefix_and_path():
    assert build_key("/", "test.txt") == "/test.txt"
    assert build_key("dirPath", "a/b.txt") == "dirPatha/b.txt"
    assert build_key("releases/", "a/b.txt") == "releases/a/b.txt"


def test_uploads_files(zip_bytes, fake_client):
    sink = UploadSink(fake_client, "dirPath/")

    results = list(sink.upload(extract(zip_bytes)))

    assert sorted(fake_client.calls) == ["dirPath/test.txt", "dirPath/test2.txt"]
    assert fake_client.uploads == {"dirPath/test.txt": b"test", "dirPath/test2.txt": b"test"}
    assert sorted(r.key for r in results) == ["dirPath/test.txt", "dirPath/test2.txt"]
    assert all(r.size_bytes == 4 and r.etag for r in results)


def test_one_result_per_entry_under_concurrency():
    client = FakeRemoteClient(delay=0.01)
    names = [f"f{i}.txt" for i in range(12)]

    results = list(UploadSink(client, "/", max_concurrency=3).upload(make_entries(names)))

    assert sorted(r.key for r in results) == sorted("/" + n for n in names)
    assert len(results) == len(set(r.key for r in results))


def test_concurrency_bound_is_respected():
    client = FakeRemoteClient(delay=0.05)

    list(UploadSink(client, "/", max_concurrency=2).upload(make_entries([f"f{i}" for i in range(8)])))

    assert client.max_in_flight <= 2


def test_invalid_concurrency_falls_back_to_one(fake_client):
    assert UploadSink(fake_client, max_concurrency=0).max_concurrency == 1


def test_sink_pulls_lazily(fake_client):
    pulled = []

    def entries():
        for entry in make_entries(["a", "b", "c"]):
            pulled.append(entry.path)
            yield entry

    results = UploadSink(fake_client, "/", max_concurrency=1).upload(entries())
    assert pulled == []
    next(results)
    assert len(pulled) <= 2
    results.close()


def test_first_failure_stops_new_uploads():
    client = FakeRemoteClient(fail_on=["/bad.txt"])
    entries = make_entries(["a.txt", "bad.txt", "c.txt", "d.txt"])

    with pytest.raises(UploadError) as excinfo:
        list(UploadSink(client, "/", max_concurrency=1).upload(entries))

    err = excinfo.value
    assert not isinstance(err, UploadAbortedError)
    assert err.entry_path == "bad.txt"
    assert err.key == "/bad.txt"
    assert isinstance(err.original_error, RuntimeError)
    assert client.calls == ["/a.txt", "/bad.txt"]


def test_failure_cancels_in_flight_uploads():
    client = FakeRemoteClient(fail_on=["/bad.txt"], block_on=["/slow.txt"])

    with pytest.raises(UploadError) as excinfo:
        list(UploadSink(client, "/", max_concurrency=2).upload(make_entries(["slow.txt", "bad.txt"])))

    assert excinfo.value.entry_path == "bad.txt"
    assert client.cancelled == ["/slow.txt"]
    assert "/slow.txt" not in client.uploads


def test_upstream_error_cancels_and_propagates():
    client = FakeRemoteClient(block_on=["/a.txt"])

    def entries():
        yield make_entries(["a.txt"])[0]
        raise ExtractError("Failed to decode zip stream")

    with pytest.raises(ExtractError):
        list(UploadSink(client, "/", max_concurrency=2).upload(entries()))

    assert client.cancelled == ["/a.txt"]


def test_error_inside_entry_content_propagates():
    client = FakeRemoteClient()

    def broken_content():
        yield b"te"
        raise ExtractError("Failed to decode archive member", entry_path="a.txt")

    entry = ArchiveEntry(path="a.txt", type=EntryType.FILE, content=broken_content())

    with pytest.raises(ExtractError) as excinfo:
        list(UploadSink(client, "/").upload([entry]))

    assert excinfo.value.entry_path == "a.txt"
    assert client.uploads == {}


def test_consumer_closing_early_cancels_uploads():
    # The delay keeps a.txt in flight until b.txt has been submitted
    client = FakeRemoteClient(delay=0.2, block_on=["/b.txt"])
    results = UploadSink(client, "/", max_concurrency=2).upload(make_entries(["a.txt", "b.txt", "c.txt"]))

    first = next(results)
    results.close()

    assert first.key == "/a.txt"
    assert client.cancelled == ["/b.txt"]
    assert "/c.txt" not in client.calls
