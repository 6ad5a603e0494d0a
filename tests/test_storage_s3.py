"""Unit tests for the S3 upload client with moto mocking."""

import threading

import boto3
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from moto import mock_aws
from tenacity import wait_none

from s3unzip.exceptions import UploadAbortedError
from s3unzip.s3 import MIN_PART_SIZE, S3RemoteClient, create_client, is_transient_error

BUCKET = "test-bucket"
MiB = 1024 * 1024


@pytest.fixture
def s3(aws_credentials):
    """Mocked S3 with the test bucket created."""
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket=BUCKET)
        yield client


@pytest.fixture
def remote(s3):
    return create_client("testing", "testing", BUCKET, region_name="us-east-1", part_size=MIN_PART_SIZE)


def in_chunks(data: bytes, size: int = MiB):
    for start in range(0, len(data), size):
        yield data[start:start + size]


def open_uploads(s3) -> list:
    return s3.list_multipart_uploads(Bucket=BUCKET).get("Uploads", [])


class TestCreateClient:
    def test_builds_remote_client(self, aws_credentials):
        with mock_aws():
            remote = create_client("key", "secret", BUCKET, region_name="us-east-1")
        assert isinstance(remote, S3RemoteClient)
        assert remote.bucket == BUCKET
        assert "test-bucket" in repr(remote)

    def test_rejects_small_part_size(self, aws_credentials):
        with pytest.raises(ValueError, match="part_size"):
            create_client("key", "secret", BUCKET, region_name="us-east-1", part_size=MIN_PART_SIZE - 1)

    def test_uses_custom_endpoint(self, aws_credentials):
        remote = create_client("key", "secret", BUCKET, endpoint_url="http://minio.local:9000")
        assert remote.location_for("a/b.txt") == "http://minio.local:9000/test-bucket/a/b.txt"


class TestUpload:
    def test_small_payload_uses_single_put(self, s3, remote):
        response = remote.upload("files/test.txt", iter([b"te", b"st"]))

        assert response["Key"] == "files/test.txt"
        assert response["Bucket"] == BUCKET
        assert response["size"] == 4
        assert response["ETag"]
        assert BUCKET in response["Location"]
        body = s3.get_object(Bucket=BUCKET, Key="files/test.txt")["Body"].read()
        assert body == b"test"

    def test_empty_payload(self, s3, remote):
        response = remote.upload("empty.txt", iter([]))
        assert response["size"] == 0
        assert s3.get_object(Bucket=BUCKET, Key="empty.txt")["Body"].read() == b""

    def test_large_payload_uses_multipart(self, s3, remote):
        payload = bytes(range(256)) * (11 * MiB // 256)

        response = remote.upload("big.bin", in_chunks(payload))

        assert response["size"] == len(payload)
        assert response["ETag"]
        assert s3.get_object(Bucket=BUCKET, Key="big.bin")["Body"].read() == payload
        assert open_uploads(s3) == []

    def test_failure_aborts_multipart_session(self, s3, remote):
        def failing_chunks():
            yield b"a" * (6 * MiB)
            raise RuntimeError("source died")

        with pytest.raises(RuntimeError, match="source died"):
            remote.upload("broken.bin", failing_chunks())

        assert open_uploads(s3) == []
        with pytest.raises(ClientError):
            s3.head_object(Bucket=BUCKET, Key="broken.bin")

    def test_cancel_event_aborts_upload(self, s3, remote):
        cancel = threading.Event()

        def chunks():
            yield b"a" * (6 * MiB)
            cancel.set()
            yield b"b"

        with pytest.raises(UploadAbortedError) as excinfo:
            remote.upload("cancelled.bin", chunks(), cancel_event=cancel)

        assert excinfo.value.key == "cancelled.bin"
        assert open_uploads(s3) == []


class TestRetries:
    def test_transient_errors(self):
        throttled = ClientError({"Error": {"Code": "SlowDown"}, "ResponseMetadata": {"HTTPStatusCode": 503}}, "PutObject")
        too_many = ClientError({"Error": {"Code": "Throttling"}, "ResponseMetadata": {"HTTPStatusCode": 429}}, "PutObject")
        denied = ClientError({"Error": {"Code": "AccessDenied"}, "ResponseMetadata": {"HTTPStatusCode": 403}}, "PutObject")

        assert is_transient_error(throttled)
        assert is_transient_error(too_many)
        assert is_transient_error(EndpointConnectionError(endpoint_url="http://x"))
        assert not is_transient_error(denied)
        assert not is_transient_error(RuntimeError("boom"))

    def test_put_object_retried_on_transient_error(self, monkeypatch):
        monkeypatch.setattr(S3RemoteClient._put_object.retry, "wait", wait_none())

        class FlakyBoto:
            class meta:
                endpoint_url = "https://s3.amazonaws.com"

            def __init__(self):
                self.attempts = 0

            def put_object(self, **kwargs):
                self.attempts += 1
                if self.attempts == 1:
                    raise ClientError({"Error": {"Code": "SlowDown"}, "ResponseMetadata": {"HTTPStatusCode": 503}}, "PutObject")
                return {"ETag": '"abc"'}

        boto = FlakyBoto()
        remote = S3RemoteClient(boto, BUCKET)

        response = remote.upload("k", iter([b"data"]))

        assert boto.attempts == 2
        assert response["ETag"] == '"abc"'
        assert response["Location"] == "https://s3.amazonaws.com/test-bucket/k"

    def test_permanent_error_not_retried(self):
        class DeniedBoto:
            class meta:
                endpoint_url = "https://s3.amazonaws.com"

            def __init__(self):
                self.attempts = 0

            def put_object(self, **kwargs):
                self.attempts += 1
                raise ClientError({"Error": {"Code": "AccessDenied"}, "ResponseMetadata": {"HTTPStatusCode": 403}}, "PutObject")

        boto = DeniedBoto()
        with pytest.raises(ClientError):
            S3RemoteClient(boto, BUCKET).upload("k", iter([b"data"]))
        assert boto.attempts == 1
