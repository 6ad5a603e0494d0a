"""S3-compatible upload client for s3-unzip.

Supports AWS S3, MinIO, and any S3-compatible object storage. One
:class:`S3RemoteClient` is created per pipeline run and shared by all upload
workers of that run; it holds no per-upload state.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from s3unzip.exceptions import UploadAbortedError

logger = logging.getLogger(__name__)

MIN_PART_SIZE = 5 * 1024 * 1024
DEFAULT_PART_SIZE = 8 * 1024 * 1024


def is_transient_error(exc: BaseException) -> bool:
    """Determine if an S3 exception should trigger a retry."""
    if isinstance(exc, BotoCoreError):
        return True
    if isinstance(exc, ClientError):
        response = getattr(exc, "response", None) or {}
        try:
            status = int(response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0))
        except (TypeError, ValueError):
            status = 0
        code = response.get("Error", {}).get("Code")
        return status == 429 or status >= 500 or code in {"SlowDown", "RequestLimitExceeded"}
    return False


_s3_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception(is_transient_error),
    reraise=True,
)


class S3RemoteClient:
    """Streams byte chunks into S3 objects.

    Payloads that fit in a single part are sent with ``put_object``; larger
    ones go through a multipart upload session which is aborted on any
    failure.
    """

    def __init__(self, client: Any, bucket: str, part_size: int = DEFAULT_PART_SIZE):
        if part_size < MIN_PART_SIZE:
            raise ValueError(f"part_size must be at least {MIN_PART_SIZE} bytes")
        self.client = client
        self.bucket = bucket
        self.part_size = part_size

    def __repr__(self) -> str:
        return f"S3RemoteClient(bucket={self.bucket!r}, part_size={self.part_size})"

    def location_for(self, key: str) -> str:
        endpoint = str(self.client.meta.endpoint_url).rstrip("/")
        return f"{endpoint}/{self.bucket}/{quote(key, safe='/')}"

    def upload(
        self,
        key: str,
        chunks: Iterable[bytes],
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """Upload ``chunks`` as the object ``key``.

        Args:
            key: Destination object key
            chunks: Single-pass iterable of byte chunks
            cancel_event: When set, the upload stops at the next chunk and any
                multipart session is aborted

        Returns:
            Dict with ``Location``, ``Bucket``, ``Key``, ``ETag`` and ``size``

        Raises:
            UploadAbortedError: If ``cancel_event`` was set mid-upload
            BotoCoreError, ClientError: If S3 rejects the upload after retries
        """
        buffer = bytearray()
        size = 0
        upload_id: Optional[str] = None
        parts: List[Dict[str, Any]] = []

        try:
            for chunk in chunks:
                self._check_cancelled(key, cancel_event)
                buffer += chunk
                size += len(chunk)
                while len(buffer) >= self.part_size:
                    if upload_id is None:
                        upload_id = self._create_multipart_upload(key)
                    part = bytes(buffer[:self.part_size])
                    del buffer[:self.part_size]
                    parts.append(self._upload_part(key, upload_id, len(parts) + 1, part))

            self._check_cancelled(key, cancel_event)

            if upload_id is None:
                response = self._put_object(key, bytes(buffer))
                location = self.location_for(key)
            else:
                if buffer:
                    parts.append(
                        self._upload_part(key, upload_id, len(parts) + 1, bytes(buffer))
                    )
                response = self._complete_multipart_upload(key, upload_id, parts)
                location = response.get("Location") or self.location_for(key)
        except BaseException:
            if upload_id is not None:
                self._abort_multipart_upload(key, upload_id)
            raise

        logger.info("Uploaded %d bytes to s3://%s/%s", size, self.bucket, key)
        return {
            "Location": location,
            "Bucket": response.get("Bucket", self.bucket),
            "Key": response.get("Key", key),
            "ETag": response["ETag"],
            "size": size,
        }

    def _check_cancelled(self, key: str, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise UploadAbortedError("Upload cancelled", key=key)

    @_s3_retry
    def _put_object(self, key: str, body: bytes) -> Dict[str, Any]:
        return self.client.put_object(Bucket=self.bucket, Key=key, Body=body)

    @_s3_retry
    def _create_multipart_upload(self, key: str) -> str:
        response = self.client.create_multipart_upload(Bucket=self.bucket, Key=key)
        logger.debug(
            "Opened multipart upload %s for s3://%s/%s",
            response["UploadId"],
            self.bucket,
            key,
        )
        return response["UploadId"]

    @_s3_retry
    def _upload_part(
        self, key: str, upload_id: str, part_number: int, body: bytes
    ) -> Dict[str, Any]:
        response = self.client.upload_part(
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=body,
        )
        logger.debug(
            "Uploaded part %d (%d bytes) of s3://%s/%s",
            part_number,
            len(body),
            self.bucket,
            key,
        )
        return {"ETag": response["ETag"], "PartNumber": part_number}

    @_s3_retry
    def _complete_multipart_upload(
        self, key: str, upload_id: str, parts: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        return self.client.complete_multipart_upload(
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": parts},
        )

    def _abort_multipart_upload(self, key: str, upload_id: str) -> None:
        try:
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
            logger.info("Aborted multipart upload for s3://%s/%s", self.bucket, key)
        except (BotoCoreError, ClientError) as e:
            # The original failure is what the caller needs to see
            logger.warning(
                "Failed to abort multipart upload %s for s3://%s/%s: %s",
                upload_id,
                self.bucket,
                key,
                e,
            )


def create_client(
    access_key: str,
    secret_key: str,
    bucket_name: str,
    endpoint_url: Optional[str] = None,
    region_name: Optional[str] = None,
    part_size: int = DEFAULT_PART_SIZE,
) -> S3RemoteClient:
    """Build an upload client for ``bucket_name``. No request is sent."""
    try:
        client = boto3.client(
            "s3",
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            endpoint_url=endpoint_url,
            region_name=region_name,
        )
        logger.debug(
            "Created S3 client for bucket '%s' with endpoint: %s",
            bucket_name,
            endpoint_url or "default",
        )
    except Exception as e:
        logger.error("Failed to create S3 client: %s", e)
        raise
    return S3RemoteClient(client, bucket_name, part_size=part_size)
