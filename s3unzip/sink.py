"""Concurrent upload stage: one S3 object per archive entry."""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Mapping

from s3unzip.archive import ArchiveEntry
from s3unzip.exceptions import UploadAbortedError, UploadError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_QUEUE_DEPTH = 4

_EOF = object()


@dataclass(frozen=True)
class UploadResult:
    location: str
    bucket: str
    key: str
    etag: str
    size_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location,
            "bucket": self.bucket,
            "key": self.key,
            "etag": self.etag,
            "size_bytes": self.size_bytes,
        }


def build_upload_result(response: Mapping[str, Any]) -> UploadResult:
    """Build an UploadResult from the dict returned by ``S3RemoteClient.upload``."""
    return UploadResult(
        location=response["Location"],
        bucket=response["Bucket"],
        key=response["Key"],
        etag=response["ETag"],
        size_bytes=response["size"],
    )


def build_key(destination_path_prefix: str, path: str) -> str:
    return f"{destination_path_prefix}{path}"


class UploadSink:
    """Uploads entries concurrently through a shared remote client.

    Each entry gets its own upload operation on a worker thread. The entry's
    bytes are handed over through a bounded queue, so at most
    ``max_concurrency`` entries and ``queue_depth`` chunks per entry are in
    transit at any time; when both are full the sink stops pulling from
    upstream and archive decoding stalls.

    On the first failure (here or upstream) the sink starts no new uploads,
    cancels queued ones and signals in-flight uploads to abort at their next
    chunk. It waits for the workers to exit before re-raising that first
    error.
    """

    def __init__(
        self,
        client: Any,
        destination_path_prefix: str = "/",
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        queue_depth: int = DEFAULT_QUEUE_DEPTH,
        poll_interval: float = 0.05,
    ):
        if max_concurrency <= 0:
            max_concurrency = 1
        self.client = client
        self.destination_path_prefix = destination_path_prefix
        self.max_concurrency = max_concurrency
        self.queue_depth = max(1, queue_depth)
        self.poll_interval = poll_interval

    def upload(self, entries: Iterable[ArchiveEntry]) -> Iterator[UploadResult]:
        """Upload every entry, yielding results in completion order.

        Raises:
            UploadError: First upload failure, tagged with the entry path.
            ExtractError, FilterError: Re-raised from upstream after
                in-flight uploads were cancelled.
        """
        cancel = threading.Event()
        pending: Dict[Future, str] = {}
        upstream = iter(entries)
        executor = ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="s3unzip-upload"
        )
        submitted = 0
        uploaded = 0

        try:
            for entry in upstream:
                while len(pending) >= self.max_concurrency:
                    wait(pending, return_when=FIRST_COMPLETED)
                    for result in self._collect(pending):
                        uploaded += 1
                        yield result

                key = build_key(self.destination_path_prefix, entry.path)
                channel: "queue.Queue[Any]" = queue.Queue(maxsize=self.queue_depth)
                future = executor.submit(self._upload_entry, entry.path, key, channel, cancel)
                pending[future] = entry.path
                submitted += 1
                self._feed(entry, channel, future)

                for result in self._collect(pending):
                    uploaded += 1
                    yield result

            while pending:
                wait(pending, return_when=FIRST_COMPLETED)
                for result in self._collect(pending):
                    uploaded += 1
                    yield result
        except BaseException:
            cancel.set()
            if pending:
                logger.warning("Cancelling %d in-flight upload(s)", len(pending))
            raise
        finally:
            for future in pending:
                future.cancel()
            executor.shutdown(wait=True)
            close = getattr(upstream, "close", None)
            if close is not None:
                close()

        logger.info("Upload sink finished: %d of %d entries uploaded", uploaded, submitted)

    def _collect(self, pending: Dict[Future, str]) -> Iterator[UploadResult]:
        done = [future for future in pending if future.done()]
        for future in done:
            pending.pop(future)
            yield future.result()

    def _feed(self, entry: ArchiveEntry, channel: "queue.Queue[Any]", future: Future) -> None:
        for chunk in itertools.chain(entry.content, (_EOF,)):
            while True:
                if future.done():
                    # Worker failed; _collect reports it
                    return
                try:
                    channel.put(chunk, timeout=self.poll_interval)
                    break
                except queue.Full:
                    continue

    def _drain(
        self, channel: "queue.Queue[Any]", cancel: threading.Event, key: str
    ) -> Iterator[bytes]:
        while True:
            try:
                chunk = channel.get(timeout=self.poll_interval)
            except queue.Empty:
                if cancel.is_set():
                    raise UploadAbortedError("Upload cancelled", key=key)
                continue
            if chunk is _EOF:
                return
            yield chunk

    def _upload_entry(
        self,
        path: str,
        key: str,
        channel: "queue.Queue[Any]",
        cancel: threading.Event,
    ) -> UploadResult:
        try:
            chunks = self._drain(channel, cancel, key)
            response = self.client.upload(key, chunks, cancel_event=cancel)
            return build_upload_result(response)
        except UploadAbortedError as exc:
            logger.debug("Upload of %s cancelled", path)
            raise UploadAbortedError("Upload cancelled", entry_path=path, key=key) from exc
        except Exception as exc:
            raise UploadError(
                "Failed to upload archive entry",
                entry_path=path,
                key=key,
                original_error=exc,
            ) from exc
