"""Wires extraction, filtering and upload into a single lazy pipeline.

Typical use::

    for result in run(open("bundle.zip", "rb"), {"access_key": ..., "secret_key": ...,
                                                  "bucket_name": "uploads"}):
        print(result.key, result.etag)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterator, List, Mapping, Optional, Union

from s3unzip.archive import ArchiveExtractor, ArchiveSource
from s3unzip.config import Options, validate_options
from s3unzip.filters import apply_filter
from s3unzip.logging_config import get_logger
from s3unzip.s3 import S3RemoteClient, create_client
from s3unzip.sink import UploadResult, UploadSink

logger = logging.getLogger(__name__)

RawOptions = Union[Options, Mapping[str, Any]]
ClientFactory = Callable[[Options], Any]


def create_client_from_options(options: Options) -> S3RemoteClient:
    return create_client(
        options.access_key,
        options.secret_key,
        options.bucket_name,
        endpoint_url=options.endpoint_url,
        region_name=options.region_name,
        part_size=options.part_size,
    )


def run(
    archive: ArchiveSource,
    raw_options: RawOptions,
    client_factory: ClientFactory = create_client_from_options,
    streaming: Optional[bool] = None,
) -> Iterator[UploadResult]:
    """Upload every file of ``archive`` to the configured bucket.

    Options are validated and the client is created before this function
    returns; everything else happens lazily as the returned iterator is
    consumed.

    Args:
        archive: Archive bytes, binary file object or iterable of chunks
        raw_options: Option mapping (see ``validate_options``) or Options
        client_factory: Builds the run's remote client from the options
        streaming: Force or forbid sequential decoding (default: by source)

    Returns:
        Iterator of UploadResult in completion order

    Raises:
        ValidationError: Immediately, for bad options
        ExtractError, FilterError, UploadError: From the iterator; the first
            one ends the run
    """
    options = validate_options(raw_options)
    client = client_factory(options)
    return _run_pipeline(archive, options, client, streaming)


def _run_pipeline(
    archive: ArchiveSource,
    options: Options,
    client: Any,
    streaming: Optional[bool],
) -> Iterator[UploadResult]:
    extractor = ArchiveExtractor(
        archive, password=options.password, streaming=streaming
    )
    sink = UploadSink(
        client,
        destination_path_prefix=options.destination_path_prefix,
        max_concurrency=options.max_concurrency,
    )
    entries = apply_filter(extractor.extract(), options.entry_filter)

    run_logger = get_logger(__name__, extra={"bucket": options.bucket_name})
    run_logger.info(
        "Starting upload to bucket '%s' with prefix '%s' "
        "(%s decoding, %d concurrent uploads)",
        options.bucket_name,
        options.destination_path_prefix,
        "streaming" if extractor.streaming else "seekable",
        sink.max_concurrency,
    )
    yield from sink.upload(entries)


def stream_with_options(
    raw_options: RawOptions,
    client_factory: ClientFactory = create_client_from_options,
) -> Callable[..., Iterator[UploadResult]]:
    """Validate once and return ``streamer(archive) -> Iterator[UploadResult]``.

    Every call to the returned streamer runs its own pipeline with its own
    client, so streamers can be reused across archives.
    """
    options = validate_options(raw_options)

    def streamer(
        archive: ArchiveSource, streaming: Optional[bool] = None
    ) -> Iterator[UploadResult]:
        return run(
            archive, options, client_factory=client_factory, streaming=streaming
        )

    return streamer


def upload_archive(
    archive: ArchiveSource,
    raw_options: RawOptions,
    client_factory: ClientFactory = create_client_from_options,
) -> List[UploadResult]:
    """Run the pipeline to completion and return all results."""
    start = time.monotonic()
    results = list(run(archive, raw_options, client_factory=client_factory))
    duration = time.monotonic() - start
    logger.info(
        "Uploaded %d file(s), %d bytes in %.2fs",
        len(results),
        sum(r.size_bytes for r in results),
        duration,
    )
    return results
