"""Stream the files of a zip archive into an S3 bucket.

Layer Structure:
    s3unzip.archive   - archive decoding (zipfile / stream-unzip)
    s3unzip.filters   - caller-supplied entry transforms
    s3unzip.s3        - boto3 upload client
    s3unzip.sink      - concurrent upload stage
    s3unzip.pipeline  - run(), stream_with_options(), upload_archive()
"""

__version__ = "1.0.0"

# =============================================================================
# Public API Re-exports
# =============================================================================

from s3unzip.exceptions import (
    S3UnzipError,
    ValidationError,
    ExtractError,
    FilterError,
    UploadError,
    UploadAbortedError,
)
from s3unzip.archive import ArchiveEntry, ArchiveExtractor, EntryType, classify_entry, extract
from s3unzip.filters import CallableFilter, EntryFilter, IdentityFilter, apply_filter
from s3unzip.config import Options, load_options, validate_options
from s3unzip.s3 import S3RemoteClient, create_client
from s3unzip.sink import UploadResult, UploadSink
from s3unzip.pipeline import run, stream_with_options, upload_archive

__all__ = [
    "__version__",
    # Errors
    "S3UnzipError",
    "ValidationError",
    "ExtractError",
    "FilterError",
    "UploadError",
    "UploadAbortedError",
    # Extraction
    "ArchiveEntry",
    "ArchiveExtractor",
    "EntryType",
    "classify_entry",
    "extract",
    # Filtering
    "EntryFilter",
    "IdentityFilter",
    "CallableFilter",
    "apply_filter",
    # Options
    "Options",
    "load_options",
    "validate_options",
    # Upload
    "S3RemoteClient",
    "create_client",
    "UploadResult",
    "UploadSink",
    # Pipeline
    "run",
    "stream_with_options",
    "upload_archive",
]
