"""CLI entrypoint for s3-unzip.

This file wires together:

- Option loading (YAML config, AWS_* environment variables, flags)
- Logging setup
- The extract -> filter -> upload pipeline

Results are printed to stdout as one JSON object per uploaded file; logs go
to stderr.
"""

import sys
import os
import json
import argparse
import logging
from contextlib import ExitStack
from typing import Any, Dict, List, Optional

from s3unzip import __version__
from s3unzip.config import Options, load_options
from s3unzip.exceptions import S3UnzipError, ValidationError
from s3unzip.logging_config import log_exception, setup_logging
from s3unzip.pipeline import run

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID_OPTIONS = 2

_CREDENTIAL_ENV = (
    ("access_key", "AWS_ACCESS_KEY_ID"),
    ("secret_key", "AWS_SECRET_ACCESS_KEY"),
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="unzip-to-s3",
        description="Extract the files of a zip archive and upload them to an S3 bucket",
    )
    parser.add_argument(
        "archive",
        help="Path to the zip archive, or '-' to stream it from stdin",
    )
    parser.add_argument(
        "--config",
        help=(
            "Path to a YAML options file. ${VAR} / ${VAR:default} are "
            "substituted from the environment."
        ),
    )
    parser.add_argument(
        "--bucket", dest="bucket_name", help="Destination bucket (overrides config)"
    )
    parser.add_argument(
        "--prefix",
        dest="destination_path_prefix",
        help="Key prefix prepended to every entry path (default: '/')",
    )
    parser.add_argument(
        "--endpoint-url", help="S3-compatible endpoint, e.g. a MinIO server"
    )
    parser.add_argument("--region", dest="region_name", help="AWS region")
    parser.add_argument(
        "--max-concurrency",
        type=int,
        help="Maximum number of concurrent uploads (default: 4)",
    )
    parser.add_argument(
        "--part-size",
        type=int,
        help="Multipart part size in bytes, at least 5 MiB (default: 8 MiB)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("S3UNZIP_ARCHIVE_PASSWORD"),
        help="Password for encrypted archives (or set S3UNZIP_ARCHIVE_PASSWORD)",
    )
    parser.add_argument(
        "--filter",
        dest="entry_filter",
        help="Entry filter as 'package.module:callable'",
    )
    parser.add_argument(
        "--streaming",
        action="store_true",
        help="Decode sequentially even when the archive file is seekable",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG level) logging",
    )
    parser.add_argument(
        "--quiet", "-q", action="store_true", help="Suppress all output except errors"
    )
    parser.add_argument(
        "--log-format",
        choices=["human", "json", "simple"],
        default=None,
        help="Log format (default: human). Can also set via S3UNZIP_LOG_FORMAT env var",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"s3-unzip {__version__}",
        help="Show version and exit",
    )
    return parser


def build_options(args: argparse.Namespace) -> Options:
    """Merge config file, AWS_* environment variables and flags, then validate.

    Flags win over the file; the environment only fills in missing
    credentials.
    """
    credentials = {key: os.environ.get(env_var) for key, env_var in _CREDENTIAL_ENV}
    flags: Dict[str, Any] = {
        "bucket_name": args.bucket_name,
        "destination_path_prefix": args.destination_path_prefix,
        "endpoint_url": args.endpoint_url,
        "region_name": args.region_name,
        "part_size": args.part_size,
        "max_concurrency": args.max_concurrency,
        "password": args.password,
        "entry_filter": args.entry_filter,
    }
    return load_options(args.config, overrides=flags, fallbacks=credentials)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = (
        logging.DEBUG if args.verbose else logging.ERROR if args.quiet else logging.INFO
    )
    setup_logging(level=log_level, format_type=args.log_format, use_colors=True)

    try:
        options = build_options(args)
    except ValidationError as exc:
        logger.error("Invalid options: %s", exc)
        return EXIT_INVALID_OPTIONS

    uploaded = 0
    try:
        with ExitStack() as stack:
            if args.archive == "-":
                source = sys.stdin.buffer
            else:
                source = stack.enter_context(open(args.archive, "rb"))

            streaming = True if args.streaming or args.archive == "-" else None
            for result in run(source, options, streaming=streaming):
                uploaded += 1
                print(json.dumps(result.to_dict()), flush=True)
    except ValidationError as exc:
        logger.error("Invalid options: %s", exc)
        return EXIT_INVALID_OPTIONS
    except (S3UnzipError, OSError) as exc:
        # Tracebacks only when asked for; the error code names the failed stage
        if args.verbose:
            log_exception(logger, f"Upload failed after {uploaded} file(s)", exc)
        else:
            logger.error("Upload failed after %d file(s): %s", uploaded, exc)
        return EXIT_FAILED

    logger.info("Done: %d file(s) uploaded to %s", uploaded, options.bucket_name)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
