"""Zip archive decoding for the upload pipeline.

The extractor turns an archive (bytes, a binary file object, or an iterable
of byte chunks) into a lazy sequence of :class:`ArchiveEntry` objects, one
per regular file. Two decoders sit behind the same interface:

- seekable sources are read with the standard library ``zipfile`` module,
  which gives access to the unix mode bits stored in the central directory;
- anything else is decoded front-to-back with ``stream_unzip`` from the
  local headers alone, so the archive never has to be resident.

The flow is source -> decoder -> ArchiveEntry -> (filter, sink). An entry's
``content`` must be consumed before the next entry is requested; whatever the
consumer leaves unread is drained by the extractor when it advances.
"""

from __future__ import annotations

import io
import logging
import stat
import zipfile
import zlib
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import BinaryIO, Iterable, Iterator, Optional, Union

from stream_unzip import UnzipError, stream_unzip

from s3unzip.exceptions import ExtractError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

ArchiveSource = Union[bytes, bytearray, BinaryIO, Iterable[bytes]]

_ZIPFILE_ERRORS = (
    zipfile.BadZipFile,
    zlib.error,
    EOFError,
    RuntimeError,
    NotImplementedError,
)
_STREAM_ERRORS = (UnzipError, zlib.error, EOFError)
_UNIX_SYSTEM = 3


class EntryType(str, Enum):
    FILE = "File"
    DIRECTORY = "Directory"
    OTHER = "Other"


@dataclass(frozen=True)
class ArchiveEntry:
    """One record of the archive.

    ``content`` is single-pass: iterate it once, in the thread that pulled
    the entry, before asking for the next one.
    """

    path: str
    type: EntryType
    content: Iterator[bytes] = field(repr=False, compare=False)
    size: Optional[int] = None

    def renamed(self, path: str) -> "ArchiveEntry":
        return replace(self, path=path)

    def with_content(
        self, content: Iterable[bytes], size: Optional[int] = None
    ) -> "ArchiveEntry":
        return replace(self, content=iter(content), size=size)


def classify_entry(name: str, mode: Optional[int] = None) -> EntryType:
    """Classify an archive record by its name and (when known) unix mode bits."""
    if name.endswith("/"):
        return EntryType.DIRECTORY
    if mode:
        if stat.S_ISDIR(mode):
            return EntryType.DIRECTORY
        if (
            stat.S_ISLNK(mode)
            or stat.S_ISCHR(mode)
            or stat.S_ISBLK(mode)
            or stat.S_ISFIFO(mode)
            or stat.S_ISSOCK(mode)
        ):
            return EntryType.OTHER
    return EntryType.FILE


def _decode_name(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        # Names without the UTF-8 flag default to cp437
        return raw.decode("cp437")


def _is_seekable(source: object) -> bool:
    seekable = getattr(source, "seekable", None)
    if not callable(seekable):
        return False
    try:
        return bool(seekable())
    except (OSError, ValueError):
        return False


class ArchiveExtractor:
    """
    Lazy, single-pass iterator over the regular files of a zip archive.

    Attributes:
        entries_emitted (int): FILE entries handed downstream so far.
        entries_skipped (int): Directory/other records consumed and discarded.
        finished (bool): True once the end of the archive has been reached.
    """

    def __init__(
        self,
        source: ArchiveSource,
        password: Optional[str] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        streaming: Optional[bool] = None,
    ) -> None:
        """
        Args:
            source: Archive bytes, a binary file object or an iterable of chunks.
            password: Optional password for encrypted members.
            chunk_size: Read size for the source and for member content.
            streaming: Force (True) or forbid (False) sequential decoding.
                By default seekable sources use ``zipfile`` and everything
                else is streamed.
        """
        if isinstance(source, (bytes, bytearray)):
            source = io.BytesIO(bytes(source))
        self.source = source
        self.password = password.encode("utf-8") if password else None
        self.chunk_size = chunk_size
        self.streaming = (not _is_seekable(source)) if streaming is None else streaming
        self.entries_emitted = 0
        self.entries_skipped = 0
        self.finished = False
        self._started = False

    def __iter__(self) -> Iterator[ArchiveEntry]:
        return self.extract()

    def extract(self) -> Iterator[ArchiveEntry]:
        """Yield FILE entries in archive-record order.

        Raises:
            ExtractError: If the archive is corrupt, truncated or encrypted
                with a password that was not supplied.
        """
        if self._started:
            raise ExtractError("Archive stream has already been consumed")
        self._started = True

        decoder = self._iter_stream() if self.streaming else self._iter_zipfile()
        yield from decoder

        # Both decoders end differently; downstream only ever sees a single
        # return from this generator.
        self.finished = True
        logger.info(
            "Archive exhausted: %d file(s) emitted, %d record(s) skipped",
            self.entries_emitted,
            self.entries_skipped,
        )

    def _skip(self, name: str, entry_type: EntryType) -> None:
        self.entries_skipped += 1
        logger.debug("Skipping %s entry %s", entry_type.value, name)

    def _emit(self, entry: ArchiveEntry) -> ArchiveEntry:
        self.entries_emitted += 1
        logger.debug("Extracted %s (%s bytes declared)", entry.path, entry.size)
        return entry

    def _iter_zipfile(self) -> Iterator[ArchiveEntry]:
        try:
            archive = zipfile.ZipFile(self.source)
        except _ZIPFILE_ERRORS as exc:
            raise ExtractError("Failed to open zip archive", original_error=exc) from exc

        with archive:
            for info in archive.infolist():
                mode = info.external_attr >> 16 if info.create_system == _UNIX_SYSTEM else None
                entry_type = classify_entry(info.filename, mode)
                if entry_type is not EntryType.FILE:
                    self._skip(info.filename, entry_type)
                    continue

                content = self._read_member(archive, info)
                try:
                    yield self._emit(
                        ArchiveEntry(
                            path=info.filename,
                            type=entry_type,
                            content=content,
                            size=info.file_size,
                        )
                    )
                finally:
                    content.close()

    def _read_member(self, archive: zipfile.ZipFile, info: zipfile.ZipInfo) -> Iterator[bytes]:
        try:
            with archive.open(info, pwd=self.password) as member:
                while True:
                    chunk = member.read(self.chunk_size)
                    if not chunk:
                        return
                    yield chunk
        except _ZIPFILE_ERRORS as exc:
            raise ExtractError(
                "Failed to decode archive member", entry_path=info.filename, original_error=exc
            ) from exc

    def _source_chunks(self) -> Iterator[bytes]:
        read = getattr(self.source, "read", None)
        if callable(read):
            while True:
                chunk = read(self.chunk_size)
                if not chunk:
                    return
                yield chunk
        else:
            for chunk in self.source:  # type: ignore[union-attr]
                if chunk:
                    yield bytes(chunk)

    def _iter_stream(self) -> Iterator[ArchiveEntry]:
        members = stream_unzip(
            self._source_chunks(), password=self.password, chunk_size=self.chunk_size
        )
        try:
            for raw_name, size, member_chunks in members:
                name = _decode_name(raw_name)
                entry_type = classify_entry(name)
                if entry_type is not EntryType.FILE:
                    self._skip(name, entry_type)
                    for _ in member_chunks:
                        pass
                    continue

                content = self._guard_member(name, member_chunks)
                yield self._emit(
                    ArchiveEntry(path=name, type=entry_type, content=content, size=size)
                )
                # The decoder cannot advance past unread member bytes
                for _ in content:
                    pass
        except _STREAM_ERRORS as exc:
            raise ExtractError("Failed to decode zip stream", original_error=exc) from exc
        finally:
            members.close()

    def _guard_member(self, name: str, member_chunks: Iterable[bytes]) -> Iterator[bytes]:
        try:
            for chunk in member_chunks:
                yield chunk
        except _STREAM_ERRORS as exc:
            raise ExtractError(
                "Failed to decode archive member", entry_path=name, original_error=exc
            ) from exc


def extract(
    source: ArchiveSource,
    password: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    streaming: Optional[bool] = None,
) -> Iterator[ArchiveEntry]:
    """Shortcut for ``ArchiveExtractor(...).extract()``."""
    extractor = ArchiveExtractor(
        source, password=password, chunk_size=chunk_size, streaming=streaming
    )
    return extractor.extract()
