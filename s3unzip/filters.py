"""Entry filters applied between extraction and upload."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Iterator, Optional

from s3unzip.archive import ArchiveEntry
from s3unzip.exceptions import FilterError, S3UnzipError

logger = logging.getLogger(__name__)

FilterFunc = Callable[[ArchiveEntry], Optional[ArchiveEntry]]


class EntryFilter(ABC):
    """Abstract base class for entry filters.

    Implementations receive every file entry once, in archive order, and
    return:

      - ``None`` to drop the entry,
      - the entry itself to pass it through,
      - ``entry.renamed(...)`` / ``entry.with_content(...)`` to change it.
    """

    @abstractmethod
    def transform(self, entry: ArchiveEntry) -> Optional[ArchiveEntry]:
        ...


class IdentityFilter(EntryFilter):
    def transform(self, entry: ArchiveEntry) -> Optional[ArchiveEntry]:
        return entry

    def __repr__(self) -> str:
        return "IdentityFilter()"


class CallableFilter(EntryFilter):
    """Adapts a plain function ``entry -> entry | None`` to :class:`EntryFilter`."""

    def __init__(self, func: FilterFunc) -> None:
        self.func = func

    def transform(self, entry: ArchiveEntry) -> Optional[ArchiveEntry]:
        return self.func(entry)

    def __repr__(self) -> str:
        name = getattr(self.func, "__qualname__", repr(self.func))
        return f"CallableFilter({name})"


def as_entry_filter(obj: object) -> Optional[EntryFilter]:
    """Return ``obj`` as an EntryFilter, or None if it cannot act as one."""
    if obj is None:
        return IdentityFilter()
    if isinstance(obj, EntryFilter):
        return obj
    if callable(obj):
        return CallableFilter(obj)  # type: ignore[arg-type]
    return None


def apply_filter(
    entries: Iterable[ArchiveEntry], entry_filter: EntryFilter
) -> Iterator[ArchiveEntry]:
    """Lazily run ``entry_filter`` over ``entries``.

    The next upstream entry is only pulled when the consumer asks for one,
    so the filter adds no buffering of its own.

    Raises:
        FilterError: If the filter raises or returns something that is not
            an ArchiveEntry.
    """
    upstream = iter(entries)
    try:
        for entry in upstream:
            try:
                result = entry_filter.transform(entry)
            except S3UnzipError:
                raise
            except Exception as exc:
                raise FilterError(
                    "Entry filter failed", entry_path=entry.path, original_error=exc
                ) from exc

            if result is None:
                logger.debug("Filter dropped %s", entry.path)
                continue
            if not isinstance(result, ArchiveEntry):
                raise FilterError(
                    f"Entry filter returned {type(result).__name__}, "
                    "expected ArchiveEntry or None",
                    entry_path=entry.path,
                )
            if result.path != entry.path:
                logger.debug("Filter renamed %s -> %s", entry.path, result.path)
            yield result
    finally:
        close = getattr(upstream, "close", None)
        if close is not None:
            close()
