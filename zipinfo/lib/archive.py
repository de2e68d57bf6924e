"""
The `zipinfo.lib.archive.ZipInfo` session binds a byte source, scans it for ZIP records and
answers queries about the archive contents. Analysis never raises for malformed input: A fatal
problem is recorded as the sticky `zipinfo.lib.archive.ZipInfo.error` message and reported through
the return value of the failing operation, while recoverable oddities are logged.

    with ZipInfo() as info:
        if info.open('archive.zip'):
            for entry in info.get_file_list():
                print(entry['name'], entry['size'])
"""
from __future__ import annotations

import os

from typing import TYPE_CHECKING

from zipinfo.lib.environment import environment, logger
from zipinfo.lib.source import BufferSource, ByteSource, FileSource, ShortRead, SourceError
from zipinfo.lib.structures import struct_to_json
from zipinfo.lib.tools import truncated
from zipinfo.lib.zip import (
    LOCAL_FILE_HEADER_SIZE,
    SENTINEL16,
    StuckParserError,
    ZipCentralFile,
    ZipEndCentralDirectory,
    ZipEndCentralDirectory64,
    ZipEntryNotFound,
    ZipFileRecord,
    ZipFormatError,
    ZipLocalFile,
    ZipRecord,
    ZipRecordDecoder,
    ZipRecordType,
)

if TYPE_CHECKING:
    from zipinfo.lib.types import JSONDict, buf

log = logger(__name__)

DEFAULT_MAX_READ_BYTES = 0x100000
DEFAULT_MAX_FILENAME_LENGTH = 500


def _setting(value: int | None, configured: int, default: int) -> int:
    if value is not None:
        return value
    if configured > 0:
        return configured
    return default


class ZipInfo:
    """
    An analysis session for a single ZIP archive. A session is either bound to a file on disk via
    `zipinfo.lib.archive.ZipInfo.open`, to an in-memory buffer via
    `zipinfo.lib.archive.ZipInfo.set_data`, or to any `zipinfo.lib.source.ByteSource` passed to
    the constructor. The limits default to the environment settings `ZIPINFO_MAX_READ_BYTES` and
    `ZIPINFO_MAX_FILENAME_LENGTH`, or 1 MiB and 500 bytes if those are unset.

    A session must not be shared between threads while an operation is in progress.
    """
    Decoder = ZipRecordDecoder

    def __init__(
        self,
        source: ByteSource | None = None,
        max_read_bytes: int | None = None,
        max_filename_length: int | None = None,
    ):
        self.max_read_bytes = _setting(max_read_bytes, environment.max_read_bytes.value, DEFAULT_MAX_READ_BYTES)
        self.max_filename_length = _setting(
            max_filename_length, environment.max_filename_length.value, DEFAULT_MAX_FILENAME_LENGTH)
        self.source = source
        self.reset()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def __repr__(self):
        return F'<{self.__class__.__name__} {self.source!r} records={len(self._records)}>'

    def reset(self) -> None:
        """
        Discard all results of a previous analysis so that the next call to
        `zipinfo.lib.archive.ZipInfo.analyze` starts over.
        """
        self._records: list[ZipRecord] = []
        self._analyzed: bool | None = None
        self.is_encrypted = False
        self.file_count = 0
        self._zip64_count = False
        self.error: str | None = None
        if self.source is not None and not self.source.closed:
            self.source.rewind()

    def close(self) -> None:
        if self.source is not None:
            self.source.close()

    def _bind(self, source: ByteSource, range: tuple[int, int] | None) -> bool:
        self.close()
        self.source = source
        source.set_range(range)
        self.reset()
        return self.analyze()

    def open(self, path: str | os.PathLike, range: tuple[int, int] | None = None) -> bool:
        """
        Bind a file on disk, optionally restricted to an inclusive range of absolute positions,
        and analyze it.
        """
        try:
            source = FileSource(path)
        except SourceError as E:
            self.close()
            self.source = None
            self.reset()
            self.error = str(E)
            log.error(self.error)
            return False
        return self._bind(source, range)

    def set_data(self, data: buf, range: tuple[int, int] | None = None) -> bool:
        """
        Bind an in-memory buffer, optionally restricted to an inclusive range of positions, and
        analyze it.
        """
        return self._bind(BufferSource(data), range)

    @property
    def start(self) -> int:
        return self.source.start if self.source else 0

    @property
    def end(self) -> int:
        return self.source.end if self.source else -1

    @property
    def length(self) -> int:
        return self.source.length if self.source else 0

    @property
    def offset(self) -> int:
        return self.source.offset if self.source else 0

    @property
    def file_size(self) -> int:
        return self.source.file_size if self.source else 0

    @property
    def data_size(self) -> int:
        return self.length

    @property
    def records(self) -> tuple[ZipRecord, ...]:
        return tuple(self._records)

    def _available(self) -> bool:
        return self.source is not None and not self.source.closed

    def find_marker_record(self) -> int | None:
        """
        Locate the first Local File signature within the first `max_read_bytes` of the window, or
        the first End of Central Directory signature if there is no Local File record. Returns the
        window-relative offset of the marker or `None`. The cursor is left at the window start.
        """
        source = self.source
        source.rewind()
        result = source.fetch(min(source.length, self.max_read_bytes))
        source.rewind()
        if not result.ok:
            if result.message:
                log.warning(result.message)
            return None
        for kind in (ZipRecordType.LocalFile, ZipRecordType.EndCentralDirectory):
            if (position := result.data.find(kind.signature)) >= 0:
                return position
        return None

    def _account(self, record: ZipRecord):
        if isinstance(record, ZipFileRecord) and record.flags.EncryptedCD:
            self.is_encrypted = True
        if isinstance(record, ZipEndCentralDirectory64):
            self._zip64_count = True
            self.file_count = record.entries_disk
        elif isinstance(record, ZipEndCentralDirectory):
            if record.entries_disk == SENTINEL16 and self._zip64_count:
                return
            self.file_count = record.entries_disk

    def _analyze(self):
        source = self.source
        start = self.find_marker_record()
        if start is None:
            raise ZipFormatError('Could not find any records, not a valid ZIP file')
        log.debug(F'first marker record found at offset {start}')
        search = 0 if environment.no_descriptor_search.value else self.max_read_bytes
        decoder = self.Decoder(source, search)
        source.seek(start)
        skipped = 0
        while source.offset < source.length:
            try:
                record = decoder.next_record()
            except ShortRead as E:
                log.info(F'stopped reading records: {E!s}')
                break
            if record is None:
                skipped += 1
                continue
            self._account(record)
            self._records.append(record)
            source.seek(record.next_offset)
            if record.next_offset <= record.offset or source.offset == record.offset:
                raise StuckParserError(record.offset)
        if skipped:
            log.debug(F'skipped {skipped} bytes that did not start a known record')

    def analyze(self) -> bool:
        """
        Scan the bound source for records. The scan runs once per binding; later calls return the
        result of the first one. Returns `False` and sets the sticky error when no source is bound,
        when no marker record is found, when the source fails, or when the decoder stops making
        progress.
        """
        if self._analyzed is not None:
            return self._analyzed
        if not self._available():
            self.error = self.error or 'No source data available'
            self._analyzed = False
            return False
        try:
            self._analyze()
        except ZipFormatError as E:
            self.error = str(E)
        except (StuckParserError, SourceError) as E:
            self.error = self.error or self.source.error or str(E)
            self.close()
        if self.error is not None:
            log.error(self.error)
            self._analyzed = False
            return False
        log.info(F'found {len(self._records)} records in {self.source.name or "buffer"}')
        self._analyzed = True
        return True

    def get_summary(self, full: bool = False, skip_dirs: bool = False, central: bool = False) -> JSONDict:
        """
        Return a summary of the bound data and the analysis result. With `full`, the summary also
        contains the output of `zipinfo.lib.archive.ZipInfo.get_file_list` under the key
        `file_list`.
        """
        summary = dict(
            zip_file=self.source.name if self.source else None,
            file_size=self.file_size,
            data_size=self.data_size,
            use_range=(self.start, self.end),
            file_count=self.file_count,
        )
        if full:
            summary['file_list'] = self.get_file_list(skip_dirs, central)
        return summary

    def get_records(self) -> list[JSONDict] | None:
        """
        Return a dictionary for every decoded record, or `None` if there are none. File names in
        the result are truncated to `max_filename_length` bytes.
        """
        if not self._records:
            return None
        result = []
        for record in self._records:
            info = struct_to_json(record)
            if isinstance(record, ZipFileRecord):
                info['file_name'] = truncated(record.file_name, self.max_filename_length)
            result.append(info)
        return result

    def _file_summary(self, record: ZipFileRecord) -> JSONDict:
        info = {
            'name': truncated(record.name, self.max_filename_length),
            'size': record.uncompressed_size,
            'date': record.date,
            'pass': record.is_encrypted,
            'compressed': record.is_compressed,
            'next_offset': record.next_offset,
        }
        if record.is_dir:
            info['is_dir'] = True
        elif isinstance(record, ZipLocalFile):
            start = self.start + record.offset + LOCAL_FILE_HEADER_SIZE + record.file_name_length + record.extra_length
            info['range'] = (start, min(self.end, start + record.uncompressed_size - 1))
        return info

    def get_file_list(self, skip_dirs: bool = False, central: bool = False) -> list[JSONDict] | None:
        """
        Return a summary for each Local File record, or for each Central File record if `central`
        is set. Directories are omitted if `skip_dirs` is set. The result is `None` if there are no
        records at all.
        """
        if not self._records:
            return None
        kind = ZipCentralFile if central else ZipLocalFile
        return [
            self._file_summary(r) for r in self._records
            if isinstance(r, kind) and not (skip_dirs and r.is_dir)
        ]

    def resolve_range(self, name: str | bytes) -> tuple[int, int]:
        """
        Find the first Local File record with the given name that is not a directory and return
        the inclusive range of absolute positions that holds its stored payload. Raises
        `zipinfo.lib.zip.ZipEntryNotFound` if there is no such record.
        """
        for record in self._records:
            if not isinstance(record, ZipLocalFile) or record.is_dir:
                continue
            if not record.matches(name):
                continue
            start = self.start + record.data_offset
            return start, min(self.end, start + record.compressed_size - 1)
        raise ZipEntryNotFound(name)

    def _payload_range(self, name: str | bytes) -> tuple[int, int] | None:
        if not self._records or not self._available():
            return None
        try:
            return self.resolve_range(name)
        except ZipEntryNotFound as E:
            log.warning(str(E))
            return None

    def get_file_data(self, name: str | bytes) -> bytes | None:
        """
        Return the stored bytes of the named entry, which are compressed and possibly encrypted.
        Returns `None` if the entry is not known or the data cannot be read.
        """
        if (range := self._payload_range(name)) is None:
            return None
        try:
            return self.source.get_range(*range)
        except OSError as E:
            log.error(F'could not read data for {name!r}: {E!s}')
            return None

    def save_file_data(self, name: str | bytes, destination: str | os.PathLike) -> int | None:
        """
        Write the stored bytes of the named entry to the given destination path and return the
        number of bytes written, or `None` on failure.
        """
        if (range := self._payload_range(name)) is None:
            return None
        try:
            return self.source.save_range(*range, destination)
        except OSError as E:
            log.error(F'could not save data for {name!r} to {destination!s}: {E!s}')
            return None
