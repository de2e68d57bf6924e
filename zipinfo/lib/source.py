"""
Byte sources for the archive reader. A `zipinfo.lib.source.ByteSource` provides sequential reads
over an active window of the underlying data, which is either a file on disk or an in-memory
buffer. The window can be narrower than the data, which is how a single member of a multi-volume
set or a ZIP embedded in some other file can be inspected. All cursor positions are relative to
the window start; range operations take absolute positions.
"""
from __future__ import annotations

import abc
import enum
import os

from pathlib import Path
from typing import NamedTuple

from zipinfo.lib.structures import EOF, MemoryFile, StructReader
from zipinfo.lib.types import buf


class ShortRead(EOF):
    """
    The active window of a `zipinfo.lib.source.ByteSource` holds fewer bytes than requested.
    """
    def __init__(self, size: int, offset: int, remaining: int):
        EOFError.__init__(self,
            F'End of readable data reached; attempted to read {size} bytes at offset {offset}, only {remaining} left.')
        self.rest = B''
        self.size = size
        self.offset = offset


class SourceError(OSError):
    """
    The underlying data could not be accessed, either because of an I/O failure or because the
    source was closed.
    """


class ReadStatus(enum.IntEnum):
    OK = 0
    END = 1
    ERROR = 2


class ReadResult(NamedTuple):
    status: ReadStatus
    data: bytes = B''
    message: str = ''

    @property
    def ok(self) -> bool:
        return self.status == ReadStatus.OK


class ByteSource(abc.ABC):
    """
    Abstract base of all byte sources. Subclasses implement positioned reads on the complete data
    via `_pread` and release their resources in `_close`.
    """
    chunk_size = 0x10000

    def __init__(self, name: str, file_size: int):
        self.name = name
        self.file_size = file_size
        self.error: str | None = None
        self._closed = False
        self.set_range(None)

    @abc.abstractmethod
    def _pread(self, position: int, size: int) -> bytes:
        ...

    def _close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def __len__(self):
        return self.length

    def __repr__(self):
        return F'<{self.__class__.__name__} {self.name!r} [{self.start}-{self.end}]>'

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def data_size(self) -> int:
        return self.length

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._close()

    def set_range(self, range: tuple[int, int] | None = None) -> None:
        """
        Select the active window as an inclusive pair of absolute positions. The window is clamped
        to the available data, and `None` selects all of it. The cursor is reset to the start of
        the new window.
        """
        last = self.file_size - 1
        if range is None:
            start, end = 0, last
        else:
            start, end = range
            start = max(0, min(start, self.file_size))
            end = max(start - 1, min(end, last))
        self.start = start
        self.end = end
        self.length = end - start + 1
        self.offset = 0

    def fetch(self, size: int) -> ReadResult:
        """
        Read exactly `size` bytes from the cursor and report the outcome explicitly: The status is
        `END` if the window does not hold enough data and `ERROR` if the data could not be accessed.
        The cursor only advances on success.
        """
        if self._closed:
            return ReadResult(ReadStatus.ERROR, message=F'The source {self.name!r} is closed.')
        if size <= 0:
            return ReadResult(ReadStatus.OK)
        if (remaining := self.length - self.offset) < size:
            return ReadResult(ReadStatus.END, message=str(ShortRead(size, self.offset, max(remaining, 0))))
        try:
            data = self._pread(self.start + self.offset, size)
        except OSError as E:
            message = F'Could not read from {self.name!r}: {E!s}'
            if self.error is None:
                self.error = message
            return ReadResult(ReadStatus.ERROR, message=message)
        if len(data) < size:
            return ReadResult(ReadStatus.END, message=str(ShortRead(size, self.offset, len(data))))
        self.offset += size
        return ReadResult(ReadStatus.OK, data)

    def read(self, size: int) -> bytes:
        """
        Read exactly `size` bytes from the cursor. Raises `zipinfo.lib.source.ShortRead` at the end
        of the window and `zipinfo.lib.source.SourceError` when the data cannot be accessed.
        """
        result = self.fetch(size)
        if result.status == ReadStatus.OK:
            return result.data
        if result.status == ReadStatus.END:
            raise ShortRead(size, self.offset, max(self.length - self.offset, 0))
        raise SourceError(result.message)

    def reader(self, size: int) -> StructReader:
        """
        Read exactly `size` bytes and wrap them in a little endian `zipinfo.lib.structures.StructReader`.
        """
        return StructReader(self.read(size))

    def seek(self, position: int) -> int:
        self.offset = max(0, min(position, self.length))
        return self.offset

    def rewind(self) -> int:
        return self.seek(0)

    def skip(self, size: int) -> int:
        return self.seek(self.offset + size)

    def _clamp(self, start: int, end: int) -> tuple[int, int]:
        return max(start, self.start), min(end, self.end)

    def get_range(self, start: int, end: int) -> bytes:
        """
        Return the bytes between the absolute positions `start` and `end`, both inclusive, clamped
        to the active window. The cursor does not move.
        """
        if self._closed:
            raise SourceError(F'The source {self.name!r} is closed.')
        start, end = self._clamp(start, end)
        if end < start:
            return B''
        return self._pread(start, end - start + 1)

    def save_range(self, start: int, end: int, destination: str | os.PathLike) -> int:
        """
        Write the bytes between the absolute positions `start` and `end`, both inclusive, to the
        given destination path. Returns the number of bytes written.
        """
        if self._closed:
            raise SourceError(F'The source {self.name!r} is closed.')
        start, end = self._clamp(start, end)
        written = 0
        with open(destination, 'wb') as out:
            while start <= end:
                chunk = self._pread(start, min(self.chunk_size, end - start + 1))
                if not chunk:
                    break
                written += out.write(chunk)
                start += len(chunk)
        return written


class BufferSource(ByteSource):
    """
    A byte source over an in-memory buffer.
    """
    def __init__(self, data: buf, name: str = ''):
        self._memory = MemoryFile(memoryview(data), name)
        super().__init__(name, len(self._memory))

    def _pread(self, position: int, size: int) -> bytes:
        self._memory.seek(position)
        return bytes(self._memory.read(size))

    def _close(self) -> None:
        self._memory.close()


class FileSource(ByteSource):
    """
    A byte source reading from a file on disk.
    """
    def __init__(self, path: str | os.PathLike):
        path = Path(path)
        if not path.is_file():
            raise SourceError(F'File does not exist ({path!s})')
        try:
            self._handle = path.open('rb')
        except OSError as E:
            raise SourceError(F'Could not open file ({path!s}): {E!s}') from E
        super().__init__(str(path.resolve()), path.stat().st_size)

    def _pread(self, position: int, size: int) -> bytes:
        self._handle.seek(position)
        return self._handle.read(size)

    def _close(self) -> None:
        self._handle.close()
