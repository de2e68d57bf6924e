"""
Readers for the little endian binary structures of the ZIP format.
"""
from __future__ import annotations

import enum
import functools

from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from typing import Self

    from zipinfo.lib.types import JSON, buf


class EOF(EOFError):
    """
    Fewer bytes were available than a read requested.
    """
    def __init__(self, size: int, rest: buf = B''):
        super().__init__(F'Unexpected end of buffer; attempted to read {size} bytes, but got only {len(rest)}.')
        self.rest = rest
        self.size = size


class MemoryFile:
    """
    A read-only cursor over a byte sequence. The cursor is always clamped to the bounds of the
    buffer, so reading past the end returns fewer bytes instead of failing.
    """
    def __init__(self, data: buf, name: str = ''):
        if not isinstance(data, (bytearray, bytes, memoryview)):
            raise TypeError(F'Invalid input: {data!r}.')
        self._data = data
        self._name = name
        self._cursor = 0
        self._closed = False

    def __len__(self):
        return len(self._data)

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def tell(self) -> int:
        return self._cursor

    def seek(self, offset: int) -> int:
        self._cursor = max(0, min(offset, len(self._data)))
        return self._cursor

    def skip(self, n: int) -> int:
        return self.seek(self._cursor + n)

    def read(self, size: int | None = None, peek: bool = False) -> buf:
        start = self._cursor
        end = len(self._data) if size is None or size < 0 else min(start + size, len(self._data))
        if not peek:
            self._cursor = end
        return self._data[start:end]

    def peek(self, size: int | None = None) -> buf:
        return self.read(size, peek=True)

    def getbuffer(self) -> memoryview:
        return memoryview(self._data)


class StructReader(MemoryFile):
    """
    A `zipinfo.lib.structures.MemoryFile` with methods to read little endian integers. An integer
    read that runs out of data raises `zipinfo.lib.structures.EOF`.
    """
    def read_integer(self, nbytes: int, peek: bool = False) -> int:
        data = self.read(nbytes, peek)
        if len(data) < nbytes:
            raise EOF(nbytes, data)
        return int.from_bytes(data, 'little')

    def u8(self, peek: bool = False) -> int:
        return self.read_integer(1, peek)

    def u16(self, peek: bool = False) -> int:
        return self.read_integer(2, peek)

    def u32(self, peek: bool = False) -> int:
        return self.read_integer(4, peek)

    def u64(self, peek: bool = False) -> int:
        return self.read_integer(8, peek)


class Struct:
    """
    Base class for structures that decode themselves from a `zipinfo.lib.structures.StructReader`
    passed as the first argument of their constructor. Use `Parse` to decode from raw bytes:

        descriptor = ZipDataDescriptor.Parse(data, is64bit)

    The bytes that the constructor consumed are kept, so `len` of a structure is its encoded size.
    """
    interface: ClassVar[type[StructReader]] = StructReader
    _data: memoryview

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        decode = cls.__init__

        @functools.wraps(decode)
        def __init__(self, reader: StructReader, *args, **kwargs):
            start = reader.tell()
            decode(self, reader, *args, **kwargs)
            self._data = reader.getbuffer()[start:reader.tell()]

        cls.__init__ = __init__

    @classmethod
    def Parse(cls, data: buf | StructReader, *args, **kwargs) -> Self:
        if not isinstance(data, cls.interface):
            data = cls.interface(data)
        return cls(data, *args, **kwargs)

    def __len__(self):
        return len(self._data)

    def __bytes__(self):
        return bytes(self._data)


def struct_to_json(o) -> JSON:
    """
    Convert a decoded record or any of its attribute values to a JSON-compatible representation.
    Flags become the list of their set member names, enumeration members their name, and objects
    with a `__json__` method are converted by it. Containers are converted in place.
    """
    if isinstance(o, dict):
        for k, v in o.items():
            o[k] = struct_to_json(v)
    elif isinstance(o, list):
        for k, v in enumerate(o):
            o[k] = struct_to_json(v)
    elif isinstance(o, enum.IntFlag):
        return [option.name for option in o.__class__ if option and o & option == option]
    elif isinstance(o, enum.IntEnum):
        return o.name
    elif hasattr(o, '__json__'):
        return o.__json__()
    return o


class FlagAccessMixin:
    """
    Mixed into an `enum.IntFlag`, this allows testing a flag by attribute access:

        if record.flags.Encrypted:
            ...
    """
    def __getattribute__(self, name: str):
        if not name.startswith('_'):
            try:
                flag = type(self)[name]
            except KeyError:
                pass
            else:
                return flag in self
        return super().__getattribute__(name)
