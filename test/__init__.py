from __future__ import annotations

import io
import logging
import random
import string
import struct
import unittest
import zipfile

import zipinfo


__all__ = ['zipinfo', 'TestBase', 'DATE_TIME']

DATE_TIME = (2020, 5, 17, 13, 37, 42)


class _StreamOnly(io.RawIOBase):
    """
    A write-only stream without seek support; the zipfile module writes data descriptors when
    it targets such a stream.
    """
    def __init__(self):
        super().__init__()
        self.buffer = bytearray()

    def writable(self):
        return True

    def write(self, b):
        self.buffer.extend(b)
        return len(b)


class TestBase(unittest.TestCase):

    def generate_random_buffer(self, size):
        return bytes(random.randrange(0, 0x100) for _ in range(size))

    def generate_random_text(self, size):
        return ''.join(string.printable[
            random.randrange(0, len(string.printable))] for _ in range(size)).encode('UTF8')

    def setUp(self):
        random.seed(0xBAADF00D)  # guarantee deterministic 'random' buffers
        logging.disable(logging.CRITICAL)

    def tearDown(self):
        logging.disable(logging.NOTSET)

    def assertContains(self, container, member, msg=None):
        self.assertIn(member, container, msg)

    def build_archive(self, files, compression=zipfile.ZIP_STORED, streamed=False) -> bytes:
        """
        Build an archive with the zipfile module from a dictionary that maps names to contents.
        Names that end in a slash become directory entries.
        """
        stream = _StreamOnly() if streamed else io.BytesIO()
        with zipfile.ZipFile(stream, 'w', compression) as archive:
            for name, data in files.items():
                info = zipfile.ZipInfo(name, date_time=DATE_TIME)
                if not name.endswith('/'):
                    info.compress_type = compression
                archive.writestr(info, data)
        if streamed:
            return bytes(stream.buffer)
        return stream.getvalue()

    @staticmethod
    def pack_local_file(
        name: bytes,
        data: bytes = B'',
        flags: int = 0,
        method: int = 0,
        crc: int = 0,
        csize: int | None = None,
        usize: int | None = None,
        extra: bytes = B'',
        version: int = 20,
        host: int = 0,
        time: int = 0,
        date: int = 0,
    ) -> bytes:
        if csize is None:
            csize = len(data)
        if usize is None:
            usize = len(data)
        header = struct.pack('<IBBHHHHIIIHH',
            0x04034B50, version, host, flags, method, time, date, crc, csize, usize, len(name), len(extra))
        return header + name + extra + data

    @staticmethod
    def pack_central_file(
        name: bytes,
        flags: int = 0,
        method: int = 0,
        crc: int = 0,
        csize: int = 0,
        usize: int = 0,
        rel_offset: int = 0,
        disk_start: int = 0,
        extra: bytes = B'',
        comment: bytes = B'',
        made: tuple[int, int] = (20, 3),
        need: tuple[int, int] = (20, 0),
    ) -> bytes:
        header = struct.pack('<IBBBBHHHHIIIHHHHHII',
            0x02014B50, *made, *need, flags, method, 0, 0, crc, csize, usize,
            len(name), len(extra), len(comment), disk_start, 0, 0, rel_offset)
        return header + name + extra + comment

    @staticmethod
    def pack_extra_field(header_id: int, data: bytes) -> bytes:
        return struct.pack('<HH', header_id, len(data)) + data

    @staticmethod
    def pack_end_central_directory(entries: int = 0, total: int | None = None, size: int = 0, offset: int = 0, comment: bytes = B'') -> bytes:
        if total is None:
            total = entries
        return struct.pack('<IHHHHIIH', 0x06054B50, 0, 0, entries, total, size, offset, len(comment)) + comment

    @staticmethod
    def pack_zip64_end_central_directory(entries: int, size: int = 0, offset: int = 0, record_size: int = 44) -> bytes:
        return struct.pack('<IQBBBBIIQQQQ', 0x06064B50, record_size, 45, 3, 45, 0, 0, 0, entries, entries, size, offset)

    @staticmethod
    def pack_zip64_locator(offset: int, disks: int = 1) -> bytes:
        return struct.pack('<IIQI', 0x07064B50, 0, offset, disks)
