"""
Structures for reading the metadata of ZIP archives record by record. The decoder reads one
structural record at a time from a `zipinfo.lib.source.ByteSource` and never touches the payload
of a file beyond locating it; decompression and decryption are out of scope, but the flags that
indicate either are reported.

All integers are little endian. Offsets stored in records are relative to the start of the active
window of the source.
"""
from __future__ import annotations

import codecs
import enum

from types import MappingProxyType
from typing import TYPE_CHECKING, ClassVar, NamedTuple

from zipinfo.lib.environment import logger
from zipinfo.lib.source import ByteSource, ReadStatus
from zipinfo.lib.structures import EOF, FlagAccessMixin, Struct, StructReader, struct_to_json
from zipinfo.lib.tools import dostime, int64

if TYPE_CHECKING:
    from datetime import datetime

    from zipinfo.lib.types import JSONDict

log = logger(__name__)


class ZipFormatError(ValueError):
    pass


class StuckParserError(RuntimeError):
    def __init__(self, offset: int):
        super().__init__('Parsing seems to be stuck')
        self.offset = offset


class MalformedExtraField(ValueError):
    def __init__(self, record_offset: int, header_id: int, message: str):
        super().__init__(F'Malformed extra field {header_id:#06x} in record at offset {record_offset}: {message}')
        self.record_offset = record_offset
        self.header_id = header_id


class ZipEntryNotFound(FileNotFoundError):
    def __init__(self, name: str | bytes):
        if isinstance(name, bytes):
            name = codecs.decode(name, 'latin1')
        super().__init__(F'Could not find file info for: ({name})')
        self.name = name


class ZipRecordType(enum.IntEnum):
    CentralFile                     = 0x02014B50 # noqa
    LocalFile                       = 0x04034B50 # noqa
    DigitalSignature                = 0x05054B50 # noqa
    EndCentralDirectory             = 0x06054B50 # noqa
    Zip64EndCentralDirectory        = 0x06064B50 # noqa
    Zip64EndCentralDirectoryLocator = 0x07064B50 # noqa
    ArchiveExtraData                = 0x08064B50 # noqa
    DataDescriptor                  = 0x08074B50 # noqa

    @property
    def signature(self) -> bytes:
        return self.value.to_bytes(4, 'little')


RECORD_NAMES = MappingProxyType({
    ZipRecordType.CentralFile                     : 'Central File',
    ZipRecordType.LocalFile                       : 'Local File',
    ZipRecordType.DigitalSignature                : 'Digital Signature',
    ZipRecordType.EndCentralDirectory             : 'End of Central Directory',
    ZipRecordType.Zip64EndCentralDirectory        : 'ZIP64 End of Central Directory',
    ZipRecordType.Zip64EndCentralDirectoryLocator : 'ZIP64 End of Central Directory Locator',
    ZipRecordType.ArchiveExtraData                : 'Archive Extra Data',
    ZipRecordType.DataDescriptor                  : 'Data Descriptor',
})


class ZipFlags(FlagAccessMixin, enum.IntFlag):
    Encrypted           = 0x0001 # noqa
    CompressOption1     = 0x0002 # noqa
    CompressOption2     = 0x0004 # noqa
    DataDescriptor      = 0x0008 # noqa
    EnhancedDeflate     = 0x0010 # noqa
    CompressedPatched   = 0x0020 # noqa
    StrongEncryption    = 0x0040 # noqa
    UseUTF8             = 0x0800 # noqa
    EncryptedCD         = 0x2000 # noqa


class ZipCompressionMethod(enum.IntEnum):
    STORE           = 0x00 # noqa
    SHRINK          = 0x01 # noqa
    REDUCED1        = 0x02 # noqa
    REDUCED2        = 0x03 # noqa
    REDUCED3        = 0x04 # noqa
    REDUCED4        = 0x05 # noqa
    IMPLODE         = 0x06 # noqa
    TOKENIZE        = 0x07 # noqa
    DEFLATE         = 0x08 # noqa
    DEFLATE64       = 0x09 # noqa
    PKWARE_IMPLODE  = 0x0A # noqa
    BZIP2           = 0x0C # noqa
    LZMA            = 0x0E # noqa
    IBM_CMPSC       = 0x10 # noqa
    IBM_TERSE       = 0x12 # noqa
    IBM_LZ77        = 0x13 # noqa
    ZSTD_DEPRECATED = 0x14 # noqa
    ZSTD            = 0x5D # noqa
    MP3             = 0x5E # noqa
    XZ              = 0x5F # noqa
    JPEG            = 0x60 # noqa
    WAVPACK         = 0x61 # noqa
    PPMD            = 0x62 # noqa
    AExENCRYPTION   = 0x63 # noqa


class ZipExtraFieldID(enum.IntEnum):
    Zip64           = 0x0001 # noqa
    NTFS            = 0x000A # noqa
    Unix            = 0x000D # noqa
    StrongEncrypt   = 0x0017 # noqa
    POSZIP          = 0x4690 # noqa
    UnixTime        = 0x5455 # noqa
    InfoZipUnix1    = 0x5855 # noqa
    InfoZipUnix2    = 0x7855 # noqa
    InfoZipUnix3    = 0x7875 # noqa
    WinZipAES       = 0x9901 # noqa


EXTRA_FIELD_NAMES = MappingProxyType({
    ZipExtraFieldID.Zip64         : 'Zip64',
    ZipExtraFieldID.NTFS          : 'NTFS',
    ZipExtraFieldID.Unix          : 'Unix',
    ZipExtraFieldID.StrongEncrypt : 'Strong Encryption',
    ZipExtraFieldID.POSZIP        : 'POSZIP',
    ZipExtraFieldID.UnixTime      : 'Unix Time',
    ZipExtraFieldID.InfoZipUnix1  : 'Info-ZIP (UX)',
    ZipExtraFieldID.InfoZipUnix2  : 'Info-ZIP (Ux)',
    ZipExtraFieldID.InfoZipUnix3  : 'Info-ZIP (ux)',
    ZipExtraFieldID.WinZipAES     : 'AES-256 Password Encryption',
})


class ZipHostOS(enum.IntEnum):
    FAT      = 0  # noqa
    AMIGA    = 1  # noqa
    VMS      = 2  # noqa
    UNIX     = 3  # noqa
    VM_CMS   = 4  # noqa
    ATARI    = 5  # noqa
    HPFS     = 6  # noqa
    MAC      = 7  # noqa
    Z_SYSTEM = 8  # noqa
    CPM      = 9  # noqa
    NTFS     = 10 # noqa
    MVS      = 11 # noqa
    VSE      = 12 # noqa
    ACORN    = 13 # noqa
    VFAT     = 14 # noqa
    ALT_MVS  = 15 # noqa
    BEOS     = 16 # noqa
    TANDEM   = 17 # noqa
    OS400    = 18 # noqa
    OSX      = 19 # noqa


HOST_OS_NAMES = MappingProxyType({
    ZipHostOS.FAT      : 'MS-DOS and OS/2 (FAT)',
    ZipHostOS.AMIGA    : 'Amiga',
    ZipHostOS.VMS      : 'OpenVMS',
    ZipHostOS.UNIX     : 'Unix',
    ZipHostOS.VM_CMS   : 'VM/CMS',
    ZipHostOS.ATARI    : 'Atari',
    ZipHostOS.HPFS     : 'OS/2 HPFS',
    ZipHostOS.MAC      : 'Macintosh',
    ZipHostOS.Z_SYSTEM : 'Z-System',
    ZipHostOS.CPM      : 'CP/M',
    ZipHostOS.NTFS     : 'Windows NTFS',
    ZipHostOS.MVS      : 'MVS (OS/390 - Z/OS)',
    ZipHostOS.VSE      : 'VSE',
    ZipHostOS.ACORN    : 'Acorn Risc',
    ZipHostOS.VFAT     : 'VFAT',
    ZipHostOS.ALT_MVS  : 'Alternative MVS',
    ZipHostOS.BEOS     : 'BEOS',
    ZipHostOS.TANDEM   : 'Tandem',
    ZipHostOS.OS400    : 'OS/400',
    ZipHostOS.OSX      : 'OS X (Darwin)',
})

LOCAL_FILE_HEADER_SIZE = 30
"""
Size of a Local File header including its signature; the payload of an entry starts this many
bytes after the record offset, plus the lengths of the name and the extra fields.
"""

SENTINEL32 = 0xFFFFFFFF
SENTINEL16 = 0xFFFF


def format_version(num: int) -> str:
    major, minor = divmod(num, 10)
    return F'{major}.{minor}'


def host_os_name(code: int) -> str:
    return HOST_OS_NAMES.get(code, 'Unknown')


class Zip64Override(NamedTuple):
    """
    A value in the ZIP64 extra field. It is present only if the corresponding field of the owning
    record holds the sentinel value, and the values appear in the order of `ZIP64_OVERRIDES`.
    """
    attribute: str
    sentinel: int
    width: int

    def applies(self, record: ZipFileRecord) -> bool:
        return getattr(record, self.attribute, None) == self.sentinel

    def read(self, reader: StructReader) -> int:
        if self.width == 8:
            low = reader.u32()
            high = reader.u32()
            return int64(low, high)
        return reader.u32()


ZIP64_OVERRIDES = (
    Zip64Override('uncompressed_size', SENTINEL32, 8),
    Zip64Override('compressed_size', SENTINEL32, 8),
    Zip64Override('rel_offset', SENTINEL32, 8),
    Zip64Override('disk_start', SENTINEL16, 4),
)


class ZipExtraField:
    """
    One block of the extra field data attached to a Local or Central File record. The `values`
    mapping holds the ZIP64 values that were read from this block, by record attribute name.
    """
    def __init__(self, header_id: int, data_size: int):
        self.header_id = header_id
        self.data_size = data_size
        self.values: dict[str, int] = {}
        self.end_offset = 0

    @property
    def type_name(self) -> str:
        return EXTRA_FIELD_NAMES.get(self.header_id, 'Unknown')

    def __repr__(self):
        return F'<{self.__class__.__name__} {self.type_name} {self.header_id:#06x}:{self.data_size}>'

    def __json__(self) -> JSONDict:
        return dict(
            type_name=self.type_name,
            header_id=self.header_id,
            data_size=self.data_size,
            **self.values,
            end_offset=self.end_offset,
        )


def read_extra_fields(source: ByteSource, record: ZipFileRecord, extra_length: int) -> list[ZipExtraField]:
    """
    Read the extra field block of the given record from the current position of the source. The
    cursor is always left at the declared end of the block, even when the block is malformed, so
    that inconsistent sizes only affect the record they belong to.
    """
    end = source.offset + extra_length
    fields: list[ZipExtraField] = []

    def malformed(header_id: int, message: str):
        error = MalformedExtraField(record.offset, header_id, message)
        log.warning(str(error))

    while source.offset < end:
        remaining = end - source.offset
        if remaining < 4:
            malformed(0, F'{remaining} trailing bytes cannot hold a field header')
            source.read(remaining)
            break
        header = source.reader(4)
        field = ZipExtraField(header.u16(), header.u16())
        remaining -= 4
        size = field.data_size
        if size > remaining:
            malformed(field.header_id, F'declared size {size} exceeds the {remaining} remaining bytes')
            size = remaining
        data = source.read(size)
        if field.header_id == ZipExtraFieldID.Zip64:
            reader = StructReader(data)
            for override in ZIP64_OVERRIDES:
                if not override.applies(record):
                    continue
                try:
                    field.values[override.attribute] = override.read(reader)
                except EOF:
                    malformed(field.header_id, F'no data left for {override.attribute}')
                    break
        field.end_offset = source.offset
        fields.append(field)

    return fields


class ZipDataDescriptor(Struct):
    """
    The data descriptor trails the payload of an entry whose sizes were not known when its header
    was written. Its signature is optional, and ZIP64 archives use 8-byte sizes.
    """
    Signature = ZipRecordType.DataDescriptor.signature

    def __init__(self, reader: StructReader, is64bit: bool = False):
        self.signed = bytes(reader.peek(4)) == self.Signature
        if self.signed:
            reader.skip(4)
        self.crc32 = reader.u32()
        size = reader.u64 if is64bit else reader.u32
        self.compressed_size = size()
        self.uncompressed_size = size()
        self.is64bit = is64bit


def find_data_descriptor(
    source: ByteSource,
    data_offset: int,
    window: int,
    zip64: bool = False,
) -> tuple[int, ZipDataDescriptor] | None:
    """
    Search forward from the start of a streamed payload for a signed data descriptor whose
    compressed size matches its distance from `data_offset`. The search reads the source in chunks
    of at most `window` bytes. Both descriptor layouts are tried; the one with 8-byte sizes is
    tried first if `zip64` is set. Returns the offset of the descriptor and the parsed descriptor,
    or `None`. The cursor of the source is restored.
    """
    cursor = source.offset
    signature = ZipDataDescriptor.Signature
    position = data_offset
    window = max(window, 0x100)
    layouts = ((False, 16), (True, 24))
    if zip64:
        layouts = layouts[::-1]
    try:
        while position < source.length:
            source.seek(position)
            chunk = source.fetch(min(window, source.length - position))
            if chunk.status != ReadStatus.OK:
                return None
            data = chunk.data
            hit = data.find(signature)
            while hit >= 0:
                distance = position + hit - data_offset
                source.seek(position + hit)
                for is64bit, size in layouts:
                    candidate = source.fetch(size)
                    source.seek(position + hit)
                    if not candidate.ok:
                        continue
                    descriptor = ZipDataDescriptor.Parse(candidate.data, is64bit)
                    if descriptor.compressed_size == distance:
                        return position + hit, descriptor
                hit = data.find(signature, hit + 1)
            if len(data) < window:
                return None
            position += len(data) - len(signature) + 1
        return None
    finally:
        source.seek(cursor)


class ZipRecord:
    """
    Base class of all decoded records. Every record knows its own `offset`, its `type` signature,
    and the offset `next_offset` at which the decoder should continue.
    """
    Type: ClassVar[ZipRecordType | None] = None

    def __init__(self, offset: int, type: int | None = None):
        self.offset = offset
        self.type = self.Type if type is None else type
        self.next_offset = offset + 1

    @property
    def type_name(self) -> str:
        return RECORD_NAMES.get(self.type, 'Unknown')

    def _annotations(self) -> dict:
        return {}

    def __repr__(self):
        return F'<{self.__class__.__name__} at {self.offset}, next at {self.next_offset}>'

    def __json__(self) -> JSONDict:
        info: JSONDict = {'type_name': self.type_name}
        for key, value in self.__dict__.items():
            if key.startswith('_'):
                continue
            if key == 'type':
                value = int(value)
            elif isinstance(value, list):
                value = list(value)
            info[key] = struct_to_json(value)
        for key, value in self._annotations().items():
            info[key] = value
        return info


class ZipSkippedRecord(ZipRecord):
    """
    A record with a known signature that is not decoded: digital signatures, archive extra data
    and data descriptors that were not claimed by a Local File record. Decoding resumes at the
    next byte.
    """
    def __init__(self, offset: int, type: ZipRecordType):
        super().__init__(offset, type)


class ZipFileRecord(ZipRecord):
    """
    Shared attributes of Local and Central File records.
    """
    HeaderSize: ClassVar[int] = 0

    version_need_num: int
    version_need_os: int
    flags: ZipFlags
    method: int
    last_mod_time: int
    last_mod_date: int
    crc32: int
    compressed_size: int
    uncompressed_size: int
    file_name_length: int
    extra_length: int
    file_name: bytes
    extra_fields: list[ZipExtraField]

    def _read_common(self, header: StructReader):
        self.version_need_num = header.u8()
        self.version_need_os = header.u8()
        self.flags = ZipFlags(header.u16())
        self.method = header.u16()
        self.last_mod_time = header.u16()
        self.last_mod_date = header.u16()
        self.crc32 = header.u32()
        self.compressed_size = header.u32()
        self.uncompressed_size = header.u32()
        self.file_name_length = header.u16()
        self.extra_length = header.u16()

    def _read_name_and_extras(self, source: ByteSource):
        self.file_name = source.read(self.file_name_length)
        self.extra_fields = []
        if self.extra_length > 0:
            self.extra_fields = read_extra_fields(source, self, self.extra_length)
            for field in self.extra_fields:
                for key, value in field.values.items():
                    setattr(self, key, value)

    @property
    def need_version(self) -> str:
        return format_version(self.version_need_num)

    @property
    def need_host_os(self) -> str:
        return host_os_name(self.version_need_os)

    @property
    def is_encrypted(self) -> bool:
        return self.flags.Encrypted

    @property
    def is_strong_encrypted(self) -> bool:
        return self.flags.StrongEncryption

    @property
    def is_utf8(self) -> bool:
        return self.flags.UseUTF8

    @property
    def is_dir(self) -> bool:
        return self.file_name.endswith(B'/')

    @property
    def is_compressed(self) -> bool:
        return self.method != ZipCompressionMethod.STORE

    @property
    def codec(self) -> str:
        return 'utf8' if self.is_utf8 else 'latin1'

    @property
    def name(self) -> str:
        """
        The file name decoded for display. The raw bytes in `file_name` remain authoritative.
        """
        return codecs.decode(self.file_name, self.codec, 'replace')

    @property
    def date(self) -> datetime | None:
        return dostime((self.last_mod_date << 16) | self.last_mod_time)

    @property
    def compression(self) -> str:
        try:
            return ZipCompressionMethod(self.method).name
        except ValueError:
            return F'UNKNOWN_{self.method:#x}'

    def matches(self, name: str | bytes) -> bool:
        """
        Test whether this record has exactly the given name. Strings are encoded with the codec
        that the record flags indicate before the bytes are compared.
        """
        if isinstance(name, str):
            try:
                name = codecs.encode(name, self.codec)
            except UnicodeEncodeError:
                return False
        return self.file_name == bytes(name)

    def _annotations(self) -> dict:
        info = dict(
            need_version=self.need_version,
            need_host_os=self.need_host_os,
            is_encrypted=self.is_encrypted,
            is_dir=self.is_dir,
            is_utf8=self.is_utf8,
        )
        return info


class ZipLocalFile(ZipFileRecord):
    """
    The header that immediately precedes the payload of an entry. If the header indicates that a
    data descriptor follows the payload, the descriptor values replace the header values.
    """
    Type = ZipRecordType.LocalFile
    HeaderSize = 26

    def __init__(self, source: ByteSource, offset: int, descriptor_search: int = 0):
        super().__init__(offset)
        self._read_common(source.reader(self.HeaderSize))
        self._read_name_and_extras(source)
        self.data_offset = offset + LOCAL_FILE_HEADER_SIZE + self.file_name_length + self.extra_length
        self.next_offset = self.data_offset + self.compressed_size
        self.has_descriptor = False

        if not self.flags.DataDescriptor:
            return

        zip64 = any(field.header_id == ZipExtraFieldID.Zip64 for field in self.extra_fields)
        found = None
        if descriptor_search > 0 and self.compressed_size == 0:
            found = find_data_descriptor(source, self.data_offset, descriptor_search, zip64)
        if found is not None:
            position, descriptor = found
        else:
            position = self.next_offset
            source.seek(position)
            marker = source.fetch(4)
            signed = marker.ok and marker.data == ZipDataDescriptor.Signature
            source.seek(position)
            size = (24 if signed else 20) if zip64 else (16 if signed else 12)
            descriptor = ZipDataDescriptor.Parse(source.read(size), zip64)
            if not signed:
                log.warning(F'reading unsigned data descriptor for Local File record at offset {offset}')

        self.has_descriptor = True
        self.crc32 = descriptor.crc32
        self.compressed_size = descriptor.compressed_size
        self.uncompressed_size = descriptor.uncompressed_size
        self.next_offset = position + len(descriptor)


class ZipCentralFile(ZipFileRecord):
    """
    An entry of the Central Directory.
    """
    Type = ZipRecordType.CentralFile
    HeaderSize = 42

    def __init__(self, source: ByteSource, offset: int):
        super().__init__(offset)
        header = source.reader(self.HeaderSize)
        self.version_made_num = header.u8()
        self.version_made_os = header.u8()
        self._read_common(header)
        self.comment_length = header.u16()
        self.disk_start = header.u16()
        self.attr_int = header.u16()
        self.attr_ext = header.u32()
        self.rel_offset = header.u32()
        self._read_name_and_extras(source)
        self.comment = source.read(self.comment_length)
        self.next_offset = source.offset

    @property
    def made_version(self) -> str:
        return format_version(self.version_made_num)

    @property
    def made_host_os(self) -> str:
        return host_os_name(self.version_made_os)

    def _annotations(self) -> dict:
        info = super()._annotations()
        info.update(made_version=self.made_version, made_host_os=self.made_host_os)
        return info


class ZipEndCentralDirectory(ZipRecord):
    Type = ZipRecordType.EndCentralDirectory
    HeaderSize = 18

    def __init__(self, source: ByteSource, offset: int):
        super().__init__(offset)
        header = source.reader(self.HeaderSize)
        self.disk_num = header.u16()
        self.start_disk = header.u16()
        self.entries_disk = header.u16()
        self.entries_total = header.u16()
        self.central_size = header.u32()
        self.central_offset = header.u32()
        self.comment_length = header.u16()
        self.comment = source.read(self.comment_length)
        self.next_offset = source.offset


class ZipEndCentralDirectory64(ZipRecord):
    """
    The ZIP64 End of Central Directory record. The decoder reads 50 bytes after the signature and
    continues at the record offset plus the value of the leading 64-bit size field. For a record
    without extensible data, that position lies inside the record, and the remaining bytes are
    skipped as unknown data. A size of zero makes the record point at itself.
    """
    Type = ZipRecordType.Zip64EndCentralDirectory
    HeaderSize = 50

    def __init__(self, source: ByteSource, offset: int):
        super().__init__(offset)
        header = source.reader(self.HeaderSize)
        self.record_size = int64(header.u32(), header.u32())
        self.version_made_num = header.u8()
        self.version_made_os = header.u8()
        self.version_need_num = header.u8()
        self.version_need_os = header.u8()
        self.disk_num = header.u32()
        self.start_disk = header.u32()
        self.entries_disk = int64(header.u32(), header.u32())
        self.entries_total = int64(header.u32(), header.u32())
        self.central_size = int64(header.u32(), header.u32())
        self.central_offset: int | None = None
        tail = source.fetch(2)
        if tail.ok:
            self.central_offset = int.from_bytes(bytes(header.read()) + tail.data, 'little')
        self.next_offset = offset + self.record_size

    def _annotations(self) -> dict:
        return dict(
            made_version=format_version(self.version_made_num),
            made_host_os=host_os_name(self.version_made_os),
            need_version=format_version(self.version_need_num),
            need_host_os=host_os_name(self.version_need_os),
        )


class ZipEndCentralDirectoryLocator64(ZipRecord):
    Type = ZipRecordType.Zip64EndCentralDirectoryLocator
    HeaderSize = 16

    def __init__(self, source: ByteSource, offset: int):
        super().__init__(offset)
        header = source.reader(self.HeaderSize)
        self.start_disk = header.u32()
        self.eocd64_offset = int64(header.u32(), header.u32())
        self.total_disks = header.u32()
        self.next_offset = source.offset


class ZipRecordDecoder:
    """
    Decodes the record at the current position of a byte source. The decoder does not decide on
    the fate of an analysis: Read failures propagate as `zipinfo.lib.source.ShortRead` or
    `zipinfo.lib.source.SourceError` to the caller.
    """
    Handlers = MappingProxyType({
        ZipRecordType.CentralFile: ZipCentralFile,
        ZipRecordType.EndCentralDirectory: ZipEndCentralDirectory,
        ZipRecordType.Zip64EndCentralDirectory: ZipEndCentralDirectory64,
        ZipRecordType.Zip64EndCentralDirectoryLocator: ZipEndCentralDirectoryLocator64,
    })

    def __init__(self, source: ByteSource, descriptor_search: int = 0):
        self.source = source
        self.descriptor_search = descriptor_search

    def next_record(self) -> ZipRecord | None:
        """
        Read a signature and decode the record it introduces. For an unknown signature, the cursor
        is moved to the byte after the current offset and the return value is `None`.
        """
        source = self.source
        offset = source.offset
        signature = source.reader(4).u32()
        try:
            kind = ZipRecordType(signature)
        except ValueError:
            source.seek(offset + 1)
            return None
        if kind == ZipRecordType.LocalFile:
            record = ZipLocalFile(source, offset, self.descriptor_search)
        elif handler := self.Handlers.get(kind):
            record = handler(source, offset)
        else:
            record = ZipSkippedRecord(offset, kind)
        log.debug(F'decoded {record.type_name} record at offset {offset}')
        return record
