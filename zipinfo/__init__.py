R"""
The zipinfo package reads the structure of ZIP archives without extracting them. It locates and
decodes the local file headers, the central directory, the end of central directory records and
their ZIP64 variants, and reports which files an archive contains, where their stored bytes are,
and whether they are compressed or encrypted. The payload of stored entries can be extracted by
byte range.

The main entry point is `zipinfo.lib.archive.ZipInfo`:

    from zipinfo import ZipInfo

    with ZipInfo() as info:
        if not info.open('archive.zip'):
            raise SystemExit(info.error)
        for entry in info.get_file_list(skip_dirs=True):
            print(entry['name'], entry['size'], entry.get('range'))

The following library modules are relevant for more advanced use:

1. `zipinfo.lib.source`: byte sources, including restricting the analysis to a window of a file
2. `zipinfo.lib.zip`: record types, format constants, and the record decoder
3. `zipinfo.lib.environment`: configuration through environment variables
"""
from __future__ import annotations

__version__ = '0.3.1'
__distribution__ = 'zipinfo'

from zipinfo.lib.archive import ZipInfo
from zipinfo.lib.source import BufferSource, ByteSource, FileSource, ShortRead, SourceError
from zipinfo.lib.zip import MalformedExtraField, StuckParserError, ZipEntryNotFound, ZipFormatError

__all__ = [
    'ZipInfo',
    'ByteSource',
    'BufferSource',
    'FileSource',
    'ShortRead',
    'SourceError',
    'ZipFormatError',
    'StuckParserError',
    'MalformedExtraField',
    'ZipEntryNotFound',
]
