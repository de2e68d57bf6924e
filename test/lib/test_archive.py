import os
import struct
import tempfile
import zipfile
import zlib

from datetime import datetime

from zipinfo import ZipInfo
from zipinfo.lib.source import BufferSource
from zipinfo.lib.zip import ZipEntryNotFound, ZipFlags, ZipRecordDecoder, ZipRecordType

from .. import TestBase, DATE_TIME


class _StuckDecoder(ZipRecordDecoder):
    def next_record(self):
        record = super().next_record()
        if record is not None and record.type == ZipRecordType.CentralFile:
            record.next_offset = record.offset
        return record


class _StuckZipInfo(ZipInfo):
    Decoder = _StuckDecoder


class _FlakySource(BufferSource):
    def __init__(self, data, budget):
        super().__init__(data, 'flaky')
        self.budget = budget

    def _pread(self, position, size):
        self.budget -= 1
        if self.budget < 0:
            raise OSError('the medium went away')
        return super()._pread(position, size)


class TestZipInfo(TestBase):

    def setUp(self):
        super().setUp()
        self.files = {
            'readme.txt': B'The binary refinery refines the finest binaries.',
            'folder/': B'',
            'folder/data.bin': self.generate_random_buffer(2000),
        }

    def test_stored_archive(self):
        data = self.build_archive(self.files)
        info = ZipInfo()
        self.assertTrue(info.set_data(data))
        self.assertIsNone(info.error)
        self.assertEqual(info.file_count, 3)
        self.assertFalse(info.is_encrypted)
        self.assertListEqual([r.type_name for r in info.records], [
            'Local File', 'Local File', 'Local File',
            'Central File', 'Central File', 'Central File',
            'End of Central Directory',
        ])
        listing = info.get_file_list()
        self.assertListEqual([entry['name'] for entry in listing], list(self.files))
        for entry in listing:
            name = entry['name']
            self.assertEqual(entry['date'], datetime(*DATE_TIME))
            self.assertFalse(entry['pass'])
            self.assertFalse(entry['compressed'])
            if name.endswith('/'):
                self.assertTrue(entry['is_dir'])
                self.assertNotIn('range', entry)
                continue
            start, end = entry['range']
            self.assertLessEqual(start, end)
            self.assertLess(end, info.length)
            self.assertEqual(entry['size'], len(self.files[name]))
            self.assertEqual(data[start:end + 1], self.files[name])

    def test_stored_data_matches_checksum(self):
        info = ZipInfo()
        info.set_data(self.build_archive(self.files))
        for record in info.records:
            if record.type != ZipRecordType.LocalFile or record.is_dir:
                continue
            payload = info.get_file_data(record.name)
            self.assertEqual(len(payload), record.uncompressed_size)
            self.assertEqual(zlib.crc32(payload), record.crc32)

    def test_compressed_archive(self):
        data = self.build_archive(self.files, zipfile.ZIP_DEFLATED)
        info = ZipInfo()
        self.assertTrue(info.set_data(data))
        entries = {entry['name']: entry for entry in info.get_file_list(skip_dirs=True)}
        self.assertTrue(entries['readme.txt']['compressed'])
        payload = info.get_file_data('folder/data.bin')
        self.assertEqual(zlib.decompress(payload, -15), self.files['folder/data.bin'])
        start, end = info.resolve_range('readme.txt')
        record = next(r for r in info.records if r.type == ZipRecordType.LocalFile)
        self.assertEqual(end - start + 1, record.compressed_size)

    def test_directories(self):
        info = ZipInfo()
        info.set_data(self.build_archive(self.files))
        names = [entry['name'] for entry in info.get_file_list(skip_dirs=True)]
        self.assertNotIn('folder/', names)
        self.assertEqual(len(names), 2)
        self.assertIsNone(info.get_file_data('folder/'))
        with self.assertRaises(ZipEntryNotFound):
            info.resolve_range('folder/')

    def test_central_directory_listing(self):
        info = ZipInfo()
        info.set_data(self.build_archive(self.files))
        listing = info.get_file_list(central=True)
        self.assertListEqual([entry['name'] for entry in listing], list(self.files))
        for entry in listing:
            self.assertNotIn('range', entry)
            self.assertEqual(entry['size'], len(self.files[entry['name']]))

    def test_empty_archive(self):
        info = ZipInfo()
        self.assertTrue(info.set_data(self.build_archive({})))
        self.assertEqual(info.file_count, 0)
        self.assertListEqual(info.get_file_list(), [])
        self.assertTrue(info.set_data(self.pack_end_central_directory(4, comment=B'nothing here')))
        self.assertEqual(info.file_count, 4)
        self.assertListEqual(info.get_file_list(), [])

    def test_not_a_zip_file(self):
        info = ZipInfo()
        data = self.generate_random_buffer(1000).replace(B'PK', B'pk')
        self.assertFalse(info.set_data(data))
        self.assertEqual(info.error, 'Could not find any records, not a valid ZIP file')
        self.assertIsNone(info.get_file_list())
        self.assertIsNone(info.get_records())
        self.assertIsNone(info.get_file_data('readme.txt'))

    def test_empty_input(self):
        info = ZipInfo()
        self.assertFalse(info.set_data(B''))
        self.assertIsNotNone(info.error)

    def test_marker_beyond_scan_window(self):
        archive = self.build_archive(self.files)
        info = ZipInfo(max_read_bytes=100)
        self.assertFalse(info.set_data(bytes(200) + archive))
        self.assertIsNotNone(info.error)
        info = ZipInfo(max_read_bytes=300)
        self.assertTrue(info.set_data(bytes(200) + archive))

    def test_leading_data(self):
        prefix = B'MZ' + self.generate_random_buffer(500).replace(B'PK', B'pk')
        archive = self.build_archive(self.files)
        info = ZipInfo()
        self.assertTrue(info.set_data(prefix + archive))
        self.assertEqual(info.records[0].offset, len(prefix))
        self.assertEqual(info.get_file_data('readme.txt'), self.files['readme.txt'])

    def test_window(self):
        head = self.generate_random_buffer(700).replace(B'PK', B'pk')
        tail = self.generate_random_buffer(300)
        archive = self.build_archive(self.files)
        blob = head + archive + tail
        info = ZipInfo()
        self.assertTrue(info.set_data(blob, (len(head), len(head) + len(archive) - 1)))
        self.assertEqual(info.records[0].offset, 0)
        summary = info.get_summary()
        self.assertEqual(summary['file_size'], len(blob))
        self.assertEqual(summary['data_size'], len(archive))
        self.assertEqual(summary['use_range'], (len(head), len(head) + len(archive) - 1))
        start, end = info.resolve_range('folder/data.bin')
        self.assertEqual(blob[start:end + 1], self.files['folder/data.bin'])
        self.assertEqual(info.get_file_data('folder/data.bin'), self.files['folder/data.bin'])

    def test_truncated_directory_ends_cleanly(self):
        archive = self.build_archive(self.files)
        info = ZipInfo()
        self.assertTrue(info.set_data(archive[:-10]))
        self.assertIsNone(info.error)
        self.assertEqual(len(info.records), 6)
        self.assertEqual(info.file_count, 0)

    def test_truncated_payload_is_clamped(self):
        archive = self.build_archive(self.files)
        info = ZipInfo()
        self.assertTrue(info.set_data(archive[:60]))
        self.assertEqual(len(info.records), 1)
        start, end = info.resolve_range('readme.txt')
        self.assertEqual(end, info.end)
        self.assertEqual(info.get_file_data('readme.txt'), self.files['readme.txt'][:60 - start])

    def test_stuck_parser(self):
        files = {name: data for name, data in self.files.items() if not name.endswith('/')}
        info = _StuckZipInfo()
        self.assertFalse(info.set_data(self.build_archive(files)))
        self.assertEqual(info.error, 'Parsing seems to be stuck')
        self.assertEqual([r.type for r in info.records], [
            ZipRecordType.LocalFile, ZipRecordType.LocalFile, ZipRecordType.CentralFile])
        self.assertTrue(info.source.closed)
        self.assertEqual(len(info.get_file_list()), 2)
        self.assertIsNone(info.get_file_data('readme.txt'))
        self.assertFalse(info.analyze())

    def test_zip64_record_without_size_is_stuck(self):
        local = self.pack_local_file(B'readme.txt', B'hello')
        data = local + self.pack_zip64_end_central_directory(1, record_size=0) + self.pack_end_central_directory(1)
        info = ZipInfo()
        self.assertFalse(info.set_data(data))
        self.assertEqual(info.error, 'Parsing seems to be stuck')
        self.assertEqual([r.type for r in info.records], [
            ZipRecordType.LocalFile, ZipRecordType.Zip64EndCentralDirectory])
        self.assertEqual(info.records[1].next_offset, len(local))
        self.assertTrue(info.source.closed)
        self.assertEqual(len(info.get_file_list()), 1)

    def test_source_failure_is_fatal(self):
        info = ZipInfo(_FlakySource(self.build_archive(self.files), 3))
        self.assertFalse(info.analyze())
        self.assertIn('the medium went away', info.error)
        self.assertTrue(info.source.closed)

    def test_closed_source(self):
        source = BufferSource(self.build_archive(self.files))
        source.close()
        info = ZipInfo(source)
        self.assertFalse(info.analyze())
        self.assertIsNotNone(info.error)

    def test_no_source(self):
        info = ZipInfo()
        self.assertFalse(info.analyze())
        self.assertIsNone(info.get_file_data('readme.txt'))
        self.assertEqual(info.get_summary()['zip_file'], None)

    def test_analyze_runs_once_and_reset(self):
        info = ZipInfo()
        self.assertTrue(info.set_data(self.build_archive(self.files)))
        count = len(info.records)
        self.assertTrue(info.analyze())
        self.assertEqual(len(info.records), count)
        info.reset()
        self.assertEqual(len(info.records), 0)
        self.assertIsNone(info.get_file_list())
        self.assertEqual(info.file_count, 0)
        self.assertIsNone(info.error)
        self.assertTrue(info.analyze())
        self.assertEqual(len(info.records), count)

    def test_rebinding_discards_old_records(self):
        info = ZipInfo()
        info.set_data(self.build_archive(self.files))
        info.set_data(self.build_archive({'other.txt': B'other'}))
        self.assertListEqual([e['name'] for e in info.get_file_list()], ['other.txt'])
        self.assertIsNone(info.get_file_data('readme.txt'))

    def test_zip64_central_directory(self):
        payload = B'abc'
        extra = self.pack_extra_field(0x0001, struct.pack('<QQ', 5 << 30, len(payload)))
        local = self.pack_local_file(B'big.bin', payload)
        central = self.pack_central_file(B'big.bin', csize=0xFFFFFFFF, usize=0xFFFFFFFF, extra=extra)
        z64 = self.pack_zip64_end_central_directory(1, len(central), len(local))
        data = local + central + z64 + self.pack_zip64_locator(len(local) + len(central))
        data += self.pack_end_central_directory(0xFFFF, 0xFFFF, 0xFFFFFFFF, 0xFFFFFFFF)
        info = ZipInfo()
        self.assertTrue(info.set_data(data))
        self.assertEqual(info.file_count, 1)
        self.assertListEqual([r.type for r in info.records], [
            ZipRecordType.LocalFile,
            ZipRecordType.CentralFile,
            ZipRecordType.Zip64EndCentralDirectory,
            ZipRecordType.Zip64EndCentralDirectoryLocator,
            ZipRecordType.EndCentralDirectory,
        ])
        central_entry, = info.get_file_list(central=True)
        self.assertEqual(central_entry['size'], 5 << 30)
        self.assertEqual(info.records[3].eocd64_offset, len(local) + len(central))

    def test_encryption_flags(self):
        local = self.pack_local_file(B'secret.txt', B'\x13\x37' * 12, flags=ZipFlags.Encrypted)
        info = ZipInfo()
        self.assertTrue(info.set_data(local + self.pack_end_central_directory(1)))
        entry, = info.get_file_list()
        self.assertTrue(entry['pass'])
        self.assertFalse(info.is_encrypted)
        central = self.pack_central_file(B'secret.txt', flags=ZipFlags.EncryptedCD)
        self.assertTrue(info.set_data(local + central + self.pack_end_central_directory(1)))
        self.assertTrue(info.is_encrypted)

    def test_utf8_names(self):
        files = {'gr\xfc\xdfe.txt': B'Gr\xfc\xdfe', 'plain.txt': B'plain'}
        info = ZipInfo()
        self.assertTrue(info.set_data(self.build_archive(files)))
        first = info.records[0]
        self.assertTrue(first.is_utf8)
        self.assertEqual(info.get_file_list()[0]['name'], 'gr\xfc\xdfe.txt')
        self.assertEqual(info.get_file_data('gr\xfc\xdfe.txt'), B'Gr\xfc\xdfe')
        self.assertEqual(info.get_file_data('gr\xfc\xdfe.txt'.encode('utf8')), B'Gr\xfc\xdfe')

    def test_first_match_wins(self):
        data = self.pack_local_file(B'dup.txt', B'first') + self.pack_local_file(B'dup.txt', B'second')
        info = ZipInfo()
        self.assertTrue(info.set_data(data + self.pack_end_central_directory(2)))
        self.assertEqual(info.get_file_data('dup.txt'), B'first')

    def test_garbage_between_records(self):
        data = self.pack_local_file(B'a.txt', B'AAAA') + B'garbage!' + self.pack_local_file(B'b.txt', B'BBBB')
        info = ZipInfo()
        self.assertTrue(info.set_data(data + self.pack_end_central_directory(2)))
        self.assertListEqual([e['name'] for e in info.get_file_list()], ['a.txt', 'b.txt'])
        self.assertEqual(info.get_file_data('b.txt'), B'BBBB')

    def test_streamed_archive(self):
        files = {'first.txt': B'streamed without known sizes', 'second.bin': self.generate_random_buffer(3000)}
        data = self.build_archive(files, streamed=True)
        info = ZipInfo()
        self.assertTrue(info.set_data(data))
        locals_ = [r for r in info.records if r.type == ZipRecordType.LocalFile]
        self.assertEqual(len(locals_), 2)
        for record in locals_:
            self.assertTrue(record.has_descriptor)
            self.assertEqual(record.uncompressed_size, len(files[record.name]))
        self.assertEqual(info.file_count, 2)
        self.assertEqual(info.get_file_data('second.bin'), files['second.bin'])

    def test_listings_are_stable(self):
        info = ZipInfo()
        self.assertTrue(info.set_data(self.build_archive(self.files)))
        self.assertEqual(info.get_file_list(), info.get_file_list())
        self.assertEqual(info.get_file_list(central=True), info.get_file_list(central=True))
        self.assertEqual(info.get_records(), info.get_records())
        self.assertEqual(info.get_summary(full=True), info.get_summary(full=True))

    def test_filename_truncation_keeps_characters(self):
        name = 'gr\xfc\xdf\xfc\xdf.txt'
        info = ZipInfo(max_filename_length=3)
        info.set_data(self.build_archive({name: B'umlauts'}))
        entry, = info.get_file_list()
        self.assertEqual(entry['name'], 'gr\xfc')
        self.assertEqual(info.get_file_data(name), B'umlauts')

    def test_filename_truncation(self):
        info = ZipInfo(max_filename_length=4)
        info.set_data(self.build_archive(self.files))
        self.assertEqual(info.get_file_list()[0]['name'], 'read')
        self.assertEqual(info.get_records()[0]['file_name'], B'read')
        self.assertEqual(info.get_file_data('readme.txt'), self.files['readme.txt'])

    def test_records_dump(self):
        info = ZipInfo()
        info.set_data(self.build_archive(self.files))
        dump = info.get_records()
        self.assertEqual(len(dump), len(info.records))
        self.assertEqual(dump[0]['type_name'], 'Local File')
        self.assertEqual(dump[0]['file_name'], B'readme.txt')
        self.assertEqual(dump[-1]['type_name'], 'End of Central Directory')
        self.assertEqual(dump[-1]['entries_disk'], 3)
        self.assertIn('made_version', dump[3])

    def test_summary(self):
        data = self.build_archive(self.files)
        info = ZipInfo()
        info.set_data(data)
        summary = info.get_summary(full=True, skip_dirs=True)
        self.assertEqual(summary['file_count'], 3)
        self.assertEqual(summary['file_size'], len(data))
        self.assertEqual(summary['use_range'], (0, len(data) - 1))
        self.assertEqual(len(summary['file_list']), 2)
        self.assertNotIn('file_list', info.get_summary())

    def test_settings_defaults(self):
        info = ZipInfo()
        self.assertEqual(info.max_read_bytes, 0x100000)
        self.assertEqual(info.max_filename_length, 500)

    def test_files_on_disk(self):
        data = self.build_archive(self.files)
        with tempfile.TemporaryDirectory() as root:
            path = os.path.join(root, 'test.zip')
            with open(path, 'wb') as stream:
                stream.write(data)
            with ZipInfo() as info:
                self.assertTrue(info.open(path))
                self.assertEqual(info.get_summary()['zip_file'], os.path.realpath(path))
                target = os.path.join(root, 'data.bin')
                self.assertEqual(info.save_file_data('folder/data.bin', target), 2000)
                with open(target, 'rb') as stream:
                    self.assertEqual(stream.read(), self.files['folder/data.bin'])
                self.assertIsNone(info.save_file_data('missing.bin', target))
            self.assertTrue(info.source.closed)

    def test_open_missing_file(self):
        info = ZipInfo()
        with tempfile.TemporaryDirectory() as root:
            self.assertFalse(info.open(os.path.join(root, 'missing.zip')))
        self.assertTrue(info.error.startswith('File does not exist'))
        self.assertIsNone(info.get_file_list())
