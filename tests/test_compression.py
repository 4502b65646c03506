#!/usr/bin/env python
"""
test_compression.py - Compressed patch containers
=================================================
"""

import os
import shutil
import tempfile
import unittest

import zstandard

from beat_patcher import (
    CompressionRegistry,
    CompressionType,
    PatchIOError,
    apply_patch_bytes,
    open_patch,
)

from bps_builder import build_patch, source_read, target_copy, target_read


class TestCompressionRegistry(unittest.TestCase):

    def test_detect(self):
        payload = b'BPS1' + b'\x00' * 64
        self.assertEqual(CompressionRegistry.detect(payload), CompressionType.NONE)
        for comp_type in (CompressionType.ZSTD, CompressionType.LZ4):
            with self.subTest(comp_type=comp_type):
                wrapped = CompressionRegistry.compress(payload, comp_type)
                self.assertEqual(CompressionRegistry.detect(wrapped), comp_type)

    def test_detect_short_input(self):
        self.assertEqual(CompressionRegistry.detect(b''), CompressionType.NONE)
        self.assertEqual(CompressionRegistry.detect(b'\x28\xb5'), CompressionType.NONE)

    def test_decompress(self):
        payload = b'BPS1' + bytes(range(256)) * 8
        for comp_type in CompressionType:
            with self.subTest(comp_type=comp_type):
                wrapped = CompressionRegistry.compress(payload, comp_type)
                self.assertEqual(CompressionRegistry.decompress(wrapped, comp_type), payload)


class TestOpenPatch(unittest.TestCase):

    SOURCE = b'A stitch in time saves nine' * 20
    EXPECTED = SOURCE[:100] + b'!' * 50

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        commands = source_read(100) + target_read(b'!') + target_copy(49, 100)
        self.patch = build_patch(self.SOURCE, self.EXPECTED, commands)

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def _write(self, name, data):
        path = os.path.join(self.test_dir, name)
        with open(path, 'wb') as f:
            f.write(data)
        return path

    def test_plain_patch(self):
        path = self._write('plain.bps', self.patch)
        with open_patch(path) as patch:
            self.assertEqual(patch.tell(), 0)
            self.assertEqual(patch.read(), self.patch)

    def test_compressed_patches_apply(self):
        for comp_type in (CompressionType.ZSTD, CompressionType.LZ4):
            with self.subTest(comp_type=comp_type):
                path = self._write(f'hack.bps.{comp_type.value}',
                                   CompressionRegistry.compress(self.patch, comp_type))
                with open_patch(path) as patch:
                    data = patch.read()
                self.assertEqual(data, self.patch)
                self.assertEqual(apply_patch_bytes(self.SOURCE, data, verify=True), self.EXPECTED)

    def test_corrupt_container(self):
        wrapped = CompressionRegistry.compress(self.patch, CompressionType.ZSTD)
        path = self._write('broken.bps.zst', wrapped[:4] + b'\xff' * 16)
        with self.assertRaises(PatchIOError):
            open_patch(path)

    def test_truncated_zstd_container(self):
        wrapped = CompressionRegistry.compress(self.patch, CompressionType.ZSTD)
        with self.assertRaises((ValueError, zstandard.ZstdError)):
            CompressionRegistry.decompress(wrapped[:-6], CompressionType.ZSTD)
        path = self._write('cut.bps.zst', wrapped[:-6])
        with self.assertRaises(PatchIOError):
            open_patch(path)

    def test_missing_file(self):
        with self.assertRaises(PatchIOError):
            open_patch(os.path.join(self.test_dir, 'missing.bps'))


if __name__ == "__main__":
    unittest.main()
