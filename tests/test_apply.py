#!/usr/bin/env python
"""
test_apply.py - Whole-patch application and optional strict verification
========================================================================
"""

import io
import os
import random
import shutil
import tempfile
import unittest

from beat_patcher import (
    Config,
    DataIntegrityError,
    FormatError,
    apply_patch,
    apply_patch_bytes,
    verify_target_size,
)

from bps_builder import build_patch, source_copy, source_read, target_copy, target_read


def random_patch(rng: random.Random, source: bytes, hunks: int):
    """
    Generate a valid command stream and the target it produces.

    The expected target is computed one byte at a time, independently of
    the engine, so overlapping TargetCopy runs are modelled literally.
    """
    target = bytearray()
    commands = bytearray()
    source_cursor = 0
    target_cursor = 0
    for _ in range(hunks):
        kind = rng.randrange(4)
        length = rng.randint(1, 40)
        if kind == 0 and len(target) + length <= len(source):
            commands += source_read(length)
            target += source[len(target):len(target) + length]
        elif kind == 2 and length <= len(source):
            position = rng.randint(0, len(source) - length)
            commands += source_copy(length, position - source_cursor)
            target += source[position:position + length]
            source_cursor = position + length
        elif kind == 3 and target:
            position = rng.randrange(len(target))
            commands += target_copy(length, position - target_cursor)
            for i in range(length):
                target.append(target[position + i])
            target_cursor = position + length
        else:
            data = bytes(rng.randrange(256) for _ in range(length))
            commands += target_read(data)
            target += data
    return bytes(commands), bytes(target)


class TestApplyPatchBytes(unittest.TestCase):

    def tearDown(self):
        Config.reset_defaults()

    def test_all_commands_with_verification(self):
        source = b'The quick brown fox jumps over the lazy dog'
        commands = (
            source_read(4)
            + target_read(b'slow')
            + source_copy(6, 9)
            + target_copy(3, 0)
        )
        expected = b'The slow brown The'
        patch = build_patch(source, expected, commands)
        self.assertEqual(apply_patch_bytes(source, patch, verify=True), expected)

    def test_metadata_does_not_affect_output(self):
        source = b'0123456789'
        commands = source_read(10)
        patch = build_patch(source, source, commands, metadata=b'{"title": "identity"}')
        self.assertEqual(apply_patch_bytes(source, patch, verify=True), source)

    def test_bad_marker(self):
        patch = b'IPS1' + build_patch(b'', b'', b'')[4:]
        with self.assertRaises(FormatError):
            apply_patch_bytes(b'', patch)

    def test_randomized_against_reference_model(self):
        rng = random.Random(1234)
        for round_ in range(25):
            source = bytes(rng.randrange(256) for _ in range(rng.randint(64, 512)))
            commands, expected = random_patch(rng, source, hunks=rng.randint(1, 60))
            patch = build_patch(source, expected, commands)
            with self.subTest(round=round_):
                self.assertEqual(apply_patch_bytes(source, patch, verify=True), expected)

    def test_randomized_with_tiny_chunks(self):
        Config.CHUNK_SIZE = 5
        rng = random.Random(99)
        source = bytes(rng.randrange(256) for _ in range(300))
        commands, expected = random_patch(rng, source, hunks=80)
        patch = build_patch(source, expected, commands)
        self.assertEqual(apply_patch_bytes(source, patch, verify=True), expected)


class TestStrictVerification(unittest.TestCase):

    SOURCE = b'abcdefghijklmnop'
    EXPECTED = b'abcdXYZ'

    def _patch(self, **kwargs):
        commands = source_read(4) + target_read(b'XYZ')
        return build_patch(self.SOURCE, self.EXPECTED, commands, **kwargs)

    def tearDown(self):
        Config.reset_defaults()

    def test_default_trusts_patch(self):
        corrupted = bytearray(self._patch())
        corrupted[-1] ^= 0xFF
        self.assertEqual(apply_patch_bytes(self.SOURCE, bytes(corrupted)), self.EXPECTED)

    def test_patch_checksum_mismatch(self):
        corrupted = bytearray(self._patch())
        corrupted[-1] ^= 0xFF
        with self.assertRaises(DataIntegrityError) as cm:
            apply_patch_bytes(self.SOURCE, bytes(corrupted), verify=True)
        self.assertIn('Patch', str(cm.exception))

    def test_source_checksum_mismatch(self):
        other_source = self.SOURCE[:10] + b'?' + self.SOURCE[11:]
        with self.assertRaises(DataIntegrityError) as cm:
            apply_patch_bytes(other_source, self._patch(), verify=True)
        self.assertIn('Source', str(cm.exception))

    def test_target_checksum_mismatch(self):
        other_source = b'ABCD' + self.SOURCE[4:]
        patch = build_patch(other_source, self.EXPECTED, source_read(4) + target_read(b'XYZ'))
        with self.assertRaises(DataIntegrityError) as cm:
            apply_patch_bytes(other_source, patch, verify=True)
        self.assertIn('Target', str(cm.exception))

    def test_config_default_enables_verification(self):
        Config.VERIFY_CHECKSUMS = True
        corrupted = bytearray(self._patch())
        corrupted[-1] ^= 0xFF
        with self.assertRaises(DataIntegrityError):
            apply_patch_bytes(self.SOURCE, bytes(corrupted))

    def test_short_output(self):
        patch = self._patch(target_size=10)
        self.assertEqual(apply_patch_bytes(self.SOURCE, patch), self.EXPECTED)
        with self.assertRaises(DataIntegrityError):
            apply_patch_bytes(self.SOURCE, patch, verify=True)

    def test_verify_target_size(self):
        session = apply_patch(
            io.BytesIO(self.SOURCE), io.BytesIO(), io.BytesIO(self._patch(target_size=10))
        )
        self.assertEqual(session.output_cursor, 7)
        with self.assertRaises(DataIntegrityError):
            verify_target_size(session)


class TestApplyFiles(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def _write(self, name, data):
        path = os.path.join(self.test_dir, name)
        with open(path, 'wb') as f:
            f.write(data)
        return path

    def test_file_streams(self):
        source = bytes(range(256)) * 16
        expected = source[:1024] + b'\xff' * 2048 + source[512:1024]
        commands = source_read(1024) + target_read(b'\xff') + target_copy(2047, 1024) + source_copy(512, 512)
        source_path = self._write('rom.sfc', source)
        patch_path = self._write('hack.bps', build_patch(source, expected, commands))
        output_path = os.path.join(self.test_dir, 'patched.sfc')

        with open(patch_path, 'rb') as patch, open(source_path, 'rb') as src, \
                open(output_path, 'w+b') as tgt:
            session = apply_patch(src, tgt, patch, verify=True)

        with open(output_path, 'rb') as f:
            self.assertEqual(f.read(), expected)
        self.assertEqual(session.stats.hunks, 4)
        self.assertEqual(session.output_cursor, len(expected))


if __name__ == "__main__":
    unittest.main()
