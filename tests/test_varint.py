#!/usr/bin/env python
"""
test_varint.py - Bijective varint and signed delta codec
=========================================================
"""

import io
import itertools
import unittest

from beat_patcher import (
    PatchIOError,
    decode_signed,
    decode_varint,
    encode_signed,
    encode_varint,
)


class TestVarintVectors(unittest.TestCase):
    """Known encodings at the byte-length boundaries"""

    VECTORS = [
        (0, b'\x80'),
        (1, b'\x81'),
        (127, b'\xff'),
        (128, b'\x00\x80'),
        (129, b'\x01\x80'),
        (16511, b'\x7f\xff'),
        (16512, b'\x00\x00\x80'),
    ]

    def test_encode(self):
        for value, encoded in self.VECTORS:
            with self.subTest(value=value):
                self.assertEqual(encode_varint(value), encoded)

    def test_decode(self):
        for value, encoded in self.VECTORS:
            with self.subTest(value=value):
                self.assertEqual(decode_varint(io.BytesIO(encoded)), value)

    def test_decode_stops_after_terminal_byte(self):
        stream = io.BytesIO(b'\x00\x80\xff')
        self.assertEqual(decode_varint(stream), 128)
        self.assertEqual(stream.tell(), 2)
        self.assertEqual(decode_varint(stream), 127)


class TestVarintRoundTrip(unittest.TestCase):

    def test_small_range(self):
        for value in range(70000):
            self.assertEqual(decode_varint(io.BytesIO(encode_varint(value))), value)

    def test_large_values(self):
        for value in (2 ** 21, 2 ** 32 - 1, 2 ** 32, 2 ** 63, 2 ** 64 - 1):
            with self.subTest(value=value):
                self.assertEqual(decode_varint(io.BytesIO(encode_varint(value))), value)

    def test_negative_rejected(self):
        with self.assertRaises(ValueError):
            encode_varint(-1)


class TestVarintBijectivity(unittest.TestCase):
    """Every byte string decodes to its own value, with no gaps"""

    def test_one_and_two_byte_sequences_are_distinct_and_dense(self):
        seen = set()
        for terminal in range(0x80, 0x100):
            seen.add(decode_varint(io.BytesIO(bytes([terminal]))))
        for first, terminal in itertools.product(range(0x80), range(0x80, 0x100)):
            seen.add(decode_varint(io.BytesIO(bytes([first, terminal]))))
        self.assertEqual(len(seen), 128 + 128 * 128)
        self.assertEqual(seen, set(range(128 + 128 * 128)))

    def test_three_byte_sequences_start_after_two_byte_range(self):
        self.assertEqual(decode_varint(io.BytesIO(b'\x00\x00\x80')), 16512)


class TestVarintExhaustion(unittest.TestCase):

    def test_empty_stream(self):
        with self.assertRaises(PatchIOError):
            decode_varint(io.BytesIO(b''))

    def test_missing_terminal_byte(self):
        with self.assertRaises(PatchIOError):
            decode_varint(io.BytesIO(b'\x00\x01\x7f'))


class TestSignedDelta(unittest.TestCase):

    def test_round_trip(self):
        for delta in range(-5000, 5001):
            self.assertEqual(decode_signed(io.BytesIO(encode_signed(delta))), delta)

    def test_sign_in_low_bit(self):
        self.assertEqual(encode_signed(0), b'\x80')
        self.assertEqual(encode_signed(1), b'\x82')
        self.assertEqual(encode_signed(-1), b'\x83')
        self.assertEqual(encode_signed(5), encode_varint(10))
        self.assertEqual(encode_signed(-5), encode_varint(11))

    def test_negative_zero_decodes_to_zero(self):
        self.assertEqual(decode_signed(io.BytesIO(b'\x81')), 0)

    def test_large_magnitudes(self):
        for delta in (2 ** 40, -(2 ** 40), 2 ** 62 - 1):
            with self.subTest(delta=delta):
                self.assertEqual(decode_signed(io.BytesIO(encode_signed(delta))), delta)


if __name__ == "__main__":
    unittest.main()
