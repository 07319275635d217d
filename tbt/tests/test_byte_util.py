#!/usr/bin/env python3
"""Tests for the byte-level helpers."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import zlib

import pytest

from byte_util import (
    compute_delta_list_count, crc32_checksum, decode_vlq, encode_vlq, expand_delta_list,
    last_found, parse_be2, parse_be3, parse_be4, parse_delta_list_chunk, parse_le2, parse_le4,
    partition_into, read_pascal1, read_pascal2, split_at, to_digits_be, zlib_inflate,
)
from tbt_format import CorruptError, InflateError
from tbt_samples import TWINKLE_METADATA, TWINKLE_TBT


VLQ_VECTORS = [
    (0x00, b'\x00'),
    (0x7f, b'\x7f'),
    (0x80, b'\x81\x00'),
    (0x2000, b'\xc0\x00'),
    (0x3fff, b'\xff\x7f'),
    (0x4000, b'\x81\x80\x00'),
    (0x0fffffff, b'\xff\xff\xff\x7f'),
]


def test_fixed_width_integers():
    data = bytes([0x01, 0x02, 0x03, 0x04])
    assert parse_le2(data) == 0x0201
    assert parse_le4(data) == 0x04030201
    assert parse_be2(data, 1) == 0x0203
    assert parse_be3(data) == 0x010203
    assert parse_be4(data) == 0x01020304
    assert to_digits_be(500000, 3) == b'\x07\xa1\x20'

    with pytest.raises(CorruptError):
        parse_le4(data, 1)
    with pytest.raises(ValueError):
        to_digits_be(0x1000000, 3)


def test_pascal_strings():
    data = b'\x03abc\x02\x00hi'
    text, offset = read_pascal1(data, 0)
    assert (text, offset) == (b'abc', 4)
    text, offset = read_pascal2(data, offset)
    assert (text, offset) == (b'hi', 8)

    with pytest.raises(CorruptError):
        read_pascal1(b'\x05ab', 0)


def test_vlq_vectors():
    for value, encoded in VLQ_VECTORS:
        assert encode_vlq(value) == encoded
        assert decode_vlq(b'\xaa' + encoded, 1) == (value, 1 + len(encoded))


def test_vlq_out_of_range():
    with pytest.raises(ValueError):
        encode_vlq(0x10000000)
    with pytest.raises(ValueError):
        encode_vlq(-1)
    with pytest.raises(ValueError):
        decode_vlq(b'\x81\x80', 0)


def test_partition_into():
    assert partition_into([1, 2, 3, 4, 5, 6], 2) == [[1, 2], [3, 4], [5, 6]]
    with pytest.raises(CorruptError):
        partition_into([1, 2, 3], 2)


def test_split_at():
    groups = split_at([[1, 2], [0, 1], [2, 0]], lambda pair: pair[0] == 0)
    assert groups == [[[1, 2]], [[0, 1], [2, 0]]]


def test_delta_list_count():
    # 3 units of 5, then a long run of 0x0102 zeros
    assert compute_delta_list_count(bytes([3, 5, 0, 0x02, 0x01, 0x00])) == 3 + 0x0102


def test_expand_delta_list():
    # 4 spaces of width 2: 2 default units, one unit of 7, 5 default units
    records = expand_delta_list(bytes([2, 0, 1, 7, 5, 0]), 8, 2)
    assert records == {1: [7, 0]}


def test_expand_delta_list_whole_spaces():
    # A run spanning several spaces fills every space it covers
    records = expand_delta_list(bytes([1, 0, 6, 9, 1, 0]), 8, 2)
    assert records == {0: [0, 9], 1: [9, 9], 2: [9, 9], 3: [9, 0]}


def test_expand_delta_list_default():
    # Alternate time regions default to 1
    records = expand_delta_list(bytes([2, 1, 1, 3, 1, 2, 2, 1]), 6, 2, default=1)
    assert records == {1: [3, 2]}


def test_expand_delta_list_errors():
    with pytest.raises(CorruptError):
        expand_delta_list(bytes([9, 0]), 8, 2)
    with pytest.raises(CorruptError):
        expand_delta_list(bytes([4, 0]), 8, 2)


def test_parse_delta_list_chunk():
    data = bytes([0x02, 0x00, 1, 2, 3, 4, 0xee])
    pairs, offset = parse_delta_list_chunk(data, 0)
    assert pairs == bytes([1, 2, 3, 4])
    assert offset == 6

    with pytest.raises(CorruptError):
        parse_delta_list_chunk(bytes([0x03, 0x00, 1, 2]), 0)


def test_crc32():
    assert crc32_checksum(b"abc") == 0x352441C2
    assert crc32_checksum(TWINKLE_TBT[:60]) == 0x18b670a2


def test_inflate():
    metadata = zlib_inflate(TWINKLE_METADATA)
    assert len(metadata) == 33
    assert metadata[:4] == bytes([0x06, 0x1b, 0x1c, 0x60])

    assert zlib_inflate(zlib.compress(b'tablature')) == b'tablature'


def test_inflate_errors():
    with pytest.raises(InflateError):
        zlib_inflate(b'not zlib data')
    with pytest.raises(InflateError):
        zlib_inflate(zlib.compress(b'tablature' * 10)[:-6])


def test_last_found():
    mapping = {0: 10, 1: 11, 2: 12, 3: 13}
    assert last_found(mapping, 2) == 2
    assert last_found(mapping, 4) == 3
    assert last_found({1: 'a', 2: 'b', 3: 'c'}, -1) is None
    assert last_found({1: 'a', 3: 'c'}, 2) == 1
