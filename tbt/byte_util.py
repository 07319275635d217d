"""
Byte-level helpers shared by the tablature decoder and the MIDI codec.

Fixed-width integer codecs, Pascal strings, MIDI variable-length quantities,
the delta-list run-length codec used for per-space maps, and thin wrappers
around zlib for CRC-32 and inflate.
"""

import struct
import zlib
from bisect import bisect_right
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from tbt_format import CorruptError, InflateError


MAX_VLQ = 0x0FFFFFFF

# Largest count a delta-list chunk header may declare
MAX_DELTA_LIST_CHUNK_COUNT = 0x1000


def _check_available(data: bytes, offset: int, size: int, what: str):
    if offset < 0 or offset + size > len(data):
        raise CorruptError(f"out of data reading {what}: need {size} bytes at offset {offset}, "
                           f"have {len(data) - offset}")


def parse_le2(data: bytes, offset: int = 0) -> int:
    _check_available(data, offset, 2, "LE2")
    return struct.unpack('<H', data[offset:offset + 2])[0]


def parse_le4(data: bytes, offset: int = 0) -> int:
    _check_available(data, offset, 4, "LE4")
    return struct.unpack('<I', data[offset:offset + 4])[0]


def parse_be2(data: bytes, offset: int = 0) -> int:
    _check_available(data, offset, 2, "BE2")
    return struct.unpack('>H', data[offset:offset + 2])[0]


def parse_be3(data: bytes, offset: int = 0) -> int:
    _check_available(data, offset, 3, "BE3")
    return struct.unpack('>I', b'\x00' + data[offset:offset + 3])[0]


def parse_be4(data: bytes, offset: int = 0) -> int:
    _check_available(data, offset, 4, "BE4")
    return struct.unpack('>I', data[offset:offset + 4])[0]


def to_digits_be(value: int, width: int) -> bytes:
    """Big-endian bytes of an unsigned value, exactly `width` bytes long."""
    if value < 0 or value >= 1 << (8 * width):
        raise ValueError(f"value {value} does not fit in {width} bytes")
    return value.to_bytes(width, 'big')


def read_pascal1(data: bytes, offset: int) -> Tuple[bytes, int]:
    """Read a u8 length-prefixed string. Returns (contents, next offset)."""
    _check_available(data, offset, 1, "Pascal-1 length")
    length = data[offset]
    _check_available(data, offset + 1, length, "Pascal-1 string")
    return bytes(data[offset + 1:offset + 1 + length]), offset + 1 + length


def read_pascal2(data: bytes, offset: int) -> Tuple[bytes, int]:
    """Read a u16 LE length-prefixed string. Returns (contents, next offset)."""
    length = parse_le2(data, offset)
    _check_available(data, offset + 2, length, "Pascal-2 string")
    return bytes(data[offset + 2:offset + 2 + length]), offset + 2 + length


def encode_vlq(value: int) -> bytes:
    """MIDI variable-length quantity: big-endian base 128, high bit = more bytes follow."""
    if value < 0 or value > MAX_VLQ:
        raise ValueError(f"VLQ value out of range: {value}")

    out = [value & 0x7f]
    value >>= 7
    while value:
        out.append((value & 0x7f) | 0x80)
        value >>= 7
    return bytes(reversed(out))


def decode_vlq(data: bytes, offset: int) -> Tuple[int, int]:
    """Decode a VLQ at offset. Returns (value, next offset)."""
    value = 0
    for i in range(4):
        if offset + i >= len(data):
            raise ValueError(f"truncated VLQ at offset {offset}")
        b = data[offset + i]
        value = (value << 7) | (b & 0x7f)
        if not b & 0x80:
            return value, offset + i + 1
    raise ValueError(f"VLQ longer than 4 bytes at offset {offset}")


def partition_into(data: Sequence[int], size: int) -> List[List[int]]:
    """Split data into consecutive parts of `size` items."""
    if len(data) % size != 0:
        raise CorruptError(f"cannot partition {len(data)} bytes into parts of {size}")
    return [list(data[i:i + size]) for i in range(0, len(data), size)]


def split_at(items: Sequence, pred: Callable) -> List[List]:
    """Group items: each group runs through items matching pred up to and
    including the first item that does not match.

    [[1,2],[0,1],[2,0]] with pred "first is 0" groups as [[[1,2]], [[0,1],[2,0]]].
    """
    groups = []
    current = []
    for item in items:
        current.append(item)
        if not pred(item):
            groups.append(current)
            current = []
    if current:
        groups.append(current)
    return groups


def delta_list_runs(delta_list: bytes) -> Iterator[Tuple[int, int]]:
    """Yield (run length, value) pairs of a delta list.

    A pair (a, b) with a != 0 is a run of a units of b. A pair (0, b) joins
    the following pair (c, d) into a run of b | c << 8 units of d.
    """
    pairs = partition_into(delta_list, 2)
    for group in split_at(pairs, lambda pair: pair[0] == 0):
        if group[0][0] == 0:
            if len(group) != 2:
                raise CorruptError(f"malformed delta list run: {group}")
            yield group[0][1] | (group[1][0] << 8), group[1][1]
        else:
            yield group[0][0], group[0][1]


def compute_delta_list_count(delta_list: bytes) -> int:
    """Total number of units a delta list expands to."""
    return sum(run_length for run_length, _ in delta_list_runs(delta_list))


def expand_delta_list(delta_list: bytes, unit_count: int, width: int,
                      default: int = 0) -> Dict[int, List[int]]:
    """Expand a delta list into a sparse space -> record map.

    Units are grouped into records of `width` units, one per space. Only
    records holding at least one non-default unit are stored.
    """
    records: Dict[int, List[int]] = {}
    units = [default] * width
    has_non_default = False
    unit = 0

    for run_length, value in delta_list_runs(delta_list):
        if run_length == 0:
            raise CorruptError(f"zero-length delta list run at unit {unit}")

        new_unit = unit + run_length
        if new_unit > unit_count:
            raise CorruptError(f"delta list overruns {unit_count} units")

        space, slot = divmod(unit, width)
        new_space, new_slot = divmod(new_unit, width)

        if space == new_space:
            units[slot:new_slot] = [value] * (new_slot - slot)
            if value != default:
                has_non_default = True
        else:
            # Finish the current space
            units[slot:] = [value] * (width - slot)
            if value != default:
                has_non_default = True
            if has_non_default:
                records[space] = units

            # Spaces entirely covered by this run
            if value != default:
                for whole_space in range(space + 1, new_space):
                    records[whole_space] = [value] * width

            # Start the next space
            units = [default] * width
            units[:new_slot] = [value] * new_slot
            has_non_default = new_slot > 0 and value != default

        unit = new_unit

    if unit != unit_count:
        raise CorruptError(f"delta list expands to {unit} units, expected {unit_count}")

    return records


def parse_delta_list_chunk(data: bytes, offset: int) -> Tuple[bytes, int]:
    """Read a count:u16 LE header followed by count pairs. Returns (pair bytes, next offset)."""
    count = parse_le2(data, offset)
    if count > MAX_DELTA_LIST_CHUNK_COUNT:
        raise CorruptError(f"delta list chunk count too large: {count}")
    offset += 2
    _check_available(data, offset, 2 * count, "delta list chunk")
    return bytes(data[offset:offset + 2 * count]), offset + 2 * count


def parse_chunk4(data: bytes, offset: int) -> Tuple[bytes, int]:
    """Read a count:u32 LE header followed by count bytes. Returns (bytes, next offset)."""
    count = parse_le4(data, offset)
    if count > 0x7fffffff:
        raise CorruptError(f"chunk count too large: {count}")
    offset += 4
    _check_available(data, offset, count, "chunk")
    return bytes(data[offset:offset + count]), offset + count


def crc32_checksum(data: bytes) -> int:
    return zlib.crc32(data) & 0xffffffff


def zlib_inflate(data: bytes) -> bytes:
    """Inflate a complete zlib stream. Bytes after the end of the stream are ignored."""
    decompressor = zlib.decompressobj()
    try:
        out = decompressor.decompress(data)
        out += decompressor.flush()
    except zlib.error as e:
        raise InflateError(f"zlib inflate failed: {e}") from e
    if not decompressor.eof:
        raise InflateError("zlib stream is truncated")
    return out


def last_found(mapping: Dict, key) -> Optional[object]:
    """Greatest key of `mapping` that is <= `key`, or None."""
    keys = sorted(mapping)
    i = bisect_right(keys, key)
    if i == 0:
        return None
    return keys[i - 1]
