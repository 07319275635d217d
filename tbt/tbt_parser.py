"""
TabIt (.tbt) decoder.

Validates the 64-byte header, reads the per-track metadata (deflated for
version >= 0x6e) and decodes the body streams into the sparse maps of
TbtBody.
"""

import struct
import sys
from pathlib import Path
from typing import Dict, List, Tuple, Union

from byte_util import (
    compute_delta_list_count, crc32_checksum, expand_delta_list, parse_chunk4,
    parse_delta_list_chunk, parse_le2, parse_le4, partition_into, read_pascal1,
    read_pascal2, zlib_inflate,
)
from rational import Rational
from tbt_format import (
    BarLine, BadMagicError, BadVersionError, CorruptError, HEADER_SIZE, LATEST_VERSION,
    MAGIC, MAX_BAR_COUNT, MAX_TRACK_COUNT, METADATA_RECORD_SIZES, SUPPORTED_VERSIONS,
    TbtBody, TbtFile, TbtHeader, TbtIoError, TbtMetadata, TrackEffect, TrackMetadata,
    UnsupportedVersionError,
)


HEADER_FORMAT = '<3sBBB5sB28sHHHHIIII'


def parse_header(data: bytes) -> TbtHeader:
    """Unpack and validate the header against the whole file contents."""
    if len(data) < HEADER_SIZE:
        raise CorruptError(f"file is too short for a header: {len(data)} bytes")

    fields = struct.unpack(HEADER_FORMAT, data[:HEADER_SIZE])
    header = TbtHeader(*fields)

    if header.magic != MAGIC:
        raise BadMagicError(f"magic bytes do not match. expected: TBT, actual: {header.magic!r}")

    version = header.version
    if version > LATEST_VERSION:
        raise UnsupportedVersionError(
            f"file was created with a later version of TabIt (version 0x{version:02x}, "
            f"TabIt {header.version_text})")
    if version not in SUPPORTED_VERSIONS:
        raise BadVersionError(f"unknown version: 0x{version:02x}")

    if version >= 0x68:
        if len(data) != header.total_byte_count:
            raise CorruptError(f"file byte counts do not match. expected: {header.total_byte_count}, "
                               f"actual: {len(data)}")

        crc32_rest = crc32_checksum(data[HEADER_SIZE:])
        if crc32_rest != header.crc32_rest:
            raise CorruptError(f"CRC-32 of rest of file does not match. expected: 0x{header.crc32_rest:08x}, "
                               f"actual: 0x{crc32_rest:08x}")

        crc32_header = crc32_checksum(data[:HEADER_SIZE - 4])
        if crc32_header != header.crc32_header:
            raise CorruptError(f"CRC-32 of header does not match. expected: 0x{header.crc32_header:08x}, "
                               f"actual: 0x{crc32_header:08x}")
    else:
        _check_zero(header.crc32_rest, "crc32Rest")
        _check_zero(header.total_byte_count, "totalByteCount")
        _check_zero(header.crc32_header, "crc32Header")

    if header.version_string[0] not in (3, 4):
        raise CorruptError(f"unexpected version string length: {header.version_string[0]}")

    if any(header.unused):
        raise CorruptError("unused header bytes are not all 0")

    if version >= 0x70:
        if header.bar_count == 0:
            raise CorruptError("bar count is 0")
        if header.bar_count > MAX_BAR_COUNT:
            raise CorruptError(f"file contains more bars than TabIt supports: {header.bar_count}")
    else:
        _check_zero(header.bar_count, "barCount")

    if version == 0x6f:
        if header.space_count == 0:
            raise CorruptError("space count is 0")
    else:
        _check_zero(header.space_count, "spaceCount")

    if not 0x6e <= version <= 0x6f:
        _check_zero(header.last_non_empty_space, "lastNonEmptySpace")

    if version >= 0x6e:
        if header.tempo2 == 0:
            raise CorruptError("tempo2 is 0")
        if header.tempo2 >= 250:
            if header.tempo1 != 250:
                raise CorruptError(f"tempo1 should be 250 for tempo2 {header.tempo2}, got {header.tempo1}")
        elif header.tempo1 != header.tempo2:
            raise CorruptError(f"tempo1 {header.tempo1} does not match tempo2 {header.tempo2}")
    else:
        _check_zero(header.tempo2, "tempo2")
        _check_zero(header.compressed_metadata_len, "compressedMetadataLen")

    if header.track_count > MAX_TRACK_COUNT:
        raise CorruptError(f"file contains more tracks than TabIt supports: {header.track_count}")

    return header


def _check_zero(value: int, name: str):
    if value != 0:
        raise CorruptError(f"{name} should be 0 for this version, got {value}")


def _signed8(b: int) -> int:
    return b - 0x100 if b >= 0x80 else b


def _signed16(v: int) -> int:
    return v - 0x10000 if v >= 0x8000 else v


class TbtParser:
    """Decodes one file. Holds the raw bytes and the header while the
    metadata and body are read."""

    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.header = parse_header(self.data)
        self.version = self.header.version
        self.track_count = self.header.track_count

    def parse(self) -> TbtFile:
        metadata, body_data = self._parse_metadata()
        tbt = TbtFile(header=self.header, metadata=metadata, body=TbtBody())
        tbt.body = self._parse_body(tbt, body_data)
        return tbt

    # Metadata

    def _parse_metadata(self) -> Tuple[TbtMetadata, bytes]:
        """Returns the metadata and the (inflated) body bytes that follow it."""
        record_size = METADATA_RECORD_SIZES[self.version]
        records_len = record_size * self.track_count
        metadata = TbtMetadata()

        if self.version >= 0x6e:
            metadata_end = HEADER_SIZE + self.header.compressed_metadata_len
            if metadata_end > len(self.data):
                raise CorruptError(f"compressed metadata length {self.header.compressed_metadata_len} "
                                   f"runs past end of file")
            inflated = zlib_inflate(self.data[HEADER_SIZE:metadata_end])

            if len(inflated) < records_len:
                raise CorruptError(f"metadata is {len(inflated)} bytes, need {records_len} for "
                                   f"{self.track_count} tracks")
            metadata.tracks = self._parse_track_records(inflated[:records_len])

            offset = records_len
            metadata.title, offset = read_pascal2(inflated, offset)
            metadata.artist, offset = read_pascal2(inflated, offset)
            metadata.album, offset = read_pascal2(inflated, offset)
            metadata.transcribed_by, offset = read_pascal2(inflated, offset)
            metadata.comment, offset = read_pascal2(inflated, offset)
            if offset != len(inflated):
                raise CorruptError(f"{len(inflated) - offset} unexpected bytes after metadata strings")

            body_data = zlib_inflate(self.data[metadata_end:])
        else:
            records_end = HEADER_SIZE + records_len
            if records_end > len(self.data):
                raise CorruptError("file is too short for track metadata")
            metadata.tracks = self._parse_track_records(self.data[HEADER_SIZE:records_end])

            offset = records_end
            metadata.title, offset = read_pascal1(self.data, offset)
            metadata.artist, offset = read_pascal1(self.data, offset)
            metadata.comment, offset = read_pascal1(self.data, offset)

            body_data = self.data[offset:]

        return metadata, body_data

    def _parse_track_records(self, data: bytes) -> List[TrackMetadata]:
        """Read the column-major metadata blocks: each field is stored for
        every track before the next field starts."""
        n = self.track_count
        version = self.version
        tracks = [TrackMetadata() for _ in range(n)]
        offset = 0

        def block(width: int = 1) -> List[int]:
            nonlocal offset
            values = []
            for _ in range(n):
                if width == 1:
                    values.append(data[offset])
                elif width == 2:
                    values.append(parse_le2(data, offset))
                else:
                    values.append(parse_le4(data, offset))
                offset += width
            return values

        if version >= 0x70:
            for t, v in zip(tracks, block(4)):
                t.space_count = v

        for t, v in zip(tracks, block()):
            t.string_count = v
        for t, v in zip(tracks, block()):
            t.clean_guitar = v
        for t, v in zip(tracks, block()):
            t.muted_guitar = v
        for t, v in zip(tracks, block()):
            t.volume = v

        if version >= 0x71:
            for t, v in zip(tracks, block()):
                t.modulation = v
            for t, v in zip(tracks, block(2)):
                t.pitch_bend = _signed16(v)

        if version >= 0x6e:
            for t, v in zip(tracks, block()):
                t.transpose_half_steps = _signed8(v)
            for t, v in zip(tracks, block()):
                t.midi_bank = v
            for t, v in zip(tracks, block()):
                t.reverb = v
            for t, v in zip(tracks, block()):
                t.chorus = v

        if version >= 0x6b:
            for t, v in zip(tracks, block()):
                t.pan = v
            for t, v in zip(tracks, block()):
                t.highest_note = v

        if version >= 0x6a:
            for t, v in zip(tracks, block()):
                t.display_midi_note_numbers = v
            for t, v in zip(tracks, block()):
                t.midi_channel = _signed8(v)

        for t, v in zip(tracks, block()):
            t.top_line_text = v
        for t, v in zip(tracks, block()):
            t.bottom_line_text = v

        strings = 8 if version >= 0x6b else 6
        for t in tracks:
            t.tuning = [_signed8(b) for b in data[offset:offset + strings]]
            offset += strings

        for t, v in zip(tracks, block()):
            t.drums = v

        if offset != len(data):
            raise CorruptError(f"track metadata is {len(data)} bytes, parsed {offset}")

        for i, t in enumerate(tracks):
            if t.string_count > strings:
                raise CorruptError(f"track {i} has {t.string_count} strings, at most {strings} supported")

        return tracks

    # Body

    def _parse_body(self, tbt: TbtFile, data: bytes) -> TbtBody:
        body = tbt.body
        offset = 0

        if self.version >= 0x70:
            offset = self._parse_bar_lines_ge70(data, offset, body)
        else:
            offset = self._parse_bar_lines(data, offset, body, tbt.bar_lines_space_count)

        for track in range(self.track_count):
            notes, offset = self._parse_delta_list_map(
                data, offset, tbt.notes_record_width, tbt.track_space_count(track), 0)
            body.notes.append(notes)

        if tbt.has_alternate_time_regions:
            for track in range(self.track_count):
                regions, offset = self._parse_delta_list_map(data, offset, 2, tbt.track_space_count(track), 1)
                self._check_alternate_time_regions(tbt, track, regions)
                body.alternate_time_regions.append(regions)

        if self.version >= 0x71:
            for track in range(self.track_count):
                changes, offset = self._parse_track_effect_changes(data, offset)
                body.track_effect_changes.append(changes)

        if offset != len(data):
            raise CorruptError(f"{len(data) - offset} unexpected bytes at end of body")

        return body

    def _parse_bar_lines_ge70(self, data: bytes, offset: int, body: TbtBody) -> int:
        """Bar lines are barCount records of (space delta:u32, flags, repeats),
        each keyed by the running space count before its delta."""
        size = self.header.bar_count * 6
        if offset + size > len(data):
            raise CorruptError("body is too short for bar lines")

        space = 0
        for part in partition_into(data[offset:offset + size], 6):
            delta = struct.unpack('<I', bytes(part[0:4]))[0]
            body.bar_lines[space] = [part[4], part[5]]
            space += delta
        body.bar_lines_space_count = space

        return offset + size

    def _parse_bar_lines(self, data: bytes, offset: int, body: TbtBody, space_count: int) -> int:
        bar_lines, offset = self._parse_delta_list_map(data, offset, 1, space_count, 0)
        valid = {bar_line.value for bar_line in BarLine}
        for space, (value,) in bar_lines.items():
            if (value & 0x0f) not in valid:
                raise CorruptError(f"invalid bar line 0x{value:02x} at space {space}")
        body.bar_lines = bar_lines
        body.bar_lines_space_count = space_count
        return offset

    def _parse_delta_list_map(self, data: bytes, offset: int, width: int, space_count: int,
                              default: int) -> Tuple[Dict[int, List[int]], int]:
        """Accumulate delta-list chunks until they cover width * space_count units, then expand."""
        unit_count = width * space_count
        accumulated = bytearray()
        count = 0

        while True:
            chunk, offset = parse_delta_list_chunk(data, offset)
            accumulated += chunk
            count += compute_delta_list_count(chunk)
            if count > unit_count:
                raise CorruptError(f"delta list covers {count} units, expected {unit_count}")
            if count == unit_count:
                break

        return expand_delta_list(bytes(accumulated), unit_count, width, default), offset

    def _check_alternate_time_regions(self, tbt: TbtFile, track: int, regions: Dict[int, List[int]]):
        """Each region shortens or lengthens the track relative to the bar lines."""
        correction = Rational(0)
        for space, (numerator, denominator) in regions.items():
            if denominator == 0:
                raise CorruptError(f"alternate time region with zero denominator at track {track} space {space}")
            correction += 1 - Rational(numerator, denominator)

        expected = tbt.bar_lines_space_count + correction.round()
        if tbt.track_space_count(track) != expected:
            print(f"WARNING: track {track} space count {tbt.track_space_count(track)} does not match "
                  f"bar lines plus alternate time regions ({expected})", file=sys.stderr)

    def _parse_track_effect_changes(self, data: bytes, offset: int) -> Tuple[Dict[int, Dict[TrackEffect, int]], int]:
        chunk, offset = parse_chunk4(data, offset)
        changes: Dict[int, Dict[TrackEffect, int]] = {}

        space = 0
        for part in partition_into(chunk, 8):
            space_delta, effect, r, value = struct.unpack('<4H', bytes(part))
            if r != 0x02:
                raise CorruptError(f"unexpected track effect change record marker: {r}")
            try:
                effect = TrackEffect(effect)
            except ValueError as e:
                raise CorruptError(f"unknown track effect {effect} at space {space + space_delta}") from e
            space += space_delta
            changes.setdefault(space, {})[effect] = value

        return changes, offset


def parse_tbt_bytes(data: bytes) -> TbtFile:
    """Decode a complete .tbt file held in memory."""
    return TbtParser(data).parse()


def parse_tbt_file(path: Union[str, Path]) -> TbtFile:
    """Read and decode a .tbt file."""
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise TbtIoError(f"cannot open {path}: {e}") from e
    return parse_tbt_bytes(data)
