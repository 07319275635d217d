"""
TabIt (.tbt) tablature model: constants, error types and the parsed file
dataclasses shared by the decoder and the MIDI converter.

Layouts drift across the twelve on-disk revisions. The differences are kept
as data (record sizes, open string tables) plus accessors on TbtFile, so the
decoder and converter work over a single model type.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List


HEADER_SIZE = 64
MAGIC = b'TBT'

SUPPORTED_VERSIONS = (0x65, 0x66, 0x67, 0x68, 0x69, 0x6a, 0x6b,
                      0x6e, 0x6f, 0x70, 0x71, 0x72)
LATEST_VERSION = 0x72

MAX_TRACK_COUNT = 15
MAX_BAR_COUNT = 32000

# Space count used by files that do not store one
DEFAULT_SPACE_COUNT = 4000

HAS_ALTERNATE_TIME_REGIONS_MASK = 0b00010000

# Note bytes below 0x80
MUTED = 0x11
STOPPED = 0x12

# Repeat flags of a bar line, version >= 0x70 (bit 0 marks a double bar)
OPEN_REPEAT_MASK_GE70 = 0b00000010
CLOSE_REPEAT_MASK_GE70 = 0b00000100


class BarLine(IntEnum):
    """Low nibble of a bar line byte, version < 0x70. High nibble is the repeat count."""
    SINGLE = 1
    CLOSE = 2
    OPEN = 3
    DOUBLE = 4


class TrackEffect(IntEnum):
    """Effect codes in the track effect changes map (version >= 0x71)."""
    SKIP = 0
    STROKE_DOWN = 1
    STROKE_UP = 2
    TEMPO = 3
    INSTRUMENT = 4
    VOLUME = 5
    PAN = 6
    CHORUS = 7
    REVERB = 8
    MODULATION = 9
    PITCH_BEND = 10


# MIDI note of each open string, low E first (version >= 0x6b)
OPEN_STRING_TO_MIDI_NOTE = [0x28, 0x2d, 0x32, 0x37, 0x3b, 0x40, 0x00, 0x00]

# Older files store strings high e first
OPEN_STRING_TO_MIDI_NOTE_LE6A = [0x40, 0x3b, 0x37, 0x32, 0x2d, 0x28]

# Packed track metadata bytes per track
METADATA_RECORD_SIZES = {
    0x65: 13, 0x66: 13, 0x67: 13, 0x68: 13, 0x69: 13,
    0x6a: 15,
    0x6b: 19,
    0x6e: 23, 0x6f: 23,
    0x70: 27,
    0x71: 30, 0x72: 30,
}


class TbtError(ValueError):
    """Base class for tablature decode errors."""


class BadMagicError(TbtError):
    """File does not start with 'TBT'."""


class BadVersionError(TbtError):
    """Version byte is not a known TabIt revision."""


class UnsupportedVersionError(TbtError):
    """File was written by a newer TabIt than this decoder understands."""


class CorruptError(TbtError):
    """Checksum, size, or must-be-zero field mismatch, or truncated data."""


class InflateError(TbtError):
    """Malformed zlib stream."""


class TbtIoError(TbtError):
    """File could not be read or written."""


@dataclass
class TbtHeader:
    """The fixed 64-byte file header."""
    magic: bytes
    version: int
    tempo1: int
    track_count: int
    version_string: bytes  # Pascal-1, 5 bytes including the length byte
    feature_bitfield: int
    unused: bytes
    bar_count: int = 0
    space_count: int = 0  # Only stored by version 0x6f
    last_non_empty_space: int = 0
    tempo2: int = 0
    compressed_metadata_len: int = 0
    crc32_rest: int = 0
    total_byte_count: int = 0
    crc32_header: int = 0

    @property
    def has_alternate_time_regions(self) -> bool:
        return (self.feature_bitfield & HAS_ALTERNATE_TIME_REGIONS_MASK) != 0

    @property
    def version_text(self) -> str:
        """Version string without its length prefix, e.g. '1.6'."""
        length = min(self.version_string[0], len(self.version_string) - 1)
        return self.version_string[1:1 + length].decode('latin-1')


@dataclass
class TrackMetadata:
    """Per-track settings. Fields missing from older versions keep their defaults."""
    string_count: int = 6
    clean_guitar: int = 0  # Bit 7 = don't let ring, bits 0-6 = MIDI program
    muted_guitar: int = 0
    volume: int = 0
    space_count: int = 0  # Version >= 0x70
    modulation: int = 0
    pitch_bend: int = 0  # Cents, -2400..2400
    transpose_half_steps: int = 0
    midi_bank: int = 0
    reverb: int = 0
    chorus: int = 0
    pan: int = 0x40
    highest_note: int = 0
    display_midi_note_numbers: int = 0
    midi_channel: int = -1  # -1 = assign automatically
    top_line_text: int = 0
    bottom_line_text: int = 0
    tuning: List[int] = field(default_factory=lambda: [0] * 8)
    drums: int = 0

    @property
    def dont_let_ring(self) -> bool:
        return (self.clean_guitar & 0x80) != 0

    @property
    def midi_program(self) -> int:
        return self.clean_guitar & 0x7f


@dataclass
class TbtMetadata:
    """Track metadata records plus the file strings (raw bytes, carried verbatim)."""
    tracks: List[TrackMetadata] = field(default_factory=list)
    title: bytes = b''
    artist: bytes = b''
    album: bytes = b''  # Version >= 0x6e
    transcribed_by: bytes = b''  # Version >= 0x6e
    comment: bytes = b''


@dataclass
class TbtBody:
    """Sparse per-space maps.

    bar_lines holds [flags, repeats] (version >= 0x70) or [packed byte].
    notes and alternate_time_regions are per track, keyed by space.
    track_effect_changes maps space -> {TrackEffect: value} in file order.
    """
    bar_lines: Dict[int, List[int]] = field(default_factory=dict)
    bar_lines_space_count: int = 0
    notes: List[Dict[int, List[int]]] = field(default_factory=list)
    alternate_time_regions: List[Dict[int, List[int]]] = field(default_factory=list)
    track_effect_changes: List[Dict[int, Dict[TrackEffect, int]]] = field(default_factory=list)


@dataclass
class TbtFile:
    """A parsed tablature file."""
    header: TbtHeader
    metadata: TbtMetadata
    body: TbtBody

    @property
    def version(self) -> int:
        return self.header.version

    @property
    def version_string(self) -> str:
        return self.header.version_text

    @property
    def track_count(self) -> int:
        return self.header.track_count

    @property
    def strings_per_track(self) -> int:
        return 8 if self.version >= 0x6b else 6

    @property
    def notes_record_width(self) -> int:
        return 2 * self.strings_per_track + 4

    @property
    def has_alternate_time_regions(self) -> bool:
        return self.version >= 0x70 and self.header.has_alternate_time_regions

    @property
    def bar_lines_space_count(self) -> int:
        if self.version >= 0x70:
            return self.body.bar_lines_space_count
        if self.version == 0x6f:
            return self.header.space_count
        return DEFAULT_SPACE_COUNT

    def track_space_count(self, track: int) -> int:
        if self.version >= 0x70:
            return self.metadata.tracks[track].space_count
        if self.version == 0x6f:
            return self.header.space_count
        return DEFAULT_SPACE_COUNT

    def open_string_notes(self) -> List[int]:
        if self.version >= 0x6b:
            return OPEN_STRING_TO_MIDI_NOTE
        return OPEN_STRING_TO_MIDI_NOTE_LE6A

    @property
    def initial_tempo(self) -> int:
        """Starting tempo in BPM."""
        if self.version >= 0x6e:
            return self.header.tempo2
        return self.header.tempo1
