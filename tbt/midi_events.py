"""
In-memory Standard MIDI File model.
Each track is an ordered list of events carrying delta times, exactly as they
are serialized; the converter builds these and the reader produces them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from byte_util import parse_be3, to_digits_be

TICKS_PER_BEAT = 192
DEFAULT_MICROS_PER_BEAT = 500000

# Meta event types
META_SEQUENCE_NUMBER = 0x00
META_TEXT = 0x01
META_COPYRIGHT = 0x02
META_TRACK_NAME = 0x03
META_INSTRUMENT_NAME = 0x04
META_LYRIC = 0x05
META_MARKER = 0x06
META_CUE_POINT = 0x07
META_CHANNEL_PREFIX = 0x20
META_END_OF_TRACK = 0x2f
META_SET_TEMPO = 0x51
META_SMPTE_OFFSET = 0x54
META_TIME_SIGNATURE = 0x58
META_KEY_SIGNATURE = 0x59

# Controller numbers
CC_BANK_SELECT_MSB = 0
CC_MODULATION = 1
CC_DATA_ENTRY_MSB = 6
CC_VOLUME = 7
CC_PAN = 10
CC_DATA_ENTRY_LSB = 38
CC_REVERB = 91
CC_CHORUS = 93
CC_RPN_LSB = 100
CC_RPN_MSB = 101


class MidiError(ValueError):
    """Malformed MIDI data."""


class MidiEventType(Enum):
    """Types of MIDI events."""
    NOTE_OFF = "note_off"
    NOTE_ON = "note_on"
    POLYPHONIC_KEY_PRESSURE = "polyphonic_key_pressure"
    CONTROL_CHANGE = "control_change"
    PROGRAM_CHANGE = "program_change"
    CHANNEL_PRESSURE = "channel_pressure"
    PITCH_BEND = "pitch_bend"
    META = "meta"
    SYSEX = "sysex"


# High nibble of the status byte for channel messages
CHANNEL_STATUS = {
    MidiEventType.NOTE_OFF: 0x80,
    MidiEventType.NOTE_ON: 0x90,
    MidiEventType.POLYPHONIC_KEY_PRESSURE: 0xa0,
    MidiEventType.CONTROL_CHANGE: 0xb0,
    MidiEventType.PROGRAM_CHANGE: 0xc0,
    MidiEventType.CHANNEL_PRESSURE: 0xd0,
    MidiEventType.PITCH_BEND: 0xe0,
}

STATUS_TO_TYPE = {status: event_type for event_type, status in CHANNEL_STATUS.items()}


@dataclass
class MidiEvent:
    """A single track event.

    Channel messages use channel plus the fields for their type; META uses
    meta_type and payload; SYSEX uses sysex_status (0xF0 or 0xF7) and payload.
    """
    type: MidiEventType
    delta_time: int  # Ticks since the previous event on the same track

    channel: Optional[int] = None

    # NOTE_OFF / NOTE_ON / POLYPHONIC_KEY_PRESSURE
    note: Optional[int] = None
    velocity: Optional[int] = None  # Key pressure for POLYPHONIC_KEY_PRESSURE

    # CONTROL_CHANGE
    controller: Optional[int] = None
    value: Optional[int] = None  # Controller value, or 14-bit PITCH_BEND value

    # PROGRAM_CHANGE / CHANNEL_PRESSURE
    program: Optional[int] = None
    pressure: Optional[int] = None

    # META / SYSEX
    meta_type: Optional[int] = None
    payload: bytes = b''
    sysex_status: Optional[int] = None

    def is_channel_event(self) -> bool:
        return self.type in CHANNEL_STATUS

    @property
    def status(self) -> int:
        """Status byte as written to a file."""
        if self.type in CHANNEL_STATUS:
            return CHANNEL_STATUS[self.type] | self.channel
        if self.type == MidiEventType.META:
            return 0xff
        return self.sysex_status

    def is_note_on(self) -> bool:
        """NoteOn with non-zero velocity."""
        return self.type == MidiEventType.NOTE_ON and self.velocity != 0

    def is_note_off(self) -> bool:
        """NoteOff, or NoteOn with zero velocity."""
        return (self.type == MidiEventType.NOTE_OFF or
                (self.type == MidiEventType.NOTE_ON and self.velocity == 0))

    def is_end_of_track(self) -> bool:
        return self.type == MidiEventType.META and self.meta_type == META_END_OF_TRACK

    def is_set_tempo(self) -> bool:
        return self.type == MidiEventType.META and self.meta_type == META_SET_TEMPO

    @property
    def micros_per_beat(self) -> int:
        """Tempo carried by a SetTempo event."""
        return parse_be3(self.payload)


@dataclass
class MidiFile:
    """A Standard MIDI File: header fields and one event list per track."""
    format: int = 1
    division: int = TICKS_PER_BEAT
    tracks: List[List[MidiEvent]] = field(default_factory=list)

    @property
    def track_count(self) -> int:
        return len(self.tracks)

    def __len__(self) -> int:
        """Return total number of events across tracks."""
        return sum(len(track) for track in self.tracks)


# Helper functions to create common events

def make_note_on(delta_time: int, channel: int, note: int, velocity: int) -> MidiEvent:
    return MidiEvent(type=MidiEventType.NOTE_ON, delta_time=delta_time, channel=channel,
                     note=note, velocity=velocity)


def make_note_off(delta_time: int, channel: int, note: int, velocity: int = 0) -> MidiEvent:
    return MidiEvent(type=MidiEventType.NOTE_OFF, delta_time=delta_time, channel=channel,
                     note=note, velocity=velocity)


def make_control_change(delta_time: int, channel: int, controller: int, value: int) -> MidiEvent:
    """Create a control change event.

    Args:
        delta_time: Ticks since the previous event
        channel: MIDI channel 0-15
        controller: Controller number (see CC_* constants)
        value: Controller value 0-127
    """
    return MidiEvent(type=MidiEventType.CONTROL_CHANGE, delta_time=delta_time, channel=channel,
                     controller=controller, value=value)


def make_program_change(delta_time: int, channel: int, program: int) -> MidiEvent:
    return MidiEvent(type=MidiEventType.PROGRAM_CHANGE, delta_time=delta_time, channel=channel,
                     program=program)


def make_pitch_bend(delta_time: int, channel: int, value: int) -> MidiEvent:
    """Create a pitch bend event.

    Args:
        delta_time: Ticks since the previous event
        channel: MIDI channel 0-15
        value: 14-bit bend, 8192 = centered
    """
    return MidiEvent(type=MidiEventType.PITCH_BEND, delta_time=delta_time, channel=channel,
                     value=value)


def make_meta(delta_time: int, meta_type: int, payload: bytes = b'') -> MidiEvent:
    return MidiEvent(type=MidiEventType.META, delta_time=delta_time, meta_type=meta_type,
                     payload=bytes(payload))


def make_track_name(delta_time: int, name: bytes) -> MidiEvent:
    return make_meta(delta_time, META_TRACK_NAME, name)


def make_lyric(delta_time: int, text: bytes) -> MidiEvent:
    return make_meta(delta_time, META_LYRIC, text)


def make_end_of_track(delta_time: int) -> MidiEvent:
    return make_meta(delta_time, META_END_OF_TRACK)


def make_set_tempo(delta_time: int, micros_per_beat: int) -> MidiEvent:
    """Create a SetTempo meta event with a 3-byte big-endian payload."""
    return make_meta(delta_time, META_SET_TEMPO, to_digits_be(micros_per_beat, 3))


def make_time_signature(delta_time: int, numerator: int = 4, denominator_power: int = 2,
                        clocks_per_click: int = 24, thirty_seconds_per_beat: int = 8) -> MidiEvent:
    """Create a TimeSignature meta event (default 4/4, 24 clocks per click, 8 32nds per beat)."""
    return make_meta(delta_time, META_TIME_SIGNATURE,
                     bytes([numerator, denominator_power, clocks_per_click, thirty_seconds_per_beat]))


def make_sysex(delta_time: int, payload: bytes, sysex_status: int = 0xf0) -> MidiEvent:
    return MidiEvent(type=MidiEventType.SYSEX, delta_time=delta_time, sysex_status=sysex_status,
                     payload=bytes(payload))
