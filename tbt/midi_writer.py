"""
Standard MIDI File encoder.

Status bytes are written for every event; running status is never used.
"""

import struct
from pathlib import Path
from typing import List, Union

from byte_util import encode_vlq
from midi_events import MidiEvent, MidiEventType, MidiFile
from tbt_format import TbtIoError


def _data_byte(value: int, name: str) -> int:
    if not 0 <= value <= 0x7f:
        raise ValueError(f"{name} out of range 0-127: {value}")
    return value


def event_to_bytes(event: MidiEvent) -> bytes:
    """Encode one event including its delta time."""
    if event.delta_time < 0:
        raise ValueError(f"negative delta time: {event.delta_time}")

    out = bytearray(encode_vlq(event.delta_time))

    if event.type in (MidiEventType.NOTE_OFF, MidiEventType.NOTE_ON, MidiEventType.POLYPHONIC_KEY_PRESSURE):
        out += bytes([event.status, _data_byte(event.note, "note"), _data_byte(event.velocity, "velocity")])
    elif event.type == MidiEventType.CONTROL_CHANGE:
        out += bytes([event.status, _data_byte(event.controller, "controller"),
                      _data_byte(event.value, "controller value")])
    elif event.type == MidiEventType.PROGRAM_CHANGE:
        out += bytes([event.status, _data_byte(event.program, "program")])
    elif event.type == MidiEventType.CHANNEL_PRESSURE:
        out += bytes([event.status, _data_byte(event.pressure, "pressure")])
    elif event.type == MidiEventType.PITCH_BEND:
        if not 0 <= event.value <= 0x3fff:
            raise ValueError(f"pitch bend out of range 0-16383: {event.value}")
        out += bytes([event.status, event.value & 0x7f, event.value >> 7])
    elif event.type == MidiEventType.META:
        out += bytes([0xff, event.meta_type])
        out += encode_vlq(len(event.payload))
        out += event.payload
    elif event.type == MidiEventType.SYSEX:
        out += bytes([event.sysex_status])
        out += encode_vlq(len(event.payload))
        out += event.payload
    else:
        raise ValueError(f"Unknown event type: {event.type}")

    return bytes(out)


def track_to_bytes(events: List[MidiEvent]) -> bytes:
    """Encode a complete MTrk chunk."""
    payload = b''.join(event_to_bytes(e) for e in events)
    return b'MTrk' + struct.pack('>I', len(payload)) + payload


def export_midi_bytes(midi: MidiFile) -> bytes:
    """Encode a MidiFile as Standard MIDI File bytes."""
    out = bytearray(b'MThd')
    out += struct.pack('>IHHH', 6, midi.format, midi.track_count, midi.division)
    for track in midi.tracks:
        out += track_to_bytes(track)
    return bytes(out)


def export_midi_file(midi: MidiFile, path: Union[str, Path]):
    """Encode a MidiFile and write it to path."""
    data = export_midi_bytes(midi)
    try:
        with open(path, 'wb') as f:
            f.write(data)
    except OSError as e:
        raise TbtIoError(f"cannot write {path}: {e}") from e
