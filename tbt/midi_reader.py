"""
Standard MIDI File decoder and timing analyser.

The decoder accepts Type 0 and Type 1 files with running status. The
timing analyser converts the last NoteOn / NoteOff / EndOfTrack tick of
each file into wall-clock microseconds using the merged tempo map.
"""

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple, Union

from byte_util import decode_vlq, last_found, parse_be2, parse_be4
from midi_events import (
    DEFAULT_MICROS_PER_BEAT, MidiError, MidiEvent, MidiEventType, MidiFile, STATUS_TO_TYPE,
)
from rational import Rational
from tbt_format import TbtIoError


# Data bytes following each channel status
DATA_BYTE_COUNT = {
    MidiEventType.NOTE_OFF: 2,
    MidiEventType.NOTE_ON: 2,
    MidiEventType.POLYPHONIC_KEY_PRESSURE: 2,
    MidiEventType.CONTROL_CHANGE: 2,
    MidiEventType.PROGRAM_CHANGE: 1,
    MidiEventType.CHANNEL_PRESSURE: 1,
    MidiEventType.PITCH_BEND: 2,
}


def _vlq(data: bytes, offset: int) -> Tuple[int, int]:
    try:
        return decode_vlq(data, offset)
    except ValueError as e:
        raise MidiError(str(e)) from e


def _channel_event(event_type: MidiEventType, delta_time: int, channel: int, data: bytes) -> MidiEvent:
    if event_type in (MidiEventType.NOTE_OFF, MidiEventType.NOTE_ON, MidiEventType.POLYPHONIC_KEY_PRESSURE):
        return MidiEvent(type=event_type, delta_time=delta_time, channel=channel,
                         note=data[0], velocity=data[1])
    if event_type == MidiEventType.CONTROL_CHANGE:
        return MidiEvent(type=event_type, delta_time=delta_time, channel=channel,
                         controller=data[0], value=data[1])
    if event_type == MidiEventType.PROGRAM_CHANGE:
        return MidiEvent(type=event_type, delta_time=delta_time, channel=channel, program=data[0])
    if event_type == MidiEventType.CHANNEL_PRESSURE:
        return MidiEvent(type=event_type, delta_time=delta_time, channel=channel, pressure=data[0])
    return MidiEvent(type=event_type, delta_time=delta_time, channel=channel,
                     value=data[0] | (data[1] << 7))


def parse_track(data: bytes, track_num: int) -> List[MidiEvent]:
    """Parse the payload of one MTrk chunk."""
    events = []
    offset = 0
    running_status = None

    while offset < len(data):
        delta_time, offset = _vlq(data, offset)
        if offset >= len(data):
            raise MidiError(f"track {track_num}: event missing after delta time at offset {offset}")

        status = data[offset]

        if status < 0x80:
            # Data byte: reuse the previous channel status
            if running_status is None:
                raise MidiError(f"track {track_num}: data byte 0x{status:02x} without running status "
                                f"at offset {offset}")
            status = running_status
        else:
            offset += 1

        if status == 0xff:
            running_status = None
            if offset >= len(data):
                raise MidiError(f"track {track_num}: truncated meta event")
            meta_type = data[offset]
            length, offset = _vlq(data, offset + 1)
            if offset + length > len(data):
                raise MidiError(f"track {track_num}: truncated meta event payload")
            event = MidiEvent(type=MidiEventType.META, delta_time=delta_time, meta_type=meta_type,
                              payload=bytes(data[offset:offset + length]))
            offset += length
        elif status in (0xf0, 0xf7):
            running_status = None
            length, offset = _vlq(data, offset)
            if offset + length > len(data):
                raise MidiError(f"track {track_num}: truncated sysex payload")
            event = MidiEvent(type=MidiEventType.SYSEX, delta_time=delta_time, sysex_status=status,
                              payload=bytes(data[offset:offset + length]))
            offset += length
        elif status >= 0xf0:
            raise MidiError(f"track {track_num}: unexpected system message 0x{status:02x} at offset {offset}")
        else:
            running_status = status
            event_type = STATUS_TO_TYPE[status & 0xf0]
            count = DATA_BYTE_COUNT[event_type]
            if offset + count > len(data):
                raise MidiError(f"track {track_num}: truncated channel message")
            event = _channel_event(event_type, delta_time, status & 0x0f, data[offset:offset + count])
            offset += count

        events.append(event)

        if event.is_end_of_track():
            if offset != len(data):
                print(f"WARNING: track {track_num}: {len(data) - offset} unexpected bytes after EndOfTrack",
                      file=sys.stderr)
            break
    else:
        print(f"WARNING: track {track_num}: missing EndOfTrack", file=sys.stderr)

    return events


def parse_midi_bytes(data: bytes) -> MidiFile:
    """Decode a Standard MIDI File held in memory."""
    if len(data) < 14 or data[0:4] != b'MThd':
        raise MidiError("not a MIDI file: missing MThd header")

    header_len = parse_be4(data, 4)
    if header_len < 6:
        raise MidiError(f"MThd chunk too short: {header_len}")
    file_format = parse_be2(data, 8)
    track_count = parse_be2(data, 10)
    division = parse_be2(data, 12)
    if division & 0x8000:
        raise MidiError("SMPTE time division is not supported")

    midi = MidiFile(format=file_format, division=division)

    offset = 8 + header_len
    while offset < len(data):
        if offset + 8 > len(data):
            raise MidiError(f"truncated chunk header at offset {offset}")
        chunk_type = data[offset:offset + 4]
        chunk_len = parse_be4(data, offset + 4)
        offset += 8
        if offset + chunk_len > len(data):
            raise MidiError(f"chunk at offset {offset - 8} runs past end of file")

        if chunk_type == b'MTrk':
            midi.tracks.append(parse_track(data[offset:offset + chunk_len], len(midi.tracks)))
        else:
            print(f"WARNING: skipping unknown chunk {chunk_type!r}", file=sys.stderr)
        offset += chunk_len

    if midi.track_count != track_count:
        print(f"WARNING: header declares {track_count} tracks, found {midi.track_count}", file=sys.stderr)

    return midi


def parse_midi_file(path: Union[str, Path]) -> MidiFile:
    """Read and decode a MIDI file."""
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise TbtIoError(f"cannot open {path}: {e}") from e
    return parse_midi_bytes(data)


@dataclass
class MidiFileTimes:
    """Tick and wall-clock time of the last NoteOn, NoteOff and EndOfTrack
    over all tracks. -1 when the file has no such event."""
    last_note_on_micros: float = -1
    last_note_off_micros: float = -1
    last_end_of_track_micros: float = -1
    last_note_on_tick: int = -1
    last_note_off_tick: int = -1
    last_end_of_track_tick: int = -1


def compute_tempo_map(midi: MidiFile) -> Dict[int, Rational]:
    """Merge SetTempo events from all tracks into tick -> micros per tick.

    Later tracks win when two tempo changes share a tick.
    """
    tempo_map: Dict[int, Rational] = {0: Rational(DEFAULT_MICROS_PER_BEAT, midi.division)}
    for track in midi.tracks:
        tick = 0
        for event in track:
            tick += event.delta_time
            if event.is_set_tempo():
                tempo_map[tick] = Rational(event.micros_per_beat, midi.division)
    return dict(sorted(tempo_map.items()))


def ticks_to_micros(tempo_map: Dict[int, Rational], tick: int) -> Rational:
    """Integrate micros per tick over [0, tick)."""
    micros = Rational(0)
    ticks = sorted(tempo_map)
    for i, start in enumerate(ticks):
        if start >= tick:
            break
        end = ticks[i + 1] if i + 1 < len(ticks) else tick
        micros += tempo_map[start] * (min(end, tick) - start)
    return micros


def midi_file_times(midi: MidiFile) -> MidiFileTimes:
    """Find the last NoteOn, NoteOff and EndOfTrack ticks and convert them to microseconds."""
    times = MidiFileTimes()

    for track in midi.tracks:
        tick = 0
        for event in track:
            tick += event.delta_time
            if event.is_note_on():
                times.last_note_on_tick = max(times.last_note_on_tick, tick)
            elif event.is_note_off():
                times.last_note_off_tick = max(times.last_note_off_tick, tick)
            elif event.is_end_of_track():
                times.last_end_of_track_tick = max(times.last_end_of_track_tick, tick)

    tempo_map = compute_tempo_map(midi)
    if times.last_note_on_tick >= 0:
        times.last_note_on_micros = ticks_to_micros(tempo_map, times.last_note_on_tick).to_double()
    if times.last_note_off_tick >= 0:
        times.last_note_off_micros = ticks_to_micros(tempo_map, times.last_note_off_tick).to_double()
    if times.last_end_of_track_tick >= 0:
        times.last_end_of_track_micros = ticks_to_micros(tempo_map, times.last_end_of_track_tick).to_double()

    return times


def micros_per_beat_at(midi: MidiFile, tick: int) -> int:
    """Tempo in effect at tick, in microseconds per beat."""
    tempo_map = compute_tempo_map(midi)
    start = last_found(tempo_map, tick)
    return (tempo_map[start] * midi.division).to_int32()
