#!/usr/bin/env python3
"""
Inspection tools: tbt-info summarizes a tablature file, midi-info summarizes
a MIDI file and its timing.
"""

import sys
import traceback
from typing import Callable, List, Optional

from midi_reader import midi_file_times, micros_per_beat_at, parse_midi_file
from midi_events import MidiEventType, MidiFile
from tbt_format import TbtError, TbtFile
from tbt_parser import parse_tbt_file


def tbt_info_lines(tbt: TbtFile) -> List[str]:
    header = tbt.header
    metadata = tbt.metadata
    lines = [
        f"Version: 0x{tbt.version:02x} ({tbt.version_string})",
        f"Tempo: {tbt.initial_tempo} BPM",
        f"Tracks: {tbt.track_count}",
        f"Bars: {header.bar_count}",
        f"Spaces: {tbt.bar_lines_space_count}",
        f"Alternate time regions: {'yes' if tbt.has_alternate_time_regions else 'no'}",
    ]

    for label, value in (('Title', metadata.title),
                         ('Artist', metadata.artist),
                         ('Album', metadata.album),
                         ('Transcribed by', metadata.transcribed_by),
                         ('Comment', metadata.comment)):
        if value:
            lines.append(f"{label}: {value.decode('latin-1')}")

    for track, meta in enumerate(metadata.tracks):
        channel = 'auto' if meta.midi_channel == -1 else str(meta.midi_channel)
        if meta.drums:
            channel = 'drums'
        lines.append(
            f"  Track {track + 1}: {meta.string_count} strings, program {meta.midi_program}, "
            f"channel {channel}, {tbt.track_space_count(track)} spaces, "
            f"{len(tbt.body.notes[track])} note records"
            f"{', let ring' if not meta.dont_let_ring else ''}")

    return lines


def midi_info_lines(midi: MidiFile) -> List[str]:
    lines = [
        f"Format: {midi.format}",
        f"Division: {midi.division} ticks per beat",
        f"Tracks: {midi.track_count}",
        f"Events: {len(midi)}",
    ]

    for track_num, track in enumerate(midi.tracks):
        counts = {}
        for event in track:
            counts[event.type] = counts.get(event.type, 0) + 1
        summary = ', '.join(f"{event_type.value} {counts[event_type]}"
                            for event_type in MidiEventType if event_type in counts)
        lines.append(f"  Track {track_num}: {len(track)} events ({summary})")

    times = midi_file_times(midi)
    lines.append(f"Last NoteOn: tick {times.last_note_on_tick}, {times.last_note_on_micros:.0f} us")
    lines.append(f"Last NoteOff: tick {times.last_note_off_tick}, {times.last_note_off_micros:.0f} us")
    lines.append(f"Last EndOfTrack: tick {times.last_end_of_track_tick}, "
                 f"{times.last_end_of_track_micros:.0f} us")
    if times.last_end_of_track_tick >= 0:
        lines.append(f"Final tempo: {micros_per_beat_at(midi, times.last_end_of_track_tick)} us per beat")

    return lines


def _run(argv: Optional[List[str]], name: str, describe: Callable[[str], List[str]]):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 2 or argv[0] != '--input-file':
        print(f"Usage: {name} --input-file <file>")
        sys.exit(1)

    try:
        for line in describe(argv[1]):
            print(line)
    except TbtError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        print("\nFull traceback:", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)


def tbt_info_main(argv: Optional[List[str]] = None):
    _run(argv, 'tbt-info', lambda path: tbt_info_lines(parse_tbt_file(path)))


def midi_info_main(argv: Optional[List[str]] = None):
    _run(argv, 'midi-info', lambda path: midi_info_lines(parse_midi_file(path)))


if __name__ == '__main__':
    tbt_info_main()
