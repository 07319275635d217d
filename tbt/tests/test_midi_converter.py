#!/usr/bin/env python3
"""Tests for the tablature to MIDI conversion."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest

from midi_converter import (
    ConvertOptions, MidiConverter, TrackEvents, compute_channel_map, compute_note_offsets,
    compute_repeat_tables, compute_tempo_map, convert_to_midi, pitch_bend_value,
)
from midi_events import (
    CC_VOLUME, META_LYRIC, META_SET_TEMPO, META_TRACK_NAME, MidiEventType, make_note_off, make_note_on,
)
from midi_reader import midi_file_times, parse_midi_bytes
from midi_writer import export_midi_bytes
from rational import Rational
from tbt_format import (
    BarLine, CLOSE_REPEAT_MASK_GE70, MUTED, OPEN_REPEAT_MASK_GE70, STOPPED, TrackEffect, TrackMetadata,
)
from tbt_parser import parse_tbt_bytes
from tbt_samples import TWINKLE_TBT, make_tbt, notes_of, record, timeline


QUIET = ConvertOptions(emit_control_change_events=False,
                       emit_program_change_events=False,
                       emit_pitch_bend_events=False)

# Open low E string of a version >= 0x6b file
LOW_E = 0x28


def test_options_from_dict():
    options = ConvertOptions.from_dict({'emit_custom_lyric_events': True, 'emit_pitch_bend_events': False})
    assert options.emit_custom_lyric_events
    assert not options.emit_pitch_bend_events
    assert options.emit_control_change_events

    with pytest.raises(ValueError, match="Unknown"):
        ConvertOptions.from_dict({'emit_everything': True})
    with pytest.raises(ValueError):
        ConvertOptions.from_dict({'emit_pitch_bend_events': 'yes'})


def test_pitch_bend_value():
    assert pitch_bend_value(0) == 8192
    assert pitch_bend_value(-2400) == 0
    assert pitch_bend_value(2400) == 16383

    values = [pitch_bend_value(cents) for cents in range(-2400, 2401, 25)]
    assert all(a < b for a, b in zip(values, values[1:]))


def test_channel_map():
    tracks = [
        TrackMetadata(midi_channel=0),
        TrackMetadata(),
        TrackMetadata(drums=1),
        TrackMetadata(midi_channel=2),
        TrackMetadata(),
    ]
    tbt = make_tbt([{}] * 5, tracks=tracks)
    assert compute_channel_map(tbt) == {0: 0, 1: 1, 2: 9, 3: 2, 4: 4}


def test_channel_map_never_assigns_drum_channel():
    tbt = make_tbt([{}] * 10, tracks=[TrackMetadata() for _ in range(10)])
    assert sorted(compute_channel_map(tbt).values()) == [0, 1, 2, 3, 4, 5, 6, 7, 8, 10]


def test_channel_map_underflow(capsys):
    tbt = make_tbt([{}] * 16, tracks=[TrackMetadata() for _ in range(16)])
    channel_map = compute_channel_map(tbt)
    assert channel_map[14] == 15
    assert channel_map[15] == 0
    assert "no free MIDI channel" in capsys.readouterr().err


def test_note_offsets():
    tracks = [TrackMetadata(tuning=[1, 0, 0, 0, 0, -2, 0, 0], transpose_half_steps=3)]
    offsets = compute_note_offsets(make_tbt([{}], tracks=tracks))
    assert offsets[0][0] == -0x80 + 1 + 3 + 0x28
    assert offsets[0][5] == -0x80 - 2 + 3 + 0x40

    # Transpose is ignored before version 0x6e, and strings run high e first
    offsets = compute_note_offsets(make_tbt([{}], version=0x6a, tracks=tracks))
    assert len(offsets[0]) == 6
    assert offsets[0][0] == -0x80 + 1 + 0x40


def test_tempo_map_from_effect_bytes():
    notes = {2: record(effect=ord('T'), value=90), 5: record(effect=ord('t'), value=10)}
    tbt = make_tbt([notes])
    assert compute_tempo_map(tbt) == {2: {Rational(2): 90}, 5: {Rational(5): 260}}


def test_tempo_map_with_alternate_time_regions():
    changes = [{3: {TrackEffect.TEMPO: 150}}]
    regions = [{0: [3, 2], 1: [1, 2]}]
    tbt = make_tbt([{}], version=0x72, regions=regions, changes=changes)
    # Spaces 0 and 1 last 3/2 and 1/2, so space 3 starts at actual space 3
    assert compute_tempo_map(tbt) == {3: {Rational(3): 150}}

    regions = [{0: [3, 2]}]
    tbt = make_tbt([{}], version=0x72, regions=regions, changes=changes)
    assert compute_tempo_map(tbt) == {3: {Rational(7, 2): 150}}


def test_tempo_conflict(capsys):
    tbt = make_tbt([{1: record(effect=ord('T'), value=90)}, {1: record(effect=ord('T'), value=100)}])
    assert compute_tempo_map(tbt) == {1: {Rational(1): 100}}
    assert "conflicting tempo" in capsys.readouterr().err


def test_repeat_tables_ge70():
    bar_lines = {
        0: [OPEN_REPEAT_MASK_GE70, 0],
        4: [CLOSE_REPEAT_MASK_GE70, 2],
        8: [OPEN_REPEAT_MASK_GE70 | CLOSE_REPEAT_MASK_GE70, 1],
    }
    tbt = make_tbt([{}], version=0x70, space_count=12, bar_lines=bar_lines)
    tables = compute_repeat_tables(tbt)

    assert len(tables) == 2
    for table in tables:
        assert table.open_spaces == {0, 8}
        # The close flag of a bar applies at the next bar line
        assert {space: (close.open_space, close.repeats) for space, close in table.close_map.items()} == {
            8: (0, 2),
            12: (8, 1),
        }
    assert tables[0].close_map[8] is not tables[1].close_map[8]


def test_repeat_tables_lt70(capsys):
    bar_lines = {
        3: [BarLine.OPEN],
        7: [BarLine.CLOSE | (2 << 4)],
        11: [BarLine.CLOSE | (1 << 4)],
        13: [BarLine.SINGLE],
    }
    tbt = make_tbt([{}], space_count=16, bar_lines=bar_lines)
    table = compute_repeat_tables(tbt)[0]

    assert table.open_spaces == {4, 8}
    assert {space: (close.open_space, close.repeats) for space, close in table.close_map.items()} == {
        8: (4, 2),
        12: (8, 1),
    }
    assert "has no open repeat" in capsys.readouterr().err


def test_dont_let_ring():
    notes = {0: record(0x85), 1: record(0x87)}
    tbt = make_tbt([notes], space_count=2, string_count=1, clean_guitar=0x80)
    midi = convert_to_midi(tbt, QUIET)

    voice = midi.tracks[1]
    sequence = [(e.type, e.note) for e in voice if e.type != MidiEventType.META or e.is_end_of_track()]
    assert sequence == [
        (MidiEventType.NOTE_ON, LOW_E + 5),
        (MidiEventType.NOTE_OFF, LOW_E + 5),
        (MidiEventType.NOTE_ON, LOW_E + 7),
        (MidiEventType.NOTE_OFF, LOW_E + 7),
        (MidiEventType.META, None),
    ]
    assert notes_of(voice) == [(0, 'on', 45), (48, 'off', 45), (48, 'on', 47), (96, 'off', 47)]


def test_let_ring():
    # Strings ring until they are played again
    notes = {0: record(0x80, 0x82), 1: record(0x83), 2: record(0, STOPPED)}
    tbt = make_tbt([notes], space_count=4, string_count=2)
    voice = convert_to_midi(tbt, QUIET).tracks[1]

    assert notes_of(voice) == [
        (0, 'on', 40), (0, 'on', 47),
        (48, 'off', 40), (48, 'on', 43),
        (96, 'off', 47),
        (192, 'off', 43),
    ]


def test_muted_notes():
    notes = {0: record(MUTED), 2: record(0x83)}
    tbt = make_tbt([notes], space_count=4, string_count=1)
    voice = convert_to_midi(tbt, QUIET).tracks[1]

    # Muted notes play the open string for 2 ticks
    assert notes_of(voice) == [(0, 'on', 40), (2, 'off', 40), (96, 'on', 43), (192, 'off', 43)]


def test_invalid_note_byte():
    tbt = make_tbt([{0: record(0x20)}], string_count=1)
    with pytest.raises(ValueError, match="note byte"):
        convert_to_midi(tbt)


def test_alternate_time_region():
    notes = {0: record(0x80), 1: record(0x82)}
    tbt = make_tbt([notes], version=0x70, space_count=4, string_count=1, regions=[{0: [3, 2]}])
    voice = convert_to_midi(tbt, QUIET).tracks[1]

    assert notes_of(voice)[:3] == [(0, 'on', 40), (72, 'off', 40), (72, 'on', 42)]


def test_fractional_tempo_change():
    changes = [{1: {TrackEffect.TEMPO: 60}}]
    tbt = make_tbt([{}], version=0x72, space_count=4, regions=[{0: [1, 2]}], changes=changes)
    tempo_track = convert_to_midi(tbt, QUIET).tracks[0]

    tempos = [(tick, e.micros_per_beat) for tick, e in timeline(tempo_track) if e.is_set_tempo()]
    # Space 1 starts half way through space 0
    assert tempos == [(0, 500000), (24, 1000000)]


def test_tempo_track():
    tbt = make_tbt([{3: record(effect=ord('T'), value=60)}], space_count=4, title=b'Song')
    tempo_track = convert_to_midi(tbt, QUIET).tracks[0]
    events = timeline(tempo_track)

    assert events[0][1].meta_type == META_TRACK_NAME
    assert events[0][1].payload == b'Song'
    assert events[1][1].payload == bytes([4, 2, 24, 8])
    assert [(tick, e.micros_per_beat) for tick, e in events if e.is_set_tempo()] == [(0, 500000), (144, 1000000)]
    assert events[-1][1].is_end_of_track()
    assert events[-1][0] == 4 * 48


def test_lyric_events():
    tbt = make_tbt([{1: record(effect=ord('T'), value=90)}], space_count=2)
    options = ConvertOptions(emit_custom_lyric_events=True)
    tempo_track = convert_to_midi(tbt, options).tracks[0]

    lyrics = [(tick, e.payload) for tick, e in timeline(tempo_track) if e.meta_type == META_LYRIC]
    assert lyrics == [(0, b'space 0 tempo 120'), (48, b'space 1 tempo 90'), (96, b'space 2 tempo 90')]


def test_initial_events():
    tracks = [TrackMetadata(clean_guitar=0x80 | 30, volume=100, pan=20, reverb=5, chorus=6,
                            modulation=7, pitch_bend=-2400, midi_bank=2, midi_channel=4)]
    voice = convert_to_midi(make_tbt([{}], tracks=tracks)).tracks[1]

    assert voice[0].meta_type == META_TRACK_NAME
    assert voice[0].payload == b'Track 1'

    channel_events = [e for e in voice if e.is_channel_event()]
    assert all(e.channel == 4 and e.delta_time == 0 for e in channel_events)
    assert [(e.controller, e.value) for e in channel_events if e.type == MidiEventType.CONTROL_CHANGE] == [
        (0, 2), (7, 100), (10, 20), (91, 5), (93, 6), (1, 7), (101, 0), (100, 0), (6, 24), (38, 0),
    ]
    assert [e.program for e in channel_events if e.type == MidiEventType.PROGRAM_CHANGE] == [30]
    assert [e.value for e in channel_events if e.type == MidiEventType.PITCH_BEND] == [0]


def test_track_effect_bytes():
    notes = {
        1: record(effect=ord('V'), value=90),
        2: record(effect=ord('I'), value=0x80 | 40),
        3: record(0x80, effect=ord('D')),
    }
    tbt = make_tbt([notes], space_count=4, string_count=1)
    options = ConvertOptions(emit_pitch_bend_events=False)
    voice = convert_to_midi(tbt, options).tracks[1]
    events = [(tick, e) for tick, e in timeline(voice) if e.is_channel_event()]

    assert (48, CC_VOLUME, 90) in [(tick, e.controller, e.value) for tick, e in events
                                   if e.type == MidiEventType.CONTROL_CHANGE]
    assert (96, 40) in [(tick, e.program) for tick, e in events if e.type == MidiEventType.PROGRAM_CHANGE]


def test_unknown_track_effect_byte():
    tbt = make_tbt([{1: record(effect=ord('Z'))}], space_count=4)
    with pytest.raises(ValueError, match="track effect"):
        convert_to_midi(tbt)


def test_track_effect_changes():
    changes = [{
        1: {TrackEffect.VOLUME: 80, TrackEffect.PITCH_BEND: 0x10000 - 1200},
        2: {TrackEffect.INSTRUMENT: 0x80 | 12},
        3: {TrackEffect.STROKE_DOWN: 1},
    }]
    notes = {2: record(0x80, 0x80), 3: record(0x82)}
    tbt = make_tbt([notes], version=0x72, space_count=4, changes=changes, string_count=2)
    voice = convert_to_midi(tbt).tracks[1]
    events = [(tick, e) for tick, e in timeline(voice) if tick > 0]

    assert [(tick, e.type, e.controller or e.value) for tick, e in events
            if e.type in (MidiEventType.CONTROL_CHANGE, MidiEventType.PITCH_BEND)] == [
        (48, MidiEventType.CONTROL_CHANGE, CC_VOLUME),
        (48, MidiEventType.PITCH_BEND, pitch_bend_value(-1200)),
    ]
    assert [(tick, e.program) for tick, e in events if e.type == MidiEventType.PROGRAM_CHANGE] == [(96, 12)]

    # The instrument change switched to don't let ring, so space 3 silences both strings
    assert notes_of(voice) == [(96, 'on', 40), (96, 'on', 45), (144, 'off', 40), (144, 'off', 45),
                               (144, 'on', 42), (192, 'off', 42)]


def test_repeat_block_copies():
    # |: spaces 0-3 :| played 4 times, then spaces 4-7
    bar_lines = {0: [OPEN_REPEAT_MASK_GE70 | CLOSE_REPEAT_MASK_GE70, 3], 4: [0, 0]}
    notes = {0: record(0x85), 2: record(0x87), 5: record(0x89)}
    tbt = make_tbt([notes], version=0x70, space_count=8, bar_lines=bar_lines, string_count=1)
    midi = convert_to_midi(tbt, QUIET)
    voice = midi.tracks[1]

    assert notes_of(voice) == [
        (0, 'on', 45), (96, 'off', 45), (96, 'on', 47),
        (192, 'off', 47), (192, 'on', 45), (288, 'off', 45), (288, 'on', 47),
        (384, 'off', 47), (384, 'on', 45), (480, 'off', 45), (480, 'on', 47),
        (576, 'off', 47), (576, 'on', 45), (672, 'off', 45), (672, 'on', 47),
        (816, 'off', 47), (816, 'on', 49),
        (960, 'off', 49),
    ]

    # Every pass after the first emits the same events with the same delta times
    passes = [voice[i:i + 4] for i in (4, 8, 12)]
    assert passes[0] == passes[1] == passes[2]

    # The tempo track is expanded the same way
    assert timeline(midi.tracks[0])[-1][0] == 960


def test_repeat_close_inside_region(capsys):
    # |: spaces 0-3 :| played twice, but space 3 lasts 3/2 so the close is crossed half a space late
    bar_lines = {0: [OPEN_REPEAT_MASK_GE70 | CLOSE_REPEAT_MASK_GE70, 1], 4: [0, 0]}
    notes = {0: record(0x80), 4: record(0x82)}
    tbt = make_tbt([notes], version=0x70, space_count=8, bar_lines=bar_lines, string_count=1,
                   regions=[{3: [3, 2]}])
    voice = convert_to_midi(tbt, QUIET).tracks[1]

    # The first pass is cut back to 4 spaces; the last pass keeps its extra half space
    assert notes_of(voice) == [
        (0, 'on', 40),
        (192, 'off', 40), (192, 'on', 40),
        (408, 'off', 40), (408, 'on', 42),
        (600, 'off', 42),
    ]
    assert "repeat 0-4 is not aligned to spaces (0 past open, 1/2 past close)" in capsys.readouterr().err


def test_events_never_move_backwards(capsys):
    out = TrackEvents(1)
    out.add(make_note_on, 0, 60, 64, at=10)
    out.add(make_note_off, 0, 60, at=4)

    assert [e.delta_time for e in out.events] == [10, 0]
    assert out.last_event_tick == 10
    assert "track 1: event at tick 4 precedes previous event at tick 10" in capsys.readouterr().err


def test_repeat_lt70():
    # Bar line after space 1 opens, after space 3 closes with 1 repeat
    bar_lines = {1: [BarLine.OPEN], 3: [BarLine.CLOSE | (1 << 4)]}
    notes = {2: record(0x80), 3: record(0x81)}
    tbt = make_tbt([notes], space_count=6, bar_lines=bar_lines, string_count=1)
    midi = convert_to_midi(tbt, QUIET)

    ons = [tick for tick, kind, _ in notes_of(midi.tracks[1]) if kind == 'on']
    assert ons == [96, 144, 192, 240]
    assert timeline(midi.tracks[1])[-1][0] == 8 * 48
    assert timeline(midi.tracks[0])[-1][0] == 8 * 48


def test_convert_shape():
    tbt = make_tbt([{}, {}, {}], space_count=4)
    midi = MidiConverter(tbt).convert()
    assert midi.format == 1
    assert midi.division == 192
    assert midi.track_count == 4
    for track in midi.tracks:
        assert track[-1].is_end_of_track()
        assert all(e.delta_time >= 0 for e in track)


def test_twinkle_times():
    midi = convert_to_midi(parse_tbt_bytes(TWINKLE_TBT))
    assert midi.track_count == 2

    times = midi_file_times(parse_midi_bytes(export_midi_bytes(midi)))
    assert times.last_note_on_tick == 8832
    assert times.last_note_off_tick == 9216
    assert times.last_end_of_track_tick == 9216
    assert times.last_note_on_micros == 23000000
    assert times.last_note_off_micros == 24000000
    assert times.last_end_of_track_micros == 24000000


def test_twinkle_tempo_track():
    midi = convert_to_midi(parse_tbt_bytes(TWINKLE_TBT))
    tempos = [e for e in midi.tracks[0] if e.type == MidiEventType.META and e.meta_type == META_SET_TEMPO]
    assert [e.micros_per_beat for e in tempos] == [500000]
