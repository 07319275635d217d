"""
Tablature to MIDI conversion.

Plays the tablature grid back into one tempo track plus one track per
tablature track. Positions are carried as exact Rationals: alternate time
regions dilate spaces by fractions, and tempo changes may fall between
spaces. Repeats are expanded in place by recording the events of one pass
of a repeated block and appending copies of them.
"""

import sys
from dataclasses import dataclass, field, fields, replace
from typing import Callable, Dict, List, Optional, Set, Tuple

from byte_util import last_found
from midi_events import (
    CC_BANK_SELECT_MSB, CC_CHORUS, CC_DATA_ENTRY_LSB, CC_DATA_ENTRY_MSB, CC_MODULATION, CC_PAN,
    CC_REVERB, CC_RPN_LSB, CC_RPN_MSB, CC_VOLUME, MidiEvent, MidiFile, TICKS_PER_BEAT,
    make_control_change, make_end_of_track, make_lyric, make_note_off, make_note_on,
    make_pitch_bend, make_program_change, make_set_tempo, make_time_signature, make_track_name,
)
from rational import Rational
from tbt_format import (
    BarLine, CLOSE_REPEAT_MASK_GE70, MUTED, OPEN_REPEAT_MASK_GE70, STOPPED, TbtFile, TrackEffect,
)


TICKS_PER_SPACE = TICKS_PER_BEAT // 4

DRUM_CHANNEL = 9

NOTE_VELOCITY = 0x40

# Muted notes sound for 1/64 s at a fixed 120 BPM, whatever the track tempo
MUTED_TICK_DURATION = 2

# Sent with the RPN 0 (pitch bend sensitivity) data entry
PITCH_BEND_RANGE = 24

# Controllers driven by the version 0x72 effect changes
EFFECT_CONTROLLERS = {
    TrackEffect.VOLUME: CC_VOLUME,
    TrackEffect.PAN: CC_PAN,
    TrackEffect.CHORUS: CC_CHORUS,
    TrackEffect.REVERB: CC_REVERB,
    TrackEffect.MODULATION: CC_MODULATION,
}

# Controllers driven by the track effect byte of a notes record (version <= 0x71)
EFFECT_BYTE_CONTROLLERS = {
    ord('V'): CC_VOLUME,
    ord('P'): CC_PAN,
    ord('C'): CC_CHORUS,
    ord('R'): CC_REVERB,
}

# Stroke and tempo effects produce no channel events
EFFECT_BYTES_IGNORED = (0x00, ord('D'), ord('U'), ord('T'), ord('t'))
EFFECTS_IGNORED = (TrackEffect.SKIP, TrackEffect.STROKE_DOWN, TrackEffect.STROKE_UP, TrackEffect.TEMPO)


@dataclass
class ConvertOptions:
    """Switches for the optional event families."""
    emit_custom_lyric_events: bool = False
    emit_control_change_events: bool = True
    emit_program_change_events: bool = True
    emit_pitch_bend_events: bool = True

    @classmethod
    def from_dict(cls, config: Dict) -> 'ConvertOptions':
        """Build options from a config mapping (e.g. loaded from YAML)."""
        known = {f.name for f in fields(cls)}
        unknown = set(config) - known
        if unknown:
            raise ValueError(f"Unknown conversion options: {', '.join(sorted(unknown))}")
        for key, value in config.items():
            if not isinstance(value, bool):
                raise ValueError(f"Conversion option {key} must be true or false, got {value!r}")
        return cls(**config)


@dataclass
class RepeatClose:
    """State of one close repeat during a track scan.

    jump counts how often the scan has reached the close: 0 initial,
    1 awaiting record, 2 recording, 3 recorded.
    """
    open_space: int
    repeats: int
    data_start: int = 0
    data_end: int = 0
    jump: int = 0
    start_tick: Optional[Rational] = None


@dataclass
class RepeatTable:
    """Repeat boundaries for one output track."""
    open_spaces: Set[int] = field(default_factory=set)
    close_map: Dict[int, RepeatClose] = field(default_factory=dict)


def micros_per_beat(bpm: int) -> int:
    if bpm <= 0:
        raise ValueError(f"Invalid tempo: {bpm} BPM")
    return min(60_000_000 // bpm, 0xffffff)


def pitch_bend_value(cents: int) -> int:
    """Map a bend in cents (-2400..2400) onto the 14-bit MIDI range, 0 -> 8192."""
    value = Rational((cents + 2400) * 16383, 4800).round()
    return max(0, min(16383, value))


def _signed16(v: int) -> int:
    return v - 0x10000 if v >= 0x8000 else v


def _track_map(maps: List[Dict], track: int) -> Dict:
    return maps[track] if track < len(maps) else {}


def _space_increment(regions: Dict[int, List[int]], space: int) -> Rational:
    """How many actual spaces a space lasts under alternate time regions."""
    region = regions.get(space)
    if region is None:
        return Rational(1)
    return Rational(region[0], region[1])


def compute_channel_map(tbt: TbtFile) -> Dict[int, int]:
    """Resolve every track to a MIDI channel.

    Explicit channels are taken first. Tracks set to automatic (-1) get the
    lowest free channel, never 9. Drum tracks always play on channel 9.
    """
    tracks = tbt.metadata.tracks
    available = [c for c in range(16) if c != DRUM_CHANNEL]
    channel_map: Dict[int, int] = {}

    for track, meta in enumerate(tracks):
        if not 0 <= meta.midi_channel <= 15:
            continue
        if meta.midi_channel in available:
            available.remove(meta.midi_channel)
        channel_map[track] = meta.midi_channel

    reused = 0
    for track in range(len(tracks)):
        if track in channel_map:
            continue
        if available:
            channel_map[track] = available.pop(0)
        else:
            non_drum = [c for c in range(16) if c != DRUM_CHANNEL]
            channel_map[track] = non_drum[reused % len(non_drum)]
            reused += 1
            print(f"WARNING: no free MIDI channel for track {track}, sharing channel {channel_map[track]}",
                  file=sys.stderr)

    for track, meta in enumerate(tracks):
        if meta.drums:
            channel_map[track] = DRUM_CHANNEL

    return dict(sorted(channel_map.items()))


def compute_tempo_map(tbt: TbtFile) -> Dict[int, Dict[Rational, int]]:
    """Collect tempo changes from all tracks as floor(actual space) -> {actual space -> BPM}."""
    tempo_map: Dict[int, Dict[Rational, int]] = {}
    effect_index = 2 * tbt.strings_per_track

    for track in range(tbt.track_count):
        notes = _track_map(tbt.body.notes, track)
        regions = _track_map(tbt.body.alternate_time_regions, track) if tbt.has_alternate_time_regions else {}
        changes = _track_map(tbt.body.track_effect_changes, track)

        actual_space = Rational(0)
        for space in range(tbt.track_space_count(track)):
            tempo = None
            if tbt.version == 0x72:
                tempo = changes.get(space, {}).get(TrackEffect.TEMPO)
            elif space in notes:
                record = notes[space]
                if record[effect_index] == ord('T'):
                    tempo = record[effect_index + 3]
                elif record[effect_index] == ord('t'):
                    tempo = record[effect_index + 3] + 250

            if tempo is not None:
                at_space = tempo_map.setdefault(actual_space.floor(), {})
                if actual_space in at_space and at_space[actual_space] != tempo:
                    print(f"WARNING: space {actual_space} has conflicting tempo changes: "
                          f"{at_space[actual_space]}, {tempo}", file=sys.stderr)
                at_space[actual_space] = tempo

            actual_space += _space_increment(regions, space)

    return {floor: dict(sorted(changes.items())) for floor, changes in sorted(tempo_map.items())}


def _repeat_boundaries(tbt: TbtFile) -> Tuple[Set[int], Dict[int, Tuple[int, int]]]:
    """Find open repeat boundaries and close boundary -> (open boundary, repeats).

    A boundary is the space index the bar line stands in front of.
    """
    opens: Set[int] = set()
    closes: Dict[int, Tuple[int, int]] = {}
    last_open_space = 0
    open_declared = False

    def open_at(boundary: int):
        nonlocal last_open_space, open_declared
        opens.add(boundary)
        last_open_space = boundary
        open_declared = True

    def close_at(boundary: int, repeats: int):
        nonlocal last_open_space, open_declared
        if not open_declared:
            print(f"WARNING: close repeat at space {boundary} has no open repeat, "
                  f"repeating from space {last_open_space}", file=sys.stderr)
            opens.add(last_open_space)
        closes[boundary] = (last_open_space, repeats)
        # A later close without its own open repeats from here
        last_open_space = boundary
        open_declared = False

    bar_lines = tbt.body.bar_lines

    if tbt.version >= 0x70:
        # Bar lines stand before their space. A close flag belongs to the end
        # of its bar, i.e. the next bar line.
        pending_close = None
        for space in sorted(set(bar_lines) | {tbt.bar_lines_space_count}):
            flags, repeats = bar_lines.get(space, (0, 0))
            if pending_close is not None:
                close_at(space, pending_close)
                pending_close = None
            if flags & OPEN_REPEAT_MASK_GE70:
                open_at(space)
            if flags & CLOSE_REPEAT_MASK_GE70:
                pending_close = repeats
    else:
        # Bar lines stand after their space
        for space, (value,) in sorted(bar_lines.items()):
            change = value & 0x0f
            if change == BarLine.CLOSE:
                close_at(space + 1, value >> 4)
            elif change == BarLine.OPEN:
                open_at(space + 1)
            elif change not in (BarLine.SINGLE, BarLine.DOUBLE):
                raise ValueError(f"invalid bar line 0x{value:02x} at space {space}")

    return opens, closes


def compute_repeat_tables(tbt: TbtFile) -> List[RepeatTable]:
    """Fresh repeat tables for the tempo track (index 0) and each voice track (index track + 1)."""
    opens, closes = _repeat_boundaries(tbt)
    tables = []
    for _ in range(tbt.track_count + 1):
        tables.append(RepeatTable(
            open_spaces=set(opens),
            close_map={close: RepeatClose(open_space=open_space, repeats=repeats)
                       for close, (open_space, repeats) in sorted(closes.items())},
        ))
    return tables


def compute_note_offsets(tbt: TbtFile) -> List[List[int]]:
    """Per track and string, the value to add to a note byte (>= 0x80) to get the MIDI note."""
    open_strings = tbt.open_string_notes()
    offsets = []
    for meta in tbt.metadata.tracks:
        transpose = meta.transpose_half_steps if tbt.version >= 0x6e else 0
        offsets.append([-0x80 + meta.tuning[string] + transpose + open_strings[string]
                        for string in range(tbt.strings_per_track)])
    return offsets


class TrackEvents:
    """Event list of one output track plus its tick bookkeeping.

    tick is the exact scan position; deltas are measured between rounded
    ticks. held_ticks maps string -> tick of a muted note still sounding.
    """

    def __init__(self, track_num: int):
        self.track_num = track_num
        self.events: List[MidiEvent] = []
        self.tick = Rational(0)
        self.last_event_tick = 0
        self.held_ticks: Dict[int, int] = {}

    def add(self, make: Callable[..., MidiEvent], *args, at: Optional[int] = None):
        """Append make(delta, *args) at the current rounded tick, or at tick `at`."""
        event_tick = self.tick.round() if at is None else at
        delta = event_tick - self.last_event_tick
        if delta < 0:
            print(f"WARNING: track {self.track_num}: event at tick {event_tick} precedes previous event "
                  f"at tick {self.last_event_tick}", file=sys.stderr)
            delta = 0
            event_tick = self.last_event_tick
        self.events.append(make(delta, *args))
        self.last_event_tick = event_tick

    def check_repeat(self, close: RepeatClose) -> bool:
        """Advance a close repeat reached by the scan. Returns True when the
        scan must rewind to the open repeat."""
        if close.jump == 0:
            if close.repeats > 0:
                close.repeats -= 1
                close.jump = 1
                return True
        elif close.jump == 1:
            if close.repeats > 0:
                close.data_start = len(self.events)
                close.start_tick = self.tick
                close.repeats -= 1
                close.jump = 2
                return True
        elif close.jump == 2:
            close.data_end = len(self.events)
            close.jump = 3
            self._replay(close)
        return False

    def _replay(self, close: RepeatClose):
        """Append the remaining repeats as copies of the recorded pass."""
        block = self.events[close.data_start:close.data_end]
        copies = close.repeats
        close.repeats = 0

        for _ in range(copies):
            self.events.extend(replace(e) for e in block)

        shift = copies * sum(e.delta_time for e in block)
        self.tick += (self.tick - close.start_tick) * copies
        self.last_event_tick += shift
        for string in self.held_ticks:
            self.held_ticks[string] += shift


class MidiConverter:
    """Converts a parsed tablature file to a Type 1 MIDI file."""

    def __init__(self, tbt: TbtFile, options: Optional[ConvertOptions] = None):
        self.tbt = tbt
        self.options = options or ConvertOptions()
        self.tempo_map = compute_tempo_map(tbt)
        self.channel_map = compute_channel_map(tbt)
        self.note_offsets = compute_note_offsets(tbt)
        self.tempo_changes = {actual: bpm for changes in self.tempo_map.values() for actual, bpm in changes.items()}
        self.repeat_tables: List[RepeatTable] = []

    def convert(self) -> MidiFile:
        # Repeat state is consumed by the scans
        self.repeat_tables = compute_repeat_tables(self.tbt)

        midi = MidiFile(format=1, division=TICKS_PER_BEAT)
        midi.tracks.append(self._convert_tempo_track())
        for track in range(self.tbt.track_count):
            midi.tracks.append(self._convert_voice_track(track))
        return midi

    def _tempo_at(self, space: int) -> int:
        """BPM in effect at the start of a space."""
        at = last_found(self.tempo_changes, Rational(space))
        return self.tbt.initial_tempo if at is None else self.tempo_changes[at]

    def _convert_tempo_track(self) -> List[MidiEvent]:
        tbt = self.tbt
        out = TrackEvents(0)
        table = self.repeat_tables[0]

        out.add(make_track_name, tbt.metadata.title)
        out.add(make_time_signature)
        out.add(make_set_tempo, micros_per_beat(tbt.initial_tempo))

        space_count = tbt.bar_lines_space_count
        space = 0
        while space <= space_count:
            close = table.close_map.get(space)
            if close is not None and out.check_repeat(close):
                space = close.open_space
                continue

            if self.options.emit_custom_lyric_events:
                out.add(make_lyric, f"space {space} tempo {self._tempo_at(space)}".encode('ascii'))

            for actual_space, bpm in self.tempo_map.get(space, {}).items():
                at = (out.tick + (actual_space - space) * TICKS_PER_SPACE).round()
                out.add(make_set_tempo, micros_per_beat(bpm), at=at)

            out.tick += TICKS_PER_SPACE
            space += 1

        # Back up over the extra space
        out.tick -= TICKS_PER_SPACE
        out.add(make_end_of_track)

        return out.events

    def _emit_initial_events(self, out: TrackEvents, track: int, channel: int):
        meta = self.tbt.metadata.tracks[track]
        options = self.options

        out.add(make_track_name, f"Track {track + 1}".encode('ascii'))

        if options.emit_control_change_events and meta.midi_bank != 0:
            out.add(make_control_change, channel, CC_BANK_SELECT_MSB, meta.midi_bank)

        if options.emit_program_change_events:
            out.add(make_program_change, channel, meta.midi_program)

        if options.emit_control_change_events:
            for controller, value in ((CC_VOLUME, meta.volume),
                                      (CC_PAN, meta.pan),
                                      (CC_REVERB, meta.reverb),
                                      (CC_CHORUS, meta.chorus),
                                      (CC_MODULATION, meta.modulation),
                                      (CC_RPN_MSB, 0),
                                      (CC_RPN_LSB, 0),
                                      (CC_DATA_ENTRY_MSB, PITCH_BEND_RANGE),
                                      (CC_DATA_ENTRY_LSB, 0)):
                out.add(make_control_change, channel, controller, value)

        if options.emit_pitch_bend_events:
            out.add(make_pitch_bend, channel, pitch_bend_value(meta.pitch_bend))

    def _emit_track_effects(self, out: TrackEvents, channel: int, space: int,
                            record: Optional[List[int]], changes: Dict[TrackEffect, int],
                            dont_let_ring: bool) -> bool:
        """Emit the channel events for a space's track effects. Returns the new don't-let-ring mode."""
        options = self.options

        if self.tbt.version == 0x72:
            for effect, value in changes.items():
                if effect == TrackEffect.INSTRUMENT:
                    dont_let_ring = (value & 0x80) != 0
                    if options.emit_program_change_events:
                        out.add(make_program_change, channel, value & 0x7f)
                elif effect in EFFECT_CONTROLLERS:
                    if options.emit_control_change_events:
                        out.add(make_control_change, channel, EFFECT_CONTROLLERS[effect], value & 0x7f)
                elif effect == TrackEffect.PITCH_BEND:
                    if options.emit_pitch_bend_events:
                        out.add(make_pitch_bend, channel, pitch_bend_value(_signed16(value)))
                elif effect not in EFFECTS_IGNORED:
                    raise ValueError(f"Unexpected track effect {effect} at space {space}")
            return dont_let_ring

        if record is None:
            return dont_let_ring

        effect_index = 2 * self.tbt.strings_per_track
        effect = record[effect_index]
        value = record[effect_index + 3]

        if effect == ord('I'):
            dont_let_ring = (value & 0x80) != 0
            if options.emit_program_change_events:
                out.add(make_program_change, channel, value & 0x7f)
        elif effect in EFFECT_BYTE_CONTROLLERS:
            if options.emit_control_change_events:
                out.add(make_control_change, channel, EFFECT_BYTE_CONTROLLERS[effect], value & 0x7f)
        elif effect not in EFFECT_BYTES_IGNORED:
            raise ValueError(f"Unexpected track effect byte 0x{effect:02x} at space {space}")

        return dont_let_ring

    def _convert_voice_track(self, track: int) -> List[MidiEvent]:
        tbt = self.tbt
        meta = tbt.metadata.tracks[track]
        out = TrackEvents(track + 1)
        table = self.repeat_tables[track + 1]
        channel = self.channel_map[track]
        offsets = self.note_offsets[track]
        notes = _track_map(tbt.body.notes, track)
        regions = _track_map(tbt.body.alternate_time_regions, track) if tbt.has_alternate_time_regions else {}
        changes = _track_map(tbt.body.track_effect_changes, track) if tbt.version == 0x72 else {}
        string_count = meta.string_count
        space_count = tbt.track_space_count(track)

        self._emit_initial_events(out, track, channel)

        dont_let_ring = meta.dont_let_ring
        playing = [0] * string_count  # Note byte sounding on each string, 0 if silent
        opens: Dict[int, Tuple[Rational, int]] = {}  # open boundary -> (actual space, space)

        space = 0
        actual_space = Rational(0)
        last_boundary = -1

        # One extra space releases anything still sounding at the end
        while space <= space_count:

            # Repeats and opens on each actual-space boundary crossed since the last check
            rewound = False
            for boundary in range(last_boundary + 1, actual_space.floor() + 1):
                close = table.close_map.get(boundary)
                if close is not None and out.check_repeat(close):
                    if close.open_space not in opens:
                        raise ValueError(f"Track {track}: repeat from space {boundary} to unreached open "
                                         f"repeat at space {close.open_space}")
                    open_actual_space, open_space = opens[close.open_space]
                    past_close = actual_space - boundary
                    past_open = open_actual_space - close.open_space
                    if past_close != 0 or past_open != 0:
                        print(f"WARNING: track {track}: repeat {close.open_space}-{boundary} is not aligned to "
                              f"spaces ({past_open} past open, {past_close} past close)", file=sys.stderr)
                    out.tick += (past_open - past_close) * TICKS_PER_SPACE
                    space = open_space
                    actual_space = open_actual_space
                    last_boundary = close.open_space
                    rewound = True
                    break

                if boundary in table.open_spaces:
                    table.open_spaces.discard(boundary)
                    opens[boundary] = (actual_space, space)

            if rewound:
                continue
            last_boundary = max(last_boundary, actual_space.floor())

            rounded_tick = out.tick.round()

            # Muted notes
            for string, held_tick in sorted(out.held_ticks.items()):
                out.add(make_note_off, channel, 0x80 + offsets[string], 0,
                        at=min(held_tick + MUTED_TICK_DURATION, rounded_tick))
            out.held_ticks.clear()

            record = notes.get(space) if space < space_count else None
            ons = record[:string_count] if record is not None else []
            for string, on in enumerate(ons):
                if on not in (0, MUTED, STOPPED) and on < 0x80:
                    raise ValueError(f"Track {track}: unexpected note byte 0x{on:02x} at space {space} "
                                     f"string {string}")

            for string, off in self._note_offs(ons, playing, dont_let_ring):
                out.add(make_note_off, channel, off + offsets[string], 0)

            dont_let_ring = self._emit_track_effects(out, channel, space, record, changes.get(space, {}),
                                                     dont_let_ring)

            for string, on in enumerate(ons):
                if on == MUTED:
                    out.add(make_note_on, channel, 0x80 + offsets[string], NOTE_VELOCITY)
                    out.held_ticks[string] = out.last_event_tick
                elif on >= 0x80:
                    out.add(make_note_on, channel, on + offsets[string], NOTE_VELOCITY)

            increment = _space_increment(regions, space)
            out.tick += increment * TICKS_PER_SPACE
            actual_space += increment
            space += 1

        out.tick -= TICKS_PER_SPACE

        for string, off in enumerate(playing):
            if off:
                out.add(make_note_off, channel, off + offsets[string], 0)

        out.add(make_end_of_track)

        return out.events

    @staticmethod
    def _note_offs(ons: List[int], playing: List[int], dont_let_ring: bool) -> List[Tuple[int, int]]:
        """Update the sounding strings for a space's note bytes.

        Returns (string, note byte) pairs to release. Without let ring any new
        note byte silences every string; with let ring only the strings that
        are played again are released.
        """
        offs = []
        if dont_let_ring:
            if any(ons):
                offs = [(string, off) for string, off in enumerate(playing) if off]
                for string, on in enumerate(ons):
                    playing[string] = on if on >= 0x80 else 0
        else:
            for string, on in enumerate(ons):
                if on == 0:
                    continue
                if playing[string]:
                    offs.append((string, playing[string]))
                playing[string] = on if on >= 0x80 else 0
        return offs


def convert_to_midi(tbt: TbtFile, options: Optional[ConvertOptions] = None) -> MidiFile:
    """Convert a parsed tablature file to a MIDI file model."""
    return MidiConverter(tbt, options).convert()
