#!/usr/bin/env python3
"""
Convert TabIt .tbt tablature files to Standard MIDI Files.

Usage: tbt2midi --input-file song.tbt [--output-file song.mid] [--config options.yaml]
"""

import sys
import traceback
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import yaml

from midi_converter import ConvertOptions, convert_to_midi
from midi_writer import export_midi_file
from tbt_format import TbtError, TbtFile
from tbt_parser import parse_tbt_file


DEFAULT_OUTPUT_FILE = 'out.mid'


def load_config(config_path: Union[str, Path]) -> Tuple[ConvertOptions, Optional[str]]:
    """Load conversion options and an optional output_file from a YAML file."""
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"{config_path}: expected a mapping of options")

    config = dict(config)
    output_file = config.pop('output_file', None)
    return ConvertOptions.from_dict(config), output_file


def describe(tbt: TbtFile) -> List[str]:
    """Song information lines printed before converting."""
    metadata = tbt.metadata
    lines = []
    for label, value in (('Title', metadata.title),
                         ('Artist', metadata.artist),
                         ('Album', metadata.album),
                         ('Transcribed by', metadata.transcribed_by)):
        if value:
            lines.append(f"{label}: {value.decode('latin-1')}")
    lines.append(f"Version: {tbt.version_string}")
    lines.append(f"Tracks: {tbt.track_count}")
    return lines


def convert_file(input_file: Union[str, Path], output_file: Union[str, Path],
                 options: Optional[ConvertOptions] = None):
    """Parse a tablature file, convert it, and write the MIDI file."""
    print(f"Input: {input_file}")
    tbt = parse_tbt_file(input_file)

    for line in describe(tbt):
        print(line)

    midi = convert_to_midi(tbt, options)
    export_midi_file(midi, output_file)

    print(f"Wrote {output_file} ({midi.track_count} tracks, {len(midi)} events)")


def parse_args(argv: List[str]) -> Optional[Dict[str, str]]:
    """Parse command-line flags. Returns None on bad usage."""
    args = {}
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg in ('--input-file', '--output-file', '--config') and i + 1 < len(argv):
            args[arg[2:].replace('-', '_')] = argv[i + 1]
            i += 1  # Skip the value
        else:
            print(f"Unknown argument: {arg}", file=sys.stderr)
            return None
        i += 1

    if 'input_file' not in args:
        return None
    return args


def usage():
    print("Usage: tbt2midi --input-file <song.tbt> [options]")
    print()
    print("Options:")
    print(f"  --output-file <file.mid>  - MIDI file to write (default {DEFAULT_OUTPUT_FILE})")
    print("  --config <options.yaml>   - Conversion options (see tbt2midi.yaml)")
    print()
    print("Examples:")
    print("  tbt2midi --input-file song.tbt")
    print("  tbt2midi --input-file song.tbt --output-file song.mid --config tbt2midi.yaml")


def main(argv: Optional[List[str]] = None):
    args = parse_args(sys.argv[1:] if argv is None else argv)
    if args is None:
        usage()
        sys.exit(1)

    try:
        options = None
        output_file = None
        if 'config' in args:
            options, output_file = load_config(args['config'])

        # The command line wins over the config file
        output_file = args.get('output_file', output_file) or DEFAULT_OUTPUT_FILE

        convert_file(args['input_file'], output_file, options)
    except TbtError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        print("\nFull traceback:", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
