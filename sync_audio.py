#!/usr/bin/env python3
"""
Audio track sync tool or, audio super sync (ASS)

Given two recordings of the same event (e.g. a camera mic and a separate
recorder), estimate the constant offset between them via cross-correlation of
their silence-trimmed, decimated sample streams, print it, and optionally write
aligned copies.

Usage:
    python sync_audio.py a.wav b.wav [--stride 50] [--silence-epsilon 0.0] \
            [--channel 0] [--method auto|direct|fft] [--parallel] [--json] \
            [--write --out aligned/ --suffix _aligned --no-trim] [-v]

Outputs:
- Prints the offset of B relative to A in seconds (positive => B's content occurs later)
- With --json prints {"syncOffset": seconds, ...}
- With --write, saves A and a shifted B into --out so both start in sync

Exit status:
    0 success, 2 bad arguments, 3 a file could not be decoded,
    4 no offset could be estimated (sample rate mismatch, silence, no peak, stride too large)

Note: This estimates a single global offset (no time-warp). If recordings have drift,
use DAW time-stretch or dynamic time warping tools.
"""
from __future__ import annotations
import argparse
import json
import logging
import os
import sys
from typing import List, Optional

import soundfile as sf

from audio_io import MultiChArray, apply_shift_multichannel, read_audio
from sync_errors import DecodeError, SyncError
from sync_offset import (
    CORRELATION_METHODS, DEFAULT_SILENCE_EPSILON, DEFAULT_STRIDE,
    OffsetResult, SyncOptions, analyse_sync_offset,
)


EXIT_OK = 0
EXIT_DECODE_ERROR = 3
EXIT_SYNC_ERROR = 4

logger = logging.getLogger('sync_audio')


def trim_to_min_length(arrays: List[MultiChArray]) -> List[MultiChArray]:
    if not arrays:
        return arrays
    m = min(a.shape[0] for a in arrays)
    return [a[:m] for a in arrays]


def write_aligned(path_a: str, path_b: str, offset_sec: float, out_dir: str, suffix: str, trim: bool) -> List[str]:
    """Write A unchanged and B shifted by -offset so their content lines up."""
    os.makedirs(out_dir, exist_ok=True)
    a, sr_a = read_audio(path_a)
    b, sr_b = read_audio(path_b)
    b_shifted = apply_shift_multichannel(b, -int(round(offset_sec * sr_b)))
    outputs = [a, b_shifted]
    if trim:
        outputs = trim_to_min_length(outputs)

    written: List[str] = []
    for p, data, sr in zip((path_a, path_b), outputs, (sr_a, sr_b)):
        base = os.path.splitext(os.path.basename(p))[0]
        out_path = os.path.join(out_dir, f'{base}{suffix}.wav')
        sf.write(out_path, data, sr)
        written.append(out_path)
    return written


def format_result(path_a: str, path_b: str, r: OffsetResult) -> str:
    sign = '+' if r.seconds >= 0 else ''
    return (f'{os.path.basename(path_b)}: offset {sign}{r.seconds:.4f} s relative to '
            f'{os.path.basename(path_a)} (peak {r.peak_value:.4g} at shift {r.shift_windows:+g}, stride {r.stride})')


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description='Estimate the sync offset between two recordings using cross-correlation.')
    ap.add_argument('file_a', help='First recording.')
    ap.add_argument('file_b', help='Second recording; the offset is reported for it relative to the first.')
    ap.add_argument('--stride', type=int, default=DEFAULT_STRIDE, help='Keep one sample in every STRIDE (resolution ~ stride / sample rate).')
    ap.add_argument('--silence-epsilon', type=float, default=DEFAULT_SILENCE_EPSILON, help='Leading samples with |x| <= this are trimmed as silence.')
    ap.add_argument('--channel', type=int, default=0, help='0-based channel index to analyse in each file.')
    ap.add_argument('--method', choices=CORRELATION_METHODS, default='auto', help='Correlation method.')
    ap.add_argument('--parallel', action='store_true', help='Decode and preprocess both files concurrently.')
    ap.add_argument('--json', action='store_true', help='Print the result as JSON.')
    ap.add_argument('--write', action='store_true', help='Write aligned files to --out directory.')
    ap.add_argument('--out', type=str, default='aligned', help='Output directory when using --write.')
    ap.add_argument('--suffix', type=str, default='_aligned', help='Suffix for written filenames.')
    ap.add_argument('--no-trim', action='store_true', help='Do not trim aligned outputs to common length.')
    ap.add_argument('-v', '--verbose', action='store_true', help='Log pipeline details to stderr.')
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')

    try:
        opts = SyncOptions(stride=args.stride, silence_epsilon=args.silence_epsilon,
                           channel=args.channel, method=args.method, parallel=args.parallel)
    except ValueError as e:
        ap.error(str(e))

    try:
        result = analyse_sync_offset(args.file_a, args.file_b, opts)
    except DecodeError as e:
        print(f'decode error: {e}', file=sys.stderr)
        return EXIT_DECODE_ERROR
    except SyncError as e:
        print(f'sync error: {e}', file=sys.stderr)
        return EXIT_SYNC_ERROR

    if args.json:
        print(json.dumps({
            'syncOffset': result.seconds,
            'reference': args.file_a if result.reference == 'a' else args.file_b,
            'peakIndex': result.peak_index,
            'peakValue': result.peak_value,
            'stride': result.stride,
            'sampleRate': result.sample_rate,
        }))
    else:
        print(format_result(args.file_a, args.file_b, result))

    if args.write:
        try:
            written = write_aligned(args.file_a, args.file_b, result.seconds, args.out, args.suffix, not args.no_trim)
        except DecodeError as e:
            print(f'decode error: {e}', file=sys.stderr)
            return EXIT_DECODE_ERROR
        logger.info('wrote %s', ', '.join(written))
        if not args.json:
            print(f'Wrote {len(written)} files to {args.out}')

    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
