"""Audio decoding for sync offset estimation.

Uses soundfile/libsndfile where possible and falls back to ffmpeg decoding
for formats like AC-3/E-AC-3 or audio inside MP4/MKV containers.
"""
from __future__ import annotations
import io
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional, Tuple, Union, cast

import numpy as np
import soundfile as sf
from numpy.typing import NDArray

from sync_errors import DecodeError


logger = logging.getLogger(__name__)

# float32 throughout the audio path
FloatArray = NDArray[np.float32]
MonoArray = FloatArray
MultiChArray = FloatArray  # shape: (n, ch)

PathLike = Union[str, 'os.PathLike[str]']

FFMPEG_TRIGGER_EXTS = {'.ac3', '.eac3', '.dts', '.dtshd', '.mka', '.mkv', '.mp4', '.m4a', '.m4v', '.ts', '.vob'}

_SF_ERRORS = (sf.SoundFileError, RuntimeError, TypeError)


@dataclass(frozen=True)
class SampleBuffer:
    """One decoded channel of one file.

    ``samples`` is made read-only on construction, so a buffer can be handed
    down the pipeline without copying.
    """
    samples: MonoArray
    sample_rate: float

    def __post_init__(self) -> None:
        arr = np.array(self.samples, dtype=np.float32).reshape(-1)
        arr.flags.writeable = False
        object.__setattr__(self, 'samples', arr)
        object.__setattr__(self, 'sample_rate', float(self.sample_rate))
        if self.sample_rate <= 0:
            raise ValueError(f'sample rate must be positive, got {self.sample_rate}')

    @property
    def frame_count(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        """Length in seconds."""
        return self.frame_count / self.sample_rate


def _ffmpeg_exists() -> bool:
    return shutil.which('ffmpeg') is not None


def _read_audio_via_ffmpeg(path: str) -> Tuple[MultiChArray, int]:
    """Decode any input to WAV (float32) via ffmpeg and read with soundfile.

    Preserves original channel count and sample rate.
    """
    if not _ffmpeg_exists():
        raise DecodeError(f'cannot decode {os.path.basename(path)}: ffmpeg not found on PATH')

    cmd = [
        'ffmpeg', '-v', 'error', '-nostdin',
        '-i', path,
        '-map', 'a:0',  # pick first audio stream
        '-c:a', 'pcm_f32le',
        '-f', 'wav',
        'pipe:1'
    ]
    try:
        proc = subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except subprocess.CalledProcessError as e:
        raise DecodeError(
            f'ffmpeg failed to decode {os.path.basename(path)}: {e.stderr.decode("utf-8", "ignore").strip()}'
        ) from e

    try:
        data, sr = sf.read(io.BytesIO(proc.stdout), always_2d=True, dtype='float32')
    except _SF_ERRORS as e:
        raise DecodeError(f'could not read ffmpeg output for {os.path.basename(path)}: {e}') from e
    return cast(MultiChArray, data), int(sr)


def read_audio(path: PathLike) -> Tuple[MultiChArray, int]:
    """Read all channels of ``path`` as float32, shape (n, ch).

    Formats libsndfile does not handle are decoded through ffmpeg. Raises
    DecodeError when neither route produces samples.
    """
    path = os.fspath(path)
    if not os.path.exists(path):
        raise DecodeError(f'no such file: {path}')
    ext = os.path.splitext(path)[1].lower()
    try_sf_first = ext not in FFMPEG_TRIGGER_EXTS

    sf_error: Optional[Exception] = None
    if try_sf_first:
        try:
            data, sr = sf.read(path, always_2d=True, dtype='float32')
            return cast(MultiChArray, data), int(sr)
        except _SF_ERRORS as e:
            logger.debug('soundfile could not read %s (%s), trying ffmpeg', path, e)
            sf_error = e

    try:
        return _read_audio_via_ffmpeg(path)
    except DecodeError as e:
        if sf_error is not None:
            raise DecodeError(f'{e}; soundfile: {sf_error}') from e
        # ffmpeg was tried first for this extension; give libsndfile a last chance
        if not try_sf_first:
            try:
                data2, sr2 = sf.read(path, always_2d=True, dtype='float32')
                return cast(MultiChArray, data2), int(sr2)
            except _SF_ERRORS:
                pass
        raise


def decode(path: PathLike, channel: int = 0) -> SampleBuffer:
    """Decode one channel of an audio file into a SampleBuffer."""
    data, sr = read_audio(path)
    ch = data.shape[1]
    if not 0 <= channel < ch:
        raise DecodeError(f'{os.path.basename(os.fspath(path))} has {ch} channel(s), no channel {channel}')
    buf = SampleBuffer(samples=data[:, channel], sample_rate=sr)
    logger.debug('decoded %s: %d frames, %d ch @ %g Hz', path, buf.frame_count, ch, buf.sample_rate)
    return buf


def apply_shift_multichannel(x: MultiChArray, shift: int) -> MultiChArray:
    """Shift by inserting/removing samples at the start; positive shift delays x."""
    n, ch = x.shape
    if shift == 0:
        return x
    if shift > 0:
        pad = np.zeros((shift, ch), dtype=x.dtype)
        return cast(MultiChArray, np.vstack([pad, x]))
    else:
        s = -shift
        if s >= n:
            return cast(MultiChArray, np.zeros((0, ch), dtype=x.dtype))
        return cast(MultiChArray, x[s:])
