"""Estimate the offset between two recordings of the same event.

Pipeline, run once per call with no state kept between calls:

1. decode both sources (or take already decoded SampleBuffers)
2. strip leading silence from each file and keep one sample in every ``stride``
3. pad the longer-duration (reference) sequence with zeros on both sides
4. cross-correlate the padded reference with the other (kernel) sequence
5. pick the shift with the largest absolute correlation
6. turn that shift back into seconds, undoing padding and stride

Sign convention of the public result: positive => the content of file B occurs
later than the content of file A, by that many seconds.

Resolution is one decimation window, ``stride / sample_rate`` seconds
(~1.13 ms at 44.1 kHz with the default stride of 50).
"""
from __future__ import annotations
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Tuple, Union, cast

import numpy as np
from numpy.typing import NDArray
from scipy import signal

from audio_io import FloatArray, SampleBuffer, decode
from sync_errors import NoCorrelationPeakError, SampleRateMismatchError, SilentInputError, StrideTooLargeError


logger = logging.getLogger(__name__)

DEFAULT_STRIDE = 50
DEFAULT_SILENCE_EPSILON = 0.0
CORRELATION_METHODS = ('auto', 'direct', 'fft')

AudioSource = Union[str, 'os.PathLike[str]', SampleBuffer]
CorrelationResult = NDArray[np.float64]


@dataclass(frozen=True)
class SyncOptions:
    """Tuning knobs for one offset estimation.

    stride: keep one sample in every ``stride`` (larger is faster, coarser).
    silence_epsilon: samples with ``|x| <= silence_epsilon`` count as leading
        silence. 0.0 means only exact zeros are trimmed.
    channel: which channel of a decoded file to analyse.
    method: correlation method passed to scipy ('auto', 'direct' or 'fft').
    parallel: decode and preprocess both files on two worker threads.
    """
    stride: int = DEFAULT_STRIDE
    silence_epsilon: float = DEFAULT_SILENCE_EPSILON
    channel: int = 0
    method: str = 'auto'
    parallel: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.stride, bool) or not isinstance(self.stride, (int, np.integer)) or self.stride < 1:
            raise ValueError(f'stride must be a positive integer, got {self.stride!r}')
        if not np.isfinite(self.silence_epsilon) or self.silence_epsilon < 0:
            raise ValueError(f'silence_epsilon must be a finite value >= 0, got {self.silence_epsilon!r}')
        if self.channel < 0:
            raise ValueError(f'channel must be >= 0, got {self.channel!r}')
        if self.method not in CORRELATION_METHODS:
            raise ValueError(f'method must be one of {CORRELATION_METHODS}, got {self.method!r}')


@dataclass(frozen=True)
class TrimmedSequence:
    """Silence-trimmed, decimated samples of one file."""
    samples: FloatArray
    padding_count: int
    stride: int
    source_length: int

    @property
    def length(self) -> int:
        return int(self.samples.shape[0])


@dataclass(frozen=True)
class CorrelationWorkspace:
    """Zero-padded search array plus the kernel slid across it.

    search = [kernel_length zeros | reference samples | kernel_length zeros]
    """
    search: FloatArray
    kernel: FloatArray
    reference_length: int

    @property
    def kernel_length(self) -> int:
        return int(self.kernel.shape[0])

    @property
    def result_length(self) -> int:
        return self.reference_length + self.kernel_length


@dataclass(frozen=True)
class OffsetResult:
    seconds: float
    reference: str  # 'a' or 'b', the input searched over
    peak_index: int
    peak_value: float
    shift_windows: float
    stride: int
    sample_rate: float


def trim_silence(buffer: SampleBuffer, epsilon: float = DEFAULT_SILENCE_EPSILON) -> int:
    """Return the number of leading samples with ``|x| <= epsilon``."""
    loud = np.flatnonzero(np.abs(buffer.samples) > epsilon)
    if loud.size == 0:
        raise SilentInputError(
            f'no sample above {epsilon:g} in {buffer.frame_count} frames; nothing to align'
        )
    return int(loud[0])


def decimate(buffer: SampleBuffer, padding_count: int, stride: int) -> TrimmedSequence:
    """Keep samples ``padding_count, padding_count + stride, ...``.

    The result holds exactly ``(n - padding_count) // stride`` samples.
    """
    n = buffer.frame_count
    if not 0 <= padding_count < n:
        raise SilentInputError(f'padding of {padding_count} samples leaves nothing of {n} frames')
    length = (n - padding_count) // stride
    stop = padding_count + length * stride
    samples = np.array(buffer.samples[padding_count:stop:stride], dtype=np.float32)
    return TrimmedSequence(samples=samples, padding_count=padding_count, stride=stride, source_length=n)


def preprocess(
    buffer: SampleBuffer,
    stride: int = DEFAULT_STRIDE,
    silence_epsilon: float = DEFAULT_SILENCE_EPSILON,
) -> TrimmedSequence:
    padding = trim_silence(buffer, silence_epsilon)
    seq = decimate(buffer, padding, stride)
    logger.debug('trimmed %d leading samples, %d -> %d after stride %d',
                 padding, buffer.frame_count, seq.length, stride)
    return seq


def choose_reference(a: SampleBuffer, b: SampleBuffer) -> bool:
    """True if B should be the reference, i.e. B is strictly longer in time."""
    return b.duration > a.duration


def build_workspace(reference: TrimmedSequence, kernel: TrimmedSequence) -> CorrelationWorkspace:
    lk = kernel.length
    lr = reference.length
    search = np.zeros(2 * lk + lr, dtype=np.float32)
    search[lk:lk + lr] = reference.samples
    ws = CorrelationWorkspace(search=search, kernel=kernel.samples.copy(), reference_length=lr)
    assert ws.search.shape[0] == 2 * ws.kernel_length + ws.reference_length
    logger.debug('correlation workspace: search=%d kernel=%d shifts=%d',
                 search.shape[0], lk, ws.result_length)
    return ws


def cross_correlate(ws: CorrelationWorkspace, method: str = 'auto') -> CorrelationResult:
    """result[k] = sum_n search[k + n] * kernel[n] for k in [0, Lr + Lk)."""
    n_out = ws.result_length
    if ws.kernel_length == 0:
        return np.zeros(n_out, dtype=np.float64)
    corr = signal.correlate(
        ws.search.astype(np.float64),
        ws.kernel.astype(np.float64),
        mode='valid',
        method=method,
    )
    # 'valid' yields one extra shift past the end of the reference
    return cast(CorrelationResult, np.asarray(corr[:n_out], dtype=np.float64))


def locate_peak(result: CorrelationResult) -> Tuple[int, float]:
    """Index and value of the largest |result|; lowest index wins ties."""
    if result.size == 0:
        raise NoCorrelationPeakError('correlation result is empty')
    if not np.all(np.isfinite(result)):
        raise NoCorrelationPeakError('correlation result contains non-finite values')
    k = int(np.argmax(np.abs(result)))
    value = float(result[k])
    if value == 0.0:
        raise NoCorrelationPeakError('correlation result is all zero; no detectable match')
    return k, value


def windows_per_second(sample_rate: float, stride: int) -> int:
    """Decimation windows per second, exact halves rounded up."""
    w = int(np.floor(sample_rate / stride + 0.5))
    if w < 1:
        raise StrideTooLargeError(f'stride {stride} is too large for a sample rate of {sample_rate:g} Hz')
    return w


def translate_offset(
    peak_index: int,
    reference: TrimmedSequence,
    kernel: TrimmedSequence,
    sample_rate: float,
) -> Tuple[float, float]:
    """Map a correlation index to (seconds, shift in decimation windows).

    Positive => the kernel file's content occurs later than the reference
    file's content. The zero-lag index is ``kernel.length``; the difference in
    trimmed padding is added back because each file was trimmed on its own.
    """
    stride = kernel.stride
    lag = peak_index - kernel.length
    shift = (kernel.padding_count - reference.padding_count) / stride - lag
    return shift / windows_per_second(sample_rate, stride), shift


def _prepare(source: AudioSource, opts: SyncOptions) -> Tuple[SampleBuffer, TrimmedSequence]:
    buf = source if isinstance(source, SampleBuffer) else decode(source, opts.channel)
    return buf, preprocess(buf, opts.stride, opts.silence_epsilon)


def analyse_sync_offset(
    source_a: AudioSource,
    source_b: AudioSource,
    options: Optional[SyncOptions] = None,
) -> OffsetResult:
    """Run the full pipeline and return the offset of B relative to A with diagnostics."""
    opts = options or SyncOptions()

    if opts.parallel:
        with ThreadPoolExecutor(max_workers=2) as pool:
            fut_a = pool.submit(_prepare, source_a, opts)
            fut_b = pool.submit(_prepare, source_b, opts)
            buf_a, seq_a = fut_a.result()
            buf_b, seq_b = fut_b.result()
    else:
        buf_a, seq_a = _prepare(source_a, opts)
        buf_b, seq_b = _prepare(source_b, opts)

    if buf_a.sample_rate != buf_b.sample_rate:
        raise SampleRateMismatchError(buf_a.sample_rate, buf_b.sample_rate)
    sr = buf_a.sample_rate
    windows_per_second(sr, opts.stride)

    b_is_reference = choose_reference(buf_a, buf_b)
    if b_is_reference:
        reference, kernel = seq_b, seq_a
    else:
        reference, kernel = seq_a, seq_b
    logger.debug('reference is file %s (%.3f s vs %.3f s)',
                 'B' if b_is_reference else 'A', buf_a.duration, buf_b.duration)

    ws = build_workspace(reference, kernel)
    corr = cross_correlate(ws, opts.method)
    peak_index, peak_value = locate_peak(corr)
    logger.debug('biggest match is %g at position %d of %d', peak_value, peak_index, corr.shape[0])

    seconds, shift = translate_offset(peak_index, reference, kernel, sr)
    # translator reports kernel relative to reference; report B relative to A
    if b_is_reference:
        seconds, shift = -seconds, -shift
    logger.debug('sync offset is %.6f s', seconds)

    return OffsetResult(
        seconds=seconds,
        reference='b' if b_is_reference else 'a',
        peak_index=peak_index,
        peak_value=peak_value,
        shift_windows=shift,
        stride=opts.stride,
        sample_rate=sr,
    )


def compute_sync_offset(
    source_a: AudioSource,
    source_b: AudioSource,
    options: Optional[SyncOptions] = None,
) -> float:
    """Seconds by which the content of B occurs later than the content of A."""
    return analyse_sync_offset(source_a, source_b, options).seconds
