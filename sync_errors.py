"""Exceptions raised while estimating a sync offset.

Every failure is surfaced to the caller; nothing in the pipeline falls back
to a default offset.
"""
from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync offset failures."""


class DecodeError(SyncError):
    """The audio source could not be decoded into PCM samples."""


class SampleRateMismatchError(SyncError):
    """The two inputs are sampled at different rates."""

    def __init__(self, rate_a: float, rate_b: float) -> None:
        super().__init__(f'sample rates differ: {rate_a:g} Hz vs {rate_b:g} Hz')
        self.rate_a = rate_a
        self.rate_b = rate_b


class SilentInputError(SyncError):
    """An input has no sample above the silence threshold."""


class NoCorrelationPeakError(SyncError):
    """The correlation output is empty, non-finite or all zero."""


class StrideTooLargeError(SyncError, ValueError):
    """The stride leaves less than one decimation window per second."""
