"""
Audio processing utilities for live visualization frames.

This module turns the most recent samples of a stream into byte frequency
data, the same shape a browser ``AnalyserNode`` produces, so frames can be
drawn as a bar spectrum.
"""

from typing import Optional

import numpy as np


class FrequencyAnalyser:
    """
    Converts recent audio samples into smoothed byte frequency frames.

    Each frame is computed from the latest ``fft_size`` samples: a Blackman
    window is applied, the magnitude spectrum is converted to decibels,
    smoothed against the previous frame and mapped from the
    ``[min_decibels, max_decibels]`` range onto ``0..255``.

    Attributes:
        fft_size: Number of samples per FFT (power of two)
        min_decibels: Level mapped to 0
        max_decibels: Level mapped to 255
        smoothing: Weight of the previous frame in ``[0, 1)``
        bin_count: Number of frequency bins per frame (``fft_size // 2``)

    Example:
        >>> analyser = FrequencyAnalyser(fft_size=256)
        >>> frame = analyser.frame(np.zeros(256, dtype=np.int16))
        >>> frame.shape, frame.dtype
        ((128,), dtype('uint8'))
    """

    def __init__(
        self,
        fft_size: int = 256,
        min_decibels: float = -100.0,
        max_decibels: float = -30.0,
        smoothing: float = 0.8,
    ) -> None:
        if fft_size < 32 or fft_size & (fft_size - 1):
            raise ValueError("fft_size must be a power of two >= 32")
        if max_decibels <= min_decibels:
            raise ValueError("max_decibels must be greater than min_decibels")
        self.fft_size = fft_size
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels
        self.smoothing = min(max(smoothing, 0.0), 0.99)
        self.bin_count = fft_size // 2
        self._window = np.blackman(fft_size).astype(np.float64)
        self._previous: Optional[np.ndarray] = None

    def frame(self, samples: np.ndarray) -> np.ndarray:
        """
        Compute one visualization frame.

        Args:
            samples: Most recent mono samples, int16 PCM or float in [-1, 1].
                Shorter inputs are zero-padded at the front.

        Returns:
            ``uint8`` array of length ``bin_count``
        """
        block = _to_float(samples)
        if block.size >= self.fft_size:
            block = block[-self.fft_size:]
        else:
            block = np.concatenate((np.zeros(self.fft_size - block.size), block))

        spectrum = np.abs(np.fft.rfft(block * self._window))[: self.bin_count] / self.fft_size
        if self._previous is None:
            smoothed = spectrum
        else:
            smoothed = self.smoothing * self._previous + (1.0 - self.smoothing) * spectrum
        self._previous = smoothed

        with np.errstate(divide="ignore"):
            decibels = 20.0 * np.log10(smoothed)
        scaled = (decibels - self.min_decibels) * (255.0 / (self.max_decibels - self.min_decibels))
        return np.clip(np.nan_to_num(scaled, neginf=0.0), 0, 255).astype(np.uint8)

    def reset(self) -> None:
        """Forget smoothing history, e.g. when a new stream starts."""
        self._previous = None


def _to_float(samples: np.ndarray) -> np.ndarray:
    data = np.asarray(samples)
    if data.ndim > 1:
        data = data[:, 0]
    if data.dtype == np.int16:
        return data.astype(np.float64) / 32768.0
    return data.astype(np.float64)


def pcm16_bytes(samples: np.ndarray) -> bytes:
    """Encode mono samples (int16 or float in [-1, 1]) as little-endian int16 PCM."""
    data = np.asarray(samples)
    if data.ndim > 1:
        data = data[:, 0]
    if data.dtype != np.int16:
        data = (np.clip(data.astype(np.float64), -1.0, 1.0) * 32767.0).astype(np.int16)
    return data.astype("<i2").tobytes()
