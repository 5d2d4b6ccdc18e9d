"""
Streaming speech transcription fed by capture chunks.

This module provides the TranscriptionService class, which buffers int16 PCM
chunks from the capture engine, resamples them for the speech model, skips
silent windows, and hands fixed-length windows with a small overlap to a
pluggable speech-to-text backend.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from math import gcd
from typing import Callable, List, Optional

import numpy as np
from scipy.signal import resample_poly

from convo_assist.config.config import DEFAULT_CONFIG, TranscriptionConfig, transcription_config
from convo_assist.models.data_models import SpeakerType, TranscribedSegment, utc_now

logger = logging.getLogger(__name__)

SegmentCallback = Callable[[TranscribedSegment], None]

# Windows shorter than this are not worth a model call when flushing on stop
MIN_FLUSH_SECONDS = 1.0


class SpeechBackend(ABC):
    """Speech-to-text model boundary."""

    @abstractmethod
    def transcribe(self, audio: np.ndarray, sample_rate: int) -> str:
        """Transcribe mono float32 audio. Called from a worker thread."""

    def close(self) -> None:
        """Release model resources."""


class TranscriptionService:
    """
    Chunk-fed transcription pipeline.

    Audio flows through one asyncio worker task:

    1. Decode the int16 chunk and resample it to ``target_sr``
    2. Accumulate until ``chunk_duration`` seconds are buffered
    3. Drop the window if its RMS is under ``silence_rms_threshold``
    4. Transcribe it in the default executor
    5. Strip text repeated from the previous window's overlap
    6. Deliver a :class:`TranscribedSegment` to the callback
    7. Keep the last ``stride_seconds`` as overlap for the next window

    Attributes:
        config: Transcription settings
        backend: Speech-to-text backend
        source_sr: Sample rate of the incoming chunks
        speaker_type: Speaker attributed to new segments
        speaker_name: Optional display name attributed to new segments

    Example:
        >>> service = TranscriptionService(WhisperBackend(), source_sr=48000)
        >>> service.start(lambda segment: print(segment.text))
        >>> service.feed(chunk_bytes)
        >>> await service.stop()
    """

    def __init__(
        self,
        backend: SpeechBackend,
        config: Optional[TranscriptionConfig] = None,
        source_sr: int = 48000,
    ) -> None:
        self.config = config or transcription_config(DEFAULT_CONFIG)
        self.backend = backend
        self.source_sr = source_sr
        self.speaker_type = SpeakerType.SELF
        self.speaker_name: Optional[str] = None

        factor = gcd(source_sr, self.config.target_sr)
        self.resample_up = self.config.target_sr // factor
        self.resample_down = source_sr // factor

        self.segment_callback: Optional[SegmentCallback] = None
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._buffer: List[np.ndarray] = []
        self._prev_text = ""

    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self, callback: SegmentCallback) -> None:
        """
        Start the worker task on the running loop.

        Raises:
            RuntimeError: If the service is already running
        """
        if self.is_running():
            raise RuntimeError("Transcription is already running")
        self.segment_callback = callback
        self._buffer = []
        self._prev_text = ""
        self._queue = asyncio.Queue(maxsize=self.config.queue_maxsize)
        self._worker = asyncio.ensure_future(self._run(self._queue))
        logger.info("Transcription worker started (%d Hz -> %d Hz)", self.source_sr, self.config.target_sr)

    def feed(self, chunk: bytes) -> bool:
        """Queue one int16 PCM chunk; returns False if it was dropped."""
        if self._queue is None or not chunk:
            return False
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            logger.warning("Transcription queue full; dropping %d bytes of audio", len(chunk))
            return False
        return True

    async def stop(self, flush: bool = True) -> None:
        """
        Stop the worker.

        Args:
            flush: Transcribe whatever is still buffered before returning
        """
        queue_, worker = self._queue, self._worker
        self._queue = None
        if worker is None or queue_ is None:
            return
        await queue_.put(None)
        try:
            await worker
        finally:
            self._worker = None
        if flush:
            await self._flush()
        self._buffer = []
        logger.info("Transcription worker stopped")

    async def _run(self, queue_: asyncio.Queue) -> None:
        while True:
            chunk = await queue_.get()
            try:
                if chunk is None:
                    return
                await self._process(chunk)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Transcription failed: %s", exc)
            finally:
                queue_.task_done()

    def _resample(self, chunk: bytes) -> np.ndarray:
        samples = np.frombuffer(chunk, dtype="<i2").astype(np.float32) / 32768.0
        if self.resample_up == self.resample_down:
            return samples
        return resample_poly(samples, up=self.resample_up, down=self.resample_down).astype(np.float32)

    async def _process(self, chunk: bytes) -> None:
        target_sr = self.config.target_sr
        self._buffer.append(self._resample(chunk))

        total_samples = sum(len(buf) for buf in self._buffer)
        total_duration = total_samples / target_sr
        if total_duration < self.config.chunk_duration:
            return

        window = np.concatenate(self._buffer)
        if not is_speech(window, self.config.silence_rms_threshold):
            self._buffer = []
            return

        await self._transcribe_window(window, total_duration)

        overlap_samples = int(target_sr * self.config.stride_seconds)
        if 0 < overlap_samples < window.size:
            self._buffer = [window[-overlap_samples:]]
        else:
            self._buffer = []

    async def _flush(self) -> None:
        if not self._buffer:
            return
        window = np.concatenate(self._buffer)
        duration = window.size / self.config.target_sr
        if duration >= MIN_FLUSH_SECONDS and is_speech(window, self.config.silence_rms_threshold):
            await self._transcribe_window(window, duration)

    async def _transcribe_window(self, window: np.ndarray, duration: float) -> None:
        segment_end = utc_now()
        segment_start = segment_end - timedelta(seconds=duration)

        loop = asyncio.get_running_loop()
        current_text = await loop.run_in_executor(
            None, lambda: self.backend.transcribe(window, self.config.target_sr)
        )
        current_text = (current_text or "").strip()
        new_segment = strip_repeated_prefix(self._prev_text, current_text)
        self._prev_text = current_text

        if new_segment and self.segment_callback:
            self.segment_callback(
                TranscribedSegment(
                    text=new_segment,
                    speaker_type=self.speaker_type,
                    speaker_name=self.speaker_name,
                    start_time=segment_start,
                    end_time=segment_end,
                    duration=duration,
                )
            )


def is_speech(audio: np.ndarray, threshold: float) -> bool:
    """Energy gate: True if the RMS of ``audio`` reaches ``threshold``."""
    if audio.size == 0:
        return False
    rms = float(np.sqrt(np.mean(np.square(audio, dtype=np.float64))))
    return rms >= threshold


def strip_repeated_prefix(previous: str, current: str) -> str:
    """Drop the part of ``current`` already emitted as ``previous``.

    Example:
        >>> strip_repeated_prefix("hello", "hello world")
        'world'
    """
    prev_text = previous.strip()
    if prev_text and current.startswith(prev_text) and len(current) > len(prev_text):
        return current[len(prev_text):].strip()
    if prev_text and current == prev_text:
        return ""
    return current
