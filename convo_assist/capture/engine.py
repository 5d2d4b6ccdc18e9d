"""
Audio capture engine: recording state machine plus monitor overlay.

This module owns the microphone stream lifecycle, chunked capture at a fixed
cadence, visualization frames, finalized recordings and the optional
secondary "monitor" stream used only for live visualization.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import wave
from dataclasses import replace
from enum import Enum
from typing import Callable, Dict, List, Optional

import numpy as np

from convo_assist.capture.analyser import FrequencyAnalyser, pcm16_bytes
from convo_assist.capture.backend import AudioBackend, AudioInput, default_backend
from convo_assist.config.config import DEFAULT_CONFIG, CaptureConfig, capture_config
from convo_assist.errors import DeviceUnavailable
from convo_assist.events import Disposer, EventEmitter
from convo_assist.models.data_models import (
    AudioDevice,
    FinalizedAudio,
    MonitorState,
    RecorderState,
    RecorderStatus,
)
from convo_assist.scheduling import AsyncioScheduler, Scheduler, TimerHandle

logger = logging.getLogger(__name__)

EMPTY_RESULT = FinalizedAudio()


class CaptureEvent(str, Enum):
    STATUS_CHANGED = "status_changed"
    VISUALIZATION_FRAME = "visualization_frame"
    MONITOR_FRAME = "monitor_frame"
    CHUNK_AVAILABLE = "chunk_available"
    RECORDING_FINALIZED = "recording_finalized"


class CaptureEngine:
    """
    Records one microphone stream and optionally monitors a second one.

    State machine::

        inactive --start--> recording --pause--> paused --resume--> recording
        recording|paused --stop--> inactive

    Monitor mode is an overlay: it may be toggled at any time and survives
    transitions of the recording state machine.

    Two periodic producers run while recording: a visualization producer
    (``frame_interval_ms``) emitting byte frequency frames, and a chunk
    producer (``chunk_interval_ms``) appending int16 PCM blocks to
    ``audio_chunks``. Both are cancelled synchronously by ``pause`` and
    ``stop``.

    Events are published through :meth:`subscribe`:

    - ``STATUS_CHANGED(status)``
    - ``VISUALIZATION_FRAME(frame)`` / ``MONITOR_FRAME(frame)``
    - ``CHUNK_AVAILABLE(chunk)``
    - ``RECORDING_FINALIZED(result)``

    Example:
        >>> engine = CaptureEngine()
        >>> dispose = engine.subscribe(CaptureEvent.CHUNK_AVAILABLE, print)
        >>> await engine.start()
        >>> result = engine.stop()
        >>> print(result.duration_ms)
    """

    def __init__(
        self,
        config: Optional[CaptureConfig] = None,
        backend: Optional[AudioBackend] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.config = config or capture_config(DEFAULT_CONFIG)
        self._backend = backend
        self._scheduler = scheduler or AsyncioScheduler()
        self._events: EventEmitter[CaptureEvent] = EventEmitter()
        self._state = RecorderState()

        self._input: Optional[AudioInput] = None
        self._monitor_input: Optional[AudioInput] = None
        self._chunk_timer: Optional[TimerHandle] = None
        self._frame_timer: Optional[TimerHandle] = None
        self._monitor_timer: Optional[TimerHandle] = None
        # Bumped on every acquisition so late "stream lost" callbacks can be ignored
        self._input_generation = 0
        self._monitor_generation = 0

        self._analyser = self._new_analyser()
        self._monitor_analyser = self._new_analyser()
        self._recordings: Dict[str, FinalizedAudio] = {}

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def backend(self) -> AudioBackend:
        if self._backend is None:
            self._backend = default_backend()
        return self._backend

    @property
    def state(self) -> RecorderState:
        """Snapshot of the recorder state."""
        return self._state.snapshot()

    @property
    def status(self) -> RecorderStatus:
        return self._state.status

    @property
    def sample_rate(self) -> int:
        return self.config.sample_rate

    @property
    def monitor_running(self) -> bool:
        return self._monitor_input is not None

    @property
    def elapsed_ms(self) -> float:
        """Recorded time so far, excluding paused intervals."""
        state = self._state
        if state.start_time is None or state.status is RecorderStatus.INACTIVE:
            return 0.0
        end = state.pause_time if state.status is RecorderStatus.PAUSED else self._scheduler.now()
        return max(0.0, end - state.start_time)

    def subscribe(self, kind: CaptureEvent, listener: Callable[..., None]) -> Disposer:
        return self._events.subscribe(kind, listener)

    def list_devices(self) -> List[AudioDevice]:
        """Enumerate audio devices; returns an empty list if enumeration fails."""
        try:
            return self.backend.list_devices()
        except DeviceUnavailable as exc:
            logger.error("Could not list audio devices: %s", exc)
            return []

    # ------------------------------------------------------------------
    # Recording state machine
    # ------------------------------------------------------------------

    async def start(self, device_id: Optional[str] = None) -> None:
        """
        Start recording from ``device_id`` (or the default input).

        An active recording is stopped first. Also starts the monitor stream
        if monitor mode is on but has no running stream.

        Raises:
            DeviceUnavailable: If the stream could not be acquired. The engine
                is left ``inactive``.
        """
        if self._state.status is not RecorderStatus.INACTIVE:
            self.stop()

        self._input_generation += 1
        generation = self._input_generation
        try:
            audio_input = await self._acquire(
                device_id,
                record=True,
                on_lost=lambda: self._on_input_lost(generation),
            )
        except DeviceUnavailable as exc:
            logger.error("Could not start recording: %s", exc)
            raise

        if self._state.status is not RecorderStatus.INACTIVE:
            # another start() finished while this one was acquiring
            self.stop()

        self._input = audio_input
        self._analyser.reset()
        self._state = replace(
            self._state,
            status=RecorderStatus.RECORDING,
            audio_chunks=[],
            start_time=self._scheduler.now(),
            pause_time=None,
        )
        logger.info("Recording started (device=%s)", device_id or "default")
        self._events.emit(CaptureEvent.STATUS_CHANGED, RecorderStatus.RECORDING)
        self._schedule_producers()

        monitor = self._state.monitor
        if monitor.active and self._monitor_input is None:
            try:
                await self._start_monitor(monitor.device_id)
            except DeviceUnavailable as exc:
                logger.warning("Could not restart monitor stream: %s", exc)

    def pause(self) -> bool:
        """Pause an active recording; returns False if not recording."""
        if self._state.status is not RecorderStatus.RECORDING:
            return False
        self._cancel_producers()
        if self._input is not None:
            self._input.pause()
        self._state = replace(self._state, status=RecorderStatus.PAUSED, pause_time=self._scheduler.now())
        logger.info("Recording paused")
        self._events.emit(CaptureEvent.STATUS_CHANGED, RecorderStatus.PAUSED)
        return True

    def resume(self) -> bool:
        """Resume a paused recording; returns False if not paused."""
        state = self._state
        if state.status is not RecorderStatus.PAUSED:
            return False
        if self._input is not None:
            self._input.resume()
        now = self._scheduler.now()
        start_time = state.start_time
        if start_time is not None and state.pause_time is not None:
            start_time += now - state.pause_time
        self._state = replace(state, status=RecorderStatus.RECORDING, start_time=start_time, pause_time=None)
        logger.info("Recording resumed")
        self._events.emit(CaptureEvent.STATUS_CHANGED, RecorderStatus.RECORDING)
        self._schedule_producers()
        return True

    def stop(self) -> FinalizedAudio:
        """
        Stop recording and finalize the captured chunks.

        Releases the input stream and cancels the producers before returning.
        Calling it while inactive returns an empty result.

        Returns:
            The finalized recording; its ``ref`` can be passed to
            :meth:`get_recording` later.
        """
        state = self._state
        if state.status is RecorderStatus.INACTIVE:
            return EMPTY_RESULT

        self._cancel_producers()
        end_time = state.pause_time if state.status is RecorderStatus.PAUSED else self._scheduler.now()
        try:
            self._collect_chunk()
        finally:
            self._release_input()

        duration_ms = 0
        if state.start_time is not None:
            duration_ms = max(0, int(round(end_time - state.start_time)))
        result = self._finalize(self._state.audio_chunks, duration_ms, prefix="recording")

        self._state = replace(self._state, status=RecorderStatus.INACTIVE, pause_time=None)
        logger.info("Recording stopped (%d chunks, %d ms)", len(self._state.audio_chunks), duration_ms)
        self._events.emit(CaptureEvent.RECORDING_FINALIZED, result)
        self._events.emit(CaptureEvent.STATUS_CHANGED, RecorderStatus.INACTIVE)
        return result

    def replay_last_minute(self) -> FinalizedAudio:
        """
        Finalize the trailing chunks covering at most ``replay_window_ms``.

        Works in any state and never mutates ``audio_chunks`` or the status,
        so two consecutive calls return equal results.
        """
        chunks = self._state.audio_chunks
        if not chunks:
            return EMPTY_RESULT
        window_ms = self.config.replay_window_ms
        window_bytes = int(self.config.sample_rate * window_ms / 1000) * 2

        selected: List[bytes] = []
        total = 0
        for chunk in reversed(chunks):
            if selected and total + len(chunk) > window_bytes:
                break
            selected.append(chunk)
            total += len(chunk)
        selected.reverse()

        duration_ms = min(window_ms, int(total // 2 * 1000 / self.config.sample_rate))
        return self._finalize(selected, duration_ms, prefix="replay")

    def get_recording(self, ref: str) -> Optional[FinalizedAudio]:
        return self._recordings.get(ref)

    def revoke_recording(self, ref: str) -> bool:
        return self._recordings.pop(ref, None) is not None

    # ------------------------------------------------------------------
    # Monitor mode
    # ------------------------------------------------------------------

    async def set_monitor_mode(self, active: bool, device_id: Optional[str] = None) -> None:
        """
        Turn the monitor overlay on or off.

        Starting always stops the previous monitor stream first. On failure
        the previous monitor state is restored and the error is raised.

        Raises:
            DeviceUnavailable: If the monitor stream could not be acquired
        """
        previous = self._state.monitor
        if active and previous.active and previous.device_id == device_id and self._monitor_input is not None:
            return

        self._stop_monitor()
        if not active:
            self._state = replace(self._state, monitor=MonitorState(active=False, device_id=None))
            logger.info("Monitor mode disabled")
            return

        self._state = replace(self._state, monitor=MonitorState(active=True, device_id=device_id))
        try:
            await self._start_monitor(device_id)
        except DeviceUnavailable as exc:
            logger.error("Could not start monitor mode: %s", exc)
            self._state = replace(self._state, monitor=previous)
            raise
        logger.info("Monitor mode enabled (device=%s)", device_id or "default")

    async def _start_monitor(self, device_id: Optional[str]) -> None:
        self._monitor_generation += 1
        generation = self._monitor_generation
        monitor_input = await self._acquire(
            device_id,
            record=False,
            on_lost=lambda: self._on_monitor_lost(generation),
        )
        if generation != self._monitor_generation or not self._state.monitor.active:
            # disabled or restarted while acquiring
            monitor_input.close()
            return
        self._monitor_input = monitor_input
        self._monitor_analyser.reset()
        self._monitor_timer = self._scheduler.call_later(self.config.frame_interval_ms, self._on_monitor_tick)

    def _stop_monitor(self) -> None:
        self._monitor_generation += 1
        if self._monitor_timer is not None:
            self._monitor_timer.cancel()
            self._monitor_timer = None
        monitor_input, self._monitor_input = self._monitor_input, None
        if monitor_input is not None:
            monitor_input.close()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release every stream and timer and reset the engine."""
        if self._state.status is not RecorderStatus.INACTIVE:
            self.stop()
        self._stop_monitor()
        self._cancel_producers()
        self._recordings.clear()
        self._state = RecorderState()
        self._events.emit(CaptureEvent.STATUS_CHANGED, RecorderStatus.INACTIVE)

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def _schedule_producers(self) -> None:
        self._chunk_timer = self._scheduler.call_later(self.config.chunk_interval_ms, self._on_chunk_tick)
        self._frame_timer = self._scheduler.call_later(self.config.frame_interval_ms, self._on_frame_tick)

    def _cancel_producers(self) -> None:
        for timer in (self._chunk_timer, self._frame_timer):
            if timer is not None:
                timer.cancel()
        self._chunk_timer = None
        self._frame_timer = None

    def _on_chunk_tick(self) -> None:
        self._chunk_timer = None
        if self._state.status is not RecorderStatus.RECORDING:
            return
        self._collect_chunk()
        # a listener may have paused or stopped the engine
        if self._state.status is RecorderStatus.RECORDING and self._chunk_timer is None:
            self._chunk_timer = self._scheduler.call_later(self.config.chunk_interval_ms, self._on_chunk_tick)

    def _on_frame_tick(self) -> None:
        self._frame_timer = None
        if self._state.status is not RecorderStatus.RECORDING or self._input is None:
            return
        if self._events.has_listeners(CaptureEvent.VISUALIZATION_FRAME):
            frame = self._analyser.frame(self._input.latest(self._analyser.fft_size))
            self._events.emit(CaptureEvent.VISUALIZATION_FRAME, frame)
        if self._state.status is RecorderStatus.RECORDING and self._frame_timer is None:
            self._frame_timer = self._scheduler.call_later(self.config.frame_interval_ms, self._on_frame_tick)

    def _on_monitor_tick(self) -> None:
        self._monitor_timer = None
        monitor_input = self._monitor_input
        if monitor_input is None or not self._state.monitor.active:
            return
        if self._events.has_listeners(CaptureEvent.MONITOR_FRAME):
            frame = self._monitor_analyser.frame(monitor_input.latest(self._monitor_analyser.fft_size))
            self._events.emit(CaptureEvent.MONITOR_FRAME, frame)
        if self._monitor_input is monitor_input and self._monitor_timer is None:
            self._monitor_timer = self._scheduler.call_later(self.config.frame_interval_ms, self._on_monitor_tick)

    def _collect_chunk(self) -> Optional[bytes]:
        if self._input is None:
            return None
        samples = self._input.drain()
        if samples.size == 0:
            return None
        chunk = pcm16_bytes(samples)
        self._state.audio_chunks.append(chunk)
        self._events.emit(CaptureEvent.CHUNK_AVAILABLE, chunk)
        return chunk

    # ------------------------------------------------------------------
    # Hardware helpers
    # ------------------------------------------------------------------

    async def _acquire(
        self,
        device_id: Optional[str],
        record: bool,
        on_lost: Callable[[], None],
    ) -> AudioInput:
        loop = asyncio.get_running_loop()

        def lost_from_audio_thread() -> None:
            loop.call_soon_threadsafe(on_lost)

        try:
            return await loop.run_in_executor(
                None,
                lambda: self.backend.open_input(
                    device_id,
                    self.config.sample_rate,
                    self.config.channels,
                    record,
                    lost_from_audio_thread,
                ),
            )
        except DeviceUnavailable:
            raise
        except Exception as exc:  # noqa: BLE001
            raise DeviceUnavailable(f"Audio input failed: {exc}") from exc

    def _release_input(self) -> None:
        audio_input, self._input = self._input, None
        if audio_input is not None:
            audio_input.close()

    def _on_input_lost(self, generation: int) -> None:
        if generation != self._input_generation or self._state.status is RecorderStatus.INACTIVE:
            return
        logger.warning("Recording stream ended unexpectedly; finalizing")
        self.stop()

    def _on_monitor_lost(self, generation: int) -> None:
        if generation != self._monitor_generation or self._monitor_input is None:
            return
        logger.warning("Monitor stream ended unexpectedly")
        if self._monitor_timer is not None:
            self._monitor_timer.cancel()
            self._monitor_timer = None
        monitor_input, self._monitor_input = self._monitor_input, None
        monitor_input.close()

    def _new_analyser(self) -> FrequencyAnalyser:
        return FrequencyAnalyser(
            fft_size=self.config.fft_size,
            min_decibels=self.config.min_decibels,
            max_decibels=self.config.max_decibels,
            smoothing=self.config.smoothing,
        )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _finalize(self, chunks: List[bytes], duration_ms: int, prefix: str) -> FinalizedAudio:
        if not chunks:
            return FinalizedAudio(duration_ms=duration_ms)
        data = encode_wav(b"".join(chunks), self.config.sample_rate)
        ref = f"{prefix}-{hashlib.sha1(data).hexdigest()[:16]}"
        result = FinalizedAudio(data=data, ref=ref, duration_ms=duration_ms)
        self._recordings[ref] = result
        return result


def encode_wav(pcm: bytes, sample_rate: int, channels: int = 1) -> bytes:
    """Wrap mono int16 PCM in a WAV container."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as handle:
        handle.setnchannels(channels)
        handle.setsampwidth(2)
        handle.setframerate(sample_rate)
        handle.writeframes(pcm)
    return buffer.getvalue()


def decode_wav(data: bytes) -> np.ndarray:
    """Read int16 samples back out of :func:`encode_wav` output."""
    with wave.open(io.BytesIO(data), "rb") as handle:
        frames = handle.readframes(handle.getnframes())
    return np.frombuffer(frames, dtype="<i2")
