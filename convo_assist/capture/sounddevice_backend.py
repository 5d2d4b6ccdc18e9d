"""sounddevice implementation of the capture hardware boundary."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np
import sounddevice as sd

from convo_assist.capture.backend import AudioBackend, AudioInput
from convo_assist.errors import DeviceUnavailable
from convo_assist.models.data_models import AudioDevice, DeviceKind

logger = logging.getLogger(__name__)


class SoundDeviceInput(AudioInput):
    """sounddevice ``InputStream`` feeding a lock-protected sample buffer.

    The PortAudio callback runs on the audio thread; it only appends copies of
    the incoming block. Everything else runs on the event loop.
    """

    def __init__(
        self,
        device_index: Optional[int],
        sample_rate: int,
        channels: int,
        record: bool,
        tail_samples: int = 4096,
        on_lost: Optional[Callable[[], None]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._pending: List[np.ndarray] = []
        self._tail: Deque[np.ndarray] = deque()
        self._tail_size = 0
        self._tail_limit = tail_samples
        self._record = record
        self._closed = False
        self._suspended = False
        self._on_lost = on_lost
        self._stream = sd.InputStream(
            samplerate=sample_rate,
            channels=channels,
            dtype="int16",
            device=device_index,
            callback=self._callback,
            finished_callback=self._finished,
        )
        self._stream.start()

    def _callback(self, indata, frames, time_info, status) -> None:  # noqa: ANN001
        if status:
            logger.debug("sounddevice status: %s", status)
        block = indata[:, 0].copy() if indata.ndim > 1 else indata.copy()
        with self._lock:
            if self._record:
                self._pending.append(block)
            self._tail.append(block)
            self._tail_size += block.size
            while self._tail and self._tail_size - self._tail[0].size >= self._tail_limit:
                self._tail_size -= self._tail.popleft().size

    def _finished(self) -> None:
        # stop() from pause() also ends the stream; only a host-side finish is a loss
        if self._closed or self._suspended or self._on_lost is None:
            return
        self._on_lost()

    def drain(self) -> np.ndarray:
        with self._lock:
            blocks, self._pending = self._pending, []
        if not blocks:
            return np.zeros(0, dtype=np.int16)
        return np.concatenate(blocks)

    def latest(self, count: int) -> np.ndarray:
        with self._lock:
            if not self._tail:
                return np.zeros(0, dtype=np.int16)
            data = np.concatenate(list(self._tail))
        return data[-count:]

    def pause(self) -> None:
        if not self._closed:
            self._suspended = True
            self._stream.stop()

    def resume(self) -> None:
        if not self._closed:
            self._stream.start()
            self._suspended = False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._stream.stop()
        finally:
            self._stream.close()

    @property
    def closed(self) -> bool:
        return self._closed


class SoundDeviceBackend(AudioBackend):
    """Device enumeration and stream acquisition through PortAudio."""

    def _query_devices(self) -> List[Dict[str, Any]]:
        try:
            devices = sd.query_devices()
        except sd.PortAudioError as exc:
            raise DeviceUnavailable(f"Could not enumerate audio devices: {exc}") from exc
        return [dict(device, index=index) for index, device in enumerate(devices)]

    def list_devices(self) -> List[AudioDevice]:
        result: List[AudioDevice] = []
        for device in self._query_devices():
            name = device.get("name", "")
            device_id = str(device["index"])
            if device.get("max_input_channels", 0) > 0:
                result.append(AudioDevice(device_id, name, DeviceKind.INPUT))
            if device.get("max_output_channels", 0) > 0:
                result.append(AudioDevice(device_id, name, DeviceKind.OUTPUT))
        return result

    def _resolve_input(self, device_id: Optional[str]) -> Optional[int]:
        if device_id is None:
            return None
        for device in self._query_devices():
            if device.get("max_input_channels", 0) <= 0:
                continue
            if str(device["index"]) == device_id or device.get("name") == device_id:
                return device["index"]
        raise DeviceUnavailable(f"No input device matches {device_id!r}")

    def open_input(
        self,
        device_id: Optional[str],
        sample_rate: int,
        channels: int,
        record: bool = True,
        on_lost: Optional[Callable[[], None]] = None,
    ) -> AudioInput:
        device_index = self._resolve_input(device_id)
        try:
            return SoundDeviceInput(device_index, sample_rate, channels, record, on_lost=on_lost)
        except sd.PortAudioError as exc:
            raise DeviceUnavailable(f"Could not open audio input: {exc}") from exc
