"""Hardware boundary of the capture engine.

The engine only talks to :class:`AudioBackend` and :class:`AudioInput`. The
default implementation lives in :mod:`convo_assist.capture.sounddevice_backend`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import numpy as np

from convo_assist.models.data_models import AudioDevice


class AudioInput(ABC):
    """A live input stream owned by the engine until :meth:`close`."""

    @abstractmethod
    def drain(self) -> np.ndarray:
        """Return (and forget) every int16 sample captured since the last drain."""

    @abstractmethod
    def latest(self, count: int) -> np.ndarray:
        """Return up to ``count`` most recent int16 samples without consuming them."""

    @abstractmethod
    def pause(self) -> None:
        ...

    @abstractmethod
    def resume(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        """Stop the stream and release the hardware. Safe to call twice."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...


class AudioBackend(ABC):
    @abstractmethod
    def list_devices(self) -> List[AudioDevice]:
        ...

    @abstractmethod
    def open_input(
        self,
        device_id: Optional[str],
        sample_rate: int,
        channels: int,
        record: bool = True,
        on_lost: Optional[Callable[[], None]] = None,
    ) -> AudioInput:
        """Acquire a started input stream.

        Args:
            device_id: Exact device to open, or None for the default input
            sample_rate: Capture rate in Hz
            channels: Number of channels to open; only the first is kept
            record: When False only a short tail is kept for visualization
            on_lost: Called (from the audio thread) if the host ends the stream

        Raises:
            DeviceUnavailable: If permission is denied or no device matches
        """


def default_backend() -> AudioBackend:
    """Build the sounddevice backend, importing PortAudio bindings lazily."""
    from convo_assist.errors import DeviceUnavailable

    try:
        from convo_assist.capture.sounddevice_backend import SoundDeviceBackend
    except OSError as exc:  # PortAudio library missing
        raise DeviceUnavailable(f"sounddevice is not usable: {exc}") from exc
    return SoundDeviceBackend()
