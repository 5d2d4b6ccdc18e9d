"""
Shared test fixtures for the conversation assistant.

Provides:
- Fake audio backend and inputs (no PortAudio needed)
- Manual scheduler that drives timers by hand
- Fake WebSocket transport and connector for the session channel
- In-memory storage and a scripted analysis backend
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pytest

from convo_assist.analysis.base import AnalysisBackend, History
from convo_assist.capture.backend import AudioBackend, AudioInput
from convo_assist.capture.engine import CaptureEngine
from convo_assist.channel.session_channel import SessionChannel
from convo_assist.config.config import DEFAULT_CONFIG, capture_config, channel_config
from convo_assist.errors import AnalysisFailed, DeviceUnavailable
from convo_assist.models.data_models import AnalysisResult, AudioDevice, DeviceKind, TopicDetection
from convo_assist.storage.memory import MemoryStorage


# ============================================================================
# Time
# ============================================================================

class ManualTimer:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose clock only moves when :meth:`advance` is called."""

    def __init__(self) -> None:
        self.time = 0.0
        self.timers: List[ManualTimer] = []

    def now(self) -> float:
        return self.time

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self.time + max(0.0, delay_ms), callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> List[ManualTimer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, ms: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self.time + ms
        while True:
            due = [t for t in self.pending if t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.timers.remove(timer)
            self.time = max(self.time, timer.due)
            timer.callback()
        self.timers = self.pending
        self.time = target


# ============================================================================
# Audio
# ============================================================================

def tone(samples: int, frequency: float = 440.0, sample_rate: int = 48000, amplitude: float = 0.5) -> np.ndarray:
    """int16 sine wave."""
    t = np.arange(samples) / sample_rate
    return (np.sin(2 * np.pi * frequency * t) * amplitude * 32767).astype(np.int16)


class FakeInput(AudioInput):
    """Input whose samples are pushed by the test with :meth:`feed`."""

    def __init__(self, device_id: Optional[str], record: bool, on_lost: Optional[Callable[[], None]]) -> None:
        self.device_id = device_id
        self.record = record
        self.on_lost = on_lost
        self.paused = False
        self._closed = False
        self._pending: List[np.ndarray] = []
        self._history = np.zeros(0, dtype=np.int16)

    def feed(self, samples: np.ndarray) -> None:
        if self.paused or self._closed:
            return
        self._pending.append(samples.astype(np.int16))
        self._history = np.concatenate((self._history, samples.astype(np.int16)))[-4096:]

    def drain(self) -> np.ndarray:
        if not self._pending:
            return np.zeros(0, dtype=np.int16)
        data = np.concatenate(self._pending)
        self._pending = []
        return data

    def latest(self, count: int) -> np.ndarray:
        return self._history[-count:]

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed


class FakeAudioBackend(AudioBackend):
    def __init__(self) -> None:
        self.inputs: List[FakeInput] = []
        self.fail = False

    def list_devices(self) -> List[AudioDevice]:
        return [
            AudioDevice("0", "Built-in Microphone", DeviceKind.INPUT),
            AudioDevice("1", "Loopback", DeviceKind.INPUT),
        ]

    def open_input(self, device_id, sample_rate, channels, record=True, on_lost=None) -> FakeInput:
        if self.fail:
            raise DeviceUnavailable("Permission denied")
        audio_input = FakeInput(device_id, record, on_lost)
        self.inputs.append(audio_input)
        return audio_input

    @property
    def recording_inputs(self) -> List[FakeInput]:
        return [i for i in self.inputs if i.record]

    @property
    def monitor_inputs(self) -> List[FakeInput]:
        return [i for i in self.inputs if not i.record]


# ============================================================================
# Transport
# ============================================================================

class FakeWebSocket:
    """Client transport: frames pushed with :meth:`receive` are yielded to the channel."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def receive(self, frame: Any) -> None:
        self._incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        """Simulate a transport error."""
        self._incoming.put_nowait(OSError("connection reset"))

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConnector:
    """Connector that hands out FakeWebSockets, or fails while ``fail`` is set."""

    def __init__(self) -> None:
        self.calls = 0
        self.fail = False
        self.sockets: List[FakeWebSocket] = []

    async def __call__(self, url: str) -> FakeWebSocket:
        self.calls += 1
        if self.fail:
            raise OSError("connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def last(self) -> FakeWebSocket:
        return self.sockets[-1]


async def settle(rounds: int = 10) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ============================================================================
# Analysis
# ============================================================================

class StubAnalyzer(AnalysisBackend):
    """Scripted analysis results; set ``fail`` to raise AnalysisFailed."""

    def __init__(self) -> None:
        self.summary = "A short summary."
        self.result = AnalysisResult(
            topics=[TopicDetection("Roadmap", 2)],
            action_items=["Send the roadmap"],
            suggested_questions=["What is the deadline?"],
        )
        self.suggestion = "Sounds good."
        self.reply = "Ask about the budget."
        self.fail = False
        self.calls: List[Tuple[str, int]] = []

    def _check(self, name: str, history: History) -> None:
        self.calls.append((name, len(history)))
        if self.fail:
            raise AnalysisFailed(f"{name} unavailable")

    async def summarize(self, history: History) -> str:
        self._check("summarize", history)
        return self.summary

    async def analyze(self, history: History) -> AnalysisResult:
        self._check("analyze", history)
        return self.result

    async def suggest_response(self, history: History, last_message: str) -> str:
        self._check("suggest_response", history)
        return self.suggestion

    async def assist(self, history: History, prompt: str) -> str:
        self._check("assist", history)
        return self.reply


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def audio_backend() -> FakeAudioBackend:
    return FakeAudioBackend()


@pytest.fixture
def engine(audio_backend: FakeAudioBackend, scheduler: ManualScheduler) -> CaptureEngine:
    return CaptureEngine(capture_config(DEFAULT_CONFIG), backend=audio_backend, scheduler=scheduler)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def channel(connector: FakeConnector, scheduler: ManualScheduler) -> SessionChannel:
    return SessionChannel(channel_config(DEFAULT_CONFIG), connector=connector, scheduler=scheduler)


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def analyzer() -> StubAnalyzer:
    return StubAnalyzer()
