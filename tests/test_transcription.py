"""
Tests for the chunk-fed transcription service.

A scripted SpeechBackend stands in for Whisper, so no model is loaded.

Run with:
    pytest tests/test_transcription.py -v
"""

from typing import List, Tuple

import numpy as np
import pytest

from conftest import tone
from convo_assist.config.config import TranscriptionConfig
from convo_assist.models.data_models import SpeakerType
from convo_assist.transcription.service import (
    SpeechBackend,
    TranscriptionService,
    is_speech,
    strip_repeated_prefix,
)


class ScriptedSpeech(SpeechBackend):
    """Returns queued replies and records the windows it was given."""

    def __init__(self, *replies: str) -> None:
        self.replies = list(replies)
        self.windows: List[Tuple[int, int]] = []

    def transcribe(self, audio: np.ndarray, sample_rate: int) -> str:
        self.windows.append((audio.size, sample_rate))
        return self.replies.pop(0) if self.replies else ""


def make_config(chunk_duration: float = 1.0, stride_seconds: float = 0.2) -> TranscriptionConfig:
    return TranscriptionConfig(
        backend="none",
        model_id="test",
        target_sr=16000,
        chunk_duration=chunk_duration,
        stride_seconds=stride_seconds,
        silence_rms_threshold=0.02,
        queue_maxsize=100,
    )


def feed_seconds(service: TranscriptionService, seconds: float, amplitude: float = 0.5) -> None:
    chunk_samples = service.source_sr // 10
    for _ in range(int(seconds * 10)):
        service.feed(tone(chunk_samples, sample_rate=service.source_sr, amplitude=amplitude).tobytes())


class TestHelpers:
    def test_is_speech(self):
        assert is_speech(np.full(100, 0.5, dtype=np.float32), 0.02)
        assert not is_speech(np.zeros(100, dtype=np.float32), 0.02)
        assert not is_speech(np.zeros(0, dtype=np.float32), 0.02)

    @pytest.mark.parametrize("previous,current,expected", [
        ("hello", "hello world", "world"),
        ("hello", "hello", ""),
        ("", "fresh start", "fresh start"),
        ("goodbye", "hello again", "hello again"),
    ])
    def test_strip_repeated_prefix(self, previous, current, expected):
        assert strip_repeated_prefix(previous, current) == expected


class TestService:
    @pytest.mark.asyncio
    async def test_speech_window_produces_segment(self):
        speech = ScriptedSpeech("Good morning everyone")
        service = TranscriptionService(speech, make_config(), source_sr=16000)
        service.speaker_type = SpeakerType.OTHER
        segments = []
        service.start(segments.append)

        feed_seconds(service, 1.0)
        await service.stop(flush=False)

        assert [s.text for s in segments] == ["Good morning everyone"]
        assert segments[0].speaker_type is SpeakerType.OTHER
        assert segments[0].duration == pytest.approx(1.0)
        assert segments[0].start_time < segments[0].end_time
        assert speech.windows == [(16000, 16000)]

    @pytest.mark.asyncio
    async def test_silence_is_skipped(self):
        speech = ScriptedSpeech("should not appear")
        service = TranscriptionService(speech, make_config(), source_sr=16000)
        segments = []
        service.start(segments.append)

        feed_seconds(service, 2.0, amplitude=0.0)
        await service.stop()

        assert segments == []
        assert speech.windows == []

    @pytest.mark.asyncio
    async def test_overlap_text_not_repeated(self):
        speech = ScriptedSpeech("hello", "hello world")
        service = TranscriptionService(speech, make_config(), source_sr=16000)
        segments = []
        service.start(segments.append)

        feed_seconds(service, 1.0)
        feed_seconds(service, 0.8)
        await service.stop(flush=False)

        assert [s.text for s in segments] == ["hello", "world"]
        # second window = 0.2 s overlap + 0.8 s new audio
        assert speech.windows[1] == (16000, 16000)

    @pytest.mark.asyncio
    async def test_stop_flushes_partial_window(self):
        speech = ScriptedSpeech("tail end")
        service = TranscriptionService(speech, make_config(chunk_duration=3.0), source_sr=16000)
        segments = []
        service.start(segments.append)

        feed_seconds(service, 1.5)
        await service.stop(flush=True)

        assert [s.text for s in segments] == ["tail end"]
        assert not service.is_running()

    @pytest.mark.asyncio
    async def test_short_tail_not_flushed(self):
        speech = ScriptedSpeech("too short")
        service = TranscriptionService(speech, make_config(chunk_duration=3.0), source_sr=16000)
        segments = []
        service.start(segments.append)

        feed_seconds(service, 0.5)
        await service.stop(flush=True)

        assert segments == []

    @pytest.mark.asyncio
    async def test_resamples_to_model_rate(self):
        speech = ScriptedSpeech("resampled")
        service = TranscriptionService(speech, make_config(), source_sr=48000)
        service.start(lambda segment: None)

        feed_seconds(service, 1.0)
        await service.stop(flush=False)

        assert speech.windows == [(16000, 16000)]

    @pytest.mark.asyncio
    async def test_start_twice_raises(self):
        service = TranscriptionService(ScriptedSpeech(), make_config(), source_sr=16000)
        service.start(lambda segment: None)
        with pytest.raises(RuntimeError):
            service.start(lambda segment: None)
        await service.stop()

    def test_feed_before_start_is_dropped(self):
        service = TranscriptionService(ScriptedSpeech(), make_config(), source_sr=16000)
        assert service.feed(b"\x00\x01" * 10) is False
        assert service.feed(b"") is False
