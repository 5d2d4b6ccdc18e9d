"""
Tests for the sounddevice capture backend.

A fake ``sounddevice`` module stands in for PortAudio. Like the real one,
its ``InputStream.stop()`` runs the ``finished_callback``.

Run with:
    pytest tests/test_sounddevice_backend.py -v
"""

import importlib
import sys
import types

import numpy as np
import pytest

from conftest import settle
from convo_assist.capture.engine import CaptureEngine
from convo_assist.config.config import DEFAULT_CONFIG, capture_config
from convo_assist.models.data_models import DeviceKind, RecorderStatus

BACKEND_MODULE = "convo_assist.capture.sounddevice_backend"


class FakeInputStream:
    instances = []

    def __init__(self, samplerate, channels, dtype, device, callback, finished_callback):
        self.samplerate = samplerate
        self.channels = channels
        self.device = device
        self.callback = callback
        self.finished_callback = finished_callback
        self.active = False
        self.closed = False
        FakeInputStream.instances.append(self)

    def start(self):
        self.active = True

    def stop(self):
        if self.active:
            self.active = False
            self.finished_callback()

    def close(self):
        self.closed = True

    def feed(self, block):
        self.callback(block, len(block), None, None)

    def end_from_host(self):
        """Device unplugged or stream aborted by PortAudio."""
        self.active = False
        self.finished_callback()


class FakePortAudioError(Exception):
    pass


@pytest.fixture
def sd_backend(monkeypatch):
    fake = types.ModuleType("sounddevice")
    fake.InputStream = FakeInputStream
    fake.PortAudioError = FakePortAudioError
    fake.query_devices = lambda: [
        {"name": "Built-in Microphone", "max_input_channels": 1, "max_output_channels": 0},
        {"name": "Speakers", "max_input_channels": 0, "max_output_channels": 2},
    ]
    FakeInputStream.instances = []
    monkeypatch.setitem(sys.modules, "sounddevice", fake)
    monkeypatch.delitem(sys.modules, BACKEND_MODULE, raising=False)
    return importlib.import_module(BACKEND_MODULE)


@pytest.fixture
def sd_engine(sd_backend, scheduler):
    return CaptureEngine(capture_config(DEFAULT_CONFIG), backend=sd_backend.SoundDeviceBackend(), scheduler=scheduler)


class TestStreamLifecycle:
    """Pausing stops the PortAudio stream without counting as a lost device."""

    @pytest.mark.asyncio
    async def test_pause_survives_finished_callback(self, sd_engine):
        await sd_engine.start()
        stream = FakeInputStream.instances[0]

        assert sd_engine.pause()
        await settle()

        assert not stream.active
        assert sd_engine.status is RecorderStatus.PAUSED
        assert sd_engine.resume()
        assert stream.active
        assert sd_engine.status is RecorderStatus.RECORDING

    @pytest.mark.asyncio
    async def test_second_pause_after_resume(self, sd_engine):
        await sd_engine.start()
        sd_engine.pause()
        sd_engine.resume()
        sd_engine.pause()
        await settle()

        assert sd_engine.status is RecorderStatus.PAUSED

    @pytest.mark.asyncio
    async def test_host_finish_stops_recording(self, sd_engine):
        await sd_engine.start()
        FakeInputStream.instances[0].end_from_host()
        await settle()

        assert sd_engine.status is RecorderStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_host_finish_while_paused_is_ignored(self, sd_engine):
        await sd_engine.start()
        sd_engine.pause()
        FakeInputStream.instances[0].end_from_host()
        await settle()

        assert sd_engine.status is RecorderStatus.PAUSED

    def test_close_does_not_report_loss(self, sd_backend):
        lost = []
        audio_input = sd_backend.SoundDeviceInput(None, 48000, 1, True, on_lost=lambda: lost.append(1))
        audio_input.close()

        assert audio_input.closed
        assert FakeInputStream.instances[0].closed
        assert lost == []


class TestSoundDeviceInput:
    def test_first_channel_is_buffered(self, sd_backend):
        audio_input = sd_backend.SoundDeviceInput(None, 48000, 2, True, tail_samples=4)
        stream = FakeInputStream.instances[0]
        stream.feed(np.array([[1, 9], [2, 9], [3, 9]], dtype=np.int16))
        stream.feed(np.array([[4, 9], [5, 9]], dtype=np.int16))

        assert audio_input.drain().tolist() == [1, 2, 3, 4, 5]
        assert audio_input.drain().size == 0
        assert audio_input.latest(2).tolist() == [4, 5]

    def test_monitor_input_keeps_only_tail(self, sd_backend):
        audio_input = sd_backend.SoundDeviceInput(None, 48000, 1, False)
        FakeInputStream.instances[0].feed(np.arange(10, dtype=np.int16).reshape(-1, 1))

        assert audio_input.drain().size == 0
        assert audio_input.latest(3).tolist() == [7, 8, 9]


class TestDeviceResolution:
    def test_list_devices_splits_directions(self, sd_backend):
        devices = sd_backend.SoundDeviceBackend().list_devices()
        assert [(d.device_id, d.kind) for d in devices] == [("0", DeviceKind.INPUT), ("1", DeviceKind.OUTPUT)]

    def test_open_by_name(self, sd_backend):
        sd_backend.SoundDeviceBackend().open_input("Built-in Microphone", 48000, 1)
        assert FakeInputStream.instances[0].device == 0
