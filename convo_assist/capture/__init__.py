"""
Audio capture for conversation recording.

This package provides:
- The capture engine state machine (record, pause, resume, stop, replay)
- Monitor mode for live visualization of a second input
- Frequency-domain visualization frames

Main Components:
    - engine: CaptureEngine and WAV finalization
    - analyser: FFT energy frames for visualization
    - backend: Hardware boundary (AudioBackend, AudioInput)
    - sounddevice_backend: PortAudio implementation, loaded on first use

Example:
    >>> from convo_assist.capture import CaptureEngine, CaptureEvent
    >>> engine = CaptureEngine()
    >>> engine.subscribe(CaptureEvent.CHUNK_AVAILABLE, on_chunk)
    >>> await engine.start()
    >>> result = engine.stop()
"""
from convo_assist.capture.analyser import FrequencyAnalyser
from convo_assist.capture.backend import AudioBackend, AudioInput, default_backend
from convo_assist.capture.engine import CaptureEngine, CaptureEvent, decode_wav, encode_wav

__all__ = [
    "AudioBackend",
    "AudioInput",
    "CaptureEngine",
    "CaptureEvent",
    "FrequencyAnalyser",
    "decode_wav",
    "default_backend",
    "encode_wav",
]
