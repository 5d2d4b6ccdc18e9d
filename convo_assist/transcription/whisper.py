"""
Whisper speech backend using the Hugging Face ``transformers`` pipeline.

Requires the ``whisper`` extra (``torch`` and ``transformers``).
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional, Tuple

import numpy as np
import torch
from transformers import AutoModelForSpeechSeq2Seq, AutoProcessor, pipeline

from convo_assist.config.config import TranscriptionConfig
from convo_assist.transcription.service import SpeechBackend

logger = logging.getLogger(__name__)

GENERATE_KWARGS: Dict[str, Any] = {
    "task": "transcribe",
    "temperature": 0.0,
    "no_speech_threshold": 0.6,
    "logprob_threshold": -1.0,
    "repetition_penalty": 1.2,
}


def select_device(force_device: Optional[str]) -> Tuple[str, torch.dtype]:
    """
    Select the best available device for PyTorch computation.

    Device priority when auto-selecting: CUDA, then MPS, then CPU. GPU devices
    use float16, the CPU uses float32.

    Args:
        force_device: Optional device name to force ("cuda", "mps" or "cpu")

    Returns:
        A tuple of (device_name, torch_dtype)
    """
    if force_device:
        requested = force_device.lower()
        if requested == "cuda" and torch.cuda.is_available():
            return "cuda", torch.float16
        if requested == "mps" and getattr(torch.backends, "mps", None) and torch.backends.mps.is_available():
            return "mps", torch.float16
        if requested == "cpu":
            return "cpu", torch.float32
        logger.warning("Requested device %s is not available; selecting automatically", force_device)

    if torch.cuda.is_available():
        return "cuda", torch.float16
    if getattr(torch.backends, "mps", None) and torch.backends.mps.is_available():
        return "mps", torch.float16
    return "cpu", torch.float32


class WhisperBackend(SpeechBackend):
    """
    Whisper ASR pipeline, loaded lazily on the first call.

    Example:
        >>> backend = WhisperBackend("openai/whisper-large-v3-turbo", language="en")
        >>> backend.transcribe(np.zeros(16000, dtype=np.float32), 16000)
        ''
    """

    def __init__(self, model_id: str, language: Optional[str] = None, device: Optional[str] = None) -> None:
        self.model_id = model_id
        self.language = language
        self.force_device = device
        self.device = "cpu"
        self.torch_dtype: torch.dtype = torch.float32
        self.pipeline = None
        self.lock = threading.Lock()

    @classmethod
    def from_config(cls, config: TranscriptionConfig, device: Optional[str] = None) -> "WhisperBackend":
        return cls(config.model_id, language=config.language, device=device)

    def initialize(self) -> None:
        """Load the model and build the pipeline. Safe to call more than once."""
        with self.lock:
            if self.pipeline is not None:
                return
            self.device, self.torch_dtype = select_device(self.force_device)
            model = AutoModelForSpeechSeq2Seq.from_pretrained(
                self.model_id,
                torch_dtype=self.torch_dtype,
                low_cpu_mem_usage=True,
                use_safetensors=True,
            )
            model.to(self.device)
            processor = AutoProcessor.from_pretrained(self.model_id)

            generate_kwargs = dict(GENERATE_KWARGS)
            if self.language:
                generate_kwargs["language"] = self.language

            self.pipeline = pipeline(
                "automatic-speech-recognition",
                model=model,
                tokenizer=processor.tokenizer,
                feature_extractor=processor.feature_extractor,
                torch_dtype=self.torch_dtype,
                device=self.device,
                generate_kwargs=generate_kwargs,
            )
            logger.info("Whisper pipeline ready (model=%s, device=%s)", self.model_id, self.device)

    def transcribe(self, audio: np.ndarray, sample_rate: int) -> str:
        self.initialize()
        with torch.inference_mode():
            result = self.pipeline({"raw": audio.astype(np.float32), "sampling_rate": sample_rate})

        if self.device == "cuda" and torch.cuda.is_available():
            torch.cuda.empty_cache()
        elif self.device == "mps" and hasattr(torch.mps, "empty_cache"):
            torch.mps.empty_cache()

        return str(result.get("text", "")).strip()

    def close(self) -> None:
        with self.lock:
            self.pipeline = None
