"""
Configuration management for the conversation assistant.

This module provides configuration loading and merging for the client
(capture, channel, transcription) and the server (analysis, bind address).
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


# Configuration file path
CONFIG_PATH = Path("convo_assist.json")


# Default configuration, one section per component
DEFAULT_CONFIG: Dict[str, Any] = {
    "capture": {
        "sample_rate": 48000,
        "channels": 1,
        "chunk_interval_ms": 100,
        "frame_interval_ms": 16,
        "fft_size": 256,
        "min_decibels": -100.0,
        "max_decibels": -30.0,
        "smoothing": 0.8,
        "replay_window_ms": 60000,
    },
    "channel": {
        "url": "ws://localhost:8000/ws",
        "max_reconnect_attempts": 5,
        "reconnect_delay_ms": 2000,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 8000,
        "api_base_url": "http://localhost:8000",
        "request_timeout": 10.0,
    },
    "transcription": {
        "backend": "none",
        "model_id": "openai/whisper-large-v3-turbo",
        "language": None,
        "target_sr": 16000,
        "chunk_duration": 5.0,
        "stride_seconds": 0.8,
        "silence_rms_threshold": 0.02,
        "queue_maxsize": 100,
    },
    "analysis": {
        "backend": "keyword",
        "ollama_model": os.environ.get("OLLAMA_MODEL", "gemma3:4b"),
        "ollama_base_url": os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434"),
        "timeout": 60.0,
        "history_limit": 40,
    },
}


@dataclass
class CaptureConfig:
    """Capture engine settings."""
    sample_rate: int
    channels: int
    chunk_interval_ms: int
    frame_interval_ms: int
    fft_size: int
    min_decibels: float
    max_decibels: float
    smoothing: float
    replay_window_ms: int


@dataclass
class ChannelConfig:
    """Session channel settings."""
    url: str
    max_reconnect_attempts: int
    reconnect_delay_ms: int


@dataclass
class ServerConfig:
    host: str
    port: int
    api_base_url: str
    request_timeout: float


@dataclass
class TranscriptionConfig:
    """Transcription service settings."""
    backend: str
    model_id: str
    target_sr: int
    chunk_duration: float
    stride_seconds: float
    silence_rms_threshold: float
    queue_maxsize: int
    language: Optional[str] = None


@dataclass
class AnalysisConfig:
    backend: str
    ollama_model: str
    ollama_base_url: str
    timeout: float
    history_limit: int


def deep_update(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge two dictionaries.

    For nested dict values, merges them recursively. For other values, the
    update value overwrites the base value.

    Args:
        base: The base dictionary to be updated
        updates: The dictionary containing updates to apply

    Returns:
        The merged dictionary (note: base is modified in-place)

    Example:
        >>> base = {"a": 1, "b": {"c": 2, "d": 3}}
        >>> deep_update(base, {"b": {"d": 4}, "f": 6})
        {'a': 1, 'b': {'c': 2, 'd': 4}, 'f': 6}
    """
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = deep_update(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from a JSON file and merge with defaults.

    If the file doesn't exist, a copy of DEFAULT_CONFIG is returned.

    Args:
        path: Path to the configuration JSON file (default: CONFIG_PATH)

    Returns:
        A dictionary containing the merged configuration

    Example:
        >>> config = load_config(Path("convo_assist.json"))
        >>> config["channel"]["reconnect_delay_ms"]
        2000
    """
    config = json.loads(json.dumps(DEFAULT_CONFIG))  # deep copy
    path = path or CONFIG_PATH
    if path.is_file():
        with path.open("r", encoding="utf-8") as handle:
            user_config = json.load(handle)
        if not isinstance(user_config, dict):
            logger.warning("Ignoring config file %s: top level is not an object", path)
            return config
        config = deep_update(config, user_config)
        logger.info("Loaded configuration from %s", path)
    return config


def capture_config(config: Dict[str, Any]) -> CaptureConfig:
    return CaptureConfig(**config["capture"])


def channel_config(config: Dict[str, Any]) -> ChannelConfig:
    return ChannelConfig(**config["channel"])


def server_config(config: Dict[str, Any]) -> ServerConfig:
    return ServerConfig(**config["server"])


def transcription_config(config: Dict[str, Any]) -> TranscriptionConfig:
    return TranscriptionConfig(**config["transcription"])


def analysis_config(config: Dict[str, Any]) -> AnalysisConfig:
    return AnalysisConfig(**config["analysis"])
