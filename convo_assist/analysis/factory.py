"""Build the configured analysis backend."""
from __future__ import annotations

import logging

from convo_assist.analysis.base import AnalysisBackend
from convo_assist.analysis.keyword import KeywordAnalyzer
from convo_assist.analysis.ollama import OllamaAnalyzer
from convo_assist.config.config import AnalysisConfig

logger = logging.getLogger(__name__)


def create_analyzer(config: AnalysisConfig) -> AnalysisBackend:
    """Return the backend named by ``config.backend`` (``keyword`` or ``ollama``)."""
    backend = config.backend.lower()
    if backend == "ollama":
        logger.info("Using Ollama analysis (model=%s, url=%s)", config.ollama_model, config.ollama_base_url)
        return OllamaAnalyzer.from_config(config)
    if backend != "keyword":
        logger.warning("Unknown analysis backend %r; falling back to keyword rules", config.backend)
    return KeywordAnalyzer()
