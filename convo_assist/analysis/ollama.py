"""
Ollama-based conversation analysis.

This module provides the OllamaAnalyzer class which sends the conversation
history to an Ollama model for summaries, topic/action-item detection,
response suggestions and private assistance.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import requests

from convo_assist.analysis.base import AnalysisBackend, History
from convo_assist.analysis.helpers import _extract_json_object, format_history
from convo_assist.config.config import AnalysisConfig
from convo_assist.errors import AnalysisFailed
from convo_assist.models.data_models import AnalysisResult

logger = logging.getLogger(__name__)

# System prompt shared by every request
SYSTEM_PROMPT = (
    "You are a discreet conversation assistant listening to a live conversation.\n"
    "Answer briefly and objectively. When asked for JSON, reply with JSON only."
)

ANALYSIS_INSTRUCTIONS = (
    "Analyze the conversation below and respond with a JSON object with these keys:\n"
    "{\n"
    '  "topics": [ {"topic": short label, "weight": importance from 1 to 5} ],\n'
    '  "actionItems": [ {"text": a concrete follow-up task} ],\n'
    '  "suggestedQuestions": [ good follow-up questions ]\n'
    "}\n"
    "Do not include any text other than the JSON."
)


class OllamaAnalyzer(AnalysisBackend):
    """Analysis backed by an Ollama server's ``/api/generate`` endpoint.

    Attributes:
        model: Ollama model name
        base_url: Ollama server base URL
        timeout: Request timeout in seconds
        history_limit: Number of most recent messages included in prompts

    Example:
        >>> analyzer = OllamaAnalyzer(model="gemma3:4b")
        >>> await analyzer.summarize([{"speakerType": "other", "text": "Hi there"}])
        'A short greeting.'
    """

    def __init__(
        self,
        model: str = "gemma3:4b",
        base_url: str = "http://localhost:11434",
        timeout: float = 60.0,
        history_limit: int = 40,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.history_limit = history_limit
        self._http = http or requests.Session()

    @classmethod
    def from_config(cls, config: AnalysisConfig) -> "OllamaAnalyzer":
        return cls(
            model=config.ollama_model,
            base_url=config.ollama_base_url,
            timeout=config.timeout,
            history_limit=config.history_limit,
        )

    def _build_prompt(self, instructions: str, history: History, extra: str = "") -> str:
        transcript = format_history(history, limit=self.history_limit) or "(no messages yet)"
        prompt = f"{SYSTEM_PROMPT}\n\n{instructions}\n\nConversation:\n{transcript}\n"
        if extra:
            prompt += f"\n{extra}\n"
        return prompt

    def _call_model(self, prompt: str) -> str:
        """Call the Ollama generate API.

        Args:
            prompt: Prompt passed to the model

        Returns:
            The model's response text

        Raises:
            AnalysisFailed: If the request fails or the reply is not JSON
        """
        payload = {"model": self.model, "prompt": prompt, "stream": False}
        try:
            response = self._http.post(
                f"{self.base_url}/api/generate",
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as exc:
            logger.error("Ollama request failed: %s", exc)
            raise AnalysisFailed(f"Ollama request failed: {exc}") from exc
        except ValueError as exc:
            logger.error("Could not parse Ollama response: %s", exc)
            raise AnalysisFailed("Ollama returned invalid JSON") from exc
        return str(data.get("response", "")).strip()

    async def _generate(self, prompt: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self._call_model(prompt))

    async def summarize(self, history: History) -> str:
        if not history:
            return ""
        prompt = self._build_prompt("Summarize the conversation below in two or three sentences.", history)
        return await self._generate(prompt)

    async def analyze(self, history: History) -> AnalysisResult:
        if not history:
            return AnalysisResult()
        raw = await self._generate(self._build_prompt(ANALYSIS_INSTRUCTIONS, history))
        parsed = _extract_json_object(raw)
        if parsed is None:
            logger.warning("Could not extract JSON from analysis reply: %s", raw[:200])
            raise AnalysisFailed("Analysis reply did not contain a JSON object")
        try:
            return AnalysisResult.from_dict(parsed)
        except (ValueError, TypeError, AttributeError) as exc:
            raise AnalysisFailed(f"Analysis reply has an unexpected shape: {exc}") from exc

    async def suggest_response(self, history: History, last_message: str) -> str:
        prompt = self._build_prompt(
            "Suggest what the local user could say next. Reply with the suggested answer only.",
            history,
            extra=f"Last message: {last_message}",
        )
        return await self._generate(prompt)

    async def assist(self, history: History, prompt: str) -> str:
        full_prompt = self._build_prompt(
            "The local user privately asks you for help with the conversation below.",
            history,
            extra=f"Request: {prompt}",
        )
        return await self._generate(full_prompt)

    async def close(self) -> None:
        self._http.close()
