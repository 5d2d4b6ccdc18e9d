"""Interface of the summarization/analysis collaborator."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Mapping, Sequence

from convo_assist.models.data_models import AnalysisResult

# Wire-form history entries: {"speakerType", "speakerName", "text"}
History = Sequence[Mapping[str, Any]]


class AnalysisBackend(ABC):
    """
    Best-effort conversation analysis.

    Every method receives the full message history in wire form and raises
    :class:`~convo_assist.errors.AnalysisFailed` when it cannot answer.
    Callers keep their previous results on failure.
    """

    @abstractmethod
    async def summarize(self, history: History) -> str:
        ...

    @abstractmethod
    async def analyze(self, history: History) -> AnalysisResult:
        """Detect topics, action items and follow-up questions."""

    @abstractmethod
    async def suggest_response(self, history: History, last_message: str) -> str:
        ...

    @abstractmethod
    async def assist(self, history: History, prompt: str) -> str:
        """Answer a private question from the local user about the conversation."""

    async def close(self) -> None:
        """Release any held resources."""


def history_texts(history: History) -> List[str]:
    return [str(item.get("text") or "") for item in history]
