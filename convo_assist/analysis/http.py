"""Client-side analysis that calls the server's ``/api/analyze`` routes."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from convo_assist.analysis.base import AnalysisBackend, History
from convo_assist.errors import AnalysisFailed
from convo_assist.models.data_models import AnalysisResult

logger = logging.getLogger(__name__)


class HttpAnalysis(AnalysisBackend):
    def __init__(self, base_url: str, timeout: float = 60.0, http: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = http or requests.Session()

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        logger.debug("POST %s (%d messages)", path, len(payload.get("messages") or []))
        try:
            response = self._http.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as exc:
            raise AnalysisFailed(f"POST {path} failed: {exc}") from exc
        except ValueError as exc:
            raise AnalysisFailed(f"POST {path} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise AnalysisFailed(f"POST {path} returned {type(data).__name__}, expected an object")
        return data

    async def _call(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self._post(path, payload))

    async def summarize(self, history: History) -> str:
        data = await self._call("/api/analyze/summary", {"messages": list(history)})
        return str(data.get("summary") or "")

    async def analyze(self, history: History) -> AnalysisResult:
        data = await self._call("/api/analyze/text", {"messages": list(history)})
        try:
            return AnalysisResult.from_dict(data)
        except (ValueError, TypeError, AttributeError) as exc:
            raise AnalysisFailed(f"Unexpected analysis body: {exc}") from exc

    async def suggest_response(self, history: History, last_message: str) -> str:
        data = await self._call(
            "/api/analyze/suggest-response",
            {"messages": list(history), "lastMessage": last_message},
        )
        return str(data.get("suggestion") or "")

    async def assist(self, history: History, prompt: str) -> str:
        data = await self._call("/api/analyze/assist", {"messages": list(history), "prompt": prompt})
        return str(data.get("response") or "")

    async def close(self) -> None:
        self._http.close()
