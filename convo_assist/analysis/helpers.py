"""
Helper functions for model-backed analysis.

This module provides utility functions for building prompts from the
conversation history and extracting structured data from model replies.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from convo_assist.analysis.base import History


def _extract_json_object(response_text: str) -> Optional[Dict[str, Any]]:
    """Extract a JSON object from response text.

    Finds the first '{' and last '}' in the response and attempts to
    parse the content between them as JSON.

    Args:
        response_text: Raw text response that may contain JSON

    Returns:
        Parsed JSON dictionary if successful, None otherwise

    Example:
        >>> _extract_json_object('Here is data: {"key": "value"} done')
        {'key': 'value'}
        >>> _extract_json_object('No JSON here') is None
        True
    """
    start = response_text.find("{")
    end = response_text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    try:
        parsed = json.loads(response_text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _clamp_tail(text: str, limit: int) -> str:
    """Keep at most ``limit`` characters from the end of ``text``."""
    if not text or limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return "…" + text[-(limit - 1) :]


def format_history(history: History, limit: int = 40, max_chars: int = 400) -> str:
    """Render the most recent ``limit`` entries as ``- speaker: text`` lines."""
    lines: List[str] = []
    for item in list(history)[-limit:]:
        speaker = item.get("speakerName") or ("You" if item.get("speakerType") == "self" else "Other")
        text = _clamp_tail(str(item.get("text") or "").strip(), max_chars)
        if text:
            lines.append(f"- {speaker}: {text}")
    return "\n".join(lines)
