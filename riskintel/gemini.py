"""
Optional Gemini refinement for extraction tasks.

Calls go through the official google-genai SDK. Every helper returns None when
no API key is configured or the model response cannot be parsed, so callers
keep their deterministic result.
"""
from __future__ import annotations

import asyncio
import json
import re
from typing import Any

from google import genai
from google.genai import types

from .config import settings
from .logger import get_logger

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def gemini_enabled() -> bool:
    return bool(settings.GEMINI_API_KEY)


def _strip_fences(text: str) -> str:
    m = _FENCE_RE.search(text)
    return (m.group(1) if m else text).strip()


def call_gemini_json(prompt: str, *, max_output_tokens: int = 2048) -> dict[str, Any] | None:
    """Blocking Gemini call that expects a JSON object back."""
    if not gemini_enabled():
        return None

    try:
        client = genai.Client(api_key=settings.GEMINI_API_KEY)
        contents = [
            types.Content(
                role="user",
                parts=[types.Part.from_text(text=prompt)],
            )
        ]
        config = types.GenerateContentConfig(
            response_mime_type="application/json",
            temperature=0.2,
            max_output_tokens=max_output_tokens,
        )
        resp = client.models.generate_content(
            model=settings.GEMINI_MODEL,
            contents=contents,
            config=config,
        )

        text = (getattr(resp, "text", None) or "").strip()
        if not text:
            return None
        parsed = json.loads(_strip_fences(text))
        return parsed if isinstance(parsed, dict) else None
    except Exception as e:
        logger.warning("Gemini call failed: %s", e)
        return None


async def ask_gemini_json(prompt: str, *, max_output_tokens: int = 2048) -> dict[str, Any] | None:
    if not gemini_enabled():
        return None
    return await asyncio.to_thread(call_gemini_json, prompt, max_output_tokens=max_output_tokens)
