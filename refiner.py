"""Post-session text refinement through a DashScope chat model."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

from errors import MISSING_API_KEY, REFINEMENT_FAILED, DictationError
from interfaces import CredentialProvider
from models import RefinementLevel
from recognizer import extract_message_text

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

logger = logging.getLogger(__name__)

REFINE_TIMEOUT_S = 15.0

_BASE_PROMPT = """You refine text dictated by voice. The text may mix languages \
(for example Portuguese and English technical terms).

Rules:
- Never add new content, only refine what was dictated.
- Keep every passage in the language it was spoken in.
- Keep technical terms exactly as spoken (API, endpoint, React, useState, ...).
- Remove fillers and hesitations without changing the meaning.
- Return ONLY the refined text, with no explanations, comments or markdown fences."""

_LEVEL_PROMPTS = {
    RefinementLevel.REFINE: """

Level: refine
- Focus on fluency and cleaning up natural speech.
- Remove repetitions, verbal tics and needless connectors.
- Restructure confusing sentences for clear reading, keeping the original meaning.
- Turn spoken enumerations ("point one", "first", "second") into a numbered list.
- Preserve intent, facts and technical requirements.""",
    RefinementLevel.PROMPT: """

Level: technical prompt
- Structure the final text as a clear prompt for an AI assistant.
- Organize it in short blocks: Context, Goal, Requirements, Constraints, Expected output.
- Use numbered lists when there are several items.
- Preserve every technical requirement mentioned.
- Make the instructions precise and actionable.""",
}


def build_system_prompt(level: RefinementLevel) -> str:
    if level == RefinementLevel.NONE:
        return ""
    return _BASE_PROMPT + _LEVEL_PROMPTS[level]


class DashscopeRefiner:
    """Rewrite finished text; raises ``DictationError`` on any failure."""

    def __init__(
        self,
        credentials: CredentialProvider,
        model: str = "qwen-plus",
        temperature: float = 0.2,
        max_tokens: int = 700,
        timeout_s: float = REFINE_TIMEOUT_S,
    ) -> None:
        self._credentials = credentials
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout_s = timeout_s
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="refiner")

    def refine(self, text: str, level: RefinementLevel) -> str:
        if level == RefinementLevel.NONE or not text.strip():
            return text
        if dashscope is None:
            raise DictationError(REFINEMENT_FAILED, "dashscope is not installed")
        api_key = self._credentials.dashscope_api_key()
        if not api_key:
            raise DictationError(MISSING_API_KEY, "DashScope API key is not configured")

        future = self._executor.submit(self._call, api_key, text, level)
        try:
            refined = future.result(timeout=self._timeout_s)
        except FutureTimeout as exc:
            future.cancel()
            raise DictationError(REFINEMENT_FAILED, f"timed out after {self._timeout_s:.0f}s") from exc
        except DictationError:
            raise
        except Exception as exc:
            logger.error("Refinement request failed: %s", exc)
            raise DictationError(REFINEMENT_FAILED, str(exc)) from exc
        return refined.strip() or text

    def _call(self, api_key: str, text: str, level: RefinementLevel) -> str:
        response = dashscope.Generation.call(
            api_key=api_key,
            model=self._model,
            messages=[
                {"role": "system", "content": build_system_prompt(level)},
                {"role": "user", "content": text},
            ],
            result_format="message",
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        status = getattr(response, "status_code", 200)
        if status != 200:
            message = getattr(response, "message", "") or "unknown error"
            raise DictationError(REFINEMENT_FAILED, f"refinement error ({status}): {message}")
        return extract_message_text(response)
