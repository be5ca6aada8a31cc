"""Non-streaming transcription of the buffered audio artifact.

Used when live transcription is disabled: the recorder's WAV artifact is sent
to DashScope ``qwen3-asr-flash`` with ``stream=True`` and the last streamed
text is taken as the transcript.
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Callable, Optional

from errors import MISSING_API_KEY, TRANSCRIPTION_FAILED, DictationError
from interfaces import CredentialProvider

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

logger = logging.getLogger(__name__)


def _wav_file_to_base64(path: str) -> str:
    return base64.b64encode(Path(path).read_bytes()).decode("ascii")


def extract_message_text(chunk: object) -> str:
    """Pull text from a DashScope ``result_format="message"`` response dict."""
    if isinstance(chunk, dict):
        output = chunk.get("output") or {}
        choices = output.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        content = message.get("content", [])
        if isinstance(content, str):
            return content
        if not content:
            return ""
        value = content[0]
        if isinstance(value, dict):
            return str(value.get("text", ""))
    return ""


class DashscopeFileTranscriber:
    def __init__(
        self,
        credentials: CredentialProvider,
        model: str = "qwen3-asr-flash",
        request_timeout_s: float = 30.0,
        on_partial: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._credentials = credentials
        self._model = model
        self._request_timeout_s = request_timeout_s
        self._on_partial = on_partial

    def transcribe(self, path: str) -> str:
        if dashscope is None:
            raise DictationError(TRANSCRIPTION_FAILED, "dashscope is not installed")
        api_key = self._credentials.dashscope_api_key()
        if not api_key:
            raise DictationError(MISSING_API_KEY, "DashScope API key is not configured")

        try:
            wav_base64 = _wav_file_to_base64(path)
        except OSError as exc:
            raise DictationError(TRANSCRIPTION_FAILED, f"cannot read {path}: {exc}") from exc

        logger.info("Transcribing %s with %s", path, self._model)
        latest_text = ""
        try:
            response = dashscope.MultiModalConversation.call(
                api_key=api_key,
                model=self._model,
                messages=[
                    {"role": "system", "content": [{"text": ""}]},
                    {"role": "user", "content": [{"audio": wav_base64}]},
                ],
                result_format="message",
                asr_options={"enable_itn": False},
                stream=True,
                timeout=self._request_timeout_s,
            )
            for chunk in response:
                text = extract_message_text(chunk)
                if text:
                    latest_text = text
                    if self._on_partial is not None:
                        self._on_partial(text)
        except DictationError:
            raise
        except Exception as exc:
            logger.error("Transcription request failed: %s", exc)
            raise DictationError(TRANSCRIPTION_FAILED, str(exc)) from exc
        return latest_text.strip()
