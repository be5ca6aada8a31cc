"""Auto paste service for the final text of a session."""

from __future__ import annotations

import logging
import sys
import time
from typing import Any

from errors import INSERTION_FAILED
from models import InsertResult

try:
    import pyperclip
except Exception:  # pragma: no cover
    pyperclip = None  # type: ignore

try:
    from pynput.keyboard import Controller, Key
except Exception:  # pragma: no cover
    Controller = None  # type: ignore
    Key = None  # type: ignore

logger = logging.getLogger(__name__)


def send_paste_keystroke(keyboard: Any) -> None:
    """Press the platform paste shortcut (Cmd+V on macOS, Ctrl+V elsewhere)."""
    modifier = Key.cmd if sys.platform == "darwin" else Key.ctrl
    keyboard.press(modifier)
    keyboard.press("v")
    keyboard.release("v")
    keyboard.release(modifier)


class ClipboardPasteService:
    def __init__(self, restore_delay_s: float = 0.1) -> None:
        self._restore_delay_s = restore_delay_s

    def copy_text(self, text: str) -> InsertResult:
        if pyperclip is None:
            return InsertResult(success=False, reason="clipboard dependency missing", clipboard_restored=False)
        try:
            pyperclip.copy(text)
        except Exception as exc:
            logger.error("Copy to clipboard failed: %s", exc)
            return InsertResult(success=False, reason=f"{INSERTION_FAILED}: {exc}", clipboard_restored=False)
        return InsertResult(success=True, reason="copied", clipboard_restored=False)

    def paste_text(self, text: str) -> InsertResult:
        if not text.strip():
            return InsertResult(success=False, reason="empty text", clipboard_restored=True)
        if pyperclip is None or Controller is None or Key is None:
            return InsertResult(
                success=False,
                reason="clipboard/keyboard dependency missing",
                clipboard_restored=False,
            )

        old_clip: str | None = None
        restored = False
        try:
            old_clip = pyperclip.paste()
            pyperclip.copy(text)
            send_paste_keystroke(Controller())
            time.sleep(self._restore_delay_s)
            pyperclip.copy(old_clip)
            return InsertResult(success=True, reason="ok", clipboard_restored=True)
        except Exception as exc:
            logger.error("Paste failed: %s", exc)
            try:
                if old_clip is not None:
                    pyperclip.copy(old_clip)
                    restored = True
            except Exception as restore_exc:
                logger.warning("Clipboard restore failed: %s", restore_exc)
                restored = False
            return InsertResult(
                success=False,
                reason=f"{INSERTION_FAILED}: {exc}",
                clipboard_restored=restored,
            )
