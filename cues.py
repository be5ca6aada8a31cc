"""Audible cues and passive notifications for session outcomes."""

from __future__ import annotations

import logging
from typing import Callable, Optional

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

SAMPLE_RATE = 44100

# (frequency Hz, duration s) per note
START_TONE = ((880.0, 0.06),)
COMPLETE_TONE = ((660.0, 0.07), (990.0, 0.09))
ERROR_TONE = ((220.0, 0.18),)


def render_tone(notes: tuple, sample_rate: int = SAMPLE_RATE, volume: float = 0.2):
    """Render a short sine melody with a linear fade-out per note."""
    parts = []
    for freq, duration in notes:
        t = np.arange(int(sample_rate * duration), dtype=np.float32) / sample_rate
        envelope = np.linspace(1.0, 0.0, num=t.size, dtype=np.float32)
        parts.append(volume * envelope * np.sin(2.0 * np.pi * freq * t))
    if not parts:
        return np.zeros(0, dtype=np.float32)
    return np.concatenate(parts).astype(np.float32)


class SoundCueNotifier:
    def __init__(
        self,
        enabled: bool = True,
        show_notifications: bool = True,
        on_notify: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._enabled = enabled
        self._show_notifications = show_notifications
        self._on_notify = on_notify

    def started(self) -> None:
        self._play(START_TONE)

    def completed(self, text: str) -> None:
        self._play(COMPLETE_TONE)
        self._notify(text[:100])

    def failed(self, message: str) -> None:
        self._play(ERROR_TONE)
        self._notify(message)

    def cancelled(self) -> None:
        self._play(ERROR_TONE)

    def _play(self, notes: tuple) -> None:
        if not self._enabled or sd is None or np is None:
            return
        try:
            sd.play(render_tone(notes), SAMPLE_RATE)
        except Exception as exc:
            logger.debug("Cue playback failed: %s", exc)

    def _notify(self, text: str) -> None:
        if not self._show_notifications:
            return
        logger.info("Notification: %s", text)
        if self._on_notify is not None:
            self._on_notify(text)
