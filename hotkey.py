"""Global hotkey adapter based on pynput."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

try:
    from pynput import keyboard
except Exception:  # pragma: no cover
    keyboard = None  # type: ignore

logger = logging.getLogger(__name__)


class GlobalHotkeyAdapter:
    """Map three key combinations (pynput ``HotKey.parse`` format) to intents."""

    def __init__(
        self,
        toggle: str = "<alt>+<space>",
        pause: str = "<alt>+p",
        cancel: str = "<esc>",
    ) -> None:
        self._combos = {"toggle": toggle, "pause": pause, "cancel": cancel}
        self._listener: Optional[object] = None
        self._lock = threading.Lock()

    def start(
        self,
        on_toggle: Callable[[], None],
        on_pause: Callable[[], None],
        on_cancel: Callable[[], None],
    ) -> None:
        if keyboard is None:
            raise RuntimeError("pynput is not installed")
        callbacks = {"toggle": on_toggle, "pause": on_pause, "cancel": on_cancel}

        bindings: dict[str, Callable[[], None]] = {}
        for action, combo in self._combos.items():
            if not combo:
                continue
            keyboard.HotKey.parse(combo)  # raises ValueError on a bad combo
            if combo in bindings:
                raise ValueError(f"hotkey {combo} bound twice")
            bindings[combo] = callbacks[action]
            logger.info("Hotkey %s -> %s", combo, action)

        with self._lock:
            if self._listener is not None:
                return
            self._listener = keyboard.GlobalHotKeys(bindings)
            self._listener.start()

    def stop(self) -> None:
        with self._lock:
            listener = self._listener
            self._listener = None
        if listener is not None:
            listener.stop()
