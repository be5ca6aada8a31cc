"""Live text insertion into the focused application.

Deltas are coalesced into a batch and flushed on a short interval, or at once
when a turn commits. Every flush, ledger update and backspace runs on one
single-thread executor, so flushes never interleave and batch order equals
delta arrival order.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, Protocol, Sequence

from auto_paste import send_paste_keystroke
from errors import INSERTION_FAILED

try:
    import pyperclip
except Exception:  # pragma: no cover
    pyperclip = None  # type: ignore

try:
    from pynput.keyboard import Controller, Key
except Exception:  # pragma: no cover
    Controller = None  # type: ignore
    Key = None  # type: ignore

try:
    import ApplicationServices as AX
except Exception:  # pragma: no cover - only available on macOS with pyobjc
    AX = None  # type: ignore

logger = logging.getLogger(__name__)

BATCH_INTERVAL_S = 0.080
CLIPBOARD_RESTORE_DELAY_S = 1.0
BACKSPACE_INTERVAL_S = 0.0005


class Injector(Protocol):
    def insert(self, text: str) -> bool: ...


class AccessibilityInjector:
    """Replace the focused element's (empty) selection through the AX API."""

    def insert(self, text: str) -> bool:
        if AX is None:
            return False
        element = self._focused_text_element()
        if element is None:
            return False
        err = AX.AXUIElementSetAttributeValue(element, AX.kAXSelectedTextAttribute, text)
        return err == AX.kAXErrorSuccess

    def _focused_text_element(self) -> Any:
        system_wide = AX.AXUIElementCreateSystemWide()
        err, app = AX.AXUIElementCopyAttributeValue(
            system_wide, AX.kAXFocusedApplicationAttribute, None
        )
        if err != AX.kAXErrorSuccess or app is None:
            return None
        err, element = AX.AXUIElementCopyAttributeValue(app, AX.kAXFocusedUIElementAttribute, None)
        if err != AX.kAXErrorSuccess or element is None:
            return None
        # Only text fields expose a selected-text attribute.
        err, _ = AX.AXUIElementCopyAttributeValue(element, AX.kAXSelectedTextAttribute, None)
        if err != AX.kAXErrorSuccess:
            return None
        return element


class ClipboardInjector:
    """Clipboard + paste keystroke, restoring the user's clipboard afterwards.

    Restoration is debounced: a burst of insertions saves the clipboard once
    and restores it ``restore_delay_s`` after the last one. Saving, pasting
    and restoring all happen under one lock, so a restore never lands between
    another insertion's copy and its paste keystroke.
    """

    def __init__(self, restore_delay_s: float = CLIPBOARD_RESTORE_DELAY_S, keyboard: Any = None) -> None:
        self._restore_delay_s = restore_delay_s
        self._keyboard = keyboard
        self._lock = threading.Lock()
        self._saved: Optional[str] = None
        self._restore_timer: Optional[threading.Timer] = None
        self._generation = 0

    def insert(self, text: str) -> bool:
        if pyperclip is None or (self._keyboard is None and Controller is None):
            return False
        keyboard = self._keyboard or Controller()
        with self._lock:
            self._cancel_timer()
            # The user's clipboard stays saved until it has been written back.
            if self._saved is None:
                self._saved = pyperclip.paste()
            try:
                pyperclip.copy(text)
                send_paste_keystroke(keyboard)
            except Exception:
                self._restore_locked()
                raise
            self._restore_timer = threading.Timer(
                self._restore_delay_s, self._on_restore_timer, args=(self._generation,)
            )
            self._restore_timer.daemon = True
            self._restore_timer.start()
        return True

    def restore_now(self) -> None:
        with self._lock:
            self._cancel_timer()
            self._restore_locked()

    def _on_restore_timer(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._restore_timer = None
            self._restore_locked()

    def _cancel_timer(self) -> None:
        self._generation += 1
        if self._restore_timer is not None:
            self._restore_timer.cancel()
            self._restore_timer = None

    def _restore_locked(self) -> None:
        saved = self._saved
        if saved is None or pyperclip is None:
            return
        try:
            pyperclip.copy(saved)
        except Exception as exc:
            logger.warning("Clipboard restore failed: %s", exc)
        finally:
            self._saved = None


class KeyboardBackspacer:
    def __init__(self, keyboard: Any = None, interval_s: float = BACKSPACE_INTERVAL_S) -> None:
        self._keyboard = keyboard
        self._interval_s = interval_s

    def send(self, count: int) -> None:
        if self._keyboard is None:
            if Controller is None:
                raise RuntimeError("pynput is not installed")
            self._keyboard = Controller()
        for _ in range(count):
            self._keyboard.press(Key.backspace)
            self._keyboard.release(Key.backspace)
            time.sleep(self._interval_s)


class LiveTextInserter:
    def __init__(
        self,
        injectors: Optional[Sequence[Injector]] = None,
        backspacer: Any = None,
        batch_interval_s: float = BATCH_INTERVAL_S,
        on_error: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        if injectors is None:
            injectors = [AccessibilityInjector(), ClipboardInjector()]
        self._injectors = list(injectors)
        self._backspacer = backspacer or KeyboardBackspacer()
        self._batch_interval_s = batch_interval_s
        self._on_error = on_error
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="text-inserter")

        self._text_lock = threading.Lock()
        self._committed = ""
        self._pending = ""

        # Owned by the executor thread.
        self._batch = ""
        self._timer: Optional[threading.Timer] = None
        self._ledger = ""

    @property
    def all_text(self) -> str:
        with self._text_lock:
            return self._committed + self._pending

    @property
    def ledger_length(self) -> int:
        return self._executor.submit(lambda: len(self._ledger)).result()

    def set_error_callback(self, on_error: Optional[Callable[[str, str], None]]) -> None:
        self._on_error = on_error

    def append_delta(self, text: str) -> None:
        if not text:
            return
        with self._text_lock:
            self._pending += text
        self._executor.submit(self._enqueue, text)

    def commit_turn(self) -> None:
        self._executor.submit(self._flush_sync).result()
        with self._text_lock:
            self._committed += self._pending
            self._pending = ""

    def flush(self) -> None:
        self._executor.submit(self._flush_sync).result()

    def delete_all_inserted(self) -> None:
        self._executor.submit(self._delete_sync).result()
        with self._text_lock:
            self._committed = ""
            self._pending = ""

    def reset(self) -> None:
        """Forget the session without touching text on screen."""
        self._executor.submit(self._reset_sync).result()
        with self._text_lock:
            self._committed = ""
            self._pending = ""

    def settle(self) -> None:
        """Restore a clipboard still held by a debounced insertion."""
        for injector in self._injectors:
            restore = getattr(injector, "restore_now", None)
            if restore is not None:
                self._executor.submit(restore).result()

    def close(self) -> None:
        self._executor.submit(self._reset_sync).result()
        self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Executor thread
    # ------------------------------------------------------------------

    def _enqueue(self, text: str) -> None:
        self._batch += text
        if self._timer is None:
            self._timer = threading.Timer(self._batch_interval_s, self._on_timer)
            self._timer.daemon = True
            self._timer.start()

    def _on_timer(self) -> None:
        try:
            self._executor.submit(self._flush_sync)
        except RuntimeError:
            pass  # executor already shut down

    def _flush_sync(self) -> None:
        self._cancel_timer()
        if not self._batch:
            return
        text = self._batch
        self._batch = ""
        if self._insert(text):
            self._ledger += text
            return
        logger.error("Both insertion techniques failed for %d chars", len(text))
        if self._on_error is not None:
            self._on_error(INSERTION_FAILED, f"could not insert {len(text)} characters")

    def _delete_sync(self) -> None:
        self._flush_sync()
        count = len(self._ledger)
        self._ledger = ""
        if count > 0:
            logger.info("Retracting %d inserted characters", count)
            self._backspacer.send(count)

    def _reset_sync(self) -> None:
        self._cancel_timer()
        self._batch = ""
        self._ledger = ""

    def _insert(self, text: str) -> bool:
        for injector in self._injectors:
            try:
                if injector.insert(text):
                    return True
            except Exception as exc:
                logger.warning("%s failed: %s", type(injector).__name__, exc)
        return False

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
