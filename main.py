"""Application entrypoint."""

from __future__ import annotations

import argparse
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable

from auto_paste import ClipboardPasteService
from config import ConfigCredentialProvider, JsonConfigStore
from cues import SoundCueNotifier
from hotkey import GlobalHotkeyAdapter
from models import RefinementLevel, SessionState
from realtime_link import RealtimeTranscriptionLink
from recognizer import DashscopeFileTranscriber
from recorder import SoundDeviceRecorder
from refiner import DashscopeRefiner
from session_controller import SessionController
from text_inserter import LiveTextInserter

logger = logging.getLogger("stream_dictate")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stream-dictate",
        description="Dictate into the focused application with live transcription.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to config JSON")
    parser.add_argument(
        "--refinement",
        choices=[level.value for level in RefinementLevel],
        default=None,
        help="Refinement level (overrides config)",
    )
    parser.add_argument("--language", default=None, help="Language hint, e.g. pt or en")
    parser.add_argument("--batch", action="store_true", help="Record first, transcribe on stop")
    parser.add_argument("--no-paste", action="store_true", help="Copy the final text instead of pasting")
    parser.add_argument("--no-sounds", action="store_true", help="Disable audible cues")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--log-file", type=Path, default=None, help="Also log to a rotating file")
    return parser


def configure_logging(level: str, log_file: Path | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=2, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        logging.getLogger().addHandler(handler)


class App:
    def __init__(self, args: argparse.Namespace) -> None:
        self.config_store = JsonConfigStore(args.config)
        credentials = ConfigCredentialProvider(self.config_store)

        level = self.config_store.get_refinement_level()
        if args.refinement:
            level = RefinementLevel(args.refinement)
        language = args.language or self.config_store.get_language()

        self.notifier = SoundCueNotifier(enabled=not args.no_sounds)
        self.inserter = LiveTextInserter()
        self.controller = SessionController(
            audio_source=SoundDeviceRecorder(),
            link=RealtimeTranscriptionLink(credentials, language=language),
            inserter=self.inserter,
            output=ClipboardPasteService(),
            refiner=DashscopeRefiner(credentials),
            transcriber=DashscopeFileTranscriber(credentials),
            notifier=self.notifier,
            refinement_level=level,
            auto_paste=self.config_store.get_auto_paste() and not args.no_paste,
            live_transcription=self.config_store.get_live_transcription() and not args.batch,
            on_state_change=self._on_state_change,
            on_partial=self._on_partial,
            on_error=self._on_error,
        )
        self.hotkey = GlobalHotkeyAdapter(
            toggle=self.config_store.get_hotkey("toggle"),
            pause=self.config_store.get_hotkey("pause"),
            cancel=self.config_store.get_hotkey("cancel"),
        )
        # Hotkey intents are serialized on one worker so the listener never blocks.
        self._intents = ThreadPoolExecutor(max_workers=1, thread_name_prefix="controller")
        self._quit = threading.Event()

    # ------------------------------------------------------------------
    # Controller callbacks (worker threads)
    # ------------------------------------------------------------------

    def _on_state_change(self, from_state: SessionState, to_state: SessionState) -> None:
        if to_state == SessionState.CAPTURING:
            logger.info("Listening...")
        elif to_state == SessionState.PAUSED:
            logger.info("Paused")
        elif to_state == SessionState.REFINING:
            logger.info("Refining...")
        elif to_state == SessionState.IDLE:
            logger.info("Ready")

    def _on_partial(self, text: str) -> None:
        logger.debug("Live: %s", text)

    def _on_error(self, code: str, message: str) -> None:
        logger.error("%s: %s", code, message)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _marshal(self, action: Callable[[], None]) -> Callable[[], None]:
        def submit() -> None:
            self._intents.submit(self._run_intent, action)

        return submit

    @staticmethod
    def _run_intent(action: Callable[[], None]) -> None:
        try:
            action()
        except Exception:
            logger.exception("Hotkey action failed")

    def run(self) -> int:
        try:
            self.hotkey.start(
                on_toggle=self._marshal(self.controller.on_toggle_recording),
                on_pause=self._marshal(self.controller.on_toggle_pause),
                on_cancel=self._marshal(self.controller.on_cancel),
            )
        except (RuntimeError, ValueError) as exc:
            logger.error("Hotkeys disabled: %s", exc)
            return 1
        logger.info("Ready. Config: %s", self.config_store.path)
        try:
            while not self._quit.wait(0.5):
                pass
        except KeyboardInterrupt:
            pass
        self.quit()
        return 0

    def quit(self) -> None:
        self._quit.set()
        self.hotkey.stop()
        self.controller.cancel_session("app quit")
        self._intents.shutdown(wait=True)
        self.inserter.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_file)
    app = App(args)
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
