"""State-machine based session orchestration.

All transitions run under one re-entrant lock, so hotkey intents, link events
and stop continuations never interleave. Blocking waits (stop grace periods,
file transcription, refinement) happen with the lock released while the state
is ``FINALIZING`` or ``REFINING``, which rejects every other intent.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from queue import Queue
from typing import Callable, Optional

from errors import (
    INSERTION_FAILED,
    RECORDING_FAILED,
    REFINEMENT_FAILED,
    TRANSCRIPTION_FAILED,
    DictationError,
    describe,
)
from interfaces import (
    AudioSource,
    FileTranscriber,
    Notifier,
    OutputService,
    RefinementLink,
    TextInserter,
    TranscriptionLink,
)
from models import AudioFrame, InsertResult, LinkEvent, LinkEventKind, RefinementLevel, Session, SessionState

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
PartialCallback = Callable[[str], None]
ErrorCallback = Callable[[str, str], None]

TRAILING_AUDIO_S = 1.0
STOP_GRACE_S = 1.0

_ACTIVE = (SessionState.CAPTURING, SessionState.PAUSED)


class SessionController:
    def __init__(
        self,
        audio_source: AudioSource,
        link: TranscriptionLink,
        inserter: TextInserter,
        output: OutputService,
        refiner: Optional[RefinementLink] = None,
        transcriber: Optional[FileTranscriber] = None,
        notifier: Optional[Notifier] = None,
        refinement_level: RefinementLevel = RefinementLevel.NONE,
        auto_paste: bool = True,
        live_transcription: bool = True,
        trailing_audio_s: float = TRAILING_AUDIO_S,
        stop_grace_s: float = STOP_GRACE_S,
        queue_maxsize: int = 50,
        on_state_change: Optional[StateCallback] = None,
        on_partial: Optional[PartialCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._audio = audio_source
        self._link = link
        self._inserter = inserter
        self._output = output
        self._refiner = refiner
        self._transcriber = transcriber
        self._notifier = notifier
        self._refinement_level = refinement_level
        self._auto_paste = auto_paste
        self._live_transcription = live_transcription
        self._trailing_audio_s = trailing_audio_s
        self._stop_grace_s = stop_grace_s
        self._queue_maxsize = queue_maxsize
        self._on_state_change = on_state_change
        self._on_partial = on_partial
        self._on_error = on_error
        self._clock = clock
        self._sleep = sleep

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._session_id = 0
        self._session: Optional[Session] = None
        self._active_since: Optional[float] = None
        self._audio_queue: Queue[AudioFrame | None] = Queue(maxsize=queue_maxsize)

        self.last_transcription = ""
        self.last_refined = ""

        setter = getattr(inserter, "set_error_callback", None)
        if setter is not None:
            setter(self._on_insertion_error)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def elapsed_s(self) -> float:
        session = self._session
        if session is None:
            return 0.0
        since = self._active_since
        running = self._clock() - since if since is not None else 0.0
        return session.duration_s + running

    @property
    def level(self) -> float:
        session = self._session
        return session.level if session is not None else 0.0

    def replace_link(self, link: TranscriptionLink) -> None:
        with self._lock:
            self._link = link

    def set_refinement_level(self, level: RefinementLevel) -> None:
        self._refinement_level = level

    def set_auto_paste(self, enabled: bool) -> None:
        self._auto_paste = enabled

    # ------------------------------------------------------------------
    # Hotkey intents
    # ------------------------------------------------------------------

    def on_toggle_recording(self) -> None:
        state = self._state
        if state == SessionState.IDLE:
            self.start_session()
        elif state in _ACTIVE:
            self.stop_session()

    def on_toggle_pause(self) -> None:
        if self._state == SessionState.PAUSED:
            self.resume_session()
        else:
            self.pause_session()

    def on_cancel(self) -> None:
        self.cancel_session()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start_session(self) -> None:
        with self._lock:
            if self._state != SessionState.IDLE:
                return
            self._session_id += 1
            session = Session(session_id=self._session_id, live=self._live_transcription)
            self._session = session
            self._active_since = None
            self._inserter.reset()
            self._audio_queue = Queue(maxsize=self._queue_maxsize)
            self._transition(SessionState.CAPTURING)

            if not session.live:
                self._start_audio(session)
                return

            session_id = session.session_id
            logger.info("Session %d: connecting transcription link", session_id)
            self._link.connect(
                self._audio_queue,
                lambda event: self._handle_link_event(session_id, event),
            )

    def pause_session(self) -> None:
        with self._lock:
            session = self._session
            if self._state != SessionState.CAPTURING or session is None or not session.audio_started:
                return
            self._audio.pause()
            self._freeze_clock(session)
            session.level = 0.0
            self._transition(SessionState.PAUSED)

    def resume_session(self) -> None:
        with self._lock:
            session = self._session
            if self._state != SessionState.PAUSED or session is None:
                return
            self._audio.resume()
            self._active_since = self._clock()
            self._transition(SessionState.CAPTURING)

    def stop_session(self) -> None:
        with self._lock:
            session = self._session
            if self._state not in _ACTIVE or session is None:
                return
            self._freeze_clock(session)
            self._transition(SessionState.FINALIZING)
            streaming = session.live and session.audio_started

        if streaming and self._trailing_audio_s > 0:
            # Trailing silence lets the remote side detect the end of the last turn.
            self._sleep(self._trailing_audio_s)

        with self._lock:
            if self._session is not session or self._state != SessionState.FINALIZING:
                return
            session.artifact_path = self._safe_stop_audio()

        if streaming and self._stop_grace_s > 0:
            self._sleep(self._stop_grace_s)

        with self._lock:
            if self._session is not session or self._state != SessionState.FINALIZING:
                return
            self._safe_disconnect()

        if session.live:
            self._finish_live(session)
        else:
            self._finish_batch(session)

    def cancel_session(self, reason: str = "") -> None:
        with self._lock:
            session = self._session
            if self._state not in _ACTIVE or session is None:
                return
            logger.info("Session %d cancelled %s", session.session_id, reason)
            self._safe_cancel_audio()
            self._safe_disconnect()
            if session.live and session.audio_started:
                self._inserter.delete_all_inserted()
            self._end_session()
            if self._notifier is not None:
                self._notifier.cancelled()

    # ------------------------------------------------------------------
    # Link events (network receive thread)
    # ------------------------------------------------------------------

    def _handle_link_event(self, session_id: int, event: LinkEvent) -> None:
        with self._lock:
            session = self._session
            if session is None or session.session_id != session_id:
                return
            kind = event.kind

            if kind == LinkEventKind.CONNECTED.value:
                if self._state == SessionState.CAPTURING and not session.audio_started:
                    self._start_audio(session)
                return

            if kind == LinkEventKind.CONNECT_FAILED.value:
                if self._state in _ACTIVE and not session.audio_started:
                    self._fail(event.code, event.message)
                else:
                    self._emit_error(event.code, event.message)
                return

            if kind == LinkEventKind.DELTA.value:
                if self._state not in (*_ACTIVE, SessionState.FINALIZING):
                    return
                session.pending_text += event.text
                session.live_text += event.text
                session.produced_text = True
                self._inserter.append_delta(event.text)
                if self._on_partial:
                    self._on_partial(session.live_text)
                return

            if kind == LinkEventKind.TURN_COMPLETED.value:
                if self._state not in (*_ACTIVE, SessionState.FINALIZING):
                    return
                self._inserter.commit_turn()
                if event.text.strip() != session.pending_text.strip():
                    logger.debug(
                        "Remote transcript differs from deltas: %r vs %r",
                        event.text,
                        session.pending_text,
                    )
                session.committed_text += session.pending_text
                session.pending_text = ""
                if session.live_text and not session.live_text.endswith(" "):
                    session.live_text += " "
                return

            if kind == LinkEventKind.ERROR.value:
                if self._state in (*_ACTIVE, SessionState.FINALIZING):
                    self._emit_error(event.code, event.message)

    def _on_insertion_error(self, code: str, message: str) -> None:
        # Called from the inserter thread while a transition may hold the lock.
        self._emit_error(code, message)

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _finish_live(self, session: Session) -> None:
        _remove_artifact(session.artifact_path)
        with self._lock:
            if self._session is not session:
                return
            text = session.accumulated_text
            if not text.strip():
                self._end_session()
                return
            self.last_transcription = text
            level = self._refinement_level
            refiner = self._refiner
            if level == RefinementLevel.NONE or refiner is None:
                # The text is already on screen, keep a copy on the clipboard.
                self._inserter.settle()
                self._deliver(text, paste=False)
                self.last_refined = text
                self._complete(text)
                return
            self._transition(SessionState.REFINING)
            self._inserter.delete_all_inserted()
            self._inserter.settle()

        final = self._refine_or_keep(refiner, text, level)
        with self._lock:
            if self._session is not session:
                return
            self._deliver(final, paste=self._auto_paste)
            self.last_refined = final
            self._complete(final)

    def _finish_batch(self, session: Session) -> None:
        path = session.artifact_path
        if path is None or self._transcriber is None:
            with self._lock:
                self._fail(RECORDING_FAILED, "no recording available")
            return

        try:
            text = self._transcriber.transcribe(path).strip()
        except Exception as exc:
            code = exc.code if isinstance(exc, DictationError) else TRANSCRIPTION_FAILED
            logger.warning("Transcription failed, recording kept at %s", path)
            with self._lock:
                self._fail(code, str(exc))
            return
        _remove_artifact(path)

        with self._lock:
            if self._session is not session:
                return
            if not text:
                self._end_session()
                return
            self.last_transcription = text
            level = self._refinement_level
            refiner = self._refiner
            if level == RefinementLevel.NONE:
                refiner = None
            if refiner is not None:
                self._transition(SessionState.REFINING)

        final = self._refine_or_keep(refiner, text, level) if refiner is not None else text
        with self._lock:
            if self._session is not session:
                return
            self._deliver(final, paste=self._auto_paste)
            self.last_refined = final
            self._complete(final)

    def _refine_or_keep(self, refiner: RefinementLink, text: str, level: RefinementLevel) -> str:
        try:
            return refiner.refine(text, level)
        except Exception as exc:
            logger.warning("Refinement failed, keeping original text: %s", exc)
            self._emit_error(REFINEMENT_FAILED, str(exc))
            return text

    def _deliver(self, text: str, paste: bool) -> None:
        try:
            if paste:
                result = self._output.paste_text(text)
            else:
                result = self._output.copy_text(text)
        except Exception as exc:  # pragma: no cover
            result = InsertResult(success=False, reason=str(exc), clipboard_restored=False)
        if not result.success:
            self._emit_error(INSERTION_FAILED, result.reason)

    def _complete(self, text: str) -> None:
        self._end_session()
        if self._notifier is not None:
            self._notifier.completed(text)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _start_audio(self, session: Session) -> bool:
        queue = self._audio_queue if session.live else None
        try:
            self._audio.start(queue, on_level=lambda level: setattr(session, "level", level))
        except Exception as exc:
            code = exc.code if isinstance(exc, DictationError) else RECORDING_FAILED
            self._fail(code, str(exc))
            return False
        session.audio_started = True
        self._active_since = self._clock()
        logger.info("Session %d: capturing audio", session.session_id)
        if self._notifier is not None:
            self._notifier.started()
        return True

    def _freeze_clock(self, session: Session) -> None:
        if self._active_since is not None:
            session.duration_s += self._clock() - self._active_since
            self._active_since = None

    def _fail(self, code: str, message: str) -> None:
        self._emit_error(code, message)
        self._safe_cancel_audio()
        self._safe_disconnect()
        self._end_session()

    def _end_session(self) -> None:
        self._active_since = None
        self._transition(SessionState.IDLE)
        self._session = None

    def _emit_error(self, code: str, message: str) -> None:
        logger.warning("%s: %s", code, message)
        if self._on_error:
            self._on_error(code, message)
        if self._notifier is not None:
            self._notifier.failed(describe(code, message))

    def _safe_stop_audio(self) -> Optional[str]:
        try:
            return self._audio.stop()
        except Exception as exc:  # pragma: no cover - defensive
            logger.error("Stopping audio failed: %s", exc)
            return None

    def _safe_cancel_audio(self) -> None:
        try:
            self._audio.cancel()
        except Exception as exc:  # pragma: no cover - defensive
            logger.error("Cancelling audio failed: %s", exc)

    def _safe_disconnect(self) -> None:
        try:
            self._link.disconnect()
        except Exception as exc:  # pragma: no cover - defensive
            logger.error("Disconnecting link failed: %s", exc)

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        if self._session is not None:
            self._session.state = to_state
        logger.info("State %s -> %s", from_state.value, to_state.value)
        if self._on_state_change:
            self._on_state_change(from_state, to_state)


def _remove_artifact(path: Optional[str]) -> None:
    if path is None:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
