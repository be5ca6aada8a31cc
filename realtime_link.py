"""Streaming transcription link over the OpenAI realtime transcription API.

The remote side performs voice-activity segmentation and reports "turns";
this client only relays audio out and events in. Inbound messages are mapped
to ``LinkEvent`` values by a pure dispatch table (``dispatch_message``).
"""

from __future__ import annotations

import base64
import json
import logging
import threading
from queue import Empty, Queue
from typing import Any, Callable, Optional

from errors import (
    CONNECT_FAILED,
    CONNECT_TIMEOUT,
    MISSING_API_KEY,
    TRANSPORT_ERROR,
    TURN_FAILED,
)
from interfaces import CredentialProvider
from models import AudioFrame, LinkEvent, LinkEventKind, LinkState

try:
    import websocket
except Exception:  # pragma: no cover
    websocket = None  # type: ignore

logger = logging.getLogger(__name__)

REALTIME_URL = "wss://api.openai.com/v1/realtime?intent=transcription"
CONNECT_TIMEOUT_S = 10.0

DELTA_EVENT = "conversation.item.input_audio_transcription.delta"
COMPLETED_EVENT = "conversation.item.input_audio_transcription.completed"
FAILED_EVENT = "conversation.item.input_audio_transcription.failed"
ERROR_EVENT = "error"

IGNORED_EVENTS = frozenset(
    {
        "transcription_session.created",
        "transcription_session.updated",
        "input_audio_buffer.speech_started",
        "input_audio_buffer.speech_stopped",
        "input_audio_buffer.committed",
        "conversation.item.created",
    }
)


def build_session_config(
    model: str = "gpt-4o-mini-transcribe",
    language: str = "pt",
    vad_threshold: float = 0.5,
    prefix_padding_ms: int = 300,
    silence_duration_ms: int = 500,
    noise_reduction: str = "near_field",
) -> dict:
    return {
        "type": "transcription_session.update",
        "session": {
            "input_audio_format": "pcm16",
            "input_audio_transcription": {
                "model": model,
                "language": language,
            },
            "turn_detection": {
                "type": "server_vad",
                "threshold": vad_threshold,
                "prefix_padding_ms": prefix_padding_ms,
                "silence_duration_ms": silence_duration_ms,
            },
            "input_audio_noise_reduction": {
                "type": noise_reduction,
            },
        },
    }


def build_audio_envelope(pcm16_bytes: bytes) -> dict:
    return {
        "type": "input_audio_buffer.append",
        "audio": base64.b64encode(pcm16_bytes).decode("ascii"),
    }


def _error_message(payload: dict) -> str:
    info = payload.get("error")
    if isinstance(info, dict):
        return str(info.get("message", ""))
    return ""


def _on_delta(payload: dict) -> Optional[LinkEvent]:
    delta = payload.get("delta")
    if not isinstance(delta, str):
        return None
    return LinkEvent(kind=LinkEventKind.DELTA.value, text=delta)


def _on_completed(payload: dict) -> Optional[LinkEvent]:
    transcript = payload.get("transcript")
    if not isinstance(transcript, str):
        return None
    return LinkEvent(kind=LinkEventKind.TURN_COMPLETED.value, text=transcript)


def _on_failed(payload: dict) -> Optional[LinkEvent]:
    return LinkEvent(
        kind=LinkEventKind.ERROR.value,
        code=TURN_FAILED,
        message=f"Transcription failed: {_error_message(payload) or 'unknown reason'}",
    )


def _on_error(payload: dict) -> Optional[LinkEvent]:
    return LinkEvent(
        kind=LinkEventKind.ERROR.value,
        code=TRANSPORT_ERROR,
        message=f"Realtime API: {_error_message(payload) or 'unknown error'}",
    )


_DISPATCH: dict[str, Callable[[dict], Optional[LinkEvent]]] = {
    DELTA_EVENT: _on_delta,
    COMPLETED_EVENT: _on_completed,
    FAILED_EVENT: _on_failed,
    ERROR_EVENT: _on_error,
}


def dispatch_message(raw: str | bytes) -> Optional[LinkEvent]:
    """Map one inbound message to an event, or ``None`` when ignorable."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Failed to parse message: %s", raw[:200])
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        logger.warning("Message without type: %s", raw[:200])
        return None

    msg_type = payload["type"]
    handler = _DISPATCH.get(msg_type)
    if handler is not None:
        return handler(payload)
    if msg_type in IGNORED_EVENTS:
        logger.debug("Session event: %s", msg_type)
    else:
        logger.debug("Unknown event: %s %s", msg_type, raw[:300])
    return None


class RealtimeTranscriptionLink:
    def __init__(
        self,
        credentials: CredentialProvider,
        model: str = "gpt-4o-mini-transcribe",
        language: str = "pt",
        vad_threshold: float = 0.5,
        prefix_padding_ms: int = 300,
        silence_duration_ms: int = 500,
        noise_reduction: str = "near_field",
        url: str = REALTIME_URL,
        connect_timeout_s: float = CONNECT_TIMEOUT_S,
    ) -> None:
        self._credentials = credentials
        self._session_config = build_session_config(
            model=model,
            language=language,
            vad_threshold=vad_threshold,
            prefix_padding_ms=prefix_padding_ms,
            silence_duration_ms=silence_duration_ms,
            noise_reduction=noise_reduction,
        )
        self._url = url
        self._connect_timeout_s = connect_timeout_s

        self._lock = threading.RLock()
        self._state = LinkState.DISCONNECTED
        self._ws: Any = None
        self._on_event: Optional[Callable[[LinkEvent], None]] = None
        self._audio_queue: Optional[Queue[AudioFrame | None]] = None
        self._timer: Optional[threading.Timer] = None
        self._sender: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == LinkState.READY

    def connect(
        self,
        audio_queue: Queue[AudioFrame | None],
        on_event: Callable[[LinkEvent], None],
    ) -> None:
        with self._lock:
            if self._state in (LinkState.CONNECTING, LinkState.READY):
                return
            api_key = self._credentials.openai_api_key()
            if not api_key:
                self._state = LinkState.FAILED
                failure = LinkEvent(
                    kind=LinkEventKind.CONNECT_FAILED.value,
                    code=MISSING_API_KEY,
                    message="OpenAI API key is not configured",
                )
            elif websocket is None:
                self._state = LinkState.FAILED
                failure = LinkEvent(
                    kind=LinkEventKind.CONNECT_FAILED.value,
                    code=CONNECT_FAILED,
                    message="websocket-client is not installed",
                )
            else:
                failure = None
                self._on_event = on_event
                self._audio_queue = audio_queue
                self._stop_event = threading.Event()
                self._ws = websocket.WebSocketApp(
                    self._url,
                    header=[
                        f"Authorization: Bearer {api_key}",
                        "OpenAI-Beta: realtime=v1",
                    ],
                    on_open=self._on_open,
                    on_message=self._on_message,
                    on_error=self._on_error,
                    on_close=self._on_close,
                )
                self._state = LinkState.CONNECTING
                ws = self._ws
                threading.Thread(target=ws.run_forever, name="realtime-ws", daemon=True).start()
                self._timer = threading.Timer(
                    self._connect_timeout_s, self._on_connect_timeout, args=(ws,)
                )
                self._timer.daemon = True
                self._timer.start()
                logger.info("Connecting to %s", self._url)

        if failure is not None:
            logger.error("Connect failed: %s", failure.message)
            on_event(failure)

    def send_audio(self, frame: AudioFrame) -> None:
        ws = self._ws
        if self._state != LinkState.READY or ws is None:
            return
        try:
            ws.send(json.dumps(build_audio_envelope(frame.pcm16_bytes)))
        except Exception as exc:
            with self._lock:
                if ws is not self._ws or self._state != LinkState.READY:
                    return
                self._state = LinkState.FAILED
            logger.error("WebSocket send error: %s", exc)
            self._emit(LinkEvent(kind=LinkEventKind.ERROR.value, code=TRANSPORT_ERROR, message=str(exc)))

    def disconnect(self) -> None:
        with self._lock:
            ws = self._ws
            self._ws = None
            self._on_event = None
            self._audio_queue = None
            self._stop_event.set()
            self._cancel_timer()
            if self._state in (LinkState.CONNECTING, LinkState.READY):
                self._state = LinkState.CLOSED
        if ws is not None:
            logger.info("Disconnecting")
            try:
                ws.close()
            except Exception as exc:
                logger.debug("Ignoring close error: %s", exc)

    # ------------------------------------------------------------------
    # WebSocketApp callbacks (network receive thread)
    # ------------------------------------------------------------------

    def _on_open(self, ws: Any) -> None:
        with self._lock:
            if ws is not self._ws or self._state != LinkState.CONNECTING:
                return
            self._cancel_timer()
        try:
            config = json.dumps(self._session_config)
            logger.debug("Sending session config: %s", config)
            ws.send(config)
        except Exception as exc:
            with self._lock:
                if ws is not self._ws:
                    return
                self._state = LinkState.FAILED
            logger.error("Session config send error: %s", exc)
            self._emit(
                LinkEvent(kind=LinkEventKind.CONNECT_FAILED.value, code=CONNECT_FAILED, message=str(exc))
            )
            return

        with self._lock:
            if ws is not self._ws:
                return
            self._state = LinkState.READY
            self._sender = threading.Thread(
                target=self._send_loop, args=(ws, self._audio_queue, self._stop_event),
                name="realtime-sender", daemon=True,
            )
            self._sender.start()
        logger.info("WebSocket connected")
        self._emit(LinkEvent(kind=LinkEventKind.CONNECTED.value))

    def _on_message(self, ws: Any, message: str | bytes) -> None:
        if ws is not self._ws:
            return
        event = dispatch_message(message)
        if event is None:
            return
        if event.kind == LinkEventKind.DELTA.value:
            logger.debug("Delta: %s", event.text)
        elif event.kind == LinkEventKind.TURN_COMPLETED.value:
            logger.info("Turn completed: %s", event.text)
        else:
            logger.warning("%s: %s", event.code, event.message)
        self._emit(event)

    def _on_error(self, ws: Any, error: Any) -> None:
        with self._lock:
            if ws is not self._ws or self._state in (LinkState.FAILED, LinkState.CLOSED):
                return
            was_ready = self._state == LinkState.READY
            self._state = LinkState.FAILED
            self._cancel_timer()
        logger.error("WebSocket error: %s", error)
        if was_ready:
            self._emit(LinkEvent(kind=LinkEventKind.ERROR.value, code=TRANSPORT_ERROR, message=str(error)))
        else:
            self._emit(LinkEvent(kind=LinkEventKind.CONNECT_FAILED.value, code=CONNECT_FAILED, message=str(error)))

    def _on_close(self, ws: Any, close_status_code: Any, close_msg: Any) -> None:
        with self._lock:
            if ws is not self._ws or self._state in (LinkState.FAILED, LinkState.CLOSED):
                return
            was_ready = self._state == LinkState.READY
            self._state = LinkState.CLOSED if was_ready else LinkState.FAILED
            self._stop_event.set()
            self._cancel_timer()
        reason = f"WebSocket closed: {close_status_code} {close_msg or ''}".strip()
        logger.warning(reason)
        if was_ready:
            self._emit(LinkEvent(kind=LinkEventKind.ERROR.value, code=TRANSPORT_ERROR, message=reason))
        else:
            self._emit(LinkEvent(kind=LinkEventKind.CONNECT_FAILED.value, code=CONNECT_FAILED, message=reason))

    def _on_connect_timeout(self, ws: Any) -> None:
        with self._lock:
            if ws is not self._ws or self._state != LinkState.CONNECTING:
                return
            self._state = LinkState.FAILED
            self._timer = None
        logger.error("WebSocket connection timeout (%.0fs)", self._connect_timeout_s)
        self._emit(
            LinkEvent(
                kind=LinkEventKind.CONNECT_FAILED.value,
                code=CONNECT_TIMEOUT,
                message=f"WebSocket connection timeout ({self._connect_timeout_s:.0f}s)",
            )
        )
        self.disconnect()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _send_loop(
        self,
        ws: Any,
        audio_queue: Optional[Queue[AudioFrame | None]],
        stop_event: threading.Event,
    ) -> None:
        if audio_queue is None:
            return
        while not stop_event.is_set() and ws is self._ws:
            try:
                frame = audio_queue.get(timeout=0.1)
            except Empty:
                continue
            if frame is None:
                break
            self.send_audio(frame)

    def _emit(self, event: LinkEvent) -> None:
        callback = self._on_event
        if callback is not None:
            callback(event)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
