"""Tests for the realtime transcription link and its message dispatch."""

from __future__ import annotations

import base64
import json
import threading
from queue import Queue
from unittest.mock import MagicMock, patch

import pytest

from errors import CONNECT_FAILED, CONNECT_TIMEOUT, MISSING_API_KEY, TRANSPORT_ERROR, TURN_FAILED
from models import AudioFrame, LinkEventKind, LinkState
from realtime_link import (
    RealtimeTranscriptionLink,
    build_audio_envelope,
    build_session_config,
    dispatch_message,
)


class FakeCredentials:
    def __init__(self, openai: str = "sk-test") -> None:
        self._openai = openai

    def openai_api_key(self) -> str:
        return self._openai

    def dashscope_api_key(self) -> str:
        return ""


class FakeWebSocket:
    def __init__(self, fail_send: bool = False) -> None:
        self.sent: list[dict] = []
        self.closed = 0
        self.fail_send = fail_send
        self.sent_event = threading.Event()

    def run_forever(self) -> None:
        pass

    def send(self, data: str) -> None:
        if self.fail_send:
            raise OSError("broken pipe")
        self.sent.append(json.loads(data))
        self.sent_event.set()

    def close(self) -> None:
        self.closed += 1


@pytest.fixture()
def fake_websocket():  # noqa: ANN201
    ws = FakeWebSocket()
    module = MagicMock()
    module.WebSocketApp.return_value = ws
    with patch("realtime_link.websocket", module):
        yield module, ws


def _connect(link: RealtimeTranscriptionLink):  # noqa: ANN202
    events: list = []
    queue: Queue = Queue()
    link.connect(queue, events.append)
    return events, queue


# ---------------------------------------------------------------
# Dispatch table
# ---------------------------------------------------------------

@pytest.mark.parametrize(
    "payload, kind, text",
    [
        ({"type": "conversation.item.input_audio_transcription.delta", "delta": "ol"}, "delta", "ol"),
        (
            {"type": "conversation.item.input_audio_transcription.completed", "transcript": "olá"},
            "turn_completed",
            "olá",
        ),
    ],
)
def test_dispatch_text_events(payload: dict, kind: str, text: str) -> None:
    event = dispatch_message(json.dumps(payload))
    assert event.kind == kind
    assert event.text == text


def test_dispatch_turn_failure_is_non_fatal_error() -> None:
    raw = json.dumps(
        {
            "type": "conversation.item.input_audio_transcription.failed",
            "error": {"message": "audio too short"},
        }
    )
    event = dispatch_message(raw)
    assert event.kind == LinkEventKind.ERROR.value
    assert event.code == TURN_FAILED
    assert "audio too short" in event.message


def test_dispatch_service_error() -> None:
    event = dispatch_message(b'{"type": "error", "error": {"message": "rate limited"}}')
    assert event.code == TRANSPORT_ERROR
    assert event.message == "Realtime API: rate limited"


@pytest.mark.parametrize(
    "raw",
    [
        '{"type": "transcription_session.created"}',
        '{"type": "input_audio_buffer.speech_started"}',
        '{"type": "something.new"}',
        '{"type": "conversation.item.input_audio_transcription.delta"}',
        '{"no_type": true}',
        "[1, 2]",
        "not json",
    ],
)
def test_dispatch_ignores_lifecycle_and_malformed(raw: str) -> None:
    assert dispatch_message(raw) is None


def test_session_config_shape() -> None:
    config = build_session_config(language="en")
    assert config["type"] == "transcription_session.update"
    session = config["session"]
    assert session["input_audio_format"] == "pcm16"
    assert session["input_audio_transcription"] == {"model": "gpt-4o-mini-transcribe", "language": "en"}
    assert session["turn_detection"] == {
        "type": "server_vad",
        "threshold": 0.5,
        "prefix_padding_ms": 300,
        "silence_duration_ms": 500,
    }
    assert session["input_audio_noise_reduction"] == {"type": "near_field"}


def test_audio_envelope_is_base64_pcm() -> None:
    envelope = build_audio_envelope(b"\x01\x02\x03\x04")
    assert envelope["type"] == "input_audio_buffer.append"
    assert base64.b64decode(envelope["audio"]) == b"\x01\x02\x03\x04"


# ---------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------

def test_missing_key_fails_synchronously(fake_websocket) -> None:  # noqa: ANN001
    module, _ = fake_websocket
    link = RealtimeTranscriptionLink(FakeCredentials(openai=""))
    events, _ = _connect(link)

    assert link.state == LinkState.FAILED
    assert [(e.kind, e.code) for e in events] == [(LinkEventKind.CONNECT_FAILED.value, MISSING_API_KEY)]
    module.WebSocketApp.assert_not_called()


@patch("realtime_link.websocket", None)
def test_missing_websocket_client_fails() -> None:
    link = RealtimeTranscriptionLink(FakeCredentials())
    events, _ = _connect(link)

    assert events[0].code == CONNECT_FAILED
    assert link.state == LinkState.FAILED


def test_connect_sends_auth_headers(fake_websocket) -> None:  # noqa: ANN001
    module, _ = fake_websocket
    link = RealtimeTranscriptionLink(FakeCredentials("sk-abc"), connect_timeout_s=60)
    _connect(link)

    args, kwargs = module.WebSocketApp.call_args
    assert args[0].endswith("intent=transcription")
    assert "Authorization: Bearer sk-abc" in kwargs["header"]
    assert "OpenAI-Beta: realtime=v1" in kwargs["header"]
    assert link.state == LinkState.CONNECTING
    link.disconnect()


def test_open_sends_config_then_reports_connected(fake_websocket) -> None:  # noqa: ANN001
    _, ws = fake_websocket
    link = RealtimeTranscriptionLink(FakeCredentials(), language="en", connect_timeout_s=60)
    events, _ = _connect(link)

    link._on_open(ws)

    assert link.is_ready
    assert ws.sent[0]["type"] == "transcription_session.update"
    assert ws.sent[0]["session"]["input_audio_transcription"]["language"] == "en"
    assert [e.kind for e in events] == [LinkEventKind.CONNECTED.value]
    link.disconnect()


def test_config_send_failure_is_connect_failure(fake_websocket) -> None:  # noqa: ANN001
    _, ws = fake_websocket
    ws.fail_send = True
    link = RealtimeTranscriptionLink(FakeCredentials(), connect_timeout_s=60)
    events, _ = _connect(link)

    link._on_open(ws)

    assert link.state == LinkState.FAILED
    assert events[0].kind == LinkEventKind.CONNECT_FAILED.value


def test_connect_timeout(fake_websocket) -> None:  # noqa: ANN001
    _, ws = fake_websocket
    done = threading.Event()
    events: list = []

    def on_event(event) -> None:  # noqa: ANN001
        events.append(event)
        done.set()

    link = RealtimeTranscriptionLink(FakeCredentials(), connect_timeout_s=0.05)
    link.connect(Queue(), on_event)

    assert done.wait(timeout=2.0)
    assert events[0].kind == LinkEventKind.CONNECT_FAILED.value
    assert events[0].code == CONNECT_TIMEOUT
    assert link.state == LinkState.FAILED
    assert ws.closed == 1


def test_remote_close_before_ready_is_connect_failure(fake_websocket) -> None:  # noqa: ANN001
    _, ws = fake_websocket
    link = RealtimeTranscriptionLink(FakeCredentials(), connect_timeout_s=60)
    events, _ = _connect(link)

    link._on_close(ws, 1008, "policy")

    assert link.state == LinkState.FAILED
    assert events[0].code == CONNECT_FAILED


def test_transport_error_after_ready(fake_websocket) -> None:  # noqa: ANN001
    _, ws = fake_websocket
    link = RealtimeTranscriptionLink(FakeCredentials(), connect_timeout_s=60)
    events, _ = _connect(link)
    link._on_open(ws)

    link._on_error(ws, ConnectionResetError("reset"))
    link._on_close(ws, 1006, None)

    assert link.state == LinkState.FAILED
    assert [(e.kind, e.code) for e in events[1:]] == [(LinkEventKind.ERROR.value, TRANSPORT_ERROR)]
    link.disconnect()


# ---------------------------------------------------------------
# Audio and messages
# ---------------------------------------------------------------

def test_send_audio_is_noop_before_ready(fake_websocket) -> None:  # noqa: ANN001
    _, ws = fake_websocket
    link = RealtimeTranscriptionLink(FakeCredentials(), connect_timeout_s=60)
    _connect(link)

    link.send_audio(AudioFrame(pcm16_bytes=b"\x00\x00"))

    assert ws.sent == []
    link.disconnect()


def test_queued_frames_are_forwarded_after_ready(fake_websocket) -> None:  # noqa: ANN001
    _, ws = fake_websocket
    link = RealtimeTranscriptionLink(FakeCredentials(), connect_timeout_s=60)
    _, queue = _connect(link)
    link._on_open(ws)
    ws.sent_event.clear()

    queue.put(AudioFrame(pcm16_bytes=b"\x10\x00"))

    assert ws.sent_event.wait(timeout=2.0)
    assert ws.sent[-1] == build_audio_envelope(b"\x10\x00")
    link.disconnect()


def test_send_failure_reports_transport_error(fake_websocket) -> None:  # noqa: ANN001
    _, ws = fake_websocket
    link = RealtimeTranscriptionLink(FakeCredentials(), connect_timeout_s=60)
    events, _ = _connect(link)
    link._on_open(ws)
    ws.fail_send = True

    link.send_audio(AudioFrame(pcm16_bytes=b"\x00\x00"))

    assert link.state == LinkState.FAILED
    assert events[-1].code == TRANSPORT_ERROR
    link.disconnect()


def test_messages_are_relayed(fake_websocket) -> None:  # noqa: ANN001
    _, ws = fake_websocket
    link = RealtimeTranscriptionLink(FakeCredentials(), connect_timeout_s=60)
    events, _ = _connect(link)
    link._on_open(ws)

    link._on_message(ws, '{"type": "conversation.item.input_audio_transcription.delta", "delta": "Hi"}')
    link._on_message(ws, '{"type": "input_audio_buffer.committed"}')

    assert [e.kind for e in events] == [LinkEventKind.CONNECTED.value, LinkEventKind.DELTA.value]
    link.disconnect()


def test_disconnect_is_idempotent_and_silences_callbacks(fake_websocket) -> None:  # noqa: ANN001
    _, ws = fake_websocket
    link = RealtimeTranscriptionLink(FakeCredentials(), connect_timeout_s=60)
    events, _ = _connect(link)
    link._on_open(ws)

    link.disconnect()
    link.disconnect()
    link._on_message(ws, '{"type": "conversation.item.input_audio_transcription.delta", "delta": "late"}')

    assert ws.closed == 1
    assert link.state == LinkState.CLOSED
    assert len(events) == 1


def test_disconnect_without_connect() -> None:
    link = RealtimeTranscriptionLink(FakeCredentials())
    link.disconnect()
    assert link.state == LinkState.DISCONNECTED
