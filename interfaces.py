"""Protocol interfaces used by SessionController."""

from __future__ import annotations

from queue import Queue
from typing import Callable, Optional, Protocol

from models import AudioFrame, InsertResult, LinkEvent, LinkState, RefinementLevel

LevelCallback = Callable[[float], None]
LinkEventCallback = Callable[[LinkEvent], None]


class AudioSource(Protocol):
    def start(
        self,
        audio_queue: Optional[Queue[AudioFrame | None]],
        on_level: Optional[LevelCallback] = None,
    ) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def stop(self) -> Optional[str]: ...

    def cancel(self) -> None: ...


class TranscriptionLink(Protocol):
    @property
    def state(self) -> LinkState: ...

    def connect(
        self,
        audio_queue: Queue[AudioFrame | None],
        on_event: LinkEventCallback,
    ) -> None: ...

    def send_audio(self, frame: AudioFrame) -> None: ...

    def disconnect(self) -> None: ...


class TextInserter(Protocol):
    def append_delta(self, text: str) -> None: ...

    def commit_turn(self) -> None: ...

    def delete_all_inserted(self) -> None: ...

    def reset(self) -> None: ...

    def settle(self) -> None: ...

    @property
    def all_text(self) -> str: ...


class RefinementLink(Protocol):
    def refine(self, text: str, level: RefinementLevel) -> str: ...


class FileTranscriber(Protocol):
    def transcribe(self, path: str) -> str: ...


class OutputService(Protocol):
    def paste_text(self, text: str) -> InsertResult: ...

    def copy_text(self, text: str) -> InsertResult: ...


class Notifier(Protocol):
    def started(self) -> None: ...

    def completed(self, text: str) -> None: ...

    def failed(self, message: str) -> None: ...

    def cancelled(self) -> None: ...


class CredentialProvider(Protocol):
    def openai_api_key(self) -> str: ...

    def dashscope_api_key(self) -> str: ...
