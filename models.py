"""Core data models for the dictation pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SessionState(str, Enum):
    IDLE = "IDLE"
    CAPTURING = "CAPTURING"
    PAUSED = "PAUSED"
    FINALIZING = "FINALIZING"
    REFINING = "REFINING"


class LinkState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    READY = "READY"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


class RefinementLevel(str, Enum):
    NONE = "none"
    REFINE = "refine"
    PROMPT = "prompt"

    @classmethod
    def from_stored_value(cls, value: str) -> "RefinementLevel":
        """Map a stored value (including legacy labels) to a level.

        Unknown values fall back to ``REFINE``.
        """
        aliases = {
            "none": cls.NONE,
            "off": cls.NONE,
            "refine": cls.REFINE,
            "light": cls.REFINE,
            "moderate": cls.REFINE,
            "prompt": cls.PROMPT,
        }
        return aliases.get(str(value).strip().lower(), cls.REFINE)


class LinkEventKind(str, Enum):
    CONNECTED = "connected"
    CONNECT_FAILED = "connect_failed"
    DELTA = "delta"
    TURN_COMPLETED = "turn_completed"
    ERROR = "error"


@dataclass
class AudioFrame:
    pcm16_bytes: bytes
    sample_rate: int = 24000
    channels: int = 1
    timestamp_ms: int = 0


@dataclass
class LinkEvent:
    kind: str
    text: str = ""
    code: str = ""
    message: str = ""


@dataclass
class Session:
    """Mutable state of one recording attempt, owned by the controller."""

    session_id: int
    state: SessionState = SessionState.IDLE
    live: bool = True
    committed_text: str = ""
    pending_text: str = ""
    live_text: str = ""
    duration_s: float = 0.0
    level: float = 0.0
    audio_started: bool = False
    produced_text: bool = False
    artifact_path: Optional[str] = None

    @property
    def accumulated_text(self) -> str:
        return self.committed_text + self.pending_text


@dataclass
class InsertResult:
    success: bool
    reason: str
    clipboard_restored: bool
