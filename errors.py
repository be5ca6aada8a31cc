"""Shared error codes and user-facing messages."""

from __future__ import annotations

PERMISSION_DENIED = "PERMISSION_DENIED"
DEVICE_BUSY = "DEVICE_BUSY"
RECORDING_FAILED = "RECORDING_FAILED"
MISSING_API_KEY = "MISSING_API_KEY"
CONNECT_FAILED = "CONNECT_FAILED"
CONNECT_TIMEOUT = "CONNECT_TIMEOUT"
TRANSPORT_ERROR = "TRANSPORT_ERROR"
TURN_FAILED = "TURN_FAILED"
REFINEMENT_FAILED = "REFINEMENT_FAILED"
INSERTION_FAILED = "INSERTION_FAILED"
TRANSCRIPTION_FAILED = "TRANSCRIPTION_FAILED"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone access was denied, allow it in system settings.",
    DEVICE_BUSY: "The microphone is unavailable or used by another app.",
    RECORDING_FAILED: "Audio recording failed.",
    MISSING_API_KEY: "API key is not configured.",
    CONNECT_FAILED: "Could not connect to the transcription service.",
    CONNECT_TIMEOUT: "Connection to the transcription service timed out.",
    TRANSPORT_ERROR: "Connection to the transcription service was interrupted.",
    TURN_FAILED: "The transcription service rejected a segment of speech.",
    REFINEMENT_FAILED: "Refinement failed, the original text was kept.",
    INSERTION_FAILED: "Could not type into the focused application.",
    TRANSCRIPTION_FAILED: "Transcription of the recording failed.",
}


def describe(code: str, detail: str = "") -> str:
    base = ERROR_MESSAGES.get(code, code)
    if detail:
        return f"{base} ({detail})"
    return base


class DictationError(Exception):
    """Error raised across component seams, tagged with an error code."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or ERROR_MESSAGES.get(code, code))
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, code)
