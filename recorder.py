"""Microphone recorder adapter.

Each hardware callback yields two independent encodings of the same buffer:
PCM16 mono at the wire sample rate, pushed to the streaming queue, and PCM16
mono at the capture rate, appended to a temporary WAV artifact used by the
non-streaming fallback. The callback never blocks: both hand-offs are
``put_nowait`` and the WAV file is written by its own thread.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
import uuid
import wave
from queue import Full, Queue
from typing import Any, Callable, Optional

from errors import DEVICE_BUSY, PERMISSION_DENIED, RECORDING_FAILED, DictationError
from models import AudioFrame

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)


def compute_level(samples: Any) -> float:
    """Root-mean-square of float samples, clamped to [0, 1]."""
    if samples.size == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
    return max(0.0, min(1.0, rms))


def resample(samples: Any, src_rate: int, dst_rate: int) -> Any:
    """Linear-interpolation resampling of a mono float buffer."""
    if src_rate == dst_rate or samples.size == 0:
        return samples
    n_out = int(round(samples.size * dst_rate / src_rate))
    if n_out <= 0:
        return samples[:0]
    x_old = np.linspace(0.0, 1.0, num=samples.size, endpoint=False)
    x_new = np.linspace(0.0, 1.0, num=n_out, endpoint=False)
    return np.interp(x_new, x_old, samples)


def to_pcm16(samples: Any) -> bytes:
    clipped = np.clip(samples, -1.0, 1.0)
    return (clipped * 32767.0).astype(np.int16).tobytes()


def _classify_device_error(exc: Exception) -> str:
    low = str(exc).lower()
    if "permission" in low or "denied" in low or "not permitted" in low:
        return PERMISSION_DENIED
    if "unavailable" in low or "busy" in low or "in use" in low or "-9985" in low:
        return DEVICE_BUSY
    return RECORDING_FAILED


class _ArtifactWriter:
    """Append-only WAV writer fed from the audio callback."""

    def __init__(self, path: str, sample_rate: int, channels: int = 1) -> None:
        self.path = path
        self._wav = wave.open(path, "wb")
        self._wav.setnchannels(channels)
        self._wav.setsampwidth(2)
        self._wav.setframerate(sample_rate)
        self._queue: Queue[bytes | None] = Queue()
        self._thread = threading.Thread(target=self._run, name="artifact-writer", daemon=True)
        self._thread.start()

    def put(self, payload: bytes) -> None:
        self._queue.put_nowait(payload)

    def close(self) -> None:
        self._queue.put_nowait(None)
        self._thread.join(timeout=2.0)

    def _run(self) -> None:
        try:
            while True:
                payload = self._queue.get()
                if payload is None:
                    break
                self._wav.writeframes(payload)
        except (OSError, wave.Error) as exc:
            logger.error("Writing audio artifact %s failed: %s", self.path, exc)
        finally:
            self._wav.close()


class SoundDeviceRecorder:
    def __init__(
        self,
        sample_rate: int = 48000,
        stream_sample_rate: int = 24000,
        channels: int = 1,
        chunk_ms: int = 100,
        artifact_dir: Optional[str] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.stream_sample_rate = stream_sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self._artifact_dir = artifact_dir or tempfile.gettempdir()
        self._stream: Any = None
        self._writer: Optional[_ArtifactWriter] = None
        self._running = False
        self._paused = False
        self._lock = threading.Lock()
        self.dropped_chunks = 0
        self.conversion_failures = 0
        self._audio_queue: Queue[AudioFrame | None] | None = None
        self._on_level: Optional[Callable[[float], None]] = None

    @property
    def is_recording(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    def start(
        self,
        audio_queue: Optional[Queue[AudioFrame | None]],
        on_level: Optional[Callable[[float], None]] = None,
    ) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None or np is None:
                raise DictationError(RECORDING_FAILED, "sounddevice/numpy is not installed")
            self._audio_queue = audio_queue
            self._on_level = on_level
            self.dropped_chunks = 0
            self.conversion_failures = 0
            path = os.path.join(self._artifact_dir, f"voice_dictation_{uuid.uuid4().hex}.wav")
            try:
                self._writer = _ArtifactWriter(path, self.sample_rate)
            except (OSError, wave.Error) as exc:
                raise DictationError(RECORDING_FAILED, f"cannot create {path}: {exc}") from exc

            blocksize = int(self.sample_rate * (self.chunk_ms / 1000.0))
            try:
                self._stream = sd.InputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="float32",
                    blocksize=blocksize,
                    callback=self._on_audio,
                )
                self._stream.start()
            except Exception as exc:
                code = _classify_device_error(exc)
                logger.error("Opening microphone failed (%s): %s", code, exc)
                self._stream = None
                self._discard_artifact()
                raise DictationError(code, str(exc)) from exc
            self._paused = False
            self._running = True
            logger.info("Recording started at %d Hz, artifact %s", self.sample_rate, path)

    def pause(self) -> None:
        with self._lock:
            if self._running:
                self._paused = True

    def resume(self) -> None:
        with self._lock:
            if self._running:
                self._paused = False

    def stop(self) -> Optional[str]:
        with self._lock:
            if not self._running:
                self._emit_sentinel_if_needed()
                return None
            self._close_stream()
            path = None
            if self._writer is not None:
                self._writer.close()
                path = self._writer.path
                self._writer = None
            self._emit_sentinel_if_needed()
            if self.dropped_chunks:
                logger.warning("Dropped %d audio chunks (queue full)", self.dropped_chunks)
            return path if path and os.path.exists(path) else None

    def cancel(self) -> None:
        with self._lock:
            self._close_stream()
            self._discard_artifact()
            self._emit_sentinel_if_needed()

    def _close_stream(self) -> None:
        self._running = False
        self._paused = False
        self._on_level = None
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None

    def _discard_artifact(self) -> None:
        writer = self._writer
        self._writer = None
        if writer is None:
            return
        writer.close()
        try:
            os.remove(writer.path)
        except FileNotFoundError:
            pass

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if not self._running or self._paused:
            return
        samples = np.asarray(indata, dtype=np.float32)
        if samples.ndim > 1:
            samples = samples.mean(axis=1)

        on_level = self._on_level
        if on_level is not None:
            on_level(compute_level(samples))

        if self._audio_queue is not None:
            try:
                pcm = to_pcm16(resample(samples, self.sample_rate, self.stream_sample_rate))
            except (ValueError, TypeError):
                self.conversion_failures += 1
            else:
                frame = AudioFrame(
                    pcm16_bytes=pcm,
                    sample_rate=self.stream_sample_rate,
                    channels=1,
                    timestamp_ms=int(time.time() * 1000),
                )
                try:
                    self._audio_queue.put_nowait(frame)
                except Full:
                    self.dropped_chunks += 1

        writer = self._writer
        if writer is not None:
            try:
                writer.put(to_pcm16(samples))
            except (ValueError, TypeError):
                self.conversion_failures += 1

    def _emit_sentinel_if_needed(self) -> None:
        if self._audio_queue is None:
            return
        try:
            self._audio_queue.put_nowait(None)
        except Full:
            pass
