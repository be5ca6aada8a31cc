"""Tests for SoundDeviceRecorder."""

from __future__ import annotations

import os
import wave
from queue import Queue
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from errors import DEVICE_BUSY, PERMISSION_DENIED, RECORDING_FAILED, DictationError
from models import AudioFrame
from recorder import SoundDeviceRecorder, compute_level, resample, to_pcm16


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

def _block(n_samples: int = 4800, value: float = 0.5) -> np.ndarray:
    """A float32 block shaped like a sounddevice callback buffer."""
    return np.full((n_samples, 1), value, dtype=np.float32)


@pytest.fixture()
def mock_sd():  # noqa: ANN201
    with patch("recorder.sd") as sd:
        yield sd


# ---------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------

def test_compute_level_is_rms_clamped() -> None:
    assert compute_level(np.zeros(10, dtype=np.float32)) == 0.0
    assert compute_level(np.full(10, 0.5, dtype=np.float32)) == pytest.approx(0.5)
    assert compute_level(np.full(10, 4.0, dtype=np.float32)) == 1.0
    assert compute_level(np.zeros(0, dtype=np.float32)) == 0.0


def test_resample_halves_sample_count() -> None:
    samples = np.linspace(-1.0, 1.0, num=4800, dtype=np.float32)
    assert resample(samples, 48000, 24000).size == 2400
    assert resample(samples, 24000, 24000) is samples


def test_to_pcm16_clips_and_scales() -> None:
    pcm = to_pcm16(np.array([0.0, 1.0, -2.0], dtype=np.float32))
    assert np.frombuffer(pcm, dtype=np.int16).tolist() == [0, 32767, -32767]


# ---------------------------------------------------------------
# Start / stop
# ---------------------------------------------------------------

def test_start_opens_float_stream(mock_sd: MagicMock, tmp_path) -> None:  # noqa: ANN001
    rec = SoundDeviceRecorder(artifact_dir=str(tmp_path))
    rec.start(Queue())

    kwargs = mock_sd.InputStream.call_args.kwargs
    assert kwargs["samplerate"] == 48000
    assert kwargs["dtype"] == "float32"
    assert kwargs["blocksize"] == 4800
    assert rec.is_recording
    rec.cancel()


def test_start_twice_is_noop(mock_sd: MagicMock, tmp_path) -> None:  # noqa: ANN001
    rec = SoundDeviceRecorder(artifact_dir=str(tmp_path))
    rec.start(Queue())
    rec.start(Queue())

    assert mock_sd.InputStream.call_count == 1
    rec.cancel()


def test_callback_produces_both_encodings(mock_sd: MagicMock, tmp_path) -> None:  # noqa: ANN001
    q: Queue[AudioFrame | None] = Queue()
    levels: list[float] = []
    rec = SoundDeviceRecorder(artifact_dir=str(tmp_path))
    rec.start(q, on_level=levels.append)

    rec._on_audio(_block(), 4800, None, None)
    path = rec.stop()

    frame = q.get_nowait()
    assert frame.sample_rate == 24000
    assert len(frame.pcm16_bytes) == 2400 * 2
    assert q.get_nowait() is None
    assert levels == [pytest.approx(0.5)]

    assert path is not None and os.path.exists(path)
    with wave.open(path, "rb") as wav:
        assert wav.getframerate() == 48000
        assert wav.getnframes() == 4800
    os.remove(path)


def test_stereo_input_is_downmixed(mock_sd: MagicMock, tmp_path) -> None:  # noqa: ANN001
    q: Queue[AudioFrame | None] = Queue()
    rec = SoundDeviceRecorder(artifact_dir=str(tmp_path), channels=2)
    rec.start(q)

    stereo = np.zeros((480, 2), dtype=np.float32)
    rec._on_audio(stereo, 480, None, None)
    rec.cancel()

    assert len(q.get_nowait().pcm16_bytes) == 240 * 2


def test_batch_mode_without_stream_queue(mock_sd: MagicMock, tmp_path) -> None:  # noqa: ANN001
    rec = SoundDeviceRecorder(artifact_dir=str(tmp_path))
    rec.start(None)
    rec._on_audio(_block(), 4800, None, None)
    path = rec.stop()

    with wave.open(path, "rb") as wav:
        assert wav.getnframes() == 4800
    os.remove(path)


def test_full_queue_drops_frames(mock_sd: MagicMock, tmp_path) -> None:  # noqa: ANN001
    q: Queue[AudioFrame | None] = Queue(maxsize=1)
    rec = SoundDeviceRecorder(artifact_dir=str(tmp_path))
    rec.start(q)

    rec._on_audio(_block(), 4800, None, None)
    rec._on_audio(_block(), 4800, None, None)

    assert rec.dropped_chunks == 1
    rec.cancel()


# ---------------------------------------------------------------
# Pause / cancel
# ---------------------------------------------------------------

def test_paused_callback_produces_nothing(mock_sd: MagicMock, tmp_path) -> None:  # noqa: ANN001
    q: Queue[AudioFrame | None] = Queue()
    levels: list[float] = []
    rec = SoundDeviceRecorder(artifact_dir=str(tmp_path))
    rec.start(q, on_level=levels.append)

    rec.pause()
    assert rec.is_paused
    rec._on_audio(_block(), 4800, None, None)
    assert q.empty()
    assert levels == []

    rec.resume()
    rec._on_audio(_block(), 4800, None, None)
    assert not q.empty()
    rec.cancel()


def test_cancel_discards_artifact(mock_sd: MagicMock, tmp_path) -> None:  # noqa: ANN001
    q: Queue[AudioFrame | None] = Queue()
    rec = SoundDeviceRecorder(artifact_dir=str(tmp_path))
    rec.start(q)
    rec._on_audio(_block(), 4800, None, None)

    rec.cancel()

    assert list(tmp_path.iterdir()) == []
    assert not rec.is_recording


def test_stop_when_not_recording_returns_none(tmp_path) -> None:  # noqa: ANN001
    rec = SoundDeviceRecorder(artifact_dir=str(tmp_path))
    assert rec.stop() is None


# ---------------------------------------------------------------
# Device errors
# ---------------------------------------------------------------

@pytest.mark.parametrize(
    "message, code",
    [
        ("Permission denied by the system", PERMISSION_DENIED),
        ("Device unavailable [PaErrorCode -9985]", DEVICE_BUSY),
        ("Invalid sample rate", RECORDING_FAILED),
    ],
)
def test_open_failure_maps_to_error_code(mock_sd: MagicMock, tmp_path, message: str, code: str) -> None:  # noqa: ANN001
    mock_sd.InputStream.side_effect = RuntimeError(message)
    rec = SoundDeviceRecorder(artifact_dir=str(tmp_path))

    with pytest.raises(DictationError) as info:
        rec.start(Queue())

    assert info.value.code == code
    assert not rec.is_recording
    assert list(tmp_path.iterdir()) == []


@patch("recorder.sd", None)
def test_missing_sounddevice_raises(tmp_path) -> None:  # noqa: ANN001
    rec = SoundDeviceRecorder(artifact_dir=str(tmp_path))
    with pytest.raises(DictationError) as info:
        rec.start(Queue())
    assert info.value.code == RECORDING_FAILED
