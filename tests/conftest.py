import io

import numpy as np
import pytest
import soundfile as sf
from fastapi.testclient import TestClient

from deal_recorder.core.config import Settings
from deal_recorder.services.session_store import SessionStore

SAMPLE_RATE = 16000


def make_wav(duration_ms: int, freq: float = 440.0, sr: int = SAMPLE_RATE) -> bytes:
    """Mono PCM16 sine tone as WAV bytes."""
    n_samples = int(sr * duration_ms / 1000)
    t = np.arange(n_samples) / sr
    data = (0.3 * np.sin(2 * np.pi * freq * t) * 32767).astype(np.int16)
    buf = io.BytesIO()
    sf.write(buf, data, sr, format="WAV", subtype="PCM_16")
    return buf.getvalue()


@pytest.fixture
def settings(tmp_path):
    # wav in, wav out under the default CONCAT_MODE: pydub needs no ffmpeg for this path
    return Settings(
        STORAGE_DIR=str(tmp_path / "data"),
        OUTPUT_FORMAT="wav",
        ENCODE_TIMEOUT_SEC=30,
        ENCODE_RETRIES=0,
        EXTRACT_WORKERS=2,
        RETRY_DELAY_SEC=0,
        COLLABORATOR_RETRIES=1,
        TRANSCRIBE_TIMEOUT_SEC=5,
        OPENAI_API_KEY=None,
    )


@pytest.fixture
def store(settings):
    return SessionStore(settings)


@pytest.fixture
def upload_chunks(store):
    """Store 1s WAV chunks at the given indices for a session."""

    def _upload(session_id, indices, duration_ms=1000):
        for i in indices:
            store.put_chunk(session_id, i, make_wav(duration_ms, freq=300 + 100 * i), "wav")

    return _upload


@pytest.fixture
def api_client(settings):
    from deal_recorder.main import create_app

    app = create_app(settings)
    return TestClient(app)
