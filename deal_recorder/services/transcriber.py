import logging
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from deal_recorder.core.config import Settings
from deal_recorder.core.errors import PipelineError, TranscriptionFailed
from deal_recorder.core.retry import call_with_timeout, with_retry

logger = logging.getLogger(__name__)


@dataclass
class TranscriptionResult:
    text: str
    detected_language: str


class Transcriber:
    """
    Speech-to-text collaborator.

    ``TRANSCRIBE_BACKEND`` picks a local faster-whisper model (loaded on first
    use) or the OpenAI audio API. Every call is bounded by
    ``TRANSCRIBE_TIMEOUT_SEC`` and retried ``COLLABORATOR_RETRIES`` times;
    when the budget runs out ``TranscriptionFailed`` carries the last error.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._model = None
        self._openai = None
        self._lock = threading.Lock()
        if settings.TRANSCRIBE_BACKEND not in ("faster-whisper", "openai"):
            raise ValueError(f"Unknown TRANSCRIBE_BACKEND {settings.TRANSCRIBE_BACKEND!r}")

    def transcribe(self, audio: bytes, language_hint: Optional[str] = None, filename: str = "audio.mp3") -> TranscriptionResult:
        if not audio:
            raise TranscriptionFailed("No audio to transcribe")
        if self.settings.TRANSCRIBE_BACKEND == "openai" and not self.settings.OPENAI_API_KEY:
            raise TranscriptionFailed("TRANSCRIBE_BACKEND=openai but OPENAI_API_KEY is not set")
        label = "transcribe"
        attempt = with_retry(
            attempts=1 + self.settings.COLLABORATOR_RETRIES,
            delay=self.settings.RETRY_DELAY_SEC,
            label=label,
            retry_on=(Exception,),
        )(call_with_timeout)
        try:
            return attempt(
                self._transcribe_once,
                self.settings.TRANSCRIBE_TIMEOUT_SEC,
                label,
                audio,
                language_hint or None,
                filename,
            )
        except PipelineError as e:
            raise TranscriptionFailed(f"Transcription failed: {e.detail}") from e
        except Exception as e:
            raise TranscriptionFailed(f"Transcription failed: {e}") from e

    def _transcribe_once(self, audio: bytes, language: Optional[str], filename: str) -> TranscriptionResult:
        if self.settings.TRANSCRIBE_BACKEND == "openai":
            return self._transcribe_openai(audio, language, filename)
        return self._transcribe_local(audio, language, filename)

    def _transcribe_local(self, audio: bytes, language: Optional[str], filename: str) -> TranscriptionResult:
        model = self._load_model()
        suffix = Path(filename).suffix or ".mp3"
        with tempfile.NamedTemporaryFile(suffix=suffix) as tmp:
            tmp.write(audio)
            tmp.flush()
            segments, info = model.transcribe(tmp.name, language=language, vad_filter=True)
            text = "".join(seg.text for seg in segments)
        detected = getattr(info, "language", None) or language or "unknown"
        return TranscriptionResult(text=text.strip(), detected_language=detected)

    def _transcribe_openai(self, audio: bytes, language: Optional[str], filename: str) -> TranscriptionResult:
        client = self._openai_client()
        kwargs = {"model": self.settings.AUDIO_MODEL, "file": (filename, audio)}
        if language:
            kwargs["language"] = language
        transcription = client.audio.transcriptions.create(response_format="json", **kwargs)
        text = getattr(transcription, "text", "") or ""
        detected = getattr(transcription, "language", None) or language or "unknown"
        return TranscriptionResult(text=text.strip(), detected_language=detected)

    def _load_model(self):
        if self._model is None:
            with self._lock:
                if self._model is None:
                    from faster_whisper import WhisperModel

                    logger.info(
                        "Loading Whisper model '%s' on %s (%s)",
                        self.settings.WHISPER_MODEL,
                        self.settings.WHISPER_DEVICE,
                        self.settings.WHISPER_COMPUTE_TYPE,
                    )
                    self._model = WhisperModel(
                        self.settings.WHISPER_MODEL,
                        device=self.settings.WHISPER_DEVICE,
                        compute_type=self.settings.WHISPER_COMPUTE_TYPE,
                    )
        return self._model

    def _openai_client(self):
        if self._openai is None:
            from openai import OpenAI

            self._openai = OpenAI(api_key=self.settings.OPENAI_API_KEY)
        return self._openai
