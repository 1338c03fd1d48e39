from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Storage root: sessions/<id>/ holds chunks, final/<id>/ holds outputs
    STORAGE_DIR: str = Field(default="data")
    MAX_CHUNK_BYTES: int = Field(
        default=100 * 1024 * 1024,
        description="Per-chunk upload ceiling in bytes",
    )

    # Encoding
    OUTPUT_FORMAT: str = Field(default="mp3", description="Container/codec for session and deal files")
    OUTPUT_BITRATE: str = Field(default="128k")
    OUTPUT_CHANNELS: Optional[int] = Field(default=1)
    OUTPUT_FRAME_RATE: Optional[int] = Field(default=None)
    CONCAT_MODE: str = Field(
        default="stream",
        description='"stream" joins chunk bytes into one container, "segments" decodes each chunk',
    )
    ENCODE_TIMEOUT_SEC: float = Field(default=600.0)
    ENCODE_RETRIES: int = Field(default=1, description="Extra attempts after a failed encode")
    EXTRACT_WORKERS: int = Field(default=4)
    SEGMENT_NAME_MAX_LEN: int = Field(default=60)
    FINALIZE_STALE_SEC: float = Field(default=3600.0)

    # Transcription ("faster-whisper" | "openai")
    TRANSCRIBE_BACKEND: str = Field(default="faster-whisper")
    WHISPER_MODEL: str = Field(default="base")
    WHISPER_DEVICE: str = Field(default="cpu")
    WHISPER_COMPUTE_TYPE: str = Field(default="int8")

    # OpenAI (transcription backend + deal extraction)
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    AUDIO_MODEL: str = Field(default="gpt-4o-mini-transcribe")
    TEXT_MODEL: str = Field(default="gpt-4.1-mini")

    # Collaborator call policy
    TRANSCRIBE_TIMEOUT_SEC: float = Field(default=60.0)
    COLLABORATOR_RETRIES: int = Field(default=2)
    RETRY_DELAY_SEC: float = Field(default=1.0)

    CORS_ORIGINS: List[str] = Field(default_factory=lambda: ["*"])
    LOG_LEVEL: str = Field(default="INFO")

    class Config:
        env_file = ".env"

    @property
    def sessions_dir(self) -> Path:
        return Path(self.STORAGE_DIR) / "sessions"

    @property
    def final_dir(self) -> Path:
        return Path(self.STORAGE_DIR) / "final"


settings = Settings()

# Ensure storage directories exist
settings.sessions_dir.mkdir(parents=True, exist_ok=True)
settings.final_dir.mkdir(parents=True, exist_ok=True)
