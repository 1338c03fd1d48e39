import logging
import os
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import List, Optional

from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError, CouldntEncodeError

from deal_recorder.core.config import Settings
from deal_recorder.core.errors import ExternalToolFailure, NoChunks
from deal_recorder.services.session_store import StoredChunk

logger = logging.getLogger(__name__)

SESSION_BASENAME = "session"

# Every chunk of these carries its own header; byte-joining them would
# leave a file whose first header only describes the first chunk.
SELF_CONTAINED_FORMATS = ("wav",)


@dataclass
class ConcatResult:
    path: Path
    duration_ms: int


def export_kwargs(settings: Settings) -> dict:
    # pydub writes plain wav itself; anything else (or any codec option) goes through ffmpeg
    if settings.OUTPUT_FORMAT == "wav":
        return {}
    return {"bitrate": settings.OUTPUT_BITRATE}


class PublishGuard:
    """
    Shared between a caller and an export it may abandon on timeout. Once
    ``cancel()`` returns, the export can no longer rename its output into
    place.
    """

    def __init__(self):
        self._lock = Lock()
        self.cancelled = False

    def cancel(self):
        with self._lock:
            self.cancelled = True

    def replace(self, src: Path, dst: Path) -> bool:
        with self._lock:
            if self.cancelled:
                return False
            os.replace(src, dst)
            return True


def export_atomic(audio: AudioSegment, out_path: Path, settings: Settings, guard: Optional[PublishGuard] = None):
    """Export through a unique temp file, then rename onto ``out_path``."""
    tmp_path = out_path.with_name(f".{out_path.stem}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        handle = audio.export(str(tmp_path), format=settings.OUTPUT_FORMAT, **export_kwargs(settings))
        handle.close()
        if guard is None:
            os.replace(tmp_path, out_path)
        elif not guard.replace(tmp_path, out_path):
            logger.info("Dropped %s: its export was abandoned", out_path.name)
    except (CouldntEncodeError, OSError) as e:
        raise ExternalToolFailure(f"Encoding {out_path.name} failed: {e}") from e
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def load_audio(path: Path, fmt: Optional[str] = None) -> AudioSegment:
    try:
        return AudioSegment.from_file(str(path), format=fmt)
    except (CouldntDecodeError, IndexError, OSError) as e:
        raise ExternalToolFailure(f"Decoding {path.name} failed: {e}") from e


class Concatenator:
    """
    Rebuild one continuous recording from ordered chunk files and transcode
    it to ``OUTPUT_FORMAT``. Requires ffmpeg unless both sides are wav.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        if settings.CONCAT_MODE not in ("stream", "segments"):
            raise ValueError(f"Unknown CONCAT_MODE {settings.CONCAT_MODE!r}")

    def output_name(self) -> str:
        return f"{SESSION_BASENAME}.{self.settings.OUTPUT_FORMAT}"

    def decode_mode(self, chunk_format: str) -> str:
        if chunk_format in SELF_CONTAINED_FORMATS:
            return "segments"
        return self.settings.CONCAT_MODE

    def concatenate(
        self,
        chunks: List[StoredChunk],
        chunk_format: str,
        out_dir: Path,
        guard: Optional[PublishGuard] = None,
    ) -> ConcatResult:
        if not chunks:
            raise NoChunks("No chunks to concatenate")

        out_dir.mkdir(parents=True, exist_ok=True)
        started = time.perf_counter()

        if self.decode_mode(chunk_format) == "stream":
            combined = self._decode_stream(chunks, chunk_format, out_dir)
        else:
            combined = self._decode_each(chunks, chunk_format)

        if self.settings.OUTPUT_CHANNELS:
            combined = combined.set_channels(self.settings.OUTPUT_CHANNELS)
        if self.settings.OUTPUT_FRAME_RATE:
            combined = combined.set_frame_rate(self.settings.OUTPUT_FRAME_RATE)

        out_path = out_dir / self.output_name()
        export_atomic(combined, out_path, self.settings, guard)

        logger.info(
            "Concatenated %d chunks into %s (%d ms) in %.2fs",
            len(chunks), out_path, len(combined), time.perf_counter() - started,
        )
        return ConcatResult(path=out_path, duration_ms=len(combined))

    def _decode_stream(self, chunks: List[StoredChunk], chunk_format: str, out_dir: Path) -> AudioSegment:
        # MediaRecorder timeslices only carry the container header in the first chunk,
        # so the bytes have to be joined before anything can decode them.
        joined = out_dir / f".joined.{uuid.uuid4().hex[:8]}.{chunk_format}"
        try:
            with open(joined, "wb") as outfile:
                for chunk in chunks:
                    with open(chunk.path, "rb") as infile:
                        shutil.copyfileobj(infile, outfile)
            return load_audio(joined, chunk_format)
        finally:
            if joined.exists():
                joined.unlink()

    def _decode_each(self, chunks: List[StoredChunk], chunk_format: str) -> AudioSegment:
        combined: Optional[AudioSegment] = None
        for chunk in chunks:
            seg = load_audio(chunk.path, chunk_format)
            combined = seg if combined is None else (combined + seg)
        return combined
