import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from pydub import AudioSegment

from deal_recorder.core.config import Settings
from deal_recorder.core.errors import PipelineError
from deal_recorder.core.retry import call_with_timeout, with_retry
from deal_recorder.services.concatenator import PublishGuard, export_atomic, load_audio
from deal_recorder.services.markers import Segment

logger = logging.getLogger(__name__)


@dataclass
class SegmentOutcome:
    segment: Segment
    filename: Optional[str] = None
    error: Optional[PipelineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SegmentExtractor:
    """
    Cut the continuous session file into one encoded file per segment.

    Segments are cut by timestamp and exported independently on a bounded
    worker pool; a failed segment is reported in its outcome and does not
    stop the others.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def extract_all(self, session_path: Path, segments: List[Segment], out_dir: Path) -> List[SegmentOutcome]:
        started = time.perf_counter()
        ordered = sorted(segments, key=lambda s: s.index)
        try:
            audio = load_audio(session_path, self.settings.OUTPUT_FORMAT)
        except PipelineError as e:
            logger.warning("Session file %s unreadable: %s", session_path, e.detail)
            return [SegmentOutcome(segment=seg, error=e) for seg in ordered]
        out_dir.mkdir(parents=True, exist_ok=True)

        workers = max(1, min(self.settings.EXTRACT_WORKERS, len(ordered) or 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="extract") as executor:
            futures = [executor.submit(self._extract_guarded, audio, seg, out_dir) for seg in ordered]
            outcomes = [f.result() for f in futures]

        failed = sum(1 for o in outcomes if not o.ok)
        logger.info(
            "Extracted %d/%d segments into %s in %.2fs",
            len(outcomes) - failed, len(outcomes), out_dir, time.perf_counter() - started,
        )
        return outcomes

    def _extract_guarded(self, audio: AudioSegment, segment: Segment, out_dir: Path) -> SegmentOutcome:
        label = f"extract segment {segment.index}"
        attempt = with_retry(
            attempts=1 + self.settings.ENCODE_RETRIES,
            delay=self.settings.RETRY_DELAY_SEC,
            label=label,
        )(call_with_timeout)
        guard = PublishGuard()
        try:
            filename = attempt(
                self.extract_one, self.settings.ENCODE_TIMEOUT_SEC, label, audio, segment, out_dir, guard=guard
            )
            return SegmentOutcome(segment=segment, filename=filename)
        except PipelineError as e:
            logger.warning("Segment %d (%s) failed: %s", segment.index, segment.name, e.detail)
            error = e
        except Exception as e:
            logger.exception("Segment %d (%s) failed unexpectedly", segment.index, segment.name)
            error = PipelineError(str(e))

        # an abandoned attempt may still be encoding; nothing it writes may be served
        guard.cancel()
        self._discard(out_dir / segment.filename(self.settings.OUTPUT_FORMAT))
        return SegmentOutcome(segment=segment, error=error)

    def extract_one(
        self, audio: AudioSegment, segment: Segment, out_dir: Path, guard: Optional[PublishGuard] = None
    ) -> str:
        # pydub slices by milliseconds; start == end yields an empty, still valid, file
        piece = audio[segment.start_ms:segment.end_ms]
        filename = segment.filename(self.settings.OUTPUT_FORMAT)
        export_atomic(piece, out_dir / filename, self.settings, guard)
        return filename

    @staticmethod
    def _discard(path: Path):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
