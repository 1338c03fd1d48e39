import logging
from pathlib import Path
from typing import List, Optional

from deal_recorder.core.config import Settings
from deal_recorder.core.errors import IncompleteSession, NoChunks, NotFound, PipelineError
from deal_recorder.core.retry import call_with_timeout, with_retry
from deal_recorder.models.messages import ErrorBody, Manifest, RawMarker, SegmentEntry
from deal_recorder.services.concatenator import ConcatResult, Concatenator, PublishGuard
from deal_recorder.services.markers import normalize_markers
from deal_recorder.services.segment_extractor import SegmentExtractor, SegmentOutcome
from deal_recorder.services.session_store import SessionStore, StoredChunk, missing_indices, utc_now_iso

logger = logging.getLogger(__name__)


class FinalizeOrchestrator:
    """
    recording -> finalizing -> {finalized, failed}

    ``finalize`` is single-flight per session through the persisted
    ``finalizing`` state. A finalized session answers with its stored
    manifest (``cached=True``); a failed one may be finalized again. Chunks
    are never removed, whatever the outcome.
    """

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        concatenator: Optional[Concatenator] = None,
        extractor: Optional[SegmentExtractor] = None,
    ):
        self.settings = settings
        self.store = store
        self.concatenator = concatenator or Concatenator(settings)
        self.extractor = extractor or SegmentExtractor(settings)

    def finalize(
        self,
        session_id: str,
        markers: Optional[List[RawMarker]] = None,
        duration_ms: Optional[int] = None,
    ) -> Manifest:
        cached = self.store.begin_finalize(session_id)
        if cached is not None:
            logger.info("Session %s already finalized; returning stored manifest", session_id)
            return cached.model_copy(update={"cached": True})

        try:
            manifest = self._run(session_id, markers, duration_ms)
        except PipelineError as e:
            self.store.mark_failed(session_id, e.kind, e.detail)
            raise
        except Exception as e:
            logger.exception("Finalize of session %s crashed", session_id)
            self.store.mark_failed(session_id, "Internal", str(e))
            raise

        self.store.mark_finalized(session_id)
        return manifest

    def _run(self, session_id: str, markers: Optional[List[RawMarker]], duration_ms: Optional[int]) -> Manifest:
        metadata = self.store.get_metadata(session_id)
        try:
            chunks = self.store.list_chunks_ordered(session_id)
        except NotFound:
            raise NoChunks(f"Session {session_id} has no chunks to reconstruct")
        self._check_contiguous(session_id, chunks, metadata.totalChunks)

        record = self.store.get_record(session_id)
        out_dir = self.store.output_dir(session_id)
        concat = self._concatenate(chunks, record.format or "webm", out_dir)

        if markers is None:
            markers = metadata.markers
        total = duration_ms if duration_ms is not None else concat.duration_ms
        segments = normalize_markers(markers, total, self.settings.SEGMENT_NAME_MAX_LEN)

        outcomes = self.extractor.extract_all(concat.path, segments, out_dir)

        manifest = Manifest(
            sessionId=session_id,
            sessionFile=self.store.file_reference(session_id, concat.path.name),
            durationMs=concat.duration_ms,
            chunkCount=len(chunks),
            finalizedAt=utc_now_iso(),
            segments=[self._entry(session_id, o) for o in outcomes],
        )
        self.store.write_manifest(manifest)
        return manifest

    def _check_contiguous(self, session_id: str, chunks: List[StoredChunk], total_chunks: Optional[int]):
        missing = missing_indices([c.index for c in chunks], total_chunks)
        if missing:
            raise IncompleteSession(
                f"Session {session_id} is missing chunk indices {missing}",
                missing=missing,
            )

    def _concatenate(self, chunks: List[StoredChunk], chunk_format: str, out_dir: Path) -> ConcatResult:
        label = "concatenate"
        attempt = with_retry(
            attempts=1 + self.settings.ENCODE_RETRIES,
            delay=self.settings.RETRY_DELAY_SEC,
            label=label,
        )(call_with_timeout)
        guard = PublishGuard()
        try:
            return attempt(
                self.concatenator.concatenate,
                self.settings.ENCODE_TIMEOUT_SEC,
                label,
                chunks,
                chunk_format,
                out_dir,
                guard=guard,
            )
        except Exception:
            guard.cancel()
            session_path = out_dir / self.concatenator.output_name()
            if session_path.exists():
                session_path.unlink()
            raise

    def _entry(self, session_id: str, outcome: SegmentOutcome) -> SegmentEntry:
        seg = outcome.segment
        entry = SegmentEntry(
            index=seg.index,
            name=seg.name,
            start=seg.start_ms,
            end=seg.end_ms,
            metadata=seg.metadata,
        )
        if outcome.ok:
            entry.file = self.store.file_reference(session_id, outcome.filename)
        else:
            entry.error = ErrorBody(kind=outcome.error.kind, detail=outcome.error.detail)
        return entry
