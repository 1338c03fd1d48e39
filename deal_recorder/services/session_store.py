import json
import logging
import os
import re
import tempfile
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional

import pytz
from pydantic import ValidationError

from deal_recorder.core.config import Settings
from deal_recorder.core.errors import (
    Conflict,
    InvalidRequest,
    NotFound,
    PayloadTooLarge,
    StorageFailure,
)
from deal_recorder.models.messages import ErrorBody, Manifest, SessionMetadata, SessionStatus

logger = logging.getLogger(__name__)

_SESSION_ID = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")
CHUNK_SUFFIX = ".part"


class SessionState(str, Enum):
    RECORDING = "recording"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"
    FAILED = "failed"


@dataclass
class StoredChunk:
    index: int
    path: Path
    size: int


@dataclass
class SessionRecord:
    session_id: str
    state: str
    format: Optional[str]
    created_at: str
    finalizing_since: Optional[str] = None
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None


def utc_now() -> datetime:
    return datetime.now(tz=pytz.UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


class SessionStore:
    """
    Disk-backed chunk storage, metadata snapshots and session lifecycle.

    Each session owns ``<STORAGE_DIR>/sessions/<id>/``; chunk writes go through
    a temp file + rename so readers never see a torn chunk. The per-session
    lock only guards the lifecycle record, never an encode.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.sessions_root = settings.sessions_dir
        self.final_root = settings.final_dir
        self.sessions_root.mkdir(parents=True, exist_ok=True)
        self.final_root.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, Lock] = {}
        self._locks_guard = Lock()

    # -- paths --

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_root / self._check_id(session_id)

    def output_dir(self, session_id: str) -> Path:
        return self.final_root / self._check_id(session_id)

    def file_reference(self, session_id: str, filename: str) -> str:
        return f"/files/{session_id}/{filename}"

    # -- chunks --

    def put_chunk(self, session_id: str, index: Optional[int], data: bytes, fmt: str) -> StoredChunk:
        if index is None or index < 0:
            raise InvalidRequest("chunkIndex must be a non-negative integer")
        if not data:
            raise InvalidRequest("Chunk payload is empty")
        if len(data) > self.settings.MAX_CHUNK_BYTES:
            raise PayloadTooLarge(
                f"Chunk of {len(data)} bytes exceeds the {self.settings.MAX_CHUNK_BYTES} byte limit"
            )

        path = self.session_dir(session_id) / f"{index:06d}{CHUNK_SUFFIX}"
        # The state check and the write share the lock, so begin_finalize
        # either sees this chunk on disk or this call sees it finalizing.
        with self._lock_for(session_id):
            record = self._ensure_session(session_id, fmt)
            if record.state in (SessionState.FINALIZING.value, SessionState.FINALIZED.value):
                raise Conflict(f"Session {session_id} is {record.state}; no more chunks accepted")
            self._atomic_write(path, data)
        logger.debug("Stored chunk %s/%d (%d bytes)", session_id, index, len(data))
        return StoredChunk(index=index, path=path, size=len(data))

    def list_chunks_ordered(self, session_id: str) -> List[StoredChunk]:
        s_dir = self.session_dir(session_id)
        chunks: List[StoredChunk] = []
        if s_dir.is_dir():
            for path in s_dir.glob(f"*{CHUNK_SUFFIX}"):
                try:
                    index = int(path.stem)
                except ValueError:
                    continue
                chunks.append(StoredChunk(index=index, path=path, size=path.stat().st_size))
        if not chunks:
            raise NotFound(f"Session {session_id} has no chunks")
        chunks.sort(key=lambda c: c.index)
        return chunks

    # -- metadata --

    def put_metadata(self, session_id: str, metadata: SessionMetadata):
        s_dir = self.session_dir(session_id)
        s_dir.mkdir(parents=True, exist_ok=True)
        self._atomic_write(s_dir / "meta.json", metadata.model_dump_json(indent=2).encode("utf-8"))

    def record_metadata(
        self,
        session_id: str,
        metadata: Optional[SessionMetadata] = None,
        total_chunks: Optional[int] = None,
    ) -> SessionMetadata:
        """
        Store a client snapshot and/or a declared chunk total as one
        read-modify-write under the session lock. A snapshot replaces the
        stored one; a total already on disk survives a snapshot without one.
        """
        with self._lock_for(session_id):
            stored = self.get_metadata(session_id)
            merged = metadata.model_copy() if metadata is not None else stored
            if total_chunks is not None:
                merged.totalChunks = total_chunks
            elif merged.totalChunks is None:
                merged.totalChunks = stored.totalChunks
            self.put_metadata(session_id, merged)
        return merged

    def get_metadata(self, session_id: str) -> SessionMetadata:
        path = self.session_dir(session_id) / "meta.json"
        if not path.exists():
            return SessionMetadata()
        try:
            return SessionMetadata.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise StorageFailure(f"Unreadable metadata for session {session_id}: {e}") from e

    # -- lifecycle --

    def get_record(self, session_id: str) -> SessionRecord:
        record = self._read_record(session_id)
        if record is None:
            raise NotFound(f"Unknown session {session_id}")
        return record

    def begin_finalize(self, session_id: str) -> Optional[Manifest]:
        """
        Move the session to ``finalizing``. Returns the stored manifest when
        the session is already finalized; raises ``Conflict`` while another
        finalize is in flight.
        """
        with self._lock_for(session_id):
            record = self.get_record(session_id)
            if record.state == SessionState.FINALIZED.value:
                manifest = self.read_manifest(session_id)
                if manifest is not None:
                    return manifest
            if record.state == SessionState.FINALIZING.value:
                raise Conflict(f"Session {session_id} is already being finalized")
            record.state = SessionState.FINALIZING.value
            record.finalizing_since = utc_now_iso()
            record.error_kind = record.error_detail = None
            self._write_record(record)
        logger.info("Session %s: finalizing", session_id)
        return None

    def mark_finalized(self, session_id: str):
        self._transition(session_id, SessionState.FINALIZED)
        logger.info("Session %s: finalized", session_id)

    def mark_failed(self, session_id: str, kind: str, detail: str):
        self._transition(session_id, SessionState.FAILED, kind, detail)
        logger.warning("Session %s: failed (%s: %s)", session_id, kind, detail)

    def recover(self, session_id: str, force: bool = False) -> SessionRecord:
        """Release a ``finalizing`` marker left behind by an interrupted finalize."""
        with self._lock_for(session_id):
            record = self.get_record(session_id)
            if record.state != SessionState.FINALIZING.value:
                return record
            if not force and record.finalizing_since:
                started = datetime.fromisoformat(record.finalizing_since)
                age = (utc_now() - started).total_seconds()
                if age < self.settings.FINALIZE_STALE_SEC:
                    raise Conflict(
                        f"Session {session_id} started finalizing {age:.0f}s ago; "
                        "pass force=true to recover anyway"
                    )
            record.state = SessionState.FAILED.value
            record.error_kind = "Recovered"
            record.error_detail = "Interrupted finalize was released for retry"
            self._write_record(record)
        logger.info("Session %s: recovered from stale finalize", session_id)
        return record

    def session_status(self, session_id: str) -> SessionStatus:
        record = self.get_record(session_id)
        try:
            received = [c.index for c in self.list_chunks_ordered(session_id)]
        except NotFound:
            received = []
        total = self.get_metadata(session_id).totalChunks
        error = None
        if record.error_kind:
            error = ErrorBody(kind=record.error_kind, detail=record.error_detail or "")
        return SessionStatus(
            sessionId=session_id,
            state=record.state,
            format=record.format,
            receivedChunks=received,
            missingChunks=missing_indices(received, total),
            totalChunks=total,
            createdAt=record.created_at,
            finalizingSince=record.finalizing_since,
            error=error,
        )

    # -- manifest --

    def write_manifest(self, manifest: Manifest):
        out_dir = self.output_dir(manifest.sessionId)
        out_dir.mkdir(parents=True, exist_ok=True)
        payload = manifest.model_dump_json(indent=2, exclude={"cached"})
        self._atomic_write(out_dir / "manifest.json", payload.encode("utf-8"))

    def read_manifest(self, session_id: str) -> Optional[Manifest]:
        path = self.output_dir(session_id) / "manifest.json"
        if not path.exists():
            return None
        return Manifest.model_validate_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def chunk_format(mime: Optional[str], filename: Optional[str] = None) -> str:
        mime = (mime or "").split(";")[0].strip().lower()
        if mime in ("audio/webm", "video/webm"):
            return "webm"
        if mime == "audio/ogg":
            return "ogg"
        if mime in ("audio/wav", "audio/x-wav", "audio/wave"):
            return "wav"
        if mime in ("audio/m4a", "audio/mp4", "audio/x-m4a"):
            return "m4a"
        if mime in ("audio/mpeg", "audio/mp3"):
            return "mp3"
        ext = Path(filename or "").suffix.lower().lstrip(".")
        if ext in ("webm", "ogg", "wav", "m4a", "mp3"):
            return ext
        # MediaRecorder default
        return "webm"

    # -- internals --

    def _check_id(self, session_id: str) -> str:
        if not session_id or not _SESSION_ID.match(session_id) or session_id in (".", ".."):
            raise InvalidRequest("sessionId must be 1-128 characters of [A-Za-z0-9_.-]")
        return session_id

    def _lock_for(self, session_id: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = Lock()
            return lock

    def _ensure_session(self, session_id: str, fmt: str) -> SessionRecord:
        # caller holds the session lock
        record = self._read_record(session_id)
        if record is None:
            self.session_dir(session_id).mkdir(parents=True, exist_ok=True)
            record = SessionRecord(
                session_id=session_id,
                state=SessionState.RECORDING.value,
                format=fmt,
                created_at=utc_now_iso(),
            )
            self._write_record(record)
            logger.info("Session %s: created (%s chunks)", session_id, fmt)
        elif record.format and fmt and record.format != fmt:
            raise InvalidRequest(
                f"Session {session_id} records {record.format} chunks, got {fmt}"
            )
        return record

    def _transition(self, session_id: str, state: SessionState, kind: str = None, detail: str = None):
        with self._lock_for(session_id):
            record = self.get_record(session_id)
            record.state = state.value
            record.error_kind = kind
            record.error_detail = detail
            self._write_record(record)

    def _read_record(self, session_id: str) -> Optional[SessionRecord]:
        path = self.session_dir(session_id) / "session.json"
        if not path.exists():
            return None
        try:
            return SessionRecord(**json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, TypeError) as e:
            raise StorageFailure(f"Unreadable session record for {session_id}: {e}") from e

    def _write_record(self, record: SessionRecord):
        path = self.session_dir(record.session_id) / "session.json"
        self._atomic_write(path, json.dumps(asdict(record), indent=2).encode("utf-8"))

    @staticmethod
    def _atomic_write(path: Path, data: bytes):
        tmp_path = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.name}.{uuid.uuid4().hex[:8]}.", dir=str(path.parent)
            )
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()
            raise StorageFailure(f"Could not write {path.name}: {e}") from e


def missing_indices(indices: List[int], total_chunks: Optional[int] = None) -> List[int]:
    """Indices absent from ``0..max`` (or ``0..total_chunks-1`` when known)."""
    present = set(indices)
    upper = max(present) + 1 if present else 0
    if total_chunks is not None:
        upper = max(upper, total_chunks)
    return [i for i in range(upper) if i not in present]
