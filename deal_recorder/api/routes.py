import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, File, Form, Query, Request, UploadFile
from pydantic import ValidationError

from deal_recorder.core.errors import InvalidRequest, NotFound, PayloadTooLarge
from deal_recorder.models.messages import (
    ChunkAck,
    ExtractionResponse,
    ExtractRequest,
    FinalizeRequest,
    Manifest,
    SegmentAnalysis,
    SessionMetadata,
    SessionStatus,
    TranscriptionResponse,
)
from deal_recorder.services.extractor import DealExtractor
from deal_recorder.services.finalizer import FinalizeOrchestrator
from deal_recorder.services.session_store import SessionStore
from deal_recorder.services.transcriber import Transcriber

logger = logging.getLogger(__name__)

router = APIRouter()


def _store(request: Request) -> SessionStore:
    return request.app.state.store


def _finalizer(request: Request) -> FinalizeOrchestrator:
    return request.app.state.finalizer


def _transcriber(request: Request) -> Transcriber:
    return request.app.state.transcriber


def _extractor(request: Request) -> DealExtractor:
    return request.app.state.extractor


def _parse_int(value: Optional[str], field: str, required: bool) -> Optional[int]:
    if value is None or value == "":
        if required:
            raise InvalidRequest(f"Missing {field}")
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{field} must be an integer, got {value!r}")


def _read_upload(upload: Optional[UploadFile], limit: int) -> bytes:
    if upload is None:
        raise InvalidRequest("Missing audio file")
    try:
        data = upload.file.read(limit + 1)
    finally:
        upload.file.close()
    if len(data) > limit:
        raise PayloadTooLarge(f"Upload exceeds the {limit} byte limit")
    return data


@router.post("/api/chunk", response_model=ChunkAck)
def upload_chunk(
    request: Request,
    sessionId: Optional[str] = Form(None),
    chunkIndex: Optional[str] = Form(None),
    totalChunks: Optional[str] = Form(None),
    meta: Optional[str] = Form(None),
    audio: Optional[UploadFile] = File(None),
):
    store = _store(request)
    if not sessionId:
        raise InvalidRequest("Missing sessionId")
    index = _parse_int(chunkIndex, "chunkIndex", required=True)
    total = _parse_int(totalChunks, "totalChunks", required=False)
    if total is not None and not 0 <= index < total:
        raise InvalidRequest(f"chunkIndex {index} is outside 0..{total - 1}")

    metadata = None
    if meta:
        try:
            metadata = SessionMetadata.model_validate_json(meta)
        except ValidationError as e:
            raise InvalidRequest(f"Invalid meta: {e.errors(include_url=False)}")

    data = _read_upload(audio, store.settings.MAX_CHUNK_BYTES)
    fmt = store.chunk_format(audio.content_type, audio.filename)
    store.put_chunk(sessionId, index, data, fmt)

    if metadata is not None or total is not None:
        store.record_metadata(sessionId, metadata, total)

    return ChunkAck(sessionId=sessionId, received=index, totalChunks=total)


@router.post("/api/finalize", response_model=Manifest)
def finalize_session(request: Request, body: FinalizeRequest):
    return _finalizer(request).finalize(body.sessionId, body.markers, body.durationMs)


@router.get("/api/sessions/{session_id}", response_model=SessionStatus)
def get_session(request: Request, session_id: str):
    return _store(request).session_status(session_id)


@router.get("/api/sessions/{session_id}/manifest", response_model=Manifest)
def get_manifest(request: Request, session_id: str):
    manifest = _store(request).read_manifest(session_id)
    if manifest is None:
        raise NotFound(f"Session {session_id} has no manifest")
    return manifest


@router.post("/api/sessions/{session_id}/recover", response_model=SessionStatus)
def recover_session(request: Request, session_id: str, force: bool = Query(False)):
    store = _store(request)
    store.recover(session_id, force=force)
    return store.session_status(session_id)


@router.post("/api/transcribe", response_model=TranscriptionResponse)
def transcribe_audio(
    request: Request,
    audio: Optional[UploadFile] = File(None),
    language: Optional[str] = Form(None),
):
    data = _read_upload(audio, _store(request).settings.MAX_CHUNK_BYTES)
    if not data:
        raise InvalidRequest("Audio file is empty")
    result = _transcriber(request).transcribe(data, language, filename=audio.filename or "audio.webm")
    return TranscriptionResponse(text=result.text, detectedLanguage=result.detected_language)


@router.post("/api/extract", response_model=ExtractionResponse)
def extract_deals(request: Request, body: ExtractRequest):
    if not body.text.strip():
        raise InvalidRequest("Missing text")
    result = _extractor(request).extract(body.text)
    return ExtractionResponse(deals=result.deals, degraded=result.degraded)


@router.post("/api/sessions/{session_id}/segments/{index}/analyze", response_model=SegmentAnalysis)
def analyze_segment(request: Request, session_id: str, index: int, language: Optional[str] = Query(None)):
    store = _store(request)
    manifest = store.read_manifest(session_id)
    if manifest is None:
        raise NotFound(f"Session {session_id} has no manifest")
    entry = next((s for s in manifest.segments if s.index == index), None)
    if entry is None:
        raise NotFound(f"Session {session_id} has no segment {index}")
    if entry.file is None:
        raise NotFound(f"Segment {index} of session {session_id} has no audio file")

    filename = Path(entry.file).name
    audio = (store.output_dir(session_id) / filename).read_bytes()
    transcript = _transcriber(request).transcribe(audio, language, filename=filename)
    extraction = _extractor(request).extract(transcript.text)
    return SegmentAnalysis(
        index=entry.index,
        name=entry.name,
        text=transcript.text,
        detectedLanguage=transcript.detected_language,
        deals=extraction.deals,
        degraded=extraction.degraded,
    )
