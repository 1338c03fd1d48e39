from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# Client → Server payloads

class RawMarker(BaseModel):
    """A caller-declared interval; offsets are milliseconds from session start."""

    model_config = ConfigDict(extra="allow")

    name: str = ""
    start: int = 0
    end: Optional[int] = None

    @property
    def extras(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class SessionMetadata(BaseModel):
    """Latest client snapshot for a session (deal fields, agent, markers...)."""

    model_config = ConfigDict(extra="allow")

    markers: List[RawMarker] = Field(default_factory=list)
    totalChunks: Optional[int] = Field(default=None, ge=0)


class FinalizeRequest(BaseModel):
    sessionId: str
    markers: Optional[List[RawMarker]] = None
    durationMs: Optional[int] = Field(default=None, ge=0)


class ExtractRequest(BaseModel):
    text: str


# Server → Client payloads

class ChunkAck(BaseModel):
    ok: bool = True
    sessionId: str
    received: int
    totalChunks: Optional[int] = None


class ErrorBody(BaseModel):
    kind: str
    detail: str


class SegmentEntry(BaseModel):
    index: int
    name: str
    start: int
    end: int
    file: Optional[str] = None
    error: Optional[ErrorBody] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Manifest(BaseModel):
    sessionId: str
    sessionFile: str
    durationMs: int
    chunkCount: int
    finalizedAt: str
    segments: List[SegmentEntry]
    cached: bool = False


class SessionStatus(BaseModel):
    sessionId: str
    state: str
    format: Optional[str] = None
    receivedChunks: List[int] = Field(default_factory=list)
    missingChunks: List[int] = Field(default_factory=list)
    totalChunks: Optional[int] = None
    createdAt: Optional[str] = None
    finalizingSince: Optional[str] = None
    error: Optional[ErrorBody] = None


class TranscriptionResponse(BaseModel):
    text: str
    detectedLanguage: str


class ExtractionResponse(BaseModel):
    deals: List[Dict[str, Any]] = Field(default_factory=list)
    degraded: bool = False


class SegmentAnalysis(BaseModel):
    index: int
    name: str
    text: str
    detectedLanguage: str
    deals: List[Dict[str, Any]] = Field(default_factory=list)
    degraded: bool = False
