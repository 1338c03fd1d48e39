"""
Turn caller-supplied markers into a partition of the session timeline.

Raw markers may be unsorted, overlapping, or missing an end. The output is
sorted by start and contiguous: every segment ends where the next one
begins, the first begins at 0 and the last ends at the total duration.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from deal_recorder.models.messages import RawMarker

SESSION_SEGMENT_NAME = "Session"

_RESERVED_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_WHITESPACE = re.compile(r"\s+")
_HYPHEN_RUNS = re.compile(r"-{2,}")


@dataclass
class Segment:
    index: int
    name: str
    start_ms: int
    end_ms: int
    declared_start_ms: Optional[int] = None
    declared_end_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    safe_name: str = ""

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    def filename(self, ext: str) -> str:
        return f"deal-{self.index}-{self.safe_name}.{ext}"


def sanitize_name(name: str, max_length: int = 60) -> str:
    """Make ``name`` safe as a single file-path component."""
    cleaned = _RESERVED_CHARS.sub("", name or "")
    cleaned = _WHITESPACE.sub("-", cleaned.strip())
    cleaned = _HYPHEN_RUNS.sub("-", cleaned)
    cleaned = cleaned.strip(".-")
    if max_length > 0:
        cleaned = cleaned[:max_length].rstrip(".-")
    return cleaned or "deal"


def normalize_markers(
    markers: Iterable[RawMarker],
    total_duration_ms: Optional[int] = None,
    max_name_length: int = 60,
) -> List[Segment]:
    raw = list(markers or [])

    if total_duration_ms is None:
        total_duration_ms = _latest_known_offset(raw)
    total = max(0, int(total_duration_ms))

    if not raw:
        return [
            Segment(
                index=0,
                name=SESSION_SEGMENT_NAME,
                start_ms=0,
                end_ms=total,
                safe_name=sanitize_name(SESSION_SEGMENT_NAME, max_name_length),
            )
        ]

    # sorted() is stable, so equal starts keep their input order
    ordered = sorted(raw, key=lambda m: max(0, m.start))

    segments: List[Segment] = []
    for index, marker in enumerate(ordered):
        name = (marker.name or "").strip() or f"Deal {index + 1}"
        segments.append(
            Segment(
                index=index,
                name=name,
                start_ms=max(0, marker.start),
                end_ms=0,
                declared_start_ms=marker.start,
                declared_end_ms=marker.end,
                metadata=marker.extras,
                safe_name=sanitize_name(name, max_name_length),
            )
        )

    segments[0].start_ms = 0
    for current, following in zip(segments, segments[1:]):
        current.end_ms = following.start_ms
    last = segments[-1]
    last.end_ms = max(total, last.start_ms)

    return segments


def _latest_known_offset(markers: List[RawMarker]) -> int:
    offsets = [0]
    for marker in markers:
        offsets.append(marker.start)
        if marker.end is not None:
            offsets.append(marker.end)
    return max(offsets)
