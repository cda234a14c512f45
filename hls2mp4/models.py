"""Data models for the HLS download API."""

from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel


class DownloadRequest(BaseModel):
    """JSON body accepted by ``POST /download``."""
    url: Optional[str] = None


@dataclass(frozen=True)
class SegmentDescriptor:
    """A media segment as listed in the manifest."""
    uri: str
    duration: Optional[float] = None  # seconds, only used for progress reporting


@dataclass(frozen=True)
class Manifest:
    """A parsed media playlist."""
    segments: List[SegmentDescriptor] = field(default_factory=list)
    is_variant: bool = False

    @property
    def total_duration(self) -> Optional[float]:
        """Sum of segment durations, or None when any duration is unknown."""
        durations = [s.duration for s in self.segments]
        if not durations or any(d is None for d in durations):
            return None
        return float(sum(durations))
