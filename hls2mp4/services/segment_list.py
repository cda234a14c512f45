"""Segment list builder: resolve segment URIs and write the concat list."""

import re
from pathlib import Path
from typing import Iterable, List

from hls2mp4.models import SegmentDescriptor

_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*://")


def base_url(manifest_url: str) -> str:
    """Everything in the manifest URL up to and including the final '/'."""
    return manifest_url[: manifest_url.rfind("/") + 1]


def is_absolute(uri: str) -> bool:
    return bool(_SCHEME.match(uri))


def resolve_segment_uri(base: str, uri: str) -> str:
    if is_absolute(uri):
        return uri
    return base + uri


def resolve_segments(manifest_url: str, segments: Iterable[SegmentDescriptor]) -> List[str]:
    """Absolute segment URIs in manifest order. Duplicates are kept."""
    base = base_url(manifest_url)
    return [resolve_segment_uri(base, segment.uri) for segment in segments]


def _quote(uri: str) -> str:
    # ffmpeg concat syntax: close the quote, emit an escaped quote, reopen
    return "'" + uri.replace("'", "'\\''") + "'"


def render_concat_list(uris: Iterable[str]) -> str:
    """One ``file '<uri>'`` directive per line, no trailing newline."""
    return "\n".join(f"file {_quote(uri)}" for uri in uris)


def write_concat_list(path: Path, uris: Iterable[str]) -> Path:
    """Write the concat list to ``path``. OSError propagates to the caller."""
    path = Path(path)
    path.write_text(render_concat_list(uris), encoding="utf-8")
    return path
