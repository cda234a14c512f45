"""Manifest fetching and parsing.

Fetching goes over httpx; parsing is delegated to the ``m3u8`` library and
only the segment URIs (plus durations, for progress) are kept.
"""

import logging
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import httpx
import m3u8

from hls2mp4.config import settings
from hls2mp4.models import Manifest, SegmentDescriptor

logger = logging.getLogger(__name__)


def redact_url(url: str) -> str:
    """The URL without query string or fragment, safe to log for signed URLs."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


class ManifestFetchError(Exception):
    """The manifest could not be downloaded.

    ``status_code`` is the upstream HTTP status, or None for network-level
    failures (timeouts, DNS, refused connections).
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


async def fetch_manifest(
    url: str,
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """
    Download a playlist and return its text.

    Args:
        url: Manifest URL
        timeout: Wall-clock limit in seconds, defaults to settings
        transport: Optional httpx transport (used by tests)

    Raises:
        ManifestFetchError: on a non-2xx status or a network failure
    """
    timeout = settings.fetch_timeout_sec if timeout is None else timeout
    headers = {"User-Agent": settings.user_agent}

    try:
        async with httpx.AsyncClient(
            timeout=timeout, transport=transport, headers=headers
        ) as client:
            response = await client.get(url, follow_redirects=True)
            response.raise_for_status()
            return response.text
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        logger.warning(f"Manifest fetch returned HTTP {status}: {redact_url(url)}")
        raise ManifestFetchError(
            f"Request failed with status code {status}", status_code=status
        ) from e
    except httpx.HTTPError as e:
        logger.warning(f"Manifest fetch failed: {type(e).__name__}: {e}")
        raise ManifestFetchError(str(e) or type(e).__name__) from e


def parse_manifest(text: str) -> Manifest:
    """Parse playlist text into an ordered list of segment descriptors."""
    playlist = m3u8.loads(text)
    segments = [
        SegmentDescriptor(uri=segment.uri, duration=segment.duration)
        for segment in playlist.segments
        if segment.uri
    ]
    return Manifest(segments=segments, is_variant=bool(playlist.is_variant))
