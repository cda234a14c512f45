"""HTTP error taxonomy for the download endpoint.

Each error is an ``HTTPException`` whose ``detail`` is the JSON payload sent
to the client. ``http_error_handler`` is registered on the app so that every
error, including the framework's own 404/405, is rendered as an object with
at least an ``error`` field.
"""

from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hls2mp4.config import settings


USAGE = 'Send a POST request with { "url": "your_m3u8_url" } or GET with ?url=your_m3u8_url'

TROUBLESHOOTING_TIPS = [
    "Ensure the m3u8 URL is accessible",
    "Check if the video requires authentication",
    "Try using a VPN if the content is region-locked",
]


class DownloadError(HTTPException):
    """Base class for classified download failures."""

    status_code = 500

    def __init__(self, error: str, **extra: Any):
        payload: Dict[str, Any] = {"error": error}
        payload.update({k: v for k, v in extra.items() if v is not None})
        super().__init__(status_code=self.status_code, detail=payload)


class MethodNotAllowed(DownloadError):
    status_code = 405

    def __init__(self):
        super().__init__("Method not allowed")


class BadRequest(DownloadError):
    status_code = 400


class UpstreamNotFound(DownloadError):
    status_code = 404

    def __init__(self):
        super().__init__("Video not found. The URL might be expired or invalid.")


class UpstreamForbidden(DownloadError):
    status_code = 403

    def __init__(self):
        super().__init__("Access forbidden. The video might be protected.")


class InternalError(DownloadError):
    status_code = 500

    def __init__(self, message: str, tips: Optional[List[str]] = None):
        super().__init__(
            "Failed to process video",
            message=message,
            tips=tips if tips is not None else list(TROUBLESHOOTING_TIPS),
        )


def missing_url() -> BadRequest:
    return BadRequest("Missing URL parameter", usage=USAGE, example=settings.example_url)


def upstream_error(status_code: Optional[int], message: str) -> DownloadError:
    """Map a failed manifest fetch to the client-facing error."""
    if status_code == 404:
        return UpstreamNotFound()
    if status_code == 403:
        return UpstreamForbidden()
    return InternalError(message)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render any HTTP exception as a JSON error object."""
    if isinstance(exc.detail, dict):
        content = exc.detail
    elif exc.status_code == 405:
        content = MethodNotAllowed().detail
    else:
        content = {"error": exc.detail}
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None),
    )
