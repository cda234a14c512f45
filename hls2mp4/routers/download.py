"""Download endpoint: turn an HLS manifest URL into a streamed MP4."""

import json
import logging
import time
from typing import AsyncIterator, Optional

import anyio
from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from hls2mp4.config import settings
from hls2mp4.errors import BadRequest, DownloadError, InternalError, missing_url, upstream_error
from hls2mp4.models import DownloadRequest
from hls2mp4.services.manifest import ManifestFetchError, fetch_manifest, parse_manifest, redact_url
from hls2mp4.services.segment_list import resolve_segments, write_concat_list
from hls2mp4.services.transcoder import (
    TranscodeError,
    TranscodeEvent,
    TranscodeJob,
    build_transcode_command,
)
from hls2mp4.services.workspace import Workspace

logger = logging.getLogger(__name__)

router = APIRouter(tags=["download"])


# ── Request parsing ───────────────────────────────────────────────────────

async def _read_body_url(request: Request) -> Optional[str]:
    body = await request.body()
    if not body:
        return None
    try:
        return DownloadRequest.model_validate(json.loads(body)).url
    except (ValueError, ValidationError):
        # Not JSON, or not an object with a string url
        return None


async def _requested_url(request: Request) -> Optional[str]:
    url = None
    if request.method == "POST":
        url = await _read_body_url(request)
    if not url:
        url = request.query_params.get("url")
    if url is not None:
        url = url.strip()
    return url or None


def _attachment_filename() -> str:
    return f"{settings.filename_prefix}_{int(time.time() * 1000)}.mp4"


# ── Transcode wiring ──────────────────────────────────────────────────────

def _log_transcode_event(event: TranscodeEvent):
    if event.kind == "start":
        logger.info(f"FFmpeg command: {event.command_line}")
    elif event.kind == "progress":
        if event.percent is not None:
            logger.info(f"Processing: {event.percent:.1f}% done")
        else:
            logger.debug(f"Processing: out_time={event.progress.get('out_time', '?')}")
    elif event.kind == "error":
        logger.error(f"FFmpeg error: {event.message}")
    elif event.kind == "end":
        logger.info("Processing finished successfully")


async def _pipe_output(
    first_chunk: bytes,
    chunks: AsyncIterator[bytes],
    job: TranscodeJob,
    workspace: Workspace,
) -> AsyncIterator[bytes]:
    """
    Forward transcoder output to the client, then clean up.

    The status line is already sent by the time this runs, so a failure here
    can only abort the connection; it is logged and re-raised.
    """
    try:
        if first_chunk:
            yield first_chunk
        async for chunk in chunks:
            yield chunk
    except TranscodeError as e:
        logger.error(f"Stream aborted after headers were sent: {e}")
        raise
    finally:
        try:
            # A disconnect cancels this task; shutdown must still complete
            with anyio.CancelScope(shield=True):
                await chunks.aclose()
                if not job.finished:
                    await job.terminate()
        finally:
            workspace.cleanup()


# ── Endpoint ──────────────────────────────────────────────────────────────

@router.api_route("/download", methods=["GET", "POST"])
async def download(request: Request):
    """
    Download an HLS stream as a single MP4.

    GET with ``?url=<manifest>`` or POST with ``{"url": "<manifest>"}``.
    The MP4 is produced by ffmpeg and streamed as it is written.
    """
    url = await _requested_url(request)
    if not url:
        raise missing_url()
    if ".m3u8" not in url:
        raise BadRequest("URL must be a valid .m3u8 stream")

    logger.info(f"Processing URL: {redact_url(url)}")

    workspace: Optional[Workspace] = None
    job: Optional[TranscodeJob] = None
    handed_off = False
    try:
        text = await fetch_manifest(url)
        manifest = parse_manifest(text)

        if not manifest.segments:
            message = None
            if manifest.is_variant:
                message = "This is a master playlist; pass the URL of one of its variant (media) playlists"
            raise BadRequest("No video segments found in the stream", message=message)

        logger.info(f"Found {len(manifest.segments)} segments")

        workspace = Workspace.create()
        uris = resolve_segments(url, manifest.segments)
        write_concat_list(workspace.concat_list_path, uris)

        job = TranscodeJob(
            build_transcode_command(workspace.concat_list_path),
            total_duration=manifest.total_duration,
        )
        job.subscribe(_log_transcode_event)
        await job.start()

        # Hold the status line until ffmpeg has produced output
        chunks = job.stream()
        try:
            first_chunk = await chunks.__anext__()
        except StopAsyncIteration:
            first_chunk = b""

        response = StreamingResponse(
            _pipe_output(first_chunk, chunks, job, workspace),
            media_type="video/mp4",
            headers={"Content-Disposition": f'attachment; filename="{_attachment_filename()}"'},
        )
        handed_off = True
        return response

    except DownloadError:
        raise
    except ManifestFetchError as e:
        logger.error(f"Error: {e}")
        raise upstream_error(e.status_code, str(e))
    except Exception as e:
        logger.error(f"Error: {type(e).__name__}: {e}")
        raise InternalError(str(e) or type(e).__name__)
    finally:
        # Until the response owns them, the job and workspace are ours to clean
        if not handed_off:
            try:
                if job is not None and not job.finished:
                    await job.terminate()
            finally:
                if workspace is not None:
                    workspace.cleanup()
