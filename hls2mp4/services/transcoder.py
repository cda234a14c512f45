"""
Transcode runner: concatenate HLS segments into a fragmented MP4 with ffmpeg.

ffmpeg reads the concat list, fetches every segment itself, copies the
codec streams and writes a fragmented MP4 (``frag_keyframe+empty_moov``)
to stdout, so bytes can be forwarded before the whole file exists.

A ``TranscodeJob`` moves through STARTING -> RUNNING -> SUCCEEDED | FAILED.
Subscribers receive a ``start`` event, any number of ``progress`` events and
exactly one terminal event (``end`` or ``error``). The output is consumed
through the ``stream()`` async iterator.
"""

import asyncio
import logging
import re
import shlex
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

import anyio

from hls2mp4.config import settings

logger = logging.getLogger(__name__)

# ffmpeg -progress output is "key=value", one per line
_PROGRESS_LINE = re.compile(r"^([a-z0-9_]+)=(.*)$")


class TranscodeState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class TranscodeEvent:
    """A lifecycle notification from a transcode job."""
    kind: str  # "start" | "progress" | "error" | "end"
    state: TranscodeState
    command_line: Optional[str] = None
    progress: Dict[str, str] = field(default_factory=dict)
    percent: Optional[float] = None
    message: Optional[str] = None


class TranscodeError(Exception):
    """The transcoder could not be started or did not finish cleanly."""


Listener = Callable[[TranscodeEvent], None]


def build_transcode_command(concat_list_path: Path) -> List[str]:
    """ffmpeg invocation that turns a concat list into fragmented MP4 on stdout."""
    return [
        settings.ffmpeg_binary,
        "-hide_banner",
        "-nostdin",
        "-loglevel", settings.ffmpeg_log_level,
        "-nostats",
        "-progress", "pipe:2",
        "-f", "concat",
        "-safe", "0",
        "-protocol_whitelist", settings.protocol_whitelist,
        "-i", str(concat_list_path),
        "-c", "copy",
        "-movflags", "frag_keyframe+empty_moov",
        "-f", "mp4",
        "pipe:1",
    ]


class TranscodeJob:
    """One run of the external transcoder."""

    def __init__(
        self,
        command: Sequence[str],
        total_duration: Optional[float] = None,
        timeout: Optional[float] = None,
        chunk_size: Optional[int] = None,
    ):
        self.command = list(command)
        self.total_duration = total_duration
        self.timeout = settings.transcode_timeout_sec if timeout is None else timeout
        self.chunk_size = chunk_size or settings.chunk_size

        self.state = TranscodeState.STARTING
        self.error: Optional[str] = None
        self.returncode: Optional[int] = None

        self._process: Optional[asyncio.subprocess.Process] = None
        self._listeners: List[Listener] = []
        self._stderr_tail: deque = deque(maxlen=20)
        self._stderr_task: Optional[asyncio.Task] = None
        self._progress: Dict[str, str] = {}
        self._deadline: Optional[float] = None

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)

    @property
    def finished(self) -> bool:
        return self.state in (TranscodeState.SUCCEEDED, TranscodeState.FAILED)

    def subscribe(self, listener: Listener):
        self._listeners.append(listener)

    def _emit(self, kind: str, **kwargs):
        event = TranscodeEvent(kind=kind, state=self.state, **kwargs)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Transcode listener failed on '{kind}' event")

    def _fail(self, message: str):
        if self.finished:
            return
        self.state = TranscodeState.FAILED
        self.error = message
        self._emit("error", message=message)

    def _succeed(self):
        if self.finished:
            return
        self.state = TranscodeState.SUCCEEDED
        self._emit("end")

    # -- lifecycle ---------------------------------------------------------

    async def start(self):
        """Spawn the process. Raises TranscodeError if it cannot be started."""
        if self.state is not TranscodeState.STARTING:
            raise RuntimeError(f"Transcode job already {self.state.value}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._fail(f"Could not start transcoder '{self.command[0]}': {e}")
            raise TranscodeError(self.error) from e

        self._deadline = asyncio.get_running_loop().time() + self.timeout
        self.state = TranscodeState.RUNNING
        self._stderr_task = asyncio.ensure_future(self._drain_stderr())
        self._emit("start", command_line=self.command_line)

    async def stream(self) -> AsyncIterator[bytes]:
        """
        Yield stdout chunks as ffmpeg produces them.

        After the last chunk the exit status decides the terminal state; a
        non-zero exit or a deadline overrun raises TranscodeError. If the
        consumer stops early the process is killed.
        """
        if self.state is TranscodeState.STARTING:
            await self.start()
        if self._process is None:
            raise TranscodeError(self.error or "Transcoder is not running")

        try:
            while True:
                chunk = await self._before_deadline(self._process.stdout.read(self.chunk_size))
                if not chunk:
                    break
                yield chunk

            self.returncode = await self._before_deadline(self._process.wait())
            if self._stderr_task is not None:
                await self._before_deadline(self._stderr_task)

            if self.returncode == 0:
                self._succeed()
            else:
                self._fail(self._failure_message(self.returncode))
                raise TranscodeError(self.error)
        except asyncio.TimeoutError:
            await self._kill()
            self._fail(f"Transcoder timed out after {self.timeout:g}s")
            raise TranscodeError(self.error)
        finally:
            if not self.finished:
                await self.terminate()

    async def terminate(self):
        """Mark the job failed if it was still open, then kill the process."""
        self._fail("Transcoding aborted before completion")
        await self._kill()

    async def _kill(self):
        # Shielded: a cancelled request must still reap the child
        with anyio.CancelScope(shield=True):
            process = self._process
            if process is not None and process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
            if process is not None:
                self.returncode = process.returncode
            task = self._stderr_task
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def _before_deadline(self, awaitable):
        remaining = self._deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise asyncio.TimeoutError()
        return await asyncio.wait_for(awaitable, remaining)

    # -- stderr ------------------------------------------------------------

    async def _drain_stderr(self):
        async for raw in self._process.stderr:
            line = raw.decode("utf-8", "replace").strip()
            if not line:
                continue
            match = _PROGRESS_LINE.match(line)
            if match is None:
                self._stderr_tail.append(line)
                continue
            key, value = match.groups()
            self._progress[key] = value
            if key == "progress":
                self._report_progress()

    def _report_progress(self):
        progress, self._progress = self._progress, {}
        self._emit("progress", progress=progress, percent=self._percent(progress))

    def _percent(self, progress: Dict[str, str]) -> Optional[float]:
        if not self.total_duration:
            return None
        try:
            out_time = int(progress["out_time_us"]) / 1_000_000
        except (KeyError, ValueError):
            return None
        return min(100.0, max(0.0, out_time / self.total_duration * 100))

    def _failure_message(self, returncode: int) -> str:
        tail = "\n".join(list(self._stderr_tail)[-5:])
        if tail:
            return f"Transcoder exited with code {returncode}: {tail}"
        return f"Transcoder exited with code {returncode}"
