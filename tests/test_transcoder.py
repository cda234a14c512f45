"""Tests for the transcode job state machine.

A short Python child process stands in for ffmpeg so the real subprocess
plumbing is exercised.
"""

import asyncio
from pathlib import Path

import anyio
import pytest

from hls2mp4.config import settings
from hls2mp4.services.transcoder import (
    TranscodeError,
    TranscodeJob,
    TranscodeState,
    build_transcode_command,
)

from conftest import python_command


def _collect(job):
    async def run():
        return [chunk async for chunk in job.stream()]
    return asyncio.run(run())


def _recorder(job):
    events = []
    job.subscribe(events.append)
    return events


def _terminal(events):
    return [e for e in events if e.kind in ("end", "error")]


class TestCommand:
    """ffmpeg invocation."""

    def test_concat_copy_fragmented_mp4_to_stdout(self, monkeypatch):
        monkeypatch.setattr(settings, "ffmpeg_binary", "/opt/ffmpeg/bin/ffmpeg")
        cmd = build_transcode_command(Path("/tmp/x/segments_1.txt"))

        assert cmd[0] == "/opt/ffmpeg/bin/ffmpeg"
        joined = " ".join(cmd)
        assert "-f concat -safe 0" in joined
        assert "-i /tmp/x/segments_1.txt" in joined
        assert "-c copy" in joined
        assert "-movflags frag_keyframe+empty_moov" in joined
        assert cmd[-3:] == ["-f", "mp4", "pipe:1"]
        assert cmd[cmd.index("-protocol_whitelist") + 1] == settings.protocol_whitelist


class TestTranscodeJob:
    """Lifecycle, events and output forwarding."""

    def test_success_streams_all_output(self):
        job = TranscodeJob(
            python_command("import sys; sys.stdout.buffer.write(b'x' * 100000)"),
            chunk_size=4096,
            timeout=30,
        )
        events = _recorder(job)

        chunks = _collect(job)

        assert b"".join(chunks) == b"x" * 100000
        assert len(chunks) > 1
        assert job.state is TranscodeState.SUCCEEDED
        assert job.returncode == 0
        assert events[0].kind == "start"
        assert events[0].command_line == job.command_line
        assert [e.kind for e in _terminal(events)] == ["end"]

    def test_progress_events_carry_percent(self):
        code = (
            "import sys\n"
            "sys.stderr.write('out_time_us=5000000\\nspeed=2x\\nprogress=continue\\n')\n"
            "sys.stderr.write('out_time_us=10000000\\nprogress=end\\n')\n"
            "sys.stdout.buffer.write(b'data')\n"
        )
        job = TranscodeJob(python_command(code), total_duration=10.0, timeout=30)
        events = _recorder(job)

        _collect(job)

        progress = [e for e in events if e.kind == "progress"]
        assert [e.percent for e in progress] == [50.0, 100.0]
        assert progress[0].progress["speed"] == "2x"
        assert job.state is TranscodeState.SUCCEEDED

    def test_progress_without_duration_has_no_percent(self):
        code = "import sys; sys.stderr.write('out_time_us=1000\\nprogress=end\\n')"
        job = TranscodeJob(python_command(code), timeout=30)
        events = _recorder(job)

        _collect(job)

        assert [e.percent for e in events if e.kind == "progress"] == [None]

    def test_nonzero_exit_fails_with_stderr_tail(self):
        code = "import sys; sys.stderr.write('Impossible to open seg0.ts\\n'); sys.exit(3)"
        job = TranscodeJob(python_command(code), timeout=30)
        events = _recorder(job)

        with pytest.raises(TranscodeError, match="Impossible to open seg0.ts"):
            _collect(job)

        assert job.state is TranscodeState.FAILED
        assert job.returncode == 3
        terminal = _terminal(events)
        assert [e.kind for e in terminal] == ["error"]
        assert "code 3" in terminal[0].message

    def test_missing_binary_fails_on_start(self, no_such_binary):
        job = TranscodeJob([no_such_binary, "-i", "x"], timeout=30)
        events = _recorder(job)

        with pytest.raises(TranscodeError, match="Could not start transcoder"):
            asyncio.run(job.start())

        assert job.state is TranscodeState.FAILED
        assert [e.kind for e in events] == ["error"]

    def test_start_twice_is_rejected(self):
        job = TranscodeJob(python_command("pass"), timeout=30)

        async def run():
            await job.start()
            try:
                with pytest.raises(RuntimeError):
                    await job.start()
            finally:
                await job.terminate()

        asyncio.run(run())

    def test_deadline_kills_process(self):
        job = TranscodeJob(python_command("import time; time.sleep(30)"), timeout=0.5)
        events = _recorder(job)

        with pytest.raises(TranscodeError, match="timed out"):
            _collect(job)

        assert job.state is TranscodeState.FAILED
        assert job.returncode is not None
        assert [e.kind for e in _terminal(events)] == ["error"]

    def test_consumer_closing_early_kills_process(self):
        code = "import sys, time; sys.stdout.buffer.write(b'head'); sys.stdout.flush(); time.sleep(30)"
        job = TranscodeJob(python_command(code), timeout=30)
        events = _recorder(job)

        async def run():
            stream = job.stream()
            first = await stream.__anext__()
            await stream.aclose()
            return first

        assert asyncio.run(run()) == b"head"
        assert job.state is TranscodeState.FAILED
        assert job.returncode is not None
        assert [e.kind for e in _terminal(events)] == ["error"]

    def test_listener_errors_do_not_break_the_job(self):
        job = TranscodeJob(python_command("print('ok')"), timeout=30)

        def broken(event):
            raise ValueError("listener bug")

        job.subscribe(broken)
        events = _recorder(job)

        assert b"".join(_collect(job)).strip() == b"ok"
        assert [e.kind for e in _terminal(events)] == ["end"]

    def test_cancelled_while_reading_still_reaps_process(self):
        code = "import sys\nwhile True:\n    sys.stdout.buffer.write(b'y' * 4096)\n    sys.stdout.flush()\n"
        job = TranscodeJob(python_command(code), timeout=30)
        events = _recorder(job)

        async def consume():
            async for _ in job.stream():
                pass

        async def run():
            async with anyio.create_task_group() as tg:
                tg.start_soon(consume)
                await anyio.sleep(0.3)
                tg.cancel_scope.cancel()

        asyncio.run(run())

        assert job.state is TranscodeState.FAILED
        assert job.returncode is not None
        assert [e.kind for e in _terminal(events)] == ["error"]
