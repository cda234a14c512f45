"""Shared fixtures for the hls2mp4 tests."""

import os
import sys
from pathlib import Path

import pytest

from hls2mp4.config import settings

VOD_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:10
#EXT-X-MEDIA-SEQUENCE:0
#EXTINF:10.0,
seg0.ts
#EXTINF:10.0,
seg1.ts
#EXTINF:5.0,
seg2.ts
#EXT-X-ENDLIST
"""

MASTER_PLAYLIST = """#EXTM3U
#EXT-X-STREAM-INF:BANDWIDTH=1280000,RESOLUTION=1280x720
720p/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=640000,RESOLUTION=640x360
360p/index.m3u8
"""

EMPTY_PLAYLIST = """#EXTM3U
#EXT-X-TARGETDURATION:10
#EXT-X-ENDLIST
"""


def python_command(code: str, *args: str):
    """A child process running ``code`` with the current interpreter."""
    return [sys.executable, "-c", code, *args]


# Writes the concat list it is given to stdout, like an echoing ffmpeg
ECHO_LIST = "import sys; sys.stdout.write(open(sys.argv[1]).read())"


def leftover_files(root) -> list:
    root = Path(root)
    if not root.exists():
        return []
    return [p for p in root.rglob("*")]


@pytest.fixture(autouse=True)
def temp_root(tmp_path, monkeypatch):
    """Point the scratch directory at a per-test location."""
    root = tmp_path / "scratch"
    monkeypatch.setattr(settings, "temp_dir", str(root))
    return root


@pytest.fixture
def no_such_binary(tmp_path):
    return os.path.join(str(tmp_path), "definitely-not-ffmpeg")
