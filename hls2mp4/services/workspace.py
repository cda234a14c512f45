"""Request-scoped scratch directories.

Every request gets its own directory under ``settings.temp_dir`` and only
ever deletes that directory, so concurrent requests cannot see or remove
each other's files.
"""

import logging
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Optional

from hls2mp4.config import settings

logger = logging.getLogger(__name__)


class Workspace:
    """Temporary artifacts owned by a single download request."""

    def __init__(self, directory: Path, stamp: int):
        self.directory = directory
        self.stamp = stamp
        self.concat_list_path = directory / f"segments_{stamp}.txt"
        # Nominal output path; output is streamed, so nothing is written here
        self.output_path = directory / f"lecture_{stamp}.mp4"
        self._removed = False

    @classmethod
    def create(cls, root: Optional[str] = None) -> "Workspace":
        root = root or settings.temp_dir
        os.makedirs(root, exist_ok=True)
        stamp = int(time.time() * 1000)
        directory = Path(tempfile.mkdtemp(prefix=f"req_{stamp}_", dir=root))
        logger.debug(f"Created workspace {directory}")
        return cls(directory, stamp)

    @property
    def removed(self) -> bool:
        return self._removed

    def cleanup(self):
        """Delete the workspace. Safe to call more than once."""
        if self._removed:
            return
        self._removed = True
        try:
            shutil.rmtree(self.directory)
            logger.debug(f"Removed workspace {self.directory}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove workspace {self.directory}: {e}")
