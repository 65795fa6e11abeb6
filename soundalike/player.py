"""
Player-control collaborators.

The synchronizer only needs ``list_tracks``; playlist commands also read the
current track and queue, and push results back with ``enqueue``.
"""

import enum
import logging
import os
import tempfile
from typing import List, Optional, Protocol, Sequence

from soundalike.config import Config
from soundalike.exceptions import PlayerError
from soundalike.models import TrackEntry
from soundalike.scanner import Scanner


logger = logging.getLogger(__name__)


class EnqueueMode(enum.Enum):
    """How a playlist is pushed to the player queue."""

    # Keep the current track, drop everything around it, then append.
    REPLACE = "replace"
    # Insert right after the current track, keep the rest of the queue.
    APPEND_AFTER_CURRENT = "append-after-current"


class PlayerClient(Protocol):
    """Interface of the audio player soundalike drives."""

    music_root: str

    def list_tracks(self, offset: int, limit: int) -> List[TrackEntry]:
        ...

    def current_track(self) -> Optional[str]:
        ...

    def queue(self) -> List[str]:
        ...

    def enqueue(self, references: Sequence[str], mode: EnqueueMode = EnqueueMode.REPLACE) -> None:
        ...


class LocalPlayer:
    """Player backed by a music directory and an M3U queue file.

    The first entry of the queue file is the track currently playing.
    """

    def __init__(self, config: Optional[Config] = None, queue_file: Optional[str] = None):
        """Initialize the local player.

        Args:
            config: Configuration object.
            queue_file: M3U file holding the queue. Defaults to
                ``library.queue_file``.
        """
        self.config = config or Config()
        self.scanner = Scanner(self.config)
        self.queue_file = queue_file or self.config.queue_file

    @property
    def music_root(self) -> str:
        return self.scanner.music_root

    def list_tracks(self, offset: int = 0, limit: int = 1000) -> List[TrackEntry]:
        return self.scanner.list_tracks(offset=offset, limit=limit)

    def queue(self) -> List[str]:
        """Read the queue, one track reference per entry."""
        if not self.queue_file or not os.path.exists(self.queue_file):
            return []
        try:
            with open(self.queue_file, "r", encoding="utf-8") as f:
                lines = [line.strip() for line in f]
        except OSError as e:
            raise PlayerError(
                f"Could not read queue file {self.queue_file}: {e}",
                details={"path": self.queue_file},
            ) from e
        return [line for line in lines if line and not line.startswith("#")]

    def current_track(self) -> Optional[str]:
        queue = self.queue()
        return queue[0] if queue else None

    def _write_queue(self, references: Sequence[str]) -> None:
        directory = os.path.dirname(os.path.abspath(self.queue_file))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".m3u")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write("#EXTM3U\n")
                for reference in references:
                    f.write(f"{reference}\n")
            os.replace(tmp_path, self.queue_file)
        except OSError as e:
            raise PlayerError(
                f"Could not write queue file {self.queue_file}: {e}",
                details={"path": self.queue_file},
            ) from e

    def enqueue(self, references: Sequence[str], mode: EnqueueMode = EnqueueMode.REPLACE) -> None:
        """Push an ordered list of track references after the current track.

        Args:
            references: Tracks to queue, in order.
            mode: Whether to replace what follows the current track or to
                insert ahead of it.
        """
        queue = self.queue()
        current = queue[:1]
        references = [r for r in references if r not in current]

        if mode is EnqueueMode.REPLACE:
            new_queue = current + references
        elif mode is EnqueueMode.APPEND_AFTER_CURRENT:
            new_queue = current + references + queue[1:]
        else:
            raise PlayerError(f"Unknown enqueue mode: {mode}")

        self._write_queue(new_queue)
        logger.info(f"Queued {len(references)} tracks ({mode.value})")
