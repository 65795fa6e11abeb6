"""
Scanner module listing the tracks of a local music directory.
"""

import logging
import os
from pathlib import Path
from typing import Iterator, List, Optional, Set

from soundalike.config import Config
from soundalike.cue import CueSheet, parse_cue
from soundalike.metadata import MetadataExtractor
from soundalike.models import TrackEntry


logger = logging.getLogger(__name__)


class Scanner:
    """Scanner for finding and inventorying audio files and CUE sheets.

    Paths in the listing are relative to the music root, with ``/``
    separators, the way a music player database reports them.
    """

    def __init__(self, config: Optional[Config] = None, music_root: Optional[str] = None):
        """Initialize scanner.

        Args:
            config: Configuration object.
            music_root: Directory to list. Defaults to ``library.music_root``.
        """
        self.config = config or Config()
        self.supported_formats = [
            ext.lower() for ext in self.config.get(
                "library.supported_formats", ["mp3", "flac", "ogg", "wav", "m4a", "cue"]
            )
        ]
        self.music_root = music_root or self.config.music_root
        self.metadata_extractor = MetadataExtractor(self.config)
        self._listing: Optional[List[TrackEntry]] = None

    def find_audio_files(self, root_dir: Optional[str] = None) -> Iterator[Path]:
        """Recursively find all supported files in directory.

        Args:
            root_dir: Root directory to search. Uses the music root if None.

        Yields:
            Path objects for each file found.
        """
        root = root_dir or self.music_root

        if not os.path.exists(root):
            logger.warning(f"Music directory does not exist: {root}")
            return

        logger.info(f"Scanning for audio files in: {root}")

        for dirpath, _, filenames in os.walk(root):
            for filename in filenames:
                ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
                if ext in self.supported_formats:
                    yield Path(dirpath) / filename

    def relative_path(self, file_path: os.PathLike) -> str:
        """Express ``file_path`` relative to the music root."""
        rel = os.path.relpath(os.fspath(file_path), self.music_root)
        return rel.replace(os.sep, "/")

    def absolute_path(self, relative: str) -> str:
        """Join a listing path back onto the music root."""
        return os.path.join(self.music_root, *relative.split("/"))

    def _cue_entries(self, cue_path: Path, sheet: CueSheet) -> List[TrackEntry]:
        mtimes = [os.stat(cue_path).st_mtime]
        for audio_file in sheet.audio_files:
            if os.path.exists(audio_file):
                mtimes.append(os.stat(audio_file).st_mtime)

        path = self.relative_path(cue_path)
        return [
            TrackEntry(
                path=path,
                sub_index=track.number,
                mtime=max(mtimes),
                title=track.title,
                artist=track.performer or sheet.performer,
                album=sheet.title,
                album_artist=sheet.performer,
                genre=sheet.genre,
                track_number=track.number,
                disc_number=sheet.disc_number,
            )
            for track in sheet.tracks
        ]

    def scan(self, root_dir: Optional[str] = None) -> List[TrackEntry]:
        """Scan directory and build the track listing.

        Audio files referenced by a CUE sheet are listed once per CUE track
        instead of as a single file.

        Args:
            root_dir: Root directory to scan. Uses the music root if None.

        Returns:
            Entries ordered by reference.
        """
        if root_dir:
            self.music_root = root_dir

        files = sorted(self.find_audio_files())
        entries: List[TrackEntry] = []
        covered: Set[str] = set()

        for cue_path in (f for f in files if f.suffix.lower() == ".cue"):
            try:
                sheet = parse_cue(str(cue_path))
                entries.extend(self._cue_entries(cue_path, sheet))
                covered.update(os.path.abspath(f) for f in sheet.audio_files)
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping CUE sheet {cue_path}: {e}")

        for audio_path in files:
            if audio_path.suffix.lower() == ".cue" or os.path.abspath(audio_path) in covered:
                continue
            try:
                stat = os.stat(audio_path)
                metadata = self.metadata_extractor.extract(str(audio_path))
                entries.append(TrackEntry(
                    path=self.relative_path(audio_path),
                    mtime=stat.st_mtime,
                    **metadata,
                ))
            except OSError as e:
                logger.error(f"Error scanning {audio_path}: {e}")

        entries.sort(key=lambda e: (e.path, e.sub_index or 0))
        logger.info(f"Scan complete. Found {len(entries)} tracks.")

        self._listing = entries
        return entries

    def list_tracks(self, offset: int = 0, limit: int = 1000) -> List[TrackEntry]:
        """Return one window of the listing.

        A window starting at offset 0 rescans the directory; later windows
        page through that same listing.
        """
        if offset == 0 or self._listing is None:
            self.scan()
        return self._listing[offset:offset + limit]

    def get_file_count(self, root_dir: Optional[str] = None) -> int:
        """Get count of supported files in directory.

        Args:
            root_dir: Root directory to count. Uses the music root if None.

        Returns:
            Number of files.
        """
        return sum(1 for _ in self.find_audio_files(root_dir))
