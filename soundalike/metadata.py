"""
Metadata extraction module for audio files.
"""

import logging
import re
import unicodedata
from typing import Any, Dict, Optional, Tuple

from soundalike.config import Config


logger = logging.getLogger(__name__)


TAG_MAPPINGS = {
    'title': ['title', 'TIT2', '\xa9nam'],
    'artist': ['artist', 'TPE1', '\xa9ART'],
    'album': ['album', 'TALB', '\xa9alb'],
    'album_artist': ['albumartist', 'album artist', 'TPE2', 'aART'],
    'genre': ['genre', 'TCON', '\xa9gen'],
    'track_number': ['tracknumber', 'TRCK', 'trkn'],
    'disc_number': ['discnumber', 'TPOS', 'disk'],
}

NUMERIC_FIELDS = ('track_number', 'disc_number')


def normalize_string(s: Any) -> Optional[str]:
    """Normalize string for consistency.

    Args:
        s: String to normalize.

    Returns:
        Normalized string or None.
    """
    if s is None:
        return None

    s = unicodedata.normalize('NFKC', str(s))
    s = re.sub(r'\s+', ' ', s.strip())

    return s if s else None


def dedup_key(title: Optional[str], artist: Optional[str]) -> Optional[Tuple[str, str]]:
    """Key under which two tracks count as the same song.

    Case, accents and spacing are ignored. Tracks without a title have no
    key and are never considered duplicates.
    """
    title = normalize_string(title)
    if title is None:
        return None

    def fold(value: Optional[str]) -> str:
        value = unicodedata.normalize('NFKD', value or '')
        value = ''.join(c for c in value if not unicodedata.combining(c))
        return value.casefold()

    return fold(title), fold(normalize_string(artist))


def parse_number(value: Any) -> Optional[int]:
    """Parse a track or disc number such as ``3``, ``"03"`` or ``"3/12"``."""
    if value is None:
        return None
    if isinstance(value, tuple):
        value = value[0] if value else None
        if value is None:
            return None
    match = re.match(r'\s*(\d+)', str(value))
    if match:
        return int(match.group(1))
    return None


class MetadataExtractor:
    """Extractor for audio file tags using mutagen."""

    def __init__(self, config: Optional[Config] = None):
        """Initialize metadata extractor.

        Args:
            config: Configuration object.
        """
        self.config = config or Config()

        self._mutagen_file = None
        self._init_extractor()

    def _init_extractor(self) -> None:
        """Initialize the mutagen backend."""
        try:
            from mutagen import File as MutagenFile
            self._mutagen_file = MutagenFile
            logger.debug("Using mutagen for metadata extraction")
        except ImportError:
            logger.warning("mutagen not available. Tracks will be listed without tags.")

    def extract(self, file_path: str) -> Dict[str, Any]:
        """Extract tags from an audio file.

        Args:
            file_path: Path to audio file.

        Returns:
            Dictionary with every key of TAG_MAPPINGS; missing tags are None.
        """
        metadata: Dict[str, Any] = {key: None for key in TAG_MAPPINGS}

        if self._mutagen_file is None:
            return metadata

        try:
            metadata.update(self._extract_mutagen(file_path))
        except Exception as e:
            logger.error(f"Error extracting metadata from {file_path}: {e}")

        for key in TAG_MAPPINGS:
            if key in NUMERIC_FIELDS:
                metadata[key] = parse_number(metadata[key])
            else:
                metadata[key] = normalize_string(metadata[key])

        return metadata

    def _extract_mutagen(self, file_path: str) -> Dict[str, Any]:
        """Extract raw tag values using mutagen.

        Args:
            file_path: Path to audio file.

        Returns:
            Dictionary of the tags that were found.
        """
        metadata: Dict[str, Any] = {}

        audio = self._mutagen_file(file_path)
        if audio is None or not audio.tags:
            return metadata

        for key, tags in TAG_MAPPINGS.items():
            for tag in tags:
                if tag not in audio.tags:
                    continue
                value = audio.tags[tag]
                if hasattr(value, 'text'):
                    value = value.text[0] if value.text else None
                elif isinstance(value, list):
                    value = value[0] if value else None

                if value is not None and not isinstance(value, tuple):
                    value = str(value)

                if value:
                    metadata[key] = value
                    break

        return metadata
