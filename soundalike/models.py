"""
Data models shared by the store, the synchronizer and the playlist builders.
"""

import dataclasses
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


# Bump when the analyzer output changes; stored records with an older
# version are reanalyzed on the next sync.
FEATURES_VERSION = 1

CUE_TRACK_PREFIX = "CUE_TRACK"

METADATA_FIELDS = (
    "title",
    "artist",
    "album",
    "album_artist",
    "genre",
    "track_number",
    "disc_number",
)

TrackKey = Tuple[str, Optional[int]]

_CUE_REFERENCE_RE = re.compile(rf"^(?P<path>.+)/{CUE_TRACK_PREFIX}(?P<index>\d+)$")


def make_reference(path: str, sub_index: Optional[int] = None) -> str:
    """Build the string reference of a track.

    Args:
        path: Path of the file, relative to the music root.
        sub_index: Track number inside a multi-track container, if any.

    Returns:
        The path itself, or ``<path>/CUE_TRACK<NNN>`` for container tracks.
    """
    if sub_index is None:
        return path
    return f"{path}/{CUE_TRACK_PREFIX}{sub_index:03d}"


def parse_reference(reference: str) -> TrackKey:
    """Split a track reference back into ``(path, sub_index)``."""
    match = _CUE_REFERENCE_RE.match(reference)
    if match:
        return match.group("path"), int(match.group("index"))
    return reference, None


@dataclass(frozen=True)
class TrackEntry:
    """A track as listed by the player."""

    path: str
    sub_index: Optional[int] = None
    mtime: Optional[float] = None
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    album_artist: Optional[str] = None
    genre: Optional[str] = None
    track_number: Optional[int] = None
    disc_number: Optional[int] = None

    @property
    def key(self) -> TrackKey:
        return (self.path, self.sub_index)

    @property
    def reference(self) -> str:
        return make_reference(self.path, self.sub_index)

    def metadata(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in METADATA_FIELDS}


@dataclass(frozen=True, eq=False)
class TrackRecord:
    """A track as stored in the feature store.

    A record carrying an ``error`` has no vector and never takes part in
    playlist building.
    """

    path: str
    sub_index: Optional[int] = None
    vector: Optional[np.ndarray] = field(default=None, repr=False)
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    album_artist: Optional[str] = None
    genre: Optional[str] = None
    track_number: Optional[int] = None
    disc_number: Optional[int] = None
    features_version: int = FEATURES_VERSION
    mtime: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def from_entry(
        cls,
        entry: TrackEntry,
        vector: Optional[np.ndarray],
        features_version: int = FEATURES_VERSION,
    ) -> "TrackRecord":
        """Create a record from a listing entry and its analysis."""
        return cls(
            path=entry.path,
            sub_index=entry.sub_index,
            vector=None if vector is None else np.asarray(vector, dtype=np.float64),
            features_version=features_version,
            mtime=entry.mtime,
            **entry.metadata(),
        )

    def with_metadata(self, entry: TrackEntry) -> "TrackRecord":
        """Return a copy carrying the tags and mtime of ``entry``."""
        return dataclasses.replace(self, mtime=entry.mtime, **entry.metadata())

    @property
    def key(self) -> TrackKey:
        return (self.path, self.sub_index)

    @property
    def reference(self) -> str:
        return make_reference(self.path, self.sub_index)

    @property
    def is_analyzed(self) -> bool:
        return self.vector is not None and self.error is None

    @property
    def album_key(self) -> Optional[Tuple[str, str]]:
        """Album title and album artist (falling back to artist)."""
        if not self.album:
            return None
        return (self.album, self.album_artist or self.artist or "")

    @property
    def album_position(self) -> Tuple[int, int, str]:
        return (self.disc_number or 0, self.track_number or 0, self.reference)

    @property
    def sort_key(self) -> Tuple[str, int]:
        return (self.path, self.sub_index or 0)

    def metadata(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in METADATA_FIELDS}


@dataclass
class SyncOutcome:
    """Summary of a synchronization pass, as track references."""

    inserted: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    errors: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.inserted or self.updated or self.removed)

    def counts(self) -> Dict[str, int]:
        return {
            "inserted": len(self.inserted),
            "updated": len(self.updated),
            "unchanged": len(self.unchanged),
            "removed": len(self.removed),
            "errors": len(self.errors),
        }

    def summary(self) -> str:
        counts = self.counts()
        return ", ".join(f"{value} {name}" for name, value in counts.items())
