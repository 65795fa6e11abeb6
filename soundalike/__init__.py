"""
soundalike - Sounds-alike playlists from audio feature vectors.

This package provides tools for:
- Keeping a feature store in step with a music library
- Measuring distances between songs under several metrics
- Building playlists of similar songs, albums or queues
- Picking songs interactively, one step at a time
"""

__version__ = "0.1.0"
__author__ = "soundalike developers"
__license__ = "MIT"

from soundalike.config import Config
from soundalike.distance import DistanceMetric, MetricKind, distance, distances_to
from soundalike.models import SyncOutcome, TrackEntry, TrackRecord
from soundalike.player import EnqueueMode, LocalPlayer
from soundalike.playlist import LibrarySnapshot, Playlist, PlaylistBuilder, Strategy
from soundalike.session import InteractiveSession, ScriptedChoiceProvider
from soundalike.storage import FeatureStore
from soundalike.sync import LibrarySynchronizer

__all__ = [
    "Config",
    "DistanceMetric",
    "MetricKind",
    "distance",
    "distances_to",
    "TrackEntry",
    "TrackRecord",
    "SyncOutcome",
    "EnqueueMode",
    "LocalPlayer",
    "LibrarySnapshot",
    "Playlist",
    "PlaylistBuilder",
    "Strategy",
    "InteractiveSession",
    "ScriptedChoiceProvider",
    "FeatureStore",
    "LibrarySynchronizer",
]
