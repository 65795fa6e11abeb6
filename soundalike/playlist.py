"""
Playlist building over an immutable snapshot of the feature store.

Every strategy works on the same candidate pool: analyzed tracks minus the
seeds and an exclusion set, optionally collapsed by normalized
``(title, artist)``. Orderings are deterministic: ties on distance are
broken by path, then by CUE track number.
"""

import enum
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, List, Optional, Sequence, Set, Tuple, Union

import numpy as np

from soundalike.distance import DistanceMetric, distances_to
from soundalike.exceptions import DimensionMismatch, EmptySelection, NotFound
from soundalike.metadata import dedup_key
from soundalike.models import TrackRecord
from soundalike.storage import FeatureStore


logger = logging.getLogger(__name__)


SeedLike = Union[str, TrackRecord]


class Strategy(enum.Enum):
    """Closed set of playlist generation strategies."""

    RANKED = "ranked"
    GREEDY_PATH = "greedy-path"
    ALBUM = "album"
    FROM_PLAYLIST = "from-playlist"
    INTERACTIVE = "interactive"


@dataclass(frozen=True, eq=False)
class Playlist:
    """An ordered playlist and how it was built.

    Attributes:
        tracks: Selected records, in play order.
        distances: Distance of each track to what it was chosen against.
        seeds: References of the seed tracks.
        strategy: Strategy that produced the playlist.
        metric: Metric used for every distance.
    """

    tracks: Tuple[TrackRecord, ...]
    distances: Tuple[float, ...]
    seeds: Tuple[str, ...]
    strategy: Strategy
    metric: DistanceMetric

    @property
    def references(self) -> List[str]:
        return [track.reference for track in self.tracks]

    def __len__(self) -> int:
        return len(self.tracks)

    def __iter__(self):
        return iter(self.tracks)


class LibrarySnapshot:
    """Read-only view of the analyzed tracks, taken once per operation."""

    def __init__(self, records: Iterable[TrackRecord]):
        self.records: Tuple[TrackRecord, ...] = tuple(r for r in records if r.is_analyzed)

        if self.records:
            dimension = self.records[0].vector.shape[0]
            for record in self.records:
                if record.vector.shape[0] != dimension:
                    raise DimensionMismatch(dimension, record.vector.shape[0], path=record.reference)
            matrix = np.vstack([record.vector for record in self.records]).astype(np.float64)
        else:
            dimension = None
            matrix = np.empty((0, 0), dtype=np.float64)

        matrix.setflags(write=False)
        self.matrix = matrix
        self.dimension: Optional[int] = dimension
        self._index: Dict[str, int] = {r.reference: i for i, r in enumerate(self.records)}

    @classmethod
    def from_store(cls, store: FeatureStore) -> "LibrarySnapshot":
        """Snapshot every analyzed track of ``store``, in listing order."""
        snapshot = cls(store.list_analyzed())
        logger.debug(f"Snapshot of {len(snapshot)} analyzed songs")
        return snapshot

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, reference: str) -> bool:
        return reference in self._index

    def index_of(self, reference: str) -> int:
        try:
            return self._index[reference]
        except KeyError:
            raise NotFound(
                f"Song '{reference}' has not been analyzed.",
                details={"reference": reference},
            ) from None

    def get(self, reference: str) -> TrackRecord:
        """Get an analyzed record by reference.

        Raises:
            NotFound: If the track is not in the snapshot.
        """
        return self.records[self.index_of(reference)]

    def vector(self, reference: str) -> np.ndarray:
        return self.matrix[self.index_of(reference)]


def deduplicate(
    records: Iterable[TrackRecord],
    reserved: Iterable[TrackRecord] = (),
) -> List[TrackRecord]:
    """Keep the first record of each normalized ``(title, artist)``.

    Args:
        records: Records in listing order.
        reserved: Records whose keys are taken up front, so that duplicates
            of them are dropped from ``records``.

    Returns:
        The kept records, in their original order.
    """
    seen: Set[Tuple[str, str]] = set()
    for record in reserved:
        key = dedup_key(record.title, record.artist)
        if key is not None:
            seen.add(key)

    kept = []
    for record in records:
        key = dedup_key(record.title, record.artist)
        if key is None:
            kept.append(record)
        elif key not in seen:
            seen.add(key)
            kept.append(record)
        else:
            logger.debug(f"Dropping duplicate song '{record.reference}'")
    return kept


class PlaylistBuilder:
    """Builds playlists from a library snapshot under one fixed metric."""

    def __init__(self, snapshot: LibrarySnapshot, metric: DistanceMetric, dedup: bool = True):
        """Initialize the builder.

        Args:
            snapshot: Analyzed tracks to pick from.
            metric: Metric used for the whole build.
            dedup: Whether to collapse songs sharing a title and artist.

        Raises:
            DimensionMismatch: If the metric matrix does not fit the snapshot.
        """
        if snapshot.dimension is not None:
            metric.validate(snapshot.dimension)
        self.snapshot = snapshot
        self.metric = metric
        self.dedup = dedup

    @classmethod
    def from_store(cls, store: FeatureStore, metric: DistanceMetric, dedup: bool = True) -> "PlaylistBuilder":
        return cls(LibrarySnapshot.from_store(store), metric, dedup=dedup)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _resolve(self, seed: SeedLike) -> TrackRecord:
        reference = seed.reference if isinstance(seed, TrackRecord) else seed
        return self.snapshot.get(reference)

    def candidates(
        self,
        seeds: Sequence[TrackRecord],
        exclude: Iterable[str] = (),
        reserved: Optional[Sequence[TrackRecord]] = None,
    ) -> List[int]:
        """Snapshot positions of the candidate pool, in listing order.

        Args:
            seeds: Seed records, never part of the pool.
            exclude: References kept out of the pool.
            reserved: Records whose songs may not appear again in the pool.
                Defaults to the seeds and the excluded records.

        Returns:
            Positions into the snapshot.
        """
        excluded = set(exclude) | {seed.reference for seed in seeds}
        records = [r for r in self.snapshot.records if r.reference not in excluded]
        if self.dedup:
            if reserved is None:
                reserved = list(seeds) + [
                    self.snapshot.get(ref) for ref in sorted(excluded) if ref in self.snapshot
                ]
            records = deduplicate(records, reserved=reserved)
        return [self.snapshot.index_of(r.reference) for r in records]

    def _origin_distances(self, seeds: Sequence[np.ndarray], pool: Sequence[int]) -> np.ndarray:
        """Distance from the seed set to each pool entry (minimum over seeds)."""
        vectors = self.snapshot.matrix[list(pool)]
        rows = [distances_to(seed, vectors, self.metric) for seed in seeds]
        return np.min(np.vstack(rows), axis=0)

    def _select(
        self,
        vectors: np.ndarray,
        tie_keys: Sequence[Hashable],
        origin_distances: np.ndarray,
        length: int,
        order: Strategy,
    ) -> List[Tuple[int, float]]:
        """Pick up to ``length`` rows of ``vectors``.

        Args:
            vectors: Candidate vectors, one per row.
            tie_keys: Sort key of each row, used when distances are equal.
            origin_distances: Distance of each row to the origin.
            length: Number of rows to pick.
            order: ``RANKED`` sorts by distance to the origin;
                ``GREEDY_PATH`` chains each pick to the previous one.

        Returns:
            ``(row, distance)`` pairs in play order.
        """
        count = vectors.shape[0]
        if order is Strategy.RANKED:
            rows = sorted(range(count), key=lambda i: (origin_distances[i], tie_keys[i]))
            return [(i, float(origin_distances[i])) for i in rows[:length]]

        elif order is Strategy.GREEDY_PATH:
            remaining = list(range(count))
            current = origin_distances
            picked: List[Tuple[int, float]] = []
            while remaining and len(picked) < length:
                best = min(range(len(remaining)), key=lambda j: (current[j], tie_keys[remaining[j]]))
                row = remaining.pop(best)
                picked.append((row, float(current[best])))
                if remaining:
                    current = distances_to(vectors[row], vectors[remaining], self.metric)
            return picked

        raise ValueError(f"Unsupported order: {order.value}")

    def _empty(self, strategy: Strategy, seeds: Sequence[TrackRecord]) -> Playlist:
        error = EmptySelection(
            "No candidate songs left after exclusions and deduplication.",
            details={"strategy": strategy.value, "seeds": [s.reference for s in seeds]},
        )
        logger.warning(str(error))
        return Playlist((), (), tuple(s.reference for s in seeds), strategy, self.metric)

    def _from_pool(
        self,
        strategy: Strategy,
        seeds: Sequence[TrackRecord],
        origins: Sequence[np.ndarray],
        pool: List[int],
        length: int,
        order: Strategy,
    ) -> Playlist:
        if not pool:
            return self._empty(strategy, seeds)

        records = self.snapshot.records
        vectors = self.snapshot.matrix[pool]
        tie_keys = [records[i].sort_key for i in pool]
        picked = self._select(vectors, tie_keys, self._origin_distances(origins, pool), length, order)
        return Playlist(
            tracks=tuple(records[pool[row]] for row, _ in picked),
            distances=tuple(dist for _, dist in picked),
            seeds=tuple(s.reference for s in seeds),
            strategy=strategy,
            metric=self.metric,
        )

    @staticmethod
    def _check_length(length: int) -> None:
        if length < 1:
            raise ValueError(f"Playlist length must be at least 1, got {length}")

    # =========================================================================
    # Strategies
    # =========================================================================

    def ranked(self, seed: SeedLike, length: int, exclude: Iterable[str] = ()) -> Playlist:
        """The ``length`` songs closest to ``seed``, closest first.

        Raises:
            NotFound: If the seed has not been analyzed.
        """
        self._check_length(length)
        seed = self._resolve(seed)
        pool = self.candidates([seed], exclude)
        return self._from_pool(Strategy.RANKED, [seed], [seed.vector], pool, length, Strategy.RANKED)

    def greedy_path(self, seed: SeedLike, length: int, exclude: Iterable[str] = ()) -> Playlist:
        """Chain songs, each one the closest to the previous pick.

        Raises:
            NotFound: If the seed has not been analyzed.
        """
        self._check_length(length)
        seed = self._resolve(seed)
        pool = self.candidates([seed], exclude)
        return self._from_pool(
            Strategy.GREEDY_PATH, [seed], [seed.vector], pool, length, Strategy.GREEDY_PATH
        )

    def album_groups(self, records: Iterable[TrackRecord]) -> "OrderedDict[Tuple[str, str], List[TrackRecord]]":
        """Group records by album key, members ordered by disc and track."""
        groups: "OrderedDict[Tuple[str, str], List[TrackRecord]]" = OrderedDict()
        for record in records:
            key = record.album_key
            if key is not None:
                groups.setdefault(key, []).append(record)
        for members in groups.values():
            members.sort(key=lambda r: r.album_position)
        return groups

    def centroid(self, records: Sequence[TrackRecord]) -> np.ndarray:
        """Coordinate-wise mean of the records' vectors."""
        return np.mean(np.vstack([r.vector for r in records]), axis=0)

    def album(
        self,
        seed: SeedLike,
        length: int,
        order: Strategy = Strategy.RANKED,
        include_seed_album: bool = False,
        exclude: Iterable[str] = (),
    ) -> Playlist:
        """Whole albums close to the seed's album.

        Albums are compared through their centroid; the origin is the
        centroid of the seed's album, or the seed itself when it has no
        album tag.

        Args:
            seed: Seed track.
            length: Number of albums.
            order: ``RANKED`` or ``GREEDY_PATH`` over album centroids.
            include_seed_album: Start with the seed album's tracks that
                follow the seed.
            exclude: References kept out of the playlist.

        Raises:
            NotFound: If the seed has not been analyzed.
        """
        self._check_length(length)
        seed = self._resolve(seed)
        exclude = set(exclude)

        seed_album_key = seed.album_key
        if seed_album_key is None:
            logger.warning(f"Song '{seed.reference}' has no album tag, using it alone as the origin")
            seed_album = [seed]
        else:
            seed_album = self.album_groups(self.snapshot.records)[seed_album_key]
        origin = self.centroid(seed_album)

        tracks: List[TrackRecord] = []
        distances: List[float] = []
        if include_seed_album and seed_album_key is not None:
            for record in seed_album:
                if record.album_position > seed.album_position and record.reference not in exclude:
                    tracks.append(record)
                    distances.append(0.0)

        # Seed album tracks that are not played keep no (title, artist).
        reserved = [seed] + tracks
        reserved += [self.snapshot.get(ref) for ref in sorted(exclude) if ref in self.snapshot]
        skipped = exclude | {record.reference for record in seed_album}
        pool = [self.snapshot.records[i] for i in self.candidates([seed], skipped, reserved=reserved)]
        groups = self.album_groups(pool)

        if not groups and not tracks:
            return self._empty(Strategy.ALBUM, [seed])

        if groups:
            keys = list(groups)
            centroids = np.vstack([self.centroid(groups[key]) for key in keys])
            origin_distances = distances_to(origin, centroids, self.metric)
            for row, dist in self._select(centroids, keys, origin_distances, length, order):
                for record in groups[keys[row]]:
                    tracks.append(record)
                    distances.append(dist)
        else:
            logger.warning(f"No other album to pick from for '{seed.reference}'")

        return Playlist(
            tracks=tuple(tracks),
            distances=tuple(distances),
            seeds=(seed.reference,),
            strategy=Strategy.ALBUM,
            metric=self.metric,
        )

    def from_playlist(
        self,
        references: Sequence[str],
        length: int,
        order: Strategy = Strategy.RANKED,
        multi_seed: bool = True,
    ) -> Playlist:
        """A second playlist, disjoint from an existing one.

        Args:
            references: The existing playlist.
            length: Number of songs.
            order: ``RANKED`` or ``GREEDY_PATH``.
            multi_seed: Measure distances to the closest song of the whole
                playlist instead of to its last song.

        Raises:
            NotFound: If no song of the playlist has been analyzed.
        """
        self._check_length(length)
        members = []
        for reference in references:
            if reference in self.snapshot:
                members.append(self.snapshot.get(reference))
            else:
                logger.warning(f"Skipping '{reference}': it has not been analyzed")
        if not members:
            raise NotFound(
                "None of the songs in the playlist have been analyzed.",
                details={"references": list(references)},
            )

        seeds = members if multi_seed else members[-1:]
        pool = self.candidates(members, exclude=references)
        return self._from_pool(
            Strategy.FROM_PLAYLIST, seeds, [s.vector for s in seeds], pool, length, order
        )

    def build(
        self,
        strategy: Strategy,
        length: int,
        seed: Optional[SeedLike] = None,
        references: Optional[Sequence[str]] = None,
        order: Strategy = Strategy.RANKED,
        include_seed_album: bool = False,
        multi_seed: bool = True,
    ) -> Playlist:
        """Build a playlist with the given strategy.

        ``seed`` is required by every strategy except ``FROM_PLAYLIST``,
        which takes ``references`` instead.
        """
        if strategy is Strategy.FROM_PLAYLIST:
            if references is None:
                raise ValueError("from-playlist needs the references of an existing playlist")
            return self.from_playlist(references, length, order=order, multi_seed=multi_seed)

        if seed is None:
            raise ValueError(f"{strategy.value} needs a seed song")

        if strategy is Strategy.RANKED:
            return self.ranked(seed, length)
        elif strategy is Strategy.GREEDY_PATH:
            return self.greedy_path(seed, length)
        elif strategy is Strategy.ALBUM:
            return self.album(seed, length, order=order, include_seed_album=include_seed_album)
        elif strategy is Strategy.INTERACTIVE:
            raise ValueError("Interactive playlists are built with InteractiveSession")

        raise ValueError(f"Unknown strategy: {strategy}")


def describe(playlist: Playlist) -> str:
    """One line per track: distance and reference."""
    lines = [f"# {playlist.strategy.value} from {', '.join(playlist.seeds)} ({playlist.metric})"]
    for track, dist in zip(playlist.tracks, playlist.distances):
        lines.append(f"{dist:10.4f}  {track.reference}")
    return "\n".join(lines)
