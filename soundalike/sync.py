"""
Library synchronizer: reconciles the player listing with the feature store.

New and changed tracks are analyzed on a thread pool and committed in
bounded batches as results come in. Tracks that vanished from the listing
are removed only once every batch is committed, so an interrupted sync
never deletes anything it has not replaced.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np
from tqdm import tqdm

from soundalike.config import Config
from soundalike.exceptions import AnalysisError
from soundalike.models import FEATURES_VERSION, SyncOutcome, TrackEntry, TrackKey, TrackRecord
from soundalike.player import PlayerClient
from soundalike.storage import FeatureStore


logger = logging.getLogger(__name__)


Analyzer = Callable[[str, Optional[int]], np.ndarray]


@dataclass
class SyncPlan:
    """Classification of a listing against the stored records."""

    new: List[TrackEntry] = field(default_factory=list)
    changed: List[TrackEntry] = field(default_factory=list)
    metadata_only: List[Tuple[TrackRecord, TrackEntry]] = field(default_factory=list)
    unchanged: List[TrackEntry] = field(default_factory=list)
    removed: List[TrackRecord] = field(default_factory=list)

    @property
    def to_analyze(self) -> List[TrackEntry]:
        return self.new + self.changed

    def __str__(self) -> str:
        return (
            f"{len(self.new)} new, {len(self.changed)} changed, "
            f"{len(self.metadata_only)} retagged, {len(self.unchanged)} unchanged, "
            f"{len(self.removed)} removed"
        )


class LibrarySynchronizer:
    """Keeps the feature store in step with the player's track listing."""

    def __init__(
        self,
        store: FeatureStore,
        player: PlayerClient,
        analyzer: Analyzer,
        config: Optional[Config] = None,
        features_version: Optional[int] = None,
    ):
        """Initialize the synchronizer.

        Args:
            store: Feature store to update.
            player: Player whose listing is the source of truth.
            analyzer: Callable turning ``(absolute_path, sub_index)`` into a
                feature vector, raising ``AnalysisError`` on failure.
            config: Configuration object.
            features_version: Version tag of the analyzer output. Defaults to
                the analyzer's ``features_version`` attribute, if any.
        """
        self.config = config or Config()
        self.store = store
        self.player = player
        self.analyzer = analyzer

        if features_version is None:
            features_version = getattr(analyzer, "features_version", FEATURES_VERSION)
        self.features_version = features_version

        self.batch_size = max(1, int(self.config.get("sync.batch_size", 50)))
        self.workers = max(1, int(self.config.get("sync.workers", os.cpu_count() or 1)))
        self.window_size = max(1, int(self.config.get("sync.window_size", 1000)))
        self.reanalyze_on_metadata_change = self.config.get("sync.reanalyze_on_metadata_change", True)
        self.retry_errors = self.config.get("sync.retry_errors", False)
        self.show_progress = self.config.get("sync.show_progress", True)

    def fetch_listing(self) -> List[TrackEntry]:
        """Read the full player listing, one window at a time."""
        listing: List[TrackEntry] = []
        offset = 0
        while True:
            window = list(self.player.list_tracks(offset, self.window_size))
            listing.extend(window)
            logger.debug(f"Fetched {len(window)} tracks at offset {offset}")
            if len(window) < self.window_size:
                break
            offset += len(window)
        return listing

    def _is_stale(self, record: TrackRecord, entry: TrackEntry) -> bool:
        return record.features_version != self.features_version or record.mtime != entry.mtime

    def plan(self, listing: Iterable[TrackEntry], stored: Iterable[TrackRecord]) -> SyncPlan:
        """Classify every listed track against the stored records.

        Args:
            listing: Tracks reported by the player.
            stored: Every stored record, analyzed or errored.

        Returns:
            The plan; ``removed`` holds stored records absent from the listing.
        """
        stored_by_key: Dict[TrackKey, TrackRecord] = {r.key: r for r in stored}
        seen: Set[TrackKey] = set()
        plan = SyncPlan()

        for entry in listing:
            if entry.key in seen:
                logger.debug(f"Ignoring duplicate listing entry '{entry.reference}'")
                continue
            seen.add(entry.key)

            record = stored_by_key.get(entry.key)
            if record is None:
                plan.new.append(entry)
            elif record.error is not None:
                if self.retry_errors or self._is_stale(record, entry):
                    plan.changed.append(entry)
                else:
                    plan.unchanged.append(entry)
            elif self._is_stale(record, entry):
                plan.changed.append(entry)
            elif record.metadata() != entry.metadata():
                if self.reanalyze_on_metadata_change:
                    plan.changed.append(entry)
                else:
                    plan.metadata_only.append((record, entry))
            else:
                plan.unchanged.append(entry)

        plan.removed = [record for key, record in stored_by_key.items() if key not in seen]
        return plan

    def _analyze_one(self, entry: TrackEntry) -> np.ndarray:
        path = os.path.join(self.player.music_root, *entry.path.split("/"))
        return self.analyzer(path, entry.sub_index)

    def _record_failure(self, entry: TrackEntry, reason: str, outcome: SyncOutcome) -> None:
        self.store.record_error(
            entry.path,
            reason,
            sub_index=entry.sub_index,
            mtime=entry.mtime,
            features_version=self.features_version,
        )
        outcome.errors.append((entry.reference, reason))

    def _commit(
        self,
        batch: List[Tuple[TrackRecord, TrackEntry]],
        new_refs: Set[str],
        outcome: SyncOutcome,
    ) -> None:
        result = self.store.upsert_batch(record for record, _ in batch)
        for reference in result.written:
            if reference in new_refs:
                outcome.inserted.append(reference)
            else:
                outcome.updated.append(reference)

        entries = {record.reference: entry for record, entry in batch}
        for record, reason in result.rejected:
            self._record_failure(entries[record.reference], reason, outcome)

    def _analyze_and_store(self, plan: SyncPlan, outcome: SyncOutcome) -> None:
        entries = plan.to_analyze
        if not entries:
            return

        new_refs = {entry.reference for entry in plan.new}
        logger.info(f"Analyzing {len(entries)} new or changed songs with {self.workers} workers")

        executor = ThreadPoolExecutor(max_workers=self.workers)
        batch: List[Tuple[TrackRecord, TrackEntry]] = []
        try:
            futures = {executor.submit(self._analyze_one, entry): entry for entry in entries}
            progress = tqdm(
                as_completed(futures),
                total=len(futures),
                desc="Analyzing songs",
                unit="song",
                disable=not self.show_progress,
            )
            for future in progress:
                entry = futures[future]
                try:
                    vector = future.result()
                except AnalysisError as e:
                    self._record_failure(entry, str(e), outcome)
                    continue

                record = TrackRecord.from_entry(entry, vector, self.features_version)
                batch.append((record, entry))
                if len(batch) >= self.batch_size:
                    self._commit(batch, new_refs, outcome)
                    batch = []

            if batch:
                self._commit(batch, new_refs, outcome)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def _sync(self, plan: SyncPlan) -> SyncOutcome:
        outcome = SyncOutcome()
        outcome.unchanged = [entry.reference for entry in plan.unchanged]

        if plan.metadata_only:
            self.store.update_metadata(record.with_metadata(entry) for record, entry in plan.metadata_only)
            outcome.updated.extend(entry.reference for _, entry in plan.metadata_only)

        self._analyze_and_store(plan, outcome)

        if plan.removed:
            self.store.remove(record.key for record in plan.removed)
            outcome.removed = [record.reference for record in plan.removed]

        logger.info(f"Sync complete: {outcome.summary()}")
        if outcome.errors:
            logger.warning(f"{len(outcome.errors)} songs could not be analyzed")
        return outcome

    def update(self) -> SyncOutcome:
        """Analyze new and changed tracks and drop the ones that disappeared."""
        listing = self.fetch_listing()
        plan = self.plan(listing, self.store.list_all())
        logger.info(f"Sync plan: {plan}")
        return self._sync(plan)

    def rescan(self) -> SyncOutcome:
        """Clear the store, then analyze the whole listing again."""
        listing = self.fetch_listing()
        self.store.clear()
        plan = self.plan(listing, [])
        logger.info(f"Full rescan of {len(plan.new)} songs")
        return self._sync(plan)
