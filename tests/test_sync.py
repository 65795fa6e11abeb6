"""
Tests for the library synchronizer.
"""

import os
import tempfile

import numpy as np
import pytest

from soundalike.config import Config
from soundalike.exceptions import AnalysisError
from soundalike.models import TrackEntry
from soundalike.storage import FeatureStore
from soundalike.sync import LibrarySynchronizer


class FakePlayer:
    """Player serving a fixed listing in windows."""

    music_root = "/music"

    def __init__(self, entries):
        self.entries = list(entries)
        self.requests = []

    def list_tracks(self, offset=0, limit=1000):
        self.requests.append((offset, limit))
        return self.entries[offset:offset + limit]


class FakeAnalyzer:
    """Analyzer deriving a vector from the file name."""

    features_version = 1

    def __init__(self, failing=(), crashing=()):
        self.failing = set(failing)
        self.crashing = set(crashing)
        self.calls = []

    def __call__(self, path, sub_index=None):
        name = os.path.basename(path)
        self.calls.append((path, sub_index))
        if name in self.crashing:
            raise RuntimeError(f"analyzer crashed on {name}")
        if name in self.failing:
            raise AnalysisError(f"cannot decode {name}")
        return np.array([float(len(name)), float(sub_index or 0), 1.0])


def entry(path, mtime=1.0, sub_index=None, **tags):
    return TrackEntry(path=path, sub_index=sub_index, mtime=mtime, **tags)


class TestLibrarySynchronizer:
    """Tests for LibrarySynchronizer."""

    @pytest.fixture
    def temp_dir(self):
        """Create temporary directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def config(self):
        """Small batches and windows, no progress bar."""
        config = Config()
        config.set("sync.batch_size", 2)
        config.set("sync.window_size", 2)
        config.set("sync.workers", 2)
        config.set("sync.show_progress", False)
        return config

    @pytest.fixture
    def store(self, temp_dir, config):
        """Create store instance."""
        store = FeatureStore(config, db_path=os.path.join(temp_dir, "songs.db"))
        yield store
        store.close()

    @pytest.fixture
    def listing(self):
        """Sample listing with a container track."""
        return [
            entry("a/one.mp3", title="One", artist="A"),
            entry("a/two.mp3", title="Two", artist="A"),
            entry("b/album.cue", sub_index=1, title="Three"),
            entry("b/album.cue", sub_index=2, title="Four"),
            entry("c/five.flac"),
        ]

    def make_sync(self, store, config, listing, analyzer=None):
        return LibrarySynchronizer(store, FakePlayer(listing), analyzer or FakeAnalyzer(), config)

    def test_initial_update(self, store, config, listing):
        """Test every listed track is analyzed and inserted."""
        analyzer = FakeAnalyzer()
        outcome = self.make_sync(store, config, listing, analyzer).update()

        assert sorted(outcome.inserted) == sorted(e.reference for e in listing)
        assert outcome.updated == []
        assert outcome.removed == []
        assert store.count() == 5

        record = store.get("a/one.mp3")
        assert record.title == "One"
        assert record.mtime == 1.0
        assert ("/music/a/one.mp3", None) in analyzer.calls
        assert ("/music/b/album.cue", 2) in analyzer.calls

    def test_listing_fetched_in_windows(self, store, config, listing):
        """Test the listing is paged until a short window."""
        player = FakePlayer(listing)
        LibrarySynchronizer(store, player, FakeAnalyzer(), config).update()
        assert player.requests == [(0, 2), (2, 2), (4, 2)]

    def test_update_is_idempotent(self, store, config, listing):
        """Test a second update with the same listing changes nothing."""
        self.make_sync(store, config, listing).update()

        analyzer = FakeAnalyzer()
        outcome = self.make_sync(store, config, listing, analyzer).update()

        assert not outcome.has_changes
        assert len(outcome.unchanged) == 5
        assert analyzer.calls == []

    def test_changed_mtime_reanalyzed(self, store, config, listing):
        """Test a modified file is analyzed again."""
        self.make_sync(store, config, listing).update()

        listing[0] = entry("a/one.mp3", mtime=2.0, title="One", artist="A")
        analyzer = FakeAnalyzer()
        outcome = self.make_sync(store, config, listing, analyzer).update()

        assert outcome.updated == ["a/one.mp3"]
        assert analyzer.calls == [("/music/a/one.mp3", None)]
        assert store.get("a/one.mp3").mtime == 2.0

    def test_features_version_change_reanalyzes(self, store, config, listing):
        """Test records from another analyzer version are analyzed again."""
        self.make_sync(store, config, listing).update()

        sync = LibrarySynchronizer(
            store, FakePlayer(listing), FakeAnalyzer(), config, features_version=2
        )
        outcome = sync.update()

        assert len(outcome.updated) == 5
        assert store.get("a/one.mp3").features_version == 2

    def test_new_version_with_new_dimension(self, store, config, listing):
        """Test an analyzer upgrade that changes the vector size replaces every vector."""
        self.make_sync(store, config, listing).update()

        class WiderAnalyzer(FakeAnalyzer):
            features_version = 2

            def __call__(self, path, sub_index=None):
                return np.append(super().__call__(path, sub_index), 7.0)

        outcome = self.make_sync(store, config, listing, WiderAnalyzer()).update()

        assert outcome.errors == []
        assert len(outcome.updated) == 5
        assert store.count() == 5
        assert store.error_count() == 0
        assert store.dimension == 4
        assert store.get("b/album.cue", 2).features_version == 2

        analyzer = WiderAnalyzer()
        again = self.make_sync(store, config, listing, analyzer).update()
        assert len(again.unchanged) == 5
        assert analyzer.calls == []

    def test_removed_tracks(self, store, config, listing):
        """Test tracks missing from the listing are removed."""
        self.make_sync(store, config, listing).update()

        outcome = self.make_sync(store, config, listing[:3]).update()

        assert sorted(outcome.removed) == ["b/album.cue/CUE_TRACK002", "c/five.flac"]
        assert store.count() == 3

    def test_metadata_change_reanalyzes_by_default(self, store, config, listing):
        """Test a retagged track is analyzed again by default."""
        self.make_sync(store, config, listing).update()

        listing[1] = entry("a/two.mp3", title="Deux", artist="A")
        analyzer = FakeAnalyzer()
        outcome = self.make_sync(store, config, listing, analyzer).update()

        assert outcome.updated == ["a/two.mp3"]
        assert len(analyzer.calls) == 1
        assert store.get("a/two.mp3").title == "Deux"

    def test_metadata_change_without_reanalysis(self, store, config, listing):
        """Test retagged tracks only get their tags rewritten when configured."""
        self.make_sync(store, config, listing).update()
        before = store.get("a/two.mp3").vector.copy()

        config.set("sync.reanalyze_on_metadata_change", False)
        listing[1] = entry("a/two.mp3", title="Deux", artist="A")
        analyzer = FakeAnalyzer()
        outcome = self.make_sync(store, config, listing, analyzer).update()

        assert outcome.updated == ["a/two.mp3"]
        assert analyzer.calls == []
        record = store.get("a/two.mp3")
        assert record.title == "Deux"
        np.testing.assert_array_equal(record.vector, before)

    def test_analysis_errors_recorded(self, store, config, listing):
        """Test failing tracks are stored as errors and the rest succeed."""
        outcome = self.make_sync(store, config, listing, FakeAnalyzer(failing={"two.mp3"})).update()

        assert outcome.errors == [("a/two.mp3", "cannot decode two.mp3")]
        assert len(outcome.inserted) == 4
        assert store.error_count() == 1
        assert store.get("a/two.mp3").error == "cannot decode two.mp3"

    def test_errors_not_retried_by_default(self, store, config, listing):
        """Test unchanged failed tracks are left alone."""
        self.make_sync(store, config, listing, FakeAnalyzer(failing={"two.mp3"})).update()

        analyzer = FakeAnalyzer()
        outcome = self.make_sync(store, config, listing, analyzer).update()

        assert analyzer.calls == []
        assert "a/two.mp3" in outcome.unchanged
        assert store.error_count() == 1

    def test_errors_retried_when_configured(self, store, config, listing):
        """Test failed tracks are analyzed again with retry_errors."""
        self.make_sync(store, config, listing, FakeAnalyzer(failing={"two.mp3"})).update()

        config.set("sync.retry_errors", True)
        outcome = self.make_sync(store, config, listing).update()

        assert outcome.updated == ["a/two.mp3"]
        assert store.error_count() == 0
        assert store.get("a/two.mp3").is_analyzed

    def test_rejected_vector_recorded_as_error(self, store, config, listing):
        """Test a vector of the wrong size is stored as an error."""

        class MixedAnalyzer(FakeAnalyzer):
            def __call__(self, path, sub_index=None):
                if path.endswith("five.flac"):
                    return np.array([1.0, 2.0])
                return super().__call__(path, sub_index)

        self.make_sync(store, config, listing).update()

        listing[4] = entry("c/five.flac", mtime=2.0)
        outcome = self.make_sync(store, config, listing, MixedAnalyzer()).update()

        assert [ref for ref, _ in outcome.errors] == ["c/five.flac"]
        assert "dimension mismatch" in outcome.errors[0][1]
        assert store.count() == 4
        assert store.get("c/five.flac").error is not None

    def test_crash_removes_nothing(self, store, config, listing):
        """Test an unexpected analyzer failure aborts before any removal."""
        self.make_sync(store, config, listing).update()

        changed = [entry("a/one.mp3", mtime=5.0, title="One", artist="A")]
        sync = self.make_sync(store, config, changed, FakeAnalyzer(crashing={"one.mp3"}))

        with pytest.raises(RuntimeError):
            sync.update()

        assert store.count() == 5

    def test_duplicate_listing_entries(self, store, config, listing):
        """Test a track listed twice is analyzed once."""
        analyzer = FakeAnalyzer()
        outcome = self.make_sync(store, config, listing + listing[:1], analyzer).update()

        assert len(outcome.inserted) == 5
        assert len(analyzer.calls) == 5

    def test_rescan(self, store, config, listing):
        """Test rescan clears the store and analyzes everything again."""
        self.make_sync(store, config, listing).update()
        store.record_error("gone.mp3", "broken")

        analyzer = FakeAnalyzer()
        outcome = self.make_sync(store, config, listing, analyzer).rescan()

        assert len(outcome.inserted) == 5
        assert outcome.removed == []
        assert len(analyzer.calls) == 5
        assert store.error_count() == 0

    def test_plan(self, store, config, listing):
        """Test the classification of a listing."""
        self.make_sync(store, config, listing).update()
        sync = self.make_sync(store, config, [])

        new_listing = [
            listing[0],
            entry("a/two.mp3", mtime=9.0, title="Two", artist="A"),
            entry("d/six.ogg"),
        ]
        plan = sync.plan(new_listing, store.list_all())

        assert [e.reference for e in plan.unchanged] == ["a/one.mp3"]
        assert [e.reference for e in plan.changed] == ["a/two.mp3"]
        assert [e.reference for e in plan.new] == ["d/six.ogg"]
        assert sorted(r.reference for r in plan.removed) == [
            "b/album.cue/CUE_TRACK001",
            "b/album.cue/CUE_TRACK002",
            "c/five.flac",
        ]
