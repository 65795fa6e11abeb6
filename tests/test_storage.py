"""
Tests for the storage module.
"""

import os
import sqlite3
import tempfile

import numpy as np
import pytest

from soundalike.config import Config
from soundalike.exceptions import NotFound, StoreError
from soundalike.models import TrackRecord
from soundalike.storage import FeatureStore, decode_vector, encode_vector


class TestFeatureStore:
    """Tests for FeatureStore class."""

    @pytest.fixture
    def temp_dir(self):
        """Create temporary directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, temp_dir):
        """Create store instance."""
        config = Config()
        config.set("store.path", os.path.join(temp_dir, "data", "songs.db"))
        store = FeatureStore(config)
        yield store
        store.close()

    @pytest.fixture
    def sample_records(self):
        """Sample records for testing."""
        return [
            TrackRecord(
                path="artist/track1.mp3",
                vector=np.array([0.1, 0.2, 0.3]),
                title="Test Track",
                artist="Test Artist",
                album="Test Album",
                track_number=1,
                mtime=100.0,
            ),
            TrackRecord(
                path="artist/album.cue",
                sub_index=2,
                vector=np.array([1.0, 2.0, 3.0]),
                title="Another Track",
                artist="Another Artist",
                mtime=200.0,
            ),
        ]

    def test_creates_database(self, store):
        """Test the database file and directory are created."""
        assert os.path.exists(store.db_path)
        assert store.count() == 0
        assert store.dimension is None

    def test_vector_encoding(self):
        """Test vectors survive the BLOB encoding."""
        vector = np.array([1.5, -2.25, 1e-300])
        np.testing.assert_array_equal(decode_vector(encode_vector(vector)), vector)

    def test_upsert_and_get(self, store, sample_records):
        """Test writing and reading records."""
        result = store.upsert_batch(sample_records)

        assert result.written == ["artist/track1.mp3", "artist/album.cue/CUE_TRACK002"]
        assert result.rejected == []
        assert store.count() == 2
        assert store.dimension == 3

        record = store.get("artist/track1.mp3")
        np.testing.assert_array_equal(record.vector, [0.1, 0.2, 0.3])
        assert record.title == "Test Track"
        assert record.track_number == 1
        assert record.mtime == 100.0
        assert record.sub_index is None

        cue = store.get_reference("artist/album.cue/CUE_TRACK002")
        assert cue.sub_index == 2
        assert cue.artist == "Another Artist"

    def test_upsert_replaces(self, store, sample_records):
        """Test writing a key again replaces the record."""
        store.upsert_batch(sample_records)
        store.upsert_batch([TrackRecord(path="artist/track1.mp3", vector=np.array([9.0, 9.0, 9.0]))])

        assert store.count() == 2
        np.testing.assert_array_equal(store.get("artist/track1.mp3").vector, [9.0, 9.0, 9.0])

    def test_get_missing(self, store):
        """Test missing tracks raise NotFound."""
        with pytest.raises(NotFound) as excinfo:
            store.get("nope.mp3")
        assert str(excinfo.value) == "Song 'nope.mp3' has not been analyzed."

    def test_rejects_wrong_dimension(self, store, sample_records):
        """Test a malformed record is rejected while its siblings are written."""
        store.upsert_batch(sample_records[:1])

        result = store.upsert_batch([
            TrackRecord(path="a.mp3", vector=np.array([1.0, 2.0])),
            TrackRecord(path="b.mp3", vector=np.array([1.0, 2.0, 3.0])),
        ])

        assert result.written == ["b.mp3"]
        assert len(result.rejected) == 1
        assert result.rejected[0][0].path == "a.mp3"
        assert "dimension mismatch" in result.rejected[0][1]
        with pytest.raises(NotFound):
            store.get("a.mp3")

    def test_first_record_sets_dimension(self, store):
        """Test an empty store takes the dimension of the first valid record."""
        result = store.upsert_batch([
            TrackRecord(path="a.mp3", vector=np.array([1.0, 2.0])),
            TrackRecord(path="b.mp3", vector=np.array([1.0, 2.0, 3.0])),
        ])

        assert result.written == ["a.mp3"]
        assert store.dimension == 2

    def test_new_version_sets_dimension(self, store, sample_records):
        """Test vectors of a new features version may change the dimension."""
        store.upsert_batch(sample_records)

        result = store.upsert_batch([
            TrackRecord(path="artist/track1.mp3", vector=np.array([1.0, 2.0, 3.0, 4.0]), features_version=2),
        ])

        assert result.written == ["artist/track1.mp3"]
        assert result.rejected == []
        assert store.dimension == 4
        assert [r.reference for r in store.list_analyzed()] == ["artist/track1.mp3"]

    def test_old_version_same_dimension_kept(self, store, sample_records):
        """Test stale vectors of the same size stay until they are replaced."""
        store.upsert_batch(sample_records)

        store.upsert_batch([
            TrackRecord(path="artist/track1.mp3", vector=np.array([3.0, 2.0, 1.0]), features_version=2),
        ])

        assert store.count() == 2
        assert store.get("artist/album.cue", 2).features_version == 1

    def test_rejects_non_finite_and_missing(self, store):
        """Test records without a usable vector are rejected."""
        result = store.upsert_batch([
            TrackRecord(path="nan.mp3", vector=np.array([np.nan, 1.0])),
            TrackRecord(path="none.mp3"),
            TrackRecord(path="ok.mp3", vector=np.array([1.0, 1.0])),
        ])

        assert result.written == ["ok.mp3"]
        assert [r.path for r, _ in result.rejected] == ["nan.mp3", "none.mp3"]

    def test_batch_is_atomic(self, store, sample_records, monkeypatch):
        """Test a failing batch leaves nothing behind."""
        store.upsert_batch(sample_records[:1])

        def failing_encode(vector):
            if vector[0] == 7.0:
                raise sqlite3.OperationalError("disk I/O error")
            return np.ascontiguousarray(vector, dtype="<f8").tobytes()

        monkeypatch.setattr("soundalike.storage.encode_vector", failing_encode)

        with pytest.raises(StoreError):
            store.upsert_batch([
                TrackRecord(path="x.mp3", vector=np.array([1.0, 1.0, 1.0])),
                TrackRecord(path="y.mp3", vector=np.array([7.0, 1.0, 1.0])),
            ])

        assert store.count() == 1
        with pytest.raises(NotFound):
            store.get("x.mp3")

    def test_record_error(self, store, sample_records):
        """Test errors are stored apart and drop the previous vector."""
        store.upsert_batch(sample_records)
        store.record_error("artist/track1.mp3", "cannot decode", mtime=300.0)

        assert store.count() == 1
        assert store.error_count() == 1

        record = store.get("artist/track1.mp3")
        assert record.error == "cannot decode"
        assert record.vector is None
        assert not record.is_analyzed
        assert record.mtime == 300.0

        assert [r.path for r in store.list_analyzed()] == ["artist/album.cue"]
        assert len(store.list_all()) == 2

    def test_success_clears_error(self, store):
        """Test a later successful write removes the error row."""
        store.record_error("a.mp3", "broken")
        store.upsert_batch([TrackRecord(path="a.mp3", vector=np.array([1.0]))])

        assert store.error_count() == 0
        assert store.get("a.mp3").is_analyzed

    def test_update_metadata(self, store, sample_records):
        """Test tags can be rewritten without touching vectors."""
        store.upsert_batch(sample_records)

        updated = store.update_metadata([
            TrackRecord(path="artist/track1.mp3", title="Renamed", album="New Album", mtime=100.0)
        ])

        assert updated == 1
        record = store.get("artist/track1.mp3")
        assert record.title == "Renamed"
        assert record.album == "New Album"
        np.testing.assert_array_equal(record.vector, [0.1, 0.2, 0.3])

    def test_remove(self, store, sample_records):
        """Test removing analyzed and errored tracks."""
        store.upsert_batch(sample_records)
        store.record_error("broken.mp3", "broken")

        removed = store.remove([
            ("artist/album.cue", 2),
            ("broken.mp3", None),
            ("unknown.mp3", None),
        ])

        assert removed == 2
        assert [r.path for r in store.list_all()] == ["artist/track1.mp3"]

    def test_clear(self, store, sample_records):
        """Test clearing the store."""
        store.upsert_batch(sample_records)
        store.record_error("broken.mp3", "broken")

        store.clear()

        assert store.count() == 0
        assert store.error_count() == 0

    def test_list_order(self, store):
        """Test listings are ordered by path then track number."""
        store.upsert_batch([
            TrackRecord(path="b.mp3", vector=np.array([1.0])),
            TrackRecord(path="a.cue", sub_index=2, vector=np.array([1.0])),
            TrackRecord(path="a.cue", sub_index=1, vector=np.array([1.0])),
        ])
        store.record_error("a.mp3", "broken")

        assert [r.reference for r in store.list_all()] == [
            "a.cue/CUE_TRACK001",
            "a.cue/CUE_TRACK002",
            "a.mp3",
            "b.mp3",
        ]

    def test_persistence(self, temp_dir, sample_records):
        """Test records survive reopening the store."""
        path = os.path.join(temp_dir, "songs.db")
        with FeatureStore(Config(), db_path=path) as store:
            store.upsert_batch(sample_records)

        with FeatureStore(Config(), db_path=path) as store:
            assert store.count() == 2

    def test_version_mismatch(self, temp_dir):
        """Test a database from another schema version is refused."""
        path = os.path.join(temp_dir, "songs.db")
        FeatureStore(Config(), db_path=path).close()

        conn = sqlite3.connect(path)
        conn.execute("UPDATE schema_version SET version = 99")
        conn.commit()
        conn.close()

        with pytest.raises(StoreError):
            FeatureStore(Config(), db_path=path)

    def test_unreachable_store(self, temp_dir):
        """Test an unusable path is a StoreError."""
        blocker = os.path.join(temp_dir, "file")
        with open(blocker, "w") as f:
            f.write("not a directory")

        with pytest.raises(StoreError):
            FeatureStore(Config(), db_path=os.path.join(blocker, "songs.db"))

    def test_to_dataframe(self, store, sample_records):
        """Test exporting the store as a DataFrame."""
        store.upsert_batch(sample_records)
        store.record_error("broken.mp3", "broken")

        df = store.to_dataframe()

        assert len(df) == 3
        assert "reference" in df.columns
        assert "vector" not in df.columns
        assert df.loc[df["reference"] == "broken.mp3", "error"].iloc[0] == "broken"

        df = store.to_dataframe(include_vectors=True)
        assert df.loc[df["reference"] == "artist/track1.mp3", "vector"].iloc[0] == [0.1, 0.2, 0.3]
