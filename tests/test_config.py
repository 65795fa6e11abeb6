"""
Tests for the configuration module.
"""

import os
import tempfile

import pytest
import yaml

from soundalike.config import Config
from soundalike.exceptions import ConfigError


class TestConfig:
    """Tests for Config class."""

    @pytest.fixture
    def temp_dir(self):
        """Create temporary directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    def test_defaults(self):
        """Test built-in defaults."""
        config = Config()

        assert config.get("playlist.metric") == "euclidean"
        assert config.get("playlist.deduplicate") is True
        assert config.get("sync.batch_size") == 50
        assert config.store_path.endswith("songs.db")

    def test_get_set(self):
        """Test dotted keys."""
        config = Config()
        config.set("sync.workers", 3)
        config.set("extra.nested.value", "x")

        assert config.get("sync.workers") == 3
        assert config.get("extra.nested.value") == "x"
        assert config.get("missing.key", "fallback") == "fallback"

    def test_load_merges_defaults(self, temp_dir):
        """Test a file only overrides the keys it sets."""
        path = os.path.join(temp_dir, "config.yaml")
        with open(path, "w") as f:
            yaml.safe_dump({"playlist": {"metric": "cosine"}}, f)

        config = Config(path)

        assert config.get("playlist.metric") == "cosine"
        assert config.get("playlist.length") == 20

    def test_relative_paths(self, temp_dir):
        """Test relative paths are resolved against the config file."""
        path = os.path.join(temp_dir, "config.yaml")
        with open(path, "w") as f:
            yaml.safe_dump({"store": {"path": "db/songs.db"}, "playlist": {"metric_matrix": "m.npy"}}, f)

        config = Config(path)

        assert config.store_path == os.path.join(temp_dir, "db", "songs.db")
        assert config.get("playlist.metric_matrix") == os.path.join(temp_dir, "m.npy")

    def test_missing_file(self, temp_dir):
        """Test a missing config file raises ConfigError."""
        with pytest.raises(ConfigError):
            Config(os.path.join(temp_dir, "nope.yaml"))

    def test_invalid_yaml(self, temp_dir):
        """Test malformed YAML raises ConfigError."""
        path = os.path.join(temp_dir, "config.yaml")
        with open(path, "w") as f:
            f.write("playlist: [unclosed\n")

        with pytest.raises(ConfigError):
            Config(path)

    def test_non_mapping(self, temp_dir):
        """Test a config that is not a mapping raises ConfigError."""
        path = os.path.join(temp_dir, "config.yaml")
        with open(path, "w") as f:
            f.write("- just\n- a list\n")

        with pytest.raises(ConfigError):
            Config(path)

    def test_save_round_trip(self, temp_dir):
        """Test saving and loading."""
        config = Config()
        config.set("playlist.length", 7)
        path = os.path.join(temp_dir, "out", "config.yaml")

        config.save(path)

        assert Config(path).get("playlist.length") == 7
