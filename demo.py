#!/usr/bin/env python
"""
Demo script that runs the full workflow: update -> ranked -> greedy path -> interactive
"""

import os
import sys
import tempfile
import logging

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_sample_audio_files(output_dir: str, num_files: int = 10):
    """Create sample audio files for demo.

    This creates simple test audio files, one directory per "album". In
    production, you would use your actual music library.
    """
    import numpy as np
    import soundfile as sf

    logger.info(f"Creating {num_files} sample audio files...")

    sample_rate = 22050
    duration = 5  # 5 seconds

    for i in range(num_files):
        album_dir = os.path.join(output_dir, f"album_{i % 3}")
        os.makedirs(album_dir, exist_ok=True)

        # Generate different "albums" with different frequency characteristics
        t = np.linspace(0, duration, int(sample_rate * duration))

        # Different base frequencies for different albums
        freq = 220 + (i % 3) * 110  # A3, A4, or E5
        audio = np.sin(2 * np.pi * freq * t) * 0.3

        # Add some variation
        audio += np.random.randn(len(audio)) * 0.05

        filename = os.path.join(album_dir, f"demo_track_{i:02d}.wav")
        sf.write(filename, audio, sample_rate)

    logger.info(f"Created {num_files} sample files in {output_dir}")
    return output_dir


def run_demo():
    """Run the full demo."""
    with tempfile.TemporaryDirectory() as tmpdir:
        music_dir = os.path.join(tmpdir, "music")
        data_dir = os.path.join(tmpdir, "data")

        create_sample_audio_files(music_dir, num_files=10)

        # Import after creating temp dir
        from soundalike.config import Config
        from soundalike.distance import DistanceMetric
        from soundalike.features import FeatureExtractor
        from soundalike.player import LocalPlayer
        from soundalike.playlist import PlaylistBuilder, describe
        from soundalike.session import InteractiveSession, ScriptedChoiceProvider
        from soundalike.storage import FeatureStore
        from soundalike.sync import LibrarySynchronizer

        # Create config
        config = Config()
        config.set("library.music_root", music_dir)
        config.set("library.queue_file", os.path.join(data_dir, "queue.m3u"))
        config.set("store.path", os.path.join(data_dir, "songs.db"))
        config.set("sync.workers", 2)

        player = LocalPlayer(config)

        with FeatureStore(config) as store:
            # Step 1: Update
            logger.info("=" * 50)
            logger.info("STEP 1: Analyzing the music directory")
            logger.info("=" * 50)
            sync = LibrarySynchronizer(store, player, FeatureExtractor(config), config)
            outcome = sync.update()
            logger.info(f"Sync outcome: {outcome.summary()}")

            builder = PlaylistBuilder.from_store(store, DistanceMetric.euclidean())
            seed = store.list_analyzed()[0].reference
            player.enqueue([seed])

            # Step 2: Ranked playlist
            logger.info("=" * 50)
            logger.info("STEP 2: Ranked playlist")
            logger.info("=" * 50)
            print(describe(builder.ranked(seed, 5)))

            # Step 3: Greedy path
            logger.info("=" * 50)
            logger.info("STEP 3: Greedy path")
            logger.info("=" * 50)
            print(describe(builder.greedy_path(seed, 5)))

            # Step 4: Interactive session with scripted choices
            logger.info("=" * 50)
            logger.info("STEP 4: Interactive session")
            logger.info("=" * 50)
            session = InteractiveSession(builder, choices=3)
            session.start(seed)
            result = session.run(ScriptedChoiceProvider([0, 1, 0]))
            print(describe(result))

            player.enqueue(result.references)
            logger.info(f"Queue: {player.queue()}")

            # Show statistics
            logger.info("=" * 50)
            logger.info("FEATURE STORE STATISTICS")
            logger.info("=" * 50)
            logger.info(f"  analyzed: {store.count()}")
            logger.info(f"  failed: {store.error_count()}")
            logger.info(f"  dimension: {store.dimension}")

        logger.info("\nDemo complete!")


if __name__ == "__main__":
    try:
        run_demo()
    except Exception as e:
        logger.error(f"Demo failed: {e}")
        sys.exit(1)
