"""
Feature extraction module for audio files using librosa.

``FeatureExtractor`` is the default analyzer handed to the synchronizer:
calling it with a path (and optionally a CUE track number) returns a fixed
length feature vector or raises ``AnalysisError``.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from soundalike.config import Config
from soundalike.cue import parse_cue
from soundalike.exceptions import AnalysisError
from soundalike.models import FEATURES_VERSION


logger = logging.getLogger(__name__)


class FeatureExtractor:
    """Extractor for audio features using librosa."""

    def __init__(self, config: Optional[Config] = None):
        """Initialize feature extractor.

        Args:
            config: Configuration object.
        """
        self.config = config or Config()

        # Audio settings
        self.sample_rate = self.config.get("analyzer.sample_rate", 22050)
        self.mono = self.config.get("analyzer.mono", True)
        self.duration_limit = self.config.get("analyzer.duration_limit", None)

        # Feature settings
        self.n_mfcc = self.config.get("analyzer.n_mfcc", 20)

        # n_mfcc changes the vector layout.
        self.features_version = FEATURES_VERSION * 1000 + int(self.n_mfcc)

        # Try to import librosa
        self._librosa = None
        self._init_librosa()

    def _init_librosa(self) -> None:
        """Initialize librosa."""
        try:
            import librosa
            self._librosa = librosa
            logger.debug("Librosa loaded successfully")
        except ImportError:
            logger.error("Librosa not available. Feature extraction will fail.")

    def __call__(self, file_path: str, sub_index: Optional[int] = None) -> np.ndarray:
        return self.analyze(file_path, sub_index)

    def _resolve_segment(
        self, file_path: str, sub_index: Optional[int]
    ) -> Tuple[str, float, Optional[float]]:
        """Map a (possibly CUE) track to an audio file, offset and duration."""
        if sub_index is None or not file_path.lower().endswith(".cue"):
            return file_path, 0.0, self.duration_limit

        try:
            sheet = parse_cue(file_path)
        except (OSError, ValueError) as e:
            raise AnalysisError(
                f"Could not read CUE sheet: {e}",
                details={"path": file_path, "sub_index": sub_index},
            ) from e

        track = sheet.track(sub_index)
        if track is None:
            raise AnalysisError(
                f"CUE sheet has no track {sub_index}",
                details={"path": file_path, "sub_index": sub_index},
            )

        duration = track.duration
        if self.duration_limit is not None:
            duration = self.duration_limit if duration is None else min(duration, self.duration_limit)
        return track.audio_file, track.start, duration

    def load_audio(
        self,
        file_path: str,
        offset: float = 0.0,
        duration: Optional[float] = None,
    ) -> Tuple[np.ndarray, int]:
        """Load audio file.

        Args:
            file_path: Path to audio file.
            offset: Start reading after this many seconds.
            duration: Only load up to this much audio, in seconds.

        Returns:
            Tuple of (audio data, sample rate).
        """
        if self._librosa is None:
            raise AnalysisError("Librosa not available", details={"path": file_path})

        y, sr = self._librosa.load(
            file_path,
            sr=self.sample_rate,
            mono=self.mono,
            offset=offset,
            duration=duration,
        )
        return y, sr

    def extract_features(
        self,
        file_path: str,
        offset: float = 0.0,
        duration: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Extract all features from audio file.

        Args:
            file_path: Path to audio file.
            offset: Start of the segment to analyze, in seconds.
            duration: Length of the segment to analyze, in seconds.

        Returns:
            Dictionary of extracted features.
        """
        y, sr = self.load_audio(file_path, offset=offset, duration=duration)
        if y.size == 0:
            raise AnalysisError("Decoded audio is empty", details={"path": file_path})

        features: Dict[str, Any] = {}

        # --- MFCCs ---
        mfccs = self._librosa.feature.mfcc(y=y, sr=sr, n_mfcc=self.n_mfcc)
        features["mfcc_mean"] = mfccs.mean(axis=1).tolist()
        features["mfcc_std"] = mfccs.std(axis=1).tolist()

        # --- Delta MFCCs ---
        delta_mfccs = self._librosa.feature.delta(mfccs)
        features["delta_mfcc_mean"] = delta_mfccs.mean(axis=1).tolist()
        features["delta_mfcc_std"] = delta_mfccs.std(axis=1).tolist()

        # --- Chroma ---
        chroma = self._librosa.feature.chroma_stft(y=y, sr=sr)
        features["chroma_mean"] = chroma.mean(axis=1).tolist()
        features["chroma_std"] = chroma.std(axis=1).tolist()

        # --- Spectral features ---
        spectral_centroid = self._librosa.feature.spectral_centroid(y=y, sr=sr)
        features["spectral_centroid_mean"] = float(spectral_centroid.mean())
        features["spectral_centroid_std"] = float(spectral_centroid.std())

        spectral_bandwidth = self._librosa.feature.spectral_bandwidth(y=y, sr=sr)
        features["spectral_bandwidth_mean"] = float(spectral_bandwidth.mean())
        features["spectral_bandwidth_std"] = float(spectral_bandwidth.std())

        spectral_rolloff = self._librosa.feature.spectral_rolloff(y=y, sr=sr)
        features["spectral_rolloff_mean"] = float(spectral_rolloff.mean())
        features["spectral_rolloff_std"] = float(spectral_rolloff.std())

        spectral_contrast = self._librosa.feature.spectral_contrast(y=y, sr=sr)
        features["spectral_contrast_mean"] = spectral_contrast.mean(axis=1).tolist()
        features["spectral_contrast_std"] = spectral_contrast.std(axis=1).tolist()

        # --- RMS energy ---
        rms = self._librosa.feature.rms(y=y)
        features["rms_mean"] = float(rms.mean())
        features["rms_std"] = float(rms.std())

        # --- Zero crossing rate ---
        zcr = self._librosa.feature.zero_crossing_rate(y)
        features["zcr_mean"] = float(zcr.mean())
        features["zcr_std"] = float(zcr.std())

        # --- Tempo and beats ---
        tempo, beats = self._librosa.beat.beat_track(y=y, sr=sr)
        features["tempo"] = float(np.atleast_1d(tempo)[0])
        features["beat_rate"] = len(beats) / (len(y) / sr)

        return features

    def get_feature_names(self) -> List[str]:
        """Get the ordered list of feature names of the vector.

        Returns:
            List of feature names.
        """
        names = []

        for prefix in ("mfcc", "delta_mfcc"):
            for stat in ("mean", "std"):
                names.extend(f"{prefix}_{stat}_{i}" for i in range(self.n_mfcc))

        # Chroma (12 pitch classes)
        for stat in ("mean", "std"):
            names.extend(f"chroma_{stat}_{i}" for i in range(12))

        names.extend([
            "spectral_centroid_mean",
            "spectral_centroid_std",
            "spectral_bandwidth_mean",
            "spectral_bandwidth_std",
            "spectral_rolloff_mean",
            "spectral_rolloff_std",
        ])

        # Spectral contrast (7 bands)
        for stat in ("mean", "std"):
            names.extend(f"spectral_contrast_{stat}_{i}" for i in range(7))

        names.extend([
            "rms_mean",
            "rms_std",
            "zcr_mean",
            "zcr_std",
            "tempo",
            "beat_rate",
        ])

        return names

    def get_feature_dim(self) -> int:
        """Get total feature dimension.

        Returns:
            Number of features.
        """
        return len(self.get_feature_names())

    def analyze(self, file_path: str, sub_index: Optional[int] = None) -> np.ndarray:
        """Analyze one track into its feature vector.

        Args:
            file_path: Absolute path of the audio file or CUE sheet.
            sub_index: CUE track number, for tracks inside a container.

        Returns:
            Vector of length ``get_feature_dim()``.

        Raises:
            AnalysisError: If the track cannot be decoded or analyzed.
        """
        if not os.path.exists(file_path):
            raise AnalysisError(f"No such file: {file_path}", details={"path": file_path})

        audio_file, offset, duration = self._resolve_segment(file_path, sub_index)

        try:
            features = self.extract_features(audio_file, offset=offset, duration=duration)
        except AnalysisError:
            raise
        except Exception as e:
            raise AnalysisError(
                f"Error extracting features: {e}",
                details={"path": file_path, "sub_index": sub_index},
            ) from e

        return features_to_array(features, self.get_feature_names())


def features_to_array(features: Dict[str, Any], names: List[str]) -> np.ndarray:
    """Flatten a feature dict into a vector ordered by ``names``.

    Args:
        features: Dictionary of features; list values expand to ``<key>_<i>``.
        names: Ordered feature names.

    Returns:
        Feature array.
    """
    flat: Dict[str, float] = {}
    for key, value in features.items():
        if isinstance(value, list):
            for i, v in enumerate(value):
                flat[f"{key}_{i}"] = v
        else:
            flat[key] = value

    missing = [name for name in names if name not in flat]
    if missing:
        raise AnalysisError(f"Missing features: {', '.join(missing[:5])}")

    return np.array([flat[name] for name in names], dtype=np.float64)
