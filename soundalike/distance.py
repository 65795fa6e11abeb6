"""
Distance engine over feature vectors.

Every metric is a pure function of its inputs. ``distance`` is the one-row
case of ``distances_to``, so the playlist builders and the scalar form agree
on every value they compare.
"""

import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from soundalike.exceptions import ConfigError, DimensionMismatch


logger = logging.getLogger(__name__)


# Returned by the cosine metric when either vector is all zeros.
MAX_COSINE_DISTANCE = 2.0


class MetricKind(enum.Enum):
    """Closed set of supported metrics."""

    EUCLIDEAN = "euclidean"
    COSINE = "cosine"
    MAHALANOBIS = "mahalanobis"


def _check_matrix(matrix: np.ndarray, source: Optional[str] = None) -> np.ndarray:
    matrix = np.array(matrix, dtype=np.float64)
    details = {"path": source, "shape": list(matrix.shape)}
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1] or matrix.shape[0] == 0:
        raise ConfigError(f"Metric matrix must be square, got shape {matrix.shape}", details=details)
    if not np.all(np.isfinite(matrix)):
        raise ConfigError("Metric matrix contains non-finite values", details=details)
    if not np.allclose(matrix, matrix.T):
        raise ConfigError("Metric matrix must be symmetric", details=details)
    matrix.setflags(write=False)
    return matrix


@dataclass(frozen=True, eq=False)
class DistanceMetric:
    """A metric choice; Mahalanobis carries its D×D matrix."""

    kind: MetricKind
    matrix: Optional[np.ndarray] = field(default=None, repr=False)

    def __post_init__(self):
        if self.kind is MetricKind.MAHALANOBIS:
            if self.matrix is None:
                raise ConfigError("The mahalanobis metric needs a metric matrix")
            object.__setattr__(self, "matrix", _check_matrix(self.matrix))
        elif self.matrix is not None:
            raise ConfigError(f"The {self.kind.value} metric takes no matrix")

    @classmethod
    def euclidean(cls) -> "DistanceMetric":
        return cls(MetricKind.EUCLIDEAN)

    @classmethod
    def cosine(cls) -> "DistanceMetric":
        return cls(MetricKind.COSINE)

    @classmethod
    def mahalanobis(cls, matrix: np.ndarray) -> "DistanceMetric":
        return cls(MetricKind.MAHALANOBIS, matrix)

    @classmethod
    def from_name(cls, name: str, matrix: Optional[np.ndarray] = None) -> "DistanceMetric":
        """Build a metric from its configuration name.

        Args:
            name: ``euclidean``, ``cosine`` or ``mahalanobis``.
            matrix: Metric matrix, only for ``mahalanobis``.

        Raises:
            ConfigError: If the name is unknown or the matrix is missing.
        """
        try:
            kind = MetricKind(name.strip().lower())
        except ValueError:
            choices = ", ".join(k.value for k in MetricKind)
            raise ConfigError(
                f"Unknown distance metric '{name}' (choose from {choices})",
                details={"metric": name},
            ) from None
        return cls(kind, matrix)

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def dimension(self) -> Optional[int]:
        """Dimension the metric is fixed to, if any."""
        if self.matrix is None:
            return None
        return int(self.matrix.shape[0])

    def validate(self, dimension: int) -> None:
        """Check the metric can compare vectors of ``dimension`` features.

        Raises:
            DimensionMismatch: If the metric matrix has another size.
        """
        if self.dimension is not None and self.dimension != dimension:
            raise DimensionMismatch(self.dimension, dimension, metric=self.name)

    def __str__(self) -> str:
        return self.name


def distances_to(origin: np.ndarray, vectors: np.ndarray, metric: DistanceMetric) -> np.ndarray:
    """Distance from ``origin`` to every row of ``vectors``.

    Args:
        origin: Vector of shape (D,).
        vectors: Matrix of shape (M, D).
        metric: Metric to use.

    Returns:
        Array of shape (M,).

    Raises:
        DimensionMismatch: If the sizes of origin, vectors or matrix differ.
    """
    origin = np.asarray(origin, dtype=np.float64)
    vectors = np.asarray(vectors, dtype=np.float64)
    if origin.ndim != 1:
        raise ValueError(f"origin must be a 1-D vector, got shape {origin.shape}")
    if vectors.ndim == 1:
        vectors = vectors[np.newaxis, :]

    dim = origin.shape[0]
    if vectors.shape[1] != dim:
        raise DimensionMismatch(dim, vectors.shape[1], metric=metric.name)
    metric.validate(dim)

    if vectors.shape[0] == 0:
        return np.empty(0, dtype=np.float64)

    if metric.kind is MetricKind.EUCLIDEAN:
        diff = vectors - origin
        return np.sqrt(np.einsum("ij,ij->i", diff, diff))

    elif metric.kind is MetricKind.COSINE:
        dots = np.einsum("ij,j->i", vectors, origin)
        origin_norm = np.sqrt(np.dot(origin, origin))
        norms = np.sqrt(np.einsum("ij,ij->i", vectors, vectors))
        denom = origin_norm * norms
        result = np.full(vectors.shape[0], MAX_COSINE_DISTANCE)
        nonzero = denom > 0
        result[nonzero] = 1.0 - dots[nonzero] / denom[nonzero]
        return np.clip(result, 0.0, MAX_COSINE_DISTANCE)

    elif metric.kind is MetricKind.MAHALANOBIS:
        diff = vectors - origin
        quad = np.einsum("ij,jk,ik->i", diff, metric.matrix, diff)
        # Rounding can push a positive semi-definite form slightly below 0.
        return np.sqrt(np.maximum(quad, 0.0))

    raise ConfigError(f"Unsupported metric: {metric.kind}")


def distance(a: np.ndarray, b: np.ndarray, metric: DistanceMetric) -> float:
    """Distance between two vectors.

    Raises:
        DimensionMismatch: If the vectors or the metric matrix differ in size.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.ndim != 1 or b.ndim != 1:
        raise ValueError("distance() expects two 1-D vectors")
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatch(a.shape[0], b.shape[0], metric=metric.name)
    return float(distances_to(a, b[np.newaxis, :], metric)[0])


def load_metric_matrix(path: str, dimension: Optional[int] = None) -> np.ndarray:
    """Load a pre-computed metric matrix.

    Args:
        path: ``.npy`` file, or a whitespace-separated text file.
        dimension: Feature dimension of the store, checked when given.

    Returns:
        Read-only symmetric matrix.

    Raises:
        ConfigError: If the file cannot be read, the matrix is not square and
            symmetric, or its size differs from ``dimension``.
    """
    if not os.path.exists(path):
        raise ConfigError(f"Metric matrix file not found: {path}", details={"path": path})

    try:
        if path.lower().endswith(".npy"):
            matrix = np.load(path, allow_pickle=False)
        else:
            matrix = np.loadtxt(path, dtype=np.float64, ndmin=2)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read metric matrix {path}: {e}", details={"path": path}) from e

    matrix = _check_matrix(matrix, source=path)

    if dimension is not None and matrix.shape[0] != dimension:
        raise ConfigError(
            f"Metric matrix is {matrix.shape[0]}x{matrix.shape[0]} but the store holds "
            f"{dimension}-dimensional vectors",
            details={"path": path, "expected": dimension, "actual": matrix.shape[0]},
        )

    logger.info(f"Loaded {matrix.shape[0]}x{matrix.shape[0]} metric matrix from {path}")
    return matrix


def metric_from_config(
    config,
    name: Optional[str] = None,
    matrix_path: Optional[str] = None,
    dimension: Optional[int] = None,
) -> DistanceMetric:
    """Build the metric selected by options, falling back to ``playlist.*``.

    Args:
        config: Configuration object.
        name: Metric name overriding ``playlist.metric``.
        matrix_path: Matrix file overriding ``playlist.metric_matrix``.
        dimension: Feature dimension of the store, checked against the matrix.

    Raises:
        ConfigError: If the metric or its matrix is invalid.
    """
    if name is None:
        # An explicit matrix file implies the mahalanobis metric.
        name = MetricKind.MAHALANOBIS.value if matrix_path else config.get("playlist.metric", "euclidean")
    matrix_path = matrix_path or config.get("playlist.metric_matrix")

    if name.strip().lower() != MetricKind.MAHALANOBIS.value:
        return DistanceMetric.from_name(name)

    if not matrix_path:
        raise ConfigError(
            "The mahalanobis metric needs a metric matrix file (playlist.metric_matrix)",
            details={"metric": name},
        )
    return DistanceMetric.from_name(name, load_metric_matrix(matrix_path, dimension=dimension))
