"""Distance/similarity conversion for vector search results.

pgvector's ``<=>`` operator returns cosine distance in ``[0, 2]``. Scores
handed to the rest of the pipeline are similarities in ``[0, 1]``.
"""

from __future__ import annotations

from enum import Enum

from core.errors import ConfigurationError


class DistanceMetric(str, Enum):
    COSINE = "cosine"

    @property
    def distance_range(self) -> tuple[float, float]:
        return (0.0, 2.0)


# Tolerance for float noise at the range edges (pgvector can report 2.0000001)
_EPSILON = 1e-6


def _require_cosine(metric: DistanceMetric) -> None:
    if metric is not DistanceMetric.COSINE:
        raise ConfigurationError(f"Unsupported distance metric: {metric!r}")


def distance_to_similarity(
    distance: float, metric: DistanceMetric = DistanceMetric.COSINE
) -> float:
    """Convert a cosine distance in [0, 2] to a similarity in [0, 1].

    Raises:
        ConfigurationError: metric is not cosine
        ValueError: distance lies outside the metric's range
    """
    _require_cosine(metric)
    low, high = metric.distance_range
    if not (low - _EPSILON <= distance <= high + _EPSILON):
        raise ValueError(
            f"Distance {distance} outside {metric.value} range [{low}, {high}]"
        )
    similarity = 1.0 - distance / 2.0
    return min(1.0, max(0.0, similarity))


def similarity_to_distance(
    similarity: float, metric: DistanceMetric = DistanceMetric.COSINE
) -> float:
    """Inverse of ``distance_to_similarity``; used as the store's distance cutoff."""
    _require_cosine(metric)
    if not (0.0 <= similarity <= 1.0):
        raise ValueError(f"Similarity {similarity} outside [0, 1]")
    return 2.0 * (1.0 - similarity)
