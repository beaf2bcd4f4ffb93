"""Sliding-window feature preprocessing ahead of the spiking network."""

from __future__ import annotations

import logging
import math
import statistics
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Iterable, List, Optional, Sequence, Tuple

from .config import PreprocessingConfig, apply_changes
from .state import FEATURE_NAMES, FeatureVector
from .streams import Observer, Subject, Subscription

logger = logging.getLogger(__name__)

HISTORY_CAPACITY = 1000
SEED_CAPACITY = 100
MIN_BUFFERED = 3
TREND_NAMES: Tuple[str, ...] = ("packet_size_slope", "payload_entropy_slope", "inter_packet_variance")


@dataclass
class _ColumnStats:
    minimum: float
    maximum: float
    mean: float
    std: float


def slope(values: Sequence[float]) -> float:
    """Least-squares slope of ``values`` against their index."""

    n = len(values)
    if n < 2:
        return 0.0
    x_mean = (n - 1) / 2.0
    y_mean = statistics.fmean(values)
    numerator = sum((index - x_mean) * (value - y_mean) for index, value in enumerate(values))
    denominator = sum((index - x_mean) ** 2 for index in range(n))
    if denominator == 0:
        return 0.0
    return numerator / denominator


def variance(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    return statistics.pvariance(values)


class FeatureExtractor:
    """Turns feature vectors into normalized numeric rows.

    Rows are only produced once the temporal buffer holds enough vectors;
    an empty list means "not ready, skip this tick".
    """

    def __init__(self, config: Optional[PreprocessingConfig] = None) -> None:
        self._config = config or PreprocessingConfig()
        self._history: Deque[FeatureVector] = deque(maxlen=HISTORY_CAPACITY)
        self._rows: Deque[List[float]] = deque(maxlen=HISTORY_CAPACITY)
        self._buffer: Deque[FeatureVector] = deque(maxlen=HISTORY_CAPACITY)
        self._stats: Optional[List[_ColumnStats]] = None
        self._processed: Subject[List[float]] = Subject()

    @property
    def config(self) -> PreprocessingConfig:
        return self._config

    def initialize(self, history: Iterable[FeatureVector]) -> None:
        """Seed the history with up to the last 100 vectors and recompute statistics."""

        seed = list(history)[-SEED_CAPACITY:]
        if not seed:
            return
        self._history.clear()
        self._rows.clear()
        for vector in seed:
            self._history.append(vector)
            self._rows.append(vector.as_array())
        self._stats = self._compute_statistics()

    def process_features(self, vector: FeatureVector) -> List[float]:
        self._history.append(vector)
        self._buffer.append(vector)

        oldest_valid = vector.timestamp - self._config.aggregation_window
        while self._buffer and self._buffer[0].timestamp < oldest_valid:
            self._buffer.popleft()

        if self._config.temporal_aggregation and len(self._buffer) < MIN_BUFFERED:
            self._rows.append(vector.as_array())
            return []

        row = self._flatten(vector)
        self._rows.append(row)

        processed = self._normalize(row)
        if self._config.feature_selection:
            processed = self._select(processed)
        if self._config.dimensionality_reduction and self._config.pca_components:
            processed = processed[: self._config.pca_components]

        if processed:
            self._processed.publish(processed)
        return processed

    def _flatten(self, vector: FeatureVector) -> List[float]:
        row = vector.as_array()
        if self._config.temporal_aggregation and len(self._buffer) >= MIN_BUFFERED:
            buffered = list(self._buffer)
            row.append(slope([item.packet_size for item in buffered]))
            row.append(slope([item.payload_entropy for item in buffered]))
            row.append(variance([item.inter_packet_time for item in buffered]))
        return row

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------
    def _compute_statistics(self) -> List[_ColumnStats]:
        rows = list(self._rows)
        width = max((len(row) for row in rows), default=0)
        columns: List[_ColumnStats] = []
        for index in range(width):
            values = [row[index] for row in rows if len(row) > index]
            columns.append(
                _ColumnStats(
                    minimum=min(values),
                    maximum=max(values),
                    mean=statistics.fmean(values),
                    std=statistics.pstdev(values) if len(values) > 1 else 0.0,
                )
            )
        return columns

    def _normalize(self, row: List[float]) -> List[float]:
        method = self._config.normalization_method
        if method == "none":
            return list(row)
        if method == "log":
            return [math.log1p(value) if value > 0 else 0.0 for value in row]

        if self._stats is None:
            self._stats = self._compute_statistics()

        if method == "zscore":
            return [self._zscore(index, value) for index, value in enumerate(row)]
        return [self._minmax(index, value) for index, value in enumerate(row)]

    def _minmax(self, index: int, value: float) -> float:
        stats = self._stats or []
        if index >= len(stats):
            return min(1.0, max(0.0, value))
        column = stats[index]
        column.minimum = min(column.minimum, value)
        column.maximum = max(column.maximum, value)
        if column.maximum == column.minimum:
            return 0.5
        scaled = (value - column.minimum) / (column.maximum - column.minimum)
        return min(1.0, max(0.0, scaled))

    def _zscore(self, index: int, value: float) -> float:
        stats = self._stats or []
        if index >= len(stats):
            mean, std = 0.0, 1.0
        else:
            mean, std = stats[index].mean, stats[index].std
        if std == 0:
            return 0.0
        return (value - mean) / std

    def _select(self, row: List[float]) -> List[float]:
        indices: List[int] = []
        for token in self._config.feature_selection:
            index = _selection_index(token)
            if index is not None and 0 <= index < len(row):
                indices.append(index)
        if not indices:
            return row
        return [row[index] for index in indices]

    # ------------------------------------------------------------------
    # Surface
    # ------------------------------------------------------------------
    def update_config(self, **changes: Any) -> PreprocessingConfig:
        self._config = apply_changes(self._config, changes)
        self._stats = self._compute_statistics() if self._rows else None
        logger.debug("Preprocessing configuration updated: %s", changes)
        return self._config

    def feature_buffer(self) -> List[FeatureVector]:
        return list(self._buffer)

    def latest(self) -> Optional[FeatureVector]:
        return self._buffer[-1] if self._buffer else None

    def subscribe_to_processed_features(self, callback: Observer) -> Subscription:
        return self._processed.subscribe(callback)


def _selection_index(token: str) -> Optional[int]:
    token = token.strip()
    if token.startswith("feature_"):
        token = token[len("feature_"):]
    if token.isdigit():
        return int(token)
    names = FEATURE_NAMES + TREND_NAMES
    if token in names:
        return names.index(token)
    return None


__all__ = ["FeatureExtractor", "TREND_NAMES", "slope", "variance"]
