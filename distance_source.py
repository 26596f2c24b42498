"""
Distance sources: the engine's only view of the classifier.

A distance source answers "how badly does voxel p fit class c" with a
nonnegative float, lower meaning a better fit. It must not depend on the
evolving label volume.
"""

from __future__ import annotations

from typing import Callable, Optional, Protocol, Tuple

import numpy as np

from mrf_errors import InvalidArgument


class DistanceSource(Protocol):
    number_of_classes: int
    shape: Optional[Tuple[int, int, int]]

    def distances(self, voxels: np.ndarray) -> np.ndarray:
        """Return a (len(voxels), number_of_classes) float array."""
        ...


class ArrayDistanceSource:
    """Precomputed distance table, (depth, height, width, C) or (N, C)."""

    def __init__(self, table: np.ndarray):
        table = np.asarray(table, dtype=np.float64)
        if table.ndim == 4:
            self.shape = tuple(int(n) for n in table.shape[:3])
            table = table.reshape(-1, table.shape[3])
        elif table.ndim == 2:
            self.shape = None
        else:
            raise InvalidArgument(
                f"distance table must be (D,H,W,C) or (N,C), got shape {table.shape}")
        self._table = np.ascontiguousarray(table)
        self.number_of_classes = int(self._table.shape[1])

    def distance(self, voxel: int, cls: int) -> float:
        return float(self._table[voxel, cls])

    def distances(self, voxels: np.ndarray) -> np.ndarray:
        return self._table[voxels]


class CallableDistanceSource:
    """Wrap a per-voxel ``func(voxel_index, class_id) -> float``."""

    def __init__(self, func: Callable[[int, int], float], number_of_classes: int,
                 shape: Optional[Tuple[int, int, int]] = None):
        self._func = func
        self.number_of_classes = int(number_of_classes)
        self.shape = tuple(shape) if shape is not None else None

    def distance(self, voxel: int, cls: int) -> float:
        return float(self._func(int(voxel), int(cls)))

    def distances(self, voxels: np.ndarray) -> np.ndarray:
        out = np.empty((voxels.size, self.number_of_classes), dtype=np.float64)
        for t, p in enumerate(voxels):
            for c in range(self.number_of_classes):
                out[t, c] = self._func(int(p), c)
        return out


def initial_labels_from(source: DistanceSource, shape: Tuple[int, int, int]) -> np.ndarray:
    """Classifier first pass: per-voxel argmin of distance, lowest class id on ties."""
    n = int(np.prod(shape))
    d = np.asarray(source.distances(np.arange(n, dtype=np.int64)), dtype=np.float64)
    if d.shape != (n, source.number_of_classes):
        raise InvalidArgument(
            f"distance source returned shape {d.shape}, expected {(n, source.number_of_classes)}")
    # np.argmin returns the first minimum
    return np.argmin(d, axis=1).astype(np.int32).reshape(shape)
