from __future__ import annotations

from typing import Tuple

import numpy as np

from mrf_errors import InvalidArgument

KERNEL_SIZE = 27
CENTER = 13


def _kernel_directions() -> np.ndarray:
    """Return the 27 (dx, dy, dz) kernel directions in weight-table order.

    Ordering is z slowest, x fastest, which matches the flattened voxel index.
    """
    dirs = [(dx, dy, dz)
            for dz in (-1, 0, 1)
            for dy in (-1, 0, 1)
            for dx in (-1, 0, 1)]
    return np.asarray(dirs, dtype=np.int64)


def weight_slot(dx: int, dy: int, dz: int) -> int:
    return (dz + 1) * 9 + (dy + 1) * 3 + (dx + 1)


def _validated(values, length=None) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64)
    if length is not None and int(length) != KERNEL_SIZE:
        raise InvalidArgument(f"kernel size must be {KERNEL_SIZE}, got {length}")
    if arr.shape == (3, 3, 3):
        arr = arr.ravel()
    if arr.ndim != 1 or arr.size != KERNEL_SIZE:
        raise InvalidArgument(
            f"expected {KERNEL_SIZE} weights (flat or 3x3x3), got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise InvalidArgument("weights must be finite")
    if (arr < 0).any():
        raise InvalidArgument("weights must be nonnegative")
    return arr.copy()


class NeighborhoodWeights:
    """Potts coherence weights for the 3x3x3 neighborhood.

    Entry ``weight_slot(dx, dy, dz)`` penalizes disagreement with the neighbor at
    that relative position. The center entry is kept at zero and never summed.
    """

    def __init__(self, weights=None):
        self._w = np.zeros(KERNEL_SIZE, dtype=np.float64)
        if weights is None:
            self.set_default()
        else:
            self.set_weights(weights)

    def set_default(self, w_mid: float = 1.7, w_edge: float = 1.7,
                    w_slice: float = 1.5, w_diag: float = 1.3) -> None:
        """Build the canonical table.

        - same slice, axis neighbors (N/S/E/W): w_mid
        - same slice, diagonals: w_edge
        - adjacent slice, same (x, y): w_slice
        - adjacent slice, everything else: w_diag
        """
        for name, v in (("w_mid", w_mid), ("w_edge", w_edge),
                        ("w_slice", w_slice), ("w_diag", w_diag)):
            if not np.isfinite(v) or v < 0:
                raise InvalidArgument(f"{name} must be a nonnegative finite number")
        w = np.empty(KERNEL_SIZE, dtype=np.float64)
        for slot, (dx, dy, dz) in enumerate(_kernel_directions()):
            if dz == 0:
                if dx == 0 and dy == 0:
                    w[slot] = 0.0
                elif dx == 0 or dy == 0:
                    w[slot] = w_mid
                else:
                    w[slot] = w_edge
            elif dx == 0 and dy == 0:
                w[slot] = w_slice
            else:
                w[slot] = w_diag
        self._w = w

    def set_weights(self, values, length: int | None = None) -> None:
        w = _validated(values, length)
        w[CENTER] = 0.0
        self._w = w

    def get_weights(self) -> np.ndarray:
        return self._w.copy()

    @property
    def weights(self) -> np.ndarray:
        return self.get_weights()

    def neighbor_weights(self) -> np.ndarray:
        """The 26 non-center weights, in GridAddressing offset order."""
        return np.delete(self._w, CENTER)

    def is_symmetric(self) -> bool:
        # 180 degree rotation maps slot s to slot 26 - s
        return bool(np.allclose(self._w, self._w[::-1]))


class GridAddressing:
    """Neighbor addressing over a flattened (depth, height, width) volume."""

    def __init__(self, width: int, height: int, depth: int):
        self.build(width, height, depth)

    def build(self, width: int, height: int, depth: int) -> None:
        dims = (int(width), int(height), int(depth))
        if min(dims) < 3:
            raise InvalidArgument(
                f"every dimension must be >= 3 for a 3x3x3 neighborhood, got {dims}")
        self.width, self.height, self.depth = dims
        dirs = np.delete(_kernel_directions(), CENTER, axis=0)
        self.directions = dirs
        self.offsets = (dirs[:, 2] * (self.width * self.height)
                        + dirs[:, 1] * self.width
                        + dirs[:, 0]).astype(np.int64)
        # inclusive [lo, hi] per axis, (x, y, z)
        self.interior = tuple((1, n - 2) for n in dims)

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.depth, self.height, self.width

    @property
    def size(self) -> int:
        return self.width * self.height * self.depth

    def index(self, x: int, y: int, z: int) -> int:
        return (z * self.height + y) * self.width + x

    def coords(self, voxel_index: int) -> Tuple[int, int, int]:
        p = int(voxel_index)
        if p < 0 or p >= self.size:
            raise InvalidArgument(f"voxel index {p} outside volume of {self.size} voxels")
        x = p % self.width
        y = (p // self.width) % self.height
        z = p // (self.width * self.height)
        return x, y, z

    def is_interior(self, voxel_index: int) -> bool:
        x, y, z = self.coords(voxel_index)
        (x0, x1), (y0, y1), (z0, z1) = self.interior
        return x0 <= x <= x1 and y0 <= y <= y1 and z0 <= z <= z1

    def neighbors_of(self, voxel_index: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return (neighbor indices, offset slots) of the in-bounds neighbors.

        Interior voxels get all 26 neighbors. Border voxels get the subset whose
        target lies inside the volume, checked per axis.
        """
        x, y, z = self.coords(voxel_index)
        p = int(voxel_index)
        if self.is_interior(p):
            return p + self.offsets, np.arange(self.offsets.size, dtype=np.int64)
        d = self.directions
        tx = x + d[:, 0]
        ty = y + d[:, 1]
        tz = z + d[:, 2]
        ok = ((tx >= 0) & (tx < self.width)
              & (ty >= 0) & (ty < self.height)
              & (tz >= 0) & (tz < self.depth))
        slots = np.flatnonzero(ok).astype(np.int64)
        return p + self.offsets[slots], slots
