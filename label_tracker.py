from __future__ import annotations

from typing import Tuple

import numpy as np
from scipy import ndimage

from mrf_errors import InvalidArgument

_FULL_3x3x3 = np.ones((3, 3, 3), dtype=bool)


class LabelChangeTracker:
    """Per-voxel flag: did this voxel's label change in the previous iteration."""

    def __init__(self, shape: Tuple[int, int, int]):
        self._changed = np.zeros(shape, dtype=bool)

    @property
    def changed(self) -> np.ndarray:
        return self._changed

    def reset(self) -> None:
        self._changed[...] = False

    def update(self, changed: np.ndarray) -> None:
        changed = np.asarray(changed, dtype=bool)
        if changed.size != self._changed.size:
            raise InvalidArgument(
                f"change mask has {changed.size} voxels, tracker has {self._changed.size}")
        self._changed[...] = changed.reshape(self._changed.shape)

    def count(self) -> int:
        return int(np.count_nonzero(self._changed))

    def eligible(self) -> np.ndarray:
        """Voxels that changed or touch a changed voxel, as a boolean volume.

        Dilation does not wrap; border voxels only see their in-bounds neighbors.
        """
        if not self._changed.any():
            return np.zeros_like(self._changed)
        return ndimage.binary_dilation(self._changed, structure=_FULL_3x3x3)


class LabelBuffers:
    """Double-buffered label storage.

    ``read`` is the volume committed at the end of the previous iteration and is
    never written during a sweep. ``write`` receives the current iteration.
    """

    def __init__(self, initial: np.ndarray):
        self.read = np.ascontiguousarray(initial, dtype=np.int32).copy()
        self.write = self.read.copy()

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.read.shape

    def begin(self) -> np.ndarray:
        np.copyto(self.write, self.read)
        return self.write

    def commit(self) -> None:
        self.read, self.write = self.write, self.read
