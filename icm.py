"""
Iterated Conditional Modes relabeling of a 3-D MRF label field.

Each iteration visits the eligible voxels and picks, per voxel, the class
minimizing

    cost(c) = distance(p, c) + sum_n weight(n) * [prior_label(n) != c]

over the in-bounds 3x3x3 neighbors n. Updates are synchronous: every voxel of
iteration k reads the label volume committed at the end of iteration k-1 and
writes into a separate buffer, so the sweep can run in parallel.

After the first iteration only voxels that changed, or that touch a voxel that
changed, are re-evaluated. Everything else has identical costs to the previous
pass and keeps its label, so this gives the same labels as a full sweep.

Volumes are (depth, height, width) arrays; the flattened index of (x, y, z) is
z*W*H + y*W + x.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numba
import numpy as np

from distance_source import DistanceSource
from mrf_errors import ClassifierError, InvalidArgument, InvalidState, NotConfigured
from neighborhood import GridAddressing, NeighborhoodWeights
from label_tracker import LabelBuffers, LabelChangeTracker


class State(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    ITERATING = "iterating"
    CONVERGED = "converged"
    ITERATION_LIMIT = "iteration_limit"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


_FINISHED = (State.CONVERGED, State.ITERATION_LIMIT, State.CANCELLED)


@dataclass
class IterationStats:
    iteration: int
    changed_count: int
    error_rate: float
    evaluated_count: int


@dataclass
class ICMResult:
    labels: np.ndarray
    iterations: int
    error_rate: float
    status: State
    changed_history: List[int] = field(default_factory=list)


@numba.njit(parallel=True, cache=True)
def _icm_sweep(prior, out, changed, voxels, dist, offsets, directions, betas,
               width, height, depth):
    """Relabel ``voxels`` from the ``prior`` snapshot into ``out``.

    prior/out/changed are flat views of the volume. ``dist`` row t belongs to
    voxels[t]. Returns the number of voxels whose label changed.
    """
    ncls = dist.shape[1]
    nnb = offsets.shape[0]
    plane = width * height
    n_changed = 0
    for t in numba.prange(voxels.shape[0]):
        p = voxels[t]
        x = p % width
        y = (p // width) % height
        z = p // plane
        interior = (x > 0 and x < width - 1
                    and y > 0 and y < height - 1
                    and z > 0 and z < depth - 1)
        best = 0
        best_cost = np.inf
        for c in range(ncls):
            cost = dist[t, c]
            for m in range(nnb):
                if not interior:
                    xx = x + directions[m, 0]
                    yy = y + directions[m, 1]
                    zz = z + directions[m, 2]
                    if xx < 0 or xx >= width or yy < 0 or yy >= height or zz < 0 or zz >= depth:
                        continue
                if prior[p + offsets[m]] != c:
                    cost += betas[m]
            # strict '<' keeps the lowest class id on ties
            if cost < best_cost:
                best_cost = cost
                best = c
        out[p] = best
        if best != prior[p]:
            changed[p] = True
            n_changed += 1
    return n_changed


@numba.njit(cache=True)
def _label_energy(labels, dist, offsets, directions, betas, width, height, depth):
    plane = width * height
    total = 0.0
    for p in range(labels.shape[0]):
        x = p % width
        y = (p // width) % height
        z = p // plane
        lbl = labels[p]
        cost = dist[p, lbl]
        for m in range(offsets.shape[0]):
            xx = x + directions[m, 0]
            yy = y + directions[m, 1]
            zz = z + directions[m, 2]
            if xx < 0 or xx >= width or yy < 0 or yy >= height or zz < 0 or zz >= depth:
                continue
            if labels[p + offsets[m]] != lbl:
                cost += betas[m]
        total += cost
    return total


def _count(value, name: str, minimum: int) -> int:
    if isinstance(value, bool):
        raise InvalidArgument(f"{name} must be an integer >= {minimum}, got {value!r}")
    try:
        whole = int(value) == value
    except (TypeError, ValueError, OverflowError) as exc:
        raise InvalidArgument(f"{name} must be an integer >= {minimum}, got {value!r}") from exc
    if not whole or value < minimum:
        raise InvalidArgument(f"{name} must be an integer >= {minimum}, got {value!r}")
    return int(value)


class ICMEngine:
    """MAP relabeling of a 3-D label volume with ICM.

    Configure with the setters (or constructor keywords), then call ``run()``,
    or drive iterations one by one with ``step()``.
    """

    def __init__(self,
                 classifier: Optional[DistanceSource] = None,
                 number_of_classes: Optional[int] = None,
                 initial_labels: Optional[np.ndarray] = None,
                 max_iterations: int = 50,
                 error_tolerance: float = 0.0,
                 weights=None,
                 reexamine: bool = True,
                 verbose: bool = False):
        self.state = State.UNINITIALIZED
        self._classifier: Optional[DistanceSource] = None
        self._n_classes: Optional[int] = None
        self._initial: Optional[np.ndarray] = None
        self._weights = NeighborhoodWeights(weights)
        self.max_iterations = 50
        self.error_tolerance = 0.0
        self.reexamine = bool(reexamine)
        self.verbose = bool(verbose)

        self.grid: Optional[GridAddressing] = None
        self._buffers: Optional[LabelBuffers] = None
        self._tracker: Optional[LabelChangeTracker] = None
        self._cancel = False
        self._reset_counters()

        if classifier is not None:
            self.set_classifier(classifier)
        if number_of_classes is not None:
            self.set_number_of_classes(number_of_classes)
        if initial_labels is not None:
            self.set_initial_labels(initial_labels)
        self.set_max_iterations(max_iterations)
        self.set_error_tolerance(error_tolerance)

    # ------------------------------------------------------------------
    # configuration

    def _check_mutable(self) -> None:
        if self.state == State.ITERATING:
            raise InvalidState("cannot reconfigure the engine while iterating")

    def _invalidate(self) -> None:
        self.state = State.UNINITIALIZED

    def set_classifier(self, classifier: DistanceSource) -> None:
        self._check_mutable()
        if classifier is None or not callable(getattr(classifier, "distances", None)):
            raise InvalidArgument("classifier must provide distances(voxels)")
        self._classifier = classifier
        self._invalidate()

    def set_number_of_classes(self, n: int) -> None:
        self._check_mutable()
        self._n_classes = _count(n, "number_of_classes", 0)
        self._invalidate()

    def set_max_iterations(self, n: int) -> None:
        self._check_mutable()
        self.max_iterations = _count(n, "max_iterations", 1)
        self._invalidate()

    def set_error_tolerance(self, tol: float) -> None:
        self._check_mutable()
        try:
            tol = float(tol)
        except (TypeError, ValueError) as exc:
            raise InvalidArgument(f"error_tolerance must be a number, got {tol!r}") from exc
        # NaN fails the range check
        if not (0.0 <= tol < 1.0):
            raise InvalidArgument(f"error_tolerance must be in [0, 1), got {tol}")
        self.error_tolerance = tol
        self._invalidate()

    def set_weights(self, values, length: Optional[int] = None) -> None:
        self._check_mutable()
        self._weights.set_weights(values, length)
        self._invalidate()

    def set_default_weights(self, **kwargs) -> None:
        self._check_mutable()
        self._weights.set_default(**kwargs)
        self._invalidate()

    def get_weights(self) -> np.ndarray:
        return self._weights.get_weights()

    def set_reexamine(self, enabled: bool) -> None:
        self._check_mutable()
        self.reexamine = bool(enabled)
        self._invalidate()

    def set_initial_labels(self, labels: np.ndarray) -> None:
        self._check_mutable()
        arr = np.asarray(labels)
        if arr.ndim != 3:
            raise InvalidArgument(f"initial labels must be a 3-D volume, got shape {arr.shape}")
        d, h, w = arr.shape
        GridAddressing(w, h, d)  # dimension check only
        if not np.issubdtype(arr.dtype, np.integer):
            if not np.all(np.isfinite(arr)) or not np.all(arr == np.round(arr)):
                raise InvalidArgument("initial labels must be integer class ids")
        if arr.size and arr.min() < 0:
            raise InvalidArgument("initial labels must be nonnegative")
        # checked before the int32 cast, which would wrap large ids
        if arr.size and arr.max() > np.iinfo(np.int32).max:
            raise InvalidArgument(f"initial labels contain class id {arr.max()} beyond int32")
        self._initial = arr.astype(np.int32, copy=True)
        self._invalidate()

    @property
    def number_of_classes(self) -> Optional[int]:
        if self._n_classes is not None:
            return self._n_classes
        if self._classifier is not None:
            return int(self._classifier.number_of_classes)
        return None

    # ------------------------------------------------------------------
    # lifecycle

    def _reset_counters(self) -> None:
        self.iterations = 0
        self.changed_count = 0
        self.error_rate = 1.0
        self.history: List[int] = []

    def initialize(self) -> None:
        """Validate the configuration and allocate run buffers (-> READY)."""
        self._check_mutable()
        if self._classifier is None:
            raise NotConfigured("no classifier (distance source) set")
        if self._initial is None:
            raise NotConfigured("no initial label volume set")
        n_classes = self.number_of_classes
        if n_classes is None or n_classes < 2:
            raise NotConfigured(f"number_of_classes must be >= 2, got {n_classes}")
        src_classes = getattr(self._classifier, "number_of_classes", None)
        if src_classes is not None and int(src_classes) != n_classes:
            raise InvalidArgument(
                f"classifier reports {src_classes} classes, engine configured for {n_classes}")
        shape = self._initial.shape
        src_shape = getattr(self._classifier, "shape", None)
        if src_shape is not None and tuple(src_shape) != tuple(shape):
            raise InvalidArgument(
                f"classifier volume shape {tuple(src_shape)} does not match labels {shape}")
        if int(self._initial.max()) >= n_classes:
            raise InvalidArgument(
                f"initial labels contain class {int(self._initial.max())} >= {n_classes}")

        d, h, w = shape
        self.grid = GridAddressing(w, h, d)
        self._buffers = LabelBuffers(self._initial)
        self._tracker = LabelChangeTracker(shape)
        self._tracker.reset()
        self._reset_counters()
        self.state = State.READY

    def cancel(self) -> None:
        """Request a stop at the next iteration boundary.

        A request made before the run starts is kept through initialize(),
        so the run ends CANCELLED before its first sweep. It is dropped once
        the run reaches any end state; cancelling a finished run does nothing.
        """
        if self.state in _FINISHED or self.state == State.ABORTED:
            return
        self._cancel = True

    def _end(self, state: State) -> None:
        self.state = state
        self._cancel = False

    def _query(self, voxels: np.ndarray) -> np.ndarray:
        n_classes = self.number_of_classes
        d = np.asarray(self._classifier.distances(voxels), dtype=np.float64)
        if d.shape != (voxels.size, n_classes):
            raise ClassifierError(
                f"classifier returned distances of shape {d.shape}, expected {(voxels.size, n_classes)}")
        if not np.all(np.isfinite(d)):
            raise ClassifierError("classifier returned non-finite distances")
        if (d < 0).any():
            raise ClassifierError("classifier returned negative distances")
        return np.ascontiguousarray(d)

    def step(self) -> Optional[IterationStats]:
        """Run one synchronous iteration. Returns None if cancelled."""
        if self.state == State.UNINITIALIZED:
            self.initialize()
        if self.state in _FINISHED or self.state == State.ABORTED:
            raise InvalidState(f"run already ended ({self.state.value}); call initialize() to restart")
        if self._cancel:
            self._end(State.CANCELLED)
            return None
        self.state = State.ITERATING

        grid = self.grid
        n_total = grid.size
        if self.iterations == 0 or not self.reexamine:
            voxels = np.arange(n_total, dtype=np.int64)
        else:
            voxels = np.flatnonzero(self._tracker.eligible()).astype(np.int64)

        try:
            dist = self._query(voxels)
        except Exception:
            self._end(State.ABORTED)
            raise

        out = self._buffers.begin()
        changed = np.zeros(n_total, dtype=bool)
        n_changed = 0
        if voxels.size:
            n_changed = int(_icm_sweep(self._buffers.read.ravel(), out.ravel(), changed,
                                       voxels, dist, grid.offsets, grid.directions,
                                       self._weights.neighbor_weights(),
                                       grid.width, grid.height, grid.depth))
        self._buffers.commit()
        self._tracker.update(changed)

        k = self.iterations
        self.iterations += 1
        self.changed_count = n_changed
        self.error_rate = n_changed / n_total
        self.history.append(n_changed)
        if self.verbose:
            print(f"ICM iter={k} evaluated={voxels.size} changed={n_changed} "
                  f"error_rate={self.error_rate:.6g}")

        if n_changed == 0 or self.error_rate < self.error_tolerance:
            self._end(State.CONVERGED)
        elif self.iterations == self.max_iterations:
            self._end(State.ITERATION_LIMIT)
        return IterationStats(iteration=k, changed_count=n_changed,
                              error_rate=self.error_rate, evaluated_count=int(voxels.size))

    def run(self) -> ICMResult:
        # READY/ITERATING resume where step() left off
        if self.state not in (State.READY, State.ITERATING):
            self.initialize()
        while self.state in (State.READY, State.ITERATING):
            self.step()
        if self.verbose:
            print(f"ICM {self.state.value} after {self.iterations} iterations "
                  f"(error_rate={self.error_rate:.6g})")
        return self.result()

    # ------------------------------------------------------------------
    # results

    @property
    def labels(self) -> np.ndarray:
        if self.state not in _FINISHED:
            raise InvalidState(f"labels are only available after the run ends (state={self.state.value})")
        return self._buffers.read.copy()

    def result(self) -> ICMResult:
        return ICMResult(labels=self.labels, iterations=self.iterations,
                         error_rate=self.error_rate, status=self.state,
                         changed_history=list(self.history))

    def energy(self, labels: Optional[np.ndarray] = None) -> float:
        """Total cost of a labeling: sum over voxels of cost(label)."""
        if self._buffers is None or self.state == State.UNINITIALIZED:
            self.initialize()
        grid = self.grid
        if labels is None:
            labels = self._buffers.read
        labels = np.ascontiguousarray(labels, dtype=np.int32)
        if labels.shape != grid.shape:
            raise InvalidArgument(f"labels shape {labels.shape} does not match volume {grid.shape}")
        if labels.min() < 0 or labels.max() >= self.number_of_classes:
            raise InvalidArgument("labels contain class ids outside [0, number_of_classes)")
        dist = self._query(np.arange(grid.size, dtype=np.int64))
        return float(_label_energy(labels.ravel(), dist, grid.offsets, grid.directions,
                                   self._weights.neighbor_weights(),
                                   grid.width, grid.height, grid.depth))
