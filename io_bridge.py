"""
io_bridge.py

Thin I/O wrapper for the volumes the MRF relabeler consumes and produces.

- Volumes are stored as .npy, or as one array inside an .npz archive.
- Arrays are returned in [z, y, x] order (depth, height, width), so that the
  flattened voxel index is z*W*H + y*W + x. Inputs written in [x, y, z] order
  are transposed on load (axis_order="xyz").
- Distance volumes carry a trailing class axis: [z, y, x, C].

Primary API
-----------

    from io_bridge import IOConfig, load_inputs, save_result

    cfg = IOConfig(
        distances_path="./distances.npy",
        initial_labels_path=None,        # None -> classifier first pass
        axis_order="zyx",
    )
    distances, labels = load_inputs(cfg)
"""

from __future__ import annotations

import json
import os
import subprocess
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from mrf_errors import InvalidArgument


@dataclass
class IOConfig:
    """Configuration for load_inputs.

    - distances_path: .npy/.npz file with the per-voxel, per-class distances
    - initial_labels_path: optional .npy/.npz with the starting labels
    - distances_key / labels_key: array names inside .npz archives
    - axis_order: "zyx" (default) or "xyz" for the spatial axes on disk
    - label_dtype: integer dtype of the label volume written by save_result
    """

    distances_path: str
    initial_labels_path: Optional[str] = None
    distances_key: Optional[str] = None
    labels_key: Optional[str] = None
    axis_order: str = "zyx"
    label_dtype: np.dtype = np.int32


def _read_array(path: str, key: Optional[str] = None) -> np.ndarray:
    if not os.path.exists(path):
        raise FileNotFoundError(path)
    if path.endswith(".npz"):
        with np.load(path) as d:
            if key is None:
                if len(d.files) != 1:
                    raise InvalidArgument(
                        f"{path} holds {len(d.files)} arrays; set a key to pick one of {d.files}")
                key = d.files[0]
            return np.asarray(d[key])
    return np.load(path)


def load_volume(path: str, key: Optional[str] = None, axis_order: str = "zyx",
                trailing_axis: bool = False) -> np.ndarray:
    """Load a 3-D volume (optionally with one trailing non-spatial axis) as [z, y, x(, C)]."""
    arr = _read_array(path, key)
    ndim = 4 if trailing_axis else 3
    if arr.ndim != ndim:
        raise InvalidArgument(f"{path}: expected a {ndim}-D array, got shape {arr.shape}")
    axis_order = axis_order.lower()
    if axis_order == "xyz":
        arr = arr.transpose((2, 1, 0, 3) if trailing_axis else (2, 1, 0))
    elif axis_order != "zyx":
        raise InvalidArgument("axis_order must be 'zyx' or 'xyz'")
    return np.ascontiguousarray(arr)


def load_inputs(cfg: IOConfig) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Return (distances[z,y,x,C] float64, initial labels[z,y,x] or None)."""
    dist = load_volume(cfg.distances_path, cfg.distances_key, cfg.axis_order,
                       trailing_axis=True).astype(np.float64, copy=False)
    labels = None
    if cfg.initial_labels_path:
        labels = load_volume(cfg.initial_labels_path, cfg.labels_key, cfg.axis_order)
        if labels.shape != dist.shape[:3]:
            raise InvalidArgument(
                f"initial labels shape {labels.shape} does not match distances {dist.shape[:3]}")
    return dist, labels


def _git_rev() -> str:
    try:
        return subprocess.check_output(["git", "rev-parse", "HEAD"],
                                       stderr=subprocess.DEVNULL).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def parse_label_dtype(value) -> np.dtype:
    """Integer dtype for the written label volume (e.g. "uint8", "int32")."""
    try:
        dt = np.dtype(value)
    except TypeError as exc:
        raise InvalidArgument(f"label_dtype: not a dtype: {value!r}") from exc
    if not np.issubdtype(dt, np.integer):
        raise InvalidArgument(f"label_dtype must be an integer dtype, got {dt}")
    return dt


def save_result(out_dir: str, result, meta: dict, label_dtype=np.int32,
                axis_order: str = "zyx") -> str:
    """Write labels.npz plus a labels.meta.json sidecar; return the npz path."""
    label_dtype = parse_label_dtype(label_dtype)
    if result.labels.size and result.labels.max() > np.iinfo(label_dtype).max:
        raise InvalidArgument(f"class ids up to {result.labels.max()} do not fit in {label_dtype}")
    os.makedirs(out_dir, exist_ok=True)
    labels = result.labels.astype(label_dtype, copy=False)
    if axis_order.lower() == "xyz":
        labels = labels.transpose(2, 1, 0)
    history = np.asarray(result.changed_history, dtype=np.int64)
    npz_path = os.path.join(out_dir, "labels.npz")
    np.savez(npz_path,
             labels=labels,
             iterations=np.int32(result.iterations),
             error_rate=np.float64(result.error_rate),
             status=np.array(result.status.value),
             changed_history=history,
             axis_order=np.array(axis_order))
    sidecar = dict(meta)
    sidecar.update({
        "status": result.status.value,
        "iterations": int(result.iterations),
        "error_rate": float(result.error_rate),
        "changed_history": [int(n) for n in history],
        "shape_zyx": [int(n) for n in result.labels.shape],
        "label_dtype": label_dtype.name,
        "git_rev": _git_rev(),
        "output_npz": os.path.basename(npz_path),
    })
    with open(os.path.join(out_dir, "labels.meta.json"), "w") as f:
        json.dump(sidecar, f, indent=2)
    return npz_path


__all__ = ["IOConfig", "load_volume", "load_inputs", "parse_label_dtype", "save_result"]
