from __future__ import annotations

import argparse
import os
import time
from dataclasses import asdict, dataclass, fields
from typing import Optional, Tuple

import numpy as np
import yaml

from distance_source import ArrayDistanceSource, initial_labels_from
from mrf_errors import InvalidArgument
from icm import ICMEngine, ICMResult
from io_bridge import IOConfig, load_inputs, parse_label_dtype, save_result

BBox3D = Tuple[Tuple[int, int], Tuple[int, int], Tuple[int, int]]

_RUN_KEYS = ("distances_path", "initial_labels_path", "distances_key", "labels_key",
             "axis_order", "label_dtype", "output_dir", "profile")


@dataclass
class MRFConfig:
    """ICM settings.

    - number_of_classes: None -> taken from the distance table
    - max_iterations: hard cap on sweeps
    - error_tolerance: stop once changed/total falls below this, in [0, 1)
    - weights: optional 27-entry table (flat or 3x3x3 [dz][dy][dx])
    - reexamine: only revisit voxels near last iteration's changes
    """

    number_of_classes: Optional[int] = None
    max_iterations: int = 50
    error_tolerance: float = 0.0
    weights: Optional[list] = None
    reexamine: bool = True
    verbose: bool = False


def parse_config(path: str) -> dict:
    with open(path, "r") as f:
        cfg = yaml.safe_load(f)
    if cfg is None:
        cfg = {}
    if not isinstance(cfg, dict):
        raise InvalidArgument(f"{path}: top level of the config must be a mapping")
    return cfg


def config_from_dict(cfg: dict) -> MRFConfig:
    known = {f.name for f in fields(MRFConfig)}
    unknown = set(cfg) - known - set(_RUN_KEYS)
    if unknown:
        raise InvalidArgument(f"unknown config keys: {sorted(unknown)}")
    kwargs = {k: cfg[k] for k in known if k in cfg}
    out = MRFConfig(**kwargs)
    try:
        if out.number_of_classes is not None:
            out.number_of_classes = int(out.number_of_classes)
        out.max_iterations = int(out.max_iterations)
        out.error_tolerance = float(out.error_tolerance)
    except (TypeError, ValueError, OverflowError) as exc:
        raise InvalidArgument(f"bad numeric config value: {exc}") from exc
    out.reexamine = bool(out.reexamine)
    out.verbose = bool(out.verbose)
    return out


def required_input_region(shape: Tuple[int, int, int]) -> BBox3D:
    """Input extent needed to produce a [z, y, x] output volume of ``shape``.

    ICM couples every voxel to the whole field, so this is always the full volume.
    """
    d, h, w = (int(n) for n in shape)
    return (0, d), (0, h), (0, w)


def build_engine(distances: np.ndarray, initial_labels: Optional[np.ndarray] = None,
                 config: Optional[MRFConfig] = None) -> ICMEngine:
    config = config or MRFConfig()
    source = ArrayDistanceSource(distances)
    if source.shape is None:
        raise InvalidArgument("distances must be a (depth, height, width, classes) volume")
    if initial_labels is None:
        initial_labels = initial_labels_from(source, source.shape)
    return ICMEngine(classifier=source,
                     number_of_classes=config.number_of_classes,
                     initial_labels=initial_labels,
                     max_iterations=config.max_iterations,
                     error_tolerance=config.error_tolerance,
                     weights=config.weights,
                     reexamine=config.reexamine,
                     verbose=config.verbose)


def apply_mrf(distances: np.ndarray, initial_labels: Optional[np.ndarray] = None,
              config: Optional[MRFConfig] = None) -> ICMResult:
    """Relabel a volume from its [z, y, x, C] distance table.

    Without ``initial_labels`` the run starts from the classifier's own
    argmin labeling.
    """
    return build_engine(distances, initial_labels, config).run()


def main(argv=None):
    ap = argparse.ArgumentParser(description="MRF/ICM relabeling of a 3-D label volume.")
    ap.add_argument("--config", required=True)
    ap.add_argument("--verbose", action="store_true", help="Print one line per ICM iteration.")
    ap.add_argument("--full-sweep", action="store_true",
                    help="Re-evaluate every voxel every iteration.")
    args = ap.parse_args(argv)

    cfg = parse_config(args.config)
    mrf_cfg = config_from_dict(cfg)
    if args.verbose:
        mrf_cfg.verbose = True
    if args.full_sweep:
        mrf_cfg.reexamine = False
    if "distances_path" not in cfg:
        raise InvalidArgument("config must set distances_path")

    io_cfg = IOConfig(
        distances_path=str(cfg["distances_path"]),
        initial_labels_path=cfg.get("initial_labels_path"),
        distances_key=cfg.get("distances_key"),
        labels_key=cfg.get("labels_key"),
        axis_order=str(cfg.get("axis_order", "zyx")),
        label_dtype=parse_label_dtype(cfg.get("label_dtype", "int32")),
    )

    t0 = time.time()
    distances, labels = load_inputs(io_cfg)
    t_load = time.time()
    result = apply_mrf(distances, labels, mrf_cfg)
    t_icm = time.time()

    out_dir = cfg.get("output_dir", "./mrf_out")
    meta = {
        "times": {"load": float(t_load - t0), "icm": float(t_icm - t_load)},
        "inputs": {
            "distances_path": io_cfg.distances_path,
            "initial_labels_path": io_cfg.initial_labels_path,
            "axis_order": io_cfg.axis_order,
        },
        "mrf": asdict(mrf_cfg),
        "config": cfg,
    }
    path = save_result(out_dir, result, meta, label_dtype=io_cfg.label_dtype,
                       axis_order=io_cfg.axis_order)

    print(f"status={result.status.value} iterations={result.iterations} "
          f"error_rate={result.error_rate:.6g} -> {os.path.abspath(path)}")
    if cfg.get("profile", False):
        print(f"times: load={t_load-t0:.2f}s icm={t_icm-t_load:.2f}s")
    return result


if __name__ == "__main__":
    main()
