from __future__ import annotations

import json
import os
import sys

import numpy as np
import pytest
import yaml

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from mrf_errors import InvalidArgument
from icm import ICMResult, State
from io_bridge import IOConfig, load_inputs, load_volume, save_result
from mrf_filter import MRFConfig, apply_mrf, config_from_dict, main, required_input_region


def _two_slab_distances(shape=(6, 5, 4)):
    """Class 0 in the lower half of z, class 1 above, one mislabeled voxel per slab."""
    d, h, w = shape
    truth = np.zeros(shape, dtype=np.int32)
    truth[d // 2:] = 1
    dist = np.stack([(truth != 0) * 4.0, (truth != 1) * 4.0], axis=-1)
    dist[1, 2, 2] = (3.0, 0.0)  # wants class 1 in the class-0 slab
    dist[4, 2, 1] = (0.0, 3.0)  # wants class 0 in the class-1 slab
    return truth, dist


def test_required_input_region_is_full_volume():
    assert required_input_region((4, 5, 6)) == ((0, 4), (0, 5), (0, 6))


def test_apply_mrf_smooths_outliers():
    truth, dist = _two_slab_distances()
    first_pass = np.argmin(dist, axis=-1)
    assert (first_pass != truth).sum() == 2
    result = apply_mrf(dist, config=MRFConfig(max_iterations=10))
    assert result.status == State.CONVERGED
    assert np.array_equal(result.labels, truth)


def test_apply_mrf_rejects_flat_table():
    with pytest.raises(InvalidArgument):
        apply_mrf(np.zeros((27, 2)))


def test_config_from_dict():
    cfg = config_from_dict({"number_of_classes": "3", "max_iterations": 7,
                            "error_tolerance": "0.01", "output_dir": "x"})
    assert cfg.number_of_classes == 3
    assert cfg.max_iterations == 7
    assert cfg.error_tolerance == pytest.approx(0.01)
    assert cfg.reexamine is True
    with pytest.raises(InvalidArgument):
        config_from_dict({"beta": 1.0})


@pytest.mark.parametrize("cfg", [
    {"max_iterations": "abc"},
    {"max_iterations": float("inf")},
    {"max_iterations": None},
    {"number_of_classes": "x"},
    {"error_tolerance": "x"},
])
def test_config_from_dict_rejects_non_numeric_values(cfg):
    with pytest.raises(InvalidArgument):
        config_from_dict(cfg)


def test_load_volume_axis_order(tmp_path):
    arr = np.arange(2 * 3 * 4).reshape(2, 3, 4)
    p = tmp_path / "vol.npy"
    np.save(p, arr)
    assert np.array_equal(load_volume(str(p)), arr)
    assert np.array_equal(load_volume(str(p), axis_order="xyz"), arr.transpose(2, 1, 0))
    with pytest.raises(InvalidArgument):
        load_volume(str(p), trailing_axis=True)
    with pytest.raises(FileNotFoundError):
        load_volume(str(tmp_path / "missing.npy"))


def test_load_inputs_npz_requires_key_when_ambiguous(tmp_path):
    _, dist = _two_slab_distances()
    p = tmp_path / "inputs.npz"
    np.savez(p, dist=dist, other=np.zeros(3))
    with pytest.raises(InvalidArgument):
        load_inputs(IOConfig(distances_path=str(p)))
    got, labels = load_inputs(IOConfig(distances_path=str(p), distances_key="dist"))
    assert labels is None
    assert np.array_equal(got, dist)


def test_cli_writes_labels_and_sidecar(tmp_path, capsys):
    truth, dist = _two_slab_distances()
    np.save(tmp_path / "dist.npy", dist)
    np.save(tmp_path / "init.npy", np.argmin(dist, axis=-1).astype(np.int32))
    out_dir = tmp_path / "out"
    cfg = {
        "distances_path": str(tmp_path / "dist.npy"),
        "initial_labels_path": str(tmp_path / "init.npy"),
        "output_dir": str(out_dir),
        "max_iterations": 10,
        "error_tolerance": 0.0,
    }
    cfg_path = tmp_path / "run.yaml"
    cfg_path.write_text(yaml.safe_dump(cfg))

    result = main(["--config", str(cfg_path), "--verbose"])
    assert result.status == State.CONVERGED
    printed = capsys.readouterr().out
    assert "ICM iter=0" in printed
    assert "status=converged" in printed

    with np.load(out_dir / "labels.npz") as d:
        assert np.array_equal(d["labels"], truth)
        assert int(d["iterations"]) == result.iterations
        assert str(d["status"]) == "converged"
    with open(out_dir / "labels.meta.json") as f:
        meta = json.load(f)
    assert meta["status"] == "converged"
    assert meta["changed_history"] == result.changed_history
    assert meta["mrf"]["max_iterations"] == 10
    assert meta["shape_zyx"] == list(truth.shape)


def test_cli_full_sweep_gives_same_labels(tmp_path):
    truth, dist = _two_slab_distances()
    np.save(tmp_path / "dist.npy", dist)
    cfg_path = tmp_path / "run.yaml"
    cfg_path.write_text(yaml.safe_dump({"distances_path": str(tmp_path / "dist.npy"),
                                        "output_dir": str(tmp_path / "out")}))
    fast = main(["--config", str(cfg_path)])
    full = main(["--config", str(cfg_path), "--full-sweep"])
    assert np.array_equal(fast.labels, full.labels)
    assert fast.changed_history == full.changed_history


def test_cli_writes_configured_label_dtype(tmp_path):
    truth, dist = _two_slab_distances()
    np.save(tmp_path / "dist.npy", dist)
    out_dir = tmp_path / "out"
    cfg_path = tmp_path / "run.yaml"
    cfg_path.write_text(yaml.safe_dump({"distances_path": str(tmp_path / "dist.npy"),
                                        "output_dir": str(out_dir),
                                        "label_dtype": "uint8"}))
    main(["--config", str(cfg_path)])
    with np.load(out_dir / "labels.npz") as d:
        assert d["labels"].dtype == np.uint8
        assert np.array_equal(d["labels"], truth)
    with open(out_dir / "labels.meta.json") as f:
        assert json.load(f)["label_dtype"] == "uint8"

    cfg_path.write_text(yaml.safe_dump({"distances_path": str(tmp_path / "dist.npy"),
                                        "output_dir": str(out_dir),
                                        "label_dtype": "float32"}))
    with pytest.raises(InvalidArgument):
        main(["--config", str(cfg_path)])


def test_save_result_rejects_dtype_too_small(tmp_path):
    labels = np.zeros((3, 3, 3), dtype=np.int32)
    labels[1, 1, 1] = 300
    result = ICMResult(labels=labels, iterations=1, error_rate=0.0,
                       status=State.CONVERGED, changed_history=[0])
    with pytest.raises(InvalidArgument):
        save_result(str(tmp_path), result, {}, label_dtype=np.uint8)
    assert not (tmp_path / "labels.npz").exists()
