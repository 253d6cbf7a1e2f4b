"""
Tests for NPZ series and result artifacts.
"""
from __future__ import annotations

import numpy as np
import pytest

from dynadj.dataset_io import load_adjustment, load_field_series, save_adjustment, save_field_series
from dynadj.errors import DataContractError
from dynadj.grid import FieldSeries, GridSpec
from dynadj.workflow import AnalogConfig, run_dynamical_adjustment


def _series(name: str, grid: GridSpec, seed: int) -> FieldSeries:
    times = np.array(
        [np.datetime64(f"{2000 + k // 12:04d}-{k % 12 + 1:02d}-01") for k in range(48)],
        dtype="datetime64[D]",
    )
    rng = np.random.default_rng(seed)
    return FieldSeries(values=rng.standard_normal((48, grid.n_pix)), grid=grid, times=times, name=name)


def test_series_npz_keys_and_shapes(tmp_path):
    """save_field_series writes (n_time, n_lat, n_lon) values that load back unchanged."""
    grid = GridSpec(lat=[10.0, 20.0], lon=[0.0, 90.0, 180.0])
    s = _series("slp", grid, 0)
    path = tmp_path / "slp.npz"
    save_field_series(s, path)
    with np.load(path, allow_pickle=False) as z:
        assert z["values"].shape == (48, 2, 3)
    loaded = load_field_series(path)
    assert loaded.name == "slp"
    assert loaded.grid.same_as(grid)
    np.testing.assert_array_equal(loaded.times, s.times)
    np.testing.assert_array_equal(loaded.values, s.values)


def test_series_npz_missing_keys(tmp_path):
    """A series NPZ without lon/times is a data-contract error."""
    path = tmp_path / "bad.npz"
    np.savez_compressed(path, values=np.zeros((2, 2, 2)), lat=np.array([0.0, 1.0]))
    with pytest.raises(DataContractError, match="missing keys"):
        load_field_series(path)


def test_adjustment_artifact(tmp_path):
    """save_adjustment/load_adjustment keep arrays, names and config scalars."""
    circ = _series("slp", GridSpec(lat=[40.0, 50.0, 60.0], lon=[0.0, 10.0, 20.0]), 1)
    resp = _series("tas", GridSpec(lat=[45.0, 55.0], lon=[5.0, 15.0]), 2)
    cfg = AnalogConfig(n_analogs=3, n_subsample=2, n_iter=2, seed=3, progress=False)
    res = run_dynamical_adjustment(circ, resp, cfg)
    path = tmp_path / "out" / "tas_dynadj.npz"
    save_adjustment(res, path, circ_name="slp", resp_name="tas")
    art = load_adjustment(path)
    assert art["resp_iters"].shape == (2, 48, 2, 2)
    np.testing.assert_array_equal(art["resp_mean"], res.resp_mean)
    np.testing.assert_array_equal(art["analog_indices"], res.analog_indices)
    np.testing.assert_array_equal(art["times"], res.times)
    assert art["method"] == "EUCLIDE"
    assert art["resp_name"] == "tas"
    assert art["n_subsample"] == 2
    assert art["rcond"] is None
