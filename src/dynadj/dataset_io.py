"""
NPZ input/output for field series and adjustment results.

Series NPZ schema (one variable per file):
  values: (n_time, n_lat, n_lon) float
  lat: (n_lat,) ascending degrees
  lon: (n_lon,) degrees in [0, 360]
  times: (n_time,) ISO dates (datetime64[D] or strings)
  name: optional variable name

The analogue engine never touches files; drivers load series here, run the
workflow, and write the result NPZ.
"""

from __future__ import annotations

from dataclasses import asdict
from pathlib import Path

import numpy as np

from .errors import DataContractError
from .grid import FieldSeries, GridSpec
from .workflow import AdjustmentResult

SERIES_KEYS = ("values", "lat", "lon", "times")


def load_field_series(npz_path: Path, *, name: str | None = None) -> FieldSeries:
    """Load one variable's series; `name` overrides the stored name."""
    npz_path = Path(npz_path)
    with np.load(npz_path, allow_pickle=False) as z:
        missing = [k for k in SERIES_KEYS if k not in z.files]
        if missing:
            raise DataContractError(f"{npz_path} is missing keys {missing}.")
        values = np.asarray(z["values"], dtype=np.float64)
        lat = np.asarray(z["lat"], dtype=np.float64)
        lon = np.asarray(z["lon"], dtype=np.float64)
        times = np.asarray(z["times"]).astype("datetime64[D]")
        stored_name = str(np.asarray(z["name"]).item()) if "name" in z.files else npz_path.stem
    if values.ndim != 3:
        raise DataContractError(f"{npz_path}: values must be (n_time, n_lat, n_lon); got {values.shape}.")
    series = FieldSeries(
        values=values.reshape(values.shape[0], -1),
        grid=GridSpec(lat=lat, lon=lon),
        times=times,
        name=stored_name if name is None else str(name),
    )
    series.validate()
    return series


def save_field_series(series: FieldSeries, npz_path: Path) -> None:
    npz_path = Path(npz_path)
    npz_path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(
        npz_path,
        values=series.maps(),
        lat=series.grid.lat,
        lon=series.grid.lon,
        times=np.asarray(series.times, dtype="datetime64[D]").astype(str),
        name=np.array(series.name),
    )


def save_adjustment(result: AdjustmentResult, npz_path: Path, *, circ_name: str = "circ", resp_name: str = "resp") -> None:
    """Write reconstructions, pools and run configuration to one compressed NPZ."""
    npz_path = Path(npz_path)
    npz_path.parent.mkdir(parents=True, exist_ok=True)
    cfg = asdict(result.config)
    np.savez_compressed(
        npz_path,
        circ_iters=result.circ_iters,
        circ_mean=result.circ_mean,
        resp_iters=result.resp_iters,
        resp_mean=result.resp_mean,
        n_truncated=result.n_truncated,
        analog_indices=result.analog_indices,
        analog_distances=result.analog_distances,
        times=np.asarray(result.times, dtype="datetime64[D]").astype(str),
        circ_lat=result.circ_grid.lat,
        circ_lon=result.circ_grid.lon,
        resp_lat=result.resp_grid.lat,
        resp_lon=result.resp_grid.lon,
        circ_name=np.array(circ_name),
        resp_name=np.array(resp_name),
        method=np.array(str(cfg["method"]).upper()),
        cadence=np.array(str(cfg["cadence"]).lower()),
        n_analogs=np.int64(cfg["n_analogs"]),
        n_subsample=np.int64(cfg["n_subsample"]),
        n_iter=np.int64(cfg["n_iter"]),
        window_days=np.int64(cfg["window_days"]),
        seed=np.int64(cfg["seed"]),
        rcond=np.float64(np.nan if cfg["rcond"] is None else cfg["rcond"]),
    )
    print(f"[write] {npz_path} n_time={result.n_time} n_iter={int(cfg['n_iter'])}", flush=True)


def load_adjustment(npz_path: Path) -> dict:
    """Load a result NPZ written by save_adjustment into a plain dict of arrays/scalars."""
    with np.load(Path(npz_path), allow_pickle=False) as z:
        out = {k: np.asarray(z[k]).copy() for k in z.files}
    out["times"] = out["times"].astype("datetime64[D]")
    for k in ("circ_name", "resp_name", "method", "cadence"):
        out[k] = str(out[k].item())
    for k in ("n_analogs", "n_subsample", "n_iter", "window_days", "seed"):
        out[k] = int(out[k])
    rcond = float(out["rcond"])
    out["rcond"] = None if np.isnan(rcond) else rcond
    return out
