#!/usr/bin/env python3
"""
Dynamical adjustment of one (circulation, response) pair stored as NPZ series.

Input series follow the dynadj.dataset_io schema (values/lat/lon/times).
Output: one NPZ with circ_iters, circ_mean, resp_iters, resp_mean, analogue
pools and the run configuration, plus resp_residual (observed - dynamical).

Usage:
  python analysis/run_adjustment.py <circ.npz> <resp.npz> <out.npz> [method] [cadence] [n_workers]

Example (monthly SLP analogues for surface temperature, 4 processes):
  python analysis/run_adjustment.py slp_monthly.npz tas_monthly.npz out/tas_dynadj.npz TEWELES monthly 4

If optional args are omitted, the parameters below are used.
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np

from dynadj import AnalogConfig, run_dynamical_adjustment
from dynadj.dataset_io import load_field_series, save_adjustment

# Parameters (override via argv or edit)
METHOD = "EUCLIDE"
CADENCE = "monthly"
N_ANALOGS = 80
N_SUBSAMPLE = 50
N_ITER = 100
WINDOW_DAYS = 15
SEED = 0
RCOND = None
N_WORKERS = 1
PERIOD = None  # e.g. ("1979-01-01", "2014-12-31")


def main() -> None:
    argv = sys.argv[1:]
    if len(argv) < 3:
        print(
            "Usage: run_adjustment.py <circ.npz> <resp.npz> <out.npz> [method] [cadence] [n_workers]",
            file=sys.stderr,
        )
        sys.exit(1)
    circ_path, resp_path, out_path = Path(argv[0]), Path(argv[1]), Path(argv[2])
    method = str(argv[3]) if len(argv) > 3 else METHOD
    cadence = str(argv[4]) if len(argv) > 4 else CADENCE
    n_workers = int(argv[5]) if len(argv) > 5 else N_WORKERS

    circ = load_field_series(circ_path)
    resp = load_field_series(resp_path)
    print(f"[load] {circ_path} name={circ.name} n_time={circ.n_time}", flush=True)
    print(f"[load] {resp_path} name={resp.name} n_time={resp.n_time}", flush=True)

    cfg = AnalogConfig(
        method=method,
        n_analogs=N_ANALOGS,
        n_subsample=N_SUBSAMPLE,
        n_iter=N_ITER,
        cadence=cadence,
        window_days=WINDOW_DAYS,
        seed=SEED,
        rcond=RCOND,
        n_workers=n_workers,
    )
    result = run_dynamical_adjustment(circ, resp, cfg, period=PERIOD)
    save_adjustment(result, out_path, circ_name=circ.name, resp_name=resp.name)

    residual = result.residual(resp)
    residual_path = out_path.with_name(out_path.stem + "_residual.npz")
    np.savez_compressed(
        residual_path,
        resp_residual=residual,
        times=np.asarray(result.times, dtype="datetime64[D]").astype(str),
        lat=result.resp_grid.lat,
        lon=result.resp_grid.lon,
    )
    print(f"[write] {residual_path}", flush=True)


if __name__ == "__main__":
    main()
