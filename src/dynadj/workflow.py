"""
Dynamical adjustment driver: per-time-step analogue search + reconstruction.

For every target time step t (and ensemble member k):

  candidates = policy(t) minus t itself (same-series runs only)
  distances  = DistanceEngine(target_t, training[candidates])
  pool       = N_a nearest candidates
  output[t]  = mean/stack of n_iter pseudo-inverse reconstructions from pool

Time steps are independent. Each one gets its own generator
default_rng([seed, member, t]), so serial and multi-process runs give identical
arrays. Workers hold the read-only training series and return per-step
AggregateOutputs; the parent writes them into the output slots.
"""

from __future__ import annotations

import multiprocessing as mp
import warnings
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
from tqdm import tqdm

from .distance import TEWELES, compute_distances, parse_method, teweles_weights
from .errors import ConfigurationError, DataContractError, NumericalWarning
from .grid import FieldSeries, GridSpec, validate_pair
from .reconstruct import AggregateOutput, aggregate_iterations
from .selection import (
    CADENCES,
    AnalogPool,
    ExclusionPolicy,
    candidate_indices,
    policy_for_cadence,
    rank_analogs,
)


@dataclass(frozen=True)
class AnalogConfig:
    method: str = "EUCLIDE"  # 'EUCLIDE' or 'TEWELES'
    n_analogs: int = 80  # N_a
    n_subsample: int = 50  # N_b
    n_iter: int = 100
    cadence: str = "monthly"  # 'monthly' or 'daily'
    window_days: int = 15  # N_d, daily only
    seed: int = 0
    rcond: float | None = None
    n_workers: int = 1
    progress: bool = True

    def validate(self) -> None:
        parse_method(self.method)
        if str(self.cadence).strip().lower() not in CADENCES:
            raise ConfigurationError(f"Unknown cadence {self.cadence!r}; expected one of {CADENCES}.")
        if int(self.n_analogs) < 1:
            raise ConfigurationError("n_analogs must be >= 1.")
        if int(self.n_subsample) < 1:
            raise ConfigurationError("n_subsample must be >= 1.")
        if int(self.n_subsample) > int(self.n_analogs):
            raise ConfigurationError(
                f"n_subsample={int(self.n_subsample)} must not exceed n_analogs={int(self.n_analogs)}."
            )
        if int(self.n_iter) < 1:
            raise ConfigurationError("n_iter must be >= 1.")
        if int(self.window_days) < 0:
            raise ConfigurationError("window_days must be >= 0.")
        if int(self.seed) < 0:
            raise ConfigurationError("seed must be a non-negative integer.")
        if self.rcond is not None and not float(self.rcond) >= 0.0:
            raise ConfigurationError("rcond must be >= 0 or None.")
        if int(self.n_workers) < 1:
            raise ConfigurationError("n_workers must be >= 1.")

    def policy(self) -> ExclusionPolicy:
        return policy_for_cadence(self.cadence, self.window_days)


@dataclass(frozen=True)
class AdjustmentResult:
    """
    Reconstructed fields for one target series.

    Shapes:
      circ_iters: (n_iter, n_time, n_lat_c, n_lon_c)
      circ_mean:  (n_time, n_lat_c, n_lon_c)
      resp_iters: (n_iter, n_time, n_lat_r, n_lon_r)
      resp_mean:  (n_time, n_lat_r, n_lon_r)
      n_truncated: (n_time,) singular values zeroed per step (all iterations)
      analog_indices, analog_distances: (n_time, n_analogs) pools, indices into training
    """

    circ_iters: np.ndarray
    circ_mean: np.ndarray
    resp_iters: np.ndarray
    resp_mean: np.ndarray
    n_truncated: np.ndarray
    analog_indices: np.ndarray
    analog_distances: np.ndarray
    times: np.ndarray
    circ_grid: GridSpec
    resp_grid: GridSpec
    config: AnalogConfig = field(default_factory=AnalogConfig)

    @property
    def n_time(self) -> int:
        return int(self.times.size)

    def residual(self, resp: FieldSeries) -> np.ndarray:
        """
        Observed response minus its circulation-driven part.

        Args:
          resp: response series whose times include every adjusted time step.

        Returns:
          (n_time, n_lat_r, n_lon_r) residual attributed to other forcings.
        """
        if not resp.grid.same_as(self.resp_grid):
            raise DataContractError("Response grid differs from the adjusted response grid.")
        pos = np.searchsorted(resp.times, self.times)
        pos = np.minimum(pos, resp.n_time - 1)
        if not bool(np.array_equal(resp.times[pos], self.times)):
            raise DataContractError("Response series does not cover the adjusted time steps.")
        return resp.maps()[pos] - self.resp_mean


@dataclass(frozen=True)
class EnsembleResult:
    members: tuple[AdjustmentResult, ...]

    @property
    def circ_iters(self) -> np.ndarray:
        return np.stack([m.circ_iters for m in self.members], axis=0)

    @property
    def circ_mean(self) -> np.ndarray:
        return np.stack([m.circ_mean for m in self.members], axis=0)

    @property
    def resp_iters(self) -> np.ndarray:
        return np.stack([m.resp_iters for m in self.members], axis=0)

    @property
    def resp_mean(self) -> np.ndarray:
        return np.stack([m.resp_mean for m in self.members], axis=0)


def step_rng(seed: int, member: int, time_index: int) -> np.random.Generator:
    """Independent, reproducible generator for one (member, time step) unit."""
    return np.random.default_rng([int(seed), int(member), int(time_index)])


def adjust_time_step(
    target_circ: np.ndarray,
    target_time: np.datetime64,
    *,
    circ_training: FieldSeries,
    resp_training: FieldSeries,
    cfg: AnalogConfig,
    policy: ExclusionPolicy,
    rng: np.random.Generator,
    target_index: int | None = None,
) -> tuple[AggregateOutput, AnalogPool]:
    """
    Full analogue pipeline for one target map.

    Args:
      target_circ: (n_pix_c,) target circulation map.
      target_time: timestamp driving the exclusion policy.
      target_index: position of the target in the training series (same-series runs).
    """
    cand = candidate_indices(
        policy,
        target_time=target_time,
        training_times=circ_training.times,
        target_index=target_index,
    )
    label = f"target {np.datetime_as_string(np.datetime64(target_time, 'D'))}"
    if int(cand.size) < int(cfg.n_analogs):
        # Fail before paying for the distances.
        rank_analogs(np.zeros(cand.size), cand, int(cfg.n_analogs), label=label)
    dist = compute_distances(
        target_circ,
        circ_training.values[cand],
        method=cfg.method,
        grid=circ_training.grid,
    )
    pool = rank_analogs(dist, cand, int(cfg.n_analogs), label=label)
    agg = aggregate_iterations(
        target_circ,
        pool,
        circ_training.values,
        resp_training.values,
        n_subsample=int(cfg.n_subsample),
        n_iter=int(cfg.n_iter),
        rng=rng,
        rcond=cfg.rcond,
    )
    return agg, pool


# --- Worker plumbing (module level so spawn-started processes can import it) ---

_WORKER_STATE: dict = {}


def _init_worker(state: dict) -> None:
    _WORKER_STATE.clear()
    _WORKER_STATE.update(state)


def _run_steps(
    step_indices: Sequence[int],
    state: dict | None = None,
    *,
    desc: str | None = None,
) -> list[tuple[int, AggregateOutput, AnalogPool]]:
    s = _WORKER_STATE if state is None else state
    target: FieldSeries = s["target"]
    cfg: AnalogConfig = s["cfg"]
    same_series: bool = s["same_series"]
    out = []
    it = step_indices
    if desc is not None and cfg.progress:
        it = tqdm(step_indices, desc=desc, leave=True)
    for t in it:
        t = int(t)
        agg, pool = adjust_time_step(
            target.values[t],
            target.times[t],
            circ_training=s["circ_training"],
            resp_training=s["resp_training"],
            cfg=cfg,
            policy=s["policy"],
            rng=step_rng(cfg.seed, s["member"], t),
            target_index=t if same_series else None,
        )
        out.append((t, agg, pool))
    return out


def _period_indices(times: np.ndarray, period: tuple | None) -> np.ndarray:
    if period is None:
        return np.arange(times.size, dtype=np.int64)
    start = np.datetime64(period[0], "D")
    end = np.datetime64(period[1], "D")
    if end < start:
        raise ConfigurationError(f"Analysis period end {end} precedes start {start}.")
    idx = np.nonzero((times >= start) & (times <= end))[0].astype(np.int64)
    if idx.size == 0:
        raise ConfigurationError(f"No time steps within analysis period [{start}, {end}].")
    return idx


def adjust_series(
    target_circ: FieldSeries,
    circ_training: FieldSeries,
    resp_training: FieldSeries,
    cfg: AnalogConfig,
    *,
    same_series: bool,
    member: int = 0,
    period: tuple | None = None,
    policy: ExclusionPolicy | None = None,
    label: str = "adjust",
) -> AdjustmentResult:
    """
    Adjust every target time step of `target_circ` against a training pair.

    Args:
      target_circ: circulation series whose maps are reconstructed.
      circ_training, resp_training: time-aligned analogue source.
      same_series: True when target_circ is circ_training (enables self exclusion).
      member: ensemble member id (feeds the per-step seeds).
      period: optional inclusive (start, end) dates restricting the targets.
      policy: overrides the cadence policy from cfg.
    """
    cfg.validate()
    validate_pair(circ_training, resp_training)
    target_circ.validate()
    if not target_circ.grid.same_as(circ_training.grid):
        raise DataContractError("Target and training circulation series must share one grid.")
    if same_series and not (
        target_circ.n_time == circ_training.n_time and bool(np.array_equal(target_circ.times, circ_training.times))
    ):
        raise DataContractError("same_series=True requires the target to be the training circulation series.")
    if parse_method(cfg.method) == TEWELES:
        teweles_weights(circ_training.grid)
    policy = cfg.policy() if policy is None else policy

    steps = _period_indices(target_circ.times, period)
    n_steps = int(steps.size)
    cg, rg = circ_training.grid, resp_training.grid
    print(
        f"[config] {label}: method={parse_method(cfg.method)} policy={policy.name} "
        f"n_analogs={int(cfg.n_analogs)} n_subsample={int(cfg.n_subsample)} n_iter={int(cfg.n_iter)} "
        f"seed={int(cfg.seed)} workers={int(cfg.n_workers)}",
        flush=True,
    )
    print(
        f"[grid] {label}: circ={cg.n_lat}x{cg.n_lon} resp={rg.n_lat}x{rg.n_lon} "
        f"n_train={circ_training.n_time} n_target={n_steps}",
        flush=True,
    )

    state = dict(
        target=target_circ,
        circ_training=circ_training,
        resp_training=resp_training,
        cfg=cfg,
        policy=policy,
        same_series=bool(same_series),
        member=int(member),
    )

    n_workers = min(int(cfg.n_workers), n_steps)
    if n_workers <= 1:
        results = _run_steps(steps.tolist(), state, desc=label)
    else:
        by_worker: list[list[int]] = [[] for _ in range(n_workers)]
        for i, t in enumerate(steps.tolist()):
            by_worker[i % n_workers].append(int(t))
        ctx = mp.get_context("spawn")
        with ctx.Pool(n_workers, initializer=_init_worker, initargs=(state,)) as pool:
            chunks = pool.map(_run_steps, by_worker)
        results = [r for chunk in chunks for r in chunk]

    n_iter = int(cfg.n_iter)
    n_a = int(cfg.n_analogs)
    circ_iters = np.empty((n_iter, n_steps, cg.n_pix), dtype=np.float64)
    resp_iters = np.empty((n_iter, n_steps, rg.n_pix), dtype=np.float64)
    circ_mean = np.empty((n_steps, cg.n_pix), dtype=np.float64)
    resp_mean = np.empty((n_steps, rg.n_pix), dtype=np.float64)
    n_truncated = np.zeros((n_steps,), dtype=np.int64)
    analog_indices = np.empty((n_steps, n_a), dtype=np.int64)
    analog_distances = np.empty((n_steps, n_a), dtype=np.float64)

    slot = {int(t): i for i, t in enumerate(steps.tolist())}
    for t, agg, pool_t in results:
        i = slot[int(t)]
        circ_iters[:, i, :] = agg.circ_iters
        resp_iters[:, i, :] = agg.resp_iters
        circ_mean[i] = agg.circ_mean
        resp_mean[i] = agg.resp_mean
        n_truncated[i] = agg.n_truncated
        analog_indices[i] = pool_t.indices
        analog_distances[i] = pool_t.distances

    print(
        f"[adjust] {label}: {n_steps} steps, mean pool distance={float(np.mean(analog_distances)):.4g}",
        flush=True,
    )

    n_bad = int(np.count_nonzero(n_truncated))
    if n_bad > 0:
        msg = (
            f"{label}: {n_bad}/{n_steps} time steps had near-singular analogue sets "
            f"({int(n_truncated.sum())} singular values zeroed)."
        )
        print(f"[numerics] {msg}", flush=True)
        warnings.warn(msg, NumericalWarning, stacklevel=2)

    return AdjustmentResult(
        circ_iters=circ_iters.reshape(n_iter, n_steps, cg.n_lat, cg.n_lon),
        circ_mean=circ_mean.reshape(n_steps, cg.n_lat, cg.n_lon),
        resp_iters=resp_iters.reshape(n_iter, n_steps, rg.n_lat, rg.n_lon),
        resp_mean=resp_mean.reshape(n_steps, rg.n_lat, rg.n_lon),
        n_truncated=n_truncated,
        analog_indices=analog_indices,
        analog_distances=analog_distances,
        times=target_circ.times[steps].copy(),
        circ_grid=cg,
        resp_grid=rg,
        config=cfg,
    )


def run_dynamical_adjustment(
    circ: FieldSeries,
    resp: FieldSeries,
    cfg: AnalogConfig,
    *,
    period: tuple | None = None,
    policy: ExclusionPolicy | None = None,
) -> AdjustmentResult:
    """Adjust a single (circulation, response) pair against itself (leave-one-year-out)."""
    return adjust_series(circ, circ, resp, cfg, same_series=True, period=period, policy=policy, label="adjust")


def run_ensemble(
    members: Sequence[FieldSeries],
    circ_training: FieldSeries,
    resp_training: FieldSeries,
    cfg: AnalogConfig,
    *,
    period: tuple | None = None,
    policy: ExclusionPolicy | None = None,
) -> EnsembleResult:
    """
    Adjust each member of a perturbed ensemble against a shared training pair.

    Members are not part of the training series, so no self exclusion applies;
    the cadence policy (e.g. leave-one-year-out per month) still does.
    """
    if not members:
        raise ConfigurationError("run_ensemble needs at least one member.")
    out = []
    for k, member in enumerate(members):
        out.append(
            adjust_series(
                member,
                circ_training,
                resp_training,
                cfg,
                same_series=False,
                member=k,
                period=period,
                policy=policy,
                label=f"member{k:03d}",
            )
        )
    return EnsembleResult(members=tuple(out))
