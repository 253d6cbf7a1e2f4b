"""
Randomized pseudo-inverse reconstruction from an analogue pool.

One iteration for a target circulation map f (n_pix,):

  1. Draw N_b of the N_a pool entries, uniformly without replacement.
  2. Stack their circulation maps as rows: A (N_b, n_pix).
  3. Economy SVD: A = U diag(s) Vt, U (N_b, k), s (k,), Vt (k, n_pix), k = min(N_b, n_pix).
  4. Coefficients: x = f Vt^T diag(1/s) U^T  (= f A^+), x (N_b,).
  5. Reconstructions: circ = x A, resp = x B with B (N_b, n_pix_resp) the
     same analogues' response maps. The same x is used for both variables.

Singular values s_k <= rcond * max(s) are treated as zero. rcond=None uses
eps * max(N_b, n_pix); rcond=0.0 inverts every non-zero singular value.

Iterations are repeated n_iter times per target; the full stack and its mean
are kept for both variables.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import scipy.linalg as la

from .errors import ConfigurationError
from .selection import AnalogPool


@dataclass(frozen=True)
class IterationResult:
    """One reconstruction of one target."""

    circ: np.ndarray  # (n_pix_circ,)
    resp: np.ndarray  # (n_pix_resp,)
    coefficients: np.ndarray  # (n_b,)
    subsample: np.ndarray  # (n_b,) training indices, aligned with coefficients
    n_truncated: int


@dataclass(frozen=True)
class AggregateOutput:
    """All iterations for one target and their mean."""

    circ_iters: np.ndarray  # (n_iter, n_pix_circ)
    resp_iters: np.ndarray  # (n_iter, n_pix_resp)
    circ_mean: np.ndarray  # (n_pix_circ,)
    resp_mean: np.ndarray  # (n_pix_resp,)
    n_truncated: int  # truncated singular values summed over iterations

    @property
    def n_iter(self) -> int:
        return int(self.circ_iters.shape[0])


def draw_subsample(pool_size: int, n_subsample: int, rng: np.random.Generator) -> np.ndarray:
    """(n_subsample,) distinct positions in [0, pool_size), uniform without replacement."""
    if int(n_subsample) > int(pool_size):
        raise ConfigurationError(f"n_subsample={int(n_subsample)} exceeds pool size {int(pool_size)}.")
    return np.asarray(rng.choice(int(pool_size), size=int(n_subsample), replace=False), dtype=np.int64)


def pseudo_inverse_coefficients(
    target: np.ndarray,
    analogs: np.ndarray,
    *,
    rcond: float | None = None,
) -> tuple[np.ndarray, int]:
    """
    Least-squares weights x minimizing |x A - f| via the SVD pseudo-inverse.

    Args:
      target: (n_pix,) f.
      analogs: (n_b, n_pix) A, one analogue per row.
      rcond: relative singular-value floor (see module docstring).

    Returns:
      x: (n_b,) coefficients.
      n_truncated: number of singular values treated as zero.
    """
    f = np.asarray(target, dtype=np.float64).reshape(-1)
    A = np.asarray(analogs, dtype=np.float64)
    if A.ndim != 2 or A.shape[1] != f.size:
        raise ValueError("analogs must have shape (n_b, n_pix) matching target.")

    U, s, Vt = la.svd(A, full_matrices=False)
    if rcond is None:
        rcond = float(np.finfo(np.float64).eps) * float(max(A.shape))
    cutoff = float(rcond) * float(np.max(s)) if s.size else 0.0
    keep = s > cutoff
    s_inv = np.zeros_like(s)
    s_inv[keep] = 1.0 / s[keep]

    x = ((f @ Vt.T) * s_inv) @ U.T
    return x, int(np.sum(~keep))


def reconstruct_iteration(
    target: np.ndarray,
    pool: AnalogPool,
    circ_training: np.ndarray,
    resp_training: np.ndarray,
    *,
    n_subsample: int,
    rng: np.random.Generator,
    rcond: float | None = None,
) -> IterationResult:
    """
    One randomized reconstruction.

    Args:
      target: (n_pix_circ,) target circulation map.
      pool: nearest analogues (indices into the training arrays).
      circ_training: (n_train, n_pix_circ).
      resp_training: (n_train, n_pix_resp).
    """
    pos = draw_subsample(pool.size, n_subsample, rng)
    idx = pool.indices[pos]
    A = np.asarray(circ_training, dtype=np.float64)[idx]
    B = np.asarray(resp_training, dtype=np.float64)[idx]
    x, n_truncated = pseudo_inverse_coefficients(target, A, rcond=rcond)
    return IterationResult(
        circ=x @ A,
        resp=x @ B,
        coefficients=x,
        subsample=idx,
        n_truncated=n_truncated,
    )


def aggregate_iterations(
    target: np.ndarray,
    pool: AnalogPool,
    circ_training: np.ndarray,
    resp_training: np.ndarray,
    *,
    n_subsample: int,
    n_iter: int,
    rng: np.random.Generator,
    rcond: float | None = None,
) -> AggregateOutput:
    """Run `n_iter` independent reconstructions and average them per grid point."""
    if int(n_iter) < 1:
        raise ConfigurationError("n_iter must be >= 1.")
    results = [
        reconstruct_iteration(
            target,
            pool,
            circ_training,
            resp_training,
            n_subsample=n_subsample,
            rng=rng,
            rcond=rcond,
        )
        for _ in range(int(n_iter))
    ]
    circ_iters = np.stack([r.circ for r in results], axis=0)
    resp_iters = np.stack([r.resp for r in results], axis=0)
    if len(results) == 1:
        circ_mean = circ_iters[0].copy()
        resp_mean = resp_iters[0].copy()
    else:
        circ_mean = np.mean(circ_iters, axis=0)
        resp_mean = np.mean(resp_iters, axis=0)
    return AggregateOutput(
        circ_iters=circ_iters,
        resp_iters=resp_iters,
        circ_mean=circ_mean,
        resp_mean=resp_mean,
        n_truncated=int(sum(r.n_truncated for r in results)),
    )
