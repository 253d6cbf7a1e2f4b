"""
Distances between a target circulation map and every training map.

Two metrics:

- EUCLIDE: d(F, T) = sqrt( sum_p (T_p - F_p)^2 ) over all grid points, unweighted.

- TEWELES (Teweles-Wobus score): compares centred gradients, so it ignores a
  uniform additive offset. With Gx = X[:, i+1] - X[:, i-1] (interior
  longitudes, all latitudes) and Gy = X[j+1, :] - X[j-1, :] (interior
  latitudes, all longitudes):

    num = sum |Gx_T - Gx_F| / di + sum |Gy_T - Gy_F| / dj
    den = sum max(|Gx_T|, |Gx_F|) / di + sum max(|Gy_T|, |Gy_F|) / dj
    TW  = 100 * num / den

  with di = cos(lat) * 2 * dlon (per latitude) and dj = 2 * |dlat|. Regular
  grid spacing is assumed. Pole rows (|lat| = 90) carry no longitude term, since
  di vanishes there. Two maps that are both flat (den == 0) score 0.

Every (target, training) pair is independent. Kernels are JAX-jitted and mapped
over targets with lax.map, so memory stays at one (n_train, n_pix) slab per row.
Training stacks are zero-padded to a power-of-two row count before entering a
kernel: candidate counts vary per target (daily windows near the ends of the
series), and each new shape would otherwise cost an XLA compile.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp
import numpy as np
from jax import jit

from .errors import ConfigurationError, DataContractError
from .grid import GridSpec

jax.config.update("jax_enable_x64", True)

EUCLIDE = "EUCLIDE"
TEWELES = "TEWELES"
METHODS = (EUCLIDE, TEWELES)


def parse_method(method: str) -> str:
    """Normalize a distance-method flag; unknown values are a configuration error."""
    m = str(method).strip().upper()
    if m not in METHODS:
        raise ConfigurationError(f"Unknown distance method {method!r}; expected one of {METHODS}.")
    return m


@jit
def _euclidean_matrix(targets: jnp.ndarray, training: jnp.ndarray) -> jnp.ndarray:
    """(n_tgt, n_pix), (n_train, n_pix) -> (n_tgt, n_train)."""

    def row(f: jnp.ndarray) -> jnp.ndarray:
        d = training - f[None, :]
        return jnp.sqrt(jnp.sum(d * d, axis=1))

    return jax.lax.map(row, targets)


def _centred_gradients(maps: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """(n, n_lat, n_lon) -> Gx (n, n_lat, n_lon-2), Gy (n, n_lat-2, n_lon)."""
    gx = maps[:, :, 2:] - maps[:, :, :-2]
    gy = maps[:, 2:, :] - maps[:, :-2, :]
    return gx, gy


@jit
def _teweles_matrix(
    targets: jnp.ndarray,
    training: jnp.ndarray,
    inv_di: jnp.ndarray,
    inv_dj: float,
) -> jnp.ndarray:
    """(n_tgt, n_lat, n_lon), (n_train, n_lat, n_lon), inv_di (n_lat,) -> (n_tgt, n_train)."""
    gx_t, gy_t = _centred_gradients(training)
    gx_f_all, gy_f_all = _centred_gradients(targets)
    w_i = inv_di[None, :, None]  # (1, n_lat, 1)

    def row(args: tuple[jnp.ndarray, jnp.ndarray]) -> jnp.ndarray:
        gx_f, gy_f = args
        num_i = jnp.sum(jnp.abs(gx_t - gx_f[None]) * w_i, axis=(1, 2))
        num_j = jnp.sum(jnp.abs(gy_t - gy_f[None]), axis=(1, 2)) * inv_dj
        den_i = jnp.sum(jnp.maximum(jnp.abs(gx_t), jnp.abs(gx_f)[None]) * w_i, axis=(1, 2))
        den_j = jnp.sum(jnp.maximum(jnp.abs(gy_t), jnp.abs(gy_f)[None]), axis=(1, 2)) * inv_dj
        num = num_i + num_j
        den = den_i + den_j
        ok = den > 0
        return jnp.where(ok, 100.0 * num / jnp.where(ok, den, 1.0), 0.0)

    return jax.lax.map(row, (gx_f_all, gy_f_all))


def teweles_weights(grid: GridSpec) -> tuple[np.ndarray, float]:
    """
    Gradient weights for the Teweles-Wobus score.

    Returns:
      di: (n_lat,) cos(lat) * 2 * dlon, degrees (~0 on pole rows).
      dj: 2 * |dlat|, degrees.
    """
    if grid.n_lat < 3 or grid.n_lon < 3:
        raise DataContractError(
            f"Teweles-Wobus needs at least 3 latitudes and 3 longitudes; grid is {grid.n_lat}x{grid.n_lon}."
        )
    dlon = float(grid.lon_steps()[0])
    dlat = abs(float(grid.lat[1] - grid.lat[0]))
    di = np.cos(np.deg2rad(grid.lat)) * 2.0 * dlon
    dj = 2.0 * dlat
    return di.astype(np.float64), float(dj)


def distance_matrix(
    targets: np.ndarray,
    training: np.ndarray,
    *,
    method: str = EUCLIDE,
    grid: GridSpec | None = None,
) -> np.ndarray:
    """
    All-pairs distances.

    Args:
      targets: (n_tgt, n_pix) flattened target maps.
      training: (n_train, n_pix) flattened training maps.
      method: 'EUCLIDE' or 'TEWELES'.
      grid: required for TEWELES (latitudes feed the weights).

    Returns:
      dist: (n_tgt, n_train) float64, non-negative.
    """
    m = parse_method(method)
    targets = np.asarray(targets, dtype=np.float64)
    training = np.asarray(training, dtype=np.float64)
    if targets.ndim == 1:
        targets = targets[None, :]
    if targets.ndim != 2 or training.ndim != 2:
        raise DataContractError("targets and training must be (n, n_pix) arrays.")
    if targets.shape[1] != training.shape[1]:
        raise DataContractError(
            f"targets have {targets.shape[1]} grid points, training has {training.shape[1]}."
        )
    n_train = int(training.shape[0])
    if n_train == 0:
        return np.zeros((targets.shape[0], 0), dtype=np.float64)
    padded = _pad_rows(training, padded_size(n_train))

    if m == EUCLIDE:
        out = _euclidean_matrix(jnp.asarray(targets), jnp.asarray(padded))
    else:
        if grid is None:
            raise ConfigurationError("TEWELES distance requires grid coordinates.")
        if grid.n_pix != targets.shape[1]:
            raise DataContractError(f"grid has {grid.n_pix} points, fields have {targets.shape[1]}.")
        di, dj = teweles_weights(grid)
        pole = np.abs(grid.lat) >= 90.0
        inv_di = np.where(pole, 0.0, 1.0 / np.where(pole, 1.0, di))
        shape = (grid.n_lat, grid.n_lon)
        out = _teweles_matrix(
            jnp.asarray(targets.reshape(-1, *shape)),
            jnp.asarray(padded.reshape(-1, *shape)),
            jnp.asarray(inv_di),
            1.0 / dj,
        )
    return np.asarray(out, dtype=np.float64)[:, :n_train]


def padded_size(n: int, *, min_size: int = 8) -> int:
    """Smallest power of two >= max(n, min_size)."""
    n = max(int(n), int(min_size))
    return 1 << (n - 1).bit_length()


def _pad_rows(x: np.ndarray, n_rows: int) -> np.ndarray:
    if x.shape[0] == n_rows:
        return x
    out = np.zeros((n_rows, x.shape[1]), dtype=x.dtype)
    out[: x.shape[0]] = x
    return out


def compute_distances(
    target: np.ndarray,
    training: np.ndarray,
    *,
    method: str = EUCLIDE,
    grid: GridSpec | None = None,
) -> np.ndarray:
    """(n_pix,), (n_train, n_pix) -> (n_train,) distances from one target map."""
    target = np.asarray(target, dtype=np.float64).reshape(1, -1)
    return distance_matrix(target, training, method=method, grid=grid)[0]


def euclidean_distance(target: np.ndarray, training: np.ndarray) -> np.ndarray:
    return compute_distances(target, training, method=EUCLIDE)


def teweles_wobus_distance(target: np.ndarray, training: np.ndarray, grid: GridSpec) -> np.ndarray:
    return compute_distances(target, training, method=TEWELES, grid=grid)
