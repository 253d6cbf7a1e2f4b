"""
Tests for the pseudo-inverse reconstruction and iteration aggregation.
"""
from __future__ import annotations

import numpy as np
import pytest

from dynadj.distance import euclidean_distance
from dynadj.errors import ConfigurationError
from dynadj.reconstruct import (
    aggregate_iterations,
    draw_subsample,
    pseudo_inverse_coefficients,
    reconstruct_iteration,
)
from dynadj.selection import AnalogPool, rank_analogs


def _pool(indices) -> AnalogPool:
    idx = np.asarray(indices, dtype=np.int64)
    return AnalogPool(indices=idx, distances=np.zeros(idx.size))


# --- Sub-sampling ---

def test_draw_subsample_unique_and_in_range():
    """Draws are distinct positions inside the pool."""
    rng = np.random.default_rng(0)
    for _ in range(50):
        pos = draw_subsample(10, 6, rng)
        assert pos.shape == (6,)
        assert np.unique(pos).size == 6
        assert pos.min() >= 0 and pos.max() < 10


def test_draw_subsample_larger_than_pool_rejected():
    """N_b larger than the pool raises ConfigurationError."""
    with pytest.raises(ConfigurationError):
        draw_subsample(3, 4, np.random.default_rng(0))


def test_draw_subsample_roughly_uniform():
    """Every pool position is drawn about equally often."""
    rng = np.random.default_rng(1)
    counts = np.zeros(8)
    n_draw = 4000
    for _ in range(n_draw):
        counts[draw_subsample(8, 3, rng)] += 1
    expected = n_draw * 3 / 8
    assert np.all(np.abs(counts - expected) < 0.1 * expected)


# --- Pseudo-inverse ---

def test_coefficients_match_numpy_pinv():
    """SVD coefficients equal f @ pinv(A) for a well-conditioned set."""
    rng = np.random.default_rng(2)
    A = rng.standard_normal((5, 12))
    f = rng.standard_normal(12)
    x, n_truncated = pseudo_inverse_coefficients(f, A)
    np.testing.assert_allclose(x, f @ np.linalg.pinv(A), rtol=1e-10, atol=1e-12)
    assert n_truncated == 0


def test_exact_fit_recovers_analogue():
    """N_b = P independent analogues: a target equal to one analogue is reproduced exactly."""
    rng = np.random.default_rng(3)
    n_pix = 4
    circ = rng.standard_normal((n_pix, n_pix))
    resp = rng.standard_normal((n_pix, 3))
    k = 2
    it = reconstruct_iteration(
        circ[k],
        _pool(np.arange(n_pix)),
        circ,
        resp,
        n_subsample=n_pix,
        rng=np.random.default_rng(11),
    )
    expected = np.where(it.subsample == k, 1.0, 0.0)
    np.testing.assert_allclose(it.coefficients, expected, atol=1e-10)
    np.testing.assert_allclose(it.circ, circ[k], atol=1e-10)
    np.testing.assert_allclose(it.resp, resp[k], atol=1e-10)


def test_rank_deficient_analogues_are_truncated():
    """Collinear analogues are truncated to the minimum-norm solution."""
    pattern = np.array([1.0, -2.0, 0.5, 3.0])
    A = np.stack([pattern, 2.0 * pattern, -pattern])
    x, n_truncated = pseudo_inverse_coefficients(pattern, A)
    assert n_truncated == 2
    assert np.all(np.isfinite(x))
    np.testing.assert_allclose(x @ A, pattern, atol=1e-10)
    # Minimum-norm solution spreads weight across collinear rows.
    np.testing.assert_allclose(x, np.array([1.0, 2.0, -1.0]) / 6.0, atol=1e-10)


def test_rcond_zero_inverts_all_nonzero_singular_values():
    """rcond=0 inverts tiny singular values that a looser floor drops."""
    rng = np.random.default_rng(4)
    A = rng.standard_normal((3, 6))
    A[2] = A[0] + 1e-9 * rng.standard_normal(6)
    f = rng.standard_normal(6)
    _, n_default = pseudo_inverse_coefficients(f, A)
    x_raw, n_raw = pseudo_inverse_coefficients(f, A, rcond=0.0)
    _, n_loose = pseudo_inverse_coefficients(f, A, rcond=1e-6)
    assert n_default == 0 and n_raw == 0
    assert n_loose == 1
    # Unguarded inversion of the tiny singular value blows the weights up.
    assert np.max(np.abs(x_raw)) > 1e3


# --- End-to-end hand computation ---

# 2x2 grid, 5 training maps. Rows 0-3 are orthogonal (c_k e_k, c = 1, 2, 3, 4) and
# row 4 is far away, so for f = (1, 1, 1, 1) the pseudo-inverse reduces to
# x_k = <f, a_k> / |a_k|^2 = 1 / c_k.
HAND_CIRC = np.array(
    [
        [1.0, 0.0, 0.0, 0.0],
        [0.0, 2.0, 0.0, 0.0],
        [0.0, 0.0, 3.0, 0.0],
        [0.0, 0.0, 0.0, 4.0],
        [10.0, 10.0, 10.0, 10.0],
    ]
)
HAND_RESP = np.array(
    [
        [2.0, 0.0, 1.0],
        [4.0, -2.0, 0.0],
        [0.0, 3.0, 6.0],
        [8.0, 8.0, -4.0],
        [100.0, 100.0, 100.0],
    ]
)
# resp_mean for every N_b = 2 sub-sample of the pool {0, 1, 2, 3}: sum of resp_k / c_k.
HAND_RESP_BY_PAIR = {
    (0, 1): [4.0, -1.0, 1.0],
    (0, 2): [2.0, 1.0, 3.0],
    (0, 3): [4.0, 2.0, 0.0],
    (1, 2): [2.0, 0.0, 2.0],
    (1, 3): [4.0, 1.0, -1.0],
    (2, 3): [2.0, 3.0, 1.0],
}


class _FixedDraw:
    """Generator stand-in whose sub-sample draw returns preset pool positions."""

    def __init__(self, positions):
        self.positions = np.asarray(positions, dtype=np.int64)

    def choice(self, n, size, replace):
        assert not replace
        assert size <= n
        return self.positions[:size]


def _hand_pool() -> AnalogPool:
    dist = euclidean_distance(np.ones(4), HAND_CIRC)
    np.testing.assert_allclose(dist, np.sqrt([3.0, 4.0, 7.0, 12.0, 324.0]), rtol=1e-12)
    pool = rank_analogs(dist, np.arange(5), 4)
    np.testing.assert_array_equal(pool.indices, [0, 1, 2, 3])
    return pool


def test_two_by_two_grid_known_subsample():
    """Sub-sample {3, 1} of the 2x2 pool reconstructs circ e_1 + e_3 and resp (4, 1, -1)."""
    agg = aggregate_iterations(
        np.ones(4),
        _hand_pool(),
        HAND_CIRC,
        HAND_RESP,
        n_subsample=2,
        n_iter=1,
        rng=_FixedDraw([3, 1]),
    )
    np.testing.assert_allclose(agg.circ_mean, [0.0, 1.0, 0.0, 1.0], atol=1e-12)
    np.testing.assert_allclose(agg.resp_mean, [4.0, 1.0, -1.0], atol=1e-12)
    assert agg.n_truncated == 0

    it = reconstruct_iteration(
        np.ones(4), _hand_pool(), HAND_CIRC, HAND_RESP, n_subsample=2, rng=_FixedDraw([3, 1])
    )
    np.testing.assert_array_equal(it.subsample, [3, 1])
    np.testing.assert_allclose(it.coefficients, [0.25, 0.5], atol=1e-12)


def test_two_by_two_grid_seeded_draw():
    """A fixed seed reproduces one sub-sample whose output matches the hand-computed table."""
    seed = 2024
    pool = _hand_pool()
    first = aggregate_iterations(
        np.ones(4), pool, HAND_CIRC, HAND_RESP, n_subsample=2, n_iter=1, rng=np.random.default_rng(seed)
    )
    second = aggregate_iterations(
        np.ones(4), pool, HAND_CIRC, HAND_RESP, n_subsample=2, n_iter=1, rng=np.random.default_rng(seed)
    )
    np.testing.assert_array_equal(first.resp_mean, second.resp_mean)

    picked = np.sort(pool.indices[np.random.default_rng(seed).choice(4, size=2, replace=False)])
    pair = (int(picked[0]), int(picked[1]))
    np.testing.assert_allclose(first.resp_mean, HAND_RESP_BY_PAIR[pair], atol=1e-12)
    expected_circ = np.zeros(4)
    expected_circ[picked] = 1.0
    np.testing.assert_allclose(first.circ_mean, expected_circ, atol=1e-12)

    # Same numbers through U, S, V directly.
    A = HAND_CIRC[picked]
    U, s, Vt = np.linalg.svd(A, full_matrices=False)
    x = np.ones(4) @ Vt.T @ np.diag(1.0 / s) @ U.T
    np.testing.assert_allclose(first.resp_mean, x @ HAND_RESP[picked], atol=1e-12)



# --- Aggregation ---

def test_single_iteration_mean_is_exact():
    """With one iteration the mean is that iteration, bit for bit."""
    rng = np.random.default_rng(5)
    circ = rng.standard_normal((12, 9))
    resp = rng.standard_normal((12, 4))
    agg = aggregate_iterations(
        circ[0], _pool(np.arange(1, 9)), circ, resp, n_subsample=5, n_iter=1, rng=np.random.default_rng(6)
    )
    assert agg.n_iter == 1
    assert np.array_equal(agg.circ_mean, agg.circ_iters[0])
    assert np.array_equal(agg.resp_mean, agg.resp_iters[0])


def test_aggregate_stack_and_mean():
    """The aggregate keeps every iteration and their per-point mean."""
    rng = np.random.default_rng(7)
    circ = rng.standard_normal((20, 6))
    resp = rng.standard_normal((20, 5))
    pool = _pool(np.arange(1, 11))
    agg = aggregate_iterations(circ[0], pool, circ, resp, n_subsample=4, n_iter=7, rng=np.random.default_rng(8))
    assert agg.circ_iters.shape == (7, 6)
    assert agg.resp_iters.shape == (7, 5)
    np.testing.assert_allclose(agg.circ_mean, agg.circ_iters.mean(axis=0), rtol=1e-14)
    np.testing.assert_allclose(agg.resp_mean, agg.resp_iters.mean(axis=0), rtol=1e-14)
    # Iterations use different sub-samples.
    assert not np.allclose(agg.resp_iters[0], agg.resp_iters[1])


def test_aggregate_reproducible_with_seed():
    """Same seed, same iterations."""
    rng = np.random.default_rng(9)
    circ = rng.standard_normal((15, 6))
    resp = rng.standard_normal((15, 2))
    pool = _pool(np.arange(1, 9))
    a = aggregate_iterations(circ[0], pool, circ, resp, n_subsample=3, n_iter=4, rng=np.random.default_rng(42))
    b = aggregate_iterations(circ[0], pool, circ, resp, n_subsample=3, n_iter=4, rng=np.random.default_rng(42))
    np.testing.assert_array_equal(a.resp_iters, b.resp_iters)


def test_aggregate_requires_positive_n_iter():
    """n_iter=0 raises ConfigurationError."""
    circ = np.eye(4)
    with pytest.raises(ConfigurationError):
        aggregate_iterations(circ[0], _pool([1, 2]), circ, circ, n_subsample=1, n_iter=0, rng=np.random.default_rng(0))
