"""Tests for the selection-event solver (kmeans_inference.selection).

Covers:
1. solve_quadratic_inequality — every shape of solution set
2. snapshot_constraints — coefficients agree with direct distances
3. compute_truncation_set — containment, brute-force agreement with
   re-running k-means on perturbed data, degeneracy handling
"""

import warnings

import numpy as np
import pytest

from kmeans_inference.clustering import kmeans_estimation
from kmeans_inference.contrast import build_contrast
from kmeans_inference.errors import NumericDegeneracyWarning, SelectionEventError
from kmeans_inference.intervals import IntervalSet
from kmeans_inference.noise import GeneralCovariance, Isotropic
from kmeans_inference.selection import (
    QuadraticConstraints,
    _affine_centroids,
    _observation_terms,
    compute_truncation_set,
    snapshot_constraints,
    solve_quadratic_inequality,
)
from kmeans_inference.settings import DEFAULT_SETTINGS


def _perturbed(X, contrast, s, phi):
    c = contrast.scaled
    return X + np.outer(c * (phi - contrast.test_stat), s)


def _same_trajectory(a, b):
    return a.n_iter == b.n_iter and np.array_equal(a.clusters, b.clusters)


@pytest.fixture
def small_data():
    rng = np.random.default_rng(2024)
    centers = np.array([[0.0, 0.0], [3.0, 0.5], [1.0, 3.0]])
    return np.vstack([rng.normal(size=(10, 2)) + c for c in centers])


@pytest.fixture
def correlated_cov():
    return np.array([[1.0, 0.6], [0.6, 2.0]])


# ═══════════════════════════════════════════════════════════════════
# 1. Quadratic inequalities
# ═══════════════════════════════════════════════════════════════════

class TestSolveQuadraticInequality:

    def test_convex_two_roots(self):
        s = solve_quadratic_inequality(1.0, 0.0, -4.0)
        assert s.to_list() == [(pytest.approx(-2.0), pytest.approx(2.0))]

    def test_convex_no_roots_is_empty(self):
        assert solve_quadratic_inequality(1.0, 0.0, 4.0).is_empty

    def test_convex_double_root_is_point(self):
        s = solve_quadratic_inequality(1.0, -2.0, 1.0)
        assert len(s) == 1
        assert s.lower == pytest.approx(1.0)
        assert s.upper == pytest.approx(1.0)

    def test_concave_two_roots_is_two_half_lines(self):
        s = solve_quadratic_inequality(-1.0, 0.0, 4.0)
        assert len(s) == 2
        assert s.lower == -np.inf and s.upper == np.inf
        assert not s.contains(0.0)
        assert s.contains(-2.0) and s.contains(2.0)

    def test_concave_no_roots_is_real_line(self):
        assert solve_quadratic_inequality(-1.0, 0.0, -4.0) == IntervalSet.real_line()

    def test_linear_increasing(self):
        s = solve_quadratic_inequality(0.0, 2.0, -6.0)
        assert s.to_list() == [(-np.inf, pytest.approx(3.0))]

    def test_linear_decreasing(self):
        s = solve_quadratic_inequality(0.0, -2.0, -6.0)
        assert s.to_list() == [(pytest.approx(-3.0), np.inf)]

    def test_constant_is_real_line(self):
        assert solve_quadratic_inequality(0.0, 0.0, 5.0) == IntervalSet.real_line()
        assert solve_quadratic_inequality(0.0, 0.0, -5.0) == IntervalSet.real_line()

    def test_negligible_quadratic_term_treated_as_linear(self):
        s = solve_quadratic_inequality(1e-20, 1.0, -1.0)
        assert s.to_list() == [(-np.inf, pytest.approx(1.0))]

    def test_rounding_negative_discriminant_is_tangency(self):
        # (φ − 1)² with a discriminant a few ulps below zero.
        s = solve_quadratic_inequality(1.0, -2.0, 1.0 + 1e-15)
        assert not s.is_empty
        assert s.lower == pytest.approx(1.0, abs=1e-6)

    def test_cancellation_resistant_roots(self):
        # Roots 1e-8 and 1e8: the naive formula loses the small one.
        s = solve_quadratic_inequality(1.0, -(1e8 + 1e-8), 1.0)
        assert s.lower == pytest.approx(1e-8, rel=1e-9)
        assert s.upper == pytest.approx(1e8, rel=1e-12)

    def test_solutions_satisfy_inequality(self):
        rng = np.random.default_rng(0)
        for A, B, C in rng.normal(size=(50, 3)):
            s = solve_quadratic_inequality(A, B, C)
            for lo, hi in s:
                for phi in (lo, hi, 0.5 * (lo + hi)):
                    if np.isfinite(phi):
                        assert A * phi ** 2 + B * phi + C <= 1e-9


# ═══════════════════════════════════════════════════════════════════
# 2. Constraint coefficients
# ═══════════════════════════════════════════════════════════════════

class TestSnapshotConstraints:

    @pytest.mark.parametrize("noise", [Isotropic(1.0),
                                       GeneralCovariance(np.array([[1.0, 0.6], [0.6, 2.0]]))])
    def test_matches_distance_gaps(self, small_data, noise):
        traj = kmeans_estimation(small_data, 3, iter_max=20, seed=10)
        con = build_contrast(traj, 1, 2, 0)
        s = noise.perturbation_direction(0, 2)
        a, c = _observation_terms(traj, con, s)
        centroids = _affine_centroids(traj, a, c)
        step = traj.n_iter - 1
        cen_A, cen_C = centroids[step]
        snap = traj.snapshots[step]
        cons = snapshot_constraints(snap.assignment, cen_A, cen_C, a, c, s)
        assert len(cons) == len(small_data) * 2

        for phi in (-3.0, con.test_stat, 2.5):
            Xp = a + np.outer(c * phi, s)
            Mp = cen_A + np.outer(cen_C * phi, s)
            d = np.sum((Xp[:, None, :] - Mp[None, :, :]) ** 2, axis=2)
            own = d[np.arange(len(Xp)), snap.assignment - 1][:, None]
            rival = np.ones_like(d, dtype=bool)
            rival[np.arange(len(Xp)), snap.assignment - 1] = False
            expected = (own - d)[rival]
            np.testing.assert_allclose(cons.evaluate(phi), expected, atol=1e-9)

    def test_affine_centroids_reproduce_observed_centers(self, small_data):
        traj = kmeans_estimation(small_data, 3, iter_max=20, seed=10)
        con = build_contrast(traj, 1, 3, 1)
        s = Isotropic(1.0).perturbation_direction(1, 2)
        a, c = _observation_terms(traj, con, s)
        for snap, (cen_A, cen_C) in zip(traj.snapshots, _affine_centroids(traj, a, c)):
            np.testing.assert_allclose(
                cen_A + np.outer(cen_C * con.test_stat, s), snap.centers, atol=1e-12)

    def test_observed_statistic_satisfies_all(self, small_data):
        traj = kmeans_estimation(small_data, 3, iter_max=20, seed=10)
        con = build_contrast(traj, 2, 3, 0)
        s = Isotropic(1.0).perturbation_direction(0, 2)
        a, c = _observation_terms(traj, con, s)
        for snap, (cen_A, cen_C) in zip(traj.snapshots, _affine_centroids(traj, a, c)):
            cons = snapshot_constraints(snap.assignment, cen_A, cen_C, a, c, s)
            assert np.all(cons.evaluate(con.test_stat) <= 1e-9)

    def test_empty_batch_len(self):
        cons = QuadraticConstraints(np.empty(0), np.empty(0), np.empty(0))
        assert len(cons) == 0


# ═══════════════════════════════════════════════════════════════════
# 3. Truncation set
# ═══════════════════════════════════════════════════════════════════

class TestComputeTruncationSet:

    @pytest.mark.parametrize("feat", [0, 1])
    @pytest.mark.parametrize("pair", [(1, 2), (1, 3), (2, 3)])
    def test_contains_statistic(self, small_data, feat, pair):
        traj = kmeans_estimation(small_data, 3, iter_max=20, seed=10)
        con = build_contrast(traj, *pair, feat)
        S = compute_truncation_set(traj, con, Isotropic(1.0))
        assert S.contains(con.test_stat)

    @pytest.mark.parametrize("noise_kind", ["isotropic", "general"])
    @pytest.mark.parametrize("seed", [10, 31])
    def test_agrees_with_rerunning_kmeans(self, small_data, correlated_cov,
                                          noise_kind, seed):
        noise = (Isotropic(1.0) if noise_kind == "isotropic"
                 else GeneralCovariance(correlated_cov))
        traj = kmeans_estimation(small_data, 3, iter_max=20, seed=seed)
        con = build_contrast(traj, 1, 2, 0)
        S = compute_truncation_set(traj, con, noise, stabilize=False)
        s = noise.perturbation_direction(0, 2)
        sd = np.sqrt(con.squared_norm * noise.feature_variance(0))

        bounds = S.bounds[np.isfinite(S.bounds)]
        checked = 0
        for phi in con.test_stat + sd * np.linspace(-8.0, 8.0, 161):
            if len(bounds) and np.min(np.abs(bounds - phi)) < 1e-6 * sd:
                continue
            Xp = _perturbed(small_data, con, s, phi)
            rerun = kmeans_estimation(Xp, 3, iter_max=20, seed=seed)
            assert S.contains(phi) == _same_trajectory(traj, rerun), phi
            checked += 1
        assert checked > 150

    def test_statistic_of_perturbed_data(self, small_data):
        traj = kmeans_estimation(small_data, 3, iter_max=20, seed=10)
        con = build_contrast(traj, 1, 2, 1)
        s = Isotropic(1.0).perturbation_direction(1, 2)
        Xp = _perturbed(small_data, con, s, 0.75)
        assert con.nu @ Xp[:, 1] == pytest.approx(0.75)

    def test_general_direction_preserves_other_contrasts(self, small_data,
                                                         correlated_cov):
        traj = kmeans_estimation(small_data, 3, iter_max=20, seed=10)
        con = build_contrast(traj, 1, 2, 0)
        s = GeneralCovariance(correlated_cov).perturbation_direction(0, 2)
        Xp = _perturbed(small_data, con, s, con.test_stat + 1.0)
        shift = con.nu @ (Xp - small_data)
        np.testing.assert_allclose(shift, s)

    def test_micro_interval_added(self, small_data):
        traj = kmeans_estimation(small_data, 3, iter_max=20, seed=10)
        con = build_contrast(traj, 1, 2, 0)
        raw = compute_truncation_set(traj, con, Isotropic(1.0), stabilize=False)
        stable = compute_truncation_set(traj, con, Isotropic(1.0))
        h = DEFAULT_SETTINGS["selection.boundary_halfwidth"]
        assert stable == raw | IntervalSet.around(con.test_stat, h)

    def test_deterministic(self, small_data):
        traj = kmeans_estimation(small_data, 3, iter_max=20, seed=10)
        con = build_contrast(traj, 1, 2, 0)
        a = compute_truncation_set(traj, con, Isotropic(1.0))
        b = compute_truncation_set(traj, con, Isotropic(1.0))
        assert a == b

    def test_noise_scale_does_not_change_set(self, small_data):
        traj = kmeans_estimation(small_data, 3, iter_max=20, seed=10)
        con = build_contrast(traj, 1, 2, 0)
        a = compute_truncation_set(traj, con, Isotropic(1.0), stabilize=False)
        b = compute_truncation_set(traj, con, Isotropic(7.0), stabilize=False)
        np.testing.assert_allclose(a.bounds, b.bounds, rtol=1e-9)

    def test_empty_set_raises(self, small_data, monkeypatch):
        import kmeans_inference.selection as selection

        traj = kmeans_estimation(small_data, 3, iter_max=20, seed=10)
        con = build_contrast(traj, 1, 2, 0)
        monkeypatch.setattr(selection, "snapshot_feasible_set",
                            lambda *args, **kwargs: IntervalSet.empty())
        with pytest.raises(SelectionEventError):
            compute_truncation_set(traj, con, Isotropic(1.0))

    def test_thin_set_warns_and_keeps_statistic(self, small_data, monkeypatch):
        import kmeans_inference.selection as selection

        traj = kmeans_estimation(small_data, 3, iter_max=20, seed=10)
        con = build_contrast(traj, 1, 2, 0)
        far = IntervalSet([(con.test_stat + 5.0, con.test_stat + 6.0)])
        monkeypatch.setattr(selection, "snapshot_feasible_set",
                            lambda *args, **kwargs: far)
        with pytest.warns(NumericDegeneracyWarning):
            S = compute_truncation_set(traj, con, Isotropic(1.0))
        assert S.contains(con.test_stat)

    def test_regular_set_does_not_warn(self, small_data):
        traj = kmeans_estimation(small_data, 3, iter_max=20, seed=10)
        con = build_contrast(traj, 1, 2, 0)
        with warnings.catch_warnings():
            warnings.simplefilter("error", NumericDegeneracyWarning)
            compute_truncation_set(traj, con, Isotropic(1.0))


class _FixedDraw:
    """Stands in for a generator; always draws the same initial rows."""

    def __init__(self, indices):
        self.indices = indices

    def choice(self, n, size, replace):
        return np.array(self.indices[:size])


@pytest.fixture
def duplicated_start():
    """Three blobs plus a copy of row 0, both copies drawn as initial centroids.

    Labels 1 and 2 start on the same point, so every first-step tie goes
    to label 1 and cluster 2 is empty at the first update.
    """
    rng = np.random.default_rng(77)
    centers = np.array([[0.0, 0.0], [8.0, 0.0], [4.0, 7.0]])
    X = np.vstack([rng.normal(scale=0.5, size=(8, 2)) + c for c in centers])
    X[0] = [-1.2, -0.8]
    X = np.vstack([X, X[0]])
    n = len(X)
    return X, (0, n - 1, 8, 16)


class TestEmptyClusterTrajectory:

    def test_cluster_starts_empty(self, duplicated_start):
        X, init = duplicated_start
        traj = kmeans_estimation(X, 4, iter_max=20, rng=_FixedDraw(init))
        assert traj.snapshots[1].empty_clusters == (2,)
        assert traj.had_empty_cluster
        assert traj.n_nonempty == 4

    def test_affine_centroids_carry_empty_cluster(self, duplicated_start):
        X, init = duplicated_start
        traj = kmeans_estimation(X, 4, iter_max=20, rng=_FixedDraw(init))
        con = build_contrast(traj, 1, 3, 0)
        s = Isotropic(1.0).perturbation_direction(0, 2)
        a, c = _observation_terms(traj, con, s)
        centroids = _affine_centroids(traj, a, c)
        for snap, (cen_A, cen_C) in zip(traj.snapshots, centroids):
            np.testing.assert_allclose(
                cen_A + np.outer(cen_C * con.test_stat, s), snap.centers, atol=1e-12)
        np.testing.assert_array_equal(centroids[1][0][1], centroids[0][0][1])
        assert centroids[1][1][1] == centroids[0][1][1]

    @pytest.mark.parametrize("pair", [(1, 2), (1, 3), (3, 4)])
    def test_agrees_with_rerunning_kmeans(self, duplicated_start, pair):
        X, init = duplicated_start
        traj = kmeans_estimation(X, 4, iter_max=20, rng=_FixedDraw(init))
        noise = Isotropic(1.0)
        con = build_contrast(traj, *pair, 0)
        S = compute_truncation_set(traj, con, noise, stabilize=False)
        s = noise.perturbation_direction(0, 2)
        sd = np.sqrt(con.squared_norm * noise.feature_variance(0))

        bounds = S.bounds[np.isfinite(S.bounds)]
        checked = 0
        for phi in con.test_stat + sd * np.linspace(-8.0, 8.0, 161):
            if len(bounds) and np.min(np.abs(bounds - phi)) < 1e-6 * sd:
                continue
            Xp = _perturbed(X, con, s, phi)
            rerun = kmeans_estimation(Xp, 4, iter_max=20, rng=_FixedDraw(init))
            assert S.contains(phi) == _same_trajectory(traj, rerun), phi
            checked += 1
        assert checked > 150
