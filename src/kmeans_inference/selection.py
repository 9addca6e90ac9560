"""Selection event of Lloyd's algorithm along a one-dimensional perturbation.

The selective p-value conditions on every assignment the algorithm
made.  Holding everything about the data fixed except the tested
statistic, the data become a function of a scalar ``φ``:

    x_i(φ) = x_i + c_i (φ − t) s,        c = ν / ‖ν‖²,

where ``t`` is the observed statistic and ``s`` is the direction the
noise model perturbs along (``e_feat`` for isotropic noise,
``Σ[feat] / Σ[feat, feat]`` for a general covariance).  At ``φ = t``
the observed data are recovered, and ``ν @ X(φ)[:, feat] = φ``.

Every row, and therefore every centroid, is affine in ``φ``:

    x_i(φ) = a_i + c_i s φ,        m_g(φ) = A_g + C_g s φ,

with ``(A_g, C_g)`` the initial row for step 1, the member means of the
previous assignment afterwards, and carried over unchanged for a
cluster that had no members.  Keeping observation ``i`` closer to its
assigned centroid ``g`` than to centroid ``h`` then reads

    A φ² + B φ + C ≤ 0,
    A = ‖s‖² ((c_i − C_g)² − (c_i − C_h)²)
    B = 2 ((c_i − C_g)(p_i − P_g) − (c_i − C_h)(p_i − P_h))
    C = ‖a_i − A_g‖² − ‖a_i − A_h‖²

with ``p_i = a_i·s`` and ``P_g = A_g·s``.  Each inequality holds on an
interval, a half-line, the complement of an open interval, the whole
line or nowhere.  Intersecting all of them over observations, rivals
and steps gives the truncation set.

The initial centroids are sampled from the seed alone, independent of
the data, so the initial-sample event holds for every ``φ``.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from .clustering import Trajectory
from .contrast import Contrast
from .errors import NumericDegeneracyWarning, SelectionEventError
from .intervals import IntervalSet
from .noise import NoiseModel
from .settings import DEFAULT_SETTINGS, SettingsRegistry

logger = logging.getLogger(__name__)

__all__ = [
    "QuadraticConstraints",
    "solve_quadratic_inequality",
    "snapshot_constraints",
    "snapshot_feasible_set",
    "compute_truncation_set",
]


# ═══════════════════════════════════════════════════════════════════
# Quadratic inequalities
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True, eq=False)
class QuadraticConstraints:
    """A batch of inequalities ``A φ² + B φ + C ≤ 0`` (one per element)."""

    A: np.ndarray
    B: np.ndarray
    C: np.ndarray

    def __len__(self) -> int:
        return len(self.A)

    def evaluate(self, phi: float) -> np.ndarray:
        """Left-hand sides at *phi*."""
        return (self.A * phi + self.B) * phi + self.C


def _stable_roots(A: np.ndarray, B: np.ndarray, C: np.ndarray,
                  disc: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Ordered real roots, avoiding cancellation in −B ± √disc."""
    sign = np.where(B >= 0, 1.0, -1.0)
    q = -0.5 * (B + sign * np.sqrt(disc))
    with np.errstate(divide="ignore", invalid="ignore"):
        r1 = q / A
        r2 = np.where(q != 0, C / q, r1)
    return np.minimum(r1, r2), np.maximum(r1, r2)


def _solve_batch(
    cons: QuadraticConstraints,
    length_scale: float,
    coef_tol: float,
    disc_rtol: float,
) -> Tuple[float, float, np.ndarray]:
    """Solve a batch of inequalities jointly.

    Returns ``(lo, hi, holes)``: the solution set is ``[lo, hi]`` minus
    the union of the open intervals in ``holes`` (shape ``(m, 2)``).
    ``lo > hi`` means the batch is infeasible.
    """
    # Work in φ / length_scale so the relative tolerances are unit-free.
    A = cons.A * length_scale ** 2
    B = cons.B * length_scale
    C = cons.C.copy()

    mag = np.maximum(np.maximum(np.abs(A), np.abs(B)), np.abs(C))
    A = np.where(np.abs(A) <= coef_tol * mag, 0.0, A)
    B = np.where(np.abs(B) <= coef_tol * mag, 0.0, B)

    lo = np.full(len(A), -np.inf)
    hi = np.full(len(A), np.inf)
    infeasible = np.zeros(len(A), dtype=bool)

    # Linear: B φ + C ≤ 0.  With A = B = 0 the inequality does not
    # involve φ and holds at the observed data, hence everywhere.
    linear = A == 0
    up = linear & (B > 0)
    down = linear & (B < 0)
    with np.errstate(divide="ignore", invalid="ignore"):
        hi[up] = -C[up] / B[up]
        lo[down] = -C[down] / B[down]

    disc = B * B - 4.0 * A * C
    tangent = (disc < 0) & (disc >= -disc_rtol * (B * B + 4.0 * np.abs(A * C)))
    disc = np.where(tangent, 0.0, disc)
    real = disc >= 0
    r1, r2 = _stable_roots(A, B, C, np.maximum(disc, 0.0))

    # Convex: solutions between the roots, none without real roots.
    convex = A > 0
    lo[convex & real] = r1[convex & real]
    hi[convex & real] = r2[convex & real]
    infeasible |= convex & ~real

    # Concave: everything outside the open root interval.
    concave = (A < 0) & real
    holes = np.column_stack([r1[concave], r2[concave]]) * length_scale

    if infeasible.any():
        return np.inf, -np.inf, np.empty((0, 2))
    return float(lo.max()) * length_scale, float(hi.min()) * length_scale, holes


def _assemble(lo: float, hi: float, holes: np.ndarray) -> IntervalSet:
    if lo > hi:
        return IntervalSet.empty()
    if len(holes):
        holes = holes[(holes[:, 1] > lo) & (holes[:, 0] < hi)
                      & (holes[:, 0] < holes[:, 1])]
    return IntervalSet([(lo, hi)]).difference(IntervalSet(holes))


def solve_quadratic_inequality(
    A: float,
    B: float,
    C: float,
    *,
    length_scale: float = 1.0,
    settings: SettingsRegistry = DEFAULT_SETTINGS,
) -> IntervalSet:
    """Solution set of ``A φ² + B φ + C ≤ 0`` as an :class:`IntervalSet`.

    Coefficients that are negligible relative to the others (after
    rescaling ``φ`` by *length_scale*) are treated as zero, and a
    discriminant that is negative only by rounding is treated as a
    double root.  ``A = B = 0`` yields the whole line.

    >>> solve_quadratic_inequality(1.0, 0.0, -4.0)
    IntervalSet([-2, 2])
    >>> solve_quadratic_inequality(-1.0, 0.0, 4.0)
    IntervalSet([-inf, -2], [2, inf])
    """
    cons = QuadraticConstraints(
        np.array([A], dtype=float), np.array([B], dtype=float),
        np.array([C], dtype=float))
    lo, hi, holes = _solve_batch(
        cons, length_scale,
        settings["selection.coef_tol"], settings["selection.disc_rtol"])
    return _assemble(lo, hi, holes)


# ═══════════════════════════════════════════════════════════════════
# Constraints from the trajectory
# ═══════════════════════════════════════════════════════════════════

def _affine_centroids(
    trajectory: Trajectory,
    a: np.ndarray,
    c: np.ndarray,
) -> List[Tuple[np.ndarray, np.ndarray]]:
    """``(A, C)`` of every step's centroids, ``m_g(φ) = A_g + C_g s φ``."""
    init = np.asarray(trajectory.initial_indices)
    cur_A, cur_C = a[init].copy(), c[init].copy()
    out = [(cur_A, cur_C)]
    for prev in trajectory.snapshots[:-1]:
        cur_A, cur_C = cur_A.copy(), cur_C.copy()
        for label in range(1, trajectory.k + 1):
            members = prev.assignment == label
            if members.any():
                cur_A[label - 1] = a[members].mean(axis=0)
                cur_C[label - 1] = c[members].mean()
        out.append((cur_A, cur_C))
    return out


def _observation_terms(
    trajectory: Trajectory,
    contrast: Contrast,
    s: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    c = contrast.scaled
    a = trajectory.X - np.outer(c * contrast.test_stat, s)
    return a, c


def snapshot_constraints(
    assignment: np.ndarray,
    centers_A: np.ndarray,
    centers_C: np.ndarray,
    a: np.ndarray,
    c: np.ndarray,
    s: np.ndarray,
) -> QuadraticConstraints:
    """Inequalities keeping every observation with its assigned centroid.

    Parameters
    ----------
    assignment : ndarray, shape (n,)
        Labels ``1..k`` of this step.
    centers_A, centers_C : ndarray, shapes (k, q) and (k,)
        Affine centroids ``A_g + C_g s φ`` used by this step.
    a, c : ndarray, shapes (n, q) and (n,)
        Affine observations ``a_i + c_i s φ``.
    s : ndarray, shape (q,)
        Perturbation direction.

    Returns
    -------
    QuadraticConstraints
        ``n × (k − 1)`` inequalities, one per observation and rival.
    """
    n = len(assignment)
    k = centers_A.shape[0]
    ss = float(s @ s)

    diff_c = c[:, None] - centers_C[None, :]                     # (n, k)
    p = a @ s
    P = centers_A @ s
    quad = ss * diff_c ** 2
    lin = 2.0 * diff_c * (p[:, None] - P[None, :])
    # ‖a_i − A_g‖² without the ‖a_i‖² term, which cancels in differences.
    const = np.sum(centers_A ** 2, axis=1)[None, :] - 2.0 * (a @ centers_A.T)

    rows = np.arange(n)
    own = assignment - 1
    rival = np.ones((n, k), dtype=bool)
    rival[rows, own] = False

    def _gap(M: np.ndarray) -> np.ndarray:
        return (M[rows, own][:, None] - M)[rival]

    return QuadraticConstraints(_gap(quad), _gap(lin), _gap(const))


def snapshot_feasible_set(
    cons: QuadraticConstraints,
    length_scale: float = 1.0,
    settings: SettingsRegistry = DEFAULT_SETTINGS,
) -> IntervalSet:
    """Set of ``φ`` satisfying every inequality of one step."""
    if len(cons) == 0:
        return IntervalSet.real_line()
    lo, hi, holes = _solve_batch(
        cons, length_scale,
        settings["selection.coef_tol"], settings["selection.disc_rtol"])
    return _assemble(lo, hi, holes)


# ═══════════════════════════════════════════════════════════════════
# Truncation set
# ═══════════════════════════════════════════════════════════════════

def compute_truncation_set(
    trajectory: Trajectory,
    contrast: Contrast,
    noise: NoiseModel,
    *,
    settings: SettingsRegistry = DEFAULT_SETTINGS,
    stabilize: bool = True,
) -> IntervalSet:
    """Values of the statistic that reproduce every recorded assignment.

    Parameters
    ----------
    trajectory : Trajectory
        Output of :func:`~kmeans_inference.clustering.kmeans_estimation`.
    contrast : Contrast
        Contrast and observed statistic for the tested feature.
    noise : Isotropic or GeneralCovariance
        Determines the perturbation direction.
    settings : SettingsRegistry
        Tolerances (``selection.*`` keys).
    stabilize : bool
        Union the micro-interval ``[t − h, t + h]`` into the result so
        the observed statistic is never lost to rounding at a boundary.

    Returns
    -------
    IntervalSet

    Raises
    ------
    SelectionEventError
        If the solved set is empty before stabilisation.

    Warns
    -----
    NumericDegeneracyWarning
        If the solved set misses the observed statistic or is thinner
        than ``selection.thin_width`` standard deviations.
    """
    X = trajectory.X
    feat = contrast.feat
    s = noise.perturbation_direction(feat, X.shape[1])
    sd = float(np.sqrt(contrast.squared_norm * noise.feature_variance(feat)))
    t = contrast.test_stat

    a, c = _observation_terms(trajectory, contrast, s)
    centroids = _affine_centroids(trajectory, a, c)

    per_step = []
    for snap, (cen_A, cen_C) in zip(trajectory.snapshots, centroids):
        cons = snapshot_constraints(snap.assignment, cen_A, cen_C, a, c, s)
        per_step.append(snapshot_feasible_set(cons, sd, settings))
    solved = IntervalSet.intersect_all(per_step)

    if solved.is_empty:
        raise SelectionEventError(
            f"Empty conditioning set for feat={feat}, "
            f"clusters {contrast.cluster_1} vs {contrast.cluster_2} "
            f"(test_stat={t:.6g}, {trajectory.n_iter} steps)")

    if not solved.contains(t) or \
            solved.measure() < settings["selection.thin_width"] * sd:
        warnings.warn(
            f"Truncation set {solved!r} is numerically thin around "
            f"test_stat={t:.6g}; relying on the boundary micro-interval",
            NumericDegeneracyWarning,
            stacklevel=2,
        )

    logger.debug("feat=%d: truncation set has %d interval(s)",
                 feat, len(solved))
    if stabilize:
        solved = solved | IntervalSet.around(
            t, settings["selection.boundary_halfwidth"])
    return solved
