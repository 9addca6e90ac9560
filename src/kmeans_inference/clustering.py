"""Lloyd's k-means algorithm with a full record of every iteration.

Selective inference conditions on *every* assignment the algorithm
made, not only the final one, so :func:`kmeans_estimation` returns a
:class:`Trajectory`: an immutable sequence of
:class:`ClusteringSnapshot` records, one per assignment step, each
holding the centroids that produced the assignment.

Algorithm
---------
1. Draw ``k`` distinct rows uniformly at random (explicit, seeded
   ``numpy.random.Generator``) as the initial centroids.
2. Assign every observation to its nearest centroid (squared Euclidean
   distance, ties to the lowest label).
3. Replace each centroid by the mean of its members.  A cluster that
   lost all its members keeps its previous centroid unchanged.
4. Repeat 2–3 until two consecutive assignments agree or ``iter_max``
   updates have been made.

Labels are ``1..k``: label ``c`` belongs to the ``c``-th initial row.

Usage
-----
>>> traj = kmeans_estimation(X, k=3, iter_max=20, seed=2021)
>>> traj.final_cluster          # array([1, 1, 3, 2, ...])
>>> traj.n_iter, traj.converged
>>> traj.summary()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

__all__ = [
    "ClusteringSnapshot",
    "Trajectory",
    "kmeans_estimation",
    "check_matrix",
    "check_n_clusters",
    "squared_distances",
]


# ═══════════════════════════════════════════════════════════════════
# Input validation
# ═══════════════════════════════════════════════════════════════════

def check_matrix(X: Any) -> np.ndarray:
    """Return *X* as a 2-d float array, rejecting non-matrices and NaN/inf."""
    if not isinstance(X, np.ndarray) or X.ndim != 2:
        raise InvalidInputError(
            "X should be a 2-d numpy array (n observations × q features)")
    if X.shape[0] < 2 or X.shape[1] < 1:
        raise InvalidInputError(
            f"X needs at least 2 rows and 1 column, got shape {X.shape}")
    try:
        arr = X.astype(float, copy=False)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"X must be numeric: {exc}") from exc
    if np.isnan(arr).any():
        raise InvalidInputError("NaN is not allowed in the input data X")
    if not np.isfinite(arr).all():
        raise InvalidInputError("Infinite values are not allowed in X")
    return arr


def check_n_clusters(k: Any, n: int) -> int:
    """Validate ``1 <= k < n``."""
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)):
        raise InvalidInputError(f"k must be an integer, got {k!r}")
    if k < 1:
        raise InvalidInputError(f"k must be at least 1, got {k}")
    if k >= n:
        raise InvalidInputError(
            f"Cannot have more clusters than observations (k={k}, n={n})")
    return int(k)


def squared_distances(X: np.ndarray, centers: np.ndarray) -> np.ndarray:
    """``(n, k)`` squared Euclidean distances via ‖x‖² + ‖c‖² − 2 x·c."""
    return (
        np.sum(X ** 2, axis=1)[:, None]
        + np.sum(centers ** 2, axis=1)[None, :]
        - 2.0 * (X @ centers.T)
    )


# ═══════════════════════════════════════════════════════════════════
# Trajectory records
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True, eq=False)
class ClusteringSnapshot:
    """One assignment step of Lloyd's algorithm.

    Attributes
    ----------
    centers : ndarray, shape (k, q)
        Centroids used for this assignment (read-only).
    assignment : ndarray, shape (n,)
        Label in ``1..k`` of every observation (read-only).
    objective : float
        Sum of squared distances to the assigned centroids.
    empty_clusters : tuple[int, ...]
        Labels whose centroid was carried over unchanged because the
        previous assignment left them without members.
    """

    centers: np.ndarray
    assignment: np.ndarray
    objective: float
    empty_clusters: Tuple[int, ...] = ()

    def __post_init__(self):
        for name in ("centers", "assignment"):
            arr = np.array(getattr(self, name))
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

    def cluster_sizes(self, k: int) -> np.ndarray:
        """Members per label, index 0 ↔ label 1."""
        return np.bincount(self.assignment - 1, minlength=k)


@dataclass(frozen=True, eq=False)
class Trajectory:
    """Full history of one k-means run.

    The snapshots are an append-only tuple built once by
    :func:`kmeans_estimation`; nothing downstream mutates them.
    """

    X: np.ndarray
    snapshots: Tuple[ClusteringSnapshot, ...]
    initial_indices: Tuple[int, ...]
    k: int
    iter_max: int
    seed: Optional[int] = None

    def __post_init__(self):
        if not self.snapshots:
            raise ValueError("A trajectory needs at least one snapshot")
        X = np.array(self.X, dtype=float)
        X.setflags(write=False)
        object.__setattr__(self, "X", X)

    # ── Derived properties ──────────────────────────────────────

    @property
    def n_iter(self) -> int:
        """Number of recorded assignment steps ``T``."""
        return len(self.snapshots)

    @property
    def final(self) -> ClusteringSnapshot:
        return self.snapshots[-1]

    @property
    def final_cluster(self) -> np.ndarray:
        return self.final.assignment

    @property
    def final_centers(self) -> np.ndarray:
        return self.final.centers

    @property
    def clusters(self) -> np.ndarray:
        """``(T, n)`` array of all assignments."""
        return np.vstack([s.assignment for s in self.snapshots])

    @property
    def centers(self) -> Tuple[np.ndarray, ...]:
        return tuple(s.centers for s in self.snapshots)

    @property
    def objectives(self) -> np.ndarray:
        return np.array([s.objective for s in self.snapshots])

    @property
    def converged(self) -> bool:
        """True iff the last two assignments are identical."""
        if self.n_iter < 2:
            return False
        return bool(np.array_equal(
            self.snapshots[-1].assignment, self.snapshots[-2].assignment))

    @property
    def n_nonempty(self) -> int:
        """Distinct non-empty clusters in the final assignment."""
        return int(np.unique(self.final_cluster).size)

    @property
    def objective_monotone(self) -> bool:
        """Whether the objective never increased.

        Typically true; frozen centroids of empty clusters can break it.
        """
        obj = self.objectives
        return bool(np.all(np.diff(obj) <= 1e-12 * np.maximum(1.0, obj[:-1])))

    @property
    def had_empty_cluster(self) -> bool:
        return any(s.empty_clusters for s in self.snapshots)

    # ── Serialisation ───────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-safe dict of the trajectory (without X)."""
        return {
            "k": self.k,
            "iter_max": self.iter_max,
            "seed": self.seed,
            "n_iter": self.n_iter,
            "converged": self.converged,
            "initial_indices": list(self.initial_indices),
            "objectives": [float(v) for v in self.objectives],
            "clusters": self.clusters.tolist(),
            "centers": [s.centers.tolist() for s in self.snapshots],
            "empty_clusters": [list(s.empty_clusters) for s in self.snapshots],
        }

    def summary(self) -> str:
        """One-line human-readable summary."""
        sizes = ", ".join(str(int(c)) for c in self.final.cluster_sizes(self.k))
        status = "converged" if self.converged else "iter_max reached"
        return (
            f"k-means k={self.k}: {self.n_iter} steps ({status}), "
            f"sizes=[{sizes}], objective={self.final.objective:.4f}"
        )

    def __repr__(self) -> str:
        return (
            f"Trajectory(k={self.k}, n_iter={self.n_iter}, "
            f"converged={self.converged})"
        )


# ═══════════════════════════════════════════════════════════════════
# Lloyd's algorithm
# ═══════════════════════════════════════════════════════════════════

def _assign(X: np.ndarray, centers: np.ndarray) -> Tuple[np.ndarray, float]:
    dist = squared_distances(X, centers)
    nearest = np.argmin(dist, axis=1)
    objective = float(np.sum(np.maximum(dist[np.arange(len(X)), nearest], 0.0)))
    return nearest + 1, objective


def _update_centers(
    X: np.ndarray,
    assignment: np.ndarray,
    previous: np.ndarray,
) -> Tuple[np.ndarray, Tuple[int, ...]]:
    k = previous.shape[0]
    centers = previous.copy()
    empty = []
    for label in range(1, k + 1):
        members = assignment == label
        if members.any():
            centers[label - 1] = X[members].mean(axis=0)
        else:
            empty.append(label)
    return centers, tuple(empty)


def kmeans_estimation(
    X: np.ndarray,
    k: int,
    iter_max: int = 10,
    seed: Optional[int] = 1234,
    *,
    rng: Optional[np.random.Generator] = None,
) -> Trajectory:
    """Run Lloyd's algorithm and record every step.

    Parameters
    ----------
    X : ndarray, shape (n, q)
        Observed data; no NaN.
    k : int
        Number of clusters, ``1 <= k < n``.
    iter_max : int
        Maximum number of centroid updates.  The trajectory holds at
        most ``iter_max + 1`` snapshots.
    seed : int or None
        Seed for the initial-centroid sample.
    rng : numpy.random.Generator, optional
        Generator to draw the initial sample from instead of
        ``default_rng(seed)``.

    Returns
    -------
    Trajectory

    Raises
    ------
    InvalidInputError
        If *X* is not a finite matrix, ``k`` is out of range or
        ``iter_max`` is not a positive integer.
    """
    X = check_matrix(X)
    n = X.shape[0]
    k = check_n_clusters(k, n)
    if isinstance(iter_max, bool) or not isinstance(iter_max, (int, np.integer)) \
            or iter_max < 1:
        raise InvalidInputError(
            f"iter_max must be a positive integer, got {iter_max!r}")

    if rng is None:
        rng = np.random.default_rng(seed)
    initial = rng.choice(n, size=k, replace=False)

    centers = X[initial].copy()
    assignment, objective = _assign(X, centers)
    snapshots = [ClusteringSnapshot(centers, assignment, objective)]
    logger.debug("k-means step 1: objective=%.6g", objective)

    converged = False
    while len(snapshots) <= iter_max and not converged:
        centers, empty = _update_centers(X, assignment, centers)
        if empty:
            logger.debug("k-means step %d: clusters %s empty, centroids kept",
                         len(snapshots) + 1, list(empty))
        new_assignment, objective = _assign(X, centers)
        converged = bool(np.array_equal(new_assignment, assignment))
        assignment = new_assignment
        snapshots.append(
            ClusteringSnapshot(centers, assignment, objective, empty))
        logger.debug("k-means step %d: objective=%.6g",
                     len(snapshots), objective)

    traj = Trajectory(
        X=X,
        snapshots=tuple(snapshots),
        initial_indices=tuple(int(i) for i in initial),
        k=k,
        iter_max=int(iter_max),
        seed=seed,
    )
    logger.debug(traj.summary())
    return traj
