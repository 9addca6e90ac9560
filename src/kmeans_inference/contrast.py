"""Contrast vector and difference-in-means statistic for two clusters."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .clustering import Trajectory
from .errors import DegenerateClusterError, InvalidInputError

__all__ = [
    "Contrast",
    "build_contrast",
    "check_cluster_labels",
]


@dataclass(frozen=True, eq=False)
class Contrast:
    """Linear contrast ``ν`` over observations and its statistic.

    ``nu`` is ``+1/n1`` on members of ``cluster_1``, ``-1/n2`` on members
    of ``cluster_2`` and zero elsewhere, so ``nu @ X[:, feat]`` is the
    difference of the two cluster means of feature ``feat``.
    """

    nu: np.ndarray
    test_stat: float
    n1: int
    n2: int
    cluster_1: int
    cluster_2: int
    feat: int

    def __post_init__(self):
        nu = np.array(self.nu, dtype=float)
        nu.setflags(write=False)
        object.__setattr__(self, "nu", nu)

    @property
    def squared_norm(self) -> float:
        """‖ν‖² = 1/n1 + 1/n2."""
        return 1.0 / self.n1 + 1.0 / self.n2

    @property
    def scaled(self) -> np.ndarray:
        """ν / ‖ν‖², the per-observation loading of a unit change in the statistic."""
        return self.nu / self.squared_norm


def check_cluster_labels(cluster_1: int, cluster_2: int, k: int) -> None:
    """Labels must lie in ``1..k``."""
    for name, label in (("cluster_1", cluster_1), ("cluster_2", cluster_2)):
        if isinstance(label, bool) or not isinstance(label, (int, np.integer)):
            raise InvalidInputError(f"{name} must be an integer, got {label!r}")
        if not 1 <= label <= k:
            raise InvalidInputError(
                f"Cluster numbers must be between 1 and k={k}, "
                f"got {name}={label}")


def build_contrast(
    trajectory: Trajectory,
    cluster_1: int,
    cluster_2: int,
    feat: int,
) -> Contrast:
    """Contrast between two clusters of the final assignment.

    Raises
    ------
    InvalidInputError
        If a label is outside ``1..k`` or *feat* is not a column of X.
    DegenerateClusterError
        If the labels coincide or the final assignment has fewer than
        ``k`` non-empty clusters.
    """
    check_cluster_labels(cluster_1, cluster_2, trajectory.k)
    if cluster_1 == cluster_2:
        raise DegenerateClusterError(
            f"cluster_1 and cluster_2 must differ, both are {cluster_1}")
    q = trajectory.X.shape[1]
    if not 0 <= feat < q:
        raise InvalidInputError(f"feat must be in 0..{q - 1}, got {feat}")
    if trajectory.n_nonempty < trajectory.k:
        raise DegenerateClusterError(
            f"k-means returned {trajectory.n_nonempty} non-empty clusters "
            f"instead of {trajectory.k}; try a different seed or iter_max")

    final = trajectory.final_cluster
    in_1 = final == cluster_1
    in_2 = final == cluster_2
    n1 = int(in_1.sum())
    n2 = int(in_2.sum())

    nu = np.zeros(len(final))
    nu[in_1] = 1.0 / n1
    nu[in_2] = -1.0 / n2

    column = trajectory.X[:, feat]
    test_stat = float(column[in_1].mean() - column[in_2].mean())

    return Contrast(
        nu=nu, test_stat=test_stat, n1=n1, n2=n2,
        cluster_1=int(cluster_1), cluster_2=int(cluster_2), feat=int(feat),
    )
