"""Selective test for a difference in means of one feature between k-means clusters.

For clusters ``cluster_1`` and ``cluster_2`` estimated by Lloyd's
algorithm and a feature ``j``, the null hypothesis is that the two
clusters have the same mean of feature ``j``.  The statistic is the
difference of the observed cluster means, ``t = (Xᵀν)_j``, and the
selective p-value is

    P( |(Xᵀν)_j| ≥ |t|  |  every assignment of every Lloyd step is
       the one observed )

computed under ``X ~ MN(μ, I_n, σ² I_q)`` (isotropic) or
``X ~ MN(μ, I_n, Σ)`` (general covariance).  Conditionally, the
statistic is a zero-mean normal truncated to the set returned by
:func:`~kmeans_inference.selection.compute_truncation_set`, so the
p-value is a two-sided truncated-normal tail.  The naive p-value that
ignores the selection is reported alongside for comparison.

Usage
-----
>>> results = kmeans_inference(X, k=3, cluster_1=1, cluster_2=2,
...                            feats=[0, 1], iso=True, sig=1.0,
...                            iter_max=20, seed=2023)
>>> results[0].pval, results[0].p_naive
>>> print(results[0].summary())
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .clustering import Trajectory, check_matrix, check_n_clusters, kmeans_estimation
from .contrast import build_contrast, check_cluster_labels
from .errors import DegenerateClusterError, InvalidInputError
from .intervals import IntervalSet
from .noise import NoiseModel, resolve_noise_model
from .selection import compute_truncation_set
from .settings import DEFAULT_SETTINGS, SettingsRegistry
from .truncated_normal import naive_two_sided_pval, tn_survival

logger = logging.getLogger(__name__)

__all__ = [
    "PerFeatureResult",
    "kmeans_inference",
    "infer_feature",
    "selective_pval",
]


# ═══════════════════════════════════════════════════════════════════
# Result record
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True, eq=False)
class PerFeatureResult:
    """Outcome of the selective test for one feature.

    Attributes
    ----------
    truncation_set : IntervalSet
        Conditioning set of the statistic (includes the boundary
        micro-interval around ``test_stat``).
    final_cluster : ndarray
        Final k-means labels ``1..k`` (read-only copy).
    test_stat : float
        Difference of the feature means, cluster_1 minus cluster_2.
    cluster_1, cluster_2 : int
        Tested labels.
    feat : int
        Tested column of X (0-based).
    sig : float or None
        Isotropic noise level used (given or estimated).
    cov : ndarray or None
        Covariance matrix used when ``iso=False``.
    scale_factor : float
        Null variance of the statistic, ``(1/n1 + 1/n2) × var_feat``.
    p_naive : float
        Two-sided normal p-value ignoring the selection.
    pval : float
        Selective p-value.
    """

    truncation_set: IntervalSet
    final_cluster: np.ndarray
    test_stat: float
    cluster_1: int
    cluster_2: int
    feat: int
    sig: Optional[float]
    cov: Optional[np.ndarray]
    scale_factor: float
    p_naive: float
    pval: float
    n1: int = 0
    n2: int = 0
    n_iter: int = 0
    converged: bool = False

    def __post_init__(self):
        final = np.array(self.final_cluster)
        final.setflags(write=False)
        object.__setattr__(self, "final_cluster", final)

    @property
    def sd(self) -> float:
        return float(np.sqrt(self.scale_factor))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe dict; see :mod:`kmeans_inference.serialization`."""
        from .serialization import result_to_dict
        return result_to_dict(self)

    def summary(self) -> str:
        """One-line human-readable summary."""
        return (
            f"feat {self.feat}: clusters {self.cluster_1} vs {self.cluster_2}, "
            f"test_stat={self.test_stat:+.4f}, "
            f"p_naive={self.p_naive:.3g}, pval={self.pval:.3g}, "
            f"S has {len(self.truncation_set)} interval(s)"
        )

    def __repr__(self) -> str:
        return (
            f"PerFeatureResult(feat={self.feat}, "
            f"clusters=({self.cluster_1}, {self.cluster_2}), "
            f"test_stat={self.test_stat:.4g}, pval={self.pval:.4g})"
        )


# ═══════════════════════════════════════════════════════════════════
# p-values
# ═══════════════════════════════════════════════════════════════════

def selective_pval(test_stat: float, sd: float,
                   truncation_set: IntervalSet) -> float:
    """Two-sided truncated-normal p-value under a zero-mean null.

    ``P(Z > |t| | Z ∈ S) + P(Z > |t| | Z ∈ −S)``, which equals
    ``P(|Z| ≥ |t| | Z ∈ S)`` only because the null mean is zero; a
    nonzero null mean would need a different reflection.
    """
    t = abs(test_stat)
    pval = (tn_survival(t, 0.0, sd, truncation_set)
            + tn_survival(t, 0.0, sd, truncation_set.reflect()))
    return float(min(1.0, pval))


# ═══════════════════════════════════════════════════════════════════
# Per-feature pipeline
# ═══════════════════════════════════════════════════════════════════

def infer_feature(
    trajectory: Trajectory,
    cluster_1: int,
    cluster_2: int,
    feat: int,
    noise: NoiseModel,
    *,
    settings: SettingsRegistry = DEFAULT_SETTINGS,
) -> PerFeatureResult:
    """Contrast, truncation set and p-values for one feature.

    Reads the shared trajectory only; safe to run concurrently.
    """
    contrast = build_contrast(trajectory, cluster_1, cluster_2, feat)
    scale_factor = contrast.squared_norm * noise.feature_variance(feat)
    sd = float(np.sqrt(scale_factor))

    truncation_set = compute_truncation_set(
        trajectory, contrast, noise, settings=settings)
    p_naive = naive_two_sided_pval(contrast.test_stat, 0.0, sd)
    pval = selective_pval(contrast.test_stat, sd, truncation_set)

    return PerFeatureResult(
        truncation_set=truncation_set,
        final_cluster=trajectory.final_cluster,
        test_stat=contrast.test_stat,
        cluster_1=contrast.cluster_1,
        cluster_2=contrast.cluster_2,
        feat=contrast.feat,
        sig=noise.sig,
        cov=noise.cov,
        scale_factor=float(scale_factor),
        p_naive=p_naive,
        pval=pval,
        n1=contrast.n1,
        n2=contrast.n2,
        n_iter=trajectory.n_iter,
        converged=trajectory.converged,
    )


def _check_feats(feats: Sequence[int], q: int) -> List[int]:
    if isinstance(feats, (int, np.integer)) and not isinstance(feats, bool):
        feats = [feats]
    feats = list(feats)
    if not feats:
        raise InvalidInputError("feats must name at least one feature")
    for feat in feats:
        if isinstance(feat, bool) or not isinstance(feat, (int, np.integer)):
            raise InvalidInputError(f"Feature indices must be integers, got {feat!r}")
        if not 0 <= feat < q:
            raise InvalidInputError(
                f"Feature index {feat} out of range for {q} feature(s)")
    return [int(f) for f in feats]


# ═══════════════════════════════════════════════════════════════════
# Entry point
# ═══════════════════════════════════════════════════════════════════

def kmeans_inference(
    X: np.ndarray,
    k: int,
    cluster_1: int,
    cluster_2: int,
    feats: Sequence[int],
    iso: bool = False,
    sig: Optional[float] = None,
    cov: Optional[np.ndarray] = None,
    iter_max: int = 10,
    seed: Optional[int] = 1234,
    *,
    settings: SettingsRegistry = DEFAULT_SETTINGS,
    max_workers: Optional[int] = None,
) -> List[PerFeatureResult]:
    """Test for a difference in means of each feature in *feats*.

    Parameters
    ----------
    X : ndarray, shape (n, q)
        Observed data, no NaN.
    k : int
        Number of k-means clusters, ``1 <= k < n``.
    cluster_1, cluster_2 : int
        Two different labels in ``1..k`` as numbered by
        :func:`~kmeans_inference.clustering.kmeans_estimation`.
    feats : sequence of int
        0-based columns to test; results come back in the same order.
    iso : bool
        Use the isotropic noise model.  If ``sig`` is omitted it is
        estimated with :func:`~kmeans_inference.noise.estimate_sigma_med`.
    sig : float, optional
        Noise standard deviation (isotropic model only).
    cov : ndarray, optional
        ``q × q`` feature covariance; required when ``iso`` is false.
    iter_max : int
        Maximum number of Lloyd updates.
    seed : int or None
        Seed for the initial centroids.
    settings : SettingsRegistry
        Numerical tolerances.
    max_workers : int, optional
        Test features on a thread pool of this size.  The clustering
        is always run once and shared.

    Returns
    -------
    list[PerFeatureResult]
        One result per entry of *feats*, in order.

    Raises
    ------
    InvalidInputError
        Malformed X, k, labels, features or noise parameters.
    DegenerateClusterError
        Equal labels, or fewer than ``k`` non-empty final clusters.
    SelectionEventError
        The truncation set for some feature came out empty.

    A failure while testing any one feature is logged with the feature
    index and re-raised, aborting the whole call: no partial list of
    results is returned, with or without ``max_workers``.
    """
    X = check_matrix(X)
    n, q = X.shape
    k = check_n_clusters(k, n)
    check_cluster_labels(cluster_1, cluster_2, k)
    feats = _check_feats(feats, q)
    noise = resolve_noise_model(X, iso, sig, cov)
    if cluster_1 == cluster_2:
        raise DegenerateClusterError(
            f"cluster_1 and cluster_2 must differ, both are {cluster_1}")

    trajectory = kmeans_estimation(X, k, iter_max, seed)
    if trajectory.n_nonempty < k:
        raise DegenerateClusterError(
            f"k-means clustering returned {trajectory.n_nonempty} non-empty "
            f"clusters instead of {k}; try a different seed or iter_max")
    logger.debug(trajectory.summary())

    def _run(feat: int) -> PerFeatureResult:
        try:
            return infer_feature(trajectory, cluster_1, cluster_2, feat,
                                 noise, settings=settings)
        except Exception:
            logger.error("Selective test failed for feature %d", feat)
            raise

    if max_workers is not None and max_workers > 1 and len(feats) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(_run, feats))
    else:
        results = [_run(feat) for feat in feats]

    for res in results:
        logger.debug(res.summary())
    return results
