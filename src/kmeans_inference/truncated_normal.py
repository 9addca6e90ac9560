"""Tail probabilities of a normal distribution truncated to an interval set.

The selective p-value is a ratio of normal probability masses over
unions of intervals that can sit tens of standard deviations from the
mean, where ``Φ(b) − Φ(a)`` underflows or cancels to zero in linear
space.  All masses here are therefore accumulated as logarithms:

* upper-tail intervals (``a ≥ 0``) use ``log Φ̄(a) + log1p(−Φ̄(b)/Φ̄(a))``,
* lower-tail intervals (``b ≤ 0``) use the mirror image,
* intervals straddling zero use ``log(1 − Φ(a) − Φ̄(b))``,

with ``log Φ`` from :func:`scipy.special.log_ndtr`.  When the two
log-tails of a very distant, very narrow interval agree to every digit,
the leading Mills-ratio term of the tail is used instead, so a positive
width always yields a finite log-mass.
"""

from __future__ import annotations

import math

import numpy as np
from scipy.special import log_ndtr, logsumexp
from scipy.stats import norm

from .intervals import IntervalSet

__all__ = [
    "log_interval_mass",
    "tn_survival",
    "naive_two_sided_pval",
]

_LOG_SQRT_2PI = 0.5 * math.log(2.0 * math.pi)


def _log_tail_mass(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """log(Φ̄(a) − Φ̄(b)) for 0 ≤ a ≤ b (element-wise)."""
    la = log_ndtr(-a)
    lb = log_ndtr(-b)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = la + np.log1p(-np.exp(lb - la))

    collapsed = ~np.isfinite(out) & (b > a) & (a > 0)
    if collapsed.any():
        ac, bc = a[collapsed], b[collapsed]
        with np.errstate(over="ignore"):
            width_term = np.log(-np.expm1(-ac * (bc - ac)))
        out[collapsed] = -0.5 * ac * ac - _LOG_SQRT_2PI - np.log(ac) + width_term
    return out


def log_interval_mass(lo: np.ndarray, hi: np.ndarray) -> np.ndarray:
    """Log standard-normal mass of ``[lo, hi]`` for each pair of endpoints.

    Parameters
    ----------
    lo, hi : array_like
        Standardised endpoints with ``lo <= hi``; ``±inf`` allowed.

    Returns
    -------
    ndarray
        ``log(Φ(hi) − Φ(lo))``; ``-inf`` only for zero-width intervals.
    """
    lo = np.atleast_1d(np.asarray(lo, dtype=float))
    hi = np.atleast_1d(np.asarray(hi, dtype=float))
    out = np.full(lo.shape, -np.inf)

    upper = lo >= 0
    lower = (hi <= 0) & ~upper
    middle = ~upper & ~lower

    if upper.any():
        out[upper] = _log_tail_mass(lo[upper], hi[upper])
    if lower.any():
        out[lower] = _log_tail_mass(-hi[lower], -lo[lower])
    if middle.any():
        outside = np.logaddexp(log_ndtr(lo[middle]), log_ndtr(-hi[middle]))
        out[middle] = np.log(-np.expm1(outside))
    return out


def _log_set_mass(bounds: np.ndarray) -> float:
    if len(bounds) == 0:
        return -np.inf
    logs = log_interval_mass(bounds[:, 0], bounds[:, 1])
    if not np.isfinite(logs).any():
        return -np.inf
    return float(logsumexp(logs[np.isfinite(logs)]))


def tn_survival(
    point: float,
    mean: float,
    sd: float,
    truncation_set: IntervalSet,
) -> float:
    """P(Z > point | Z ∈ truncation_set) for Z ~ N(mean, sd²).

    Parameters
    ----------
    point : float
        Threshold.
    mean, sd : float
        Parameters of the untruncated normal; ``sd`` must be positive.
    truncation_set : IntervalSet
        Set the normal is conditioned on.

    Returns
    -------
    float
        Probability in ``[0, 1]``.

    Raises
    ------
    ValueError
        If ``sd`` is not positive or the set has zero probability mass
        (e.g. it is empty or made only of single points).
    """
    if not sd > 0:
        raise ValueError(f"sd must be positive, got {sd}")
    z = (truncation_set.bounds - mean) / sd
    log_den = _log_set_mass(z)
    if not np.isfinite(log_den):
        raise ValueError(
            f"Truncation set {truncation_set!r} carries no probability mass")

    above = truncation_set & IntervalSet([(point, np.inf)])
    log_num = _log_set_mass((above.bounds - mean) / sd)
    if not np.isfinite(log_num):
        return 0.0
    return float(min(1.0, max(0.0, math.exp(log_num - log_den))))


def naive_two_sided_pval(z: float, mean: float = 0.0, sd: float = 1.0) -> float:
    """Two-sided normal p-value ``P(|Z − mean| ≥ |z − mean|)``, ignoring selection."""
    tail = min(norm.cdf(z, loc=mean, scale=sd), norm.sf(z, loc=mean, scale=sd))
    return float(min(1.0, 2.0 * tail))
