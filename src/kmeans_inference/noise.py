"""Noise models for the observed data matrix.

Two generative models are supported:

* :class:`Isotropic` — ``X ~ MN(μ, I_n, σ² I_q)``: independent features
  with a common variance.
* :class:`GeneralCovariance` — ``X ~ MN(μ, I_n, Σ)``: rows are
  independent, features within a row are jointly Gaussian with a known
  ``q × q`` covariance ``Σ``.

Each model answers the two questions the rest of the pipeline asks:
which direction in feature space a perturbation of the test statistic
moves the data along (:meth:`perturbation_direction`), and what the
variance of the tested feature is (:meth:`feature_variance`).

:func:`resolve_noise_model` turns the user-facing ``iso`` / ``sig`` /
``cov`` arguments into one of the two variants, estimating σ with
:func:`estimate_sigma_med` when it is not given.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
from scipy.stats import chi2

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

__all__ = [
    "NoiseModel",
    "Isotropic",
    "GeneralCovariance",
    "estimate_sigma_med",
    "resolve_noise_model",
]


# ═══════════════════════════════════════════════════════════════════
# Variants
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Isotropic:
    """Isotropic noise with standard deviation ``sigma``."""

    sigma: float

    def __post_init__(self):
        if not (np.isfinite(self.sigma) and self.sigma > 0):
            raise InvalidInputError(
                f"sig must be a positive finite number, got {self.sigma}")

    def perturbation_direction(self, feat: int, q: int) -> np.ndarray:
        """Unit vector ``e_feat``: only the tested column moves."""
        s = np.zeros(q)
        s[feat] = 1.0
        return s

    def feature_variance(self, feat: int) -> float:
        return float(self.sigma) ** 2

    @property
    def sig(self) -> Optional[float]:
        return float(self.sigma)

    @property
    def cov(self) -> Optional[np.ndarray]:
        return None


@dataclass(frozen=True, eq=False)
class GeneralCovariance:
    """Feature covariance ``cov`` shared by every observation.

    The matrix is copied and made read-only on construction.
    """

    covariance: np.ndarray

    def __post_init__(self):
        cov = np.array(self.covariance, dtype=float)
        if cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
            raise InvalidInputError(
                f"cov must be a square matrix, got shape {cov.shape}")
        if not np.all(np.isfinite(cov)):
            raise InvalidInputError("cov must not contain NaN or inf")
        if not np.allclose(cov, cov.T):
            raise InvalidInputError("cov must be symmetric")
        if np.any(np.diag(cov) <= 0):
            raise InvalidInputError("cov must have a positive diagonal")
        cov.setflags(write=False)
        object.__setattr__(self, "covariance", cov)

    def perturbation_direction(self, feat: int, q: int) -> np.ndarray:
        """Row ``Σ[feat, :] / Σ[feat, feat]``.

        Under correlated features, moving the tested feature's contrast
        drags the other features along in proportion to their covariance
        with it.
        """
        if self.covariance.shape[0] != q:
            raise InvalidInputError(
                f"cov is {self.covariance.shape[0]}×{self.covariance.shape[0]}"
                f" but X has {q} features")
        return self.covariance[feat] / self.covariance[feat, feat]

    def feature_variance(self, feat: int) -> float:
        return float(self.covariance[feat, feat])

    @property
    def sig(self) -> Optional[float]:
        return None

    @property
    def cov(self) -> Optional[np.ndarray]:
        return self.covariance

    def __repr__(self) -> str:
        q = self.covariance.shape[0]
        return f"GeneralCovariance({q}×{q})"


NoiseModel = Union[Isotropic, GeneralCovariance]


# ═══════════════════════════════════════════════════════════════════
# Estimation and resolution
# ═══════════════════════════════════════════════════════════════════

def estimate_sigma_med(X: np.ndarray) -> float:
    """Robust median-based estimate of the isotropic noise level.

    Each column is centred at its median; the pooled median of the
    squared residuals is rescaled by the median of a χ²₁ variable so
    the estimate is consistent for σ under Gaussian noise.
    """
    X = np.asarray(X, dtype=float)
    centred = X - np.median(X, axis=0)
    return float(np.sqrt(np.median(centred ** 2) / chi2.ppf(0.5, df=1)))


def resolve_noise_model(
    X: np.ndarray,
    iso: bool,
    sig: Optional[float] = None,
    cov: Optional[np.ndarray] = None,
) -> NoiseModel:
    """Validate ``iso`` / ``sig`` / ``cov`` and build the noise model.

    Raises
    ------
    InvalidInputError
        If both ``sig`` and ``cov`` are given, if ``iso`` is false and
        ``cov`` is missing, if ``iso`` is true and ``cov`` is given, or
        if either parameter is malformed, or if σ has to be estimated
        and the robust estimate is not positive.
    """
    if sig is not None and cov is not None:
        raise InvalidInputError(
            "Only one of sig and cov can be specified")
    if iso:
        if cov is not None:
            raise InvalidInputError(
                "cov is only used when iso=False; pass sig instead")
        if sig is None:
            sig = estimate_sigma_med(X)
            if not np.isfinite(sig) or sig <= 0.0:
                raise InvalidInputError(
                    f"Robust noise estimate is degenerate (sigma={sig:.6g}): "
                    "at least half of the median-centred entries are zero; "
                    "pass sig explicitly")
            logger.info(
                "Noise level not specified, using the robust "
                "median-based estimate sigma=%.6g", sig)
        return Isotropic(float(sig))

    if cov is None:
        raise InvalidInputError("cov must be specified when iso=False")
    model = GeneralCovariance(np.asarray(cov, dtype=float))
    if model.covariance.shape[0] != X.shape[1]:
        raise InvalidInputError(
            f"cov must be {X.shape[1]}×{X.shape[1]}, "
            f"got {model.covariance.shape}")
    return model
