"""Simulation harness for checking selective p-values empirically.

Under the null hypothesis a valid selective p-value is uniform on
[0, 1], while the naive p-value piles up near zero because the clusters
were chosen to look different.  This module simulates Gaussian data,
runs :func:`~kmeans_inference.inference.kmeans_inference` over many
seeds and summarises the resulting p-values.

Quick start
-----------
>>> runner = CalibrationRunner(n=150, q=2, k=3, sigma=1.0)   # one blob: null
>>> report = runner.run(seeds=range(200), verbose=True)
>>> print(report.summary())
>>> report.ks_uniform()            # (statistic, p-value)

>>> power = CalibrationRunner(centers=three_blob_centers(delta=10.0))
>>> power.run(seeds=range(20)).rejection_rate(0.05)

Hooks
-----
``run`` accepts ``on_trial_done(seed, trial)`` and
``on_error(seed, exception)`` callbacks.
"""

from __future__ import annotations

import datetime
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
from scipy.stats import kstest

from .errors import KMeansInferenceError
from .inference import kmeans_inference
from .serialization import numpy_safe
from .settings import DEFAULT_SETTINGS, SettingsRegistry

__all__ = [
    "three_blob_centers",
    "simulate_gaussian_blobs",
    "CalibrationTrial",
    "CalibrationReport",
    "CalibrationRunner",
]


# ═══════════════════════════════════════════════════════════════════
# Data generation
# ═══════════════════════════════════════════════════════════════════

def three_blob_centers(delta: float = 10.0, q: int = 2) -> np.ndarray:
    """Centres ``(δ/2, 0)``, ``(0, √3 δ/2)``, ``(−δ/2, 0)`` padded to *q* features.

    The three centres form an equilateral triangle with side δ; the
    second one is placed on the last feature.
    """
    if q < 2:
        raise ValueError(f"three_blob_centers needs q >= 2, got {q}")
    centers = np.zeros((3, q))
    centers[0, 0] = delta / 2
    centers[1, -1] = np.sqrt(3.0) * delta / 2
    centers[2, 0] = -delta / 2
    return centers


def simulate_gaussian_blobs(
    n: int,
    centers: np.ndarray,
    sigma: float = 1.0,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Matrix-normal sample around *centers* with equal-sized groups.

    Returns
    -------
    X : ndarray, shape (n, q)
    labels : ndarray, shape (n,)
        Generating group ``1..len(centers)`` of each row, in blocks.
    """
    centers = np.atleast_2d(np.asarray(centers, dtype=float))
    rng = rng if rng is not None else np.random.default_rng()
    sizes = [len(part) for part in np.array_split(np.arange(n), len(centers))]
    labels = np.repeat(np.arange(1, len(centers) + 1), sizes)
    X = rng.normal(scale=sigma, size=(n, centers.shape[1])) + centers[labels - 1]
    return X, labels


# ═══════════════════════════════════════════════════════════════════
# Data types
# ═══════════════════════════════════════════════════════════════════

@dataclass
class CalibrationTrial:
    """Outcome of one simulated dataset."""
    seed: int
    pval: float = float("nan")
    p_naive: float = float("nan")
    test_stat: float = float("nan")
    n_iter: int = 0
    time_s: float = 0.0
    error: Optional[str] = None


@dataclass
class CalibrationReport:
    """p-values collected over many seeds."""

    trials: List[CalibrationTrial]
    timestamp: str = ""
    total_time_s: float = 0.0
    alpha: float = 0.05

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.datetime.now().isoformat()

    @property
    def valid_trials(self) -> List[CalibrationTrial]:
        return [t for t in self.trials if t.error is None]

    @property
    def errors(self) -> List[CalibrationTrial]:
        return [t for t in self.trials if t.error is not None]

    @property
    def n_valid(self) -> int:
        return len(self.valid_trials)

    @property
    def pvals(self) -> np.ndarray:
        return np.array([t.pval for t in self.valid_trials])

    @property
    def naive_pvals(self) -> np.ndarray:
        return np.array([t.p_naive for t in self.valid_trials])

    def rejection_rate(self, alpha: Optional[float] = None) -> float:
        """Fraction of selective p-values at or below *alpha*."""
        alpha = self.alpha if alpha is None else alpha
        p = self.pvals
        return float(np.mean(p <= alpha)) if len(p) else 0.0

    def naive_rejection_rate(self, alpha: Optional[float] = None) -> float:
        alpha = self.alpha if alpha is None else alpha
        p = self.naive_pvals
        return float(np.mean(p <= alpha)) if len(p) else 0.0

    def ks_uniform(self) -> Tuple[float, float]:
        """Kolmogorov–Smirnov test of the selective p-values against U(0, 1)."""
        if self.n_valid == 0:
            return float("nan"), float("nan")
        res = kstest(self.pvals, "uniform")
        return float(res.statistic), float(res.pvalue)

    def summary(self, alpha: Optional[float] = None) -> str:
        """Human-readable summary string."""
        alpha = self.alpha if alpha is None else alpha
        ks_stat, ks_p = self.ks_uniform()
        return "\n".join([
            f"Calibration Report — {self.timestamp}",
            f"{'=' * 55}",
            f"Trials:  {self.n_valid} valid, {len(self.errors)} errors",
            f"Time:    {self.total_time_s:.1f}s",
            f"Rejections at α={alpha:g}: "
            f"selective {self.rejection_rate(alpha):.1%}, "
            f"naive {self.naive_rejection_rate(alpha):.1%}",
            f"KS vs U(0,1): D={ks_stat:.3f} (p={ks_p:.3g})",
        ])

    # ── Serialisation ───────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "total_time_s": self.total_time_s,
            "alpha": self.alpha,
            "n_valid": self.n_valid,
            "trials": [
                {
                    "seed": t.seed,
                    "pval": None if t.error else t.pval,
                    "p_naive": None if t.error else t.p_naive,
                    "test_stat": None if t.error else t.test_stat,
                    "n_iter": t.n_iter,
                    "time_s": t.time_s,
                    "error": t.error,
                }
                for t in self.trials
            ],
        }

    def save(self, path: str | Path) -> None:
        """Save report to JSON file."""
        Path(path).write_text(
            json.dumps(numpy_safe(self.to_dict()), indent=2),
            encoding="utf-8")

    @classmethod
    def load(cls, path: str | Path) -> "CalibrationReport":
        """Load report from JSON file."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        nan = float("nan")
        trials = [
            CalibrationTrial(
                seed=t["seed"],
                pval=nan if t["pval"] is None else t["pval"],
                p_naive=nan if t["p_naive"] is None else t["p_naive"],
                test_stat=nan if t["test_stat"] is None else t["test_stat"],
                n_iter=t.get("n_iter", 0),
                time_s=t.get("time_s", 0.0),
                error=t.get("error"),
            )
            for t in data["trials"]
        ]
        return cls(trials=trials, timestamp=data.get("timestamp", ""),
                   total_time_s=data.get("total_time_s", 0.0),
                   alpha=data.get("alpha", 0.05))


# ═══════════════════════════════════════════════════════════════════
# CalibrationRunner
# ═══════════════════════════════════════════════════════════════════

class CalibrationRunner:
    """Repeat simulate → cluster → test over a range of seeds.

    Parameters
    ----------
    n, q : int
        Observations and features per simulated dataset.
    k : int
        Number of k-means clusters.
    sigma : float
        Noise level, passed as the known ``sig`` of the isotropic test.
    centers : ndarray, optional
        Generating centres; defaults to a single blob at the origin
        (the global null).
    cluster_1, cluster_2, feat : int
        Comparison to test on every dataset.
    """

    def __init__(
        self,
        n: Optional[int] = None,
        q: Optional[int] = None,
        k: int = 3,
        sigma: float = 1.0,
        centers: Optional[np.ndarray] = None,
        cluster_1: int = 1,
        cluster_2: int = 2,
        feat: int = 0,
        iter_max: Optional[int] = None,
        settings: SettingsRegistry = DEFAULT_SETTINGS,
    ):
        self.settings = settings
        self.n = int(n if n is not None else settings["calibration.n_obs"])
        if centers is not None:
            centers = np.atleast_2d(np.asarray(centers, dtype=float))
            q = centers.shape[1]
        self.q = int(q if q is not None else settings["calibration.n_features"])
        self.centers = centers if centers is not None else np.zeros((1, self.q))
        self.k = k
        self.sigma = sigma
        self.cluster_1 = cluster_1
        self.cluster_2 = cluster_2
        self.feat = feat
        self.iter_max = int(iter_max if iter_max is not None
                            else settings["clustering.iter_max"])

    def run_trial(self, seed: int) -> CalibrationTrial:
        """Simulate one dataset from *seed* and test it."""
        t0 = time.perf_counter()
        X, _ = simulate_gaussian_blobs(
            self.n, self.centers, self.sigma, np.random.default_rng(seed))
        result = kmeans_inference(
            X, self.k, self.cluster_1, self.cluster_2, [self.feat],
            iso=True, sig=self.sigma, iter_max=self.iter_max, seed=seed,
            settings=self.settings,
        )[0]
        return CalibrationTrial(
            seed=int(seed),
            pval=result.pval,
            p_naive=result.p_naive,
            test_stat=result.test_stat,
            n_iter=result.n_iter,
            time_s=round(time.perf_counter() - t0, 3),
        )

    def run(
        self,
        seeds: Iterable[int] = range(100),
        *,
        verbose: bool = False,
        on_trial_done: Optional[Callable] = None,
        on_error: Optional[Callable] = None,
    ) -> CalibrationReport:
        """Run one trial per seed.

        Trials that fail with a :class:`KMeansInferenceError` (typically
        a degenerate clustering) are recorded as errors and skipped in
        the p-value summaries.
        """
        seeds = list(seeds)
        trials: List[CalibrationTrial] = []
        t_total = time.perf_counter()

        for i, seed in enumerate(seeds):
            if verbose:
                print(f"[{i+1}/{len(seeds)}] seed={seed} …", end=" ",
                      flush=True)
            try:
                trial = self.run_trial(seed)
                if verbose:
                    print(f"pval={trial.pval:.3f} naive={trial.p_naive:.3g}")
                if on_trial_done:
                    on_trial_done(seed, trial)
            except KMeansInferenceError as exc:
                trial = CalibrationTrial(
                    seed=int(seed), error=f"{type(exc).__name__}: {exc}")
                if verbose:
                    print(f"ERROR: {exc}")
                if on_error:
                    on_error(seed, exc)
            trials.append(trial)

        return CalibrationReport(
            trials=trials,
            total_time_s=round(time.perf_counter() - t_total, 1),
            alpha=float(self.settings["calibration.alpha"]),
        )
