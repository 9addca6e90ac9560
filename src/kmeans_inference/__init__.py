"""kmeans-inference: selective inference after k-means clustering.

Tests whether two clusters found by Lloyd's k-means algorithm differ in
the mean of a single feature, with a p-value that accounts for the
clusters having been estimated from the same data.  The test conditions
on every assignment step of the algorithm, which reduces to truncating
a normal statistic to a union of intervals.
"""
from .errors import (
    KMeansInferenceError, InvalidInputError, DegenerateClusterError,
    SelectionEventError, NumericDegeneracyWarning,
)
from .settings import SettingsRegistry, DEFAULT_SETTINGS

# Numerical collaborators
from .intervals import IntervalSet
from .truncated_normal import tn_survival, naive_two_sided_pval, log_interval_mass

# Clustering and the selective test
from .noise import (
    Isotropic, GeneralCovariance, NoiseModel,
    estimate_sigma_med, resolve_noise_model,
)
from .clustering import ClusteringSnapshot, Trajectory, kmeans_estimation
from .contrast import Contrast, build_contrast
from .selection import (
    QuadraticConstraints, solve_quadratic_inequality, compute_truncation_set,
)
from .inference import PerFeatureResult, kmeans_inference, infer_feature, selective_pval

# Serialisation & calibration
from .serialization import results_to_json, results_from_json, result_to_dict, result_from_dict
from .calibration import (
    three_blob_centers, simulate_gaussian_blobs,
    CalibrationTrial, CalibrationReport, CalibrationRunner,
)

__all__ = [
    # Errors & settings
    "KMeansInferenceError", "InvalidInputError", "DegenerateClusterError",
    "SelectionEventError", "NumericDegeneracyWarning",
    "SettingsRegistry", "DEFAULT_SETTINGS",
    # Numerical collaborators
    "IntervalSet", "tn_survival", "naive_two_sided_pval", "log_interval_mass",
    # Clustering and the selective test
    "Isotropic", "GeneralCovariance", "NoiseModel",
    "estimate_sigma_med", "resolve_noise_model",
    "ClusteringSnapshot", "Trajectory", "kmeans_estimation",
    "Contrast", "build_contrast",
    "QuadraticConstraints", "solve_quadratic_inequality", "compute_truncation_set",
    "PerFeatureResult", "kmeans_inference", "infer_feature", "selective_pval",
    # Serialisation & calibration
    "results_to_json", "results_from_json", "result_to_dict", "result_from_dict",
    "three_blob_centers", "simulate_gaussian_blobs",
    "CalibrationTrial", "CalibrationReport", "CalibrationRunner",
]
