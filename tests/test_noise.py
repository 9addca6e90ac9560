"""Tests for noise models and their resolution from user arguments."""

import numpy as np
import pytest

from kmeans_inference.errors import InvalidInputError
from kmeans_inference.noise import (
    GeneralCovariance,
    Isotropic,
    estimate_sigma_med,
    resolve_noise_model,
)


@pytest.fixture
def X():
    return np.random.default_rng(3).normal(scale=2.0, size=(50, 3))


# ═══════════════════════════════════════════════════════════════════
# Variants
# ═══════════════════════════════════════════════════════════════════

class TestIsotropic:

    def test_direction_is_unit_vector(self):
        s = Isotropic(1.5).perturbation_direction(1, 3)
        np.testing.assert_array_equal(s, [0.0, 1.0, 0.0])

    def test_variance(self):
        assert Isotropic(1.5).feature_variance(0) == pytest.approx(2.25)

    @pytest.mark.parametrize("sigma", [0.0, -1.0, np.inf, np.nan])
    def test_rejects_bad_sigma(self, sigma):
        with pytest.raises(InvalidInputError):
            Isotropic(sigma)

    def test_reports_sig_not_cov(self):
        noise = Isotropic(2.0)
        assert noise.sig == 2.0
        assert noise.cov is None


class TestGeneralCovariance:

    def test_direction_is_scaled_row(self):
        cov = np.array([[2.0, 0.5, 0.0], [0.5, 1.0, 0.2], [0.0, 0.2, 4.0]])
        s = GeneralCovariance(cov).perturbation_direction(0, 3)
        np.testing.assert_allclose(s, [1.0, 0.25, 0.0])

    def test_identity_matches_isotropic(self):
        gc = GeneralCovariance(np.eye(3))
        iso = Isotropic(1.0)
        for feat in range(3):
            np.testing.assert_array_equal(
                gc.perturbation_direction(feat, 3),
                iso.perturbation_direction(feat, 3))
            assert gc.feature_variance(feat) == iso.feature_variance(feat)

    def test_copy_is_read_only(self):
        cov = np.eye(2)
        gc = GeneralCovariance(cov)
        cov[0, 0] = 5.0
        assert gc.covariance[0, 0] == 1.0
        with pytest.raises(ValueError):
            gc.covariance[0, 0] = 3.0

    @pytest.mark.parametrize("cov", [
        np.ones((2, 3)),
        np.array([[1.0, 0.3], [0.0, 1.0]]),
        np.array([[0.0, 0.0], [0.0, 1.0]]),
        np.array([[1.0, np.nan], [np.nan, 1.0]]),
    ])
    def test_rejects_malformed(self, cov):
        with pytest.raises(InvalidInputError):
            GeneralCovariance(cov)

    def test_direction_checks_dimension(self):
        with pytest.raises(InvalidInputError):
            GeneralCovariance(np.eye(2)).perturbation_direction(0, 3)

    def test_repr(self):
        assert repr(GeneralCovariance(np.eye(4))) == "GeneralCovariance(4×4)"


# ═══════════════════════════════════════════════════════════════════
# Estimation and resolution
# ═══════════════════════════════════════════════════════════════════

class TestEstimateSigma:

    def test_consistent_for_gaussian_noise(self):
        X = np.random.default_rng(0).normal(scale=2.0, size=(20000, 2)) + [5.0, -3.0]
        assert estimate_sigma_med(X) == pytest.approx(2.0, rel=0.05)

    def test_robust_to_outliers(self):
        X = np.random.default_rng(1).normal(size=(2000, 2))
        X[:20] = 1e6
        assert estimate_sigma_med(X) == pytest.approx(1.0, rel=0.1)


class TestResolveNoiseModel:

    def test_iso_with_sig(self, X):
        noise = resolve_noise_model(X, iso=True, sig=1.3)
        assert isinstance(noise, Isotropic)
        assert noise.sigma == 1.3

    def test_iso_estimates_sigma(self, X, caplog):
        with caplog.at_level("INFO", logger="kmeans_inference.noise"):
            noise = resolve_noise_model(X, iso=True)
        assert noise.sigma == pytest.approx(estimate_sigma_med(X))
        assert "estimate" in caplog.text

    def test_general(self, X):
        noise = resolve_noise_model(X, iso=False, cov=np.eye(3))
        assert isinstance(noise, GeneralCovariance)

    def test_sig_and_cov_conflict(self, X):
        with pytest.raises(InvalidInputError, match="Only one"):
            resolve_noise_model(X, iso=True, sig=1.0, cov=np.eye(3))
        with pytest.raises(InvalidInputError):
            resolve_noise_model(X, iso=False, sig=1.0, cov=np.eye(3))

    def test_iso_with_cov(self, X):
        with pytest.raises(InvalidInputError):
            resolve_noise_model(X, iso=True, cov=np.eye(3))

    def test_general_without_cov(self, X):
        with pytest.raises(InvalidInputError):
            resolve_noise_model(X, iso=False)

    def test_cov_shape_mismatch(self, X):
        with pytest.raises(InvalidInputError):
            resolve_noise_model(X, iso=False, cov=np.eye(2))

    def test_degenerate_estimate_asks_for_sig(self):
        X = np.zeros((20, 2))
        X[:3, 0] = [1.0, 2.0, 3.0]
        assert estimate_sigma_med(X) == 0.0
        with pytest.raises(InvalidInputError, match="estimate is degenerate"):
            resolve_noise_model(X, iso=True)
        assert resolve_noise_model(X, iso=True, sig=0.5).sigma == 0.5
