"""Tests for splm.py — GLS, likelihoods, fitting and leave-one-out cross-validation."""
import numpy as np
import pandas as pd
import pytest

from StreamVarioSSN import (
    ConfigurationError,
    CovarianceConfig,
    DataError,
    FitConvergenceError,
    ObservationSchema,
    cv_statistics,
    fit_ssn,
    leave_one_out,
)
from StreamVarioSSN.splm import LOG_2PI, design_matrix, gls, minus2loglik


NON_SPATIAL = CovarianceConfig()
EUCLID_EXP = CovarianceConfig(euclid="exponential")


def _rss(data, schema):
    y, X, _ = design_matrix(data, schema)
    beta, *_ = np.linalg.lstsq(X, y, rcond=None)
    return float(np.sum((y - X @ beta)**2)), X.shape


# ─── GLS and likelihood ──────────────────────────────────────────

def test_gls_with_identity_is_ols(field_data, field_schema):
    y, X, _ = design_matrix(field_data, field_schema)
    beta, cov_beta, quad, logdet, _ = gls(y, X, np.eye(len(y)))
    beta_ols, *_ = np.linalg.lstsq(X, y, rcond=None)

    np.testing.assert_allclose(beta, beta_ols)
    np.testing.assert_allclose(cov_beta, np.linalg.inv(X.T @ X))
    assert quad == pytest.approx(np.sum((y - X @ beta_ols)**2))
    assert logdet == pytest.approx(0.0, abs=1e-10)


def test_minus2loglik_ml_closed_form(field_data, field_schema):
    y, X, _ = design_matrix(field_data, field_schema)
    n = len(y)
    s2 = 3.0
    rss = np.sum((y - X @ np.linalg.lstsq(X, y, rcond=None)[0])**2)

    expected = n * np.log(s2) + rss / s2 + n * LOG_2PI
    assert minus2loglik(y, X, s2 * np.eye(n), "ml") == pytest.approx(expected)


def test_design_matrix_intercept_first(field_data, field_schema):
    y, X, names = design_matrix(field_data, field_schema)

    assert names == ["(Intercept)", "elev"]
    np.testing.assert_array_equal(X[:, 0], 1.0)
    np.testing.assert_array_equal(X[:, 1], field_data["elev"].to_numpy())
    np.testing.assert_array_equal(y, field_data["VSCI"].to_numpy())


# ─── Non-spatial fits (closed form) ──────────────────────────────

def test_nugget_only_ml_variance(field_data, field_schema):
    """ML nugget estimate is RSS / n."""
    rss, (n, p) = _rss(field_data, field_schema)
    fit = fit_ssn(field_data, field_schema, NON_SPATIAL, estmethod="ml", loocv=False)

    s2 = rss / n
    assert fit.params["nugget"] == pytest.approx(s2, rel=1e-3)
    assert fit.minus2loglik == pytest.approx(n * np.log(2 * np.pi * s2) + n, rel=1e-6)
    assert fit.aic == pytest.approx(fit.minus2loglik + 2 * (1 + p))


def test_nugget_only_reml_variance(field_data, field_schema):
    """REML nugget estimate is RSS / (n - p)."""
    rss, (n, p) = _rss(field_data, field_schema)
    fit = fit_ssn(field_data, field_schema, NON_SPATIAL, estmethod="reml", loocv=False)

    assert fit.params["nugget"] == pytest.approx(rss / (n - p), rel=1e-3)
    assert fit.aic == pytest.approx(fit.minus2loglik + 2 * 1)
    assert fit.n_cov_params == 1 and fit.n_fixed == 2


def test_fit_coefficients_match_ols_without_spatial_terms(field_data, field_schema):
    fit = fit_ssn(field_data, field_schema, NON_SPATIAL, loocv=False)
    y, X, _ = design_matrix(field_data, field_schema)
    beta_ols, *_ = np.linalg.lstsq(X, y, rcond=None)

    np.testing.assert_allclose(fit.coefficients.to_numpy(), beta_ols, rtol=1e-6)
    assert list(fit.coefficients.index) == ["(Intercept)", "elev"]


# ─── Spatial fits ────────────────────────────────────────────────

def test_spatial_model_beats_independent_errors(field_data, field_schema):
    """The exponentially correlated test field prefers a Euclidean exponential model."""
    spatial = fit_ssn(field_data, field_schema, EUCLID_EXP, loocv=False)
    independent = fit_ssn(field_data, field_schema, NON_SPATIAL, loocv=False)

    assert spatial.aic < independent.aic
    assert set(spatial.params) == {"euclid_psill", "euclid_range", "nugget"}
    assert spatial.params["euclid_psill"] > spatial.params["nugget"]
    assert spatial.sigma.shape == (80, 80)


def test_fit_with_cross_validation(field_data, field_schema):
    fit = fit_ssn(field_data, field_schema, EUCLID_EXP, loocv=True)

    assert list(fit.cv.columns) == ["observed", "predicted", "se"]
    assert len(fit.cv) == 80
    assert set(fit.cv_stats) == {"bias", "rmspe", "cor2", "cover95"}
    assert 0.0 <= fit.cv_stats["cover95"] <= 1.0
    assert fit.cv_stats["cor2"] > 0.3

    row = fit.summary_row()
    assert row["label"] == EUCLID_EXP.label
    assert row["rmspe"] == fit.cv_stats["rmspe"]


def test_iteration_limit_raises(field_data, field_schema):
    with pytest.raises(FitConvergenceError) as info:
        fit_ssn(field_data, field_schema, EUCLID_EXP, loocv=False, maxiter=1)

    assert info.value.label == EUCLID_EXP.label


# ─── Stream-network models ───────────────────────────────────────

def test_taildown_model_beats_independent_errors(stream_survey):
    """The simulated network field has tail-down structure over hydrologic distance."""
    data, schema, network = stream_survey
    taildown = fit_ssn(data, schema, CovarianceConfig(taildown="exponential"), network, loocv=False)
    independent = fit_ssn(data, schema, NON_SPATIAL, network, loocv=False)

    assert taildown.aic < independent.aic
    assert set(taildown.params) == {"taildown_psill", "taildown_range", "nugget"}
    assert taildown.sigma.shape == (30, 30)
    assert np.linalg.eigvalsh(taildown.sigma).min() > 0


def test_tailup_fit_leaves_unconnected_pairs_uncorrelated(stream_survey):
    data, schema, network = stream_survey
    fit = fit_ssn(data, schema, CovarianceConfig(tailup="exponential"), network, loocv=False)

    assert network.flow_unconnected.any()
    np.testing.assert_array_equal(fit.sigma[network.flow_unconnected], 0.0)
    assert (fit.sigma[network.flow_connected] > 0).all()


# ─── Argument and data errors ────────────────────────────────────

def test_unknown_estmethod(field_data, field_schema):
    with pytest.raises(ConfigurationError):
        fit_ssn(field_data, field_schema, NON_SPATIAL, estmethod="bayes")


def test_network_configuration_needs_network(field_data, field_schema):
    with pytest.raises(ConfigurationError, match="network"):
        fit_ssn(field_data, field_schema, CovarianceConfig(tailup="exponential"))


def test_network_size_mismatch(field_data, field_schema, small_network):
    with pytest.raises(DataError):
        fit_ssn(field_data, field_schema, CovarianceConfig(taildown="exponential"), small_network)


def test_too_few_observations(field_data, field_schema):
    with pytest.raises(DataError):
        fit_ssn(field_data.head(4), field_schema, EUCLID_EXP, loocv=False)


def test_rank_deficient_design(field_data):
    data = field_data.assign(elev2=2.0 * field_data["elev"])
    schema = ObservationSchema(x="x", y="y", response="VSCI", covariates=("elev", "elev2"))

    with pytest.raises(DataError, match="rank"):
        fit_ssn(data, schema, NON_SPATIAL, loocv=False)


# ─── Leave-one-out ───────────────────────────────────────────────

def test_loocv_independent_errors_is_ols_deletion(field_data, field_schema):
    """With Sigma = s2 I the kriging predictor reduces to OLS refitted without site i."""
    y, X, _ = design_matrix(field_data, field_schema)
    n = len(y)
    s2 = 2.0
    cv = leave_one_out(y, X, s2 * np.eye(n))

    for i in (0, 17, 79):
        keep = np.arange(n) != i
        Xo = X[keep]
        beta, *_ = np.linalg.lstsq(Xo, y[keep], rcond=None)
        h = X[i] @ np.linalg.solve(Xo.T @ Xo, X[i])
        assert cv.loc[i, "predicted"] == pytest.approx(X[i] @ beta)
        assert cv.loc[i, "se"] == pytest.approx(np.sqrt(s2 * (1.0 + h)))
    np.testing.assert_array_equal(cv["observed"].to_numpy(), y)


def test_cv_statistics_values():
    cv = pd.DataFrame({
        "observed": [1.0, 2.0, 3.0, 4.0],
        "predicted": [1.5, 2.0, 2.5, 5.0],
        "se": [1.0, 1.0, 0.1, 1.0],
    })
    stats = cv_statistics(cv)
    err = np.array([0.5, 0.0, -0.5, 1.0])

    assert stats["bias"] == pytest.approx(err.mean())
    assert stats["rmspe"] == pytest.approx(np.sqrt(np.mean(err**2)))
    assert stats["cor2"] == pytest.approx(np.corrcoef(cv["observed"], cv["predicted"])[0, 1]**2)
    # |-0.5| > 1.96 * 0.1 is the only miss
    assert stats["cover95"] == pytest.approx(0.75)
