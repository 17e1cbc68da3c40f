"""
This file contains the spatial linear model for stream networks: generalized least squares fixed effects, (restricted)
maximum likelihood estimation of the covariance parameters and leave-one-out cross-validation by universal kriging.
"""

# import modules
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.linalg import cho_factor, cho_solve, LinAlgError
from scipy.optimize import minimize
from scipy.stats import norm
from tqdm.auto import tqdm

# from package
from StreamVarioSSN.config import ESTIMATION_METHODS, CovarianceConfig, ObservationSchema
from StreamVarioSSN.covariance import build_covariance, pack_params
from StreamVarioSSN.errors import ConfigurationError, DataError, FitConvergenceError
from StreamVarioSSN.network import NetworkDistances
from StreamVarioSSN.utils import pairwise_distances, validate_observations

logger = logging.getLogger(__name__)

LOG_2PI = np.log(2.0 * np.pi)

# returned by the objective where the covariance is not positive definite
PENALTY = 1e20


@dataclass
class SSNFit:
    """Result of one `fit_ssn` call."""

    config: CovarianceConfig
    estmethod: str
    params: Dict[str, float]
    coefficients: pd.Series
    std_errors: pd.Series
    minus2loglik: float
    aic: float
    n_obs: int
    sigma: np.ndarray = field(repr=False)
    optimizer_message: str = ""
    cv: Optional[pd.DataFrame] = field(default=None, repr=False)
    cv_stats: Dict[str, float] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.config.label

    @property
    def n_cov_params(self) -> int:
        return self.config.n_cov_params

    @property
    def n_fixed(self) -> int:
        return int(self.coefficients.size)

    def summary_row(self) -> dict:
        """Flat record for a comparison table."""
        row = {
            "label": self.label,
            "tailup": self.config.tailup,
            "taildown": self.config.taildown,
            "euclid": self.config.euclid,
            "nugget": self.config.nugget,
            "estmethod": self.estmethod,
            "n_obs": self.n_obs,
            "n_cov_params": self.n_cov_params,
            "n_fixed": self.n_fixed,
            "minus2loglik": self.minus2loglik,
            "aic": self.aic,
        }
        for key in ("bias", "rmspe", "cor2", "cover95"):
            row[key] = self.cv_stats.get(key, np.nan)
        return row


# Generalized least squares
def gls(y: np.ndarray, X: np.ndarray, Sigma: np.ndarray):
    """
    GLS fixed effects under covariance Sigma.

        beta = (X^T S^-1 X)^-1 X^T S^-1 y

    Returns
    -------
    beta : (p,) ndarray
    cov_beta : (p,p) ndarray
        (X^T S^-1 X)^-1.
    quad : float
        r^T S^-1 r with r = y - X beta.
    logdet : float
        log|S|.
    logdet_xsx : float
        log|X^T S^-1 X|.

    Raises
    ------
    scipy.linalg.LinAlgError
        Sigma not positive definite or X^T S^-1 X singular.
    """
    cF = cho_factor(Sigma, lower=True, overwrite_a=False, check_finite=False)
    SiX = cho_solve(cF, X, check_finite=False)
    Siy = cho_solve(cF, y, check_finite=False)
    XtSiX = X.T @ SiX
    xF = cho_factor(XtSiX, lower=True, overwrite_a=False, check_finite=False)
    beta = cho_solve(xF, X.T @ Siy, check_finite=False)
    cov_beta = cho_solve(xF, np.eye(X.shape[1]), check_finite=False)
    r = y - X @ beta
    quad = float(r @ cho_solve(cF, r, check_finite=False))
    logdet = 2.0 * float(np.sum(np.log(np.diag(cF[0]))))
    logdet_xsx = 2.0 * float(np.sum(np.log(np.diag(xF[0]))))
    return beta, cov_beta, quad, logdet, logdet_xsx

def minus2loglik(y, X, Sigma, estmethod="reml"):
    """-2 log-likelihood (REML or ML) of a Gaussian linear model with covariance Sigma."""
    n, p = X.shape
    _, _, quad, logdet, logdet_xsx = gls(y, X, Sigma)
    if estmethod == "reml":
        return logdet + logdet_xsx + quad + (n - p) * LOG_2PI
    return logdet + quad + n * LOG_2PI

# Starting values and bounds
def make_init_and_bounds(config, resid_var, max_hydro, max_euclid):
    """
    Log-scale starting values and bounds for the covariance parameters.

    The residual variance of an OLS fit is split evenly over the active
    components; ranges start at half the largest relevant distance.
    """
    s2 = max(float(resid_var), 1e-12)
    k = len(config.active_forms) + int(config.nugget)
    v0 = np.log(s2 / k)
    v_bounds = (np.log(s2 * 1e-6), np.log(s2 * 1e2))

    x0, bounds = [], []
    for form in config.active_forms:
        dmax = max_euclid if form == "euclid" else max_hydro
        dmax = dmax if np.isfinite(dmax) and dmax > 0 else 1.0
        x0 += [v0, np.log(0.5 * dmax)]
        bounds += [v_bounds, (np.log(dmax * 1e-4), np.log(dmax * 1e2))]
    if config.nugget:
        x0.append(v0)
        bounds.append(v_bounds)
    return np.array(x0), bounds

def design_matrix(data: pd.DataFrame, schema: ObservationSchema) -> Tuple[np.ndarray, np.ndarray, list]:
    """Response vector, intercept-first design matrix and coefficient names."""
    y = data[schema.response].to_numpy(float)
    names = ["(Intercept)"] + list(schema.covariates)
    X = np.column_stack([np.ones(len(data))] + [data[c].to_numpy(float) for c in schema.covariates])
    return y, X, names

# Main Function
def fit_ssn(
    data: pd.DataFrame,
    schema: ObservationSchema,
    config: CovarianceConfig,
    network: Optional[NetworkDistances] = None,
    *,
    estmethod: str = "reml",
    loocv: bool = True,
    maxiter: Optional[int] = None,
    jitter: float = 1e-10,
    progress: bool = False,
) -> SSNFit:
    """
    Fit a spatial stream-network linear model.

        y = X beta + e,  Cov(e) = s_tu R_tu + s_td R_td + s_eu R_eu + s_0 I

    Parameters
    ----------
    data : pandas.DataFrame
        Observation table; rows in the same order as the network sites.
    schema : ObservationSchema
        Coordinate, response and covariate columns.
    config : CovarianceConfig
        Which tail-up / tail-down / Euclidean shapes and nugget to include.
    network : NetworkDistances, optional
        Needed for tail-up and tail-down components.
    estmethod : {'reml', 'ml'}
        REML for comparing covariance structures with the same fixed effects;
        ML when fixed effects differ between compared models.
    loocv : bool
        Also compute leave-one-out cross-validation.
    maxiter : int, optional
        Nelder–Mead iteration limit (default 1000 per parameter).
    jitter : float
        Diagonal stabilisation passed to `build_covariance`.
    progress : bool
        Progress bar for the LOOCV loop.

    Returns
    -------
    SSNFit

    Raises
    ------
    ConfigurationError
        Unknown estmethod, missing columns or missing network.
    DataError
        Degenerate data, or too few observations for the parameters.
    FitConvergenceError
        The optimiser failed or the fitted covariance is singular.

    Notes
    -----
    AIC = -2 loglik + 2 k, where k counts the covariance parameters for REML
    and covariance plus fixed-effect parameters for ML.
    """
    if estmethod not in ESTIMATION_METHODS:
        raise ConfigurationError(f"Invalid estmethod {estmethod!r}: choose from {ESTIMATION_METHODS}")
    data = validate_observations(data, schema)
    if config.needs_network:
        if network is None:
            raise ConfigurationError(f"{config.label} needs network distances")
        if network.n != len(data):
            raise DataError(f"network has {network.n} sites but data has {len(data)} rows")

    y, X, names = design_matrix(data, schema)
    n, p = X.shape
    if n <= p + config.n_cov_params:
        raise DataError(f"{n} observations cannot support {p} fixed and {config.n_cov_params} covariance parameters")
    if np.linalg.matrix_rank(X) < p:
        raise DataError(f"design matrix is rank deficient for covariates {list(schema.covariates)}")

    coords = data[[schema.x, schema.y]].to_numpy(float)
    D_eu = pairwise_distances(coords)
    max_hydro = network.max_hydrologic() if network is not None else np.nan

    beta_ols, *_ = np.linalg.lstsq(X, y, rcond=None)
    resid_var = float(np.sum((y - X @ beta_ols)**2) / (n - p))
    x0, bounds = make_init_and_bounds(config, resid_var, max_hydro, float(D_eu.max()))

    def objective(theta):
        params = pack_params(config, np.exp(theta))
        Sigma = build_covariance(params, config, network=network, euclid_distance=D_eu, jitter=jitter)
        try:
            val = minus2loglik(y, X, Sigma, estmethod)
        except LinAlgError:
            return PENALTY
        return val if np.isfinite(val) else PENALTY

    res = minimize(
        fun=objective,
        x0=x0,
        bounds=bounds,
        method="Nelder-Mead",
        options={"maxiter": maxiter or 1000 * x0.size, "xatol": 1e-4, "fatol": 1e-6},
    )
    logger.debug("%s: %s after %d iterations (-2LL=%.6g)", config.label, res.message, res.nit, res.fun)
    if not res.success:
        raise FitConvergenceError(config.label, str(res.message))
    if not np.isfinite(res.fun) or res.fun >= PENALTY:
        raise FitConvergenceError(config.label, "covariance matrix not positive definite at the optimum")

    params = pack_params(config, np.exp(res.x))
    Sigma = build_covariance(params, config, network=network, euclid_distance=D_eu, jitter=jitter)
    try:
        beta, cov_beta, _, _, _ = gls(y, X, Sigma)
    except LinAlgError as exc:
        raise FitConvergenceError(config.label, f"singular covariance at the optimum: {exc}") from exc

    m2ll = float(res.fun)
    k = config.n_cov_params + (p if estmethod == "ml" else 0)
    fit = SSNFit(
        config=config,
        estmethod=estmethod,
        params=params,
        coefficients=pd.Series(beta, index=names),
        std_errors=pd.Series(np.sqrt(np.diag(cov_beta)), index=names),
        minus2loglik=m2ll,
        aic=m2ll + 2.0 * k,
        n_obs=n,
        sigma=Sigma,
        optimizer_message=str(res.message),
    )

    if loocv:
        try:
            fit.cv = leave_one_out(y, X, Sigma, progress=progress)
        except LinAlgError as exc:
            raise FitConvergenceError(config.label, f"cross-validation failed: {exc}") from exc
        fit.cv_stats = cv_statistics(fit.cv)

    logger.info("fitted %s (%s): AIC=%.4f", config.label, estmethod, fit.aic)
    return fit

# Leave-one-out cross-validation
def leave_one_out(y: np.ndarray, X: np.ndarray, Sigma: np.ndarray, progress: bool = False) -> pd.DataFrame:
    """
    Leave-one-out universal kriging with the covariance parameters held fixed.

    For each i the fixed effects are re-estimated by GLS on the remaining
    observations and
        yhat_i = x_i beta_-i + c^T S^-1 (y_-i - X_-i beta_-i)
        var_i  = S_ii - c^T S^-1 c + d^T (X_-i^T S^-1 X_-i)^-1 d,
        d      = x_i - X_-i^T S^-1 c
    where S = Sigma without row/column i and c = Sigma[-i, i].

    Returns
    -------
    pandas.DataFrame
        Columns observed, predicted, se.
    """
    y = np.asarray(y, float).ravel()
    X = np.asarray(X, float)
    n = y.size
    pred = np.empty(n)
    var = np.empty(n)
    all_idx = np.arange(n)

    for i in tqdm(range(n), desc="LOOCV", disable=not progress):
        o = all_idx != i
        S = Sigma[np.ix_(o, o)]
        c = Sigma[o, i]
        Xo = X[o]
        cF = cho_factor(S, lower=True, overwrite_a=False, check_finite=False)
        Sic = cho_solve(cF, c, check_finite=False)
        SiX = cho_solve(cF, Xo, check_finite=False)
        XtSiX = Xo.T @ SiX
        xF = cho_factor(XtSiX, lower=True, overwrite_a=False, check_finite=False)
        beta = cho_solve(xF, SiX.T @ y[o], check_finite=False)
        pred[i] = X[i] @ beta + Sic @ (y[o] - Xo @ beta)
        d = X[i] - Xo.T @ Sic
        var[i] = Sigma[i, i] - c @ Sic + d @ cho_solve(xF, d, check_finite=False)

    return pd.DataFrame({
        "observed": y,
        "predicted": pred,
        "se": np.sqrt(np.clip(var, 0.0, None)),
    })

def cv_statistics(cv: pd.DataFrame, level: float = 0.95) -> Dict[str, float]:
    """
    Summary of LOOCV predictions.

    bias    mean(predicted - observed)
    rmspe   sqrt(mean((predicted - observed)^2))
    cor2    squared Pearson correlation of observed and predicted
    cover95 share of observations inside the `level` prediction interval
    """
    obs = cv["observed"].to_numpy(float)
    pred = cv["predicted"].to_numpy(float)
    err = pred - obs
    if np.std(pred) > 0 and np.std(obs) > 0:
        cor2 = float(np.corrcoef(obs, pred)[0, 1]**2)
    else:
        cor2 = np.nan
    zq = norm.ppf(0.5 + level / 2.0)
    inside = np.abs(err) <= zq * cv["se"].to_numpy(float)
    return {
        "bias": float(np.mean(err)),
        "rmspe": float(np.sqrt(np.mean(err**2))),
        "cor2": cor2,
        "cover95": float(np.mean(inside)),
    }
