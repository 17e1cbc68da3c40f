"""
This file contains the functions required for estimating the semivariance (cloud and binned) as well as options to fit
semivariogram models to the binned estimates.
"""

import logging

import numpy as np
import pandas as pd
from scipy.optimize import minimize
from numba import njit

from StreamVarioSSN.config import MIN_PAIRS, SemivariogramOptions
from StreamVarioSSN.errors import ConfigurationError, DataError
from StreamVarioSSN.utils import (
    as_coordinates,
    as_values,
    bounding_box_diagonal,
    compute_distance_weights,
    pairwise_distances,
)

logger = logging.getLogger(__name__)

BIN_COLUMNS = ["bin", "lag_lo", "lag_hi", "np", "dist", "gamma", "low_confidence"]

# Semivariogram Estimators
@njit
def matheron(x):
    """Matheron (classical) semivariogram from increments x = |z_i - z_j|.

    References
    Matheron, G. (1962): Traité de Géostatistique Appliqué, Tonne 1. Memoires de Bureau de Recherches Géologiques et Miniéres, Paris.

    """
    if x.size == 0:
        return np.nan

    return 0.5 * np.sum(x**2) / x.size

@njit
def cressie_hawkins(x):
    """Cressie–Hawkins robust estimator.

    References
    Cressie, N., and D. Hawkins (1980): Robust estimation of the variogram. Math. Geol., 12, 115-125.

    """
    n = x.size

    if x.size == 0:
        return np.nan

    A = 0.457 + 0.494/n + 0.045/(n**2)
    return 0.5 * (np.mean(np.sqrt(x))**4) / A

ESTIMATOR_FUNCTIONS = {
    "classical": matheron,
    "robust": cressie_hawkins,
}

# Semivariogram Cloud
def semivariogram_cloud(values, coordinates=None, distance=None, coord_type="euclidean"):
    """
    All pairwise (distance, semivariance) points.

    One row per unordered pair (i, j), i < j, with
        gamma_ij = 0.5 * (z_i - z_j)^2.
    No cutoff is applied. Time and memory are O(n^2): fine for a few
    thousand sites, but n in the tens of thousands needs tiling or
    streaming, which this function does not do.

    Parameters
    ----------
    values : (n,) array_like
        Response values.
    coordinates : (n, 2) array_like, optional
        Site coordinates, used when `distance` is not given.
    distance : (n, n) array_like, optional
        Precomputed symmetric distance matrix (e.g. hydrologic distance).
    coord_type : {'euclidean', 'geographic'}
        Passed to `pairwise_distances` when distances are computed here.

    Returns
    -------
    cloud : pandas.DataFrame
        Columns i, j, distance, gamma.

    Raises
    ------
    DataError
        Fewer than 2 sites, non-finite input, mismatched sizes, fewer than
        2 distinct locations, or a constant response.
    """
    if distance is None:
        if coordinates is None:
            raise ConfigurationError("provide coordinates or a distance matrix")
        D = pairwise_distances(coordinates, distance_type=coord_type)
    else:
        D = np.asarray(distance, float)
        if D.ndim != 2 or D.shape[0] != D.shape[1]:
            raise DataError(f"distance matrix must be square, got {D.shape}")
        if D.shape[0] < 2:
            raise DataError(f"need at least 2 sites, got {D.shape[0]}")

    n = D.shape[0]
    z = as_values(values, n=n)

    iu, ju = np.triu_indices(n, k=1)
    d = D[iu, ju]
    if np.all(d == 0):
        raise DataError("need at least 2 distinct locations; every pairwise distance is zero")
    if np.ptp(z) == 0:
        raise DataError("response values are all identical; every semivariance would be zero")

    cloud = pd.DataFrame({
        "i": iu,
        "j": ju,
        "distance": d,
        "gamma": 0.5 * (z[iu] - z[ju])**2,
    })
    return cloud

# Lag binning
def n_lag_bins(cutoff, width):
    """Number of bins of `width` needed to cover [0, cutoff)."""
    ratio = float(cutoff) / float(width)
    # guard against fp drift, e.g. cutoff / (cutoff / 15) = 15.000000000000002
    return max(1, int(np.ceil(ratio - 1e-9 * max(1.0, ratio))))

def assign_bins(d, cutoff, width):
    """
    Bin index per pair for the partition [k*width, (k+1)*width) of [0, cutoff).

    Returns
    -------
    keep : (m,) bool ndarray
        Pairs with 0 < d < cutoff. Zero-distance pairs carry no lag
        information; pairs at or beyond the cutoff are dropped.
    bin_idx : (m,) int ndarray
        Bin index (valid only where keep is True).
    """
    d = np.asarray(d, float)
    nbins = n_lag_bins(cutoff, width)
    keep = np.isfinite(d) & (d > 0) & (d < cutoff)
    bin_idx = np.zeros(d.shape, dtype=np.int64)
    bin_idx[keep] = np.minimum(np.floor(d[keep] / width).astype(np.int64), nbins - 1)
    return keep, bin_idx

def aggregate_bins(d, increments, bin_idx, width, estimator="classical", min_pairs=MIN_PAIRS):
    """
    Collapse binned pairs into one row per non-empty bin.

    Pairs are grouped by a stable sort on the bin index, so the cost depends
    on the number of pairs and non-empty bins, not on cutoff / width.

    Parameters
    ----------
    d, increments, bin_idx : (m,) arrays
        Distances, absolute increments |z_i - z_j| and bin indices of the
        pairs kept inside the cutoff.
    width : float
    estimator : {'classical', 'robust'}
    min_pairs : int
        Bins with fewer pairs are flagged low_confidence.

    Returns
    -------
    pandas.DataFrame with columns BIN_COLUMNS.
    """
    if estimator not in ESTIMATOR_FUNCTIONS:
        raise ConfigurationError(
            f"Invalid estimator {estimator!r}: choose from {tuple(ESTIMATOR_FUNCTIONS)}")
    semivarioest_fn = ESTIMATOR_FUNCTIONS[estimator]

    d = np.asarray(d, float)
    x = np.asarray(increments, float)
    bin_idx = np.asarray(bin_idx, np.int64)

    order = np.argsort(bin_idx, kind="stable")
    bins, starts, counts = np.unique(bin_idx[order], return_index=True, return_counts=True)

    rows = []
    for k, start, cnt in zip(bins, starts, counts):
        sel = order[start:start + cnt]
        rows.append((
            int(k),
            k * width,
            (k + 1) * width,
            int(cnt),
            float(np.mean(d[sel])),
            float(semivarioest_fn(np.ascontiguousarray(x[sel]))),
            cnt < min_pairs,
        ))

    table = pd.DataFrame(rows, columns=BIN_COLUMNS)
    return table.astype({"bin": int, "np": int, "low_confidence": bool})

def binned_from_cloud(cloud, cutoff, width, estimator="classical", min_pairs=MIN_PAIRS):
    """
    Binned semivariogram from an existing cloud.

    Both estimators see the same bin assignment, so classical and robust
    tables line up bin for bin.
    """
    # raises ConfigurationError on bad cutoff/width/estimator
    SemivariogramOptions(cutoff=cutoff, width=width, estimator=estimator, min_pairs=min_pairs)

    d = cloud["distance"].to_numpy(float)
    # |z_i - z_j| recovered from gamma = 0.5 * dz^2
    x = np.sqrt(2.0 * cloud["gamma"].to_numpy(float))
    keep, bin_idx = assign_bins(d, cutoff, width)
    if not keep.any():
        logger.info("no pairs within cutoff %.6g; returning an empty semivariogram", cutoff)
        return pd.DataFrame(columns=BIN_COLUMNS).astype(
            {"bin": int, "np": int, "low_confidence": bool})

    table = aggregate_bins(d[keep], x[keep], bin_idx[keep], width,
                           estimator=estimator, min_pairs=min_pairs)
    n_low = int(table["low_confidence"].sum())
    if n_low:
        logger.warning("%d of %d lag bins have fewer than %d pairs", n_low, len(table), min_pairs)
    return table

# Main Function
def empirical_semivariogram(values, coordinates=None, cutoff=None, width=None, estimator="classical",
                            distance=None, min_pairs=MIN_PAIRS, coord_type="euclidean"):
    """
    Compute the binned (empirical) semivariogram.

    Parameters
    ----------
    values : (n,) array_like
        Response values z_i.
    coordinates : (n, 2) array_like, optional
        Site coordinates; required unless both `distance` and `cutoff` are
        given.
    cutoff : float, optional
        Maximum lag. Default: bounding-box diagonal / 3.
    width : float, optional
        Bin width. Default: cutoff / 15.
    estimator : {'classical', 'robust'}
        'classical' is the Matheron mean of 0.5*(z_i - z_j)^2 per bin;
        'robust' is the Cressie–Hawkins estimator on |z_i - z_j|.
    distance : (n, n) array_like, optional
        Precomputed distance matrix; overrides distances from `coordinates`.
    min_pairs : int, default 30
        Bins with fewer pairs get low_confidence=True.
    coord_type : {'euclidean', 'geographic'}

    Returns
    -------
    table : pandas.DataFrame
        Columns bin, lag_lo, lag_hi, np, dist, gamma, low_confidence; one
        row per non-empty bin. Empty when no pair falls inside the cutoff.

    Raises
    ------
    ConfigurationError
        Non-positive cutoff or width, or an unknown estimator.
    DataError
        Degenerate input (see `semivariogram_cloud`).
    """
    options = SemivariogramOptions(cutoff=cutoff, width=width, estimator=estimator, min_pairs=min_pairs)
    cutoff, width = resolve_lags(options, coordinates, coord_type)
    cloud = semivariogram_cloud(values, coordinates=coordinates, distance=distance, coord_type=coord_type)
    table = binned_from_cloud(cloud, cutoff, width, estimator=estimator, min_pairs=min_pairs)
    logger.info("semivariogram: %d pairs, %d non-empty bins (cutoff=%.6g, width=%.6g, %s)",
                len(cloud), len(table), cutoff, width, estimator)
    return table

def resolve_lags(options, coordinates, coord_type="euclidean"):
    """(cutoff, width) from `options`, using the sites' bounding box for defaults."""
    if options.cutoff is None:
        if coordinates is None:
            raise ConfigurationError("default cutoff needs coordinates; pass cutoff explicitly")
        diagonal = bounding_box_diagonal(as_coordinates(coordinates), distance_type=coord_type)
    else:
        diagonal = np.nan
    return options.resolve(diagonal)

# Semivariogram Models
def spherical(h, r, c0, b=0.0):
    """
    Semivariogram: Spherical (compact support)

        γ(h) = b + c0 * [ 1.5 x - 0.5 x^3 ],  x = h / r,  for h <= r
               b + c0                                    for h >  r
    """

    h = np.asarray(h, float)
    x = h / r
    part = b + c0 * (1.5*x - 0.5*x**3)
    return np.where(h <= r, part, b + c0)

def exponential(h, r, c0, b=0.0):
    """
    Semivariogram: Exponential

    Use a = r / 3 (≈95% of the sill at h = r). Then
        γ(h) = b + c0 * ( 1 - exp(-h / a) )
    """

    a = r / 3.0
    h = np.asarray(h, float)
    return b + c0 * (1.0 - np.exp(-h / a))

def gaussian(h, r, c0, b=0.0):
    """
    Semivariogram: Gaussian

    Use a = r / 2 (≈95% of the sill at h = r). Then
        γ(h) = b + c0 * ( 1 - exp( - (h / a)^2 ) )
    """

    a = r / 2.0
    h = np.asarray(h, float)
    return b + c0 * (1.0 - np.exp(-(h / a)**2))

def linear(h, r, c0, b=0.0):
    """
    Semivariogram: Linear with sill

        γ(h) = b + c0 * h / r   for h <= r
               b + c0           for h >  r
    """

    h = np.asarray(h, float)
    return b + c0 * np.minimum(h / r, 1.0)

VARIOGRAM_MODELS = {
    "spherical": spherical,
    "exponential": exponential,
    "gaussian": gaussian,
    "linear": linear,
}

# Objective Function for Fitting
def objective_func(params, h, gamma, weights, semivario_fn):
    """Weighted SSE: Σ w_i [γ_i - model(h_i; θ)]^2."""

    gamma_pred = semivario_fn(h, *params)
    return np.sum(weights * (gamma - gamma_pred)**2)

def make_init_and_bounds(h, gamma, xmax_factor=2.0, fix_nugget=False):
    """
    Initial guesses & bounds for (r, c0, b).

    Range r is lower-bounded above zero and capped at xmax_factor * max(h)
    so flexible kernels cannot run off into near-flat fits.
    """

    h = np.asarray(h, float).ravel()
    g = np.asarray(gamma, float).ravel()

    mask_pos = np.isfinite(h) & (h > 0)
    h_min = float(np.nanmin(h[mask_pos])) if np.any(mask_pos) else 1.0
    h_max = float(np.nanmax(h[mask_pos])) if np.any(mask_pos) else 1.0

    r0 = 0.5 * h_max
    b0 = float(np.nanmin(g))
    c0 = max(float(np.nanmax(g) - b0), 1e-9)

    r_bounds = (max(1e-3, 0.5 * h_min), xmax_factor * h_max)

    x0 = (r0, c0, 0.0 if fix_nugget else b0)
    bounds = (
        r_bounds,                                     # r
        (0.0, None),                                  # c0
        (0.0, 0.0) if fix_nugget else (0.0, None),    # b
    )
    return x0, bounds

def r2_score_weighted(y, yhat, w=None):
    """
    Weighted coefficient of determination 1 - SSE_w / SST_w.

    Returns np.nan when the weighted variance of `y` is zero.
    """

    y = np.asarray(y, float).ravel()
    yhat = np.asarray(yhat, float).ravel()
    if w is None:
        w = np.ones_like(y)
    w = np.asarray(w, float).ravel()
    wsum = np.sum(w)
    if wsum == 0:
        return np.nan
    ybar = np.sum(w * y) / wsum
    ss_res = np.sum(w * (y - yhat)**2)
    ss_tot = np.sum(w * (y - ybar)**2)
    return 1.0 - ss_res / ss_tot if ss_tot > 0 else np.nan

def fit_semivariogram(table, model_type="exponential", weight_fn="linear weighting", weight_params=None,
                      xmax_factor=2.0, fix_nugget=False):
    """
    Fit a semivariogram model to a binned table by weighted least squares.

    Parameters
    ----------
    table : pandas.DataFrame
        Output of `empirical_semivariogram` (columns dist, np, gamma).
    model_type : {'exponential', 'gaussian', 'spherical', 'linear'}
    weight_fn : {None, 'ols', 'linear weighting', 'inverse-linear weighting', 'exponential weighting', 'powered weighting'}
        Default weights each bin by its pair count.
    weight_params : list, optional
        [b, alpha] for the distance-decay schemes; b defaults to 0.25*max(h).
    xmax_factor : float
        Range upper bound as a multiple of the largest lag.
    fix_nugget : bool
        Fix the nugget b at zero.

    Returns
    -------
    params : dict
        {'r': effective range, 'c0': partial sill, 'b': nugget}.
    r2_wls, r2_ols : float
        Weighted and ordinary R^2 at the bin distances.
    """
    if model_type not in VARIOGRAM_MODELS:
        raise ConfigurationError(
            f"Invalid model_type {model_type!r}: choose from {tuple(VARIOGRAM_MODELS)}")
    if len(table) < 3:
        raise DataError(f"need at least 3 non-empty bins to fit a model, got {len(table)}")
    semivariomodel_fn = VARIOGRAM_MODELS[model_type]

    h = table["dist"].to_numpy(float)
    g = table["gamma"].to_numpy(float)
    m = table["np"].to_numpy(float)

    if weight_fn in ("inverse-linear weighting", "exponential weighting", "powered weighting") \
            and weight_params is None:
        weight_params = [0.25 * float(h.max()), 1.0]
    weights = compute_distance_weights(h, m, weight_type=weight_fn, weight_params=weight_params)

    x0, bounds = make_init_and_bounds(h, g, xmax_factor, fix_nugget)

    res = minimize(
        fun=lambda th: objective_func(th, h, g, weights, semivariomodel_fn),
        x0=x0,
        bounds=bounds,
    )
    theta_hat = res.x
    if not res.success:
        logger.warning("%s semivariogram fit did not converge: %s", model_type, res.message)

    g_fit_bins = semivariomodel_fn(h, *theta_hat)
    r2_wls = r2_score_weighted(g, g_fit_bins, w=weights)
    r2_ols = r2_score_weighted(g, g_fit_bins, w=None)

    params = {k: float(v) for k, v in zip(("r", "c0", "b"), theta_hat)}
    return params, r2_wls, r2_ols
