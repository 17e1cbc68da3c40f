import logging

import numpy as np
import pandas as pd
from pyproj import Geod

from StreamVarioSSN.config import COORDINATE_TYPES, ObservationSchema
from StreamVarioSSN.errors import ConfigurationError, DataError

logger = logging.getLogger(__name__)


# check coordinate arrays before any distance work
def as_coordinates(coords, min_points=2):
    X = np.asarray(coords, float)
    if X.ndim != 2 or X.shape[1] != 2:
        raise DataError(f"coordinates must have shape (n, 2), got {X.shape}")
    if X.shape[0] < min_points:
        raise DataError(f"need at least {min_points} points, got {X.shape[0]}")
    if not np.all(np.isfinite(X)):
        bad = np.flatnonzero(~np.isfinite(X).all(axis=1))
        raise DataError(f"non-finite coordinates at rows {bad.tolist()}")
    return X


def as_values(values, n=None, name="values"):
    z = np.asarray(values, float).ravel()
    if n is not None and z.size != n:
        raise DataError(f"{name} has {z.size} entries, expected {n}")
    if not np.all(np.isfinite(z)):
        bad = np.flatnonzero(~np.isfinite(z))
        raise DataError(f"non-finite {name} at rows {bad.tolist()}")
    return z


# geodesic distances in metres between [lat, lon] points
def geodesic_pairwise(X, ellps="WGS84"):
    X = np.asarray(X, float)
    n = X.shape[0]
    geod = Geod(ellps=ellps)
    lat = X[:, 0]
    lon = X[:, 1]
    lon1 = np.broadcast_to(lon[:, None], (n, n))
    lat1 = np.broadcast_to(lat[:, None], (n, n))
    lon2 = np.broadcast_to(lon[None, :], (n, n))
    lat2 = np.broadcast_to(lat[None, :], (n, n))
    _, _, dist_m = geod.inv(lon1, lat1, lon2, lat2)
    D = np.asarray(dist_m, float).reshape(n, n)
    # geod.inv is symmetric only up to rounding
    D = 0.5 * (D + D.T)
    np.fill_diagonal(D, 0.0)
    return D


def pairwise_distances(coords, distance_type="euclidean", ellps="WGS84"):
    """
    Full (n, n) distance matrix between sites.

    Parameters
    ----------
    coords : (n, 2) array_like
        'euclidean': projected (x, y) in metres.
        'geographic': (lat, lon) in degrees; distances are geodesic metres.
    distance_type : {'euclidean', 'geographic'}
    ellps : str
        pyproj ellipsoid for 'geographic'.

    Returns
    -------
    D : (n, n) ndarray
        Symmetric, zero diagonal, non-negative.

    Raises
    ------
    DataError
        Fewer than 2 points or non-finite coordinates.
    ConfigurationError
        Unknown distance_type.
    """
    X = as_coordinates(coords)

    if distance_type == "euclidean":
        dx = X[:, None, 0] - X[None, :, 0]
        dy = X[:, None, 1] - X[None, :, 1]
        D = np.hypot(dx, dy)
    elif distance_type == "geographic":
        D = geodesic_pairwise(X, ellps=ellps)
    else:
        raise ConfigurationError(
            f"Invalid distance_type {distance_type!r}: choose from {COORDINATE_TYPES}")
    return D


def upper_triangle(D):
    """Strict upper triangle of a square matrix as a flat array (i < j order)."""
    D = np.asarray(D, float)
    iu, ju = np.triu_indices(D.shape[0], k=1)
    return D[iu, ju]


def distance_summary(D):
    """
    Five-number summary (plus mean) of inter-site distances.

    Only the strict upper triangle is used, so each pair counts once and the
    zero diagonal is excluded. Coincident sites give an all-zero summary.

    Returns
    -------
    pandas.Series
        Index: min, q25, median, mean, q75, max, n_pairs.
    """
    d = upper_triangle(D)
    if d.size == 0:
        raise DataError("distance summary needs at least 2 sites")
    q25, med, q75 = np.percentile(d, [25.0, 50.0, 75.0])
    return pd.Series({
        "min": float(d.min()),
        "q25": float(q25),
        "median": float(med),
        "mean": float(d.mean()),
        "q75": float(q75),
        "max": float(d.max()),
        "n_pairs": int(d.size),
    })


def bounding_box_diagonal(coords, distance_type="euclidean", ellps="WGS84"):
    """
    Length of the bounding-box diagonal of the sites.

    For projected coordinates this is hypot(max(x) - min(x), max(y) - min(y));
    for geographic coordinates, the geodesic length between the south-west
    and north-east corners.
    """
    X = as_coordinates(coords, min_points=1)
    lo = X.min(axis=0)
    hi = X.max(axis=0)
    if distance_type == "euclidean":
        return float(np.hypot(hi[0] - lo[0], hi[1] - lo[1]))
    elif distance_type == "geographic":
        _, _, dist = Geod(ellps=ellps).inv(lo[1], lo[0], hi[1], hi[0])
        return float(dist)
    raise ConfigurationError(
        f"Invalid distance_type {distance_type!r}: choose from {COORDINATE_TYPES}")


# Compute weights
def compute_distance_weights(h_lag, n_j, weight_type='inverse-linear weighting', weight_params=None):

    """
    Build per-bin weights for fitting a model to a binned semivariogram.

    Parameters
    ----------
    h_lag : (k,) array_like of float
        Mean lag distance per bin.
    n_j : (k,) array_like of float
        Pair counts per bin.
    weight_type : {'inverse-linear weighting','exponential weighting','powered weighting', 'linear weighting', None, 'ols'}
        If None/'ols', returns ones (plain OLS).
        'inverse-linear weighting': w(h)=n_j * 1/(1+h/b)
        'exponential weighting'   : w(h)=n_j * exp(-h/b)
        'powered weighting'       : w(h)=n_j * (1+h/b)^(-alpha)
        'linear weighting'        : w(h)=n_j
    weight_params : list[float] | None
        [b, alpha]; alpha is only read by 'powered weighting'.

    Returns
    -------
    weights : (k,) ndarray of float

    Raises
    ------
    ConfigurationError
        If `weight_type` is unknown or required params missing.
    """

    h_lag = np.asarray(h_lag, float)
    n_j = np.asarray(n_j, float)

    if weight_type is None or weight_type == 'ols':
        return np.ones_like(h_lag, dtype=float)
    if weight_type == 'linear weighting':
        return n_j * np.ones_like(h_lag, dtype=float)

    if not weight_params:
        raise ConfigurationError(f"weight_type {weight_type!r} needs weight_params [b, alpha]")

    if weight_type == 'inverse-linear weighting':
        w = n_j * (1.0 / (1.0 + h_lag / weight_params[0]))
    elif weight_type == 'exponential weighting':
        w = n_j * np.exp(-h_lag / weight_params[0])
    elif weight_type == 'powered weighting':
        if len(weight_params) < 2:
            raise ConfigurationError("'powered weighting' needs weight_params [b, alpha]")
        w = n_j * (1.0 + h_lag / weight_params[0]) ** (-weight_params[1])
    else:
        raise ConfigurationError("Invalid weight_type: choose None/'ols', 'inverse-linear weighting', 'exponential weighting', 'powered weighting' or 'linear weighting'")

    return w


def validate_observations(df, schema=None):
    """
    Check an observation table against its schema and return a clean copy.

    The input frame is never modified. The returned frame holds only the
    schema columns, with numeric columns cast to float and a fresh
    RangeIndex.

    Parameters
    ----------
    df : pandas.DataFrame
    schema : ObservationSchema, optional
        Defaults to ObservationSchema() (columns 'x', 'y', 'response').

    Returns
    -------
    pandas.DataFrame

    Raises
    ------
    ConfigurationError
        A schema column is missing from `df`.
    DataError
        Non-numeric or non-finite values, fewer than 2 rows or 2 distinct
        locations, or a constant response.
    """
    schema = schema or ObservationSchema()

    missing = [c for c in schema.columns if c not in df.columns]
    if missing:
        raise ConfigurationError(
            f"column(s) {missing} not found; available: {list(df.columns)}")

    out = df.loc[:, list(schema.columns)].copy().reset_index(drop=True)
    for col in schema.numeric_columns:
        try:
            out[col] = pd.to_numeric(out[col], errors="raise").astype(float)
        except (TypeError, ValueError) as exc:
            raise DataError(f"column {col!r} is not numeric: {exc}") from exc
        bad = ~np.isfinite(out[col].to_numpy())
        if bad.any():
            raise DataError(
                f"column {col!r} has non-finite values at rows {np.flatnonzero(bad).tolist()}")

    if len(out) < 2:
        raise DataError(f"need at least 2 observations, got {len(out)}")

    n_sites = len(out.drop_duplicates(subset=[schema.x, schema.y]))
    if n_sites < 2:
        raise DataError("need at least 2 distinct locations")

    if out[schema.response].nunique() < 2:
        raise DataError(
            f"response {schema.response!r} is constant; every semivariance would be zero")

    logger.info("validated %d observations at %d distinct locations", len(out), n_sites)
    return out
