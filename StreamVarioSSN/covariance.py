"""
This file contains the correlation kernels and covariance builders for spatial stream network (SSN) models:
tail-up, tail-down and Euclidean components plus a nugget.

Ranges use the SSN convention: the kernel is written in h / alpha with no
practical-range rescaling (e.g. exponential rho(h) = exp(-h / alpha)).
"""

import numpy as np

from StreamVarioSSN.config import SHAPES
from StreamVarioSSN.errors import ConfigurationError, DataError

FORMS = ("tailup", "taildown", "euclid")

# Correlation Models
def exponential(h, alpha):
    """
    Correlation kernel: Exponential

        rho(h) = exp(-h / alpha)
    """

    h = np.asarray(h, float)
    return np.exp(-h / alpha)

def linear(h, alpha):
    """
    Correlation kernel: Linear with sill (compact support)

        rho(h) = 1 - h / alpha   for h <= alpha
                 0               for h  > alpha
    """

    h = np.asarray(h, float)
    with np.errstate(invalid="ignore"):
        return np.where(h <= alpha, 1.0 - h / alpha, 0.0)

def gaussian(h, alpha):
    """
    Correlation kernel: Gaussian

        rho(h) = exp(-(h / alpha)^2)
    """

    h = np.asarray(h, float)
    return np.exp(-(h / alpha)**2)

def spherical(h, alpha):
    """
    Correlation kernel: Spherical (compact support)

    Let x = h / alpha. Then
        rho(h) = 1 - 1.5 x + 0.5 x^3   for x <= 1
                 0                     for x  > 1
    """

    h = np.asarray(h, float)
    x = h / alpha
    with np.errstate(invalid="ignore"):
        return np.where(x <= 1.0, 1.0 - 1.5*x + 0.5*x**3, 0.0)

CORRELATION_MODELS = {
    "exponential": exponential,
    "linear": linear,
    "gaussian": gaussian,
    "spherical": spherical,
}

def _kernel(shape):
    if shape not in CORRELATION_MODELS:
        raise ConfigurationError(
            f"Invalid shape {shape!r}: choose from {tuple(s for s in SHAPES if s != 'none')}")
    return CORRELATION_MODELS[shape]

# Network and Euclidean correlation matrices
def tailup_correlation(shape, network, alpha):
    """
    Tail-up correlation: non-zero only between flow-connected sites.

        R_ij = rho(h_ij) * w_ij   (flow-connected)
               0                  (flow-unconnected or different networks)

    with h the hydrologic distance and w_ij = sqrt(afv_up / afv_down) the
    additive-function weight splitting dependence at confluences.
    """
    rho = _kernel(shape)
    H = network.hydrologic
    R = np.where(network.flow_connected, rho(np.where(network.flow_connected, H, 0.0), alpha), 0.0)
    R = R * network.tailup_weights
    np.fill_diagonal(R, 1.0)
    return R

def taildown_correlation(shape, network, alpha):
    """
    Tail-down correlation: flow-connected and flow-unconnected sites.

    Flow-connected pairs use rho(a + b, alpha). For flow-unconnected pairs,
    with a = shorter and b = longer distance to the shared confluence:

        exponential   exp(-(a + b) / alpha)
        linear        (1 - b / alpha) 1{b <= alpha}
        spherical     (1 - 1.5 a / alpha + 0.5 b / alpha) (1 - b / alpha)^2 1{b <= alpha}
        gaussian      exp(-((a + b) / alpha)^2)

    Sites on different networks are uncorrelated.
    """
    rho = _kernel(shape)
    fc = network.flow_connected
    fu = network.flow_unconnected
    H = np.where(fc | fu, network.hydrologic, 0.0)
    a = np.where(fu, network.shorter, 0.0)
    b = np.where(fu, network.longer, 0.0)

    if shape == "linear":
        r_fu = np.where(b <= alpha, 1.0 - b / alpha, 0.0)
    elif shape == "spherical":
        r_fu = np.where(b <= alpha, (1.0 - 1.5*a/alpha + 0.5*b/alpha) * (1.0 - b/alpha)**2, 0.0)
    else:
        r_fu = rho(H, alpha)

    R = np.where(fc, rho(H, alpha), 0.0) + np.where(fu, r_fu, 0.0)
    np.fill_diagonal(R, 1.0)
    return R

def euclid_correlation(shape, distance, alpha):
    """Euclidean correlation rho(d_ij, alpha) with unit diagonal."""
    rho = _kernel(shape)
    R = np.array(rho(distance, alpha), float)
    np.fill_diagonal(R, 1.0)
    return R

# Parameter packing
def param_names(config):
    """Covariance parameter names of a configuration, in optimisation order."""
    names = []
    for form in config.active_forms:
        names += [f"{form}_psill", f"{form}_range"]
    if config.nugget:
        names.append("nugget")
    return names

def pack_params(config, theta):
    return {k: float(v) for k, v in zip(param_names(config), theta)}

# Build Covariance Matrix
def build_covariance(params, config, network=None, euclid_distance=None, jitter=1e-10):
    """
    Covariance matrix of an SSN configuration.

        Sigma = s_tu R_tu + s_td R_td + s_eu R_eu + s_0 I

    Parameters
    ----------
    params : dict
        '<form>_psill' and '<form>_range' for each active form, plus
        'nugget' if the configuration has one.
    config : CovarianceConfig
    network : NetworkDistances, optional
        Required when tail-up or tail-down is active.
    euclid_distance : (n, n) ndarray, optional
        Required when the Euclidean form is active.
    jitter : float
        Diagonal stabilisation, as a fraction of the total variance.

    Returns
    -------
    Sigma : (n, n) ndarray
    """
    if config.needs_network and network is None:
        raise ConfigurationError(f"{config.label} needs network distances")
    if config.euclid != "none" and euclid_distance is None:
        raise ConfigurationError(f"{config.label} needs a Euclidean distance matrix")

    if network is not None:
        n = network.n
    elif euclid_distance is not None:
        n = np.asarray(euclid_distance).shape[0]
    else:
        raise ConfigurationError("need network distances or a Euclidean distance matrix to size the covariance")
    if euclid_distance is not None and np.asarray(euclid_distance).shape != (n, n):
        raise DataError(f"Euclidean distance matrix shape {np.shape(euclid_distance)} does not match {n} sites")

    Sigma = np.zeros((n, n), float)
    if config.tailup != "none":
        Sigma += params["tailup_psill"] * tailup_correlation(config.tailup, network, params["tailup_range"])
    if config.taildown != "none":
        Sigma += params["taildown_psill"] * taildown_correlation(config.taildown, network, params["taildown_range"])
    if config.euclid != "none":
        Sigma += params["euclid_psill"] * euclid_correlation(config.euclid, euclid_distance, params["euclid_range"])
    if config.nugget:
        Sigma[np.diag_indices(n)] += params["nugget"]

    total = float(np.trace(Sigma)) / n
    Sigma[np.diag_indices(n)] += jitter * total
    return Sigma
