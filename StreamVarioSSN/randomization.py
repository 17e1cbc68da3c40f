"""
Permutation (Monte Carlo) test of spatial independence for the empirical semivariogram.

The response values are shuffled over the fixed site locations R times and
the binned semivariogram is recomputed on the observed bin assignment. All
trial curves are returned so they can be drawn as an envelope around the
observed curve.
"""

import logging

import numpy as np
import pandas as pd
from tqdm.auto import tqdm

from StreamVarioSSN.config import MIN_PAIRS, N_TRIALS, SemivariogramOptions
from StreamVarioSSN.errors import ConfigurationError, DataError
from StreamVarioSSN.utils import as_coordinates, as_values, pairwise_distances
from StreamVarioSSN.variofit import (
    BIN_COLUMNS,
    aggregate_bins,
    assign_bins,
    binned_from_cloud,
    resolve_lags,
    semivariogram_cloud,
)

logger = logging.getLogger(__name__)


def randomization_test(
    values,
    coordinates,
    n_trials=N_TRIALS,
    random_state=None,
    cutoff=None,
    width=None,
    estimator="classical",
    distance=None,
    min_pairs=MIN_PAIRS,
    progress=True,
):
    """
    Observed semivariogram plus R permuted-response semivariograms.

    Parameters
    ----------
    values : (n,) array_like
        Response values.
    coordinates : (n, 2) array_like
        Site coordinates (projected metres).
    n_trials : int, default 100
        Number of permutations R.
    random_state : int | numpy.random.Generator | None
        Seed or generator; the same seed reproduces the same trials.
    cutoff, width, estimator, min_pairs
        Binning options as in `empirical_semivariogram`; the resolved
        cutoff/width are shared by the observed curve and every trial.
    distance : (n, n) array_like, optional
        Precomputed distance matrix.
    progress : bool
        Show a tqdm progress bar.

    Returns
    -------
    observed : pandas.DataFrame
        The empirical semivariogram (BIN_COLUMNS).
    trials : pandas.DataFrame
        Long table: column 'trial' (0..R-1) followed by BIN_COLUMNS.
    """
    if int(n_trials) != n_trials or n_trials < 1:
        raise ConfigurationError(f"n_trials must be a positive integer, got {n_trials}")
    options = SemivariogramOptions(cutoff=cutoff, width=width, estimator=estimator, min_pairs=min_pairs)
    cutoff, width = resolve_lags(options, coordinates)

    if distance is None:
        distance = pairwise_distances(coordinates)
    else:
        n = as_coordinates(coordinates).shape[0]
        if np.shape(distance) != (n, n):
            raise DataError(f"distance matrix shape {np.shape(distance)} does not match {n} coordinates")
    cloud = semivariogram_cloud(values, distance=distance)
    observed = binned_from_cloud(cloud, cutoff, width, estimator=estimator, min_pairs=min_pairs)

    z = as_values(values)
    d = cloud["distance"].to_numpy(float)
    keep, bin_idx = assign_bins(d, cutoff, width)
    iu = cloud["i"].to_numpy()[keep]
    ju = cloud["j"].to_numpy()[keep]
    d_in = d[keep]
    b_in = bin_idx[keep]

    rng = np.random.default_rng(random_state)
    frames = []
    for t in tqdm(range(int(n_trials)), desc="Permutation trials", disable=not progress):
        zp = rng.permutation(z)
        x = np.abs(zp[iu] - zp[ju])
        curve = aggregate_bins(d_in, x, b_in, width, estimator=estimator, min_pairs=min_pairs)
        curve.insert(0, "trial", t)
        frames.append(curve)

    if frames and any(len(f) for f in frames):
        trials = pd.concat(frames, ignore_index=True)
    else:
        trials = pd.DataFrame(columns=["trial"] + BIN_COLUMNS)

    logger.info("randomization test: %d trials over %d bins", int(n_trials), len(observed))
    return observed, trials


def envelope(observed, trials, alpha=0.05):
    """
    Pointwise permutation envelope per lag bin.

    Parameters
    ----------
    observed : pandas.DataFrame
        Observed bin table from `randomization_test`.
    trials : pandas.DataFrame
        Trial table from `randomization_test`.
    alpha : float
        Two-sided level; the envelope spans the alpha/2 and 1-alpha/2
        quantiles of the trial semivariances.

    Returns
    -------
    pandas.DataFrame
        Observed columns plus lower, upper, outside (observed outside the
        envelope) and p_lower, the fraction of trials at or below the
        observed semivariance (+1 smoothing), which is small when short
        lags are more similar than chance.
    """
    if not 0.0 < alpha < 1.0:
        raise ConfigurationError(f"alpha must be in (0, 1), got {alpha}")

    out = observed.copy()
    if out.empty:
        for col in ("lower", "upper", "p_lower"):
            out[col] = pd.Series(dtype=float)
        out["outside"] = pd.Series(dtype=bool)
        return out

    q = trials.groupby("bin")["gamma"].quantile([alpha / 2.0, 1.0 - alpha / 2.0]).unstack()
    q.columns = ["lower", "upper"]
    out = out.merge(q, left_on="bin", right_index=True, how="left")
    out["outside"] = (out["gamma"] < out["lower"]) | (out["gamma"] > out["upper"])

    n_trials = trials["trial"].nunique()
    merged = trials[["bin", "gamma"]].merge(out[["bin", "gamma"]], on="bin", suffixes=("", "_obs"))
    n_le = (merged["gamma"] <= merged["gamma_obs"]).groupby(merged["bin"]).sum()
    out["p_lower"] = (out["bin"].map(n_le).fillna(0).to_numpy() + 1.0) / (n_trials + 1.0)
    return out
