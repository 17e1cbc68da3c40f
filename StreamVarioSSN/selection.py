"""
Covariate screening for the fixed effects: best-subset OLS search and variance inflation factors.

Candidate subsets found here are then refitted as spatial models with
`compare.compare_covariate_sets` (ML), since OLS ignores spatial correlation.
"""

import itertools
import logging

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.stats.outliers_influence import variance_inflation_factor

from StreamVarioSSN.errors import ConfigurationError, DataError

logger = logging.getLogger(__name__)

CRITERIA = {"bic": True, "aic": True, "adj_r2": False}  # criterion -> ascending


def _covariate_frame(data, response, candidates):
    candidates = list(candidates)
    if not candidates:
        raise ConfigurationError("no candidate covariates given")
    if len(set(candidates)) != len(candidates):
        raise ConfigurationError(f"duplicate candidate covariates: {candidates}")
    cols = [c for c in [response] + candidates if c not in data.columns]
    if cols:
        raise ConfigurationError(f"column(s) {cols} not found; available: {list(data.columns)}")
    frame = data[[response] + candidates].apply(pd.to_numeric, errors="coerce")
    if not np.isfinite(frame.to_numpy(float)).all():
        raise DataError("response and candidate covariates must be finite numbers")
    return frame


def best_subset(data, response, candidates, max_size=None, criterion="bic"):
    """
    Exhaustive best-subset OLS regression.

    Parameters
    ----------
    data : pandas.DataFrame
    response : str
    candidates : sequence of str
        Candidate covariate columns.
    max_size : int, optional
        Largest subset size (default: all candidates).
    criterion : {'bic', 'aic', 'adj_r2'}
        Sort key of the returned table.

    Returns
    -------
    pandas.DataFrame
        One row per subset (intercept-only model included): n_vars,
        covariates (tuple), aic, bic, r2, adj_r2; best first.
    """
    if criterion not in CRITERIA:
        raise ConfigurationError(f"Invalid criterion {criterion!r}: choose from {tuple(CRITERIA)}")
    frame = _covariate_frame(data, response, candidates)
    candidates = list(candidates)
    max_size = len(candidates) if max_size is None else int(max_size)
    if not 0 <= max_size <= len(candidates):
        raise ConfigurationError(f"max_size must be in [0, {len(candidates)}], got {max_size}")

    y = frame[response].to_numpy(float)
    n = y.size
    rows = []
    for k in range(0, max_size + 1):
        if n <= k + 1:
            logger.warning("stopping best-subset search at size %d: only %d observations", k, n)
            break
        for subset in itertools.combinations(candidates, k):
            if subset:
                X = sm.add_constant(frame[list(subset)].to_numpy(float), has_constant="add")
            else:
                X = np.ones((n, 1))
            res = sm.OLS(y, X).fit()
            rows.append({
                "n_vars": k,
                "covariates": subset,
                "aic": float(res.aic),
                "bic": float(res.bic),
                "r2": float(res.rsquared),
                "adj_r2": float(res.rsquared_adj),
            })

    table = pd.DataFrame(rows, columns=["n_vars", "covariates", "aic", "bic", "r2", "adj_r2"])
    table = table.sort_values(criterion, ascending=CRITERIA[criterion], kind="mergesort")
    logger.info("best-subset search: %d subsets of %d candidates", len(table), len(candidates))
    return table.reset_index(drop=True)


def best_per_size(table, criterion="bic"):
    """Best subset of each size from a `best_subset` table."""
    if criterion not in CRITERIA:
        raise ConfigurationError(f"Invalid criterion {criterion!r}: choose from {tuple(CRITERIA)}")
    ordered = table.sort_values(criterion, ascending=CRITERIA[criterion], kind="mergesort")
    return ordered.groupby("n_vars", sort=True).head(1).sort_values("n_vars").reset_index(drop=True)


def vif_table(data, covariates):
    """
    Variance inflation factor per covariate (computed with an intercept).

    Returns
    -------
    pandas.DataFrame
        Columns covariate, vif; sorted descending.
    """
    covariates = list(covariates)
    if len(covariates) < 2:
        raise ConfigurationError("VIF needs at least 2 covariates")
    frame = _covariate_frame(data, covariates[0], covariates[1:])
    X = sm.add_constant(frame[covariates].to_numpy(float), has_constant="add")
    vif = [variance_inflation_factor(X, i + 1) for i in range(len(covariates))]
    out = pd.DataFrame({"covariate": covariates, "vif": vif})
    return out.sort_values("vif", ascending=False, kind="mergesort").reset_index(drop=True)
