"""
Candidate covariance-model comparison for spatial stream network models.

The observation table is validated once up front, so bad input fails fast.
After that each candidate is fitted independently; a candidate that cannot
be fitted (no convergence, too many parameters for the data, a singular
design or covariance) is recorded in the failures table and the loop
carries on with the rest.
"""

import itertools
import logging
from dataclasses import replace
from pathlib import Path

import numpy as np
import pandas as pd
from scipy.linalg import LinAlgError
from tqdm.auto import tqdm

from StreamVarioSSN.config import CovarianceConfig
from StreamVarioSSN.errors import ConfigurationError, DataError, FitConvergenceError
from StreamVarioSSN.splm import fit_ssn
from StreamVarioSSN.utils import validate_observations

logger = logging.getLogger(__name__)

DEFAULT_SHAPES = ("none", "exponential", "linear", "gaussian")

TABLE_COLUMNS = [
    "rank", "label", "covariates", "tailup", "taildown", "euclid", "nugget", "estmethod",
    "n_obs", "n_cov_params", "n_fixed", "minus2loglik", "aic", "delta_aic",
    "bias", "rmspe", "cor2", "cover95",
]
FAILURE_COLUMNS = ["label", "covariates", "reason"]


def candidate_configurations(tailup=DEFAULT_SHAPES, taildown=DEFAULT_SHAPES, euclid=DEFAULT_SHAPES,
                             nugget=(True,), include_nonspatial=False):
    """
    Every combination of the given shapes.

    Parameters
    ----------
    tailup, taildown, euclid : sequence of str
        Shapes to try for each form ('none' drops the form).
    nugget : sequence of bool
        Nugget settings to try.
    include_nonspatial : bool
        Keep the all-'none' (independent-error regression) configuration as
        a baseline. Configurations with neither a form nor a nugget are
        always skipped.

    Returns
    -------
    list of CovarianceConfig
    """
    configs = []
    for tu, td, eu, nug in itertools.product(tailup, taildown, euclid, nugget):
        if tu == td == eu == "none":
            if not (include_nonspatial and nug):
                continue
        configs.append(CovarianceConfig(tailup=tu, taildown=td, euclid=eu, nugget=nug))
    return configs


def _rank(rows):
    table = pd.DataFrame(rows, columns=[c for c in TABLE_COLUMNS if c not in ("rank", "delta_aic")])
    table = table.sort_values("aic", kind="mergesort").reset_index(drop=True)
    table.insert(0, "rank", np.arange(1, len(table) + 1))
    table["delta_aic"] = table["aic"] - (table["aic"].min() if len(table) else 0.0)
    return table[TABLE_COLUMNS]


def _check_network(network, data):
    if network is not None and network.n != len(data):
        raise DataError(f"network has {network.n} sites but data has {len(data)} rows")


def _run(jobs, data, network, loocv, progress, desc):
    rows, failures, fits = [], [], {}
    for key, schema, config, estmethod in tqdm(jobs, desc=desc, disable=not progress):
        covariates = "+".join(schema.covariates)
        try:
            fit = fit_ssn(data, schema, config, network, estmethod=estmethod, loocv=loocv)
        except FitConvergenceError as exc:
            reason = exc.reason
        except (DataError, LinAlgError) as exc:
            reason = str(exc)
        else:
            fits[key] = fit
            rows.append(dict(fit.summary_row(), covariates=covariates))
            continue
        logger.warning("candidate %s failed: %s", key, reason)
        failures.append({"label": config.label, "covariates": covariates, "reason": reason})

    table = _rank(rows)
    failures = pd.DataFrame(failures, columns=FAILURE_COLUMNS)
    logger.info("%d of %d candidates fitted", len(table), len(jobs))
    return table, failures, fits


def compare_models(data, schema, configs, network=None, estmethod="reml", loocv=True, progress=True):
    """
    Fit every candidate covariance configuration and rank them by AIC.

    All candidates share the fixed effects in `schema`, so REML is the
    default. The best candidate is the first row; near-ties are left for the
    analyst to judge.

    Parameters
    ----------
    data : pandas.DataFrame
    schema : ObservationSchema
    configs : sequence of CovarianceConfig
    network : NetworkDistances, optional
        Required if any configuration has a tail-up or tail-down form.
    estmethod : {'reml', 'ml'}
    loocv : bool
        Compute leave-one-out statistics (bias, rmspe, cor2, cover95).
    progress : bool

    Returns
    -------
    table : pandas.DataFrame
        One row per converged candidate, sorted ascending by AIC, with rank
        and delta_aic.
    failures : pandas.DataFrame
        label, covariates, reason for every candidate that could not be
        fitted (non-convergence, too many parameters, singular design or
        covariance).
    fits : dict
        {label: SSNFit} for the converged candidates.

    Raises
    ------
    ConfigurationError, DataError
        Invalid candidate list or observation table, or a network that does
        not match the data; raised before any candidate is fitted.
    """
    configs = list(configs)
    if not configs:
        raise ConfigurationError("no candidate configurations to compare")
    labels = [c.label for c in configs]
    if len(set(labels)) != len(labels):
        raise ConfigurationError("candidate configurations must be unique")
    if network is None and any(c.needs_network for c in configs):
        raise ConfigurationError("tail-up/tail-down candidates need network distances")
    validate_observations(data, schema)
    _check_network(network, data)

    jobs = [(c.label, schema, c, estmethod) for c in configs]
    return _run(jobs, data, network, loocv, progress, "Fitting candidates")


def compare_covariate_sets(data, schema, covariate_sets, config, network=None, loocv=True, progress=True):
    """
    Fit one covariance configuration with different fixed effects.

    Models with different fixed effects are only comparable by likelihood
    under ML, so every fit here uses estmethod='ml'.

    Returns
    -------
    table, failures, fits
        As `compare_models`; fits are keyed by the '+'-joined covariates
        ('' for the intercept-only model).
    """
    covariate_sets = [tuple(s) for s in covariate_sets]
    if not covariate_sets:
        raise ConfigurationError("no covariate sets to compare")
    if config.needs_network and network is None:
        raise ConfigurationError(f"{config.label} needs network distances")
    covariates = tuple(dict.fromkeys(c for s in covariate_sets for c in s))
    validate_observations(data, replace(schema, covariates=covariates))
    _check_network(network, data)

    jobs = [("+".join(s), replace(schema, covariates=s), config, "ml") for s in covariate_sets]
    return _run(jobs, data, network, loocv, progress, "Fitting covariate sets")


def best_fit(table, fits):
    """SSNFit of the top-ranked row of a comparison table."""
    if table.empty:
        raise ConfigurationError("comparison table is empty: no candidate converged")
    top = table.iloc[0]
    key = top["label"] if top["label"] in fits else top["covariates"]
    return fits[key]


def write_comparison(table, path):
    """Write a comparison table as CSV and return the path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(path, index=False)
    logger.info("wrote %d rows to %s", len(table), path)
    return path
