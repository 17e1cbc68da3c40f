"""
Torgegram: empirical semivariograms on a stream network.

Pairs are split by distance type and each type is binned on its own:
    euclidean          straight-line distance between sites
    flow_connected     hydrologic distance, one site downstream of the other
    flow_unconnected   hydrologic distance, sites share only a confluence
Binning and estimators are the ones of `empirical_semivariogram`.
Flow-connected classes are usually sparse, so check the low_confidence
column before reading much into them.
"""

import logging

import numpy as np
import pandas as pd

from StreamVarioSSN.config import DISTANCE_TYPES, MIN_PAIRS, SemivariogramOptions
from StreamVarioSSN.errors import ConfigurationError, DataError
from StreamVarioSSN.utils import as_coordinates, as_values, pairwise_distances
from StreamVarioSSN.variofit import BIN_COLUMNS, aggregate_bins, assign_bins, resolve_lags

logger = logging.getLogger(__name__)


def pair_distances(network, coordinates, distance_type):
    """Distances and (i, j) indices of the upper-triangle pairs of one distance type."""
    n = network.n
    iu, ju = np.triu_indices(n, k=1)
    if distance_type == "euclidean":
        D = pairwise_distances(coordinates)
        mask = np.ones(iu.size, dtype=bool)
    elif distance_type == "flow_connected":
        D = network.hydrologic
        mask = network.flow_connected[iu, ju]
    elif distance_type == "flow_unconnected":
        D = network.hydrologic
        mask = network.flow_unconnected[iu, ju]
    else:
        raise ConfigurationError(
            f"Invalid distance_type {distance_type!r}: choose from {DISTANCE_TYPES}")
    return D[iu, ju][mask], iu[mask], ju[mask]


def torgegram(values, network, coordinates, cutoff=None, width=None, estimator="classical",
              distance_types=DISTANCE_TYPES, min_pairs=MIN_PAIRS):
    """
    Binned semivariogram per network distance type.

    Parameters
    ----------
    values : (n,) array_like
        Response values.
    network : NetworkDistances
        Network distances for the same n sites, in the same order.
    coordinates : (n, 2) array_like
        Projected site coordinates; used for Euclidean distances and for the
        default cutoff (bounding-box diagonal / 3) shared by all types.
    cutoff, width : float, optional
        Lag options; defaults as in `empirical_semivariogram`.
    estimator : {'classical', 'robust'}
    distance_types : sequence of str
        Subset of ('euclidean', 'flow_connected', 'flow_unconnected').
    min_pairs : int, default 30
        Bins below this pair count are flagged low_confidence.

    Returns
    -------
    pandas.DataFrame
        Column distance_type followed by BIN_COLUMNS; one row per non-empty
        bin per distance type.
    """
    options = SemivariogramOptions(cutoff=cutoff, width=width, estimator=estimator, min_pairs=min_pairs)
    cutoff, width = resolve_lags(options, coordinates)

    z = as_values(values, n=network.n)
    if as_coordinates(coordinates).shape[0] != network.n:
        raise DataError(f"coordinates do not match the {network.n} network sites")
    if np.ptp(z) == 0:
        raise DataError("response values are all identical; every semivariance would be zero")

    frames = []
    for distance_type in distance_types:
        d, iu, ju = pair_distances(network, coordinates, distance_type)
        keep, bin_idx = assign_bins(d, cutoff, width)
        x = np.abs(z[iu] - z[ju])
        table = aggregate_bins(d[keep], x[keep], bin_idx[keep], width,
                               estimator=estimator, min_pairs=min_pairs)
        n_low = int(table["low_confidence"].sum())
        if n_low:
            logger.warning("%s: %d of %d bins have fewer than %d pairs",
                           distance_type, n_low, len(table), min_pairs)
        table.insert(0, "distance_type", distance_type)
        frames.append(table)
        logger.info("%s: %d pairs within cutoff in %d bins",
                    distance_type, int(keep.sum()), len(table))

    if not frames:
        raise ConfigurationError("distance_types is empty")
    out = pd.concat(frames, ignore_index=True)
    return out.astype({"bin": int, "np": int, "low_confidence": bool})[["distance_type"] + BIN_COLUMNS]
