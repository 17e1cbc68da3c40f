"""
StreamVarioSSN
--------------
Empirical semivariograms, permutation envelopes and Torgegrams for stream
survey data, plus spatial stream network (tail-up / tail-down / Euclidean)
linear models ranked by AIC and leave-one-out cross-validation.
"""

# ---------------------------------------------------------------------
# Version (from the installed distribution metadata)
# ---------------------------------------------------------------------
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("streamvario-ssn")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"

# ---------------------------------------------------------------------
# Configuration and errors
# ---------------------------------------------------------------------
from .config import CovarianceConfig, ObservationSchema, SemivariogramOptions
from .errors import ConfigurationError, DataError, FitConvergenceError

# ---------------------------------------------------------------------
# Utilities (distances, validation)
# ---------------------------------------------------------------------
from .utils import (
    bounding_box_diagonal,
    distance_summary,
    pairwise_distances,
    validate_observations,
)

# ---------------------------------------------------------------------
# Semivariograms
# ---------------------------------------------------------------------
from .variofit import (
    VARIOGRAM_MODELS,
    binned_from_cloud,
    empirical_semivariogram,
    fit_semivariogram,
    semivariogram_cloud,
)
from .randomization import envelope, randomization_test
from .network import NetworkDistances
from .torgegram import torgegram

# ---------------------------------------------------------------------
# Spatial stream network models
# ---------------------------------------------------------------------
from .covariance import CORRELATION_MODELS, build_covariance
from .splm import SSNFit, cv_statistics, fit_ssn, leave_one_out
from .compare import (
    best_fit,
    candidate_configurations,
    compare_covariate_sets,
    compare_models,
    write_comparison,
)
from .selection import best_per_size, best_subset, vif_table

__all__ = [
    "__version__",
    "CovarianceConfig", "ObservationSchema", "SemivariogramOptions",
    "ConfigurationError", "DataError", "FitConvergenceError",
    "bounding_box_diagonal", "distance_summary", "pairwise_distances", "validate_observations",
    "VARIOGRAM_MODELS", "binned_from_cloud", "empirical_semivariogram", "fit_semivariogram",
    "semivariogram_cloud",
    "envelope", "randomization_test",
    "NetworkDistances", "torgegram",
    "CORRELATION_MODELS", "build_covariance",
    "SSNFit", "cv_statistics", "fit_ssn", "leave_one_out",
    "best_fit", "candidate_configurations", "compare_covariate_sets", "compare_models",
    "write_comparison",
    "best_per_size", "best_subset", "vif_table",
]
