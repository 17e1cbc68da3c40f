"""
Defaults and option records for semivariogram estimation and SSN fitting.

Default lag binning
    cutoff = (bounding-box diagonal of the sites) * CUTOFF_FRACTION
    width  = cutoff / N_LAG_BINS
where the bounding-box diagonal is hypot(max(x) - min(x), max(y) - min(y)).
With the defaults this gives 15 bins spanning [0, diagonal / 3).
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from StreamVarioSSN.errors import ConfigurationError

# ─── Lag binning ─────────────────────────────────────────────────
CUTOFF_FRACTION = 1.0 / 3.0
N_LAG_BINS = 15

# bins with fewer pairs than this are flagged low_confidence
MIN_PAIRS = 30

# ─── Randomization test ──────────────────────────────────────────
N_TRIALS = 100

# ─── Vocabularies ────────────────────────────────────────────────
ESTIMATORS = ("classical", "robust")
DISTANCE_TYPES = ("euclidean", "flow_connected", "flow_unconnected")
COORDINATE_TYPES = ("euclidean", "geographic")
SHAPES = ("none", "exponential", "linear", "gaussian", "spherical")
ESTIMATION_METHODS = ("reml", "ml")


@dataclass(frozen=True)
class ObservationSchema:
    """Expected columns of an observation table.

    Parameters
    ----------
    x, y : str
        Projected coordinate columns (metres).
    response : str
        Response column (e.g. 'VSCI').
    covariates : tuple of str
        Numeric covariate columns used as fixed effects.
    site_id : str, optional
        Identifier column carried through unchanged.
    """

    x: str = "x"
    y: str = "y"
    response: str = "response"
    covariates: Tuple[str, ...] = field(default_factory=tuple)
    site_id: Optional[str] = None

    @property
    def numeric_columns(self):
        return (self.x, self.y, self.response) + tuple(self.covariates)

    @property
    def columns(self):
        cols = self.numeric_columns
        return (self.site_id,) + cols if self.site_id else cols


@dataclass(frozen=True)
class SemivariogramOptions:
    """Binning options; None means "use the documented default"."""

    cutoff: Optional[float] = None
    width: Optional[float] = None
    estimator: str = "classical"
    distance_type: str = "euclidean"
    min_pairs: int = MIN_PAIRS

    def __post_init__(self):
        if self.estimator not in ESTIMATORS:
            raise ConfigurationError(
                f"Invalid estimator {self.estimator!r}: choose from {ESTIMATORS}")
        if self.distance_type not in DISTANCE_TYPES:
            raise ConfigurationError(
                f"Invalid distance_type {self.distance_type!r}: choose from {DISTANCE_TYPES}")
        if self.cutoff is not None and not self.cutoff > 0:
            raise ConfigurationError(f"cutoff must be > 0, got {self.cutoff}")
        if self.width is not None and not self.width > 0:
            raise ConfigurationError(f"width must be > 0, got {self.width}")
        if self.min_pairs < 0:
            raise ConfigurationError(f"min_pairs must be >= 0, got {self.min_pairs}")

    def resolve(self, diagonal):
        """Return (cutoff, width), filling defaults from the bounding-box diagonal."""
        cutoff = self.cutoff
        if cutoff is None:
            cutoff = float(diagonal) * CUTOFF_FRACTION
        width = self.width
        if width is None:
            width = cutoff / N_LAG_BINS
        if not (np.isfinite(cutoff) and cutoff > 0):
            raise ConfigurationError(
                f"default cutoff is {cutoff} (bounding-box diagonal {diagonal}); pass cutoff explicitly")
        if not (np.isfinite(width) and width > 0):
            raise ConfigurationError(f"width must be > 0, got {width}")
        return float(cutoff), float(width)


# short tags used in configuration labels
_FORM_TAGS = (("tailup", "TU"), ("taildown", "TD"), ("euclid", "EU"))


@dataclass(frozen=True)
class CovarianceConfig:
    """One candidate autocovariance configuration.

    Each of tail-up, tail-down and Euclidean takes a shape from SHAPES;
    'none' removes that component. With every form 'none' the model is an
    ordinary (independent-error) regression and therefore needs the nugget.
    """

    tailup: str = "none"
    taildown: str = "none"
    euclid: str = "none"
    nugget: bool = True

    def __post_init__(self):
        for name, _ in _FORM_TAGS:
            shape = getattr(self, name)
            if shape not in SHAPES:
                raise ConfigurationError(
                    f"Invalid {name} shape {shape!r}: choose from {SHAPES}")
        if not self.active_forms and not self.nugget:
            raise ConfigurationError(
                "configuration has no covariance component: enable a form or the nugget")

    @property
    def active_forms(self):
        return tuple(name for name, _ in _FORM_TAGS if getattr(self, name) != "none")

    @property
    def is_spatial(self):
        return bool(self.active_forms)

    @property
    def needs_network(self):
        return self.tailup != "none" or self.taildown != "none"

    @property
    def n_cov_params(self):
        return 2 * len(self.active_forms) + int(self.nugget)

    @property
    def label(self):
        parts = [f"{tag}:{getattr(self, name)}" for name, tag in _FORM_TAGS]
        parts.append("nugget" if self.nugget else "no-nugget")
        return "|".join(parts)
