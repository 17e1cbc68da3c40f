"""
Exception types raised by StreamVarioSSN.

Configuration and data errors subclass ValueError so callers that already
catch ValueError (the convention in the semivariogram fitting code) keep
working.
"""


class ConfigurationError(ValueError):
    """Invalid parameters: non-positive cutoff/width, unknown options, missing columns."""


class DataError(ValueError):
    """Degenerate or malformed input data."""


class FitConvergenceError(RuntimeError):
    """A covariance model could not be fitted.

    Parameters
    ----------
    label : str
        Label of the covariance configuration that failed.
    reason : str
        Optimiser message or linear-algebra failure description.
    """

    def __init__(self, label, reason):
        self.label = label
        self.reason = reason
        super().__init__(f"{label}: {reason}")
