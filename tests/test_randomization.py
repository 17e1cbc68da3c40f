"""Tests for randomization.py — permutation trials and the envelope."""
import numpy as np
import pandas as pd
import pytest

from StreamVarioSSN import ConfigurationError, DataError, empirical_semivariogram, envelope, randomization_test
from StreamVarioSSN.variofit import BIN_COLUMNS


@pytest.fixture
def field_arrays(field_data):
    return field_data["VSCI"].to_numpy(), field_data[["x", "y"]].to_numpy()


def test_trial_table_layout(field_arrays):
    z, xy = field_arrays
    observed, trials = randomization_test(z, xy, n_trials=5, random_state=1, progress=False)

    assert list(trials.columns) == ["trial"] + BIN_COLUMNS
    assert sorted(trials["trial"].unique()) == [0, 1, 2, 3, 4]
    pd.testing.assert_frame_equal(observed, empirical_semivariogram(z, xy))


def test_trials_share_observed_bins(field_arrays):
    """Permuting values never moves a pair to another bin."""
    z, xy = field_arrays
    observed, trials = randomization_test(z, xy, n_trials=4, random_state=3, progress=False)

    for _, curve in trials.groupby("trial"):
        np.testing.assert_array_equal(curve["bin"].to_numpy(), observed["bin"].to_numpy())
        np.testing.assert_array_equal(curve["np"].to_numpy(), observed["np"].to_numpy())
        np.testing.assert_allclose(curve["dist"].to_numpy(), observed["dist"].to_numpy())


def test_same_seed_same_trials(field_arrays):
    z, xy = field_arrays
    _, first = randomization_test(z, xy, n_trials=10, random_state=7, progress=False)
    _, second = randomization_test(z, xy, n_trials=10, random_state=7, progress=False)

    pd.testing.assert_frame_equal(first, second)


def test_different_seed_different_trials(field_arrays):
    z, xy = field_arrays
    _, first = randomization_test(z, xy, n_trials=10, random_state=7, progress=False)
    _, second = randomization_test(z, xy, n_trials=10, random_state=8, progress=False)

    assert not np.allclose(first["gamma"], second["gamma"])


def test_permutation_keeps_overall_variance(field_arrays):
    """Over all pairs, the mean semivariance is invariant to permutation."""
    z, xy = field_arrays
    big = 1e6
    observed, trials = randomization_test(z, xy, n_trials=3, cutoff=big, width=big,
                                          random_state=0, progress=False)

    assert len(observed) == 1
    np.testing.assert_allclose(trials["gamma"].to_numpy(), observed["gamma"].iloc[0])


def test_invalid_trial_count(field_arrays):
    z, xy = field_arrays
    with pytest.raises(ConfigurationError):
        randomization_test(z, xy, n_trials=0, progress=False)


def test_distance_shape_must_match_coordinates(field_arrays):
    z, xy = field_arrays
    with pytest.raises(DataError, match="shape"):
        randomization_test(z, xy, n_trials=2, cutoff=5000.0, width=500.0,
                           distance=np.zeros((10, 10)), progress=False)


# ─── Envelope ────────────────────────────────────────────────────

def test_envelope_columns_and_bounds(field_arrays):
    z, xy = field_arrays
    observed, trials = randomization_test(z, xy, n_trials=40, random_state=11, progress=False)
    env = envelope(observed, trials)

    assert list(env.columns[:len(BIN_COLUMNS)]) == BIN_COLUMNS
    assert {"lower", "upper", "outside", "p_lower"} <= set(env.columns)
    assert (env["lower"] <= env["upper"]).all()
    assert ((env["p_lower"] > 0) & (env["p_lower"] <= 1)).all()


def test_envelope_flags_short_lag_structure(field_arrays):
    """The correlated test field sits below the permutation band at the first lag."""
    z, xy = field_arrays
    observed, trials = randomization_test(z, xy, n_trials=99, random_state=5, progress=False)
    env = envelope(observed, trials)

    first = env.iloc[0]
    assert first["gamma"] < first["upper"]
    assert first["p_lower"] < 0.5


def test_envelope_alpha_range(field_arrays):
    z, xy = field_arrays
    observed, trials = randomization_test(z, xy, n_trials=3, random_state=0, progress=False)

    with pytest.raises(ConfigurationError):
        envelope(observed, trials, alpha=1.5)
