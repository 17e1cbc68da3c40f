"""Pytest configuration and shared fixtures."""
import numpy as np
import pandas as pd
import pytest

from StreamVarioSSN import NetworkDistances, ObservationSchema


@pytest.fixture
def square_coords():
    """Four sites on the corners of a 10 km square."""
    return np.array([
        [0.0, 0.0],
        [10000.0, 0.0],
        [0.0, 10000.0],
        [10000.0, 10000.0],
    ])


@pytest.fixture
def square_values():
    return np.array([10.0, 12.0, 50.0, 52.0])


@pytest.fixture
def field_data():
    """
    80 sites in a 10 km square with an exponentially correlated response.

    response = 40 + 0.02 * elev + spatial field (psill 4, range 2000 m) + nugget (0.25)
    """
    rng = np.random.default_rng(42)
    n = 80
    xy = rng.uniform(0.0, 10000.0, size=(n, 2))
    dx = xy[:, None, 0] - xy[None, :, 0]
    dy = xy[:, None, 1] - xy[None, :, 1]
    D = np.hypot(dx, dy)
    C = 4.0 * np.exp(-D / 2000.0) + 0.25 * np.eye(n)
    L = np.linalg.cholesky(C)
    elev = rng.uniform(100.0, 600.0, size=n)
    noise = rng.normal(size=n)
    response = 40.0 + 0.02 * elev + L @ rng.normal(size=n)
    return pd.DataFrame({
        "site": [f"S{i:03d}" for i in range(n)],
        "x": xy[:, 0],
        "y": xy[:, 1],
        "VSCI": response,
        "elev": elev,
        "noise": noise,
    })


@pytest.fixture
def field_schema():
    return ObservationSchema(x="x", y="y", response="VSCI", covariates=("elev",), site_id="site")


@pytest.fixture
def small_network():
    """
    Five sites on a network with one confluence J, 1500 m above the outlet.

        s0 outlet (0 m), s1 main stem (1000 m),
        s2 trib A (J + 500 m), s4 trib B (J + 300 m), s3 trib B (J + 800 m)

    Flow-connected pairs: (0,1) (0,2) (0,3) (0,4) (1,2) (1,3) (1,4) (3,4)
    Flow-unconnected pairs: (2,3) (2,4)
    """
    dist_down = np.array([
        [0.0, 0.0, 0.0, 0.0, 0.0],
        [1000.0, 0.0, 0.0, 0.0, 0.0],
        [2000.0, 1000.0, 0.0, 500.0, 500.0],
        [2300.0, 1300.0, 800.0, 0.0, 500.0],
        [1800.0, 800.0, 300.0, 0.0, 0.0],
    ])
    afv = np.array([1.0, 1.0, 0.4, 0.6, 0.6])
    return NetworkDistances(dist_down, afv)


@pytest.fixture
def small_network_coords():
    return np.array([
        [0.0, 0.0],
        [0.0, 1000.0],
        [-300.0, 1950.0],
        [400.0, 2250.0],
        [300.0, 1780.0],
    ])


def branching_network(u, branch, junction):
    """
    Network of one main stem with two tributaries joining at `junction`.

    u[i] is the stream distance of site i above the outlet; branch[i] is 0
    for the main stem (u < junction) and 1 or 2 for the tributaries
    (u > junction). Main-stem sites are downstream of every site above them.
    """
    u = np.asarray(u, float)
    branch = np.asarray(branch)
    connected = (branch[:, None] == branch[None, :]) | (branch[:, None] == 0) | (branch[None, :] == 0)
    dist_down = np.where(connected,
                         np.maximum(u[:, None] - u[None, :], 0.0),
                         np.broadcast_to(u[:, None] - junction, (u.size, u.size)))
    afv = np.select([branch == 1, branch == 2], [0.4, 0.6], default=1.0)
    return NetworkDistances(dist_down, afv)


def _network_coordinates(u, branch, junction):
    above = np.clip(u - junction, 0.0, None)
    side = np.select([branch == 1, branch == 2], [-0.6, 0.6], default=0.0)
    x = side * above
    y = np.where(branch == 0, u, junction + 0.8 * above)
    return x, y


def _network_survey(rng, n_main, n_trib, junction, taildown_psill, nugget):
    u = np.concatenate([
        rng.uniform(0.0, junction, n_main),
        rng.uniform(junction + 50.0, junction + 2000.0, n_trib),
        rng.uniform(junction + 50.0, junction + 2000.0, n_trib),
    ])
    branch = np.repeat([0, 1, 2], [n_main, n_trib, n_trib])
    network = branching_network(u, branch, junction)
    x, y = _network_coordinates(u, branch, junction)

    H = np.where(network.same_network, network.hydrologic, np.inf)
    C = taildown_psill * np.exp(-H / 1500.0) + nugget * np.eye(u.size)
    elev = rng.uniform(100.0, 600.0, u.size)
    response = 40.0 + 0.02 * elev + np.linalg.cholesky(C) @ rng.normal(size=u.size)
    data = pd.DataFrame({"x": x, "y": y, "VSCI": response, "elev": elev})
    return data, network


@pytest.fixture
def stream_survey():
    """
    30 sites on a two-tributary network (8 main stem, 11 per tributary).

    response = 40 + 0.02 * elev + tail-down exponential field over hydrologic
    distance (psill 4, range 1500 m) + nugget (0.25)
    """
    data, network = _network_survey(np.random.default_rng(7), 8, 11, 1000.0, 4.0, 0.25)
    schema = ObservationSchema(x="x", y="y", response="VSCI", covariates=("elev",))
    return data, schema, network


@pytest.fixture
def line_survey():
    """8 sites on a single stem: every pair is flow-connected."""
    data, network = _network_survey(np.random.default_rng(11), 8, 0, 1000.0, 2.0, 0.5)
    schema = ObservationSchema(x="x", y="y", response="VSCI", covariates=("elev",))
    return data, schema, network
