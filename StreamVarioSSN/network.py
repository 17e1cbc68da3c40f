"""
Stream-network distance structures supplied by an external network-topology provider.

The provider hands over, for n observation sites,

    dist_down[i, j] : stream distance from site i downstream to the junction
                      it shares with site j (0 when i lies downstream of j),
    afv[i]          : additive function value of site i,
    netid[i]        : network the site belongs to (optional).

From these follow the hydrologic distance dist_down + dist_down.T, the
flow-connected pairs (one site downstream of the other, i.e.
min(dist_down[i, j], dist_down[j, i]) == 0) and the flow-unconnected pairs
(both distances > 0: the sites only share a downstream confluence).
Sites on different networks are neither, and their distance is infinite.
"""

import numpy as np

from StreamVarioSSN.errors import DataError


class NetworkDistances:
    """
    Read-only view of the network distance matrices for one set of sites.

    Parameters
    ----------
    dist_down : (n, n) array_like
        Downstream distance matrix as described in the module docstring.
        Entries for pairs on different networks may be inf or nan.
    afv : (n,) array_like
        Additive function values, > 0.
    netid : (n,) array_like, optional
        Network identifier per site; all sites share one network if omitted.
    """

    def __init__(self, dist_down, afv, netid=None):
        A = np.array(dist_down, dtype=float)
        if A.ndim != 2 or A.shape[0] != A.shape[1]:
            raise DataError(f"dist_down must be square, got {A.shape}")
        n = A.shape[0]
        if n < 2:
            raise DataError(f"need at least 2 sites, got {n}")

        w = np.array(afv, dtype=float).ravel()
        if w.size != n:
            raise DataError(f"afv has {w.size} entries, expected {n}")
        if not np.all(np.isfinite(w)) or np.any(w <= 0):
            raise DataError("additive function values must be finite and > 0")

        if netid is None:
            net = np.zeros(n, dtype=int)
        else:
            net = np.array(netid).ravel()
            if net.size != n:
                raise DataError(f"netid has {net.size} entries, expected {n}")

        same_net = net[:, None] == net[None, :]
        A = np.where(same_net, A, np.inf)
        A[np.isnan(A)] = np.inf
        finite = np.isfinite(A)
        if np.any(A[finite] < 0):
            raise DataError("dist_down must be non-negative")
        if np.any(np.diag(A) != 0):
            raise DataError("dist_down must have a zero diagonal")
        if np.any(finite != finite.T):
            raise DataError("dist_down must be finite for a pair in both directions or neither")

        self._dist_down = A
        self._afv = w
        self._netid = net
        for arr in (self._dist_down, self._afv, self._netid):
            arr.setflags(write=False)

    @property
    def n(self):
        return self._dist_down.shape[0]

    @property
    def dist_down(self):
        return self._dist_down

    @property
    def afv(self):
        return self._afv

    @property
    def netid(self):
        return self._netid

    @property
    def hydrologic(self):
        """Total stream distance a + b between sites (inf across networks)."""
        return self._dist_down + self._dist_down.T

    @property
    def shorter(self):
        """min(a, b): distance from the nearer site to the shared junction."""
        return np.minimum(self._dist_down, self._dist_down.T)

    @property
    def longer(self):
        """max(a, b): distance from the farther site to the shared junction."""
        return np.maximum(self._dist_down, self._dist_down.T)

    @property
    def same_network(self):
        return np.isfinite(self._dist_down)

    @property
    def flow_connected(self):
        """Off-diagonal pairs where one site is downstream of the other."""
        fc = self.same_network & (self.shorter == 0)
        np.fill_diagonal(fc, False)
        return fc

    @property
    def flow_unconnected(self):
        """Pairs on one network sharing only a downstream confluence."""
        fu = self.same_network & (self.shorter > 0)
        np.fill_diagonal(fu, False)
        return fu

    @property
    def tailup_weights(self):
        """sqrt(afv_upstream / afv_downstream) on flow-connected pairs, 0 elsewhere."""
        lo = np.minimum(self._afv[:, None], self._afv[None, :])
        hi = np.maximum(self._afv[:, None], self._afv[None, :])
        W = np.where(self.flow_connected, np.sqrt(lo / hi), 0.0)
        np.fill_diagonal(W, 1.0)
        return W

    def max_hydrologic(self):
        """Largest finite hydrologic distance between two sites."""
        H = self.hydrologic
        finite = np.isfinite(H)
        return float(H[finite].max()) if finite.any() else 0.0

    def __repr__(self):
        n_fc = int(self.flow_connected.sum()) // 2
        n_fu = int(self.flow_unconnected.sum()) // 2
        return f"NetworkDistances(n={self.n}, flow_connected={n_fc}, flow_unconnected={n_fu})"
