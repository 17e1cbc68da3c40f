"""
Static figures for semivariogram clouds, binned semivariograms, Torgegrams and permutation envelopes.

Every function takes the tables produced by the estimation code and returns
a matplotlib Figure; nothing here keeps state or needs an event loop.
"""

import numpy as np
import matplotlib.pyplot as plt
import matplotlib as mpl
mpl.rcParams.update(mpl.rcParamsDefault)
from matplotlib import gridspec

from StreamVarioSSN.variofit import VARIOGRAM_MODELS

TORGEGRAM_STYLE = {
    "euclidean": ("tab:gray", "o", "Euclidean"),
    "flow_connected": ("tab:blue", "s", "Flow-connected"),
    "flow_unconnected": ("tab:orange", "^", "Flow-unconnected"),
}


def plot_cloud(cloud, ax=None, **scatter_kw):
    """Scatter of every pairwise (distance, semivariance) point."""
    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 5), dpi=100)
    else:
        fig = ax.figure
    kw = {"s": 4, "alpha": 0.4, "color": "k", "linewidths": 0}
    kw.update(scatter_kw)
    ax.scatter(cloud["distance"], cloud["gamma"], **kw)
    ax.set_xlabel("lag distance (m)")
    ax.set_ylabel(r'Semivariance, $\gamma$')
    ax.grid(True, linestyle='--', alpha=0.3)
    return fig


def plot_semivariogram(table, params=None, model_type=None, estimator="classical"):
    """
    Two-panel plot: pair counts per bin above, semivariance below.

    Low-confidence bins are drawn hollow. If `params` and `model_type` come
    from `fit_semivariogram`, the fitted curve is overlaid.
    """
    fig = plt.figure(figsize=(10, 6), dpi=100)
    gs_plot = gridspec.GridSpec(2, 1, height_ratios=[1, 3])

    ax0 = plt.subplot(gs_plot[0])
    ax1 = plt.subplot(gs_plot[1], sharex=ax0)

    if len(table):
        width = float(table["lag_hi"].iloc[0] - table["lag_lo"].iloc[0])
        ax0.bar(table["dist"], table["np"], edgecolor='black', align='center', width=width / 2)
        low = table["low_confidence"].to_numpy(bool)
        ax1.plot(table["dist"][~low], table["gamma"][~low], 'o', color='tab:blue',
                 markeredgecolor='black', label='Experimental')
        if low.any():
            ax1.plot(table["dist"][low], table["gamma"][low], 'o', markerfacecolor='none',
                     markeredgecolor='black', label='Experimental (few pairs)')
        if params is not None and model_type is not None:
            xlag_fit = np.linspace(0.0, float(table["lag_hi"].max()), 500)
            fn = VARIOGRAM_MODELS[model_type]
            ax1.plot(xlag_fit, fn(xlag_fit, params["r"], params["c0"], params["b"]), '-k',
                     label=f'Model ({model_type})')
        ax1.legend(loc='upper left')

    plt.setp(ax0.get_xticklabels(), visible=False)
    ax0.set_ylabel('Pairs, N')
    ax0.xaxis.grid(True, which='major', linestyle='--')
    ax1.xaxis.grid(True, which='major', linestyle='--')
    ax1.set_ylabel(r'Semivariance, $\gamma$ (%s)' % estimator)
    ax1.set_xlabel('lag distance (m)')
    fig.subplots_adjust(hspace=.0)
    return fig


def plot_torgegram(table, ax=None):
    """
    Torgegram: one series per distance type, marker area scaled by pair count.

    Low-confidence bins are drawn hollow.
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(9, 6), dpi=100)
    else:
        fig = ax.figure

    n_max = float(table["np"].max()) if len(table) else 1.0
    for distance_type, sub in table.groupby("distance_type", sort=False):
        color, marker, label = TORGEGRAM_STYLE.get(distance_type, ("k", "o", distance_type))
        sizes = 20.0 + 180.0 * sub["np"].to_numpy(float) / n_max
        low = sub["low_confidence"].to_numpy(bool)
        ax.scatter(sub["dist"][~low], sub["gamma"][~low], s=sizes[~low], marker=marker,
                   color=color, edgecolor='k', linewidths=0.5, label=label)
        if low.any():
            ax.scatter(sub["dist"][low], sub["gamma"][low], s=sizes[low], marker=marker,
                       facecolors='none', edgecolors=color, linewidths=1.0)
    ax.set_xlabel("separation distance (m)")
    ax.set_ylabel(r'Semivariance, $\gamma$')
    ax.legend(loc='best', frameon=False)
    ax.grid(True, linestyle='--', alpha=0.3)
    return fig


def plot_envelope(observed, trials, envelope_table=None, ax=None):
    """Permutation curves in grey with the observed semivariogram on top."""
    if ax is None:
        fig, ax = plt.subplots(figsize=(9, 6), dpi=100)
    else:
        fig = ax.figure

    for _, curve in trials.groupby("trial"):
        ax.plot(curve["dist"], curve["gamma"], '-', color='0.6', lw=0.5, alpha=0.5, zorder=1)
    if envelope_table is not None and len(envelope_table):
        ax.fill_between(envelope_table["dist"], envelope_table["lower"], envelope_table["upper"],
                        color='forestgreen', alpha=0.15, label='permutation envelope', zorder=0)
    ax.plot(observed["dist"], observed["gamma"], 'o-', color='k', markeredgecolor='black',
            label='observed', zorder=1000)
    ax.set_xlabel("lag distance (m)")
    ax.set_ylabel(r'Semivariance, $\gamma$')
    ax.legend(loc='best', frameon=False)
    ax.grid(True, linestyle='--', alpha=0.3)
    return fig
