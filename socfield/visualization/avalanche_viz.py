"""
Avalanche size distribution plots.
"""

from __future__ import annotations
from typing import Any, Optional
import math
import numpy as np

from .timeseries_viz import _get_plt


def plot_size_distribution(
    stats,
    sizes: Optional[np.ndarray] = None,
    activity: Optional[np.ndarray] = None,
    title: str = "Avalanche size distribution",
) -> Any:
    """
    Log-binned size counts on log-log axes with the fitted power law,
    a histogram of raw sizes alongside (if given) and the per-step
    activity underneath (if given).

    Args:
        stats: AvalancheStatistics
        sizes: Raw avalanche sizes
        activity: Released energy per measured step

    Returns:
        Matplotlib figure
    """
    plt = _get_plt()

    ncols = 2 if sizes is not None and len(sizes) else 1
    nrows = 2 if activity is not None and len(activity) else 1
    fig = plt.figure(figsize=(6 * ncols, 5 + 3 * (nrows - 1)))
    grid = fig.add_gridspec(nrows, ncols, height_ratios=[5, 3][:nrows])
    ax = fig.add_subplot(grid[0, 0])

    if stats.size_bins:
        bins = sorted(stats.size_bins)
        s = np.power(2.0, bins)
        counts = np.array([stats.size_bins[b] for b in bins], dtype=np.float64)
        ax.loglog(s, counts, 'o', color='navy', label='log2 bins')

        if stats.has_tau:
            # Line through the geometric centre of the points
            x0 = np.exp(np.mean(np.log(s)))
            y0 = np.exp(np.mean(np.log(counts)))
            ax.loglog(s, y0 * (s / x0) ** (-stats.tau), 'r--',
                      label=f'tau = {stats.tau:.2f}')
        ax.legend()

    ax.set_xlabel('Size')
    ax.set_ylabel('Count')
    ax.set_title(title)

    if ncols == 2:
        ax = fig.add_subplot(grid[0, 1])
        top = max(1, int(math.ceil(math.log2(max(1, int(np.max(sizes)))))))
        edges = np.power(2.0, np.arange(top + 2))
        ax.hist(sizes, bins=edges, color='steelblue', alpha=0.8)
        ax.set_xscale('log')
        ax.set_xlabel('Size')
        ax.set_ylabel('Avalanches')
        ax.set_title(f'N = {len(sizes)}, max/median = {stats.ratio:.1f}')

    if nrows == 2:
        plot_activity(activity, ax=fig.add_subplot(grid[1, :]))

    fig.tight_layout()
    return fig


def plot_activity(
    activity: np.ndarray,
    ax: Optional[Any] = None,
    title: str = "Released energy per step",
) -> Any:
    """
    Plot the per-step activity series recorded by the detector.

    Returns:
        Matplotlib axis
    """
    plt = _get_plt()

    if ax is None:
        fig, ax = plt.subplots(figsize=(10, 3))

    ax.plot(np.arange(len(activity)), activity, color='crimson', linewidth=0.7)
    ax.set_xlabel('Step')
    ax.set_ylabel('Release')
    if title:
        ax.set_title(title)
    return ax
