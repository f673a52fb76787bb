"""
Time series and sweep plots.
"""

from __future__ import annotations
from pathlib import Path
from typing import Any, Optional, Sequence

_plt = None
def _get_plt():
    global _plt
    if _plt is None:
        import matplotlib.pyplot as plt
        _plt = plt
    return _plt


def plot_series(
    history,
    name: str,
    ax: Optional[Any] = None,
    ylabel: Optional[str] = None,
    color: str = "navy",
    **kwargs,
) -> Any:
    """
    Plot one SimulationHistory column against simulation time.

    Args:
        history: SimulationHistory
        name: StepRecord field ('drive', 'collapse_count', 'S_mean', ...)
        ax: Matplotlib axis
        ylabel: Y-axis label (default: the column name)
        color: Line color

    Returns:
        Matplotlib axis
    """
    plt = _get_plt()

    if ax is None:
        fig, ax = plt.subplots(figsize=(10, 4))

    ax.plot(history.column('t'), history.column(name), color=color, **kwargs)
    ax.set_xlabel('t')
    ax.set_ylabel(ylabel or name)
    return ax


def plot_step_series(history, title: str = "Field evolution") -> Any:
    """
    Four-panel summary of a SimulationHistory.

    Panels: drive vs dissipation, collapse count, mean I, mean S.

    Returns:
        Matplotlib figure
    """
    plt = _get_plt()

    fig, axes = plt.subplots(2, 2, figsize=(12, 7), sharex=True)

    ax = plot_series(history, 'drive', ax=axes[0, 0], ylabel='Energy / step', label='drive')
    plot_series(history, 'dissipation', ax=ax, ylabel='Energy / step', color='darkorange',
                label='dissipation')
    ax.legend()

    plot_series(history, 'collapse_count', ax=axes[0, 1], ylabel='Collapses',
                color='crimson', linewidth=0.8)
    plot_series(history, 'I_mean', ax=axes[1, 0], ylabel='<I>', color='darkgreen')
    plot_series(history, 'S_mean', ax=axes[1, 1], ylabel='<S>', color='purple')

    fig.suptitle(title)
    fig.tight_layout()
    return fig


def plot_sweep(
    points: Sequence,
    threshold: float = 0.2,
    ax: Optional[Any] = None,
    title: str = "Phase sweep",
) -> Any:
    """
    Normalized correlation length against phase for the phase points
    of a sweep; preset points are drawn as labelled horizontal marks.

    Returns:
        Matplotlib axis
    """
    plt = _get_plt()

    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 5))

    phases = [(float(p.id), p.xi_norm) for p in points if p.mode == 'phase']
    if phases:
        x, y = zip(*phases)
        ax.plot(x, y, 'o-', color='navy', markersize=4, label='phase')
    for p in points:
        if p.mode == 'preset':
            ax.axhline(p.xi_norm, color='gray', linestyle=':', alpha=0.7)
            ax.text(1.01, p.xi_norm, p.id, transform=ax.get_yaxis_transform(),
                    va='center', fontsize=9)

    ax.axhline(threshold, color='red', linestyle='--', alpha=0.5,
               label=f'pattern threshold = {threshold}')
    ax.set_xlabel('Phase')
    ax.set_ylabel('xi / min(H, W)')
    ax.legend()
    if title:
        ax.set_title(title)

    return ax


def save_figure(fig: Any, path: Path, dpi: int = 150) -> Path:
    """Save and close a figure; returns the path written."""
    plt = _get_plt()
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=dpi)
    plt.close(fig)
    return path
