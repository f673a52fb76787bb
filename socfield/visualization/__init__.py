"""
Visualization module for the field simulator.

Provides matplotlib figures (imported lazily):
- Time series of per-step summaries
- Sweep results
- Avalanche size distributions
"""

from .timeseries_viz import (
    plot_series,
    plot_step_series,
    plot_sweep,
    save_figure,
)
from .avalanche_viz import (
    plot_size_distribution,
    plot_activity,
)

__all__ = [
    # Time series
    'plot_series',
    'plot_step_series',
    'plot_sweep',
    'save_figure',
    # Avalanches
    'plot_size_distribution',
    'plot_activity',
]
