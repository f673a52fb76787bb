"""
Analysis module for the field simulator.

Provides diagnostics over simulation output:
- Correlation: radial correlation length, regime label, Moran's I, clusters
- Avalanche: detector, log2 binning, power-law exponent, ASCII plot
"""

from .correlation import (
    PATTERN_THRESHOLD,
    ClusterStats,
    cluster_stats,
    correlation_length,
    morans_i,
    radial_correlation,
    regime_label,
)
from .avalanche import (
    Avalanche,
    AvalancheDetector,
    AvalancheStatistics,
    ascii_log_log,
    fit_power_law,
    log2_bins,
)

__all__ = [
    # Correlation
    "PATTERN_THRESHOLD",
    "ClusterStats",
    "cluster_stats",
    "correlation_length",
    "morans_i",
    "radial_correlation",
    "regime_label",
    # Avalanche
    "Avalanche",
    "AvalancheDetector",
    "AvalancheStatistics",
    "ascii_log_log",
    "fit_power_law",
    "log2_bins",
]
