"""
Avalanche detection and power-law statistics.

An avalanche opens on the first step with at least one collapse and
closes once more than `quiet_period` time units pass without one. Its
size is the total collapse count over its lifetime.

Sizes are binned by floor(log2(size)); the exponent tau is minus the
least-squares slope of ln(count) against ln(2^bin).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import math
import numpy as np


@dataclass
class Avalanche:
    """One completed avalanche."""
    start: float
    size: int
    duration: float = 0.0


@dataclass
class AvalancheStatistics:
    """
    Summary of a detector run.

    Attributes:
        tau: Power-law exponent estimate (nan with fewer than two bins)
        total_avalanches: Number of completed avalanches
        avg_size: Mean avalanche size (0 with none)
        size_bins: {bin: count} with bin = floor(log2(size))
        max_size: Largest avalanche
        median_size: Upper median of the sizes
        ratio: max_size / median_size (0 if the median is 0)
        log_points: (log10(2^bin), log10(count)) per bin, ascending
    """
    tau: float
    total_avalanches: int
    avg_size: float
    size_bins: Dict[int, int]
    max_size: int = 0
    median_size: float = 0.0
    ratio: float = 0.0
    log_points: List[Tuple[float, float]] = field(default_factory=list)

    @property
    def has_tau(self) -> bool:
        return math.isfinite(self.tau)


def log2_bins(sizes) -> Dict[int, int]:
    """Count positive sizes per floor(log2(size)) bin, ascending keys."""
    bins: Dict[int, int] = {}
    for s in sizes:
        if s <= 0:
            continue
        b = int(math.floor(math.log2(s)))
        bins[b] = bins.get(b, 0) + 1
    return dict(sorted(bins.items()))


def fit_power_law(size_bins: Dict[int, int]) -> float:
    """
    tau = -slope of ln(count) vs ln(2^bin).

    Returns nan with fewer than two bins.
    """
    if len(size_bins) < 2:
        return float("nan")
    keys = sorted(size_bins)
    x = np.log(np.power(2.0, keys))
    y = np.log(np.array([size_bins[k] for k in keys], dtype=np.float64))
    slope, _ = np.polyfit(x, y, 1)
    return float(-slope)


class AvalancheDetector:
    """
    Streaming avalanche detector over per-step collapse counts.

    Example:
        detector = AvalancheDetector(quiet_period=5)
        for t in range(n_steps):
            result = engine.step(state, params)
            detector.record(t, result.collapse_count, result.release_sum)
        stats = detector.analyze()
    """

    def __init__(self, quiet_period: float = 5):
        self.quiet_period = quiet_period
        self.reset()

    def reset(self) -> None:
        self.avalanches: List[Avalanche] = []
        self.activity: List[float] = []
        self._active = False
        self._start = 0.0
        self._size = 0
        self._last_collapse = -math.inf
        self._last_t: Optional[float] = None

    @property
    def active(self) -> bool:
        return self._active

    def record(self, t: float, collapse_count: int, activity: float = 0.0) -> None:
        """Consume one step: its time, collapse count and activity value."""
        has_collapse = collapse_count > 0
        if has_collapse and not self._active:
            self._active = True
            self._start = t
            self._size = 0

        if self._active:
            self._size += int(collapse_count)
            if not has_collapse and t - self._last_collapse > self.quiet_period:
                self._close(t)

        if has_collapse:
            self._last_collapse = t
        self._last_t = t
        self.activity.append(float(activity))

    def _close(self, t: float) -> None:
        self.avalanches.append(Avalanche(start=self._start, size=self._size, duration=t - self._start))
        self._active = False
        self._size = 0

    def flush(self) -> None:
        """Close an avalanche still open at the end of the stream."""
        if self._active:
            self._close(self._last_t if self._last_t is not None else self._start)

    @property
    def sizes(self) -> np.ndarray:
        return np.array([a.size for a in self.avalanches], dtype=np.int64)

    @property
    def durations(self) -> np.ndarray:
        return np.array([a.duration for a in self.avalanches], dtype=np.float64)

    def analyze(self) -> AvalancheStatistics:
        """Flush, bin and fit."""
        self.flush()
        sizes = self.sizes
        bins = log2_bins(sizes)
        total = len(sizes)

        stats = AvalancheStatistics(
            tau=fit_power_law(bins),
            total_avalanches=total,
            avg_size=float(sizes.mean()) if total else 0.0,
            size_bins=bins,
            log_points=[(math.log10(2.0 ** b), math.log10(c)) for b, c in bins.items()],
        )
        if total:
            stats.max_size = int(sizes.max())
            stats.median_size = float(np.sort(sizes)[total // 2])
            stats.ratio = stats.max_size / stats.median_size if stats.median_size > 0 else 0.0
        return stats


def ascii_log_log(
    points: List[Tuple[float, float]],
    width: int = 48,
    height: int = 12,
) -> str:
    """
    Render (logS, logP) points as a character grid, '*' per point.

    Returns an empty string for no points.
    """
    if not points:
        return ""
    xs = [p[0] for p in points]
    ys = [p[1] for p in points]
    xmin, xmax = min(xs), max(xs)
    ymin, ymax = min(ys), max(ys)
    w = max(2, width)
    h = max(2, height)

    grid = [[" "] * w for _ in range(h)]
    for x, y in points:
        col = 0 if xmax == xmin else int(math.floor((x - xmin) / (xmax - xmin) * (w - 1) + 0.5))
        row = 0 if ymax == ymin else int(math.floor((y - ymin) / (ymax - ymin) * (h - 1) + 0.5))
        grid[h - 1 - row][col] = "*"

    lines = ["logS (x) vs logP (y)"]
    lines.extend("".join(r) for r in grid)
    return "\n".join(lines)
