"""
Batch runs and parameter sweeps.

- run_avalanche_batch: warm up, then feed every measured step to an
  avalanche detector
- run_sweep: presets and/or a phase grid, each point run from a fresh
  state and scored by the normalized correlation length of S

Sweep points are independent (own state, own random source), so they
fan out over a process pool when max_workers > 1.
"""

from __future__ import annotations
import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import json
import math

import numpy as np

from socfield.config import (
    PRESETS, RunConfig, StepRule, Topology, TopologyConfig,
)
from socfield.core import Simulation, simulation_from_config
from socfield.analysis import (
    PATTERN_THRESHOLD,
    AvalancheDetector,
    AvalancheStatistics,
    cluster_stats,
    correlation_length,
    morans_i,
    regime_label,
)

logger = logging.getLogger(__name__)

SWEEP_MODES = ("presets", "phase", "both")
SWEEP_HEADER = "mode,id,xiNorm,regime"


@dataclass
class BatchResult:
    """Avalanche statistics of one run plus the raw per-avalanche data."""
    stats: AvalancheStatistics
    sizes: np.ndarray
    durations: np.ndarray
    activity: np.ndarray
    n_nodes: int
    final_means: Dict[str, float] = field(default_factory=dict)


def run_avalanche_batch(
    config: RunConfig,
    simulation: Optional[Simulation] = None,
) -> BatchResult:
    """
    Warm up for config.warmup steps, then record config.measure steps.

    The detector sees step indices 0..measure-1 as time, the collapse
    count of each step, and the step's total release as activity.
    """
    sim = simulation if simulation is not None else simulation_from_config(config)
    logger.info("Avalanche batch on %s: warmup=%d measure=%d",
                sim.graph.summary(), config.warmup, config.measure)

    for _ in range(config.warmup):
        sim.step()

    detector = AvalancheDetector(quiet_period=config.quiet_period)
    for k in range(config.measure):
        result = sim.step()
        detector.record(k, result.collapse_count, result.release_sum)

    stats = detector.analyze()
    return BatchResult(
        stats=stats,
        sizes=detector.sizes,
        durations=detector.durations,
        activity=np.array(detector.activity),
        n_nodes=sim.N,
        final_means=sim.state.totals(),
    )


@dataclass
class SweepPoint:
    """One sweep point: which run, and how patterned its structure ended."""
    mode: str
    id: str
    xi_norm: float
    regime: str
    morans_i: float = 0.0
    clusters: int = 0
    max_cluster: int = 0

    def to_row(self) -> str:
        return f"{self.mode},{self.id},{self.xi_norm:.3f},{self.regime}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mode': self.mode,
            'id': self.id,
            'xi_norm': self.xi_norm,
            'regime': self.regime,
            'morans_i': self.morans_i,
            'clusters': self.clusters,
            'max_cluster': self.max_cluster,
        }


def phase_grid(step: float) -> List[float]:
    """Phases 0, step, 2*step, ... up to 1 inclusive."""
    if step <= 0:
        raise ValueError(f"phase step must be positive, got {step}")
    n = int(math.floor(1.0001 / step))
    return [min(1.0, i * step) for i in range(n + 1)]


def sweep_configs(
    base: RunConfig,
    mode: str = "both",
    step: float = 0.02,
) -> List[Tuple[str, str, RunConfig]]:
    """(mode, id, config) for every point of the sweep, presets first."""
    if mode not in SWEEP_MODES:
        raise ValueError(f"Unknown sweep mode: {mode} (expected one of {SWEEP_MODES})")

    points = []
    if mode in ("presets", "both"):
        for name in PRESETS:
            points.append(("preset", name, replace(base, phase=None, preset=name)))
    if mode in ("phase", "both"):
        for p in phase_grid(step):
            points.append(("phase", f"{p:.2f}", replace(base, phase=p, preset=None)))
    return points


def run_sweep_point(mode: str, point_id: str, config: RunConfig) -> SweepPoint:
    """Run warmup + measure from a fresh state and score the final S."""
    sim = simulation_from_config(config)
    sim.run(config.warmup + config.measure)

    S = sim.state.S
    xi = correlation_length(S, sim.graph, use_numba=config.use_numba)
    clusters = cluster_stats(S, sim.graph)
    return SweepPoint(
        mode=mode,
        id=point_id,
        xi_norm=xi,
        regime=regime_label(xi),
        morans_i=morans_i(S, sim.graph),
        clusters=clusters.count,
        max_cluster=clusters.max_size,
    )


def run_sweep(
    base: RunConfig,
    mode: str = "both",
    step: float = 0.02,
    max_workers: int = 1,
) -> List[SweepPoint]:
    """
    Run every sweep point; results come back in sweep order.

    Args:
        base: Topology, rule, seed, warmup/measure shared by all points
        mode: "presets", "phase" or "both"
        step: Phase grid spacing
        max_workers: Worker processes (1 runs in-process)

    Returns:
        List of SweepPoint
    """
    points = sweep_configs(base, mode, step)
    logger.info("Sweeping %d points (%s) with %d worker(s)", len(points), mode, max_workers)

    if max_workers <= 1:
        results = []
        for i, (m, pid, cfg) in enumerate(points):
            logger.debug("[%d/%d] %s %s", i + 1, len(points), m, pid)
            results.append(run_sweep_point(m, pid, cfg))
        return results

    results: List[Optional[SweepPoint]] = [None] * len(points)
    with ProcessPoolExecutor(max_workers=max_workers) as executor:
        futures = {
            executor.submit(run_sweep_point, m, pid, cfg): i
            for i, (m, pid, cfg) in enumerate(points)
        }
        for future in as_completed(futures):
            i = futures[future]
            results[i] = future.result()
            logger.debug("[%d/%d] %s %s done", i + 1, len(points), points[i][0], points[i][1])
    return results


def main():
    """CLI for preset / phase sweeps."""
    import argparse

    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Structure-field preset and phase sweep")
    parser.add_argument('--warmup', type=int, default=300,
                       help='Steps before scoring starts (default: 300)')
    parser.add_argument('--measure', type=int, default=800,
                       help='Further steps before scoring (default: 800)')
    parser.add_argument('--step', type=float, default=0.02,
                       help='Phase grid spacing (default: 0.02)')
    parser.add_argument('--mode', choices=SWEEP_MODES, default='both',
                       help='Which sweeps to run (default: both)')
    parser.add_argument('--topology', choices=['torus', 'cylinder', 'plane'], default='torus',
                       help='Lattice family (default: torus)')
    parser.add_argument('--height', type=int, default=130,
                       help='Lattice height (default: 130)')
    parser.add_argument('--width', type=int, default=180,
                       help='Lattice width (default: 180)')
    parser.add_argument('--rule', choices=[r.value for r in StepRule], default=StepRule.ACCOUNTED.value,
                       help='Update rule (default: accounted)')
    parser.add_argument('--seed', type=int, default=1,
                       help='State seed (default: 1)')
    parser.add_argument('--workers', type=int, default=1,
                       help='Worker processes (default: 1)')
    parser.add_argument('--no-numba', action='store_true',
                       help='Run the plain numpy kernels')
    parser.add_argument('--output', type=str, default=None,
                       help='Optional JSON file for the full results')
    parser.add_argument('--figure', type=str, default=None,
                       help='Save the correlation-length sweep plot (PNG) here')

    args = parser.parse_args()

    base = RunConfig(
        topology=TopologyConfig(kind=Topology(args.topology), height=args.height, width=args.width),
        rule=StepRule(args.rule),
        seed=args.seed,
        warmup=args.warmup,
        measure=args.measure,
        use_numba=not args.no_numba,
    )
    issues = base.validate()
    if issues:
        parser.error("; ".join(issues))

    results = run_sweep(base, mode=args.mode, step=args.step, max_workers=args.workers)

    print(SWEEP_HEADER)
    for point in results:
        print(point.to_row())

    if args.output:
        path = Path(args.output)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump([p.to_dict() for p in results], f, indent=2)
        logger.info(f"Results saved to: {path}")

    if args.figure:
        from socfield.visualization import plot_sweep, save_figure

        ax = plot_sweep(results, threshold=PATTERN_THRESHOLD)
        path = save_figure(ax.figure, Path(args.figure))
        logger.info(f"Figure saved to: {path}")


if __name__ == "__main__":
    main()
