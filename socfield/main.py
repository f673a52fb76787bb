"""
Avalanche statistics CLI.

Runs a warmup, records avalanches over the measured steps and prints
the power-law exponent, counts and the log-binned size distribution.
"""

import argparse
import logging
from pathlib import Path
from typing import List

from socfield.config import RunConfig, StepRule, Topology, TopologyConfig
from socfield.errors import ConfigError
from socfield.core import simulation_from_config
from socfield.analysis import ascii_log_log
from socfield.exploration import BatchResult, run_avalanche_batch

logger = logging.getLogger(__name__)

DEFAULT_PHASE = 0.70
# Fewer avalanches than this make the size ratio meaningless
MIN_AVALANCHES = 5


def format_report(result: BatchResult, plot: bool = False) -> List[str]:
    """Text lines of the avalanche report, in print order."""
    stats = result.stats
    lines = [
        f"tau,{stats.tau:.3f}" if stats.has_tau else "tau,n/a",
        f"totalAvalanches,{stats.total_avalanches}",
        f"avgSize,{stats.avg_size:.3f}",
        "logS,logP",
    ]
    lines.extend(f"{x:.4f},{y:.4f}" for x, y in stats.log_points)
    if plot and stats.log_points:
        lines.append(ascii_log_log(stats.log_points))

    if stats.total_avalanches < MIN_AVALANCHES:
        lines.append("Need more data")
    else:
        lines.append(f"Max/median ratio: {stats.ratio:.1f}")
        lines.append("(SOC typically > 100, ordered < 10)")
        lines.append(f"Largest event: {stats.max_size} steps")
        lines.append(f"(SOC: largest ~ total cells: {result.n_nodes})")
    return lines


def build_config(args: argparse.Namespace) -> RunConfig:
    """RunConfig from CLI arguments; a --config file is the starting point."""
    if args.config:
        config = RunConfig.load(args.config)
    else:
        config = RunConfig(
            topology=TopologyConfig(kind=Topology.TORUS, height=130, width=180),
            phase=DEFAULT_PHASE,
        )

    if args.topology is not None:
        kind = Topology(args.topology)
        config.topology = TopologyConfig(kind=kind, resolution=args.resolution)
    elif args.resolution is not None:
        config.topology.resolution = args.resolution
    if args.warmup is not None:
        config.warmup = args.warmup
    if args.measure is not None:
        config.measure = args.measure
    if args.seed is not None:
        config.seed = args.seed
    if args.quiet_period is not None:
        config.quiet_period = args.quiet_period
    if args.rule is not None:
        config.rule = StepRule(args.rule)
    if args.no_numba:
        config.use_numba = False

    # A preset replaces the phase projection
    if args.preset is not None:
        config.preset = args.preset
        config.phase = None
    elif args.phase is not None:
        config.phase = args.phase

    for item in getattr(args, "set", None) or []:
        name, sep, value = item.partition("=")
        if not sep:
            raise ConfigError(f"--set expects NAME=VALUE, got {item!r}")
        config.overrides[name.strip()] = float(value)
    return config


def main():
    """Command-line interface for avalanche batches."""
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Avalanche statistics of the structure field")

    parser.add_argument('--warmup', type=int, default=None,
                       help='Discarded steps before measuring (default: 1000)')
    parser.add_argument('--measure', type=int, default=None,
                       help='Measured steps (default: 4000)')
    parser.add_argument('--phase', type=float, default=None,
                       help=f'Phase in [0, 1] (default: {DEFAULT_PHASE})')
    parser.add_argument('--preset', type=str, default=None,
                       help='Named preset (A, B, C); overrides --phase')
    parser.add_argument('--set', action='append', default=None, metavar='NAME=VALUE',
                       help='Assign a parameter directly; applied after phase and preset')
    parser.add_argument('--plot', action='store_true',
                       help='Print an ASCII log-log plot')
    parser.add_argument('--topology', choices=[t.value for t in Topology], default=None,
                       help='Topology family (default: 130x180 torus)')
    parser.add_argument('--resolution', type=int, default=None,
                       help='Topology resolution (default: 2)')
    parser.add_argument('--seed', type=int, default=None,
                       help='State seed (default: 1)')
    parser.add_argument('--quiet-period', type=int, default=None,
                       help='Quiet steps that end an avalanche (default: 5)')
    parser.add_argument('--rule', choices=[r.value for r in StepRule], default=None,
                       help='Update rule (default: accounted)')
    parser.add_argument('--no-numba', action='store_true',
                       help='Run the plain numpy kernels')
    parser.add_argument('--config', type=str, default=None,
                       help='RunConfig JSON file to start from')
    parser.add_argument('--save-config', type=str, default=None,
                       help='Write the effective RunConfig to this JSON file')
    parser.add_argument('--figure', type=str, default=None,
                       help='Save the size distribution and activity figure (PNG) here')
    parser.add_argument('--series-figure', type=str, default=None,
                       help='Save per-step drive, dissipation, collapses, <I> and <S> (PNG) here')

    args = parser.parse_args()
    if args.topology is not None and args.resolution is None:
        args.resolution = 2

    try:
        config = build_config(args)
    except ValueError as e:
        parser.error(str(e))
    issues = config.validate()
    if issues:
        parser.error("; ".join(issues))
    if args.save_config:
        config.save(args.save_config)
        logger.info(f"Config saved to: {args.save_config}")

    sim = simulation_from_config(config, record=bool(args.series_figure))
    result = run_avalanche_batch(config, simulation=sim)
    for line in format_report(result, plot=args.plot):
        print(line)

    if args.figure:
        from socfield.visualization import plot_size_distribution, save_figure

        fig = plot_size_distribution(result.stats, sizes=result.sizes, activity=result.activity)
        path = save_figure(fig, Path(args.figure))
        logger.info(f"Figure saved to: {path}")

    if args.series_figure:
        from socfield.visualization import plot_step_series, save_figure

        fig = plot_step_series(sim.history, title=f"{sim.graph.topology.value}, N={sim.N}")
        path = save_figure(fig, Path(args.series_figure))
        logger.info(f"Figure saved to: {path}")

    logger.info("Done!")


if __name__ == "__main__":
    main()
