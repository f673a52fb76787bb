"""
Tests for batch runs, sweeps and the avalanche report.
"""

import argparse
import pytest
import numpy as np
from socfield.config import RunConfig, StepRule, Topology, TopologyConfig, minimal_config
from socfield.analysis import AvalancheDetector
from socfield.exploration import (
    BatchResult, SweepPoint, phase_grid, run_avalanche_batch, run_sweep, sweep_configs,
)
from socfield.main import build_config, format_report


def tiny_config(**kwargs) -> RunConfig:
    defaults = dict(
        topology=TopologyConfig(kind=Topology.TORUS, height=16, width=16),
        warmup=5,
        measure=5,
    )
    defaults.update(kwargs)
    return RunConfig(**defaults)


def cli_args(**kwargs) -> argparse.Namespace:
    values = dict(
        config=None, topology=None, resolution=None, warmup=None, measure=None,
        seed=None, quiet_period=None, rule=None, no_numba=False, preset=None, phase=None,
    )
    values.update(kwargs)
    return argparse.Namespace(**values)


class TestAvalancheBatch:
    """Tests for run_avalanche_batch."""

    def test_minimal_run(self):
        """Test one activity entry per measured step."""
        config = minimal_config()
        result = run_avalanche_batch(config)
        assert result.n_nodes == 256
        assert len(result.activity) == config.measure
        assert result.stats.total_avalanches == len(result.sizes)
        assert np.all(result.activity >= 0)

    def test_relaxed_sphere(self):
        """Test the batch runs on a sphere under the relaxed rule."""
        config = RunConfig(
            topology=TopologyConfig(kind=Topology.ICOSPHERE, resolution=2),
            rule=StepRule.RELAXED,
            preset="C",
            warmup=10,
            measure=20,
        )
        result = run_avalanche_batch(config)
        assert result.n_nodes == 162
        assert 'E_mean' in result.final_means


class TestSweep:
    """Tests for preset and phase sweeps."""

    def test_phase_grid(self):
        """Test grid endpoints and spacing."""
        assert phase_grid(0.25) == pytest.approx([0.0, 0.25, 0.5, 0.75, 1.0])
        grid = phase_grid(0.02)
        assert len(grid) == 51
        assert grid[-1] == pytest.approx(1.0)
        with pytest.raises(ValueError):
            phase_grid(0.0)

    def test_sweep_configs(self):
        """Test presets come first and phases follow."""
        base = tiny_config()
        points = sweep_configs(base, "both", step=0.5)
        assert [(m, i) for m, i, _ in points] == [
            ("preset", "A"), ("preset", "B"), ("preset", "C"),
            ("phase", "0.00"), ("phase", "0.50"), ("phase", "1.00"),
        ]
        assert points[0][2].preset == "A"
        assert points[0][2].phase is None
        assert points[4][2].phase == pytest.approx(0.5)
        assert base.phase is None

    def test_unknown_mode(self):
        """Test sweep mode validation."""
        with pytest.raises(ValueError):
            sweep_configs(tiny_config(), "everything")

    def test_run_sweep(self):
        """Test rows carry a regime label."""
        results = run_sweep(tiny_config(), mode="phase", step=0.5)
        assert len(results) == 3
        for point in results:
            assert point.regime in ("pattern", "none")
            assert 0.0 <= point.xi_norm <= 0.25
        assert results[0].to_row().startswith("phase,0.00,")

    def test_parallel_matches_serial(self):
        """Test worker processes reproduce the in-process sweep."""
        base = tiny_config()
        serial = run_sweep(base, mode="presets")
        parallel = run_sweep(base, mode="presets", max_workers=2)
        assert [p.to_dict() for p in parallel] == [p.to_dict() for p in serial]

    def test_row_format(self):
        """Test CSV row layout."""
        point = SweepPoint(mode="preset", id="A", xi_norm=0.23456, regime="pattern")
        assert point.to_row() == "preset,A,0.235,pattern"


def synthetic_batch(counts) -> BatchResult:
    detector = AvalancheDetector(quiet_period=5)
    for t, c in enumerate(counts):
        detector.record(t, c)
    stats = detector.analyze()
    return BatchResult(
        stats=stats,
        sizes=detector.sizes,
        durations=detector.durations,
        activity=np.array(detector.activity),
        n_nodes=100,
    )


class TestReport:
    """Tests for the avalanche CLI report."""

    def test_report_lines(self):
        """Test header rows and the size ratio block."""
        counts = [100] + [0] * 10
        for _ in range(9):
            counts += [1] + [0] * 10
        lines = format_report(synthetic_batch(counts), plot=True)
        assert lines[0] == "tau,0.528"
        assert lines[1] == "totalAvalanches,10"
        assert lines[2] == "avgSize,10.900"
        assert lines[3] == "logS,logP"
        assert lines[4] == "0.0000,0.9542"
        assert "Max/median ratio: 100.0" in lines
        assert "Largest event: 100 steps" in lines

    def test_report_not_enough_data(self):
        """Test n/a exponent and short-run message."""
        lines = format_report(synthetic_batch([1] + [0] * 10))
        assert lines[0] == "tau,n/a"
        assert lines[-1] == "Need more data"

    def test_preset_replaces_phase(self):
        """Test --preset clears the default phase."""
        config = build_config(cli_args(preset="B"))
        assert config.preset == "B"
        assert config.phase is None
        assert config.resolve_params().collapse_I == pytest.approx(0.8)

    def test_cli_topology(self):
        """Test --topology and --resolution build a new topology config."""
        config = build_config(cli_args(topology="hexsphere", resolution=1, rule="relaxed"))
        assert config.topology.kind is Topology.HEXSPHERE
        assert config.topology.resolution == 1
        assert config.rule is StepRule.RELAXED
        assert config.phase == pytest.approx(0.7)
