"""
Configuration module for the socfield simulator.

Contains the bounded parameter set of the update rule, the scalar
"phase" projection onto that set, named presets, and the run-level
configuration used by the batch drivers.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields, asdict
from typing import Dict, List, Optional, Tuple, Any
from enum import Enum
import json
from pathlib import Path

from .errors import ConfigError


class Topology(Enum):
    """Spatial graph families understood by the topology builder."""
    ICOSPHERE = "icosphere"   # Subdivided icosahedron vertices
    HEXSPHERE = "hexsphere"   # Dual of the subdivided icosahedron
    FIBONACCI = "fibonacci"   # Golden-angle point sampling, kNN graph
    TORUS = "torus"           # H×W lattice, wraps in both axes
    CYLINDER = "cylinder"     # Lat/lon lattice, wraps in longitude only
    PLANE = "plane"           # H×W lattice, no wraparound


class StepRule(Enum):
    """Update-rule variants of the step engine."""
    ACCOUNTED = "accounted"   # Energy-accounted structure, capped info cost
    RELAXED = "relaxed"       # Fixed-increment structure, unconditional cost


def clamp(x: float, lo: float, hi: float) -> float:
    """Clamp x into [lo, hi]."""
    return lo if x < lo else hi if x > hi else x


# Inclusive bounds for every knob. Randomized parameter sets used in
# tests are drawn from these ranges.
PARAM_BOUNDS: Dict[str, Tuple[float, float]] = {
    "dt": (0.05, 2.0),
    "diffusion": (0.0, 0.25),
    "sigma_base": (0.0, 1.0),
    "sigma_gain": (0.0, 4.0),
    "sigma_slow": (0.0, 1.0),
    "evaporation": (0.0, 0.05),
    "sun_strength": (0.0, 0.4),
    "sun_width": (0.05, 0.6),
    "sun_speed": (0.0, 0.05),
    "sun_wobble": (0.0, 0.5),
    "sun_lat_bias": (0.0, 1.0),
    "info_threshold": (0.0, 0.2),
    "info_gain": (0.0, 1.5),
    "info_power": (1.0, 3.0),
    "info_decay": (0.0, 0.08),
    "info_cost": (0.0, 0.05),
    "info_energy_cost": (0.05, 2.5),
    "sigma_on": (0.05, 0.8),
    "sigma_off": (0.0, 0.7),
    "sigma_rate": (0.0, 0.05),
    "sigma_step": (0.0, 0.1),
    "sigma_write_cost": (0.0, 2.0),
    "sigma_maint_cost": (0.0, 0.02),
    "sigma_relax": (0.0, 0.02),
    "collapse_I": (0.3, 2.0),
    "collapse_fraction": (0.0, 1.0),
    "collapse_remainder": (0.0, 1.0),
    "jitter": (0.0, 1.3),
    "jump_prob": (0.0, 0.05),
}


@dataclass
class SimParams:
    """
    Scalar knobs governing one step of the update rule.

    Immutable within a step; may be replaced wholesale (preset swap) or
    re-derived from a phase between steps. Defaults follow the lattice
    engine tuning.

    Example:
        params = SimParams.from_phase(0.7, diffusion=0.1)
        assert params.diffusion == 0.1   # direct assignment wins
    """
    # Time
    dt: float = 1.0

    # Transport
    diffusion: float = 0.053
    sigma_base: float = 0.327      # Conductance floor (ACCOUNTED)
    sigma_gain: float = 3.34       # Conductance gain from Si*Sj (ACCOUNTED)
    sigma_slow: float = 0.76       # Flow multiplier at S=1 (RELAXED)
    evaporation: float = 0.017

    # Forcing band
    sun_strength: float = 0.04
    sun_width: float = 0.31        # Band width: radians on spheres, fraction of H on lattices
    sun_speed: float = 0.0045
    sun_wobble: float = 0.28       # Longitude wobble, in turns
    sun_lat_bias: float = 0.0

    # Information
    info_threshold: float = 0.078
    info_gain: float = 0.744
    info_power: float = 1.25
    info_decay: float = 0.031
    info_cost: float = 0.01        # Per-unit-I maintenance drain (RELAXED)
    info_energy_cost: float = 1.0

    # Structure
    sigma_on: float = 0.61
    sigma_off: float = 0.07
    sigma_rate: float = 0.032
    sigma_step: float = 0.02       # Fixed relaxation increment (RELAXED)
    sigma_write_cost: float = 0.9
    sigma_maint_cost: float = 0.0151
    sigma_relax: float = 0.0041

    # Collapse
    collapse_I: float = 1.49
    collapse_fraction: float = 0.69
    collapse_remainder: float = 0.25   # I multiplier after collapse (RELAXED)
    jitter: float = 0.594
    jump_prob: float = 0.0245

    def update(self, **overrides: float) -> "SimParams":
        """Assign parameters directly. Unknown names are rejected."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigError(f"Unknown parameter(s): {', '.join(unknown)}")
        for name, value in overrides.items():
            setattr(self, name, float(value))
        return self

    def apply_phase(self, phase: float, rule: StepRule = StepRule.ACCOUNTED) -> "SimParams":
        """
        Derive the parameter set from a single scalar phase in [0, 1].

        Each knob follows a fixed clamped affine map of the phase.
        Knobs that a rule's table does not mention keep their value.
        """
        p = clamp(float(phase), 0.0, 1.0)
        if rule is StepRule.ACCOUNTED:
            _apply_accounted_phase(self, p)
        else:
            _apply_relaxed_phase(self, p)
        return self

    @classmethod
    def from_phase(
        cls,
        phase: float,
        rule: StepRule = StepRule.ACCOUNTED,
        **overrides: float,
    ) -> "SimParams":
        """Phase-derived parameters with direct overrides applied last."""
        params = cls().apply_phase(phase, rule)
        return params.update(**overrides)

    @classmethod
    def from_preset(cls, name: str, **overrides: float) -> "SimParams":
        """Default parameters with a named preset applied on top."""
        return derive_params(preset=name, overrides=overrides)

    def copy(self) -> "SimParams":
        return SimParams(**asdict(self))

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> "SimParams":
        return cls().update(**data)

    def validate(self) -> List[str]:
        """Validate parameters, return list of issues."""
        issues = []
        for name, (lo, hi) in PARAM_BOUNDS.items():
            value = getattr(self, name)
            if not lo <= value <= hi:
                issues.append(f"{name}={value:g} outside [{lo:g}, {hi:g}]")
        if self.sigma_off >= self.sigma_on:
            issues.append("sigma_off must be below sigma_on")
        if self.dt <= 0:
            issues.append("dt must be positive")
        if self.info_energy_cost <= 0:
            issues.append("info_energy_cost must be positive")
        return issues

    def check(self) -> "SimParams":
        """Raise ConfigError if validate() reports anything."""
        issues = self.validate()
        if issues:
            raise ConfigError("; ".join(issues))
        return self


def _apply_accounted_phase(params: SimParams, p: float) -> None:
    params.diffusion = clamp(0.04 + 0.12 * p, 0.02, 0.20)
    params.sigma_gain = clamp(0.6 + 2.2 * p, 0.2, 3.2)
    params.sigma_base = clamp(0.20 - 0.16 * p, 0.02, 0.25)

    params.info_threshold = clamp(0.13 - 0.10 * p, 0.02, 0.18)
    params.info_gain = clamp(0.25 + 0.95 * p, 0.05, 1.4)
    params.info_power = clamp(1.25 + 1.15 * p, 1.0, 3.0)
    params.info_decay = clamp(0.030 - 0.020 * p, 0.005, 0.06)

    params.sigma_rate = clamp(0.002 + 0.014 * p, 0.001, 0.03)
    params.sigma_on = clamp(0.55 - 0.28 * p, 0.12, 0.75)
    params.sigma_off = clamp(params.sigma_on * 0.55, 0.05, params.sigma_on - 0.02)

    params.collapse_I = clamp(1.60 - 0.85 * p, 0.45, 1.80)
    params.collapse_fraction = clamp(0.12 + 0.55 * p, 0.05, 0.95)
    params.jitter = clamp(0.10 + 0.95 * p, 0.0, 1.3)
    params.jump_prob = 0.0005 + 0.02 * (p - 0.75) if p > 0.75 else 0.0003

    params.sun_strength = clamp(0.08 + 0.22 * p, 0.03, 0.35)
    params.sun_width = clamp(0.30 - 0.18 * p, 0.08, 0.45)
    params.evaporation = clamp(0.006 - 0.004 * p, 0.001, 0.02)

    params.sigma_write_cost = clamp(0.25 + 1.25 * p, 0.05, 1.8)
    params.sigma_maint_cost = clamp(0.0006 + 0.004 * p, 0.0002, 0.010)
    params.sigma_relax = clamp(0.001 + 0.006 * p, 0.0005, 0.02)


def _apply_relaxed_phase(params: SimParams, p: float) -> None:
    params.diffusion = clamp(0.08 + 0.08 * p, 0.04, 0.2)
    params.sigma_slow = clamp(0.5 - 0.17 * p, 0.15, 0.6)
    params.info_threshold = clamp(0.09 - 0.06 * p, 0.02, 0.12)
    params.info_decay = clamp(0.015 - 0.012 * p, 0.0, 0.03)
    params.collapse_I = clamp(1.8 - 0.48 * p, 0.6, 1.8)
    params.sun_strength = clamp(0.08 + 0.106 * p, 0.05, 0.2)
    params.info_energy_cost = clamp(1.9 - 1.8 * p, 0.5, 2.0)


# Named override dictionaries. Applied on top of SimParams defaults.
PRESETS: Dict[str, Dict[str, float]] = {
    "A": {
        "diffusion": 0.14,
        "sigma_slow": 0.42,
        "evaporation": 0.008,
        "info_gain": 0.75,
        "info_threshold": 0.045,
        "info_decay": 0.005,
        "info_cost": 0.022,
        "info_energy_cost": 1.15,
        "sigma_on": 0.7,
        "sigma_off": 0.34,
        "collapse_I": 0.56,
        "collapse_fraction": 0.57,
        "jitter": 0.42,
        "sun_strength": 0.19,
        "sun_width": 0.37,
        "sun_speed": 0.025,
        "sun_lat_bias": 0.45,
        "sun_wobble": 0.39,
    },
    "B": {
        "diffusion": 0.16,
        "sigma_slow": 0.17,
        "evaporation": 0.011,
        "info_gain": 0.35,
        "info_threshold": 0.075,
        "info_decay": 0.016,
        "info_cost": 0.022,
        "info_energy_cost": 0.6,
        "sigma_on": 0.7,
        "sigma_off": 0.34,
        "collapse_I": 0.8,
        "collapse_fraction": 0.45,
        "jitter": 0.8,
        "sun_strength": 0.12,
        "sun_width": 0.37,
        "sun_speed": 0.025,
        "sun_lat_bias": 0.45,
        "sun_wobble": 0.39,
    },
    # Interactive front-end default tuning
    "C": {
        "dt": 0.5,
        "diffusion": 0.07,
        "sigma_slow": 0.76,
        "evaporation": 0.013,
        "info_gain": 0.84,
        "info_threshold": 0.12,
        "info_decay": 0.005,
        "info_cost": 0.01,
        "info_energy_cost": 0.9,
        "sigma_on": 0.69,
        "sigma_off": 0.36,
        "collapse_I": 1.05,
        "collapse_fraction": 0.57,
        "jitter": 0.42,
        "sun_strength": 0.16,
        "sun_width": 0.13,
        "sun_speed": 0.006,
        "sun_lat_bias": 0.45,
        "sun_wobble": 0.04,
    },
}


def derive_params(
    phase: Optional[float] = None,
    preset: Optional[str] = None,
    rule: StepRule = StepRule.ACCOUNTED,
    overrides: Optional[Dict[str, float]] = None,
) -> SimParams:
    """
    Parameter set from the three sources, applied in a fixed order:
    phase projection, then named preset, then direct assignment.

    Direct assignment always wins, including a value equal to the default.
    """
    params = SimParams()
    if phase is not None:
        params.apply_phase(phase, StepRule(rule))
    if preset is not None:
        key = preset.upper()
        if key not in PRESETS:
            raise ConfigError(
                f"Unknown preset: {preset} (available: {', '.join(sorted(PRESETS))})"
            )
        params.update(**PRESETS[key])
    if overrides:
        params.update(**overrides)
    return params


@dataclass
class TopologyConfig:
    """
    Which graph to build and at what size.

    `resolution` drives the size when no explicit size is given:
    subdivision count for the spheres, a point count for Fibonacci
    sampling, and a lattice height/width for the lattices.
    """
    kind: Topology = Topology.TORUS
    resolution: int = 2
    height: Optional[int] = None   # Lattices only
    width: Optional[int] = None    # Lattices only
    count: Optional[int] = None    # Fibonacci only
    k: int = 6                     # Fibonacci nearest neighbours

    def validate(self) -> List[str]:
        issues = []
        if self.resolution < 0:
            issues.append("resolution must be non-negative")
        if self.height is not None and self.height < 2:
            issues.append("height must be at least 2")
        if self.width is not None and self.width < 2:
            issues.append("width must be at least 2")
        if self.count is not None and self.count < 12:
            issues.append("count must be at least 12")
        if self.k < 1:
            issues.append("k must be at least 1")
        return issues


@dataclass
class RunConfig:
    """
    Main configuration container for a batch run.

    Only configuration is serialized; simulation state never is.

    Example:
        config = RunConfig(
            topology=TopologyConfig(kind=Topology.HEXSPHERE, resolution=3),
            phase=0.7,
        )
        config.save("run.json")
    """
    topology: TopologyConfig = field(default_factory=TopologyConfig)
    rule: StepRule = StepRule.ACCOUNTED
    seed: int = 1

    # Parameter derivation, applied in order: phase, preset, overrides
    phase: Optional[float] = None
    preset: Optional[str] = None
    overrides: Dict[str, float] = field(default_factory=dict)

    # Batch
    warmup: int = 1000
    measure: int = 4000
    quiet_period: int = 5

    # Performance
    use_numba: bool = True

    def resolve_params(self) -> SimParams:
        """
        Effective parameters for this run.

        Projects the phase (if any), then applies the preset (if any),
        then every entry of `overrides`.
        """
        return derive_params(self.phase, self.preset, self.rule, self.overrides)

    def save(self, path: str | Path) -> None:
        """Save configuration to JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self._to_dict()
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

    @classmethod
    def load(cls, path: str | Path) -> "RunConfig":
        """Load configuration from JSON file."""
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return cls._from_dict(data)

    def _to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        def convert(obj):
            if isinstance(obj, Enum):
                return obj.value
            elif hasattr(obj, '__dataclass_fields__'):
                return {k: convert(v) for k, v in obj.__dict__.items()}
            elif isinstance(obj, (list, tuple)):
                return [convert(x) for x in obj]
            return obj

        return convert(self)

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "RunConfig":
        """Reconstruct from dictionary."""
        data = dict(data)
        if 'rule' in data:
            data['rule'] = StepRule(data['rule'])
        if 'topology' in data:
            topo = dict(data['topology'])
            if 'kind' in topo:
                topo['kind'] = Topology(topo['kind'])
            data['topology'] = TopologyConfig(**topo)
        return cls(**data)

    def validate(self) -> List[str]:
        """Validate configuration, return list of warnings/errors."""
        issues = list(self.topology.validate())

        if self.phase is not None and not 0.0 <= self.phase <= 1.0:
            issues.append("phase should be in [0, 1]")
        known = {f.name for f in fields(SimParams)}
        unknown = sorted(set(self.overrides) - known)
        if unknown:
            issues.append(f"unknown parameter(s): {', '.join(unknown)}")
        if self.preset is not None and self.preset.upper() not in PRESETS:
            issues.append(f"unknown preset: {self.preset}")
        elif not unknown:
            issues.extend(self.resolve_params().validate())
        if self.warmup < 0 or self.measure < 0:
            issues.append("warmup and measure must be non-negative")
        if self.quiet_period < 0:
            issues.append("quiet_period must be non-negative")

        return issues


# Preset run configurations
def minimal_config() -> RunConfig:
    """Minimal configuration for quick testing."""
    return RunConfig(
        topology=TopologyConfig(kind=Topology.TORUS, height=16, width=16),
        warmup=20,
        measure=50,
    )


def standard_config() -> RunConfig:
    """Standard avalanche-statistics run on the default lattice."""
    return RunConfig(
        topology=TopologyConfig(kind=Topology.TORUS, height=130, width=180),
        phase=0.70,
        warmup=1000,
        measure=4000,
    )
