"""
socfield

A reaction-diffusion-collapse field on arbitrary neighbour graphs, with
avalanche and correlation diagnostics.

Main components:
- config: Parameters, phase projection, presets, run configs
- core: Topology builders, graph, state, step engine, simulation
- analysis: Correlation length, Moran's I, clusters, avalanche statistics
- exploration: Avalanche batches, preset/phase sweeps
- visualization: Time series and distribution plots
"""

__version__ = "0.1.0"
__author__ = "Research Team"

from .errors import SocFieldError, TopologyError, ShapeMismatchError, ConfigError
from .config import (
    Topology, StepRule, SimParams, PRESETS, PARAM_BOUNDS,
    TopologyConfig, RunConfig, derive_params,
)
from .core import (
    Graph, build, SimState, create_state, reset_state,
    StepEngine, StepResult, step, Simulation, create_simulation,
)
from .analysis import AvalancheDetector, correlation_length

__all__ = [
    "SocFieldError",
    "TopologyError",
    "ShapeMismatchError",
    "ConfigError",
    "Topology",
    "StepRule",
    "SimParams",
    "PRESETS",
    "PARAM_BOUNDS",
    "TopologyConfig",
    "RunConfig",
    "derive_params",
    "Graph",
    "build",
    "SimState",
    "create_state",
    "reset_state",
    "StepEngine",
    "StepResult",
    "step",
    "Simulation",
    "create_simulation",
    "AvalancheDetector",
    "correlation_length",
]
