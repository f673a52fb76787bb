"""
Core module for the field simulator.

Contains:
- Graph: Read-only neighbour graph with per-node geometry
- Topology builders: icosphere, hexsphere, Fibonacci sphere, lattices
- SimState: Per-node energy, information, structure
- StepEngine: Five-phase update (forcing, diffusion, information,
  structure, collapse) under either StepRule
- Simulation: Graph + params + state, with per-step history
"""

from .graph import Graph
from .topology import (
    build, build_from_config, resolution_to_size,
    build_icosphere, build_hexsphere, build_fibonacci, build_lattice,
    subdivided_icosahedron, fibonacci_points, to_lat_lon,
)
from .state import SimState, create_state, reset_state
from .engine import StepEngine, StepResult, band_forcing, step
from .simulation import (
    Simulation, SimulationHistory, StepRecord,
    create_simulation, simulation_from_config,
)

__all__ = [
    "Graph",
    # Topology
    "build",
    "build_from_config",
    "resolution_to_size",
    "build_icosphere",
    "build_hexsphere",
    "build_fibonacci",
    "build_lattice",
    "subdivided_icosahedron",
    "fibonacci_points",
    "to_lat_lon",
    # State
    "SimState",
    "create_state",
    "reset_state",
    # Step engine
    "StepEngine",
    "StepResult",
    "band_forcing",
    "step",
    # Simulation
    "Simulation",
    "SimulationHistory",
    "StepRecord",
    "create_simulation",
    "simulation_from_config",
]
