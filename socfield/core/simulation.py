"""
Simulation: one graph, one parameter set, one state, stepped in time.

Ties together the topology builder, the state and the step engine,
and records a compact per-step history (forcing, dissipation,
collapse activity and field means) for diagnostics and plots.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import logging
import numpy as np

from ..config import RunConfig, SimParams, StepRule, Topology, derive_params
from .engine import StepEngine, StepResult
from .graph import Graph
from .state import SimState, create_state, reset_state
from .topology import build, build_from_config

logger = logging.getLogger(__name__)


@dataclass
class StepRecord:
    """StepResult plus field means after the step."""
    t: float
    drive: float
    dissipation: float
    collapse_count: int
    release_sum: float
    E_mean: float
    I_mean: float
    S_mean: float


@dataclass
class SimulationHistory:
    """Per-step records, appended by Simulation.step when recording."""
    records: List[StepRecord] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)

    def clear(self) -> None:
        self.records.clear()

    def column(self, name: str) -> np.ndarray:
        """One StepRecord field across all steps."""
        return np.array([getattr(r, name) for r in self.records], dtype=np.float64)

    def collapse_total(self) -> int:
        return int(sum(r.collapse_count for r in self.records))


class Simulation:
    """
    Field simulation on a fixed graph.

    Layers per node:
    1. E: energy, driven by the moving band and moved by diffusion
    2. I: information, accrued from local flux, released by collapses
    3. S: structure, written when I is high, raises conductance

    Example:
        sim = create_simulation(Topology.ICOSPHERE, resolution=3, phase=0.7)
        for _ in range(1000):
            sim.step()
        print(sim.summary())
    """

    def __init__(
        self,
        graph: Graph,
        params: Optional[SimParams] = None,
        rule: StepRule = StepRule.ACCOUNTED,
        seed: int = 1,
        use_numba: bool = True,
        record: bool = True,
    ):
        self.graph = graph
        self.params = params if params is not None else SimParams()
        self.rule = StepRule(rule)
        self.record = record

        self.engine = StepEngine(graph, rule=self.rule, use_numba=use_numba)
        self.state: SimState = create_state(graph.N, seed=seed)
        self.history = SimulationHistory()
        self.last_result: Optional[StepResult] = None

    @property
    def N(self) -> int:
        return self.graph.N

    @property
    def t(self) -> float:
        return self.state.t

    @property
    def E(self) -> np.ndarray:
        return self.state.E

    @property
    def I(self) -> np.ndarray:
        return self.state.I

    @property
    def S(self) -> np.ndarray:
        return self.state.S

    def step(self) -> StepResult:
        """Advance one step of length params.dt."""
        result = self.engine.step(self.state, self.params)
        self.last_result = result
        if self.record:
            s = self.state
            n = s.size
            self.history.records.append(StepRecord(
                t=s.t,
                drive=result.drive,
                dissipation=result.dissipation,
                collapse_count=result.collapse_count,
                release_sum=result.release_sum,
                E_mean=float(s.E.sum() / n),
                I_mean=float(s.I.sum() / n),
                S_mean=float(s.S.sum() / n),
            ))
        return result

    def run(
        self,
        n_steps: int,
        callback: Optional[Callable[["Simulation", StepResult], None]] = None,
    ) -> List[StepResult]:
        """
        Run n_steps steps, calling callback(sim, result) after each.

        Returns:
            The StepResult of every step, in order
        """
        results = []
        for _ in range(n_steps):
            result = self.step()
            if callback is not None:
                callback(self, result)
            results.append(result)
        return results

    def reset(self, seed: Optional[int] = None) -> None:
        """Reinitialize the state in place and drop the history."""
        reset_state(self.state, seed)
        self.history.clear()
        self.last_result = None

    def set_params(self, params: SimParams) -> None:
        """Swap parameters; takes effect from the next step."""
        self.params = params

    def get_state(self) -> Dict:
        """Return current field state for observation."""
        return {
            't': self.state.t,
            'E': self.state.E.copy(),
            'I': self.state.I.copy(),
            'S': self.state.S.copy(),
            'graph': self.graph,
        }

    def summary(self) -> str:
        """Return summary of simulation state."""
        s = self.state
        return (f"Simulation({self.graph.topology.value}, N={self.N}, rule={self.rule.value}, "
                f"t={s.t:.1f}, E=[{s.E.min():.3f}, {s.E.max():.3f}], "
                f"I_max={s.I.max():.3f}, S_mean={s.S.mean():.3f}, "
                f"collapses={self.history.collapse_total()})")


def create_simulation(
    topology: Topology | str = Topology.TORUS,
    resolution: int = 2,
    phase: Optional[float] = None,
    preset: Optional[str] = None,
    rule: StepRule = StepRule.ACCOUNTED,
    seed: int = 1,
    use_numba: bool = True,
    overrides: Optional[Dict[str, float]] = None,
    **build_kwargs,
) -> Simulation:
    """
    Convenience function: build the graph and the parameter set in one go.

    Parameters are derived as in RunConfig.resolve_params: the phase
    map, then the preset, then `overrides`.

    Args:
        topology: Topology family (enum or its string value)
        resolution: Abstract resolution, mapped per family
        phase: Project the phase map onto the defaults
        preset: Named preset ("A", "B", "C") applied after the phase
        rule: StepRule
        seed: State seed
        overrides: Direct parameter assignments, applied last
        build_kwargs: Explicit sizes (height, width, count, k)

    Returns:
        Simulation ready to step
    """
    rule = StepRule(rule)
    graph = build(topology, resolution, **build_kwargs)
    params = derive_params(phase, preset, rule, overrides)

    logger.info("Created simulation on %s", graph.summary())
    return Simulation(graph, params, rule=rule, seed=seed, use_numba=use_numba)


def simulation_from_config(config: RunConfig, record: bool = False) -> Simulation:
    """Build a Simulation from a RunConfig (graph, resolved params, seed)."""
    graph = build_from_config(config.topology)
    params = config.resolve_params()
    return Simulation(
        graph,
        params,
        rule=config.rule,
        seed=config.seed,
        use_numba=config.use_numba,
        record=record,
    )
