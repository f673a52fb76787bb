"""
Per-node simulation state.

Fields:
    E: energy, unbounded real
    I: information, clamped >= 0 after every step
    S: structure, clamped to [0, 1] after every step
    dE, dI, flux: scratch buffers rewritten by every step

The state owns a seeded numpy Generator. Only the collapse phase of
the step engine draws from it.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Optional
import numpy as np

from ..errors import ShapeMismatchError

# Amplitude of each of the two centred uniform draws seeding E
INITIAL_ENERGY_NOISE = 0.02


@dataclass
class SimState:
    """
    Mutable state of one simulation run.

    Create with `create_state(n, seed)`; reinitialize in place with
    `reset_state(state, seed)`.
    """
    E: np.ndarray
    I: np.ndarray
    S: np.ndarray
    seed: int = 1
    t: float = 0.0
    rng: np.random.Generator = field(default=None, repr=False)
    dE: np.ndarray = field(default=None, repr=False)
    dI: np.ndarray = field(default=None, repr=False)
    flux: np.ndarray = field(default=None, repr=False)

    def __post_init__(self):
        self.E = np.asarray(self.E, dtype=np.float64)
        self.I = np.asarray(self.I, dtype=np.float64)
        self.S = np.asarray(self.S, dtype=np.float64)
        n = len(self.E)
        if len(self.I) != n or len(self.S) != n:
            raise ShapeMismatchError(
                f"E, I, S lengths differ: {len(self.E)}, {len(self.I)}, {len(self.S)}"
            )
        if self.rng is None:
            self.rng = np.random.default_rng(self.seed)
        if self.dE is None:
            self.dE = np.zeros(n)
        if self.dI is None:
            self.dI = np.zeros(n)
        if self.flux is None:
            self.flux = np.zeros(n)

    @property
    def size(self) -> int:
        """Number of nodes."""
        return len(self.E)

    def __len__(self) -> int:
        return len(self.E)

    def snapshot(self) -> Dict[str, np.ndarray]:
        """Copies of the persistent fields, for comparison or display."""
        return {
            "E": self.E.copy(),
            "I": self.I.copy(),
            "S": self.S.copy(),
            "t": self.t,
        }

    def totals(self) -> Dict[str, float]:
        """Field sums and means."""
        n = max(1, self.size)
        return {
            "E_total": float(self.E.sum()),
            "E_mean": float(self.E.sum() / n),
            "I_mean": float(self.I.sum() / n),
            "S_mean": float(np.clip(self.S, 0.0, 1.0).sum() / n),
        }


def _seed_energy(rng: np.random.Generator, n: int) -> np.ndarray:
    # Two summed centred draws: near-homogeneous but never symmetric
    u = rng.random((n, 2))
    return INITIAL_ENERGY_NOISE * (u[:, 0] - 0.5) + INITIAL_ENERGY_NOISE * (u[:, 1] - 0.5)


def create_state(n: int, seed: int = 1) -> SimState:
    """
    Fresh state for n nodes: I = S = 0, E a small seeded perturbation.
    """
    n = int(n)
    if n < 1:
        raise ShapeMismatchError(f"state needs at least one node, got {n}")
    state = SimState(E=np.zeros(n), I=np.zeros(n), S=np.zeros(n), seed=seed)
    reset_state(state, seed)
    return state


def reset_state(state: SimState, seed: Optional[int] = None) -> SimState:
    """
    Reinitialize in place without reallocating.

    Re-seeds the random source, so resetting twice with the same seed
    yields identical states.
    """
    if seed is None:
        seed = state.seed
    state.seed = int(seed)
    state.rng = np.random.default_rng(state.seed)
    state.E[:] = _seed_energy(state.rng, state.size)
    state.I.fill(0.0)
    state.S.fill(0.0)
    state.dE.fill(0.0)
    state.dI.fill(0.0)
    state.flux.fill(0.0)
    state.t = 0.0
    return state
