"""
Step engine: one discrete-time update of the field on any graph.

Five ordered phases per step:

1. Forcing + evaporation: a Gaussian latitude band whose centre moves
   as a sinusoid of t, modulated in longitude, injects energy; energy
   evaporates in proportion to max(0, E).
2. Diffusive transport over every undirected edge, once. Flow is
   conservative; |E_j - E_i| accumulates into the flux of both ends.
3. Information accrual from degree-normalized flux above a threshold,
   paid for in energy; information decays.
4. Commit E and I, then move structure S through a hysteresis band.
5. Collapse: nodes with I >= collapse_I release energy to their
   neighbours with random jitter; rarely a further half release jumps
   to a uniformly random node.

Two rules (`StepRule`) share this skeleton:

ACCOUNTED
    conductance sigma_base + sigma_gain * Si * Sj; information cost
    limited by the energy the node can afford; structure writes,
    maintenance and relaxation are paid from / refunded to E; a
    collapse lowers I by release / info_energy_cost; neighbour base
    weight 0.8 + 0.4 (1 - Sj) with exponential jitter.
RELAXED
    conductance from the mean per-node slowdown 1 - S (1 - sigma_slow);
    information cost charged unconditionally plus a maintenance drain
    info_cost * I, both softened by flux support; structure moves by a
    fixed step with no energy accounting; a collapse multiplies I by
    collapse_remainder; base weight 0.6 + 0.8 Sj with linear jitter.

The collapse phase is order dependent. Nodes are visited in ascending
index order, neighbours in construction order. Random numbers are
drawn up front, one block of deg + 2 uniforms per candidate node
(deg jitter draws, one jump test, one jump target), so the position
in the random stream does not depend on energy levels.
"""

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Dict, Optional
import math
import numpy as np
from numba import jit

from ..config import SimParams, StepRule
from ..errors import ShapeMismatchError
from .graph import Graph
from .state import SimState

# Fraction of the write cost refunded when structure relaxes
STRUCTURE_REFUND = 0.6
# Longitude wobble runs at this fraction of the band speed
WOBBLE_RATE = 0.73
# Floor on a single neighbour weight during redistribution
MIN_WEIGHT = 1e-3


@dataclass
class StepResult:
    """Aggregates of one step, enough for diagnostics without a rescan."""
    drive: float = 0.0
    dissipation: float = 0.0
    collapse_count: int = 0
    release_sum: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def band_forcing(
    params: SimParams,
    lats: np.ndarray,
    lons: np.ndarray,
    t: float,
    lat_period: Optional[float] = None,
    amplitude: Optional[float] = None,
) -> np.ndarray:
    """
    Energy injected per node at time t.

    strength * exp(-0.5 (dlat / width)^2) * (0.65 + 0.35 sin(2 pi (u + wobble)))

    where dlat is the distance to the band centre (wrapped when the
    latitude is periodic) and u = (lon + pi) / 2 pi. The centre swings
    as sin(t * speed) * amplitude; `amplitude` defaults to the sphere
    swing 0.6 + 0.35 * sun_lat_bias radians. Lattices measure latitude
    in units of the grid height and pass their own amplitude.
    """
    if amplitude is None:
        amplitude = 0.6 + 0.35 * params.sun_lat_bias
    center = math.sin(t * params.sun_speed) * amplitude
    wobble = math.sin(t * params.sun_speed * WOBBLE_RATE) * params.sun_wobble

    dlat = lats - center
    if lat_period:
        dlat = np.mod(dlat + 0.5 * lat_period, lat_period) - 0.5 * lat_period
    dlat = dlat / max(1e-6, params.sun_width)
    lat_factor = np.exp(-0.5 * dlat * dlat)
    lon_factor = 0.65 + 0.35 * np.sin(2 * np.pi * ((lons + np.pi) / (2 * np.pi) + wobble))
    return params.sun_strength * lat_factor * lon_factor


def _collapse(
    E, I, S, indptr, indices, candidates, offsets, uniforms,
    collapse_I, collapse_fraction, info_energy_cost, sigma_off,
    collapse_remainder, jitter, jump_prob, accounted, max_degree,
):
    """
    Sequential avalanche redistribution; mutates E, I, S in place.

    Returns (collapse_count, release_sum).
    """
    n = E.shape[0]
    weights = np.empty(max(1, max_degree))
    count = 0
    total = 0.0

    for c in range(candidates.shape[0]):
        i = candidates[c]
        start = indptr[i]
        deg = indptr[i + 1] - start
        if deg == 0 or I[i] < collapse_I:
            continue

        max_release = collapse_fraction * I[i] * info_energy_cost
        release = min(max(0.0, E[i]), max_release)
        if release <= 0.0:
            continue
        count += 1
        total += release

        if accounted:
            I[i] = max(0.0, I[i] - release / info_energy_cost)
        else:
            I[i] = max(0.0, I[i] * collapse_remainder)
        if I[i] < sigma_off:
            S[i] *= 0.5

        block = offsets[c]
        wsum = 0.0
        for k in range(deg):
            sj = min(max(S[indices[start + k]], 0.0), 1.0)
            u = uniforms[block + k] - 0.5
            if accounted:
                w = (0.8 + 0.4 * (1.0 - sj)) * math.exp(jitter * u)
            else:
                w = (0.6 + 0.8 * sj) * (1.0 + jitter * u)
            w = max(MIN_WEIGHT, w)
            weights[k] = w
            wsum += w

        if wsum > 0.0:
            norm = release / wsum
            for k in range(deg):
                E[indices[start + k]] += weights[k] * norm
        else:
            share = release / deg
            for k in range(deg):
                E[indices[start + k]] += share
        E[i] -= release

        # Long-range jump: an extra half release from whatever E[i] has left
        if uniforms[block + deg] < jump_prob:
            target = min(int(uniforms[block + deg + 1] * n), n - 1)
            jump = min(0.5 * release, max(0.0, E[i]))
            if jump > 0.0:
                E[i] -= jump
                E[target] += jump
                total += jump

    return count, total


_collapse_numba = jit(nopython=True, cache=True)(_collapse)


class StepEngine:
    """
    Update rule bound to one graph.

    The graph is read-only; the engine keeps no per-run state, so one
    engine may step any number of independent SimState instances.

    Parameters:
        graph: Adjacency graph (positions, lats/lons, CSR arrays)
        rule: StepRule.ACCOUNTED (default) or StepRule.RELAXED
        use_numba: Run the collapse loop through numba

    Example:
        engine = StepEngine(build(Topology.TORUS, height=64, width=64))
        state = create_state(engine.graph.N, seed=1)
        result = engine.step(state, SimParams())
    """

    def __init__(
        self,
        graph: Graph,
        rule: StepRule = StepRule.ACCOUNTED,
        use_numba: bool = True,
        lats: Optional[np.ndarray] = None,
        lons: Optional[np.ndarray] = None,
    ):
        self.graph = graph
        self.rule = StepRule(rule)
        self.use_numba = use_numba

        self.lats = graph.lats if lats is None else np.asarray(lats, dtype=np.float64)
        self.lons = graph.lons if lons is None else np.asarray(lons, dtype=np.float64)
        if len(self.lats) != graph.N or len(self.lons) != graph.N:
            raise ShapeMismatchError(
                f"lats/lons have {len(self.lats)}/{len(self.lons)} entries, graph has {graph.N}"
            )

        self._edge_i = graph.edges[:, 0]
        self._edge_j = graph.edges[:, 1]
        self._inv_degree = 1.0 / np.maximum(graph.degrees, 1)
        self._max_degree = int(graph.degrees.max()) if graph.N else 0

    def check_state(self, state: SimState) -> None:
        """Reject a state whose arrays do not match the graph."""
        n = self.graph.N
        for name in ("E", "I", "S", "dE", "dI", "flux"):
            size = len(getattr(state, name))
            if size != n:
                raise ShapeMismatchError(f"state.{name} has {size} entries, graph has {n}")

    def step(
        self,
        state: SimState,
        params: SimParams,
        t: Optional[float] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> StepResult:
        """
        Advance `state` by one step of length params.dt.

        Args:
            state: Mutated in place; state.t becomes t + dt
            params: Knobs for this step
            t: Simulation time (defaults to state.t); should not decrease
            rng: Random source for the collapse phase (defaults to state.rng)

        Returns:
            StepResult(drive, dissipation, collapse_count, release_sum)
        """
        self.check_state(state)
        if t is None:
            t = state.t
        if rng is None:
            rng = state.rng

        result = StepResult()
        state.dE.fill(0.0)
        state.dI.fill(0.0)
        state.flux.fill(0.0)

        self._force(state, params, t, result)
        self._diffuse(state, params)
        self._accrue(state, params, result)
        self._commit(state, params)
        if self.rule is StepRule.ACCOUNTED:
            self._structure_accounted(state, params, result)
        else:
            self._structure_relaxed(state, params)
        self._collapse(state, params, rng, result)

        state.t = t + params.dt
        return result

    def _force(self, state: SimState, params: SimParams, t: float, result: StepResult) -> None:
        inject = band_forcing(params, self.lats, self.lons, t,
                              self.graph.lat_period, self.graph.band_amplitude)
        evap = params.evaporation * np.maximum(0.0, state.E)
        state.dE += inject - evap
        result.drive += float(inject.sum())
        result.dissipation += float(evap.sum())

    def _diffuse(self, state: SimState, params: SimParams) -> None:
        n = self.graph.N
        i, j = self._edge_i, self._edge_j
        E = state.E
        S = np.clip(state.S, 0.0, 1.0)

        d = E[j] - E[i]
        if self.rule is StepRule.ACCOUNTED:
            conduct = params.sigma_base + params.sigma_gain * S[i] * S[j]
        else:
            slow = 1.0 - S * (1.0 - params.sigma_slow)
            conduct = 0.5 * (slow[i] + slow[j])
        flow = params.diffusion * conduct * d

        state.dE += np.bincount(i, weights=flow, minlength=n)
        state.dE -= np.bincount(j, weights=flow, minlength=n)
        ad = np.abs(d)
        state.flux += np.bincount(i, weights=ad, minlength=n)
        state.flux += np.bincount(j, weights=ad, minlength=n)

    def _accrue(self, state: SimState, params: SimParams, result: StepResult) -> None:
        cost = params.info_energy_cost
        flux = state.flux * self._inv_degree
        above = np.maximum(0.0, flux - params.info_threshold)
        gain = params.info_gain * np.power(above, params.info_power)

        if self.rule is StepRule.ACCOUNTED:
            available = np.maximum(0.0, state.E + state.dE * params.dt)
            charge = gain * cost
            afford = np.ones_like(gain)
            paying = charge > 0
            afford[paying] = np.minimum(
                1.0, available[paying] / (charge[paying] * params.dt + 1e-12)
            )
            applied = gain * afford
            state.dI += applied
            state.dE -= applied * cost
            result.dissipation += float((applied * cost).sum())

            # Decay hands the energy it cost back
            decay = params.info_decay * state.I
            state.dI -= decay
            state.dE += decay * cost
            result.dissipation -= float((decay * cost).sum())
        else:
            state.dI += gain
            state.dE -= gain * cost
            result.dissipation += float((gain * cost).sum())

            support = np.clip(state.S, 0.0, 1.0) * np.clip(
                flux / (params.info_threshold + 1e-6), 0.0, 1.0
            )
            relief = 1.0 - 0.6 * support
            state.dI -= params.info_decay * relief * state.I
            drain = params.info_cost * relief * state.I
            state.dE -= drain
            result.dissipation += float(drain.sum())

    def _commit(self, state: SimState, params: SimParams) -> None:
        state.E += state.dE * params.dt
        np.maximum(state.I + state.dI * params.dt, 0.0, out=state.I)

    def _structure_accounted(self, state: SimState, params: SimParams, result: StepResult) -> None:
        E, I = state.E, state.I
        s0 = state.S

        ds = np.where(
            I >= params.sigma_on,
            params.sigma_rate * (I - params.sigma_on),
            np.where(I <= params.sigma_off, params.sigma_rate * (I - params.sigma_off), 0.0),
        )
        s1 = np.clip(s0 + ds * params.dt, 0.0, 1.0)
        wrote = np.maximum(0.0, s1 - s0)

        # Writes are paid from local energy; a short payment writes less
        cost_w = wrote * params.sigma_write_cost
        pay_w = np.minimum(np.maximum(0.0, E), cost_w)
        E -= pay_w
        result.dissipation += float(pay_w.sum())
        short = pay_w < cost_w
        s1[short] = s0[short] + wrote[short] * (pay_w[short] / (cost_w[short] + 1e-12))

        maint = params.sigma_maint_cost * s1
        pay_m = np.minimum(np.maximum(0.0, E), maint)
        E -= pay_m
        result.dissipation += float(pay_m.sum())

        s2 = np.clip(s1 - params.sigma_relax * s1, 0.0, 1.0)
        refund = (s1 - s2) * params.sigma_write_cost * STRUCTURE_REFUND
        E += refund
        result.dissipation -= float(refund.sum())
        state.S[:] = s2

    def _structure_relaxed(self, state: SimState, params: SimParams) -> None:
        I, S = state.I, state.S
        step = params.sigma_step
        S[:] = np.where(
            I >= params.sigma_on,
            S + step,
            np.where(I <= params.sigma_off, S - step, S),
        )
        np.clip(S, 0.0, 1.0, out=S)

    def candidates(self, state: SimState, params: SimParams) -> np.ndarray:
        """Nodes at or above the collapse threshold, ascending."""
        return np.flatnonzero(state.I >= params.collapse_I)

    def _collapse(
        self,
        state: SimState,
        params: SimParams,
        rng: np.random.Generator,
        result: StepResult,
    ) -> None:
        candidates = self.candidates(state, params)
        if candidates.size == 0:
            return

        blocks = self.graph.degrees[candidates] + 2
        offsets = np.zeros(len(candidates), dtype=np.int64)
        np.cumsum(blocks[:-1], out=offsets[1:])
        uniforms = rng.random(int(blocks.sum()))

        kernel = _collapse_numba if self.use_numba else _collapse
        count, total = kernel(
            state.E, state.I, state.S,
            self.graph.indptr, self.graph.indices,
            candidates.astype(np.int64), offsets, uniforms,
            float(params.collapse_I), float(params.collapse_fraction),
            float(params.info_energy_cost), float(params.sigma_off),
            float(params.collapse_remainder), float(params.jitter),
            float(params.jump_prob),
            self.rule is StepRule.ACCOUNTED, self._max_degree,
        )
        result.collapse_count += int(count)
        result.release_sum += float(total)


def step(
    state: SimState,
    params: SimParams,
    graph: Graph,
    t: Optional[float] = None,
    rng: Optional[np.random.Generator] = None,
    *,
    rule: StepRule = StepRule.ACCOUNTED,
    lats: Optional[np.ndarray] = None,
    lons: Optional[np.ndarray] = None,
    use_numba: bool = True,
) -> StepResult:
    """
    step(state, params, graph, t, rng) -> StepResult

    One-shot form of StepEngine.step. Prefer a StepEngine when
    stepping repeatedly.
    """
    engine = StepEngine(graph, rule=rule, use_numba=use_numba, lats=lats, lons=lons)
    return engine.step(state, params, t=t, rng=rng)
