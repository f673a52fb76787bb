"""
Tests for state, step engine and simulation.
"""

import pytest
import numpy as np
from socfield.config import (
    PARAM_BOUNDS, RunConfig, SimParams, StepRule, Topology, minimal_config,
)
from socfield.core import (
    Graph, SimState, StepEngine, band_forcing, build, build_lattice,
    create_simulation, create_state, reset_state, simulation_from_config, step,
)
from socfield.errors import ShapeMismatchError

RULES = [StepRule.ACCOUNTED, StepRule.RELAXED]


def quiet_params(**overrides) -> SimParams:
    """Parameters with forcing, information and structure switched off."""
    params = SimParams(
        sun_strength=0.0,
        evaporation=0.0,
        info_gain=0.0,
        info_decay=0.0,
        info_cost=0.0,
        sigma_rate=0.0,
        sigma_step=0.0,
        sigma_write_cost=0.0,
        sigma_maint_cost=0.0,
        sigma_relax=0.0,
        collapse_I=2.0,
        jump_prob=0.0,
    )
    return params.update(**overrides)


def loaded_state(graph, seed=1) -> SimState:
    """State with enough energy and information to trigger collapses."""
    state = create_state(graph.N, seed=seed)
    state.E += 1.0
    state.I[::7] = 2.5
    return state


class TestSimState:
    """Tests for state creation and reset."""

    def test_create(self):
        """Test fresh state: I = S = 0, small E perturbation."""
        state = create_state(100, seed=3)
        assert len(state) == 100
        assert np.all(state.I == 0)
        assert np.all(state.S == 0)
        assert np.all(np.abs(state.E) <= 0.02)
        assert np.any(state.E != 0)
        assert state.t == 0.0

    def test_same_seed_same_state(self):
        """Test seeding is deterministic."""
        a = create_state(50, seed=7)
        b = create_state(50, seed=7)
        np.testing.assert_array_equal(a.E, b.E)
        c = create_state(50, seed=8)
        assert not np.array_equal(a.E, c.E)

    def test_reset_idempotent(self):
        """Test resetting twice with the same seed gives identical states."""
        graph = build_lattice(6, 6)
        state = loaded_state(graph, seed=2)
        engine = StepEngine(graph)
        engine.step(state, SimParams())

        reset_state(state, 5)
        first = state.snapshot()
        engine.step(state, SimParams())
        reset_state(state, 5)
        second = state.snapshot()

        for key in ("E", "I", "S"):
            np.testing.assert_array_equal(first[key], second[key])
        assert second["t"] == 0.0
        np.testing.assert_array_equal(state.E, create_state(36, seed=5).E)

    def test_reset_keeps_buffers(self):
        """Test reset works in place."""
        state = create_state(10)
        E = state.E
        reset_state(state, 4)
        assert state.E is E

    def test_mismatched_arrays(self):
        """Test field length mismatch."""
        with pytest.raises(ShapeMismatchError):
            SimState(E=np.zeros(3), I=np.zeros(3), S=np.zeros(4))

    def test_empty_state(self):
        """Test zero nodes rejected."""
        with pytest.raises(ShapeMismatchError):
            create_state(0)


class TestForcing:
    """Tests for the moving band."""

    def test_band_peak(self):
        """Test full strength at the band centre, Gaussian falloff."""
        params = SimParams(sun_strength=0.2, sun_width=0.31, sun_speed=0.0)
        lats = np.array([0.0, 0.31])
        lons = np.array([-np.pi / 2, -np.pi / 2])
        inject = band_forcing(params, lats, lons, t=0.0)
        assert inject[0] == pytest.approx(0.2)
        assert inject[1] == pytest.approx(0.2 * np.exp(-0.5))

    def test_longitude_modulation(self):
        """Test longitude factor spans 0.3 .. 1.0."""
        params = SimParams(sun_strength=1.0, sun_speed=0.0)
        lons = np.array([-np.pi / 2, np.pi / 2])
        inject = band_forcing(params, np.zeros(2), lons, t=0.0)
        assert inject[0] == pytest.approx(1.0)
        assert inject[1] == pytest.approx(0.3)

    def test_periodic_latitude(self):
        """Test the band distance wraps when latitude is periodic."""
        params = SimParams(sun_speed=0.0)
        lats = np.array([np.pi / 2 - 0.1, -np.pi / 2 - 0.1])
        lons = np.zeros(2)
        wrapped = band_forcing(params, lats, lons, t=0.0, lat_period=np.pi)
        assert wrapped[0] == pytest.approx(wrapped[1])
        plain = band_forcing(params, lats, lons, t=0.0)
        assert plain[0] != pytest.approx(plain[1])

    def test_lattice_band_width_in_rows(self):
        """Test sun_width is a fraction of the lattice height."""
        graph = build_lattice(130, 180)
        params = SimParams(sun_strength=1.0, sun_width=0.31)
        inject = band_forcing(params, graph.lats, graph.lons, 0.0,
                              graph.lat_period, graph.band_amplitude)
        column = inject.reshape(130, 180)[:, 0]
        assert np.argmax(column) == 65
        # Half maximum at |dy| <= 0.31 * 130 * sqrt(2 ln 2), about 47.5 rows
        assert np.count_nonzero(column >= 0.5 * column.max()) == 95

    def test_lattice_band_swing(self):
        """Test the band centre swings by 0.35 H about the middle row."""
        graph = build_lattice(100, 40)
        params = SimParams(sun_strength=1.0, sun_speed=1.0, sun_lat_bias=1.0)
        inject = band_forcing(params, graph.lats, graph.lons, np.pi / 2,
                              graph.lat_period, graph.band_amplitude)
        assert np.argmax(inject.reshape(100, 40)[:, 0]) == 85

    def test_nonnegative(self):
        """Test forcing never removes energy."""
        graph = build(Topology.ICOSPHERE, 2)
        inject = band_forcing(SimParams(), graph.lats, graph.lons, t=123.0)
        assert np.all(inject >= 0)


class TestStepEngine:
    """Tests for the five-phase update."""

    @pytest.mark.parametrize("rule", RULES)
    def test_pure_diffusion_conserves_energy(self, rule):
        """Test total E is conserved with forcing, loss and collapse off."""
        graph = build_lattice(10, 12)
        state = create_state(graph.N, seed=4)
        state.E[5] = 3.0
        total = state.E.sum()
        engine = StepEngine(graph, rule=rule)
        params = quiet_params(diffusion=0.1)

        for _ in range(50):
            result = engine.step(state, params)
            assert result.drive == 0.0
            assert result.dissipation == pytest.approx(0.0, abs=1e-15)

        assert state.E.sum() == pytest.approx(total, abs=1e-10)
        assert state.E.max() < 3.0

    @pytest.mark.parametrize("rule", RULES)
    def test_energy_balance(self, rule):
        """Test E change equals drive minus dissipation with dt = 1."""
        graph = build(Topology.ICOSPHERE, 2)
        state = loaded_state(graph)
        params = SimParams.from_phase(0.7, rule, dt=1.0)
        engine = StepEngine(graph, rule=rule)

        before = state.E.sum()
        balance = 0.0
        collapses = 0
        for _ in range(20):
            result = engine.step(state, params)
            balance += result.drive - result.dissipation
            collapses += result.collapse_count
        assert collapses > 0
        assert state.E.sum() - before == pytest.approx(balance, rel=1e-9, abs=1e-9)

    def test_structure_refund_in_balance(self):
        """Test relaxing structure returns energy as negative dissipation."""
        graph = build_lattice(6, 6)
        state = create_state(graph.N)
        state.S[:] = 1.0
        before = state.E.sum()
        params = quiet_params(diffusion=0.0, sigma_write_cost=1.0, sigma_relax=0.01)

        result = step(state, params, graph)

        refund = graph.N * 0.01 * 1.0 * 0.6
        assert result.dissipation == pytest.approx(-refund)
        assert state.E.sum() - before == pytest.approx(result.drive - result.dissipation)
        np.testing.assert_allclose(state.S, 0.99)

    @pytest.mark.parametrize("rule", RULES)
    def test_collapse_equal_shares(self, rule):
        """Test a lone collapse splits its release equally when jitter is 0."""
        graph = build_lattice(8, 8)
        state = create_state(graph.N)
        state.E[:] = 0.0
        i = 27
        state.E[i] = 10.0
        state.I[i] = 2.0
        params = quiet_params(diffusion=0.0, collapse_I=1.5, collapse_fraction=0.5, jitter=0.0)

        result = step(state, params, graph, rule=rule)

        assert result.collapse_count == 1
        assert result.release_sum == pytest.approx(1.0)
        assert state.E[i] == pytest.approx(9.0)
        for j in (26, 28, 19, 35):
            assert state.E[j] == pytest.approx(0.25)
        assert state.E.sum() == pytest.approx(10.0)
        if rule is StepRule.ACCOUNTED:
            assert state.I[i] == pytest.approx(1.0)
        else:
            assert state.I[i] == pytest.approx(0.5)

    def test_collapse_with_jitter(self):
        """Test jittered shares stay positive and sum to the release."""
        graph = build_lattice(8, 8)
        state = create_state(graph.N)
        state.E[:] = 0.0
        state.E[27] = 10.0
        state.I[27] = 2.0
        params = quiet_params(diffusion=0.0, collapse_I=1.5, collapse_fraction=0.5, jitter=0.594)

        step(state, params, graph)

        shares = state.E[[26, 28, 19, 35]]
        assert np.all(shares > 0)
        assert shares.sum() == pytest.approx(1.0)
        assert len(np.unique(np.round(shares, 12))) > 1

    @pytest.mark.parametrize("use_numba", [True, False])
    def test_collapse_jump(self, use_numba):
        """Test a jump sends a further half release to a random node."""
        graph = build_lattice(8, 8)
        state = create_state(graph.N)
        state.E[:] = 0.0
        state.E[27] = 10.0
        state.I[27] = 2.0
        params = quiet_params(diffusion=0.0, collapse_I=1.5, collapse_fraction=0.5,
                              jitter=0.0, jump_prob=1.0)

        # One candidate of degree 4: four jitter draws, jump test, jump target
        target = int(np.random.default_rng(11).random(6)[5] * graph.N)
        result = step(state, params, graph, rng=np.random.default_rng(11), use_numba=use_numba)

        expected = np.zeros(graph.N)
        expected[27] = 10.0 - 1.0 - 0.5
        expected[[26, 28, 19, 35]] += 0.25
        expected[target] += 0.5
        np.testing.assert_allclose(state.E, expected, atol=1e-12)
        assert result.collapse_count == 1
        assert result.release_sum == pytest.approx(1.5)
        assert state.E.sum() == pytest.approx(10.0)

    def test_jump_limited_by_remaining_energy(self):
        """Test a jump never drives the source below zero."""
        graph = build_lattice(8, 8)
        state = create_state(graph.N)
        state.E[:] = 0.0
        state.E[27] = 1.0
        state.I[27] = 2.0
        params = quiet_params(diffusion=0.0, collapse_I=1.5, collapse_fraction=0.5,
                              jitter=0.0, jump_prob=1.0)

        result = step(state, params, graph)

        assert state.E[27] == pytest.approx(0.0)
        assert state.E[[26, 28, 19, 35]].sum() == pytest.approx(1.0)
        assert result.release_sum == pytest.approx(1.0)
        assert state.E.sum() == pytest.approx(1.0)

    def test_release_capped_by_energy(self):
        """Test a node with no energy does not collapse."""
        graph = build_lattice(6, 6)
        state = create_state(graph.N)
        state.E[:] = 0.0
        state.E[3] = -1.0
        state.I[3] = 2.0
        params = quiet_params(diffusion=0.0, collapse_I=1.5)

        result = step(state, params, graph)

        assert result.collapse_count == 0
        assert state.E[3] == pytest.approx(-1.0)
        assert state.I[3] == pytest.approx(2.0)

    def test_isolated_node_keeps_energy(self):
        """Test a node without neighbours never sheds its release."""
        graph = Graph(
            topology=Topology.PLANE,
            positions=np.zeros((1, 3)),
            adjacency=[[]],
            lats=np.zeros(1),
            lons=np.zeros(1),
        )
        state = create_state(1)
        state.E[0] = 5.0
        state.I[0] = 2.0
        params = quiet_params(collapse_I=1.5)

        result = step(state, params, graph, use_numba=False)

        assert result.collapse_count == 0
        assert state.E[0] == pytest.approx(5.0)

    @pytest.mark.parametrize("rule", RULES)
    def test_clamping_random_params(self, rule):
        """Test S in [0, 1] and I >= 0 for parameters drawn from their bounds."""
        graphs = [build_lattice(8, 8), build(Topology.ICOSPHERE, 1)]
        rng = np.random.default_rng(11)
        for trial in range(10):
            params = SimParams(**{
                name: float(rng.uniform(lo, hi)) for name, (lo, hi) in PARAM_BOUNDS.items()
            })
            for graph in graphs:
                state = create_state(graph.N, seed=trial)
                state.I[:] = rng.uniform(0.0, 2.5, graph.N)
                state.S[:] = rng.random(graph.N)
                engine = StepEngine(graph, rule=rule)
                for _ in range(3):
                    engine.step(state, params)
                    assert np.all(state.S >= 0.0)
                    assert np.all(state.S <= 1.0)
                    assert np.all(state.I >= 0.0)

    @pytest.mark.parametrize("rule", RULES)
    def test_deterministic(self, rule):
        """Test identical seeds give bit-identical trajectories."""
        graph = build(Topology.HEXSPHERE, 1)
        params = SimParams.from_phase(0.8, rule)
        engine = StepEngine(graph, rule=rule)
        a = loaded_state(graph, seed=9)
        b = loaded_state(graph, seed=9)
        for _ in range(15):
            ra = engine.step(a, params)
            rb = engine.step(b, params)
            assert ra == rb
        np.testing.assert_array_equal(a.E, b.E)
        np.testing.assert_array_equal(a.I, b.I)
        np.testing.assert_array_equal(a.S, b.S)

    @pytest.mark.parametrize("rule", RULES)
    def test_numba_matches_numpy(self, rule):
        """Test the compiled collapse kernel agrees with the plain path."""
        graph = build_lattice(16, 16)
        params = SimParams.from_phase(0.7, rule)
        fast = loaded_state(graph, seed=3)
        slow = loaded_state(graph, seed=3)
        fast_engine = StepEngine(graph, rule=rule, use_numba=True)
        slow_engine = StepEngine(graph, rule=rule, use_numba=False)

        collapses = 0
        for _ in range(20):
            rf = fast_engine.step(fast, params)
            rs = slow_engine.step(slow, params)
            assert rf.collapse_count == rs.collapse_count
            collapses += rf.collapse_count
        assert collapses > 0
        np.testing.assert_allclose(fast.E, slow.E, rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(fast.I, slow.I, rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(fast.S, slow.S, rtol=1e-10, atol=1e-12)

    def test_explicit_rng(self):
        """Test an explicit rng replaces the state's own."""
        graph = build_lattice(8, 8)
        params = SimParams()
        a = loaded_state(graph)
        b = loaded_state(graph)
        step(a, params, graph, rng=np.random.default_rng(9))
        step(b, params, graph, rng=np.random.default_rng(9))
        np.testing.assert_array_equal(a.E, b.E)

        untouched = loaded_state(graph)
        assert a.rng.random() == untouched.rng.random()

    def test_time_advances(self):
        """Test state.t moves by dt, from state.t or an explicit t."""
        graph = build_lattice(4, 4)
        state = create_state(graph.N)
        params = SimParams(dt=0.5)
        step(state, params, graph)
        assert state.t == pytest.approx(0.5)
        step(state, params, graph, t=10.0)
        assert state.t == pytest.approx(10.5)

    def test_length_mismatch(self):
        """Test state/graph size mismatch rejected."""
        graph = build_lattice(4, 4)
        state = create_state(graph.N + 1)
        with pytest.raises(ShapeMismatchError):
            step(state, SimParams(), graph)

    def test_coordinate_mismatch(self):
        """Test explicit coordinates must match the graph."""
        graph = build_lattice(4, 4)
        with pytest.raises(ShapeMismatchError):
            StepEngine(graph, lats=np.zeros(3))

    def test_explicit_coordinates(self):
        """Test explicit lats/lons drive the forcing."""
        graph = build_lattice(4, 4)
        params = quiet_params(sun_strength=0.1, sun_speed=0.0)
        far = np.full(graph.N, 1.5)
        state = create_state(graph.N)
        near = step(state, params, graph, lats=np.zeros(graph.N), lons=np.full(graph.N, -np.pi / 2))
        state = create_state(graph.N)
        away = step(state, params, graph, lats=far, lons=np.zeros(graph.N))
        assert near.drive == pytest.approx(0.1 * graph.N)
        assert away.drive < near.drive


class TestSimulation:
    """Tests for the Simulation driver."""

    def test_run_and_history(self):
        """Test run() records one entry per step."""
        sim = create_simulation(Topology.TORUS, height=12, width=12, phase=0.7)
        calls = []
        results = sim.run(10, callback=lambda s, r: calls.append(r))
        assert len(results) == 10
        assert len(calls) == 10
        assert len(sim.history) == 10
        assert sim.t == pytest.approx(10 * sim.params.dt)
        assert len(sim.history.column('E_mean')) == 10

    def test_reset(self):
        """Test reset clears time and history."""
        sim = create_simulation(Topology.ICOSPHERE, resolution=1)
        sim.run(5)
        sim.reset(seed=2)
        assert sim.t == 0.0
        assert len(sim.history) == 0
        assert np.all(sim.I == 0)

    def test_preset_and_phase(self):
        """Test parameter sources."""
        sim = create_simulation(Topology.TORUS, height=4, width=4, preset="a")
        assert sim.params.diffusion == pytest.approx(0.14)
        sim = create_simulation(Topology.TORUS, height=4, width=4, phase=0.0)
        assert sim.params.diffusion == pytest.approx(0.04)

    def test_overrides_win(self):
        """Test direct assignment survives the phase map and the preset."""
        sim = create_simulation(Topology.TORUS, height=4, width=4, phase=0.0,
                                overrides={"diffusion": 0.2})
        assert sim.params.diffusion == pytest.approx(0.2)
        sim = create_simulation(Topology.TORUS, height=4, width=4, phase=0.0,
                                overrides={"diffusion": 0.053})
        assert sim.params.diffusion == pytest.approx(0.053)

    def test_matches_run_config(self):
        """Test both entry points derive parameters in the same order."""
        sim = create_simulation(Topology.TORUS, height=4, width=4, phase=0.0, preset="A",
                                overrides={"jitter": 0.3})
        config = RunConfig(phase=0.0, preset="A", overrides={"jitter": 0.3})
        assert sim.params == config.resolve_params()
        assert sim.params.diffusion == pytest.approx(0.14)
        assert sim.params.sigma_gain == pytest.approx(0.6)

    def test_rule_on_sphere(self):
        """Test the relaxed rule runs on a lattice-free topology."""
        sim = create_simulation(Topology.FIBONACCI, count=200, rule=StepRule.RELAXED)
        sim.run(5)
        assert sim.rule is StepRule.RELAXED
        assert np.all(np.isfinite(sim.E))

    def test_from_config(self):
        """Test building from a RunConfig."""
        sim = simulation_from_config(minimal_config())
        assert sim.N == 256
        assert not sim.record
        sim.run(3)
        assert len(sim.history) == 0

    def test_summary(self):
        """Test summary mentions topology and size."""
        sim = create_simulation(Topology.HEXSPHERE, resolution=0)
        text = sim.summary()
        assert "hexsphere" in text
        assert "N=20" in text
