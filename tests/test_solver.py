import pytest

from hydroline.hydraulics import CLOSED_VALVE_K, G
from hydroline.pipeline.solver import NetworkResolver, resolve_network
from hydroline.types import (
    ElbowSpec,
    ElementType,
    NodeState,
    PipeSpec,
    PumpSpec,
    TransitionSpec,
    ValveSpec,
)


class TestPressurePropagation:
    def test_pump_adds_head(self, simple_fluid):
        solution = resolve_network(
            [PumpSpec(id="pump", head_m=10.0)], 0.0005, simple_fluid, 1.0
        )
        pump = solution.nodes[0]
        assert pump.p_in == 0.0
        assert pump.p_out == pytest.approx(1000.0 * G * 10.0)
        assert pump.power == pytest.approx(1000.0 * G * 0.0005 * 10.0 / 0.75)

    def test_pump_rise_scales_with_ramp(self, simple_fluid):
        solution = resolve_network(
            [PumpSpec(id="pump", head_m=10.0)], 0.0, simple_fluid, 0.5
        )
        assert solution.nodes[0].p_out == pytest.approx(1000.0 * G * 5.0)

    def test_outlet_of_each_node_feeds_the_next(self, water, pump_pipe_valve_chain):
        solution = resolve_network(pump_pipe_valve_chain, 0.0005, water, 1.0)
        for upstream, downstream in zip(solution.nodes, solution.nodes[1:]):
            assert downstream.p_in == upstream.p_out
        assert solution.outlet_pressure == solution.nodes[-1].p_out
        assert solution.q_effective == 0.0005
        assert not solution.blocked

    def test_pressure_decreases_along_pipe(self, water, pump_pipe_valve_chain):
        solution = resolve_network(pump_pipe_valve_chain, 0.0005, water, 1.0)
        pipe = solution.nodes[1]
        assert pipe.p_out < pipe.p_in
        assert pipe.dp_total == pytest.approx(pipe.dp_major + pipe.dp_minor)
        assert pipe.f is not None and pipe.f_converged

    def test_inlet_pressure(self, water):
        solution = resolve_network(
            [PipeSpec(id="pipe", length_m=0.0)], 0.0, water, 0.0, inlet_pressure=1234.0
        )
        assert solution.nodes[0].p_in == 1234.0
        assert solution.nodes[0].p_out == pytest.approx(1234.0)

    def test_elevation_is_reported_separately(self, simple_fluid):
        solution = resolve_network(
            [PipeSpec(id="riser", length_m=0.0, dz_m=3.0)], 0.0005, simple_fluid, 1.0
        )
        riser = solution.nodes[0]
        assert riser.dp_elevation == pytest.approx(1000.0 * G * 3.0)
        assert riser.dp_total == 0.0
        assert riser.p_out == pytest.approx(-1000.0 * G * 3.0)

    def test_negative_pressures_are_not_clamped(self, water):
        solution = resolve_network(
            [PipeSpec(id="pipe", diameter_mm=10.0, length_m=50.0)], 0.0005, water, 1.0
        )
        assert solution.outlet_pressure < 0


class TestValves:
    def test_closed_valve_blocks_downstream(self, water):
        chain = [
            PumpSpec(id="pump"),
            PipeSpec(id="pipe-1"),
            ValveSpec(id="valve", opening=0.0),
            PipeSpec(id="pipe-2"),
            ElbowSpec(id="elbow"),
        ]
        solution = resolve_network(chain, 0.0005, water, 1.0)
        valve = solution.nodes[2]

        assert solution.blocked
        assert solution.q_effective == 0.0
        assert valve.node_state is NodeState.BLOCKED
        assert valve.k == CLOSED_VALVE_K
        assert valve.v == 0.0
        assert valve.p_out == valve.p_in
        for node in solution.nodes[3:]:
            assert node.node_state is NodeState.DRY
            assert node.p_in == node.p_out == valve.p_out

    def test_valve_loss_grows_as_it_closes(self, water):
        def dp_at(opening):
            chain = [ValveSpec(id="valve", subtype="globe", opening=opening, diameter_mm=53.1)]
            return resolve_network(chain, 0.0005, water, 1.0).nodes[0].dp_minor

        assert dp_at(0.25) > dp_at(0.5) > dp_at(1.0) > 0

    def test_prv_caps_outlet_pressure(self, water):
        chain = [
            PumpSpec(id="pump", head_m=30.0),
            ValveSpec(id="prv", subtype="prv", set_pressure=100000.0),
        ]
        solution = resolve_network(chain, 0.0005, water, 1.0)
        prv = solution.nodes[1]
        assert prv.p_in > 100000.0
        assert prv.p_out == pytest.approx(100000.0)
        assert prv.dp_minor == pytest.approx(prv.p_in - 100000.0)

    def test_prv_below_set_pressure_passes_through(self, water):
        chain = [
            PumpSpec(id="pump", head_m=5.0),
            ValveSpec(id="prv", subtype="prv", set_pressure=500000.0),
        ]
        solution = resolve_network(chain, 0.0005, water, 1.0)
        assert solution.nodes[1].p_out == solution.nodes[1].p_in


class TestTransitions:
    def test_reducer_speeds_up_flow(self, water):
        chain = [
            PipeSpec(id="pipe", diameter_mm=53.1, length_m=1.0),
            TransitionSpec(id="reducer", subtype="reducer", d_out_mm=26.6),
        ]
        solution = resolve_network(chain, 0.0005, water, 1.0)
        pipe, reducer = solution.nodes
        assert reducer.v > pipe.v
        assert reducer.dp_minor > 0
        assert reducer.p_out < reducer.p_in

    def test_expander_recovers_pressure(self, water):
        chain = [
            PipeSpec(id="pipe", diameter_mm=26.6, length_m=1.0),
            TransitionSpec(
                id="expander", subtype="expander", d_out_mm=53.1, length_m=0.0
            ),
        ]
        solution = resolve_network(chain, 0.001, water, 1.0)
        expander = solution.nodes[1]
        assert expander.dp_minor > 0
        assert expander.p_out > expander.p_in

    def test_explicit_inlet_diameter(self, water):
        chain = [TransitionSpec(id="t", d_in_mm=53.1, d_out_mm=53.1, length_m=0.0)]
        node = resolve_network(chain, 0.0005, water, 1.0).nodes[0]
        assert node.dp_minor == 0.0
        assert node.p_out == pytest.approx(node.p_in)


class TestElbowAndDiameters:
    def test_elbow_inherits_upstream_diameter(self, water):
        chain = [PipeSpec(id="pipe", diameter_mm=26.6, length_m=1.0), ElbowSpec(id="elbow")]
        pipe, elbow = resolve_network(chain, 0.0005, water, 1.0).nodes
        assert elbow.v == pytest.approx(pipe.v)
        assert elbow.k == 0.9
        assert elbow.element_type is ElementType.ELBOW

    def test_resolver_is_stateless(self, water, pump_pipe_valve_chain):
        resolver = NetworkResolver()
        first = resolver.resolve(pump_pipe_valve_chain, 0.0005, water, 0.7)
        second = resolver.resolve(pump_pipe_valve_chain, 0.0005, water, 0.7)
        assert first == second
