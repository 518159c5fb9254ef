import asyncio

import pytest

from hydroline import hydraulics
from hydroline.pipeline.simulation import (
    SimulationEngine,
    SimulationNotRunningError,
    compute_ramp_factor,
)
from hydroline.types import (
    AlarmCode,
    AlarmLevel,
    NodeState,
    PumpState,
    SimulationConfig,
    SysState,
)


class TestRampFactor:
    def test_bounds(self):
        assert compute_ramp_factor(0.0) == 0.0
        assert compute_ramp_factor(-1.0) == 0.0
        assert compute_ramp_factor(2.0) == 1.0
        assert compute_ramp_factor(10.0) == 1.0

    def test_smoothstep(self):
        assert compute_ramp_factor(1.0) == pytest.approx(0.5)
        assert compute_ramp_factor(0.5) == pytest.approx(0.15625)

    def test_monotone(self):
        values = [compute_ramp_factor(i * 0.05) for i in range(50)]
        assert values == sorted(values)


class TestLifecycle:
    def test_initial_state(self, pipeline):
        engine = SimulationEngine(pipeline)
        assert engine.sys_state is SysState.IDLE
        assert engine.pump_state is PumpState.STOPPED
        assert engine.elapsed_time == 0.0
        assert engine.last_snapshot is None

    def test_step_requires_start(self, pipeline):
        engine = SimulationEngine(pipeline)
        with pytest.raises(SimulationNotRunningError):
            engine.step()
        with pytest.raises(SimulationNotRunningError):
            engine.run_for(1.0)

    def test_start_ramps_then_runs(self, pipeline):
        engine = SimulationEngine(pipeline)
        engine.start()
        assert engine.sys_state is SysState.RUNNING
        assert engine.pump_state is PumpState.RAMPING

        results = engine.run_for(2.0)
        assert len(results) == 20
        assert results[18].snapshot.pump_state is PumpState.RAMPING
        assert results[19].snapshot.pump_state is PumpState.RUNNING
        assert results[19].snapshot.ramp_factor == 1.0
        assert results[19].state_changed

    def test_time_and_volume_accumulate(self, pipeline):
        engine = SimulationEngine(pipeline)
        engine.start()
        engine.run_for(3.0)
        snapshot = engine.last_snapshot
        assert snapshot.t == pytest.approx(3.0)
        assert engine.total_volume == pytest.approx(
            sum(s.q * 0.1 for s in engine.snapshots)
        )
        assert snapshot.q == pytest.approx(0.0005)

    def test_stop_keeps_state(self, pipeline):
        engine = SimulationEngine(pipeline)
        engine.start()
        engine.run_for(1.0)
        volume = engine.total_volume
        engine.stop()
        assert not engine.is_ticking
        assert engine.sys_state is SysState.IDLE
        assert engine.pump_state is PumpState.STOPPED
        assert engine.total_volume == volume
        assert len(engine.snapshots) == 10

    def test_reset_zeroes_everything(self, pipeline):
        engine = SimulationEngine(pipeline)
        engine.start()
        engine.run_for(1.0)
        engine.set_valve_opening("valve", 0.2)
        engine.reset()
        assert engine.total_volume == 0.0
        assert engine.elapsed_time == 0.0
        assert engine.snapshots == ()

        engine.start()
        engine.step()
        assert pipeline.get_element("valve").opening == 1.0

    def test_history_is_capped(self, pipeline):
        engine = SimulationEngine(pipeline, config=SimulationConfig(history_size=5))
        engine.start()
        engine.run_for(1.0)
        snapshots = engine.snapshots
        assert len(snapshots) == 5
        assert snapshots[-1].t == pytest.approx(1.0)
        assert snapshots[0].t == pytest.approx(0.6)


class TestStagedInputs:
    def test_valve_opening_applies_on_next_tick(self, pipeline):
        engine = SimulationEngine(pipeline)
        engine.start()
        engine.step()
        engine.set_valve_opening("valve", 0.5)
        assert pipeline.get_element("valve").opening == 1.0

        result = engine.step()
        valve = result.snapshot.nodes[-1]
        assert valve.opening == 0.5
        assert pipeline.get_element("valve").opening == 0.5

    def test_opening_is_clamped(self, pipeline):
        engine = SimulationEngine(pipeline)
        engine.start()
        engine.set_valve_opening("valve", 7.0)
        engine.step()
        assert pipeline.get_element("valve").opening == 1.0

    def test_unknown_valve_is_ignored(self, pipeline):
        engine = SimulationEngine(pipeline)
        engine.start()
        engine.set_valve_opening("missing", 0.5)
        engine.step()
        assert engine.last_snapshot is not None

    def test_set_fluid(self, pipeline):
        engine = SimulationEngine(pipeline)
        engine.start()
        engine.set_fluid(rho=1100.0, mu=0.004)
        engine.step()
        assert engine.fluid.rho == 1100.0
        assert engine.fluid.mu == 0.004

    def test_set_fluid_requires_values(self, pipeline):
        engine = SimulationEngine(pipeline)
        with pytest.raises(ValueError):
            engine.set_fluid(rho=1000.0)


class TestAlarms:
    def test_deadhead_escalates(self, pipeline):
        pipeline.get_element("valve").close()
        engine = SimulationEngine(pipeline)
        alarms = []
        engine.on_alarm(lambda event, data: alarms.extend(data["alarms"]))
        engine.start()

        results = engine.run_for(5.0)
        last = results[-1].snapshot
        assert last.q == 0.0
        assert last.nodes[-1].node_state is NodeState.BLOCKED
        assert last.pump_state is not PumpState.OVERLOAD
        assert all(
            alarm.level is AlarmLevel.WARNING
            for alarm in alarms
            if alarm.code is AlarmCode.DEADHEAD
        )

        result = engine.step()
        assert engine.deadhead_time == pytest.approx(5.1)
        assert result.snapshot.pump_state is PumpState.OVERLOAD
        assert result.snapshot.sys_state is SysState.ALARM
        assert any(
            alarm.code is AlarmCode.DEADHEAD and alarm.level is AlarmLevel.CRITICAL
            for alarm in result.alarms
        )

    def test_deadhead_clears_when_flow_resumes(self, pipeline):
        pipeline.get_element("valve").close()
        engine = SimulationEngine(pipeline)
        engine.start()
        engine.run_for(1.0)
        engine.set_valve_opening("valve", 1.0)
        engine.step()
        assert engine.deadhead_time == 0.0

    def test_high_velocity(self, pipeline):
        pipeline.get_element("pipe-1").override("diameter_mm", 10.0)
        engine = SimulationEngine(pipeline)
        engine.start()
        engine.run_for(2.0)
        codes = {alarm.code for alarm in engine.last_snapshot.alarms}
        assert AlarmCode.HIGH_VELOCITY in codes

    def test_negative_pressure(self, pipeline):
        pipeline.get_element("pipe-2").override("dz_m", 30.0)
        engine = SimulationEngine(pipeline)
        engine.start()
        engine.run_for(2.0)
        codes = {alarm.code for alarm in engine.last_snapshot.alarms}
        assert AlarmCode.NEGATIVE_PRESSURE in codes

    def test_unconverged_friction_raises_info_alarm(self, pipeline, monkeypatch):
        monkeypatch.setattr(hydraulics, "COLEBROOK_MAX_ITERATIONS", 1)
        monkeypatch.setattr(hydraulics, "COLEBROOK_TOLERANCE", 0.0)
        engine = SimulationEngine(pipeline)
        engine.start()
        engine.run_for(2.0)

        snapshot = engine.last_snapshot
        pipe = next(node for node in snapshot.nodes if node.element_id == "pipe-1")
        assert pipe.f_converged is False
        alarms = [
            alarm
            for alarm in snapshot.alarms
            if alarm.code is AlarmCode.FRICTION_NOT_CONVERGED
        ]
        assert {alarm.node_id for alarm in alarms} >= {"pipe-1", "pipe-2"}
        assert all(alarm.level is AlarmLevel.INFO for alarm in alarms)
        assert snapshot.sys_state is SysState.RUNNING

    def test_valve_with_duplicate_table_openings_is_rejected(self, pipeline):
        with pytest.raises(ValueError):
            pipeline.get_element("valve").override(
                "k_table", [(0.5, 3.0), (0.5, 4.0), (1.0, 0.2)]
            )
        engine = SimulationEngine(pipeline)
        engine.start()
        assert engine.step().snapshot.q > 0


class TestEvents:
    def test_tick_and_state_change_notifications(self, pipeline):
        engine = SimulationEngine(pipeline)
        ticks, states = [], []
        engine.on_tick(lambda event, data: ticks.append(data["snapshot"]))
        engine.on_state_change(
            lambda event, data: states.append((data["sys_state"], data["pump_state"]))
        )

        engine.start()
        engine.run_for(2.0)
        engine.stop()

        assert len(ticks) == 20
        assert states == [
            (SysState.RUNNING, PumpState.RAMPING),
            (SysState.RUNNING, PumpState.RUNNING),
            (SysState.IDLE, PumpState.STOPPED),
        ]

    def test_prefix_subscription(self, pipeline):
        engine = SimulationEngine(pipeline)
        events = []
        engine.subscribe("simulation.*", lambda event, data: events.append(event))
        engine.start()
        engine.step()
        assert events == ["simulation.state_change", "simulation.tick"]

    def test_failing_observer_does_not_stop_the_tick(self, pipeline):
        engine = SimulationEngine(pipeline)

        def _broken(event, data):
            raise RuntimeError("boom")

        engine.on_tick(_broken)
        engine.start()
        assert engine.step().snapshot is not None


class TestRealtimeLoop:
    def test_run_with_max_ticks(self, pipeline):
        engine = SimulationEngine(pipeline, config=SimulationConfig(tick_interval=0.001))
        engine.start()
        count = asyncio.run(engine.run(max_ticks=3))
        assert count == 3
        assert engine.elapsed_time == pytest.approx(0.3)

    def test_run_returns_when_not_ticking(self, pipeline):
        engine = SimulationEngine(pipeline, config=SimulationConfig(tick_interval=0.001))
        assert asyncio.run(engine.run(max_ticks=3)) == 0
