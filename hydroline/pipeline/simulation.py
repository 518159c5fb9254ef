"""
Time-stepped simulation of a series hydraulic chain.

`SimulationEngine` advances simulated time in fixed steps. Every tick it
ramps the pump, resolves the network, accumulates delivered volume, raises
alarms and records an immutable `SimulationSnapshot`.
"""

import asyncio
from collections import deque
import logging
import typing

import attrs

from hydroline.pipeline.solver import ElementResult, NetworkResolver, NetworkSolution
from hydroline.properties import FluidSample, get_fluid_resolver
from hydroline.types import (
    AlarmCode,
    AlarmLevel,
    ElementSpec,
    ElementType,
    EventCallback,
    EventEmitter,
    PumpSpec,
    PumpState,
    SimulationConfig,
    SysState,
)

logger = logging.getLogger(__name__)

__all__ = [
    "SimulationNotRunningError",
    "Alarm",
    "SimulationSnapshot",
    "TickResult",
    "ElementSource",
    "compute_ramp_factor",
    "SimulationEngine",
]


class SimulationNotRunningError(RuntimeError):
    """Raised when a tick is requested while the simulation is not running."""

    pass


@attrs.define(slots=True, frozen=True)
class Alarm:
    """An alarm raised during a single tick."""

    code: AlarmCode
    """Alarm code"""
    level: AlarmLevel
    """Severity"""
    message: str
    """Human readable description"""
    t: float
    """Simulated time (s) the alarm was raised at"""
    node_id: typing.Optional[str] = None
    """Element the alarm refers to, if any"""


@attrs.define(slots=True, frozen=True)
class SimulationSnapshot:
    """Physical state of the chain at the end of a tick."""

    t: float
    """Simulated time (s)"""
    sys_state: SysState
    """System state"""
    pump_state: PumpState
    """Pump state"""
    q: float
    """Effective flow rate (m³/s)"""
    ramp_factor: float
    """Pump ramp factor (0.0 to 1.0)"""
    nodes: typing.Tuple[ElementResult, ...]
    """Per-element results in flow order"""
    total_volume: float
    """Volume delivered since start (m³)"""
    alarms: typing.Tuple[Alarm, ...] = ()
    """Alarms raised during the tick"""


@attrs.define(slots=True, frozen=True)
class TickResult:
    """Outcome of a single `SimulationEngine.step()`."""

    snapshot: SimulationSnapshot
    alarms: typing.Tuple[Alarm, ...]
    state_changed: bool


class ChainElement(typing.Protocol):
    """An authoring element that can describe itself as an element spec."""

    @property
    def id(self) -> str: ...

    def get_params(self) -> ElementSpec: ...


class ElementSource(typing.Protocol):
    """An ordered source of chain elements, e.g. a `Pipeline`."""

    @property
    def elements(self) -> typing.Sequence[ChainElement]: ...


def compute_ramp_factor(t: float, duration: float = 2.0) -> float:
    """
    Smoothstep pump ramp-up factor.

    :param t: Time since start (s).
    :param duration: Ramp window (s).
    :return: 0.0 at or before the start, 1.0 at or after the end of the window,
        `x²(3 - 2x)` with `x = t / duration` in between.
    """
    if t <= 0:
        return 0.0
    if t >= duration:
        return 1.0
    x = t / duration
    return x * x * (3.0 - 2.0 * x)


class SimulationEngine(EventEmitter):
    """
    Fixed-step simulation engine for a series chain.

    Events (see `subscribe`):
    - "simulation.tick" with data {"snapshot"} after every tick
    - "simulation.alarm" with data {"alarms"} when a tick raised alarms
    - "simulation.state_change" with data {"sys_state", "pump_state"} when
      either state changes

    Usage:

    ```python
    engine = SimulationEngine(pipeline)
    engine.on_alarm(lambda event, data: print(data["alarms"]))
    engine.start()
    engine.run_for(5.0)
    engine.last_snapshot.nodes
    ```
    """

    def __init__(
        self,
        source: ElementSource,
        fluid: typing.Optional[FluidSample] = None,
        config: typing.Optional[SimulationConfig] = None,
        resolver: typing.Optional[NetworkResolver] = None,
    ) -> None:
        """
        Initialize the engine.

        :param source: Ordered chain of elements to simulate.
        :param fluid: Fluid properties. Defaults to water at 20 °C.
        :param config: Time stepping and alarm thresholds.
        :param resolver: Network resolver to use.
        """
        super().__init__()
        self.source = source
        self.config = config or SimulationConfig()
        self.resolver = resolver or NetworkResolver()
        self._fluid = fluid or get_fluid_resolver("water").get_properties(20.0)
        self._pending_openings: typing.Dict[str, float] = {}
        self._pending_fluid: typing.Optional[FluidSample] = None
        self._history: typing.Deque[SimulationSnapshot] = deque(
            maxlen=self.config.history_size
        )
        self._ticking = False
        self._sys_state = SysState.IDLE
        self._pump_state = PumpState.STOPPED
        self._zero_state()

    def _zero_state(self) -> None:
        self._tick_count = 0
        self._deadhead_ticks = 0
        self._total_volume = 0.0
        self._ramp_factor = 0.0
        self._history.clear()

    @property
    def fluid(self) -> FluidSample:
        return self._fluid

    @property
    def sys_state(self) -> SysState:
        return self._sys_state

    @property
    def pump_state(self) -> PumpState:
        return self._pump_state

    @property
    def is_ticking(self) -> bool:
        return self._ticking

    @property
    def elapsed_time(self) -> float:
        """Simulated time since start (s)."""
        return self._tick_count * self.config.time_step

    @property
    def deadhead_time(self) -> float:
        """Continuous time (s) the pump has been running against zero flow."""
        return self._deadhead_ticks * self.config.time_step

    @property
    def total_volume(self) -> float:
        """Volume delivered since start (m³)."""
        return self._total_volume

    @property
    def ramp_factor(self) -> float:
        return self._ramp_factor

    @property
    def snapshots(self) -> typing.Tuple[SimulationSnapshot, ...]:
        """Rolling snapshot history, oldest first."""
        return tuple(self._history)

    @property
    def last_snapshot(self) -> typing.Optional[SimulationSnapshot]:
        return self._history[-1] if self._history else None

    def on_tick(self, callback: EventCallback) -> None:
        self.subscribe("simulation.tick", callback)

    def on_alarm(self, callback: EventCallback) -> None:
        self.subscribe("simulation.alarm", callback)

    def on_state_change(self, callback: EventCallback) -> None:
        self.subscribe("simulation.state_change", callback)

    def _set_states(self, sys_state: SysState, pump_state: PumpState) -> bool:
        """Update states, notifying observers when the pair changes."""
        if (sys_state, pump_state) == (self._sys_state, self._pump_state):
            return False

        logger.info(
            f"Simulation state {self._sys_state}/{self._pump_state} -> "
            f"{sys_state}/{pump_state}"
        )
        self._sys_state = sys_state
        self._pump_state = pump_state
        self.notify(
            "simulation.state_change",
            {"sys_state": sys_state, "pump_state": pump_state},
        )
        return True

    def start(self) -> None:
        """Reset accumulated state and begin ticking. Staged inputs are kept."""
        self._zero_state()
        self._ticking = True
        logger.info("Simulation started")
        self._set_states(SysState.RUNNING, PumpState.RAMPING)

    def stop(self) -> None:
        """Stop ticking. Accumulated values and history are kept."""
        self._ticking = False
        logger.info(f"Simulation stopped at t={self.elapsed_time:.1f}s")
        self._set_states(SysState.IDLE, PumpState.STOPPED)

    def reset(self) -> None:
        """Stop ticking and zero all state, history and staged inputs."""
        self._ticking = False
        self._zero_state()
        self._pending_openings.clear()
        self._pending_fluid = None
        logger.info("Simulation reset")
        self._set_states(SysState.IDLE, PumpState.STOPPED)

    def set_valve_opening(self, element_id: str, opening: float) -> None:
        """
        Stage a valve opening, applied at the start of the next tick.

        :param element_id: Identifier of the valve element.
        :param opening: Fractional opening, clamped to [0, 1].
        """
        self._pending_openings[element_id] = min(max(float(opening), 0.0), 1.0)

    def set_fluid(
        self,
        fluid: typing.Optional[FluidSample] = None,
        *,
        rho: typing.Optional[float] = None,
        mu: typing.Optional[float] = None,
    ) -> None:
        """
        Stage new fluid properties, applied at the start of the next tick.

        :param fluid: Fluid sample to use.
        :param rho: Density (kg/m³), when no sample is given.
        :param mu: Dynamic viscosity (Pa·s), when no sample is given.
        """
        if fluid is None:
            if rho is None or mu is None:
                raise ValueError("Either a fluid sample or both rho and mu are required")
            fluid = FluidSample.from_density_viscosity(rho, mu)
        self._pending_fluid = fluid

    def _apply_staged_inputs(self) -> None:
        if self._pending_fluid is not None:
            self._fluid = self._pending_fluid
            self._pending_fluid = None
            logger.debug(
                f"Applied fluid rho={self._fluid.rho:.2f} mu={self._fluid.mu:.3e}"
            )

        if not self._pending_openings:
            return

        elements = {element.id: element for element in self.source.elements}
        for element_id, opening in self._pending_openings.items():
            element = elements.get(element_id)
            if element is None:
                logger.warning(f"Cannot set opening of unknown element {element_id!r}")
                continue
            set_opening = getattr(element, "set_opening", None)
            if set_opening is None:
                logger.warning(
                    f"Element {element_id!r} has no opening; ignoring opening {opening}"
                )
                continue
            set_opening(opening)
        self._pending_openings.clear()

    def step(self) -> TickResult:
        """
        Advance the simulation by one tick.

        :return: `TickResult` for the tick.
        :raises SimulationNotRunningError: If the simulation is not running.
        """
        if not self._ticking:
            raise SimulationNotRunningError(
                "Simulation is not running. Call start() first."
            )

        config = self.config
        self._apply_staged_inputs()

        self._tick_count += 1
        t = self.elapsed_time
        self._ramp_factor = compute_ramp_factor(t, config.ramp_duration)

        sys_state, pump_state = self._sys_state, self._pump_state
        if pump_state is PumpState.RAMPING and self._ramp_factor >= 1.0:
            pump_state = PumpState.RUNNING

        chain = [element.get_params() for element in self.source.elements]
        pump = next((spec for spec in chain if isinstance(spec, PumpSpec)), None)
        q_nominal = pump.q_nominal if pump is not None else 0.0
        solution = self.resolver.resolve(
            chain,
            q_nominal * self._ramp_factor,
            self._fluid,
            self._ramp_factor,
            inlet_pressure=config.inlet_pressure,
        )
        self._total_volume += solution.q_effective * config.time_step

        alarms: typing.List[Alarm] = []
        if (
            pump is not None
            and pump_state is not PumpState.STOPPED
            and solution.q_effective <= 0
        ):
            self._deadhead_ticks += 1
            deadhead_time = self.deadhead_time
            if deadhead_time > config.deadhead_threshold:
                pump_state = PumpState.OVERLOAD
                sys_state = SysState.ALARM
                alarms.append(
                    Alarm(
                        code=AlarmCode.DEADHEAD,
                        level=AlarmLevel.CRITICAL,
                        message=(
                            f"Pump deadheaded for {deadhead_time:.1f}s "
                            f"(limit {config.deadhead_threshold:.1f}s)"
                        ),
                        t=t,
                        node_id=pump.id,
                    )
                )
            else:
                alarms.append(
                    Alarm(
                        code=AlarmCode.DEADHEAD,
                        level=AlarmLevel.WARNING,
                        message=f"Pump running against zero flow for {deadhead_time:.1f}s",
                        t=t,
                        node_id=pump.id,
                    )
                )
        else:
            self._deadhead_ticks = 0

        alarms.extend(self._node_alarms(solution, t))

        state_changed = self._set_states(sys_state, pump_state)
        snapshot = SimulationSnapshot(
            t=t,
            sys_state=self._sys_state,
            pump_state=self._pump_state,
            q=solution.q_effective,
            ramp_factor=self._ramp_factor,
            nodes=solution.nodes,
            total_volume=self._total_volume,
            alarms=tuple(alarms),
        )
        self._history.append(snapshot)
        logger.debug(
            f"Tick {self._tick_count}: t={t:.1f}s q={solution.q_effective:.6f}m³/s "
            f"ramp={self._ramp_factor:.3f} alarms={len(alarms)}"
        )

        self.notify("simulation.tick", {"snapshot": snapshot})
        if alarms:
            self.notify("simulation.alarm", {"alarms": snapshot.alarms})
        return TickResult(
            snapshot=snapshot, alarms=snapshot.alarms, state_changed=state_changed
        )

    def _node_alarms(self, solution: NetworkSolution, t: float) -> typing.List[Alarm]:
        alarms = []
        for node in solution.nodes:
            if node.p_out < 0:
                alarms.append(
                    Alarm(
                        code=AlarmCode.NEGATIVE_PRESSURE,
                        level=AlarmLevel.WARNING,
                        message=(
                            f"Negative pressure {node.p_out:.0f} Pa at {node.name}; "
                            "cavitation risk"
                        ),
                        t=t,
                        node_id=node.element_id,
                    )
                )
            if (
                node.element_type is ElementType.PIPE
                and node.v > self.config.high_velocity_threshold
            ):
                alarms.append(
                    Alarm(
                        code=AlarmCode.HIGH_VELOCITY,
                        level=AlarmLevel.INFO,
                        message=f"High velocity {node.v:.2f} m/s in {node.name}",
                        t=t,
                        node_id=node.element_id,
                    )
                )
            if node.f_converged is False:
                alarms.append(
                    Alarm(
                        code=AlarmCode.FRICTION_NOT_CONVERGED,
                        level=AlarmLevel.INFO,
                        message=f"Friction factor did not converge in {node.name}",
                        t=t,
                        node_id=node.element_id,
                    )
                )
        return alarms

    def run_for(self, duration: float) -> typing.List[TickResult]:
        """
        Run ticks back to back covering `duration` simulated seconds.

        :param duration: Simulated time to advance (s).
        :return: Results of the ticks run, in order.
        :raises SimulationNotRunningError: If the simulation is not running.
        """
        if not self._ticking:
            raise SimulationNotRunningError(
                "Simulation is not running. Call start() first."
            )
        ticks = int(round(duration / self.config.time_step))
        results = []
        for _ in range(ticks):
            if not self._ticking:
                break
            results.append(self.step())
        return results

    async def run(self, max_ticks: typing.Optional[int] = None) -> int:
        """
        Real-time loop. Ticks every `tick_interval` seconds until stopped.

        :param max_ticks: Optional number of ticks after which the loop returns.
        :return: Number of ticks run.
        """
        count = 0
        while self._ticking and (max_ticks is None or count < max_ticks):
            self.step()
            count += 1
            await asyncio.sleep(self.config.tick_interval)
        return count
