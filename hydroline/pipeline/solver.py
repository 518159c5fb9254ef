"""
Series Network Resolver
"""

import logging
import typing

import attrs

from hydroline.hydraulics import (
    G,
    CLOSED_VALVE_K,
    compute_contraction_head_loss,
    compute_expansion_head_loss,
    compute_fitting_head_loss,
    compute_flow_velocity,
    compute_friction_head_loss,
    compute_reynolds_number,
    compute_valve_loss_coefficient,
    convert_head_to_pressure,
    solve_friction_factor,
)
from hydroline.properties import FluidSample
from hydroline.types import (
    ElbowSpec,
    ElementSpec,
    ElementType,
    FlowRegime,
    NodeState,
    PipeSpec,
    PumpSpec,
    TransitionSpec,
    ValveSpec,
    ValveSubtype,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ElementResult",
    "FlowState",
    "NetworkSolution",
    "NetworkResolver",
    "resolve_network",
]


@attrs.define(slots=True, frozen=True, kw_only=True)
class ElementResult:
    """Hydraulic state of a single element after a network solve. Pressures in Pa (gauge)."""

    element_id: str
    """Identifier of the element"""
    element_type: ElementType
    """Kind of element"""
    name: str = ""
    """Display name of the element"""
    p_in: float
    """Inlet pressure"""
    p_out: float
    """Outlet pressure"""
    dp_major: float = 0.0
    """Friction pressure loss"""
    dp_minor: float = 0.0
    """Fitting, valve and transition pressure loss"""
    dp_elevation: float = 0.0
    """Static pressure change due to elevation gain"""
    dp_total: float = attrs.field(init=False)
    """Sum of friction and minor losses"""
    v: float = 0.0
    """Mean velocity (m/s)"""
    re: float = 0.0
    """Reynolds number"""
    regime: typing.Optional[FlowRegime] = None
    """Flow regime, where a friction factor was computed"""
    f: typing.Optional[float] = None
    """Darcy friction factor"""
    f_converged: typing.Optional[bool] = None
    """Whether the Colebrook-White iteration converged"""
    k: typing.Optional[float] = None
    """Loss coefficient of a fitting or valve"""
    opening: typing.Optional[float] = None
    """Valve opening"""
    power: typing.Optional[float] = None
    """Pump shaft power (W)"""
    node_state: NodeState = NodeState.FLOWING
    """Hydraulic node state"""

    @dp_total.default
    def _dp_total(self) -> float:
        return self.dp_major + self.dp_minor


@attrs.define(slots=True)
class FlowState:
    """Flow state threaded from one element to the next"""

    pressure: float = attrs.field()
    """Pressure at the current point (Pa)"""
    diameter: float = attrs.field()
    """Current flow diameter (m)"""
    flow_rate: float = attrs.field()
    """Effective volumetric flow rate (m³/s)"""
    blocked: bool = attrs.field(default=False)
    """Whether a closed valve has been passed"""


@attrs.define(slots=True, frozen=True)
class NetworkSolution:
    """Result of resolving a series chain."""

    nodes: typing.Tuple[ElementResult, ...]
    """Per-element results in flow order"""
    q_effective: float
    """Flow rate actually delivered through the chain (m³/s)"""
    blocked: bool
    """Whether a closed valve blocks the chain"""
    outlet_pressure: float
    """Pressure at the chain outlet (Pa)"""


def _diameter_m(diameter_mm: typing.Optional[float], current: float) -> float:
    if diameter_mm is None:
        return current
    return diameter_mm / 1000.0


class NetworkResolver:
    """
    Resolves pressures and velocities along a series chain of elements.

    The resolver is stateless: every call is a pure function of the chain,
    the flow rate, the fluid, and the pump ramp factor. Pressure propagates
    from the inlet to the outlet. A closed valve blocks the chain and every
    element after it is reported as dry.

    Usage:

    ```python
    resolver = NetworkResolver()
    solution = resolver.resolve(chain, q=0.002, fluid=fluid, ramp_factor=1.0)
    for node in solution.nodes:
        print(node.element_id, node.p_out)
    ```
    """

    def __init__(self, default_diameter_mm: float = 53.1) -> None:
        """
        Initialize the resolver.

        :param default_diameter_mm: Flow diameter assumed before the first element
            that defines one.
        """
        self.default_diameter = default_diameter_mm / 1000.0
        self._handlers: typing.Dict[
            ElementType,
            typing.Callable[[typing.Any, FlowState, FluidSample, float], ElementResult],
        ] = {
            ElementType.PUMP: self._resolve_pump,
            ElementType.PIPE: self._resolve_pipe,
            ElementType.TRANSITION: self._resolve_transition,
            ElementType.ELBOW: self._resolve_elbow,
            ElementType.VALVE: self._resolve_valve,
        }

    def resolve(
        self,
        chain: typing.Iterable[ElementSpec],
        q: float,
        fluid: FluidSample,
        ramp_factor: float,
        inlet_pressure: float = 0.0,
    ) -> NetworkSolution:
        """
        Resolve the chain for a given flow rate.

        :param chain: Element specs in flow order.
        :param q: Volumetric flow rate entering the chain (m³/s).
        :param fluid: Fluid properties.
        :param ramp_factor: Pump ramp factor (0.0 to 1.0).
        :param inlet_pressure: Gauge pressure at the chain inlet (Pa).
        :return: `NetworkSolution`
        """
        state = FlowState(
            pressure=inlet_pressure, diameter=self.default_diameter, flow_rate=q
        )
        nodes: typing.List[ElementResult] = []
        for spec in chain:
            if state.blocked:
                nodes.append(self._dry(spec, state))
                continue
            handler = self._handlers[spec.type]
            nodes.append(handler(spec, state, fluid, ramp_factor))

        return NetworkSolution(
            nodes=tuple(nodes),
            q_effective=state.flow_rate,
            blocked=state.blocked,
            outlet_pressure=state.pressure,
        )

    def _dry(self, spec: ElementSpec, state: FlowState) -> ElementResult:
        return ElementResult(
            element_id=spec.id,
            element_type=spec.type,
            name=spec.name,
            p_in=state.pressure,
            p_out=state.pressure,
            opening=spec.opening if isinstance(spec, ValveSpec) else None,
            node_state=NodeState.DRY,
        )

    def _resolve_pump(
        self, spec: PumpSpec, state: FlowState, fluid: FluidSample, ramp_factor: float
    ) -> ElementResult:
        state.diameter = spec.diameter_mm / 1000.0
        pressure_rise = convert_head_to_pressure(spec.head_m * ramp_factor, fluid.rho)
        velocity = compute_flow_velocity(state.flow_rate, state.diameter)
        p_in = state.pressure
        state.pressure = p_in + pressure_rise
        power = (
            fluid.rho * G * state.flow_rate * spec.head_m * ramp_factor
        ) / spec.efficiency
        return ElementResult(
            element_id=spec.id,
            element_type=spec.type,
            name=spec.name,
            p_in=p_in,
            p_out=state.pressure,
            v=velocity,
            re=compute_reynolds_number(velocity, state.diameter, fluid.nu),
            power=power,
        )

    def _resolve_pipe(
        self, spec: PipeSpec, state: FlowState, fluid: FluidSample, ramp_factor: float
    ) -> ElementResult:
        state.diameter = spec.diameter_mm / 1000.0
        velocity = compute_flow_velocity(state.flow_rate, state.diameter)
        reynolds_number = compute_reynolds_number(velocity, state.diameter, fluid.nu)
        friction = solve_friction_factor(reynolds_number, state.diameter, spec.eps_mm)
        dp_major = convert_head_to_pressure(
            compute_friction_head_loss(
                friction.friction_factor, spec.length_m, state.diameter, velocity
            ),
            fluid.rho,
        )
        dp_elevation = convert_head_to_pressure(spec.dz_m, fluid.rho)
        p_in = state.pressure
        state.pressure = p_in - dp_major - dp_elevation
        return ElementResult(
            element_id=spec.id,
            element_type=spec.type,
            name=spec.name,
            p_in=p_in,
            p_out=state.pressure,
            dp_major=dp_major,
            dp_elevation=dp_elevation,
            v=velocity,
            re=reynolds_number,
            regime=friction.regime,
            f=friction.friction_factor,
            f_converged=friction.converged,
        )

    def _resolve_transition(
        self,
        spec: TransitionSpec,
        state: FlowState,
        fluid: FluidSample,
        ramp_factor: float,
    ) -> ElementResult:
        inlet_diameter = _diameter_m(spec.d_in_mm, state.diameter)
        outlet_diameter = spec.d_out_mm / 1000.0
        inlet_velocity = compute_flow_velocity(state.flow_rate, inlet_diameter)
        outlet_velocity = compute_flow_velocity(state.flow_rate, outlet_diameter)

        if outlet_diameter < inlet_diameter:
            minor_head = compute_contraction_head_loss(
                inlet_diameter, outlet_diameter, outlet_velocity
            )
        elif outlet_diameter > inlet_diameter:
            minor_head = compute_expansion_head_loss(inlet_velocity, outlet_velocity)
        else:
            minor_head = 0.0
        dp_minor = convert_head_to_pressure(minor_head, fluid.rho)
        # Kinetic energy recovered (expander) or spent (reducer)
        recovery = 0.5 * fluid.rho * (inlet_velocity**2 - outlet_velocity**2)

        # Friction over the transition length at the outlet diameter
        outlet_reynolds = compute_reynolds_number(
            outlet_velocity, outlet_diameter, fluid.nu
        )
        friction = solve_friction_factor(outlet_reynolds, outlet_diameter, spec.eps_mm)
        dp_major = convert_head_to_pressure(
            compute_friction_head_loss(
                friction.friction_factor, spec.length_m, outlet_diameter, outlet_velocity
            ),
            fluid.rho,
        )

        p_in = state.pressure
        state.pressure = p_in - dp_major - dp_minor + recovery
        state.diameter = outlet_diameter
        return ElementResult(
            element_id=spec.id,
            element_type=spec.type,
            name=spec.name,
            p_in=p_in,
            p_out=state.pressure,
            dp_major=dp_major,
            dp_minor=dp_minor,
            v=outlet_velocity,
            re=compute_reynolds_number(inlet_velocity, inlet_diameter, fluid.nu),
            regime=friction.regime,
            f=friction.friction_factor,
            f_converged=friction.converged,
        )

    def _resolve_elbow(
        self, spec: ElbowSpec, state: FlowState, fluid: FluidSample, ramp_factor: float
    ) -> ElementResult:
        state.diameter = _diameter_m(spec.diameter_mm, state.diameter)
        velocity = compute_flow_velocity(state.flow_rate, state.diameter)
        dp_minor = convert_head_to_pressure(
            compute_fitting_head_loss(spec.k, velocity), fluid.rho
        )
        p_in = state.pressure
        state.pressure = p_in - dp_minor
        return ElementResult(
            element_id=spec.id,
            element_type=spec.type,
            name=spec.name,
            p_in=p_in,
            p_out=state.pressure,
            dp_minor=dp_minor,
            v=velocity,
            re=compute_reynolds_number(velocity, state.diameter, fluid.nu),
            k=spec.k,
        )

    def _resolve_valve(
        self, spec: ValveSpec, state: FlowState, fluid: FluidSample, ramp_factor: float
    ) -> ElementResult:
        state.diameter = _diameter_m(spec.diameter_mm, state.diameter)
        p_in = state.pressure

        if spec.opening <= 0:
            logger.debug(f"Valve {spec.id!r} is closed; downstream elements are dry")
            state.blocked = True
            state.flow_rate = 0.0
            return ElementResult(
                element_id=spec.id,
                element_type=spec.type,
                name=spec.name,
                p_in=p_in,
                p_out=p_in,
                k=CLOSED_VALVE_K,
                opening=spec.opening,
                node_state=NodeState.BLOCKED,
            )

        k = compute_valve_loss_coefficient(spec.subtype, spec.opening, spec.k_table)
        velocity = compute_flow_velocity(state.flow_rate, state.diameter)
        if spec.subtype is ValveSubtype.PRV and spec.set_pressure is not None:
            p_out = min(p_in, spec.set_pressure)
            dp_minor = p_in - p_out
        else:
            dp_minor = convert_head_to_pressure(
                compute_fitting_head_loss(k, velocity), fluid.rho
            )
            p_out = p_in - dp_minor

        state.pressure = p_out
        return ElementResult(
            element_id=spec.id,
            element_type=spec.type,
            name=spec.name,
            p_in=p_in,
            p_out=p_out,
            dp_minor=dp_minor,
            v=velocity,
            re=compute_reynolds_number(velocity, state.diameter, fluid.nu),
            k=k,
            opening=spec.opening,
        )


_default_resolver = NetworkResolver()


def resolve_network(
    chain: typing.Iterable[ElementSpec],
    q: float,
    fluid: FluidSample,
    ramp_factor: float,
    inlet_pressure: float = 0.0,
) -> NetworkSolution:
    """Resolve a chain with the shared default `NetworkResolver`."""
    return _default_resolver.resolve(
        chain, q, fluid, ramp_factor, inlet_pressure=inlet_pressure
    )
