"""
Friction and minor loss calculations for incompressible pipe flow.

All functions take and return canonical SI magnitudes (m, s, kg, Pa, m³/s)
except where a parameter name says otherwise (e.g. `eps_mm`).
"""

import logging
import math
import typing

import attrs

from hydroline.interpolation import linear_interpolate
from hydroline.properties import FluidSample
from hydroline.types import FlowRegime, ValveKPoint, ValveSubtype

logger = logging.getLogger(__name__)

G = 9.80665
"""Standard gravity (m/s²)"""
LAMINAR_REYNOLDS = 2300.0
TURBULENT_REYNOLDS = 4000.0
NO_FLOW_REYNOLDS = 1e-9
NO_FLOW_FRICTION_FACTOR = 64.0
COLEBROOK_TOLERANCE = 1e-10
COLEBROOK_MAX_ITERATIONS = 50
CLOSED_VALVE_K = 1e9
"""Loss coefficient reported for a fully closed valve"""

VALVE_BASE_K: typing.Dict[ValveSubtype, float] = {
    ValveSubtype.GATE: 0.1,
    ValveSubtype.GLOBE: 10.0,
    ValveSubtype.BUTTERFLY: 0.3,
    ValveSubtype.BALL: 0.05,
    ValveSubtype.CHECK: 2.5,
}
"""Fully open loss coefficient by valve subtype"""
DEFAULT_VALVE_BASE_K = 1.0


@attrs.define(slots=True, frozen=True)
class ColebrookSolution:
    """Result of the Colebrook-White fixed-point iteration."""

    friction_factor: float
    """Darcy friction factor (last iterate when not converged)"""
    iterations: int
    """Number of iterations performed"""
    converged: bool
    """Whether successive iterates agreed within tolerance"""


@attrs.define(slots=True, frozen=True)
class FrictionFactorSolution:
    """Darcy friction factor together with the regime it was computed for."""

    friction_factor: float
    regime: FlowRegime
    iterations: int = 0
    converged: bool = True


def compute_pipe_area(diameter: float) -> float:
    """Cross-sectional area (m²) of a circular pipe with diameter in metres."""
    return math.pi * diameter * diameter / 4.0


def compute_flow_velocity(flow_rate: float, diameter: float) -> float:
    """
    Mean flow velocity in a circular pipe.

    :param flow_rate: Volumetric flow rate (m³/s).
    :param diameter: Internal diameter (m).
    :return: Velocity (m/s). Zero for a non-positive diameter.
    """
    if diameter <= 0:
        return 0.0
    return flow_rate / compute_pipe_area(diameter)


def compute_reynolds_number(
    velocity: float, diameter: float, kinematic_viscosity: float
) -> float:
    """
    Reynolds number `v * D / nu`.

    :param velocity: Mean velocity (m/s).
    :param diameter: Internal diameter (m).
    :param kinematic_viscosity: Kinematic viscosity (m²/s).
    :return: Dimensionless Reynolds number, `inf` for a degenerate viscosity or diameter.
    """
    if kinematic_viscosity <= 0 or diameter <= 0:
        return math.inf
    return abs(velocity) * diameter / kinematic_viscosity


def determine_flow_regime(reynolds_number: float) -> FlowRegime:
    """Classify the flow regime from the Reynolds number."""
    if reynolds_number < LAMINAR_REYNOLDS:
        return FlowRegime.LAMINAR
    if reynolds_number < TURBULENT_REYNOLDS:
        return FlowRegime.TRANSITIONAL
    return FlowRegime.TURBULENT


def compute_swamee_jain_friction_factor(
    reynolds_number: float, relative_roughness: float
) -> float:
    """
    Explicit Swamee-Jain approximation of the Colebrook-White equation.

        f = 0.25 / (log10(ε/3.7 + 5.74 / Re^0.9))²

    :param reynolds_number: Reynolds number (dimensionless).
    :param relative_roughness: Pipe relative roughness (ε / D).
    :return: Darcy friction factor.
    """
    return 0.25 / (
        math.log10(relative_roughness / 3.7 + 5.74 / reynolds_number**0.9) ** 2
    )


def solve_colebrook_white(
    reynolds_number: float, relative_roughness: float
) -> ColebrookSolution:
    """
    Solve the Colebrook-White equation by fixed-point iteration.

        1/√f = -2 log10(ε/3.7 + 2.51 / (Re √f))

    The iteration is seeded with the Swamee-Jain approximation and stops when
    successive iterates differ by less than `COLEBROOK_TOLERANCE`, or after
    `COLEBROOK_MAX_ITERATIONS` iterations, in which case the last iterate is
    returned with `converged=False`.

    :param reynolds_number: Reynolds number (dimensionless, turbulent).
    :param relative_roughness: Pipe relative roughness (ε / D).
    :return: `ColebrookSolution`
    """
    if math.isinf(reynolds_number):
        # Fully rough limit. A smooth pipe has no friction at infinite Re.
        if relative_roughness <= 0:
            return ColebrookSolution(friction_factor=0.0, iterations=0, converged=True)
        rhs = -2.0 * math.log10(relative_roughness / 3.7)
        return ColebrookSolution(
            friction_factor=1.0 / (rhs * rhs), iterations=0, converged=True
        )

    friction_factor = compute_swamee_jain_friction_factor(
        reynolds_number, relative_roughness
    )
    for iteration in range(1, COLEBROOK_MAX_ITERATIONS + 1):
        rhs = -2.0 * math.log10(
            relative_roughness / 3.7
            + 2.51 / (reynolds_number * math.sqrt(friction_factor))
        )
        friction_factor_new = 1.0 / (rhs * rhs)
        if abs(friction_factor_new - friction_factor) < COLEBROOK_TOLERANCE:
            return ColebrookSolution(
                friction_factor=friction_factor_new,
                iterations=iteration,
                converged=True,
            )
        friction_factor = friction_factor_new

    logger.warning(
        f"Colebrook-White did not converge after {COLEBROOK_MAX_ITERATIONS} "
        f"iterations (Re={reynolds_number:.1f}, ε/D={relative_roughness:.3e})"
    )
    return ColebrookSolution(
        friction_factor=friction_factor,
        iterations=COLEBROOK_MAX_ITERATIONS,
        converged=False,
    )


def solve_friction_factor(
    reynolds_number: float, diameter: float, eps_mm: float
) -> FrictionFactorSolution:
    """
    Darcy friction factor for any flow regime.

    - No flow (Re < 1e-9): 64
    - Laminar (Re < 2300): 64 / Re
    - Transitional (2300 <= Re < 4000): linear blend between the laminar value
      at Re = 2300 and the Colebrook-White value at Re = 4000
    - Turbulent: Colebrook-White

    :param reynolds_number: Reynolds number (dimensionless).
    :param diameter: Internal diameter (m).
    :param eps_mm: Absolute wall roughness (mm).
    :return: `FrictionFactorSolution`
    """
    regime = determine_flow_regime(reynolds_number)
    if reynolds_number < NO_FLOW_REYNOLDS:
        return FrictionFactorSolution(
            friction_factor=NO_FLOW_FRICTION_FACTOR, regime=regime
        )

    relative_roughness = (eps_mm / 1000.0) / diameter if diameter > 0 else 0.0
    if regime is FlowRegime.LAMINAR:
        return FrictionFactorSolution(
            friction_factor=64.0 / reynolds_number, regime=regime
        )

    if regime is FlowRegime.TRANSITIONAL:
        turbulent = solve_colebrook_white(TURBULENT_REYNOLDS, relative_roughness)
        laminar_friction_factor = 64.0 / LAMINAR_REYNOLDS
        weight = (reynolds_number - LAMINAR_REYNOLDS) / (
            TURBULENT_REYNOLDS - LAMINAR_REYNOLDS
        )
        return FrictionFactorSolution(
            friction_factor=laminar_friction_factor * (1 - weight)
            + turbulent.friction_factor * weight,
            regime=regime,
            iterations=turbulent.iterations,
            converged=turbulent.converged,
        )

    turbulent = solve_colebrook_white(reynolds_number, relative_roughness)
    return FrictionFactorSolution(
        friction_factor=turbulent.friction_factor,
        regime=regime,
        iterations=turbulent.iterations,
        converged=turbulent.converged,
    )


def compute_friction_factor(
    reynolds_number: float, diameter: float, eps_mm: float
) -> float:
    """Darcy friction factor for any flow regime. See `solve_friction_factor`."""
    return solve_friction_factor(reynolds_number, diameter, eps_mm).friction_factor


def compute_friction_head_loss(
    friction_factor: float, length: float, diameter: float, velocity: float
) -> float:
    """Darcy-Weisbach head loss `f (L/D) v²/2g` in metres."""
    if diameter <= 0:
        return 0.0
    return friction_factor * (length / diameter) * velocity * velocity / (2 * G)


def compute_fitting_head_loss(loss_coefficient: float, velocity: float) -> float:
    """Minor loss `K v²/2g` in metres."""
    return loss_coefficient * velocity * velocity / (2 * G)


def compute_elevation_head_loss(elevation_gain: float) -> float:
    """Static head (m) required to lift the fluid by `elevation_gain` metres."""
    return elevation_gain


def compute_expansion_head_loss(upstream_velocity: float, downstream_velocity: float) -> float:
    """
    Borda-Carnot sudden expansion loss `(v1 - v2)²/2g` in metres.

    Zero unless the flow decelerates.
    """
    if upstream_velocity <= downstream_velocity:
        return 0.0
    return (upstream_velocity - downstream_velocity) ** 2 / (2 * G)


def compute_contraction_head_loss(
    upstream_diameter: float, downstream_diameter: float, downstream_velocity: float
) -> float:
    """
    Sudden contraction loss `Kc v2²/2g` in metres, with
    `Kc = 0.5 (1 - min((D2/D1)², 1))`.

    :param upstream_diameter: Inlet diameter D1 (m).
    :param downstream_diameter: Outlet diameter D2 (m).
    :param downstream_velocity: Outlet velocity v2 (m/s).
    :return: Head loss (m).
    """
    if upstream_diameter <= 0:
        return 0.0
    area_ratio = min((downstream_diameter / upstream_diameter) ** 2, 1.0)
    contraction_coefficient = 0.5 * (1.0 - area_ratio)
    return contraction_coefficient * downstream_velocity**2 / (2 * G)


def convert_head_to_pressure(head: float, density: float) -> float:
    """Convert a head (m) to a pressure (Pa) `rho g h`."""
    return density * G * head


def compute_valve_loss_coefficient(
    subtype: typing.Union[ValveSubtype, str],
    opening: float,
    k_table: typing.Optional[typing.Sequence[ValveKPoint]] = None,
) -> float:
    """
    Opening dependent valve loss coefficient.

    A closed valve (opening <= 0) returns `CLOSED_VALVE_K`. With a K table the
    coefficient is linearly interpolated between the bracketing openings and
    clamped outside the table. Without one, the subtype base K is scaled by
    `10^(2 (1 - opening))`.

    :param subtype: Valve subtype.
    :param opening: Fractional opening (0.0 to 1.0).
    :param k_table: Optional (opening, K) characteristic.
    :return: Loss coefficient K.
    """
    if opening <= 0:
        return CLOSED_VALVE_K
    opening = min(opening, 1.0)

    if k_table:
        points = sorted(k_table, key=lambda point: point.opening)
        return linear_interpolate(
            [point.opening for point in points],
            [point.k for point in points],
            opening,
        ).value

    base_k = VALVE_BASE_K.get(ValveSubtype(subtype), DEFAULT_VALVE_BASE_K)
    return base_k * 10 ** (2.0 * (1.0 - opening))


@attrs.define(slots=True, frozen=True)
class PipeSegment:
    """A pipe run with lumped fittings, used for steady-state loss breakdowns."""

    diameter_mm: float = attrs.field(validator=attrs.validators.gt(0))
    """Internal diameter in millimetres"""
    length_m: float = attrs.field(validator=attrs.validators.ge(0))
    """Length in metres"""
    dz_m: float = 0.0
    """Elevation gain in metres"""
    eps_mm: float = 0.046
    """Absolute roughness in millimetres"""
    fittings: typing.Dict[str, int] = attrs.field(factory=dict)
    """Fitting counts keyed by fitting name"""
    fitting_k: typing.Dict[str, float] = attrs.field(factory=dict)
    """Loss coefficient per fitting name"""


@attrs.define(slots=True, frozen=True)
class SegmentLoss:
    """Head loss breakdown of a single segment. Heads in metres, pressure in Pa."""

    velocity: float
    reynolds_number: float
    regime: FlowRegime
    friction_factor: float
    friction_converged: bool
    k_total: float
    friction_head: float
    fittings_head: float
    elevation_head: float
    transition_head: float

    @property
    def total_head(self) -> float:
        return (
            self.friction_head
            + self.fittings_head
            + self.elevation_head
            + self.transition_head
        )

    def pressure_drop(self, density: float) -> float:
        return convert_head_to_pressure(self.total_head, density)


@attrs.define(slots=True, frozen=True)
class SystemLoss:
    """Steady-state loss summary of segments in series."""

    segments: typing.Tuple[SegmentLoss, ...]
    inlet_pressure: float
    """Inlet pressure (Pa)"""
    outlet_pressure: float
    """Outlet pressure (Pa)"""
    segment_pressures: typing.Tuple[typing.Tuple[float, float], ...]
    """Inlet and outlet pressure (Pa) of every segment"""

    @property
    def total_head(self) -> float:
        return sum(segment.total_head for segment in self.segments)

    @property
    def pressure_drop(self) -> float:
        return self.inlet_pressure - self.outlet_pressure

    def breakdown(self) -> typing.Dict[str, float]:
        """Total head (m) per loss category."""
        return {
            "friction": sum(s.friction_head for s in self.segments),
            "fittings": sum(s.fittings_head for s in self.segments),
            "elevation": sum(s.elevation_head for s in self.segments),
            "transition": sum(s.transition_head for s in self.segments),
        }


def compute_segment_loss(
    segment: PipeSegment,
    flow_rate: float,
    fluid: FluidSample,
    previous_diameter_mm: typing.Optional[float] = None,
) -> SegmentLoss:
    """
    Friction, fitting, elevation and transition losses of a pipe segment.

    :param segment: The segment.
    :param flow_rate: Volumetric flow rate (m³/s).
    :param fluid: Fluid properties.
    :param previous_diameter_mm: Diameter of the upstream segment, if any.
        A change in diameter adds a contraction or expansion loss.
    :return: `SegmentLoss`
    """
    diameter = segment.diameter_mm / 1000.0
    velocity = compute_flow_velocity(flow_rate, diameter)
    reynolds_number = compute_reynolds_number(velocity, diameter, fluid.nu)
    friction = solve_friction_factor(reynolds_number, diameter, segment.eps_mm)

    k_total = 0.0
    for name, count in segment.fittings.items():
        k = segment.fitting_k.get(name)
        if k is not None and count > 0:
            k_total += count * k

    transition_head = 0.0
    if previous_diameter_mm is not None:
        previous_diameter = previous_diameter_mm / 1000.0
        if diameter < previous_diameter:
            transition_head = compute_contraction_head_loss(
                previous_diameter, diameter, velocity
            )
        elif diameter > previous_diameter:
            transition_head = compute_expansion_head_loss(
                compute_flow_velocity(flow_rate, previous_diameter), velocity
            )

    return SegmentLoss(
        velocity=velocity,
        reynolds_number=reynolds_number,
        regime=friction.regime,
        friction_factor=friction.friction_factor,
        friction_converged=friction.converged,
        k_total=k_total,
        friction_head=compute_friction_head_loss(
            friction.friction_factor, segment.length_m, diameter, velocity
        ),
        fittings_head=compute_fitting_head_loss(k_total, velocity),
        elevation_head=compute_elevation_head_loss(segment.dz_m),
        transition_head=transition_head,
    )


def compute_system_losses(
    segments: typing.Sequence[PipeSegment],
    flow_rate: float,
    fluid: FluidSample,
    inlet_pressure: float = 0.0,
) -> SystemLoss:
    """
    Steady-state pressure profile of pipe segments in series.

    :param segments: Segments in flow order.
    :param flow_rate: Volumetric flow rate (m³/s).
    :param fluid: Fluid properties.
    :param inlet_pressure: Inlet gauge pressure (Pa).
    :return: `SystemLoss`
    """
    pressure = inlet_pressure
    losses: typing.List[SegmentLoss] = []
    pressures: typing.List[typing.Tuple[float, float]] = []
    previous: typing.Optional[PipeSegment] = None
    for segment in segments:
        loss = compute_segment_loss(
            segment,
            flow_rate,
            fluid,
            previous.diameter_mm if previous is not None else None,
        )
        outlet = pressure - loss.pressure_drop(fluid.rho)
        losses.append(loss)
        pressures.append((pressure, outlet))
        pressure = outlet
        previous = segment

    return SystemLoss(
        segments=tuple(losses),
        inlet_pressure=inlet_pressure,
        outlet_pressure=pressure,
        segment_pressures=tuple(pressures),
    )
