import enum
import logging
import typing
import attrs
import cattrs
import orjson
import re
from pint.facets.plain import PlainQuantity
from typing_extensions import ParamSpec

from hydroline.units import Quantity, Unit, UnitSystem, QuantityUnit, IMPERIAL, SI

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = typing.TypeVar("R")


def structure_quantity(obj: typing.Any, _) -> PlainQuantity:
    """Convert a dict with 'magnitude' and 'units' to a Pint Quantity."""
    if isinstance(obj, PlainQuantity):
        return Quantity(obj.magnitude, obj.units)
    if isinstance(obj, dict) and "magnitude" in obj and "units" in obj:
        return Quantity(obj["magnitude"], obj["units"])
    raise ValueError(f"Cannot structure {obj} as PlainQuantity")


def unstructure_quantity(obj: PlainQuantity) -> dict:
    """Convert a Pint Quantity to a dict with 'magnitude' and 'units'."""
    return {"magnitude": obj.magnitude, "units": str(obj.units)}


def structure_unit(obj: typing.Any, _: typing.Type[Unit]) -> Unit:
    """Convert a string to a Pint Unit."""
    if isinstance(obj, Unit):
        return obj
    if isinstance(obj, str):
        return Unit(obj)
    raise ValueError(f"Cannot structure {obj} as Unit")


def unstructure_unit(obj: Unit) -> str:
    """Convert a Pint Unit to a string."""
    return str(obj)


def structure_quantity_unit(
    obj: typing.Any, _: typing.Type[QuantityUnit]
) -> QuantityUnit:
    """Convert a dict to a QuantityUnit."""
    if isinstance(obj, QuantityUnit):
        return obj
    if isinstance(obj, dict) and "unit" in obj:
        return QuantityUnit(
            unit=obj["unit"],
            display=obj.get("display"),
            default=obj.get("default"),
        )
    raise ValueError(f"Cannot structure {obj} as QuantityUnit")


def unstructure_quantity_unit(obj: QuantityUnit) -> dict:
    """Convert a QuantityUnit to a dict."""
    return {
        "unit": str(obj.unit),
        "display": obj.display,
        "default": obj.default,
    }


def structure_unit_system(obj: typing.Any, _: typing.Type[UnitSystem]) -> UnitSystem:
    """Convert a dict to a UnitSystem."""
    if isinstance(obj, UnitSystem):
        return obj
    if isinstance(obj, dict):
        return UnitSystem(
            obj.get("name", "custom").lower(),
            {
                k: structure_quantity_unit(v, QuantityUnit)
                for k, v in obj.get("quantities", {}).items()
            },
        )
    raise ValueError(f"Cannot structure {obj} as UnitSystem")


def unstructure_unit_system(obj: UnitSystem) -> dict:
    """Convert a UnitSystem to a dict."""
    return {
        "name": obj.name.lower(),
        "quantities": {k: unstructure_quantity_unit(v) for k, v in obj.items()},
    }


converter = cattrs.Converter()
converter.register_structure_hook(PlainQuantity, structure_quantity)
converter.register_unstructure_hook(PlainQuantity, unstructure_quantity)
converter.register_structure_hook(Unit, structure_unit)
converter.register_unstructure_hook(Unit, unstructure_unit)
converter.register_structure_hook(QuantityUnit, structure_quantity_unit)
converter.register_unstructure_hook(QuantityUnit, unstructure_quantity_unit)
converter.register_structure_hook(UnitSystem, structure_unit_system)
converter.register_unstructure_hook(UnitSystem, unstructure_unit_system)


class ElementType(str, enum.Enum):
    """Enumeration of the hydraulic element kinds that can be chained in series."""

    PUMP = "pump"
    PIPE = "pipe"
    ELBOW = "elbow"
    TRANSITION = "transition"
    VALVE = "valve"

    def __str__(self) -> str:
        return self.value


class TransitionSubtype(str, enum.Enum):
    """Diameter transition kinds."""

    REDUCER = "reducer"
    EXPANDER = "expander"

    def __str__(self) -> str:
        return self.value


class ValveSubtype(str, enum.Enum):
    """Valve kinds. Each kind has its own base loss coefficient."""

    GATE = "gate"
    GLOBE = "globe"
    BUTTERFLY = "butterfly"
    BALL = "ball"
    CHECK = "check"
    PRV = "prv"
    """Pressure reducing valve. Caps the outlet pressure at its set pressure."""

    def __str__(self) -> str:
        return self.value


class NodeState(str, enum.Enum):
    """Hydraulic state of a single element after a network solve."""

    DRY = "dry"
    """Downstream of a closed valve. No flow reaches the element."""
    FILLING = "filling"
    """Reserved. Not assigned by the resolver."""
    FLOWING = "flowing"
    BLOCKED = "blocked"
    """A fully closed valve."""

    def __str__(self) -> str:
        return self.value


class FlowRegime(str, enum.Enum):
    """Flow regime classification by Reynolds number."""

    LAMINAR = "laminar"
    TRANSITIONAL = "transitional"
    TURBULENT = "turbulent"

    def __str__(self) -> str:
        return self.value


class SysState(str, enum.Enum):
    """Overall simulation state."""

    IDLE = "idle"
    RUNNING = "running"
    ALARM = "alarm"
    """Entered on a critical alarm and only left through stop or reset."""

    def __str__(self) -> str:
        return self.value


class PumpState(str, enum.Enum):
    """Pump operating state."""

    STOPPED = "stopped"
    RAMPING = "ramping"
    RUNNING = "running"
    OVERLOAD = "overload"

    def __str__(self) -> str:
        return self.value


class AlarmLevel(str, enum.Enum):
    """Alarm severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    def __str__(self) -> str:
        return self.value


class AlarmCode(str, enum.Enum):
    """Alarm codes raised by the simulation engine."""

    DEADHEAD = "DEADHEAD"
    NEGATIVE_PRESSURE = "NEGATIVE_PRESSURE"
    HIGH_VELOCITY = "HIGH_VELOCITY"
    FRICTION_NOT_CONVERGED = "FRICTION_NOT_CONVERGED"

    def __str__(self) -> str:
        return self.value


_positive = attrs.validators.gt(0)
_non_negative = attrs.validators.ge(0)
_fraction = attrs.validators.and_(attrs.validators.ge(0), attrs.validators.le(1))


def _optional_positive(instance, attribute, value) -> None:
    if value is not None and value <= 0:
        raise ValueError(f"'{attribute.name}' must be positive, got {value!r}")


@attrs.define(slots=True, frozen=True)
class ValveKPoint:
    """A single (opening, K) point of a valve characteristic table."""

    opening: float = attrs.field(converter=float, validator=_fraction)
    """Fractional opening (0.0 closed, 1.0 fully open)"""
    k: float = attrs.field(converter=float, validator=_non_negative)
    """Loss coefficient at this opening"""


def to_k_table(
    value: typing.Optional[typing.Iterable[typing.Any]],
) -> typing.Optional[typing.Tuple[ValveKPoint, ...]]:
    """
    Normalize a valve characteristic into a tuple of `ValveKPoint`.

    :param value: `ValveKPoint`s, (opening, K) pairs or {"opening", "k"} mappings.
    :return: The table, or None when no table is given.
    """
    if value is None:
        return None
    points = []
    for point in value:
        if isinstance(point, ValveKPoint):
            points.append(point)
        elif isinstance(point, dict):
            points.append(ValveKPoint(**point))
        else:
            points.append(ValveKPoint(*point))
    return tuple(points)


def check_k_table(table: typing.Optional[typing.Sequence[ValveKPoint]]) -> None:
    """Raise `ValueError` if two points of a valve characteristic share an opening."""
    if not table:
        return
    openings = [point.opening for point in table]
    if len(set(openings)) != len(openings):
        raise ValueError(f"Valve K table has duplicate openings: {sorted(openings)!r}")


def _distinct_openings(instance, attribute, value) -> None:
    check_k_table(value)


@attrs.define(slots=True, frozen=True, kw_only=True)
class PumpSpec:
    """Parameters of a centrifugal pump. The first pump in a chain sets the nominal flow."""

    type: typing.ClassVar[ElementType] = ElementType.PUMP

    id: str
    """Unique element identifier"""
    name: str = "Pump"
    """Display name"""
    q_nominal: float = attrs.field(default=0.0005, validator=_non_negative)
    """Nominal flow rate in m³/s"""
    head_m: float = attrs.field(default=20.0, validator=_non_negative)
    """Pump head in metres"""
    efficiency: float = attrs.field(
        default=0.75,
        validator=attrs.validators.and_(attrs.validators.gt(0), attrs.validators.le(1)),
    )
    """Pump efficiency (0 < efficiency <= 1)"""
    diameter_mm: float = attrs.field(default=53.1, validator=_positive)
    """Discharge diameter in millimetres"""


@attrs.define(slots=True, frozen=True, kw_only=True)
class PipeSpec:
    """Parameters of a straight pipe run."""

    type: typing.ClassVar[ElementType] = ElementType.PIPE

    id: str
    """Unique element identifier"""
    name: str = "Pipe"
    """Display name"""
    diameter_mm: float = attrs.field(default=53.1, validator=_positive)
    """Internal diameter in millimetres"""
    length_m: float = attrs.field(default=5.0, validator=_non_negative)
    """Pipe length in metres"""
    dz_m: float = 0.0
    """Elevation gain from inlet to outlet in metres"""
    eps_mm: float = attrs.field(default=0.046, validator=_non_negative)
    """Absolute wall roughness in millimetres"""


@attrs.define(slots=True, frozen=True, kw_only=True)
class ElbowSpec:
    """Parameters of an elbow fitting."""

    type: typing.ClassVar[ElementType] = ElementType.ELBOW

    id: str
    """Unique element identifier"""
    name: str = "Elbow"
    """Display name"""
    k: float = attrs.field(default=0.9, validator=_non_negative)
    """Fixed loss coefficient"""
    diameter_mm: typing.Optional[float] = attrs.field(
        default=None, validator=_optional_positive
    )
    """Diameter in millimetres. Inherits the upstream diameter when not set."""


@attrs.define(slots=True, frozen=True, kw_only=True)
class TransitionSpec:
    """Parameters of a reducer or expander."""

    type: typing.ClassVar[ElementType] = ElementType.TRANSITION

    id: str
    """Unique element identifier"""
    name: str = "Transition"
    """Display name"""
    subtype: TransitionSubtype = attrs.field(
        default=TransitionSubtype.REDUCER, converter=TransitionSubtype
    )
    """Nominal transition kind. The loss model follows the actual diameters."""
    d_in_mm: typing.Optional[float] = attrs.field(
        default=None, validator=_optional_positive
    )
    """Inlet diameter in millimetres. Inherits the upstream diameter when not set."""
    d_out_mm: float = attrs.field(default=53.1, validator=_positive)
    """Outlet diameter in millimetres"""
    length_m: float = attrs.field(default=0.3, validator=_non_negative)
    """Transition length in metres"""
    eps_mm: float = attrs.field(default=0.046, validator=_non_negative)
    """Absolute wall roughness in millimetres"""


@attrs.define(slots=True, frozen=True, kw_only=True)
class ValveSpec:
    """Parameters of an inline valve."""

    type: typing.ClassVar[ElementType] = ElementType.VALVE

    id: str
    """Unique element identifier"""
    name: str = "Valve"
    """Display name"""
    subtype: ValveSubtype = attrs.field(
        default=ValveSubtype.GATE, converter=ValveSubtype
    )
    """Valve kind"""
    opening: float = attrs.field(default=1.0, converter=float, validator=_fraction)
    """Fractional opening (0.0 closed, 1.0 fully open)"""
    k_table: typing.Optional[typing.Tuple[ValveKPoint, ...]] = attrs.field(
        default=None,
        converter=to_k_table,
        validator=_distinct_openings,
    )
    """Optional opening to K characteristic. Overrides the subtype base K."""
    diameter_mm: typing.Optional[float] = attrs.field(
        default=None, validator=_optional_positive
    )
    """Diameter in millimetres. Inherits the upstream diameter when not set."""
    set_pressure: typing.Optional[float] = None
    """Outlet pressure cap in Pa (gauge). Only used by PRV valves."""


ElementSpec = typing.Union[PumpSpec, PipeSpec, ElbowSpec, TransitionSpec, ValveSpec]

ELEMENT_SPEC_TYPES: typing.Dict[ElementType, typing.Type[typing.Any]] = {
    ElementType.PUMP: PumpSpec,
    ElementType.PIPE: PipeSpec,
    ElementType.ELBOW: ElbowSpec,
    ElementType.TRANSITION: TransitionSpec,
    ElementType.VALVE: ValveSpec,
}


def unstructure_element_spec(obj: typing.Any) -> dict:
    """Convert an element spec to a dict tagged with its element type."""
    return {"type": obj.type.value, **converter.unstructure_attrs_asdict(obj)}


def structure_element_spec(obj: typing.Any, _) -> typing.Any:
    """Convert a dict tagged with 'type' to the matching element spec."""
    if isinstance(obj, tuple(ELEMENT_SPEC_TYPES.values())):
        return obj
    if not isinstance(obj, dict) or "type" not in obj:
        raise ValueError(f"Cannot structure {obj!r} as an element spec")

    try:
        spec_cls = ELEMENT_SPEC_TYPES[ElementType(obj["type"])]
    except ValueError as exc:
        raise ValueError(f"Unknown element type {obj['type']!r}") from exc

    data = {key: value for key, value in obj.items() if key != "type"}
    return converter.structure_attrs_fromdict(data, spec_cls)


for _spec_cls in ELEMENT_SPEC_TYPES.values():
    converter.register_unstructure_hook(_spec_cls, unstructure_element_spec)
converter.register_structure_hook(ElementSpec, structure_element_spec)


def dumps_chain(specs: typing.Iterable[ElementSpec]) -> bytes:
    """
    Serialize an ordered chain of element specs to JSON bytes.

    :param specs: Element specs in flow order.
    :return: JSON encoded bytes. Each entry carries a 'type' tag.
    """
    return orjson.dumps(converter.unstructure(list(specs)))


def loads_chain(data: typing.Union[bytes, str]) -> typing.List[ElementSpec]:
    """
    Deserialize a chain previously produced by `dumps_chain`.

    :param data: JSON bytes or string.
    :return: List of element specs in flow order.
    """
    raw = orjson.loads(data)
    if not isinstance(raw, list):
        raise ValueError("Serialized chain must be a JSON array")
    return [structure_element_spec(item, ElementSpec) for item in raw]


@attrs.define(slots=True, frozen=True)
class FluidConfig:
    """Configuration for the working fluid."""

    fluid_id: str = "water"
    """Identifier of a registered fluid, e.g. 'water' or 'eg50'"""
    temperature: Quantity = attrs.field(factory=lambda: Quantity(20, "degC"))  # type: ignore
    """Temperature of the fluid"""


@attrs.define(slots=True, frozen=True)
class SimulationConfig:
    """Time stepping and alarm thresholds of the simulation engine."""

    tick_interval: float = attrs.field(default=0.1, validator=_positive)
    """Wall-clock seconds between ticks in the real-time loop"""
    time_step: float = attrs.field(default=0.1, validator=_positive)
    """Simulated seconds advanced per tick"""
    ramp_duration: float = attrs.field(default=2.0, validator=_positive)
    """Pump ramp-up window in seconds"""
    deadhead_threshold: float = attrs.field(default=5.0, validator=_non_negative)
    """Seconds of continuous deadhead before the alarm turns critical"""
    high_velocity_threshold: float = attrs.field(default=3.0, validator=_positive)
    """Pipe velocity in m/s above which an informational alarm is raised"""
    history_size: int = attrs.field(default=600, validator=_positive)
    """Number of snapshots retained in the rolling history"""
    inlet_pressure: float = 0.0
    """Gauge pressure at the chain inlet in Pa"""


@attrs.define(slots=True, frozen=True)
class Material:
    """Pipe wall material and its absolute roughness."""

    id: str
    name: str
    eps_mm: float = attrs.field(validator=_non_negative)
    """Absolute wall roughness in millimetres"""


MATERIALS: typing.Dict[str, Material] = {
    material.id: material
    for material in (
        Material("steel_new", "Seamless Steel (new)", 0.046),
        Material("steel_old", "Welded Steel (old)", 0.26),
        Material("cast_iron", "Cast Iron", 0.26),
        Material("pvc_pe", "PVC / PE", 0.003),
        Material("copper", "Copper / Brass", 0.0015),
    )
}


def get_material(material_id: str) -> Material:
    """
    Look up a pipe material by id.

    :param material_id: Catalog id, e.g. 'steel_new' or 'pvc_pe'.
    :raises ValueError: If the material is not in `MATERIALS`.
    """
    try:
        return MATERIALS[material_id]
    except KeyError:
        raise ValueError(
            f"Unknown material {material_id!r}. Available: {', '.join(MATERIALS)}"
        ) from None


def _known_material(instance, attribute, value) -> None:
    get_material(value)


@attrs.define(slots=True, frozen=True)
class SystemDefaults:
    """System-wide default parameters used by elements without explicit overrides."""

    diameter_mm: float = attrs.field(default=53.1, validator=_positive)
    """Default internal diameter in millimetres"""
    material_id: str = attrs.field(default="steel_new", validator=_known_material)
    """Default pipe material. Supplies the wall roughness unless `eps_mm` is set."""
    eps_mm: typing.Optional[float] = attrs.field(
        default=None,
        validator=attrs.validators.optional(_non_negative),
    )
    """Explicit default wall roughness in millimetres, taking precedence over the material"""
    length_m: float = attrs.field(default=5.0, validator=_non_negative)
    """Default pipe length in metres"""
    dz_m: float = 0.0
    """Default pipe elevation gain in metres"""
    elbow_k: float = attrs.field(default=0.9, validator=_non_negative)
    """Default elbow loss coefficient"""
    transition_length_m: float = attrs.field(default=0.3, validator=_non_negative)
    """Default transition length in metres"""
    q_nominal: float = attrs.field(default=0.0005, validator=_non_negative)
    """Default pump nominal flow rate in m³/s"""
    head_m: float = attrs.field(default=20.0, validator=_non_negative)
    """Default pump head in metres"""
    efficiency: float = attrs.field(
        default=0.75,
        validator=attrs.validators.and_(attrs.validators.gt(0), attrs.validators.le(1)),
    )
    """Default pump efficiency"""

    @property
    def roughness_mm(self) -> float:
        """Effective default wall roughness in millimetres"""
        if self.eps_mm is not None:
            return self.eps_mm
        return get_material(self.material_id).eps_mm


@attrs.define(slots=True, frozen=True)
class GlobalConfig:
    """Global application configuration"""

    unit_system_name: str = "si"
    """Name of the active unit system"""
    unit_systems: typing.Dict[str, UnitSystem] = attrs.field(
        factory=lambda: dict(si=SI, imperial=IMPERIAL)
    )
    """Unit systems available for snapshot formatting"""
    auto_save: bool = True
    """Whether to auto-save configurations"""


EventCallback = typing.Callable[[str, typing.Any], None]


class EventSubscription:
    """Represents a subscription to an event or events with pattern matching."""

    def __init__(self, event: str, callback: EventCallback):
        """
        Initialize event subscription.

        :param event: Event pattern or regex to match (e.g "*" for all, "simulation.*" for prefix, or exact event name)
        :param callback: Callback function to execute when event matches
        """
        self.event = event
        self.callback = callback
        self._is_wildcard = event == "*"
        self._is_prefix = event.endswith("*") and not self._is_wildcard
        self._prefix = event[:-1] if self._is_prefix else None
        self._is_regex = False

        # Regex special characters other than a trailing '*'
        if any(char in event for char in r"[](){}+?^$|\\") and not event == "*":
            self._is_regex = True
            try:
                self._regex = re.compile(event)
            except re.error:
                self._is_regex = False

    def matches(self, event: str) -> bool:
        """Check if the event matches this subscription's event pattern."""
        if self._is_wildcard:
            return True
        if self._is_regex:
            return bool(self._regex.match(event))
        if self._is_prefix:
            return event.startswith(self._prefix)  # type: ignore[arg-type]
        return event == self.event


class EventEmitter:
    """Pattern-matched observer registry shared by the pipeline and the simulation."""

    def __init__(self) -> None:
        self._subscriptions: typing.List[EventSubscription] = []

    def subscribe(self, event: str, callback: EventCallback) -> None:
        """
        Subscribe to events matching the given pattern.

        :param event: Event pattern to match:
            - "*" for all events
            - "simulation.*" for prefix matching
            - "simulation.tick" for exact event
            - Regex patterns are also supported

        :param callback: Function to call when event matches
        """
        subscription = EventSubscription(event, callback)
        # Remove existing subscription with same event pattern and callback
        self._subscriptions = [
            sub
            for sub in self._subscriptions
            if not (sub.event == event and sub.callback == callback)
        ]
        self._subscriptions.append(subscription)

    def unsubscribe(self, event: str, callback: EventCallback) -> None:
        """
        Remove a subscription for the given event and callback.

        :param event: The event pattern to remove.
        :param callback: The callback function to remove.
        """
        self._subscriptions = [
            sub
            for sub in self._subscriptions
            if not (sub.event == event and sub.callback == callback)
        ]

    def unsubscribe_all(self, callback: EventCallback) -> None:
        """Remove all subscriptions for the given callback."""
        self._subscriptions = [
            sub for sub in self._subscriptions if sub.callback != callback
        ]

    def notify(self, event: str, data: typing.Optional[typing.Dict] = None) -> None:
        """
        Notify all subscribers whose event patterns match the given event
        (sequentially, as they registered).

        :param event: The event name to notify.
        :param data: Optional data to pass to the callback.
        """
        if data is not None and not isinstance(data, dict):
            raise ValueError("Data must be a dictionary or None")

        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                try:
                    subscription.callback(event, data)
                except Exception as exc:
                    logger.error(
                        f"Error notifying observer for event '{event}': {exc}",
                        exc_info=True,
                    )
