import typing
from pint import UnitRegistry
from pint.facets.plain import PlainQuantity
from collections import defaultdict
import attrs

__all__ = [
    "QuantityUnit",
    "UnitSystem",
    "IMPERIAL",
    "SI",
    "ureg",
    "Quantity",
    "Unit",
    "to_magnitude",
]

ureg = UnitRegistry()
Quantity = ureg.Quantity  # type: ignore[assignment]
Unit = ureg.Unit


def to_magnitude(
    value: typing.Union[float, int, PlainQuantity[float]], unit: str
) -> float:
    """
    Return the magnitude of `value` in `unit`.

    Plain numbers are assumed to already be expressed in `unit`.

    :param value: A number or a pint quantity.
    :param unit: Target unit, e.g. 'Pa*s', 'm^2/s'.
    :return: Magnitude as a float.
    """
    if isinstance(value, PlainQuantity):
        return float(value.to(unit).magnitude)
    return float(value)


@attrs.define(frozen=True, slots=True)
class QuantityUnit:
    """Unit for a specific physical quantity"""

    unit: Unit = attrs.field(converter=Unit)
    """Pint supported unit, e.g., 'psi', 'bar', 'm^3/s'."""
    display: typing.Optional[str] = attrs.field(default=None)
    """Optional display string, e.g., 'm³/h'."""
    default: typing.Optional[float] = attrs.field(default=None)
    """Default value for the quantity in the specified unit, if applicable."""

    def __str__(self) -> str:
        return self.display or str(self.unit)


QuantityUnitT = typing.TypeVar("QuantityUnitT", bound=QuantityUnit)


class UnitSystem(defaultdict[str, QuantityUnitT]):
    """
    A unit system that maps quantity names to their QuantityUnit definitions.

    Subclass of defaultdict to allow easy access to units like a dictionary.

    Example:

    ```python
    field = UnitSystem("field")
    field['pressure'] = QuantityUnit(unit='bar')
    field['flow_rate'] = QuantityUnit(unit='m^3/h', display='m³/h')

    pressure_unit = field['pressure'].unit  # bar
    ```
    """

    def __init__(
        self,
        name: str,
        __map: typing.Optional[typing.Mapping[str, QuantityUnitT]] = None,
        /,
        *,
        default_factory: typing.Optional[typing.Callable[[], QuantityUnitT]] = None,
        **kwargs: typing.Any,
    ):
        """Initialize UnitSystem with optional name and mapping."""
        self.name = name
        if default_factory is None:

            def _default_factory() -> QuantityUnitT:
                return typing.cast(
                    QuantityUnitT, QuantityUnit(unit="dimensionless", default=None)
                )

            default_factory = _default_factory

        map_ = dict(__map or {}, **kwargs)
        super().__init__(default_factory, map_)

    def __missing__(self, key: str) -> QuantityUnitT:
        """Return default QuantityUnit for missing keys."""
        return self.default_factory()  # type: ignore

    def convert(self, key: str, magnitude: float, from_unit: str) -> float:
        """
        Convert a magnitude expressed in `from_unit` to this system's unit for `key`.

        :param key: Quantity name, e.g. 'pressure'.
        :param magnitude: Value in `from_unit`.
        :param from_unit: Unit the magnitude is expressed in.
        :return: Magnitude in this system's unit.
        """
        return float(Quantity(magnitude, from_unit).to(self[key].unit).magnitude)

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.name})"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name}, units={dict(self)})"


SI = UnitSystem(
    "si",
    {
        "length": QuantityUnit(unit="m", display="m"),
        "diameter": QuantityUnit(unit="mm", display="mm"),
        "pressure": QuantityUnit(unit="Pa", display="Pa"),
        "temperature": QuantityUnit(unit="degC", display="°C", default=20.0),
        "flow_rate": QuantityUnit(unit="m^3/s", display="m³/s"),
        "flow_volume": QuantityUnit(unit="m^3", display="m³"),
        "roughness": QuantityUnit(unit="mm", display="mm"),
        "elevation": QuantityUnit(unit="m", display="m", default=0.0),
        "velocity": QuantityUnit(unit="m/s", display="m/s"),
        "density": QuantityUnit(unit="kg/m^3", display="kg/m³"),
        "viscosity": QuantityUnit(unit="Pa*s", display="Pa⋅s"),
        "kinematic_viscosity": QuantityUnit(unit="m^2/s", display="m²/s"),
        "power": QuantityUnit(unit="W", display="W"),
    },
)

IMPERIAL = UnitSystem(
    "imperial",
    {
        "length": QuantityUnit(unit="ft", display="ft"),
        "diameter": QuantityUnit(unit="inch", display="in"),
        "pressure": QuantityUnit(unit="psi", display="psi"),
        "temperature": QuantityUnit(unit="degF", display="°F", default=68.0),
        "flow_rate": QuantityUnit(unit="gallon/minute", display="gpm"),
        "flow_volume": QuantityUnit(unit="gallon", display="gal"),
        "roughness": QuantityUnit(unit="inch", display="in"),
        "elevation": QuantityUnit(unit="ft", display="ft", default=0.0),
        "velocity": QuantityUnit(unit="ft/s", display="ft/s"),
        "density": QuantityUnit(unit="lb/ft^3", display="lb/ft³"),
        "viscosity": QuantityUnit(unit="cP", display="cP"),
        "kinematic_viscosity": QuantityUnit(unit="ft^2/s", display="ft²/s"),
        "power": QuantityUnit(unit="hp", display="hp"),
    },
)
