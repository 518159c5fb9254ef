"""
Temperature-dependent fluid properties.

Fluids are described by a `FluidDefinition`, which carries a tabulated
property set (`FluidTable`), an empirical fallback (`FluidCorrelation`), or
both. `FluidPropertyResolver` turns a temperature into a `FluidSample` in
canonical SI units. All unit conversion for fluid properties happens in this
module.
"""

import csv
import enum
import logging
import math
import typing
from pathlib import Path

import attrs
import cachetools
import orjson
from CoolProp.CoolProp import PropsSI
from pint.facets.plain import PlainQuantity

from hydroline.interpolation import MonotoneCubicInterpolator
from hydroline.units import Quantity, to_magnitude

logger = logging.getLogger(__name__)

__all__ = [
    "FluidSample",
    "FluidTable",
    "ViscosityModel",
    "FluidCorrelation",
    "FluidDefinition",
    "FluidPropertyResolver",
    "parse_fluid_csv",
    "load_fluid_definition",
    "FLUIDS",
    "register_fluid",
    "get_fluid_resolver",
]

SI_PROPERTY_UNITS: typing.Dict[str, str] = {
    "rho": "kg/m^3",
    "mu": "Pa*s",
    "cp": "J/(kg*K)",
    "k": "W/(m*K)",
    "Pr": "dimensionless",
}
"""Canonical unit of every supported property column"""

DEFAULT_TABLE_UNITS: typing.Dict[str, str] = {
    "rho": "kg/m^3",
    "mu": "mPa*s",
    "cp": "kJ/(kg*K)",
    "k": "W/(m*K)",
    "Pr": "dimensionless",
}
"""Units assumed for table columns when none are declared"""

REQUIRED_COLUMNS = ("rho", "mu")
OPTIONAL_COLUMNS = ("cp", "k", "Pr")
TEMPERATURE_COLUMN = "T_C"
REQUIRED_FLUID_KEYS = ("id", "name", "valid_range", "polynomial_fallback")


def _convert(value: float, from_unit: str, to_unit: str) -> float:
    if from_unit == to_unit:
        return float(value)
    return float(Quantity(value, from_unit).to(to_unit).magnitude)


@attrs.define(slots=True, frozen=True)
class FluidSample:
    """Fluid properties at a single temperature, in canonical SI units."""

    rho: float = attrs.field(converter=float, validator=attrs.validators.gt(0))
    """Density (kg/m³)"""
    mu: float = attrs.field(converter=float, validator=attrs.validators.gt(0))
    """Dynamic viscosity (Pa·s)"""
    T_C: typing.Optional[float] = None
    """Temperature (°C) the sample was resolved at, if any"""
    cp: typing.Optional[float] = None
    """Specific heat capacity (J/(kg·K))"""
    k: typing.Optional[float] = None
    """Thermal conductivity (W/(m·K))"""
    Pr: typing.Optional[float] = None
    """Prandtl number"""
    source: str = "direct"
    """Where the values came from: 'table', 'correlation', 'direct' or 'coolprop'"""
    used_fallback: bool = False
    """Whether the correlation fallback was used instead of a table"""
    warnings: typing.Tuple[str, ...] = attrs.field(default=(), converter=tuple)
    """Non-fatal warnings raised while resolving the sample"""

    @property
    def nu(self) -> float:
        """Kinematic viscosity (m²/s)."""
        return self.mu / self.rho

    @classmethod
    def from_density_viscosity(
        cls,
        rho: typing.Union[float, PlainQuantity[float]],
        mu: typing.Union[float, PlainQuantity[float]],
    ) -> "FluidSample":
        """
        Build a sample directly from density and dynamic viscosity.

        :param rho: Density in kg/m³, or a pint quantity.
        :param mu: Dynamic viscosity in Pa·s, or a pint quantity.
        :return: `FluidSample` with source 'direct'.
        """
        return cls(
            rho=to_magnitude(rho, "kg/m^3"),
            mu=to_magnitude(mu, "Pa*s"),
            source="direct",
        )


@attrs.define(slots=True, frozen=True)
class FluidTable:
    """Temperature-indexed property table."""

    temperatures: typing.Tuple[float, ...] = attrs.field(
        converter=lambda values: tuple(float(v) for v in values)
    )
    """Strictly increasing temperatures (°C)"""
    columns: typing.Dict[str, typing.Tuple[float, ...]] = attrs.field(
        converter=lambda cols: {
            name: tuple(float(v) for v in values) for name, values in cols.items()
        }
    )
    """Property columns keyed by name ('rho', 'mu', 'cp', 'k', 'Pr')"""
    units: typing.Dict[str, str] = attrs.field(factory=dict)
    """Unit of each column. Missing entries use `DEFAULT_TABLE_UNITS`."""

    def __attrs_post_init__(self) -> None:
        missing = [name for name in REQUIRED_COLUMNS if name not in self.columns]
        if missing:
            raise ValueError(f"Fluid table is missing required columns: {missing}")
        for name, values in self.columns.items():
            if len(values) != len(self.temperatures):
                raise ValueError(
                    f"Fluid table column {name!r} has {len(values)} rows, "
                    f"expected {len(self.temperatures)}"
                )

    def unit_of(self, column: str) -> str:
        return self.units.get(column, DEFAULT_TABLE_UNITS.get(column, "dimensionless"))

    @classmethod
    def from_coolprop(
        cls,
        fluid_name: str,
        temperatures_c: typing.Iterable[float],
        pressure: PlainQuantity[float] = Quantity(1, "atm"),  # type: ignore
    ) -> "FluidTable":
        """
        Build a property table by querying CoolProp at a fixed pressure.

        :param fluid_name: Name of the fluid as recognized by CoolProp
                           (e.g., "Water", "MEG", "INCOMP::MEG-50%").
        :param temperatures_c: Temperatures (°C) to tabulate, strictly increasing.
        :param pressure: Absolute pressure (as a Quantity, convertible to Pa).
        :return: `FluidTable` with columns in canonical SI units.
        """
        pressure_pa = pressure.to("Pa").magnitude
        temperatures = [float(t) for t in temperatures_c]
        columns: typing.Dict[str, typing.List[float]] = {
            name: [] for name in ("rho", "mu", "cp", "k", "Pr")
        }
        for temperature_c in temperatures:
            temperature_k = Quantity(temperature_c, "degC").to("K").magnitude
            columns["rho"].append(
                PropsSI("Dmass", "P", pressure_pa, "T", temperature_k, fluid_name)
            )
            columns["mu"].append(
                PropsSI("V", "P", pressure_pa, "T", temperature_k, fluid_name)
            )
            columns["cp"].append(
                PropsSI("Cpmass", "P", pressure_pa, "T", temperature_k, fluid_name)
            )
            columns["k"].append(
                PropsSI("L", "P", pressure_pa, "T", temperature_k, fluid_name)
            )
            columns["Pr"].append(
                PropsSI("Prandtl", "P", pressure_pa, "T", temperature_k, fluid_name)
            )
        return cls(
            temperatures=temperatures,
            columns=columns,
            units=dict(SI_PROPERTY_UNITS),
        )


class ViscosityModel(str, enum.Enum):
    """Empirical dynamic viscosity models."""

    ARRHENIUS = "arrhenius"
    """mu = A * 10^(B / (T + 273.15 - C))"""
    VOGEL = "vogel"
    """mu = A * exp(B / (T + C))"""

    def __str__(self) -> str:
        return self.value


@attrs.define(slots=True, frozen=True)
class FluidCorrelation:
    """Empirical property correlations in temperature (°C)."""

    density_coefficients: typing.Tuple[float, ...] = attrs.field(converter=tuple)
    """Polynomial coefficients a0, a1, a2, ... with rho = a0 + a1*T + a2*T² + ..."""
    viscosity_coefficients: typing.Tuple[float, float, float] = attrs.field(
        converter=tuple
    )
    """Viscosity model coefficients (A, B, C)"""
    viscosity_model: ViscosityModel = attrs.field(
        default=ViscosityModel.ARRHENIUS, converter=ViscosityModel
    )
    """Viscosity model the coefficients belong to"""
    density_unit: str = "kg/m^3"
    """Unit of the density polynomial"""
    viscosity_unit: str = "mPa*s"
    """Unit of the viscosity model output"""
    cp_coefficients: typing.Optional[typing.Tuple[float, ...]] = attrs.field(
        default=None, converter=attrs.converters.optional(tuple)
    )
    """Heat capacity coefficients c0, c1 with cp = c0 + c1*T"""
    cp_unit: str = "kJ/(kg*K)"
    """Unit of the heat capacity correlation"""

    def __attrs_post_init__(self) -> None:
        if not self.density_coefficients:
            raise ValueError("Density correlation needs at least one coefficient")
        if len(self.viscosity_coefficients) != 3:
            raise ValueError("Viscosity correlation needs exactly three coefficients")

    def density(self, temperature_c: float) -> float:
        return sum(
            a * temperature_c**i for i, a in enumerate(self.density_coefficients)
        )

    def viscosity(self, temperature_c: float) -> float:
        a, b, c = self.viscosity_coefficients
        if self.viscosity_model is ViscosityModel.VOGEL:
            return a * math.exp(b / (temperature_c + c))
        return a * 10 ** (b / (temperature_c + 273.15 - c))

    def heat_capacity(self, temperature_c: float) -> typing.Optional[float]:
        if not self.cp_coefficients:
            return None
        return sum(a * temperature_c**i for i, a in enumerate(self.cp_coefficients))


@attrs.define(slots=True, frozen=True)
class FluidDefinition:
    """A named fluid with its valid temperature range and property sources."""

    id: str
    """Registry identifier, e.g. 'water'"""
    name: str
    """Human readable name"""
    t_min_c: float
    """Lower bound of the valid temperature range (°C)"""
    t_max_c: float
    """Upper bound of the valid temperature range (°C)"""
    table: typing.Optional[FluidTable] = None
    """Tabulated properties, preferred when available"""
    correlation: typing.Optional[FluidCorrelation] = None
    """Empirical fallback used when no table is available"""

    def __attrs_post_init__(self) -> None:
        if self.t_min_c > self.t_max_c:
            raise ValueError(
                f"Invalid valid range for fluid {self.id!r}: "
                f"[{self.t_min_c}, {self.t_max_c}]"
            )


class FluidPropertyResolver:
    """
    Resolves fluid properties at a temperature.

    Tables are interpolated with monotone cubic interpolation. When no table
    is available the correlation fallback is used. Results are cached on the
    temperature rounded to 0.01 °C.

    Usage:

    ```python
    resolver = FluidPropertyResolver(FLUIDS["water"])
    sample = resolver.get_properties(20.0)
    sample.rho, sample.mu, sample.nu
    ```
    """

    def __init__(self, definition: FluidDefinition, cache_size: int = 128) -> None:
        if definition.table is None and definition.correlation is None:
            raise ValueError(
                f"Fluid {definition.id!r} has neither a property table nor a correlation"
            )
        self.definition = definition
        self._interpolators: typing.Dict[str, MonotoneCubicInterpolator] = {}
        if definition.table is not None:
            table = definition.table
            for name in REQUIRED_COLUMNS + OPTIONAL_COLUMNS:
                if name in table.columns:
                    self._interpolators[name] = MonotoneCubicInterpolator(
                        table.temperatures, table.columns[name]
                    )
        self._cache: cachetools.LRUCache = cachetools.LRUCache(maxsize=cache_size)

    @property
    def uses_table(self) -> bool:
        return bool(self._interpolators)

    def get_properties(
        self, temperature: typing.Union[float, PlainQuantity[float]]
    ) -> FluidSample:
        """
        Resolve fluid properties at the given temperature.

        :param temperature: Temperature in °C, or a pint quantity.
        :return: `FluidSample` in canonical SI units.
        """
        temperature_c = round(to_magnitude(temperature, "degC"), 2)
        cached = self._cache.get(temperature_c)
        if cached is not None:
            return cached

        sample = self._resolve(temperature_c)
        self._cache[temperature_c] = sample
        return sample

    def clear_cache(self) -> None:
        self._cache.clear()

    def _resolve(self, temperature_c: float) -> FluidSample:
        definition = self.definition
        warnings: typing.List[str] = []
        if not (definition.t_min_c <= temperature_c <= definition.t_max_c):
            message = (
                f"T={temperature_c:g}°C is outside the valid range of "
                f"{definition.name} [{definition.t_min_c:g}, {definition.t_max_c:g}]°C"
            )
            logger.warning(message)
            warnings.append(message)

        if self.uses_table:
            return self._from_table(temperature_c, warnings)
        return self._from_correlation(temperature_c, warnings)

    def _from_table(self, temperature_c: float, warnings: typing.List[str]) -> FluidSample:
        table = typing.cast(FluidTable, self.definition.table)
        values: typing.Dict[str, typing.Optional[float]] = dict.fromkeys(
            OPTIONAL_COLUMNS
        )
        for name, interpolator in self._interpolators.items():
            result = interpolator(temperature_c)
            if result.warning and name in REQUIRED_COLUMNS:
                warnings.append(f"{name}: {result.warning}")
            values[name] = _convert(
                result.value, table.unit_of(name), SI_PROPERTY_UNITS[name]
            )

        return FluidSample(
            rho=values["rho"],
            mu=values["mu"],
            T_C=temperature_c,
            cp=values["cp"],
            k=values["k"],
            Pr=values["Pr"],
            source="table",
            used_fallback=False,
            warnings=warnings,
        )

    def _from_correlation(
        self, temperature_c: float, warnings: typing.List[str]
    ) -> FluidSample:
        correlation = typing.cast(FluidCorrelation, self.definition.correlation)
        warnings.append(
            f"No property table for {self.definition.name}; using correlation fallback"
        )
        rho = _convert(
            correlation.density(temperature_c),
            correlation.density_unit,
            SI_PROPERTY_UNITS["rho"],
        )
        mu = _convert(
            correlation.viscosity(temperature_c),
            correlation.viscosity_unit,
            SI_PROPERTY_UNITS["mu"],
        )
        cp = correlation.heat_capacity(temperature_c)
        if cp is not None:
            cp = _convert(cp, correlation.cp_unit, SI_PROPERTY_UNITS["cp"])

        return FluidSample(
            rho=rho,
            mu=mu,
            T_C=temperature_c,
            cp=cp,
            source="correlation",
            used_fallback=True,
            warnings=warnings,
        )


def parse_fluid_csv(
    text: str, units: typing.Optional[typing.Mapping[str, str]] = None
) -> FluidTable:
    """
    Parse a fluid property table from CSV text.

    Lines starting with '#' are comments. The first remaining line is the
    header and must contain a 'T_C' column.

    :param text: CSV text.
    :param units: Optional unit for each column.
    :return: `FluidTable`
    """
    lines = [
        line.strip()
        for line in text.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]
    if len(lines) < 2:
        raise ValueError("Fluid CSV needs a header row and at least one data row")

    rows = list(csv.reader(lines))
    headers = [header.strip() for header in rows[0]]
    if TEMPERATURE_COLUMN not in headers:
        raise ValueError(f"Fluid CSV header has no {TEMPERATURE_COLUMN!r} column")

    data: typing.Dict[str, typing.List[float]] = {header: [] for header in headers}
    for line_number, row in enumerate(rows[1:], start=2):
        if len(row) != len(headers):
            raise ValueError(
                f"Fluid CSV row {line_number}: {len(row)} columns, expected {len(headers)}"
            )
        for header, cell in zip(headers, row):
            try:
                data[header].append(float(cell))
            except ValueError as exc:
                raise ValueError(
                    f"Fluid CSV row {line_number}: invalid number {cell!r} in column {header!r}"
                ) from exc

    temperatures = data.pop(TEMPERATURE_COLUMN)
    return FluidTable(temperatures=temperatures, columns=data, units=dict(units or {}))


def _correlation_from_metadata(fallback: typing.Mapping[str, typing.Any]) -> FluidCorrelation:
    density = fallback.get("density")
    viscosity = fallback.get("dynamic_viscosity")
    if not density or not viscosity:
        raise ValueError(
            "Fluid 'polynomial_fallback' requires 'density' and 'dynamic_viscosity'"
        )

    heat_capacity = fallback.get("heat_capacity") or {}
    try:
        return FluidCorrelation(
            density_coefficients=density["coefficients"],
            density_unit=density.get("unit", "kg/m^3"),
            viscosity_coefficients=(viscosity["A"], viscosity["B"], viscosity["C"]),
            viscosity_model=viscosity.get("model", ViscosityModel.ARRHENIUS),
            viscosity_unit=viscosity.get("unit", "mPa*s"),
            cp_coefficients=heat_capacity.get("coefficients"),
            cp_unit=heat_capacity.get("unit", "kJ/(kg*K)"),
        )
    except KeyError as exc:
        raise ValueError(f"Fluid 'polynomial_fallback' is missing {exc}") from exc


def load_fluid_definition(
    json_path: typing.Union[str, Path],
    csv_path: typing.Optional[typing.Union[str, Path]] = None,
) -> FluidDefinition:
    """
    Load a fluid definition from JSON metadata and an optional CSV table.

    A missing or malformed CSV is logged and the correlation fallback stays
    active.

    :param json_path: Path to the fluid metadata JSON.
    :param csv_path: Optional path to the property table CSV.
    :return: `FluidDefinition`
    """
    with open(json_path, "rb") as file:
        metadata = orjson.loads(file.read())

    if not isinstance(metadata, dict):
        raise ValueError(f"Fluid metadata in {json_path} must be a JSON object")
    missing = [key for key in REQUIRED_FLUID_KEYS if key not in metadata]
    if missing:
        raise ValueError(f"Fluid metadata is missing keys: {', '.join(missing)}")

    valid_range = metadata["valid_range"]
    try:
        t_min_c = float(valid_range["T_min_C"])
        t_max_c = float(valid_range["T_max_C"])
    except (KeyError, TypeError) as exc:
        raise ValueError(
            "Fluid 'valid_range' requires 'T_min_C' and 'T_max_C'"
        ) from exc

    correlation = _correlation_from_metadata(metadata["polynomial_fallback"])

    table = None
    if csv_path is not None:
        try:
            text = Path(csv_path).read_text(encoding="utf-8")
            table = parse_fluid_csv(text, metadata.get("table_units"))
            logger.info(
                f"Loaded {len(table.temperatures)} property rows for {metadata['name']}"
            )
        except (OSError, ValueError) as exc:
            logger.warning(
                f"Could not load property table {csv_path} ({exc}); "
                "using correlation fallback"
            )
            table = None

    return FluidDefinition(
        id=str(metadata["id"]),
        name=str(metadata["name"]),
        t_min_c=t_min_c,
        t_max_c=t_max_c,
        table=table,
        correlation=correlation,
    )


WATER = FluidDefinition(
    id="water",
    name="Water",
    t_min_c=0.0,
    t_max_c=150.0,
    table=FluidTable(
        temperatures=(0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100),
        columns={
            "rho": (
                999.84, 999.70, 998.21, 995.65, 992.22, 988.04,
                983.20, 977.76, 971.79, 965.31, 958.35,
            ),
            "mu": (
                1.792, 1.307, 1.002, 0.798, 0.653, 0.547,
                0.467, 0.404, 0.355, 0.315, 0.282,
            ),
            "cp": (
                4.217, 4.192, 4.182, 4.178, 4.179, 4.181,
                4.185, 4.190, 4.197, 4.205, 4.216,
            ),
            "k": (
                0.561, 0.580, 0.598, 0.615, 0.631, 0.644,
                0.654, 0.663, 0.670, 0.675, 0.679,
            ),
            "Pr": (
                13.47, 9.45, 7.01, 5.42, 4.32, 3.55,
                2.99, 2.55, 2.22, 1.96, 1.75,
            ),
        },
        units=dict(DEFAULT_TABLE_UNITS),
    ),
    correlation=FluidCorrelation(
        density_coefficients=(999.84, 0.067, -0.0089, 0.000035),
        viscosity_model=ViscosityModel.VOGEL,
        viscosity_coefficients=(0.02427, 578.919, 135.604),
        cp_coefficients=(4.18, 0.0001),
    ),
)

ETHYLENE_GLYCOL_50 = FluidDefinition(
    id="eg50",
    name="Ethylene Glycol 50%",
    t_min_c=-30.0,
    t_max_c=120.0,
    correlation=FluidCorrelation(
        density_coefficients=(1085.1, -0.523, -0.0018),
        viscosity_model=ViscosityModel.VOGEL,
        viscosity_coefficients=(0.00711, 1338.4, 193.4),
        cp_coefficients=(3.3, 0.005),
    ),
)

FLUIDS: typing.Dict[str, FluidDefinition] = {
    WATER.id: WATER,
    ETHYLENE_GLYCOL_50.id: ETHYLENE_GLYCOL_50,
}
"""Registry of built-in and registered fluids"""

_resolvers: typing.Dict[str, FluidPropertyResolver] = {}


def register_fluid(definition: FluidDefinition, replace: bool = False) -> None:
    """
    Add a fluid definition to the registry.

    :param definition: Fluid definition to register.
    :param replace: Replace an existing fluid with the same id.
    """
    if definition.id in FLUIDS and not replace:
        raise ValueError(f"Fluid {definition.id!r} is already registered")
    FLUIDS[definition.id] = definition
    _resolvers.pop(definition.id, None)
    logger.info(f"Registered fluid {definition.id!r} ({definition.name})")


def get_fluid_resolver(fluid_id: str) -> FluidPropertyResolver:
    """
    Return the shared resolver for a registered fluid.

    :param fluid_id: Registry identifier, e.g. 'water'.
    :return: `FluidPropertyResolver`
    """
    resolver = _resolvers.get(fluid_id)
    if resolver is not None:
        return resolver
    try:
        definition = FLUIDS[fluid_id]
    except KeyError as exc:
        raise ValueError(
            f"Unknown fluid {fluid_id!r}. Available: {', '.join(sorted(FLUIDS))}"
        ) from exc
    resolver = _resolvers[fluid_id] = FluidPropertyResolver(definition)
    return resolver
