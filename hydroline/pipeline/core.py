import functools
import itertools
import logging
import typing

import attrs
from typing_extensions import Self

from hydroline.types import (
    ElbowSpec,
    ElementSpec,
    ElementType,
    EventEmitter,
    P,
    PipeSpec,
    PumpSpec,
    R,
    SystemDefaults,
    TransitionSpec,
    TransitionSubtype,
    ValveSpec,
    ValveSubtype,
    check_k_table,
    dumps_chain,
    loads_chain,
    to_k_table,
)

logger = logging.getLogger(__name__)


__all__ = [
    "PipelineError",
    "Element",
    "PumpElement",
    "PipeElement",
    "ElbowElement",
    "TransitionElement",
    "ValveElement",
    "element_from_spec",
    "Pipeline",
]

_element_ids = itertools.count(1)


class PipelineError(Exception):
    """Exception raised when the pipeline chain is misused (e.g. unknown element id)."""

    pass


class Element:
    """
    Base class for elements of the authoring chain.

    Parameters resolve in two layers: a per-element override if one is set,
    otherwise the system-wide default from `SystemDefaults`.
    """

    element_type: typing.ClassVar[ElementType]
    default_name: typing.ClassVar[str] = "Element"
    parameters: typing.ClassVar[typing.Dict[str, typing.Optional[str]]] = {}
    """Overridable parameters mapped to the `SystemDefaults` attribute they fall back to"""

    def __init__(
        self,
        name: typing.Optional[str] = None,
        *,
        element_id: typing.Optional[str] = None,
        defaults: typing.Optional[SystemDefaults] = None,
        **overrides: typing.Any,
    ):
        """
        Initialize an element.

        :param name: Display name of the element
        :param element_id: Unique identifier. Generated when not given.
        :param defaults: System defaults used until the element joins a pipeline
        :param overrides: Initial parameter overrides
        """
        self.id = element_id or f"{self.element_type.value}-{next(_element_ids)}"
        self.name = name or self.default_name
        self._defaults = defaults or SystemDefaults()
        self._overrides: typing.Dict[str, typing.Any] = {}
        self._pipeline: typing.Optional["Pipeline"] = None
        for key, value in overrides.items():
            self.override(key, value)

    @property
    def defaults(self) -> SystemDefaults:
        return self._defaults

    @property
    def overrides(self) -> typing.Dict[str, typing.Any]:
        """A copy of the element's explicit overrides."""
        return dict(self._overrides)

    def override(self, key: str, value: typing.Any) -> Self:
        """
        Override a parameter for this element only.

        :param key: Parameter name.
        :param value: New value. `None` removes the override.
        :return: self for method chaining
        """
        if key not in self.parameters:
            raise PipelineError(
                f"{self.__class__.__name__} has no parameter {key!r}. "
                f"Available: {', '.join(self.parameters)}"
            )
        if value is None:
            self._overrides.pop(key, None)
        else:
            self._overrides[key] = value
        if self._pipeline is not None:
            self._pipeline._on_element_changed(self, key, value)
        return self

    def has_override(self, key: str) -> bool:
        return key in self._overrides

    def get_override(self, key: str) -> typing.Any:
        return self._overrides.get(key)

    def clear_overrides(self) -> Self:
        for key in list(self._overrides):
            self.override(key, None)
        return self

    def resolve(self, key: str) -> typing.Any:
        """
        Resolve a parameter: the override if set, otherwise the system default.

        :param key: Parameter name.
        :return: The resolved value, or None when the parameter has no default.
        """
        if key in self._overrides:
            return self._overrides[key]
        if key not in self.parameters:
            raise PipelineError(
                f"{self.__class__.__name__} has no parameter {key!r}"
            )
        default_field = self.parameters[key]
        if default_field is None:
            return None
        return getattr(self._defaults, default_field)

    @property
    def outlet_diameter_mm(self) -> float:
        """Diameter (mm) the flow leaves this element with."""
        diameter = self.resolve("diameter_mm")
        if diameter is not None:
            return diameter
        # Fittings without a diameter carry the upstream one
        if self._pipeline is not None:
            index = self._pipeline._index_of(self.id)
            if index > 0:
                return self._pipeline[index - 1].outlet_diameter_mm
        return self._defaults.diameter_mm

    def get_params(self) -> ElementSpec:
        """Return an immutable spec of the element's resolved parameters."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(id={self.id!r}, name={self.name!r}, "
            f"overrides={self._overrides!r})"
        )


class PumpElement(Element):
    """Centrifugal pump."""

    element_type = ElementType.PUMP
    default_name = "Pump"
    parameters = {
        "q_nominal": "q_nominal",
        "head_m": "head_m",
        "efficiency": "efficiency",
        "diameter_mm": "diameter_mm",
    }

    def get_params(self) -> PumpSpec:
        return PumpSpec(
            id=self.id,
            name=self.name,
            q_nominal=self.resolve("q_nominal"),
            head_m=self.resolve("head_m"),
            efficiency=self.resolve("efficiency"),
            diameter_mm=self.resolve("diameter_mm"),
        )


class PipeElement(Element):
    """Straight pipe run."""

    element_type = ElementType.PIPE
    default_name = "Pipe"
    parameters = {
        "diameter_mm": "diameter_mm",
        "length_m": "length_m",
        "dz_m": "dz_m",
        "eps_mm": "roughness_mm",
    }

    def get_params(self) -> PipeSpec:
        return PipeSpec(
            id=self.id,
            name=self.name,
            diameter_mm=self.resolve("diameter_mm"),
            length_m=self.resolve("length_m"),
            dz_m=self.resolve("dz_m"),
            eps_mm=self.resolve("eps_mm"),
        )


class ElbowElement(Element):
    """Elbow fitting with a fixed loss coefficient."""

    element_type = ElementType.ELBOW
    default_name = "Elbow"
    parameters = {"k": "elbow_k", "diameter_mm": None}

    def get_params(self) -> ElbowSpec:
        return ElbowSpec(
            id=self.id,
            name=self.name,
            k=self.resolve("k"),
            diameter_mm=self.resolve("diameter_mm"),
        )


class TransitionElement(Element):
    """Reducer or expander between two diameters."""

    element_type = ElementType.TRANSITION
    default_name = "Transition"
    parameters = {
        "d_in_mm": None,
        "d_out_mm": "diameter_mm",
        "length_m": "transition_length_m",
        "eps_mm": "roughness_mm",
    }

    def __init__(
        self,
        subtype: typing.Union[TransitionSubtype, str] = TransitionSubtype.REDUCER,
        name: typing.Optional[str] = None,
        **kwargs: typing.Any,
    ):
        self.subtype = TransitionSubtype(subtype)
        super().__init__(name or self.subtype.value.capitalize(), **kwargs)

    @property
    def outlet_diameter_mm(self) -> float:
        return self.resolve("d_out_mm")

    def get_params(self) -> TransitionSpec:
        return TransitionSpec(
            id=self.id,
            name=self.name,
            subtype=self.subtype,
            d_in_mm=self.resolve("d_in_mm"),
            d_out_mm=self.resolve("d_out_mm"),
            length_m=self.resolve("length_m"),
            eps_mm=self.resolve("eps_mm"),
        )


class ValveElement(Element):
    """Inline valve with an adjustable opening."""

    element_type = ElementType.VALVE
    default_name = "Valve"
    parameters = {
        "opening": None,
        "k_table": None,
        "diameter_mm": None,
        "set_pressure": None,
    }

    def __init__(
        self,
        subtype: typing.Union[ValveSubtype, str] = ValveSubtype.GATE,
        name: typing.Optional[str] = None,
        **kwargs: typing.Any,
    ):
        self.subtype = ValveSubtype(subtype)
        super().__init__(name or f"{self.subtype.value.capitalize()} Valve", **kwargs)

    def override(self, key: str, value: typing.Any) -> Self:
        if key == "k_table" and value is not None:
            value = to_k_table(value)
            check_k_table(value)
        return super().override(key, value)

    @property
    def opening(self) -> float:
        opening = self.resolve("opening")
        return 1.0 if opening is None else opening

    def set_opening(self, opening: float) -> Self:
        """
        Set the valve opening.

        :param opening: Fractional opening, clamped to [0, 1].
        :return: self for method chaining
        """
        return self.override("opening", min(max(float(opening), 0.0), 1.0))

    def open(self) -> Self:
        return self.set_opening(1.0)

    def close(self) -> Self:
        return self.set_opening(0.0)

    def is_closed(self) -> bool:
        return self.opening <= 0

    def get_params(self) -> ValveSpec:
        return ValveSpec(
            id=self.id,
            name=self.name,
            subtype=self.subtype,
            opening=self.opening,
            k_table=self.resolve("k_table"),
            diameter_mm=self.resolve("diameter_mm"),
            set_pressure=self.resolve("set_pressure"),
        )


ELEMENT_TYPES: typing.Dict[ElementType, typing.Type[Element]] = {
    ElementType.PUMP: PumpElement,
    ElementType.PIPE: PipeElement,
    ElementType.ELBOW: ElbowElement,
    ElementType.TRANSITION: TransitionElement,
    ElementType.VALVE: ValveElement,
}


def element_from_spec(
    spec: ElementSpec, defaults: typing.Optional[SystemDefaults] = None
) -> Element:
    """
    Build an authoring element from a spec. Every spec value becomes an explicit override.

    :param spec: Element spec.
    :param defaults: System defaults for the element.
    :return: The element.
    """
    element_cls = ELEMENT_TYPES[spec.type]
    values = attrs.asdict(spec, recurse=False)
    kwargs: typing.Dict[str, typing.Any] = {
        "element_id": values.pop("id"),
        "name": values.pop("name"),
        "defaults": defaults,
    }
    if "subtype" in values:
        kwargs["subtype"] = values.pop("subtype")
    overrides = {key: value for key, value in values.items() if value is not None}
    return element_cls(**kwargs, **overrides)


def _invalidates_specs_cache(func: typing.Callable[P, R]) -> typing.Callable[P, R]:
    """Wrapper to invalidate the cached element specs after mutating Pipeline methods."""

    def _wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        pipeline = args[0]
        if not isinstance(pipeline, Pipeline):
            raise TypeError(
                f"First argument must be Pipeline, got {type(pipeline).__name__}"
            )
        result = func(*args, **kwargs)
        pipeline._specs_cache = None
        return result

    return functools.update_wrapper(_wrapper, func)


class Pipeline(EventEmitter):
    """
    Ordered, mutable chain of hydraulic elements in series.

    Events (see `subscribe`):
    - "pipeline.element.added" with data {"element", "index"}
    - "pipeline.element.removed" with data {"element", "index"}
    - "pipeline.element.moved" with data {"element", "from_index", "to_index"}
    - "pipeline.element.changed" with data {"element", "key", "value"}
    - "pipeline.defaults.changed" with data {"defaults"}
    - "pipeline.cleared" with data None

    Usage:

    ```python
    pipeline = Pipeline()
    pipeline.add_element(PumpElement()).add_element(PipeElement(length_m=10))
    pipeline.add_element(ValveElement("globe"))
    specs = pipeline.specs()
    ```
    """

    def __init__(
        self,
        name: str = "Pipeline",
        defaults: typing.Optional[SystemDefaults] = None,
        elements: typing.Optional[typing.Iterable[Element]] = None,
    ):
        """
        Initialize the pipeline.

        :param name: Name of the pipeline
        :param defaults: System-wide default parameters
        :param elements: Initial elements, in flow order
        """
        super().__init__()
        self.name = name
        self._defaults = defaults or SystemDefaults()
        self._elements: typing.List[Element] = []
        self._specs_cache: typing.Optional[typing.List[ElementSpec]] = None
        for element in elements or []:
            self.add_element(element)

    @property
    def defaults(self) -> SystemDefaults:
        return self._defaults

    @property
    def elements(self) -> typing.List[Element]:
        """A copy of the elements in flow order."""
        return list(self._elements)

    def __len__(self) -> int:
        return len(self._elements)

    def __iter__(self) -> typing.Iterator[Element]:
        return iter(list(self._elements))

    def __getitem__(self, index: int) -> Element:
        return self._elements[index]

    def _index_of(self, element_id: str) -> int:
        for index, element in enumerate(self._elements):
            if element.id == element_id:
                return index
        raise PipelineError(f"No element with id {element_id!r} in {self.name!r}")

    def get_element(self, element_id: str) -> Element:
        """
        Get an element by id.

        :param element_id: Element identifier
        :return: The element
        :raises PipelineError: If no element has the given id
        """
        return self._elements[self._index_of(element_id)]

    @_invalidates_specs_cache
    def add_element(
        self, element: Element, index: typing.Optional[int] = None
    ) -> Self:
        """
        Insert an element into the chain.

        Fittings without an explicit diameter inherit the outlet diameter of
        the element before them.

        :param element: Element to insert
        :param index: Position to insert at (default appends)
        :return: self for method chaining
        :raises PipelineError: If an element with the same id is already in the chain
        """
        if any(existing.id == element.id for existing in self._elements):
            raise PipelineError(f"Element id {element.id!r} is already in {self.name!r}")
        if element._pipeline is not None and element._pipeline is not self:
            raise PipelineError(
                f"Element {element.id!r} already belongs to {element._pipeline.name!r}"
            )

        if index is None:
            index = len(self._elements)
        elif index < 0:
            index = max(len(self._elements) + index + 1, 0)
        index = min(index, len(self._elements))

        if index > 0:
            upstream_diameter = self._elements[index - 1].outlet_diameter_mm
            if element.element_type is ElementType.TRANSITION:
                if not element.has_override("d_in_mm"):
                    element.override("d_in_mm", upstream_diameter)
            elif (
                element.element_type is not ElementType.PIPE
                and "diameter_mm" in element.parameters
                and not element.has_override("diameter_mm")
            ):
                element.override("diameter_mm", upstream_diameter)

        element._defaults = self._defaults
        element._pipeline = self
        self._elements.insert(index, element)
        logger.debug(f"Added {element!r} to {self.name!r} at index {index}")
        self.notify("pipeline.element.added", {"element": element, "index": index})
        return self

    @_invalidates_specs_cache
    def remove_element(self, element_id: str) -> Element:
        """
        Remove an element from the chain.

        :param element_id: Element identifier
        :return: The removed element
        :raises PipelineError: If no element has the given id
        """
        index = self._index_of(element_id)
        element = self._elements.pop(index)
        element._pipeline = None
        logger.debug(f"Removed {element!r} from {self.name!r}")
        self.notify("pipeline.element.removed", {"element": element, "index": index})
        return element

    @_invalidates_specs_cache
    def move_element(self, element_id: str, index: int) -> Self:
        """
        Move an element to a new position.

        :param element_id: Element identifier
        :param index: New position
        :return: self for method chaining
        :raises PipelineError: If no element has the given id
        """
        from_index = self._index_of(element_id)
        element = self._elements.pop(from_index)
        if index < 0:
            index = len(self._elements) + index + 1
        index = min(max(index, 0), len(self._elements))
        self._elements.insert(index, element)
        self.notify(
            "pipeline.element.moved",
            {"element": element, "from_index": from_index, "to_index": index},
        )
        return self

    @_invalidates_specs_cache
    def clear(self) -> Self:
        """Remove all elements."""
        for element in self._elements:
            element._pipeline = None
        self._elements.clear()
        self.notify("pipeline.cleared", None)
        return self

    @_invalidates_specs_cache
    def set_defaults(
        self, defaults: typing.Optional[SystemDefaults] = None, **changes: typing.Any
    ) -> Self:
        """
        Replace or update the system-wide defaults.

        :param defaults: New defaults. The current ones are kept when not given.
        :param changes: Individual default fields to change, e.g. `diameter_mm=26.9`
        :return: self for method chaining
        """
        defaults = defaults or self._defaults
        if changes:
            defaults = attrs.evolve(defaults, **changes)
        self._defaults = defaults
        for element in self._elements:
            element._defaults = defaults
        self.notify("pipeline.defaults.changed", {"defaults": defaults})
        return self

    def _on_element_changed(self, element: Element, key: str, value: typing.Any) -> None:
        self._specs_cache = None
        self.notify(
            "pipeline.element.changed", {"element": element, "key": key, "value": value}
        )

    def specs(self) -> typing.List[ElementSpec]:
        """Resolved element specs in flow order."""
        if self._specs_cache is None:
            self._specs_cache = [element.get_params() for element in self._elements]
        return list(self._specs_cache)

    def export(self) -> bytes:
        """Serialize the chain to JSON bytes."""
        return dumps_chain(self.specs())

    @_invalidates_specs_cache
    def import_(self, data: typing.Union[bytes, str]) -> Self:
        """
        Replace the chain with one previously produced by `export`.

        :param data: JSON bytes or string
        :return: self for method chaining
        """
        elements = [element_from_spec(spec) for spec in loads_chain(data)]
        self.clear()
        for element in elements:
            self.add_element(element)
        logger.info(f"Imported {len(elements)} elements into {self.name!r}")
        return self

    @classmethod
    def from_specs(
        cls,
        specs: typing.Iterable[ElementSpec],
        name: str = "Pipeline",
        defaults: typing.Optional[SystemDefaults] = None,
    ) -> "Pipeline":
        """Build a pipeline whose elements reproduce the given specs."""
        return cls(
            name=name,
            defaults=defaults,
            elements=[element_from_spec(spec, defaults) for spec in specs],
        )

