"""
Main configuration management module.
"""

from typing_extensions import Self
import attrs
import orjson
import typing
import logging
from datetime import datetime

from hydroline.units import UnitSystem, SI
from hydroline.types import (
    converter,
    FluidConfig,
    GlobalConfig,
    SimulationConfig,
    SystemDefaults,
)
from hydroline.storages import StorageBackend

logger = logging.getLogger(__name__)

__all__ = ["Configuration", "ConfigurationState"]


def _flatten(obj: typing.Any, parent_key: str = "", sep: str = ".") -> typing.Dict[str, typing.Any]:
    """Recursively flatten a nested dictionary into dot notation keys"""
    if not isinstance(obj, dict):
        return {parent_key: obj}

    items: typing.Dict[str, typing.Any] = {}
    for k, v in obj.items():
        new_key = f"{parent_key}{sep}{k}" if parent_key else str(k)
        if isinstance(v, dict) and v:
            items.update(_flatten(v, new_key, sep=sep))
        else:
            items[new_key] = v
    return items


@attrs.define(slots=True, frozen=True)
class ConfigurationState:
    """Snapshot of every configuration section"""

    global_: GlobalConfig = attrs.field(factory=GlobalConfig)
    """Unit systems and persistence settings"""
    simulation: SimulationConfig = attrs.field(factory=SimulationConfig)
    """Simulation time stepping and alarm thresholds"""
    defaults: SystemDefaults = attrs.field(factory=SystemDefaults)
    """System-wide element defaults"""
    fluid: FluidConfig = attrs.field(factory=FluidConfig)
    """Working fluid"""
    last_updated: str = attrs.field(factory=lambda: datetime.now().isoformat())
    """Timestamp of the last update"""
    version: str = "1.0"
    """Configuration schema version"""

    def flatten(self) -> typing.Dict[str, typing.Any]:
        """Flatten the state into a dictionary keyed by dot paths"""
        return _flatten(converter.unstructure(self))

    def get(self, path: str, /) -> typing.Any:
        """Get nested configuration using dot notation (e.g., 'simulation.time_step')"""
        obj: typing.Any = self
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ValueError(f"Invalid configuration path: {path}")
            obj = getattr(obj, part)
        return obj

    def update(self, path: str, /, **kwargs: typing.Any) -> Self:
        """
        Update nested configuration using dot notation (e.g., 'simulation')

        Returns a new `ConfigurationState` instance with the updated values.

        :param path: Dot path of the nested record to update, or "." for the root
        :param kwargs: Field values to set on that record
        """
        now = datetime.now().isoformat()
        if path == ".":
            return attrs.evolve(self, **kwargs, last_updated=now)

        target = self.get(path)
        if not attrs.has(type(target)):
            raise ValueError(f"Configuration path {path!r} is not a configuration record")

        new_obj = attrs.evolve(target, **kwargs)
        # Rebuild the parents from the innermost record outwards
        parts = path.split(".")
        for depth in range(len(parts) - 1, 0, -1):
            parent = self.get(".".join(parts[:depth]))
            new_obj = attrs.evolve(parent, **{parts[depth]: new_obj})
        return attrs.evolve(self, **{parts[0]: new_obj}, last_updated=now)


class Configuration:
    """
    Simulator configuration: simulation stepping, element defaults, the working
    fluid and display units, persisted through storage backends.
    """

    def __init__(
        self,
        id: str,
        storages: typing.Optional[typing.List[StorageBackend]] = None,
        save_throttle: float = 5.0,
    ) -> None:
        """
        Initialize configuration.

        :param id: Unique identifier for the configuration (e.g., a project or user name)
        :param storages: List of storage backends to use. They are tried in order
            when loading, and all of them are written when saving.
        :param save_throttle: Minimum seconds between automatic saves (default: 5.0s)
        """
        self.id = id
        self.storages = storages or []
        self._state = ConfigurationState()
        self._observers: typing.List[typing.Callable[[ConfigurationState], typing.Any]] = []
        self.save_throttle = save_throttle
        self._last_saved_at = 0.0
        self.load()
        logger.debug(f"Configuration initialized with ID: {self.id}")

    @property
    def state(self) -> ConfigurationState:
        """The current (immutable) configuration state"""
        return self._state

    def observe(self, observer: typing.Callable[[ConfigurationState], typing.Any]):
        """Register a callable invoked with the new state after every change"""
        if observer not in self._observers:
            self._observers.append(observer)
        return observer

    def unobserve(self, observer: typing.Callable[[ConfigurationState], typing.Any]):
        """Stop notifying the given observer"""
        if observer in self._observers:
            self._observers.remove(observer)
        return observer

    def notify(self) -> None:
        """Call every observer with the current state"""
        for observer in list(self._observers):
            try:
                observer(self._state)
            except Exception as exc:
                logger.error(f"Error notifying config observer: {exc}", exc_info=True)

    def get_unit_system(self) -> UnitSystem:
        """Get the active unit system"""
        global_state = self._state.global_
        unit_systems = {
            **GlobalConfig().unit_systems,
            **global_state.unit_systems,
        }
        return unit_systems.get(global_state.unit_system_name, SI)

    def add_unit_system(self, unit_system: UnitSystem) -> None:
        """Register a custom unit system for snapshot formatting"""
        self.update(
            "global_",
            unit_systems={
                **self._state.global_.unit_systems,
                unit_system.name: unit_system,
            },
        )

    def get_unit_systems(self) -> typing.List[str]:
        """Get the names of the available unit systems"""
        return sorted(
            set(self._state.global_.unit_systems) | set(GlobalConfig().unit_systems)
        )

    def get(self, path: str, /) -> typing.Any:
        """Get nested configuration using dot notation (e.g., 'fluid.fluid_id')"""
        return self._state.get(path)

    def update(self, path: str, /, **kwargs: typing.Any) -> None:
        """Update nested configuration using dot notation (e.g., 'defaults')"""
        self._state = self._state.update(path, **kwargs)
        if self._state.global_.auto_save:
            now = datetime.now().timestamp()
            if now - self._last_saved_at >= self.save_throttle:
                self._last_saved_at = now
                self.save()
        self.notify()

    def load(self, storage: typing.Optional[StorageBackend] = None) -> bool:
        """
        Restore the state from the first backend that holds a readable copy.

        :param storage: Read only this backend instead of `self.storages`
        :return: True if a stored state was found and applied
        """
        candidates = [storage] if storage else self.storages
        for backend in candidates:
            raw = backend.read(backend.get_key(self.id))
            if not raw:
                continue
            try:
                self._state = converter.structure(raw, ConfigurationState)
            except Exception as exc:
                logger.error(
                    f"Stored configuration {self.id!r} in {type(backend).__name__} is unreadable: {exc}",
                    exc_info=True,
                )
                continue
            logger.debug(f"Configuration {self.id!r} restored from {type(backend).__name__}")
            return True

        logger.info(f"Configuration {self.id!r} has no stored copy, starting from defaults")
        return False

    def _persist(self, backend: StorageBackend, payload: typing.Dict[str, typing.Any]) -> None:
        key = backend.get_key(self.id)
        if backend.exists(key):
            backend.update(key, payload, overwrite=True)
        else:
            backend.create(key, payload)

    def save(self) -> None:
        """Write the current state to every storage backend"""
        payload = converter.unstructure(self._state)
        for backend in self.storages:
            try:
                self._persist(backend, payload)
            except Exception as exc:
                logger.error(
                    f"Could not persist configuration {self.id!r} to {type(backend).__name__}: {exc}",
                    exc_info=True,
                )
            else:
                logger.debug(f"Configuration {self.id!r} written to {type(backend).__name__}")

    def reset(self) -> None:
        """Restore the default state and persist it"""
        self._state = ConfigurationState()
        self.save()
        self.notify()
        logger.info(f"Configuration {self.id!r} restored to defaults")

    def export(self) -> str:
        """Serialize the state to an indented JSON string"""
        return orjson.dumps(
            converter.unstructure(self._state), option=orjson.OPT_INDENT_2
        ).decode()

    def import_(self, json_str: typing.Union[str, bytes]) -> None:
        """Replace the state with one produced by `export`, then persist it"""
        self._state = converter.structure(orjson.loads(json_str), ConfigurationState)
        self.save()
        self.notify()
