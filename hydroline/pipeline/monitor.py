from collections import deque
import logging
from os import PathLike
from pathlib import Path
import typing

import h5py
import orjson

from hydroline.pipeline.simulation import SimulationEngine, SimulationSnapshot
from hydroline.types import converter
from hydroline.units import SI, UnitSystem


logger = logging.getLogger(__name__)

__all__ = [
    "monitor_simulation",
    "interval_ratelimitter",
    "format_snapshot",
    "BaseFileStreamer",
    "JsonFileStreamer",
    "HDF5FileStreamer",
]

SnapshotStreamer = typing.Callable[[SimulationSnapshot], None]
RateLimitter = typing.Callable[[SimulationEngine], bool]
F = typing.TypeVar("F")
Formatter = typing.Callable[[SimulationSnapshot], F]

# Snapshot fields in SI base units, keyed by unit system quantity
_NODE_QUANTITIES = {
    "p_in": ("pressure", "Pa"),
    "p_out": ("pressure", "Pa"),
    "dp_major": ("pressure", "Pa"),
    "dp_minor": ("pressure", "Pa"),
    "dp_elevation": ("pressure", "Pa"),
    "dp_total": ("pressure", "Pa"),
    "v": ("velocity", "m/s"),
    "power": ("power", "W"),
}


def monitor_simulation(
    engine: SimulationEngine,
    streamer: SnapshotStreamer,
    ratelimitter: typing.Optional[RateLimitter] = None,
) -> typing.Callable[[str, typing.Any], None]:
    """
    Creates a monitor that streams every tick snapshot of the engine.

    :param engine: The `SimulationEngine` instance to monitor.
    :param streamer: A callable that takes a `SimulationSnapshot` and writes it to a stream or some sort of persistent storage.
    :param ratelimitter: An optional `RateLimitter` callable to control streaming frequency.
    :return: The callable subscribed to the engine's tick event.
    """

    def _monitor_simulation(event: str, data: typing.Any) -> None:
        if ratelimitter is not None and not ratelimitter(engine):
            logger.debug("Rate limited snapshot streaming.")
            return

        snapshot: SimulationSnapshot = data["snapshot"]
        logger.debug(f"Streaming snapshot at t={snapshot.t:.1f}s")
        streamer(snapshot)

    engine.on_tick(_monitor_simulation)
    return _monitor_simulation


def interval_ratelimitter(interval: int) -> RateLimitter:
    """
    Creates a rate limiter that allows streaming every `interval` calls.

    :param interval: The number of calls between allowed writes.
    :return: A `RateLimitter` callable.
    """
    if interval < 1:
        raise ValueError("Interval must be at least 1")
    counter = 0

    def _ratelimitter(engine: SimulationEngine) -> bool:
        nonlocal counter
        counter += 1
        if counter >= interval:
            counter = 0
            return True
        return False

    return _ratelimitter


def format_snapshot(
    snapshot: SimulationSnapshot, unit_system: UnitSystem = SI
) -> typing.Dict[str, typing.Any]:
    """
    Converts a snapshot into a plain dictionary expressed in `unit_system`.

    :param snapshot: The snapshot to format.
    :param unit_system: Target unit system. Pressures, velocities, flow rates,
        volumes and powers are converted; everything else is left as is.
    :return: A JSON-serializable dictionary.
    """
    data = converter.unstructure(snapshot)
    data["q"] = unit_system.convert("flow_rate", snapshot.q, "m^3/s")
    data["total_volume"] = unit_system.convert(
        "flow_volume", snapshot.total_volume, "m^3"
    )
    for node in data["nodes"]:
        for name, (key, from_unit) in _NODE_QUANTITIES.items():
            if node.get(name) is not None:
                node[name] = unit_system.convert(key, node[name], from_unit)

    data["units"] = {
        key: str(unit_system[key])
        for key in ("pressure", "velocity", "flow_rate", "flow_volume", "power")
    }
    return data


class BaseFileStreamer(typing.Generic[F]):
    """Base class for streaming simulation snapshots to a file."""

    def __init__(
        self,
        filepath: typing.Union[str, PathLike],
        formatter: typing.Optional[Formatter[F]] = None,
        batch_size: typing.Optional[int] = None,
    ) -> None:
        """
        Initializes the file streamer.

        :param filepath: The path to the file where snapshots will be streamed.
        :param formatter: An optional formatter to convert `SimulationSnapshot` to type `F`.
        :param batch_size: An optional batch size for buffering snapshots before writing.
        """
        self.filepath = Path(filepath)
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        self.formatter = formatter
        self.batch_size = batch_size
        self._queue: typing.Deque[SimulationSnapshot] = deque()

    def __call__(self, snapshot: SimulationSnapshot) -> None:
        """Streams the given snapshot to the file."""
        self._queue.append(snapshot)
        if self.batch_size is None or len(self._queue) >= self.batch_size:
            self._flush()

    def _serialize(
        self, item: typing.Union[F, SimulationSnapshot]
    ) -> typing.Any:
        if isinstance(item, SimulationSnapshot):
            return converter.unstructure(item)
        return item

    def read(self) -> typing.List[typing.Any]:
        """
        Reads back everything streamed to the file so far.

        :return: The stored records, oldest first.
        """
        raise NotImplementedError

    def write(self, data: typing.Sequence[typing.Union[F, SimulationSnapshot]]) -> None:
        """Writes the given data to the file. Must be implemented by subclasses."""
        raise NotImplementedError

    def _flush(self) -> None:
        """Flushes the queued snapshots to the file."""
        if not self._queue:
            return
        batch = list(self._queue)
        self._queue.clear()
        if self.formatter is not None:
            self.write([self.formatter(snapshot) for snapshot in batch])
        else:
            self.write(batch)

    def shutdown(self) -> None:
        """Flushes any remaining data in the queue to the file."""
        self._flush()


class JsonFileStreamer(BaseFileStreamer[typing.Dict[str, typing.Any]]):
    """Streams snapshots as JSON to a file holding an array of objects."""

    def read(self) -> typing.List[typing.Any]:
        if not self.filepath.exists():
            return []

        content = self.filepath.read_bytes()
        if not content:
            return []
        loaded = orjson.loads(content)
        if not isinstance(loaded, list):
            raise ValueError(f"Existing data in file {self.filepath} is not a JSON array.")
        return loaded

    def write(
        self,
        data: typing.Sequence[
            typing.Union[typing.Dict[str, typing.Any], SimulationSnapshot]
        ],
    ) -> None:
        """
        Appends the given data to the JSON array in the file.

        :param data: A sequence of `SimulationSnapshot` objects or dictionaries to write.
        """
        records = self.read() + [self._serialize(item) for item in data]
        with self.filepath.open("wb") as f:
            f.write(orjson.dumps(records, option=orjson.OPT_INDENT_2))


class HDF5FileStreamer(BaseFileStreamer[SimulationSnapshot]):
    """Streams snapshots to an HDF5 file, one JSON document per row."""

    dataset_name = "snapshots"

    def write(self, data: typing.Sequence[typing.Any]) -> None:
        """
        Appends the given data to the HDF5 dataset.

        :param data: A sequence of `SimulationSnapshot` objects or dictionaries to write.
        """
        with h5py.File(self.filepath, "a") as hdf5_file:
            if self.dataset_name not in hdf5_file:
                dataset = hdf5_file.create_dataset(
                    self.dataset_name,
                    shape=(0,),
                    maxshape=(None,),
                    dtype=h5py.string_dtype(encoding="utf-8"),
                    chunks=True,
                    compression="gzip",
                    compression_opts=4,
                )
            else:
                dataset = hdf5_file[self.dataset_name]

            current_size = dataset.shape[0]  # type: ignore
            dataset.resize((current_size + len(data),))  # type: ignore
            for offset, item in enumerate(data):
                row = orjson.dumps(self._serialize(item)).decode("utf-8")
                dataset[current_size + offset] = row  # type: ignore
            hdf5_file.flush()

    def read(self) -> typing.List[typing.Any]:
        if not self.filepath.exists():
            return []

        with h5py.File(self.filepath, "r") as hdf5_file:
            if self.dataset_name not in hdf5_file:
                return []
            rows = hdf5_file[self.dataset_name][()]  # type: ignore
            # h5py returns variable-length strings as bytes
            return [
                orjson.loads(row if isinstance(row, (bytes, str)) else bytes(row))
                for row in rows
            ]
