"""
Main Entry Point for the Hydroline simulator.

Builds a demo chain, runs the simulation headless and streams snapshots to a file.

Environment (optionally from a `.env` file):
- HYDROLINE_LOG_LEVEL: logging level (default INFO)
- HYDROLINE_CONFIG_DIR: directory for stored configurations (default .hydroline/configs)
- HYDROLINE_CONFIG_ID: configuration id (default "default")
- HYDROLINE_FLUID: fluid id, overrides the configured fluid
- HYDROLINE_TEMPERATURE: fluid temperature in °C, overrides the configured one
- HYDROLINE_DURATION: simulated seconds to run (default 10)
- HYDROLINE_REALTIME: run on the wall clock when "1"/"true" (default off)
- HYDROLINE_OUTPUT: snapshot output file, .json or .h5 (default .hydroline/snapshots.json)
- HYDROLINE_STREAM_INTERVAL: stream every n-th tick (default 10)
- HYDROLINE_UNIT_SYSTEM: unit system for streamed snapshots, overrides the configured one
"""

import asyncio
import logging
import os
import typing
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from hydroline.config.core import Configuration
from hydroline.pipeline.core import (
    ElbowElement,
    Pipeline,
    PipeElement,
    PumpElement,
    TransitionElement,
    ValveElement,
)
from hydroline.pipeline.monitor import (
    BaseFileStreamer,
    HDF5FileStreamer,
    JsonFileStreamer,
    format_snapshot,
    interval_ratelimitter,
    monitor_simulation,
)
from hydroline.pipeline.simulation import SimulationEngine
from hydroline.properties import get_fluid_resolver
from hydroline.storages import JSONFileStorage
from hydroline.types import TransitionSubtype, ValveSubtype
from hydroline.units import to_magnitude

load_dotenv(
    find_dotenv(str(Path.cwd() / ".env"), raise_error_if_not_found=False),
    encoding="utf-8",
)

logging.basicConfig(
    level=os.getenv("HYDROLINE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - [%(name)s:%(funcName)s:%(lineno)d] - %(levelname)s - %(message)s",
    force=True,
)

logger = logging.getLogger(__name__)


def build_demo_pipeline(config: Configuration) -> Pipeline:
    """Pump, pipe run, elbow, reducer, smaller pipe and a globe valve."""
    pipeline = Pipeline(name="Demo Loop", defaults=config.state.defaults)
    pipeline.add_element(PumpElement())
    pipeline.add_element(PipeElement(length_m=10.0))
    pipeline.add_element(ElbowElement())
    pipeline.add_element(PipeElement(length_m=4.0, dz_m=2.0))
    pipeline.add_element(TransitionElement(TransitionSubtype.REDUCER, d_out_mm=40.9))
    pipeline.add_element(PipeElement(diameter_mm=40.9, length_m=6.0))
    pipeline.add_element(ValveElement(ValveSubtype.GLOBE, name="Outlet Valve"))
    return pipeline


def build_streamer(output: Path, config: Configuration) -> BaseFileStreamer:
    unit_system = config.get_unit_system()
    if unit_system_name := os.getenv("HYDROLINE_UNIT_SYSTEM"):
        config.update("global_", unit_system_name=unit_system_name)
        unit_system = config.get_unit_system()

    def _formatter(snapshot) -> typing.Dict[str, typing.Any]:
        return format_snapshot(snapshot, unit_system)

    if output.suffix in (".h5", ".hdf5"):
        return HDF5FileStreamer(output, formatter=_formatter, batch_size=10)
    return JsonFileStreamer(output, formatter=_formatter, batch_size=10)


def main() -> None:
    config_storage = JSONFileStorage(
        storage_dir=os.getenv("HYDROLINE_CONFIG_DIR", Path.cwd() / ".hydroline/configs"),
        namespace="config",
    )
    config = Configuration(
        id=os.getenv("HYDROLINE_CONFIG_ID", "default"), storages=[config_storage]
    )

    fluid_config = config.state.fluid
    fluid_id = os.getenv("HYDROLINE_FLUID", fluid_config.fluid_id)
    temperature = float(
        os.getenv("HYDROLINE_TEMPERATURE", to_magnitude(fluid_config.temperature, "degC"))
    )
    fluid = get_fluid_resolver(fluid_id).get_properties(temperature)
    for warning in fluid.warnings:
        logger.warning(warning)

    pipeline = build_demo_pipeline(config)
    engine = SimulationEngine(pipeline, fluid=fluid, config=config.state.simulation)

    def _log_alarms(event: str, data: typing.Any) -> None:
        for alarm in data["alarms"]:
            logger.warning(f"[{alarm.level}] {alarm.code}: {alarm.message}")

    engine.on_alarm(_log_alarms)

    output = Path(os.getenv("HYDROLINE_OUTPUT", Path.cwd() / ".hydroline/snapshots.json"))
    streamer = build_streamer(output, config)
    monitor_simulation(
        engine,
        streamer,
        interval_ratelimitter(int(os.getenv("HYDROLINE_STREAM_INTERVAL", "10"))),
    )

    duration = float(os.getenv("HYDROLINE_DURATION", "10"))
    realtime = os.getenv("HYDROLINE_REALTIME", "").lower() in ("1", "true", "yes")
    logger.info(
        f"Running {pipeline.name!r} ({len(pipeline)} elements) with {fluid_id} "
        f"at {temperature:.1f}°C for {duration:.1f}s"
    )
    engine.start()
    try:
        if realtime:
            ticks = int(round(duration / engine.config.time_step))
            asyncio.run(engine.run(max_ticks=ticks))
        else:
            engine.run_for(duration)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        engine.stop()
        streamer.shutdown()

    snapshot = engine.last_snapshot
    if snapshot is not None:
        logger.info(
            f"t={snapshot.t:.1f}s q={snapshot.q * 1000:.3f} L/s "
            f"delivered={snapshot.total_volume * 1000:.1f} L "
            f"state={snapshot.sys_state}/{snapshot.pump_state}"
        )
    logger.info(f"Snapshots written to {output}")


if __name__ == "__main__":
    main()
