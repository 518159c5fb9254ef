"""Pytest configuration.

Puts the repo root on sys.path so `import hydroline` works without an
editable install, and provides shared fixtures.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from hydroline.pipeline.core import (  # noqa: E402
    ElbowElement,
    Pipeline,
    PipeElement,
    PumpElement,
    ValveElement,
)
from hydroline.properties import FluidSample, get_fluid_resolver  # noqa: E402
from hydroline.types import PipeSpec, PumpSpec, ValveSpec  # noqa: E402


@pytest.fixture
def water() -> FluidSample:
    """Water at 20 °C from the built-in table."""
    return get_fluid_resolver("water").get_properties(20.0)


@pytest.fixture
def simple_fluid() -> FluidSample:
    """Round-number fluid: rho=1000 kg/m³, nu=1.002e-6 m²/s."""
    return FluidSample.from_density_viscosity(1000.0, 1.002e-3)


@pytest.fixture
def pump_pipe_valve_chain():
    return [
        PumpSpec(id="pump", q_nominal=0.0005, head_m=20.0),
        PipeSpec(id="pipe", diameter_mm=53.1, length_m=5.0),
        ValveSpec(id="valve", diameter_mm=53.1),
    ]


@pytest.fixture
def pipeline() -> Pipeline:
    """Pump, pipe, elbow, pipe and an outlet gate valve."""
    return Pipeline(
        name="Test Loop",
        elements=[
            PumpElement(element_id="pump"),
            PipeElement(element_id="pipe-1", length_m=10.0),
            ElbowElement(element_id="elbow"),
            PipeElement(element_id="pipe-2"),
            ValveElement("gate", element_id="valve"),
        ],
    )
