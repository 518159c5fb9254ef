import orjson
import pytest

from hydroline.types import (
    MATERIALS,
    ElbowSpec,
    EventEmitter,
    PipeSpec,
    PumpSpec,
    SystemDefaults,
    TransitionSpec,
    ValveKPoint,
    ValveSpec,
    ValveSubtype,
    converter,
    dumps_chain,
    get_material,
    loads_chain,
)
from hydroline.units import IMPERIAL, SI, Quantity, UnitSystem


CHAIN = [
    PumpSpec(id="pump", q_nominal=0.00123456789, head_m=18.5, efficiency=0.7),
    PipeSpec(id="pipe", diameter_mm=41.3, length_m=7.25, dz_m=-1.5, eps_mm=0.0015),
    ElbowSpec(id="elbow", k=0.75),
    TransitionSpec(id="reducer", d_in_mm=41.3, d_out_mm=26.6, length_m=0.2),
    ValveSpec(
        id="valve",
        subtype=ValveSubtype.GLOBE,
        opening=0.35,
        k_table=(ValveKPoint(0.2, 80.0), ValveKPoint(1.0, 6.0)),
    ),
    ValveSpec(id="prv", subtype="prv", set_pressure=150000.0),
]


class TestChainSerialization:
    def test_round_trip(self):
        restored = loads_chain(dumps_chain(CHAIN))
        assert [type(spec) for spec in restored] == [type(spec) for spec in CHAIN]
        assert restored == CHAIN

    def test_numbers_survive(self):
        restored = loads_chain(dumps_chain(CHAIN))
        assert restored[0].q_nominal == pytest.approx(0.00123456789, abs=1e-9)
        assert restored[1].dz_m == pytest.approx(-1.5, abs=1e-9)

    def test_entries_are_tagged(self):
        raw = orjson.loads(dumps_chain(CHAIN))
        assert [entry["type"] for entry in raw] == [
            "pump",
            "pipe",
            "elbow",
            "transition",
            "valve",
            "valve",
        ]
        assert raw[4]["subtype"] == "globe"

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            loads_chain(b'[{"type": "heat_exchanger", "id": "x"}]')

    def test_not_a_list(self):
        with pytest.raises(ValueError):
            loads_chain(b'{"type": "pipe"}')

    def test_validation_on_load(self):
        with pytest.raises(ValueError):
            loads_chain(b'[{"type": "valve", "id": "v", "opening": 1.5}]')


class TestSpecValidation:
    def test_negative_length(self):
        with pytest.raises(ValueError):
            PipeSpec(id="p", length_m=-1.0)

    def test_efficiency_bounds(self):
        with pytest.raises(ValueError):
            PumpSpec(id="p", efficiency=0.0)

    def test_optional_diameter(self):
        with pytest.raises(ValueError):
            ElbowSpec(id="e", diameter_mm=0.0)

    def test_duplicate_valve_table_openings(self):
        with pytest.raises(ValueError):
            ValveSpec(
                id="v",
                k_table=(ValveKPoint(0.5, 3.0), ValveKPoint(0.5, 4.0), ValveKPoint(1.0, 0.2)),
            )

    def test_duplicate_openings_rejected_on_load(self):
        with pytest.raises(ValueError):
            loads_chain(
                b'[{"type": "valve", "id": "v", "k_table": '
                b'[{"opening": 1.0, "k": 0.2}, {"opening": 1.0, "k": 0.3}]}]'
            )

    def test_valve_table_accepts_pairs(self):
        spec = ValveSpec(id="v", k_table=[(1.0, 0.2), (0.5, 4.0)])
        assert spec.k_table == (ValveKPoint(1.0, 0.2), ValveKPoint(0.5, 4.0))


class TestMaterials:
    def test_default_roughness_comes_from_material(self):
        assert SystemDefaults().roughness_mm == 0.046
        assert SystemDefaults(material_id="pvc_pe").roughness_mm == 0.003

    def test_explicit_roughness_wins(self):
        defaults = SystemDefaults(material_id="cast_iron", eps_mm=0.1)
        assert defaults.roughness_mm == 0.1

    def test_unknown_material(self):
        with pytest.raises(ValueError):
            SystemDefaults(material_id="unobtainium")
        with pytest.raises(ValueError):
            get_material("unobtainium")

    def test_catalog(self):
        assert MATERIALS["copper"].eps_mm == 0.0015
        assert get_material("steel_old").eps_mm == 0.26


class TestUnitsConverter:
    def test_quantity_round_trip(self):
        value = Quantity(3.5, "bar")
        restored = converter.structure(converter.unstructure(value), type(value))
        assert restored.to("Pa").magnitude == pytest.approx(350000.0)

    def test_unit_system_round_trip(self):
        restored = converter.structure(converter.unstructure(IMPERIAL), UnitSystem)
        assert restored.name == "imperial"
        assert str(restored["flow_rate"]) == "gpm"

    def test_convert(self):
        assert IMPERIAL.convert("pressure", 6894.757, "Pa") == pytest.approx(1.0, rel=1e-6)
        assert SI.convert("flow_rate", 1.0, "L/s") == pytest.approx(0.001)


class TestEventEmitter:
    def test_exact_prefix_and_wildcard(self):
        emitter = EventEmitter()
        exact, prefix, everything = [], [], []
        emitter.subscribe("a.b", lambda event, data: exact.append(event))
        emitter.subscribe("a.*", lambda event, data: prefix.append(event))
        emitter.subscribe("*", lambda event, data: everything.append(event))

        emitter.notify("a.b")
        emitter.notify("a.c")
        emitter.notify("axb")

        assert exact == ["a.b"]
        assert prefix == ["a.b", "a.c"]
        assert everything == ["a.b", "a.c", "axb"]

    def test_regex(self):
        emitter = EventEmitter()
        events = []
        emitter.subscribe(r"^sim\w+\.(tick|alarm)$", lambda event, data: events.append(event))
        emitter.notify("simulation.tick")
        emitter.notify("simulation.state_change")
        assert events == ["simulation.tick"]

    def test_unsubscribe(self):
        emitter = EventEmitter()
        events = []

        def _callback(event, data):
            events.append(event)

        emitter.subscribe("x", _callback)
        emitter.subscribe("x", _callback)
        emitter.notify("x")
        emitter.unsubscribe("x", _callback)
        emitter.notify("x")
        assert events == ["x"]

    def test_data_must_be_a_dict(self):
        with pytest.raises(ValueError):
            EventEmitter().notify("x", [1, 2])  # type: ignore[arg-type]


def test_round_trip_resolves_identically(water):
    from hydroline.pipeline.solver import resolve_network

    original = resolve_network(CHAIN, 0.0008, water, 1.0)
    restored = resolve_network(loads_chain(dumps_chain(CHAIN)), 0.0008, water, 1.0)

    for a, b in zip(original.nodes, restored.nodes):
        assert b.p_out == pytest.approx(a.p_out, abs=1e-9)
        assert b.v == pytest.approx(a.v, abs=1e-9)
