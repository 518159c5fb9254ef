import pytest

from hydroline.pipeline.monitor import (
    HDF5FileStreamer,
    JsonFileStreamer,
    format_snapshot,
    interval_ratelimitter,
    monitor_simulation,
)
from hydroline.pipeline.simulation import SimulationEngine
from hydroline.units import IMPERIAL, SI


@pytest.fixture
def engine(pipeline):
    engine = SimulationEngine(pipeline)
    engine.start()
    return engine


class TestRateLimitter:
    def test_every_third_call(self):
        ratelimitter = interval_ratelimitter(3)
        assert [ratelimitter(None) for _ in range(6)] == [  # type: ignore[arg-type]
            False,
            False,
            True,
            False,
            False,
            True,
        ]

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            interval_ratelimitter(0)


class TestMonitor:
    def test_streams_every_tick(self, engine):
        streamed = []
        monitor_simulation(engine, streamed.append)
        engine.run_for(0.5)
        assert [snapshot.t for snapshot in streamed] == pytest.approx(
            [0.1, 0.2, 0.3, 0.4, 0.5]
        )

    def test_rate_limited(self, engine):
        streamed = []
        monitor_simulation(engine, streamed.append, interval_ratelimitter(5))
        engine.run_for(2.0)
        assert len(streamed) == 4


class TestFormatSnapshot:
    def test_si_is_unchanged(self, engine):
        snapshot = engine.run_for(2.0)[-1].snapshot
        data = format_snapshot(snapshot, SI)
        assert data["q"] == pytest.approx(snapshot.q)
        assert data["nodes"][0]["p_out"] == pytest.approx(snapshot.nodes[0].p_out)
        assert data["sys_state"] == "running"
        assert data["units"]["pressure"] == "Pa"

    def test_imperial(self, engine):
        snapshot = engine.run_for(2.0)[-1].snapshot
        data = format_snapshot(snapshot, IMPERIAL)
        assert data["q"] == pytest.approx(snapshot.q * 15850.32, rel=1e-4)
        assert data["nodes"][0]["p_out"] == pytest.approx(
            snapshot.nodes[0].p_out / 6894.757, rel=1e-6
        )
        assert data["nodes"][1]["v"] == pytest.approx(
            snapshot.nodes[1].v / 0.3048, rel=1e-9
        )
        assert data["nodes"][0]["power"] == pytest.approx(
            snapshot.nodes[0].power / 745.69987, rel=1e-6
        )
        assert data["units"]["flow_rate"] == "gpm"


class TestFileStreamers:
    def test_json_streamer(self, engine, tmp_path):
        streamer = JsonFileStreamer(tmp_path / "out" / "snapshots.json")
        monitor_simulation(engine, streamer)
        engine.run_for(0.3)

        records = streamer.read()
        assert len(records) == 3
        assert records[-1]["t"] == pytest.approx(0.3)
        assert records[0]["nodes"][0]["element_type"] == "pump"

    def test_json_streamer_batches(self, engine, tmp_path):
        streamer = JsonFileStreamer(
            tmp_path / "snapshots.json",
            formatter=lambda snapshot: format_snapshot(snapshot, IMPERIAL),
            batch_size=4,
        )
        monitor_simulation(engine, streamer)
        engine.run_for(0.6)
        assert len(streamer.read()) == 4

        streamer.shutdown()
        records = streamer.read()
        assert len(records) == 6
        assert records[0]["units"]["pressure"] == "psi"

    def test_json_streamer_rejects_non_array(self, tmp_path):
        path = tmp_path / "snapshots.json"
        path.write_text('{"not": "a list"}')
        with pytest.raises(ValueError):
            JsonFileStreamer(path).read()

    def test_hdf5_streamer(self, engine, tmp_path):
        streamer = HDF5FileStreamer(tmp_path / "snapshots.h5", batch_size=2)
        monitor_simulation(engine, streamer)
        engine.run_for(0.5)
        streamer.shutdown()

        records = streamer.read()
        assert len(records) == 5
        assert [record["t"] for record in records] == pytest.approx(
            [0.1, 0.2, 0.3, 0.4, 0.5]
        )

    def test_hdf5_missing_file(self, tmp_path):
        assert HDF5FileStreamer(tmp_path / "none.h5").read() == []
