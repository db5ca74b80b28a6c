import pytest

from app.core.config import Settings
from app.telemetry.event_sink import ClickHouseEventSink, FileEventSink, NullEventSink, sink_from_settings


def test_file_sink_configuration(monkeypatch, tmp_path):
    custom = Settings(timeseries_backend="file", timeseries_path=str(tmp_path / "audit" / "events.jsonl"))
    monkeypatch.setattr("app.telemetry.event_sink.settings", custom)
    sink = sink_from_settings()
    assert isinstance(sink, FileEventSink)
    assert (tmp_path / "audit").is_dir()


def test_clickhouse_sink_configuration(monkeypatch):
    custom = Settings(
        timeseries_backend="clickhouse",
        clickhouse_url="http://clickhouse:8123",
        clickhouse_database="ci",
        timeseries_table="audit_events",
        timeseries_batch_size=10,
    )
    monkeypatch.setattr("app.telemetry.event_sink.settings", custom)
    sink = sink_from_settings()
    assert isinstance(sink, ClickHouseEventSink)
    assert sink.pending == 0


def test_clickhouse_requires_url_and_table(monkeypatch):
    custom = Settings(timeseries_backend="clickhouse", clickhouse_url="http://clickhouse:8123")
    monkeypatch.setattr("app.telemetry.event_sink.settings", custom)
    with pytest.raises(ValueError):
        sink_from_settings()


def test_unknown_backend_rejected(monkeypatch):
    custom = Settings(timeseries_backend="bigquery")
    monkeypatch.setattr("app.telemetry.event_sink.settings", custom)
    with pytest.raises(ValueError):
        sink_from_settings()


@pytest.mark.parametrize("backend", ["off", "none", "disabled"])
def test_disabled_sink(monkeypatch, backend):
    custom = Settings(timeseries_backend=backend)
    monkeypatch.setattr("app.telemetry.event_sink.settings", custom)
    assert isinstance(sink_from_settings(), NullEventSink)
