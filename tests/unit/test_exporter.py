"""Unit tests for the metric sinks.

The Prometheus sink is exercised against a private registry without opening
its HTTP port; the InfluxDB HTTP session is mocked.
"""

from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from prometheus_client import CollectorRegistry

from src.capabilities import MetricKind
from src.exporter import InfluxDBSink, MetricSample, PrometheusSink, SinkWriteError, format_line


@pytest.fixture
def prometheus_sink() -> PrometheusSink:
    return PrometheusSink(port=0, registry=CollectorRegistry())


def _influx_response(status: int = 204, text: str = ""):
    resp = MagicMock()
    resp.status = status
    resp.text = AsyncMock(return_value=text)
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=resp)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


@pytest.fixture
def influx_sink() -> InfluxDBSink:
    sink = InfluxDBSink(url="http://influxdb:8086/", token="secret", org="home", bucket="shc")
    sink._session = MagicMock()
    sink._session.post = MagicMock(return_value=_influx_response())
    return sink


class TestPrometheusSink:
    @pytest.mark.asyncio
    async def test_write_sets_labelled_gauge(self, prometheus_sink) -> None:
        await prometheus_sink.write([MetricSample(MetricKind.TEMPERATURE, "hdm:1", "Living_Room", 21.5)])
        assert prometheus_sink.value(MetricKind.TEMPERATURE, "hdm:1", "Living_Room") == 21.5
        assert prometheus_sink.registry.get_sample_value(
            "room_temperature", {"id": "hdm:1", "room": "Living_Room"}
        ) == 21.5

    @pytest.mark.asyncio
    async def test_latest_value_wins(self, prometheus_sink) -> None:
        await prometheus_sink.write([MetricSample(MetricKind.HUMIDITY, "hdm:1", "Bath", 50.0)])
        await prometheus_sink.write([MetricSample(MetricKind.HUMIDITY, "hdm:1", "Bath", 55.0)])
        assert prometheus_sink.value(MetricKind.HUMIDITY, "hdm:1", "Bath") == 55.0

    @pytest.mark.asyncio
    async def test_each_kind_has_its_own_gauge(self, prometheus_sink) -> None:
        samples = [
            MetricSample(MetricKind.ENERGY_CONSUMPTION, "hdm:2", "Kitchen", 1000.0),
            MetricSample(MetricKind.POWER_CONSUMPTION, "hdm:2", "Kitchen", 7.5),
            MetricSample(MetricKind.SWITCH_STATE, "hdm:2", "Kitchen", 1.0),
            MetricSample(MetricKind.SHUTTER_LEVEL, "hdm:3", "Kitchen", 0.5),
        ]
        await prometheus_sink.write(samples)
        registry = prometheus_sink.registry
        labels = {"id": "hdm:2", "room": "Kitchen"}
        assert registry.get_sample_value("total_power_consumption", labels) == 1000.0
        assert registry.get_sample_value("actual_power_consumption", labels) == 7.5
        assert registry.get_sample_value("switch_state", labels) == 1.0
        assert registry.get_sample_value("shutter_level", {"id": "hdm:3", "room": "Kitchen"}) == 0.5

    def test_unwritten_series_is_none(self, prometheus_sink) -> None:
        assert prometheus_sink.value(MetricKind.TEMPERATURE, "hdm:1", "Nowhere") is None

    @pytest.mark.asyncio
    async def test_close_stops_server_and_releases_socket(self, prometheus_sink) -> None:
        server = MagicMock()
        prometheus_sink._server = server

        await prometheus_sink.close()
        await prometheus_sink.close()

        server.shutdown.assert_called_once_with()
        server.server_close.assert_called_once_with()
        assert prometheus_sink._server is None


class TestFormatLine:
    def test_level_measurement(self) -> None:
        line = format_line(MetricSample(MetricKind.TEMPERATURE, "hdm:1", "Living_Room", 21.5), 1700000000000000000)
        assert line == "shc_temperatureLevel,deviceId=hdm:1,room=Living_Room level=21.500000 1700000000000000000"

    def test_switch_state_is_unsigned_integer(self) -> None:
        line = format_line(MetricSample(MetricKind.SWITCH_STATE, "hdm:1", "Hall", 1.0), 42)
        assert line == "shc_switchState,deviceId=hdm:1,room=Hall state=1u 42"

    def test_tag_values_are_escaped(self) -> None:
        line = format_line(MetricSample(MetricKind.HUMIDITY, "hdm:a,b", "Bad Room=1", 40.0), 1)
        assert line.startswith("shc_humidityLevel,deviceId=hdm:a\\,b,room=Bad\\ Room\\=1 level=")

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_value_is_rejected(self, value) -> None:
        with pytest.raises(ValueError, match="non-finite"):
            format_line(MetricSample(MetricKind.TEMPERATURE, "hdm:1", "Hall", value), 1)


class TestInfluxDBSink:
    @pytest.mark.asyncio
    async def test_write_posts_line_protocol(self, influx_sink) -> None:
        await influx_sink.write(
            [
                MetricSample(MetricKind.ENERGY_CONSUMPTION, "hdm:2", "Kitchen", 100.0),
                MetricSample(MetricKind.POWER_CONSUMPTION, "hdm:2", "Kitchen", 5.0),
            ]
        )
        influx_sink._session.post.assert_called_once()
        call = influx_sink._session.post.call_args
        assert call.args[0] == "http://influxdb:8086/api/v2/write"
        assert call.kwargs["params"] == {"org": "home", "bucket": "shc", "precision": "ns"}
        assert call.kwargs["headers"]["Authorization"] == "Token secret"
        lines = call.kwargs["data"].decode().split("\n")
        assert lines[0].startswith("shc_energyConsumption,deviceId=hdm:2,room=Kitchen level=100.000000 ")
        assert lines[1].startswith("shc_powerConsumption,deviceId=hdm:2,room=Kitchen level=5.000000 ")
        # one timestamp per event
        assert lines[0].rsplit(" ", 1)[1] == lines[1].rsplit(" ", 1)[1]

    @pytest.mark.asyncio
    async def test_non_finite_samples_are_dropped(self, influx_sink) -> None:
        await influx_sink.write(
            [
                MetricSample(MetricKind.ENERGY_CONSUMPTION, "hdm:2", "Kitchen", float("nan")),
                MetricSample(MetricKind.POWER_CONSUMPTION, "hdm:2", "Kitchen", 5.0),
            ]
        )
        body = influx_sink._session.post.call_args.kwargs["data"].decode()
        assert body.startswith("shc_powerConsumption,deviceId=hdm:2,room=Kitchen level=5.000000 ")
        assert "\n" not in body

    @pytest.mark.asyncio
    async def test_only_non_finite_samples_sends_nothing(self, influx_sink) -> None:
        await influx_sink.write([MetricSample(MetricKind.HUMIDITY, "hdm:1", "Bath", float("inf"))])
        influx_sink._session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_write_is_noop(self, influx_sink) -> None:
        await influx_sink.write([])
        influx_sink._session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_http_error_raises_sink_error(self, influx_sink) -> None:
        influx_sink._session.post.return_value = _influx_response(401, '{"code":"unauthorized"}')
        with pytest.raises(SinkWriteError, match="401"):
            await influx_sink.write([MetricSample(MetricKind.TEMPERATURE, "hdm:1", "Hall", 20.0)])

    @pytest.mark.asyncio
    async def test_connection_error_raises_sink_error(self, influx_sink) -> None:
        influx_sink._session.post.side_effect = aiohttp.ClientConnectionError("refused")
        with pytest.raises(SinkWriteError):
            await influx_sink.write([MetricSample(MetricKind.TEMPERATURE, "hdm:1", "Hall", 20.0)])

    @pytest.mark.asyncio
    async def test_close_releases_session(self, influx_sink) -> None:
        session = influx_sink._session
        session.close = AsyncMock()
        await influx_sink.close()
        session.close.assert_awaited_once()
        assert influx_sink._session is None
