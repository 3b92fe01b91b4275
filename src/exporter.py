"""Metric sinks.

PrometheusSink keeps one gauge per metric kind, labelled by device id and
room, and serves them on a pull endpoint:
  room_temperature             room temperature in °C
  room_humidity                relative humidity in percent
  switch_state                 1 when a power switch is ON, else 0
  shutter_level                shutter position (0.0 closed .. 1.0 open)
  total_power_consumption      accumulated energy from a power meter
  actual_power_consumption     current power draw from a power meter

InfluxDBSink pushes the same samples as line protocol to the InfluxDB v2
write API, one request per event.
"""

import asyncio
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import aiohttp
import structlog
from prometheus_client import CollectorRegistry, Gauge, start_http_server
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector

from .capabilities import MetricKind

logger = structlog.get_logger()

GAUGE_LABELS = ("id", "room")
INFLUX_WRITE_TIMEOUT_S = 10

# name, help text
PROMETHEUS_GAUGES: dict[MetricKind, tuple[str, str]] = {
    MetricKind.TEMPERATURE: ("room_temperature", "Current room temperature in degree celsius."),
    MetricKind.HUMIDITY: ("room_humidity", "Current room humidity in percent."),
    MetricKind.SWITCH_STATE: ("switch_state", "Current state of switch."),
    MetricKind.SHUTTER_LEVEL: ("shutter_level", "Current shutter level."),
    MetricKind.ENERGY_CONSUMPTION: ("total_power_consumption", "Total energy consumption."),
    MetricKind.POWER_CONSUMPTION: ("actual_power_consumption", "Actual power consumption."),
}

# measurement, field
INFLUX_MEASUREMENTS: dict[MetricKind, tuple[str, str]] = {
    MetricKind.ENERGY_CONSUMPTION: ("shc_energyConsumption", "level"),
    MetricKind.POWER_CONSUMPTION: ("shc_powerConsumption", "level"),
    MetricKind.SHUTTER_LEVEL: ("shc_shutterLevel", "level"),
    MetricKind.HUMIDITY: ("shc_humidityLevel", "level"),
    MetricKind.TEMPERATURE: ("shc_temperatureLevel", "level"),
    MetricKind.SWITCH_STATE: ("shc_switchState", "state"),
}


class SinkWriteError(Exception):
    """The metric backend rejected or could not receive a write."""


@dataclass(frozen=True)
class MetricSample:
    kind: MetricKind
    device_id: str
    room: str
    value: float


class MetricSink(ABC):
    async def start(self) -> None:
        """Open listeners or connections. Called once before any write."""

    @abstractmethod
    async def write(self, samples: list[MetricSample]) -> None: ...

    async def close(self) -> None:
        """Release resources. Safe to call more than once."""


class PrometheusSink(MetricSink):
    """Gauge registry exposed on ``/metrics``.

    The HTTP endpoint runs on prometheus_client's own thread, so scrapes keep
    working while the poll loop waits or retries.
    """

    def __init__(self, port: int, registry: CollectorRegistry | None = None) -> None:
        self.port = port
        self.registry = registry or CollectorRegistry()
        self._server = None
        ProcessCollector(registry=self.registry)
        PlatformCollector(registry=self.registry)
        self._gauges: dict[MetricKind, Gauge] = {
            kind: Gauge(name, documentation, GAUGE_LABELS, registry=self.registry)
            for kind, (name, documentation) in PROMETHEUS_GAUGES.items()
        }

    async def start(self) -> None:
        if self._server is not None:
            return
        result = start_http_server(self.port, registry=self.registry)
        # prometheus_client >= 0.17 returns (server, thread)
        self._server = result[0] if isinstance(result, tuple) else result
        logger.info("Metrics served", port=self.port, path="/metrics")

    async def write(self, samples: list[MetricSample]) -> None:
        for sample in samples:
            self._gauges[sample.kind].labels(sample.device_id, sample.room).set(sample.value)

    async def close(self) -> None:
        if self._server is None:
            return
        server, self._server = self._server, None
        # shutdown() blocks until serve_forever() returns on the server thread
        await asyncio.to_thread(server.shutdown)
        server.server_close()

    def value(self, kind: MetricKind, device_id: str, room: str) -> float | None:
        """Current gauge value, or None if the label set was never written."""
        name = PROMETHEUS_GAUGES[kind][0]
        return self.registry.get_sample_value(name, {"id": device_id, "room": room})


def _escape_tag(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,").replace("=", "\\=").replace(" ", "\\ ")


def _escape_measurement(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,").replace(" ", "\\ ")


def format_line(sample: MetricSample, timestamp_ns: int) -> str:
    """Render one sample as an InfluxDB line-protocol record.

    Raises:
        ValueError: The value is NaN or infinite, which line protocol cannot carry.
    """
    if not math.isfinite(sample.value):
        raise ValueError(f"Cannot write non-finite value {sample.value!r} for {sample.device_id}")
    measurement, field_name = INFLUX_MEASUREMENTS[sample.kind]
    if sample.kind == MetricKind.SWITCH_STATE:
        field_value = f"{int(sample.value)}u"
    else:
        field_value = f"{sample.value:f}"
    tags = f"deviceId={_escape_tag(sample.device_id)},room={_escape_tag(sample.room)}"
    return f"{_escape_measurement(measurement)},{tags} {_escape_tag(field_name)}={field_value} {timestamp_ns}"


class InfluxDBSink(MetricSink):
    """Blocking line-protocol writes against the InfluxDB v2 HTTP API.

    Args:
        url: InfluxDB base URL, e.g. ``http://influxdb:8086``.
        token: API token with write access to ``bucket``.
        org: Organisation name.
        bucket: Target bucket.
    """

    def __init__(self, url: str, token: str, org: str, bucket: str) -> None:
        self._write_url = f"{url.rstrip('/')}/api/v2/write"
        self._params = {"org": org, "bucket": bucket, "precision": "ns"}
        self._headers = {
            "Authorization": f"Token {token}",
            "Content-Type": "text/plain; charset=utf-8",
        }
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=INFLUX_WRITE_TIMEOUT_S)
            )
        logger.info("InfluxDB sink ready", url=self._write_url, bucket=self._params["bucket"])

    async def write(self, samples: list[MetricSample]) -> None:
        finite = []
        for sample in samples:
            if math.isfinite(sample.value):
                finite.append(sample)
            else:
                logger.warning(
                    "Dropping non-finite sample",
                    kind=sample.kind.value,
                    device_id=sample.device_id,
                    value=str(sample.value),
                )
        samples = finite
        if not samples:
            return
        if self._session is None:
            await self.start()
        timestamp_ns = time.time_ns()
        body = "\n".join(format_line(sample, timestamp_ns) for sample in samples)
        logger.debug("Writing line protocol", lines=len(samples))
        try:
            async with self._session.post(
                self._write_url, params=self._params, headers=self._headers, data=body.encode("utf-8")
            ) as resp:
                if resp.status >= 300:
                    detail = await resp.text()
                    raise SinkWriteError(f"InfluxDB write failed with HTTP {resp.status}: {detail[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise SinkWriteError(f"InfluxDB write failed: {exc}") from exc

    async def close(self) -> None:
        if self._session is None:
            return
        await self._session.close()
        self._session = None
