"""SHC exporter entry point.

Loads the controller's room/device directory, subscribes to its long-poll
event feed and exports device readings to Prometheus or InfluxDB until
SIGINT/SIGTERM. Configured via config.yaml and SHC_* environment variables.
"""

import argparse
import asyncio
import logging
import signal

import structlog

from shc_client.directory import DeviceRoomIndex, load_device_room_index
from shc_client.errors import ProtocolError, StartupFatalError, TransportError
from shc_client.subscription import SubscriptionSession
from shc_client.transport import HttpsTransport
from src.config import ConfigError, Settings, load_settings
from src.dispatcher import EventDispatcher
from src.exporter import InfluxDBSink, MetricSink, PrometheusSink

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ]
)
logger = structlog.get_logger()


def configure_log_level(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper()))
    )


def build_sink(settings: Settings) -> MetricSink:
    if settings.sink == "influxdb":
        return InfluxDBSink(
            url=settings.influx_url,
            token=settings.influx_token,
            org=settings.influx_org,
            bucket=settings.influx_bucket,
        )
    return PrometheusSink(port=settings.metrics_port)


async def load_index(
    transport: HttpsTransport,
    retry_delay_s: float,
    stop_event: asyncio.Event,
) -> DeviceRoomIndex | None:
    """Fetch the directory, retrying until it succeeds or shutdown is requested."""
    while not stop_event.is_set():
        try:
            return await load_device_room_index(transport)
        except (TransportError, ProtocolError) as exc:
            logger.error("Directory fetch failed, retrying", error=str(exc), retry_in_s=retry_delay_s)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=retry_delay_s)
            except asyncio.TimeoutError:
                pass
    return None


async def main(settings: Settings) -> int:
    logger.info("Starting SHC exporter", settings=settings.redacted())
    try:
        transport = HttpsTransport(
            settings.host,
            settings.cert_file,
            settings.key_file,
            port=settings.port,
            poll_timeout_s=settings.poll_timeout_s,
        )
    except StartupFatalError as exc:
        logger.critical("Cannot start exporter", error=str(exc))
        return 1

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    loop.add_signal_handler(signal.SIGINT, stop_event.set)

    sink = build_sink(settings)
    session = SubscriptionSession(
        transport,
        poll_timeout_s=settings.poll_timeout_s,
        retry_delay_s=settings.retry_delay_s,
    )
    try:
        await sink.start()
        await transport.connect()

        index = await load_index(transport, settings.retry_delay_s, stop_event)
        if index is not None:
            dispatcher = EventDispatcher(index, sink, device_prefix=settings.device_prefix)
            session.start(dispatcher.handle)
            logger.info("SHC exporter ready", sink=settings.sink, host=settings.host)
            await stop_event.wait()

        logger.info("Shutdown requested")
        await session.stop()
    finally:
        await sink.close()
        await transport.close()
    logger.info("SHC exporter shut down gracefully")
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export Bosch Smart Home Controller readings.")
    parser.add_argument("--config-file", default="config.yaml", help="Path to the YAML config file.")
    parser.add_argument("--sink", choices=("prometheus", "influxdb"), help="Override the configured sink.")
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        settings = load_settings(args.config_file, overrides={"sink": args.sink})
    except ConfigError as exc:
        logger.critical("Invalid configuration", error=str(exc))
        raise SystemExit(2)
    configure_log_level(settings.log_level)
    raise SystemExit(asyncio.run(main(settings)))


if __name__ == "__main__":
    run()
