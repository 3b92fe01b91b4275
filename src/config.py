"""Exporter configuration.

Precedence, lowest first: built-in defaults, the YAML config file,
``SHC_*`` environment variables. Environment names are the dotted key in
upper case with dots replaced by underscores and an ``SHC_`` prefix, e.g.
``shc.host`` -> ``SHC_SHC_HOST``, ``metrics.port`` -> ``SHC_METRICS_PORT``.
"""

import os
from dataclasses import dataclass
from typing import Any, Mapping

import structlog
import yaml

logger = structlog.get_logger()

ENV_PREFIX = "SHC_"
SINKS = ("prometheus", "influxdb")
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

DEFAULTS: dict[str, Any] = {
    "files.certificate.crt": "client-cert.pem",
    "files.certificate.key": "client-key.pem",
    "shc.host": "localhost",
    "shc.port": 8444,
    "shc.polltimeout": 30,
    "shc.retrydelay": 5,
    "shc.deviceprefix": "hdm:",
    "sink": "prometheus",
    "metrics.port": 9123,
    "influxdb.host": "",
    "influxdb.token": "",
    "influxdb.org": "",
    "influxdb.bucket": "",
    "logging.level": "info",
}


class ConfigError(Exception):
    """Configuration is unreadable or holds an invalid value."""


@dataclass(frozen=True)
class Settings:
    cert_file: str
    key_file: str
    host: str
    port: int
    poll_timeout_s: int
    retry_delay_s: float
    device_prefix: str
    sink: str
    metrics_port: int
    influx_url: str
    influx_token: str
    influx_org: str
    influx_bucket: str
    log_level: str

    def redacted(self) -> dict:
        """Settings as a dict with secrets masked, for logging."""
        data = dict(self.__dict__)
        if data["influx_token"]:
            data["influx_token"] = "***"
        return data


def _flatten(data: Mapping, prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}{str(key).lower()}"
        if isinstance(value, Mapping):
            flat.update(_flatten(value, prefix=f"{dotted}."))
        else:
            flat[dotted] = value
    return flat


def _read_file(path: str | None) -> dict[str, Any]:
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        logger.info("No configuration file found, using defaults", path=path)
        return {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read configuration file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Configuration root in {path} must be a mapping")
    return _flatten(data)


def _env_name(key: str) -> str:
    return ENV_PREFIX + key.replace(".", "_").upper()


def _int(raw: dict[str, Any], key: str) -> int:
    value = raw[key]
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc


def _float(raw: dict[str, Any], key: str) -> float:
    value = raw[key]
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc


def load_settings(
    path: str | None = "config.yaml",
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Merge defaults, file, environment and explicit overrides into Settings.

    Args:
        path: YAML file to read; a missing file falls back to defaults.
        environ: Environment mapping, ``os.environ`` when omitted.
        overrides: Dotted keys that win over everything (e.g. CLI flags).

    Raises:
        ConfigError: A value is malformed or the chosen sink is incomplete.
    """
    environ = os.environ if environ is None else environ
    raw = dict(DEFAULTS)
    raw.update({k: v for k, v in _read_file(path).items() if k in DEFAULTS})
    for key in DEFAULTS:
        env_value = environ.get(_env_name(key))
        if env_value is not None:
            raw[key] = env_value
    raw.update({k: v for k, v in (overrides or {}).items() if v is not None})

    sink = str(raw["sink"]).lower()
    if sink not in SINKS:
        raise ConfigError(f"sink must be one of {', '.join(SINKS)}, got {raw['sink']!r}")
    log_level = str(raw["logging.level"]).lower()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")

    settings = Settings(
        cert_file=str(raw["files.certificate.crt"]),
        key_file=str(raw["files.certificate.key"]),
        host=str(raw["shc.host"]),
        port=_int(raw, "shc.port"),
        poll_timeout_s=_int(raw, "shc.polltimeout"),
        retry_delay_s=_float(raw, "shc.retrydelay"),
        device_prefix=str(raw["shc.deviceprefix"]),
        sink=sink,
        metrics_port=_int(raw, "metrics.port"),
        influx_url=str(raw["influxdb.host"] or ""),
        influx_token=str(raw["influxdb.token"] or ""),
        influx_org=str(raw["influxdb.org"] or ""),
        influx_bucket=str(raw["influxdb.bucket"] or ""),
        log_level=log_level,
    )
    if settings.poll_timeout_s <= 0:
        raise ConfigError("shc.polltimeout must be positive")
    if settings.sink == "influxdb" and not (settings.influx_url and settings.influx_bucket):
        raise ConfigError("influxdb sink requires influxdb.host and influxdb.bucket")
    return settings
