"""Typed capability states.

Each supported capability id decodes into its own frozen dataclass; the raw
``state`` dict never travels past this module. A missing or mis-typed field
raises EventContractError for that one event.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from shc_client.errors import EventContractError
from shc_client.models import DeviceEvent


class MetricKind(str, Enum):
    ENERGY_CONSUMPTION = "energy_consumption"
    POWER_CONSUMPTION = "power_consumption"
    SHUTTER_LEVEL = "shutter_level"
    HUMIDITY = "humidity"
    TEMPERATURE = "temperature"
    SWITCH_STATE = "switch_state"


@dataclass(frozen=True)
class PowerMeterState:
    energy_consumption: float
    power_consumption: float


@dataclass(frozen=True)
class ShutterControlState:
    level: float


@dataclass(frozen=True)
class HumidityLevelState:
    humidity: float


@dataclass(frozen=True)
class TemperatureLevelState:
    temperature: float


@dataclass(frozen=True)
class PowerSwitchState:
    switch_state: str       # "ON" | "OFF"

    @property
    def is_on(self) -> bool:
        return self.switch_state == "ON"


CapabilityState = (
    PowerMeterState
    | ShutterControlState
    | HumidityLevelState
    | TemperatureLevelState
    | PowerSwitchState
)

SWITCH_STATES = ("ON", "OFF")


def _number(event: DeviceEvent, key: str) -> float:
    value: Any = event.state.get(key)
    # bool is an int subclass but never a valid reading
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise EventContractError(
            f"{event.capability_id} event for {event.device_id}: "
            f"expected numeric {key!r}, got {value!r}"
        )
    return float(value)


def _switch_state(event: DeviceEvent) -> str:
    value = event.state.get("switchState")
    if value not in SWITCH_STATES:
        raise EventContractError(
            f"PowerSwitch event for {event.device_id}: invalid switchState {value!r}"
        )
    return value


def decode_capability_state(event: DeviceEvent) -> CapabilityState | None:
    """Decode ``event.state`` into the variant for its capability.

    Returns:
        The typed state, or None when the capability is not exported.

    Raises:
        EventContractError: A required field is missing or has the wrong type.
    """
    capability = event.capability_id
    if capability == "PowerMeter":
        return PowerMeterState(
            energy_consumption=_number(event, "energyConsumption"),
            power_consumption=_number(event, "powerConsumption"),
        )
    if capability == "ShutterControl":
        return ShutterControlState(level=_number(event, "level"))
    if capability == "HumidityLevel":
        return HumidityLevelState(humidity=_number(event, "humidity"))
    if capability == "TemperatureLevel":
        return TemperatureLevelState(temperature=_number(event, "temperature"))
    if capability == "PowerSwitch":
        return PowerSwitchState(switch_state=_switch_state(event))
    return None


def metric_values(state: CapabilityState) -> list[tuple[MetricKind, float]]:
    """Gauge values a decoded state produces, in emission order."""
    if isinstance(state, PowerMeterState):
        return [
            (MetricKind.ENERGY_CONSUMPTION, state.energy_consumption),
            (MetricKind.POWER_CONSUMPTION, state.power_consumption),
        ]
    if isinstance(state, ShutterControlState):
        return [(MetricKind.SHUTTER_LEVEL, state.level)]
    if isinstance(state, HumidityLevelState):
        return [(MetricKind.HUMIDITY, state.humidity)]
    if isinstance(state, TemperatureLevelState):
        return [(MetricKind.TEMPERATURE, state.temperature)]
    if isinstance(state, PowerSwitchState):
        return [(MetricKind.SWITCH_STATE, 1.0 if state.is_on else 0.0)]
    raise TypeError(f"Unsupported capability state {type(state).__name__}")
