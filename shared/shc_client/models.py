"""Wire models for the controller's REST directory and JSON-RPC event feed."""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Room:
    id: str
    name: str

    @classmethod
    def from_dict(cls, data: dict) -> "Room":
        return cls(id=str(data["id"]), name=str(data.get("name", "")))


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    room_id: str | None
    model: str
    service_ids: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> "Device":
        room_id = data.get("roomId")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            # Devices without a room (e.g. the controller itself) omit roomId
            room_id=str(room_id) if room_id is not None else None,
            model=str(data.get("deviceModel", data.get("model", ""))),
            service_ids=tuple(str(s) for s in data.get("deviceServiceIds", []) or []),
        )


@dataclass(frozen=True)
class DeviceEvent:
    """One entry of a long-poll result.

    ``capability_id`` selects which keys of ``state`` are meaningful.
    """

    type: str
    capability_id: str
    device_id: str
    state: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceEvent":
        state = data.get("state")
        return cls(
            type=str(data.get("@type", "")),
            capability_id=str(data.get("id", "")),
            device_id=str(data.get("deviceId", "")),
            state=state if isinstance(state, dict) else {},
        )

    def to_dict(self) -> dict:
        return {
            "@type": self.type,
            "id": self.capability_id,
            "deviceId": self.device_id,
            "state": self.state,
        }


@dataclass(frozen=True)
class RpcErrorInfo:
    code: int
    message: str = ""


@dataclass(frozen=True)
class PollResult:
    events: list[DeviceEvent] = field(default_factory=list)
    error: RpcErrorInfo | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None and self.error.code != 0
