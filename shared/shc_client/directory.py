"""Room and device directory.

Fetched once at startup and folded into a read-only device -> room lookup.
"""

import json
import re
from typing import Iterable

import structlog

from .errors import ProtocolError
from .models import Device, Room
from .transport import BaseTransport

logger = structlog.get_logger()

ROOMS_PATH = "smarthome/rooms"
DEVICES_PATH = "smarthome/devices"

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_room_name(name: str) -> str:
    """Make a room name safe for metric tags ("Living Room" -> "Living_Room")."""
    return _WHITESPACE_RE.sub("_", name.strip())


class DeviceRoomIndex:
    """Immutable mapping of device id to normalised room name.

    Devices whose room id matches no known room are left out.
    """

    def __init__(self, mapping: dict[str, str]) -> None:
        self._mapping = dict(mapping)

    @classmethod
    def from_snapshot(cls, rooms: Iterable[Room], devices: Iterable[Device]) -> "DeviceRoomIndex":
        names_by_room = {room.id: normalize_room_name(room.name) for room in rooms}
        mapping = {
            device.id: names_by_room[device.room_id]
            for device in devices
            if device.room_id in names_by_room
        }
        return cls(mapping)

    def room_for(self, device_id: str, default: str | None = None) -> str | None:
        return self._mapping.get(device_id, default)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._mapping

    def __len__(self) -> int:
        return len(self._mapping)


async def _fetch_list(transport: BaseTransport, path: str) -> list[dict]:
    body = await transport.get(path)
    try:
        data = json.loads(body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError(f"{path}: response is not valid JSON", body) from exc
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ProtocolError(f"{path}: expected an array of objects", body)
    return data


async def fetch_rooms(transport: BaseTransport) -> list[Room]:
    items = await _fetch_list(transport, ROOMS_PATH)
    try:
        return [Room.from_dict(item) for item in items]
    except KeyError as exc:
        raise ProtocolError(f"Room without {exc}", json.dumps(items).encode()) from exc


async def fetch_devices(transport: BaseTransport) -> list[Device]:
    items = await _fetch_list(transport, DEVICES_PATH)
    try:
        return [Device.from_dict(item) for item in items]
    except KeyError as exc:
        raise ProtocolError(f"Device without {exc}", json.dumps(items).encode()) from exc


async def load_device_room_index(transport: BaseTransport) -> DeviceRoomIndex:
    rooms = await fetch_rooms(transport)
    logger.info("Fetched rooms", count=len(rooms))
    devices = await fetch_devices(transport)
    logger.info("Fetched devices", count=len(devices))
    index = DeviceRoomIndex.from_snapshot(rooms, devices)
    logger.info("Device room index built", mapped=len(index), unmapped=len(devices) - len(index))
    return index
