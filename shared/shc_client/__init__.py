from .directory import DeviceRoomIndex, load_device_room_index
from .errors import (
    EventContractError,
    ProtocolError,
    RpcCallError,
    SessionInvalidError,
    ShcError,
    StartupFatalError,
    TransportError,
)
from .models import Device, DeviceEvent, PollResult, Room
from .subscription import SessionState, SubscriptionSession
from .transport import BaseTransport, HttpsTransport

__all__ = [
    "BaseTransport",
    "Device",
    "DeviceEvent",
    "DeviceRoomIndex",
    "EventContractError",
    "HttpsTransport",
    "PollResult",
    "ProtocolError",
    "Room",
    "RpcCallError",
    "SessionInvalidError",
    "SessionState",
    "ShcError",
    "StartupFatalError",
    "SubscriptionSession",
    "TransportError",
    "load_device_room_index",
]
