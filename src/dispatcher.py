"""Event dispatcher.

Turns controller device events into metric samples tagged with device id
and room, and hands them to the configured sink.
"""

import structlog

from shc_client.directory import DeviceRoomIndex
from shc_client.errors import EventContractError
from shc_client.models import DeviceEvent

from .capabilities import decode_capability_state, metric_values
from .exporter import MetricSample, MetricSink, SinkWriteError

logger = structlog.get_logger()

PHYSICAL_DEVICE_PREFIX = "hdm:"
UNKNOWN_ROOM = "unknown"


class EventDispatcher:
    """Classifies events by capability and forwards their metrics.

    Args:
        index: Device to room lookup built at startup.
        sink: Destination for metric samples.
        device_prefix: Device ids without this prefix are virtual entities
            (scenarios, the controller itself) and are not exported.
        unknown_room: Room tag used for devices missing from ``index``.
    """

    def __init__(
        self,
        index: DeviceRoomIndex,
        sink: MetricSink,
        *,
        device_prefix: str = PHYSICAL_DEVICE_PREFIX,
        unknown_room: str = UNKNOWN_ROOM,
    ) -> None:
        self._index = index
        self._sink = sink
        self._device_prefix = device_prefix
        self._unknown_room = unknown_room

    async def handle(self, event: DeviceEvent) -> bool:
        """Dispatch one event.

        Returns:
            True if the sink received the event's samples, False if the event
            was ignored or skipped.
        """
        if not event.device_id.startswith(self._device_prefix):
            logger.info("Ignoring event from virtual entity", device_event=event.to_dict())
            return False

        try:
            state = decode_capability_state(event)
        except EventContractError as exc:
            logger.error("Skipping malformed event", error=str(exc), device_event=event.to_dict())
            return False
        if state is None:
            logger.info("Ignoring unsupported capability", device_event=event.to_dict())
            return False

        room = self._index.room_for(event.device_id, self._unknown_room)
        samples = [
            MetricSample(kind=kind, device_id=event.device_id, room=room, value=value)
            for kind, value in metric_values(state)
        ]
        logger.info(
            "Device event",
            capability=event.capability_id,
            device_id=event.device_id,
            room=room,
            values={s.kind.value: s.value for s in samples},
        )
        try:
            await self._sink.write(samples)
        except SinkWriteError as exc:
            logger.error("Metric write failed, event dropped", error=str(exc), device_id=event.device_id)
            return False
        return True
