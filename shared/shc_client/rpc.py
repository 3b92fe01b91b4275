"""JSON-RPC codec for the controller's remote event API.

Requests:
  RE/subscribe    params [topic_filter, null]     -> result: subscription token
  RE/unsubscribe  params [token]                  -> result: ignored
  RE/longPoll     params [token, timeout_s]       -> [{result: [event...], error}]

The long-poll request is sent as a single-element batch and the controller
answers with a single-element array, which is enforced on decode.
"""

import json
from dataclasses import dataclass, field
from typing import Any

from .errors import ProtocolError, RpcCallError
from .models import DeviceEvent, PollResult, RpcErrorInfo

JSONRPC_VERSION = "2.0"
SUBSCRIBE_METHOD = "RE/subscribe"
UNSUBSCRIBE_METHOD = "RE/unsubscribe"
LONG_POLL_METHOD = "RE/longPoll"
DEFAULT_TOPIC_FILTER = "com/bosch/sh/remote/*"
RPC_PATH = "remote/json-rpc"


@dataclass(frozen=True)
class RpcRequest:
    method: str
    params: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"jsonrpc": JSONRPC_VERSION, "method": self.method, "params": list(self.params)}


def _encode(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def encode_subscribe(topic_filter: str = DEFAULT_TOPIC_FILTER) -> bytes:
    return _encode(RpcRequest(SUBSCRIBE_METHOD, [topic_filter, None]).to_dict())


def encode_unsubscribe(token: str) -> bytes:
    return _encode(RpcRequest(UNSUBSCRIBE_METHOD, [token]).to_dict())


def encode_long_poll(token: str, timeout_s: int) -> bytes:
    return _encode([RpcRequest(LONG_POLL_METHOD, [token, timeout_s]).to_dict()])


def _loads(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError(f"Response is not valid JSON: {exc}", body) from exc


def _decode_error(envelope: dict, body: bytes) -> RpcErrorInfo | None:
    error = envelope.get("error")
    if error is None:
        return None
    if not isinstance(error, dict):
        raise ProtocolError("RPC error member is not an object", body)
    code = error.get("code", 0)
    if isinstance(code, bool) or not isinstance(code, int):
        raise ProtocolError(f"RPC error code is not an integer: {code!r}", body)
    return RpcErrorInfo(code=code, message=str(error.get("message") or ""))


def decode_call_result(body: bytes) -> str | None:
    """Decode a subscribe/unsubscribe reply.

    Returns:
        The ``result`` string, or None when the controller sent no result.

    Raises:
        ProtocolError: The body is not a JSON-RPC object or result is not a string.
        RpcCallError: The reply carries a non-zero error code.
    """
    envelope = _loads(body)
    if not isinstance(envelope, dict):
        raise ProtocolError("Expected a JSON-RPC object", body)
    error = _decode_error(envelope, body)
    if error is not None and error.code != 0:
        raise RpcCallError(error.code, error.message)
    result = envelope.get("result")
    if result is not None and not isinstance(result, str):
        raise ProtocolError(f"Unexpected result type {type(result).__name__}", body)
    return result


def decode_poll_result(body: bytes) -> PollResult:
    """Decode a long-poll reply into a PollResult.

    A non-zero error code is returned, not raised; deciding what it means is
    the session's job.
    """
    batch = _loads(body)
    if not isinstance(batch, list):
        raise ProtocolError("Expected a JSON array from long-poll", body)
    if len(batch) != 1:
        raise ProtocolError(f"Expected exactly one poll result, got {len(batch)}", body)
    envelope = batch[0]
    if not isinstance(envelope, dict):
        raise ProtocolError("Poll result is not an object", body)

    error = _decode_error(envelope, body)
    if error is not None and error.code != 0:
        return PollResult(events=[], error=error)

    raw_events = envelope.get("result")
    if raw_events is None:
        raw_events = []
    if not isinstance(raw_events, list):
        raise ProtocolError("Poll result member is not an array", body)
    events = []
    for entry in raw_events:
        if not isinstance(entry, dict):
            raise ProtocolError("Poll result entry is not an object", body)
        events.append(DeviceEvent.from_dict(entry))
    return PollResult(events=events, error=error)
