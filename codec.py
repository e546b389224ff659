import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

FILE_METADATA_TYPE = "file_metadata"
IS_SENDER_KEY = "isSender"

JOIN_STATUS_MESSAGE = {
    "type": "status",
    "message": "User has joined. You can now share files.",
    "ready": True,
}


class ProtocolError(ValueError):
    """Raised when a control frame can not be decoded or re-encoded."""


class FrameKind(str, Enum):
    TEXT = "text"
    BINARY = "binary"


@dataclass(frozen=True)
class Frame:
    kind: FrameKind
    payload: bytes

    @classmethod
    def text(cls, payload: bytes) -> "Frame":
        return cls(FrameKind.TEXT, payload)

    @classmethod
    def binary(cls, payload: bytes) -> "Frame":
        return cls(FrameKind.BINARY, payload)


def encode_control(message: Mapping[str, Any]) -> bytes:
    try:
        return json.dumps(message, separators=(",", ":"), allow_nan=False).encode("utf-8")
    except (TypeError, ValueError, RecursionError) as e:
        raise ProtocolError(f"cannot encode control message: {e}") from e


def _reject_constant(token: str):
    raise ProtocolError(f"non-standard JSON constant {token}")


def decode_control(payload: bytes) -> dict:
    """Decode a text frame into a JSON object.

    Anything that is not a strict JSON object is a protocol error: arrays,
    scalars, bad UTF-8, NaN/Infinity tokens and nesting too deep to decode.
    """
    try:
        message = json.loads(payload, parse_constant=_reject_constant)
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise ProtocolError(f"malformed control frame: {e}") from e
    if not isinstance(message, dict):
        raise ProtocolError(f"control frame must be a JSON object, got {type(message).__name__}")
    return message


def is_file_metadata(message: Mapping[str, Any]) -> bool:
    return message.get("type") == FILE_METADATA_TYPE


def stamp_for_recipient(message: Mapping[str, Any]) -> bytes:
    # The caller's mapping is left untouched; every recipient gets its own copy
    stamped = dict(message)
    stamped[IS_SENDER_KEY] = False
    return encode_control(stamped)


def relay_control(payload: bytes) -> bytes:
    return stamp_for_recipient(decode_control(payload))


def join_status_frame() -> Frame:
    return Frame.text(encode_control(JOIN_STATUS_MESSAGE))
