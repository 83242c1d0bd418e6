"""Wire protocol between the agent and the control server.

JSON text frames, flat fields, discriminated by ``type``:

  Agent → Server:  device_info, heartbeat, auth, command_result, log
  Server → Agent:  auth, command (anything else goes to the host handler)
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Union


class ProtocolError(Exception):
    """Raised when an inbound frame cannot be decoded."""


@dataclass(frozen=True)
class DeviceInfo:
    type: ClassVar[str] = "device_info"
    device_id: str
    info: Any

    def to_dict(self) -> dict:
        return {"type": self.type, "device_id": self.device_id, "info": _serialize(self.info)}


@dataclass(frozen=True)
class Heartbeat:
    type: ClassVar[str] = "heartbeat"
    device_id: str
    timestamp: int  # ms since epoch

    def to_dict(self) -> dict:
        return {"type": self.type, "device_id": self.device_id, "timestamp": self.timestamp}


@dataclass(frozen=True)
class Auth:
    type: ClassVar[str] = "auth"
    token: str

    def to_dict(self) -> dict:
        return {"type": self.type, "token": self.token}


@dataclass(frozen=True)
class Command:
    type: ClassVar[str] = "command"
    id: str
    command: str
    sudo: bool = False

    def to_dict(self) -> dict:
        return {"type": self.type, "id": self.id, "command": self.command, "sudo": self.sudo}


@dataclass(frozen=True)
class CommandResultMessage:
    type: ClassVar[str] = "command_result"
    id: str
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "id": self.id,
            "success": self.success,
            "output": self.output or "",
            "error": self.error or "",
        }


@dataclass(frozen=True)
class Log:
    type: ClassVar[str] = "log"
    device_id: str
    level: str
    message: str
    data: Any = None

    def to_dict(self) -> dict:
        msg = {
            "type": self.type,
            "device_id": self.device_id,
            "level": self.level,
            "message": self.message,
        }
        if self.data is not None:
            msg["data"] = _serialize(self.data)
        return msg


@dataclass(frozen=True)
class UnknownMessage:
    """Any frame whose ``type`` this agent does not model."""

    type: str
    payload: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {**self.payload, "type": self.type}


Envelope = Union[
    DeviceInfo, Heartbeat, Auth, Command, CommandResultMessage, Log, UnknownMessage
]


def _serialize(value: Any) -> Any:
    """Turn snapshot-like values into JSON-ready data."""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return value


def _text(msg: dict, key: str) -> str:
    value = msg.get(key)
    return "" if value is None else str(value)


def _optional_text(msg: dict, key: str) -> Optional[str]:
    value = msg.get(key)
    if value is None or value == "":
        return None
    return str(value)


def encode(envelope: Envelope) -> str:
    """Serialize an envelope to a JSON text frame."""
    return json.dumps(envelope.to_dict())


def decode(raw: str | bytes) -> Envelope:
    """Parse a JSON text frame into an envelope.

    Raises :class:`ProtocolError` if the frame is not a JSON object with a
    ``type`` field. Unrecognised types decode to :class:`UnknownMessage`.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        msg = json.loads(raw)
    except (ValueError, RecursionError) as exc:
        raise ProtocolError(f"Invalid JSON frame: {exc}") from exc
    if not isinstance(msg, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(msg).__name__}")

    msg_type = msg.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ProtocolError("Frame has no 'type' field")

    if msg_type == "auth":
        return Auth(token=_text(msg, "token"))
    if msg_type == "command":
        return Command(
            id=_text(msg, "id"),
            command=_text(msg, "command"),
            sudo=msg.get("sudo") is True,
        )
    if msg_type == "command_result":
        return CommandResultMessage(
            id=_text(msg, "id"),
            success=msg.get("success") is True,
            output=_optional_text(msg, "output"),
            error=_optional_text(msg, "error"),
        )
    if msg_type == "heartbeat":
        try:
            timestamp = int(msg.get("timestamp") or 0)
        except (TypeError, ValueError) as exc:
            raise ProtocolError(f"Bad heartbeat timestamp: {exc}") from exc
        return Heartbeat(device_id=_text(msg, "device_id"), timestamp=timestamp)
    if msg_type == "device_info":
        return DeviceInfo(device_id=_text(msg, "device_id"), info=msg.get("info"))
    if msg_type == "log":
        return Log(
            device_id=_text(msg, "device_id"),
            level=_text(msg, "level"),
            message=_text(msg, "message"),
            data=msg.get("data"),
        )

    payload = {k: v for k, v in msg.items() if k != "type"}
    return UnknownMessage(type=msg_type, payload=payload)
