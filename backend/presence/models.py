"""Pydantic models for the presence channel."""

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError


class PresenceEvent(str, Enum):
    """Event names carried on the presence websocket."""
    ANNOUNCE = "identity-announce"
    DISCOVERED = "device-discovered"
    DISCONNECTED = "device-disconnected"
    TRANSFER_REQUEST = "transfer-request"
    TRANSFER_RESPONSE = "transfer-response"


class DeviceIdentity(BaseModel):
    """What a node says about itself."""
    id: str = Field(min_length=1)
    name: str = ""
    address: str = ""


class DeviceRecord(DeviceIdentity):
    """A peer as seen by the registry or a client's presence table."""
    model_config = ConfigDict(populate_by_name=True)

    last_seen: float = Field(default_factory=time.time, alias="lastSeen")
    session_key: str | None = Field(default=None, alias="sessionKey")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class PresenceMessage(BaseModel):
    """Envelope of every presence frame: {"event": ..., "data": ...}."""
    event: PresenceEvent
    data: Any = None


def parse_identity(data: Any) -> DeviceIdentity:
    """Validate an announcement payload, raising ValidationError if it has no id."""
    try:
        return DeviceIdentity.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid announcement: {e.error_count()} error(s)") from e


def parse_record(data: Any) -> DeviceRecord:
    try:
        return DeviceRecord.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid device record: {e.error_count()} error(s)") from e


def parse_message(raw: str) -> PresenceMessage:
    try:
        return PresenceMessage.model_validate_json(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid presence frame: {e.error_count()} error(s)") from e
