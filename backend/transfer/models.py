"""Pydantic models for the transfer handshake and the peer channel."""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class SessionState(str, Enum):
    """States of a transfer session."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TRANSFERRING = "transferring"
    COMPLETE = "complete"
    FAILED = "failed"


class SessionRole(str, Enum):
    SENDER = "sender"
    RECEIVER = "receiver"


class FileManifestEntry(BaseModel):
    """Metadata of one file offered in a transfer request."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(min_length=1)
    size: int = Field(ge=0)
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")


class OutgoingFile(BaseModel):
    """A manifest entry plus where to read its content from."""
    manifest: FileManifestEntry
    path: str


class TransferIntent(BaseModel):
    """Files queued for a peer while its answer is pending."""
    peer_id: str
    files: list[OutgoingFile]
    created_at: float = Field(default_factory=time.monotonic)

    @property
    def total_size(self) -> int:
        return sum(f.manifest.size for f in self.files)

    @property
    def manifest(self) -> list[FileManifestEntry]:
        return [f.manifest for f in self.files]


class ConnectionOffer(BaseModel):
    """Where the receiver is listening for the sender's data channel."""
    address: str
    port: int
    token: str


class TransferRequestMessage(BaseModel):
    """transfer-request as relayed by the registry."""
    model_config = ConfigDict(populate_by_name=True)

    to: str = ""
    from_: str = Field(alias="from", min_length=1)
    from_name: str = Field(default="", alias="fromName")
    files: list[FileManifestEntry]
    session_key: str | None = Field(default=None, alias="sessionKey")

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)


class TransferResponseMessage(BaseModel):
    """transfer-response as relayed by the registry."""
    model_config = ConfigDict(populate_by_name=True)

    to: str = ""
    from_: str = Field(alias="from", min_length=1)
    accepted: bool
    connection_offer: ConnectionOffer | None = Field(default=None, alias="connectionOffer")


class TransferInfo(BaseModel):
    """State of one session, exposed to the frontend."""
    transfer_id: str
    peer_device_id: str
    role: SessionRole
    state: SessionState = SessionState.IDLE
    file_name: str = ""
    file_index: int = 0
    file_count: int = 0
    total_bytes: int = 0
    transferred_bytes: int = 0
    error_message: str | None = None


# --- Peer channel control records ---

class Hello(BaseModel):
    """First record on a data channel; proves the dialer was handed our offer."""
    type: Literal["hello"] = "hello"
    token: str


class FileStart(BaseModel):
    type: Literal["file-start"] = "file-start"
    name: str
    size: int = Field(ge=0)
    index: int = Field(ge=0)
    total: int = Field(ge=1)


class FileEnd(BaseModel):
    type: Literal["file-end"] = "file-end"
    index: int = Field(ge=0)


class TransferComplete(BaseModel):
    type: Literal["transfer-complete"] = "transfer-complete"


ControlMessage = Annotated[
    Union[Hello, FileStart, FileEnd, TransferComplete],
    Field(discriminator="type"),
]
control_adapter = TypeAdapter(ControlMessage)


@dataclass(frozen=True)
class Control:
    """A structured record on the data channel."""
    message: Hello | FileStart | FileEnd | TransferComplete


@dataclass(frozen=True)
class Data:
    """A raw chunk of file content on the data channel."""
    payload: bytes


Envelope = Union[Control, Data]
