"""
Wire framing for the peer data channel.

Every unit on the channel is a kind-length-payload frame. The kind byte
says whether the payload is text (a JSON control record) or binary (a
chunk of file content); it is set from the envelope type when encoding,
so the receiver never has to guess from the bytes.
"""

import asyncio
import json
import struct

from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError
from transfer.models import Control, Data, Envelope, control_adapter

HEADER_FORMAT = "!BI"  # 1-byte kind + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

KIND_TEXT = 0x01
KIND_BINARY = 0x02

MAX_FRAME_SIZE = 16 * 1024 * 1024


def encode(envelope: Envelope) -> bytes:
    """Serialize an envelope into one frame."""
    if isinstance(envelope, Control):
        kind = KIND_TEXT
        payload = json.dumps(envelope.message.model_dump()).encode("utf-8")
    elif isinstance(envelope, Data):
        kind = KIND_BINARY
        payload = bytes(envelope.payload)
    else:
        raise TypeError(f"Cannot encode {type(envelope).__name__}")
    return struct.pack(HEADER_FORMAT, kind, len(payload)) + payload


def decode(kind: int, payload: bytes) -> Envelope:
    """Turn a frame's kind and payload back into an envelope."""
    if kind == KIND_BINARY:
        return Data(payload)
    if kind == KIND_TEXT:
        try:
            return Control(control_adapter.validate_json(payload))
        except PydanticValidationError as e:
            raise ValidationError(f"invalid control record: {e.error_count()} error(s)") from e
    raise ValidationError(f"unknown frame kind {kind:#x}")


async def write_envelope(writer: asyncio.StreamWriter, envelope: Envelope) -> None:
    """Write one frame and wait until the transport has taken it."""
    writer.write(encode(envelope))
    await writer.drain()


async def read_envelope(reader: asyncio.StreamReader) -> Envelope:
    """Read one frame. Raises asyncio.IncompleteReadError at end of stream."""
    header = await reader.readexactly(HEADER_SIZE)
    kind, length = struct.unpack(HEADER_FORMAT, header)
    if length > MAX_FRAME_SIZE:
        raise ValidationError(f"frame of {length} bytes exceeds limit")
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return decode(kind, payload)
