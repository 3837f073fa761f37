import asyncio
import json
import struct

import pytest

from errors import ValidationError
from transfer.codec import (
    HEADER_SIZE,
    KIND_BINARY,
    KIND_TEXT,
    decode,
    encode,
    read_envelope,
)
from transfer.models import Control, Data, FileEnd, FileStart, TransferComplete


def test_control_record_is_text_frame():
    frame = encode(Control(FileStart(name="a.txt", size=20000, index=0, total=2)))
    kind, length = struct.unpack("!BI", frame[:HEADER_SIZE])

    assert kind == KIND_TEXT
    assert length == len(frame) - HEADER_SIZE
    assert json.loads(frame[HEADER_SIZE:]) == {
        "type": "file-start",
        "name": "a.txt",
        "size": 20000,
        "index": 0,
        "total": 2,
    }


def test_binary_that_looks_like_json_stays_data():
    payload = b'{"type": "transfer-complete"}'
    frame = encode(Data(payload))
    kind, _ = struct.unpack("!BI", frame[:HEADER_SIZE])

    assert kind == KIND_BINARY
    assert decode(kind, frame[HEADER_SIZE:]) == Data(payload)


def test_decode_control_by_type():
    assert decode(KIND_TEXT, b'{"type": "file-end", "index": 3}') == Control(FileEnd(index=3))
    assert decode(KIND_TEXT, b'{"type": "transfer-complete"}') == Control(TransferComplete())


@pytest.mark.parametrize(
    "kind,payload",
    [
        (KIND_TEXT, b"not json"),
        (KIND_TEXT, b'{"type": "file-start", "name": "x"}'),
        (KIND_TEXT, b'{"type": "bogus"}'),
        (0x7F, b"anything"),
    ],
)
def test_decode_rejects_bad_frames(kind, payload):
    with pytest.raises(ValidationError):
        decode(kind, payload)


def test_read_envelope_from_stream_preserves_order():
    async def scenario():
        reader = asyncio.StreamReader()
        reader.feed_data(encode(Control(FileStart(name="f", size=3, index=0, total=1))))
        reader.feed_data(encode(Data(b"abc")))
        reader.feed_data(encode(Data(b"")))
        reader.feed_data(encode(Control(FileEnd(index=0))))
        reader.feed_eof()

        received = [await read_envelope(reader) for _ in range(4)]
        with pytest.raises(asyncio.IncompleteReadError):
            await read_envelope(reader)
        return received

    received = asyncio.run(scenario())
    assert received == [
        Control(FileStart(name="f", size=3, index=0, total=1)),
        Data(b"abc"),
        Data(b""),
        Control(FileEnd(index=0)),
    ]
