import asyncio
import os

import pytest

from errors import PeerChannelError
from transfer.channel import ChannelClosed, ChannelError, ChannelMessage, ChannelReady
from transfer.models import (
    Control,
    Data,
    FileEnd,
    FileStart,
    SessionRole,
    SessionState,
    TransferComplete,
)
from transfer.progress import ProgressTracker
from transfer.session import SessionTable, TransferSession
from transfer.storage import describe_file


class RecordingChannel:
    def __init__(self, fail_after: int | None = None) -> None:
        self.sent = []
        self._fail_after = fail_after

    async def send(self, envelope) -> None:
        if self._fail_after is not None and len(self.sent) >= self._fail_after:
            raise PeerChannelError("send failed: connection reset")
        self.sent.append(envelope)


def make_file(tmp_path, name, size):
    path = tmp_path / name
    path.write_bytes(os.urandom(size))
    return describe_file(str(path))


def wire_summary(envelopes):
    summary = []
    for env in envelopes:
        if isinstance(env, Data):
            summary.append(("chunk", len(env.payload)))
        elif isinstance(env.message, FileStart):
            summary.append(("file-start", env.message.index, env.message.size))
        elif isinstance(env.message, FileEnd):
            summary.append(("file-end", env.message.index))
        else:
            summary.append((env.message.type,))
    return summary


async def run_sender(files, channel=None, **kwargs):
    channel = channel or RecordingChannel()
    states = []

    async def on_state(info):
        states.append(info.state)

    session = TransferSession(
        "t-send", "peer-b", SessionRole.SENDER, ProgressTracker(),
        files=files, chunk_delay=0, on_state=on_state, **kwargs,
    )
    session.attach(channel)
    await session.connecting()
    await session.handle(ChannelReady())
    return session, channel, states


def make_receiver(out_dir, **kwargs):
    saved = {}

    async def destination(name):
        return str(out_dir / name)

    async def on_file(session, name, path, ok):
        saved[name] = (path, ok)

    session = TransferSession(
        "t-recv", "peer-a", SessionRole.RECEIVER, ProgressTracker(),
        destination=kwargs.pop("destination", destination), on_file=on_file, **kwargs,
    )
    return session, saved


def test_two_file_wire_sequence(tmp_path):
    files = [make_file(tmp_path, "one.bin", 20000), make_file(tmp_path, "two.bin", 5000)]
    session, channel, states = asyncio.run(run_sender(files))

    assert wire_summary(channel.sent) == [
        ("file-start", 0, 20000),
        ("chunk", 16384),
        ("chunk", 3616),
        ("file-end", 0),
        ("file-start", 1, 5000),
        ("chunk", 5000),
        ("file-end", 1),
        ("transfer-complete",),
    ]
    assert states == [
        SessionState.CONNECTING,
        SessionState.CONNECTED,
        SessionState.TRANSFERRING,
        SessionState.COMPLETE,
    ]
    start = channel.sent[0].message
    assert (start.name, start.total) == ("one.bin", 2)


def test_sender_fails_when_channel_breaks(tmp_path):
    files = [make_file(tmp_path, "big.bin", 50000)]
    session, channel, states = asyncio.run(run_sender(files, RecordingChannel(fail_after=2)))

    assert session.state == SessionState.FAILED
    assert "connection reset" in session.info.error_message
    assert SessionState.COMPLETE not in states


def test_sender_fails_on_unreadable_file(tmp_path):
    outgoing = make_file(tmp_path, "gone.bin", 10)
    os.remove(outgoing.path)
    session, channel, _ = asyncio.run(run_sender([outgoing]))

    assert session.state == SessionState.FAILED
    assert wire_summary(channel.sent) == [("file-start", 0, 10)]


def test_sender_requires_files():
    with pytest.raises(ValueError):
        TransferSession("t", "p", SessionRole.SENDER, ProgressTracker(), files=[])


@pytest.mark.parametrize("size", [0, 1, 16384, 32768, 20000, 70001])
def test_receiver_rebuilds_file_byte_for_byte(tmp_path, size):
    src = tmp_path / "src"
    out = tmp_path / "out"
    src.mkdir()
    out.mkdir()
    outgoing = make_file(src, "payload.bin", size)

    async def scenario():
        _, channel, _ = await run_sender([outgoing])
        receiver, saved = make_receiver(out)
        await receiver.connecting()
        await receiver.handle(ChannelReady())
        for envelope in channel.sent:
            await receiver.handle(ChannelMessage(envelope))
        return receiver, saved

    receiver, saved = asyncio.run(scenario())

    assert receiver.state == SessionState.COMPLETE
    assert (out / "payload.bin").read_bytes() == (src / "payload.bin").read_bytes()
    assert saved["payload.bin"] == (str(out / "payload.bin"), True)


def test_receiver_concatenates_uneven_chunks(tmp_path):
    async def scenario():
        receiver, _ = make_receiver(tmp_path)
        await receiver.handle(ChannelReady())
        await receiver.handle(ChannelMessage(Control(FileStart(name="x", size=6, index=0, total=1))))
        for part in (b"a", b"bcd", b"", b"ef"):
            await receiver.handle(ChannelMessage(Data(part)))
        await receiver.handle(ChannelMessage(Control(FileEnd(index=0))))
        await receiver.handle(ChannelMessage(Control(TransferComplete())))
        return receiver

    receiver = asyncio.run(scenario())
    assert (tmp_path / "x").read_bytes() == b"abcdef"
    assert receiver.state == SessionState.COMPLETE


def test_receiver_percent_is_monotonic_and_reaches_100(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    files = [make_file(src, "a.bin", 40000), make_file(src, "b.bin", 0)]
    updates = []

    async def on_progress(update):
        updates.append(update.percent)

    async def scenario():
        _, channel, _ = await run_sender(files)
        receiver, _ = make_receiver(tmp_path, on_progress=on_progress)
        await receiver.handle(ChannelReady())
        per_file = []
        for envelope in channel.sent:
            if isinstance(envelope, Control) and isinstance(envelope.message, FileStart):
                updates.clear()
            await receiver.handle(ChannelMessage(envelope))
            if isinstance(envelope, Control) and isinstance(envelope.message, FileEnd):
                per_file.append(list(updates))
        return per_file

    per_file = asyncio.run(scenario())
    assert len(per_file) == 2
    for percents in per_file:
        assert percents == sorted(percents)
        assert percents[-1] == 100


def test_receiver_discards_when_no_destination(tmp_path):
    async def no_destination(name):
        return None

    writes = []

    async def write_file(path, data):
        writes.append(path)
        return True

    async def scenario():
        receiver, saved = make_receiver(tmp_path, destination=no_destination, write_file=write_file)
        await receiver.handle(ChannelReady())
        await receiver.handle(ChannelMessage(Control(FileStart(name="x", size=2, index=0, total=1))))
        await receiver.handle(ChannelMessage(Data(b"hi")))
        await receiver.handle(ChannelMessage(Control(FileEnd(index=0))))
        return receiver, saved

    receiver, saved = asyncio.run(scenario())
    assert writes == []
    assert saved == {"x": (None, False)}
    assert receiver.current_file is None


def test_receiver_reports_failed_write(tmp_path):
    async def write_file(path, data):
        return False

    async def scenario():
        receiver, saved = make_receiver(tmp_path, write_file=write_file)
        await receiver.handle(ChannelReady())
        await receiver.handle(ChannelMessage(Control(FileStart(name="x", size=1, index=0, total=1))))
        await receiver.handle(ChannelMessage(Data(b"z")))
        await receiver.handle(ChannelMessage(Control(FileEnd(index=0))))
        return saved

    saved = asyncio.run(scenario())
    assert saved["x"][1] is False


@pytest.mark.parametrize("event", [ChannelClosed(), ChannelError(ConnectionResetError("reset"))])
def test_partial_file_discarded_on_close(tmp_path, event):
    writes = []

    async def write_file(path, data):
        writes.append(path)
        return True

    async def scenario():
        receiver, _ = make_receiver(tmp_path, write_file=write_file)
        await receiver.handle(ChannelReady())
        await receiver.handle(ChannelMessage(Control(FileStart(name="x", size=10, index=0, total=1))))
        await receiver.handle(ChannelMessage(Data(b"01234")))
        await receiver.handle(event)
        # Nothing after the close is processed
        await receiver.handle(ChannelMessage(Control(FileEnd(index=0))))
        return receiver

    receiver = asyncio.run(scenario())
    assert receiver.state == SessionState.FAILED
    assert receiver.current_file is None
    assert writes == []


def test_data_outside_a_file_is_ignored(tmp_path):
    async def scenario():
        receiver, _ = make_receiver(tmp_path)
        await receiver.handle(ChannelReady())
        await receiver.handle(ChannelMessage(Data(b"stray")))
        return receiver

    receiver = asyncio.run(scenario())
    assert receiver.state == SessionState.CONNECTED
    assert receiver.current_file is None


def test_session_table_overwrites_and_discards_only_current():
    async def destination(name):
        return None

    table = SessionTable()
    first = TransferSession("t1", "peer", SessionRole.RECEIVER, ProgressTracker(), destination=destination)
    second = TransferSession("t2", "peer", SessionRole.RECEIVER, ProgressTracker(), destination=destination)

    assert table.put(first) is None
    assert table.put(second) is first
    assert len(table) == 1

    assert table.discard(first) is False
    assert table.get("peer") is second
    assert table.discard(second) is True
    assert "peer" not in table


class TimelineChannel:
    """Records sends and pauses in the order they complete."""

    def __init__(self, timeline, real_sleep) -> None:
        self._timeline = timeline
        self._real_sleep = real_sleep

    async def send(self, envelope) -> None:
        await self._real_sleep(0)  # stands in for drain
        if isinstance(envelope, Data):
            self._timeline.append(("chunk", len(envelope.payload)))
        else:
            self._timeline.append((envelope.message.type,))


def test_sender_pauses_after_each_drained_chunk(tmp_path, monkeypatch):
    timeline = []
    real_sleep = asyncio.sleep

    async def recording_sleep(delay, *args, **kwargs):
        timeline.append(("pause", delay))
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", recording_sleep)
    outgoing = make_file(tmp_path, "paced.bin", 40000)

    async def scenario():
        session = TransferSession(
            "t-paced", "peer-b", SessionRole.SENDER, ProgressTracker(),
            files=[outgoing], chunk_delay=0.25,
        )
        session.attach(TimelineChannel(timeline, real_sleep))
        await session.handle(ChannelReady())
        return session

    session = asyncio.run(scenario())
    assert session.state == SessionState.COMPLETE
    assert timeline == [
        ("file-start",),
        ("chunk", 16384),
        ("pause", 0.25),
        ("chunk", 16384),
        ("pause", 0.25),
        ("chunk", 7232),
        ("pause", 0.25),
        ("file-end",),
        ("transfer-complete",),
    ]


@pytest.mark.parametrize(
    "chunks,end_index,expected",
    [
        ([b"abc"], 1, "file-end 1 closes file 0"),
        ([b"ab"], 0, "announced 3 bytes but 2 arrived"),
        ([b"abc", b"d"], 0, "announced 3 bytes but 4 arrived"),
    ],
)
def test_receiver_warns_when_file_end_is_out_of_step(tmp_path, caplog, chunks, end_index, expected):
    async def scenario():
        receiver, saved = make_receiver(tmp_path)
        await receiver.handle(ChannelReady())
        await receiver.handle(ChannelMessage(Control(FileStart(name="x", size=3, index=0, total=2))))
        for chunk in chunks:
            await receiver.handle(ChannelMessage(Data(chunk)))
        await receiver.handle(ChannelMessage(Control(FileEnd(index=end_index))))
        return saved

    with caplog.at_level("WARNING", logger="transfer.session"):
        saved = asyncio.run(scenario())

    assert expected in caplog.text
    assert saved["x"][1] is True


def test_receiver_in_step_file_end_logs_no_warning(tmp_path, caplog):
    async def scenario():
        receiver, _ = make_receiver(tmp_path)
        await receiver.handle(ChannelReady())
        await receiver.handle(ChannelMessage(Control(FileStart(name="x", size=3, index=0, total=1))))
        await receiver.handle(ChannelMessage(Data(b"abc")))
        await receiver.handle(ChannelMessage(Control(FileEnd(index=0))))

    with caplog.at_level("WARNING", logger="transfer.session"):
        asyncio.run(scenario())

    assert [r for r in caplog.records if r.name == "transfer.session"] == []
