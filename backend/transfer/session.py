"""
Transfer session state machine.

A session owns one peer channel. Channel events (ready, message, error,
closed) drive it through Idle -> Connecting -> Connected -> Transferring
-> Complete, with Failed reachable from anywhere. The sender streams its
files as file-start / chunks / file-end records followed by
transfer-complete; the receiver rebuilds each file by concatenating chunks
in arrival order.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from config import CHUNK_DELAY, CHUNK_SIZE
from errors import PeerChannelError, StorageError
from transfer import storage
from transfer.channel import ChannelClosed, ChannelError, ChannelMessage, ChannelReady
from transfer.models import (
    Control,
    Data,
    FileEnd,
    FileStart,
    OutgoingFile,
    SessionRole,
    SessionState,
    TransferComplete,
    TransferInfo,
)
from transfer.progress import ProgressTracker

logger = logging.getLogger(__name__)

TERMINAL_STATES = (SessionState.COMPLETE, SessionState.FAILED)


@dataclass
class IncomingFile:
    """Accumulation state of the file currently being received."""
    name: str
    size: int
    index: int
    chunks: list[bytes] = field(default_factory=list)
    received: int = 0


class TransferSession:
    """One file exchange with one peer, in either role."""

    def __init__(
        self,
        transfer_id: str,
        peer_id: str,
        role: SessionRole,
        progress: ProgressTracker,
        files: list[OutgoingFile] | None = None,
        destination=None,
        write_file=storage.write_file,
        read_chunks=storage.read_chunks,
        chunk_size: int = CHUNK_SIZE,
        chunk_delay: float = CHUNK_DELAY,
        on_state=None,
        on_progress=None,
        on_file=None,
    ) -> None:
        if role == SessionRole.SENDER and not files:
            raise ValueError("a sender session needs at least one file")
        if role == SessionRole.RECEIVER and destination is None:
            raise ValueError("a receiver session needs a destination")

        self.transfer_id = transfer_id
        self.peer_id = peer_id
        self.role = role
        self.files = list(files or [])
        self.channel = None
        self.current_file: IncomingFile | None = None

        self._progress = progress
        self._destination = destination  # async fn(file_name) -> path | None
        self._write_file = write_file
        self._read_chunks = read_chunks
        self._chunk_size = chunk_size
        self._chunk_delay = chunk_delay
        self._on_state = on_state  # async fn(TransferInfo)
        self._on_progress = on_progress  # async fn(ProgressUpdate)
        self._on_file = on_file  # async fn(session, name, path, saved)
        self._done = asyncio.Event()

        self.info = TransferInfo(
            transfer_id=transfer_id,
            peer_device_id=peer_id,
            role=role,
            file_count=len(self.files),
            total_bytes=sum(f.manifest.size for f in self.files),
        )

    @property
    def state(self) -> SessionState:
        return self.info.state

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    async def wait_finished(self) -> None:
        await self._done.wait()

    def attach(self, channel) -> None:
        """Bind the channel the session sends on."""
        self.channel = channel

    async def connecting(self) -> None:
        if self.state == SessionState.IDLE:
            await self._set_state(SessionState.CONNECTING)

    async def handle(self, event) -> None:
        """Consume one channel event."""
        if self.finished:
            return

        if isinstance(event, ChannelReady):
            await self._on_ready()
        elif isinstance(event, ChannelMessage):
            await self._on_message(event.envelope)
        elif isinstance(event, ChannelError):
            await self.fail(f"channel error: {event.error}")
        elif isinstance(event, ChannelClosed):
            await self.fail("channel closed by peer")
        else:
            raise TypeError(f"Unknown channel event {event!r}")

    async def fail(self, reason: str) -> None:
        if self.finished:
            return
        if self.current_file is not None:
            logger.warning(
                f"Discarding partial file {self.current_file.name} "
                f"({self.current_file.received}/{self.current_file.size} bytes)"
            )
            self.current_file = None
        self.info.error_message = reason
        self._progress.remove(self.transfer_id)
        await self._set_state(SessionState.FAILED)

    # --- Transitions ---

    async def _set_state(self, state: SessionState) -> None:
        logger.info(f"Session {self.transfer_id} ({self.role.value}, peer {self.peer_id}): "
                    f"{self.state.value} -> {state.value}")
        self.info.state = state
        if state in TERMINAL_STATES:
            self._done.set()
        if self._on_state:
            await self._on_state(self.info)

    async def _on_ready(self) -> None:
        if self.state not in (SessionState.IDLE, SessionState.CONNECTING):
            logger.warning(f"Session {self.transfer_id}: ready while {self.state.value}")
            return
        await self._set_state(SessionState.CONNECTED)
        if self.role == SessionRole.SENDER:
            await self._send_all()

    async def _report(self, update) -> None:
        if update is not None and self._on_progress:
            await self._on_progress(update)

    # --- Sender ---

    async def _send_all(self) -> None:
        if self.channel is None:
            await self.fail("no channel attached")
            return

        await self._set_state(SessionState.TRANSFERRING)
        total_size = self.info.total_bytes
        total_sent = 0
        self._progress.start(self.transfer_id, total_size)

        try:
            for index, outgoing in enumerate(self.files):
                entry = outgoing.manifest
                self.info.file_name = entry.name
                self.info.file_index = index
                await self.channel.send(Control(FileStart(
                    name=entry.name,
                    size=entry.size,
                    index=index,
                    total=len(self.files),
                )))

                async for chunk in self._read_chunks(outgoing.path, self._chunk_size):
                    if self.state != SessionState.TRANSFERRING:
                        return
                    await self.channel.send(Data(chunk))
                    total_sent += len(chunk)
                    self.info.transferred_bytes = total_sent
                    await self._report(self._progress.update(self.transfer_id, total_sent, total_size))
                    await asyncio.sleep(self._chunk_delay)

                await self.channel.send(Control(FileEnd(index=index)))

            await self.channel.send(Control(TransferComplete()))
        except (PeerChannelError, StorageError) as e:
            logger.error(f"Send error for session {self.transfer_id}: {e}")
            await self.fail(str(e))
            return

        if self.state != SessionState.TRANSFERRING:
            return
        update = self._progress.complete(self.transfer_id)
        await self._set_state(SessionState.COMPLETE)
        await self._report(update)

    # --- Receiver ---

    async def _on_message(self, envelope) -> None:
        if self.role == SessionRole.SENDER:
            logger.warning(f"Session {self.transfer_id}: ignoring inbound data on sender")
            return
        if self.state not in (SessionState.CONNECTED, SessionState.TRANSFERRING):
            logger.warning(f"Session {self.transfer_id}: message while {self.state.value}")
            return

        if isinstance(envelope, Data):
            await self._on_chunk(envelope.payload)
            return

        message = envelope.message
        if isinstance(message, FileStart):
            await self._on_file_start(message)
        elif isinstance(message, FileEnd):
            await self._on_file_end(message)
        elif isinstance(message, TransferComplete):
            await self._on_transfer_complete()
        else:
            logger.warning(f"Session {self.transfer_id}: unexpected {message.type}")

    async def _on_file_start(self, message: FileStart) -> None:
        if self.state == SessionState.CONNECTED:
            await self._set_state(SessionState.TRANSFERRING)

        if self.transfer_id in self._progress:
            self._progress.restart_file(self.transfer_id, message.size)
        else:
            self._progress.start(self.transfer_id, message.size)

        self.current_file = IncomingFile(name=message.name, size=message.size, index=message.index)
        self.info.file_name = message.name
        self.info.file_index = message.index
        self.info.file_count = message.total
        self.info.transferred_bytes = 0
        logger.info(f"Receiving {message.name} ({message.index + 1}/{message.total}, {message.size} bytes)")

    async def _on_chunk(self, payload: bytes) -> None:
        current = self.current_file
        if current is None:
            logger.debug(f"Session {self.transfer_id}: chunk outside of a file, dropped")
            return
        current.chunks.append(payload)
        current.received += len(payload)
        self.info.transferred_bytes = current.received
        await self._report(self._progress.update(self.transfer_id, current.received, current.size))

    async def _on_file_end(self, message: FileEnd) -> None:
        current = self.current_file
        if current is None:
            logger.warning(f"Session {self.transfer_id}: file-end {message.index} without a file")
            return
        self.current_file = None

        if message.index != current.index:
            logger.warning(f"Session {self.transfer_id}: file-end {message.index} "
                           f"closes file {current.index} ({current.name})")
        if current.received != current.size:
            logger.warning(f"Session {self.transfer_id}: {current.name} announced "
                           f"{current.size} bytes but {current.received} arrived")

        payload = b"".join(current.chunks)
        await self._report(self._progress.finish_file(self.transfer_id))

        path = await self._destination(current.name)
        saved = False
        if path:
            saved = await self._write_file(path, payload)
            if saved:
                logger.info(f"File saved: {path} ({len(payload)} bytes)")
        else:
            logger.info(f"No destination for {current.name}, discarded")

        if self._on_file:
            await self._on_file(self, current.name, path, saved)

    async def _on_transfer_complete(self) -> None:
        if self.current_file is not None:
            logger.warning(f"Session {self.transfer_id}: transfer-complete inside {self.current_file.name}")
            self.current_file = None
        update = self._progress.complete(self.transfer_id)
        await self._set_state(SessionState.COMPLETE)
        await self._report(update)


class SessionTable:
    """Active sessions keyed by peer id; a new entry for a peer replaces the old one."""

    def __init__(self) -> None:
        self._sessions: dict[str, TransferSession] = {}

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, peer_id: str) -> TransferSession | None:
        return self._sessions.get(peer_id)

    def values(self) -> list[TransferSession]:
        return list(self._sessions.values())

    def put(self, session: TransferSession) -> TransferSession | None:
        """Store a session, returning whatever it displaced."""
        previous = self._sessions.get(session.peer_id)
        self._sessions[session.peer_id] = session
        return previous

    def discard(self, session: TransferSession) -> bool:
        """Remove ``session`` if it is still the entry for its peer."""
        if self._sessions.get(session.peer_id) is session:
            del self._sessions[session.peer_id]
            return True
        return False
