"""
Transfer manager: runs transfer sessions.

Creates receiver and sender sessions, opens their data channels, keeps the
active-session table and progress tracker, and forwards state and progress
to the WebSocket event system.
"""

import asyncio
import logging
import os
import uuid

from config import (
    CHANNEL_ACCEPT_TIMEOUT,
    CHUNK_DELAY,
    CHUNK_SIZE,
    CONNECT_TIMEOUT,
    DEFAULT_SAVE_DIR,
)
from errors import ConnectivityError, PeerBusyError
from transfer import storage
from transfer.channel import ChannelListener, ChannelReady, dial
from transfer.models import (
    ConnectionOffer,
    OutgoingFile,
    SessionRole,
    SessionState,
    TransferInfo,
)
from transfer.progress import ProgressTracker, ProgressUpdate
from transfer.session import SessionTable, TransferSession

logger = logging.getLogger(__name__)


class TransferManager:
    """Manages all active file transfer sessions."""

    def __init__(
        self,
        advertise_address: str,
        listen_host: str = "0.0.0.0",
        sessions: SessionTable | None = None,
        progress: ProgressTracker | None = None,
        destination=None,
        chunk_size: int = CHUNK_SIZE,
        chunk_delay: float = CHUNK_DELAY,
        connect_timeout: float = CONNECT_TIMEOUT,
        accept_timeout: float = CHANNEL_ACCEPT_TIMEOUT,
    ) -> None:
        self.sessions = sessions if sessions is not None else SessionTable()
        self.progress = progress if progress is not None else ProgressTracker()
        self._advertise_address = advertise_address
        self._listen_host = listen_host
        self._destination = destination or storage.save_dir_destination(lambda: self.save_dir)
        self._chunk_size = chunk_size
        self._chunk_delay = chunk_delay
        self._connect_timeout = connect_timeout
        self._accept_timeout = accept_timeout
        self._tasks: dict[str, asyncio.Task] = {}
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._save_dir = DEFAULT_SAVE_DIR

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def has_active(self, peer_id: str) -> bool:
        session = self.sessions.get(peer_id)
        return session is not None and not session.finished

    def get_transfers(self) -> list[TransferInfo]:
        return [s.info for s in self.sessions.values()]

    def get_progress(self) -> list[ProgressUpdate]:
        return self.progress.snapshots()

    async def stop(self) -> None:
        """Cancel every running session."""
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
        logger.info("Transfer manager stopped")

    def _new_session(self, peer_id: str, role: SessionRole, files=None) -> TransferSession:
        if self.has_active(peer_id):
            raise PeerBusyError(f"a transfer with {peer_id} is already in progress")

        session = TransferSession(
            transfer_id=uuid.uuid4().hex,
            peer_id=peer_id,
            role=role,
            progress=self.progress,
            files=files,
            destination=self._destination,
            chunk_size=self._chunk_size,
            chunk_delay=self._chunk_delay,
            on_state=self._on_state_change,
            on_progress=self._on_progress,
            on_file=self._on_file,
        )
        self.sessions.put(session)
        return session

    async def open_receiver(self, peer_id: str) -> ConnectionOffer:
        """Create a receiver session and return the offer the sender should dial."""
        session = self._new_session(peer_id, SessionRole.RECEIVER)
        await session.connecting()

        listener = ChannelListener(self._listen_host, self._advertise_address)
        try:
            offer = await listener.open()
        except OSError as e:
            await session.fail(f"cannot open data channel: {e}")
            self.sessions.discard(session)
            raise ConnectivityError(self._listen_host, str(e)) from e

        self._spawn(session, self._run_receiver(session, listener))
        return offer

    async def open_sender(
        self, peer_id: str, files: list[OutgoingFile], offer: ConnectionOffer
    ) -> TransferSession:
        """Create a sender session that dials ``offer`` and streams ``files``."""
        session = self._new_session(peer_id, SessionRole.SENDER, files)
        await session.connecting()
        self._spawn(session, self._run_sender(session, offer))
        return session

    def _spawn(self, session: TransferSession, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks[session.transfer_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session.transfer_id, None))

    async def _run_receiver(self, session: TransferSession, listener: ChannelListener) -> None:
        try:
            channel = await asyncio.wait_for(listener.accept(), timeout=self._accept_timeout)
        except asyncio.TimeoutError:
            await session.fail("sender never connected")
            self.sessions.discard(session)
            return
        finally:
            listener.close()

        await self._run_channel(session, channel)

    async def _run_sender(self, session: TransferSession, offer: ConnectionOffer) -> None:
        try:
            channel = await dial(offer, timeout=self._connect_timeout)
        except ConnectivityError as e:
            logger.error(f"Could not reach {session.peer_id} at {e.endpoint}: {e.reason}")
            await session.fail(f"connection failed: {e.reason}")
            self.sessions.discard(session)
            return

        await self._run_channel(session, channel)

    async def _run_channel(self, session: TransferSession, channel) -> None:
        """Drive a session from its channel's events until the channel ends."""
        session.attach(channel)
        pump = asyncio.create_task(channel.pump(session.handle))
        try:
            await session.handle(ChannelReady())
            if session.role == SessionRole.SENDER:
                # Everything is written; the receiver closes once it has read it all
                await session.wait_finished()
                await channel.close()
            await pump
        except asyncio.CancelledError:
            pump.cancel()
            await session.fail("cancelled")
            raise
        finally:
            await channel.close()
            self.sessions.discard(session)
            logger.info(f"Session {session.transfer_id} with {session.peer_id} removed")

    async def _on_progress(self, update: ProgressUpdate) -> None:
        await self._emit("transfer-progress", update.model_dump())

    async def _on_file(self, session: TransferSession, name: str, path: str | None, saved: bool) -> None:
        if path is None:
            return
        if saved:
            notification = {"type": "success", "message": f"File saved: {name}"}
        else:
            notification = {"type": "error", "message": f"Could not save '{name}' to {path}"}
        await self._emit("notification", notification)

    async def _on_state_change(self, info: TransferInfo) -> None:
        await self._emit("transfer-state", info.model_dump())

        notification = None
        if info.state == SessionState.COMPLETE:
            direction = "sent" if info.role == SessionRole.SENDER else "received"
            notification = {
                "type": "success",
                "message": f"{info.file_count} file(s) {direction} successfully!",
            }
        elif info.state == SessionState.FAILED:
            notification = {
                "type": "error",
                "message": f"Transfer with {info.peer_device_id} failed: {info.error_message}",
            }

        if notification:
            await self._emit("notification", notification)
