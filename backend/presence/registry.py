"""
Presence registry (server role).

Accepts websocket sessions from nodes on the LAN, keeps track of which
device is behind which session, re-broadcasts identity announcements and
relays transfer handshake messages point-to-point.
"""

import json
import logging
import time
import uuid
from typing import Callable

from fastapi import WebSocket, WebSocketDisconnect

from errors import ValidationError
from presence.models import (
    DeviceIdentity,
    DeviceRecord,
    PresenceEvent,
    parse_identity,
    parse_message,
)
from presence.store import DeviceTable

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Relays presence and handshake messages between connected sessions."""

    def __init__(
        self,
        identity: Callable[[], DeviceIdentity],
        devices: DeviceTable | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._identity = identity
        self._sessions: dict[str, WebSocket] = {}
        self._event_callbacks: list = []  # async fn(event, data)
        self._clock = clock
        self.devices = devices if devices is not None else DeviceTable()

    @property
    def session_keys(self) -> list[str]:
        return list(self._sessions)

    def on_event(self, callback) -> None:
        """Register a callback for events the local UI should see."""
        self._event_callbacks.append(callback)

    async def _emit(self, event: str, data) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event, data)
            except Exception as e:
                logger.error(f"Registry event callback error: {e}")

    async def serve(self, websocket: WebSocket) -> None:
        """Run one session until the peer goes away."""
        session_key = await self.connect(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_message(session_key, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await self.disconnect(session_key)

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a new session and introduce this host to it and to everyone else."""
        await websocket.accept()
        session_key = uuid.uuid4().hex
        self._sessions[session_key] = websocket
        logger.info(f"Session connected: {session_key}. Total: {len(self._sessions)}")

        host = self._host_payload()
        await self._send(session_key, PresenceEvent.ANNOUNCE, host)
        await self._broadcast(PresenceEvent.DISCOVERED, host, exclude=session_key)
        return session_key

    def _host_payload(self) -> dict:
        """The host identity, with the session key of its own client once it has announced."""
        identity = self._identity()
        record = self.devices.get(identity.id)
        if record is None:
            return identity.model_dump()
        return record.model_copy(update=identity.model_dump()).to_wire()

    async def disconnect(self, session_key: str) -> None:
        """Forget a session. Pending handshakes addressed to it are left alone."""
        if self._sessions.pop(session_key, None) is None:
            return
        for record in self.devices.remove_session(session_key):
            logger.info(f"Device left: {record.name} ({record.id})")
        logger.info(f"Session disconnected: {session_key}. Total: {len(self._sessions)}")

        await self._emit(PresenceEvent.DISCONNECTED.value, session_key)
        await self._broadcast(PresenceEvent.DISCONNECTED, session_key)

    async def handle_message(self, session_key: str, raw: str) -> None:
        try:
            message = parse_message(raw)
        except ValidationError as e:
            logger.warning(f"Dropping frame from {session_key}: {e}")
            return

        if message.event == PresenceEvent.ANNOUNCE:
            await self._handle_announce(session_key, message.data)
        elif message.event in (PresenceEvent.TRANSFER_REQUEST, PresenceEvent.TRANSFER_RESPONSE):
            await self._relay(session_key, message.event, message.data)
        else:
            logger.warning(f"Unexpected {message.event.value} from {session_key}")

    async def _handle_announce(self, session_key: str, data) -> None:
        try:
            identity = parse_identity(data)
        except ValidationError as e:
            logger.warning(f"Dropping announcement from {session_key}: {e}")
            return

        record = DeviceRecord(
            **identity.model_dump(),
            last_seen=self._clock(),
            session_key=session_key,
        )
        if self.devices.upsert(record):
            logger.info(f"Device announced: {record.name} ({record.id})")

        payload = record.to_wire()
        await self._emit(PresenceEvent.DISCOVERED.value, payload)
        await self._broadcast(PresenceEvent.DISCOVERED, payload, exclude=session_key)

    async def _relay(self, session_key: str, event: PresenceEvent, data) -> None:
        if not isinstance(data, dict) or not data.get("to"):
            logger.warning(f"Dropping {event.value} from {session_key}: no recipient")
            return

        to = data["to"]
        if to not in self._sessions:
            logger.warning(f"Dropping {event.value} from {session_key}: unknown session {to}")
            return

        if event == PresenceEvent.TRANSFER_REQUEST:
            # The receiver answers to the session the request came from
            data = {**data, "sessionKey": session_key}
        await self._send(to, event, data)

    async def _send(self, session_key: str, event: PresenceEvent, data) -> None:
        websocket = self._sessions.get(session_key)
        if websocket is None:
            return
        message = json.dumps({"event": event.value, "data": data})
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.debug(f"Send to {session_key} failed: {e}")

    async def _broadcast(self, event: PresenceEvent, data, exclude: str | None = None) -> None:
        """Send an event to every session except ``exclude``."""
        message = json.dumps({"event": event.value, "data": data})
        for key, websocket in list(self._sessions.items()):
            if key == exclude:
                continue
            try:
                await websocket.send_text(message)
            except Exception as e:
                logger.debug(f"Broadcast to {key} failed: {e}")
