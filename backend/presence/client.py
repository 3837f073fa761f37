"""
Presence client.

Connects to the first reachable registry, announces the local device and
keeps a table of the peers the registry reports.
"""

import asyncio
import json
import logging

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from config import CONNECT_TIMEOUT, RECONNECT_ATTEMPTS, RECONNECT_DELAY, SCAN_TIMEOUT
from errors import ConnectivityError, ValidationError
from presence.models import DeviceIdentity, PresenceEvent, parse_message, parse_record
from presence.store import DeviceTable

logger = logging.getLogger(__name__)


async def open_websocket(url: str):
    """Default connector. Timeouts are applied by the caller."""
    return await websocket_connect(url, open_timeout=None)


class PresenceClient:
    """Announces local identity and ingests peer announcements."""

    def __init__(
        self,
        identity: DeviceIdentity,
        endpoints: list[str],
        devices: DeviceTable | None = None,
        connector=open_websocket,
        connect_timeout: float = CONNECT_TIMEOUT,
        reconnect_attempts: int = RECONNECT_ATTEMPTS,
        reconnect_delay: float = RECONNECT_DELAY,
        scan_timeout: float = SCAN_TIMEOUT,
    ) -> None:
        self.identity = identity
        self.endpoints = list(endpoints)
        self.devices = devices if devices is not None else DeviceTable()
        self._connector = connector
        self._connect_timeout = connect_timeout
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._scan_timeout = scan_timeout

        self._conn = None
        self._endpoint: str | None = None
        self._reader_task: asyncio.Task | None = None
        self._scan_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._closing = False
        self._event_callbacks: list = []  # async fn(event, data)
        self._handlers: dict[PresenceEvent, object] = {}  # async fn(data)

    @property
    def connected(self) -> bool:
        return self._conn is not None

    @property
    def endpoint(self) -> str | None:
        return self._endpoint

    def on_event(self, callback) -> None:
        """Register a callback for UI-facing events: async fn(event, data)."""
        self._event_callbacks.append(callback)

    def on_message(self, event: PresenceEvent, handler) -> None:
        """Route a relayed handshake event to ``handler(data)``."""
        self._handlers[event] = handler

    async def _emit(self, event: str, data) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event, data)
            except Exception as e:
                logger.error(f"Presence event callback error: {e}")

    # --- Connection management ---

    async def start(self) -> bool:
        """Try each candidate endpoint in order until one connects."""
        self._closing = False
        for url in self.endpoints:
            try:
                logger.info(f"Attempting to connect to registry at {url}")
                await self.connect(url)
                return True
            except ConnectivityError as e:
                logger.error(f"Failed to connect to {url}: {e.reason}")

        logger.error("All registry connection attempts failed")
        await self._emit("connection-failed", {"endpoints": self.endpoints})
        return False

    async def connect(self, url: str) -> None:
        """Open a connection to one registry and announce ourselves.

        Raises ConnectivityError if no connection is established within
        the connect timeout, whatever the retry policy is doing.
        """
        try:
            conn = await asyncio.wait_for(self._open(url), timeout=self._connect_timeout)
        except asyncio.TimeoutError as e:
            raise ConnectivityError(url, "connection timeout") from e

        self._conn = conn
        self._endpoint = url
        logger.info(f"Connected to registry at {url}")
        await self.announce()
        self._reader_task = asyncio.create_task(self._read_loop(conn))

    async def _open(self, url: str):
        attempt = 0
        while True:
            try:
                return await self._connector(url)
            except (OSError, WebSocketException) as e:
                attempt += 1
                if attempt > self._reconnect_attempts:
                    raise ConnectivityError(url, str(e) or type(e).__name__) from e
                logger.debug(f"Connect to {url} failed ({e}), retry {attempt}/{self._reconnect_attempts}")
                await asyncio.sleep(self._reconnect_delay)

    async def stop(self) -> None:
        self._closing = True
        for task in (self._scan_task, self._reconnect_task, self._reader_task):
            if task and task is not asyncio.current_task():
                task.cancel()
        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                await conn.close()
            except Exception as e:
                logger.debug(f"Error closing registry connection: {e}")
        logger.info("Presence client stopped")

    async def _read_loop(self, conn) -> None:
        try:
            async for raw in conn:
                await self._handle_raw(raw)
        except ConnectionClosed as e:
            logger.info(f"Registry connection closed: {e}")
        except asyncio.CancelledError:
            return

        if self._conn is conn and not self._closing:
            self._conn = None
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        """Start a reconnect unless one is already in flight."""
        if self._endpoint is None:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            logger.debug("Reconnect already in progress")
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        url = self._endpoint
        if url is None:
            return
        logger.warning(f"Lost registry connection, reconnecting to {url}")
        try:
            await self.connect(url)
        except ConnectivityError as e:
            logger.error(f"Reconnection to {url} failed: {e.reason}")
            await self._emit("connection-failed", {"endpoints": [url]})

    async def send(self, event: PresenceEvent, data) -> None:
        if self._conn is None:
            raise ConnectivityError(self._endpoint or "registry", "not connected")
        try:
            await self._conn.send(json.dumps({"event": event.value, "data": data}))
        except (OSError, WebSocketException) as e:
            raise ConnectivityError(self._endpoint or "registry", str(e)) from e

    # --- Presence ---

    async def announce(self) -> None:
        await self.send(PresenceEvent.ANNOUNCE, self.identity.model_dump())

    async def rename(self, name: str) -> None:
        """Apply a new device name locally and re-announce if connected."""
        self.identity = self.identity.model_copy(update={"name": name})
        logger.info(f"Device renamed to {name}")
        if self.connected:
            await self.announce()

    async def scan(self) -> None:
        """Forget every peer, re-announce, and report an empty scan after a deadline."""
        logger.info("Starting device scan...")
        self.devices.clear()
        if self._scan_task:
            self._scan_task.cancel()

        if self.connected:
            await self.announce()
        else:
            logger.warning("Scan requested while disconnected from the registry")
            self._schedule_reconnect()

        self._scan_task = asyncio.create_task(self._scan_deadline())

    async def _scan_deadline(self) -> None:
        await asyncio.sleep(self._scan_timeout)
        self._scan_task = None
        logger.info(f"Scan timeout reached. Devices found: {len(self.devices)}")
        if len(self.devices) == 0:
            await self._emit("scan-empty", {})

    async def _handle_raw(self, raw) -> None:
        try:
            message = parse_message(raw)
        except ValidationError as e:
            logger.warning(f"Dropping registry frame: {e}")
            return

        if message.event in (PresenceEvent.ANNOUNCE, PresenceEvent.DISCOVERED):
            await self._ingest(message.data)
        elif message.event == PresenceEvent.DISCONNECTED:
            await self._evict(message.data)
        else:
            handler = self._handlers.get(message.event)
            if handler is None:
                logger.warning(f"No handler for {message.event.value}")
                return
            await handler(message.data)

    async def _ingest(self, data) -> None:
        try:
            record = parse_record(data)
        except ValidationError as e:
            logger.warning(f"Ignoring device announcement: {e}")
            return

        if record.id == self.identity.id:
            return

        previous = self.devices.get(record.id)
        self.devices.upsert(record)
        if self._scan_task:
            self._scan_task.cancel()
            self._scan_task = None

        if previous is None or previous.name != record.name or previous.address != record.address:
            logger.info(f"Discovered peer: {record.name} ({record.address})")
            await self._emit(PresenceEvent.DISCOVERED.value, self.devices.get(record.id).to_wire())

    async def _evict(self, session_key) -> None:
        if not isinstance(session_key, str):
            return
        for record in self.devices.remove_session(session_key):
            logger.info(f"Peer lost: {record.name} ({record.address})")
            await self._emit(PresenceEvent.DISCONNECTED.value, record.to_wire())
