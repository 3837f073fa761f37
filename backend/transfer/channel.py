"""
Peer-to-peer data channel over TCP.

The receiver opens a listener when it accepts a request and hands the
sender a ConnectionOffer through the registry. The sender dials the offer
and proves it holds it with a hello record. Everything that happens on an
established channel is reported to the session as one of a small set of
channel events.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass

from errors import ConnectivityError, PeerChannelError, ValidationError
from transfer.codec import read_envelope, write_envelope
from transfer.models import ConnectionOffer, Control, Envelope, Hello

logger = logging.getLogger(__name__)


# --- Channel events ---

@dataclass(frozen=True)
class ChannelReady:
    pass


@dataclass(frozen=True)
class ChannelMessage:
    envelope: Envelope


@dataclass(frozen=True)
class ChannelError:
    error: Exception


@dataclass(frozen=True)
class ChannelClosed:
    pass


ChannelEvent = ChannelReady | ChannelMessage | ChannelError | ChannelClosed


class PeerChannel:
    """One ordered, bidirectional stream between two peers."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def send(self, envelope: Envelope) -> None:
        if self.closed:
            raise PeerChannelError("channel is closed")
        try:
            await write_envelope(self._writer, envelope)
        except (ConnectionError, OSError) as e:
            raise PeerChannelError(f"send failed: {e}") from e

    async def receive(self) -> Envelope:
        return await read_envelope(self._reader)

    async def pump(self, handle) -> None:
        """Feed inbound envelopes to ``handle(event)`` until the channel ends."""
        try:
            while True:
                envelope = await self.receive()
                await handle(ChannelMessage(envelope))
        except asyncio.IncompleteReadError:
            await handle(ChannelClosed())
        except (ConnectionError, OSError, ValidationError) as e:
            await handle(ChannelError(e))
        finally:
            await self.close()

    async def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    async def wait_closed(self) -> None:
        await self._closed.wait()


class ChannelListener:
    """Receiver side: waits for exactly one sender holding our token."""

    def __init__(self, host: str, advertise_address: str) -> None:
        self._host = host
        self._advertise_address = advertise_address
        self._token = secrets.token_hex(16)
        self._server: asyncio.Server | None = None
        self._accepted: asyncio.Future | None = None

    async def open(self) -> ConnectionOffer:
        """Bind an ephemeral port and return the offer to send to the peer."""
        self._accepted = asyncio.get_running_loop().create_future()
        self._server = await asyncio.start_server(self._handle_connection, self._host, 0)
        port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Data channel listener on port {port}")
        return ConnectionOffer(address=self._advertise_address, port=port, token=self._token)

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        channel = PeerChannel(reader, writer)
        try:
            envelope = await channel.receive()
        except (asyncio.IncompleteReadError, ConnectionError, OSError, ValidationError) as e:
            logger.warning(f"Dropping data connection: {e}")
            await channel.close()
            return

        message = getattr(envelope, "message", None)
        if (
            not isinstance(message, Hello)
            or not secrets.compare_digest(message.token, self._token)
            or self._accepted is None
            or self._accepted.done()
        ):
            logger.warning("Dropping data connection with a bad or repeated hello")
            await channel.close()
            return

        # No further connections once the sender has arrived
        self._server.close()
        self._accepted.set_result(channel)
        await channel.wait_closed()

    async def accept(self) -> PeerChannel:
        if self._accepted is None:
            raise RuntimeError("listener is not open")
        return await self._accepted

    def close(self) -> None:
        if self._server:
            self._server.close()
        if self._accepted and not self._accepted.done():
            self._accepted.cancel()


async def dial(offer: ConnectionOffer, timeout: float) -> PeerChannel:
    """Sender side: connect to a receiver's offer and introduce ourselves."""
    endpoint = f"{offer.address}:{offer.port}"
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(offer.address, offer.port), timeout=timeout
        )
    except asyncio.TimeoutError as e:
        raise ConnectivityError(endpoint, "connection timeout") from e
    except OSError as e:
        raise ConnectivityError(endpoint, str(e)) from e

    channel = PeerChannel(reader, writer)
    try:
        await channel.send(Control(Hello(token=offer.token)))
    except PeerChannelError as e:
        await channel.close()
        raise ConnectivityError(endpoint, str(e)) from e
    return channel
