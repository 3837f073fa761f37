"""
Transfer negotiation over the presence channel.

The sender parks its files in a TransferIntent and asks the peer; the
receiver's user accepts or rejects. An accept carries the receiver's
connection offer, which the sender hands to a new sender session.
"""

import logging
import time

from pydantic import ValidationError as PydanticValidationError

from config import INTENT_TIMEOUT
from errors import ConnectivityError, PeerBusyError, ValidationError
from presence.models import PresenceEvent
from transfer.models import (
    ConnectionOffer,
    OutgoingFile,
    TransferIntent,
    TransferRequestMessage,
    TransferResponseMessage,
)

logger = logging.getLogger(__name__)


class IntentTable:
    """Pending outgoing transfers keyed by peer id."""

    def __init__(self) -> None:
        self._intents: dict[str, TransferIntent] = {}

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._intents

    def __len__(self) -> int:
        return len(self._intents)

    def get(self, peer_id: str) -> TransferIntent | None:
        return self._intents.get(peer_id)

    def put(self, intent: TransferIntent) -> None:
        self._intents[intent.peer_id] = intent

    def pop(self, peer_id: str) -> TransferIntent | None:
        return self._intents.pop(peer_id, None)


class TransferNegotiator:
    """Request/accept/reject handshake between two nodes."""

    def __init__(
        self,
        presence,
        manager,
        intents: IntentTable | None = None,
        intent_timeout: float = INTENT_TIMEOUT,
        clock=time.monotonic,
    ) -> None:
        self._presence = presence
        self._manager = manager
        self.intents = intents if intents is not None else IntentTable()
        self._incoming: dict[str, TransferRequestMessage] = {}
        self._event_callbacks: list = []  # async fn(event, data)
        self._intent_timeout = intent_timeout
        self._clock = clock

        presence.on_message(PresenceEvent.TRANSFER_REQUEST, self.handle_request)
        presence.on_message(PresenceEvent.TRANSFER_RESPONSE, self.handle_response)
        presence.on_event(self._on_presence_event)

    def on_event(self, callback) -> None:
        self._event_callbacks.append(callback)

    async def _emit(self, event: str, data) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event, data)
            except Exception as e:
                logger.error(f"Negotiator event callback error: {e}")

    def pending_requests(self) -> list[TransferRequestMessage]:
        return list(self._incoming.values())

    async def _on_presence_event(self, event: str, data) -> None:
        """Forget handshakes with a peer once presence reports it gone."""
        if event != PresenceEvent.DISCONNECTED.value or not isinstance(data, dict):
            return
        peer_id = data.get("id")
        if self.intents.pop(peer_id) is not None:
            logger.info(f"Dropped pending transfer request to departed peer {peer_id}")
        self._incoming.pop(peer_id, None)

    def _has_pending_intent(self, peer_id: str) -> bool:
        intent = self.intents.get(peer_id)
        if intent is None:
            return False
        if self._clock() - intent.created_at < self._intent_timeout:
            return True
        logger.warning(f"Transfer request to {peer_id} went unanswered, replacing it")
        self.intents.pop(peer_id)
        return False

    # --- Sender side ---

    async def request(self, peer_id: str, files: list[OutgoingFile]) -> TransferIntent:
        """Ask ``peer_id`` to take ``files``. Returns without waiting for the answer."""
        peer = self._presence.devices.get(peer_id)
        if peer is None or not peer.session_key:
            raise ValidationError(f"unknown peer {peer_id}")
        if not files:
            raise ValidationError("no files to send")
        if self._has_pending_intent(peer_id) or self._manager.has_active(peer_id):
            raise PeerBusyError(f"a transfer with {peer_id} is already pending")

        intent = TransferIntent(peer_id=peer_id, files=files, created_at=self._clock())
        self.intents.put(intent)

        identity = self._presence.identity
        message = TransferRequestMessage(
            to=peer.session_key,
            from_=identity.id,
            from_name=identity.name,
            files=intent.manifest,
        )
        try:
            await self._presence.send(
                PresenceEvent.TRANSFER_REQUEST,
                message.model_dump(by_alias=True, exclude={"session_key"}),
            )
        except ConnectivityError:
            self.intents.pop(peer_id)
            raise

        logger.info(f"Transfer request sent to {peer.name} ({len(files)} file(s), {intent.total_size} bytes)")
        return intent

    async def handle_response(self, data) -> None:
        try:
            response = TransferResponseMessage.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(f"Dropping malformed transfer response: {e.error_count()} error(s)")
            return

        intent = self.intents.pop(response.from_)
        if intent is None:
            logger.warning(f"Transfer response from {response.from_} with nothing pending")
            return

        if not response.accepted:
            logger.info(f"Transfer request was rejected by {response.from_}")
            await self._emit("transfer-rejected", {"peer_id": response.from_})
            await self._emit("notification", {
                "type": "warning",
                "message": "Transfer request was rejected.",
            })
            return

        if response.connection_offer is None:
            logger.error(f"Accept from {response.from_} carried no connection offer")
            await self._emit("notification", {
                "type": "error",
                "message": f"Transfer with {response.from_} could not start.",
            })
            return

        try:
            await self._manager.open_sender(intent.peer_id, intent.files, response.connection_offer)
        except PeerBusyError as e:
            logger.error(str(e))

    # --- Receiver side ---

    async def handle_request(self, data) -> None:
        try:
            request = TransferRequestMessage.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(f"Dropping malformed transfer request: {e.error_count()} error(s)")
            return

        logger.info(f"Transfer request from {request.from_name or request.from_}: "
                    f"{len(request.files)} file(s), {request.total_size} bytes")
        self._incoming[request.from_] = request
        await self._emit("transfer-request", {
            "from": request.from_,
            "fromName": request.from_name,
            "files": [f.model_dump(by_alias=True) for f in request.files],
            "totalSize": request.total_size,
        })

    async def accept(self, from_id: str) -> bool:
        """Open a receiver session and answer with its connection offer."""
        request = self._take_request(from_id)
        try:
            offer = await self._manager.open_receiver(from_id)
        except PeerBusyError as e:
            logger.warning(f"Refusing second transfer from {from_id}: {e}")
            await self._respond(request, accepted=False)
            return False
        except ConnectivityError as e:
            logger.error(f"Cannot open a data channel for {from_id}: {e.reason}")
            await self._respond(request, accepted=False)
            raise

        await self._respond(request, accepted=True, offer=offer)
        return True

    async def reject(self, from_id: str) -> None:
        request = self._take_request(from_id)
        await self._respond(request, accepted=False)

    def _take_request(self, from_id: str) -> TransferRequestMessage:
        request = self._incoming.pop(from_id, None)
        if request is None:
            raise ValidationError(f"no pending request from {from_id}")
        return request

    async def _respond(
        self,
        request: TransferRequestMessage,
        accepted: bool,
        offer: ConnectionOffer | None = None,
    ) -> None:
        response = TransferResponseMessage(
            to=request.session_key or "",
            from_=self._presence.identity.id,
            accepted=accepted,
            connection_offer=offer,
        )
        await self._presence.send(
            PresenceEvent.TRANSFER_RESPONSE,
            response.model_dump(by_alias=True, exclude_none=True),
        )
