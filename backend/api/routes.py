"""REST API routes for PeerDrop."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from errors import ConnectivityError, PeerBusyError, StorageError, ValidationError
from transfer.storage import describe_file

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_presence_client = None
_negotiator = None
_transfer_manager = None


def init_routes(presence_client, negotiator, transfer_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _presence_client, _negotiator, _transfer_manager
    _presence_client = presence_client
    _negotiator = negotiator
    _transfer_manager = transfer_manager


# --- Device Discovery ---

@router.get("/devices")
async def list_devices():
    """Return the peers currently in the presence table."""
    return {
        "connected": _presence_client.connected,
        "devices": [d.to_wire() for d in _presence_client.devices.values()],
    }


@router.post("/scan")
async def scan_devices():
    """Clear the presence table and re-announce; an empty result arrives as a scan-empty event."""
    await _presence_client.scan()
    return {"status": "scanning"}


# --- Transfers ---

class CreateTransferBody(BaseModel):
    peer_id: str
    file_paths: list[str]


@router.get("/transfers")
async def list_transfers():
    """Return active sessions and their progress."""
    return {
        "transfers": [t.model_dump() for t in _transfer_manager.get_transfers()],
        "progress": [p.model_dump() for p in _transfer_manager.get_progress()],
    }


@router.post("/transfers")
async def create_transfer(body: CreateTransferBody):
    """Ask a peer to accept files read from absolute paths on this machine."""
    files = []
    for path in body.file_paths:
        if not os.path.isfile(path):
            logger.warning(f"Skipping invalid file path: {path}")
            continue
        try:
            files.append(describe_file(path))
        except StorageError as e:
            logger.warning(f"Skipping unreadable file: {e}")

    if not files:
        raise HTTPException(status_code=400, detail="No valid files selected")

    if _presence_client.devices.get(body.peer_id) is None:
        raise HTTPException(status_code=404, detail="Peer not found")

    try:
        intent = await _negotiator.request(body.peer_id, files)
    except PeerBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConnectivityError as e:
        raise HTTPException(status_code=503, detail=f"Registry unavailable: {e.reason}")

    return {
        "peer_id": intent.peer_id,
        "files": [f.model_dump(by_alias=True) for f in intent.manifest],
        "total_size": intent.total_size,
        "message": f"Transfer request sent to device {intent.peer_id}",
    }


# --- Incoming requests ---

@router.get("/requests")
async def list_requests():
    return {
        "requests": [r.model_dump(by_alias=True) for r in _negotiator.pending_requests()],
    }


@router.post("/requests/{peer_id}/accept")
async def accept_request(peer_id: str):
    try:
        accepted = await _negotiator.accept(peer_id)
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConnectivityError as e:
        raise HTTPException(status_code=503, detail=e.reason)
    return {"status": "accepted" if accepted else "busy"}


@router.post("/requests/{peer_id}/reject")
async def reject_request(peer_id: str):
    try:
        await _negotiator.reject(peer_id)
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConnectivityError as e:
        raise HTTPException(status_code=503, detail=e.reason)
    return {"status": "rejected"}


# --- Settings ---

class SettingsBody(BaseModel):
    device_name: str | None = None
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {
        "device_id": _presence_client.identity.id,
        "device_name": _presence_client.identity.name,
        "save_dir": _transfer_manager.save_dir,
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.device_name is not None:
        if not body.device_name.strip():
            raise HTTPException(status_code=400, detail="Device name cannot be empty")
        try:
            await _presence_client.rename(body.device_name.strip())
        except ConnectivityError as e:
            logger.warning(f"Renamed locally, announcement failed: {e.reason}")
    if body.save_dir is not None:
        try:
            _transfer_manager.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(
                status_code=400, detail=f"Invalid directory: {e}"
            )
    return {"status": "updated"}
