"""REST API routes for Dropline."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from transfer.errors import OfferError, UserError
from transfer.models import BusyState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_signaling = None
_coordinator = None


def init_routes(signaling, coordinator) -> None:
    """Inject service dependencies into the routes module."""
    global _signaling, _coordinator
    _signaling = signaling
    _coordinator = coordinator


# --- Devices ---

@router.get("/devices")
async def list_devices():
    """Return the peers currently known to the signaling hub."""
    return {
        "connected": _signaling.connected,
        "self_id": _signaling.peer_id,
        "devices": [
            {**p.model_dump(), "busy": _coordinator.state_of(p.peer_id).value}
            for p in _signaling.peers.values()
        ],
    }


# --- Transfers ---

@router.get("/transfers")
async def list_transfers():
    """Return all transfers (active + finished)."""
    transfers = _coordinator.get_transfers()
    return {"transfers": [t.model_dump(mode="json") for t in transfers]}


class CreateTransferBody(BaseModel):
    peer_ids: list[str] = Field(min_length=1)
    file_path: str


@router.post("/transfers")
async def create_transfer(body: CreateTransferBody):
    """Offer a file on this machine's disk to one or more peers."""
    targets = list(dict.fromkeys(body.peer_ids))
    if all(_coordinator.state_of(pid) != BusyState.IDLE for pid in targets):
        raise HTTPException(status_code=409, detail="Already busy with every selected device")

    try:
        infos = await _coordinator.offer_many(targets, body.file_path)
    except UserError as e:
        raise HTTPException(status_code=400, detail=e.reason)
    except OfferError as e:
        raise HTTPException(status_code=404, detail=e.reason)

    return {
        "transfers": [i.model_dump(mode="json") for i in infos],
        "message": f"Offered to {len(infos)} device(s)",
    }


@router.post("/transfers/{peer_id}/accept")
async def accept_transfer(peer_id: str):
    try:
        await _coordinator.respond(peer_id, accept=True)
    except UserError as e:
        raise HTTPException(status_code=404, detail=e.reason)
    return {"status": "accepted"}


@router.post("/transfers/{peer_id}/reject")
async def reject_transfer(peer_id: str):
    try:
        await _coordinator.respond(peer_id, accept=False)
    except UserError as e:
        raise HTTPException(status_code=404, detail=e.reason)
    return {"status": "rejected"}


@router.post("/transfers/{peer_id}/cancel")
async def cancel_transfer(peer_id: str):
    try:
        await _coordinator.cancel(peer_id)
    except UserError as e:
        raise HTTPException(status_code=404, detail=e.reason)
    return {"status": "cancelled"}


# --- Settings ---

class SettingsBody(BaseModel):
    device_name: str | None = None
    save_dir: str | None = None
    speed_limit: float | None = Field(default=None, ge=0)


@router.get("/settings")
async def get_settings():
    return {
        "device_name": _signaling.device_name,
        "save_dir": _coordinator.save_dir,
        "speed_limit": _coordinator.speed_limit,
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.device_name is not None:
        _signaling.device_name = body.device_name
    if body.save_dir is not None:
        try:
            _coordinator.save_dir = os.path.expanduser(body.save_dir)
        except OSError as e:
            raise HTTPException(status_code=400, detail=f"Invalid directory: {e}")
    if body.speed_limit is not None:
        _coordinator.speed_limit = body.speed_limit
    return {"status": "updated"}
