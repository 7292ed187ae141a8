"""REST API routes used by the UI shell."""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from errors import CyclopsLinkError
from registry.models import MUTABLE_FIELDS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_scanner = None
_registry = None
_router = None
_verifier = None


def init_routes(scanner, registry, connection_router, verifier) -> None:
    """Inject service dependencies into the routes module."""
    global _scanner, _registry, _router, _verifier
    _scanner = scanner
    _registry = registry
    _router = connection_router
    _verifier = verifier


def _device_view(record) -> dict:
    # Secrets stay on this side of the API
    return record.model_dump(mode="json", include={"id", "lan_address", "name"})


# --- Identity ---

@router.get("/identity")
async def get_identity():
    return {"public_key": _verifier.own_public_key_b64()}


# --- LAN scan ---

@router.post("/scan")
async def start_scan():
    """Start a LAN scan. started=False means one is already running."""
    started = await _scanner.start()
    return {"started": started}


@router.get("/scan")
async def get_scan():
    state = await _scanner.get_snapshot()
    return state.model_dump(mode="json")


# --- Devices ---

class DeviceBody(BaseModel):
    id: str
    lan_address: str
    name: str = ""
    bearer_token: str
    session_cookie: str = ""


class FieldBody(BaseModel):
    field: str
    value: str


@router.get("/devices")
async def list_devices():
    devices = _registry.snapshot_all()
    return {
        "devices": [_device_view(d) for d in devices],
        "last_used": _registry.last_used_id,
        "current": _router.current_device_id,
    }


@router.post("/devices")
async def upsert_device(body: DeviceBody):
    """Register a device after the user logged in to it."""
    _registry.upsert(
        lan_address=body.lan_address,
        device_id=body.id,
        bearer_token=body.bearer_token,
        name=body.name,
        session_cookie=body.session_cookie,
    )
    return {"status": "saved"}


@router.patch("/devices/{device_id}")
async def set_device_field(device_id: str, body: FieldBody):
    if body.field not in MUTABLE_FIELDS:
        raise HTTPException(status_code=400, detail=f"Field '{body.field}' cannot be changed")
    if not _registry.set_field(device_id, body.field, body.value):
        raise HTTPException(status_code=404, detail="Device not found")
    return {"status": "updated"}


@router.delete("/devices/{device_id}")
async def delete_device(device_id: str):
    if not _registry.remove(device_id):
        raise HTTPException(status_code=404, detail="Device not found")
    try:
        result = await _router.device_removed(device_id)
    except CyclopsLinkError as e:
        logger.warning(f"Could not switch after removing {device_id}: {e.message}")
        result = None
    return {
        "status": "removed",
        "switched": result.model_dump(mode="json") if result else None,
    }


# --- Connection routing ---

class NetworkChangeBody(BaseModel):
    signature: str


@router.post("/connect/{device_id}")
async def connect(device_id: str):
    try:
        result = await _router.connect(device_id)
    except CyclopsLinkError as e:
        raise e.to_http_exception()
    return result.model_dump(mode="json")


@router.post("/revalidate")
async def revalidate():
    try:
        result = await _router.revalidate()
    except CyclopsLinkError as e:
        raise e.to_http_exception()
    return {"result": result.model_dump(mode="json") if result else None}


@router.post("/network-change")
async def network_change(body: NetworkChangeBody):
    result = await _router.on_network_change(body.signature)
    return {"result": result.model_dump(mode="json") if result else None}
