"""REST API routes for the LocalSend download backend."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from config import ANNOUNCE_INTERVAL, DISCOVERY_TIMEOUT, LOCALSEND_PORT
from discovery.models import Protocol
from discovery.service import start_discovery
from errors import (
    DiscoveryTransportError,
    Forbidden,
    HandshakeError,
    RateLimited,
    Unauthorized,
    UnknownSessionError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_identity_service = None
_discovery_service = None
_download_manager = None


def init_routes(identity_service, discovery_service, download_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _identity_service, _discovery_service, _download_manager
    _identity_service = identity_service
    _discovery_service = discovery_service
    _download_manager = download_manager


# --- Identity ---

@router.get("/identity")
async def get_identity():
    return _identity_service.device_info.model_dump()


# --- Device Discovery ---

@router.get("/devices")
async def list_devices():
    """Return peers seen by the background discovery session."""
    peers = await _discovery_service.get_peers()
    return {"devices": [p.model_dump() for p in peers]}


class DiscoverBody(BaseModel):
    timeout: float = Field(default=DISCOVERY_TIMEOUT, gt=0, le=60)
    announce_interval: float = Field(default=ANNOUNCE_INTERVAL, gt=0)
    silent: bool = False


@router.post("/discover")
async def discover(body: DiscoverBody):
    """Run a bounded discovery session and return what it saw."""
    try:
        peers = await start_discovery(
            _identity_service.device_info,
            timeout=body.timeout,
            announce_interval=body.announce_interval,
            silent=body.silent,
        )
    except DiscoveryTransportError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"devices": [p.model_dump() for p in peers.values()]}


# --- Downloads ---

class PrepareDownloadBody(BaseModel):
    peer_fingerprint: str | None = None
    host: str | None = None
    port: int = LOCALSEND_PORT
    protocol: Protocol = Protocol.HTTP
    pin: str | None = None


_HANDSHAKE_STATUS = {
    Unauthorized: 401,
    Forbidden: 403,
    RateLimited: 429,
}


def _handshake_http_error(error: HandshakeError) -> HTTPException:
    status = _HANDSHAKE_STATUS.get(type(error), 502)
    return HTTPException(status_code=status, detail=str(error))


@router.post("/downloads")
async def prepare_download(body: PrepareDownloadBody):
    """Fetch the file list of a sender; nothing is written until accepted."""
    if body.peer_fingerprint:
        peer = _discovery_service.registry.get(body.peer_fingerprint)
        if not peer:
            raise HTTPException(status_code=404, detail="Peer not found")
        host, port, protocol = peer.address, peer.port, peer.protocol
    elif body.host:
        host, port, protocol = body.host, body.port, body.protocol
    else:
        raise HTTPException(status_code=400, detail="Either peer_fingerprint or host is required")

    try:
        pending = await _download_manager.prepare(host, port, pin=body.pin, protocol=protocol)
    except HandshakeError as e:
        logger.warning(f"Prepare-download to {host}:{port} failed: {e}")
        raise _handshake_http_error(e)

    return pending.model_dump(exclude={"pin"})


@router.get("/downloads")
async def list_downloads():
    """Return pending manifests and finished file downloads."""
    return {
        "pending": [p.model_dump(exclude={"pin"}) for p in _download_manager.get_pending()],
        "results": [r.model_dump() for r in _download_manager.get_results()],
    }


class AcceptBody(BaseModel):
    destination: str | None = None


@router.post("/downloads/{session_id}/accept")
async def accept_download(session_id: str, body: AcceptBody | None = None):
    destination = body.destination if body else None
    try:
        results = await _download_manager.accept(session_id, destination=destination)
    except UnknownSessionError:
        raise HTTPException(status_code=404, detail="Download session not found")
    return {"results": [r.model_dump() for r in results]}


@router.post("/downloads/{session_id}/reject")
async def reject_download(session_id: str):
    try:
        await _download_manager.reject(session_id)
    except UnknownSessionError:
        raise HTTPException(status_code=404, detail="Download session not found")
    return {"status": "rejected"}


# --- Settings ---

class SettingsBody(BaseModel):
    alias: str | None = None
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {
        "alias": _identity_service.device_info.alias,
        "save_dir": _download_manager.save_dir,
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.alias is not None:
        _identity_service.rename(body.alias)
        _discovery_service.update_identity(_identity_service.device_info)
    if body.save_dir is not None:
        if not os.path.isdir(body.save_dir):
            try:
                os.makedirs(body.save_dir, exist_ok=True)
            except OSError as e:
                raise HTTPException(
                    status_code=400, detail=f"Invalid directory: {e}"
                )
        _download_manager.save_dir = body.save_dir
    return {"status": "updated"}
