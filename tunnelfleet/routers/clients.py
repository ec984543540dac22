from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from tunnelfleet.core.logging import api_logger
from tunnelfleet.dependencies.registry import get_client_registry
from tunnelfleet.schemas.client import (
    ClientInfo,
    ClientRecordResponse,
    RegisterResponse,
    StatusUpdate,
    SuccessResponse,
    TunnelListing,
)
from tunnelfleet.services.registry import ClientRegistry

router = APIRouter()


@router.get("/clients", response_model=List[ClientRecordResponse])
def list_clients(registry: ClientRegistry = Depends(get_client_registry)):
    """All known agents, most recently seen first"""
    return [ClientRecordResponse.from_snapshot(s) for s in registry.list()]


@router.get("/clients/{client_id}", response_model=ClientRecordResponse)
def get_client(client_id: str, registry: ClientRegistry = Depends(get_client_registry)):
    snapshot = registry.get(client_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Client not found"
        )
    return ClientRecordResponse.from_snapshot(snapshot)


@router.delete("/clients/{client_id}", response_model=SuccessResponse)
def delete_client(client_id: str, registry: ClientRegistry = Depends(get_client_registry)):
    """Forget an agent. Deleting an unknown id is acknowledged as a no-op."""
    removed = registry.remove(client_id)
    return SuccessResponse(success=True, error=None if removed else "Client not found")


@router.get("/tunnels", response_model=List[TunnelListing])
def list_tunnels(registry: ClientRegistry = Depends(get_client_registry)):
    """Every reported tunnel across the fleet, one row per tunnel"""
    listings = []
    for snapshot in registry.list():
        record = snapshot.record
        for tunnel in record.active_tunnels:
            listings.append(
                TunnelListing(
                    client_id=record.client_id,
                    host=record.host_name,
                    service=tunnel.service,
                    local_port=tunnel.local_port,
                    remote_port=tunnel.remote_port,
                    status=record.status,
                )
            )
    return listings


@router.post("/register", response_model=RegisterResponse)
def register_client(info: ClientInfo, registry: ClientRegistry = Depends(get_client_registry)):
    client_id = registry.register(info.model_dump(by_alias=True, exclude_none=True))
    api_logger.debug(f"Register from {info.host_name} -> {client_id}")
    return RegisterResponse(client_id=client_id, success=True)


@router.post("/update-status", response_model=SuccessResponse)
def update_status(update: StatusUpdate, registry: ClientRegistry = Depends(get_client_registry)):
    record = registry.update_status(update.client_id, update.status, update.tunnel_info)
    if record is None:
        # Unknown client: reported back, never fatal
        return SuccessResponse(success=False, error="Unknown client")
    return SuccessResponse(success=True)
