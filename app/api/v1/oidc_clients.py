"""
Admin management of authorization-server clients.

Clients are normally created through dynamic registration (POST /reg); these
endpoints let administrators list, inspect, update and remove them.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import AdminAuth, require_admin
from app.core.database import get_db
from app.core.logging import get_logger
from app.models.oidc import OidcClients
from app.schemas.oidc import (
    ClientListResponse,
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    ClientResponse,
    ClientUpdateRequest,
)
from app.services.oidc_adapter import ClientStore
from app.services.oidc_server import get_authorization_server

logger = get_logger(__name__)

router = APIRouter(prefix="/oidc/clients", tags=["oidc"], dependencies=[Depends(require_admin)])


async def _get_client_or_404(db: AsyncSession, client_id: str) -> OidcClients:
    client = await ClientStore(db).find(client_id)
    if client is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return client


@router.get("", response_model=ClientListResponse)
async def list_clients(
    auth: AdminAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ClientListResponse:
    clients = await ClientStore(db).list_clients()
    return ClientListResponse(
        total=len(clients),
        clients=[ClientResponse.model_validate(c) for c in clients],
    )


@router.post("", response_model=ClientRegistrationResponse, status_code=status.HTTP_201_CREATED)
async def create_client(
    body: ClientRegistrationRequest,
    auth: AdminAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ClientRegistrationResponse:
    """Register a client without the initial access token. The secret is shown once."""
    registered = await get_authorization_server().register_client(
        db, body, initial_access_token=None, trusted=True
    )
    logger.info(
        "admin_created_client", admin_id=auth.identity_id, client_id=registered["client_id"]
    )
    return ClientRegistrationResponse.model_validate(registered)


@router.get("/{client_id}", response_model=ClientResponse)
async def get_client(
    client_id: str,
    auth: AdminAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ClientResponse:
    return ClientResponse.model_validate(await _get_client_or_404(db, client_id))


@router.patch("/{client_id}", response_model=ClientResponse)
async def update_client(
    client_id: str,
    body: ClientUpdateRequest,
    auth: AdminAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ClientResponse:
    client = await _get_client_or_404(db, client_id)
    changes = body.model_dump(exclude_unset=True)
    client = await ClientStore(db).update(client, **changes)
    logger.info("admin_updated_client", admin_id=auth.identity_id, client_id=client_id)
    return ClientResponse.model_validate(client)


@router.delete("/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_client(
    client_id: str,
    auth: AdminAuth,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> None:
    client = await _get_client_or_404(db, client_id)
    await ClientStore(db).delete(client)
