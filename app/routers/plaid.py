"""Connection endpoints: Link flow, listing, unlinking and sync triggers."""

import os
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Header, status
from pydantic import BaseModel
from dotenv import load_dotenv

from app.core.exceptions import (
    ConnectionNotFoundError,
    DuplicateConnectionError,
    ProviderError,
)
from app.core.middleware import get_current_user, TokenData
from app.services import connection_service
from app.services.connection_registry import ConnectionRegistry, get_connection_registry
from app.services.provider_client import PlaidProviderClient, get_provider_client
from app.services.scheduler import SyncScheduler, get_sync_scheduler
from app.services.sync_orchestrator import SyncOrchestrator, get_sync_orchestrator

load_dotenv()

router = APIRouter(tags=["connections"])

# API key for external cron authentication
SYNC_API_KEY = os.getenv("SYNC_API_KEY")


class LinkTokenResponse(BaseModel):
    """Response containing Plaid Link token."""
    link_token: str


class ConnectRequest(BaseModel):
    """Request to exchange Plaid public token."""
    public_token: str
    institution_id: str | None = None
    institution_name: str | None = None


class ConnectionResponse(BaseModel):
    """Connection details for the frontend. Never includes the credential."""
    item_id: str
    institution_id: str | None
    institution_name: str | None
    is_active: bool
    needs_attention: bool
    last_error_code: str | None
    last_synced_at: datetime | None
    has_cursor: bool

    class Config:
        from_attributes = True


class RoundSummaryResponse(BaseModel):
    """Response from a sync round."""
    connections_processed: int
    connections_failed: int
    connections_skipped: int
    transactions_added: int
    transactions_modified: int
    transactions_removed: int


class SyncAcceptedResponse(BaseModel):
    """Acknowledgement that a manual sync was scheduled."""
    item_id: str
    status: str = "accepted"


@router.post("/plaid/link-token", response_model=LinkTokenResponse)
async def create_link_token(
    user: TokenData = Depends(get_current_user),
    provider: PlaidProviderClient = Depends(get_provider_client),
) -> LinkTokenResponse:
    """
    Create a Plaid Link token for the authenticated user.

    This token is used to initialize Plaid Link in the frontend.
    """
    try:
        link_token = await provider.create_link_token(user.sub)
        return LinkTokenResponse(link_token=link_token)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )
    except ProviderError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to create link token: {e}",
        )


@router.post(
    "/plaid/connect",
    response_model=ConnectionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def connect_institution(
    request: ConnectRequest,
    user: TokenData = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_connection_registry),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
    provider: PlaidProviderClient = Depends(get_provider_client),
) -> ConnectionResponse:
    """
    Exchange a Plaid public token and link the institution.

    Called after the user completes Plaid Link. The initial full sync starts
    in the background; the response does not wait for it.
    """
    try:
        linked = await connection_service.link_public_token(
            registry,
            scheduler,
            provider,
            user_id=user.sub,
            public_token=request.public_token,
            institution_id=request.institution_id,
            institution_name=request.institution_name,
        )
    except DuplicateConnectionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )
    except ProviderError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to connect institution: {e}",
        )
    return ConnectionResponse.model_validate(linked.connection)


@router.get("/connections", response_model=list[ConnectionResponse])
async def list_connections(
    user: TokenData = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_connection_registry),
) -> list[ConnectionResponse]:
    """
    List the current user's connections with their sync status.
    """
    views = await connection_service.list_connections_for_owner(registry, user.sub)
    return [ConnectionResponse.model_validate(v) for v in views]


@router.delete("/connections/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unlink_institution(
    item_id: str,
    user: TokenData = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_connection_registry),
) -> None:
    """
    Unlink a connection. It stops syncing; stored accounts and transactions stay.
    """
    try:
        await connection_service.unlink_connection(registry, item_id, user.sub)
    except ConnectionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        )


@router.post(
    "/connections/{item_id}/sync",
    response_model=SyncAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def sync_connection(
    item_id: str,
    user: TokenData = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_connection_registry),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
) -> SyncAcceptedResponse:
    """
    Manually sync one connection.

    Triggered by the user clicking "Sync Now" in the frontend. The sync runs
    in the background; its outcome shows up on the connection listing
    (last_synced_at, needs_attention, last_error_code).
    """
    connection = await registry.get(item_id)
    if connection is None or connection.user_id != user.sub:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Connection {item_id} not found",
        )

    scheduler.request_sync(item_id)
    return SyncAcceptedResponse(item_id=item_id)


@router.post("/jobs/sync-round", response_model=RoundSummaryResponse)
async def run_sync_round(
    x_api_key: str | None = Header(None, alias="X-API-Key"),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> RoundSummaryResponse:
    """
    Run a sync round across all active connections.

    For deployments that drive rounds from an external cron instead of the
    in-process scheduler. Requires X-API-Key matching SYNC_API_KEY.
    """
    if not SYNC_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="SYNC_API_KEY not configured",
        )

    if x_api_key != SYNC_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    summary = await orchestrator.run_round()
    return RoundSummaryResponse(**summary)
