"""
Bank Connection Routes

User-facing endpoints for:
- Listing providers and connections
- Starting the consent flow (and bank selection)
- Provider callback handling
- Disconnecting banks
"""

import logging
from fastapi import APIRouter, Depends, HTTPException, status, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from typing import List, Optional

from ledgerly.config import get_settings
from ledgerly.database import get_db
from ledgerly.app import models, schemas
from ledgerly.app.auth import get_current_active_user
from ledgerly.app.billing.plans import can_use_feature
from ledgerly.app.bank_integration.errors import (
    BankingError,
    BankSelectionNotSupportedError,
    InvalidConnectionStateError,
    NotFoundError,
    ProviderTimeoutError,
    SessionError,
    TokenRefreshError,
    UnsupportedProviderError,
)
from ledgerly.app.bank_integration.factory import ProviderFactory, get_provider_factory, get_session_store
from ledgerly.app.bank_integration.service import BankIntegrationService
from ledgerly.app.bank_integration.session_store import SessionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/banking", tags=["banking"])


def to_http_exception(error: BankingError) -> HTTPException:
    """Translate a banking error into the matching HTTP error."""
    if isinstance(error, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, (SessionError, UnsupportedProviderError, BankSelectionNotSupportedError)):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, (TokenRefreshError, InvalidConnectionStateError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, ProviderTimeoutError):
        code = status.HTTP_504_GATEWAY_TIMEOUT
    else:
        # ProviderError, SyncError
        code = status.HTTP_502_BAD_GATEWAY
    return HTTPException(status_code=code, detail=str(error))


def get_integration_service(
    db: Session = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    session_store: SessionStore = Depends(get_session_store)
) -> BankIntegrationService:
    return BankIntegrationService(db, provider_factory, session_store)


@router.get("/providers", response_model=List[schemas.BankingProvider])
def list_providers(
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    current_user: models.User = Depends(get_current_active_user)
):
    return provider_factory.list_providers()


@router.get("/connections", response_model=List[schemas.BankConnection])
def list_connections(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """
    List user's bank connections, newest first.

    Returns all connections (active, errored and disconnected).
    """
    return db.query(models.BankConnection).filter(
        models.BankConnection.user_id == current_user.id
    ).order_by(models.BankConnection.created_at.desc()).all()


@router.post("/connections/initiate", response_model=schemas.InitiateConnectionResponse)
async def initiate_connection(
    request: schemas.InitiateConnectionRequest,
    db: Session = Depends(get_db),
    service: BankIntegrationService = Depends(get_integration_service),
    current_user: models.User = Depends(get_current_active_user)
):
    """
    Start connecting a bank.

    Direct-redirect providers return an auth_url; bank-selection providers
    return the list of banks and requires_bank_selection=true.

    Example:
        POST /banking/connections/initiate
        {"provider_name": "truelayer"}

        Response:
        {
            "session_id": "6f1c...",
            "auth_url": "https://auth.truelayer-sandbox.com/?...",
            "banks": null,
            "requires_bank_selection": false
        }
    """
    active_connections = db.query(models.BankConnection).filter(
        models.BankConnection.user_id == current_user.id,
        models.BankConnection.status == models.BankConnectionStatus.ACTIVE
    ).count()

    if not can_use_feature(current_user.subscription_plan, 'bank_connections', active_connections):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your plan does not allow more bank connections. Upgrade to connect a bank."
        )

    try:
        auth_session = await service.initiate_connection(current_user, request.provider_name)
    except BankingError as e:
        logger.error(f"Failed to initiate banking connection: {e}")
        raise to_http_exception(e)

    return {
        'session_id': auth_session.session_id,
        'auth_url': auth_session.auth_url,
        'banks': [vars(bank) for bank in auth_session.banks] if auth_session.banks is not None else None,
        'requires_bank_selection': not auth_session.auth_url,
    }


@router.post("/connections/select-bank", response_model=schemas.SelectBankResponse)
async def select_bank(
    request: schemas.SelectBankRequest,
    service: BankIntegrationService = Depends(get_integration_service),
    current_user: models.User = Depends(get_current_active_user)
):
    try:
        auth_session = await service.select_bank(
            current_user, request.session_id, request.bank_id, request.provider_name
        )
    except BankingError as e:
        logger.error(f"Failed to select bank: {e}")
        raise to_http_exception(e)

    return {'auth_url': auth_session.auth_url}


@router.post("/connections/complete", response_model=schemas.CompleteConnectionResponse)
async def complete_connection(
    request: schemas.CompleteConnectionRequest,
    service: BankIntegrationService = Depends(get_integration_service),
    current_user: models.User = Depends(get_current_active_user)
):
    """
    Exchange the authorization code, store the connection and run the initial sync.
    """
    try:
        connection = await service.complete_connection(
            code=request.code,
            session_id=request.state,
            user_id=current_user.id,
            provider_name=request.provider_name
        )
    except BankingError as e:
        logger.error(f"Failed to complete banking connection: {e}")
        raise to_http_exception(e)

    return {'success': True, 'connection_id': connection.id}


@router.get("/callback")
async def provider_callback(
    code: Optional[str] = Query(None, description="Authorization code"),
    state: Optional[str] = Query(None, description="Flow session id"),
    service: BankIntegrationService = Depends(get_integration_service)
):
    """
    Provider callback endpoint.

    The bank redirects the user here after authorization. The flow session
    identifies the user, so no bearer token is needed. Always redirects back
    to the frontend banking page with either success=true or an error code.
    """
    frontend_url = get_settings().frontend_url

    if not code or not state:
        logger.warning("Banking callback missing code or state")
        return RedirectResponse(url=f"{frontend_url}/banking?error=missing_params")

    try:
        await service.complete_connection(code=code, session_id=state)
    except SessionError as e:
        # Unknown or expired flow, user has to start again
        logger.warning(f"Banking callback with unusable session: {e}")
        return RedirectResponse(url=f"{frontend_url}/banking?error=auth_required")
    except Exception as e:
        logger.error(f"Banking connection failed: {e}")
        return RedirectResponse(url=f"{frontend_url}/banking?error=connection_failed")

    return RedirectResponse(url=f"{frontend_url}/banking?success=true")


@router.delete("/connections/{connection_id}", response_model=schemas.SuccessResponse)
async def disconnect_bank(
    connection_id: str,
    service: BankIntegrationService = Depends(get_integration_service),
    current_user: models.User = Depends(get_current_active_user)
):
    """
    Disconnect bank connection.

    Revokes access with the provider (best effort) and clears stored tokens.
    """
    try:
        await service.disconnect_bank(connection_id, current_user)
    except BankingError as e:
        raise to_http_exception(e)

    return {'success': True}
