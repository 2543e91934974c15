"""Authentication routes: token issuance, refresh token rotation and sessions."""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from api.dependencies import (
    get_auth_service,
    get_client_metadata,
    get_credential_verifier,
    get_current_owner_id,
    get_request_context,
)
from config import get_settings
from schemas.auth import (
    MessageResponse,
    SessionListResponse,
    SessionResponse,
    TokenRequest,
    TokenResponse,
    VerifyResponse,
)
from services.auth import AuthService, IssuedTokens
from services.clock import utc_now
from services.cookie_policy import CookiePolicy, RequestContext
from services.credentials import CredentialVerifier
from services.errors import InvalidRefreshToken
from services.records import ClientMetadata

settings = get_settings()
router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


# Background task for periodic token cleanup
_cleanup_task: Optional[asyncio.Task] = None


async def _periodic_token_cleanup():
    """Background task to periodically delete expired refresh tokens."""
    while True:
        try:
            await asyncio.sleep(settings.CLEANUP_INTERVAL_SECONDS)
            count = await get_auth_service().cleanup_expired()
            if count > 0:
                logger.info(f"Token cleanup completed: {count} expired refresh tokens removed")
        except asyncio.CancelledError:
            logger.info("Token cleanup task cancelled")
            break
        except Exception as e:
            logger.error(f"Error in token cleanup task: {e}")
            # Continue running despite errors


def start_cleanup_task():
    """Start the periodic token cleanup background task."""
    global _cleanup_task
    if _cleanup_task is None or _cleanup_task.done():
        _cleanup_task = asyncio.create_task(_periodic_token_cleanup())
        logger.debug("Started periodic token cleanup task")


def stop_cleanup_task():
    """Stop the periodic token cleanup background task."""
    global _cleanup_task
    if _cleanup_task and not _cleanup_task.done():
        _cleanup_task.cancel()
        logger.debug("Stopped periodic token cleanup task")


def _set_refresh_cookie(response: Response, tokens: IssuedTokens) -> None:
    policy = tokens.cookie_policy
    if not policy.enabled or not tokens.raw_refresh_token:
        return

    # The cookie never outlives the session it carries
    remaining = int((tokens.refresh_expires_at - utc_now()).total_seconds())
    max_age = max(0, min(policy.lifetime, remaining))
    response.set_cookie(
        value=tokens.raw_refresh_token,
        max_age=max_age,
        **policy.cookie_kwargs(),
    )


def _clear_refresh_cookie(response: Response, policy: CookiePolicy) -> None:
    if policy.enabled:
        response.delete_cookie(**policy.cookie_kwargs())


def _token_response(tokens: IssuedTokens) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        owner_id=tokens.owner_id,
    )


def _refresh_failure(policy: CookiePolicy, code: str, detail: str) -> JSONResponse:
    """401 that also drops the unusable cookie; the client must log in again."""
    response = JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": detail, "code": code},
        headers={"WWW-Authenticate": "Bearer"},
    )
    _clear_refresh_cookie(response, policy)
    return response


@router.post("/token", response_model=TokenResponse)
async def issue_token(
    response: Response,
    credentials: Optional[TokenRequest] = None,
    context: RequestContext = Depends(get_request_context),
    metadata: ClientMetadata = Depends(get_client_metadata),
    auth_service: AuthService = Depends(get_auth_service),
    verifier: CredentialVerifier = Depends(get_credential_verifier),
):
    """
    Log in with username and password.

    Returns a short-lived access token. The refresh token is set as an
    httpOnly cookie and is never part of the body.
    """
    if credentials is None or not credentials.username or not credentials.password:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username and password are required",
        )

    owner = await verifier.authenticate(credentials.username, credentials.password)
    if owner is None:
        logger.warning(f"Login failed from {metadata.ip_address or 'unknown'}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid credentials",
        )

    tokens = await auth_service.issue(
        owner.owner_id,
        owner.claims,
        context=context,
        metadata=metadata,
    )
    _set_refresh_cookie(response, tokens)
    return _token_response(tokens)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_tokens(
    request: Request,
    response: Response,
    context: RequestContext = Depends(get_request_context),
    metadata: ClientMetadata = Depends(get_client_metadata),
    auth_service: AuthService = Depends(get_auth_service),
    verifier: CredentialVerifier = Depends(get_credential_verifier),
):
    """
    Exchange the refresh token cookie for a new access token.

    With rotation enabled the cookie is replaced on every successful call and
    the previous value stops working. Any failure clears the cookie.
    """
    policy = auth_service.cookie_policy(context)
    raw_refresh_token = request.cookies.get(policy.name)
    if not raw_refresh_token:
        return _refresh_failure(policy, "missing_refresh_token", "Refresh token is required")

    try:
        tokens = await auth_service.refresh(
            raw_refresh_token,
            context=context,
            metadata=metadata,
            claims_loader=verifier.load_claims,
        )
    except InvalidRefreshToken as exc:
        return _refresh_failure(policy, exc.code, exc.public_message)

    _set_refresh_cookie(response, tokens)
    return _token_response(tokens)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    context: RequestContext = Depends(get_request_context),
    auth_service: AuthService = Depends(get_auth_service),
):
    """
    Logout current session.

    Revokes the refresh token from the cookie (if present) and clears the
    cookie. Always acknowledges, so it works with an expired access token.
    """
    policy = auth_service.cookie_policy(context)
    raw_refresh_token = request.cookies.get(policy.name)
    if raw_refresh_token:
        await auth_service.revoke(raw_refresh_token)

    _clear_refresh_cookie(response, policy)
    return MessageResponse(message="Successfully logged out")


@router.get("/verify", response_model=VerifyResponse)
async def verify_token(owner_id: int = Depends(get_current_owner_id)):
    """Return the owner of a valid bearer access token."""
    return VerifyResponse(owner_id=owner_id)


@router.get("/sessions", response_model=SessionListResponse)
async def get_sessions(
    request: Request,
    owner_id: int = Depends(get_current_owner_id),
    context: RequestContext = Depends(get_request_context),
    auth_service: AuthService = Depends(get_auth_service),
):
    """
    Get list of active sessions for the current owner.

    Each session is one refresh token chain (a device or browser).
    """
    policy = auth_service.cookie_policy(context)
    current_id = await auth_service.current_session_id(owner_id, request.cookies.get(policy.name))
    records = await auth_service.list_sessions(owner_id)

    sessions = [
        SessionResponse(
            id=record.id,
            ip_address=record.client_metadata.ip_address,
            user_agent=record.client_metadata.user_agent,
            created_at=record.created_at,
            last_used_at=record.last_used_at,
            expires_at=record.expires_at,
            rotation_count=record.rotation_count,
            is_current=record.id == current_id,
        )
        for record in records
    ]
    return SessionListResponse(sessions=sessions, total=len(sessions))


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
async def revoke_session(
    session_id: int,
    owner_id: int = Depends(get_current_owner_id),
    auth_service: AuthService = Depends(get_auth_service),
):
    """Revoke one of the current owner's sessions by id."""
    revoked = await auth_service.revoke_owner_token(owner_id, session_id)
    if not revoked:
        # Other owners' sessions look exactly like missing ones
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        )
    return MessageResponse(message="Session revoked")


@router.post("/logout-all", response_model=MessageResponse)
async def logout_all(
    response: Response,
    owner_id: int = Depends(get_current_owner_id),
    context: RequestContext = Depends(get_request_context),
    auth_service: AuthService = Depends(get_auth_service),
):
    """Revoke every refresh token of the current owner."""
    count = await auth_service.revoke_all_for_owner(owner_id)
    _clear_refresh_cookie(response, auth_service.cookie_policy(context))
    return MessageResponse(message=f"Successfully logged out from all {count} sessions")
