import ipaddress
import logging
import urllib.parse
from functools import lru_cache
from typing import Optional

from config import get_settings
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.auth import AuthService, build_auth_service
from services.cookie_policy import RequestContext
from services.credentials import CredentialVerifier, UnconfiguredCredentialVerifier
from services.records import ClientMetadata

settings = get_settings()
security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


@lru_cache()
def get_auth_service() -> AuthService:
    """Process-wide auth service bound to the application database."""
    from db.database import AsyncSessionLocal

    return build_auth_service(settings, AsyncSessionLocal)


@lru_cache()
def get_credential_verifier() -> CredentialVerifier:
    """Hosts replace this dependency with their own user store."""
    return UnconfiguredCredentialVerifier()


def _is_trusted_proxy_request(request: Request) -> bool:
    """Return True when request comes from a configured trusted proxy."""
    if not settings.TRUSTED_PROXIES or not request.client:
        return False

    proxy_strings = [p.strip() for p in settings.TRUSTED_PROXIES.split(",") if p.strip()]
    networks: list[ipaddress.IPv4Network | ipaddress.IPv6Network] = []
    for proxy in proxy_strings:
        try:
            networks.append(ipaddress.ip_network(proxy, strict=False))
        except ValueError:
            logger.warning("Invalid TRUSTED_PROXIES network: %s", proxy)

    if not networks:
        return False

    try:
        direct_ip = ipaddress.ip_address(request.client.host)
    except ValueError:
        return False

    return any(direct_ip in network for network in networks)


def _effective_request_scheme_host(request: Request) -> tuple[str, str]:
    """
    Return best-effort (scheme, host) for the current request.

    Uses X-Forwarded-* only when the direct client is in TRUSTED_PROXIES.
    """
    scheme = request.url.scheme.lower()
    host = (request.url.hostname or "").lower()

    if not host:
        host_header = request.headers.get("host", "")
        host = host_header.split(":", 1)[0].strip().lower()

    if _is_trusted_proxy_request(request):
        forwarded_proto = request.headers.get("x-forwarded-proto")
        if forwarded_proto:
            proto = forwarded_proto.split(",", 1)[0].strip().lower()
            if proto in {"http", "https"}:
                scheme = proto

        forwarded_host = request.headers.get("x-forwarded-host")
        if forwarded_host:
            candidate = forwarded_host.split(",", 1)[0].strip()
            parsed = urllib.parse.urlparse(f"//{candidate}")
            if parsed.hostname:
                host = parsed.hostname.lower()

    return scheme, host


def get_request_context(request: Request) -> RequestContext:
    scheme, host = _effective_request_scheme_host(request)
    return RequestContext(
        host=host,
        is_https=scheme == "https",
        origin=request.headers.get("origin"),
        fetch_site=request.headers.get("sec-fetch-site"),
    )


def get_client_metadata(request: Request) -> ClientMetadata:
    """Client IP and User-Agent for the session list. Audit only."""
    ip_address = request.client.host if request.client else None
    if _is_trusted_proxy_request(request):
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            ip_address = forwarded_for.split(",")[0].strip()
        else:
            real_ip = request.headers.get("x-real-ip")
            if real_ip:
                ip_address = real_ip.strip()

    return ClientMetadata(
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
    ).truncated()


async def get_current_owner_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    auth_service: AuthService = Depends(get_auth_service),
) -> int:
    """Owner id from a valid bearer access token or 401."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # TokenError subclasses are mapped to responses by the app exception handlers
    return auth_service.verify(credentials.credentials)
