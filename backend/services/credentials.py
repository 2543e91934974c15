"""Boundary to the host application's user store."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedOwner:
    owner_id: int
    # Extra access token claims, e.g. roles
    claims: Dict[str, Any] = field(default_factory=dict)


class CredentialVerifier(ABC):
    """Implemented by the host; override ``get_credential_verifier`` to plug it in."""

    @abstractmethod
    async def authenticate(self, username: str, password: str) -> Optional[AuthenticatedOwner]:
        """Return the owner for valid credentials, None otherwise."""
        pass

    async def load_claims(self, owner_id: int) -> Optional[Dict[str, Any]]:
        """
        Claims to embed in a refreshed access token.

        Returning None means the owner no longer exists and the refresh is
        rejected.
        """
        return {}


class UnconfiguredCredentialVerifier(CredentialVerifier):
    """Rejects every login until the host installs a real verifier."""

    async def authenticate(self, username: str, password: str) -> Optional[AuthenticatedOwner]:
        logger.error("Login attempted but no credential verifier is configured")
        return None
