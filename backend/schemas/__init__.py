from .auth import (
    MessageResponse,
    SessionListResponse,
    SessionResponse,
    TokenRequest,
    TokenResponse,
    VerifyResponse,
)

__all__ = [
    "MessageResponse",
    "SessionListResponse",
    "SessionResponse",
    "TokenRequest",
    "TokenResponse",
    "VerifyResponse",
]
