"""Refresh token storage model for secure token rotation."""

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String
from sqlalchemy.sql import func

from db.database import Base


class RefreshToken(Base):
    """
    One row per refresh token session.

    Only an HMAC of the raw token is stored. Rotation overwrites ``token_hash``
    in place, so ``id`` stays stable for the whole session while every value
    is single use.
    """

    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)  # HMAC-SHA256 hex
    previous_token_hash = Column(String(64), nullable=True, index=True)
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6 address
    user_agent = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    rotated_at = Column(DateTime(timezone=True), nullable=True)
    rotation_count = Column(Integer, nullable=False, default=0)
    is_revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoke_reason = Column(String(100), nullable=True)

    # Indexes for efficient queries
    __table_args__ = (
        Index("ix_refresh_tokens_owner_expires", "owner_id", "expires_at"),
        Index("ix_refresh_tokens_revoked", "is_revoked"),
    )

    def __repr__(self):
        return f"<RefreshToken(id={self.id}, owner_id={self.owner_id}, revoked={self.is_revoked})>"
