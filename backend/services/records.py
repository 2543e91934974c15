"""Detached value objects returned by the refresh token store."""

import json
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Optional

from services.clock import as_utc


@dataclass(frozen=True)
class ClientMetadata:
    """Requesting client, kept for audit only. Never used to authorise."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def truncated(self) -> "ClientMetadata":
        return ClientMetadata(
            ip_address=self.ip_address[:45] if self.ip_address else None,
            user_agent=self.user_agent[:500] if self.user_agent else None,
        )


_DATETIME_FIELDS = (
    "issued_at",
    "expires_at",
    "created_at",
    "last_used_at",
    "rotated_at",
    "revoked_at",
)


@dataclass(frozen=True)
class RefreshTokenRecord:
    id: int
    owner_id: int
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    is_revoked: bool = False
    client_metadata: ClientMetadata = field(default_factory=ClientMetadata)
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    rotated_at: Optional[datetime] = None
    rotation_count: int = 0
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "RefreshTokenRecord":
        """Build from an ORM instance or a ``RETURNING`` row."""
        return cls(
            id=row.id,
            owner_id=row.owner_id,
            token_hash=row.token_hash,
            issued_at=as_utc(row.issued_at),
            expires_at=as_utc(row.expires_at),
            is_revoked=bool(row.is_revoked),
            client_metadata=ClientMetadata(
                ip_address=row.ip_address,
                user_agent=row.user_agent,
            ),
            created_at=as_utc(row.created_at),
            last_used_at=as_utc(row.last_used_at),
            rotated_at=as_utc(row.rotated_at),
            rotation_count=row.rotation_count or 0,
            revoked_at=as_utc(row.revoked_at),
            revoke_reason=row.revoke_reason,
        )

    def is_valid_at(self, now: datetime) -> bool:
        return not self.is_revoked and self.expires_at > now

    def without_hash(self) -> "RefreshTokenRecord":
        return replace(self, token_hash="")

    def to_json(self) -> str:
        data = asdict(self)
        for name in _DATETIME_FIELDS:
            if data[name] is not None:
                data[name] = data[name].isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw) -> "RefreshTokenRecord":
        data = json.loads(raw)
        for name in _DATETIME_FIELDS:
            if data.get(name) is not None:
                data[name] = as_utc(datetime.fromisoformat(data[name]))
        data["client_metadata"] = ClientMetadata(**data.get("client_metadata") or {})
        return cls(**data)
