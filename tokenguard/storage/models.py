from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Role(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class FamilyState(str, Enum):
    """Lifecycle of one refresh-token lineage; REVOKED is terminal."""

    ACTIVE = "active"
    ROTATED = "rotated"
    REVOKED = "revoked"


class SecurityEventType(str, Enum):
    LOGIN = "login"
    TOKEN_REFRESH = "token_refresh"
    TOKEN_REUSE_DETECTED = "token_reuse_detected"
    FAMILY_INVALIDATED = "family_invalidated"
    LOGOUT = "logout"
    SESSION_REVOKED = "session_revoked"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Identity:
    """Caller-supplied claims for a token pair."""

    subject_id: str
    role: Role
    email: str

    def __post_init__(self) -> None:
        # Accept plain strings from callers but store the enum
        object.__setattr__(self, "role", Role(self.role))


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    role: Role
    email: str
    token_id: str
    family: str
    type: TokenType
    issued_at: int
    expires_at: int

    def to_payload(self, *, issuer: str, audience: str) -> Dict[str, Any]:
        return {
            "iss": issuer,
            "aud": audience,
            "sub": self.subject_id,
            "role": self.role.value,
            "email": self.email,
            "jti": self.token_id,
            "family": self.family,
            "type": self.type.value,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        """Build claims from a decoded payload.

        Raises KeyError, TypeError or ValueError when a claim is missing or
        carries a value outside the closed role/type enumerations.
        """
        return cls(
            subject_id=str(payload["sub"]),
            role=Role(payload["role"]),
            email=str(payload["email"]),
            token_id=str(payload["jti"]),
            family=str(payload["family"]),
            type=TokenType(payload["type"]),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )

    @property
    def identity(self) -> Identity:
        return Identity(subject_id=self.subject_id, role=self.role, email=self.email)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    token_family: str
    expires_in: int
    refresh_expires_in: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_family": self.token_family,
            "expires_in": self.expires_in,
            "refresh_expires_in": self.refresh_expires_in,
            "token_type": "bearer",
        }


@dataclass(frozen=True)
class IssuedToken:
    """A token id minted inside a family, with its absolute expiry."""

    token_id: str
    expires_at: int

    def encode(self) -> str:
        return f"{self.token_id}:{self.expires_at}"

    @classmethod
    def decode(cls, raw: str) -> Optional["IssuedToken"]:
        token_id, sep, exp = raw.rpartition(":")
        if not sep or not token_id:
            return None
        try:
            return cls(token_id=token_id, expires_at=int(exp))
        except ValueError:
            return None


@dataclass
class FamilyRecord:
    family_id: str
    valid_token_ids: set[str] = field(default_factory=set)
    revoked: bool = False
    issued: List[IssuedToken] = field(default_factory=list)

    @property
    def state(self) -> FamilyState:
        if self.revoked:
            return FamilyState.REVOKED
        # Each pair contributes an access and a refresh id
        if len(self.issued) > 2:
            return FamilyState.ROTATED
        return FamilyState.ACTIVE


@dataclass
class SessionRecord:
    session_id: str
    user_id: str
    metadata: Dict[str, Any]
    created_at: datetime
    last_activity: datetime
    expires_at: datetime

    def to_json(self) -> str:
        data = asdict(self)
        for key in ("created_at", "last_activity", "expires_at"):
            data[key] = data[key].isoformat()
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            metadata=dict(data.get("metadata") or {}),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_activity=datetime.fromisoformat(data["last_activity"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


@dataclass
class SecurityEvent:
    user_id: str
    event_type: SecurityEventType
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "user_id": self.user_id,
                "event_type": self.event_type.value,
                "timestamp": self.timestamp.isoformat(),
                "details": self.details,
            },
            separators=(",", ":"),
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> "SecurityEvent":
        data = json.loads(raw)
        return cls(
            user_id=data["user_id"],
            event_type=SecurityEventType(data["event_type"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            details=dict(data.get("details") or {}),
        )


@dataclass(frozen=True)
class CachedTokenInfo:
    """Claims of an issued token as stored for later introspection."""

    claims: TokenClaims
    cached_at: int

    def to_json(self) -> str:
        data = asdict(self.claims)
        data["role"] = self.claims.role.value
        data["type"] = self.claims.type.value
        data["cached_at"] = self.cached_at
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "CachedTokenInfo":
        data = json.loads(raw)
        cached_at = int(data.pop("cached_at"))
        data["role"] = Role(data["role"])
        data["type"] = TokenType(data["type"])
        return cls(claims=TokenClaims(**data), cached_at=cached_at)


@dataclass
class UserActivity:
    user_id: str
    activity: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "user_id": self.user_id,
                "activity": self.activity,
                "timestamp": self.timestamp.isoformat(),
                "metadata": self.metadata,
            },
            separators=(",", ":"),
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> "UserActivity":
        data = json.loads(raw)
        return cls(
            user_id=data["user_id"],
            activity=str(data["activity"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            metadata=dict(data.get("metadata") or {}),
        )
