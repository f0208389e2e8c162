from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from point_engine.errors import ApiError, AuthorizationError
from point_engine.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


class Capability(str, enum.Enum):
    VIEW = "view"
    VIEW_ALL = "view_all"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    EXCUSE = "excuse"
    EXPORT = "export"
    RESCAN = "rescan"
    RECALCULATE = "recalculate"
    MAINTENANCE = "maintenance"


_ALL_CAPABILITIES = frozenset(Capability)

ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    "super_admin": _ALL_CAPABILITIES,
    "admin": _ALL_CAPABILITIES,
    "hr": _ALL_CAPABILITIES,
    "team_lead": frozenset(
        {Capability.VIEW, Capability.VIEW_ALL, Capability.CREATE, Capability.EXPORT}
    ),
    "agent": frozenset({Capability.VIEW}),
    "it": frozenset({Capability.VIEW}),
    "utility": frozenset({Capability.VIEW}),
}


def normalize_role(raw: Any) -> str:
    return str(raw or "").strip().lower().replace(" ", "_").replace("-", "_")


def capabilities_for_role(role: str) -> frozenset[Capability]:
    return ROLE_CAPABILITIES.get(normalize_role(role), frozenset())


@dataclass(frozen=True, slots=True)
class PointActor:
    """Who is calling, and what they may do, resolved once per request."""

    user_id: int | None
    role: str
    capabilities: frozenset[Capability]

    @classmethod
    def for_role(cls, role: str, *, user_id: int | None = None) -> PointActor:
        return cls(user_id=user_id, role=normalize_role(role), capabilities=capabilities_for_role(role))

    @classmethod
    def system(cls) -> PointActor:
        return cls(user_id=None, role="system", capabilities=_ALL_CAPABILITIES)

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, capability: Capability, action: str) -> None:
        if not self.can(capability):
            raise AuthorizationError(action)

    def require_view_of(self, user_id: int) -> None:
        self.require(Capability.VIEW, "view attendance points")
        if self.can(Capability.VIEW_ALL):
            return
        if self.user_id != user_id:
            raise AuthorizationError("view other user points")

    def scope_user_id(self, requested_user_id: int | None = None) -> int | None:
        """Restrict listings to the caller's own points unless they may see everyone."""
        if self.can(Capability.VIEW_ALL):
            return requested_user_id
        return self.user_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(*, user_id: int, role: str, full_name: str | None = None) -> tuple[str, dict[str, Any]]:
    settings = get_settings()
    now = _utcnow()
    claims = {
        "sub": str(user_id),
        "role": normalize_role(role),
        "full_name": full_name,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.access_token_minutes)).timestamp()),
        "jti": str(uuid4()),
        "typ": "access",
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
    return token, claims


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    if payload.get("typ") != "access":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token type is invalid.")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")

    return payload


def actor_from_claims(claims: Mapping[str, Any]) -> PointActor:
    subject = str(claims.get("sub") or "")
    user_id = int(subject) if subject.isdigit() else None
    return PointActor.for_role(str(claims.get("role") or ""), user_id=user_id)


def require_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> PointActor:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    actor = actor_from_claims(decode_token(credentials.credentials))
    request.state.actor = actor.role
    request.state.actor_id = str(actor.user_id) if actor.user_id is not None else "unknown"
    return actor
