"""Actor-aware auth dependency for API routes."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ultimamilla.core.config import get_settings
from ultimamilla.core.logging import logger


security = HTTPBearer(auto_error=False)


@dataclass
class ActorContext:
    actor_id: str
    authenticated: bool
    roles: FrozenSet[str] = field(default_factory=frozenset)

    def has_any(self, *roles: str) -> bool:
        return bool(self.roles.intersection(roles))


SUPPORTED_ROLES = {"admin", "adminBodega", "subBodega", "chofer"}
_ROLE_LOOKUP = {role.lower(): role for role in SUPPORTED_ROLES}


def _normalize_roles(value: str | None, fallback: list[str]) -> FrozenSet[str]:
    raw = [item.strip() for item in (value or "").replace(",", "|").split("|") if item.strip()]
    if not raw:
        raw = fallback
    roles = set()
    for item in raw:
        role = _ROLE_LOOKUP.get(item.lower())
        if role is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unsupported role '{item}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
            )
        roles.add(role)
    return frozenset(roles)


def _parse_actor_tokens(raw: str) -> Dict[str, Tuple[str, str]]:
    """Parse `token:actor:role1|role2` comma-separated values from env."""
    mapping: Dict[str, Tuple[str, str]] = {}
    if not raw.strip():
        return mapping

    for segment in raw.split(","):
        item = segment.strip()
        if not item:
            continue
        parts = item.split(":")
        if len(parts) != 3:
            logger.warning("Ignoring malformed actor token mapping entry", entry=item)
            continue
        token, actor, roles = (part.strip() for part in parts)
        if token and actor:
            mapping[token] = (actor, roles)
    return mapping


def get_actor_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    x_actor_roles: str | None = Header(default=None, alias="X-Actor-Roles"),
) -> ActorContext:
    """Resolve the calling actor from a bearer token or trusted headers."""
    settings = get_settings()
    fallback_roles = settings.parsed_default_roles()

    if not settings.auth_enabled:
        actor = (x_actor_id or settings.default_actor or "anonymous").strip() or "anonymous"
        return ActorContext(
            actor_id=actor,
            authenticated=False,
            roles=_normalize_roles(x_actor_roles, fallback_roles),
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
        )

    token_map = _parse_actor_tokens(settings.actor_tokens)
    entry = token_map.get(credentials.credentials.strip())
    if not entry:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bearer token",
        )

    actor, roles = entry
    return ActorContext(
        actor_id=actor,
        authenticated=True,
        roles=_normalize_roles(roles, fallback_roles),
    )


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces role-based access control."""
    allowed = {role.strip() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: ActorContext = Depends(get_actor_context)) -> ActorContext:
        if not context.has_any(*allowed):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Roles {sorted(context.roles)} not permitted for this operation",
            )
        return context

    return _guard
