import json

from fastapi import Header

from .errors import AuthorizationError
from .state_machine import Actor
from .status import ActorRole

# most privileged role wins when the gateway forwards several
ROLE_PRECEDENCE = (ActorRole.ADMIN, ActorRole.SYSTEM, ActorRole.PROVIDER, ActorRole.CUSTOMER)


def _parse_roles(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        roles = json.loads(raw)
    except ValueError:
        roles = [r.strip() for r in raw.split(",")]
    if isinstance(roles, str):
        roles = [roles]
    if not isinstance(roles, list):
        return []
    return [str(r).lower() for r in roles if r]


def get_actor(
    x_user_sub: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
) -> Actor:
    """Identity forwarded by the gateway after it verified the caller's token."""
    if not x_user_sub:
        raise AuthorizationError("Missing caller identity", reason="unauthenticated")

    roles = _parse_roles(x_user_roles)
    if not roles:
        raise AuthorizationError("Roles missing in token", reason="roles_missing")

    for role in ROLE_PRECEDENCE:
        if role.value in roles:
            return Actor(x_user_sub, role)
    raise AuthorizationError("Access forbidden for this role")


def require_role(actor: Actor, allowed_roles: list[str]) -> None:
    allowed = {r.lower() for r in allowed_roles}
    if actor.role.value not in allowed:
        raise AuthorizationError("Access forbidden for this role")
