from __future__ import annotations

from dataclasses import dataclass
from functools import wraps

from flask import g, request

from dolci.errors import EscrowError, Forbidden
from dolci.utils.jwt_utils import decode_token, get_bearer_token

ROLES = ("customer", "owner", "staff", "admin")


class Unauthorized(EscrowError):
    code = "unauthorized"
    http_status = 401
    default_message = "Unauthorized"


@dataclass(frozen=True)
class Identity:
    id: int
    role: str

    @property
    def label(self) -> str:
        return f"{self.role}:{self.id}"

    @property
    def is_staff(self) -> bool:
        return self.role in ("staff", "admin")


def current_identity() -> Identity | None:
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        return None
    role = (payload.get("role") or "").strip().lower()
    if role not in ROLES:
        return None
    try:
        actor_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    return Identity(id=actor_id, role=role)


def require_roles(*roles):
    """Reject the request unless the bearer token carries one of ``roles``.
    The identity is left on ``g.identity``."""

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            ident = current_identity()
            if ident is None:
                raise Unauthorized()
            if roles and ident.role not in roles:
                raise Forbidden(f"Requires role: {', '.join(roles)}")
            g.identity = ident
            return fn(*args, **kwargs)

        return wrapper

    return decorator
