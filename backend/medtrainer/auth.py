"""Access control: token decoding, principal resolution and guards.

The guards are FastAPI dependencies composed in a fixed order:

- `get_current_principal` decodes the bearer token (header or cookie)
  and loads the referenced user, failing with `Unauthorized`.
- `restrict_to(*roles)` / `require_admin` depend on the principal and
  fail with `Forbidden` when its role is not allowed.
- `check_ownership(loader, id_param)` depends on the principal, loads the
  resource named by a path parameter in a second read and allows the
  request when the principal owns it or is an admin.

Because role and ownership guards take the principal as a dependency,
authentication always runs first.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import jwt
from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from . import repositories
from .config import settings
from .database import get_session
from .errors import Forbidden, NotFound, Unauthorized, ValidationError
from .models import Role

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """The authenticated actor attached to a request."""
    id: int
    email: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin


class Ownable(Protocol):
    def owner_id(self) -> Optional[int]:
        ...


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises `Unauthorized`.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("invalid token")


def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    db: Session = Depends(get_session),
) -> Principal:
    """FastAPI dependency that returns the authenticated principal.

    The token is taken from the `Authorization: Bearer` header, falling
    back to the auth cookie. The role comes from the stored user, not from
    the token claims, so a demotion takes effect immediately.
    """
    token = credentials.credentials if credentials else request.cookies.get(settings.AUTH_COOKIE_NAME)
    if not token:
        raise Unauthorized("not authenticated: token missing")
    payload = decode_token(token)
    user_id = payload.get("id")
    if not isinstance(user_id, int):
        raise Unauthorized("invalid token payload")
    user = repositories.UserRepository(db).get(user_id)
    if not user:
        raise Unauthorized("user not found")
    return Principal(id=user.id, email=user.email, role=user.role)


def restrict_to(*roles: Role) -> Callable[..., Principal]:
    """Build a dependency allowing only principals holding one of `roles`."""
    allowed = frozenset(roles)
    names = ", ".join(r.value for r in roles)

    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise Forbidden(f"access denied: requires role {names}")
        return principal

    return dependency


require_admin = restrict_to(Role.admin)


def check_ownership(loader: Callable[[Session, int], Optional[Ownable]], id_param: str):
    """Build a dependency that loads a resource and checks who owns it.

    `loader(session, id)` returns the resource or `None`. The dependency
    returns the loaded resource so the handler does not read it twice.
    """
    def dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(get_session),
    ):
        raw = request.path_params.get(id_param)
        try:
            resource_id = int(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"invalid {id_param}")
        resource = loader(db, resource_id)
        if resource is None:
            raise NotFound("resource not found")
        if resource.owner_id() != principal.id and not principal.is_admin:
            raise Forbidden("access denied: you do not own this resource")
        return resource

    return dependency


def load_task(db: Session, task_id: int):
    return repositories.TaskRepository(db).get(task_id)


def load_user(db: Session, user_id: int):
    return repositories.UserRepository(db).get(user_id)


task_owner_or_admin = check_ownership(load_task, "task_id")
user_owner_or_admin = check_ownership(load_user, "user_id")
