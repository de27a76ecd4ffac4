from collections.abc import Callable

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from .access import AccessScope, Actor, load_actor, resolve_scope
from .database import get_db_session
from .models import User, UserRole
from .security import AuthError, decode_access_token


def _parse_token(auth_header: str | None) -> str:
    if not auth_header:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header")
    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid auth scheme")
    return parts[1].strip()


def get_current_user(
    authorization: str | None = Header(default=None, alias="Authorization"),
    db: Session = Depends(get_db_session),
) -> User:
    token = _parse_token(authorization)
    try:
        payload = decode_access_token(token)
    except AuthError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

    user = db.get(User, payload["uid"])
    if not user or not user.is_active or user.email != payload["sub"]:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")
    return user


def get_current_actor(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> Actor:
    return load_actor(db, current_user)


def get_current_scope(
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db_session),
) -> AccessScope:
    return resolve_scope(db, actor)


def require_roles(*allowed_roles: UserRole) -> Callable:
    def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role != UserRole.SUPER_ADMIN and actor.role not in allowed_roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role privileges")
        return actor

    return dependency


def require_permission(slug: str) -> Callable:
    def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not actor.is_super_admin and slug not in actor.permissions:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {slug}")
        return actor

    return dependency
