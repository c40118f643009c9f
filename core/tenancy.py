from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Header, HTTPException, status

from core.errors import AuthorizationError
from models.enums import ActorType, UserRole
from models.order import Order
from models.store import Store
from security.jwt import decode_access


@dataclass(frozen=True)
class Actor:
    """The already-authenticated caller of an operation."""

    user_id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def get_current_actor(authorization: Optional[str] = Header(default=None)) -> Actor:
    """FastAPI dependency resolving the bearer token into an Actor."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = decode_access(token)
        return Actor(user_id=int(payload["sub"]), role=UserRole(payload.get("role", UserRole.CUSTOMER.value)))
    except (jwt.PyJWTError, KeyError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def is_store_owner(actor: Actor, store: Store) -> bool:
    return store.owner_id == actor.user_id


def require_store_owner(actor: Actor, store: Store) -> None:
    if not is_store_owner(actor, store):
        raise AuthorizationError("Only the store owner can perform this action")


def can_view_order(actor: Actor, order: Order) -> bool:
    return actor.is_admin or order.customer_id == actor.user_id or order.store.owner_id == actor.user_id


def actor_type_for(actor: Actor, store: Store | None = None) -> ActorType:
    """How an actor appears in the order timeline."""
    if actor.is_admin:
        return ActorType.ADMIN
    if store is not None and is_store_owner(actor, store):
        return ActorType.VENDOR
    return ActorType.CUSTOMER
