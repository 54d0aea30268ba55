"""Who may act on an order or return request.

Pure functions over the caller and ownership facts; nothing here touches the
database, so the facts are gathered by the caller right before each decision.
"""

import enum
from dataclasses import dataclass
from typing import Optional

from storefront.models.user import Role
from storefront.services.errors import NotAuthorized


@dataclass(frozen=True)
class Caller:
    """Identity resolved once at the request boundary."""

    user_id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class Scope(str, enum.Enum):
    CUSTOMER = "CUSTOMER"  # cancel own order, request a return on it
    STORE = "STORE"  # resolve returns, direct refunds, fulfilment
    VIEW = "VIEW"  # read a return request


@dataclass(frozen=True)
class ResourceOwnership:
    owner_user_id: int
    store_owner_user_id: Optional[int] = None
    store_active: bool = True


def ownership_of(order) -> ResourceOwnership:
    store = order.store
    return ResourceOwnership(
        owner_user_id=order.user_id,
        store_owner_user_id=store.user_id if store is not None else None,
        store_active=bool(store.is_active) if store is not None else False,
    )


def _is_store_owner(caller: Caller, ownership: ResourceOwnership) -> bool:
    return (
        caller.role == Role.STORE_OWNER
        and ownership.store_active
        and ownership.store_owner_user_id is not None
        and ownership.store_owner_user_id == caller.user_id
    )


def is_authorized(caller: Caller, scope: Scope, ownership: ResourceOwnership) -> bool:
    if scope == Scope.CUSTOMER:
        # Customer actions speak for the buyer; nobody else may take them
        return caller.user_id == ownership.owner_user_id
    if caller.is_admin:
        return True
    if _is_store_owner(caller, ownership):
        return True
    if scope == Scope.VIEW:
        return caller.user_id == ownership.owner_user_id
    return False


def require_authorized(caller: Caller, scope: Scope, ownership: ResourceOwnership, message: str = "Not authorized") -> None:
    if not is_authorized(caller, scope, ownership):
        raise NotAuthorized(message)
