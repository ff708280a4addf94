"""
auth.py — Principal and Authorization Predicates

Identity and sessions are owned by an external identity provider. The core
only consumes the authenticated principal it produces: an explicit
`Principal` object passed into every core operation. Nothing here reads
ambient or global state.

Roles form a closed set. Each operation asks a single predicate instead of
comparing role strings.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Header

from .errors import Forbidden, ValidationError


class Role(str, Enum):
    CUSTOMER = "customer"
    SHOP = "shop"
    SYSTEM = "system"


@dataclass(frozen=True)
class Principal:
    """
    Authenticated actor.

    Attributes:
        user_id (str): Identity provider subject.
        role (Role): Closed role variant.
        shop_id (Optional[str]): Shop owned by the actor, required for the shop role.
    """
    user_id: str
    role: Role
    shop_id: Optional[str] = None

    def __post_init__(self):
        if self.role is Role.SHOP and not self.shop_id:
            raise ValidationError("Shop principal requires a shop id")


# Only the payment reconciler acts as the system
SYSTEM = Principal(user_id="payment-reconciler", role=Role.SYSTEM)


def is_party_to(principal, order):
    """True if the principal is the order's customer or its owning shop."""
    if principal.role is Role.CUSTOMER:
        return principal.user_id == order.customer_id
    if principal.role is Role.SHOP:
        return principal.shop_id == order.shop_id
    return False


def require_party(principal, order):
    if principal.role is Role.SYSTEM or is_party_to(principal, order):
        return
    raise Forbidden(f"Principal {principal.user_id} is not a party to order {order.id}")


def require_customer(principal):
    if principal.role is not Role.CUSTOMER:
        raise Forbidden("Only customers can perform this operation")


def require_shop(principal):
    if principal.role is not Role.SHOP:
        raise Forbidden("Only shops can perform this operation")


def principal_from_headers(
        x_principal_id: str = Header(..., alias="X-Principal-Id"),
        x_principal_role: str = Header(..., alias="X-Principal-Role"),
        x_shop_id: Optional[str] = Header(None, alias="X-Shop-Id"),
) -> Principal:
    """
    FastAPI dependency building the principal from identity provider headers.

    The system role is internal and cannot be asserted by a caller.

    Raises:
        Forbidden: If the role is unknown or is the system role.
    """
    try:
        role = Role(x_principal_role.strip().lower())
    except ValueError:
        raise Forbidden(f"Unknown role: {x_principal_role}")
    if role is Role.SYSTEM:
        raise Forbidden("The system role cannot be asserted by a caller")
    return Principal(user_id=x_principal_id, role=role, shop_id=x_shop_id)
