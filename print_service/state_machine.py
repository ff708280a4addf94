"""
state_machine.py — Order Status State Machine

Governs which status changes are legal and who may trigger each one:

    pending  -> paid       system (payment reconciler only)
    pending  -> cancelled  customer or shop
    paid     -> printing   shop
    printing -> completed  shop

completed and cancelled are terminal. Anything else is an InvalidTransition.

Writes are compare-and-swap: `UPDATE orders SET status = :target WHERE id = :id
AND status = :current`. If another actor moved the order first, zero rows
match and the caller gets a Conflict with the fresh status. Conflicts are
scoped to one order id; there is no global lock.
"""

import logging

import pika
from sqlalchemy import select, update
from sqlalchemy.orm.attributes import set_committed_value

from .auth import Role, require_party
from .db import Order, utcnow
from .errors import Conflict, Forbidden, InvalidTransition, NotFound
from .models import OrderStatus

log = logging.getLogger(__name__)

TRANSITIONS = {
    (OrderStatus.PENDING, OrderStatus.PAID): frozenset({Role.SYSTEM}),
    (OrderStatus.PENDING, OrderStatus.CANCELLED): frozenset({Role.CUSTOMER, Role.SHOP}),
    (OrderStatus.PAID, OrderStatus.PRINTING): frozenset({Role.SHOP}),
    (OrderStatus.PRINTING, OrderStatus.COMPLETED): frozenset({Role.SHOP}),
}


def check_transition(current, target, principal):
    """
    Raises:
        InvalidTransition: If (current, target) is not in the table.
        Forbidden: If the principal's role may not trigger it.
    """
    current, target = OrderStatus(current), OrderStatus(target)
    actors = TRANSITIONS.get((current, target))
    if actors is None:
        raise InvalidTransition(current, target)
    if principal.role not in actors:
        raise Forbidden(
            f"Role '{principal.role.value}' may not move an order from "
            f"'{current.value}' to '{target.value}'"
        )


def compare_and_set_status(session, order_id, expected, target):
    """Single conditional UPDATE. Returns True if this call changed the row."""
    result = session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == OrderStatus(expected).value)
        .values(status=OrderStatus(target).value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def current_status(session, order_id):
    status = session.scalar(select(Order.status).where(Order.id == order_id))
    if status is None:
        raise NotFound(f"Order {order_id} not found", order_id=order_id)
    return OrderStatus(status)


def apply_transition(session, order, target, principal, expected=None):
    """
    Checks and writes one transition inside the caller's transaction.

    Does not commit, so callers can combine it with other writes that must
    succeed or fail together.

    Returns:
        OrderStatus: The status the order had before the change.

    Raises:
        Forbidden, InvalidTransition, Conflict
    """
    target = OrderStatus(target)
    require_party(principal, order)
    current = OrderStatus(order.status)
    check_transition(current, target, principal)
    if expected is not None and OrderStatus(expected) != current:
        raise Conflict(order.id, current, expected)

    if not compare_and_set_status(session, order.id, current, target):
        fresh = current_status(session, order.id)
        log.warning(f"[Order: {order.id}] Lost race: now '{fresh.value}', wanted {current.value} -> {target.value}.")
        raise Conflict(order.id, fresh, current)

    set_committed_value(order, "status", target.value)
    return current


def publish_transition(events, order_id, previous, target, principal):
    # The transition is already committed; a broker outage must not undo it.
    if events is None:
        return
    try:
        events.publish_status_change(order_id, previous.value, target.value, principal.role.value)
    except pika.exceptions.AMQPError as e:
        log.critical(f"[Order: {order_id}] Status event {previous.value} -> {target.value} NOT published: {e}")


def transition(session, order_id, target, principal, expected=None, events=None):
    """
    Moves an order to `target` on behalf of `principal` and commits.

    Args:
        session: SQLAlchemy session.
        order_id (str): Order to change.
        target (OrderStatus): Requested status.
        principal (Principal): Acting party.
        expected (OrderStatus): Optional status the caller last saw.
        events: Optional event publisher notified after commit.

    Returns:
        OrderStatus: The new status.

    Raises:
        NotFound: Unknown order.
        Forbidden: Principal is not a party, or its role may not do this.
        InvalidTransition: Not in the transition table (includes terminal states).
        Conflict: The order changed underneath the caller.
    """
    target = OrderStatus(target)
    try:
        order = session.get(Order, order_id, populate_existing=True)
        if order is None:
            raise NotFound(f"Order {order_id} not found", order_id=order_id)
        previous = apply_transition(session, order, target, principal, expected=expected)
        session.commit()
    except Exception:
        session.rollback()
        raise

    log.info(f"[Order: {order_id}] {previous.value} -> {target.value} by {principal.role.value} {principal.user_id}.")
    publish_transition(events, order_id, previous, target, principal)
    return target
