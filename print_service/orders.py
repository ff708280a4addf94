"""
orders.py — Order Aggregate

An order is created in one transaction together with its fully validated and
fully priced file manifest. Partial or unpriced orders are never written:
validation and pricing run before the first INSERT.

After creation the order changes only through the state machine. The file
manifest is immutable; edits happen on an `OrderBuilder` beforehand.
"""

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .auth import require_customer, require_party, require_shop
from .db import Order, OrderFileRow
from .errors import NotFound, ValidationError
from .models import OrderFile, OrderStatus, OrderView
from .pricing import coerce_files, line_totals, load_rate_card

log = logging.getLogger(__name__)


def upload_prefix(customer_id):
    """Storage key prefix the storage worker uses for a customer's uploads."""
    return f"uploads/{customer_id}/"


class OrderBuilder:
    """
    In-progress file list of a customer's cart.

    Files stay editable here (add, update, remove). `build()` validates them
    into immutable `OrderFile` values ready for `create_order`.
    """

    def __init__(self, shop_id):
        self.shop_id = shop_id
        self._drafts = []

    def add_file(self, storage_key, file_name, pages=1, print_type="BW", paper_size="A4", copies=1, sides="single"):
        self._drafts.append({
            "storage_key": storage_key,
            "file_name": file_name,
            "pages": pages,
            "print_type": print_type,
            "paper_size": paper_size,
            "copies": copies,
            "sides": sides,
        })
        return len(self._drafts) - 1

    def update_file(self, index, **changes):
        draft = self._draft(index)
        unknown = set(changes) - set(draft)
        if unknown:
            raise ValidationError(f"Unknown file settings: {', '.join(sorted(unknown))}")
        draft.update(changes)

    def remove_file(self, index):
        self._draft(index)
        del self._drafts[index]

    def _draft(self, index):
        if not 0 <= index < len(self._drafts):
            raise ValidationError(f"No file at position {index}")
        return self._drafts[index]

    def __len__(self):
        return len(self._drafts)

    def build(self):
        return tuple(coerce_files(self._drafts))


def validate_manifest(customer_id, files):
    files = coerce_files(files)
    prefix = upload_prefix(customer_id)
    seen = set()
    for index, file in enumerate(files):
        if not file.storage_key.startswith(prefix):
            raise ValidationError(
                f"File #{index + 1} was not uploaded by this customer",
                file_index=index,
            )
        if file.storage_key in seen:
            raise ValidationError(f"File #{index + 1} repeats storage key {file.storage_key}", file_index=index)
        seen.add(file.storage_key)
    return files


def create_order(session, principal, shop_id, files):
    """
    Validates, prices and persists a new pending order.

    Args:
        session: SQLAlchemy session.
        principal (Principal): Must be a customer; becomes the order's owner.
        shop_id (str): Shop that will print the order.
        files (list): OrderFile values or dicts with the same fields.

    Returns:
        Order: The persisted order row.

    Raises:
        Forbidden: Principal is not a customer.
        EmptyOrder, ValidationError: Malformed manifest.
        IncompleteRateCard: Shop has no rate for some file configuration.
    """
    require_customer(principal)
    if not shop_id or not str(shop_id).strip():
        raise ValidationError("shop_id is required")

    files = validate_manifest(principal.user_id, files)
    try:
        card = load_rate_card(session, shop_id)
        totals = line_totals(files, card)
    finally:
        # Read-only so far; release the transaction before anything is written
        session.rollback()
    total_amount = sum(totals, Decimal("0.00"))

    order = Order(
        customer_id=principal.user_id,
        shop_id=shop_id,
        total_amount=total_amount,
        status=OrderStatus.PENDING.value,
    )
    for position, (file, amount) in enumerate(zip(files, totals)):
        order.files.append(OrderFileRow(
            position=position,
            storage_key=file.storage_key,
            file_name=file.file_name,
            pages=file.pages,
            print_type=file.print_type.value,
            paper_size=file.paper_size.value,
            copies=file.copies,
            sides=file.sides.value,
            line_total=amount,
        ))

    session.add(order)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        log.warning(f"[Shop: {shop_id}] Order rejected, storage key already attached to another order.")
        raise ValidationError("A file is already attached to another order")

    log.info(f"[Order: {order.id}] Created for customer {principal.user_id} at shop {shop_id}: "
             f"{len(files)} file(s), total {total_amount}.")
    return order


def get_order(session, principal, order_id):
    order = session.get(Order, order_id, populate_existing=True)
    if order is None:
        raise NotFound(f"Order {order_id} not found", order_id=order_id)
    require_party(principal, order)
    return order


def list_customer_orders(session, principal):
    require_customer(principal)
    stmt = select(Order).where(Order.customer_id == principal.user_id).order_by(Order.created_at.desc())
    return session.scalars(stmt).all()


def list_shop_orders(session, principal, status=None):
    require_shop(principal)
    stmt = select(Order).where(Order.shop_id == principal.shop_id)
    if status is not None:
        stmt = stmt.where(Order.status == OrderStatus(status).value)
    return session.scalars(stmt.order_by(Order.created_at.desc())).all()


def find_order_by_storage_key(session, storage_key):
    stmt = select(Order).join(OrderFileRow).where(OrderFileRow.storage_key == storage_key)
    return session.scalars(stmt).first()


def to_view(order):
    return OrderView(
        order_id=order.id,
        customer_id=order.customer_id,
        shop_id=order.shop_id,
        status=OrderStatus(order.status),
        total_amount=order.total_amount,
        created_at=order.created_at,
        files=[
            OrderFile(
                storage_key=row.storage_key,
                file_name=row.file_name,
                pages=row.pages,
                print_type=row.print_type,
                paper_size=row.paper_size,
                copies=row.copies,
                sides=row.sides,
            )
            for row in order.files
        ],
    )
