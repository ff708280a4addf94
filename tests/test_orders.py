from decimal import Decimal

import pydantic
import pytest

from conftest import SHOP_ID, count_orders, make_file
from print_service.errors import EmptyOrder, Forbidden, IncompleteRateCard, NotFound, ValidationError
from print_service.models import OrderStatus, Sides
from print_service.orders import (
    OrderBuilder, create_order, get_order, list_customer_orders, list_shop_orders, to_view,
)


def test_create_order_prices_and_persists(session, session_factory, customer, rate_card):
    files = [
        make_file(customer.user_id, "a.pdf", pages=10, copies=2),
        make_file(customer.user_id, "b.pdf", pages=3, print_type="COLOR"),
    ]
    order = create_order(session, customer, SHOP_ID, files)

    assert order.total_amount == Decimal("70.00")
    assert order.status == OrderStatus.PENDING.value

    with session_factory() as s:
        view = to_view(get_order(s, customer, order.id))
    assert view.customer_id == customer.user_id
    assert view.shop_id == SHOP_ID
    assert view.total_amount == Decimal("70.00")
    assert [f.file_name for f in view.files] == ["a.pdf", "b.pdf"]
    assert view.files[0].copies == 2


def test_incomplete_rate_card_persists_nothing(session, session_factory, customer, rate_card):
    files = [make_file(customer.user_id, "a.pdf"), make_file(customer.user_id, "b.pdf", print_type="COLOR", paper_size="A3")]
    with pytest.raises(IncompleteRateCard):
        create_order(session, customer, SHOP_ID, files)
    assert count_orders(session_factory) == 0


def test_empty_order_rejected(session, session_factory, customer, rate_card):
    with pytest.raises(EmptyOrder):
        create_order(session, customer, SHOP_ID, [])
    assert count_orders(session_factory) == 0


def test_only_customers_create_orders(session, shop, rate_card):
    with pytest.raises(Forbidden):
        create_order(session, shop, SHOP_ID, [make_file("owner-1")])


def test_foreign_storage_key_rejected(session, customer, rate_card):
    with pytest.raises(ValidationError):
        create_order(session, customer, SHOP_ID, [make_file("someone-else")])


def test_duplicate_storage_key_in_manifest_rejected(session, customer, rate_card):
    file = make_file(customer.user_id)
    with pytest.raises(ValidationError):
        create_order(session, customer, SHOP_ID, [file, file])


def test_storage_key_belongs_to_one_order(session, session_factory, customer, rate_card):
    file = make_file(customer.user_id)
    create_order(session, customer, SHOP_ID, [file])
    with pytest.raises(ValidationError):
        create_order(session, customer, SHOP_ID, [file])
    assert count_orders(session_factory) == 1


def test_get_order_is_limited_to_parties(session, pending_order, customer, other_customer, shop, other_shop):
    assert get_order(session, customer, pending_order.id).id == pending_order.id
    assert get_order(session, shop, pending_order.id).id == pending_order.id
    for stranger in (other_customer, other_shop):
        with pytest.raises(Forbidden):
            get_order(session, stranger, pending_order.id)
    with pytest.raises(NotFound):
        get_order(session, customer, "missing")


def test_listings(session, pending_order, customer, other_customer, shop, other_shop):
    assert [o.id for o in list_customer_orders(session, customer)] == [pending_order.id]
    assert list_customer_orders(session, other_customer) == []
    assert [o.id for o in list_shop_orders(session, shop)] == [pending_order.id]
    assert list_shop_orders(session, shop, status=OrderStatus.PAID) == []
    assert list_shop_orders(session, other_shop) == []
    with pytest.raises(Forbidden):
        list_shop_orders(session, customer)


class TestOrderBuilder:

    def test_edit_before_build(self):
        builder = OrderBuilder(SHOP_ID)
        first = builder.add_file("uploads/c/1", "one.pdf", pages=2)
        builder.add_file("uploads/c/2", "two.pdf")
        builder.update_file(first, copies=5, sides="double")
        builder.remove_file(1)

        files = builder.build()
        assert len(files) == 1
        assert files[0].copies == 5
        assert files[0].sides is Sides.DOUBLE

    def test_built_files_are_immutable(self):
        builder = OrderBuilder(SHOP_ID)
        builder.add_file("uploads/c/1", "one.pdf")
        files = builder.build()
        with pytest.raises(pydantic.ValidationError):
            files[0].copies = 3
        builder.update_file(0, copies=9)
        assert files[0].copies == 1

    def test_invalid_edits(self):
        builder = OrderBuilder(SHOP_ID)
        builder.add_file("uploads/c/1", "one.pdf")
        with pytest.raises(ValidationError):
            builder.update_file(0, colour="red")
        with pytest.raises(ValidationError):
            builder.remove_file(3)
        builder.update_file(0, pages=0)
        with pytest.raises(ValidationError):
            builder.build()
