"""Tests for order assembly and the order state machine."""

import re

import pytest

from storefront.aggregate import OrderAggregate
from storefront.assembler import assemble_order, compute_totals, generate_order_number
from storefront.config import Settings
from storefront.errors import ForbiddenError, InvalidOrderStatusError, OrderNotCancellableError
from storefront.models import Address, Order, OrderItem, OrderStatus


def item(product_id, price, quantity):
    return OrderItem(
        product_id=product_id,
        name=product_id,
        price=price,
        quantity=quantity,
        total=price * quantity,
    )


def make_order(status=OrderStatus.PENDING, restocked=False):
    items = [item("pA", 10.0, 2)]
    return Order(
        id="o1",
        order_number="ORD-1-ABCDEF",
        user_id="u1",
        items=items,
        subtotal=20.0,
        shipping=10.0,
        tax=2.0,
        total=32.0,
        status=status,
        payment_method="Credit Card",
        shipping_address=Address(id="a1", user_id="u1"),
        restocked=restocked,
    )


class TestAssembler:
    def test_compute_totals(self):
        subtotal, shipping, tax, total = compute_totals(
            [item("pA", 10.0, 2), item("pB", 5.0, 1)], 10.0, 0.1
        )
        assert (subtotal, shipping, tax, total) == (25.0, 10.0, 2.5, 37.5)

    def test_tax_is_rounded_to_cents(self):
        _, _, tax, _ = compute_totals([item("pA", 0.33, 1)], 0.0, 0.1)
        assert tax == 0.03

    @pytest.mark.parametrize("price, expected", [(1.05, 0.11), (0.25, 0.03), (10.45, 1.05)])
    def test_tax_half_cent_rounds_up(self, price, expected):
        _, _, tax, _ = compute_totals([item("pA", price, 1)], 0.0, 0.1)
        assert tax == expected

    def test_order_number_format(self):
        assert re.fullmatch(r"ORD-\d+-[A-Z0-9]{6}", generate_order_number())

    def test_assemble_defaults(self):
        settings = Settings(store_backend="memory", shipping_flat_rate=4.0, tax_rate=0.2)
        address = Address(id="a1", user_id="u1", city="Springfield")
        order = assemble_order(settings, "u1", [item("pA", 10.0, 1)], address)

        assert order.status == OrderStatus.PENDING
        assert order.payment_method == "Credit Card"
        assert order.shipping == 4.0
        assert order.tax == 2.0
        assert order.total == 16.0
        assert order.billing_address is None
        assert order.restocked is False

    def test_assemble_generates_unique_ids(self):
        settings = Settings(store_backend="memory")
        address = Address(id="a1", user_id="u1")
        first = assemble_order(settings, "u1", [item("pA", 1.0, 1)], address)
        second = assemble_order(settings, "u1", [item("pA", 1.0, 1)], address)
        assert first.id != second.id


class TestOrderAggregate:
    @pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.PROCESSING])
    def test_cancel_allowed(self, status):
        order = make_order(status)
        OrderAggregate(order).cancel()
        assert order.status == OrderStatus.CANCELLED
        assert order.restocked is True

    @pytest.mark.parametrize(
        "status",
        [OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED],
    )
    def test_cancel_rejected(self, status):
        order = make_order(status)
        with pytest.raises(OrderNotCancellableError) as exc_info:
            OrderAggregate(order).cancel()
        assert exc_info.value.status == status.value
        assert order.status == status

    def test_restocked_order_cannot_be_cancelled_again(self):
        agg = OrderAggregate(make_order(OrderStatus.PENDING, restocked=True))
        assert agg.can_cancel is False

    def test_ensure_owner(self):
        agg = OrderAggregate(make_order())
        agg.ensure_owner("u1")
        with pytest.raises(ForbiddenError):
            agg.ensure_owner("u2")

    def test_advance(self):
        order = make_order()
        agg = OrderAggregate(order)
        agg.advance(OrderStatus.PROCESSING)
        agg.advance(OrderStatus.SHIPPED)
        agg.advance(OrderStatus.DELIVERED)
        assert order.status == OrderStatus.DELIVERED
        assert agg.is_terminal

    @pytest.mark.parametrize("status", [OrderStatus.DELIVERED, OrderStatus.REFUNDED])
    def test_terminal_states_are_final(self, status):
        with pytest.raises(InvalidOrderStatusError):
            OrderAggregate(make_order(status)).advance(OrderStatus.PROCESSING)

    def test_advance_to_cancelled_is_rejected(self):
        with pytest.raises(InvalidOrderStatusError):
            OrderAggregate(make_order()).advance(OrderStatus.CANCELLED)
