from decimal import Decimal

import pytest
from sqlalchemy import func, select

from settlement.catalog import SqlCatalog
from settlement.errors import InsufficientStockError, StateConflictError, ValidationError
from settlement.models import Cart, Order, ReconciliationEntry
from settlement.orders import LineRequest, OrderService

from conftest import (
    ADDRESS, BUYER, TestingSessionLocal, add_cart, add_category, add_product, add_seller, pay, place_order,
    status_of, stock_of,
)


def order_count(db):
    return db.execute(select(func.count(Order.id))).scalar_one()


def test_direct_order_snapshots_price_and_commission(db):
    seller = add_seller(db, commission_rate=Decimal("12"))
    product = add_product(db, price=12000, sale_price=10000, stock=5, seller=seller)

    outcome = OrderService(db).create_direct_order(BUYER.id, product.id, 3, ADDRESS)
    order = outcome.order

    assert order.status == "pending"
    assert order.payment_status == "pending"
    assert order.payment_id is None
    assert order.order_number.startswith("ORD-")
    item = order.items[0]
    assert item.unit_price == 10000
    assert item.total_price == 30000
    assert item.commission_rate == Decimal("12")
    assert item.commission_amount == 3600
    assert item.seller_earnings == 26400
    assert item.seller_id == seller.id
    assert item.ownership_type == "seller"
    assert order.subtotal == 30000
    assert order.shipping_fee == 3000
    assert order.total_amount == order.subtotal + order.shipping_fee - order.discount
    assert stock_of(db, product.id) == 2


def test_every_item_splits_exactly_into_commission_and_earnings(db):
    seller = add_seller(db, commission_rate=Decimal("12.5"))
    category = add_category(db, commission_rate=Decimal("7.25"))
    a = add_product(db, name="Linen Apron", price=3333, stock=10, seller=seller)
    b = add_product(db, name="Bamboo Tray", price=4999, stock=10, category=category)

    order = place_order(db, [(a, 3), (b, 7)])

    for item in order.items:
        assert item.commission_amount + item.seller_earnings == item.total_price


def test_commission_rate_falls_back_to_category_then_default(db):
    seller = add_seller(db)                              # no configured rate
    category = add_category(db, commission_rate=Decimal("15"))
    seller_item = add_product(db, name="Seller Vase", price=10000, seller=seller, category=category)
    platform_item = add_product(db, name="Platform Lamp", price=10000)

    order = place_order(db, [(seller_item, 1), (platform_item, 1)])

    assert order.items[0].commission_rate == Decimal("15")
    assert order.items[1].commission_rate == Decimal("10")
    assert order.items[1].seller_id is None
    assert order.items[1].ownership_type == "platform"


def test_shipping_fee_comes_from_first_line_only(db):
    first = add_product(db, name="First", shipping_fee=2500)
    second = add_product(db, name="Second", shipping_fee=9000)

    order = place_order(db, [(first, 1), (second, 1)])

    assert order.shipping_fee == 2500
    assert order.total_amount == 20000 + 2500


def test_free_shipping_first_line_means_no_fee(db):
    first = add_product(db, name="First", shipping_free=True)
    second = add_product(db, name="Second", shipping_fee=9000)

    order = place_order(db, [(first, 1), (second, 1)])

    assert order.shipping_fee == 0


def test_insufficient_stock_rejects_whole_order_without_any_decrement(db):
    plenty = add_product(db, name="Plenty", stock=100)
    scarce = add_product(db, name="Scarce", stock=3)

    with pytest.raises(InsufficientStockError) as exc:
        place_order(db, [(plenty, 2), (scarce, 5)])

    assert exc.value.requested == 5
    assert exc.value.available == 3
    assert stock_of(db, plenty.id) == 100
    assert stock_of(db, scarce.id) == 3
    assert order_count(db) == 0


def test_repeated_lines_of_one_product_are_checked_together(db):
    product = add_product(db, stock=3)

    with pytest.raises(InsufficientStockError):
        place_order(db, [(product, 2), (product, 2)])

    assert stock_of(db, product.id) == 3


def test_inactive_or_missing_product_aborts_order(db):
    ok = add_product(db, name="Ok", stock=5)
    hidden = add_product(db, name="Hidden", status="inactive")

    with pytest.raises(ValidationError):
        place_order(db, [(ok, 1), (hidden, 1)])
    with pytest.raises(ValidationError):
        OrderService(db).create_order(BUYER.id, [LineRequest(ok.id, 1), LineRequest(9999, 1)], ADDRESS)

    assert stock_of(db, ok.id) == 5
    assert order_count(db) == 0


def test_unlimited_stock_products_always_pass(db):
    product = add_product(db, stock=0, stock_management="unlimited")

    order = place_order(db, [(product, 50)])

    assert order.items[0].quantity == 50
    assert stock_of(db, product.id) == 0
    assert status_of(db, product.id) == "active"


def test_selling_last_unit_flips_product_out_of_stock(db):
    product = add_product(db, stock=2)

    outcome = OrderService(db).create_direct_order(BUYER.id, product.id, 2, ADDRESS)

    assert outcome.reconciliation == []
    assert stock_of(db, product.id) == 0
    assert status_of(db, product.id) == "out_of_stock"


def test_concurrent_loss_of_stock_rolls_back_earlier_lines(db):
    first = add_product(db, name="First", stock=10)
    contested = add_product(db, name="Contested", stock=1)

    class RacingCatalog(SqlCatalog):
        def decrement_stock(self, product_id, quantity):
            if product_id == contested.id:
                return None                      # another order took the last unit
            return super().decrement_stock(product_id, quantity)

    service = OrderService(db, catalog=RacingCatalog(db))
    with pytest.raises(InsufficientStockError):
        service.create_order(BUYER.id, [LineRequest(first.id, 4), LineRequest(contested.id, 1)], ADDRESS)

    assert stock_of(db, first.id) == 10
    assert order_count(db) == 0


def test_failed_status_flip_is_queued_for_reconciliation(db):
    product = add_product(db, stock=1)

    class FlakyCatalog(SqlCatalog):
        def set_product_status(self, product_id, status):
            raise RuntimeError("catalog unavailable")

    outcome = OrderService(db, catalog=FlakyCatalog(db)).create_direct_order(BUYER.id, product.id, 1, ADDRESS)

    assert order_count(db) == 1
    assert stock_of(db, product.id) == 0
    assert status_of(db, product.id) == "active"
    assert len(outcome.reconciliation) == 1
    entry = db.execute(select(ReconciliationEntry)).scalar_one()
    assert entry.order_number == outcome.order.order_number
    assert entry.action == "set_status:out_of_stock"
    assert "catalog unavailable" in entry.error
    assert entry.resolved is False


def test_cart_order_clears_cart(db):
    a = add_product(db, name="A", stock=5)
    b = add_product(db, name="B", stock=5)
    cart = add_cart(db, BUYER.id, [(a, 1), (b, 2)])

    outcome = OrderService(db).create_order_from_cart(BUYER.id, cart.id, ADDRESS, notes="leave at door")

    assert [i.quantity for i in outcome.order.items] == [1, 2]
    assert outcome.order.notes == "leave at door"
    db.expire_all()
    assert db.get(Cart, cart.id).items == []


def test_empty_or_foreign_cart_is_rejected(db):
    a = add_product(db, stock=5)
    empty = add_cart(db, BUYER.id, [])
    foreign = add_cart(db, "someone-else", [(a, 1)])

    with pytest.raises(ValidationError):
        OrderService(db).create_order_from_cart(BUYER.id, empty.id, ADDRESS)
    with pytest.raises(ValidationError):
        OrderService(db).create_order_from_cart(BUYER.id, foreign.id, ADDRESS)


def test_cancel_restores_stock_and_reactivates_products(db):
    a = add_product(db, name="A", stock=2)
    b = add_product(db, name="B", stock=10)
    c = add_product(db, name="C", stock=0, stock_management="unlimited")
    order = place_order(db, [(a, 2), (b, 3), (c, 4)])
    assert status_of(db, a.id) == "out_of_stock"

    outcome = OrderService(db).cancel_order(order.id, "changed my mind")

    assert outcome.order.status == "cancelled"
    assert outcome.order.cancelled_reason == "changed my mind"
    assert outcome.order.cancelled_at is not None
    assert stock_of(db, a.id) == 2
    assert stock_of(db, b.id) == 10
    assert stock_of(db, c.id) == 0
    assert status_of(db, a.id) == "active"


def test_cancel_paid_order_is_rejected(db, gateway):
    product = add_product(db, stock=5)
    order = place_order(db, [(product, 1)])
    pay(db, order, gateway)

    with pytest.raises(StateConflictError) as exc:
        OrderService(db).cancel_order(order.id, "too late")

    assert "refund" in str(exc.value).lower()
    assert stock_of(db, product.id) == 4


def test_cancel_twice_is_rejected(db):
    product = add_product(db, stock=5)
    order = place_order(db, [(product, 1)])
    service = OrderService(db)
    service.cancel_order(order.id)

    with pytest.raises(StateConflictError):
        service.cancel_order(order.id)
    assert stock_of(db, product.id) == 5


def test_fulfilment_moves_one_step_at_a_time(db, gateway):
    product = add_product(db, stock=5)
    order = place_order(db, [(product, 1)])
    service = OrderService(db)

    with pytest.raises(StateConflictError):
        service.advance_fulfilment(order.id, "processing")      # unpaid

    pay(db, order, gateway)
    with pytest.raises(StateConflictError):
        service.advance_fulfilment(order.id, "delivered")       # skips steps

    service.advance_fulfilment(order.id, "processing")
    service.advance_fulfilment(order.id, "shipped")
    delivered = service.advance_fulfilment(order.id, "delivered")
    assert delivered.status == "delivered"
    assert delivered.delivered_at is not None


def test_list_orders_filters_by_owner_and_status(db):
    product = add_product(db, stock=50)
    first = place_order(db, [(product, 1)])
    place_order(db, [(product, 1)])
    place_order(db, [(product, 1)], user_id="buyer-2")
    OrderService(db).cancel_order(first.id)

    orders, total = OrderService(db).list_orders(BUYER.id)
    assert total == 2
    cancelled, total_cancelled = OrderService(db).list_orders(BUYER.id, status="cancelled")
    assert total_cancelled == 1
    assert cancelled[0].id == first.id


def test_concurrent_cancels_restore_stock_once(db):
    product = add_product(db, stock=5)
    order = place_order(db, [(product, 2)])
    other = TestingSessionLocal()
    try:
        racing = OrderService(other)
        racing.get_order(order.id)                      # read before the first cancel commits

        OrderService(db).cancel_order(order.id, "changed my mind")
        with pytest.raises(StateConflictError) as exc:
            racing.cancel_order(order.id, "me too")
    finally:
        other.close()

    assert exc.value.current_status == "cancelled"
    assert stock_of(db, product.id) == 5
    db.expire_all()
    assert db.get(Order, order.id).cancelled_reason == "changed my mind"
