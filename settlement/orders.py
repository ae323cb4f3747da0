"""Order creation from carts or direct purchases, cancellation and fulfilment."""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import func, select, update

from settlement.catalog import SqlCartStore, SqlCatalog
from settlement.commission import CommissionCalculator
from settlement.config import get_settings
from settlement.database import atomic
from settlement.errors import InsufficientStockError, NotFoundError, StateConflictError, ValidationError
from settlement.logging_config import get_logger
from settlement.models import Order, OrderItem, Payment, ReconciliationEntry
from settlement.reconciliation import record_failure
from settlement.utils import generate_number, utcnow

log = get_logger(__name__)

CANCELLABLE_STATUSES = ("pending", "confirmed")

# fulfilment step -> the status it must come from
FULFILMENT_PREDECESSOR = {
    "processing": "confirmed",
    "shipped": "processing",
    "delivered": "shipped",
}


@dataclass(frozen=True)
class LineRequest:
    product_id: int
    quantity: int
    selected_options: dict = field(default_factory=dict)


@dataclass
class OrderOutcome:
    """The committed order plus any catalog side effects that still need an operator."""

    order: Order
    reconciliation: List[ReconciliationEntry] = field(default_factory=list)


class OrderService:
    def __init__(self, db, catalog=None, calculator=None, cart_store=None):
        self.db = db
        self.catalog = catalog or SqlCatalog(db)
        self.calculator = calculator or CommissionCalculator(get_settings().default_commission_rate)
        self.cart_store = cart_store or SqlCartStore(db)

    # --- creation ---

    def create_order_from_cart(self, user_id: str, cart_id: int, shipping_address: dict,
                               notes: Optional[str] = None) -> OrderOutcome:
        cart = self.cart_store.get_cart(user_id, cart_id)
        if cart is None or not cart.items:
            raise ValidationError("Cart is empty")
        lines = [
            LineRequest(product_id=item.product_id, quantity=item.quantity,
                        selected_options=item.selected_options or {})
            for item in cart.items
        ]
        return self.create_order(user_id, lines, shipping_address, notes=notes, cart=cart)

    def create_direct_order(self, user_id: str, product_id: int, quantity: int, shipping_address: dict,
                            selected_options: Optional[dict] = None, notes: Optional[str] = None) -> OrderOutcome:
        line = LineRequest(product_id=product_id, quantity=quantity, selected_options=selected_options or {})
        return self.create_order(user_id, [line], shipping_address, notes=notes)

    def create_order(self, user_id: str, lines: List[LineRequest], shipping_address: dict,
                     notes: Optional[str] = None, cart=None) -> OrderOutcome:
        if not lines:
            raise ValidationError("An order needs at least one item")

        snapshots = self._validate_lines(lines)
        order_number = generate_number("ORD")
        log_prefix = f"[Order: {order_number}]"

        items = []
        subtotal = 0
        shipping_fee = 0
        for position, (line, snapshot) in enumerate(zip(lines, snapshots)):
            unit_price = snapshot.unit_price
            total_price = unit_price * line.quantity
            subtotal += total_price

            # Single shipment: only the first line may carry a fee.
            if position == 0 and not snapshot.shipping_free:
                shipping_fee = snapshot.shipping_fee

            seller_rate = None
            if snapshot.seller_id is not None:
                seller_rate = self.catalog.get_seller_commission_rate(snapshot.seller_id)
            rate = self.calculator.resolve_rate(seller_rate, snapshot.commission_rate_override)
            split = self.calculator.split(total_price, rate)

            items.append(OrderItem(
                position=position,
                product_id=snapshot.product_id,
                product_name=snapshot.name,
                quantity=line.quantity,
                selected_options=line.selected_options,
                unit_price=unit_price,
                total_price=total_price,
                seller_id=snapshot.seller_id,
                ownership_type=snapshot.ownership_type,
                commission_rate=split.rate,
                commission_amount=split.commission,
                seller_earnings=split.seller_earnings,
            ))

        discount = 0
        order = Order(
            order_number=order_number,
            user_id=user_id,
            items=items,
            subtotal=subtotal,
            shipping_fee=shipping_fee,
            discount=discount,
            total_amount=subtotal + shipping_fee - discount,
            shipping_address=shipping_address or {},
            notes=notes,
            status="pending",
            payment_status="pending",
        )

        depleted = []
        with atomic(self.db):
            self.db.add(order)
            self.db.flush()
            for line, snapshot in zip(lines, snapshots):
                if not snapshot.tracks_stock:
                    continue
                remaining = self.catalog.decrement_stock(snapshot.product_id, line.quantity)
                if remaining is None:
                    # Lost a race for the last units; the rollback undoes earlier lines.
                    log.warning(f"{log_prefix} Stock for product {snapshot.product_id} taken concurrently.")
                    raise InsufficientStockError(snapshot.product_id, snapshot.name, line.quantity)
                if remaining <= 0:
                    depleted.append(snapshot.product_id)
            if cart is not None:
                self.cart_store.clear(cart)

        log.info(f"{log_prefix} Created for user {user_id}: {len(items)} item(s), total {order.total_amount}.")
        reconciliation = self._set_statuses(order, depleted, "out_of_stock")
        return OrderOutcome(order=order, reconciliation=reconciliation)

    def _validate_lines(self, lines):
        snapshots = []
        requested = defaultdict(int)
        for line in lines:
            if line.quantity < 1:
                raise ValidationError(f"Quantity must be at least 1 for product {line.product_id}")
            snapshot = self.catalog.get_product_snapshot(line.product_id)
            if snapshot is None or snapshot.status != "active":
                raise ValidationError(f"Product {line.product_id} is not available")
            requested[snapshot.product_id] += line.quantity
            if snapshot.tracks_stock and snapshot.stock < requested[snapshot.product_id]:
                raise InsufficientStockError(
                    snapshot.product_id, snapshot.name, requested[snapshot.product_id], snapshot.stock
                )
            snapshots.append(snapshot)
        return snapshots

    def _set_statuses(self, order, product_ids, status):
        entries = []
        for product_id in product_ids:
            try:
                with atomic(self.db):
                    self.catalog.set_product_status(product_id, status)
            except Exception as e:
                entries.append(
                    record_failure(self.db, order.order_number, product_id, f"set_status:{status}", str(e))
                )
        return entries

    # --- reads ---

    def get_order(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def list_orders(self, user_id: str, status: Optional[str] = None, page: int = 1, limit: int = 10):
        query = select(Order).where(Order.user_id == user_id)
        if status:
            query = query.where(Order.status == status)
        total = self.db.execute(select(func.count()).select_from(query.subquery())).scalar_one()
        orders = self.db.execute(
            query.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit)
        ).scalars().all()
        return orders, total

    # --- transitions ---

    def cancel_order(self, order_id: int, reason: Optional[str] = None) -> OrderOutcome:
        order = self.get_order(order_id)
        log_prefix = f"[Order: {order.order_number}]"

        if order.status not in CANCELLABLE_STATUSES:
            log.warning(f"{log_prefix} Cancel rejected in status {order.status}.")
            raise StateConflictError("Order cannot be cancelled", order.status)
        if order.payment_status == "paid":
            log.warning(f"{log_prefix} Cancel rejected: order is paid.")
            raise StateConflictError("Paid orders must be refunded instead of cancelled", order.payment_status)

        revived = []
        with atomic(self.db):
            # Only the caller that wins this swap restores stock.
            result = self.db.execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.status.in_(CANCELLABLE_STATUSES),
                    Order.payment_status != "paid",
                )
                .values(status="cancelled", cancelled_at=utcnow(), cancelled_reason=reason)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.refresh(order)
                log.warning(f"{log_prefix} Cancel lost to a concurrent change; now {order.status}.")
                raise StateConflictError("Order cannot be cancelled", order.status)

            self.db.execute(
                update(Payment)
                .where(Payment.order_id == order.id, Payment.status == "pending")
                .values(status="cancelled")
                .execution_options(synchronize_session=False)
            )

            for item in order.items:
                snapshot = self.catalog.get_product_snapshot(item.product_id)
                if snapshot is None or not snapshot.tracks_stock:
                    continue
                restored = self.catalog.restore_stock(item.product_id, item.quantity)
                if snapshot.status == "out_of_stock" and restored and restored > 0:
                    revived.append(item.product_id)

        self.db.refresh(order)
        log.info(f"{log_prefix} Cancelled ({reason or 'no reason given'}); stock restored.")
        reconciliation = self._set_statuses(order, revived, "active")
        return OrderOutcome(order=order, reconciliation=reconciliation)

    def advance_fulfilment(self, order_id: int, target_status: str) -> Order:
        order = self.get_order(order_id)
        log_prefix = f"[Order: {order.order_number}]"

        predecessor = FULFILMENT_PREDECESSOR.get(target_status)
        if predecessor is None:
            raise ValidationError(f"Unknown fulfilment status: {target_status}")
        if order.payment_status != "paid":
            raise StateConflictError("Only paid orders can be fulfilled", order.payment_status)
        if order.status != predecessor:
            log.warning(f"{log_prefix} Cannot move to {target_status} from {order.status}.")
            raise StateConflictError(f"Order cannot move to {target_status}", order.status)

        with atomic(self.db):
            order.status = target_status
            if target_status == "delivered":
                order.delivered_at = utcnow()

        log.info(f"{log_prefix} Status {predecessor} -> {target_status}.")
        return order
