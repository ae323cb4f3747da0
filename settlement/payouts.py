"""Seller payout batches.

    pending -> calculated -> approved -> paid
    pending | calculated | approved -> cancelled

A payout aggregates one seller's items from delivered orders placed inside
[period_start, period_end]. Each included OrderItem is stamped with the payout
id, and calculation only picks unstamped items, so an item sits in at most one
non-cancelled payout no matter how periods overlap. Cancelling releases the
stamps. One call looks at a bounded number of orders; a payout with work left
stays pending and the next call for the same seller and period continues it.
"""

from typing import Optional

from sqlalchemy import func, select, update

from settlement.config import get_settings
from settlement.database import atomic
from settlement.errors import NotFoundError, StateConflictError, ValidationError
from settlement.logging_config import get_logger
from settlement.models import Order, OrderItem, PayoutItem, Refund, RefundItem, Seller, SellerPayout
from settlement.utils import generate_number, utcnow

log = get_logger(__name__)

CANCELLABLE_STATUSES = ("pending", "calculated", "approved")


class PayoutService:
    def __init__(self, db, max_orders: Optional[int] = None):
        self.db = db
        self.max_orders = max_orders or get_settings().payout_max_orders

    def get_payout(self, payout_id: int) -> SellerPayout:
        payout = self.db.get(SellerPayout, payout_id)
        if payout is None:
            raise NotFoundError("Payout", payout_id)
        return payout

    def list_payouts(self, seller_id: Optional[int] = None, status: Optional[str] = None,
                     page: int = 1, limit: int = 20):
        query = select(SellerPayout)
        if seller_id is not None:
            query = query.where(SellerPayout.seller_id == seller_id)
        if status:
            query = query.where(SellerPayout.status == status)
        total = self.db.execute(select(func.count()).select_from(query.subquery())).scalar_one()
        payouts = self.db.execute(
            query.order_by(SellerPayout.created_at.desc(), SellerPayout.id.desc())
            .offset((page - 1) * limit).limit(limit)
        ).scalars().all()
        return payouts, total

    # --- calculation ---

    def calculate_payout(self, seller_id: int, period_start, period_end,
                         actor_id: Optional[str] = None) -> SellerPayout:
        if period_start > period_end:
            raise ValidationError("periodStart must not be after periodEnd")
        if self.db.get(Seller, seller_id) is None:
            raise NotFoundError("Seller", seller_id)

        with atomic(self.db):
            payout = self.db.execute(
                select(SellerPayout)
                .where(
                    SellerPayout.seller_id == seller_id,
                    SellerPayout.period_start == period_start,
                    SellerPayout.period_end == period_end,
                    SellerPayout.status != "cancelled",
                )
                .with_for_update()
            ).scalar_one_or_none()

            if payout is None:
                payout = SellerPayout(
                    payout_number=generate_number("POUT"),
                    seller_id=seller_id,
                    period_start=period_start,
                    period_end=period_end,
                    total_sales=0,
                    total_commission=0,
                    total_refunds=0,
                    payout_amount=0,
                    orders_processed=0,
                    status="pending",
                )
                self.db.add(payout)
                self.db.flush()
            elif payout.status == "calculated":
                self._reset(payout)
            elif payout.status != "pending":
                raise StateConflictError(
                    f"Payout {payout.payout_number} for this period can no longer be recalculated", payout.status
                )

            self._aggregate_batch(payout)
            if not payout.has_more:
                payout.status = "calculated"
                payout.calculated_at = utcnow()
                payout.calculated_by = actor_id

        log.info(
            f"[Payout: {payout.payout_number}] Seller {seller_id}: {payout.orders_processed} order(s), "
            f"sales {payout.total_sales}, payout {payout.payout_amount}, status {payout.status}."
        )
        return payout

    def _reset(self, payout):
        self._release_items(payout)
        payout.items.clear()
        self.db.flush()
        payout.total_sales = 0
        payout.total_commission = 0
        payout.total_refunds = 0
        payout.payout_amount = 0
        payout.orders_processed = 0
        payout.status = "pending"

    def _release_items(self, payout):
        self.db.execute(
            update(OrderItem)
            .where(OrderItem.payout_id == payout.id)
            .values(payout_id=None)
            .execution_options(synchronize_session="fetch")
        )

    def _aggregate_batch(self, payout):
        order_ids = self.db.execute(
            select(Order.id)
            .join(OrderItem, OrderItem.order_id == Order.id)
            .where(
                Order.status == "delivered",
                Order.created_at >= payout.period_start,
                Order.created_at <= payout.period_end,
                OrderItem.seller_id == payout.seller_id,
                OrderItem.payout_id.is_(None),
            )
            .group_by(Order.id, Order.created_at)
            .order_by(Order.created_at, Order.id)
            .limit(self.max_orders + 1)
        ).scalars().all()

        payout.has_more = len(order_ids) > self.max_orders
        batch = order_ids[:self.max_orders]
        if not batch:
            return

        items = self.db.execute(
            select(OrderItem)
            .where(
                OrderItem.order_id.in_(batch),
                OrderItem.seller_id == payout.seller_id,
                OrderItem.payout_id.is_(None),
            )
            .order_by(OrderItem.order_id, OrderItem.position)
            .with_for_update()
        ).scalars().all()

        for item in items:
            order = item.order
            refund_amount = self._completed_refunds(item.id)
            net_amount = item.seller_earnings - refund_amount
            payout.items.append(PayoutItem(
                order_item_id=item.id,
                order_id=order.id,
                order_number=order.order_number,
                order_date=order.created_at,
                sales_amount=item.total_price,
                commission_rate=item.commission_rate,
                commission_amount=item.commission_amount,
                refund_amount=refund_amount,
                net_amount=net_amount,
            ))
            item.payout_id = payout.id
            payout.total_sales += item.total_price
            payout.total_commission += item.commission_amount
            payout.total_refunds += refund_amount

        payout.orders_processed += len(batch)
        payout.payout_amount = payout.total_sales - payout.total_commission - payout.total_refunds

    def _completed_refunds(self, order_item_id):
        return self.db.execute(
            select(func.coalesce(func.sum(RefundItem.amount), 0))
            .join(Refund, RefundItem.refund_id == Refund.id)
            .where(RefundItem.order_item_id == order_item_id, Refund.status == "completed")
        ).scalar_one()

    # --- transitions ---

    def _compare_and_set(self, payout, expected, **values):
        """Move the payout only if its stored status is still one of `expected`."""
        result = self.db.execute(
            update(SellerPayout)
            .where(SellerPayout.id == payout.id, SellerPayout.status.in_(expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def approve_payout(self, payout_id: int, actor_id: Optional[str] = None) -> SellerPayout:
        payout = self.get_payout(payout_id)
        log_prefix = f"[Payout: {payout.payout_number}]"

        with atomic(self.db):
            if not self._compare_and_set(payout, ("calculated",), status="approved",
                                         approved_at=utcnow(), approved_by=actor_id):
                self.db.refresh(payout)
                log.warning(f"{log_prefix} Approve rejected in status {payout.status}.")
                raise StateConflictError("Only calculated payouts can be approved", payout.status)

        self.db.refresh(payout)
        log.info(f"{log_prefix} Approved by {actor_id}.")
        return payout

    def pay_payout(self, payout_id: int, payment_method: str, transaction_id: Optional[str] = None,
                   actor_id: Optional[str] = None) -> SellerPayout:
        if not payment_method:
            raise ValidationError("A payment method is required")
        payout = self.get_payout(payout_id)
        log_prefix = f"[Payout: {payout.payout_number}]"

        with atomic(self.db):
            if not self._compare_and_set(payout, ("approved",), status="paid", paid_at=utcnow(), paid_by=actor_id,
                                         payment_method=payment_method, transaction_id=transaction_id):
                self.db.refresh(payout)
                log.warning(f"{log_prefix} Pay rejected in status {payout.status}.")
                raise StateConflictError("Only approved payouts can be paid", payout.status)
            # Runs once: only the caller that won the status swap gets here.
            self.db.execute(
                update(Seller)
                .where(Seller.id == payout.seller_id)
                .values(total_earnings=func.coalesce(Seller.total_earnings, 0) + payout.payout_amount)
                .execution_options(synchronize_session=False)
            )

        self.db.refresh(payout)
        log.info(f"{log_prefix} Paid {payout.payout_amount} via {payment_method} ({transaction_id}).")
        return payout

    def cancel_payout(self, payout_id: int, reason: Optional[str] = None,
                      actor_id: Optional[str] = None) -> SellerPayout:
        payout = self.get_payout(payout_id)
        log_prefix = f"[Payout: {payout.payout_number}]"

        with atomic(self.db):
            if not self._compare_and_set(payout, CANCELLABLE_STATUSES, status="cancelled",
                                         cancelled_at=utcnow(), notes=reason):
                self.db.refresh(payout)
                log.warning(f"{log_prefix} Cancel rejected in status {payout.status}.")
                raise StateConflictError("Payout can no longer be cancelled", payout.status)
            self._release_items(payout)

        self.db.refresh(payout)
        log.info(f"{log_prefix} Cancelled by {actor_id}; items released.")
        return payout
