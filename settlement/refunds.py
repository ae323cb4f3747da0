"""Full and partial refunds of paid orders. Approval never restores stock."""

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select, update

from settlement import stripe_service
from settlement.database import atomic
from settlement.errors import NotFoundError, StateConflictError, ValidationError
from settlement.logging_config import get_logger
from settlement.models import Order, Payment, Refund, RefundItem, SellerPayout
from settlement.utils import generate_number, round_half_up, utcnow

log = get_logger(__name__)

OPEN_REFUND_STATUSES = ("pending", "approved", "completed")


@dataclass(frozen=True)
class RefundLine:
    order_item_index: int
    quantity: int


class RefundService:
    def __init__(self, db, gateway=stripe_service):
        self.db = db
        self.gateway = gateway

    def get_refund(self, refund_id: int) -> Refund:
        refund = self.db.get(Refund, refund_id)
        if refund is None:
            raise NotFoundError("Refund", refund_id)
        return refund

    def list_refunds(self, user_id: Optional[str] = None, status: Optional[str] = None,
                     page: int = 1, limit: int = 10):
        """Refunds for one buyer's orders, or all refunds when user_id is None."""
        query = select(Refund)
        if user_id is not None:
            query = query.join(Order, Refund.order_id == Order.id).where(Order.user_id == user_id)
        if status:
            query = query.where(Refund.status == status)
        total = self.db.execute(select(func.count()).select_from(query.subquery())).scalar_one()
        refunds = self.db.execute(
            query.order_by(Refund.created_at.desc(), Refund.id.desc()).offset((page - 1) * limit).limit(limit)
        ).scalars().all()
        return refunds, total

    def create_refund(self, order_id: int, reason: str, lines: Optional[List[RefundLine]] = None) -> Refund:
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required")

        with atomic(self.db):
            # Row lock serialises concurrent requests against the same order where the database supports it.
            order = self.db.execute(
                select(Order).where(Order.id == order_id).with_for_update()
            ).scalar_one_or_none()
            if order is None:
                raise NotFoundError("Order", order_id)
            if order.payment_status != "paid":
                raise StateConflictError("Only paid orders can be refunded", order.payment_status)
            payment = order.payment
            if payment is None:
                raise NotFoundError("Payment", f"order {order.order_number}")

            open_refunds = [r for r in self._refunds_of(order.id) if r.status in OPEN_REFUND_STATUSES]
            if lines:
                if any(r.type == "full" for r in open_refunds):
                    raise StateConflictError("A full refund is already in progress for this order")
                items = self._price_lines(order, lines, open_refunds)
                amount = sum(item.amount for item in items)
                refund_type = "partial"
            else:
                if open_refunds:
                    raise StateConflictError("Order already has a refund in progress")
                items = []
                amount = order.total_amount
                refund_type = "full"

            refund = Refund(
                refund_number=generate_number("REF"),
                order_id=order.id,
                payment_id=payment.id,
                amount=amount,
                reason=reason,
                type=refund_type,
                status="pending",
                items=items,
            )
            self.db.add(refund)

        log.info(f"[Refund: {refund.refund_number}] Requested {refund_type} refund of {amount} "
                 f"for order {order.order_number}.")
        return refund

    def _refunds_of(self, order_id):
        return self.db.execute(
            select(Refund)
            .where(Refund.order_id == order_id)
            .execution_options(populate_existing=True)
        ).scalars().all()

    def _price_lines(self, order, lines, open_refunds):
        refunded_qty = defaultdict(int)
        refunded_amount = defaultdict(int)
        for existing in open_refunds:
            for item in existing.items:
                refunded_qty[item.order_item_id] += item.quantity
                refunded_amount[item.order_item_id] += item.amount

        requested = defaultdict(int)
        for line in lines:
            if line.quantity < 1:
                raise ValidationError("Refund quantity must be at least 1")
            if not 0 <= line.order_item_index < len(order.items):
                raise ValidationError(f"Order has no item at index {line.order_item_index}")
            requested[line.order_item_index] += line.quantity

        items = []
        for index, quantity in requested.items():
            order_item = order.items[index]
            already = refunded_qty[order_item.id]
            remaining = order_item.quantity - already
            if quantity > remaining:
                raise ValidationError(
                    f"Cannot refund {quantity} of {order_item.product_name}: only {remaining} remaining"
                )
            # Priced cumulatively so rounding never lets the line's refunds exceed its total.
            cumulative = round_half_up(
                Decimal(order_item.total_price) * (already + quantity) / order_item.quantity
            )
            items.append(RefundItem(
                order_item_id=order_item.id,
                order_item_index=index,
                quantity=quantity,
                amount=cumulative - refunded_amount[order_item.id],
            ))
        return items

    def _compare_and_set(self, refund, expected, **values):
        """Move the refund only if its stored status is still `expected`."""
        result = self.db.execute(
            update(Refund)
            .where(Refund.id == refund.id, Refund.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def approve_refund(self, refund_id: int, actor_id: Optional[str] = None) -> Refund:
        refund = self.get_refund(refund_id)
        log_prefix = f"[Refund: {refund.refund_number}]"

        if refund.status != "pending":
            log.warning(f"{log_prefix} Approve rejected in status {refund.status}.")
            raise StateConflictError("Refund has already been processed", refund.status)

        # Claim first: a concurrent approval loses here and never reaches the gateway.
        with atomic(self.db):
            if not self._compare_and_set(refund, "pending", status="approved",
                                         processed_at=utcnow(), processed_by=actor_id):
                self.db.refresh(refund)
                log.warning(f"{log_prefix} Approve rejected in status {refund.status}.")
                raise StateConflictError("Refund has already been processed", refund.status)
        log.info(f"{log_prefix} Approved by {actor_id}.")

        provider_refund_id = None
        try:
            self._check_settleable(refund)
            payment = refund.payment
            if payment.provider_reference:
                result = self.gateway.refund_payment(payment.provider_reference, refund.amount, refund.refund_number)
                provider_refund_id = getattr(result, "id", None)
        except Exception:
            self._release(refund)
            raise

        with atomic(self.db):
            now = utcnow()
            self._compare_and_set(refund, "approved", status="completed", provider_refund_id=provider_refund_id)
            self.db.execute(
                update(Payment)
                .where(Payment.id == refund.payment_id)
                .values(
                    status="refunded",
                    refunded_at=now,
                    refund_amount=func.coalesce(Payment.refund_amount, 0) + refund.amount,
                    refund_reason=refund.reason,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.execute(
                update(Order)
                .where(Order.id == refund.order_id)
                .values(payment_status="refunded", status="refunded")
                .execution_options(synchronize_session=False)
            )

        self.db.refresh(refund)
        log.info(f"{log_prefix} Completed: {refund.amount} returned; order {refund.order.order_number} refunded.")
        return refund

    def _check_settleable(self, refund):
        """Re-validate a claimed refund against committed state before money moves."""
        payment = refund.payment
        order = refund.order
        self.db.refresh(payment)
        if payment.status not in ("completed", "refunded"):
            raise StateConflictError("Payment is not in a refundable state", payment.status)
        if (payment.refund_amount or 0) + refund.amount > payment.amount:
            raise StateConflictError("Refund exceeds the amount still held for this payment")

        settled = [r for r in self._refunds_of(order.id)
                   if r.id != refund.id and r.status in ("approved", "completed")]
        if refund.type == "full" and settled:
            raise StateConflictError("Order already has refunds in progress or completed")
        if any(r.type == "full" for r in settled):
            raise StateConflictError("A full refund already covers this order")
        refunded_qty = defaultdict(int)
        for other in settled:
            for item in other.items:
                refunded_qty[item.order_item_id] += item.quantity
        for item in refund.items:
            ordered = order.items[item.order_item_index].quantity
            if refunded_qty[item.order_item_id] + item.quantity > ordered:
                raise StateConflictError(
                    f"Refund of {item.quantity} for line {item.order_item_index} exceeds the "
                    f"{ordered - refunded_qty[item.order_item_id]} still refundable"
                )

        held = self._held_by_payout(order)
        if held is not None:
            log.warning(f"[Refund: {refund.refund_number}] Order items are held by payout {held.payout_number}.")
            raise StateConflictError(
                f"Order items are included in payout {held.payout_number}; cancel it first", held.status
            )

    def _release(self, refund):
        with atomic(self.db):
            self._compare_and_set(refund, "approved", status="pending", processed_at=None, processed_by=None)
        self.db.refresh(refund)

    def _held_by_payout(self, order):
        payout_ids = {item.payout_id for item in order.items if item.payout_id is not None}
        for payout_id in payout_ids:
            payout = self.db.get(SellerPayout, payout_id)
            if payout is not None and payout.status != "cancelled":
                return payout
        return None

    def reject_refund(self, refund_id: int, reason: str, actor_id: Optional[str] = None) -> Refund:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        refund = self.get_refund(refund_id)
        log_prefix = f"[Refund: {refund.refund_number}]"

        with atomic(self.db):
            if not self._compare_and_set(refund, "pending", status="rejected", rejection_reason=reason,
                                         processed_at=utcnow(), processed_by=actor_id):
                self.db.refresh(refund)
                log.warning(f"{log_prefix} Reject refused in status {refund.status}.")
                raise StateConflictError("Refund has already been processed", refund.status)

        self.db.refresh(refund)
        log.info(f"{log_prefix} Rejected by {actor_id}: {reason}")
        return refund
