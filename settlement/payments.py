"""Payment state machine.

    pending -> completed -> refunded
    pending -> failed      (reopened to pending by a new checkout attempt)
    pending -> cancelled   (when the order is cancelled before payment)

Only the gateway callbacks below may complete a payment, and completing it is the
only way an order becomes paid. Refund transitions live in settlement.refunds.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select

from settlement import stripe_service
from settlement.config import get_settings
from settlement.database import atomic
from settlement.errors import NotFoundError, StateConflictError, ValidationError
from settlement.logging_config import get_logger
from settlement.models import Order, PAYMENT_METHODS, Payment
from settlement.utils import generate_number, utcnow

log = get_logger(__name__)


@dataclass
class Checkout:
    payment: Payment
    client_secret: Optional[str]


class PaymentService:
    def __init__(self, db, gateway=stripe_service, currency: Optional[str] = None):
        self.db = db
        self.gateway = gateway
        self.currency = currency or get_settings().currency

    def get_payment(self, payment_id: int) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    def find_by_provider_reference(self, reference: str) -> Optional[Payment]:
        return self.db.execute(
            select(Payment).where(Payment.provider_reference == reference)
        ).scalar_one_or_none()

    def create_payment(self, order_id: int, method: str, provider_info: Optional[dict] = None) -> Checkout:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if method not in PAYMENT_METHODS:
            raise ValidationError(f"Unsupported payment method: {method}")
        if order.payment_status == "paid":
            raise StateConflictError("Order is already paid", order.payment_status)
        if order.status != "pending":
            raise StateConflictError("Only pending orders can be paid", order.status)

        payment = order.payment
        if payment is not None and payment.status == "pending":
            return Checkout(payment=payment, client_secret=None)
        if payment is not None and payment.status != "failed":
            raise StateConflictError("Payment cannot be restarted", payment.status)

        payment_number = payment.payment_number if payment else generate_number("PAY")
        attempt = payment.attempts + 1 if payment else 1
        log_prefix = f"[Order: {order.order_number}]"

        # Provider call happens before any local mutation.
        intent = self.gateway.create_payment(
            order.total_amount,
            self.currency,
            f"{payment_number}-{attempt}",
            metadata={"order_number": order.order_number, "payment_number": payment_number},
        )

        with atomic(self.db):
            if payment is None:
                payment = Payment(
                    order_id=order.id,
                    payment_number=payment_number,
                    amount=order.total_amount,
                    currency=self.currency,
                    method=method,
                    status="pending",
                    attempts=attempt,
                    provider_response=provider_info,
                )
                self.db.add(payment)
            else:
                payment.status = "pending"
                payment.method = method
                payment.attempts = attempt
                payment.provider_response = provider_info or payment.provider_response
            payment.provider_reference = intent.id
            if order.payment_status == "failed":
                order.payment_status = "pending"

        log.info(f"{log_prefix} Payment {payment_number} opened (attempt {attempt}, intent {intent.id}).")
        return Checkout(payment=payment, client_secret=getattr(intent, "client_secret", None))

    def approve_payment(self, payment_id: int, transaction_id: Optional[str] = None,
                        provider_response: Optional[dict] = None) -> Payment:
        payment = self.get_payment(payment_id)
        order = payment.order
        log_prefix = f"[Order: {order.order_number}]"

        if payment.status != "pending":
            log.warning(f"{log_prefix} Approve rejected for payment {payment.payment_number} in {payment.status}.")
            raise StateConflictError("Only pending payments can be approved", payment.status)
        if order.status != "pending":
            raise StateConflictError("Order is no longer awaiting payment", order.status)

        with atomic(self.db):
            payment.status = "completed"
            payment.paid_at = utcnow()
            payment.provider_transaction_id = transaction_id
            payment.provider_response = provider_response or payment.provider_response
            order.payment_status = "paid"
            order.status = "confirmed"

        log.info(f"{log_prefix} Payment {payment.payment_number} completed; order confirmed.")
        return payment

    def fail_payment(self, payment_id: int, provider_response: Optional[dict] = None) -> Payment:
        payment = self.get_payment(payment_id)
        order = payment.order
        log_prefix = f"[Order: {order.order_number}]"

        if payment.status != "pending":
            log.warning(f"{log_prefix} Fail rejected for payment {payment.payment_number} in {payment.status}.")
            raise StateConflictError("Only pending payments can fail", payment.status)

        with atomic(self.db):
            payment.status = "failed"
            payment.provider_response = provider_response or payment.provider_response
            # The order stays pending so the buyer can retry.
            order.payment_status = "failed"

        log.info(f"{log_prefix} Payment {payment.payment_number} failed; order left pending for retry.")
        return payment
