from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text,
)
from sqlalchemy.orm import relationship

from settlement.database import Base
from settlement.utils import utcnow

ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded")
ORDER_PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
PAYMENT_METHODS = ("card", "bank_transfer", "paypal", "kakao_pay", "naver_pay")
PAYMENT_STATUSES = ("pending", "completed", "failed", "cancelled", "refunded")
REFUND_STATUSES = ("pending", "approved", "completed", "rejected")
PAYOUT_STATUSES = ("pending", "calculated", "approved", "paid", "cancelled")


# --- Catalog side (owned by the catalog collaborator, read through settlement.catalog) ---

class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    commission_rate = Column(Numeric(5, 2), nullable=True)     # category-level override


class Seller(Base):
    __tablename__ = "sellers"

    id = Column(Integer, primary_key=True)
    user_id = Column(String, unique=True, index=True, nullable=False)
    business_name = Column(String, nullable=False)
    status = Column(String, default="approved")                # pending | approved | suspended | rejected
    commission_rate = Column(Numeric(5, 2), nullable=True)
    total_sales = Column(Integer, default=0)
    total_earnings = Column(Integer, default=0)


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)
    ownership_type = Column(String, nullable=False, default="seller")   # seller | platform
    seller_id = Column(Integer, ForeignKey("sellers.id"), nullable=True)
    base_price = Column(Integer, nullable=False)
    sale_price = Column(Integer, nullable=True)
    stock_management = Column(String, default="track")         # track | unlimited
    total_stock = Column(Integer, default=0)
    status = Column(String, default="active")                  # draft | active | inactive | out_of_stock
    shipping_free = Column(Boolean, default=False)
    shipping_fee = Column(Integer, default=0)

    category = relationship("Category")


class Cart(Base):
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True)
    user_id = Column(String, index=True, nullable=False)

    items = relationship("CartItem", cascade="all, delete-orphan", order_by="CartItem.id")


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True)
    cart_id = Column(Integer, ForeignKey("carts.id"), nullable=False)
    product_id = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    selected_options = Column(JSON, default=dict)


# --- Settlement side ---

class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    order_number = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    subtotal = Column(Integer, nullable=False)
    shipping_fee = Column(Integer, default=0)
    discount = Column(Integer, default=0)
    total_amount = Column(Integer, nullable=False)
    shipping_address = Column(JSON, default=dict)
    notes = Column(Text, nullable=True)
    status = Column(String, default="pending", index=True)
    payment_status = Column(String, default="pending", index=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_reason = Column(String, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    items = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.position"
    )
    payment = relationship("Payment", back_populates="order", uselist=False)

    @property
    def payment_id(self):
        return self.payment.id if self.payment is not None else None


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)                 # index within the order
    product_id = Column(Integer, nullable=False)
    product_name = Column(String, nullable=False)              # snapshot at order time
    quantity = Column(Integer, nullable=False)
    selected_options = Column(JSON, default=dict)
    unit_price = Column(Integer, nullable=False)
    total_price = Column(Integer, nullable=False)
    seller_id = Column(Integer, nullable=True, index=True)     # null for platform-owned items
    ownership_type = Column(String, nullable=False)
    commission_rate = Column(Numeric(5, 2), nullable=False)
    commission_amount = Column(Integer, nullable=False)
    seller_earnings = Column(Integer, nullable=False)
    payout_id = Column(Integer, ForeignKey("seller_payouts.id"), nullable=True, index=True)

    order = relationship("Order", back_populates="items")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, index=True, nullable=False)
    payment_number = Column(String, unique=True, index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    method = Column(String, nullable=False)
    status = Column(String, default="pending")                 # pending | completed | failed | cancelled | refunded
    provider = Column(String, default="stripe")
    provider_reference = Column(String, index=True, nullable=True)   # Stripe PaymentIntent ID
    provider_transaction_id = Column(String, nullable=True)
    provider_response = Column(JSON, nullable=True)
    attempts = Column(Integer, default=1)
    created_at = Column(DateTime, default=utcnow)
    paid_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    refund_amount = Column(Integer, default=0)
    refund_reason = Column(String, nullable=True)

    order = relationship("Order", back_populates="payment")


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True)
    refund_number = Column(String, unique=True, index=True, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    type = Column(String, default="full")                      # full | partial
    status = Column(String, default="pending", index=True)
    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    processed_by = Column(String, nullable=True)
    rejection_reason = Column(String, nullable=True)
    provider_refund_id = Column(String, nullable=True)

    items = relationship("RefundItem", cascade="all, delete-orphan", order_by="RefundItem.id")
    order = relationship("Order")
    payment = relationship("Payment")


class RefundItem(Base):
    __tablename__ = "refund_items"

    id = Column(Integer, primary_key=True)
    refund_id = Column(Integer, ForeignKey("refunds.id"), nullable=False, index=True)
    order_item_id = Column(Integer, ForeignKey("order_items.id"), nullable=False, index=True)
    order_item_index = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)


class SellerPayout(Base):
    __tablename__ = "seller_payouts"

    id = Column(Integer, primary_key=True)
    payout_number = Column(String, unique=True, index=True, nullable=False)
    seller_id = Column(Integer, ForeignKey("sellers.id"), index=True, nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    total_sales = Column(Integer, default=0)
    total_commission = Column(Integer, default=0)
    total_refunds = Column(Integer, default=0)
    payout_amount = Column(Integer, default=0)
    status = Column(String, default="pending", index=True)
    orders_processed = Column(Integer, default=0)
    has_more = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)
    calculated_at = Column(DateTime, nullable=True)
    calculated_by = Column(String, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(String, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    paid_by = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    items = relationship("PayoutItem", cascade="all, delete-orphan", order_by="PayoutItem.id")


class PayoutItem(Base):
    __tablename__ = "payout_items"

    id = Column(Integer, primary_key=True)
    payout_id = Column(Integer, ForeignKey("seller_payouts.id"), nullable=False, index=True)
    order_item_id = Column(Integer, ForeignKey("order_items.id"), nullable=False, index=True)
    order_id = Column(Integer, nullable=False)
    order_number = Column(String, nullable=False)
    order_date = Column(DateTime, nullable=False)
    sales_amount = Column(Integer, nullable=False)
    commission_rate = Column(Numeric(5, 2), nullable=False)
    commission_amount = Column(Integer, nullable=False)
    refund_amount = Column(Integer, default=0)
    net_amount = Column(Integer, nullable=False)


class ReconciliationEntry(Base):
    """A catalog side effect that failed after its order was already committed."""

    __tablename__ = "reconciliation_entries"

    id = Column(Integer, primary_key=True)
    order_number = Column(String, index=True, nullable=False)
    product_id = Column(Integer, nullable=False)
    action = Column(String, nullable=False)                    # e.g. set_status:out_of_stock
    error = Column(Text, nullable=False)
    resolved = Column(Boolean, default=False, index=True)
    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)
