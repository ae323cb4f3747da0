from typing import Optional

from fastapi import APIRouter, Depends, Query

from settlement.auth import CurrentUser, ensure_owner_or_admin, require_admin, verify_token
from settlement.database import SessionLocal
from settlement.errors import AuthorizationError, NotFoundError
from settlement.orders import OrderService
from settlement.payments import PaymentService
from settlement.payouts import PayoutService
from settlement.refunds import RefundLine, RefundService
from settlement import reconciliation
from settlement.responses import paginated_response, success_response
from settlement.schemas import (
    ApprovePaymentRequest, CalculatePayoutRequest, CancelOrderRequest, CancelPayoutRequest,
    CreateOrderRequest, CreatePaymentRequest, DirectOrderRequest, FailPaymentRequest,
    FulfilmentRequest, OrderOut, PaymentOut, PayoutOut, PayPayoutRequest, ReconciliationOut,
    RefundOut, RefundRequest, RejectRefundRequest, dump,
)
from settlement.utils import to_naive_utc

router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _order_created(outcome, message):
    return success_response({
        "order": dump(OrderOut, outcome.order),
        "orderNumber": outcome.order.order_number,
        "reconciliation": [dump(ReconciliationOut, entry) for entry in outcome.reconciliation],
    }, message, 201)


# --- orders ---

@router.post("/orders")
def create_order_api(request: CreateOrderRequest, user: CurrentUser = Depends(verify_token), db=Depends(get_db)):
    outcome = OrderService(db).create_order_from_cart(
        user.id, request.cart_id, request.shipping_address.model_dump(), notes=request.notes
    )
    return _order_created(outcome, "Order created")


@router.post("/orders/direct")
def create_direct_order_api(request: DirectOrderRequest, user: CurrentUser = Depends(verify_token),
                            db=Depends(get_db)):
    outcome = OrderService(db).create_direct_order(
        user.id, request.product_id, request.quantity, request.shipping_address.model_dump(),
        selected_options=request.selected_options, notes=request.notes,
    )
    return _order_created(outcome, "Order created")


@router.get("/orders")
def list_orders_api(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                    status: Optional[str] = None, user: CurrentUser = Depends(verify_token), db=Depends(get_db)):
    orders, total = OrderService(db).list_orders(user.id, status=status, page=page, limit=limit)
    return paginated_response({"orders": [dump(OrderOut, o) for o in orders]}, page, limit, total, "Orders")


@router.get("/orders/{order_id}")
def get_order_api(order_id: int, user: CurrentUser = Depends(verify_token), db=Depends(get_db)):
    order = OrderService(db).get_order(order_id)
    ensure_owner_or_admin(user, order.user_id)
    return success_response({"order": dump(OrderOut, order)}, "Order")


@router.post("/orders/{order_id}/cancel")
def cancel_order_api(order_id: int, request: Optional[CancelOrderRequest] = None,
                     user: CurrentUser = Depends(verify_token), db=Depends(get_db)):
    service = OrderService(db)
    ensure_owner_or_admin(user, service.get_order(order_id).user_id)
    outcome = service.cancel_order(order_id, request.reason if request else None)
    return success_response({
        "order": dump(OrderOut, outcome.order),
        "reconciliation": [dump(ReconciliationOut, entry) for entry in outcome.reconciliation],
    }, "Order cancelled")


@router.post("/orders/{order_id}/status")
def advance_order_api(order_id: int, request: FulfilmentRequest, admin: CurrentUser = Depends(require_admin),
                      db=Depends(get_db)):
    order = OrderService(db).advance_fulfilment(order_id, request.status)
    return success_response({"order": dump(OrderOut, order)}, f"Order {request.status}")


# --- payments ---

@router.post("/payments")
def create_payment_api(request: CreatePaymentRequest, user: CurrentUser = Depends(verify_token),
                       db=Depends(get_db)):
    ensure_owner_or_admin(user, OrderService(db).get_order(request.order_id).user_id)
    checkout = PaymentService(db).create_payment(request.order_id, request.method, request.payment_info)
    return success_response({
        "payment": dump(PaymentOut, checkout.payment),
        "paymentNumber": checkout.payment.payment_number,
        "clientSecret": checkout.client_secret,
    }, "Payment created", 201)


@router.get("/payments/{payment_id}")
def get_payment_api(payment_id: int, user: CurrentUser = Depends(verify_token), db=Depends(get_db)):
    payment = PaymentService(db).get_payment(payment_id)
    ensure_owner_or_admin(user, payment.order.user_id, "payment")
    return success_response({"payment": dump(PaymentOut, payment)}, "Payment")


@router.post("/payments/{payment_id}/approve")
def approve_payment_api(payment_id: int, request: Optional[ApprovePaymentRequest] = None,
                        admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    request = request or ApprovePaymentRequest()
    payment = PaymentService(db).approve_payment(payment_id, request.transaction_id, request.provider_response)
    return success_response({
        "payment": dump(PaymentOut, payment),
        "order": dump(OrderOut, payment.order),
    }, "Payment approved")


@router.post("/payments/{payment_id}/fail")
def fail_payment_api(payment_id: int, request: Optional[FailPaymentRequest] = None,
                     admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    payment = PaymentService(db).fail_payment(payment_id, request.provider_response if request else None)
    return success_response({"payment": dump(PaymentOut, payment)}, "Payment failed")


# --- refunds ---

@router.post("/refunds")
def create_refund_api(request: RefundRequest, user: CurrentUser = Depends(verify_token), db=Depends(get_db)):
    ensure_owner_or_admin(user, OrderService(db).get_order(request.order_id).user_id)
    lines = None
    if request.type == "partial":
        lines = [RefundLine(item.order_item_index, item.quantity) for item in request.items]
    refund = RefundService(db).create_refund(request.order_id, request.reason, lines)
    return success_response({
        "refund": dump(RefundOut, refund),
        "refundNumber": refund.refund_number,
    }, "Refund requested", 201)


@router.get("/refunds")
def list_refunds_api(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                     status: Optional[str] = None, user: CurrentUser = Depends(verify_token), db=Depends(get_db)):
    owner = None if user.is_admin else user.id
    refunds, total = RefundService(db).list_refunds(owner, status=status, page=page, limit=limit)
    return paginated_response({"refunds": [dump(RefundOut, r) for r in refunds]}, page, limit, total, "Refunds")


@router.get("/refunds/{refund_id}")
def get_refund_api(refund_id: int, user: CurrentUser = Depends(verify_token), db=Depends(get_db)):
    refund = RefundService(db).get_refund(refund_id)
    ensure_owner_or_admin(user, refund.order.user_id, "refund")
    return success_response({"refund": dump(RefundOut, refund)}, "Refund")


@router.post("/refunds/{refund_id}/approve")
def approve_refund_api(refund_id: int, admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    refund = RefundService(db).approve_refund(refund_id, admin.id)
    return success_response({"refund": dump(RefundOut, refund)}, "Refund approved")


@router.post("/refunds/{refund_id}/reject")
def reject_refund_api(refund_id: int, request: RejectRefundRequest, admin: CurrentUser = Depends(require_admin),
                      db=Depends(get_db)):
    refund = RefundService(db).reject_refund(refund_id, request.reason, admin.id)
    return success_response({"refund": dump(RefundOut, refund)}, "Refund rejected")


# --- payouts ---

@router.post("/payouts/calculate")
def calculate_payout_api(request: CalculatePayoutRequest, admin: CurrentUser = Depends(require_admin),
                         db=Depends(get_db)):
    payout = PayoutService(db).calculate_payout(
        request.seller_id, to_naive_utc(request.period_start), to_naive_utc(request.period_end), admin.id
    )
    status_code = 201 if payout.status == "calculated" else 202
    return success_response({
        "payout": dump(PayoutOut, payout),
        "ordersProcessed": payout.orders_processed,
        "hasMore": payout.has_more,
    }, "Payout calculated" if status_code == 201 else "Payout partially calculated", status_code)


@router.get("/payouts")
def list_payouts_api(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                     seller_id: Optional[int] = Query(None, alias="sellerId"), status: Optional[str] = None,
                     admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    payouts, total = PayoutService(db).list_payouts(seller_id, status=status, page=page, limit=limit)
    return paginated_response({"payouts": [dump(PayoutOut, p) for p in payouts]}, page, limit, total, "Payouts")


@router.get("/payouts/mine")
def list_my_payouts_api(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                        user: CurrentUser = Depends(verify_token), db=Depends(get_db)):
    if user.seller_id is None:
        raise NotFoundError("Seller", f"user {user.id}")
    payouts, total = PayoutService(db).list_payouts(user.seller_id, page=page, limit=limit)
    return paginated_response({"payouts": [dump(PayoutOut, p) for p in payouts]}, page, limit, total, "Payouts")


@router.get("/payouts/{payout_id}")
def get_payout_api(payout_id: int, user: CurrentUser = Depends(verify_token), db=Depends(get_db)):
    payout = PayoutService(db).get_payout(payout_id)
    if not user.is_admin and user.seller_id != payout.seller_id:
        raise AuthorizationError("Not allowed to access this payout")
    return success_response({"payout": dump(PayoutOut, payout)}, "Payout")


@router.post("/payouts/{payout_id}/approve")
def approve_payout_api(payout_id: int, admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    payout = PayoutService(db).approve_payout(payout_id, admin.id)
    return success_response({"payout": dump(PayoutOut, payout)}, "Payout approved")


@router.post("/payouts/{payout_id}/pay")
def pay_payout_api(payout_id: int, request: PayPayoutRequest, admin: CurrentUser = Depends(require_admin),
                   db=Depends(get_db)):
    payout = PayoutService(db).pay_payout(payout_id, request.payment_method, request.transaction_id, admin.id)
    return success_response({"payout": dump(PayoutOut, payout)}, "Payout paid")


@router.post("/payouts/{payout_id}/cancel")
def cancel_payout_api(payout_id: int, request: Optional[CancelPayoutRequest] = None,
                      admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    payout = PayoutService(db).cancel_payout(payout_id, request.reason if request else None, admin.id)
    return success_response({"payout": dump(PayoutOut, payout)}, "Payout cancelled")


# --- reconciliation queue ---

@router.get("/reconciliation")
def list_reconciliation_api(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                            admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    entries, total = reconciliation.list_open(db, page=page, limit=limit)
    return paginated_response({"entries": [dump(ReconciliationOut, e) for e in entries]},
                              page, limit, total, "Open reconciliation entries")


@router.post("/reconciliation/{entry_id}/resolve")
def resolve_reconciliation_api(entry_id: int, admin: CurrentUser = Depends(require_admin), db=Depends(get_db)):
    entry = reconciliation.resolve(db, entry_id)
    return success_response({"entry": dump(ReconciliationOut, entry)}, "Reconciliation entry resolved")
