import pytest

from settlement.errors import NotFoundError, StateConflictError, ValidationError
from settlement.orders import OrderService
from settlement.payments import PaymentService

from conftest import add_product, place_order


@pytest.fixture
def order(db):
    product = add_product(db, price=25000, stock=5, shipping_fee=0)
    return place_order(db, [(product, 2)])


def test_create_payment_opens_pending_payment_with_provider_intent(db, gateway, order):
    checkout = PaymentService(db, gateway=gateway, currency="krw").create_payment(order.id, "card")

    payment = checkout.payment
    assert payment.status == "pending"
    assert payment.amount == 50000
    assert payment.currency == "krw"
    assert payment.payment_number.startswith("PAY-")
    assert payment.provider_reference == "pi_test_1"
    assert checkout.client_secret == "secret_1"
    assert gateway.intents == [(50000, "krw", f"{payment.payment_number}-1")]
    db.expire_all()
    assert order.payment_id == payment.id
    assert order.payment_status == "pending"


def test_create_payment_is_idempotent_while_pending(db, gateway, order):
    service = PaymentService(db, gateway=gateway)
    first = service.create_payment(order.id, "card")
    second = service.create_payment(order.id, "card")

    assert second.payment.id == first.payment.id
    assert second.client_secret is None
    assert len(gateway.intents) == 1


def test_unknown_method_and_missing_order_are_rejected(db, gateway, order):
    service = PaymentService(db, gateway=gateway)
    with pytest.raises(ValidationError):
        service.create_payment(order.id, "cash")
    with pytest.raises(NotFoundError):
        service.create_payment(424242, "card")
    assert gateway.intents == []


def test_approve_marks_order_paid_and_confirmed(db, gateway, order):
    service = PaymentService(db, gateway=gateway)
    checkout = service.create_payment(order.id, "kakao_pay")

    payment = service.approve_payment(checkout.payment.id, transaction_id="ch_123",
                                      provider_response={"approved": True})

    assert payment.status == "completed"
    assert payment.paid_at is not None
    assert payment.provider_transaction_id == "ch_123"
    db.expire_all()
    assert order.payment_status == "paid"
    assert order.status == "confirmed"


def test_approve_twice_is_rejected(db, gateway, order):
    service = PaymentService(db, gateway=gateway)
    checkout = service.create_payment(order.id, "card")
    service.approve_payment(checkout.payment.id)

    with pytest.raises(StateConflictError):
        service.approve_payment(checkout.payment.id)
    with pytest.raises(StateConflictError):
        service.create_payment(order.id, "card")


def test_failed_payment_leaves_order_pending_and_can_be_retried(db, gateway, order):
    service = PaymentService(db, gateway=gateway)
    checkout = service.create_payment(order.id, "card")

    failed = service.fail_payment(checkout.payment.id, provider_response={"code": "card_declined"})

    assert failed.status == "failed"
    db.expire_all()
    assert order.status == "pending"
    assert order.payment_status == "failed"
    with pytest.raises(StateConflictError):
        service.approve_payment(checkout.payment.id)

    retry = service.create_payment(order.id, "bank_transfer")

    assert retry.payment.id == checkout.payment.id
    assert retry.payment.status == "pending"
    assert retry.payment.attempts == 2
    assert retry.payment.method == "bank_transfer"
    assert retry.payment.provider_reference == "pi_test_2"
    assert gateway.intents[1][2] == f"{retry.payment.payment_number}-2"
    db.expire_all()
    assert order.payment_status == "pending"


def test_cancelled_order_cancels_pending_payment(db, gateway, order):
    service = PaymentService(db, gateway=gateway)
    checkout = service.create_payment(order.id, "card")

    OrderService(db).cancel_order(order.id, "no longer needed")

    db.expire_all()
    assert checkout.payment.status == "cancelled"
    with pytest.raises(StateConflictError):
        service.approve_payment(checkout.payment.id)


def test_lookup_by_provider_reference(db, gateway, order):
    service = PaymentService(db, gateway=gateway)
    checkout = service.create_payment(order.id, "card")

    assert service.find_by_provider_reference("pi_test_1").id == checkout.payment.id
    assert service.find_by_provider_reference("pi_missing") is None
