from fastapi import FastAPI, Request, Header
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

import stripe

from settlement import stripe_service
from settlement.routes import router
from settlement.database import Base, engine, SessionLocal
from settlement.errors import SettlementError, StateConflictError
from settlement.logging_config import get_logger, setup_logging
from settlement.payments import PaymentService
from settlement.responses import error_response

setup_logging()
log = get_logger(__name__)

app = FastAPI(title="Marketplace Settlement Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    if exc.status_code >= 500:
        log.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return error_response(exc.message, exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'] if part != 'body')}: {error['msg']}"
        for error in exc.errors()
    )
    return error_response(f"Invalid request: {details}", 400)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(str(exc.detail), exc.status_code)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    try:
        event = stripe_service.construct_event(payload, stripe_signature)
    except ValueError:
        return error_response("Invalid payload", 400)
    except stripe.SignatureVerificationError:
        return error_response("Invalid signature", 400)

    handlers = {
        "payment_intent.succeeded": "approve",
        "payment_intent.payment_failed": "fail",
    }
    action = handlers.get(event["type"])
    if action is None:
        return {"ok": True}

    intent = event["data"]["object"]
    db = SessionLocal()
    try:
        service = PaymentService(db)
        payment = service.find_by_provider_reference(intent["id"])
        if payment is None:
            log.warning(f"Webhook {event['type']} for unknown intent {intent['id']} ignored.")
        elif payment.status == "pending":
            if action == "approve":
                service.approve_payment(payment.id, transaction_id=intent.get("latest_charge"))
            else:
                service.fail_payment(payment.id, provider_response={"error": intent.get("last_payment_error")})
    except StateConflictError as e:
        # The provider retries webhooks; a conflicting state is already settled locally.
        log.warning(f"Webhook {event['type']} for {intent['id']} not applied: {e.message}")
    finally:
        db.close()

    return {"ok": True}
