import logging
from typing import Annotated, Optional

import stripe
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request
from pydantic import BaseModel, StringConstraints
from sqlalchemy import or_
from sqlalchemy.orm import Session

from tailors_payments import audit
from tailors_payments.auth import CurrentUser, verify_token
from tailors_payments.database import get_db
from tailors_payments.errors import (
    GatewayError,
    InvalidOrderState,
    InvalidPaymentState,
    NotAuthorized,
    OrderNotFound,
    PaymentNotFound,
)
from tailors_payments.gateways import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SUCCESS,
    Checkout,
    PaymentVerification,
    map_fawry_status,
    map_paytabs_status,
)
from tailors_payments.models import (
    ORDER_PENDING_PAYMENT,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    Order,
    Payment,
)
from tailors_payments.money import to_major
from tailors_payments.payment_service import PaymentService, get_payment_service
from tailors_payments.responses import success
from tailors_payments.stripe_service import construct_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])

RequiredText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class PaymentRequest(BaseModel):
    order_id: str
    gateway: str
    customer_name: str
    customer_phone: str
    customer_email: Optional[str] = None
    return_url: Optional[str] = None
    payment_method: str = "CARD"


class MarkPaidRequest(BaseModel):
    notes: RequiredText


def _can_pay(order: Order, user: CurrentUser) -> bool:
    return user.is_admin or order.buyer_id == user.id


def apply_verification(payment: Payment, verification: PaymentVerification, note: str) -> None:
    """Move a payment to the state its gateway reports."""
    if verification.status == STATUS_SUCCESS:
        payment.mark_paid(note, paid_at=verification.paid_at, transaction_id=verification.transaction_id)
    elif verification.status == STATUS_FAILED and payment.status == PAYMENT_PENDING:
        payment.status = PAYMENT_FAILED


def webhook_notification(gateway: str, payload: dict):
    """Reference and reported status of a gateway callback."""
    if gateway == "fawry":
        return payload.get("merchantRefNumber"), map_fawry_status(payload.get("paymentStatus"))
    if gateway == "paymob":
        transaction = payload.get("obj") or payload
        order = transaction.get("order") or {}
        reference = order.get("id") if isinstance(order, dict) else order
        paid = transaction.get("success") in (True, "true")
        return reference, STATUS_SUCCESS if paid else STATUS_FAILED
    if gateway == "paytabs":
        result = payload.get("payment_result") or {}
        status = result.get("response_status") or payload.get("response_status")
        return payload.get("tran_ref") or payload.get("cart_id"), map_paytabs_status(status)
    return None, STATUS_PENDING


def serialize_payment(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "orderId": payment.order_id,
        "orderStatus": payment.order.status if payment.order else None,
        "date": payment.created_at,
        "amount": to_major(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "paymentMethod": payment.payment_method,
        "reference": payment.reference,
        "refundedTotal": to_major(payment.refunded_total or 0),
        "paidAt": payment.paid_at,
    }


@router.get("/gateways")
def list_gateways(payments: PaymentService = Depends(get_payment_service)):
    return success(payments.supported_gateways())


@router.get("/history")
def payment_history(
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
):
    history = db.query(Payment).filter_by(user_id=user.id).order_by(Payment.created_at.desc()).all()
    return success([serialize_payment(payment) for payment in history])


@router.post("/create")
def create_payment_api(
    request: PaymentRequest,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    order = db.get(Order, request.order_id)
    if order is None:
        raise OrderNotFound()
    if not _can_pay(order, user):
        raise NotAuthorized("Not authorized to pay for this order")

    existing = db.query(Payment).filter_by(order_id=order.id).first()
    if existing and existing.status != PAYMENT_FAILED:
        return success({
            "paymentId": existing.id,
            "gateway": existing.payment_method,
            "reference": existing.reference,
            "status": existing.status,
        })

    if order.status != ORDER_PENDING_PAYMENT:
        raise InvalidOrderState("Order is not awaiting payment")

    checkout = Checkout(
        order_id=order.id,
        amount=order.total,
        currency=order.currency,
        customer_name=request.customer_name,
        customer_phone=request.customer_phone,
        customer_email=request.customer_email or "",
        description=f"Payment for order #{order.id[-6:]}",
        return_url=request.return_url,
        payment_method=request.payment_method,
    )
    result = payments.create_payment(request.gateway, checkout)
    # Nothing is stored for a rejected payment so the next attempt reaches the gateway again
    if result.status == STATUS_FAILED:
        raise GatewayError(f"Failed to create {result.gateway} payment: payment was rejected")

    payment = existing or Payment(order_id=order.id)
    payment.user_id = user.id
    payment.amount = order.total
    payment.currency = order.currency
    payment.payment_method = result.gateway
    payment.reference = result.reference
    payment.transaction_id = result.transaction_id or result.reference
    payment.status = PAYMENT_PENDING
    db.add(payment)
    db.commit()

    return success({
        "paymentId": payment.id,
        "gateway": result.gateway,
        "reference": result.reference,
        "status": payment.status,
        "paymentUrl": result.payment_url,
        "expiresAt": result.expires_at,
        **result.details,
    })


@router.get("/verify/{gateway}/{reference_number}")
def verify_payment_api(
    gateway: str,
    reference_number: str,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    gateway = payments.gateway(gateway).name

    payment = db.query(Payment).filter_by(payment_method=gateway, reference=reference_number).first()
    if payment is None:
        raise PaymentNotFound("Order not found for this payment reference")
    if not _can_pay(payment.order, user):
        raise NotAuthorized("Not authorized to access this order")

    verification = payments.verify_payment(gateway, reference_number)
    apply_verification(payment, verification, f"Payment verified via {gateway}")
    db.commit()

    return success({
        "paymentStatus": verification.status,
        "gatewayStatus": verification.gateway_status,
        "orderStatus": payment.order.status,
        "paidAt": verification.paid_at,
    })


@router.post("/{reference_number}/mark-as-paid")
def mark_as_paid(
    reference_number: str,
    request: MarkPaidRequest,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
):
    payment = db.query(Payment).filter_by(reference=reference_number).first()
    if payment is None:
        raise PaymentNotFound("No order found with this payment reference")
    if not user.is_admin and payment.order.seller_id != user.id:
        raise NotAuthorized("Not authorized to mark this payment as paid")
    if payment.status != PAYMENT_PENDING:
        raise InvalidPaymentState(f"Payment is already {payment.status}")

    actor = "admin" if user.is_admin else "seller"
    payment.mark_paid(
        f"Payment manually marked as paid by {actor}. Notes: {request.notes}",
        updated_by=user.id,
    )
    db.commit()
    audit.track_event(
        "PaymentMarkedPaid",
        {"orderId": payment.order_id, "paymentId": payment.id, "markedBy": user.id, "role": user.role},
    )

    return success({
        "orderId": payment.order_id,
        "referenceNumber": reference_number,
        "paymentStatus": payment.status,
        "orderStatus": payment.order.status,
        "paidAt": payment.paid_at,
    })


@router.post("/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
):
    payload = await request.body()

    try:
        event = construct_event(payload, stripe_signature)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    if event["type"] == "payment_intent.succeeded":
        intent = event["data"]["object"]
        payment = db.query(Payment).filter_by(payment_method="stripe", reference=intent["id"]).first()
        if payment is None:
            logger.warning("Stripe webhook for unknown payment intent %s", intent["id"])
        elif payment.mark_paid("Payment confirmed via stripe webhook"):
            db.commit()

    return {"ok": True}


@router.post("/webhook/{gateway}")
def gateway_webhook(
    gateway: str,
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    """Payment callbacks from Fawry, PayMob and PayTabs.

    Callbacks are not signed the same way across gateways, so the payload
    only identifies the payment; its status is confirmed with the gateway
    before anything changes. Unknown references are acknowledged so the
    gateway stops retrying.
    """
    gateway = payments.gateway(gateway).name
    reference, reported = webhook_notification(gateway, payload)
    if not reference:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    reference = str(reference)
    logger.info("Received %s webhook for %s reporting %s", gateway, reference, reported)

    payment = (
        db.query(Payment)
        .filter(Payment.payment_method == gateway)
        .filter(or_(Payment.reference == reference, Payment.order_id == reference))
        .first()
    )
    if payment is None:
        logger.warning("%s webhook for unknown payment reference %s", gateway, reference)
        return {"success": True}

    if reported in (STATUS_SUCCESS, STATUS_FAILED):
        verification = payments.verify_payment(gateway, payment.reference)
        apply_verification(payment, verification, f"Payment confirmed via {gateway} webhook")
        db.commit()

    return {"success": True}
