from dataclasses import asdict
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from tailors_payments.auth import CurrentUser, require_role, verify_token
from tailors_payments.database import get_db
from tailors_payments.errors import NotAuthorized, OrderNotFound
from tailors_payments.models import Order
from tailors_payments.payment_service import PaymentService, get_payment_service
from tailors_payments.refunds import RefundService
from tailors_payments.responses import success
from tailors_payments.routes import RequiredText

router = APIRouter(prefix="/api/refunds", tags=["refunds"])


class RefundRequest(BaseModel):
    reason: RequiredText


class PartialRefundRequest(RefundRequest):
    amount: Decimal


@router.post("/order/{order_id}/full")
def full_refund(
    order_id: str,
    request: RefundRequest,
    admin: CurrentUser = Depends(require_role("admin")),
    db: Session = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    outcome = RefundService(db, payments).process_full_refund(order_id, request.reason, admin.id)
    return success(outcome.as_dict())


@router.post("/order/{order_id}/partial")
def partial_refund(
    order_id: str,
    request: PartialRefundRequest,
    admin: CurrentUser = Depends(require_role("admin")),
    db: Session = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    outcome = RefundService(db, payments).process_partial_refund(
        order_id, request.amount, request.reason, admin.id
    )
    return success(outcome.as_dict())


@router.get("/order/{order_id}/history")
def refund_history(
    order_id: str,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound()
    if not user.is_admin and not order.involves(user.id):
        raise NotAuthorized("Not authorized to view this order's refund history")

    history = RefundService(db, payments).get_refund_history(order_id)
    return success({
        "orderId": history.order_id,
        "hasPayment": history.has_payment,
        "paymentId": history.payment_id,
        "orderTotal": history.order_total,
        "refunds": [asdict(refund) for refund in history.refunds],
        "totalRefunded": history.total_refunded,
    })
