from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from tailors_payments.auth import CurrentUser, verify_token
from tailors_payments.config import DEFAULT_CURRENCY
from tailors_payments.database import get_db
from tailors_payments.errors import InvalidOrderState, NotAuthorized, OrderNotFound
from tailors_payments.models import ORDER_CANCELLED, ORDER_PENDING_PAYMENT, Order
from tailors_payments.money import to_major, to_minor
from tailors_payments.responses import success

router = APIRouter(prefix="/api/orders", tags=["orders"])


class OrderRequest(BaseModel):
    seller_id: str
    listing_id: str
    subtotal: Decimal = Field(..., ge=0)
    delivery_fee: Decimal = Field(Decimal("0"), ge=0)
    tax: Decimal = Field(Decimal("0"), ge=0)
    currency: str = DEFAULT_CURRENCY


class CancelRequest(BaseModel):
    note: str = "Cancelled by customer"


def serialize_order(order: Order) -> dict:
    return {
        "id": order.id,
        "buyerId": order.buyer_id,
        "sellerId": order.seller_id,
        "listingId": order.listing_id,
        "status": order.status,
        "currency": order.currency,
        "price": {
            "subtotal": to_major(order.subtotal),
            "deliveryFee": to_major(order.delivery_fee),
            "tax": to_major(order.tax),
            "total": to_major(order.total),
        },
        "statusHistory": [
            {"status": entry.status, "date": entry.date, "note": entry.note, "updatedBy": entry.updated_by}
            for entry in order.status_history
        ],
        "createdAt": order.created_at,
    }


def _load_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound()
    return order


@router.post("")
def create_order(
    request: OrderRequest,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
):
    subtotal = to_minor(request.subtotal)
    delivery_fee = to_minor(request.delivery_fee)
    tax = to_minor(request.tax)

    order = Order(
        buyer_id=user.id,
        seller_id=request.seller_id,
        listing_id=request.listing_id,
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        tax=tax,
        total=subtotal + delivery_fee + tax,
        currency=request.currency,
    )
    order.update_status(ORDER_PENDING_PAYMENT, note="Order placed", updated_by=user.id)
    db.add(order)
    db.commit()
    return success(serialize_order(order))


@router.get("/{order_id}")
def get_order(
    order_id: str,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
):
    order = _load_order(db, order_id)
    if not user.is_admin and not order.involves(user.id):
        raise NotAuthorized("Not authorized to view this order")
    return success(serialize_order(order))


@router.post("/{order_id}/cancel")
def cancel_order(
    order_id: str,
    request: Optional[CancelRequest] = None,
    user: CurrentUser = Depends(verify_token),
    db: Session = Depends(get_db),
):
    order = _load_order(db, order_id)
    if not user.is_admin and order.buyer_id != user.id:
        raise NotAuthorized("Not authorized to cancel this order")
    if order.status != ORDER_PENDING_PAYMENT:
        raise InvalidOrderState(f"Order cannot be cancelled while {order.status}")

    note = request.note if request else CancelRequest().note
    order.update_status(ORDER_CANCELLED, note=note, updated_by=user.id)
    db.commit()
    return success(serialize_order(order))
