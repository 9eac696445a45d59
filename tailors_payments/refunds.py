"""Full and partial refunds against an order's payment.

Refunds are reserved on ``payments.refunded_total`` with a conditional
update before the gateway is called, so two concurrent refunds of the same
payment cannot jointly exceed the amount that was paid. The reservation, the
refund record and the order status change are committed together; a gateway
failure rolls all of them back.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update

from tailors_payments import audit
from tailors_payments.errors import (
    AlreadyRefunded,
    InvalidRefundAmount,
    OrderNotFound,
    PaymentError,
    PaymentNotFound,
)
from tailors_payments.models import (
    ORDER_PARTIALLY_REFUNDED,
    ORDER_REFUNDED,
    PAYMENT_REFUNDED,
    Order,
    Payment,
    Refund,
)
from tailors_payments.money import format_amount, to_major, to_minor

logger = logging.getLogger(__name__)


@dataclass
class RefundOutcome:
    refund_id: str
    amount: Decimal
    order_id: str
    order_status: str
    payment_id: str
    payment_status: str
    total_refunded: Decimal
    remaining_balance: Decimal

    def as_dict(self):
        return {
            "refundId": self.refund_id,
            "amount": self.amount,
            "order": {"id": self.order_id, "status": self.order_status},
            "payment": {
                "id": self.payment_id,
                "status": self.payment_status,
                "totalRefunded": self.total_refunded,
                "remainingBalance": self.remaining_balance,
            },
        }


@dataclass
class RefundRecord:
    amount: Decimal
    reason: Optional[str]
    transaction_id: Optional[str]
    date: Optional[datetime]
    processed_by: Optional[str] = None


@dataclass
class RefundHistory:
    """Refunds recorded for an order.

    ``payment_id`` is None when the order has no payment yet, which is
    reported as an empty history rather than an error.
    """

    order_id: str
    payment_id: Optional[str] = None
    order_total: Decimal = Decimal("0.00")
    refunds: List[RefundRecord] = field(default_factory=list)

    @property
    def has_payment(self) -> bool:
        return self.payment_id is not None

    @property
    def total_refunded(self) -> Decimal:
        return sum((refund.amount for refund in self.refunds), Decimal("0.00"))

    def __iter__(self):
        return iter(self.refunds)

    def __len__(self):
        return len(self.refunds)


class RefundService:
    def __init__(self, db, payments):
        self.db = db
        self.payments = payments

    def process_full_refund(self, order_id: str, reason: str, admin_id: Optional[str] = None) -> RefundOutcome:
        try:
            payment = self._load_payment(order_id)
            order = self._load_order(order_id)
            # Anything already refunded partially is excluded from the full refund
            amount = payment.remaining_balance
            if amount <= 0:
                raise AlreadyRefunded()
            return self._refund(order, payment, amount, reason, admin_id, kind="full")
        except Exception as exc:
            self._record_failure(exc, "process_full_refund", order_id=order_id)
            raise

    def process_partial_refund(
        self, order_id: str, amount, reason: str, admin_id: Optional[str] = None
    ) -> RefundOutcome:
        try:
            payment = self._load_payment(order_id)

            try:
                minor = to_minor(amount)
            except ValueError:
                raise InvalidRefundAmount("Invalid refund amount") from None
            if minor <= 0:
                raise InvalidRefundAmount("Invalid refund amount")
            if minor > payment.amount:
                raise InvalidRefundAmount("Refund amount cannot exceed original payment amount")

            total_refunded = sum(refund.amount for refund in payment.refunds)
            if total_refunded + minor > payment.amount:
                raise InvalidRefundAmount(
                    f"Cannot refund more than the remaining amount: {format_amount(payment.amount - total_refunded)}"
                )

            order = self._load_order(order_id)
            return self._refund(order, payment, minor, reason, admin_id, kind="partial")
        except Exception as exc:
            self._record_failure(exc, "process_partial_refund", order_id=order_id, amount=str(amount))
            raise

    def get_refund_history(self, order_id: str) -> RefundHistory:
        try:
            payment = self.db.query(Payment).filter_by(order_id=order_id).first()
            if payment is None:
                return RefundHistory(order_id=order_id)

            return RefundHistory(
                order_id=order_id,
                payment_id=payment.id,
                order_total=to_major(payment.amount),
                refunds=[
                    RefundRecord(
                        amount=to_major(refund.amount),
                        reason=refund.reason,
                        transaction_id=refund.transaction_id,
                        date=refund.date,
                        processed_by=refund.processed_by,
                    )
                    for refund in payment.refunds
                ],
            )
        except Exception as exc:
            self._record_failure(exc, "get_refund_history", order_id=order_id)
            raise

    def _load_payment(self, order_id: str) -> Payment:
        payment = self.db.query(Payment).filter_by(order_id=order_id).first()
        if payment is None:
            raise PaymentNotFound()
        if payment.status == PAYMENT_REFUNDED:
            raise AlreadyRefunded()
        return payment

    def _load_order(self, order_id: str) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise OrderNotFound()
        return order

    def _reserve(self, payment: Payment, amount: int):
        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.refunded_total + amount <= Payment.amount)
            .values(refunded_total=Payment.refunded_total + amount)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(payment)
        if result.rowcount != 1:
            raise InvalidRefundAmount(
                f"Cannot refund more than the remaining amount: {format_amount(payment.remaining_balance)}"
            )

    def _refund(self, order, payment, amount, reason, admin_id, kind) -> RefundOutcome:
        initiated_by = admin_id or "system"
        audit.track_event(
            "RefundAttempt",
            {
                "orderId": order.id,
                "paymentId": payment.id,
                "amount": format_amount(amount),
                "type": kind,
                "initiatedBy": initiated_by,
            },
        )

        try:
            self._reserve(payment, amount)
            result = self.payments.process_refund(
                payment.payment_method,
                transaction_id=payment.transaction_id,
                amount=amount,
                reason=reason,
                currency=payment.currency,
            )

            payment.refunds.append(
                Refund(amount=amount, reason=reason, transaction_id=result.refund_id, processed_by=admin_id)
            )
            if payment.fully_refunded:
                payment.status = PAYMENT_REFUNDED
                order_status = ORDER_REFUNDED
            else:
                order_status = ORDER_PARTIALLY_REFUNDED

            note = reason if kind == "full" else f"Partial refund: {format_amount(amount)} - {reason}"
            order.update_status(order_status, note=note, updated_by=admin_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        outcome = RefundOutcome(
            refund_id=result.refund_id,
            amount=to_major(amount),
            order_id=order.id,
            order_status=order.status,
            payment_id=payment.id,
            payment_status=payment.status,
            total_refunded=to_major(payment.refunded_total),
            remaining_balance=to_major(payment.remaining_balance),
        )
        audit.track_event(
            "RefundProcessed",
            {
                "orderId": outcome.order_id,
                "paymentId": outcome.payment_id,
                "refundId": outcome.refund_id,
                "amount": format_amount(amount),
                "reason": reason,
                "initiatedBy": initiated_by,
                "remainingBalance": str(outcome.remaining_balance),
            },
        )
        return outcome

    def _record_failure(self, exc, operation, **properties):
        if isinstance(exc, PaymentError):
            logger.warning("%s failed for order %s: %s", operation, properties.get("order_id"), exc)
        else:
            logger.exception("%s failed for order %s", operation, properties.get("order_id"))
        audit.track_exception(exc, {"component": "RefundService", "operation": operation, **properties})
