import itertools
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_temp.db")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from tailors_payments.auth import CurrentUser, verify_token  # noqa: E402
from tailors_payments.database import Base, get_db  # noqa: E402
from tailors_payments.gateways import GatewayRefund  # noqa: E402
from tailors_payments.main import app as fastapi_app  # noqa: E402
from tailors_payments.models import (  # noqa: E402
    ORDER_PENDING_PAYMENT,
    ORDER_PROCESSING,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    Order,
    Payment,
)
from tailors_payments.money import to_minor  # noqa: E402
from tailors_payments.payment_service import PaymentService, get_payment_service  # noqa: E402

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def payments(mocker):
    """PaymentService double whose refunds always succeed."""
    service = mocker.Mock(spec=PaymentService)
    refund_ids = itertools.count(1)

    def refund(gateway, transaction_id, amount, reason, currency="EGP"):
        return GatewayRefund(refund_id=f"rf_{next(refund_ids)}", transaction_id=transaction_id, amount=amount)

    service.process_refund.side_effect = refund
    return service


@pytest.fixture
def make_paid_order(db):
    def factory(amount="150.50", gateway="fawry", status=PAYMENT_PAID,
                buyer_id="buyer-1", seller_id="seller-1", reference="REF-1"):
        total = to_minor(amount)
        order = Order(buyer_id=buyer_id, seller_id=seller_id, listing_id="listing-1",
                      subtotal=total, total=total)
        order.update_status(ORDER_PENDING_PAYMENT, note="Order placed", updated_by=buyer_id)
        if status != PAYMENT_PENDING:
            order.update_status(ORDER_PROCESSING, note=f"Payment verified via {gateway}")
        payment = Payment(order=order, user_id=buyer_id, amount=total, payment_method=gateway,
                          reference=reference, transaction_id=f"TXN-{reference}", status=status)
        db.add_all([order, payment])
        db.commit()
        return order.id
    return factory


def override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def as_user():
    def switch(user_id="admin-1", role="admin"):
        fastapi_app.dependency_overrides[verify_token] = lambda: CurrentUser(id=user_id, role=role)
    return switch


@pytest.fixture
def client(as_user):
    fastapi_app.dependency_overrides[get_db] = override_get_db
    # Bypass auth verification for tests
    as_user()

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def fake_gateways(client, payments):
    fastapi_app.dependency_overrides[get_payment_service] = lambda: payments
    return payments
