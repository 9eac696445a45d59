import os

import stripe

from tailors_payments.models import Order, Payment

from conftest import TestingSessionLocal

CUSTOMER = {"customer_name": "Mona Adel", "customer_phone": "01012345678"}


def place_order(client, subtotal=25):
    response = client.post(
        "/api/orders", json={"seller_id": "tailor-9", "listing_id": "abaya-3", "subtotal": subtotal}
    )
    return response.json()["data"]["id"]


def mock_intent(mocker, intent_id, client_secret="secret"):
    intent = mocker.Mock()
    intent.id = intent_id
    intent.client_secret = client_secret
    return intent


def webhook_event(intent_id):
    return {
        "id": "evt_test",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": intent_id}},
    }


def test_full_payment_lifecycle_integration(client, mocker):
    """
    Test the full lifecycle:
    1. Place order and create payment (API -> DB + Stripe mocked)
    2. Webhook success (Stripe -> API -> DB)
    3. Partial then full refund (API -> DB + Stripe mocked)
    """

    # --- 1. CREATE PAYMENT ---
    order_id = place_order(client, subtotal=25)
    mocker.patch("stripe.PaymentIntent.create",
                 return_value=mock_intent(mocker, "pi_integration_test_123", "secret_test_456"))

    response = client.post("/api/payments/create", json={"order_id": order_id, "gateway": "stripe", **CUSTOMER})

    assert response.status_code == 200
    assert response.json()["data"]["clientSecret"] == "secret_test_456"

    db = TestingSessionLocal()
    payment = db.query(Payment).filter_by(order_id=order_id).first()
    assert payment is not None
    assert payment.reference == "pi_integration_test_123"
    assert payment.status == "pending"
    assert payment.amount == 2500
    db.close()

    # --- 2. WEBHOOK SUCCESS ---
    mocker.patch("stripe.Webhook.construct_event", return_value=webhook_event("pi_integration_test_123"))
    mocker.patch.dict(os.environ, {"STRIPE_WEBHOOK_SECRET": "whsec_test"})

    webhook_response = client.post(
        "/api/payments/webhook/stripe",
        content="raw_stripe_payload",
        headers={"stripe-signature": "test_signature"}
    )

    assert webhook_response.status_code == 200
    assert webhook_response.json() == {"ok": True}

    db = TestingSessionLocal()
    order = db.get(Order, order_id)
    assert order.payment.status == "paid"
    assert order.status == "processing"
    assert order.status_history[-1].note == "Payment confirmed via stripe webhook"
    db.close()

    # --- 3. REFUNDS ---
    first, second = mocker.Mock(), mocker.Mock()
    first.id, second.id = "re_1", "re_2"
    refund_create = mocker.patch("stripe.Refund.create", side_effect=[first, second])

    partial = client.post(f"/api/refunds/order/{order_id}/partial", json={"amount": 10, "reason": "alteration"})
    full = client.post(f"/api/refunds/order/{order_id}/full", json={"reason": "order returned"})

    assert partial.status_code == 200
    assert partial.json()["data"]["order"]["status"] == "partially_refunded"
    assert full.status_code == 200
    assert full.json()["data"]["amount"] == 15
    assert [c.kwargs["amount"] for c in refund_create.call_args_list] == [1000, 1500]
    assert refund_create.call_args.kwargs["payment_intent"] == "pi_integration_test_123"

    db = TestingSessionLocal()
    final_payment = db.query(Payment).filter_by(order_id=order_id).first()
    assert final_payment.status == "refunded"
    assert final_payment.refunded_total == 2500
    assert [refund.transaction_id for refund in final_payment.refunds] == ["re_1", "re_2"]
    assert final_payment.order.status == "refunded"
    db.close()


def test_webhook_replay_changes_nothing(client, mocker):
    """A second delivery of the same event leaves the order history untouched."""
    order_id = place_order(client)
    mocker.patch("stripe.PaymentIntent.create", return_value=mock_intent(mocker, "pi_replay"))
    client.post("/api/payments/create", json={"order_id": order_id, "gateway": "stripe", **CUSTOMER})
    mocker.patch("stripe.Webhook.construct_event", return_value=webhook_event("pi_replay"))

    for _ in range(2):
        response = client.post("/api/payments/webhook/stripe", headers={"stripe-signature": "test"})
        assert response.status_code == 200

    db = TestingSessionLocal()
    order = db.get(Order, order_id)
    assert [entry.status for entry in order.status_history] == ["pending_payment", "processing"]
    db.close()


def test_webhook_non_existent_payment(client, mocker):
    """Test that webhook handles cases where payment ID is not in DB (logged or ignored)."""
    mocker.patch("stripe.Webhook.construct_event", return_value=webhook_event("pi_unknown"))

    response = client.post("/api/payments/webhook/stripe", headers={"stripe-signature": "test"})
    assert response.status_code == 200


def test_webhook_invalid_signature(client, mocker):
    mocker.patch("stripe.Webhook.construct_event",
                 side_effect=stripe.SignatureVerificationError("Invalid", "sig"))

    response = client.post("/api/payments/webhook/stripe", headers={"stripe-signature": "invalid_sig"})

    assert response.status_code == 400
    assert response.json()["errors"][0]["message"] == "Invalid signature"


def test_same_order_id(client, mocker):
    """Test that creating a payment for the same order returns the existing payment."""
    order_id = place_order(client)
    mocker.patch("stripe.PaymentIntent.create", return_value=mock_intent(mocker, "pi_first"))

    first = client.post("/api/payments/create", json={"order_id": order_id, "gateway": "stripe", **CUSTOMER})

    # Second call (stripe mock shouldn't be called again if DB check works)
    mocker.patch("stripe.PaymentIntent.create",
                 side_effect=Exception("Should not be called"))

    response = client.post("/api/payments/create", json={"order_id": order_id, "gateway": "stripe", **CUSTOMER})

    assert response.status_code == 200
    assert response.json()["data"]["paymentId"] == first.json()["data"]["paymentId"]
    assert response.json()["data"]["reference"] == "pi_first"
    assert response.json()["data"]["status"] == "pending"


def test_create_payment_database_integrity_on_stripe_error(client, mocker):
    """If Stripe fails, it should return an error and not leave a record in the database."""
    order_id = place_order(client)
    mocker.patch("stripe.PaymentIntent.create",
                 side_effect=stripe.StripeError("Stripe Service Unavailable"))

    response = client.post("/api/payments/create", json={"order_id": order_id, "gateway": "stripe", **CUSTOMER})

    assert response.status_code == 502
    assert "Stripe Service Unavailable" in response.json()["errors"][0]["message"]

    db = TestingSessionLocal()
    payment = db.query(Payment).filter_by(order_id=order_id).first()
    assert payment is None
    assert db.get(Order, order_id).status == "pending_payment"
    db.close()


def test_refund_gateway_failure_keeps_payment(client, mocker, make_paid_order):
    """A rejected Stripe refund reports 502 and leaves the payment as it was."""
    order_id = make_paid_order(amount="40.00", gateway="stripe", reference="pi_paid")
    mocker.patch("stripe.Refund.create", side_effect=stripe.StripeError("charge_already_refunded"))

    response = client.post(f"/api/refunds/order/{order_id}/full", json={"reason": "damaged"})

    assert response.status_code == 502
    db = TestingSessionLocal()
    payment = db.query(Payment).filter_by(order_id=order_id).first()
    assert payment.refunded_total == 0
    assert payment.refunds == []
    assert payment.order.status == "processing"
    db.close()


def gateway_response(mocker, payload):
    response = mocker.Mock(status_code=200)
    response.json.return_value = payload
    return response


def test_fawry_webhook_confirms_payment(client, mocker, make_paid_order):
    """Fawry callback -> status check with Fawry -> order moves to processing."""
    order_id = make_paid_order(amount="25.00", gateway="fawry", status="pending", reference="ORDER-FAWRY")
    status_check = mocker.patch("tailors_payments.gateways.requests.get", return_value=gateway_response(
        mocker, {"paymentStatus": "PAID", "paymentAmount": 25.0, "fawryRefNumber": "FRN-991"}))

    response = client.post("/api/payments/webhook/fawry", json={
        "merchantRefNumber": order_id,
        "paymentStatus": "PAID",
    })

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert status_check.call_args.kwargs["params"]["merchantRefNumber"] == "ORDER-FAWRY"

    db = TestingSessionLocal()
    order = db.get(Order, order_id)
    assert order.status == "processing"
    assert order.status_history[-1].note == "Payment confirmed via fawry webhook"
    assert order.payment.status == "paid"
    assert order.payment.transaction_id == "FRN-991"
    db.close()


def test_paymob_webhook_confirms_payment(client, mocker, make_paid_order):
    order_id = make_paid_order(amount="25.00", gateway="paymob", status="pending", reference="555")
    mocker.patch("tailors_payments.gateways.requests.post",
                 return_value=gateway_response(mocker, {"token": "auth-token"}))
    mocker.patch("tailors_payments.gateways.requests.request", return_value=gateway_response(mocker, {
        "amount_cents": 2500,
        "transactions": [{"id": 8812, "success": True}],
    }))

    response = client.post("/api/payments/webhook/paymob", json={
        "type": "TRANSACTION",
        "obj": {"order": {"id": 555}, "success": True},
    })

    assert response.status_code == 200
    db = TestingSessionLocal()
    payment = db.query(Payment).filter_by(order_id=order_id).first()
    assert payment.status == "paid"
    assert payment.transaction_id == "8812"
    db.close()


def test_paytabs_webhook_not_trusted_without_gateway_confirmation(client, mocker, make_paid_order):
    """A callback claiming success is checked with PayTabs, which reports the card as declined."""
    order_id = make_paid_order(amount="25.00", gateway="paytabs", status="pending", reference="TST-42")
    mocker.patch("tailors_payments.gateways.requests.post", return_value=gateway_response(mocker, {
        "tran_ref": "TST-42",
        "cart_amount": "25.00",
        "payment_result": {"response_status": "D", "response_message": "Declined"},
    }))

    response = client.post("/api/payments/webhook/paytabs", json={
        "tran_ref": "TST-42",
        "cart_id": order_id,
        "payment_result": {"response_status": "A"},
    })

    assert response.status_code == 200
    db = TestingSessionLocal()
    order = db.get(Order, order_id)
    assert order.payment.status == "failed"
    assert order.status == "pending_payment"
    db.close()


def test_gateway_webhook_unknown_reference_is_acknowledged(client, mocker):
    status_check = mocker.patch("tailors_payments.gateways.requests.get")

    response = client.post("/api/payments/webhook/fawry", json={
        "merchantRefNumber": "no-such-order",
        "paymentStatus": "PAID",
    })

    assert response.status_code == 200
    assert response.json() == {"success": True}
    status_check.assert_not_called()


def test_gateway_webhook_without_reference(client):
    response = client.post("/api/payments/webhook/paytabs", json={"payment_result": {"response_status": "A"}})

    assert response.status_code == 400
    assert response.json()["errors"][0]["message"] == "Invalid webhook payload"


def test_gateway_webhook_unsupported_gateway(client):
    response = client.post("/api/payments/webhook/bitcoin", json={"id": "x"})

    assert response.status_code == 400
    assert response.json()["errors"][0]["message"] == "Unsupported payment gateway: bitcoin"
