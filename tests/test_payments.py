from decimal import Decimal

import pytest

from conftest import auth_headers, signed_webhook
from farmmarket.exceptions import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from farmmarket.models import OrderStatus, Payment, PaymentStatus, Role
from farmmarket.payments import (
    handle_webhook_event,
    initiate_checkout,
    on_payment_confirmed,
    on_payment_failed_or_expired,
)


def checkout(storage, gateway, order, **overrides):
    params = {
        "order_id": order.id,
        "customer_id": order.customer_id,
        "amount": order.total_amount,
        "payer_email": "buyer@example.com",
        "payer_name": "Buyer",
    }
    params.update(overrides)
    return initiate_checkout(storage, gateway, **params)


def completed_event(payment_id, order_id):
    return {
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "mode": "payment",
                "metadata": {"paymentId": str(payment_id), "orderId": str(order_id)},
            }
        },
    }


def test_checkout_creates_pending_payment_without_touching_order(storage, gateway, make_order):
    order = make_order()

    result = checkout(storage, gateway, order, tip_amount=Decimal("2.00"))

    payment = storage.get_payment(result.payment_id)
    assert payment.status == PaymentStatus.PENDING
    assert payment.transaction_id == "cs_test_1"
    assert result.checkout_url.endswith("cs_test_1")
    assert order.status == OrderStatus.PENDING

    session = gateway.sessions[0]
    assert [item.name for item in session["line_items"]] == [f"Payment for order #{order.id}", "Tip"]
    assert session["metadata"] == {
        "paymentId": str(payment.id),
        "orderId": str(order.id),
        "customerId": str(order.customer_id),
    }
    assert session["success_url"] == "http://localhost:3000/order/success?session_id={CHECKOUT_SESSION_ID}"


def test_checkout_rejects_other_customers_and_non_pending_orders(storage, gateway, make_user, make_order):
    order = make_order()
    stranger = make_user(Role.CUSTOMER)

    with pytest.raises(ConflictError):
        checkout(storage, gateway, order, customer_id=stranger.id)

    confirmed = make_order(OrderStatus.CONFIRMED)
    with pytest.raises(ConflictError):
        checkout(storage, gateway, confirmed)

    with pytest.raises(NotFoundError):
        checkout(storage, gateway, order, order_id=999)

    assert storage.db.query(Payment).count() == 0
    assert gateway.sessions == []


@pytest.mark.parametrize("overrides", [
    {"amount": Decimal("0")},
    {"amount": Decimal("0.01")},
    {"tip_amount": Decimal("-1")},
])
def test_checkout_validates_amounts(storage, gateway, make_order, overrides):
    order = make_order()

    with pytest.raises(ValidationError):
        checkout(storage, gateway, order, **overrides)


def test_checkout_marks_payment_failed_when_gateway_fails(storage, gateway, make_order):
    order = make_order()
    gateway.fail = True

    with pytest.raises(ExternalServiceError):
        checkout(storage, gateway, order)

    payment = storage.db.query(Payment).one()
    assert payment.status == PaymentStatus.FAILED
    assert order.status == OrderStatus.PENDING


def test_order_stays_pending_until_confirmed_and_confirmation_is_idempotent(storage, gateway, make_order):
    order = make_order()
    result = checkout(storage, gateway, order)
    assert order.status == OrderStatus.PENDING

    assert on_payment_confirmed(storage, result.payment_id, order.id) is True
    assert on_payment_confirmed(storage, result.payment_id, order.id) is True

    storage.db.expire_all()
    assert storage.get_order(order.id).status == OrderStatus.CONFIRMED
    assert storage.get_payment(result.payment_id).status == PaymentStatus.COMPLETED


def test_failure_leaves_order_pending_and_never_downgrades(storage, gateway, make_order):
    order = make_order()
    failed = checkout(storage, gateway, order)
    on_payment_failed_or_expired(storage, failed.payment_id)

    assert storage.get_payment(failed.payment_id).status == PaymentStatus.FAILED
    assert storage.get_order(order.id).status == OrderStatus.PENDING

    paid = checkout(storage, gateway, order)
    on_payment_confirmed(storage, paid.payment_id)
    on_payment_failed_or_expired(storage, paid.payment_id)
    assert storage.get_payment(paid.payment_id).status == PaymentStatus.COMPLETED


def test_confirming_unknown_payment_is_ignored(storage):
    assert on_payment_confirmed(storage, 404) is False
    assert on_payment_failed_or_expired(storage, 404) is False


def test_cancelled_order_is_not_revived_by_late_payment(storage, gateway, customer, make_order):
    order = make_order()
    result = checkout(storage, gateway, order)
    with storage.transaction():
        order.status = OrderStatus.CANCELLED

    on_payment_confirmed(storage, result.payment_id)

    assert storage.get_order(order.id).status == OrderStatus.CANCELLED


def test_unknown_event_type_is_not_handled(storage, gateway):
    assert handle_webhook_event(storage, gateway, {"type": "charge.refunded", "data": {"object": {}}}) is False


def test_checkout_route_and_webhook_confirmation(client, customer, courier, make_order):
    order = make_order()
    headers = auth_headers(customer)

    response = client.post(
        "/payments/checkout",
        json={
            "order_id": order.id,
            "amount": "10.99",
            "tip_amount": "1.50",
            "email": "buyer@example.com",
            "name": "Buyer",
        },
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    payment_id = body["payment_id"]

    response = signed_webhook(client, completed_event(payment_id, order.id))
    assert response.json() == {"received": True, "handled": True}

    detail = client.get(f"/orders/{order.id}", headers=headers).json()
    assert detail["status"] == "confirmed"

    payment = client.get(f"/payments/{payment_id}", headers=headers).json()
    assert payment["status"] == "completed"
    assert Decimal(payment["tip_amount"]) == Decimal("1.50")

    listing = client.get(f"/payments/order/{order.id}", headers=headers).json()
    assert [p["id"] for p in listing] == [payment_id]

    assert client.get(f"/payments/{payment_id}", headers=auth_headers(courier)).status_code == 403

    # replay
    response = signed_webhook(client, completed_event(payment_id, order.id))
    assert response.json() == {"received": True, "handled": True}


def test_checkout_route_rejects_non_customers(client, farmer, make_order):
    order = make_order()
    response = client.post(
        "/payments/checkout",
        json={"order_id": order.id, "amount": "10", "email": "f@example.com", "name": "F"},
        headers=auth_headers(farmer),
    )
    assert response.status_code == 403


def test_checkout_route_surfaces_gateway_failure(client, gateway, customer, make_order):
    order = make_order()
    gateway.fail = True

    response = client.post(
        "/payments/checkout",
        json={"order_id": order.id, "amount": "5.00", "email": "b@example.com", "name": "B"},
        headers=auth_headers(customer),
    )
    assert response.status_code == 502
    assert response.json() == {"detail": "Payment gateway is unreachable"}


def test_webhook_with_bad_signature_is_acknowledged_and_ignored(client, storage, gateway, make_order):
    order = make_order()
    result = checkout(storage, gateway, order)

    response = signed_webhook(client, completed_event(result.payment_id, order.id), secret="whsec_wrong")
    assert response.status_code == 200
    assert response.json() == {"received": True, "handled": False}

    response = client.post("/payments/webhook", content=b"{}")
    assert response.status_code == 200
    assert response.json()["handled"] is False

    storage.db.expire_all()
    assert storage.get_order(order.id).status == OrderStatus.PENDING


def test_webhook_expired_session_fails_payment(client, storage, gateway, make_order):
    order = make_order()
    result = checkout(storage, gateway, order)

    event = completed_event(result.payment_id, order.id)
    event["type"] = "checkout.session.expired"
    response = signed_webhook(client, event)
    assert response.json()["handled"] is True

    storage.db.expire_all()
    assert storage.get_payment(result.payment_id).status == PaymentStatus.FAILED
    assert storage.get_order(order.id).status == OrderStatus.PENDING


def test_webhook_missing_metadata_is_acknowledged(client):
    event = {"type": "checkout.session.completed", "data": {"object": {"mode": "payment", "metadata": {}}}}
    response = signed_webhook(client, event)
    assert response.status_code == 200
    assert response.json() == {"received": True, "handled": False}


@pytest.mark.parametrize("payload", [[], "checkout.session.completed", 42, None])
def test_webhook_non_object_payload_is_acknowledged(client, payload):
    response = signed_webhook(client, payload)
    assert response.status_code == 200
    assert response.json() == {"received": True, "handled": False}


def test_webhook_malformed_event_data_is_acknowledged(client):
    response = signed_webhook(client, {"type": "checkout.session.completed", "data": ["oops"]})
    assert response.status_code == 200
    assert response.json() == {"received": True, "handled": False}
