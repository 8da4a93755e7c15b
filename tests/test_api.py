import re
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import stripe

from conftest import facial_checkout, mock_intent
from medspa_pos import checkout
from medspa_pos.models import Payment, PaymentItem


def test_cash_checkout_completes_immediately(client, catalog, db, mocker):
    create = mocker.patch("stripe.PaymentIntent.create")

    response = client.post("/api/payments", json=facial_checkout())

    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Cash payment completed"
    assert "client_secret" not in body
    payment = body["payment"]
    assert payment["amount"] == 150
    assert payment["status"] == "completed"
    assert payment["payment_method"] == "cash"
    assert payment["commission"] == 30
    assert payment["client"]["name"] == "Jane Doe"
    assert [(i["item_name"], i["subtotal"]) for i in payment["payment_items"]] == [("Facial", 150)]
    create.assert_not_called()

    stored = db.get(Payment, body["payment_id"])
    assert stored.status == "completed"
    assert stored.created_by == "reception-1"


def test_transaction_id_format(client, catalog):
    response = client.post("/api/payments", json=facial_checkout())

    transaction_id = response.json()["payment"]["transaction_id"]
    assert re.fullmatch(r"TXN-[A-Z0-9]+-\d+", transaction_id)


def test_stripe_checkout_is_pending_with_client_secret(client, catalog, db, mocker):
    intent = mock_intent(mocker)
    create = mocker.patch("stripe.PaymentIntent.create", return_value=intent)

    response = client.post("/api/payments", json=facial_checkout(payment_method="stripe"))

    assert response.status_code == 201
    body = response.json()
    assert body["client_secret"] == "pi_test_123_secret"
    assert body["payment"]["status"] == "pending"
    assert body["payment"]["stripe_payment_intent_id"] == "pi_test_123"

    kwargs = create.call_args.kwargs
    assert kwargs["amount"] == 15000
    assert kwargs["currency"] == "usd"
    assert kwargs["idempotency_key"] == body["payment"]["transaction_id"]


def test_card_is_normalized_to_stripe(client, catalog, mocker):
    mocker.patch("stripe.PaymentIntent.create", return_value=mock_intent(mocker))

    response = client.post("/api/payments", json=facial_checkout(payment_method="card"))

    assert response.status_code == 201
    assert response.json()["payment"]["payment_method"] == "stripe"


def test_one_item_row_per_cart_line(client, catalog, db):
    cart = [
        {"id": 1, "type": "service", "name": "Facial", "price": 150, "quantity": 1},
        {"id": 2, "type": "service", "name": "Botox", "price": 300, "quantity": 2},
        {"id": 1, "type": "product", "name": "Vitamin C Serum", "price": 45.5, "quantity": 3},
    ]
    response = client.post("/api/payments", json=facial_checkout(amount=886.5, cart_items=cart))
    assert response.status_code == 201

    items = (
        db.query(PaymentItem)
        .filter_by(payment_id=response.json()["payment_id"])
        .order_by(PaymentItem.id)
        .all()
    )
    assert len(items) == 3
    for item, line in zip(items, cart):
        assert item.item_name == line["name"]
        assert item.quantity == line["quantity"]
        assert item.subtotal == Decimal(str(line["price"])) * line["quantity"]


def test_catalog_name_is_snapshotted(client, catalog):
    cart = [{"id": 1, "type": "service", "name": "facial (typo)", "price": 150, "quantity": 1}]

    response = client.post("/api/payments", json=facial_checkout(cart_items=cart))

    assert response.json()["payment"]["payment_items"][0]["item_name"] == "Facial"


def test_price_must_match_catalog(client, catalog, db):
    cart = [{"id": 1, "type": "service", "name": "Facial", "price": 15, "quantity": 10}]

    response = client.post("/api/payments", json=facial_checkout(cart_items=cart))

    assert response.status_code == 422
    assert "does not match the catalog" in response.json()["detail"]
    assert db.query(Payment).count() == 0


def test_unknown_or_retired_catalog_item(client, catalog, db):
    for line in (
        {"id": 99, "type": "service", "name": "Ghost", "price": 10, "quantity": 1},
        {"id": 2, "type": "product", "name": "Old Cleanser", "price": 20, "quantity": 1},
    ):
        response = client.post("/api/payments", json=facial_checkout(cart_items=[line]))
        assert response.status_code == 422

    assert db.query(Payment).count() == 0


def test_unknown_client(client, catalog):
    response = client.post("/api/payments", json=facial_checkout(client_id=42))

    assert response.status_code == 404
    assert response.json()["detail"] == "Client not found"


def test_validation_errors(client, catalog):
    assert client.post("/api/payments", json=facial_checkout(amount=0)).status_code == 422
    assert client.post("/api/payments", json=facial_checkout(payment_method="gift-card")).status_code == 422

    bad_quantity = [{"id": 1, "type": "service", "name": "Facial", "price": 150, "quantity": 0}]
    assert client.post("/api/payments", json=facial_checkout(cart_items=bad_quantity)).status_code == 422


def test_same_idempotency_key_returns_existing_payment(client, catalog, db):
    headers = {"Idempotency-Key": "pos-checkout-1"}

    first = client.post("/api/payments", json=facial_checkout(), headers=headers)
    second = client.post("/api/payments", json=facial_checkout(), headers=headers)

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["replayed"] is True
    assert second.json()["payment"]["transaction_id"] == first.json()["payment"]["transaction_id"]
    assert db.query(Payment).count() == 1


def test_idempotency_key_in_body(client, catalog, db):
    payload = facial_checkout(idempotency_key="pos-checkout-2")

    client.post("/api/payments", json=payload)
    client.post("/api/payments", json=payload)

    assert db.query(Payment).count() == 1


def test_double_submit_without_key_creates_one_payment(client, catalog, db):
    first = client.post("/api/payments", json=facial_checkout())
    second = client.post("/api/payments", json=facial_checkout())

    assert second.json()["payment_id"] == first.json()["payment_id"]
    assert db.query(Payment).filter_by(status="completed").count() == 1


def test_different_carts_are_separate_payments(client, catalog, db):
    client.post("/api/payments", json=facial_checkout())
    client.post("/api/payments", json=facial_checkout(tips=20, amount=170))

    assert db.query(Payment).count() == 2


def test_idempotency_key_reused_for_another_cart(client, catalog, db):
    headers = {"Idempotency-Key": "pos-checkout-3"}
    botox = [{"id": 2, "type": "service", "name": "Botox", "price": 300, "quantity": 1}]

    first = client.post("/api/payments", json=facial_checkout(), headers=headers)
    second = client.post("/api/payments", json=facial_checkout(amount=300, cart_items=botox), headers=headers)

    assert first.status_code == 201
    assert second.status_code == 409
    assert db.query(Payment).count() == 1
    assert db.query(Payment).one().amount == Decimal("150.00")


def test_duplicates_that_both_miss_the_lookup_collide_on_insert(client, catalog, db, mocker):
    clock = mocker.patch("medspa_pos.checkout.time")
    clock.time.return_value = 1700000003.0
    real_lookup = checkout.find_existing_payment
    calls = []

    def lookup(*args):
        calls.append(args)
        # Both requests look before either has committed
        return None if len(calls) <= 2 else real_lookup(*args)

    mocker.patch("medspa_pos.checkout.find_existing_payment", side_effect=lookup)

    first = client.post("/api/payments", json=facial_checkout())
    second = client.post("/api/payments", json=facial_checkout())

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["replayed"] is True
    assert second.json()["payment_id"] == first.json()["payment_id"]
    assert db.query(Payment).count() == 1


def test_simultaneous_double_submit_creates_one_payment(client, catalog, db, mocker):
    clock = mocker.patch("medspa_pos.checkout.time")
    clock.time.return_value = 1700000003.0

    with ThreadPoolExecutor(max_workers=2) as pool:
        responses = list(pool.map(
            lambda _: client.post("/api/payments", json=facial_checkout()), range(2)
        ))

    assert sorted(r.status_code for r in responses) == [200, 201]
    assert len({r.json()["payment_id"] for r in responses}) == 1
    assert db.query(Payment).count() == 1


def test_keyed_requests_skip_the_duplicate_guard(client, catalog, db):
    client.post("/api/payments", json=facial_checkout(), headers={"Idempotency-Key": "a"})
    client.post("/api/payments", json=facial_checkout(), headers={"Idempotency-Key": "b"})

    assert db.query(Payment).count() == 2
    assert {p.duplicate_guard for p in db.query(Payment)} == {None}


def test_amount_below_cart_is_rejected(client, catalog, db, login):
    login("client-user-1", "client", client_id=1)
    botox = [{"id": 2, "type": "service", "name": "Botox", "price": 300, "quantity": 1}]

    response = client.post("/api/payments", json=facial_checkout(amount=1, cart_items=botox))

    assert response.status_code == 422
    assert "does not match the cart total" in response.json()["detail"]
    assert db.query(Payment).count() == 0


def test_amount_may_include_tax(client, catalog):
    response = client.post("/api/payments", json=facial_checkout(amount=163.13))

    assert response.status_code == 201
    assert response.json()["payment"]["amount"] == 163.13


def test_discounted_checkout(client, catalog):
    discount = {"discount_type": "percentage", "discount_value": 10}

    # 150 - 15.00 discount + 11.81 tax
    assert client.post("/api/payments", json=facial_checkout(amount=146.81, **discount)).status_code == 201
    assert client.post("/api/payments", json=facial_checkout(amount=135, **discount)).status_code == 201
    assert client.post("/api/payments", json=facial_checkout(amount=150, **discount)).status_code == 422


def test_discount_larger_than_cart(client, catalog):
    response = client.post("/api/payments", json=facial_checkout(discount_type="amount", discount_value=200))

    assert response.status_code == 422
    assert response.json()["detail"] == "Discount exceeds the cart subtotal"


def test_empty_cart_is_rejected(client, catalog, db):
    response = client.post("/api/payments", json=facial_checkout(cart_items=[]))

    assert response.status_code == 422
    assert response.json()["detail"] == "Cart is empty"
    assert db.query(Payment).count() == 0


def test_stripe_replay_returns_same_client_secret(client, catalog, mocker):
    intent = mock_intent(mocker)
    create = mocker.patch("stripe.PaymentIntent.create", return_value=intent)
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent)
    payload = facial_checkout(payment_method="stripe", idempotency_key="stripe-once")

    first = client.post("/api/payments", json=payload)
    second = client.post("/api/payments", json=payload)

    assert second.status_code == 200
    assert second.json()["client_secret"] == first.json()["client_secret"]
    create.assert_called_once()


def test_list_payments_uses_one_envelope(client, catalog):
    client.post("/api/payments", json=facial_checkout())
    client.post("/api/payments", json=facial_checkout(client_id=2))

    response = client.get("/api/payments")
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert len(body["data"]) == 2

    filtered = client.get("/api/payments", params={"client_id": 2}).json()
    assert [p["client_id"] for p in filtered["data"]] == [2]

    pending = client.get("/api/payments", params={"status": "pending"}).json()
    assert pending == {"data": [], "total": 0}


def test_client_role_sees_only_own_payments(client, catalog, login):
    client.post("/api/payments", json=facial_checkout())
    client.post("/api/payments", json=facial_checkout(client_id=2))

    login("client-user-2", "client", client_id=2)
    body = client.get("/api/payments").json()

    assert [p["client_id"] for p in body["data"]] == [2]
    other = body["data"][0]["id"] - 1
    assert client.get(f"/api/payments/{other}").status_code == 403


def test_client_cannot_pay_for_someone_else(client, catalog, login):
    login("client-user-2", "client", client_id=2)

    response = client.post("/api/payments", json=facial_checkout(client_id=1))

    assert response.status_code == 403


def test_get_payment(client, catalog):
    created = client.post("/api/payments", json=facial_checkout()).json()

    response = client.get(f"/api/payments/{created['payment_id']}")

    assert response.status_code == 200
    assert response.json()["transaction_id"] == created["payment"]["transaction_id"]
    assert client.get("/api/payments/999").status_code == 404


def test_receipt_is_a_pdf(client, catalog):
    created = client.post("/api/payments", json=facial_checkout(notes="Paid in full & thanked")).json()

    response = client.get(f"/api/payments/{created['payment_id']}/receipt")

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert f"receipt-{created['payment_id']}.pdf" in response.headers["content-disposition"]
    assert response.content.startswith(b"%PDF")


def test_receipt_unknown_payment(client):
    assert client.get("/api/payments/999/receipt").status_code == 404


def test_refund_cash_payment(client, catalog, mocker):
    refund = mocker.patch("stripe.Refund.create")
    created = client.post("/api/payments", json=facial_checkout()).json()

    response = client.post(f"/api/payments/{created['payment_id']}/refund")

    assert response.status_code == 200
    assert response.json()["payment"]["status"] == "refunded"
    refund.assert_not_called()

    again = client.post(f"/api/payments/{created['payment_id']}/refund")
    assert again.status_code == 409


def test_refund_requires_front_desk_or_admin(client, catalog, login):
    created = client.post("/api/payments", json=facial_checkout()).json()

    login("provider-1", "provider")
    response = client.post(f"/api/payments/{created['payment_id']}/refund")

    assert response.status_code == 403


def test_quote_uses_catalog_prices(client, catalog):
    response = client.post("/api/pos/quote", json={
        "items": [{"id": 1, "type": "service", "quantity": 1}, {"id": 1, "type": "product", "quantity": 2}],
        "discount_type": "percentage",
        "discount_value": 10,
        "tip": 5,
    })

    assert response.status_code == 200
    body = response.json()
    assert body["subtotal"] == 241.0
    assert body["discount_amount"] == 24.1
    assert body["tax_amount"] == 18.98
    assert body["total"] == 240.88


def test_quote_unknown_item(client, catalog):
    response = client.post("/api/pos/quote", json={"items": [{"id": 7, "type": "product"}]})
    assert response.status_code == 422


def test_stripe_error_keeps_pending_payment_for_retry(client, catalog, db, mocker):
    mocker.patch("stripe.PaymentIntent.create",
                 side_effect=stripe.error.APIConnectionError("Stripe unavailable"))

    response = client.post("/api/payments", json=facial_checkout(payment_method="stripe"))

    assert response.status_code == 502
    detail = response.json()["detail"]
    payment = db.get(Payment, detail["payment_id"])
    assert payment.status == "pending"
    assert payment.stripe_payment_intent_id is None
    assert len(payment.items) == 1

    # Retry is keyed by the same transaction id
    create = mocker.patch("stripe.PaymentIntent.create", return_value=mock_intent(mocker))
    retry = client.post(f"/api/payments/{payment.id}/intent")

    assert retry.status_code == 200
    assert retry.json()["client_secret"] == "pi_test_123_secret"
    assert create.call_args.kwargs["idempotency_key"] == detail["transaction_id"]
    db.expire_all()
    assert db.get(Payment, payment.id).stripe_payment_intent_id == "pi_test_123"


def test_retry_intent_rejects_cash_payment(client, catalog):
    created = client.post("/api/payments", json=facial_checkout()).json()

    assert client.post(f"/api/payments/{created['payment_id']}/intent").status_code == 404
