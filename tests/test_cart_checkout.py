from types import SimpleNamespace

from tinydb import where

import payments
import settings
import store
from payments import PaymentError, cart_totals


def _add(client, session_id, item_id, quantity=1, name="Birthday Box", **extra):
    return client.post(f"/cart/{session_id}/items",
                       json={"id": item_id, "name": name, "quantity": quantity, "priceILS": 1, **extra})


# ---------- Cart ----------
def test_empty_cart(client, customer_session):
    resp = client.get(f"/cart/{customer_session}")
    assert resp.status_code == 200
    assert resp.json()["cart"] == []


def test_unknown_session_cart(client):
    assert client.get("/cart/nope").status_code == 404
    assert _add(client, "nope", "1").status_code == 404


def test_add_merges_lines_and_uses_catalog_image(client, catalog, customer_session):
    _add(client, customer_session, "1", 2)
    resp = _add(client, customer_session, "1", 1)
    assert resp.status_code == 200
    cart = resp.json()["cart"]
    assert len(cart) == 1
    assert cart[0]["quantity"] == 3
    assert cart[0]["imageUrl"] == "https://cdn.example.com/box.png"
    assert client.get(f"/cart/{customer_session}").json()["cart"][0]["quantity"] == 3


def test_add_is_capped_by_stock(client, catalog, customer_session):
    resp = _add(client, customer_session, "3", 4, name="Mini Box")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "You can order up to 3 units of this item."


def test_add_out_of_stock(client, catalog, customer_session):
    resp = _add(client, customer_session, "2", 1, name="Rose Bouquet")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "The item is out of stock."


def test_add_is_capped_per_line_for_unknown_items(client, customer_session):
    assert _add(client, customer_session, "gift-card", settings.MAX_CART_ITEM_QUANTITY, name="Gift card").status_code == 200
    resp = _add(client, customer_session, "gift-card", 1, name="Gift card")
    assert resp.status_code == 400


def test_add_validation(client, catalog, customer_session):
    assert client.post(f"/cart/{customer_session}/items", json={"id": "1"}).status_code == 400
    assert _add(client, customer_session, "1", 0).status_code == 400
    assert _add(client, customer_session, "1", "lots").status_code == 400


def test_remove_from_cart(client, catalog, customer_session):
    _add(client, customer_session, "1")
    resp = client.delete(f"/cart/{customer_session}/items/1")
    assert resp.status_code == 200
    assert resp.json()["cart"] == []
    assert client.delete(f"/cart/{customer_session}/items/1").status_code == 404


def test_cart_totals_prefer_catalog_prices():
    inventory = [{"id": 1, "itemName": "Box", "itemPriceILS": 100.0, "itemImages": ["/a.png"]}]
    cart = [
        {"id": "1", "name": "Box", "quantity": 2, "priceILS": 1},
        {"id": "gone", "name": "Old", "quantity": 1, "priceILS": 15},
    ]
    items, total = cart_totals(cart, inventory)
    assert total == 215.0
    assert items[0]["subtotal"] == 200.0
    assert items[0]["imageUrl"] == "/a.png"
    assert items[1]["priceILS"] == 15.0


def test_to_minor_units():
    assert payments.to_minor_units(20.5) == 2050
    assert payments.to_minor_units(0.1 + 0.2) == 30


# ---------- Checkout ----------
def test_create_intent_charges_catalog_total(client, catalog, customer_session, fake_stripe):
    _add(client, customer_session, "1", 2)
    _add(client, customer_session, "3", 1, name="Mini Box")

    resp = client.post("/checkout/create-intent", json={"sessionId": customer_session})
    assert resp.status_code == 200
    body = resp.json()
    assert body["clientSecret"] == "pi_test_1_secret_abc"
    assert body["amountILS"] == 220.5
    assert fake_stripe.created[0]["amount"] == 220.5
    assert fake_stripe.created[0]["metadata"]["sessionId"] == customer_session


def test_create_intent_errors(client, customer_session, fake_stripe):
    assert client.post("/checkout/create-intent", json={}).status_code == 400
    assert client.post("/checkout/create-intent", json={"sessionId": "nope"}).status_code == 401
    resp = client.post("/checkout/create-intent", json={"sessionId": customer_session})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Cart is empty"


def test_create_intent_payment_failure(client, catalog, customer_session, monkeypatch):
    def broken(amount, metadata):
        raise PaymentError("card network down")

    monkeypatch.setattr(payments, "create_payment_intent", broken)
    _add(client, customer_session, "1")
    resp = client.post("/checkout/create-intent", json={"sessionId": customer_session})
    assert resp.status_code == 500


def _pay(client, session_id, fake_stripe):
    """Create an intent for the current cart and return its id."""
    assert client.post("/checkout/create-intent", json={"sessionId": session_id}).status_code == 200
    return fake_stripe.created[-1]["id"]


def _complete(client, session_id, intent_id):
    return client.post("/checkout/complete", json={"sessionId": session_id, "paymentIntentId": intent_id})


def test_complete_records_purchase(client, catalog, customer_session, fake_stripe, outbox):
    _add(client, customer_session, "1", 2)
    resp = _complete(client, customer_session, _pay(client, customer_session, fake_stripe))
    assert resp.status_code == 200
    purchase = resp.json()["purchase"]
    assert purchase["totalILS"] == 200.0
    assert purchase["userEmail"] == "alice@example.com"
    assert purchase["items"][0]["quantity"] == 2

    # stock decremented, cart cleared, sales inbox notified
    assert store.table(store.INVENTORY).get(where("id") == 1)["itemQuantity"] == 3
    assert client.get(f"/cart/{customer_session}").json()["cart"] == []
    assert outbox[-1]["to"] == settings.PURCHASES_INBOX
    assert "Order number: 1" in outbox[-1]["body"]


def test_complete_twice_is_conflict(client, catalog, customer_session, fake_stripe):
    _add(client, customer_session, "1")
    intent_id = _pay(client, customer_session, fake_stripe)
    assert _complete(client, customer_session, intent_id).status_code == 200
    _add(client, customer_session, "1")
    assert _complete(client, customer_session, intent_id).status_code == 409


def test_complete_requires_succeeded_payment(client, catalog, customer_session, fake_stripe):
    _add(client, customer_session, "1")
    intent_id = _pay(client, customer_session, fake_stripe)
    fake_stripe.status = "requires_payment_method"
    assert _complete(client, customer_session, intent_id).status_code == 400
    assert store.table(store.PURCHASES).all() == []


def test_complete_rejects_cart_grown_after_payment(client, catalog, customer_session, fake_stripe):
    _add(client, customer_session, "3", 1, name="Mini Box")
    intent_id = _pay(client, customer_session, fake_stripe)
    _add(client, customer_session, "1", 5)

    resp = _complete(client, customer_session, intent_id)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Payment does not match the cart"
    assert store.table(store.PURCHASES).all() == []
    assert store.table(store.INVENTORY).get(where("id") == 1)["itemQuantity"] == 5


def test_complete_rejects_intent_of_another_session(client, catalog, customer_session, fake_stripe):
    _add(client, customer_session, "1")
    intent_id = _pay(client, customer_session, fake_stripe)
    fake_stripe.intents[intent_id].metadata["sessionId"] = "someone-else"

    assert _complete(client, customer_session, intent_id).status_code == 400
    assert store.table(store.PURCHASES).all() == []


def test_complete_rejects_unknown_intent(client, catalog, customer_session, fake_stripe):
    _add(client, customer_session, "1")
    assert _complete(client, customer_session, "pi_never_created").status_code == 400


def test_intent_matches():
    intent = SimpleNamespace(amount=2050, metadata={"sessionId": "s1"})
    assert payments.intent_matches(intent, 20.5, "s1")
    assert not payments.intent_matches(intent, 20.5, "s2")
    assert not payments.intent_matches(intent, 21.0, "s1")
    assert not payments.intent_matches(SimpleNamespace(amount=2050, metadata=None), 20.5, "s1")


def test_complete_errors(client, customer_session, fake_stripe):
    assert client.post("/checkout/complete", json={"sessionId": customer_session}).status_code == 400
    assert _complete(client, "nope", "pi").status_code == 404
    resp = _complete(client, customer_session, "pi")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Cart is empty"


def test_complete_survives_mail_failure(client, catalog, customer_session, fake_stripe, failing_mail):
    _add(client, customer_session, "1")
    resp = _complete(client, customer_session, _pay(client, customer_session, fake_stripe))
    assert resp.status_code == 200
    assert len(store.table(store.PURCHASES).all()) == 1


def test_my_orders_newest_first(client, catalog, customer_session, fake_stripe):
    intent_ids = []
    for _ in range(2):
        _add(client, customer_session, "3", 1, name="Mini Box")
        intent_ids.append(_pay(client, customer_session, fake_stripe))
        assert _complete(client, customer_session, intent_ids[-1]).status_code == 200
    store.table(store.PURCHASES).insert({"id": 99, "userId": 12345, "paymentIntentId": "pi_other", "items": []})

    resp = client.get("/orders/my", headers={"x-session-id": customer_session})
    assert resp.status_code == 200
    assert [o["paymentIntentId"] for o in resp.json()["orders"]] == intent_ids[::-1]


def test_my_orders_requires_session(client):
    assert client.get("/orders/my").status_code == 401


def test_payment_intent_wraps_stripe_errors(monkeypatch):
    import stripe

    def raise_error(**kwargs):
        raise stripe.StripeError("boom")

    monkeypatch.setattr(stripe.PaymentIntent, "create", raise_error)
    try:
        payments.create_payment_intent(10.0, {})
    except PaymentError as e:
        assert "boom" in str(e)
    else:
        raise AssertionError("PaymentError not raised")


def test_retrieve_payment_intent_passes_api_key(monkeypatch):
    import stripe

    seen = {}

    def fake_retrieve(intent_id, **kwargs):
        seen.update(kwargs, id=intent_id)
        return SimpleNamespace(id=intent_id, status="succeeded")

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_x")
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)
    assert payments.retrieve_payment_intent("pi_1").status == "succeeded"
    assert seen == {"id": "pi_1", "api_key": "sk_test_x"}
