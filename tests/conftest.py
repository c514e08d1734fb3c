"""Shared fixtures: an isolated TinyDB per test, a fake SMTP outbox and a fake Stripe."""

import re
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

import mailer
import payments
import security
import sessions
import settings
import store
from security import hash_password


@pytest.fixture(autouse=True)
def isolated_store(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DB_FILE", str(tmp_path / "giftiz.json"))
    monkeypatch.setattr(settings, "SECRET_FILE", str(tmp_path / ".secret_key"))
    monkeypatch.setattr(settings, "BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setattr(settings, "BACKGROUND_TASKS", False)
    monkeypatch.setattr(settings, "AUTH_RATE_LIMIT", 1000)
    monkeypatch.setattr(settings, "MAX_SESSIONS_PER_USER", 1)
    store.reset_db()
    security.rate_store.clear()
    yield
    store.reset_db()


class Outbox(list):
    def last_code(self, to=None):
        for msg in reversed(self):
            if to is None or msg["to"] == to:
                return re.search(r"\d{6}", msg["body"]).group(0)
        raise AssertionError(f"no mail sent to {to}")


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    sent = Outbox()

    def fake_send(to, subject, body, sender):
        sent.append({"to": to, "subject": subject, "body": body, "from": sender})

    monkeypatch.setattr(mailer, "send_mail", fake_send)
    return sent


@pytest.fixture
def failing_mail(monkeypatch):
    def broken_send(to, subject, body, sender):
        raise mailer.MailError("smtp down")

    monkeypatch.setattr(mailer, "send_mail", broken_send)


@pytest.fixture
def client():
    from main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def clock(monkeypatch):
    class Clock:
        now = 1_700_000_000_000

        def __call__(self):
            return self.now

        def advance(self, seconds):
            self.now += int(seconds * 1000)

    c = Clock()
    monkeypatch.setattr(sessions, "now_ms", c)
    return c


@pytest.fixture
def make_user():
    def _make(name="alice", email="alice@example.com", password="Secret123!", admin=False, owner=False, verified=True):
        user = {
            "id": store.next_id(store.USERS),
            "name": name,
            "pwd": hash_password(password),
            "userEmail": email,
            "admin": admin,
            "owner": owner,
            "verified": verified,
            "createdAt": store.now_iso(),
        }
        store.table(store.USERS).insert(user)
        return user
    return _make


def _session_for(user):
    return sessions.create_session(user["id"], admin=user["admin"], owner=user["owner"])["id"]


@pytest.fixture
def customer_session(make_user):
    return _session_for(make_user())


@pytest.fixture
def admin_session(make_user):
    return _session_for(make_user(name="admin", email="admin@giftiz.com", admin=True))


@pytest.fixture
def owner_session(make_user):
    return _session_for(make_user(name="owner", email="owner@giftiz.com", admin=True, owner=True))


@pytest.fixture
def catalog():
    store.table(store.CATEGORIES).insert_multiple([
        {"id": 1, "name": "Gift Boxes"},
        {"id": 2, "name": "Flowers"},
    ])
    items = [
        {"id": 1, "itemName": "Birthday Box", "itemQuantity": 5, "itemPriceILS": 100.0, "categoryId": 1,
         "itemImages": ["https://cdn.example.com/box.png"], "itemImage": "https://cdn.example.com/box.png"},
        {"id": 2, "itemName": "Rose Bouquet", "itemQuantity": 0, "itemPriceILS": 50.0, "categoryId": 2,
         "itemImages": [], "itemImage": None},
        {"id": 3, "itemName": "Mini Box", "itemQuantity": 3, "itemPriceILS": 20.5, "categoryId": 1,
         "itemImage": "/images/mini.png"},
    ]
    store.table(store.INVENTORY).insert_multiple(items)
    return items


@pytest.fixture
def fake_stripe(monkeypatch):
    calls = SimpleNamespace(created=[], intents={}, status="succeeded")

    def create(amount, metadata):
        intent_id = f"pi_test_{len(calls.created) + 1}"
        calls.created.append({"id": intent_id, "amount": amount, "metadata": metadata})
        calls.intents[intent_id] = SimpleNamespace(
            id=intent_id, amount=payments.to_minor_units(amount), metadata=dict(metadata),
        )
        return SimpleNamespace(id=intent_id, client_secret=f"{intent_id}_secret_abc")

    def retrieve(payment_intent_id):
        intent = calls.intents.get(payment_intent_id) or SimpleNamespace(id=payment_intent_id, amount=0, metadata={})
        intent.status = calls.status
        return intent

    monkeypatch.setattr(payments, "create_payment_intent", create)
    monkeypatch.setattr(payments, "retrieve_payment_intent", retrieve)
    return calls
