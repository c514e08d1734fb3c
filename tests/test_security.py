import time

import jwt

import sessions
import settings
import store
from security import (
    RESET_PURPOSE,
    TRUSTED_DEVICE_PURPOSE,
    create_reset_token,
    create_token,
    create_trusted_device_token,
    generate_code,
    hash_password,
    hit,
    prune_rate_store,
    rate_store,
    read_token,
    verify_password,
)


def test_password_hashing():
    hashed = hash_password("Secret123!")
    assert hashed.startswith("$pbkdf2-sha256$")
    assert verify_password("Secret123!", hashed)
    assert not verify_password("secret123!", hashed)
    assert not verify_password("Secret123!", "not-a-hash")


def test_generate_code_is_six_digits():
    codes = {generate_code() for _ in range(50)}
    assert all(len(c) == 6 and c.isdigit() for c in codes)
    assert len(codes) > 1


def test_reset_token_round_trip():
    token, jti = create_reset_token("noa@example.com")
    claims = read_token(token, RESET_PURPOSE)
    assert claims["sub"] == "noa@example.com"
    assert claims["jti"] == jti


def test_token_purpose_is_enforced():
    token = create_trusted_device_token(7)
    assert read_token(token, TRUSTED_DEVICE_PURPOSE)["sub"] == "7"
    assert read_token(token, RESET_PURPOSE) is None


def test_expired_and_foreign_tokens_are_rejected():
    expired = create_token({"sub": "x"}, RESET_PURPOSE, expires_in_seconds=-10)
    assert read_token(expired, RESET_PURPOSE) is None

    forged = jwt.encode({"sub": "x", "purpose": RESET_PURPOSE, "exp": int(time.time()) + 60},
                        "a-different-secret-of-reasonable-length", algorithm=settings.JWT_ALGORITHM)
    assert read_token(forged, RESET_PURPOSE) is None
    assert read_token("", RESET_PURPOSE) is None
    assert read_token(None, RESET_PURPOSE) is None


def test_tokens_are_signed_with_master_secret():
    token = create_trusted_device_token(1)
    claims = jwt.decode(token, store.ensure_secret(), algorithms=[settings.JWT_ALGORITHM])
    assert claims["purpose"] == TRUSTED_DEVICE_PURPOSE


def test_hit_limits_per_key():
    key = ("1.2.3.4", "auth")
    assert hit(key, 2, 60)
    assert hit(key, 2, 60)
    assert not hit(key, 2, 60)
    assert hit(("5.6.7.8", "auth"), 2, 60)


def test_hit_forgets_requests_outside_window():
    key = ("1.2.3.4", "auth")
    rate_store[key] = [time.time() - 120, time.time() - 90]
    assert hit(key, 2, 60)
    assert len(rate_store[key]) == 1


def test_rejected_hit_leaves_no_empty_entry():
    key = ("1.2.3.4", "auth")
    assert not hit(key, 0, 60)
    assert key not in rate_store


def test_prune_rate_store_drops_idle_clients():
    now = time.time()
    rate_store[("10.0.0.1", "global")] = [now - 500, now - 400]
    rate_store[("10.0.0.2", "global")] = [now - 500, now - 5]
    rate_store[("10.0.0.3", "auth")] = []

    assert prune_rate_store(window=300) == 2
    assert list(rate_store) == [("10.0.0.2", "global")]


def test_many_distinct_clients_do_not_accumulate(monkeypatch):
    monkeypatch.setattr(settings, "GLOBAL_RATE_LIMIT_WINDOW_SECONDS", 60)
    monkeypatch.setattr(settings, "AUTH_RATE_LIMIT_WINDOW_SECONDS", 30)
    for i in range(500):
        assert hit((f"10.1.{i // 256}.{i % 256}", "global"), 10, 60)
    assert len(rate_store) == 500

    later = time.time() + 61
    monkeypatch.setattr(time, "time", lambda: later)
    sessions.run_maintenance()
    assert rate_store == {}
