# security.py
import functools
import inspect
import secrets
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import jwt  # PyJWT
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from passlib.hash import pbkdf2_sha256

import settings
from store import ensure_secret

RESET_PURPOSE = "password_reset"
TRUSTED_DEVICE_PURPOSE = "trusted_device"


# ---------- Passwords & codes ----------
def hash_password(password: str) -> str:
    return pbkdf2_sha256.hash(password)


def verify_password(password: str, hashval: str) -> bool:
    try:
        return pbkdf2_sha256.verify(password, hashval)
    except (ValueError, TypeError):
        return False


def generate_code() -> str:
    """Six digit one-time code."""
    return str(100000 + secrets.randbelow(900000))


# ---------- Signed tokens ----------
def create_token(payload: dict, purpose: str, expires_in_seconds: int) -> str:
    to_encode = payload.copy()
    now = datetime.now(timezone.utc)
    to_encode.setdefault("jti", secrets.token_hex(16))
    to_encode.update({
        "purpose": purpose,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in_seconds),
    })
    return jwt.encode(to_encode, ensure_secret(), algorithm=settings.JWT_ALGORITHM)


def read_token(token: str, purpose: str) -> Optional[dict]:
    """Claims of a valid, unexpired token issued for `purpose`, otherwise None."""
    if not isinstance(token, str) or not token:
        return None
    try:
        data = jwt.decode(token, ensure_secret(), algorithms=[settings.JWT_ALGORITHM])
    except jwt.InvalidTokenError:
        return None
    if data.get("purpose") != purpose:
        return None
    return data


def decode_token(token: str, purpose: str) -> dict:
    data = read_token(token, purpose)
    if data is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return data


def create_reset_token(email: str) -> Tuple[str, str]:
    """Returns (token, jti); the jti is stored on the user so the token is single use."""
    jti = secrets.token_hex(16)
    return create_token({"sub": email, "jti": jti}, RESET_PURPOSE, settings.RESET_TOKEN_TTL_SECONDS), jti


def create_trusted_device_token(user_id: int) -> str:
    return create_token({"sub": str(user_id)}, TRUSTED_DEVICE_PURPOSE, settings.TRUSTED_DEVICE_TTL_DAYS * 86400)


# ---------- Simple In-Memory Rate Limiter ----------
rate_store: Dict[tuple, List[float]] = {}
_rate_lock = threading.Lock()


def _cleanup_old(ts_list: List[float], window: int) -> List[float]:
    now = time.time()
    return [t for t in ts_list if now - t < window]


def hit(store_key: tuple, limit: int, window: int) -> bool:
    """Record a request; False when the caller is over its limit."""
    with _rate_lock:
        arr = _cleanup_old(rate_store.get(store_key, []), window)
        if len(arr) >= limit:
            if arr:
                rate_store[store_key] = arr
            else:
                rate_store.pop(store_key, None)
            return False
        arr.append(time.time())
        rate_store[store_key] = arr
        return True


def prune_rate_store(window: Optional[int] = None) -> int:
    """Forget clients with no hit inside the widest limiter window. Returns how many were dropped."""
    span = window if window is not None else max(settings.GLOBAL_RATE_LIMIT_WINDOW_SECONDS,
                                                  settings.AUTH_RATE_LIMIT_WINDOW_SECONDS)
    now = time.time()
    with _rate_lock:
        stale = [key for key, ts_list in rate_store.items() if not ts_list or now - max(ts_list) >= span]
        for key in stale:
            del rate_store[key]
    return len(stale)


def client_ip(request: Optional[Request]) -> str:
    return request.client.host if request and request.client else "unknown"


def too_many_requests(detail: str = "Too many requests. Try again in a few minutes.") -> JSONResponse:
    return JSONResponse(status_code=429, content={"detail": detail})


def rate_limit(key: str, limit: Optional[int] = None, window: Optional[int] = None):
    """
    Per-IP limit for a group of routes. When limit/window are omitted the auth
    limiter settings apply (read on every call so they can be tuned at runtime).
    The wrapped route must take a `request: Request` argument.
    """
    def decorator(func: Callable):
        def _allowed(args, kwargs) -> bool:
            request = kwargs.get("request")
            if request is None:
                request = next((a for a in args if isinstance(a, Request)), None)
            max_hits = limit if limit is not None else settings.AUTH_RATE_LIMIT
            span = window if window is not None else settings.AUTH_RATE_LIMIT_WINDOW_SECONDS
            return hit((client_ip(request), key), max_hits, span)

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                if not _allowed(args, kwargs):
                    return too_many_requests("Too many authentication attempts. Wait a little and try again.")
                return await func(*args, **kwargs)
            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            if not _allowed(args, kwargs):
                return too_many_requests("Too many authentication attempts. Wait a little and try again.")
            return func(*args, **kwargs)
        return sync_wrapper
    return decorator
