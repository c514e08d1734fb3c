# main.py
"""
FastAPI backend for the Giftiz storefront.
Single-process API providing:
- Sign-up with emailed verification code, password login + emailed one-time
  code, passwordless email login, trusted-device re-login, password reset
- Server-side sessions (TTL, heartbeat, close intent, one session per user)
- Public catalog: items, categories, search, contact form
- Admin inventory management, owner role/user/category management
- Session carts and Stripe checkout -> purchases
Run:
  uvicorn main:app --reload --port 3001
Notes:
  - State lives in a TinyDB file (AES-GCM encrypted unless DB_ENCRYPTION=false).
  - Seed an owner account with `python create_db.py`.
"""

import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from tinydb import where

import mailer
import payments
import settings
from backup_db import create_backup
from mailer import MailError
from payments import PaymentError
from security import (
    TRUSTED_DEVICE_PURPOSE,
    RESET_PURPOSE,
    client_ip,
    create_reset_token,
    create_trusted_device_token,
    decode_token,
    generate_code,
    hash_password,
    hit,
    rate_limit,
    read_token,
    too_many_requests,
    verify_password,
)
from sessions import (
    METHOD_EMAIL,
    METHOD_PASSWORD,
    TicketStatus,
    consume_login_ticket,
    create_login_ticket,
    create_session,
    get_session,
    mark_session_closing,
    remove_session,
    remove_user_sessions,
    require_admin_session,
    require_logged_in_session,
    require_owner_session,
    session_from_path,
    session_id_from_request,
    start_maintenance,
    touch_session,
)
from store import CATEGORIES, INVENTORY, PURCHASES, USERS, next_id, now_iso, now_ms, table
from validation import (
    collect_safe_images,
    contains_javascript_payload,
    format_human_timestamp,
    get_safe_text,
    is_clearing_image_value,
    normalize_email,
    normalize_password,
    read_json_body,
    sanitize_text,
    sanitize_url,
    to_integer,
    to_number,
    validate_required_fields,
)

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("giftiz.api")

JsonBody = Optional[Dict[str, Any]]


# ---------- Background jobs ----------
def auto_backup_loop(stop: threading.Event) -> None:
    """Runs in background and backs up the DB every BACKUP_INTERVAL_SECONDS"""
    while not stop.wait(settings.BACKUP_INTERVAL_SECONDS):
        try:
            create_backup()
        except OSError:
            logger.exception("[AUTO-BACKUP] Failed")


def start_auto_backup(stop: threading.Event) -> Optional[threading.Thread]:
    if settings.BACKUP_INTERVAL_SECONDS <= 0:
        return None
    thread = threading.Thread(target=auto_backup_loop, args=(stop,), name="auto-backup", daemon=True)
    thread.start()
    logger.info("[AUTO-BACKUP] Started, will backup every %ss", settings.BACKUP_INTERVAL_SECONDS)
    return thread


@asynccontextmanager
async def lifespan(app: FastAPI):
    stop = threading.Event()
    if settings.BACKGROUND_TASKS:
        start_maintenance(stop)
        start_auto_backup(stop)
    yield
    stop.set()


# ---------- Request guards ----------
TOO_LARGE_DETAIL = "The request is too large. Reduce the images and try again."


class BodySizeLimitMiddleware:
    """
    413 for request bodies above MAX_BODY_BYTES. A declared Content-Length is
    checked up front; chunked bodies are counted as they are received.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        limit = settings.MAX_BODY_BYTES
        length = dict(scope.get("headers") or []).get(b"content-length", b"")
        if length.isdigit() and int(length) > limit:
            await JSONResponse(status_code=413, content={"detail": TOO_LARGE_DETAIL})(scope, receive, send)
            return

        received = 0

        async def limited_receive():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    raise HTTPException(status_code=413, detail=TOO_LARGE_DETAIL)
            return message

        await self.app(scope, limited_receive, send)


async def block_javascript_payload(request: Request):
    body = await read_json_body(request)
    if (contains_javascript_payload(body)
            or contains_javascript_payload(dict(request.query_params))
            or contains_javascript_payload(request.path_params)):
        raise HTTPException(status_code=400, detail="Input cannot contain JavaScript code. Remove the code and try again.")


# ---------- App setup ----------
app = FastAPI(title="Giftiz Storefront API", lifespan=lifespan, dependencies=[Depends(block_javascript_payload)])

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(BodySizeLimitMiddleware)


@app.middleware("http")
async def limit_requests(request: Request, call_next):
    if not hit((client_ip(request), "global"), settings.GLOBAL_RATE_LIMIT, settings.GLOBAL_RATE_LIMIT_WINDOW_SECONDS):
        return too_many_requests()
    return await call_next(request)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled server error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Unexpected server error."})


# ---------- Helpers ----------
def attach_image_metadata(item: dict) -> dict:
    """Expose itemImages (normalized list) and itemImage (first image) for old and new records."""
    images = item.get("itemImages")
    if not (isinstance(images, list) and images):
        images = [item["itemImage"]] if item.get("itemImage") else []
    normalized, _ = collect_safe_images(images)
    out = dict(item)
    out["itemImages"] = normalized
    out["itemImage"] = normalized[0] if normalized else None
    return out


def load_inventory():
    return [attach_image_metadata(item) for item in table(INVENTORY).all()]


def category_exists(category_id: int) -> bool:
    return any(to_integer(c.get("id")) == category_id for c in table(CATEGORIES).all())


def find_user_by_id(user_id) -> Optional[dict]:
    return table(USERS).get(where("id").test(lambda v: str(v) == str(user_id)))


def find_user_by_email(email: str) -> Optional[dict]:
    return table(USERS).get(where("userEmail") == email)


def update_user(user: dict, fields: dict) -> None:
    table(USERS).update(fields, where("id") == user["id"])


def parse_images(payload: dict):
    """(provided, raw value) for the itemImages / itemImage request fields."""
    if "itemImages" in payload:
        return True, payload["itemImages"]
    if "itemImage" in payload:
        return True, payload["itemImage"]
    return False, None


def checked_images(raw) -> list:
    normalized, rejected = collect_safe_images(raw)
    if not normalized and rejected > 0 and not is_clearing_image_value(raw):
        raise HTTPException(
            status_code=400,
            detail="All the image links you provided were rejected. Use valid http/https URLs that do not point to internal hosts.",
        )
    return normalized


def session_response(session: dict, message: str) -> dict:
    return {
        "message": message,
        "sessionId": session["id"],
        "userId": session["userId"],
        "admin": bool(session["admin"]),
        "owner": bool(session["owner"]),
    }


TICKET_ERRORS = {
    TicketStatus.INVALID: (400, "The request is invalid."),
    TicketStatus.NOT_FOUND: (404, "The request was not found or has expired."),
    TicketStatus.METHOD_MISMATCH: (400, "The login method does not match."),
    TicketStatus.EXPIRED: (410, "The verification code has expired. Try again."),
    TicketStatus.MISMATCH: (400, "The verification code is incorrect."),
}


def finish_code_login(payload: dict, method: str, message: str) -> dict:
    ticket_id, code = payload.get("ticketId"), payload.get("code")
    if not ticket_id or not code:
        raise HTTPException(status_code=400, detail="Ticket id and verification code are required.")

    status, ticket = consume_login_ticket(ticket_id, code, method)
    if status in TICKET_ERRORS:
        status_code, detail = TICKET_ERRORS[status]
        raise HTTPException(status_code=status_code, detail=detail)

    session = create_session(ticket["userId"], admin=ticket.get("admin"), owner=ticket.get("owner"))
    logger.info("User %s logged in (%s)", ticket["userId"], method)
    resp = session_response(session, message)
    if payload.get("rememberDevice") is True:
        resp["trustedDeviceToken"] = create_trusted_device_token(ticket["userId"])
    return resp


# ---------- PUBLIC CATALOG ----------
@app.get("/items")
def list_items(categoryId: Optional[str] = None):
    inventory = load_inventory()
    if categoryId is None:
        return inventory
    category_id = to_integer(categoryId)
    if category_id is None:
        raise HTTPException(status_code=400, detail="Invalid category filter.")
    return [item for item in inventory if to_integer(item.get("categoryId")) == category_id]


@app.get("/categories")
def list_categories():
    return table(CATEGORIES).all()


@app.get("/search")
def search(q: Optional[str] = None, categoryId: Optional[str] = None):
    query = sanitize_text(q or "").lower()
    category_id = None
    if categoryId is not None:
        category_id = to_integer(categoryId)
        if category_id is None:
            raise HTTPException(status_code=400, detail="Invalid category filter.")

    categories = table(CATEGORIES).all()
    items = load_inventory()
    if category_id is not None:
        items = [item for item in items if to_integer(item.get("categoryId")) == category_id]

    if query:
        matching_items = [item for item in items if query in str(item.get("itemName") or "").lower()]
    else:
        matching_items = items if category_id is not None else []

    if category_id is not None:
        matching_categories = []
    elif query:
        matching_categories = [c for c in categories if query in str(c.get("name") or "").lower()]
    else:
        matching_categories = categories

    return {"items": matching_items, "categories": matching_categories}


@app.post("/contact-message")
def contact_message(payload: JsonBody = Body(None)):
    payload = payload or {}
    validate_required_fields([
        (payload.get("name"), "Name", "text"),
        (payload.get("email"), "Email", "email"),
        (payload.get("message"), "Message", "text"),
    ])
    try:
        mailer.send_contact_message(sanitize_text(payload["name"]), normalize_email(payload["email"]),
                                    sanitize_text(payload["message"]))
    except MailError:
        logger.exception("Contact email failed")
        raise HTTPException(status_code=500, detail="Sending the message failed. Try again later.")
    return {"message": "Message sent. We will get back to you soon."}


# ---------- AUTH ----------
@app.post("/signup")
@rate_limit(key="auth")
def signup(request: Request, payload: JsonBody = Body(None)):
    payload = payload or {}
    validate_required_fields([
        (payload.get("name"), "Name", "text"),
        (payload.get("pwd"), "Password", "password"),
        (payload.get("userEmail"), "Email", "email"),
    ])
    safe_name = sanitize_text(payload["name"])
    safe_email = normalize_email(payload["userEmail"])
    password = normalize_password(payload["pwd"])

    users = table(USERS)
    if users.get(where("userEmail") == safe_email):
        raise HTTPException(status_code=400, detail="Email already registered")
    if users.get(where("name") == safe_name):
        raise HTTPException(status_code=400, detail="Name already taken")

    code = generate_code()
    try:
        mailer.send_verification_code(safe_email, code)
    except MailError:
        logger.warning("Verification mail to %s failed", safe_email)
        raise HTTPException(status_code=400, detail="Email does not exist or cannot receive messages")

    # Only save user after the verification email was sent
    user = {
        "id": next_id(USERS),
        "name": safe_name,
        "pwd": hash_password(password),
        "userEmail": safe_email,
        "admin": False,
        "owner": False,
        "verified": False,
        "verificationCode": code,
        "verificationCodeExpiresAt": now_ms() + settings.VERIFICATION_CODE_TTL_SECONDS * 1000,
        "createdAt": now_iso(),
    }
    users.insert(user)
    return {"message": "User signed up successfully, verification email sent", "userId": user["id"]}


@app.post("/verify")
@rate_limit(key="auth")
def verify(request: Request, payload: JsonBody = Body(None)):
    payload = payload or {}
    validate_required_fields([
        (payload.get("userId"), "User ID", "text"),
        (payload.get("code"), "Verification code", "text"),
    ])
    user_id = to_integer(payload["userId"])
    if user_id is None:
        raise HTTPException(status_code=400, detail="User ID is invalid.")

    user = find_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    expires_at = user.get("verificationCodeExpiresAt")
    if expires_at and now_ms() > int(expires_at):
        update_user(user, {"verificationCode": None, "verificationCodeExpiresAt": None})
        raise HTTPException(status_code=410, detail="Verification code expired. Please request a new one.")

    stored = sanitize_text(user.get("verificationCode") or "")
    if not stored or stored != sanitize_text(payload["code"]):
        raise HTTPException(status_code=400, detail="Invalid verification code. Please try again.")

    update_user(user, {"verified": True, "verificationCode": None, "verificationCodeExpiresAt": None})
    session = create_session(user["id"], admin=bool(user.get("admin")), owner=bool(user.get("owner")))
    return {
        "message": "Email verified successfully",
        "sessionId": session["id"],
        "userId": user["id"],
        "admin": bool(user.get("admin")),
    }


@app.post("/login")
@rate_limit(key="auth")
def login(request: Request, payload: JsonBody = Body(None)):
    payload = payload or {}
    validate_required_fields([
        (payload.get("name"), "Name", "text"),
        (payload.get("pwd"), "Password", "password"),
    ])
    user = table(USERS).get(where("name") == sanitize_text(payload["name"]))
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("verified"):
        raise HTTPException(status_code=403, detail="Please verify your email before logging in.")
    if not verify_password(normalize_password(payload["pwd"]), user.get("pwd") or ""):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    email = normalize_email(user.get("userEmail"))
    if not email:
        raise HTTPException(status_code=500, detail="User email is invalid.")

    code = generate_code()
    try:
        mailer.send_login_code(email, code)
    except MailError:
        logger.exception("Failed to send primary login code")
        raise HTTPException(status_code=500, detail="The verification code cannot be sent right now. Try again in a few minutes.")

    ticket = create_login_ticket(user["id"], code, admin=bool(user.get("admin")), owner=bool(user.get("owner")),
                                 method=METHOD_PASSWORD)
    return {
        "message": "A verification code was sent to you. Enter it to complete the login.",
        "ticketId": ticket["id"],
        "requiresLoginCode": True,
    }


@app.post("/login/verify-code")
@rate_limit(key="auth")
def login_verify_code(request: Request, payload: JsonBody = Body(None)):
    return finish_code_login(payload or {}, METHOD_PASSWORD, "Verification completed successfully.")


@app.post("/login-email")
@rate_limit(key="auth")
def login_email(request: Request, payload: JsonBody = Body(None)):
    payload = payload or {}
    validate_required_fields([(payload.get("email"), "Email", "email")])
    safe_email = normalize_email(payload["email"])
    user = find_user_by_email(safe_email)
    if not user:
        raise HTTPException(status_code=404, detail="No user was found with this email address.")
    if not user.get("verified"):
        raise HTTPException(status_code=403, detail="The account is not verified yet. Please complete the sign-up.")

    code = generate_code()
    try:
        mailer.send_email_login_code(safe_email, code)
    except MailError:
        logger.exception("Failed to send email login code")
        raise HTTPException(status_code=500, detail="The verification code cannot be sent right now. Try again in a few minutes.")

    ticket = create_login_ticket(user["id"], code, admin=bool(user.get("admin")), owner=bool(user.get("owner")),
                                 method=METHOD_EMAIL)
    return {
        "message": "A verification code was emailed. Enter it to complete the login.",
        "ticketId": ticket["id"],
        "requiresEmailCode": True,
    }


@app.post("/login-email/verify-code")
@rate_limit(key="auth")
def login_email_verify_code(request: Request, payload: JsonBody = Body(None)):
    return finish_code_login(payload or {}, METHOD_EMAIL, "Login completed successfully.")


@app.post("/login/trusted")
@rate_limit(key="auth")
def login_trusted(request: Request, payload: JsonBody = Body(None)):
    payload = payload or {}
    if not payload.get("token"):
        raise HTTPException(status_code=400, detail="Token is required.")
    claims = decode_token(payload["token"], TRUSTED_DEVICE_PURPOSE)
    user = find_user_by_id(claims.get("sub"))
    if not user or not user.get("verified"):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    session = create_session(user["id"], admin=bool(user.get("admin")), owner=bool(user.get("owner")))
    resp = session_response(session, "Logged in from a trusted device.")
    resp["trustedDeviceToken"] = create_trusted_device_token(user["id"])
    return resp


@app.post("/forgot-password")
@rate_limit(key="auth")
def forgot_password(request: Request, payload: JsonBody = Body(None)):
    payload = payload or {}
    validate_required_fields([(payload.get("email"), "Email", "email")])
    safe_email = normalize_email(payload["email"])
    user = find_user_by_email(safe_email)
    if not user:
        raise HTTPException(status_code=404, detail="Email not found")

    code = generate_code()
    update_user(user, {
        "resetCode": code,
        "resetCodeExpiresAt": now_ms() + settings.RESET_CODE_TTL_SECONDS * 1000,
        "resetTokenId": None,
    })
    try:
        mailer.send_reset_code(safe_email, code)
    except MailError:
        logger.exception("Failed to send password reset code")
        raise HTTPException(status_code=500, detail="Failed to send email")
    return {"message": "Reset code sent to email"}


@app.post("/forgot-password/verify-code")
@rate_limit(key="auth")
def forgot_password_verify_code(request: Request, payload: JsonBody = Body(None)):
    payload = payload or {}
    validate_required_fields([
        (payload.get("email"), "Email", "email"),
        (payload.get("code"), "Verification code", "text"),
    ])
    safe_email = normalize_email(payload["email"])
    code = sanitize_text(payload["code"])

    user = find_user_by_email(safe_email)
    if not user or not user.get("resetCode"):
        raise HTTPException(status_code=404, detail="Reset request not found.")
    expires_at = user.get("resetCodeExpiresAt")
    if expires_at and now_ms() > int(expires_at):
        update_user(user, {"resetCode": None, "resetCodeExpiresAt": None})
        raise HTTPException(status_code=410, detail="Verification code expired. Please request a new one.")
    if str(user["resetCode"]) != code:
        raise HTTPException(status_code=400, detail="Verification code is incorrect.")

    token, token_id = create_reset_token(safe_email)
    update_user(user, {"resetCode": None, "resetCodeExpiresAt": None, "resetTokenId": token_id})
    return {"message": "Verification successful. Continue to set a new password.", "resetToken": token}


@app.post("/forgot-password/reset")
@rate_limit(key="auth")
def forgot_password_reset(request: Request, payload: JsonBody = Body(None)):
    payload = payload or {}
    validate_required_fields([
        (payload.get("email"), "Email", "email"),
        (payload.get("resetToken"), "Reset token", "text"),
        (payload.get("newPassword"), "New password", "password"),
    ])
    safe_email = normalize_email(payload["email"])
    new_password = normalize_password(payload["newPassword"])

    user = find_user_by_email(safe_email)
    if not user or not user.get("resetTokenId"):
        raise HTTPException(status_code=404, detail="Reset session not found.")

    claims = read_token(sanitize_text(payload["resetToken"]), RESET_PURPOSE)
    if not claims or claims.get("sub") != safe_email or claims.get("jti") != user["resetTokenId"]:
        raise HTTPException(status_code=400, detail="Reset token is incorrect or expired.")

    update_user(user, {"pwd": hash_password(new_password), "resetTokenId": None})
    remove_user_sessions(user["id"])
    logger.info("Password reset for user %s", user["id"])
    return {"message": "Password updated successfully. Log in with the new password."}


# ---------- SESSIONS ----------
@app.post("/logout")
def logout(session_id: Optional[str] = Depends(session_id_from_request)):
    if not session_id:
        raise HTTPException(status_code=400, detail="Session ID is required")
    if not remove_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"message": "Logged out successfully"}


@app.delete("/sessions/{session_id}")
def delete_session(session_id: str):
    if not remove_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"message": "Session deleted"}


@app.post("/sessions/{session_id}/ping")
def ping_session(session_id: str):
    touch_session(session_from_path(session_id))
    return {"message": "Session updated"}


@app.post("/sessions/{session_id}/close-intent")
def close_intent(session_id: str):
    if not mark_session_closing(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"message": "Session scheduled for closure."}


@app.get("/sessions/{session_id}/admin")
def session_admin(session_id: str):
    session = session_from_path(session_id)
    touch_session(session)
    return {"admin": bool(session.get("admin")), "owner": bool(session.get("owner"))}


@app.get("/sessions/{session_id}/owner-access")
def session_owner_access(session_id: str):
    session = session_from_path(session_id)
    if not session.get("owner"):
        raise HTTPException(status_code=403, detail="Owner privileges required.")
    touch_session(session)
    return {"owner": True}


# ---------- ADMIN INVENTORY ----------
@app.get("/admin/inventory")
def admin_list_inventory(session: dict = Depends(require_admin_session)):
    touch_session(session)
    return {"items": load_inventory()}


@app.post("/admin/inventory", status_code=201)
def admin_create_item(payload: JsonBody = Body(None), session: dict = Depends(require_admin_session)):
    payload = payload or {}
    validate_required_fields([(payload.get("itemName"), "Item name", "text")])

    quantity = to_integer(payload.get("itemQuantity"))
    price = to_number(payload.get("itemPriceILS"))
    if quantity is None or quantity < 0:
        raise HTTPException(status_code=400, detail="Item quantity must be a non-negative number.")
    if price is None or price < 0:
        raise HTTPException(status_code=400, detail="Item price must be a non-negative number.")

    category_id = to_integer(payload.get("itemCategoryId"))
    if category_id is None:
        raise HTTPException(status_code=400, detail="Category is required.")
    if not category_exists(category_id):
        raise HTTPException(status_code=400, detail="Category does not exist.")

    provided, raw_images = parse_images(payload)
    images = checked_images(raw_images) if provided else []

    item = {
        "id": next_id(INVENTORY),
        "itemName": sanitize_text(payload["itemName"]),
        "itemQuantity": quantity,
        "itemPriceILS": price,
        "categoryId": category_id,
        "itemImages": images,
        "itemImage": images[0] if images else None,
    }
    table(INVENTORY).insert(item)
    touch_session(session)
    logger.info("Item %s added by user %s", item["id"], session["userId"])
    return {"message": "Item added", "item": item}


@app.patch("/admin/inventory/{item_id}")
def admin_update_item(item_id: str, payload: JsonBody = Body(None), session: dict = Depends(require_admin_session)):
    payload = payload or {}
    normalized_id = to_integer(item_id)
    if normalized_id is None:
        raise HTTPException(status_code=400, detail="Item id is invalid.")

    has_quantity = "itemQuantity" in payload
    has_price = "itemPriceILS" in payload
    has_images, raw_images = parse_images(payload)
    has_category = "itemCategoryId" in payload
    if not (has_quantity or has_price or has_images or has_category):
        raise HTTPException(status_code=400, detail="Provide quantity, price, images, or category to update.")

    updates: Dict[str, Any] = {}
    if has_quantity:
        quantity = to_integer(payload["itemQuantity"])
        if quantity is None or quantity < 0:
            raise HTTPException(status_code=400, detail="Item quantity must be a non-negative number.")
        updates["itemQuantity"] = quantity
    if has_price:
        price = to_number(payload["itemPriceILS"])
        if price is None or price < 0:
            raise HTTPException(status_code=400, detail="Item price must be a non-negative number.")
        updates["itemPriceILS"] = price
    if has_category:
        category_id = to_integer(payload["itemCategoryId"])
        if category_id is None:
            raise HTTPException(status_code=400, detail="Category is invalid.")
        if not category_exists(category_id):
            raise HTTPException(status_code=400, detail="Category does not exist.")
        updates["categoryId"] = category_id

    inventory = table(INVENTORY)
    item = inventory.get(where("id") == normalized_id)
    if not item:
        raise HTTPException(status_code=404, detail="Item not found.")

    if has_images:
        images = checked_images(raw_images)
        updates["itemImages"] = images
        updates["itemImage"] = images[0] if images else None

    inventory.update(updates, where("id") == normalized_id)
    touch_session(session)
    return {"message": "Item updated", "item": attach_image_metadata(inventory.get(where("id") == normalized_id))}


@app.delete("/admin/inventory/{item_id}")
def admin_delete_item(item_id: str, session: dict = Depends(require_admin_session)):
    normalized_id = to_integer(item_id)
    if normalized_id is None:
        raise HTTPException(status_code=400, detail="Item id is invalid.")
    inventory = table(INVENTORY)
    item = inventory.get(where("id") == normalized_id)
    if not item:
        raise HTTPException(status_code=404, detail="Item not found.")
    inventory.remove(where("id") == normalized_id)
    touch_session(session)
    logger.info("Item %s removed by user %s", normalized_id, session["userId"])
    return {"message": "Item removed", "item": attach_image_metadata(item)}


# ---------- OWNER ----------
def _target_user(raw_user_id) -> dict:
    user_id = to_integer(raw_user_id)
    if user_id is None:
        raise HTTPException(status_code=400, detail="User ID is invalid.")
    user = find_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    return user


@app.post("/owner/actions/add-admin")
def owner_add_admin(payload: JsonBody = Body(None), session: dict = Depends(require_owner_session)):
    user = _target_user((payload or {}).get("userId"))
    if user.get("owner"):
        raise HTTPException(status_code=400, detail="Owner permissions cannot be modified via this action.")
    if user.get("admin"):
        raise HTTPException(status_code=400, detail="User already has admin privileges.")
    update_user(user, {"admin": True})
    remove_user_sessions(user["id"])
    touch_session(session)
    logger.info("Owner %s granted admin to user %s", session["userId"], user["id"])
    return {"message": "Admin privileges granted. The user will need to log in again to get access."}


@app.post("/owner/actions/remove-admin")
def owner_remove_admin(payload: JsonBody = Body(None), session: dict = Depends(require_owner_session)):
    user = _target_user((payload or {}).get("userId"))
    if user.get("owner"):
        raise HTTPException(status_code=400, detail="Cannot modify the owner account.")
    if not user.get("admin"):
        raise HTTPException(status_code=400, detail="User is not an admin.")
    update_user(user, {"admin": False})
    remove_user_sessions(user["id"])
    touch_session(session)
    logger.info("Owner %s revoked admin from user %s", session["userId"], user["id"])
    return {"message": "Admin privileges removed. The user will need to log in again without admin access."}


@app.delete("/owner/users/{user_id}")
def owner_delete_user(user_id: str, session: dict = Depends(require_owner_session)):
    user = _target_user(user_id)
    if user.get("owner"):
        raise HTTPException(status_code=400, detail="Cannot delete the owner account.")
    table(USERS).remove(where("id") == user["id"])
    remove_user_sessions(user["id"])
    touch_session(session)
    logger.info("Owner %s deleted user %s", session["userId"], user["id"])
    return {"message": "User deleted.", "user": {"id": user["id"], "userEmail": user.get("userEmail")}}


@app.post("/owner/categories", status_code=201)
def owner_create_category(payload: JsonBody = Body(None), session: dict = Depends(require_owner_session)):
    name = sanitize_text((payload or {}).get("name"))
    if not name:
        raise HTTPException(status_code=400, detail="Category name is required.")
    categories = table(CATEGORIES)
    if any(str(c.get("name") or "").lower() == name.lower() for c in categories.all()):
        raise HTTPException(status_code=400, detail="Category already exists.")
    category = {"id": next_id(CATEGORIES), "name": name}
    categories.insert(category)
    touch_session(session)
    return {"message": "Category created", "category": category}


@app.delete("/owner/categories/{category_id}")
def owner_delete_category(category_id: str, session: dict = Depends(require_owner_session)):
    normalized_id = to_integer(category_id)
    if normalized_id is None:
        raise HTTPException(status_code=400, detail="Category id is invalid.")
    categories = table(CATEGORIES)
    category = categories.get(where("id") == normalized_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found.")
    if any(to_integer(item.get("categoryId")) == normalized_id for item in table(INVENTORY).all()):
        raise HTTPException(status_code=400, detail="Cannot delete category in use by an item.")
    categories.remove(where("id") == normalized_id)
    touch_session(session)
    return {"message": "Category deleted", "category": dict(category)}


# ---------- CART ----------
@app.get("/cart/{session_id}")
def get_cart(session_id: str):
    session = session_from_path(session_id)
    touch_session(session)
    return {"cart": session["cart"], "userId": session["userId"]}


@app.post("/cart/{session_id}/items")
def cart_add(session_id: str, payload: JsonBody = Body(None)):
    payload = payload or {}
    if not payload.get("id") or not payload.get("name"):
        raise HTTPException(status_code=400, detail="Item id and name are required")
    validate_required_fields([(payload["name"], "Item name", "text")])
    safe_item_id = get_safe_text(payload["id"])
    if not safe_item_id:
        raise HTTPException(status_code=400, detail="Item id is invalid.")

    session = session_from_path(session_id)

    qty = to_number(payload.get("quantity", 1))
    if qty is None or qty <= 0:
        raise HTTPException(status_code=400, detail="Quantity must be a positive number.")
    qty = int(qty)
    if qty <= 0:
        raise HTTPException(status_code=400, detail="Quantity must be a positive number.")
    price = to_number(payload.get("priceILS", 0)) or 0.0

    product = next((i for i in load_inventory() if str(i.get("id")) == safe_item_id), None)
    image = sanitize_url(payload.get("imageUrl")) or (product or {}).get("itemImage") or ""
    name = sanitize_text(payload["name"]) or (product or {}).get("itemName") or "Item"

    if product is not None:
        stock = to_number(product.get("itemQuantity"))
        stock_limit = max(0, int(stock)) if stock is not None else settings.MAX_CART_ITEM_QUANTITY
    else:
        stock_limit = settings.MAX_CART_ITEM_QUANTITY
    if stock_limit <= 0:
        raise HTTPException(status_code=400, detail="The item is out of stock.")
    max_allowed = min(settings.MAX_CART_ITEM_QUANTITY, stock_limit)

    cart = session["cart"]
    existing = next((line for line in cart if line.get("id") == safe_item_id), None)
    if existing and existing.get("quantity", 0) > max_allowed:
        existing["quantity"] = max_allowed
    if qty + (existing.get("quantity", 0) if existing else 0) > max_allowed:
        raise HTTPException(status_code=400, detail=f"You can order up to {max_allowed} units of this item.")

    if existing:
        existing["quantity"] = existing.get("quantity", 0) + qty
        if not existing.get("imageUrl") and image:
            existing["imageUrl"] = image
        if not existing.get("name") and name:
            existing["name"] = name
    else:
        cart.append({"id": safe_item_id, "name": name, "quantity": qty, "priceILS": price, "imageUrl": image})

    touch_session(session)
    return {"cart": cart, "message": "Cart updated"}


@app.delete("/cart/{session_id}/items/{item_id}")
def cart_remove(session_id: str, item_id: str):
    session = session_from_path(session_id)
    safe_item_id = get_safe_text(item_id)
    if not safe_item_id:
        raise HTTPException(status_code=400, detail="Item id is invalid.")
    before = len(session["cart"])
    session["cart"] = [line for line in session["cart"] if str(line.get("id")) != safe_item_id]
    if len(session["cart"]) == before:
        raise HTTPException(status_code=404, detail="Item not found in cart")
    touch_session(session)
    return {"cart": session["cart"], "message": "Item removed"}


# ---------- CHECKOUT & ORDERS ----------
@app.post("/checkout/create-intent")
def checkout_create_intent(session_id: Optional[str] = Depends(session_id_from_request)):
    if not session_id:
        raise HTTPException(status_code=400, detail="Session ID is required")
    session = get_session(session_id)
    if not session:
        raise HTTPException(status_code=401, detail="Session not found or expired")
    if not session["cart"]:
        raise HTTPException(status_code=400, detail="Cart is empty")

    items, total = payments.cart_totals(session["cart"], load_inventory())
    if total <= 0:
        raise HTTPException(status_code=400, detail="Unable to calculate cart total")
    try:
        intent = payments.create_payment_intent(total, {"sessionId": session["id"], "userId": str(session["userId"])})
    except PaymentError:
        raise HTTPException(status_code=500, detail="Failed to initiate payment")

    touch_session(session)
    return {"clientSecret": intent.client_secret, "amountILS": total, "items": items}


@app.post("/checkout/complete")
def checkout_complete(payload: JsonBody = Body(None), session_id: Optional[str] = Depends(session_id_from_request)):
    payment_intent_id = get_safe_text((payload or {}).get("paymentIntentId"))
    if not session_id or not payment_intent_id:
        raise HTTPException(status_code=400, detail="Session ID and paymentIntentId are required")
    session = get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found or expired")

    purchases = table(PURCHASES)
    if purchases.get(where("paymentIntentId") == payment_intent_id):
        raise HTTPException(status_code=409, detail="Purchase already recorded")

    try:
        intent = payments.retrieve_payment_intent(payment_intent_id)
    except PaymentError:
        raise HTTPException(status_code=500, detail="Failed to finalize purchase")
    if intent.status != "succeeded":
        raise HTTPException(status_code=400, detail="Payment not completed")

    inventory = load_inventory()
    items, total = payments.cart_totals(session["cart"], inventory)
    if total <= 0:
        raise HTTPException(status_code=400, detail="Cart is empty")
    if not payments.intent_matches(intent, total, session["id"]):
        logger.warning("Payment intent %s does not match the cart of session %s", payment_intent_id, session["id"])
        raise HTTPException(status_code=400, detail="Payment does not match the cart")

    user = find_user_by_id(session["userId"])
    created_ms = now_ms()
    purchase = {
        "id": next_id(PURCHASES),
        "userId": session["userId"],
        "userEmail": (user or {}).get("userEmail"),
        "paymentIntentId": payment_intent_id,
        "items": items,
        "totalILS": total,
        "createdAt": now_iso(),
        "createdAtHuman": format_human_timestamp(created_ms),
    }
    purchases.insert(purchase)

    inventory_tbl = table(INVENTORY)
    for line in items:
        product_id = to_integer(line["id"])
        product = inventory_tbl.get(where("id") == product_id) if product_id is not None else None
        if product:
            remaining = max(0, int(product.get("itemQuantity") or 0) - line["quantity"])
            inventory_tbl.update({"itemQuantity": remaining}, where("id") == product_id)

    try:
        mailer.send_purchase_summary(purchase)
    except MailError:
        logger.exception("Failed to send purchase summary email")

    session["cart"] = []
    touch_session(session)
    logger.info("Purchase %s recorded for user %s (%.2f)", purchase["id"], session["userId"], total)
    return {"message": "Purchase recorded", "purchase": purchase}


@app.get("/orders/my")
def my_orders(session: dict = Depends(require_logged_in_session)):
    orders = table(PURCHASES).search(where("userId").test(lambda v: str(v) == str(session["userId"])))
    touch_session(session)
    return {"orders": sorted(orders, key=lambda o: o.get("id") or 0, reverse=True)}


@app.get("/config/stripe")
def stripe_config():
    if not settings.STRIPE_PUBLISHABLE_KEY:
        raise HTTPException(status_code=500, detail="Stripe publishable key is not configured.")
    return {"publishableKey": settings.STRIPE_PUBLISHABLE_KEY}


# ---------- Ping ----------
@app.get("/ping")
def ping():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=3001, reload=True)
