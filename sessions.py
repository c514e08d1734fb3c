# sessions.py
"""
Server-side sessions and one-time-code login tickets.

A session maps an opaque id to a user, the user's role flags at login time and
the shopping cart. It stays alive while the browser keeps calling the API
(or pinging the heartbeat route) and ends on logout, after
SESSION_TTL_SECONDS of inactivity, or shortly after a close intent when no
heartbeat cancels it.

A login ticket is created once a password or an email address has been
checked and a code was mailed; confirming the code consumes the ticket and
opens a session.
"""

import logging
import threading
import uuid
from enum import Enum
from typing import Optional, Tuple

from fastapi import Depends, HTTPException, Request
from tinydb import where

import settings
from security import prune_rate_store
from store import LOGIN_TICKETS, SESSIONS, now_ms, table
from validation import format_human_timestamp, get_safe_text, read_json_body, sanitize_text

logger = logging.getLogger("giftiz.sessions")

METHOD_PASSWORD = "password"
METHOD_EMAIL = "email"


class TicketStatus(str, Enum):
    OK = "ok"
    INVALID = "invalid"
    NOT_FOUND = "not_found"
    METHOD_MISMATCH = "method_mismatch"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


def generate_session_id() -> str:
    return str(uuid.uuid4())


# ---------- Sessions ----------
def _expired(session: dict, now: int) -> bool:
    closing = session.get("closingSoonExpiresAt")
    if closing and now >= closing:
        return True
    return now - (session.get("lastSeen") or 0) > settings.SESSION_TTL_SECONDS * 1000


def is_session_live(session: dict, now: Optional[int] = None) -> bool:
    now = now_ms() if now is None else now
    return bool(session.get("loggedIn")) and not _expired(session, now)


def create_session(user_id, admin: bool = False, owner: bool = False, logged_in: bool = True) -> dict:
    """Open a session, evicting the user's least recently seen ones beyond MAX_SESSIONS_PER_USER."""
    tbl = table(SESSIONS)
    if settings.MAX_SESSIONS_PER_USER > 0:
        same_user = sorted(
            tbl.search(where("userId").test(lambda v: str(v) == str(user_id))),
            key=lambda s: (s.get("lastSeen") or 0, s.doc_id),
            reverse=True,
        )
        keep = max(0, settings.MAX_SESSIONS_PER_USER - 1)
        evicted = [s["id"] for s in same_user[keep:]]
        if evicted:
            tbl.remove(where("id").one_of(evicted))
            logger.info("Evicted %d session(s) of user %s", len(evicted), user_id)

    session = {
        "id": generate_session_id(),
        "userId": user_id,
        "loggedIn": bool(logged_in),
        "cart": [],
        "lastSeen": now_ms(),
        "admin": bool(admin),
        "owner": bool(owner),
        "closingSoonExpiresAt": None,
    }
    tbl.insert(session)
    return session


def get_session(session_id) -> Optional[dict]:
    safe_id = get_safe_text(session_id)
    if not safe_id:
        return None
    doc = table(SESSIONS).get(where("id") == safe_id)
    if not doc:
        return None
    session = dict(doc)
    if not is_session_live(session):
        table(SESSIONS).remove(where("id") == safe_id)
        return None
    if not isinstance(session.get("cart"), list):
        session["cart"] = []
    return session


def touch_session(session: dict) -> None:
    """Mark activity and persist the record, including any cart change made on it."""
    session["lastSeen"] = now_ms()
    session["closingSoonExpiresAt"] = None
    table(SESSIONS).update(session, where("id") == session["id"])


def remove_session(session_id) -> bool:
    safe_id = get_safe_text(session_id)
    if not safe_id:
        return False
    return bool(table(SESSIONS).remove(where("id") == safe_id))


def remove_user_sessions(user_id) -> int:
    removed = table(SESSIONS).remove(where("userId").test(lambda v: str(v) == str(user_id)))
    return len(removed)


def mark_session_closing(session_id, grace_seconds: Optional[float] = None) -> Optional[dict]:
    session = get_session(session_id)
    if not session:
        return None
    grace = settings.SESSION_CLOSE_GRACE_SECONDS if grace_seconds is None else grace_seconds
    session["closingSoonExpiresAt"] = now_ms() + int(max(1.0, float(grace)) * 1000)
    table(SESSIONS).update({"closingSoonExpiresAt": session["closingSoonExpiresAt"]}, where("id") == session["id"])
    return session


def cleanup_sessions() -> int:
    """Drop closed, logged-out and inactive sessions."""
    now = now_ms()
    tbl = table(SESSIONS)
    stale = [doc.doc_id for doc in tbl.all() if not is_session_live(doc, now)]
    if stale:
        tbl.remove(doc_ids=stale)
    return len(stale)


# ---------- Login tickets ----------
def create_login_ticket(user_id, code: str, admin: bool, owner: bool, method: str = METHOD_PASSWORD) -> dict:
    """Only one pending ticket per user and method: a new code replaces the old one."""
    tbl = table(LOGIN_TICKETS)
    tbl.remove(where("userId").test(lambda v: str(v) == str(user_id)) & (where("method") == method))
    created_at = now_ms()
    expires_at = created_at + settings.LOGIN_CODE_TTL_SECONDS * 1000
    ticket = {
        "id": generate_session_id(),
        "userId": user_id,
        "code": str(code),
        "admin": bool(admin),
        "owner": bool(owner),
        "method": method or METHOD_PASSWORD,
        "createdAt": created_at,
        "createdAtHuman": format_human_timestamp(created_at),
        "expiresAt": expires_at,
        "expiresAtHuman": format_human_timestamp(expires_at),
    }
    tbl.insert(ticket)
    return ticket


def consume_login_ticket(ticket_id, code, method: Optional[str] = None) -> Tuple[TicketStatus, Optional[dict]]:
    safe_id = get_safe_text(ticket_id)
    normalized_code = sanitize_text("" if code is None else str(code))
    if not safe_id or not normalized_code:
        return TicketStatus.INVALID, None

    tbl = table(LOGIN_TICKETS)
    doc = tbl.get(where("id") == safe_id)
    if not doc:
        return TicketStatus.NOT_FOUND, None
    ticket = dict(doc)
    if method and ticket.get("method") != method:
        return TicketStatus.METHOD_MISMATCH, None
    if ticket.get("expiresAt") and now_ms() > ticket["expiresAt"]:
        tbl.remove(where("id") == safe_id)
        return TicketStatus.EXPIRED, None
    if str(ticket.get("code")) != normalized_code:
        return TicketStatus.MISMATCH, None
    tbl.remove(where("id") == safe_id)
    return TicketStatus.OK, ticket


def purge_expired_login_tickets() -> int:
    now = now_ms()
    removed = table(LOGIN_TICKETS).remove(where("expiresAt").test(lambda v: bool(v) and now > v))
    return len(removed)


# ---------- Request helpers ----------
async def session_id_from_request(request: Request) -> Optional[str]:
    """Session id from the JSON body, the query string or the x-session-id header."""
    body = await read_json_body(request)
    candidate = body.get("sessionId") if isinstance(body, dict) else None
    candidate = candidate or request.query_params.get("sessionId") or request.headers.get("x-session-id")
    return get_safe_text(candidate) if candidate else None


def require_logged_in_session(session_id: Optional[str] = Depends(session_id_from_request)) -> dict:
    if not session_id:
        raise HTTPException(status_code=401, detail="Session ID is required")
    session = get_session(session_id)
    if not session:
        raise HTTPException(status_code=401, detail="Session not found or expired")
    return session


def require_admin_session(session: dict = Depends(require_logged_in_session)) -> dict:
    if not session.get("admin"):
        raise HTTPException(status_code=403, detail="Admin privileges required.")
    return session


def require_owner_session(session: dict = Depends(require_admin_session)) -> dict:
    if not session.get("owner"):
        raise HTTPException(status_code=403, detail="Owner privileges required.")
    return session


def session_from_path(session_id: str) -> dict:
    session = get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


# ---------- Background sweep ----------
def run_maintenance() -> None:
    sessions_removed = cleanup_sessions()
    tickets_removed = purge_expired_login_tickets()
    clients_forgotten = prune_rate_store()
    if sessions_removed or tickets_removed or clients_forgotten:
        logger.info("Expired %d session(s), %d login ticket(s) and %d rate limiter client(s)",
                    sessions_removed, tickets_removed, clients_forgotten)


def maintenance_loop(stop: threading.Event) -> None:
    """Runs in background and drops expired sessions and tickets every CLEANUP_INTERVAL_SECONDS"""
    while not stop.wait(settings.CLEANUP_INTERVAL_SECONDS):
        try:
            run_maintenance()
        except Exception:
            logger.exception("Session maintenance failed")


def start_maintenance(stop: threading.Event) -> threading.Thread:
    thread = threading.Thread(target=maintenance_loop, args=(stop,), name="session-maintenance", daemon=True)
    thread.start()
    logger.info("Session maintenance started, sweeping every %ss", settings.CLEANUP_INTERVAL_SECONDS)
    return thread
