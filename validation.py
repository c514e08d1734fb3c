# validation.py
"""
Input sanitization shared by every route.

The API accepts loosely typed JSON from the browser, so the helpers here
normalize strings, numbers and image URLs and reject anything that looks like
an attempt to smuggle script into stored data.
"""

import ipaddress
import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import HTTPException, Request

import settings

SCRIPT_GUARD_PATTERN = re.compile(
    r"<\s*/?\s*script\b|<\s*iframe|javascript\s*:|vbscript\s*:|data\s*:[^,]*,|on\w+\s*=|srcdoc\s*="
    r"|eval\s*\(|Function\s*\(|setTimeout\s*\(|setInterval\s*\(",
    re.IGNORECASE,
)
SAFE_URL_SCHEMES = ("http", "https")
RELATIVE_URL_PATTERN = re.compile(r"^/[A-Za-z0-9._/-]*$")
RELATIVE_FILE_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9._/-]+$")
RELATIVE_PARENT_SEGMENT_PATTERN = re.compile(r"(?:^|/)\.\.(?:/|$)")
DATA_URI_IMAGE_PATTERN = re.compile(r"^data:image/[a-z0-9.+-]+;base64,[a-zA-Z0-9+/=\s]+$", re.IGNORECASE)
EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
PRIVATE_HOSTNAME_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^localhost$",
        r"^127(?:\.\d{1,3}){3}$",
        r"^0\.0\.0\.0$",
        r"^10(?:\.\d{1,3}){3}$",
        r"^192\.168(?:\.\d{1,3}){2}$",
        r"^172\.(1[6-9]|2[0-9]|3[0-1])(?:\.\d{1,3}){2}$",
        r"^169\.254(?:\.\d{1,3}){2}$",
        r"^::1$",
        r"^fe80:",
        r"^fc00:",
        r"^fd00:",
    )
]


# ---------- Text ----------
def sanitize_text(value: Any) -> str:
    if value is None:
        return ""
    return re.sub(r"[<>`]", "", str(value)).strip()


def is_empty_or_scripted(value: Any, allow_special: bool = False) -> bool:
    raw = value if isinstance(value, str) else ("" if value is None else str(value))
    if SCRIPT_GUARD_PATTERN.search(raw):
        return True
    text = raw.strip() if allow_special else sanitize_text(raw)
    return not text


def get_safe_text(value: Any) -> Optional[str]:
    if is_empty_or_scripted(value):
        return None
    return sanitize_text(value)


def normalize_email(value: Any) -> str:
    return sanitize_text(value).lower()


def validate_required_fields(fields: Iterable[Tuple[Any, str, str]]) -> None:
    """
    fields: (value, label, kind) where kind is "text", "email" or "password".
    Raises HTTPException(400) on the first bad field.
    """
    for value, label, kind in fields:
        if kind == "email":
            if is_empty_or_scripted(value, allow_special=True):
                raise HTTPException(status_code=400, detail=f"{label} is invalid.")
            if not EMAIL_PATTERN.match(str(value).strip().lower()):
                raise HTTPException(status_code=400, detail=f"{label} is invalid.")
            continue
        if kind == "password":
            if is_empty_or_scripted(value, allow_special=True):
                raise HTTPException(status_code=400, detail=f"{label} cannot be empty or contain scripts.")
            continue
        if is_empty_or_scripted(value):
            raise HTTPException(status_code=400, detail=f"{label} cannot be empty or contain scripts.")


def normalize_password(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ("" if value is None else str(value))


# ---------- Numbers ----------
def to_number(value: Any) -> Optional[float]:
    """Finite float from a JSON number or numeric string, otherwise None."""
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def to_integer(value: Any) -> Optional[int]:
    number = to_number(value)
    if number is None or not number.is_integer():
        return None
    return int(number)


# ---------- URLs & images ----------
def is_private_hostname(hostname: Optional[str]) -> bool:
    if not hostname:
        return True
    normalized = hostname.lower()
    if any(p.search(normalized) for p in PRIVATE_HOSTNAME_PATTERNS):
        return True
    try:
        ip = ipaddress.ip_address(normalized)
    except ValueError:
        return normalized.endswith(".local")
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_unspecified


def is_safe_data_uri(value: Any) -> bool:
    if not isinstance(value, str) or len(value) > settings.MAX_DATA_URI_LENGTH:
        return False
    return bool(DATA_URI_IMAGE_PATTERN.match(value.strip()))


def sanitize_url(value: Any) -> Optional[str]:
    if value is None:
        return None
    trimmed = sanitize_text(value)
    if not trimmed:
        return None

    if trimmed.lower().startswith("data:"):
        if len(trimmed) > settings.MAX_DATA_URI_LENGTH:
            return None
        return trimmed if DATA_URI_IMAGE_PATTERN.match(trimmed) else None

    if len(trimmed) > settings.MAX_ALLOWED_URL_LENGTH:
        return None

    if "://" not in trimmed:
        if "//" in trimmed or RELATIVE_PARENT_SEGMENT_PATTERN.search(trimmed):
            return None
        if RELATIVE_URL_PATTERN.match(trimmed) or RELATIVE_FILE_SEGMENT_PATTERN.match(trimmed):
            return trimmed
        return None

    try:
        parsed = urlsplit(trimmed)
        hostname = parsed.hostname
    except ValueError:
        return None
    if parsed.scheme.lower() not in SAFE_URL_SCHEMES:
        return None
    if is_private_hostname(hostname):
        return None
    return parsed.geturl()


def collect_safe_images(value: Any) -> Tuple[List[str], int]:
    """Returns (accepted urls, number of rejected entries)."""
    if value is None:
        return [], 0
    raw_list = value if isinstance(value, list) else [value]
    normalized: List[str] = []
    rejected = 0
    for entry in raw_list:
        if len(normalized) >= settings.MAX_ITEM_IMAGES:
            break
        safe = sanitize_url(entry)
        if safe:
            normalized.append(safe)
        else:
            rejected += 1
    return normalized, rejected


def is_clearing_image_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, list):
        return len(value) == 0
    if isinstance(value, str):
        return not sanitize_text(value)
    return False


def contains_javascript_payload(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        if is_safe_data_uri(value):
            return False
        return bool(SCRIPT_GUARD_PATTERN.search(value))
    if isinstance(value, (list, tuple)):
        return any(contains_javascript_payload(v) for v in value)
    if isinstance(value, dict):
        return any(contains_javascript_payload(v) for v in value.values())
    return False


async def read_json_body(request: Request) -> Any:
    """Parsed JSON body, or None for empty/non-JSON bodies. Starlette caches the raw bytes."""
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


# ---------- Time ----------
def format_human_timestamp(value: Any) -> Optional[str]:
    """Epoch milliseconds or ISO-8601 string -> '19 Oct 2026, 14:05' in the shop's timezone."""
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        else:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    try:
        tz = ZoneInfo(settings.HUMAN_TIME_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return dt.isoformat()
    return dt.astimezone(tz).strftime("%d %b %Y, %H:%M")
