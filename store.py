# store.py
"""
TinyDB handle and master-secret management shared by the API, the seeding
script and the backup tools.
"""

import functools
import os
import secrets
import threading
import time
from datetime import datetime, timezone

from Crypto.Hash import SHA256
from tinydb import TinyDB
from tinydb.table import Table
from tinydb.storages import JSONStorage

import settings
from encrypted_storage import EncryptedJSONStorage

USERS = "users"
SESSIONS = "sessions"
LOGIN_TICKETS = "login_tickets"
INVENTORY = "inventory"
CATEGORIES = "categories"
PURCHASES = "purchases"
META = "meta"


def now_ms() -> int:
    return int(time.time() * 1000)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# SECRET KEY management
def ensure_secret() -> bytes:
    if os.path.exists(settings.SECRET_FILE):
        with open(settings.SECRET_FILE, "rb") as f:
            return f.read()
    key = secrets.token_urlsafe(32).encode()
    with open(settings.SECRET_FILE, "wb") as f:
        f.write(key)
    return key


# Derive a fixed 32-byte key for DB encryption from the master secret (SHA256)
def _derive_db_key(secret_bytes: bytes) -> bytes:
    h = SHA256.new()
    h.update(secret_bytes)
    return h.digest()


def get_db_encryption_key() -> bytes:
    return _derive_db_key(ensure_secret())


# Request handlers run on a thread pool next to the maintenance and backup
# threads; every table operation holds this lock while it reads or rewrites the file.
db_lock = threading.RLock()


def _locked(method):
    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        with db_lock:
            return method(*args, **kwargs)
    return wrapper


class LockedTable(Table):
    all = _locked(Table.all)
    search = _locked(Table.search)
    get = _locked(Table.get)
    contains = _locked(Table.contains)
    count = _locked(Table.count)
    insert = _locked(Table.insert)
    insert_multiple = _locked(Table.insert_multiple)
    update = _locked(Table.update)
    update_multiple = _locked(Table.update_multiple)
    upsert = _locked(Table.upsert)
    remove = _locked(Table.remove)
    truncate = _locked(Table.truncate)


class StoreDB(TinyDB):
    table_class = LockedTable

    drop_tables = _locked(TinyDB.drop_tables)
    table = _locked(TinyDB.table)


@functools.lru_cache()
def get_db() -> TinyDB:
    if settings.DB_ENCRYPTION:
        key = get_db_encryption_key()
        return StoreDB(settings.DB_FILE, storage=lambda path: EncryptedJSONStorage(path, key))
    return StoreDB(settings.DB_FILE, storage=JSONStorage, indent=2)


def reset_db() -> None:
    """Close the cached handle so the next get_db() reopens with current settings."""
    if get_db.cache_info().currsize:
        get_db().close()
    get_db.cache_clear()


def table(name: str):
    return get_db().table(name)


def next_id(name: str) -> int:
    ids = [int(doc.get("id") or 0) for doc in table(name).all() if str(doc.get("id", "")).isdigit()]
    return max(ids) + 1 if ids else 1
