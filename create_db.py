# create_db.py
"""
Seeds the Giftiz TinyDB database with an owner account, an admin, a demo
customer, starter categories and a few catalog items.
Run: python create_db.py
Passwords can be overridden with SEED_OWNER_PASSWORD / SEED_ADMIN_PASSWORD /
SEED_CUSTOMER_PASSWORD.
"""

import logging
import os

import settings
from security import hash_password
from store import CATEGORIES, INVENTORY, META, USERS, get_db, now_iso

logger = logging.getLogger("giftiz.seed")


def _user(user_id, name, email, password, admin=False, owner=False):
    return {
        "id": user_id,
        "name": name,
        "pwd": hash_password(password),
        "userEmail": email,
        "admin": admin,
        "owner": owner,
        "verified": True,
        "createdAt": now_iso(),
    }


def seed():
    db = get_db()
    db.drop_tables()

    # Roles: owner (admin + owner), admin, customer
    users = [
        _user(1, "owner", "owner@giftiz.com", os.getenv("SEED_OWNER_PASSWORD", "OwnerPass123!"), admin=True, owner=True),
        _user(2, "admin", "admin@giftiz.com", os.getenv("SEED_ADMIN_PASSWORD", "AdminPass123!"), admin=True),
        _user(3, "customer", "customer@example.com", os.getenv("SEED_CUSTOMER_PASSWORD", "CustPass123!")),
    ]
    db.table(USERS).insert_multiple(users)
    logger.info("Seeded %d users.", len(users))

    categories = [
        {"id": 1, "name": "Gift Boxes"},
        {"id": 2, "name": "Flowers"},
        {"id": 3, "name": "Chocolate"},
    ]
    db.table(CATEGORIES).insert_multiple(categories)
    logger.info("Seeded %d categories.", len(categories))

    items = [
        {"id": 1, "itemName": "Birthday Gift Box", "itemQuantity": 25, "itemPriceILS": 149.9, "categoryId": 1,
         "itemImages": ["/images/birthday-box.png"], "itemImage": "/images/birthday-box.png"},
        {"id": 2, "itemName": "Spring Bouquet", "itemQuantity": 40, "itemPriceILS": 89.0, "categoryId": 2,
         "itemImages": ["/images/spring-bouquet.png"], "itemImage": "/images/spring-bouquet.png"},
        {"id": 3, "itemName": "Dark Chocolate Truffles", "itemQuantity": 60, "itemPriceILS": 54.5, "categoryId": 3,
         "itemImages": [], "itemImage": None},
    ]
    db.table(INVENTORY).insert_multiple(items)
    logger.info("Seeded %d items.", len(items))

    db.table(META).insert({
        "project": "Giftiz storefront",
        "created_at": now_iso(),
        "notes": "TinyDB seeded with pbkdf2_sha256 hashes.",
    })
    logger.info("Database created: %s (%s)", settings.DB_FILE, "encrypted" if settings.DB_ENCRYPTION else "plain JSON")


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)
    seed()
