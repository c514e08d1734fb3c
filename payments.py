# payments.py
import logging
import math
from typing import Any, Dict, List, Tuple

import stripe

import settings

logger = logging.getLogger("giftiz.payments")


class PaymentError(RuntimeError):
    pass


def cart_totals(cart: List[dict], inventory: List[dict]) -> Tuple[List[Dict[str, Any]], float]:
    """
    Price each cart line from the current inventory (falling back to the price
    stored on the line when the item no longer exists) and sum the total.
    """
    by_id = {str(item.get("id")): item for item in inventory}
    total = 0.0
    items = []
    for entry in cart or []:
        product = by_id.get(str(entry.get("id")))
        raw_price = product.get("itemPriceILS") if product else entry.get("priceILS")
        try:
            price = float(raw_price)
        except (TypeError, ValueError):
            price = 0.0
        if math.isnan(price):
            price = 0.0
        try:
            quantity = int(entry.get("quantity") or 0)
        except (TypeError, ValueError):
            quantity = 0
        subtotal = price * quantity
        total += subtotal
        images = (product or {}).get("itemImages") or []
        items.append({
            "id": entry.get("id"),
            "name": entry.get("name") or (product or {}).get("itemName") or "Item",
            "quantity": quantity,
            "priceILS": price,
            "subtotal": subtotal,
            "imageUrl": entry.get("imageUrl") or (images[0] if images else (product or {}).get("itemImage") or ""),
        })
    return items, total


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def intent_matches(intent, amount: float, session_id: str) -> bool:
    """True when the intent charged exactly `amount` and was created for this session."""
    try:
        paid_for = intent.metadata["sessionId"]
    except (AttributeError, KeyError, TypeError):
        return False
    return getattr(intent, "amount", None) == to_minor_units(amount) and paid_for == session_id


def create_payment_intent(amount: float, metadata: Dict[str, str]):
    try:
        return stripe.PaymentIntent.create(
            api_key=settings.STRIPE_SECRET_KEY,
            amount=to_minor_units(amount),
            currency=settings.PAYMENT_CURRENCY,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
        )
    except stripe.StripeError as e:
        logger.error("Creating payment intent failed: %s", e)
        raise PaymentError(str(e)) from e


def retrieve_payment_intent(payment_intent_id: str):
    try:
        return stripe.PaymentIntent.retrieve(payment_intent_id, api_key=settings.STRIPE_SECRET_KEY)
    except stripe.StripeError as e:
        logger.error("Retrieving payment intent %s failed: %s", payment_intent_id, e)
        raise PaymentError(str(e)) from e
