"""
Payload factories for the e-commerce performance scenario.

Every virtual user builds its request bodies from the fixture tables in
the run file (``users`` and ``products``) using its own seeded random
generator, so two runs with the same seed send the same traffic.

Key Concepts Demonstrated:
- Fixture-driven payloads instead of hard-coded test data
- Per-user ``random.Random`` instances for reproducible runs
- Randomised quantities and order ids to defeat server-side caching
"""

from __future__ import annotations

import random
from collections.abc import Sequence
from typing import Any

SHIPPING_ADDRESS = "123 Main St, City, Country"
PAYMENT_METHOD = "CREDIT_CARD"


def pick(rng: random.Random, rows: Sequence[dict[str, Any]], table: str) -> dict[str, Any]:
    """
    Pick one fixture row at random.

    Raises:
        ValueError: If the fixture table is empty, which fails the
            iteration rather than silently sending empty payloads.
    """
    if not rows:
        raise ValueError(f"Fixture table {table!r} is empty")
    return rng.choice(list(rows))


def auth_header(user: dict[str, Any]) -> dict[str, str]:
    """Bearer header the order service expects (the user id stands in for a token)."""
    return {
        "Authorization": f"Bearer {user['id']}",
        "Content-Type": "application/json",
    }


def random_order_payload(
    rng: random.Random,
    user: dict[str, Any],
    product: dict[str, Any],
) -> dict[str, Any]:
    """
    Build an order-create payload for one product line.

    Returns:
        A JSON-serialisable dictionary matching the order-create schema,
        with a quantity between 1 and 5.
    """
    quantity = rng.randint(1, 5)
    total = round(product["price"] * quantity, 2)
    return {
        "userId": user["id"],
        "items": [
            {
                "productId": product["id"],
                "productName": product["name"],
                "quantity": quantity,
                "unitPrice": product["price"],
                "totalPrice": total,
            }
        ],
        "totalAmount": total,
        "shippingAddress": SHIPPING_ADDRESS,
        "billingAddress": SHIPPING_ADDRESS,
        "paymentMethod": PAYMENT_METHOD,
    }


def random_payment_payload(rng: random.Random, amount: float) -> dict[str, Any]:
    """Payment for a random order id; card data is the standard test Visa number."""
    return {
        "orderId": rng.randint(1, 1000),
        "amount": amount,
        "paymentMethod": PAYMENT_METHOD,
        "cardNumber": "4111111111111111",
        "expiryDate": "12/25",
        "cvv": "123",
    }


def notification_payload(user: dict[str, Any]) -> dict[str, Any]:
    return {
        "userId": user["id"],
        "type": "EMAIL",
        "title": "Order Confirmation",
        "message": "Your order has been confirmed",
    }
