# storefront/checkout.py
"""Checkout: turns the user's cart into an order in a single transaction.

Everything from the stock re-check to clearing the cart happens on one
connection. The user's cart rows are locked when read, so a second checkout
of the same cart waits and then finds it empty. Stock is deducted with a
conditional update, so two checkouts racing for the last units of a product
cannot both succeed: the loser's update matches no row and its whole
transaction is rolled back.
"""

import json
import uuid
from datetime import datetime, timezone

import structlog

from .catalog import to_money
from .errors import EmptyCartError, InternalError, StockError, StorefrontError, ValidationError

logger = structlog.get_logger(__name__)

DEFAULT_PAYMENT_METHOD = "credit_card"
REQUIRED_ADDRESS_FIELDS = ("street", "city", "zipcode")

CHECKOUT_ITEMS = """
    SELECT
        ci.id, ci.product_id, ci.quantity, ci.size,
        p.name AS product_name, p.price, p.stock_quantity
    FROM cart_items ci
    INNER JOIN products p ON ci.product_id = p.id
    WHERE ci.user_id = %s AND p.is_active = TRUE
    ORDER BY ci.product_id, ci.id
    FOR UPDATE OF ci
"""

INSERT_ORDER = """
    INSERT INTO orders (
        order_number, user_id, total_amount, status, payment_method,
        payment_status, shipping_address, notes
    )
    VALUES (%s, %s, %s, 'pending', %s, 'pending', %s, %s)
    RETURNING id, order_number, user_id, total_amount, status, payment_method,
              payment_status, notes, created_at
"""

INSERT_ORDER_ITEM = """
    INSERT INTO order_items (
        order_id, product_id, quantity, size, unit_price, total_price
    )
    VALUES (%s, %s, %s, %s, %s, %s)
    RETURNING id, product_id, quantity, size, unit_price, total_price
"""

DEDUCT_STOCK = """
    UPDATE products
    SET stock_quantity = stock_quantity - %s,
        updated_at = CURRENT_TIMESTAMP
    WHERE id = %s AND stock_quantity >= %s
"""


def generate_order_number(now=None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def validate_shipping_address(address) -> dict:
    if not isinstance(address, dict):
        raise ValidationError("A complete shipping address is required")
    for field in REQUIRED_ADDRESS_FIELDS:
        value = address.get(field)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("A complete shipping address is required")
    return dict(address)


def _short_stock(item, available):
    return StockError(
        f"Insufficient stock for {item['product_name']}. Available: {available}",
        product_id=item["product_id"],
        available=available,
    )


class CheckoutEngine:
    def __init__(self, db):
        self.db = db

    def checkout(self, user_id, payment_method=None, shipping_address=None, notes=None):
        address = validate_shipping_address(shipping_address)
        payment_method = payment_method or DEFAULT_PAYMENT_METHOD

        try:
            with self.db.transaction() as tx:
                order, items = self._apply(tx, user_id, payment_method, address, notes)
        except StorefrontError:
            raise
        except Exception as exc:
            logger.exception("checkout failed", user_id=user_id)
            raise InternalError("Checkout could not be completed") from exc

        order["shipping_address"] = address
        logger.info(
            "order created",
            order_id=order["id"],
            order_number=order["order_number"],
            user_id=user_id,
            total_amount=str(order["total_amount"]),
            items=len(items),
        )
        return {"order": order, "items": items}

    def _apply(self, tx, user_id, payment_method, address, notes):
        cart = tx.query_many(CHECKOUT_ITEMS, (user_id,))
        if not cart:
            raise EmptyCartError()

        # stock may have moved since the items were added
        for item in cart:
            if item["quantity"] > item["stock_quantity"]:
                raise _short_stock(item, item["stock_quantity"])

        lines = []
        for item in cart:
            unit_price = to_money(item["price"])
            lines.append((item, unit_price, to_money(unit_price * item["quantity"])))
        total_amount = to_money(sum(line_total for _, _, line_total in lines))

        order = tx.query_one(
            INSERT_ORDER,
            (
                generate_order_number(),
                user_id,
                total_amount,
                payment_method,
                json.dumps(address),
                notes,
            ),
        )
        order["total_amount"] = to_money(order["total_amount"])

        order_items = []
        for item, unit_price, line_total in lines:
            deducted = tx.execute(DEDUCT_STOCK, (item["quantity"], item["product_id"], item["quantity"]))
            if deducted != 1:
                current = tx.query_one("SELECT stock_quantity FROM products WHERE id = %s", (item["product_id"],))
                raise _short_stock(item, current["stock_quantity"] if current else 0)

            row = tx.query_one(
                INSERT_ORDER_ITEM,
                (order["id"], item["product_id"], item["quantity"], item["size"], unit_price, line_total),
            )
            row["unit_price"] = to_money(row["unit_price"])
            row["total_price"] = to_money(row["total_price"])
            row["product_name"] = item["product_name"]
            order_items.append(row)

        removed = tx.execute("DELETE FROM cart_items WHERE user_id = %s", (user_id,))
        if removed < len(cart):
            raise InternalError("Cart changed during checkout")
        return order, order_items
