# storefront/cart.py
"""Shopping cart: one row per (user, product, size) with a bounded quantity.

Cart quantities are never reserved against stock; stock is only re-checked
and deducted at checkout.
"""

import structlog

from .catalog import CatalogReader, normalize_sizes, to_money
from .errors import InvalidSizeError, NotFoundError, StockError, ValidationError

logger = structlog.get_logger(__name__)

MAX_ITEM_QUANTITY = 10

UPSERT_ITEM = """
    INSERT INTO cart_items (user_id, product_id, size, quantity)
    VALUES (%s, %s, %s, %s)
    ON CONFLICT (user_id, product_id, size) DO UPDATE
    SET quantity = cart_items.quantity + EXCLUDED.quantity,
        updated_at = CURRENT_TIMESTAMP
    WHERE cart_items.quantity + EXCLUDED.quantity <= %s
    RETURNING id, product_id, size, quantity
"""

CART_CONTENTS = """
    SELECT
        ci.id, ci.quantity, ci.size, ci.created_at,
        p.id AS product_id, p.name AS product_name, p.price, p.brand, p.team,
        p.stock_quantity, p.size_options, p.is_active,
        pi.image_url AS product_image,
        c.name AS category_name
    FROM cart_items ci
    INNER JOIN products p ON ci.product_id = p.id
    LEFT JOIN product_images pi ON p.id = pi.product_id AND pi.is_primary = TRUE
    LEFT JOIN categories c ON p.category_id = c.id
    WHERE ci.user_id = %s AND p.is_active = TRUE
    ORDER BY ci.created_at DESC, ci.id DESC
"""


def _check_quantity(quantity):
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError(f"Quantity must be between 1 and {MAX_ITEM_QUANTITY}")
    if not 1 <= quantity <= MAX_ITEM_QUANTITY:
        raise ValidationError(f"Quantity must be between 1 and {MAX_ITEM_QUANTITY}")


def _insufficient(product_id, available):
    return StockError(f"Insufficient stock. Available: {available}", product_id=product_id, available=available)


class CartManager:
    def __init__(self, db, catalog=None):
        self.db = db
        self.catalog = catalog or CatalogReader(db)

    def add_item(self, user_id, product_id, size, quantity=1):
        if isinstance(size, str):
            size = size.strip()
        if product_id is None or not size:
            raise ValidationError("Product and size are required")
        _check_quantity(quantity)

        product = self.catalog.get_active_product(product_id)
        if product is None:
            raise NotFoundError("Product not found or inactive")

        if size not in product["size_options"]:
            available = ", ".join(sorted(product["size_options"])) or "none"
            raise InvalidSizeError(f"Size {size} not available. Available sizes: {available}")

        stock = product["stock_quantity"]
        if quantity > stock:
            raise _insufficient(product_id, stock)

        with self.db.transaction() as tx:
            existing = tx.query_one(
                """
                SELECT id, quantity FROM cart_items
                WHERE user_id = %s AND product_id = %s AND size = %s
                """,
                (user_id, product_id, size),
            )
            if existing:
                self._check_merged(product_id, existing["quantity"] + quantity, stock)

            # guarded so a concurrent add cannot push the row past the cap or stock
            item = tx.query_one(
                UPSERT_ITEM,
                (user_id, product_id, size, quantity, min(MAX_ITEM_QUANTITY, stock)),
            )
            if item is None:
                current = tx.query_one(
                    """
                    SELECT quantity FROM cart_items
                    WHERE user_id = %s AND product_id = %s AND size = %s
                    """,
                    (user_id, product_id, size),
                )
                self._check_merged(product_id, (current["quantity"] if current else 0) + quantity, stock)
                raise _insufficient(product_id, stock)

        logger.info(
            "cart item added",
            user_id=user_id,
            product_id=product_id,
            product=product["name"],
            size=size,
            quantity=item["quantity"],
        )
        return item

    @staticmethod
    def _check_merged(product_id, merged, stock):
        if merged > MAX_ITEM_QUANTITY:
            raise StockError(
                f"Maximum quantity per item: {MAX_ITEM_QUANTITY} units",
                product_id=product_id,
                available=stock,
            )
        if merged > stock:
            raise _insufficient(product_id, stock)

    def update_item(self, user_id, item_id, quantity):
        _check_quantity(quantity)

        item = self.db.query_one(
            """
            SELECT ci.id, ci.quantity, ci.size, ci.product_id,
                   p.name AS product_name, p.stock_quantity
            FROM cart_items ci
            INNER JOIN products p ON ci.product_id = p.id
            WHERE ci.id = %s AND ci.user_id = %s
            """,
            (item_id, user_id),
        )
        if not item:
            raise NotFoundError("Item not found in cart")

        if quantity > item["stock_quantity"]:
            raise _insufficient(item["product_id"], item["stock_quantity"])

        self.db.execute(
            """
            UPDATE cart_items
            SET quantity = %s, updated_at = CURRENT_TIMESTAMP
            WHERE id = %s AND user_id = %s
            """,
            (quantity, item_id, user_id),
        )
        logger.info("cart item updated", user_id=user_id, item_id=item_id, quantity=quantity)
        return {"id": item["id"], "product_id": item["product_id"], "size": item["size"], "quantity": quantity}

    def remove_item(self, user_id, item_id):
        removed = self.db.execute(
            "DELETE FROM cart_items WHERE id = %s AND user_id = %s",
            (item_id, user_id),
        )
        if not removed:
            raise NotFoundError("Item not found in cart")
        logger.info("cart item removed", user_id=user_id, item_id=item_id)

    def clear_cart(self, user_id) -> int:
        removed = self.db.execute("DELETE FROM cart_items WHERE user_id = %s", (user_id,))
        logger.info("cart cleared", user_id=user_id, removed=removed)
        return removed

    def get_cart(self, user_id):
        items = self.db.query_many(CART_CONTENTS, (user_id,))
        total = to_money(0)
        for item in items:
            item["price"] = to_money(item["price"])
            item["item_total"] = to_money(item["price"] * item["quantity"])
            item["size_options"] = sorted(normalize_sizes(item["size_options"]))
            total += item["item_total"]

        return {
            "items": items,
            "summary": {
                "totalItems": len(items),
                "totalQuantity": sum(item["quantity"] for item in items),
                "totalAmount": to_money(total),
            },
        }
