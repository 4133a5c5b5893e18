# storefront/orders.py
import json

import structlog

from .catalog import to_money
from .errors import NotFoundError, ValidationError
from .queries import Page, Where, paginate

logger = structlog.get_logger(__name__)

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")

USER_ORDERS_SELECT = """
    SELECT
        id, order_number, total_amount, status, payment_method,
        payment_status, tracking_code, created_at, updated_at
    FROM orders
"""

ALL_ORDERS_SELECT = """
    SELECT
        o.id, o.order_number, o.user_id, o.total_amount, o.status, o.payment_method,
        o.payment_status, o.shipping_address, o.notes, o.tracking_code,
        o.created_at, o.updated_at,
        u.name AS customer_name, u.email AS customer_email
    FROM orders o
    INNER JOIN users u ON o.user_id = u.id
"""


def parse_address(raw):
    if raw is None or isinstance(raw, dict):
        return raw
    return json.loads(raw)


def _money_fields(row, *fields):
    for field in fields:
        if row.get(field) is not None:
            row[field] = to_money(row[field])
    return row


class OrderManager:
    def __init__(self, db):
        self.db = db

    def list_orders(self, user_id, page=1, limit=10):
        where = Where().add("user_id = %s", user_id)
        rows, meta = paginate(
            self.db,
            USER_ORDERS_SELECT,
            "SELECT COUNT(*) AS total FROM orders",
            where,
            "created_at DESC, id DESC",
            Page(page, limit),
        )
        return [_money_fields(row, "total_amount") for row in rows], meta

    def get_order(self, user_id, order_id):
        order = self.db.query_one(
            "SELECT * FROM orders WHERE id = %s AND user_id = %s",
            (order_id, user_id),
        )
        if not order:
            raise NotFoundError("Order not found")

        items = self.db.query_many(
            """
            SELECT
                oi.id, oi.order_id, oi.product_id, oi.quantity, oi.size,
                oi.unit_price, oi.total_price, oi.created_at,
                p.name AS product_name, p.brand, p.team,
                pi.image_url AS product_image
            FROM order_items oi
            INNER JOIN products p ON oi.product_id = p.id
            LEFT JOIN product_images pi ON p.id = pi.product_id AND pi.is_primary = TRUE
            WHERE oi.order_id = %s
            ORDER BY oi.id
            """,
            (order_id,),
        )

        order["shipping_address"] = parse_address(order["shipping_address"])
        _money_fields(order, "total_amount")
        return {"order": order, "items": [_money_fields(item, "unit_price", "total_price") for item in items]}

    def list_all_orders(self, status=None, payment_status=None, page=1, limit=10):
        where = Where()
        where.add_if(status, "o.status = %s")
        where.add_if(payment_status, "o.payment_status = %s")
        rows, meta = paginate(
            self.db,
            ALL_ORDERS_SELECT,
            "SELECT COUNT(*) AS total FROM orders o INNER JOIN users u ON o.user_id = u.id",
            where,
            "o.created_at DESC, o.id DESC",
            Page(page, limit),
        )
        for row in rows:
            row["shipping_address"] = parse_address(row["shipping_address"])
            _money_fields(row, "total_amount")
        return rows, meta

    def update_status(self, order_id, status=None, payment_status=None, tracking_code=None):
        # transitions are unrestricted: any status may follow any other
        if status is not None and status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid status. Allowed: {', '.join(ORDER_STATUSES)}")
        if payment_status is not None and payment_status not in PAYMENT_STATUSES:
            raise ValidationError(f"Invalid payment status. Allowed: {', '.join(PAYMENT_STATUSES)}")

        order = self.db.query_one("SELECT id, order_number FROM orders WHERE id = %s", (order_id,))
        if not order:
            raise NotFoundError("Order not found")

        updated = self.db.query_one(
            """
            UPDATE orders SET
                status = COALESCE(%s, status),
                payment_status = COALESCE(%s, payment_status),
                tracking_code = COALESCE(%s, tracking_code),
                updated_at = CURRENT_TIMESTAMP
            WHERE id = %s
            RETURNING id, order_number, status, payment_status, tracking_code, updated_at
            """,
            (status, payment_status, tracking_code, order_id),
        )
        logger.info(
            "order status updated",
            order_number=order["order_number"],
            status=updated["status"],
            payment_status=updated["payment_status"],
            tracking_code=updated["tracking_code"],
        )
        return updated
