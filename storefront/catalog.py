# storefront/catalog.py
import json
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import structlog

from .errors import DuplicateError, InternalError, NotFoundError, ValidationError
from .queries import Page, Where, paginate

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def normalize_sizes(raw) -> frozenset:
    """Canonical set of size labels from whatever the row holds.

    Rows carry either a native array, a JSON array string (``'["M","L"]'``)
    or a comma separated string (``"M, L"``).
    """
    if raw is None:
        return frozenset()
    if isinstance(raw, (list, tuple, set, frozenset)):
        labels = raw
    elif isinstance(raw, str):
        text = raw.strip()
        if text.startswith("["):
            try:
                labels = json.loads(text)
            except json.JSONDecodeError as exc:
                raise InternalError("Could not process product sizes") from exc
            if not isinstance(labels, list):
                raise InternalError("Could not process product sizes")
        else:
            labels = text.split(",")
    else:
        raise InternalError("Could not process product sizes")
    return frozenset(str(label).strip() for label in labels if label is not None and str(label).strip())


def _hydrate(row):
    if row is None:
        return None
    if "size_options" in row:
        row["size_options"] = normalize_sizes(row["size_options"])
    if row.get("price") is not None:
        row["price"] = to_money(row["price"])
    return row


def _public(row):
    row = _hydrate(row)
    if row is not None and "size_options" in row:
        row["size_options"] = sorted(row["size_options"])
    return row


def _dump_sizes(value):
    if value is None:
        return None
    return json.dumps(sorted(normalize_sizes(value)))


PRODUCT_LIST_SELECT = """
    SELECT
        p.id, p.name, p.description, p.price, p.brand, p.team, p.sport,
        p.size_options, p.stock_quantity, p.sku, p.created_at,
        c.name AS category_name, c.slug AS category_slug,
        pi.image_url AS main_image
    FROM products p
    INNER JOIN categories c ON p.category_id = c.id
    LEFT JOIN product_images pi ON p.id = pi.product_id AND pi.is_primary = TRUE
"""

PRODUCT_LIST_COUNT = """
    SELECT COUNT(*) AS total
    FROM products p
    INNER JOIN categories c ON p.category_id = c.id
"""

PRODUCT_COLUMNS = """
    id, name, description, price, category_id, brand, team, sport,
    size_options, stock_quantity, sku, is_active, created_at, updated_at
"""


class CatalogReader:
    def __init__(self, db):
        self.db = db

    # Cart support

    def get_active_product(self, product_id):
        row = self.db.query_one(
            """
            SELECT id, name, price, size_options, stock_quantity, is_active
            FROM products
            WHERE id = %s AND is_active = TRUE
            """,
            (product_id,),
        )
        return _hydrate(row)

    # Categories

    def list_categories(self):
        return self.db.query_many(
            """
            SELECT id, name, description, slug, is_active, created_at
            FROM categories
            WHERE is_active = TRUE
            ORDER BY name
            """
        )

    def get_category(self, category_id):
        row = self.db.query_one(
            """
            SELECT id, name, description, slug, is_active, created_at
            FROM categories
            WHERE id = %s AND is_active = TRUE
            """,
            (category_id,),
        )
        if not row:
            raise NotFoundError("Category not found")
        return row

    def list_category_products(self, slug):
        rows = self.db.query_many(
            """
            SELECT
                p.id, p.name, p.description, p.price, p.brand, p.team, p.sport,
                p.size_options, p.stock_quantity, p.sku,
                c.name AS category_name, c.slug AS category_slug
            FROM products p
            INNER JOIN categories c ON p.category_id = c.id
            WHERE c.slug = %s AND p.is_active = TRUE AND c.is_active = TRUE
            ORDER BY p.name
            """,
            (slug,),
        )
        if not rows:
            raise NotFoundError("No products found for this category")
        return [_public(row) for row in rows]

    # Products

    def list_products(
        self,
        category=None,
        sport=None,
        team=None,
        brand=None,
        min_price=None,
        max_price=None,
        search=None,
        page=1,
        limit=10,
    ):
        window = Page(page, limit)
        where = Where("p.is_active = TRUE")
        where.add_if(category, "c.slug = %s")
        for column, value in (("p.sport", sport), ("p.team", team), ("p.brand", brand)):
            if value:
                where.add(f"LOWER({column}) LIKE %s", f"%{value.lower()}%")
        where.add_if(min_price, "p.price >= %s")
        where.add_if(max_price, "p.price <= %s")
        if search:
            term = f"%{search.lower()}%"
            where.add(
                "(LOWER(p.name) LIKE %s OR LOWER(p.description) LIKE %s OR LOWER(p.team) LIKE %s)",
                term,
                term,
                term,
            )

        rows, meta = paginate(
            self.db, PRODUCT_LIST_SELECT, PRODUCT_LIST_COUNT, where, "p.created_at DESC, p.id DESC", window
        )
        return [_public(row) for row in rows], meta

    def get_product(self, product_id):
        product = self.db.query_one(
            """
            SELECT
                p.id, p.name, p.description, p.price, p.brand, p.team, p.sport,
                p.size_options, p.stock_quantity, p.sku, p.is_active, p.created_at, p.updated_at,
                c.name AS category_name, c.slug AS category_slug
            FROM products p
            INNER JOIN categories c ON p.category_id = c.id
            WHERE p.id = %s AND p.is_active = TRUE
            """,
            (product_id,),
        )
        if not product:
            raise NotFoundError("Product not found")

        product["images"] = self.db.query_many(
            """
            SELECT id, image_url, alt_text, order_position, is_primary
            FROM product_images
            WHERE product_id = %s
            ORDER BY order_position
            """,
            (product_id,),
        )
        return _public(product)

    # Admin maintenance

    def _check_category(self, category_id):
        exists = self.db.query_one(
            "SELECT id FROM categories WHERE id = %s AND is_active = TRUE",
            (category_id,),
        )
        if not exists:
            raise ValidationError("Category not found or inactive")

    def _check_sku(self, sku, exclude_id=None):
        if exclude_id is None:
            clash = self.db.query_one(
                "SELECT id FROM products WHERE sku = %s AND is_active = TRUE",
                (sku,),
            )
        else:
            clash = self.db.query_one(
                "SELECT id FROM products WHERE sku = %s AND id != %s AND is_active = TRUE",
                (sku, exclude_id),
            )
        if clash:
            raise DuplicateError("SKU already exists")

    def create_product(self, data: dict):
        for field in ("name", "price", "category_id", "sport"):
            if data.get(field) in (None, ""):
                raise ValidationError("Name, price, category and sport are required")
        price = _checked_price(data["price"])
        stock = _checked_stock(data.get("stock_quantity", 0) or 0)

        self._check_category(data["category_id"])
        if data.get("sku"):
            self._check_sku(data["sku"])

        row = self.db.query_one(
            f"""
            INSERT INTO products (
                name, description, price, category_id, brand, team, sport,
                size_options, stock_quantity, sku
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {PRODUCT_COLUMNS}
            """,
            (
                data["name"],
                data.get("description"),
                price,
                data["category_id"],
                data.get("brand"),
                data.get("team"),
                data["sport"],
                _dump_sizes(data.get("size_options")) or "[]",
                stock,
                data.get("sku"),
            ),
        )
        logger.info("product created", product_id=row["id"], name=row["name"])
        return _public(row)

    def update_product(self, product_id, data: dict):
        existing = self.db.query_one("SELECT id, sku, is_active FROM products WHERE id = %s", (product_id,))
        if not existing:
            raise NotFoundError("Product not found")

        price = data.get("price")
        if price is not None:
            price = _checked_price(price)
        stock = data.get("stock_quantity")
        if stock is not None:
            stock = _checked_stock(stock)
        if data.get("category_id"):
            self._check_category(data["category_id"])
        if data.get("sku"):
            self._check_sku(data["sku"], exclude_id=product_id)
        elif data.get("is_active") and not existing["is_active"] and existing["sku"]:
            # reactivation brings the stored SKU back into the active set
            self._check_sku(existing["sku"], exclude_id=product_id)

        row = self.db.query_one(
            f"""
            UPDATE products SET
                name = COALESCE(%s, name),
                description = COALESCE(%s, description),
                price = COALESCE(%s, price),
                category_id = COALESCE(%s, category_id),
                brand = COALESCE(%s, brand),
                team = COALESCE(%s, team),
                sport = COALESCE(%s, sport),
                size_options = COALESCE(%s, size_options),
                stock_quantity = COALESCE(%s, stock_quantity),
                sku = COALESCE(%s, sku),
                is_active = COALESCE(%s, is_active),
                updated_at = CURRENT_TIMESTAMP
            WHERE id = %s
            RETURNING {PRODUCT_COLUMNS}
            """,
            (
                data.get("name"),
                data.get("description"),
                price,
                data.get("category_id"),
                data.get("brand"),
                data.get("team"),
                data.get("sport"),
                _dump_sizes(data.get("size_options")),
                stock,
                data.get("sku"),
                data.get("is_active"),
                product_id,
            ),
        )
        logger.info("product updated", product_id=product_id)
        return _public(row)

    def deactivate_product(self, product_id):
        existing = self.db.query_one("SELECT id, name FROM products WHERE id = %s", (product_id,))
        if not existing:
            raise NotFoundError("Product not found")
        self.db.execute(
            "UPDATE products SET is_active = FALSE, updated_at = CURRENT_TIMESTAMP WHERE id = %s",
            (product_id,),
        )
        logger.info("product deactivated", product_id=product_id, name=existing["name"])


def _checked_price(value) -> Decimal:
    try:
        price = to_money(value)
    except (InvalidOperation, ValueError):
        raise ValidationError("Price must be a number") from None
    if price < 0:
        raise ValidationError("Price cannot be negative")
    return price


def _checked_stock(value) -> int:
    try:
        stock = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Stock quantity must be an integer") from None
    if stock < 0:
        raise ValidationError("Stock quantity cannot be negative")
    return stock
