import json
import os
import re
import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from psycopg.conninfo import make_conninfo
from pytest_postgresql import factories

from storefront.app import create_app
from storefront.auth import GatewayAuthProvider
from storefront.cart import CartManager
from storefront.catalog import CatalogReader
from storefront.checkout import CheckoutEngine
from storefront.config import Settings
from storefront.db import Datastore
from storefront.orders import OrderManager

sqlite3.register_adapter(Decimal, str)

SCHEMA_FILE = Path(__file__).resolve().parent.parent / "schema.sql"

# Throwaway server, started only when TEST_DATABASE_URL is not set
postgresql_server = factories.postgresql_proc()

RESET_TABLES = """
    TRUNCATE order_items, orders, cart_items, product_images, products, categories, users
    RESTART IDENTITY CASCADE
"""

SCHEMA = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    password TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'customer',
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT,
    slug TEXT NOT NULL UNIQUE,
    is_active BOOLEAN NOT NULL DEFAULT 1,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE products (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT,
    price NUMERIC NOT NULL CHECK (price >= 0),
    category_id INTEGER NOT NULL REFERENCES categories(id),
    brand TEXT,
    team TEXT,
    sport TEXT NOT NULL,
    size_options TEXT NOT NULL DEFAULT '[]',
    stock_quantity INTEGER NOT NULL DEFAULT 0 CHECK (stock_quantity >= 0),
    sku TEXT,
    is_active BOOLEAN NOT NULL DEFAULT 1,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE UNIQUE INDEX products_active_sku_idx ON products (sku) WHERE is_active AND sku IS NOT NULL;

CREATE TABLE product_images (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    product_id INTEGER NOT NULL REFERENCES products(id),
    image_url TEXT NOT NULL,
    alt_text TEXT,
    order_position INTEGER NOT NULL DEFAULT 0,
    is_primary BOOLEAN NOT NULL DEFAULT 0
);

CREATE TABLE cart_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    product_id INTEGER NOT NULL REFERENCES products(id),
    size TEXT NOT NULL,
    quantity INTEGER NOT NULL CHECK (quantity BETWEEN 1 AND 10),
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (user_id, product_id, size)
);

CREATE TABLE orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_number TEXT NOT NULL UNIQUE,
    user_id INTEGER NOT NULL REFERENCES users(id),
    total_amount NUMERIC NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    payment_method TEXT NOT NULL DEFAULT 'credit_card',
    payment_status TEXT NOT NULL DEFAULT 'pending',
    shipping_address TEXT NOT NULL,
    notes TEXT,
    tracking_code TEXT,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE order_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id INTEGER NOT NULL REFERENCES orders(id),
    product_id INTEGER NOT NULL REFERENCES products(id),
    quantity INTEGER NOT NULL,
    size TEXT NOT NULL,
    unit_price NUMERIC NOT NULL,
    total_price NUMERIC NOT NULL,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

# SQLite has no row locks; BEGIN IMMEDIATE already holds the database write lock
ROW_LOCK = re.compile(r"\s+FOR UPDATE(\s+OF\s+\w+)?", re.IGNORECASE)


class SqliteSession:
    def __init__(self, conn):
        self.conn = conn

    def _run(self, sql, params):
        sql = ROW_LOCK.sub("", sql).replace("%s", "?")
        return self.conn.execute(sql, tuple(params or ()))

    def query_one(self, sql, params=None):
        rows = self._run(sql, params).fetchall()
        return dict(rows[0]) if rows else None

    def query_many(self, sql, params=None):
        return [dict(row) for row in self._run(sql, params).fetchall()]

    def execute(self, sql, params=None):
        return self._run(sql, params).rowcount


class SqliteDatastore:
    """The Datastore interface over a SQLite file.

    Transactions start with BEGIN IMMEDIATE, so concurrent writers queue on the
    database lock. Row-level locking is only exercised by the PostgreSQL runs.
    """

    def __init__(self, path):
        self.path = str(path)

    def _connect(self):
        conn = sqlite3.connect(self.path, timeout=30, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def open(self):
        pass

    def close(self):
        pass

    def create_schema(self):
        conn = self._connect()
        try:
            conn.executescript(SCHEMA)
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield SqliteSession(conn)
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def query_one(self, sql, params=None):
        with self.transaction() as tx:
            return tx.query_one(sql, params)

    def query_many(self, sql, params=None):
        with self.transaction() as tx:
            return tx.query_many(sql, params)

    def execute(self, sql, params=None):
        with self.transaction() as tx:
            return tx.execute(sql, params)

    def ping(self):
        return self.query_one("SELECT 1 AS ok")["ok"] == 1


class InterceptingSession:
    """Wraps a session and calls ``action`` when a statement containing ``marker`` runs.

    Writes run the action before the statement, reads right after it.
    """

    def __init__(self, session, marker, action):
        self.session = session
        self.marker = marker
        self.action = action

    def _intercept(self, sql):
        if self.marker in sql:
            self.action(self.session)

    def query_one(self, sql, params=None):
        self._intercept(sql)
        return self.session.query_one(sql, params)

    def query_many(self, sql, params=None):
        rows = self.session.query_many(sql, params)
        self._intercept(sql)
        return rows

    def execute(self, sql, params=None):
        self._intercept(sql)
        return self.session.execute(sql, params)


class InterceptingDatastore:
    def __init__(self, db, marker, action):
        self.db = db
        self.marker = marker
        self.action = action

    @contextmanager
    def transaction(self):
        with self.db.transaction() as tx:
            yield InterceptingSession(tx, self.marker, self.action)


class Seeder:
    """Inserts rows straight into the store, bypassing service validation."""

    def __init__(self, db):
        self.db = db
        self._count = 0

    def _next(self):
        self._count += 1
        return self._count

    def user(self, name=None, role="customer"):
        n = self._next()
        row = self.db.query_one(
            "INSERT INTO users (name, email, password, role) VALUES (%s, %s, %s, %s) RETURNING id",
            (name or f"User {n}", f"user{n}@example.com", "not-a-real-hash", role),
        )
        return row["id"]

    def category(self, slug=None, name=None, is_active=True):
        n = self._next()
        row = self.db.query_one(
            "INSERT INTO categories (name, slug, is_active) VALUES (%s, %s, %s) RETURNING id",
            (name or f"Category {n}", slug or f"category-{n}", is_active),
        )
        return row["id"]

    def product(
        self,
        price="49.90",
        stock=10,
        sizes='["P", "M", "G"]',
        category_id=None,
        name=None,
        is_active=True,
        sku=None,
        brand="Nike",
        team=None,
        sport="Football",
    ):
        n = self._next()
        if category_id is None:
            category_id = self.category()
        if not isinstance(sizes, str):
            sizes = json.dumps(sizes)
        row = self.db.query_one(
            """
            INSERT INTO products (
                name, price, category_id, brand, team, sport,
                size_options, stock_quantity, sku, is_active
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (name or f"Product {n}", Decimal(price), category_id, brand, team, sport, sizes, stock, sku, is_active),
        )
        return row["id"]

    def image(self, product_id, url="https://cdn.example.com/p.jpg", is_primary=True, position=0):
        self.db.execute(
            "INSERT INTO product_images (product_id, image_url, is_primary, order_position) VALUES (%s, %s, %s, %s)",
            (product_id, url, is_primary, position),
        )

    def cart_row(self, user_id, product_id, size="M", quantity=1):
        row = self.db.query_one(
            "INSERT INTO cart_items (user_id, product_id, size, quantity) VALUES (%s, %s, %s, %s) RETURNING id",
            (user_id, product_id, size, quantity),
        )
        return row["id"]

    def order(self, user_id, total="10.00", status="pending", payment_status="pending"):
        n = self._next()
        row = self.db.query_one(
            """
            INSERT INTO orders (order_number, user_id, total_amount, status, payment_status, shipping_address)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (f"ORD-TEST-{n:04d}", user_id, Decimal(total), status, payment_status, json.dumps(ADDRESS)),
        )
        return row["id"]

    def stock_of(self, product_id):
        return self.db.query_one("SELECT stock_quantity FROM products WHERE id = %s", (product_id,))["stock_quantity"]

    def count(self, table, **where):
        clause = " AND ".join(f"{column} = %s" for column in where)
        sql = f"SELECT COUNT(*) AS total FROM {table}" + (f" WHERE {clause}" if clause else "")
        return self.db.query_one(sql, tuple(where.values()))["total"]


ADDRESS = {
    "street": "Rua das Flores, 123",
    "city": "São Paulo",
    "state": "SP",
    "zipcode": "01000-000",
}


@pytest.fixture(scope="session")
def postgres_url(request):
    """Connection string of a disposable PostgreSQL database.

    ``TEST_DATABASE_URL`` wins; its public schema is dropped and recreated.
    Otherwise a local server is started with pytest-postgresql. Without
    either, the PostgreSQL runs are skipped.
    """
    url = os.getenv("TEST_DATABASE_URL")
    if url:
        return url
    try:
        server = request.getfixturevalue("postgresql_server")
    except Exception as exc:
        pytest.skip(f"PostgreSQL is not available: {exc}")
    return make_conninfo(
        host=server.host,
        port=server.port,
        user=server.user,
        password=server.password or None,
        dbname="postgres",
    )


@pytest.fixture(scope="session")
def postgres_store(postgres_url):
    store = Datastore(postgres_url, min_size=1, max_size=10)
    store.open()
    with store.pool.connection() as conn:
        conn.execute("DROP SCHEMA IF EXISTS public CASCADE")
        conn.execute("CREATE SCHEMA public")
        conn.execute(SCHEMA_FILE.read_text())
        conn.commit()
    yield store
    store.close()


@pytest.fixture(params=["sqlite", "postgres"])
def db(request, tmp_path):
    if request.param == "postgres":
        store = request.getfixturevalue("postgres_store")
        store.execute(RESET_TABLES)
        return store
    store = SqliteDatastore(tmp_path / "storefront.db")
    store.create_schema()
    return store


@pytest.fixture()
def seed(db):
    return Seeder(db)


@pytest.fixture()
def intercept(db):
    def wrap(marker, action):
        return InterceptingDatastore(db, marker, action)

    return wrap


@pytest.fixture()
def address():
    return dict(ADDRESS)


@pytest.fixture()
def catalog(db):
    return CatalogReader(db)


@pytest.fixture()
def cart(db):
    return CartManager(db)


@pytest.fixture()
def engine(db):
    return CheckoutEngine(db)


@pytest.fixture()
def orders(db):
    return OrderManager(db)


@pytest.fixture()
def app(db):
    return create_app(Settings(app_env="test"), datastore=db, auth=GatewayAuthProvider())


@pytest.fixture()
def client(app):
    return TestClient(app)


def auth_headers(user_id, role="customer"):
    return {"X-User-Id": str(user_id), "X-User-Role": role}


@pytest.fixture()
def as_user():
    return auth_headers
