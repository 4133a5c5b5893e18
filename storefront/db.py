# storefront/db.py
import time
from contextlib import contextmanager

import structlog
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

logger = structlog.get_logger(__name__)


def _run(cur, sql, params):
    start = time.perf_counter()
    cur.execute(sql, params or ())
    logger.debug(
        "query executed",
        sql=" ".join(sql.split()),
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
        rows=cur.rowcount,
    )


class Session:
    """Statements run on one borrowed connection, inside its open transaction."""

    def __init__(self, conn):
        self.conn = conn

    def query_one(self, sql, params=None):
        with self.conn.cursor(row_factory=dict_row) as cur:
            _run(cur, sql, params)
            return cur.fetchone()

    def query_many(self, sql, params=None):
        with self.conn.cursor(row_factory=dict_row) as cur:
            _run(cur, sql, params)
            return cur.fetchall()

    def execute(self, sql, params=None) -> int:
        with self.conn.cursor() as cur:
            _run(cur, sql, params)
            return cur.rowcount


class Datastore:
    """PostgreSQL access through a psycopg connection pool.

    The pool is created closed; ``open()`` is called at application startup and
    ``close()`` at shutdown. Every unit of work borrows one connection and runs
    in a single transaction: committed when the block exits cleanly, rolled back
    when it raises.
    """

    def __init__(self, conninfo: str, min_size: int = 1, max_size: int = 10):
        self.pool = ConnectionPool(
            conninfo=conninfo,
            min_size=min_size,
            max_size=max_size,
            open=False,
            kwargs={"autocommit": False},  # we manage transactions
        )

    @classmethod
    def from_settings(cls, settings) -> "Datastore":
        return cls(settings.database_url, min_size=settings.pool_min, max_size=settings.pool_max)

    def open(self) -> None:
        self.pool.open(wait=True, timeout=10)
        logger.info("datastore opened", min_size=self.pool.min_size, max_size=self.pool.max_size)

    def close(self) -> None:
        self.pool.close()
        logger.info("datastore closed")

    @contextmanager
    def transaction(self):
        with self.pool.connection() as conn:
            try:
                yield Session(conn)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def query_one(self, sql, params=None):
        with self.transaction() as tx:
            return tx.query_one(sql, params)

    def query_many(self, sql, params=None):
        with self.transaction() as tx:
            return tx.query_many(sql, params)

    def execute(self, sql, params=None) -> int:
        with self.transaction() as tx:
            return tx.execute(sql, params)

    def ping(self) -> bool:
        row = self.query_one("SELECT 1 AS ok")
        return bool(row) and row["ok"] == 1
