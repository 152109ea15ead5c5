"""Connexion SQLite partagée (cache des taux, plans de paiement)."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

MEMORY = ":memory:"

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS exchange_rates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pair TEXT NOT NULL,
    rate_date TEXT NOT NULL,
    rate TEXT NOT NULL,
    source TEXT NOT NULL CHECK (source IN ('fetched', 'fallback', 'manual')),
    observed_date TEXT NOT NULL,
    fetched_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_exchange_rates_date ON exchange_rates (pair, rate_date);

-- un seul taux récupéré par date : le premier écrivain gagne
CREATE UNIQUE INDEX IF NOT EXISTS ux_exchange_rates_fetched
    ON exchange_rates (pair, rate_date) WHERE source = 'fetched';

CREATE UNIQUE INDEX IF NOT EXISTS ux_exchange_rates_fallback
    ON exchange_rates (pair, rate_date) WHERE source = 'fallback';

CREATE TABLE IF NOT EXISTS payment_plans (
    id TEXT PRIMARY KEY,
    authority_ref TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    tax TEXT NOT NULL DEFAULT '',
    total_amount TEXT NOT NULL,
    status TEXT NOT NULL,
    created_from TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS plan_installments (
    plan_id TEXT NOT NULL REFERENCES payment_plans (id),
    idx INTEGER NOT NULL,
    due_date TEXT NOT NULL,
    amount TEXT NOT NULL,
    status TEXT NOT NULL,
    paid_on TEXT,
    PRIMARY KEY (plan_id, idx)
);
"""


class Database:
    """Connexion SQLite unique par processus, sérialisée par un verrou.

    La connexion est ouverte avec ``check_same_thread=False`` : les résolutions
    de taux tournent dans un pool de threads.
    """

    def __init__(self, path: str | Path = MEMORY) -> None:
        self.path = str(path)
        if self.path != MEMORY:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA foreign_keys=ON;")
        self.lock = threading.RLock()
        self.init_schema()

    def init_schema(self) -> None:
        with self.lock:
            self.conn.executescript(_SCHEMA_SQL)
        logger.debug("Schéma SQLite initialisé (%s)", self.path)

    def query(self, sql: str, params: tuple[object, ...] = ()) -> list[sqlite3.Row]:
        with self.lock:
            return self.conn.execute(sql, params).fetchall()

    def execute(self, sql: str, params: tuple[object, ...] = ()) -> sqlite3.Cursor:
        with self.lock:
            return self.conn.execute(sql, params)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Transaction explicite : tout ou rien."""
        with self.lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def close(self) -> None:
        with self.lock:
            self.conn.close()
