# manages connection to db, provides helper methods internal to db package
import asyncio
import os.path
import sqlite3
from contextlib import asynccontextmanager
from sqlite3 import Row

import aiosqlite

from core.errors import BackendError, BackendUnavailableError
from utils.config import get_settings
from utils.logger import get_logger

_logger = get_logger(__name__)

DB_PATH = get_settings().db_path
SEED_DEMO = get_settings().seed_demo

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id            TEXT PRIMARY KEY,
    email         TEXT NOT NULL UNIQUE,
    pwd_hash      TEXT NOT NULL,
    salt          TEXT NOT NULL,
    display_name  TEXT NOT NULL,
    created_at    TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS profiles (
    id            TEXT PRIMARY KEY REFERENCES users(id),
    display_name  TEXT NOT NULL,
    is_buyer      INTEGER NOT NULL DEFAULT 1,
    is_seller     INTEGER NOT NULL DEFAULT 0,
    is_supplier   INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS vendor_profiles (
    user_id       TEXT NOT NULL REFERENCES users(id),
    kind          TEXT NOT NULL CHECK (kind IN ('seller', 'supplier')),
    store_name    TEXT NOT NULL,
    PRIMARY KEY (user_id, kind)
);

CREATE TABLE IF NOT EXISTS sessions (
    token         TEXT PRIMARY KEY,
    user_id       TEXT NOT NULL REFERENCES users(id),
    created_at    TIMESTAMP NOT NULL,
    expires_at    TIMESTAMP NOT NULL,
    revoked       INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS client_state (
    key           TEXT PRIMARY KEY,
    value         TEXT
);

CREATE TABLE IF NOT EXISTS products (
    id             TEXT PRIMARY KEY,
    vendor_id      TEXT REFERENCES users(id),
    name           TEXT NOT NULL,
    category       TEXT NOT NULL,
    unit_price     TEXT NOT NULL,
    unit_type      TEXT NOT NULL DEFAULT 'unit',
    stock_quantity INTEGER NOT NULL DEFAULT 0,
    is_active      INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS orders (
    id               TEXT PRIMARY KEY,
    customer_id      TEXT NOT NULL,
    vendor_id        TEXT NOT NULL,
    total_price      TEXT NOT NULL,
    status           TEXT NOT NULL,
    shipping_address TEXT NOT NULL,
    idempotency_key  TEXT UNIQUE,
    created_at       TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS order_items (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id          TEXT NOT NULL REFERENCES orders(id),
    product_id        TEXT NOT NULL,
    quantity          TEXT NOT NULL,
    price_at_purchase TEXT NOT NULL,
    UNIQUE (order_id, product_id)
);

-- every new account gets a buyer profile
CREATE TRIGGER IF NOT EXISTS handle_new_user
AFTER INSERT ON users
BEGIN
    INSERT OR IGNORE INTO profiles(id, display_name, is_buyer, is_seller, is_supplier)
    VALUES (NEW.id, NEW.display_name, 1, 0, 0);
END;
"""

# vendor accounts have an unusable password hash
DEMO_DATA = """
INSERT INTO users(id, email, pwd_hash, salt, display_name) VALUES
    ('v-greenfarm', 'greenfarm@example.com', '!', '', 'Green Farm'),
    ('v-orchard',   'orchard@example.com',   '!', '', 'Sunny Orchard'),
    ('v-wholesale', 'wholesale@example.com', '!', '', 'Big Wholesale');

UPDATE profiles SET is_buyer = 0, is_seller = 1 WHERE id IN ('v-greenfarm', 'v-orchard');
UPDATE profiles SET is_buyer = 0, is_supplier = 1 WHERE id = 'v-wholesale';

INSERT INTO vendor_profiles(user_id, kind, store_name) VALUES
    ('v-greenfarm', 'seller',   'Green Farm'),
    ('v-orchard',   'seller',   'Sunny Orchard'),
    ('v-wholesale', 'supplier', 'Big Wholesale');

INSERT INTO products(id, vendor_id, name, category, unit_price, unit_type, stock_quantity) VALUES
    ('p-tomato',  'v-greenfarm', 'Tomato',        'vegetables', '4.50',  'kg',   120),
    ('p-lettuce', 'v-greenfarm', 'Lettuce',       'vegetables', '2.00',  'unit', 80),
    ('p-eggs',    'v-greenfarm', 'Free-range Eggs','dairy',     '9.90',  'dozen', 40),
    ('p-apple',   'v-orchard',   'Gala Apple',    'fruit',      '6.25',  'kg',   200),
    ('p-juice',   'v-orchard',   'Orange Juice',  'drinks',     '7.50',  'unit', 60),
    ('p-rice',    'v-wholesale', 'Rice 25kg Bag', 'grains',     '89.00', 'unit', 15);
"""

_initialized = False
_init_lock = asyncio.Lock()


def use_database(path: str) -> None:
    """Point the backend at another sqlite file, initialized on next use."""
    global DB_PATH, _initialized
    if path != DB_PATH:
        DB_PATH = path
        _initialized = False


async def _init_db(conn: aiosqlite.Connection) -> None:
    _logger.info("Creating schema...")
    await conn.executescript(SCHEMA)
    if SEED_DEMO:
        _logger.info("Seeding demo vendors and products...")
        await conn.executescript(DEMO_DATA)
    await conn.commit()


async def _table_exists(conn: aiosqlite.Connection, table_name: str) -> bool:
    cur = await conn.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type = 'table'
          AND name = ?;
        """,
        (table_name,),
    )
    row = await cur.fetchone()
    await cur.close()
    return row is not None


@asynccontextmanager
async def connect() -> aiosqlite.Connection:
    """Async context manager yielding an aiosqlite connection with FK enabled.

    Ensures the database is initialized (tables and seed data) on first use.
    sqlite errors are re-raised as backend errors: OperationalError (locked,
    unreachable file) as BackendUnavailableError, everything else as BackendError.
    """
    global _initialized
    try:
        directory = os.path.dirname(DB_PATH)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = await aiosqlite.connect(DB_PATH)
    except (OSError, sqlite3.Error) as e:
        _logger.error(f"Cannot open database {DB_PATH}: {e}")
        raise BackendUnavailableError(f"database unavailable: {e}") from e

    try:
        conn.row_factory = Row
        await conn.execute("PRAGMA foreign_keys = ON;")

        if not _initialized:
            async with _init_lock:
                if not _initialized:
                    if not await _table_exists(conn, "users"):
                        _logger.info("Initializing database...")
                        await _init_db(conn)
                    _initialized = True
        yield conn
    except sqlite3.OperationalError as e:
        _logger.error(f"Database operation failed: {e}")
        raise BackendUnavailableError(str(e)) from e
    except sqlite3.Error as e:
        _logger.error(f"Database error: {e}")
        raise BackendError(str(e)) from e
    finally:
        await conn.close()
