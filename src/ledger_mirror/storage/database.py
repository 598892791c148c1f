"""SQLite persistence for mirrored pools and their latest prices."""
from datetime import datetime, timezone
from typing import Optional

import aiosqlite
import structlog

from ledger_mirror.models import PoolStatus, TrackedPool

logger = structlog.get_logger()

DB_PATH = "ledger_mirror.db"

PRICE_TRACKED_STATUSES = tuple(s.value for s in PoolStatus if s.is_price_tracked)


class Database:
    """Async SQLite database handler."""

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    async def connect(self):
        """Connect to database and create tables."""
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._create_tables()
        logger.info("database_connected", path=self.db_path)

    async def close(self):
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")

    async def _create_tables(self):
        await self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS pools (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pool_address TEXT UNIQUE,
                token_mint TEXT,
                status TEXT NOT NULL DEFAULT 'open',
                current_price_usd REAL,
                price_updated_at TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_pools_status ON pools(status);
            CREATE INDEX IF NOT EXISTS idx_pools_token_mint ON pools(token_mint);
        """)
        await self.conn.commit()

    async def upsert_pool(
        self,
        pool_address: str,
        token_mint: Optional[str] = None,
        status: PoolStatus = PoolStatus.OPEN,
    ) -> int:
        """Insert a pool or update its mint and status. Returns the row id."""
        now = _now()
        await self.conn.execute("""
            INSERT INTO pools (pool_address, token_mint, status, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(pool_address) DO UPDATE SET
                token_mint = COALESCE(excluded.token_mint, pools.token_mint),
                status = excluded.status,
                updated_at = excluded.updated_at
        """, (pool_address, token_mint, PoolStatus(status).value, now))
        await self.conn.commit()

        async with self.conn.execute(
            "SELECT id FROM pools WHERE pool_address = ?", (pool_address,)
        ) as cursor:
            row = await cursor.fetchone()
        return row["id"]

    async def get_pool_by_address(self, pool_address: str) -> Optional[TrackedPool]:
        async with self.conn.execute(
            "SELECT * FROM pools WHERE pool_address = ?", (pool_address,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_pool(row) if row else None

    async def update_pool_status(self, pool_id: int, status: PoolStatus):
        await self.conn.execute(
            "UPDATE pools SET status = ?, updated_at = ? WHERE id = ?",
            (PoolStatus(status).value, _now(), pool_id),
        )
        await self.conn.commit()

    async def update_pool_price(self, pool_id: int, price: float):
        """Record the latest USD price for a pool. Last write wins."""
        now = _now()
        await self.conn.execute(
            "UPDATE pools SET current_price_usd = ?, price_updated_at = ?, updated_at = ? WHERE id = ?",
            (price, now, now, pool_id),
        )
        await self.conn.commit()

    async def get_pool_price(self, pool_id: int) -> Optional[float]:
        async with self.conn.execute(
            "SELECT current_price_usd FROM pools WHERE id = ?", (pool_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return row["current_price_usd"] if row else None

    async def get_active_pools_for_price_tracking(self) -> list[TrackedPool]:
        """Pools in a state that should be priced and that have a token mint."""
        placeholders = ",".join("?" for _ in PRICE_TRACKED_STATUSES)
        async with self.conn.execute(f"""
            SELECT * FROM pools
            WHERE status IN ({placeholders}) AND token_mint IS NOT NULL
            ORDER BY id
        """, PRICE_TRACKED_STATUSES) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_pool(row) for row in rows]


def _row_to_pool(row: aiosqlite.Row) -> TrackedPool:
    try:
        status = PoolStatus(row["status"])
    except ValueError:
        status = PoolStatus.UNKNOWN
    return TrackedPool(
        id=row["id"],
        token_mint=row["token_mint"],
        pool_address=row["pool_address"],
        status=status,
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
