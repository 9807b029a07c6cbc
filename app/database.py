from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Iterable, Sequence
from urllib.parse import urlparse

import aiosqlite

from app.config import DATABASE_MAX_CONNECTIONS, DATABASE_PATH, DATABASE_URL, SEED_DEMO_DATA

try:  # Optional: only required when DATABASE_URL is set (Postgres)
    import asyncpg  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    asyncpg = None

logger = logging.getLogger(__name__)


class DatabaseAdapter:
    engine: str

    async def execute(self, query: str, params: Sequence | None = None) -> int:  # pragma: no cover - interface
        """Run a statement and return the number of affected rows."""
        raise NotImplementedError

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_one(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_all(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executescript(self, script: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class SQLiteAdapter(DatabaseAdapter):
    conn: aiosqlite.Connection
    engine: str = "sqlite"

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        cursor = await self.conn.execute(query, params or ())
        return cursor.rowcount

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        await self.conn.executemany(query, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchall()

    async def commit(self) -> None:
        await self.conn.commit()

    async def close(self) -> None:
        await self.conn.close()

    async def executescript(self, script: str) -> None:
        await self.conn.executescript(script)


@dataclass
class PostgresAdapter(DatabaseAdapter):
    pool: "asyncpg.Pool"  # type: ignore[name-defined]
    engine: str = "postgres"

    @staticmethod
    def _translate_query(query: str) -> str:
        # Convert SQLite-style ? placeholders to asyncpg-style $1, $2, ...
        if "$1" in query:
            return query
        idx = 1
        out = []
        for ch in query:
            if ch == "?":
                out.append(f"${idx}")
                idx += 1
            else:
                out.append(ch)
        return "".join(out)

    @staticmethod
    def _rowcount(status: str) -> int:
        # asyncpg returns the command tag, e.g. "UPDATE 1" or "INSERT 0 1"
        try:
            return int(status.rsplit(" ", 1)[-1])
        except (ValueError, AttributeError):
            return 0

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            status = await conn.execute(q, *(params or ()))
        return self._rowcount(status)

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            await conn.executemany(q, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(q, *(params or ()))

    async def fetch_all(self, query: str, params: Sequence | None = None):
        q = self._translate_query(query)
        async with self.pool.acquire() as conn:
            return await conn.fetch(q, *(params or ()))

    async def commit(self) -> None:
        # asyncpg autocommits per statement unless an explicit transaction is used.
        return

    async def close(self) -> None:
        await self.pool.close()

    async def executescript(self, script: str) -> None:
        # Not supported for Postgres; callers should split statements.
        raise NotImplementedError


_db: DatabaseAdapter | None = None


async def get_db() -> DatabaseAdapter:
    global _db
    if _db is None:
        if DATABASE_URL:
            if DATABASE_URL.startswith("sqlite"):
                sqlite_path = _sqlite_path_from_url(DATABASE_URL) or DATABASE_PATH
                conn = await aiosqlite.connect(sqlite_path)
                conn.row_factory = aiosqlite.Row
                _db = SQLiteAdapter(conn)
                logger.info("Connected to SQLite database at %s", sqlite_path)
            else:
                if asyncpg is None:
                    raise RuntimeError(
                        "DATABASE_URL is set but asyncpg is not installed. "
                        "Install asyncpg or unset DATABASE_URL."
                    )
                pool = await asyncpg.create_pool(
                    dsn=DATABASE_URL,
                    min_size=1,
                    max_size=DATABASE_MAX_CONNECTIONS,
                )
                _db = PostgresAdapter(pool)
                logger.info("Connected to Postgres database")
        else:
            conn = await aiosqlite.connect(DATABASE_PATH)
            conn.row_factory = aiosqlite.Row
            _db = SQLiteAdapter(conn)
            logger.info("Connected to SQLite database at %s", DATABASE_PATH)
    return _db


def _sqlite_path_from_url(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or ""
    if not path or path == "/":
        return ""
    # sqlite:////absolute/path.db -> keep absolute path
    if url.startswith("sqlite:////"):
        return path
    # sqlite:///relative.db -> strip leading slash
    if path.startswith("/"):
        return path[1:]
    return path


SQLITE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE,
        email TEXT,
        role TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        hospital_id INTEGER,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS hospitals (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        address TEXT,
        phone TEXT,
        latitude REAL NOT NULL,
        longitude REAL NOT NULL,
        total_beds INTEGER NOT NULL DEFAULT 0,
        available_beds INTEGER NOT NULL DEFAULT 0,
        icu_beds INTEGER NOT NULL DEFAULT 0,
        available_icu_beds INTEGER NOT NULL DEFAULT 0,
        emergency_status TEXT NOT NULL DEFAULT 'available',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (available_beds <= total_beds),
        CHECK (available_icu_beds <= icu_beds)
    );

    CREATE TABLE IF NOT EXISTS ambulances (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        vehicle_number TEXT NOT NULL,
        operator_id INTEGER REFERENCES users(id),
        hospital_id INTEGER REFERENCES hospitals(id),
        current_latitude REAL,
        current_longitude REAL,
        status TEXT NOT NULL DEFAULT 'available',
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS emergency_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        patient_id INTEGER NOT NULL REFERENCES users(id),
        ambulance_id INTEGER REFERENCES ambulances(id),
        hospital_id INTEGER REFERENCES hospitals(id),
        latitude REAL NOT NULL,
        longitude REAL NOT NULL,
        address TEXT,
        patient_condition TEXT,
        notes TEXT,
        priority TEXT NOT NULL DEFAULT 'high',
        status TEXT NOT NULL DEFAULT 'pending',
        assigned_bed_number TEXT,
        estimated_arrival_minutes INTEGER,
        client_reference TEXT,
        archived INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS bed_status_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        hospital_id INTEGER NOT NULL REFERENCES hospitals(id),
        bed_number TEXT NOT NULL,
        bed_type TEXT NOT NULL DEFAULT 'general',
        status TEXT NOT NULL DEFAULT 'available',
        patient_name TEXT,
        emergency_request_id INTEGER REFERENCES emergency_requests(id),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (hospital_id, bed_number)
    );

    CREATE TABLE IF NOT EXISTS communications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        emergency_request_id INTEGER NOT NULL REFERENCES emergency_requests(id),
        sender_id INTEGER NOT NULL,
        sender_role TEXT NOT NULL,
        receiver_id INTEGER NOT NULL,
        receiver_role TEXT NOT NULL,
        message TEXT NOT NULL,
        message_type TEXT NOT NULL DEFAULT 'text',
        is_read INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );
"""

POSTGRES_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT,
        role TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        hospital_id BIGINT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS hospitals (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        address TEXT,
        phone TEXT,
        latitude DOUBLE PRECISION NOT NULL,
        longitude DOUBLE PRECISION NOT NULL,
        total_beds INTEGER NOT NULL DEFAULT 0,
        available_beds INTEGER NOT NULL DEFAULT 0,
        icu_beds INTEGER NOT NULL DEFAULT 0,
        available_icu_beds INTEGER NOT NULL DEFAULT 0,
        emergency_status TEXT NOT NULL DEFAULT 'available',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (available_beds <= total_beds),
        CHECK (available_icu_beds <= icu_beds)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS ambulances (
        id BIGSERIAL PRIMARY KEY,
        vehicle_number TEXT NOT NULL,
        operator_id BIGINT REFERENCES users(id),
        hospital_id BIGINT REFERENCES hospitals(id),
        current_latitude DOUBLE PRECISION,
        current_longitude DOUBLE PRECISION,
        status TEXT NOT NULL DEFAULT 'available',
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS emergency_requests (
        id BIGSERIAL PRIMARY KEY,
        patient_id BIGINT NOT NULL REFERENCES users(id),
        ambulance_id BIGINT REFERENCES ambulances(id),
        hospital_id BIGINT REFERENCES hospitals(id),
        latitude DOUBLE PRECISION NOT NULL,
        longitude DOUBLE PRECISION NOT NULL,
        address TEXT,
        patient_condition TEXT,
        notes TEXT,
        priority TEXT NOT NULL DEFAULT 'high',
        status TEXT NOT NULL DEFAULT 'pending',
        assigned_bed_number TEXT,
        estimated_arrival_minutes INTEGER,
        client_reference TEXT,
        archived INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS bed_status_logs (
        id BIGSERIAL PRIMARY KEY,
        hospital_id BIGINT NOT NULL REFERENCES hospitals(id),
        bed_number TEXT NOT NULL,
        bed_type TEXT NOT NULL DEFAULT 'general',
        status TEXT NOT NULL DEFAULT 'available',
        patient_name TEXT,
        emergency_request_id BIGINT REFERENCES emergency_requests(id),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (hospital_id, bed_number)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS communications (
        id BIGSERIAL PRIMARY KEY,
        emergency_request_id BIGINT NOT NULL REFERENCES emergency_requests(id),
        sender_id BIGINT NOT NULL,
        sender_role TEXT NOT NULL,
        receiver_id BIGINT NOT NULL,
        receiver_role TEXT NOT NULL,
        message TEXT NOT NULL,
        message_type TEXT NOT NULL DEFAULT 'text',
        is_read INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );
    """,
]


async def init_db() -> None:
    db = await get_db()

    if db.engine == "sqlite":
        await db.executescript(SQLITE_SCHEMA)
    else:
        for stmt in POSTGRES_SCHEMA:
            await db.execute(stmt)

    await db.commit()

    if SEED_DEMO_DATA:
        await _seed_demo_data(db)


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _seed_demo_data(db: DatabaseAdapter) -> None:
    """Seed one patient, one hospital with bed slots, and one ambulance crew."""
    existing = await db.fetch_one("SELECT id FROM users LIMIT 1")
    if existing:
        logger.info("Database already seeded, skipping")
        return

    now = datetime.now(UTC).isoformat()

    hospital_rows = await db.fetch_all(
        """INSERT INTO hospitals (
            name, address, phone, latitude, longitude, emergency_status, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?) RETURNING id""",
        ("Emergency Medical Center", "123 Hospital Ave, Medical District", "+1234567900",
         22.7196, 75.8577, "available", now, now),
    )
    hospital_id = hospital_rows[0]["id"]

    # 24 general beds (8 free) and 6 ICU beds (2 free)
    slots = []
    for n in range(1, 25):
        slots.append((hospital_id, f"G-{n:02d}", "general", "available" if n <= 8 else "occupied", now, now))
    for n in range(1, 7):
        slots.append((hospital_id, f"ICU-{n:02d}", "icu", "available" if n <= 2 else "occupied", now, now))
    await db.executemany(
        """INSERT INTO bed_status_logs (
            hospital_id, bed_number, bed_type, status, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?)""",
        slots,
    )
    await db.execute(
        """UPDATE hospitals SET total_beds = 24, available_beds = 8,
            icu_beds = 6, available_icu_beds = 2 WHERE id = ?""",
        (hospital_id,),
    )

    await db.executemany(
        """INSERT INTO users (
            username, email, role, first_name, last_name, phone, hospital_id, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        [
            ("patient1", "patient1@test.com", "patient", "John", "Patient", "+1234567890", None, now, now),
            ("hospital1", "hospital1@test.com", "hospital", "Hospital", "Admin", "+1234567891", hospital_id, now, now),
            ("ambulance1", "ambulance1@test.com", "ambulance", "Ambulance", "Driver", "+1234567892", None, now, now),
        ],
    )
    operator = await db.fetch_one("SELECT id FROM users WHERE username = ?", ("ambulance1",))
    await db.execute(
        """INSERT INTO ambulances (
            vehicle_number, operator_id, hospital_id, current_latitude, current_longitude,
            status, is_active, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        ("AMB-001", operator["id"], hospital_id, 22.7533, 75.8937, "available", 1, now, now),
    )
    await db.commit()
    logger.info("Seeded demo users: patient1, hospital1, ambulance1")
