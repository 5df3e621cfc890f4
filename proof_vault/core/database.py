import sqlite3
import structlog
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import psycopg2
from psycopg2.pool import ThreadedConnectionPool

from proof_vault.config import Settings
from proof_vault.core.errors import IndexStorageError
from proof_vault.models.proof import IndexEntry

logger = structlog.get_logger()

# Connection pool configuration
MIN_CONNECTIONS = 1
MAX_CONNECTIONS = 20

SQLITE_BUSY_TIMEOUT_SECONDS = 30.0

CREATE_VAULT_TABLE = """
CREATE TABLE IF NOT EXISTS vault (
    image_hash TEXT PRIMARY KEY,
    cid TEXT NOT NULL,
    created_at BIGINT NOT NULL
)
"""


class ProofIndex(ABC):
    """Durable fingerprint -> content address table.

    The only durable mutation is ``upsert``, a single-row atomic replace that
    is committed before it returns. Same-key writers are serialized by the
    database; the later commit wins entirely.
    """

    backend = "unknown"

    @abstractmethod
    def initialize(self) -> None:
        """Create the table if it does not exist."""

    @abstractmethod
    def upsert(self, fingerprint: str, address: str, created_at: int) -> IndexEntry:
        """Insert or fully replace the entry for ``fingerprint``."""

    @abstractmethod
    def lookup(self, fingerprint: str) -> Optional[IndexEntry]:
        """Return the entry for ``fingerprint`` or None if never generated."""

    @abstractmethod
    def count(self) -> int:
        """Number of indexed fingerprints."""

    def check_connection(self) -> bool:
        try:
            self.count()
            return True
        except IndexStorageError as e:
            logger.error("Index connection check failed", backend=self.backend, error=str(e))
            return False

    def close(self) -> None:
        pass


class SQLiteProofIndex(ProofIndex):
    """SQLite file index; one connection per operation."""

    backend = "sqlite"

    UPSERT_SQL = """
    INSERT INTO vault (image_hash, cid, created_at)
    VALUES (?, ?, ?)
    ON CONFLICT (image_hash) DO UPDATE SET
        cid = excluded.cid,
        created_at = excluded.created_at
    """

    def __init__(self, path):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def get_db_connection(self):
        """Context manager for SQLite connections with automatic cleanup."""
        conn = None
        try:
            conn = sqlite3.connect(self.path, timeout=SQLITE_BUSY_TIMEOUT_SECONDS)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            yield conn
        except sqlite3.Error as e:
            if conn:
                conn.rollback()
            logger.error("Index operation failed", backend=self.backend, error=str(e))
            raise IndexStorageError(f"SQLite index error: {e}") from e
        finally:
            if conn:
                conn.close()

    def initialize(self) -> None:
        with self.get_db_connection() as conn:
            conn.execute(CREATE_VAULT_TABLE)
            conn.commit()
        logger.info("SQLite index initialized", path=self.path)

    def upsert(self, fingerprint: str, address: str, created_at: int) -> IndexEntry:
        with self.get_db_connection() as conn:
            conn.execute(self.UPSERT_SQL, (fingerprint, address, created_at))
            conn.commit()

        logger.debug("Index entry upserted", fingerprint=fingerprint, address=address)
        return IndexEntry(fingerprint=fingerprint, address=address, created_at=created_at)

    def lookup(self, fingerprint: str) -> Optional[IndexEntry]:
        with self.get_db_connection() as conn:
            row = conn.execute(
                "SELECT cid, created_at FROM vault WHERE image_hash = ?", (fingerprint,)
            ).fetchone()

        if row is None:
            return None
        return IndexEntry(fingerprint=fingerprint, address=row[0], created_at=row[1])

    def count(self) -> int:
        with self.get_db_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM vault").fetchone()[0]


class PostgresProofIndex(ProofIndex):
    """PostgreSQL index behind a threaded psycopg2 connection pool."""

    backend = "postgres"

    UPSERT_SQL = """
    INSERT INTO vault (image_hash, cid, created_at)
    VALUES (%s, %s, %s)
    ON CONFLICT (image_hash) DO UPDATE SET
        cid = EXCLUDED.cid,
        created_at = EXCLUDED.created_at
    """

    def __init__(self, dsn: str, min_connections: int = MIN_CONNECTIONS,
                 max_connections: int = MAX_CONNECTIONS):
        self.dsn = dsn
        self.min_connections = min_connections
        self.max_connections = max_connections
        self._connection_pool = None

    def _get_pool(self) -> ThreadedConnectionPool:
        if self._connection_pool is None:
            try:
                self._connection_pool = ThreadedConnectionPool(
                    self.min_connections, self.max_connections, self.dsn
                )
            except psycopg2.Error as e:
                logger.error("Failed to initialize index connection pool", error=str(e))
                raise IndexStorageError(f"PostgreSQL index unavailable: {e}") from e
            logger.info("Index connection pool initialized",
                        min_connections=self.min_connections,
                        max_connections=self.max_connections)
        return self._connection_pool

    @contextmanager
    def get_db_connection(self):
        """Context manager for pooled connections with automatic cleanup."""
        pool = self._get_pool()
        conn = None
        try:
            conn = pool.getconn()
            yield conn
        except psycopg2.Error as e:
            if conn:
                conn.rollback()
            logger.error("Index operation failed", backend=self.backend, error=str(e))
            raise IndexStorageError(f"PostgreSQL index error: {e}") from e
        finally:
            if conn:
                pool.putconn(conn)

    def initialize(self) -> None:
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(CREATE_VAULT_TABLE)
            conn.commit()
        logger.info("PostgreSQL index initialized")

    def upsert(self, fingerprint: str, address: str, created_at: int) -> IndexEntry:
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(self.UPSERT_SQL, (fingerprint, address, created_at))
            conn.commit()

        logger.debug("Index entry upserted", fingerprint=fingerprint, address=address)
        return IndexEntry(fingerprint=fingerprint, address=address, created_at=created_at)

    def lookup(self, fingerprint: str) -> Optional[IndexEntry]:
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT cid, created_at FROM vault WHERE image_hash = %s", (fingerprint,)
                )
                row = cur.fetchone()
            conn.commit()

        if row is None:
            return None
        return IndexEntry(fingerprint=fingerprint, address=row[0], created_at=int(row[1]))

    def count(self) -> int:
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM vault")
                result = cur.fetchone()
            conn.commit()
        return result[0]

    def close(self) -> None:
        if self._connection_pool is not None:
            self._connection_pool.closeall()
            self._connection_pool = None


def build_index(settings: Settings) -> ProofIndex:
    """Create the local index selected by ``INDEX_BACKEND``."""
    backend = settings.INDEX_BACKEND.strip().lower()

    if backend == "sqlite":
        return SQLiteProofIndex(settings.INDEX_DB_PATH)
    if backend in ("postgres", "postgresql"):
        return PostgresProofIndex(settings.INDEX_DB_DSN)

    raise ValueError(f"Unsupported index backend: {settings.INDEX_BACKEND}")
