"""
Database models and operations for the bundle allocator web app.
Uses SQLite for minimal storage footprint.
"""
import sqlite3
import json
import uuid
import time
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Any
import logging

logger = logging.getLogger(__name__)

ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PROCESSED = "processed"


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


class Database:
    """SQLite database wrapper for orders, order entries and validation history"""

    def __init__(self, db_path: str = "backend/data/app.db", timeout: float = 20.0):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
            timeout: Connection timeout in seconds (default: 20.0)
        """
        self.db_path = Path(db_path)
        self.timeout = timeout

        # Ensure data directory exists and is writable
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        if not self._verify_database_path():
            raise RuntimeError(f"Cannot access database path: {self.db_path}")

        self.init_database()

    def _verify_database_path(self) -> bool:
        """Verify database path is accessible and writable"""
        test_file = self.db_path.parent / ".test_write"
        try:
            test_file.touch()
            test_file.unlink()
            return True
        except OSError as e:
            logger.error(f"Database path not writable: {e}")
            return False

    @contextmanager
    def get_connection(self):
        """
        Get database connection with proper configuration.
        Uses context manager to ensure connection is always closed.

        Enables:
        - WAL mode for better concurrency
        - Foreign key constraints so order entries follow their order
        - Timeout to prevent indefinite hangs
        """
        conn = None
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.timeout
            )
            conn.row_factory = sqlite3.Row

            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute(f"PRAGMA busy_timeout={int(self.timeout * 1000)}")

            yield conn
            conn.commit()
        except sqlite3.Error as e:
            if conn:
                conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error(f"Unexpected database error: {e}")
            raise
        finally:
            if conn:
                conn.close()

    def _execute_with_retry(self, operation, max_retries: int = 3, initial_delay: float = 0.1):
        """
        Execute database operation with retry logic for transient errors.

        Args:
            operation: Callable that performs the database operation
            max_retries: Maximum number of retry attempts
            initial_delay: Initial delay between retries in seconds

        Returns:
            Result of the operation
        """
        last_exception = None

        for attempt in range(max_retries):
            try:
                return operation()
            except sqlite3.OperationalError as e:
                error_msg = str(e).lower()
                if "locked" in error_msg or "busy" in error_msg:
                    if attempt < max_retries - 1:
                        delay = initial_delay * (2 ** attempt)  # Exponential backoff
                        logger.warning(f"Database locked, retrying in {delay}s (attempt {attempt + 1}/{max_retries})")
                        time.sleep(delay)
                        last_exception = e
                        continue
                raise

        if last_exception:
            raise last_exception

    def init_database(self):
        """Initialize database schema"""
        def _init_schema(conn):
            cursor = conn.cursor()

            # Orders queued for provisioning
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    source TEXT,
                    entry_count INTEGER DEFAULT 0,
                    valid_count INTEGER DEFAULT 0,
                    invalid_count INTEGER DEFAULT 0,
                    duplicate_count INTEGER DEFAULT 0,
                    fixed_count INTEGER DEFAULT 0,
                    total_gb TEXT,
                    processed_at TEXT
                )
            """)

            # Entries of each order, in submission order
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS order_entries (
                    order_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    raw_number TEXT,
                    number TEXT NOT NULL,
                    allocation_gb TEXT NOT NULL,
                    is_valid INTEGER NOT NULL,
                    was_fixed INTEGER DEFAULT 0,
                    is_duplicate INTEGER DEFAULT 0,
                    PRIMARY KEY (order_id, position),
                    FOREIGN KEY (order_id) REFERENCES orders(id) ON DELETE CASCADE
                )
            """)

            # One row per validation or export session
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS history (
                    id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    date TEXT NOT NULL,
                    type TEXT NOT NULL,
                    entry_count INTEGER DEFAULT 0,
                    valid_count INTEGER DEFAULT 0,
                    invalid_count INTEGER DEFAULT 0,
                    duplicate_count INTEGER DEFAULT 0,
                    total_gb TEXT,
                    entries TEXT
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders(created_at)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_history_date ON history(date)")

        try:
            with self.get_connection() as conn:
                _init_schema(conn)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    # Orders

    def create_order(self, entries: List[Dict[str, Any]], source: str = "web") -> str:
        """
        Store a new pending order.

        Args:
            entries: Entry dicts with raw_number, number, allocation_gb,
                     is_valid, was_fixed and is_duplicate
            source: Where the order came from (paste, upload, api)

        Returns:
            The new order id
        """
        order_id = str(uuid.uuid4())
        total_gb = sum((Decimal(str(entry["allocation_gb"])) for entry in entries), Decimal("0"))

        def _create_order(conn):
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO orders (
                    id, created_at, status, source, entry_count, valid_count,
                    invalid_count, duplicate_count, fixed_count, total_gb
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                order_id,
                _now(),
                ORDER_STATUS_PENDING,
                source,
                len(entries),
                sum(1 for entry in entries if entry["is_valid"] and not entry.get("is_duplicate")),
                sum(1 for entry in entries if not entry["is_valid"]),
                sum(1 for entry in entries if entry.get("is_duplicate")),
                sum(1 for entry in entries if entry.get("was_fixed")),
                str(total_gb),
            ))
            cursor.executemany("""
                INSERT INTO order_entries (
                    order_id, position, raw_number, number, allocation_gb,
                    is_valid, was_fixed, is_duplicate
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (
                    order_id,
                    position,
                    entry.get("raw_number"),
                    entry["number"],
                    str(entry["allocation_gb"]),
                    1 if entry["is_valid"] else 0,
                    1 if entry.get("was_fixed") else 0,
                    1 if entry.get("is_duplicate") else 0,
                )
                for position, entry in enumerate(entries)
            ])

        try:
            with self.get_connection() as conn:
                self._execute_with_retry(lambda: _create_order(conn))
            logger.info(f"Created order {order_id} with {len(entries)} entries")
            return order_id
        except Exception as e:
            logger.error(f"Failed to create order: {e}")
            raise

    @staticmethod
    def _order_from_row(row: sqlite3.Row) -> Dict[str, Any]:
        order = dict(row)
        order["total_gb"] = Decimal(order["total_gb"] or "0")
        return order

    @staticmethod
    def _entry_from_row(row: sqlite3.Row) -> Dict[str, Any]:
        entry = dict(row)
        entry.pop("order_id", None)
        entry["allocation_gb"] = Decimal(entry["allocation_gb"])
        entry["is_valid"] = bool(entry["is_valid"])
        entry["was_fixed"] = bool(entry["was_fixed"])
        entry["is_duplicate"] = bool(entry["is_duplicate"])
        return entry

    def get_order(self, order_id: str) -> Optional[Dict]:
        """Get order with its entries in submission order"""
        def _get_order(conn):
            cursor = conn.cursor()

            cursor.execute("SELECT * FROM orders WHERE id = ?", (order_id,))
            order_row = cursor.fetchone()
            if not order_row:
                return None

            order = self._order_from_row(order_row)
            cursor.execute(
                "SELECT * FROM order_entries WHERE order_id = ? ORDER BY position",
                (order_id,)
            )
            order["entries"] = [self._entry_from_row(row) for row in cursor.fetchall()]
            return order

        try:
            with self.get_connection() as conn:
                return _get_order(conn)
        except Exception as e:
            logger.error(f"Failed to get order {order_id}: {e}")
            raise

    def list_orders(self, status: Optional[str] = None, limit: int = 50) -> List[Dict]:
        """List orders without their entries, oldest first so the queue reads in order"""
        def _list_orders(conn):
            cursor = conn.cursor()
            if status:
                cursor.execute("""
                    SELECT * FROM orders WHERE status = ?
                    ORDER BY created_at, rowid LIMIT ?
                """, (status, limit))
            else:
                cursor.execute("""
                    SELECT * FROM orders ORDER BY created_at, rowid LIMIT ?
                """, (limit,))
            return [self._order_from_row(row) for row in cursor.fetchall()]

        try:
            with self.get_connection() as conn:
                return _list_orders(conn)
        except Exception as e:
            logger.error(f"Failed to list orders: {e}")
            raise

    def mark_order_processed(self, order_id: str) -> bool:
        """
        Move an order from pending to processed.

        Returns:
            True only when this call made the transition. An order that is
            already processed (or missing) is left untouched.
        """
        def _mark_processed(conn):
            cursor = conn.cursor()
            cursor.execute("""
                UPDATE orders SET status = ?, processed_at = ?
                WHERE id = ? AND status = ?
            """, (ORDER_STATUS_PROCESSED, _now(), order_id, ORDER_STATUS_PENDING))
            return cursor.rowcount > 0

        try:
            with self.get_connection() as conn:
                updated = self._execute_with_retry(lambda: _mark_processed(conn))
            if updated:
                logger.info(f"Order {order_id} marked processed")
            else:
                logger.warning(f"Order {order_id} was not pending, status left unchanged")
            return updated
        except Exception as e:
            logger.error(f"Failed to mark order {order_id} processed: {e}")
            raise

    def delete_order(self, order_id: str) -> bool:
        """Delete order (cascade deletes its entries due to foreign key)"""
        def _delete_order(conn):
            cursor = conn.cursor()
            cursor.execute("DELETE FROM orders WHERE id = ?", (order_id,))
            return cursor.rowcount > 0

        try:
            with self.get_connection() as conn:
                deleted = self._execute_with_retry(lambda: _delete_order(conn))
            if deleted:
                logger.debug(f"Deleted order: {order_id}")
            return deleted
        except Exception as e:
            logger.error(f"Failed to delete order {order_id}: {e}")
            raise

    # History

    def save_history(self, record: Dict[str, Any]) -> str:
        """
        Save one validation/export session.

        Args:
            record: Dict with type, entry_count, valid_count, invalid_count,
                    duplicate_count, total_gb and entries (list of dicts)
        """
        history_id = record.get("id") or f"{record['type']}-{uuid.uuid4().hex[:12]}"
        created_at = record.get("created_at") or _now()

        def _save_history(conn):
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO history (
                    id, created_at, date, type, entry_count, valid_count,
                    invalid_count, duplicate_count, total_gb, entries
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                history_id,
                created_at,
                created_at[:10],
                record["type"],
                record.get("entry_count", 0),
                record.get("valid_count", 0),
                record.get("invalid_count", 0),
                record.get("duplicate_count", 0),
                str(record.get("total_gb", 0)),
                json.dumps(record.get("entries", [])),
            ))

        try:
            with self.get_connection() as conn:
                self._execute_with_retry(lambda: _save_history(conn))
            logger.debug(f"Saved history record: {history_id}")
            return history_id
        except Exception as e:
            logger.error(f"Failed to save history: {e}")
            raise

    def list_history(self, date: Optional[str] = None, limit: int = 100) -> List[Dict]:
        """List history records, most recent first, optionally for one YYYY-MM-DD day"""
        def _list_history(conn):
            cursor = conn.cursor()
            if date:
                cursor.execute("""
                    SELECT * FROM history WHERE date = ?
                    ORDER BY created_at DESC, rowid DESC LIMIT ?
                """, (date, limit))
            else:
                cursor.execute("""
                    SELECT * FROM history ORDER BY created_at DESC, rowid DESC LIMIT ?
                """, (limit,))

            records = []
            for row in cursor.fetchall():
                record = dict(row)
                record["total_gb"] = Decimal(record["total_gb"] or "0")
                record["entries"] = json.loads(record["entries"]) if record["entries"] else []
                records.append(record)
            return records

        try:
            with self.get_connection() as conn:
                return _list_history(conn)
        except Exception as e:
            logger.error(f"Failed to list history: {e}")
            raise

    def clear_history(self) -> int:
        """Delete every history record, returning how many were removed"""
        def _clear_history(conn):
            cursor = conn.cursor()
            cursor.execute("DELETE FROM history")
            return cursor.rowcount

        try:
            with self.get_connection() as conn:
                removed = self._execute_with_retry(lambda: _clear_history(conn))
            logger.info(f"Cleared {removed} history records")
            return removed
        except Exception as e:
            logger.error(f"Failed to clear history: {e}")
            raise

    def check_database_health(self) -> Dict[str, Any]:
        """
        Check database health and accessibility.

        Returns:
            Dictionary with health check results:
            - accessible: bool - True if database file is accessible
            - writable: bool - True if a write transaction succeeds
            - file_exists: bool - True if database file exists
            - file_size: int - Size of database file in bytes
            - table_counts: Dict[str, int] - Count of records in each table
        """
        health = {
            "accessible": False,
            "writable": False,
            "file_exists": False,
            "file_size": 0,
            "table_counts": {}
        }

        health["file_exists"] = self.db_path.exists()
        if not health["file_exists"]:
            return health

        health["file_size"] = self.db_path.stat().st_size

        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()

                cursor.execute("SELECT 1")
                cursor.fetchone()
                health["accessible"] = True

                cursor.execute("BEGIN IMMEDIATE")
                cursor.execute("ROLLBACK")
                health["writable"] = True

                # SQLite doesn't support parameterized table names, so the names are fixed here
                for table in ("orders", "order_entries", "history"):
                    cursor.execute(f"SELECT COUNT(*) FROM {table}")
                    health["table_counts"][table] = cursor.fetchone()[0]

        except sqlite3.Error as e:
            logger.error(f"Database health check failed: {e}")

        return health
