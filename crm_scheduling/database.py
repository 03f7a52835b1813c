import logging
import os
import time
from threading import Lock

from sqlalchemy import create_engine, event, text
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import Session, sessionmaker

from .config import DATABASE_URL

logger = logging.getLogger(__name__)

# Get environment-specific pool settings
POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "30"))
POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "300"))
ENABLE_QUERY_LOGGING = os.getenv("DB_LOG_SLOW_QUERIES", "true").lower() == "true"
SLOW_QUERY_THRESHOLD = float(os.getenv("DB_SLOW_QUERY_THRESHOLD", "1.0"))

# Namespace half of the two-key advisory lock used for booking slots
SLOT_LOCK_NAMESPACE = int(os.getenv("DB_SLOT_LOCK_NAMESPACE", "7301"))

try:
    if DATABASE_URL.startswith("sqlite"):
        # SQLite is used for local development and tests only
        engine = create_engine(
            DATABASE_URL,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    else:
        engine = create_engine(
            DATABASE_URL,
            pool_pre_ping=True,  # Test connections before using
            pool_recycle=POOL_RECYCLE,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            echo=False,  # Don't log all SQL (use slow query logging instead)
        )
    logger.info("✅ Database engine created successfully")
    logger.info(
        f"📊 Connection pool: size={POOL_SIZE}, max_overflow={MAX_OVERFLOW}, timeout={POOL_TIMEOUT}s"
    )
except Exception as e:
    logger.error(f"❌ Failed to create database engine: {e}")
    raise

# Slow query logging for performance monitoring
if ENABLE_QUERY_LOGGING:

    @event.listens_for(engine, "before_cursor_execute")
    def before_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
        conn.info.setdefault("query_start_time", []).append(time.time())

    @event.listens_for(engine, "after_cursor_execute")
    def after_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
        total = time.time() - conn.info["query_start_time"].pop(-1)
        if total > SLOW_QUERY_THRESHOLD:
            logger.warning(f"🐌 Slow query ({total:.2f}s): {statement[:200]}...")

    logger.info(f"📊 Slow query logging enabled (threshold: {SLOW_QUERY_THRESHOLD}s)")

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Process-local fallback locks, one per booking owner
_local_slot_locks: dict[int, Lock] = {}
_local_slot_locks_guard = Lock()


class BookingSlotLock:
    """
    Transactional scope that serializes calendar writes for one booking owner.

    Everything executed inside the ``with`` block (conflict lookup, insert,
    activity log) belongs to one transaction that is committed on normal exit
    and rolled back on any exception.

    On PostgreSQL the scope takes a transaction-level advisory lock keyed by
    the owner id, so two API workers creating overlapping bookings for the
    same user cannot both pass the conflict check. The lock is released by
    the database at commit/rollback. Other dialects (SQLite in development)
    fall back to an in-process lock.

    Example:
        with BookingSlotLock(db, user.id):
            if find_conflicts(db, user.id, start, end):
                raise ConflictError(...)
            db.add(booking)
    """

    def __init__(self, db: Session, user_id: int):
        self.db = db
        self.user_id = user_id
        self._local_lock: Lock | None = None

    def __enter__(self) -> "BookingSlotLock":
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            self.db.execute(
                text("SELECT pg_advisory_xact_lock(:namespace, :key)"),
                {"namespace": SLOT_LOCK_NAMESPACE, "key": self.user_id},
            )
            logger.debug(f"🔒 Advisory slot lock acquired for user_id={self.user_id}")
        else:
            with _local_slot_locks_guard:
                self._local_lock = _local_slot_locks.setdefault(self.user_id, Lock())
            self._local_lock.acquire()
            logger.debug(f"🔒 Local slot lock acquired for user_id={self.user_id}")
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                try:
                    self.db.commit()
                except Exception:
                    self.db.rollback()
                    raise
            else:
                self.db.rollback()
        finally:
            if self._local_lock is not None:
                self._local_lock.release()
                self._local_lock = None
            logger.debug(f"🔓 Slot lock released for user_id={self.user_id}")
        return False
