"""Session history. SQLite by default; set DATABASE_URL or MYSQL_* for MySQL.
Startup ensures the table exists; on connection failure logs verbosely and falls back to SQLite or in-memory so the app can start.
History is write-behind only: task polling never reads it."""
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from doc2md import config as app_config
from doc2md.tasks import TaskSnapshot

logger = logging.getLogger("doc2md.db")

_engine: Optional[Engine] = None

REQUIRED_TABLES = ("session_activities",)


def _is_sqlite() -> bool:
    return "sqlite" in app_config.DATABASE_URL


def _is_mysql() -> bool:
    return "mysql" in app_config.DATABASE_URL


def _db_kind() -> str:
    if _is_mysql():
        return "MySQL"
    if _is_sqlite():
        return "SQLite"
    return "other"


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        kwargs = {}
        if _is_sqlite():
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in app_config.DATABASE_URL:
                from sqlalchemy.pool import StaticPool
                kwargs["poolclass"] = StaticPool
        _engine = create_engine(app_config.DATABASE_URL, **kwargs)
        logger.info("Database engine created (%s)", _db_kind())
    return _engine


def reset_engine(url: Optional[str] = None) -> None:
    """Drop the cached engine, optionally pointing at a new URL (tests, fallback)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None
    if url is not None:
        app_config.DATABASE_URL = url


def _create_sqlite_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS session_activities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            task_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            model TEXT,
            filenames_json TEXT,
            input_bytes INTEGER,
            output_chars INTEGER,
            status TEXT NOT NULL,
            error TEXT,
            created_at TEXT NOT NULL,
            completed_at TEXT,
            duration_seconds REAL
        )
    """))
    conn.commit()


def _create_mysql_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS session_activities (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            session_id VARCHAR(255) NOT NULL,
            task_id VARCHAR(255) NOT NULL,
            kind VARCHAR(32) NOT NULL,
            model VARCHAR(255),
            filenames_json TEXT,
            input_bytes BIGINT,
            output_chars BIGINT,
            status VARCHAR(50) NOT NULL,
            error TEXT,
            created_at VARCHAR(50) NOT NULL,
            completed_at VARCHAR(50),
            duration_seconds DOUBLE
        )
    """))
    conn.commit()


def _ensure_tables(engine: Engine) -> None:
    with engine.connect() as conn:
        if _is_mysql():
            _create_mysql_tables(conn)
        else:
            _create_sqlite_tables(conn)
    logger.info("Required tables ensured: %s", ", ".join(REQUIRED_TABLES))


def init_db() -> None:
    """Prepare database at startup. On failure, fall back to a SQLite file or in-memory so the app can start."""
    kind = _db_kind()
    logger.info("Database init: preparing %s (tables: %s)", kind, ", ".join(REQUIRED_TABLES))

    try:
        _ensure_tables(get_engine())
        logger.info("Database ready: %s", kind)
        return
    except OperationalError as e:
        logger.warning("Database connection failed (%s): %s. Will try fallback.", kind, e.orig, exc_info=True)
        if _is_mysql():
            try:
                sqlite_path = app_config.BASE_DIR / "data" / "doc2md.db"
                sqlite_path.parent.mkdir(parents=True, exist_ok=True)
                reset_engine(f"sqlite:///{sqlite_path}")
                _ensure_tables(get_engine())
                logger.warning("MySQL unavailable. Using SQLite at %s. Fix MYSQL_* in .env to use MySQL.", sqlite_path)
                return
            except Exception as fallback_err:
                logger.exception("SQLite file fallback failed: %s. Trying in-memory SQLite.", fallback_err)
        else:
            logger.exception("Database error (non-MySQL). Trying in-memory SQLite.")
    except Exception as e:
        logger.exception("Database init failed: %s. Trying in-memory SQLite.", e)

    # Last resort: history is lost on restart
    reset_engine("sqlite:///:memory:")
    _ensure_tables(get_engine())
    logger.warning("Database unavailable. Using in-memory SQLite. Session history will not persist across restarts.")


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def record_activity(
    session_id: str,
    task_id: str,
    kind: str,
    status: str,
    *,
    model: Optional[str] = None,
    filenames: Optional[list[str]] = None,
    input_bytes: Optional[int] = None,
    output_chars: Optional[int] = None,
    error: Optional[str] = None,
    created_at: Optional[float] = None,
    completed_at: Optional[float] = None,
) -> None:
    duration = None
    if created_at is not None and completed_at is not None:
        duration = max(0.0, completed_at - created_at)
    params = {
        "session_id": session_id,
        "task_id": task_id,
        "kind": kind,
        "model": model,
        "filenames_json": json.dumps(filenames or []),
        "input_bytes": input_bytes,
        "output_chars": output_chars,
        "status": status,
        "error": error,
        "created_at": _iso(created_at) or datetime.now(timezone.utc).isoformat(),
        "completed_at": _iso(completed_at),
        "duration_seconds": duration,
    }
    with session() as conn:
        conn.execute(
            text("""
                INSERT INTO session_activities (session_id, task_id, kind, model, filenames_json, input_bytes, output_chars, status, error, created_at, completed_at, duration_seconds)
                VALUES (:session_id, :task_id, :kind, :model, :filenames_json, :input_bytes, :output_chars, :status, :error, :created_at, :completed_at, :duration_seconds)
            """),
            params,
        )


def record_task(snapshot: TaskSnapshot) -> None:
    """Finished-task hook for the task store. Tasks without a session are not recorded."""
    if not snapshot.session_id:
        return
    record_activity(
        snapshot.session_id,
        snapshot.id,
        snapshot.kind.value,
        snapshot.status.value,
        model=snapshot.model,
        filenames=list(snapshot.files),
        input_bytes=snapshot.input_bytes,
        output_chars=len(snapshot.result),
        error=snapshot.error,
        created_at=snapshot.created_at,
        completed_at=snapshot.finished_at,
    )


def get_session_stats(session_id: str) -> dict:
    """Aggregate stats for a session: tasks, completed, failed, files, input bytes, output chars, time spent."""
    with get_engine().connect() as conn:
        row = conn.execute(
            text("""
                SELECT
                    COUNT(*),
                    COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(input_bytes), 0),
                    COALESCE(SUM(output_chars), 0),
                    COALESCE(SUM(duration_seconds), 0)
                FROM session_activities WHERE session_id = :sid
            """),
            {"sid": session_id},
        ).fetchone()
        files_rows = conn.execute(
            text("SELECT filenames_json FROM session_activities WHERE session_id = :sid"),
            {"sid": session_id},
        ).fetchall()
    files = sum(len(json.loads(r[0] or "[]")) for r in files_rows)
    return {
        "tasks": int(row[0]) if row else 0,
        "completed": int(row[1]) if row else 0,
        "failed": int(row[2]) if row else 0,
        "files_converted": files,
        "total_input_bytes": int(row[3]) if row else 0,
        "total_output_chars": int(row[4]) if row else 0,
        "time_spent_seconds": round(float(row[5]), 2) if row else 0.0,
    }


def get_session_activities(session_id: str, limit: int = 100) -> list[dict]:
    """Recent activities for the session, newest first."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            text("""
                SELECT task_id, kind, model, filenames_json, input_bytes, output_chars, status, error, created_at, completed_at, duration_seconds
                FROM session_activities WHERE session_id = :sid ORDER BY created_at DESC, id DESC LIMIT :lim
            """),
            {"sid": session_id, "lim": limit},
        ).fetchall()
    return [
        {
            "task_id": r[0],
            "kind": r[1],
            "model": r[2],
            "filenames": json.loads(r[3] or "[]"),
            "input_bytes": r[4],
            "output_chars": r[5],
            "status": r[6],
            "error": r[7],
            "created_at": r[8],
            "completed_at": r[9],
            "duration_seconds": r[10],
        }
        for r in rows
    ]


def delete_session_data(session_id: str) -> int:
    """Delete all activities for the session. Returns the number of rows removed."""
    with session() as conn:
        result = conn.execute(text("DELETE FROM session_activities WHERE session_id = :sid"), {"sid": session_id})
    return result.rowcount or 0
