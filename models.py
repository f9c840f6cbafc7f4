"""
SQLite persistence for PlotScore analysis sessions, payment orders,
free-tier usage limits and analytics events.

No ORM, just raw sqlite3.  Every status transition is a guarded UPDATE
(`WHERE status = ...`) checked through cursor.rowcount, and the paid
transition touches the order and its session inside one BEGIN IMMEDIATE
transaction so a concurrent reader sees either both rows before payment
or both rows after.
"""

import json
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("PLOTSCORE_DB_PATH", "plotscore.db")


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS analysis_sessions (
            session_id       TEXT PRIMARY KEY,
            lat              REAL NOT NULL,
            lng              REAL NOT NULL,
            address          TEXT,
            amount           INTEGER NOT NULL,
            property_type    TEXT NOT NULL,
            plan_tier        TEXT NOT NULL,
            status           TEXT NOT NULL DEFAULT 'pending',
            blocked          INTEGER NOT NULL DEFAULT 0,
            risk_acknowledged INTEGER NOT NULL DEFAULT 0,
            validation_json  TEXT,
            result_json      TEXT,
            current_order_id TEXT,
            client_ip        TEXT,
            created_at       TEXT NOT NULL,
            paid_at          TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_sessions_status ON analysis_sessions(status);
        CREATE INDEX IF NOT EXISTS idx_sessions_created ON analysis_sessions(created_at);

        -- One row per gateway order; a session may accumulate abandoned orders
        CREATE TABLE IF NOT EXISTS payment_orders (
            order_id      TEXT PRIMARY KEY,
            session_id    TEXT NOT NULL REFERENCES analysis_sessions(session_id),
            amount        INTEGER NOT NULL,
            amount_minor  INTEGER NOT NULL,
            currency_code TEXT NOT NULL,
            gateway_key   TEXT,
            status        TEXT NOT NULL DEFAULT 'created',
            payment_id    TEXT,
            created_at    TEXT NOT NULL,
            updated_at    TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_orders_session ON payment_orders(session_id);
        CREATE INDEX IF NOT EXISTS idx_orders_status ON payment_orders(status);

        CREATE TABLE IF NOT EXISTS usage_limits (
            ip_address       TEXT PRIMARY KEY,
            free_usage_count INTEGER NOT NULL DEFAULT 0,
            last_usage_date  TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS events (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            event_type  TEXT NOT NULL,
            session_id  TEXT,
            metadata    TEXT,
            created_at  TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
        CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id);
    """)
    conn.commit()
    conn.close()


# ---------------------------------------------------------------------------
# Analysis sessions
# ---------------------------------------------------------------------------

def generate_session_id():
    """URL-safe, unguessable session ID (16 hex chars)."""
    return uuid.uuid4().hex[:16]


def create_session(
    lat: float,
    lng: float,
    amount: int,
    property_type: str,
    plan_tier: str,
    validation: dict,
    result: Optional[dict],
    blocked: bool = False,
    risk_acknowledged: bool = False,
    address: Optional[str] = None,
    client_ip: Optional[str] = None,
) -> str:
    """Insert a new session in 'pending' state. Returns the session_id."""
    session_id = generate_session_id()
    conn = _get_db()
    conn.execute(
        """INSERT INTO analysis_sessions
           (session_id, lat, lng, address, amount, property_type, plan_tier,
            status, blocked, risk_acknowledged, validation_json, result_json,
            client_ip, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?, ?, ?)""",
        (
            session_id, lat, lng, address, amount, property_type, plan_tier,
            1 if blocked else 0,
            1 if risk_acknowledged else 0,
            json.dumps(validation),
            json.dumps(result, default=str) if result is not None else None,
            client_ip,
            _now(),
        ),
    )
    conn.commit()
    conn.close()
    return session_id


def get_session(session_id: str) -> Optional[dict]:
    """Load a session by ID with validation/result JSON parsed, or None."""
    conn = _get_db()
    row = conn.execute(
        "SELECT * FROM analysis_sessions WHERE session_id = ?", (session_id,)
    ).fetchone()
    conn.close()
    if not row:
        return None

    data = dict(row)
    try:
        data["validation"] = json.loads(data["validation_json"]) if data["validation_json"] else None
        data["result"] = json.loads(data["result_json"]) if data["result_json"] else None
    except (json.JSONDecodeError, TypeError) as e:
        logger.error("Corrupted JSON for session %s: %s", session_id, e)
        return None
    data["blocked"] = bool(data["blocked"])
    data["risk_acknowledged"] = bool(data["risk_acknowledged"])
    return data


# ---------------------------------------------------------------------------
# Payment orders
# ---------------------------------------------------------------------------

def create_order(
    order_id: str,
    session_id: str,
    amount: int,
    amount_minor: int,
    currency_code: str,
    gateway_key: str,
) -> None:
    """Record a new gateway order and make it the session's current order.

    Any earlier order for the session still in 'created' or 'failed' is
    marked 'abandoned' in the same transaction.
    """
    now = _now()
    conn = _get_db()
    try:
        conn.execute(
            """UPDATE payment_orders SET status = 'abandoned', updated_at = ?
               WHERE session_id = ? AND status IN ('created', 'failed')""",
            (now, session_id),
        )
        conn.execute(
            """INSERT INTO payment_orders
               (order_id, session_id, amount, amount_minor, currency_code,
                gateway_key, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, 'created', ?)""",
            (order_id, session_id, amount, amount_minor, currency_code, gateway_key, now),
        )
        conn.execute(
            "UPDATE analysis_sessions SET current_order_id = ? WHERE session_id = ?",
            (order_id, session_id),
        )
        conn.commit()
    finally:
        conn.close()


def get_order(order_id: str) -> Optional[dict]:
    conn = _get_db()
    row = conn.execute(
        "SELECT * FROM payment_orders WHERE order_id = ?", (order_id,)
    ).fetchone()
    conn.close()
    return dict(row) if row else None


def get_paid_order_for_session(session_id: str) -> Optional[dict]:
    """The order that paid for a session, if any."""
    conn = _get_db()
    row = conn.execute(
        "SELECT * FROM payment_orders WHERE session_id = ? AND status = 'paid'",
        (session_id,),
    ).fetchone()
    conn.close()
    return dict(row) if row else None


def mark_order_paid(order_id: str, payment_id: str) -> bool:
    """Atomically move an order to 'paid' and its session pending -> paid.

    Returns True only for the call that performed the transition; a
    duplicate confirmation returns False and changes nothing.
    """
    now = _now()
    conn = _get_db()
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        order_cur = conn.execute(
            """UPDATE payment_orders
               SET status = 'paid', payment_id = ?, updated_at = ?
               WHERE order_id = ? AND status IN ('created', 'failed', 'abandoned')""",
            (payment_id, now, order_id),
        )
        if order_cur.rowcount != 1:
            conn.execute("ROLLBACK")
            return False
        session_cur = conn.execute(
            """UPDATE analysis_sessions
               SET status = 'paid', paid_at = ?, current_order_id = ?
               WHERE session_id = (SELECT session_id FROM payment_orders WHERE order_id = ?)
                 AND status = 'pending'""",
            (now, order_id, order_id),
        )
        if session_cur.rowcount != 1:
            conn.execute("ROLLBACK")
            return False
        conn.execute("COMMIT")
        return True
    except sqlite3.Error:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def mark_order_failed(order_id: str) -> bool:
    """Mark a checkout attempt failed. The session stays 'pending'."""
    conn = _get_db()
    cur = conn.execute(
        """UPDATE payment_orders SET status = 'failed', updated_at = ?
           WHERE order_id = ? AND status = 'created'""",
        (_now(), order_id),
    )
    changed = cur.rowcount
    conn.commit()
    conn.close()
    return changed > 0


def mark_session_failed(session_id: str, order_id: Optional[str] = None) -> bool:
    """Terminal pending -> failed transition (with its order, if given)."""
    now = _now()
    conn = _get_db()
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        cur = conn.execute(
            "UPDATE analysis_sessions SET status = 'failed' WHERE session_id = ? AND status = 'pending'",
            (session_id,),
        )
        changed = cur.rowcount
        if changed and order_id:
            conn.execute(
                """UPDATE payment_orders SET status = 'failed', updated_at = ?
                   WHERE order_id = ? AND status = 'created'""",
                (now, order_id),
            )
        conn.execute("COMMIT")
        return changed > 0
    except sqlite3.Error:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Free-tier usage limits (per client IP, per UTC day)
# ---------------------------------------------------------------------------

def get_free_usage_count(ip_address: str) -> int:
    """Free analyses used today by this IP (0 if none or a previous day)."""
    conn = _get_db()
    row = conn.execute(
        "SELECT free_usage_count, last_usage_date FROM usage_limits WHERE ip_address = ?",
        (ip_address,),
    ).fetchone()
    conn.close()
    if not row or row["last_usage_date"] != _today():
        return 0
    return row["free_usage_count"]


def consume_free_usage(ip_address: str, daily_limit: int) -> bool:
    """Atomically take one free analysis for today. False if the limit is reached."""
    today = _today()
    conn = _get_db()
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute(
            "SELECT free_usage_count, last_usage_date FROM usage_limits WHERE ip_address = ?",
            (ip_address,),
        ).fetchone()
        used = 0
        if row and row["last_usage_date"] == today:
            used = row["free_usage_count"]
        if used >= daily_limit:
            conn.execute("ROLLBACK")
            return False
        conn.execute(
            """INSERT INTO usage_limits (ip_address, free_usage_count, last_usage_date)
               VALUES (?, ?, ?)
               ON CONFLICT(ip_address) DO UPDATE SET
                   free_usage_count = excluded.free_usage_count,
                   last_usage_date = excluded.last_usage_date""",
            (ip_address, used + 1, today),
        )
        conn.execute("COMMIT")
        return True
    except sqlite3.Error:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Analytics events
# ---------------------------------------------------------------------------

def log_event(event_type, session_id=None, metadata=None):
    """
    Append an analytics event.

    event_type: one of session_created, location_blocked, order_created,
                payment_confirmed, payment_failed, verification_failed,
                result_viewed
    metadata:   optional dict of extra info
    """
    conn = _get_db()
    conn.execute(
        """INSERT INTO events (event_type, session_id, metadata, created_at)
           VALUES (?, ?, ?, ?)""",
        (event_type, session_id, json.dumps(metadata) if metadata else None, _now()),
    )
    conn.commit()
    conn.close()


def get_event_counts():
    """Event counts by type, e.g. {"session_created": 12, ...}."""
    conn = _get_db()
    rows = conn.execute(
        "SELECT event_type, COUNT(*) as cnt FROM events GROUP BY event_type"
    ).fetchall()
    conn.close()
    return {row["event_type"]: row["cnt"] for row in rows}
