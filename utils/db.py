import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from tracking.errors import CallNotFoundError, PersistenceConflict
from tracking.models import Call, Caller, CallStatus, PremiumEntitlement, as_utc

DB_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data_storage", "callwatch.db")

# Fields the engine and admin actions may write after creation.
_MUTABLE_FIELDS = {
    "ticker",
    "last_value",
    "peak_value",
    "peak_locked",
    "multipliers_hit",
    "dump_alerted",
    "status",
    "next_check_at",
    "expires_at",
    "excluded_from_leaderboard",
    "suspicious_score",
}

_COLUMN_FOR = {
    "next_check_at": "next_check_ts_utc",
    "expires_at": "expires_ts_utc",
}

_CALL_COLUMNS = """
    id, chain, address, caller_id, caller_name, ticker,
    entry_value, last_value, peak_value, peak_locked,
    multipliers_hit, dump_alerted, status,
    next_check_ts_utc, created_ts_utc, expires_ts_utc,
    excluded_from_leaderboard, suspicious_score, version
"""


def _iso(value: datetime) -> str:
    # Fixed-width UTC strings so lexical order in SQL matches time order.
    return as_utc(value).isoformat(timespec="microseconds")


def _parse_iso(ts):
    if not ts:
        return None
    try:
        return as_utc(datetime.fromisoformat(ts))
    except (TypeError, ValueError):
        return None


def _to_column_value(field: str, value):
    if field in ("next_check_at", "expires_at"):
        return _iso(value)
    if field == "multipliers_hit":
        return json.dumps(sorted({float(m) for m in value}))
    if field in ("peak_locked", "dump_alerted", "excluded_from_leaderboard"):
        return 1 if value else 0
    if field == "status":
        return CallStatus(value).value
    return value


def _row_to_call(row) -> Call:
    return Call(
        id=row["id"],
        chain=row["chain"],
        address=row["address"],
        caller=Caller(external_id=row["caller_id"], display_name=row["caller_name"]),
        ticker=row["ticker"],
        entry_value=row["entry_value"],
        last_value=row["last_value"],
        peak_value=row["peak_value"],
        peak_locked=bool(row["peak_locked"]),
        multipliers_hit=json.loads(row["multipliers_hit"] or "[]"),
        dump_alerted=bool(row["dump_alerted"]),
        status=row["status"],
        next_check_at=_parse_iso(row["next_check_ts_utc"]),
        created_at=_parse_iso(row["created_ts_utc"]),
        expires_at=_parse_iso(row["expires_ts_utc"]),
        excluded_from_leaderboard=bool(row["excluded_from_leaderboard"]),
        suspicious_score=row["suspicious_score"] or 0.0,
        version=row["version"],
    )


class CallStore:
    """
    SQLite-backed persistence for calls, premium entitlements and the global
    pause flag. Every call write is one conditional UPDATE that bumps
    `version`, so concurrent writers (a second scheduler, an admin action)
    surface as PersistenceConflict instead of silently clobbering each other.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or DB_PATH

    @contextmanager
    def get_conn(self):
        conn = sqlite3.connect(self.db_path, timeout=15)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _immediate(self):
        """Transaction holding the database write lock from the first statement."""
        conn = sqlite3.connect(self.db_path, timeout=15, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def init_db(self):
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)

        with self.get_conn() as conn:
            cur = conn.cursor()

            cur.execute("""
            CREATE TABLE IF NOT EXISTS calls (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chain TEXT NOT NULL,
                address TEXT NOT NULL,
                caller_id TEXT NOT NULL,
                caller_name TEXT,
                ticker TEXT,
                entry_value REAL,
                last_value REAL,
                peak_value REAL,
                peak_locked INTEGER NOT NULL DEFAULT 0,
                multipliers_hit TEXT NOT NULL DEFAULT '[]',
                dump_alerted INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'active',
                next_check_ts_utc TEXT NOT NULL,
                created_ts_utc TEXT NOT NULL,
                expires_ts_utc TEXT NOT NULL,
                excluded_from_leaderboard INTEGER NOT NULL DEFAULT 0,
                suspicious_score REAL NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 0
            );
            """)
            cur.execute("""
            CREATE TABLE IF NOT EXISTS premium_users (
                caller_id TEXT PRIMARY KEY,
                calls_per_day INTEGER NOT NULL DEFAULT 4,
                expires_ts_utc TEXT,
                updated_ts_utc TEXT NOT NULL
            );
            """)
            cur.execute("""
            CREATE TABLE IF NOT EXISTS tracker_settings (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                paused INTEGER NOT NULL DEFAULT 0,
                reason TEXT,
                updated_ts_utc TEXT NOT NULL
            );
            """)
            cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_calls_due
            ON calls(status, next_check_ts_utc);
            """)
            cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_calls_caller_ts
            ON calls(caller_id, created_ts_utc);
            """)
            cur.execute(
                """
                INSERT OR IGNORE INTO tracker_settings (id, paused, reason, updated_ts_utc)
                VALUES (1, 0, NULL, ?)
                """,
                (_iso(datetime.now(timezone.utc)),),
            )

            # Runtime overrides added after the first release.
            for column, decl in (("milestones", "TEXT"), ("check_interval_minutes", "REAL")):
                try:
                    cur.execute(f"ALTER TABLE tracker_settings ADD COLUMN {column} {decl}")
                except sqlite3.OperationalError:
                    pass  # column already exists

    # ── Calls ─────────────────────────────────────────────────────────────────

    def insert_call(
        self,
        call: Call,
        window_start: Optional[datetime] = None,
        max_in_window: Optional[int] = None,
    ) -> Optional[Call]:
        """
        Insert a new call. With `max_in_window`, the per-caller count since
        `window_start` is re-checked under the write lock and None is
        returned when the allowance is already used.
        """
        with self._immediate() as conn:
            if max_in_window is not None and window_start is not None:
                row = conn.execute(
                    """
                    SELECT COUNT(*) AS c FROM calls
                    WHERE caller_id = ? AND created_ts_utc > ?
                    """,
                    (call.caller.external_id, _iso(window_start)),
                ).fetchone()
                if int(row["c"]) >= max_in_window:
                    return None

            cur = conn.execute(
                """
                INSERT INTO calls (
                    chain, address, caller_id, caller_name, ticker,
                    entry_value, last_value, peak_value, peak_locked,
                    multipliers_hit, dump_alerted, status,
                    next_check_ts_utc, created_ts_utc, expires_ts_utc,
                    excluded_from_leaderboard, suspicious_score, version
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                """,
                (
                    call.chain.value,
                    call.address,
                    call.caller.external_id,
                    call.caller.display_name,
                    call.ticker,
                    call.entry_value,
                    call.last_value,
                    call.peak_value,
                    1 if call.peak_locked else 0,
                    json.dumps(call.multipliers_hit),
                    1 if call.dump_alerted else 0,
                    call.status.value,
                    _iso(call.next_check_at),
                    _iso(call.created_at),
                    _iso(call.expires_at),
                    1 if call.excluded_from_leaderboard else 0,
                    call.suspicious_score,
                ),
            )
            return call.model_copy(update={"id": cur.lastrowid, "version": 0})

    def get(self, call_id: int) -> Call:
        with self.get_conn() as conn:
            row = conn.execute(
                f"SELECT {_CALL_COLUMNS} FROM calls WHERE id = ?", (call_id,)
            ).fetchone()
        if not row:
            raise CallNotFoundError(f"call {call_id} not found")
        return _row_to_call(row)

    def find_due(self, now: datetime, limit: int) -> list[Call]:
        """Active calls whose next check is due, oldest-due first."""
        with self.get_conn() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CALL_COLUMNS}
                FROM calls
                WHERE status = 'active' AND next_check_ts_utc <= ?
                ORDER BY next_check_ts_utc ASC, id ASC
                LIMIT ?
                """,
                (_iso(now), max(0, int(limit))),
            ).fetchall()
        return [_row_to_call(r) for r in rows]

    def update(self, call_id: int, fields: dict, expected_version: Optional[int] = None) -> int:
        """
        Apply `fields` in one statement and return the new version.

        Raises PersistenceConflict when the row moved past `expected_version`
        or, for a status change, is no longer active.
        """
        if not fields:
            raise ValueError("no fields to update")
        illegal = set(fields) - _MUTABLE_FIELDS
        if illegal:
            raise ValueError(f"immutable or unknown call fields: {sorted(illegal)}")
        if "status" in fields and CallStatus(fields["status"]) is CallStatus.ACTIVE:
            raise ValueError("a call can never return to active")

        assignments = []
        params = []
        for field, value in fields.items():
            assignments.append(f"{_COLUMN_FOR.get(field, field)} = ?")
            params.append(_to_column_value(field, value))

        where = "id = ?"
        params.append(call_id)
        if expected_version is not None:
            where += " AND version = ?"
            params.append(expected_version)
        if "status" in fields:
            where += " AND status = 'active'"

        with self.get_conn() as conn:
            cur = conn.execute(
                f"UPDATE calls SET {', '.join(assignments)}, version = version + 1 WHERE {where}",
                params,
            )
            if cur.rowcount == 0:
                exists = conn.execute("SELECT 1 FROM calls WHERE id = ?", (call_id,)).fetchone()
                if not exists:
                    raise CallNotFoundError(f"call {call_id} not found")
                raise PersistenceConflict(call_id, expected_version)
            row = conn.execute("SELECT version FROM calls WHERE id = ?", (call_id,)).fetchone()
        return int(row["version"])

    def set_entry_value_if_missing(self, call_id: int, entry_value: float) -> bool:
        """Backfill only: entry_value is written once and never overwritten."""
        with self.get_conn() as conn:
            cur = conn.execute(
                """
                UPDATE calls
                SET entry_value = ?, version = version + 1
                WHERE id = ? AND (entry_value IS NULL OR entry_value <= 0)
                """,
                (entry_value, call_id),
            )
            return cur.rowcount > 0

    def find_by_caller(self, caller_id: str, limit: Optional[int] = None) -> list[Call]:
        sql = f"""
            SELECT {_CALL_COLUMNS}
            FROM calls
            WHERE caller_id = ?
            ORDER BY created_ts_utc DESC, id DESC
        """
        params: list = [str(caller_id)]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self.get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_call(r) for r in rows]

    def find_all(self, page_size: int = 1000):
        """Yield every call, paging by id to keep memory bounded."""
        last_id = 0
        while True:
            with self.get_conn() as conn:
                rows = conn.execute(
                    f"SELECT {_CALL_COLUMNS} FROM calls WHERE id > ? ORDER BY id ASC LIMIT ?",
                    (last_id, page_size),
                ).fetchall()
            if not rows:
                return
            for row in rows:
                yield _row_to_call(row)
            last_id = rows[-1]["id"]

    def find_missing_entry(self, limit: int = 2000) -> list[Call]:
        with self.get_conn() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CALL_COLUMNS}
                FROM calls
                WHERE status = 'active' AND (entry_value IS NULL OR entry_value <= 0)
                ORDER BY created_ts_utc ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [_row_to_call(r) for r in rows]

    def count_calls_since(self, caller_id: str, since: datetime) -> int:
        with self.get_conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM calls WHERE caller_id = ? AND created_ts_utc > ?",
                (str(caller_id), _iso(since)),
            ).fetchone()
        return int(row["c"] or 0)

    def oldest_call_since(self, caller_id: str, since: datetime) -> Optional[datetime]:
        with self.get_conn() as conn:
            row = conn.execute(
                "SELECT MIN(created_ts_utc) AS ts FROM calls WHERE caller_id = ? AND created_ts_utc > ?",
                (str(caller_id), _iso(since)),
            ).fetchone()
        return _parse_iso(row["ts"]) if row else None

    # ── Premium entitlements ──────────────────────────────────────────────────

    def get_premium(self, caller_id: str) -> Optional[PremiumEntitlement]:
        with self.get_conn() as conn:
            row = conn.execute(
                "SELECT caller_id, calls_per_day, expires_ts_utc FROM premium_users WHERE caller_id = ?",
                (str(caller_id),),
            ).fetchone()
        if not row:
            return None
        return PremiumEntitlement(
            caller_id=row["caller_id"],
            calls_per_day=row["calls_per_day"],
            expires_at=_parse_iso(row["expires_ts_utc"]),
        )

    def set_premium(self, entitlement: PremiumEntitlement):
        expires = _iso(entitlement.expires_at) if entitlement.expires_at else None
        with self.get_conn() as conn:
            conn.execute(
                """
                INSERT INTO premium_users (caller_id, calls_per_day, expires_ts_utc, updated_ts_utc)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(caller_id) DO UPDATE SET
                  calls_per_day = excluded.calls_per_day,
                  expires_ts_utc = excluded.expires_ts_utc,
                  updated_ts_utc = excluded.updated_ts_utc
                """,
                (entitlement.caller_id, entitlement.calls_per_day, expires, _iso(datetime.now(timezone.utc))),
            )

    # ── Global pause ──────────────────────────────────────────────────────────

    def is_paused(self) -> bool:
        with self.get_conn() as conn:
            row = conn.execute("SELECT paused FROM tracker_settings WHERE id = 1").fetchone()
        return bool(row and row["paused"])

    def set_paused(self, paused: bool, reason: Optional[str] = None):
        with self.get_conn() as conn:
            conn.execute(
                """
                UPDATE tracker_settings
                SET paused = ?, reason = ?, updated_ts_utc = ?
                WHERE id = 1
                """,
                (1 if paused else 0, (reason or "")[:400] or None, _iso(datetime.now(timezone.utc))),
            )

    # ── Runtime overrides ─────────────────────────────────────────────────────

    def get_overrides(self) -> dict:
        """Operator overrides of the env ladder/interval; empty when unset."""
        with self.get_conn() as conn:
            row = conn.execute(
                "SELECT milestones, check_interval_minutes FROM tracker_settings WHERE id = 1"
            ).fetchone()
        overrides: dict = {}
        if not row:
            return overrides
        if row["milestones"]:
            milestones = json.loads(row["milestones"])
            if milestones:
                overrides["milestones"] = [float(m) for m in milestones]
        if row["check_interval_minutes"]:
            overrides["check_interval_minutes"] = float(row["check_interval_minutes"])
        return overrides

    def set_overrides(
        self,
        milestones: Optional[list[float]] = None,
        check_interval_minutes: Optional[float] = None,
    ):
        """Replace both overrides; None clears one back to the env value."""
        with self.get_conn() as conn:
            conn.execute(
                """
                UPDATE tracker_settings
                SET milestones = ?, check_interval_minutes = ?, updated_ts_utc = ?
                WHERE id = 1
                """,
                (
                    json.dumps(sorted(float(m) for m in milestones)) if milestones else None,
                    float(check_interval_minutes) if check_interval_minutes else None,
                    _iso(datetime.now(timezone.utc)),
                ),
            )
