"""
Usage history persistence.

Append-only log of usage snapshots with filtered queries, retention
cleanup and aggregate statistics. Entries are keyed by
"{unix_seconds}-{provider}-{account_id}", so a second snapshot for the
same account within the same second is dropped.
"""
import csv
import io
import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Optional

from .models import (
    HistoryEntry,
    HistoryLimit,
    HistoryMetadata,
    RetentionPolicy,
    UsageSnapshot,
    UsageStats,
    from_epoch,
    to_epoch,
    utcnow,
)
from .store import BaseStore, StoreError

DEFAULT_QUERY_LIMIT = 1000
CSV_HEADER = ("id", "provider", "timestamp", "limit_id", "utilization", "resets_at")

logger = logging.getLogger(__name__)


class HistoryStore(BaseStore):

    # ── writes ────────────────────────────────────────────────

    def append(self, snapshot: UsageSnapshot) -> bool:
        """Store a snapshot. Returns False if an entry with the same key already exists."""
        entry = HistoryEntry.from_snapshot(snapshot)
        try:
            with self._conn() as conn:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO history_entries(id,provider,account_id,account_name,ts) "
                    "VALUES(?,?,?,?,?)",
                    (
                        entry.id,
                        entry.provider,
                        entry.account_id,
                        entry.account_name,
                        to_epoch(entry.timestamp),
                    ),
                )
                if cur.rowcount == 0:
                    return False
                conn.executemany(
                    "INSERT INTO history_limits(entry_id,position,limit_id,utilization,resets_at) "
                    "VALUES(?,?,?,?,?)",
                    [
                        (entry.id, pos, l.limit_id, l.utilization, to_epoch(l.resets_at))
                        for pos, l in enumerate(entry.limits)
                    ],
                )
                self._refresh_metadata(conn)
        except sqlite3.Error as e:
            raise StoreError(f"failed to append history entry {entry.id}: {e}") from e

        logger.debug("Added history entry %s", entry.id)
        return True

    def cleanup(self, policy: RetentionPolicy = None, now: datetime = None) -> int:
        """Delete entries older than the retention window. Returns the number removed."""
        policy = policy or self.get_retention_policy()
        if policy.retention_days == 0:
            return 0

        now = now or utcnow()
        cutoff = now - timedelta(days=policy.retention_days)
        try:
            with self._conn() as conn:
                cur = conn.execute(
                    "DELETE FROM history_entries WHERE ts < ?", (to_epoch(cutoff),)
                )
                removed = cur.rowcount
                self._set_meta(conn, "last_cleanup", str(to_epoch(now)))
                self._refresh_metadata(conn)
        except sqlite3.Error as e:
            raise StoreError(f"history cleanup failed: {e}") from e

        if removed:
            logger.info(
                "Cleaned up %d history entries older than %d days",
                removed,
                policy.retention_days,
            )
        return removed

    def clear(self):
        with self._conn() as conn:
            conn.execute("DELETE FROM history_entries")
            self._refresh_metadata(conn)
        logger.info("Cleared all history data")

    # ── reads ─────────────────────────────────────────────────

    def query(
        self,
        provider: str = None,
        account_id: str = None,
        start: datetime = None,
        end: datetime = None,
        limit: Optional[int] = DEFAULT_QUERY_LIMIT,
        offset: int = 0,
    ) -> list[HistoryEntry]:
        """Newest-first entries matching every given filter, paged by offset then limit (None for no limit)."""
        where, params = self._filters(provider, account_id, start, end)
        sql = (
            "SELECT e.id, e.provider, e.account_id, e.account_name, e.ts, "
            "       l.limit_id, l.utilization, l.resets_at "
            "FROM (SELECT * FROM history_entries"
            f"{where} ORDER BY ts DESC, id DESC LIMIT ? OFFSET ?) e "
            "LEFT JOIN history_limits l ON l.entry_id = e.id "
            "ORDER BY e.ts DESC, e.id DESC, l.position"
        )
        # sqlite reads a negative LIMIT as unbounded
        params += [-1 if limit is None else max(0, int(limit)), max(0, int(offset))]

        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()

        entries: list[HistoryEntry] = []
        for row in rows:
            if not entries or entries[-1].id != row["id"]:
                entries.append(
                    HistoryEntry(
                        id=row["id"],
                        provider=row["provider"],
                        account_id=row["account_id"],
                        account_name=row["account_name"],
                        timestamp=from_epoch(row["ts"]),
                    )
                )
            if row["limit_id"] is not None:
                entries[-1].limits.append(
                    HistoryLimit(
                        limit_id=row["limit_id"],
                        utilization=row["utilization"],
                        resets_at=from_epoch(row["resets_at"]),
                    )
                )
        return entries

    def stats(
        self, provider: str, limit_id: str, start: datetime, end: datetime
    ) -> Optional[UsageStats]:
        """Aggregate utilization of one limit over a period; None when there are no samples."""
        with self._conn() as conn:
            row = conn.execute(
                "SELECT AVG(l.utilization) AS avg_u, MAX(l.utilization) AS max_u, "
                "       MIN(l.utilization) AS min_u, COUNT(*) AS n "
                "FROM history_limits l JOIN history_entries e ON e.id = l.entry_id "
                "WHERE e.provider=? AND l.limit_id=? AND e.ts>=? AND e.ts<=?",
                (provider, limit_id, to_epoch(start), to_epoch(end)),
            ).fetchone()

        if not row or row["n"] == 0:
            return None
        return UsageStats(
            provider=provider,
            limit_id=limit_id,
            period_start=start,
            period_end=end,
            avg_utilization=row["avg_u"],
            max_utilization=row["max_u"],
            min_utilization=row["min_u"],
            sample_count=row["n"],
        )

    def get_metadata(self) -> HistoryMetadata:
        with self._conn() as conn:
            meta = {
                r["key"]: r["value"]
                for r in conn.execute("SELECT key, value FROM history_meta").fetchall()
            }

        def _ts(key):
            raw = meta.get(key)
            return from_epoch(float(raw)) if raw else None

        return HistoryMetadata(
            entry_count=int(meta.get("entry_count") or 0),
            oldest_entry=_ts("oldest_entry"),
            newest_entry=_ts("newest_entry"),
            last_cleanup=_ts("last_cleanup"),
            retention_days=self.get_retention_policy().retention_days,
        )

    # ── retention policy ──────────────────────────────────────

    def get_retention_policy(self) -> RetentionPolicy:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT value FROM history_meta WHERE key='retention'"
            ).fetchone()
        if not row:
            return RetentionPolicy()
        try:
            return RetentionPolicy(**json.loads(row["value"]))
        except (ValueError, TypeError) as e:
            logger.warning("Stored retention policy is unreadable, using default: %s", e)
            return RetentionPolicy()

    def set_retention_policy(self, policy: RetentionPolicy):
        with self._conn() as conn:
            self._set_meta(
                conn,
                "retention",
                json.dumps(
                    {"retention_days": policy.retention_days, "auto_cleanup": policy.auto_cleanup}
                ),
            )
        logger.info(
            "Updated retention policy: %d days, auto_cleanup: %s",
            policy.retention_days,
            policy.auto_cleanup,
        )

    # ── export ────────────────────────────────────────────────

    def export_json(self, **query) -> str:
        query.setdefault("limit", None)
        return json.dumps([e.to_dict() for e in self.query(**query)], indent=2, ensure_ascii=False)

    def export_csv(self, **query) -> str:
        query.setdefault("limit", None)
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for entry in self.query(**query):
            for l in entry.limits:
                writer.writerow(
                    (
                        entry.id,
                        entry.provider,
                        entry.timestamp.isoformat(),
                        l.limit_id,
                        f"{l.utilization:.2f}",
                        l.resets_at.isoformat(),
                    )
                )
        return buf.getvalue()

    # ── internal ──────────────────────────────────────────────

    @staticmethod
    def _filters(provider, account_id, start, end) -> tuple[str, list]:
        clauses, params = [], []
        if provider:
            clauses.append("provider=?")
            params.append(provider)
        if account_id:
            clauses.append("account_id=?")
            params.append(account_id)
        if start is not None:
            clauses.append("ts>=?")
            params.append(to_epoch(start))
        if end is not None:
            clauses.append("ts<=?")
            params.append(to_epoch(end))
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        return where, params

    @staticmethod
    def _set_meta(conn: sqlite3.Connection, key: str, value: Optional[str]):
        conn.execute(
            "INSERT OR REPLACE INTO history_meta(key, value) VALUES(?, ?)", (key, value)
        )

    def _refresh_metadata(self, conn: sqlite3.Connection):
        row = conn.execute(
            "SELECT COUNT(*) AS n, MIN(ts) AS oldest, MAX(ts) AS newest FROM history_entries"
        ).fetchone()
        self._set_meta(conn, "entry_count", str(row["n"]))
        self._set_meta(conn, "oldest_entry", str(row["oldest"]) if row["oldest"] is not None else None)
        self._set_meta(conn, "newest_entry", str(row["newest"]) if row["newest"] is not None else None)
