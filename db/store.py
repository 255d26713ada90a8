import json
import logging
import os
import sqlite3
import uuid
from typing import Optional

from config import DATA_PATH
from .models import Account, utcnow

DB_PATH = os.path.join(DATA_PATH, "usage_monitor.db")
SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "schema.sql")

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the sqlite backing store cannot be read or written."""


class BaseStore:
    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def init_db(self):
        with open(SCHEMA_PATH) as f:
            schema = f.read()
        with self._conn() as conn:
            conn.executescript(schema)


class AccountStore(BaseStore):
    """Configured accounts, one credential set each."""

    def add_account(self, name: str, provider: str, credentials: dict) -> Account:
        account = Account(
            id=uuid.uuid4().hex,
            name=name,
            provider=provider,
            credentials=dict(credentials),
            created_at=utcnow().isoformat(),
        )
        try:
            with self._conn() as conn:
                conn.execute(
                    "INSERT INTO accounts(id,name,provider,credentials,created_at) VALUES(?,?,?,?,?)",
                    (
                        account.id,
                        account.name,
                        account.provider,
                        json.dumps(account.credentials, ensure_ascii=False),
                        account.created_at,
                    ),
                )
        except sqlite3.Error as e:
            raise StoreError(f"failed to save account {name}: {e}") from e
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE id=?", (account_id,)
            ).fetchone()
            return self._row_to_account(row) if row else None

    def list_accounts(self, provider: str = None) -> list[Account]:
        try:
            with self._conn() as conn:
                if provider:
                    rows = conn.execute(
                        "SELECT * FROM accounts WHERE provider=? ORDER BY created_at, rowid",
                        (provider,),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM accounts ORDER BY created_at, rowid"
                    ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"failed to list accounts: {e}") from e
        return [self._row_to_account(r) for r in rows]

    def delete_account(self, account_id: str) -> bool:
        with self._conn() as conn:
            cur = conn.execute("DELETE FROM accounts WHERE id=?", (account_id,))
            return cur.rowcount > 0

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        data = dict(row)
        try:
            data["credentials"] = json.loads(data.get("credentials") or "{}")
        except ValueError:
            logger.warning("Account %s has unreadable credentials", data.get("id"))
            data["credentials"] = {}
        return Account(**data)


def mask_credentials(credentials: dict) -> dict:
    masked = {}
    for key, value in credentials.items():
        value = str(value or "")
        masked[key] = f"{value[:6]}...{value[-4:]}" if len(value) > 14 else "***" if value else ""
    return masked
