"""
Persistence for transactions, documents, vendor patterns and match history.

Writes are optimistic compare-and-swap on a per-record `version` counter:
a commit only succeeds if every record still has the version it was read
with. Successful commits bump the version on the caller's objects.
"""

import copy
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import ConcurrencyConflictError, NotFoundError, ValidationError
from .models import (
    Document, DocumentType, MatchHistoryEntry, Scope, Transaction, VendorPattern, require_scope,
)

logger = logging.getLogger(__name__)


def _check_owner(scope: Scope, records: Iterable, kind: str):
    for r in records:
        if r.user_id != scope.user_id:
            raise ValidationError(f"{kind} {r.id} belongs to another user",
                                  details={"id": r.id, "user_id": r.user_id})


def _conflict(kind: str, record_id: str) -> ConcurrencyConflictError:
    return ConcurrencyConflictError(
        f"{kind} {record_id} was modified by another operation, please retry",
        details={"kind": kind, "id": record_id})


class ReconciliationStore:
    """Interface the engine needs from a persistence backend."""

    def add_transactions(self, scope: Scope, transactions: List[Transaction]):
        raise NotImplementedError

    def add_documents(self, scope: Scope, documents: List[Document]):
        raise NotImplementedError

    def get_transaction(self, scope: Scope, transaction_id: str) -> Transaction:
        raise NotImplementedError

    def get_document(self, scope: Scope, document_id: str) -> Document:
        raise NotImplementedError

    def list_transactions(self, scope: Scope, open_only: bool = False) -> List[Transaction]:
        raise NotImplementedError

    def list_documents(self, scope: Scope, open_only: bool = False,
                       document_type: Optional[DocumentType] = None) -> List[Document]:
        raise NotImplementedError

    def commit(self, scope: Scope, transactions: List[Transaction], documents: List[Document]):
        """Atomically write records read earlier; all or nothing."""
        raise NotImplementedError

    def get_vendor_pattern(self, scope: Scope, counterparty_key: str) -> Optional[VendorPattern]:
        raise NotImplementedError

    def list_vendor_patterns(self, scope: Scope) -> List[VendorPattern]:
        raise NotImplementedError

    def save_vendor_pattern(self, scope: Scope, pattern: VendorPattern,
                            history: Optional[MatchHistoryEntry] = None):
        """Insert (version 0) or compare-and-swap update a pattern, appending history atomically."""
        raise NotImplementedError

    def list_match_history(self, scope: Scope, counterparty_key: Optional[str] = None,
                           limit: Optional[int] = None) -> List[MatchHistoryEntry]:
        """Most recent first."""
        raise NotImplementedError


def _filter_transactions(scope: Scope, items: Iterable[Transaction], open_only: bool) -> List[Transaction]:
    result = [t for t in items if scope.includes_account(t.account_id)]
    if open_only:
        result = [t for t in result if not t.is_fully_allocated and t.category is None]
    return sorted(result, key=lambda t: (t.date, t.id))


def _filter_documents(items: Iterable[Document], open_only: bool,
                      document_type: Optional[DocumentType]) -> List[Document]:
    result = list(items)
    if open_only:
        result = [d for d in result if d.is_open]
    if document_type is not None:
        result = [d for d in result if d.document_type == document_type]
    return sorted(result, key=lambda d: (d.issue_date, d.id))


class MemoryStore(ReconciliationStore):
    """Dict-backed store; a lock serializes commits and copies isolate callers."""

    def __init__(self):
        self._lock = threading.RLock()
        self._transactions: Dict[Tuple[str, str], Transaction] = {}
        self._documents: Dict[Tuple[str, str], Document] = {}
        self._patterns: Dict[Tuple[str, str], VendorPattern] = {}
        self._history: List[MatchHistoryEntry] = []

    def add_transactions(self, scope, transactions):
        scope = require_scope(scope)
        _check_owner(scope, transactions, "Transaction")
        with self._lock:
            for t in transactions:
                if (scope.user_id, t.id) in self._transactions:
                    raise ValidationError(f"Transaction {t.id} already exists", details={"id": t.id})
            for t in transactions:
                self._transactions[(scope.user_id, t.id)] = copy.deepcopy(t)

    def add_documents(self, scope, documents):
        scope = require_scope(scope)
        _check_owner(scope, documents, "Document")
        with self._lock:
            for d in documents:
                if (scope.user_id, d.id) in self._documents:
                    raise ValidationError(f"Document {d.id} already exists", details={"id": d.id})
            for d in documents:
                self._documents[(scope.user_id, d.id)] = copy.deepcopy(d)

    def get_transaction(self, scope, transaction_id):
        scope = require_scope(scope)
        with self._lock:
            t = self._transactions.get((scope.user_id, transaction_id))
            if t is None or not scope.includes_account(t.account_id):
                raise NotFoundError(f"Transaction {transaction_id} not found", details={"id": transaction_id})
            return copy.deepcopy(t)

    def get_document(self, scope, document_id):
        scope = require_scope(scope)
        with self._lock:
            d = self._documents.get((scope.user_id, document_id))
            if d is None:
                raise NotFoundError(f"Document {document_id} not found", details={"id": document_id})
            return copy.deepcopy(d)

    def list_transactions(self, scope, open_only=False):
        scope = require_scope(scope)
        with self._lock:
            mine = [copy.deepcopy(t) for (uid, _), t in self._transactions.items() if uid == scope.user_id]
        return _filter_transactions(scope, mine, open_only)

    def list_documents(self, scope, open_only=False, document_type=None):
        scope = require_scope(scope)
        with self._lock:
            mine = [copy.deepcopy(d) for (uid, _), d in self._documents.items() if uid == scope.user_id]
        return _filter_documents(mine, open_only, document_type)

    def commit(self, scope, transactions, documents):
        scope = require_scope(scope)
        _check_owner(scope, transactions, "Transaction")
        _check_owner(scope, documents, "Document")
        with self._lock:
            for kind, table, records in (("Transaction", self._transactions, transactions),
                                         ("Document", self._documents, documents)):
                for r in records:
                    current = table.get((scope.user_id, r.id))
                    if current is None:
                        raise NotFoundError(f"{kind} {r.id} not found", details={"id": r.id})
                    if current.version != r.version:
                        raise _conflict(kind, r.id)
            for table, records in ((self._transactions, transactions), (self._documents, documents)):
                for r in records:
                    stored = copy.deepcopy(r)
                    stored.version = r.version + 1
                    table[(scope.user_id, r.id)] = stored
            for r in list(transactions) + list(documents):
                r.version += 1

    def get_vendor_pattern(self, scope, counterparty_key):
        scope = require_scope(scope)
        with self._lock:
            p = self._patterns.get((scope.user_id, counterparty_key))
            return copy.deepcopy(p) if p else None

    def list_vendor_patterns(self, scope):
        scope = require_scope(scope)
        with self._lock:
            mine = [copy.deepcopy(p) for (uid, _), p in self._patterns.items() if uid == scope.user_id]
        return sorted(mine, key=lambda p: p.counterparty_key)

    def save_vendor_pattern(self, scope, pattern, history=None):
        scope = require_scope(scope)
        key = (scope.user_id, pattern.counterparty_key)
        with self._lock:
            current = self._patterns.get(key)
            current_version = current.version if current else 0
            if (current is None and pattern.version != 0) or (current is not None and current_version != pattern.version):
                raise _conflict("VendorPattern", pattern.counterparty_key)
            stored = copy.deepcopy(pattern)
            stored.version = pattern.version + 1
            self._patterns[key] = stored
            if history is not None:
                self._history.append(copy.deepcopy(history))
            pattern.version += 1

    def list_match_history(self, scope, counterparty_key=None, limit=None):
        scope = require_scope(scope)
        with self._lock:
            rows = [copy.deepcopy(h) for h in self._history
                    if h.user_id == scope.user_id
                    and (counterparty_key is None or h.counterparty_key == counterparty_key)]
        rows.reverse()
        return rows[:limit] if limit else rows


class SQLiteStore(ReconciliationStore):
    """
    SQLite-backed store.

    Each record is kept as a JSON payload plus a version column. Commits run
    inside BEGIN IMMEDIATE and update with `WHERE version = ?`; a missed row
    rolls the whole commit back.
    """

    def __init__(self, db_path: Path, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.init_db()

    @contextmanager
    def _connection(self):
        conn = sqlite3.connect(self.db_path.as_posix(), timeout=self.timeout, isolation_level=None)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self):
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def init_db(self):
        """Create tables if they do not exist."""
        with self._connection() as conn:
            cur = conn.cursor()
            cur.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                user_id TEXT NOT NULL,
                id TEXT NOT NULL,
                account_id TEXT,
                date TEXT,
                payload TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (user_id, id)
            )
            """)
            cur.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                user_id TEXT NOT NULL,
                id TEXT NOT NULL,
                issue_date TEXT,
                payload TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (user_id, id)
            )
            """)
            cur.execute("""
            CREATE TABLE IF NOT EXISTS vendor_patterns (
                user_id TEXT NOT NULL,
                counterparty_key TEXT NOT NULL,
                payload TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (user_id, counterparty_key)
            )
            """)
            cur.execute("""
            CREATE TABLE IF NOT EXISTS match_history (
                row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                counterparty_key TEXT NOT NULL,
                matched_at TEXT,
                payload TEXT NOT NULL
            )
            """)
            cur.execute("CREATE INDEX IF NOT EXISTS idx_history_counterparty "
                        "ON match_history(user_id, counterparty_key)")

    @staticmethod
    def _payload(record, version: int) -> str:
        data = record.to_dict()
        data["version"] = version
        return json.dumps(data, sort_keys=True)

    @staticmethod
    def _load(cls, payload: str, version: int):
        record = cls.from_dict(json.loads(payload))
        record.version = version
        return record

    def add_transactions(self, scope, transactions):
        scope = require_scope(scope)
        _check_owner(scope, transactions, "Transaction")
        with self._transaction() as conn:
            for t in transactions:
                try:
                    conn.execute(
                        "INSERT INTO transactions (user_id, id, account_id, date, payload, version) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        (scope.user_id, t.id, t.account_id, t.date.isoformat(),
                         self._payload(t, t.version), t.version))
                except sqlite3.IntegrityError:
                    raise ValidationError(f"Transaction {t.id} already exists", details={"id": t.id})

    def add_documents(self, scope, documents):
        scope = require_scope(scope)
        _check_owner(scope, documents, "Document")
        with self._transaction() as conn:
            for d in documents:
                try:
                    conn.execute(
                        "INSERT INTO documents (user_id, id, issue_date, payload, version) VALUES (?, ?, ?, ?, ?)",
                        (scope.user_id, d.id, d.issue_date.isoformat(), self._payload(d, d.version), d.version))
                except sqlite3.IntegrityError:
                    raise ValidationError(f"Document {d.id} already exists", details={"id": d.id})

    def get_transaction(self, scope, transaction_id):
        scope = require_scope(scope)
        with self._connection() as conn:
            row = conn.execute("SELECT payload, version FROM transactions WHERE user_id = ? AND id = ?",
                               (scope.user_id, transaction_id)).fetchone()
        if row is None:
            raise NotFoundError(f"Transaction {transaction_id} not found", details={"id": transaction_id})
        t = self._load(Transaction, row[0], row[1])
        if not scope.includes_account(t.account_id):
            raise NotFoundError(f"Transaction {transaction_id} not found", details={"id": transaction_id})
        return t

    def get_document(self, scope, document_id):
        scope = require_scope(scope)
        with self._connection() as conn:
            row = conn.execute("SELECT payload, version FROM documents WHERE user_id = ? AND id = ?",
                               (scope.user_id, document_id)).fetchone()
        if row is None:
            raise NotFoundError(f"Document {document_id} not found", details={"id": document_id})
        return self._load(Document, row[0], row[1])

    def list_transactions(self, scope, open_only=False):
        scope = require_scope(scope)
        with self._connection() as conn:
            rows = conn.execute("SELECT payload, version FROM transactions WHERE user_id = ?",
                                (scope.user_id,)).fetchall()
        return _filter_transactions(scope, [self._load(Transaction, p, v) for p, v in rows], open_only)

    def list_documents(self, scope, open_only=False, document_type=None):
        scope = require_scope(scope)
        with self._connection() as conn:
            rows = conn.execute("SELECT payload, version FROM documents WHERE user_id = ?",
                                (scope.user_id,)).fetchall()
        return _filter_documents([self._load(Document, p, v) for p, v in rows], open_only, document_type)

    def commit(self, scope, transactions, documents):
        scope = require_scope(scope)
        _check_owner(scope, transactions, "Transaction")
        _check_owner(scope, documents, "Document")
        with self._transaction() as conn:
            for kind, table, records in (("Transaction", "transactions", transactions),
                                         ("Document", "documents", documents)):
                for r in records:
                    cur = conn.execute(
                        f"UPDATE {table} SET payload = ?, version = ? "
                        f"WHERE user_id = ? AND id = ? AND version = ?",
                        (self._payload(r, r.version + 1), r.version + 1, scope.user_id, r.id, r.version))
                    if cur.rowcount == 0:
                        raise _conflict(kind, r.id)
        for r in list(transactions) + list(documents):
            r.version += 1

    def get_vendor_pattern(self, scope, counterparty_key):
        scope = require_scope(scope)
        with self._connection() as conn:
            row = conn.execute(
                "SELECT payload, version FROM vendor_patterns WHERE user_id = ? AND counterparty_key = ?",
                (scope.user_id, counterparty_key)).fetchone()
        return self._load(VendorPattern, row[0], row[1]) if row else None

    def list_vendor_patterns(self, scope):
        scope = require_scope(scope)
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT payload, version FROM vendor_patterns WHERE user_id = ? ORDER BY counterparty_key",
                (scope.user_id,)).fetchall()
        return [self._load(VendorPattern, p, v) for p, v in rows]

    def save_vendor_pattern(self, scope, pattern, history=None):
        scope = require_scope(scope)
        new_version = pattern.version + 1
        with self._transaction() as conn:
            if pattern.version == 0:
                try:
                    conn.execute(
                        "INSERT INTO vendor_patterns (user_id, counterparty_key, payload, version) "
                        "VALUES (?, ?, ?, ?)",
                        (scope.user_id, pattern.counterparty_key, self._payload(pattern, new_version), new_version))
                except sqlite3.IntegrityError:
                    raise _conflict("VendorPattern", pattern.counterparty_key)
            else:
                cur = conn.execute(
                    "UPDATE vendor_patterns SET payload = ?, version = ?, updated_at = CURRENT_TIMESTAMP "
                    "WHERE user_id = ? AND counterparty_key = ? AND version = ?",
                    (self._payload(pattern, new_version), new_version, scope.user_id,
                     pattern.counterparty_key, pattern.version))
                if cur.rowcount == 0:
                    raise _conflict("VendorPattern", pattern.counterparty_key)
            if history is not None:
                conn.execute(
                    "INSERT INTO match_history (user_id, counterparty_key, matched_at, payload) VALUES (?, ?, ?, ?)",
                    (scope.user_id, history.counterparty_key, history.matched_at.isoformat(),
                     json.dumps(history.to_dict(), sort_keys=True)))
        pattern.version = new_version

    def list_match_history(self, scope, counterparty_key=None, limit=None):
        scope = require_scope(scope)
        query = "SELECT payload FROM match_history WHERE user_id = ?"
        params: list = [scope.user_id]
        if counterparty_key is not None:
            query += " AND counterparty_key = ?"
            params.append(counterparty_key)
        query += " ORDER BY row_id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [MatchHistoryEntry.from_dict(json.loads(r[0])) for r in rows]
