"""
Record Store

Typed read/write access to the entities the generation pipeline touches:
cases (client profiles), users, immigration offices, document templates and
the per-case action log.

Two backends share the RecordStore interface:
- MemoryRecordStore: dict-backed, used by tests and one-off scripts
- SQLiteRecordStore: local database at config.DB_FILE

Each call is atomic on its own; callers never group calls in a transaction.
"""
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from copy import deepcopy
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from config import DB_FILE
from errors import RecordNotFound

logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """Operations the document generator needs from persistence."""

    # Cases -------------------------------------------------------------------

    @abstractmethod
    def get_case(self, case_id: str) -> Dict[str, Any]:
        """Return the full case record; RecordNotFound if unknown."""

    @abstractmethod
    def update_case(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Overwrite the stored case with `record` (matched by id)."""

    @abstractmethod
    def append_audit_entry(
        self,
        case_id: str,
        text: str,
        author: Optional[str] = None,
        attachments: Optional[List[str]] = None,
    ) -> None:
        """Append one entry to the case's action log, with its author and linked file urls."""

    @abstractmethod
    def get_audit_entries(self, case_id: str) -> List[Dict[str, Any]]:
        """Action log entries for a case, oldest first."""

    # Related entities --------------------------------------------------------

    @abstractmethod
    def get_related_users(self, user_ids: Iterable[str]) -> List[Dict[str, Any]]:
        """Users matching the ids; unknown ids are skipped."""

    @abstractmethod
    def get_office(self, office_id: str) -> Optional[Dict[str, Any]]:
        """Immigration office by id, None if unknown."""

    # Templates ---------------------------------------------------------------

    @abstractmethod
    def increment_template_usage(self, template_id: str) -> None:
        """Add one to the template's usage counter."""

    @abstractmethod
    def get_template(self, template_id: str) -> Dict[str, Any]:
        """Template reference row; RecordNotFound if unknown."""

    @abstractmethod
    def list_templates(self) -> List[Dict[str, Any]]:
        """All template reference rows, unsorted."""

    @abstractmethod
    def save_template(self, template: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or replace a template reference row."""

    @abstractmethod
    def delete_template(self, template_id: str) -> None:
        """Remove a template reference row; RecordNotFound if unknown."""


# =============================================================================
# In-memory backend
# =============================================================================

class MemoryRecordStore(RecordStore):
    """
    Dict-backed store. Records are deep-copied on the way in and out so a
    caller mutating a returned dict never changes stored state.
    """

    def __init__(
        self,
        cases: Iterable[Dict[str, Any]] = (),
        users: Iterable[Dict[str, Any]] = (),
        offices: Iterable[Dict[str, Any]] = (),
        templates: Iterable[Dict[str, Any]] = (),
    ):
        self.cases = {c['id']: deepcopy(c) for c in cases}
        self.users = {u['id']: deepcopy(u) for u in users}
        self.offices = {o['id']: deepcopy(o) for o in offices}
        self.templates = {t['id']: deepcopy(t) for t in templates}
        self.audit_log: List[Dict[str, Any]] = []

    def get_case(self, case_id: str) -> Dict[str, Any]:
        if case_id not in self.cases:
            raise RecordNotFound(f"Case {case_id} not found")
        return deepcopy(self.cases[case_id])

    def update_case(self, record: Dict[str, Any]) -> Dict[str, Any]:
        case_id = record.get('id')
        if case_id not in self.cases:
            raise RecordNotFound(f"Case {case_id} not found")
        self.cases[case_id] = deepcopy(record)
        return deepcopy(record)

    def append_audit_entry(
        self,
        case_id: str,
        text: str,
        author: Optional[str] = None,
        attachments: Optional[List[str]] = None,
    ) -> None:
        self.audit_log.append({
            'case_id': case_id,
            'text': text,
            'author': author,
            'attachments': list(attachments or []),
            'created_at': datetime.now().isoformat(),
        })

    def get_audit_entries(self, case_id: str) -> List[Dict[str, Any]]:
        return [deepcopy(e) for e in self.audit_log if e['case_id'] == case_id]

    def get_related_users(self, user_ids: Iterable[str]) -> List[Dict[str, Any]]:
        return [deepcopy(self.users[uid]) for uid in user_ids if uid in self.users]

    def get_office(self, office_id: str) -> Optional[Dict[str, Any]]:
        office = self.offices.get(office_id)
        return deepcopy(office) if office else None

    def increment_template_usage(self, template_id: str) -> None:
        if template_id not in self.templates:
            raise RecordNotFound(f"Template {template_id} not found")
        template = self.templates[template_id]
        template['usage_count'] = (template.get('usage_count') or 0) + 1

    def get_template(self, template_id: str) -> Dict[str, Any]:
        if template_id not in self.templates:
            raise RecordNotFound(f"Template {template_id} not found")
        return deepcopy(self.templates[template_id])

    def list_templates(self) -> List[Dict[str, Any]]:
        return [deepcopy(t) for t in self.templates.values()]

    def save_template(self, template: Dict[str, Any]) -> Dict[str, Any]:
        self.templates[template['id']] = deepcopy(template)
        return deepcopy(template)

    def delete_template(self, template_id: str) -> None:
        if template_id not in self.templates:
            raise RecordNotFound(f"Template {template_id} not found")
        del self.templates[template_id]


# =============================================================================
# SQLite backend
# =============================================================================

class SQLiteRecordStore(RecordStore):
    """
    SQLite-backed store.

    Case records are kept whole as JSON (their nested questionnaire does not
    map onto columns); users, offices and templates get proper columns.
    """

    def __init__(self, db_path: Path = DB_FILE):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self):
        """Initialize database tables."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS cases (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    body TEXT NOT NULL,     -- JSON case record
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    email TEXT,
                    phone TEXT,
                    description TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS offices (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    address TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS document_templates (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    storage_location TEXT NOT NULL,
                    category TEXT NOT NULL DEFAULT 'custom',
                    usage_count INTEGER DEFAULT 0,
                    uploaded_by TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Per-case audit trail, append only
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS action_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    case_id TEXT NOT NULL,
                    text TEXT NOT NULL,
                    author TEXT,
                    attachments TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_action_log_case ON action_log(case_id)")

    # =========================================================================
    # Cases
    # =========================================================================

    def add_case(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or replace a case record."""
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cases (id, name, body) VALUES (?, ?, ?)",
                (record['id'], record.get('name'), json.dumps(record)),
            )
        return deepcopy(record)

    def get_case(self, case_id: str) -> Dict[str, Any]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT body FROM cases WHERE id = ?", (case_id,)).fetchone()
        if row is None:
            raise RecordNotFound(f"Case {case_id} not found")
        return json.loads(row['body'])

    def update_case(self, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE cases SET name = ?, body = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (record.get('name'), json.dumps(record), record.get('id')),
            )
            if cursor.rowcount == 0:
                raise RecordNotFound(f"Case {record.get('id')} not found")
        logger.debug(f"Updated case {record.get('id')}")
        return deepcopy(record)

    def list_cases(self) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT body FROM cases ORDER BY name").fetchall()
        return [json.loads(row['body']) for row in rows]

    def append_audit_entry(
        self,
        case_id: str,
        text: str,
        author: Optional[str] = None,
        attachments: Optional[List[str]] = None,
    ) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO action_log (case_id, text, author, attachments) VALUES (?, ?, ?, ?)",
                (case_id, text, author, json.dumps(list(attachments or []))),
            )

    def get_audit_entries(self, case_id: str) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT case_id, text, author, attachments, created_at FROM action_log "
                "WHERE case_id = ? ORDER BY id",
                (case_id,),
            ).fetchall()

        entries = []
        for row in rows:
            entry = dict(row)
            entry['attachments'] = json.loads(entry['attachments'] or '[]')
            entries.append(entry)
        return entries

    # =========================================================================
    # Users and offices
    # =========================================================================

    def add_user(self, user: Dict[str, Any]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO users (id, name, email, phone, description)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user['id'], user.get('name'), user.get('email'),
                 user.get('phone'), user.get('description')),
            )

    def add_office(self, office: Dict[str, Any]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO offices (id, name, address) VALUES (?, ?, ?)",
                (office['id'], office['name'], office.get('address')),
            )

    def get_related_users(self, user_ids: Iterable[str]) -> List[Dict[str, Any]]:
        ids = list(user_ids)
        if not ids:
            return []
        placeholders = ', '.join('?' for _ in ids)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM users WHERE id IN ({placeholders})", ids
            ).fetchall()
        return [dict(row) for row in rows]

    def get_office(self, office_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM offices WHERE id = ?", (office_id,)).fetchone()
        return dict(row) if row else None

    # =========================================================================
    # Templates
    # =========================================================================

    def increment_template_usage(self, template_id: str) -> None:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE document_templates SET usage_count = usage_count + 1 WHERE id = ?",
                (template_id,),
            )
            if cursor.rowcount == 0:
                raise RecordNotFound(f"Template {template_id} not found")

    def get_template(self, template_id: str) -> Dict[str, Any]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM document_templates WHERE id = ?", (template_id,)
            ).fetchone()
        if row is None:
            raise RecordNotFound(f"Template {template_id} not found")
        return dict(row)

    def list_templates(self) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM document_templates").fetchall()
        return [dict(row) for row in rows]

    def save_template(self, template: Dict[str, Any]) -> Dict[str, Any]:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO document_templates (
                    id, name, description, storage_location, category,
                    usage_count, uploaded_by, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, COALESCE(?, CURRENT_TIMESTAMP))
                """,
                (
                    template['id'],
                    template['name'],
                    template.get('description'),
                    template['storage_location'],
                    template.get('category', 'custom'),
                    template.get('usage_count') or 0,
                    template.get('uploaded_by'),
                    template.get('created_at'),
                ),
            )
        return self.get_template(template['id'])

    def delete_template(self, template_id: str) -> None:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM document_templates WHERE id = ?", (template_id,))
            if cursor.rowcount == 0:
                raise RecordNotFound(f"Template {template_id} not found")


def get_record_store() -> SQLiteRecordStore:
    """Record store on the configured database file."""
    return SQLiteRecordStore(DB_FILE)
