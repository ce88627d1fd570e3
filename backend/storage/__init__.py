import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from models import CorrectedManuscript, ManuscriptAudit, ManuscriptStatus
from services.errors import AuditNotFoundError, ManuscriptNotFoundError

logger = logging.getLogger("galley.storage")


class ManuscriptStore:
    """sqlite persistence for audits and corrected manuscripts.

    Rows keep a few queryable columns next to the full pydantic payload, so
    readers always get back the same model that was written.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.db_path, timeout=10.0)
        except sqlite3.OperationalError as exc:
            raise sqlite3.OperationalError(f"{exc} (db_path={self.db_path})") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=10000")
        return conn

    @contextmanager
    def _connection(self):
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS audits (
                    id TEXT PRIMARY KEY,
                    project_id TEXT,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS manuscripts (
                    id TEXT PRIMARY KEY,
                    audit_id TEXT,
                    project_id TEXT,
                    status TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_manuscripts_audit ON manuscripts(audit_id)")
            conn.commit()

    def add_audit(self, audit: ManuscriptAudit) -> ManuscriptAudit:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO audits (id, project_id, payload, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    audit.id,
                    audit.project_id,
                    audit.model_dump_json(),
                    audit.created_at.isoformat(),
                ),
            )
            conn.commit()
        logger.info("audit stored audit_id=%s issues=%d", audit.id, len(audit.all_issues()))
        return audit

    def get_audit(self, audit_id: str) -> ManuscriptAudit:
        with self._connection() as conn:
            row = conn.execute("SELECT payload FROM audits WHERE id = ?", (audit_id,)).fetchone()
        if row is None:
            raise AuditNotFoundError(audit_id)
        return ManuscriptAudit.model_validate_json(row["payload"])

    def _write(self, manuscript: CorrectedManuscript):
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO manuscripts
                (id, audit_id, project_id, status, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    manuscript.id,
                    manuscript.audit_id,
                    manuscript.project_id,
                    manuscript.status.value,
                    manuscript.model_dump_json(),
                    manuscript.created_at.isoformat(),
                    manuscript.updated_at.isoformat(),
                ),
            )
            conn.commit()

    def create_manuscript(self, audit: ManuscriptAudit, manuscript_id: Optional[str] = None) -> CorrectedManuscript:
        manuscript = CorrectedManuscript(
            id=manuscript_id or str(uuid4()),
            audit_id=audit.id,
            project_id=audit.project_id,
            original_content=audit.novel_content,
            corrected_content=audit.novel_content,
            status=ManuscriptStatus.CORRECTING,
        )
        self._write(manuscript)
        logger.info("manuscript created manuscript_id=%s audit_id=%s", manuscript.id, audit.id)
        return manuscript

    def load(self, manuscript_id: str) -> CorrectedManuscript:
        with self._connection() as conn:
            row = conn.execute("SELECT payload FROM manuscripts WHERE id = ?", (manuscript_id,)).fetchone()
        if row is None:
            raise ManuscriptNotFoundError(manuscript_id)
        return CorrectedManuscript.model_validate_json(row["payload"])

    def save(self, manuscript_id: str, update: Optional[Dict[str, Any]] = None) -> CorrectedManuscript:
        """Merge ``update`` into the stored manuscript and persist it.

        ``update`` may also be a whole ``CorrectedManuscript``.
        """
        if isinstance(update, CorrectedManuscript):
            manuscript = update.model_copy(update={"updated_at": datetime.now()})
        else:
            current = self.load(manuscript_id)
            data = current.model_dump()
            data.update(update or {})
            data["updated_at"] = datetime.now()
            manuscript = CorrectedManuscript.model_validate(data)
        if manuscript.id != manuscript_id:
            raise ValueError(f"manuscript id mismatch: {manuscript.id} != {manuscript_id}")
        self._write(manuscript)
        return manuscript

    def list_manuscripts(self, audit_id: Optional[str] = None) -> List[CorrectedManuscript]:
        query = "SELECT payload FROM manuscripts"
        params: tuple = ()
        if audit_id:
            query += " WHERE audit_id = ?"
            params = (audit_id,)
        query += " ORDER BY created_at DESC"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [CorrectedManuscript.model_validate_json(row["payload"]) for row in rows]
