"""
SQLite evidence store for cases, evidence items, extracted frames and the
persisted case analysis blob.
"""
import json
import logging
import os
import uuid
from datetime import datetime
from typing import Optional, List

import aiosqlite

from casefusion.config import settings
from casefusion.models.schemas import (
    Case,
    CaseAnalysis,
    CaseStatus,
    EvidenceDerived,
    EvidenceItem,
    EvidenceType,
    FrameDerived,
    FrameEvidence,
)

logger = logging.getLogger(__name__)

# Singleton instance
_db_instance: Optional["DatabaseService"] = None


class DatabaseService:
    """Async SQLite database service.

    Write operations propagate their errors: the analysis pipeline decides
    whether a failed write is item-local or terminal for the run.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or settings.database_path
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self):
        """Create database directory and tables."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._create_tables()
        logger.info(f"SQLite database initialized at {self.db_path}")

    async def _create_tables(self):
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS cases (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS evidence_items (
                id TEXT PRIMARY KEY,
                case_id TEXT NOT NULL,
                type TEXT NOT NULL,
                original_filename TEXT NOT NULL,
                storage_url TEXT NOT NULL,
                uploaded_at TEXT NOT NULL,
                derived TEXT,
                FOREIGN KEY (case_id) REFERENCES cases(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS frame_evidence (
                id TEXT PRIMARY KEY,
                parent_evidence_id TEXT NOT NULL,
                time_seconds REAL NOT NULL,
                storage_url TEXT NOT NULL,
                derived TEXT,
                UNIQUE (parent_evidence_id, time_seconds),
                FOREIGN KEY (parent_evidence_id) REFERENCES evidence_items(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS case_analysis (
                case_id TEXT PRIMARY KEY,
                analysis TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (case_id) REFERENCES cases(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_type TEXT,
                entity_id TEXT,
                action TEXT,
                details TEXT,
                timestamp TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_evidence_case ON evidence_items(case_id);
            CREATE INDEX IF NOT EXISTS idx_frames_parent ON frame_evidence(parent_evidence_id);
        """)
        await self._db.commit()

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None

    # ── Case CRUD ─────────────────────────────────────────

    async def create_case(self, name: str, description: Optional[str] = None) -> Case:
        now = datetime.utcnow()
        case = Case(
            id=str(uuid.uuid4()),
            name=name,
            description=description or None,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        await self._db.execute(
            """INSERT INTO cases (id, name, description, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (case.id, case.name, case.description or "", case.status,
             now.isoformat(), now.isoformat()),
        )
        await self._db.commit()
        await self._audit("case", case.id, "create")
        return case

    async def get_case(self, case_id: str) -> Optional[Case]:
        async with self._db.execute(
            "SELECT * FROM cases WHERE id = ?", (case_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return self._row_to_case(row)
        return None

    async def list_cases(self, limit: int = 50) -> List[Case]:
        cases = []
        async with self._db.execute(
            "SELECT * FROM cases ORDER BY updated_at DESC LIMIT ?", (limit,)
        ) as cursor:
            async for row in cursor:
                cases.append(self._row_to_case(row))
        return cases

    async def set_case_status(self, case_id: str, status: CaseStatus) -> None:
        await self._db.execute(
            "UPDATE cases SET status = ?, updated_at = ? WHERE id = ?",
            (status, datetime.utcnow().isoformat(), case_id),
        )
        await self._db.commit()
        await self._audit("case", case_id, "status", status)

    # ── Evidence ──────────────────────────────────────────

    async def create_evidence(
        self,
        case_id: str,
        evidence_type: EvidenceType,
        original_filename: str,
        storage_url: str,
        evidence_id: Optional[str] = None,
    ) -> EvidenceItem:
        item = EvidenceItem(
            id=evidence_id or str(uuid.uuid4()),
            case_id=case_id,
            type=evidence_type,
            original_filename=original_filename,
            storage_url=storage_url.replace("\\", "/"),
            uploaded_at=datetime.utcnow(),
        )
        await self._db.execute(
            """INSERT INTO evidence_items
               (id, case_id, type, original_filename, storage_url, uploaded_at, derived)
               VALUES (?, ?, ?, ?, ?, ?, NULL)""",
            (item.id, item.case_id, item.type, item.original_filename,
             item.storage_url, item.uploaded_at.isoformat()),
        )
        await self._db.commit()
        await self._audit("evidence", item.id, "create", original_filename)
        return item

    async def get_evidence(self, evidence_id: str) -> Optional[EvidenceItem]:
        async with self._db.execute(
            "SELECT * FROM evidence_items WHERE id = ?", (evidence_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return self._row_to_evidence(row)
        return None

    async def get_evidence_by_case(self, case_id: str) -> List[EvidenceItem]:
        """All evidence of a case in upload order."""
        items = []
        async with self._db.execute(
            "SELECT * FROM evidence_items WHERE case_id = ? ORDER BY uploaded_at ASC, rowid ASC",
            (case_id,),
        ) as cursor:
            async for row in cursor:
                items.append(self._row_to_evidence(row))
        return items

    async def save_evidence_derived(self, evidence_id: str, derived: EvidenceDerived) -> None:
        """Replace the derived block of an evidence item."""
        await self._db.execute(
            "UPDATE evidence_items SET derived = ? WHERE id = ?",
            (derived.model_dump_json(by_alias=True), evidence_id),
        )
        await self._db.commit()

    # ── Frames ────────────────────────────────────────────

    async def save_frames(self, frames: List[FrameEvidence]) -> None:
        """Store freshly extracted frames, replacing earlier frames at the same timestamps."""
        for frame in frames:
            derived = frame.derived.model_dump_json(by_alias=True) if frame.derived else None
            await self._db.execute(
                """INSERT OR REPLACE INTO frame_evidence
                   (id, parent_evidence_id, time_seconds, storage_url, derived)
                   VALUES (?, ?, ?, ?, ?)""",
                (frame.id, frame.parent_evidence_id, frame.time_seconds,
                 frame.storage_url, derived),
            )
        await self._db.commit()

    async def delete_frames(self, parent_evidence_id: str) -> None:
        await self._db.execute(
            "DELETE FROM frame_evidence WHERE parent_evidence_id = ?", (parent_evidence_id,)
        )
        await self._db.commit()

    async def save_frame_derived(self, frame_id: str, derived: FrameDerived) -> None:
        await self._db.execute(
            "UPDATE frame_evidence SET derived = ? WHERE id = ?",
            (derived.model_dump_json(by_alias=True), frame_id),
        )
        await self._db.commit()

    async def get_frames_by_evidence(self, evidence_id: str) -> List[FrameEvidence]:
        frames = []
        async with self._db.execute(
            "SELECT * FROM frame_evidence WHERE parent_evidence_id = ? ORDER BY time_seconds ASC",
            (evidence_id,),
        ) as cursor:
            async for row in cursor:
                d = dict(row)
                frames.append(FrameEvidence(
                    id=d["id"],
                    parent_evidence_id=d["parent_evidence_id"],
                    time_seconds=d["time_seconds"],
                    storage_url=d["storage_url"],
                    derived=FrameDerived.model_validate_json(d["derived"]) if d.get("derived") else None,
                ))
        return frames

    # ── Analysis ──────────────────────────────────────────

    async def save_completed_analysis(self, case_id: str, analysis: CaseAnalysis) -> None:
        """Store the analysis and mark the case completed in one transaction.

        If either write fails nothing is kept, so a failed run never leaves a
        stored analysis behind.
        """
        now = datetime.utcnow().isoformat()
        try:
            await self._db.execute(
                """INSERT OR REPLACE INTO case_analysis (case_id, analysis, updated_at)
                   VALUES (?, ?, ?)""",
                (case_id, analysis.model_dump_json(by_alias=True), now),
            )
            await self._db.execute(
                "UPDATE cases SET status = ?, updated_at = ? WHERE id = ?",
                ("completed", now, case_id),
            )
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        await self._audit("analysis", case_id, "save")
        await self._audit("case", case_id, "status", "completed")

    async def get_analysis(self, case_id: str) -> Optional[CaseAnalysis]:
        async with self._db.execute(
            "SELECT analysis FROM case_analysis WHERE case_id = ?", (case_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return CaseAnalysis.model_validate_json(row[0])
        return None

    # ── Helpers ───────────────────────────────────────────

    async def _audit(self, entity_type: str, entity_id: str, action: str, details: str = ""):
        try:
            await self._db.execute(
                "INSERT INTO audit_log (entity_type, entity_id, action, details) VALUES (?, ?, ?, ?)",
                (entity_type, entity_id, action, details),
            )
            await self._db.commit()
        except Exception as e:
            logger.warning(f"Audit log write failed: {e}")

    @staticmethod
    def _row_to_case(row) -> Case:
        d = dict(row)
        return Case(
            id=d["id"],
            name=d["name"],
            description=d.get("description") or None,
            status=d["status"],
            created_at=d["created_at"],
            updated_at=d["updated_at"],
        )

    @staticmethod
    def _row_to_evidence(row) -> EvidenceItem:
        d = dict(row)
        derived = None
        if d.get("derived"):
            try:
                derived = EvidenceDerived.model_validate(json.loads(d["derived"]))
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning(f"Discarding unreadable derived block for evidence {d['id']}: {e}")
        return EvidenceItem(
            id=d["id"],
            case_id=d["case_id"],
            type=d["type"],
            original_filename=d["original_filename"],
            storage_url=d["storage_url"],
            uploaded_at=d["uploaded_at"],
            derived=derived,
        )

    async def health_check(self) -> bool:
        try:
            async with self._db.execute("SELECT 1") as cursor:
                await cursor.fetchone()
            return True
        except Exception:
            return False


def get_database() -> DatabaseService:
    """Get or create the singleton DatabaseService."""
    global _db_instance
    if _db_instance is None:
        _db_instance = DatabaseService()
    return _db_instance
