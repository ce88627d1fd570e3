import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from models import (
    CorrectedManuscript,
    CorrectionKind,
    CorrectionRecord,
    CorrectionStatus,
    ManuscriptStatus,
)
from services.errors import (
    CorrectionNotFoundError,
    InvalidTransitionError,
    PendingCorrectionsError,
    SpanConflictError,
)

logger = logging.getLogger("galley.ledger")

UNLOCATABLE_SENTINEL = "[No se pudo localizar el texto exacto]"
GENERIC_SENTINEL = "[Problema genérico sin frases identificables]"
SENTINELS = {UNLOCATABLE_SENTINEL, GENERIC_SENTINEL}

STRUCTURAL_TAG = "[ESTRUCTURAL]"
STRUCTURAL_RESOLUTION_TAG = "[RESOLUCIÓN ESTRUCTURAL]"


def is_sentinel(text: Optional[str]) -> bool:
    return (text or "").strip() in SENTINELS


@dataclass(frozen=True)
class ContentVersion:
    """An immutable snapshot of a manuscript's working text."""

    text: str
    version: int = 0

    def replace_first(self, old: str, new: str) -> "ContentVersion":
        return ContentVersion(text=self.text.replace(old, new, 1), version=self.version + 1)

    def with_text(self, text: str) -> "ContentVersion":
        return ContentVersion(text=text, version=self.version + 1)


class CorrectionLedger:
    """Owns one manuscript's working content and its correction records.

    Working content changes only through ``approve`` and ``mark_applied``;
    ``propose`` never touches it.
    """

    def __init__(self, manuscript: CorrectedManuscript):
        self.manuscript = manuscript

    @property
    def content(self) -> ContentVersion:
        return ContentVersion(
            text=self.manuscript.corrected_content,
            version=self.manuscript.content_version,
        )

    def _commit(self, content: ContentVersion):
        self.manuscript.corrected_content = content.text
        self.manuscript.content_version = content.version
        self._touch()

    def _touch(self):
        self.manuscript.updated_at = datetime.now()

    @property
    def records(self) -> List[CorrectionRecord]:
        return self.manuscript.pending_corrections

    def get(self, correction_id: str) -> CorrectionRecord:
        for record in self.records:
            if record.id == correction_id:
                return record
        raise CorrectionNotFoundError(correction_id)

    def pending(self) -> List[CorrectionRecord]:
        return [r for r in self.records if r.status == CorrectionStatus.PENDING]

    def propose(self, record: CorrectionRecord) -> CorrectionRecord:
        if is_sentinel(record.original_text) and record.status == CorrectionStatus.PENDING:
            record.status = CorrectionStatus.REJECTED
        self.records.append(record)
        self.manuscript.total_issues += 1
        if record.status == CorrectionStatus.PENDING:
            self.manuscript.corrected_issues += 1
        self._touch()
        return record

    def _require_pending(self, record: CorrectionRecord, action: str):
        if record.status != CorrectionStatus.PENDING:
            raise InvalidTransitionError(record.id, record.status.value, action)

    def approve(self, correction_id: str) -> CorrectionRecord:
        record = self.get(correction_id)
        self._require_pending(record, "approve")
        if record.kind == CorrectionKind.STRUCTURAL:
            raise InvalidTransitionError(record.id, record.status.value, "approve structural")

        content = self.content
        if not is_sentinel(record.original_text):
            if record.original_text not in content.text:
                raise SpanConflictError(record.id)
            content = content.replace_first(record.original_text, record.corrected_text)
            self._commit(content)

        record.status = CorrectionStatus.APPROVED
        record.reviewed_at = datetime.now()
        self.manuscript.approved_issues += 1
        self._touch()
        logger.info(
            "correction approved manuscript_id=%s correction_id=%s content_version=%d",
            self.manuscript.id,
            record.id,
            self.manuscript.content_version,
        )
        return record

    def reject(self, correction_id: str) -> CorrectionRecord:
        record = self.get(correction_id)
        self._require_pending(record, "reject")
        record.status = CorrectionStatus.REJECTED
        record.reviewed_at = datetime.now()
        self.manuscript.rejected_issues += 1
        self._touch()
        return record

    def mark_applied(self, correction_id: str, summary: str, new_content: str) -> CorrectionRecord:
        """Close a pending structural record with the content its resolution produced.

        Structural records skip ``approve``: choosing a resolution is the review
        decision, so they move from pending straight to applied.
        """
        record = self.get(correction_id)
        self._require_pending(record, "apply")
        if record.kind != CorrectionKind.STRUCTURAL:
            raise InvalidTransitionError(record.id, record.status.value, "apply local")

        record.status = CorrectionStatus.APPLIED
        record.corrected_text = f"{STRUCTURAL_RESOLUTION_TAG} {summary}"
        record.reviewed_at = datetime.now()
        self.manuscript.approved_issues += 1
        self._commit(self.content.with_text(new_content))
        return record

    def finalize(self) -> CorrectedManuscript:
        pending = self.pending()
        if pending:
            raise PendingCorrectionsError([r.id for r in pending])
        now = datetime.now()
        self.manuscript.status = ManuscriptStatus.APPROVED
        self.manuscript.completed_at = now
        self.manuscript.updated_at = now
        return self.manuscript
