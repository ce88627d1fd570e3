from typing import List, Optional


class CorrectionError(Exception):
    """Base class for correction engine failures surfaced to callers."""


class ManuscriptNotFoundError(CorrectionError):
    def __init__(self, manuscript_id: str):
        super().__init__(f"manuscript not found: {manuscript_id}")
        self.manuscript_id = manuscript_id


class AuditNotFoundError(CorrectionError):
    def __init__(self, audit_id: str):
        super().__init__(f"audit not found: {audit_id}")
        self.audit_id = audit_id


class CorrectionNotFoundError(CorrectionError):
    def __init__(self, correction_id: str):
        super().__init__(f"correction not found: {correction_id}")
        self.correction_id = correction_id


class InvalidTransitionError(CorrectionError):
    def __init__(self, correction_id: str, current: str, action: str):
        super().__init__(f"cannot {action} correction {correction_id} in status {current}")
        self.correction_id = correction_id
        self.current = current
        self.action = action


class SpanConflictError(CorrectionError):
    """The record's original text is no longer present in the working content."""

    def __init__(self, correction_id: str):
        super().__init__(f"original text of correction {correction_id} is no longer present")
        self.correction_id = correction_id


class PendingCorrectionsError(CorrectionError):
    def __init__(self, pending_ids: List[str]):
        super().__init__(f"{len(pending_ids)} corrections still pending")
        self.pending_ids = pending_ids


class ResolutionOptionError(CorrectionError):
    def __init__(self, option_id: str, valid_ids: List[str]):
        super().__init__(
            f"unknown resolution option {option_id!r}; valid options: {', '.join(valid_ids) or 'none'}"
        )
        self.option_id = option_id
        self.valid_ids = valid_ids


class StructuralResolutionError(CorrectionError):
    def __init__(self, message: str, option_id: Optional[str] = None):
        super().__init__(message)
        self.option_id = option_id
