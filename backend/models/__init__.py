from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class CorrectionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"


class CorrectionKind(str, Enum):
    LOCAL = "local"
    REPETITION = "repetition"
    STRUCTURAL = "structural"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ManuscriptStatus(str, Enum):
    CORRECTING = "correcting"
    REVIEW = "review"
    APPROVED = "approved"
    ERROR = "error"


class StructuralIssueType(str, Enum):
    DUPLICATE_CHAPTERS = "duplicate_chapters"
    DUPLICATE_SCENES = "duplicate_scenes"
    REDUNDANT_CONTENT = "redundant_content"
    CONTINUITY_CONFLICT = "continuity_conflict"
    NARRATIVE_FLOW_BREAK = "narrative_flow_break"


class ConflictType(str, Enum):
    TEMPORAL = "temporal"
    SPATIAL = "spatial"
    CHARACTER = "character"
    OBJECT = "object"
    LOGIC = "logic"


class ResolutionType(str, Enum):
    DELETE = "delete"
    REWRITE = "rewrite"
    MERGE = "merge"
    MODIFY_A = "modify_a"
    MODIFY_B = "modify_b"
    ADD_EXPLANATION = "add_explanation"
    ADD_TRANSITION = "add_transition"


class RewriteMode(str, Enum):
    NEW_EVENTS = "new_events"
    VARY_OCCURRENCES = "vary_occurrences"
    REMOVE_FIRST_OCCURRENCE = "remove_first_occurrence"
    REMOVE_SECOND_OCCURRENCE = "remove_second_occurrence"
    DIFFERENTIATE = "differentiate"
    FIX_DIALOGUE = "fix_dialogue"
    ADD_CLARIFICATION = "add_clarification"


class TransitionPosition(str, Enum):
    END = "end"
    START = "start"
    BOTH = "both"


class AuditIssue(BaseModel):
    description: str
    location: str = ""
    severity: Severity = Severity.MEDIUM
    suggestion: str = ""
    agent_type: Optional[str] = None
    character: Optional[str] = None
    attribute: Optional[str] = None
    expected_value: Optional[str] = None

    model_config = {"frozen": True}


class AgentReport(BaseModel):
    agent_type: str
    overall_score: Optional[float] = None
    issues: List[AuditIssue] = Field(default_factory=list)


class ManuscriptAudit(BaseModel):
    id: str
    project_id: Optional[str] = None
    novel_content: str
    reports: List[AgentReport] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)

    def all_issues(self) -> List[AuditIssue]:
        issues: List[AuditIssue] = []
        for report in self.reports:
            for issue in report.issues:
                if issue.agent_type is None:
                    issue = issue.model_copy(update={"agent_type": report.agent_type})
                issues.append(issue)
        return issues


class DiffStats(BaseModel):
    words_added: int = 0
    words_removed: int = 0
    length_change: int = 0


class CorrectionRecord(BaseModel):
    id: str
    issue_id: str
    location: str = ""
    chapter_number: int = 0
    original_text: str
    corrected_text: str = ""
    instruction: str = ""
    severity: Severity = Severity.MEDIUM
    status: CorrectionStatus = CorrectionStatus.PENDING
    kind: CorrectionKind = CorrectionKind.LOCAL
    confidence: Optional[Confidence] = None
    locator_strategy: Optional[str] = None
    diff_stats: DiffStats = Field(default_factory=DiffStats)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    reviewed_at: Optional[datetime] = None


class CorrectedManuscript(BaseModel):
    id: str
    audit_id: Optional[str] = None
    project_id: Optional[str] = None
    original_content: str
    corrected_content: str
    content_version: int = 0
    pending_corrections: List[CorrectionRecord] = Field(default_factory=list)
    total_issues: int = 0
    corrected_issues: int = 0
    approved_issues: int = 0
    rejected_issues: int = 0
    status: ManuscriptStatus = ManuscriptStatus.CORRECTING
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None


class ContinuityConflict(BaseModel):
    chapter_a: int
    chapter_b: int
    fact_a: str = ""
    fact_b: str = ""
    conflict_type: ConflictType = ConflictType.LOGIC


class TransitionContext(BaseModel):
    from_chapter: int
    to_chapter: int
    ending_context: str = ""
    starting_context: str = ""


class ResolutionOption(BaseModel):
    id: str
    type: ResolutionType
    label: str
    description: str
    recommended: bool = False
    chapters_to_delete: List[int] = Field(default_factory=list)
    chapter_to_keep: Optional[int] = None
    chapters_to_merge: List[int] = Field(default_factory=list)
    chapters_to_rewrite: List[int] = Field(default_factory=list)
    chapter_to_modify: Optional[int] = None
    rewrite_mode: Optional[RewriteMode] = None
    transition_position: Optional[TransitionPosition] = None
    transition_context: Optional[TransitionContext] = None
    estimated_tokens: int = 0


class StructuralIssue(BaseModel):
    id: str
    type: StructuralIssueType
    severity: Severity = Severity.MEDIUM
    description: str
    affected_chapters: List[int] = Field(default_factory=list)
    resolution_options: List[ResolutionOption] = Field(default_factory=list)
    conflict_details: Optional[ContinuityConflict] = None
    recommended_option: Optional[str] = None


class CorrectionProgress(BaseModel):
    phase: str
    current: int = 0
    total: int = 0
    message: str = ""


class StructuralResolutionProgress(BaseModel):
    phase: str
    message: str = ""
    current: Optional[int] = None
    total: Optional[int] = None


class LLMUsage(BaseModel):
    model: str = ""
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)
