import asyncio
import logging
from typing import Dict, List, Optional
from uuid import uuid4

from core.engine_config import EngineConfig
from core.manuscript_text import location_chapter
from core.progress import ProgressReporter, emit_progress
from models import (
    AuditIssue,
    CorrectedManuscript,
    CorrectionKind,
    CorrectionProgress,
    CorrectionRecord,
    CorrectionStatus,
    ManuscriptStatus,
    ResolutionOption,
    StructuralIssue,
)
from services.attribute_search import AttributeConsistencyStrategy
from services.correction_generator import CorrectionGenerator, CorrectionResult
from services.correction_ledger import (
    GENERIC_SENTINEL,
    STRUCTURAL_TAG,
    UNLOCATABLE_SENTINEL,
    CorrectionLedger,
    is_sentinel,
)
from services.errors import (
    CorrectionNotFoundError,
    InvalidTransitionError,
    ResolutionOptionError,
    SpanConflictError,
    StructuralResolutionError,
)
from services.repetition_search import (
    FoundPhrase,
    extract_ngram_phrases,
    extract_repetitive_phrases,
    find_all_occurrences,
    is_generic_issue,
)
from services.resolution_executor import ResolutionExecutor
from services.resolution_planner import (
    ResolutionPlanner,
    select_best_option,
    structural_issue_from_record,
)
from services.span_locator import (
    IssueTargetLocator,
    QuotedFragmentStrategy,
    SentenceScoringStrategy,
    SpanLocator,
)
from services.structural_classifier import StructuralClassifier
from storage import ManuscriptStore

logger = logging.getLogger("galley.corrections")

REPETITION_TAG = "[REPETICIÓN]"
NGRAM_TAG = "[REPETICIÓN-NGRAMA]"
NGRAM_LOCATION = "Múltiples capítulos"


def _new_correction_id() -> str:
    return f"correction-{uuid4().hex[:12]}"


class CorrectionService:
    """Turns audit issues into reviewable corrections and applies reviews.

    A run walks the issues one by one; every per-issue outcome, failures
    included, becomes a record on the manuscript. Review actions reload,
    mutate and save the manuscript under a per-manuscript lock.
    """

    def __init__(
        self,
        store: ManuscriptStore,
        llm_client,
        config: Optional[EngineConfig] = None,
        classifier: Optional[StructuralClassifier] = None,
        planner: Optional[ResolutionPlanner] = None,
    ):
        self.store = store
        self.llm_client = llm_client
        self.config = config or EngineConfig()
        self.classifier = classifier or StructuralClassifier()
        self.planner = planner or ResolutionPlanner()
        span_locator = SpanLocator()
        self.target_locator = IssueTargetLocator(
            [
                QuotedFragmentStrategy(span_locator),
                AttributeConsistencyStrategy(llm_client, span_locator),
                SentenceScoringStrategy(),
            ]
        )
        self.generator = CorrectionGenerator(llm_client, self.config)
        self.executor = ResolutionExecutor(llm_client, self.config)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}

    def _lock(self, manuscript_id: str) -> asyncio.Lock:
        lock = self._locks.get(manuscript_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[manuscript_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Correction run
    # ------------------------------------------------------------------

    async def start_correction_run(
        self,
        audit_id: str,
        on_progress: ProgressReporter = None,
        cancel_event: Optional[asyncio.Event] = None,
        manuscript_id: Optional[str] = None,
    ) -> CorrectedManuscript:
        audit = self.store.get_audit(audit_id)
        manuscript = self.store.create_manuscript(audit, manuscript_id=manuscript_id)
        cancel_event = cancel_event or asyncio.Event()
        self._cancel_events[manuscript.id] = cancel_event

        issues = audit.all_issues()
        total = len(issues)
        ledger = CorrectionLedger(manuscript)
        logger.info(
            "correction run started manuscript_id=%s audit_id=%s issues=%d",
            manuscript.id,
            audit_id,
            total,
        )
        await emit_progress(
            on_progress,
            CorrectionProgress(phase="starting", current=0, total=total, message="Iniciando corrección quirúrgica..."),
        )

        try:
            for index, issue in enumerate(issues):
                if cancel_event.is_set():
                    manuscript.status = ManuscriptStatus.REVIEW
                    self.store.save(manuscript.id, manuscript)
                    logger.info("correction run cancelled manuscript_id=%s processed=%d", manuscript.id, index)
                    await emit_progress(
                        on_progress,
                        CorrectionProgress(
                            phase="cancelled",
                            current=index,
                            total=total,
                            message="Corrección cancelada",
                        ),
                    )
                    return manuscript

                await emit_progress(
                    on_progress,
                    CorrectionProgress(
                        phase="correcting",
                        current=index + 1,
                        total=total,
                        message=f"Corrigiendo issue {index + 1}/{total}: {issue.severity.value}",
                    ),
                )
                await self._process_issue(ledger, f"issue-{index}", issue, on_progress, index + 1, total)
                self.store.save(manuscript.id, manuscript)
        except Exception as exc:
            logger.exception("correction run failed manuscript_id=%s", manuscript.id)
            manuscript.status = ManuscriptStatus.ERROR
            manuscript.error_message = str(exc)
            self.store.save(manuscript.id, manuscript)
            await emit_progress(
                on_progress,
                CorrectionProgress(phase="error", current=0, total=total, message=str(exc)),
            )
            return manuscript
        finally:
            self._cancel_events.pop(manuscript.id, None)

        manuscript.status = ManuscriptStatus.REVIEW
        self.store.save(manuscript.id, manuscript)
        logger.info(
            "correction run completed manuscript_id=%s records=%d pending=%d",
            manuscript.id,
            manuscript.total_issues,
            manuscript.corrected_issues,
        )
        await emit_progress(
            on_progress,
            CorrectionProgress(
                phase="completed",
                current=total,
                total=total,
                message=(
                    f"Corrección completada. {manuscript.corrected_issues}/{manuscript.total_issues} "
                    f"correcciones generadas (de {total} issues). Esperando revisión."
                ),
            ),
        )
        return manuscript

    def cancel_run(self, manuscript_id: str) -> bool:
        event = self._cancel_events.get(manuscript_id)
        if event is None:
            return False
        event.set()
        return True

    async def _process_issue(
        self,
        ledger: CorrectionLedger,
        issue_id: str,
        issue: AuditIssue,
        on_progress: ProgressReporter,
        current: int,
        total: int,
    ):
        content = ledger.content.text

        classification = self.classifier.classify(issue, content)
        if classification is not None:
            ledger.propose(
                CorrectionRecord(
                    id=_new_correction_id(),
                    issue_id=issue_id,
                    location=issue.location,
                    chapter_number=(classification.affected_chapters or [0])[0],
                    original_text=f"{STRUCTURAL_TAG} {issue.description}",
                    corrected_text="",
                    instruction=f"{STRUCTURAL_TAG} {issue.description}",
                    severity=issue.severity,
                    kind=CorrectionKind.STRUCTURAL,
                )
            )
            logger.info(
                "structural issue recorded issue_id=%s type=%s chapters=%s",
                issue_id,
                classification.type.value,
                classification.affected_chapters,
            )
            return

        span = await asyncio.to_thread(self.target_locator.locate, content, issue)
        if span is not None:
            result = await asyncio.to_thread(
                self.generator.correct,
                content,
                span,
                issue.description,
                issue.suggestion,
            )
            record = self._record_from_result(
                issue_id,
                issue,
                result,
                location=issue.location,
                chapter_number=span.chapter_number or location_chapter(issue.location) or 0,
                instruction=issue.description,
                kind=CorrectionKind.LOCAL,
            )
            record.confidence = span.confidence
            record.locator_strategy = span.strategy
            ledger.propose(record)
            await asyncio.sleep(self.config.rate_limit_delay)
            return

        if is_generic_issue(issue.description, issue.location):
            await emit_progress(
                on_progress,
                CorrectionProgress(
                    phase="analyzing",
                    current=current,
                    total=total,
                    message="Analizando problema genérico: buscando frases repetitivas...",
                ),
            )
            phrases = extract_repetitive_phrases(issue.description)
            occurrences = find_all_occurrences(content, phrases) if phrases else []
            if occurrences:
                await self._propose_alternatives(ledger, issue_id, issue, occurrences, on_progress, current, total)
                return
            if phrases:
                logger.info("repetitive phrases not found issue_id=%s phrases=%d", issue_id, len(phrases))

            ngram_phrases = extract_ngram_phrases(issue.description, content)
            if ngram_phrases:
                occurrences = [
                    FoundPhrase(text=phrase, chapter_number=0, chapter_title=NGRAM_LOCATION, context=phrase, position=0)
                    for phrase in ngram_phrases
                ]
                await self._propose_alternatives(
                    ledger, issue_id, issue, occurrences, on_progress, current, total, tag=NGRAM_TAG
                )
                return

            ledger.propose(self._sentinel_record(issue_id, issue, GENERIC_SENTINEL, chapter_number=0))
            return

        logger.info("issue target not located issue_id=%s location=%s", issue_id, issue.location or "-")
        ledger.propose(
            self._sentinel_record(
                issue_id,
                issue,
                UNLOCATABLE_SENTINEL,
                chapter_number=location_chapter(issue.location) or 0,
            )
        )

    async def _propose_alternatives(
        self,
        ledger: CorrectionLedger,
        issue_id: str,
        issue: AuditIssue,
        occurrences: List[FoundPhrase],
        on_progress: ProgressReporter,
        current: int,
        total: int,
        tag: str = REPETITION_TAG,
    ):
        for index, found in enumerate(occurrences):
            await emit_progress(
                on_progress,
                CorrectionProgress(
                    phase="correcting",
                    current=current,
                    total=total,
                    message=f"Generando alternativa {index + 1}/{len(occurrences)} para \"{found.text[:30]}...\"",
                ),
            )
            result = await asyncio.to_thread(
                self.generator.generate_alternative,
                found.text,
                found.context,
                issue.description,
                index,
            )
            ledger.propose(
                self._record_from_result(
                    issue_id,
                    issue,
                    result,
                    location=found.chapter_title,
                    chapter_number=found.chapter_number,
                    instruction=f"{tag} {issue.description}",
                    kind=CorrectionKind.REPETITION,
                )
            )
            await asyncio.sleep(self.config.repetition_delay)

    @staticmethod
    def _record_from_result(
        issue_id: str,
        issue: AuditIssue,
        result: CorrectionResult,
        *,
        location: str,
        chapter_number: int,
        instruction: str,
        kind: CorrectionKind,
    ) -> CorrectionRecord:
        return CorrectionRecord(
            id=_new_correction_id(),
            issue_id=issue_id,
            location=location,
            chapter_number=chapter_number,
            original_text=result.original_text,
            corrected_text=result.corrected_text,
            instruction=instruction,
            severity=issue.severity,
            status=CorrectionStatus.PENDING if result.success else CorrectionStatus.REJECTED,
            kind=kind,
            diff_stats=result.diff_stats,
            error=result.error,
        )

    @staticmethod
    def _sentinel_record(issue_id: str, issue: AuditIssue, sentinel: str, chapter_number: int) -> CorrectionRecord:
        return CorrectionRecord(
            id=_new_correction_id(),
            issue_id=issue_id,
            location=issue.location,
            chapter_number=chapter_number,
            original_text=sentinel,
            corrected_text="",
            instruction=issue.description,
            severity=issue.severity,
            status=CorrectionStatus.REJECTED,
        )

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def get_manuscript(self, manuscript_id: str) -> CorrectedManuscript:
        return self.store.load(manuscript_id)

    async def approve(self, manuscript_id: str, correction_id: str) -> CorrectionRecord:
        async with self._lock(manuscript_id):
            ledger = CorrectionLedger(self.store.load(manuscript_id))
            record = ledger.approve(correction_id)
            self.store.save(manuscript_id, ledger.manuscript)
            return record

    async def reject(self, manuscript_id: str, correction_id: str) -> CorrectionRecord:
        async with self._lock(manuscript_id):
            ledger = CorrectionLedger(self.store.load(manuscript_id))
            record = ledger.reject(correction_id)
            self.store.save(manuscript_id, ledger.manuscript)
            return record

    async def finalize(self, manuscript_id: str) -> CorrectedManuscript:
        async with self._lock(manuscript_id):
            ledger = CorrectionLedger(self.store.load(manuscript_id))
            manuscript = ledger.finalize()
            self.store.save(manuscript_id, manuscript)
            logger.info("manuscript finalized manuscript_id=%s", manuscript_id)
            return manuscript

    async def auto_approve_all(self, manuscript_id: str) -> Dict[str, int]:
        """Approve every pending local or repetition record that proposes a change."""
        approved = 0
        skipped = 0
        async with self._lock(manuscript_id):
            ledger = CorrectionLedger(self.store.load(manuscript_id))
            for record in list(ledger.pending()):
                if (
                    record.kind == CorrectionKind.STRUCTURAL
                    or is_sentinel(record.original_text)
                    or record.corrected_text == record.original_text
                ):
                    skipped += 1
                    continue
                try:
                    ledger.approve(record.id)
                    approved += 1
                except SpanConflictError:
                    logger.info(
                        "auto-approve skipped stale correction manuscript_id=%s correction_id=%s",
                        manuscript_id,
                        record.id,
                    )
                    skipped += 1
            self.store.save(manuscript_id, ledger.manuscript)
        logger.info("auto-approve finished manuscript_id=%s approved=%d skipped=%d", manuscript_id, approved, skipped)
        return {"approved": approved, "skipped": skipped}

    # ------------------------------------------------------------------
    # Structural resolutions
    # ------------------------------------------------------------------

    def _structural_issue(self, manuscript: CorrectedManuscript, correction_id: str) -> StructuralIssue:
        ledger = CorrectionLedger(manuscript)
        record = ledger.get(correction_id)
        if record.kind != CorrectionKind.STRUCTURAL:
            raise InvalidTransitionError(record.id, record.status.value, "resolve non-structural")
        issue = structural_issue_from_record(record, manuscript.corrected_content, self.classifier, self.planner)
        if issue is None:
            raise StructuralResolutionError(f"correction {correction_id} no longer classifies as structural")
        return issue

    def get_structural_options(self, manuscript_id: str, correction_id: str) -> StructuralIssue:
        return self._structural_issue(self.store.load(manuscript_id), correction_id)

    @staticmethod
    def _pick_option(issue: StructuralIssue, option_id: str) -> ResolutionOption:
        for option in issue.resolution_options:
            if option.id == option_id:
                return option
        raise ResolutionOptionError(option_id, [o.id for o in issue.resolution_options])

    async def apply_structural_resolution(
        self,
        manuscript_id: str,
        correction_id: str,
        option_id: str,
        on_progress: ProgressReporter = None,
    ) -> CorrectedManuscript:
        manuscript = self.store.load(manuscript_id)
        record = CorrectionLedger(manuscript).get(correction_id)
        if record.status not in (CorrectionStatus.PENDING, CorrectionStatus.APPROVED):
            raise InvalidTransitionError(record.id, record.status.value, "apply")
        issue = self._structural_issue(manuscript, correction_id)
        option = self._pick_option(issue, option_id)
        return await self._apply_option(manuscript, correction_id, issue, option, on_progress)

    async def _apply_option(
        self,
        manuscript: CorrectedManuscript,
        correction_id: str,
        issue: StructuralIssue,
        option: ResolutionOption,
        on_progress: ProgressReporter,
    ) -> CorrectedManuscript:
        base_version = manuscript.content_version
        new_content = await self.executor.execute(manuscript.corrected_content, issue, option, on_progress)

        async with self._lock(manuscript.id):
            current = self.store.load(manuscript.id)
            if current.content_version != base_version:
                raise SpanConflictError(correction_id)
            ledger = CorrectionLedger(current)
            ledger.mark_applied(correction_id, option.label, new_content)
            self.store.save(current.id, current)
        logger.info(
            "structural resolution applied manuscript_id=%s correction_id=%s option_id=%s",
            manuscript.id,
            correction_id,
            option.id,
        )
        return current

    async def auto_resolve_structural(
        self,
        manuscript_id: str,
        on_progress: ProgressReporter = None,
    ) -> Dict[str, object]:
        """Apply the preferred option to every pending structural record.

        A failing resolution is logged and skipped; the others still run
        against the content left by the previous ones.
        """
        manuscript = self.store.load(manuscript_id)
        structural_ids = [
            r.id
            for r in manuscript.pending_corrections
            if r.kind == CorrectionKind.STRUCTURAL and r.status == CorrectionStatus.PENDING
        ]
        resolved: List[str] = []
        failed: Dict[str, str] = {}
        for correction_id in structural_ids:
            manuscript = self.store.load(manuscript_id)
            try:
                issue = self._structural_issue(manuscript, correction_id)
                option = select_best_option(issue)
                if option is None:
                    raise StructuralResolutionError(f"no resolution options for correction {correction_id}")
                await self._apply_option(manuscript, correction_id, issue, option, on_progress)
                resolved.append(correction_id)
            except (StructuralResolutionError, SpanConflictError, CorrectionNotFoundError) as exc:
                logger.warning(
                    "auto-resolve skipped manuscript_id=%s correction_id=%s error=%s",
                    manuscript_id,
                    correction_id,
                    exc,
                )
                failed[correction_id] = str(exc)
        return {"resolved": resolved, "failed": failed}
