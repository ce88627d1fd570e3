import asyncio
import tempfile
from pathlib import Path

import pytest

from core.engine_config import EngineConfig
from models import (
    AgentReport,
    AuditIssue,
    Confidence,
    CorrectionKind,
    CorrectionStatus,
    ManuscriptAudit,
    ManuscriptStatus,
)
from services.correction_ledger import GENERIC_SENTINEL, UNLOCATABLE_SENTINEL
from services.correction_service import CorrectionService
from services.errors import (
    AuditNotFoundError,
    InvalidTransitionError,
    ResolutionOptionError,
    SpanConflictError,
)
from storage import ManuscriptStore

EYES_DOCUMENT = (
    "Capítulo 1\n\nElena tenía los ojos verdes como el mar. Caminó hacia la puerta.\n\n"
    "Capítulo 2\n\nElena miró por la ventana. Sus ojos azules brillaban bajo la luz de la luna.\n"
)
EYES_ISSUE = AuditIssue(
    description='Los ojos de Elena son "verdes" según su ficha, pero en el capítulo 2 aparecen "azules".',
    location="Capítulo 2",
    suggestion="Cambiar azules por verdes",
)
DUPLICATES_DOCUMENT = (
    "Capítulo 1\n\nEl viaje empezó temprano.\n\n"
    "Capítulo 2\n\nLlegaron al faro al anochecer.\n\n"
    "Capítulo 3\n\nLlegaron al faro al anochecer.\n"
)
LONG_TEXT = "Llegaron al faro cuando la marea subía y el farero los esperaba con una lámpara encendida en la mano. " * 2


class ScriptedLLM:
    def __init__(self, *responses, default=""):
        self.responses = list(responses)
        self.default = default
        self.calls = []

    def chat(self, messages, temperature=None, max_tokens=None):
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        return response


def _service(llm, *audits):
    tmp = tempfile.mkdtemp()
    store = ManuscriptStore(str(Path(tmp) / "galley.db"))
    for audit in audits:
        store.add_audit(audit)
    config = EngineConfig(rate_limit_delay=0, repetition_delay=0)
    return CorrectionService(store, llm, config)


def _audit(audit_id, content, *issues):
    return ManuscriptAudit(
        id=audit_id,
        novel_content=content,
        reports=[AgentReport(agent_type="continuity", issues=list(issues))],
    )


@pytest.mark.asyncio
async def test_attribute_issue_end_to_end():
    llm = ScriptedLLM("Sus ojos verdes brillaban bajo la luz de la luna.")
    service = _service(llm, _audit("a-1", EYES_DOCUMENT, EYES_ISSUE))
    events = []

    manuscript = await service.start_correction_run("a-1", on_progress=events.append)

    assert manuscript.status == ManuscriptStatus.REVIEW
    assert [e.phase for e in events] == ["starting", "correcting", "completed"]
    record = manuscript.pending_corrections[0]
    assert record.issue_id == "issue-0"
    assert record.status == CorrectionStatus.PENDING
    assert record.kind == CorrectionKind.LOCAL
    assert record.original_text == "Sus ojos azules brillaban bajo la luz de la luna."
    assert record.confidence == Confidence.MEDIUM
    assert record.locator_strategy == "attribute_pattern"
    assert record.chapter_number == 2
    assert manuscript.corrected_content == EYES_DOCUMENT

    await service.approve(manuscript.id, record.id)
    stored = service.get_manuscript(manuscript.id)
    assert "Sus ojos verdes brillaban" in stored.corrected_content
    assert "azules" not in stored.corrected_content
    assert stored.original_content == EYES_DOCUMENT
    assert stored.pending_corrections[0].status == CorrectionStatus.APPROVED

    with pytest.raises(InvalidTransitionError):
        await service.approve(manuscript.id, record.id)

    finalized = await service.finalize(manuscript.id)
    assert finalized.status == ManuscriptStatus.APPROVED


@pytest.mark.asyncio
async def test_failed_generation_becomes_rejected_record():
    llm = ScriptedLLM("")
    service = _service(llm, _audit("a-1", EYES_DOCUMENT, EYES_ISSUE))
    manuscript = await service.start_correction_run("a-1")

    record = manuscript.pending_corrections[0]
    assert record.status == CorrectionStatus.REJECTED
    assert record.error == "empty response"
    assert manuscript.total_issues == 1
    assert manuscript.corrected_issues == 0


@pytest.mark.asyncio
async def test_unlocatable_issue_gets_sentinel():
    service = _service(ScriptedLLM(), _audit("a-1", EYES_DOCUMENT, AuditIssue(description="El ritmo decae", location="general")))
    manuscript = await service.start_correction_run("a-1")

    record = manuscript.pending_corrections[0]
    assert record.original_text == UNLOCATABLE_SENTINEL
    assert record.status == CorrectionStatus.REJECTED


@pytest.mark.asyncio
async def test_generic_repetition_proposes_one_alternative_per_occurrence():
    content = (
        "Capítulo 1\n\nEl corazón le latía con fuerza al verla.\n\n"
        "Capítulo 2\n\nOtra vez el corazón le latía con fuerza en la plaza.\n"
    )
    issue = AuditIssue(description="Usa frases como latía con fuerza, de forma repetitiva en varios capítulos", location="general")
    llm = ScriptedLLM(default="se le aceleraba el pulso")
    service = _service(llm, _audit("a-1", content, issue))

    manuscript = await service.start_correction_run("a-1")

    records = manuscript.pending_corrections
    assert [r.kind for r in records] == [CorrectionKind.REPETITION, CorrectionKind.REPETITION]
    assert [r.location for r in records] == ["Capítulo 1", "Capítulo 2"]
    assert all(r.instruction.startswith("[REPETICIÓN]") for r in records)
    assert [c["temperature"] for c in llm.calls] == [0.7, 0.8]

    result = await service.auto_approve_all(manuscript.id)
    assert result == {"approved": 2, "skipped": 0}
    stored = service.get_manuscript(manuscript.id)
    assert "latía con fuerza" not in stored.corrected_content
    assert stored.corrected_content.count("se le aceleraba el pulso") == 2


@pytest.mark.asyncio
async def test_generic_issue_with_phrase_missing_from_text_still_leaves_a_record():
    issue = AuditIssue(
        description='Usa frases como "voz temblorosa" de forma repetitiva a lo largo de la novela',
        location="general",
    )
    llm = ScriptedLLM()
    service = _service(llm, _audit("a-1", EYES_DOCUMENT, issue))

    manuscript = await service.start_correction_run("a-1")

    assert len(manuscript.pending_corrections) == 1
    record = manuscript.pending_corrections[0]
    assert record.original_text == GENERIC_SENTINEL
    assert record.status == CorrectionStatus.REJECTED
    assert llm.calls == []


@pytest.mark.asyncio
async def test_structural_issue_resolved_by_delete():
    issue = AuditIssue(description="Los capítulos son idénticos", location="Capítulos 2 y 3")
    service = _service(ScriptedLLM(), _audit("a-1", DUPLICATES_DOCUMENT, issue))
    manuscript = await service.start_correction_run("a-1")

    record = manuscript.pending_corrections[0]
    assert record.kind == CorrectionKind.STRUCTURAL
    assert record.status == CorrectionStatus.PENDING
    assert record.original_text == "[ESTRUCTURAL] Los capítulos son idénticos"

    with pytest.raises(InvalidTransitionError):
        await service.approve(manuscript.id, record.id)

    structural = service.get_structural_options(manuscript.id, record.id)
    assert [o.id for o in structural.resolution_options] == [
        "delete-keep-first",
        "delete-keep-last",
        "rewrite-3",
        "merge-2-3",
    ]

    with pytest.raises(ResolutionOptionError) as excinfo:
        await service.apply_structural_resolution(manuscript.id, record.id, "bogus")
    assert "merge-2-3" in excinfo.value.valid_ids

    updated = await service.apply_structural_resolution(manuscript.id, record.id, "delete-keep-first")
    assert updated.corrected_content.count("Llegaron al faro") == 1
    assert "Capítulo 3" not in updated.corrected_content
    applied = updated.pending_corrections[0]
    assert applied.status == CorrectionStatus.APPLIED
    assert applied.corrected_text.startswith("[RESOLUCIÓN ESTRUCTURAL]")

    finalized = await service.finalize(manuscript.id)
    assert finalized.status == ManuscriptStatus.APPROVED


@pytest.mark.asyncio
async def test_auto_resolve_prefers_merge():
    issue = AuditIssue(description="Los capítulos son idénticos", location="Capítulos 2 y 3")
    service = _service(ScriptedLLM(LONG_TEXT), _audit("a-1", DUPLICATES_DOCUMENT, issue))
    manuscript = await service.start_correction_run("a-1")
    correction_id = manuscript.pending_corrections[0].id

    result = await service.auto_resolve_structural(manuscript.id)

    assert result == {"resolved": [correction_id], "failed": {}}
    stored = service.get_manuscript(manuscript.id)
    assert "la marea subía" in stored.corrected_content
    assert "Capítulo 3" not in stored.corrected_content


@pytest.mark.asyncio
async def test_auto_resolve_collects_failures():
    issue = AuditIssue(description="Los capítulos son idénticos", location="Capítulos 2 y 3")
    service = _service(ScriptedLLM("corto"), _audit("a-1", DUPLICATES_DOCUMENT, issue))
    manuscript = await service.start_correction_run("a-1")
    correction_id = manuscript.pending_corrections[0].id

    result = await service.auto_resolve_structural(manuscript.id)

    assert result["resolved"] == []
    assert correction_id in result["failed"]
    assert service.get_manuscript(manuscript.id).corrected_content == DUPLICATES_DOCUMENT


@pytest.mark.asyncio
async def test_concurrent_edit_during_resolution_is_rejected():
    issue = AuditIssue(description="Los capítulos son idénticos", location="Capítulos 2 y 3")

    class EditingLLM:
        """Bumps the stored content version while the merge is being generated."""

        def __init__(self):
            self.service = None
            self.manuscript_id = None

        def chat(self, messages, temperature=None, max_tokens=None):
            self.service.store.save(self.manuscript_id, {"content_version": 99})
            return LONG_TEXT

    llm = EditingLLM()
    service = _service(llm, _audit("a-1", DUPLICATES_DOCUMENT, issue))
    manuscript = await service.start_correction_run("a-1")
    llm.service, llm.manuscript_id = service, manuscript.id

    with pytest.raises(SpanConflictError):
        await service.apply_structural_resolution(manuscript.id, manuscript.pending_corrections[0].id, "merge-2-3")
    stored = service.get_manuscript(manuscript.id)
    assert stored.corrected_content == DUPLICATES_DOCUMENT
    assert stored.pending_corrections[0].status == CorrectionStatus.PENDING


@pytest.mark.asyncio
async def test_resolving_local_record_is_rejected():
    service = _service(ScriptedLLM("Sus ojos verdes brillaban bajo la luz de la luna."), _audit("a-1", EYES_DOCUMENT, EYES_ISSUE))
    manuscript = await service.start_correction_run("a-1")
    with pytest.raises(InvalidTransitionError):
        service.get_structural_options(manuscript.id, manuscript.pending_corrections[0].id)


@pytest.mark.asyncio
async def test_cancelled_run_keeps_partial_state():
    service = _service(ScriptedLLM(), _audit("a-1", EYES_DOCUMENT, EYES_ISSUE))
    cancel = asyncio.Event()
    cancel.set()
    events = []

    manuscript = await service.start_correction_run("a-1", on_progress=events.append, cancel_event=cancel)

    assert manuscript.status == ManuscriptStatus.REVIEW
    assert manuscript.pending_corrections == []
    assert [e.phase for e in events] == ["starting", "cancelled"]
    assert service.cancel_run(manuscript.id) is False


@pytest.mark.asyncio
async def test_unknown_audit():
    service = _service(ScriptedLLM())
    with pytest.raises(AuditNotFoundError):
        await service.start_correction_run("missing")
