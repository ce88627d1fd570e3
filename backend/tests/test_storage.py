"""Tests for the sqlite manuscript store."""

import tempfile
import time
import unittest
from pathlib import Path

from models import (
    AgentReport,
    AuditIssue,
    CorrectedManuscript,
    CorrectionRecord,
    ManuscriptAudit,
    ManuscriptStatus,
)
from services.errors import AuditNotFoundError, ManuscriptNotFoundError
from storage import ManuscriptStore


def _make_store() -> ManuscriptStore:
    tmp = tempfile.mkdtemp()
    return ManuscriptStore(str(Path(tmp) / "nested" / "galley.db"))


def _make_audit(audit_id="audit-1", **kwargs) -> ManuscriptAudit:
    return ManuscriptAudit(
        id=audit_id,
        project_id="proj-1",
        novel_content="Capítulo 1\n\nElena tenía los ojos azules.\n",
        reports=[
            AgentReport(
                agent_type="continuity",
                issues=[AuditIssue(description="Los ojos de Elena cambian", location="Capítulo 1")],
            )
        ],
        **kwargs,
    )


class TestAudits(unittest.TestCase):
    def setUp(self):
        self.store = _make_store()

    def test_add_and_get(self):
        self.store.add_audit(_make_audit())
        fetched = self.store.get_audit("audit-1")
        self.assertEqual(fetched.project_id, "proj-1")
        self.assertEqual(fetched.all_issues()[0].agent_type, "continuity")

    def test_missing_audit(self):
        with self.assertRaises(AuditNotFoundError):
            self.store.get_audit("nope")


class TestManuscripts(unittest.TestCase):
    def setUp(self):
        self.store = _make_store()
        self.audit = self.store.add_audit(_make_audit())

    def test_create_starts_from_audit_content(self):
        manuscript = self.store.create_manuscript(self.audit, manuscript_id="m-1")
        self.assertEqual(manuscript.status, ManuscriptStatus.CORRECTING)
        self.assertEqual(manuscript.original_content, manuscript.corrected_content)
        loaded = self.store.load("m-1")
        self.assertEqual(loaded.audit_id, "audit-1")
        self.assertEqual(loaded.corrected_content, self.audit.novel_content)

    def test_generated_id(self):
        manuscript = self.store.create_manuscript(self.audit)
        self.assertTrue(manuscript.id)
        self.assertEqual(self.store.load(manuscript.id).id, manuscript.id)

    def test_missing_manuscript(self):
        with self.assertRaises(ManuscriptNotFoundError):
            self.store.load("nope")
        with self.assertRaises(ManuscriptNotFoundError):
            self.store.save("nope", {"status": ManuscriptStatus.REVIEW})

    def test_partial_update_merges_and_bumps_updated_at(self):
        created = self.store.create_manuscript(self.audit, manuscript_id="m-1")
        record = CorrectionRecord(id="c-1", issue_id="issue-0", original_text="azules", corrected_text="verdes")
        saved = self.store.save(
            "m-1",
            {"status": ManuscriptStatus.REVIEW, "pending_corrections": [record.model_dump()], "total_issues": 1},
        )
        self.assertGreaterEqual(saved.updated_at, created.updated_at)

        loaded = self.store.load("m-1")
        self.assertEqual(loaded.status, ManuscriptStatus.REVIEW)
        self.assertEqual(loaded.total_issues, 1)
        self.assertEqual(loaded.pending_corrections[0].corrected_text, "verdes")
        self.assertEqual(loaded.original_content, self.audit.novel_content)

    def test_save_whole_model(self):
        manuscript = self.store.create_manuscript(self.audit, manuscript_id="m-1")
        manuscript.corrected_content = "Capítulo 1\n\nElena tenía los ojos verdes.\n"
        manuscript.content_version = 1
        self.store.save("m-1", manuscript)
        loaded = self.store.load("m-1")
        self.assertEqual(loaded.content_version, 1)
        self.assertIn("verdes", loaded.corrected_content)

    def test_save_rejects_id_mismatch(self):
        self.store.create_manuscript(self.audit, manuscript_id="m-1")
        other = CorrectedManuscript(id="m-2", original_content="x", corrected_content="x")
        with self.assertRaises(ValueError):
            self.store.save("m-1", other)

    def test_list_newest_first_and_filter_by_audit(self):
        other_audit = self.store.add_audit(_make_audit("audit-2"))
        self.store.create_manuscript(self.audit, manuscript_id="m-1")
        time.sleep(0.01)
        self.store.create_manuscript(other_audit, manuscript_id="m-2")
        time.sleep(0.01)
        self.store.create_manuscript(self.audit, manuscript_id="m-3")

        self.assertEqual([m.id for m in self.store.list_manuscripts()], ["m-3", "m-2", "m-1"])
        self.assertEqual([m.id for m in self.store.list_manuscripts(audit_id="audit-1")], ["m-3", "m-1"])
        self.assertEqual(self.store.list_manuscripts(audit_id="missing"), [])


if __name__ == "__main__":
    unittest.main()
