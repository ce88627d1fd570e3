import unittest

from models import AuditIssue, ConflictType, StructuralIssueType
from services.structural_classifier import (
    ClassificationRule,
    DuplicateContentRule,
    StructuralClassifier,
    extract_affected_chapters,
    extract_continuity_conflict,
    strip_instruction_tags,
)


CONTENT = (
    "Capítulo 4\n\nEl tren partió al anochecer.\n\nFinal del cuatro.\n\n"
    "Capítulo 5\n\nInicio del cinco.\n\nLa ciudad despertaba.\n"
)


class _BrokenRule(ClassificationRule):
    def __init__(self):
        super().__init__("X", "broken")

    def matches(self, issue):
        raise RuntimeError("bad regex")


class ClassifyTest(unittest.TestCase):
    def setUp(self):
        self.classifier = StructuralClassifier()

    def test_versus_location_is_continuity_even_with_duplicate_wording(self):
        issue = AuditIssue(description="Identical chapters in the middle of the book", location="Capítulo 3 vs Capítulo 7")
        result = self.classifier.classify(issue)
        self.assertIsNotNone(result)
        self.assertEqual(result.type, StructuralIssueType.CONTINUITY_CONFLICT)
        self.assertEqual(result.affected_chapters, [3, 7])
        self.assertEqual(result.conflict.conflict_type, ConflictType.LOGIC)

    def test_abrupt_transition_is_flow_break(self):
        issue = AuditIssue(description="Transición abrupta entre el capítulo 4 y el capítulo 5")
        result = self.classifier.classify(issue, CONTENT)
        self.assertEqual(result.type, StructuralIssueType.NARRATIVE_FLOW_BREAK)
        self.assertEqual(result.affected_chapters, [4, 5])
        self.assertEqual(result.transition.from_chapter, 4)
        self.assertEqual(result.transition.to_chapter, 5)
        self.assertIn("Final del cuatro.", result.transition.ending_context)
        self.assertIn("Inicio del cinco.", result.transition.starting_context)

    def test_identical_chapters_are_duplicates(self):
        issue = AuditIssue(description="Los capítulos son idénticos", location="Capítulos 2 y 5")
        result = self.classifier.classify(issue)
        self.assertEqual(result.type, StructuralIssueType.DUPLICATE_CHAPTERS)
        self.assertEqual(result.affected_chapters, [2, 5])
        self.assertEqual(result.rule, "duplicate_content")

    def test_repeated_scene(self):
        issue = AuditIssue(
            description="La misma escena aparece repetida en ambos capítulos con mismos eventos",
            location="Capítulos 3 y 8",
        )
        result = self.classifier.classify(issue)
        self.assertEqual(result.type, StructuralIssueType.DUPLICATE_SCENES)
        self.assertTrue(result.repeated_scene)
        self.assertEqual(result.affected_chapters, [3, 8])

    def test_dialogue_fix_with_single_chapter(self):
        issue = AuditIssue(
            description="Pedro dice que llegó hace dos semanas pero antes se indicó otra fecha",
            location="Capítulo 6",
        )
        result = self.classifier.classify(issue)
        self.assertEqual(result.type, StructuralIssueType.REDUNDANT_CONTENT)
        self.assertTrue(result.dialogue_fix)
        self.assertEqual(result.affected_chapters, [6])

    def test_attribute_contradiction_is_local(self):
        issue = AuditIssue(
            description='Los ojos de Elena son "verdes" según su ficha, pero en el capítulo 2 aparecen "azules".',
            location="Capítulo 2",
        )
        self.assertIsNone(self.classifier.classify(issue))
        self.assertFalse(self.classifier.is_structural(issue))

    def test_tags_are_ignored(self):
        issue = AuditIssue(description="[ESTRUCTURAL] Los capítulos son idénticos", location="Capítulos 2 y 5")
        self.assertEqual(self.classifier.classify(issue).type, StructuralIssueType.DUPLICATE_CHAPTERS)

    def test_failing_rule_is_skipped(self):
        classifier = StructuralClassifier([_BrokenRule(), DuplicateContentRule()])
        issue = AuditIssue(description="Los capítulos son idénticos", location="Capítulos 2 y 5")
        self.assertEqual(classifier.classify(issue).type, StructuralIssueType.DUPLICATE_CHAPTERS)


class HelpersTest(unittest.TestCase):
    def test_strip_instruction_tags(self):
        self.assertEqual(strip_instruction_tags("[ESTRUCTURAL] [REPETICIÓN] texto"), "texto")
        self.assertEqual(strip_instruction_tags("sin etiquetas"), "sin etiquetas")

    def test_bold_facts_and_temporal_type(self):
        issue = AuditIssue(
            description='**Capítulo 3**: "Era de noche" y **Capítulo 7**: "Era mediodía". Existe una contradicción.'
        )
        conflict = extract_continuity_conflict(issue)
        self.assertEqual((conflict.chapter_a, conflict.chapter_b), (3, 7))
        self.assertEqual((conflict.fact_a, conflict.fact_b), ("Era de noche", "Era mediodía"))
        self.assertEqual(conflict.conflict_type, ConflictType.TEMPORAL)

    def test_affected_chapters_from_description_lists(self):
        self.assertEqual(extract_affected_chapters("", "Se repite en 4, 9 y 12"), [4, 9, 12])
        self.assertEqual(extract_affected_chapters("Capítulo 2, escena 3", ""), [2, 3])


if __name__ == "__main__":
    unittest.main()
