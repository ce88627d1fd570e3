import unittest

from core.llm_client import LLMError
from models import AuditIssue, Confidence
from services.attribute_search import (
    AIAttributeSearch,
    AttributeConsistencyStrategy,
    AttributeIssue,
    AttributePatternSearch,
    CharacterMismatchSearch,
    detect_attribute,
    parse_attribute_issue,
)
from services.span_locator import IssueTargetLocator, SentenceScoringStrategy


DOCUMENT = (
    "Capítulo 1\n\n"
    "Elena tenía los ojos verdes como el mar de invierno. Caminó hacia la puerta.\n\n"
    "Capítulo 2\n\n"
    "Elena miró por la ventana del salón. Sus ojos azules brillaban bajo la luna.\n"
)


class ScriptedLLM:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def chat(self, messages, temperature=None, max_tokens=None):
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        response = self.responses.pop(0) if self.responses else ""
        if isinstance(response, Exception):
            raise response
        return response


def _eye_issue(**kwargs) -> AuditIssue:
    data = {
        "description": 'Los ojos de Elena son "verdes" según su ficha, pero en el capítulo 2 aparecen "azules".',
        "location": "Capítulo 2",
    }
    data.update(kwargs)
    return AuditIssue(**data)


class ParseAttributeIssueTest(unittest.TestCase):
    def test_values_mined_from_quotes(self):
        parsed = parse_attribute_issue(_eye_issue())
        self.assertIsNotNone(parsed)
        self.assertEqual(parsed.attribute, "eyes")
        self.assertEqual(parsed.character, "Elena")
        self.assertEqual(parsed.expected_value, "verdes")
        self.assertEqual(parsed.incorrect_value, "azules")
        self.assertEqual(parsed.chapter, 2)

    def test_structured_hints_win(self):
        issue = AuditIssue(
            description="Color de ojos incorrecto",
            location="Capítulo 2",
            character="Elena",
            attribute="eye color",
            expected_value="verdes",
        )
        parsed = parse_attribute_issue(issue)
        self.assertEqual(parsed.attribute, "eyes")
        self.assertEqual(parsed.character, "Elena")
        self.assertEqual(parsed.expected_value, "verdes")
        self.assertEqual(parsed.incorrect_value, "")

    def test_non_attribute_issue(self):
        self.assertIsNone(parse_attribute_issue(AuditIssue(description="El ritmo es lento", location="Capítulo 1")))
        self.assertIsNone(detect_attribute("El ritmo es lento"))
        self.assertEqual(detect_attribute("Her hair changes colour"), "hair")


class AttributeSearchesTest(unittest.TestCase):
    def test_pattern_search_finds_incorrect_value_sentence(self):
        attr = AttributeIssue(character="Elena", attribute="eyes", expected_value="verdes", incorrect_value="azul", chapter=2)
        match = AttributePatternSearch().find(DOCUMENT, attr)
        self.assertIsNotNone(match)
        self.assertEqual(match.text, "Sus ojos azules brillaban bajo la luna.")
        self.assertEqual(match.confidence, Confidence.MEDIUM)
        self.assertEqual(DOCUMENT[match.start:match.end], match.text)

    def test_pattern_search_stays_in_named_chapter(self):
        attr = AttributeIssue(character="Elena", attribute="eyes", expected_value="azules", incorrect_value="verdes", chapter=2)
        self.assertIsNone(AttributePatternSearch().find(DOCUMENT, attr))

    def test_character_mismatch_search(self):
        document = "Capítulo 3\n\nElena cerró los ojos azules un instante. Nadie habló.\n"
        attr = AttributeIssue(character="Elena", attribute="eyes", expected_value="verdes", incorrect_value="", chapter=3)
        match = CharacterMismatchSearch().find(document, attr)
        self.assertIsNotNone(match)
        self.assertEqual(match.strategy, "attribute_mismatch")
        self.assertEqual(match.text, "Elena cerró los ojos azules un instante.")

    def test_character_mismatch_ignores_matching_value(self):
        document = "Capítulo 3\n\nElena cerró los ojos verdes un instante.\n"
        attr = AttributeIssue(character="Elena", attribute="eyes", expected_value="verde", incorrect_value="", chapter=3)
        self.assertIsNone(CharacterMismatchSearch().find(document, attr))

    def test_ai_search_validates_answer_against_chapter(self):
        llm = ScriptedLLM(
            '```json\n{"found": true, "sentence": "Sus ojos azules brillaban bajo la luna.", "incorrectValue": "azules"}\n```'
        )
        attr = AttributeIssue(character="Elena", attribute="eyes", expected_value="verdes", incorrect_value="", chapter=2)
        match = AIAttributeSearch(llm).find(DOCUMENT, attr)
        self.assertIsNotNone(match)
        self.assertEqual(match.confidence, Confidence.LOW)
        self.assertEqual(match.strategy, "attribute_ai")
        self.assertEqual(DOCUMENT[match.start:match.end], "Sus ojos azules brillaban bajo la luna.")
        self.assertEqual(llm.calls[0]["temperature"], 0.1)

    def test_ai_search_rejects_invented_sentence(self):
        llm = ScriptedLLM('{"found": true, "sentence": "Tenía una mirada de color celeste intenso y profundo."}')
        attr = AttributeIssue(character="Elena", attribute="eyes", expected_value="verdes", incorrect_value="", chapter=2)
        self.assertIsNone(AIAttributeSearch(llm).find(DOCUMENT, attr))

    def test_ai_search_not_found(self):
        attr = AttributeIssue(character="Elena", attribute="eyes", expected_value="verdes", incorrect_value="", chapter=2)
        self.assertIsNone(AIAttributeSearch(ScriptedLLM('{"found": false}')).find(DOCUMENT, attr))
        self.assertIsNone(AIAttributeSearch(ScriptedLLM("no json here")).find(DOCUMENT, attr))
        self.assertIsNone(AIAttributeSearch(None).find(DOCUMENT, attr))


class AttributeConsistencyStrategyTest(unittest.TestCase):
    def test_pattern_hit_skips_generative_service(self):
        llm = ScriptedLLM()
        match = AttributeConsistencyStrategy(llm).find(DOCUMENT, _eye_issue())
        self.assertIsNotNone(match)
        self.assertEqual(match.chapter_number, 2)
        self.assertIn("azules", match.text)
        self.assertEqual(llm.calls, [])

    def test_service_failure_lets_the_chain_continue(self):
        issue = _eye_issue(
            description="Los ojos de Elena cambian de color sin explicación en la ventana del salón",
            expected_value="verdes",
            character="Elena",
        )
        # The only eye sentence agrees with the canonical value, so the AI tier is reached.
        document = (
            "Capítulo 2\n\n"
            "Elena miró por la ventana del salón con calma. Sus ojos verdes brillaban bajo la luna.\n"
        )
        llm = ScriptedLLM(LLMError("rate limited"))
        locator = IssueTargetLocator([AttributeConsistencyStrategy(llm), SentenceScoringStrategy()])
        match = locator.locate(document, issue)
        self.assertEqual(len(llm.calls), 1)
        self.assertIsNotNone(match)
        self.assertEqual(match.strategy, "sentence")


if __name__ == "__main__":
    unittest.main()
