"""Attribute-consistency search: find the sentence that contradicts a character's canonical trait."""

from __future__ import annotations

import re
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from core.llm_client import parse_json_object
from core.manuscript_text import extract_chapter_numbers, find_chapter, location_chapter
from models import AuditIssue, Confidence
from services.span_locator import (
    IssueTargetStrategy,
    SpanLocator,
    SpanMatch,
    quoted_fragments,
    sentence_spans,
)
from utils.text_cleaner import same_root, strip_accents, tokenize, word_root

logger = logging.getLogger("galley.attribute_search")

# Words that name an attribute inside prose.
ATTRIBUTE_WORDS: Dict[str, Tuple[str, ...]] = {
    "eyes": ("ojos", "ojo", "mirada", "iris", "pupilas", "eyes", "eye", "gaze"),
    "hair": ("cabello", "pelo", "melena", "rizos", "trenza", "hair", "curls", "braid"),
    "skin": ("piel", "tez", "skin", "complexion"),
    "height": ("estatura", "altura", "alto", "alta", "bajo", "baja", "height", "tall", "short"),
    "age": ("edad", "años", "age", "years"),
}

# Phrases in an issue description that identify which attribute is in conflict.
_ATTRIBUTE_NAME_PATTERNS: Sequence[Tuple[str, re.Pattern]] = (
    ("eyes", re.compile(r"\bojos\b|\bmirada\b|\beye(?:s| colou?r)?\b|\biris\b", re.IGNORECASE)),
    ("hair", re.compile(r"\bcabello\b|\bpelo\b|\bmelena\b|\bhair\b", re.IGNORECASE)),
    ("skin", re.compile(r"\bpiel\b|\btez\b|\bskin\b", re.IGNORECASE)),
    ("height", re.compile(r"\bestatura\b|\baltura\b|\bheight\b", re.IGNORECASE)),
    ("age", re.compile(r"\bedad\b|\bage\b", re.IGNORECASE)),
)

VALUE_WORDS: Tuple[str, ...] = (
    "azul", "verde", "marrón", "castaño", "negro", "gris", "miel", "ámbar",
    "avellana", "rubio", "pelirrojo", "rojo", "blanco", "canoso", "moreno",
    "pálido", "oscuro", "claro", "dorado", "plateado", "violeta",
    "blue", "green", "brown", "black", "grey", "gray", "hazel", "amber",
    "blond", "blonde", "red", "white", "auburn", "dark", "pale", "fair",
)
_VALUE_ROOTS = {word_root(word) for word in VALUE_WORDS}

_NAME = r"[A-ZÁÉÍÓÚÑ][a-záéíóúñü]+(?:\s+[A-ZÁÉÍÓÚÑ][a-záéíóúñü]+)?"
_CHARACTER_PATTERNS: Sequence[re.Pattern] = (
    re.compile(
        r"(?:ojos|mirada|cabello|pelo|melena|piel|tez|estatura|altura|edad)\s+(?:de|del personaje)\s+(?P<name>"
        + _NAME
        + r")"
    ),
    re.compile(r"(?P<name>" + _NAME + r")'s\s+(?:eyes?|eye colou?r|hair|skin|height|age)", re.IGNORECASE),
    re.compile(r"(?:personaje|character)\s+(?P<name>" + _NAME + r")"),
)

_AI_CHAPTER_LIMIT = 12000

ATTRIBUTE_QUERY_PROMPT = """\
Eres un asistente de verificación de continuidad. En el siguiente capítulo, localiza la frase exacta
donde se describe {attribute_label} de {character} de forma distinta al valor canónico "{expected}".

CAPÍTULO:
{chapter_text}

Responde SOLO con JSON, sin explicaciones:
{{"found": true, "sentence": "frase exacta copiada del capítulo", "incorrectValue": "valor incorrecto"}}
o, si no existe tal frase:
{{"found": false}}
"""

_ATTRIBUTE_LABELS = {
    "eyes": "el color de ojos",
    "hair": "el cabello",
    "skin": "la piel",
    "height": "la estatura",
    "age": "la edad",
}


@dataclass
class AttributeIssue:
    character: str
    attribute: str
    expected_value: str
    incorrect_value: str
    chapter: Optional[int] = None


def detect_attribute(text: str) -> Optional[str]:
    for attribute, pattern in _ATTRIBUTE_NAME_PATTERNS:
        if pattern.search(text or ""):
            return attribute
    return None


def _normalize_attribute(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    lowered = strip_accents(value.lower())
    for attribute, words in ATTRIBUTE_WORDS.items():
        if lowered == attribute or any(strip_accents(w) in lowered for w in words):
            return attribute
    return detect_attribute(value)


def _detect_character(description: str) -> str:
    for pattern in _CHARACTER_PATTERNS:
        match = pattern.search(description or "")
        if match:
            return match.group("name").strip()
    return ""


def parse_attribute_issue(issue: AuditIssue) -> Optional[AttributeIssue]:
    """Mine an attribute contradiction from an issue, or return None.

    Structured hints on the issue win over values mined from the description.
    The first quoted value is taken as the canonical one and the second as the
    value the manuscript uses.
    """
    attribute = _normalize_attribute(issue.attribute) or detect_attribute(issue.description)
    if attribute is None:
        return None

    quoted = quoted_fragments(issue.description, min_length=1)
    expected = (issue.expected_value or "").strip()
    incorrect = ""
    if expected:
        incorrect = next((q for q in quoted if not same_root(q, expected)), "")
    elif len(quoted) >= 2:
        expected, incorrect = quoted[0], quoted[1]
    elif len(quoted) == 1:
        expected = quoted[0]

    if not expected and not incorrect:
        return None

    chapter = location_chapter(issue.location)
    if chapter is None:
        numbers = extract_chapter_numbers(issue.description)
        chapter = numbers[0] if numbers else None

    return AttributeIssue(
        character=(issue.character or "").strip() or _detect_character(issue.description),
        attribute=attribute,
        expected_value=expected,
        incorrect_value=incorrect,
        chapter=chapter,
    )


def _has_attribute_word(words: List[str], attribute: str) -> bool:
    vocabulary = {strip_accents(w) for w in ATTRIBUTE_WORDS.get(attribute, ())}
    return any(strip_accents(w.lower()) in vocabulary for w in words)


def _contains_root(words: List[str], value: str) -> bool:
    targets = [word_root(part) for part in tokenize(value)]
    if not targets:
        return False
    roots = {word_root(w) for w in words}
    return all(target in roots for target in targets)


def _scope(document: str, attr_issue: AttributeIssue) -> Tuple[int, int]:
    if attr_issue.chapter is not None:
        block = find_chapter(document, attr_issue.chapter)
        if block is not None:
            return block.header_end, block.end
    return 0, len(document)


class AttributePatternSearch:
    """Sentences pairing an attribute word with the incorrect value."""

    name = "attribute_pattern"

    def find(self, document: str, attr_issue: AttributeIssue) -> Optional[SpanMatch]:
        if not attr_issue.incorrect_value:
            return None
        start, end = _scope(document, attr_issue)
        for s_start, s_end, sentence in sentence_spans(document[start:end]):
            words = tokenize(sentence)
            if _has_attribute_word(words, attr_issue.attribute) and _contains_root(words, attr_issue.incorrect_value):
                return _span(sentence, start + s_start, start + s_end, self.name, Confidence.MEDIUM, attr_issue)
        return None


class CharacterMismatchSearch:
    """Sentences about the character whose attribute value differs from the canonical one."""

    name = "attribute_mismatch"

    def find(self, document: str, attr_issue: AttributeIssue) -> Optional[SpanMatch]:
        if not attr_issue.character or not attr_issue.expected_value:
            return None
        first_name = attr_issue.character.split()[0].lower()
        start, end = _scope(document, attr_issue)
        for s_start, s_end, sentence in sentence_spans(document[start:end]):
            words = tokenize(sentence)
            if first_name not in {w.lower() for w in words}:
                continue
            if not _has_attribute_word(words, attr_issue.attribute):
                continue
            values = [w for w in words if word_root(w) in _VALUE_ROOTS]
            if values and not any(same_root(v, attr_issue.expected_value) for v in values):
                return _span(sentence, start + s_start, start + s_end, self.name, Confidence.MEDIUM, attr_issue)
        return None


class AIAttributeSearch:
    """Last resort: ask the generative service, then verify its answer against the chapter."""

    name = "attribute_ai"

    def __init__(self, llm_client, locator: Optional[SpanLocator] = None, max_tokens: int = 500):
        self.llm_client = llm_client
        self.locator = locator or SpanLocator()
        self.max_tokens = max_tokens

    def find(self, document: str, attr_issue: AttributeIssue) -> Optional[SpanMatch]:
        if self.llm_client is None:
            return None
        start, end = _scope(document, attr_issue)
        chapter_text = document[start:end]
        prompt = ATTRIBUTE_QUERY_PROMPT.format(
            attribute_label=_ATTRIBUTE_LABELS.get(attr_issue.attribute, attr_issue.attribute),
            character=attr_issue.character or "el personaje",
            expected=attr_issue.expected_value,
            chapter_text=chapter_text[:_AI_CHAPTER_LIMIT],
        )
        raw = self.llm_client.chat(
            [{"role": "user", "content": prompt}],
            temperature=0.1,
            max_tokens=self.max_tokens,
        )
        data = parse_json_object(raw)
        if not data or data.get("found") is not True:
            return None
        sentence = str(data.get("sentence") or "").strip()
        if not sentence:
            return None
        match = self.locator.locate(chapter_text, sentence)
        if match is None:
            logger.info("attribute ai answer not found in chapter chapter=%s", attr_issue.chapter)
            return None
        return _span(match.text, start + match.start, start + match.end, self.name, Confidence.LOW, attr_issue)


def _span(
    text: str,
    start: int,
    end: int,
    strategy: str,
    confidence: Confidence,
    attr_issue: AttributeIssue,
) -> SpanMatch:
    return SpanMatch(
        text=text,
        start=start,
        end=end,
        strategy=strategy,
        confidence=confidence,
        chapter_number=attr_issue.chapter,
    )


class AttributeConsistencyStrategy(IssueTargetStrategy):
    """Issue-target strategy for character attribute contradictions."""

    name = "attribute"

    def __init__(self, llm_client=None, locator: Optional[SpanLocator] = None):
        self.searches = [
            AttributePatternSearch(),
            CharacterMismatchSearch(),
            AIAttributeSearch(llm_client, locator),
        ]

    def find(self, document: str, issue: AuditIssue) -> Optional[SpanMatch]:
        attr_issue = parse_attribute_issue(issue)
        if attr_issue is None:
            return None
        for search in self.searches:
            match = search.find(document, attr_issue)
            if match is not None:
                logger.info(
                    "attribute target found strategy=%s attribute=%s character=%s chapter=%s",
                    search.name,
                    attr_issue.attribute,
                    attr_issue.character or "-",
                    attr_issue.chapter,
                )
                return match
        return None
