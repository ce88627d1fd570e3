import re
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from core.manuscript_text import (
    MAX_CHAPTER_NUMBER,
    chapter_head,
    chapter_tail,
    extract_chapter_numbers,
    location_chapter,
)
from models import AuditIssue, ConflictType, ContinuityConflict, StructuralIssueType, TransitionContext
from services.span_locator import quoted_fragments

logger = logging.getLogger("galley.classifier")

_CHAPTER_WORD = r"(?:cap[íi]tulo|chapter|cap\.)"
_VS_RE = re.compile(
    _CHAPTER_WORD + r"\s*(\d+)\s*(?:vs\.?|versus)\s*" + _CHAPTER_WORD + r"?\s*(\d+)",
    re.IGNORECASE,
)
_TAG_RE = re.compile(r"^\s*(?:\[[^\]\n]{2,40}\]\s*)+")

_CONFLICT_PATTERNS = [
    re.compile(r"sin embargo,?\s*(?:en|el)\s*cap[íi]tulo", re.IGNORECASE),
    re.compile(r"inconsistencia\s*(?:temporal|lógica|de continuidad)", re.IGNORECASE),
    re.compile(r"contradicci[óo]n\s*(?:en|entre)", re.IGNORECASE),
    re.compile(r"existe\s*una?\s*contradicci[óo]n", re.IGNORECASE),
    re.compile(r"en\s*el\s*cap[íi]tulo\s*\d+.*pero\s*(?:en\s*el\s*)?cap[íi]tulo\s*\d+", re.IGNORECASE),
    re.compile(r"genera\s*una\s*inconsistencia", re.IGNORECASE),
    re.compile(r"cap[íi]tulo\s*\d+.*sin embargo.*cap[íi]tulo\s*\d+", re.IGNORECASE),
    re.compile(r"however,?\s*in\s*chapter", re.IGNORECASE),
    re.compile(r"this\s*creates\s*an?\s*inconsistency", re.IGNORECASE),
    re.compile(r"contradiction\s*(?:in|between)", re.IGNORECASE),
    re.compile(r"in\s*chapter\s*\d+.*but\s*(?:in\s*)?chapter\s*\d+", re.IGNORECASE),
]

_FLOW_PATTERNS = [
    re.compile(r"fluidez", re.IGNORECASE),
    re.compile(r"interrup(?:ción|e)\s*(?:abrupta|de\s*la\s*narrativa)", re.IGNORECASE),
    re.compile(r"ruptura\s*(?:de\s*)?narrativa", re.IGNORECASE),
    re.compile(r"transici[óo]n\s*(?:abrupta|brusca|inexistente)", re.IGNORECASE),
    re.compile(r"no\s*hay\s*(?:una\s*)?transici[óo]n", re.IGNORECASE),
    re.compile(r"sin\s*transici[óo]n", re.IGNORECASE),
    re.compile(r"salto\s*(?:abrupto|brusco|narrativo)", re.IGNORECASE),
    re.compile(r"cambio\s*significativo\s*de\s*(?:ubicación|escena)", re.IGNORECASE),
    re.compile(r"no\s*se\s*explica\s*cómo", re.IGNORECASE),
    re.compile(r"termina\s*con.*comienza\s*con", re.IGNORECASE),
    re.compile(r"narrative\s*flow", re.IGNORECASE),
    re.compile(r"abrupt\s*(?:transition|jump|shift)", re.IGNORECASE),
    re.compile(r"no\s*transition\s*(?:exists)?", re.IGNORECASE),
    re.compile(r"ends\s*with.*(?:starts|begins)\s*with", re.IGNORECASE),
]

_DUPLICATE_PATTERNS = [
    re.compile(r"cap[íi]tulos?\s+(?:son\s+)?id[ée]nticos", re.IGNORECASE),
    re.compile(r"repetici[óo]n\s+literal", re.IGNORECASE),
    re.compile(r"mismos?\s+eventos?", re.IGNORECASE),
    re.compile(r"contenido\s+duplicado", re.IGNORECASE),
    re.compile(r"escenas?\s+duplicadas?", re.IGNORECASE),
    re.compile(r"cap[íi]tulos?\s+duplicados", re.IGNORECASE),
    re.compile(r"exactamente\s+los\s+mismos", re.IGNORECASE),
    re.compile(r"narran\s+lo\s+mismo", re.IGNORECASE),
    re.compile(r"repiten?\s+(?:el|los)\s+mismo", re.IGNORECASE),
    re.compile(r"se\s+repite\s+en\s+\w+\s+cap[íi]tulos", re.IGNORECASE),
    re.compile(r"sensaci[óo]n\s+de\s*repetici[óo]n", re.IGNORECASE),
    re.compile(r"identical\s+chapters|chapters\s+(?:are\s+)?identical", re.IGNORECASE),
    re.compile(r"literal\s+repetition", re.IGNORECASE),
    re.compile(r"same\s+events?", re.IGNORECASE),
    re.compile(r"duplicated?\s+(?:content|chapters?|scenes?)", re.IGNORECASE),
]

_REDUNDANT_PATTERNS = [
    re.compile(r"interacci[óo]n\s+redundante", re.IGNORECASE),
    re.compile(r"redundante\s+con", re.IGNORECASE),
    re.compile(r"el\s+mismo\s+\w+\s+(?:para|que)", re.IGNORECASE),
    re.compile(r"primera\s+parte.*segunda\s+parte", re.IGNORECASE),
    re.compile(r"mismo\s+fragmento", re.IGNORECASE),
    re.compile(r"entrega.*el\s+mismo", re.IGNORECASE),
    re.compile(r"redundant\s+(?:with|interaction)", re.IGNORECASE),
    re.compile(r"the\s+same\s+\w+\s+(?:for|as)", re.IGNORECASE),
]

_REPEATED_SCENE_PATTERNS = [
    re.compile(r"se\s+repite\s*(?:con|en)", re.IGNORECASE),
    re.compile(r"repeti(?:ción|tiv[ao])", re.IGNORECASE),
    re.compile(r"misma\s*(?:escena|descripción|acción)", re.IGNORECASE),
    re.compile(r"muy\s*similar(?:es)?", re.IGNORECASE),
    re.compile(r"sensación\s*de\s*repetición", re.IGNORECASE),
    re.compile(r"repeated\s+scene|scene\s+(?:is\s+)?repeated|same\s+scene", re.IGNORECASE),
]

_DIALOGUE_PATTERNS = [
    re.compile(r"fecha.*inconsistente", re.IGNORECASE),
    re.compile(r"(?:tiempo|cronología).*inconsistente", re.IGNORECASE),
    re.compile(r"afirma\s+que.*sin\s+embargo", re.IGNORECASE),
    re.compile(r"dice\s+que.*pero", re.IGNORECASE),
    re.compile(r"menciona.*contradice", re.IGNORECASE),
    re.compile(r"hace\s+(?:dos|tres|cuatro|cinco|\d+)\s+(?:semanas?|días?|meses?)", re.IGNORECASE),
    re.compile(r"contraste\s+narrativo", re.IGNORECASE),
    re.compile(r"(?:date|timeline)\s+(?:is\s+)?inconsistent", re.IGNORECASE),
    re.compile(r"says\s+that.*but", re.IGNORECASE),
]

_CONFLICT_VOCABULARY = [
    (ConflictType.TEMPORAL, ("hora", "tiempo", "22:", "amanecer", "noche", "día", "fecha", "semana", "time", "night", "date", "week")),
    (ConflictType.SPATIAL, ("lugar", "ubicación", "casa", "despacho", "oficina", "ciudad", "place", "location", "house", "office", "city")),
    (ConflictType.CHARACTER, ("personaje", "nombre", "cabello", "ojos", "aspecto", "character", "name", "hair", "eyes")),
    (ConflictType.OBJECT, ("objeto", "arma", "coche", "documento", "object", "weapon", "car", "document")),
]

_BOLD_FACT_RE = re.compile(r"\*\*(?:cap[íi]tulo|chapter)\s*\d+\*\*[:\s]*[\"'“]([^\"'”]+)[\"'”]", re.IGNORECASE)
_INLINE_FACT_RE = re.compile(r"en\s*el\s*cap[íi]tulo\s*\d+[,\s]+([^.]+)", re.IGNORECASE)
_NUMBER_LIST_RES = [
    re.compile(r"(\d+)\s*,\s*(\d+)\s*(?:y|e|and)\s*(\d+)", re.IGNORECASE),
    re.compile(r"(\d+)\s*(?:y|e|and)\s*(\d+)", re.IGNORECASE),
]
_LOCATION_SPLIT_RE = re.compile(r",|\by\b|\band\b", re.IGNORECASE)


@dataclass
class Classification:
    """Outcome of classifying one issue as structural."""

    type: StructuralIssueType
    affected_chapters: List[int]
    rule: str
    conflict: Optional[ContinuityConflict] = None
    transition: Optional[TransitionContext] = None
    repeated_scene: bool = False
    redundant_interaction: bool = False
    dialogue_fix: bool = False


def strip_instruction_tags(text: str) -> str:
    """Drop leading ``[TAG]`` markers such as ``[ESTRUCTURAL]``."""
    return _TAG_RE.sub("", text or "").strip()


def _any(patterns: Sequence[re.Pattern], text: str) -> bool:
    return any(p.search(text or "") for p in patterns)


def _full_text(issue: AuditIssue) -> str:
    return f"{issue.location or ''} {issue.description or ''}"


def _vs_chapters(issue: AuditIssue) -> Optional[List[int]]:
    match = _VS_RE.search(issue.location or "") or _VS_RE.search(issue.description or "")
    if not match:
        return None
    return [int(match.group(1)), int(match.group(2))]


def has_flow_vocabulary(text: str) -> bool:
    return _any(_FLOW_PATTERNS, text) or "transición" in (text or "").lower()


def detect_conflict_type(description: str) -> ConflictType:
    lowered = (description or "").lower()
    for conflict_type, words in _CONFLICT_VOCABULARY:
        if any(word in lowered for word in words):
            return conflict_type
    return ConflictType.LOGIC


def detect_duplicate_type(description: str) -> StructuralIssueType:
    lowered = (description or "").lower()
    mentions_chapter = "capítulo" in lowered or "capitulo" in lowered or "chapter" in lowered
    if mentions_chapter and any(w in lowered for w in ("idéntic", "identic", "duplic")):
        return StructuralIssueType.DUPLICATE_CHAPTERS
    if ("escena" in lowered or "scene" in lowered) and any(w in lowered for w in ("duplic", "repet")):
        return StructuralIssueType.DUPLICATE_SCENES
    return StructuralIssueType.REDUNDANT_CONTENT


def _valid(number: int) -> bool:
    return 0 < number < MAX_CHAPTER_NUMBER


def extract_affected_chapters(location: str, description: str) -> List[int]:
    """Chapters named by an issue: location first, then numeric lists in the description."""
    chapters: List[int] = [n for n in extract_chapter_numbers(location) if _valid(n)]
    if location and len(chapters) < 2 and re.search(r"\d", location):
        for part in _LOCATION_SPLIT_RE.split(location):
            for raw in re.findall(r"\d+", part):
                value = int(raw)
                if _valid(value) and value not in chapters:
                    chapters.append(value)

    if len(chapters) < 2:
        for value in extract_chapter_numbers(description):
            if _valid(value) and value not in chapters:
                chapters.append(value)
        for pattern in _NUMBER_LIST_RES:
            for match in pattern.finditer(description or ""):
                for raw in match.groups():
                    value = int(raw)
                    if _valid(value) and value not in chapters:
                        chapters.append(value)
    return sorted(chapters)


def extract_continuity_conflict(issue: AuditIssue) -> Optional[ContinuityConflict]:
    chapters = _vs_chapters(issue)
    if chapters is None:
        mentioned = extract_chapter_numbers(issue.description)
        if len(mentioned) < 2:
            return None
        chapters = mentioned[:2]

    facts = _BOLD_FACT_RE.findall(issue.description or "")
    if len(facts) < 2:
        quoted = quoted_fragments(issue.description, min_length=3)
        facts = (facts + [q for q in quoted if q not in facts])[:2]
    if not facts:
        inline = _INLINE_FACT_RE.search(issue.description or "")
        facts = [inline.group(1).strip()] if inline else []

    return ContinuityConflict(
        chapter_a=chapters[0],
        chapter_b=chapters[1],
        fact_a=facts[0] if facts else "",
        fact_b=facts[1] if len(facts) > 1 else "",
        conflict_type=detect_conflict_type(issue.description),
    )


def extract_transition_context(issue: AuditIssue, content: str) -> Optional[TransitionContext]:
    chapters = _vs_chapters(issue)
    if chapters is None:
        mentioned = extract_chapter_numbers(_full_text(issue))
        if len(mentioned) < 2:
            return None
        chapters = mentioned[:2]
    from_chapter, to_chapter = sorted(chapters[:2])
    return TransitionContext(
        from_chapter=from_chapter,
        to_chapter=to_chapter,
        ending_context=chapter_tail(content, from_chapter) if content else "",
        starting_context=chapter_head(content, to_chapter) if content else "",
    )


class ClassificationRule:
    """One ``(predicate, extractor)`` pair of the classifier chain."""

    def __init__(self, rule_id: str, name: str):
        self.rule_id = rule_id
        self.name = name

    def matches(self, issue: AuditIssue) -> bool:
        raise NotImplementedError

    def extract(self, issue: AuditIssue, content: str) -> Optional[Classification]:
        raise NotImplementedError


class ContinuityConflictRule(ClassificationRule):
    def __init__(self):
        super().__init__("S1", "continuity_conflict")

    def matches(self, issue: AuditIssue) -> bool:
        text = _full_text(issue)
        if _any(_CONFLICT_PATTERNS, text):
            return True
        return _vs_chapters(issue) is not None and not has_flow_vocabulary(text)

    def extract(self, issue: AuditIssue, content: str) -> Optional[Classification]:
        conflict = extract_continuity_conflict(issue)
        if conflict is None:
            return None
        return Classification(
            type=StructuralIssueType.CONTINUITY_CONFLICT,
            affected_chapters=[conflict.chapter_a, conflict.chapter_b],
            rule=self.name,
            conflict=conflict,
        )


class NarrativeFlowRule(ClassificationRule):
    def __init__(self):
        super().__init__("S2", "narrative_flow_break")

    def matches(self, issue: AuditIssue) -> bool:
        return has_flow_vocabulary(_full_text(issue)) or _vs_chapters(issue) is not None

    def extract(self, issue: AuditIssue, content: str) -> Optional[Classification]:
        transition = extract_transition_context(issue, content)
        if transition is None:
            return None
        return Classification(
            type=StructuralIssueType.NARRATIVE_FLOW_BREAK,
            affected_chapters=[transition.from_chapter, transition.to_chapter],
            rule=self.name,
            transition=transition,
        )


class DuplicateContentRule(ClassificationRule):
    def __init__(self):
        super().__init__("S3", "duplicate_content")

    def matches(self, issue: AuditIssue) -> bool:
        description = issue.description or ""
        lowered = description.lower()
        location = (issue.location or "").lower()
        multiple_in_location = (
            len(re.findall(r"cap[íi]tulo|chapter", location)) >= 2 or location.count(",") >= 2
        )
        return (
            _any(_DUPLICATE_PATTERNS, description)
            or detect_duplicate_type(description) == StructuralIssueType.DUPLICATE_CHAPTERS
            or (multiple_in_location and any(w in lowered for w in ("repite", "similar", "repeat")))
            or _any(_REDUNDANT_PATTERNS, description)
            or _any(_DIALOGUE_PATTERNS, description)
        )

    def extract(self, issue: AuditIssue, content: str) -> Optional[Classification]:
        description = issue.description or ""
        chapters = extract_affected_chapters(issue.location, description)
        redundant = _any(_REDUNDANT_PATTERNS, description)
        dialogue = _any(_DIALOGUE_PATTERNS, description)
        if len(chapters) < 2 and not (redundant or dialogue):
            return None
        if not chapters:
            located = location_chapter(issue.location)
            if located is not None:
                chapters = [located]
        return Classification(
            type=detect_duplicate_type(description),
            affected_chapters=chapters,
            rule=self.name,
            repeated_scene=_any(_REPEATED_SCENE_PATTERNS, description),
            redundant_interaction=redundant,
            dialogue_fix=dialogue,
        )


class StructuralClassifier:
    """Decide whether an issue is structural, and which kind, in priority order.

    Classification never raises; ``None`` means the issue is local.
    """

    def __init__(self, rules: Optional[Sequence[ClassificationRule]] = None):
        self.rules: List[ClassificationRule] = list(rules) if rules is not None else [
            ContinuityConflictRule(),
            NarrativeFlowRule(),
            DuplicateContentRule(),
        ]

    def classify(self, issue: AuditIssue, content: str = "") -> Optional[Classification]:
        cleaned = issue.model_copy(update={"description": strip_instruction_tags(issue.description)})
        for rule in self.rules:
            try:
                if not rule.matches(cleaned):
                    continue
                result = rule.extract(cleaned, content)
            except Exception as exc:
                logger.warning("classification rule failed rule=%s error=%s", rule.rule_id, exc)
                continue
            if result is not None:
                logger.debug(
                    "issue classified rule=%s type=%s chapters=%s",
                    rule.rule_id,
                    result.type.value,
                    result.affected_chapters,
                )
                return result
        return None

    def is_structural(self, issue: AuditIssue, content: str = "") -> bool:
        return self.classify(issue, content) is not None
