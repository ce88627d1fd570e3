import re
from dataclasses import dataclass
from typing import List

from core.manuscript_text import split_chapters
from services.span_locator import quoted_fragments
from utils.text_cleaner import extract_keywords

_GENERIC_PATTERNS = [
    re.compile(r"a lo largo de (?:la|toda la) novela", re.IGNORECASE),
    re.compile(r"de forma (?:muy )?similar", re.IGNORECASE),
    re.compile(r"repetitiv[ao]s?", re.IGNORECASE),
    re.compile(r"en (?:múltiples|varios|varias) (?:capítulos|escenas|lugares|ocasiones)", re.IGNORECASE),
    re.compile(r"frecuentemente", re.IGNORECASE),
    re.compile(r"constantemente", re.IGNORECASE),
    re.compile(r"siempre (?:se|usa|describe)", re.IGNORECASE),
    re.compile(r"en general", re.IGNORECASE),
    re.compile(r"throughout", re.IGNORECASE),
    re.compile(r"repeatedly", re.IGNORECASE),
    re.compile(r"in general", re.IGNORECASE),
    re.compile(r"(?:multiple|several) (?:chapters|scenes|places)", re.IGNORECASE),
]
_SPECIFIC_LOCATION_RE = re.compile(r"cap[íi]tulo\s*\d+|chapter\s*\d+", re.IGNORECASE)
_VAGUE_LOCATION_WORDS = ("general", "múltiples", "multiples", "multiple", "varios", "various", "toda la novela", "throughout")

_LEADIN_RE = re.compile(
    r"(?:frases como|expresiones como|palabras como|such as|phrases like|como)\s+[\"'“«]?([^,.\"'”»]+)[\"'”»]?",
    re.IGNORECASE,
)
_VERB_ANCHORED_PATTERNS = [
    re.compile(r"(?:describe|menciona|repite|usa|uses|repeats|mentions)\s+(?:como\s+)?[\"']?([^,.\"']+)[\"']?", re.IGNORECASE),
    re.compile(r"(?:el|la|los|las|the)\s+[\"']?([^,.\"']{10,40})[\"']?\s+(?:se repite|aparece|es repetitiv|is repeated|appears)", re.IGNORECASE),
    re.compile(r"(?:repetición de|exceso de|repetition of|overuse of)\s+[\"']?([^,.\"']+)[\"']?", re.IGNORECASE),
]
_BODY_NOUN_RE = re.compile(
    r"(?:dolor|anillo|cicatriz|marca|manchas?|ojos?|manos?|herida|scar|ring|hands?|eyes?|wound)[a-záéíóúñ\s]{0,20}",
    re.IGNORECASE,
)

MIN_PHRASE_LENGTH = 5
MAX_ANCHORED_PHRASE_LENGTH = 50
MAX_NGRAM_KEYWORDS = 5
MAX_NGRAM_PHRASES = 10
OCCURRENCE_CONTEXT_CHARS = 100


@dataclass
class FoundPhrase:
    text: str
    chapter_number: int
    chapter_title: str
    context: str
    position: int


def is_generic_issue(description: str, location: str) -> bool:
    """True when an issue speaks about the whole manuscript rather than one passage."""
    location = location or ""
    lowered = location.lower()
    has_vague_location = any(word in lowered for word in _VAGUE_LOCATION_WORDS)
    if _SPECIFIC_LOCATION_RE.search(location) and not has_vague_location:
        return False
    if not any(p.search(description or "") for p in _GENERIC_PATTERNS):
        return False
    return not location.strip() or has_vague_location


def extract_repetitive_phrases(description: str) -> List[str]:
    phrases: List[str] = []

    def _add(candidate: str, max_length: int = 0):
        cleaned = candidate.strip().strip("\"'“”«»").strip()
        if len(cleaned) < MIN_PHRASE_LENGTH:
            return
        if max_length and len(cleaned) > max_length:
            return
        if cleaned not in phrases:
            phrases.append(cleaned)

    for fragment in quoted_fragments(description, min_length=MIN_PHRASE_LENGTH):
        _add(fragment)
    for match in _LEADIN_RE.finditer(description or ""):
        _add(match.group(1))

    if not phrases:
        for pattern in _VERB_ANCHORED_PATTERNS:
            for match in pattern.finditer(description or ""):
                _add(match.group(1), MAX_ANCHORED_PHRASE_LENGTH)

    if not phrases:
        for match in _BODY_NOUN_RE.findall(description or "")[:3]:
            _add(match)

    return phrases


def extract_ngram_phrases(description: str, content: str) -> List[str]:
    """Shortest recurring sentences built around description keywords."""
    found: List[str] = []
    for word in extract_keywords(description, min_length=4)[:MAX_NGRAM_KEYWORDS]:
        pattern = re.compile(rf"[^.!?]*\b{re.escape(word)}\b[^.!?]*[.!?]", re.IGNORECASE)
        matches = [m.strip() for m in pattern.findall(content or "")]
        if len(matches) < 2:
            continue
        shortest = min(matches, key=len)
        if 20 <= len(shortest) <= 200 and shortest not in found:
            found.append(shortest)
    return found[:MAX_NGRAM_PHRASES]


def find_all_occurrences(content: str, phrases: List[str]) -> List[FoundPhrase]:
    """Every whitespace-tolerant, case-insensitive occurrence of each phrase, by position."""
    found: List[FoundPhrase] = []
    blocks = split_chapters(content)
    for phrase in phrases:
        parts = phrase.split()
        if not parts:
            continue
        pattern = re.compile(r"\s+".join(re.escape(p) for p in parts), re.IGNORECASE)
        for block in blocks:
            body_start = block.header_end
            body = content[body_start:block.end]
            for match in pattern.finditer(body):
                ctx_start = max(0, match.start() - OCCURRENCE_CONTEXT_CHARS)
                ctx_end = min(len(body), match.end() + OCCURRENCE_CONTEXT_CHARS)
                found.append(
                    FoundPhrase(
                        text=match.group(0),
                        chapter_number=block.number,
                        chapter_title=block.display_name,
                        context="..." + body[ctx_start:ctx_end].strip() + "...",
                        position=body_start + match.start(),
                    )
                )
    return sorted(found, key=lambda item: item.position)
