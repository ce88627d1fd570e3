import re
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from core.manuscript_text import find_chapter, location_chapter
from models import AuditIssue, Confidence
from utils.text_cleaner import extract_keywords, longest_words, normalize_whitespace

logger = logging.getLogger("galley.locator")

_KEYWORD_COUNT = 3
_KEYWORD_MIN_LENGTH = 4
_KEYWORD_MAX_GAP = 300
_QUOTED_MIN_LENGTH = 15
_SENTENCE_MIN_LENGTH = 20
_SENTENCE_KEYWORD_MIN_LENGTH = 5

_QUOTED_RE = re.compile(r'"([^"\n]+)"|“([^”\n]+)”|«([^»\n]+)»|(?<!\w)\'([^\'\n]+)\'(?!\w)')
_SENTENCE_RE = re.compile(r"[^.!?…]+[.!?…]+")


@dataclass
class SpanMatch:
    text: str
    start: int
    end: int
    strategy: str
    confidence: Confidence
    chapter_number: Optional[int] = None


class LocatorStrategy:
    def __init__(self, name: str, confidence: Confidence):
        self.name = name
        self.confidence = confidence

    def find(self, document: str, target: str) -> Optional[SpanMatch]:
        raise NotImplementedError

    def _match(self, document: str, start: int, end: int) -> SpanMatch:
        return SpanMatch(
            text=document[start:end],
            start=start,
            end=end,
            strategy=self.name,
            confidence=self.confidence,
        )


class ExactMatchStrategy(LocatorStrategy):
    def __init__(self):
        super().__init__("exact", Confidence.HIGH)

    def find(self, document: str, target: str) -> Optional[SpanMatch]:
        index = document.find(target)
        if index < 0:
            return None
        return self._match(document, index, index + len(target))


def _normalize_with_offsets(text: str) -> Tuple[str, List[int]]:
    """Collapse whitespace runs and keep, per output char, its source offset."""
    chars: List[str] = []
    offsets: List[int] = []
    in_space = False
    for idx, ch in enumerate(text):
        if ch.isspace():
            if in_space or not chars:
                in_space = True
                continue
            chars.append(" ")
            offsets.append(idx)
            in_space = True
        else:
            chars.append(ch)
            offsets.append(idx)
            in_space = False
    return "".join(chars), offsets


class NormalizedMatchStrategy(LocatorStrategy):
    def __init__(self):
        super().__init__("normalized", Confidence.MEDIUM)

    def find(self, document: str, target: str) -> Optional[SpanMatch]:
        needle = normalize_whitespace(target)
        if not needle:
            return None
        haystack, offsets = _normalize_with_offsets(document)
        index = haystack.find(needle)
        if index < 0:
            return None
        start = offsets[index]
        end = offsets[index + len(needle) - 1] + 1
        return self._match(document, start, end)


class KeywordAnchorStrategy(LocatorStrategy):
    def __init__(self, count: int = _KEYWORD_COUNT, max_gap: int = _KEYWORD_MAX_GAP):
        super().__init__("keyword", Confidence.MEDIUM)
        self.count = count
        self.max_gap = max_gap

    def find(self, document: str, target: str) -> Optional[SpanMatch]:
        words = longest_words(target, count=self.count, min_length=_KEYWORD_MIN_LENGTH)
        if not words:
            return None
        gap = f".{{0,{self.max_gap}}}?"
        pattern = re.compile(gap.join(re.escape(w) for w in words), re.IGNORECASE | re.DOTALL)
        match = pattern.search(document)
        if not match:
            return None
        return self._match(document, match.start(), match.end())


class SpanLocator:
    """Find the exact span of a document an approximate quote refers to.

    Strategies run in order of increasing permissiveness and the first hit
    wins. ``None`` means the quote could not be located; callers must not
    guess a span in that case.
    """

    def __init__(self, strategies: Optional[Sequence[LocatorStrategy]] = None):
        self.strategies: List[LocatorStrategy] = list(strategies) if strategies is not None else [
            ExactMatchStrategy(),
            NormalizedMatchStrategy(),
            KeywordAnchorStrategy(),
        ]

    def locate(self, document: str, target: str) -> Optional[SpanMatch]:
        if not document or not target or not target.strip():
            return None
        for strategy in self.strategies:
            match = strategy.find(document, target)
            if match is not None:
                logger.debug(
                    "span located strategy=%s start=%d length=%d",
                    strategy.name,
                    match.start,
                    match.end - match.start,
                )
                return match
        return None

    def locate_in_chapter(self, document: str, chapter_number: int, target: str) -> Optional[SpanMatch]:
        block = find_chapter(document, chapter_number)
        if block is None:
            return None
        match = self.locate(document[block.header_end:block.end], target)
        if match is None:
            return None
        match.start += block.header_end
        match.end += block.header_end
        match.chapter_number = chapter_number
        return match


def chapter_scope(document: str, issue: AuditIssue) -> Tuple[Optional[int], int, int]:
    """The chapter named by an issue's location and its offsets, else the whole document."""
    number = location_chapter(issue.location)
    if number is not None:
        block = find_chapter(document, number)
        if block is not None:
            return number, block.header_end, block.end
    return None, 0, len(document)


def quoted_fragments(text: str, min_length: int = _QUOTED_MIN_LENGTH) -> List[str]:
    fragments: List[str] = []
    for match in _QUOTED_RE.finditer(text or ""):
        fragment = next(g for g in match.groups() if g is not None).strip()
        if len(fragment) >= min_length and fragment not in fragments:
            fragments.append(fragment)
    return fragments


def sentence_spans(text: str) -> List[Tuple[int, int, str]]:
    """Sentences of ``text`` as ``(start, end, sentence)`` with surrounding whitespace trimmed."""
    spans: List[Tuple[int, int, str]] = []
    for match in _SENTENCE_RE.finditer(text or ""):
        raw = match.group(0)
        stripped = raw.strip()
        if not stripped:
            continue
        start = match.start() + (len(raw) - len(raw.lstrip()))
        spans.append((start, start + len(stripped), stripped))
    return spans


class IssueTargetStrategy:
    name = "issue"

    def find(self, document: str, issue: AuditIssue) -> Optional[SpanMatch]:
        raise NotImplementedError


class QuotedFragmentStrategy(IssueTargetStrategy):
    """Quoted passages of the description or suggestion found verbatim."""

    name = "quoted"

    def __init__(self, locator: Optional[SpanLocator] = None):
        self.locator = locator or SpanLocator()

    def find(self, document: str, issue: AuditIssue) -> Optional[SpanMatch]:
        chapter, _, _ = chapter_scope(document, issue)
        for fragment in quoted_fragments(f"{issue.description}\n{issue.suggestion}"):
            if chapter is not None:
                match = self.locator.locate_in_chapter(document, chapter, fragment)
            else:
                match = self.locator.locate(document, fragment)
            if match is None:
                continue
            return SpanMatch(
                text=match.text,
                start=match.start,
                end=match.end,
                strategy=f"{self.name}:{match.strategy}",
                confidence=Confidence.HIGH,
                chapter_number=chapter,
            )
        return None


class SentenceScoringStrategy(IssueTargetStrategy):
    """Pick the sentence of the named chapter whose neighbourhood best matches the description."""

    name = "sentence"

    def find(self, document: str, issue: AuditIssue) -> Optional[SpanMatch]:
        chapter, start, end = chapter_scope(document, issue)
        if chapter is None:
            return None
        scope = document[start:end]
        spans = sentence_spans(scope)
        keywords = extract_keywords(issue.description, min_length=_SENTENCE_KEYWORD_MIN_LENGTH)
        if not spans or not keywords:
            return None

        sentences = [sentence for _, _, sentence in spans]
        best_idx = -1
        best_score = 0
        for idx in range(len(sentences)):
            window = " ".join(sentences[max(0, idx - 1):idx + 2]).lower()
            score = sum(1 for keyword in keywords if keyword in window)
            if score > best_score:
                best_score = score
                best_idx = idx

        if best_idx < 0:
            return None
        sentence_start, sentence_end, best = spans[best_idx]
        if len(best) < _SENTENCE_MIN_LENGTH:
            return None
        return SpanMatch(
            text=best,
            start=start + sentence_start,
            end=start + sentence_end,
            strategy=self.name,
            confidence=Confidence.MEDIUM,
            chapter_number=chapter,
        )


class IssueTargetLocator:
    """Ordered chain of issue-level search strategies; the first hit wins."""

    def __init__(self, strategies: Optional[Sequence[IssueTargetStrategy]] = None):
        self.strategies: List[IssueTargetStrategy] = list(strategies) if strategies is not None else [
            QuotedFragmentStrategy(),
            SentenceScoringStrategy(),
        ]

    def locate(self, document: str, issue: AuditIssue) -> Optional[SpanMatch]:
        for strategy in self.strategies:
            try:
                match = strategy.find(document, issue)
            except Exception as exc:
                logger.warning("issue target strategy failed strategy=%s error=%s", strategy.name, exc)
                continue
            if match is not None:
                return match
        return None


def locate_issue_target(
    document: str,
    issue: AuditIssue,
    strategies: Optional[Sequence[IssueTargetStrategy]] = None,
) -> Optional[SpanMatch]:
    return IssueTargetLocator(strategies).locate(document, issue)
