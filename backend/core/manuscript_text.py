import re
from dataclasses import dataclass
from typing import Iterable, List, Optional


PROLOGUE_NUMBER = 0
EPILOGUE_NUMBER = 998
AUTHOR_NOTE_NUMBER = 999
SPECIAL_NUMBERS = {PROLOGUE_NUMBER, EPILOGUE_NUMBER, AUTHOR_NOTE_NUMBER}

_HEADER_LEAD = r"^[ \t]*(?:={2,}[ \t]*|#{1,6}[ \t]*)?"
# A title or decoration may follow the header word, but not a sentence.
_HEADER_REST = r"(?P<rest>[ \t]*(?:[:：.\-–—][ \t]*)?[^\n.!?;]{0,80}[!?]?)$"
_NUMBERED_HEADER_RE = re.compile(
    _HEADER_LEAD
    + r"(?P<word>cap[íi]tulo|cap\.|chapter)[ \t]*(?P<number>\d+)(?!\d)"
    + _HEADER_REST,
    re.IGNORECASE | re.MULTILINE,
)
_SPECIAL_HEADER_RE = re.compile(
    _HEADER_LEAD
    + r"(?P<word>pr[óo]logo|prologue|ep[íi]logo|epilogue|nota\s+del\s+autor|author'?s\s+note)\b"
    + _HEADER_REST,
    re.IGNORECASE | re.MULTILINE,
)
_TITLE_STRIP_RE = re.compile(r"^[\s:：.\-]+|[\s=#]+$")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n+")

_CHAPTER_MENTION_RE = re.compile(
    r"\b(?:cap[íi]tulos?|caps?\.|chapters?)\s*(?P<list>\d+(?:\s*(?:,|y|e|and|&|-|vs\.?)\s*(?:cap[íi]tulos?\s*|chapters?\s*)?\d+)*)",
    re.IGNORECASE,
)
_DIGITS_RE = re.compile(r"\d+")
_SPECIAL_MENTIONS = (
    (re.compile(r"\bpr[óo]logo\b|\bprologue\b", re.IGNORECASE), PROLOGUE_NUMBER),
    (re.compile(r"\bep[íi]logo\b|\bepilogue\b", re.IGNORECASE), EPILOGUE_NUMBER),
    (re.compile(r"\bnota\s+del\s+autor\b|\bauthor'?s\s+note\b", re.IGNORECASE), AUTHOR_NOTE_NUMBER),
)

MAX_CHAPTER_NUMBER = 200


@dataclass
class ChapterBlock:
    number: int
    label: str
    title: str
    header: str
    start: int
    header_end: int
    end: int
    special: bool = False

    @property
    def display_name(self) -> str:
        if self.special:
            return self.label
        return f"{self.label} {self.number}"

    def text(self, content: str) -> str:
        return content[self.start:self.end]

    def body(self, content: str) -> str:
        return content[self.header_end:self.end].strip()


def _special_number(word: str) -> int:
    lowered = word.lower()
    if lowered.startswith("pr"):
        return PROLOGUE_NUMBER
    if lowered.startswith("ep"):
        return EPILOGUE_NUMBER
    return AUTHOR_NOTE_NUMBER


def split_chapters(text: str) -> List[ChapterBlock]:
    """Split a manuscript into chapter blocks in document order.

    A block runs from its header line to the next header (numbered or
    special) or the end of the document. Text before the first header is
    not part of any block.
    """
    content = text or ""
    heads = []
    for match in _NUMBERED_HEADER_RE.finditer(content):
        heads.append((match, int(match.group("number")), False))
    for match in _SPECIAL_HEADER_RE.finditer(content):
        heads.append((match, _special_number(match.group("word")), True))
    heads.sort(key=lambda item: item[0].start())

    blocks: List[ChapterBlock] = []
    for idx, (match, number, special) in enumerate(heads):
        end = heads[idx + 1][0].start() if idx + 1 < len(heads) else len(content)
        blocks.append(
            ChapterBlock(
                number=number,
                label=match.group("word"),
                title=_TITLE_STRIP_RE.sub("", match.group("rest") or "").strip(),
                header=match.group(0).strip(),
                start=match.start(),
                header_end=match.end(),
                end=end,
                special=special,
            )
        )
    return blocks


def find_chapter(text: str, number: int) -> Optional[ChapterBlock]:
    for block in split_chapters(text):
        if block.number == number:
            return block
    return None


def chapter_body(text: str, number: int) -> Optional[str]:
    block = find_chapter(text, number)
    if block is None:
        return None
    return block.body(text)


def replace_chapter_body(text: str, number: int, new_body: str) -> str:
    """Replace a chapter's body, keeping its header line."""
    block = find_chapter(text, number)
    if block is None:
        raise ValueError(f"chapter {number} not found")
    tail = text[block.end:]
    updated = text[:block.header_end] + "\n\n" + (new_body or "").strip() + "\n"
    if tail:
        updated += "\n" + tail
    return updated


def insert_at_chapter_end(text: str, number: int, passage: str) -> str:
    block = find_chapter(text, number)
    if block is None:
        raise ValueError(f"chapter {number} not found")
    body = block.body(text)
    return replace_chapter_body(text, number, f"{body}\n\n{passage.strip()}")


def insert_at_chapter_start(text: str, number: int, passage: str) -> str:
    block = find_chapter(text, number)
    if block is None:
        raise ValueError(f"chapter {number} not found")
    body = block.body(text)
    return replace_chapter_body(text, number, f"{passage.strip()}\n\n{body}")


def delete_chapters(text: str, numbers: Iterable[int]) -> str:
    wanted = set(numbers)
    blocks = [block for block in split_chapters(text) if block.number in wanted]
    missing = wanted - {block.number for block in blocks}
    if missing:
        raise ValueError(f"chapters not found: {sorted(missing)}")

    updated = text
    for block in sorted(blocks, key=lambda b: b.start, reverse=True):
        updated = updated[:block.start] + updated[block.end:]
    return updated


def _paragraphs(body: str) -> List[str]:
    return [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(body or "") if p.strip()]


def chapter_head(text: str, number: int, paragraphs: int = 3, max_chars: int = 1500) -> str:
    body = chapter_body(text, number)
    if not body:
        return ""
    head = "\n\n".join(_paragraphs(body)[:paragraphs])
    return head[:max_chars]


def chapter_tail(text: str, number: int, paragraphs: int = 3, max_chars: int = 1500) -> str:
    body = chapter_body(text, number)
    if not body:
        return ""
    tail = "\n\n".join(_paragraphs(body)[-paragraphs:])
    return tail[-max_chars:] if len(tail) > max_chars else tail


def extract_chapter_numbers(text: str) -> List[int]:
    """Chapter numbers named in free text, in order of first mention.

    Handles ``Capítulo 4``, ``capítulos 3, 5 y 9`` and ``chapters 2 and 4``.
    """
    numbers: List[int] = []
    for match in _CHAPTER_MENTION_RE.finditer(text or ""):
        for raw in _DIGITS_RE.findall(match.group("list")):
            value = int(raw)
            if 0 < value < MAX_CHAPTER_NUMBER and value not in numbers:
                numbers.append(value)
    return numbers


def location_chapter(location: str) -> Optional[int]:
    """Resolve a location hint to a single chapter number, if it names one."""
    numbers = extract_chapter_numbers(location)
    if numbers:
        return numbers[0]
    for pattern, number in _SPECIAL_MENTIONS:
        if pattern.search(location or ""):
            return number
    return None


def renumber_chapters(text: str) -> str:
    """Re-label numbered chapter headers 1..N in document order.

    Special sections (prologue, epilogue, author's note) keep their labels.
    The header word, decoration and title are preserved, so running the pass
    twice yields the same text.
    """
    counter = 0

    def _renumber(match: re.Match) -> str:
        nonlocal counter
        counter += 1
        line = match.group(0)
        offset = match.start("number") - match.start()
        return line[:offset] + str(counter) + line[offset + len(match.group("number")):]

    return _NUMBERED_HEADER_RE.sub(_renumber, text or "")
