"""
Text helpers for keyword extraction, whitespace normalisation and loose
word matching over Spanish and English manuscript text.
"""

import re
import unicodedata

# Spanish and English stopwords for keyword extraction
KEYWORD_STOPWORDS: set[str] = {
    "para", "como", "pero", "este", "esta", "esto", "estos", "estas", "unos",
    "unas", "sobre", "entre", "cuando", "donde", "desde", "hasta", "porque",
    "aunque", "tiene", "tienen", "hace", "hacen", "puede", "pueden", "todo",
    "toda", "todos", "todas", "otro", "otra", "otros", "otras", "mismo",
    "misma", "cada", "muy", "más", "menos", "según", "sino", "también",
    "capítulo", "capítulos", "texto", "novela", "escena", "párrafo",
    "that", "this", "with", "from", "have", "were", "there", "their", "which",
    "when", "where", "while", "about", "would", "could", "should", "into",
    "chapter", "chapters", "novel", "scene", "text", "paragraph",
}

MIN_KEYWORD_LENGTH: int = 4

# Word tokens: runs of letters or digits, accents included.
_TOKEN_RE = re.compile(r"[^\W_]+")
_WHITESPACE_RE = re.compile(r"\s+")
_VOWEL_TAIL_RE = re.compile(r"[aeiouáéíóú]+$")


def normalize_whitespace(text: str) -> str:
    """Collapse every whitespace run to a single space and trim."""
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text or "")


def word_count(text: str) -> int:
    return len((text or "").split())


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text or "")
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def word_root(word: str) -> str:
    """
    Reduce a word to a gender/number-insensitive root.

    ``azul``/``azules`` share ``azul``; ``verde``/``verdes`` share ``verd``;
    ``negro``/``negras`` share ``negr``.
    """
    base = strip_accents((word or "").lower())
    if base.endswith("s") and len(base) > 3:
        base = base[:-1]
    root = _VOWEL_TAIL_RE.sub("", base)
    return root if len(root) >= 3 else base


def same_root(left: str, right: str) -> bool:
    return bool(left) and bool(right) and word_root(left) == word_root(right)


def extract_keywords(text: str, min_length: int = MIN_KEYWORD_LENGTH) -> list[str]:
    """
    Extract keywords from text with minimum length threshold and stopword removal.

    Args:
        text: Input text to extract keywords from.
        min_length: Minimum character length for a keyword (default 4).

    Returns:
        List of unique lowercase keywords that pass length and stopword
        filters, preserving first-occurrence order.
    """
    if not text:
        return []

    seen: set[str] = set()
    keywords: list[str] = []
    for token in tokenize(text):
        t = token.lower()
        if len(t) < min_length or t.isdigit():
            continue
        if t in KEYWORD_STOPWORDS:
            continue
        if t not in seen:
            seen.add(t)
            keywords.append(t)

    return keywords


def longest_words(text: str, count: int = 3, min_length: int = 1) -> list[str]:
    """
    Return the ``count`` longest distinct words of ``text`` in text order.

    Ties keep the earlier word.
    """
    words: list[str] = []
    seen: set[str] = set()
    for token in tokenize(text):
        if len(token) < min_length or token.lower() in seen:
            continue
        seen.add(token.lower())
        words.append(token)
    ranked = sorted(range(len(words)), key=lambda i: (-len(words[i]), i))[:count]
    return [words[i] for i in sorted(ranked)]
