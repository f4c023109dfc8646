"""
Text normalization shared by narrative ingestion and query embedding.

Both paths must call ``normalize_text``; any divergence between the text that
was embedded at ingestion and the text embedded at query time degrades
retrieval quality.
"""

import re
import unicodedata

# Bounds the embedding request payload
MAX_NORMALIZED_LENGTH = 4000

_TAG_RE = re.compile(r"</?[A-Za-z!][^<>]*>")
_NBSP_RE = re.compile(r"&nbsp;", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")

_GREETING_RE = re.compile(
    r"^(?:hi|hello|hey|dear|greetings|good (?:morning|afternoon|evening))\b[^,.!:;]{0,40}[,.!:;]\s*",
    re.IGNORECASE,
)
_SIGNOFF_RE = re.compile(
    r"\s*\b(?:kind regards|best regards|warm regards|regards|many thanks|thanks|thank you|cheers|best wishes)"
    r"\s*(?:[,.!]\s*[^,.!?]{0,40})?[.!]?$",
    re.IGNORECASE,
)
_SENT_FROM_RE = re.compile(r"\s*\bsent from my [\w-]+(?: [\w-]+)?[.!]?$", re.IGNORECASE)


def _strip_tags(text: str) -> str:
    # Nested fragments such as "<<b>b>" need repeated passes
    previous = None
    while previous != text:
        previous = text
        text = _TAG_RE.sub(" ", text)
    return text


def _strip_boilerplate(text: str) -> str:
    previous = None
    while previous != text:
        previous = text
        text = _GREETING_RE.sub("", text)
        text = _SENT_FROM_RE.sub("", text)
        text = _SIGNOFF_RE.sub("", text)
        text = text.strip()
    return text


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text

    cut = text[:max_length]
    # Prefer the last token boundary; hard cut only for a single oversized token
    if text[max_length] != " ":
        boundary = cut.rfind(" ")
        if boundary > 0:
            cut = cut[:boundary]
    return cut.rstrip()


def _normalize_once(text: str, max_length: int) -> str:
    text = unicodedata.normalize("NFC", text)
    text = _strip_tags(text)
    text = _NBSP_RE.sub(" ", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    text = _strip_boilerplate(text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return _truncate(text, max_length)


def normalize_text(text, max_length: int = MAX_NORMALIZED_LENGTH) -> str:
    """
    Clean narrative or query text before embedding.

    Strips markup tags and greeting/sign-off boilerplate, collapses whitespace,
    trims, and truncates to ``max_length`` characters on a token boundary.
    Never raises; non-string input normalizes to an empty string. The result is
    a fixed point: ``normalize_text(normalize_text(x)) == normalize_text(x)``.
    """
    if not isinstance(text, str):
        return ""

    # Each pass only removes characters or folds whitespace, so this terminates
    previous = None
    while previous != text:
        previous = text
        text = _normalize_once(text, max_length)
    return text
