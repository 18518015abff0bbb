"""Cleanup helpers for chunked generation output.

Chunks are cleaned individually as they arrive; the stitched document is
post-processed once when the chunk loop stops.
"""

import html
import re

_CODE_FENCE_OPEN = re.compile(r"```html\s*")
_CODE_FENCE_CLOSE = re.compile(r"```\s*$")
_LEADING_CONTINUED = re.compile(r"^\s*\[continued\]\s*", re.IGNORECASE)
_LEADING_PART = re.compile(r"^\s*\[part \d+\]\s*", re.IGNORECASE)
_CONTINUATION_ARTIFACT = re.compile(r"\[(continued|part \d+)\]", re.IGNORECASE)
_DUPLICATE_HTML_OPEN = re.compile(r"<html[^>]*>.*?<html[^>]*>", re.IGNORECASE)
_AFTER_HTML_CLOSE = re.compile(r"(</html>).*$", re.IGNORECASE | re.DOTALL)
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_TAG = re.compile(r"<[^>]*>")
_HEAD_OR_STYLE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_WORD = re.compile(r"[A-Za-z]+(?:['-][A-Za-z]+)*")
_SENTENCE_END = re.compile(r"([.!?]|</[^>]+>|-->)\s*$")

HTML_SKELETON = (
    "<!DOCTYPE html>\n<html>\n<head><meta charset=\"UTF-8\"></head>\n<body>\n"
    "{body}"
    "\n</body>\n</html>"
)


def clean_chunk(text: str) -> str:
    """Strip stray code fences and leading continuation labels from one chunk."""
    text = _CODE_FENCE_OPEN.sub("", text)
    text = _CODE_FENCE_CLOSE.sub("", text)
    text = _LEADING_CONTINUED.sub("", text)
    text = _LEADING_PART.sub("", text)
    return text.strip()


def strip_tags(text: str) -> str:
    """Visible text of an HTML fragment."""
    text = _HEAD_OR_STYLE.sub("", text)
    return html.unescape(_TAG.sub("", text))


def word_count(text: str) -> int:
    """Count words in the visible text."""
    return len(_WORD.findall(strip_tags(text)))


def ends_mid_sentence(text: str) -> bool:
    """Whether text stops before terminal punctuation or a closing tag."""
    return _SENTENCE_END.search(text.strip()) is None


def looks_like_markup(text: str) -> bool:
    return "<" in text and ">" in text


def is_html_document(text: str) -> bool:
    return "<html" in text.lower() or "<!doctype" in text.lower()


def post_process(text: str, completion_marker: str) -> str:
    """Assemble the final document from the stitched chunk text.

    Removes marker and continuation residue, drops anything after the
    closing ``</html>`` and wraps bare markup fragments in a minimal
    HTML document. Plain text is returned as-is apart from whitespace.
    """
    if completion_marker:
        text = text.replace(completion_marker, "")
    text = _CONTINUATION_ARTIFACT.sub("", text)
    text = _DUPLICATE_HTML_OPEN.sub("<html>", text)

    if is_html_document(text):
        text = _AFTER_HTML_CLOSE.sub(r"\1", text)
    elif looks_like_markup(text):
        text = HTML_SKELETON.format(body=text.strip())

    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()
