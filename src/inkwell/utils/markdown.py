"""Plain-text conversion for model responses that slipped into Markdown.

:func:`strip_markdown` removes these marker classes and keeps the prose they
wrap:

* ATX headers (``# Title``, ``## Title ##``) and setext underlines
  (``====`` / ``----``);
* emphasis, strong emphasis, and strikethrough (``*x*``, ``_x_``, ``**x**``,
  ``__x__``, ``***x***``, ``~~x~~``);
* bullet (``-``, ``*``, ``+``) and numbered (``1.``, ``1)``) list markers;
* blockquote markers and horizontal rules;
* code fences and inline code ticks;
* links and images (the label/alt text is kept), reference definitions,
  and HTML tags.
"""

from __future__ import annotations

import re

__all__ = ["strip_markdown"]

_CODE_FENCE = re.compile(r"^[ \t]*(?:`{3,}|~{3,})[^\n]*$", re.MULTILINE)
_HORIZONTAL_RULE = re.compile(r"^[ \t]{0,3}([-*_])(?:[ \t]*\1){2,}[ \t]*$", re.MULTILINE)
_SETEXT_UNDERLINE = re.compile(r"^[ \t]{0,3}(?:=+|-{2,})[ \t]*$", re.MULTILINE)
_ATX_HEADER = re.compile(r"^[ \t]{0,3}#{1,6}(?:[ \t]+(.*?))?(?:[ \t]+#+)?[ \t]*$", re.MULTILINE)
_BLOCKQUOTE = re.compile(r"^[ \t]{0,3}(?:>[ \t]?)+", re.MULTILINE)
_LIST_MARKER = re.compile(r"^([ \t]*)(?:[*+-]|\d{1,9}[.)])[ \t]+", re.MULTILINE)
_REFERENCE_DEFINITION = re.compile(r"^[ \t]{0,3}\[[^\]\n]+\]:[ \t]+\S+[^\n]*$", re.MULTILINE)
_FOOTNOTE_REFERENCE = re.compile(r"\[\^[^\]\n]+\]")
_IMAGE = re.compile(r"!\[([^\]\n]*)\]\([^)\n]*\)")
_LINK = re.compile(r"\[([^\]\n]+)\]\([^)\n]*\)")
_HTML_TAG = re.compile(r"</?[A-Za-z][^>\n]*>")
_STRONG_EMPHASIS = re.compile(r"(\*{3}|_{3})(?=\S)(.+?)(?<=\S)\1")
_STRONG = re.compile(r"(\*\*|__)(?=\S)(.+?)(?<=\S)\1")
_STAR_EMPHASIS = re.compile(r"(?<![\*\w])\*(?=[^\s*])(.+?)(?<=[^\s*])\*(?![\*\w])")
_UNDERSCORE_EMPHASIS = re.compile(r"(?<![_\w])_(?=[^\s_])(.+?)(?<=[^\s_])_(?![_\w])")
_STRIKETHROUGH = re.compile(r"~~(?=\S)(.+?)(?<=\S)~~")
_INLINE_CODE = re.compile(r"`+([^`\n]+?)`+")
_TRAILING_SPACE = re.compile(r"[ \t]+$", re.MULTILINE)
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


def strip_markdown(text: str) -> str:
    """Return *text* with Markdown structure removed."""

    if not text:
        return ""
    output = text.replace("\r\n", "\n").replace("\r", "\n")

    # Line-level markers first so that "* * *" and "- item" are not read as emphasis.
    output = _CODE_FENCE.sub("", output)
    output = _HORIZONTAL_RULE.sub("", output)
    output = _SETEXT_UNDERLINE.sub("", output)
    output = _ATX_HEADER.sub(r"\1", output)
    output = _BLOCKQUOTE.sub("", output)
    output = _LIST_MARKER.sub(r"\1", output)
    output = _REFERENCE_DEFINITION.sub("", output)

    output = _FOOTNOTE_REFERENCE.sub("", output)
    output = _IMAGE.sub(r"\1", output)
    output = _LINK.sub(r"\1", output)
    output = _HTML_TAG.sub("", output)
    output = _STRONG_EMPHASIS.sub(r"\2", output)
    output = _STRONG.sub(r"\2", output)
    output = _STAR_EMPHASIS.sub(r"\1", output)
    output = _UNDERSCORE_EMPHASIS.sub(r"\1", output)
    output = _STRIKETHROUGH.sub(r"\1", output)
    output = _INLINE_CODE.sub(r"\1", output)

    output = _TRAILING_SPACE.sub("", output)
    output = _EXCESS_BLANK_LINES.sub("\n\n", output)
    return output.strip()
