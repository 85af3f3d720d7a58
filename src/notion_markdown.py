"""Markdown to internal-API block definitions.

Block structure is recognised line by line with a marker table; inline
formatting is parsed with parsy into decorated-text segments
(``[text, [["b"], ["a", url], ...]]``).
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import parsy as P

logger = logging.getLogger("notion-internal")


# =============================================================================
# Inline Formatting Parser (Parsy-based)
# =============================================================================

@dataclass
class Span:
    """A run of text sharing one list of decorators."""
    text: str
    decorations: list[list[str]] = field(default_factory=list)

    def to_segment(self) -> list:
        if self.decorations:
            return [self.text, [list(d) for d in self.decorations]]
        return [self.text]


def _decorate(spans: list[Span], decoration: list[str]) -> list[Span]:
    """Prepend an outer decorator to every span."""
    for span in spans:
        if decoration not in span.decorations:
            span.decorations.insert(0, decoration)
    return spans


def _merge_adjacent_spans(spans: list[Span]) -> list[Span]:
    merged: list[Span] = []
    for span in spans:
        if not span.text:
            continue
        if merged and merged[-1].decorations == span.decorations:
            merged[-1].text += span.text
        else:
            merged.append(span)
    return merged


# Characters that start special syntax (used for literal text boundaries)
_SPECIAL_CHARS = set('\\*~`[')
_ESCAPE_CHARS = '\\*~`[]_#-|>'


def _make_inline_parser():
    """Build the inline parser: text -> list[Span].

    Delimited formats capture their inner text with a regex that stops at the
    closing delimiter, then parse that inner text recursively.
    """

    def parse_inner(text: str) -> list[Span]:
        try:
            return _inline_parser_impl.parse(text)
        except P.ParseError:
            return [Span(text)]

    escaped = (P.string('\\') >> P.char_from(_ESCAPE_CHARS)).map(lambda c: Span(c))

    code = (
        P.string('`') >>
        P.regex(r'[^`]+') <<
        P.string('`')
    ).map(lambda t: Span(t, [["c"]]))

    bold = (
        P.string('**') >>
        P.regex(r'((?:[^*]|\*(?!\*))+)') <<
        P.string('**')
    ).map(lambda inner: _decorate(parse_inner(inner), ["b"]))

    strikethrough = (
        P.string('~~') >>
        P.regex(r'((?:[^~]|~(?!~))+)') <<
        P.string('~~')
    ).map(lambda inner: _decorate(parse_inner(inner), ["s"]))

    italic = (
        P.string('*') >>
        P.regex(r'([^*]+)') <<
        P.string('*')
    ).map(lambda inner: _decorate(parse_inner(inner), ["i"]))

    @P.generate
    def link():
        yield P.string('[')
        text = yield P.regex(r'(?:[^\[\]]|\[(?:[^\[\]])*\])*')
        yield P.string('](')
        url = yield P.regex(r'[^)\s]+')
        yield P.string(')')
        return _decorate(parse_inner(text), ["a", url])

    literal_run = P.test_char(lambda c: c not in _SPECIAL_CHARS, 'literal').at_least(1).map(
        lambda chars: Span(''.join(chars))
    )

    # Special character that didn't start a pattern
    special_fallback = P.any_char.map(lambda c: Span(c))

    formatted_or_literal = (
        escaped |
        code |
        bold |
        strikethrough |
        italic |
        link |
        literal_run |
        special_fallback
    )

    def flatten(items):
        flat = []
        for item in items:
            if isinstance(item, list):
                flat.extend(item)
            else:
                flat.append(item)
        return flat

    _inline_parser_impl = formatted_or_literal.many().map(flatten)

    return _inline_parser_impl


_inline_parser = _make_inline_parser()


def parse_inline(text: str) -> list[list]:
    """Parse inline markdown into decorated-text segments.

    Supports ``**bold**``, ``*italic*``, ``~~strike~~``, ```code``` and
    ``[text](url)``, nested in any combination except inside code.
    """
    if not text:
        return [[""]]
    try:
        spans = _merge_adjacent_spans(_inline_parser.parse(text))
    except P.ParseError as e:
        logger.warning(f"Inline formatting parse error: {e}")
        return [[text]]
    return [span.to_segment() for span in spans] or [[""]]


# =============================================================================
# Block Parsing
# =============================================================================

HEADING_TYPES = {1: "header", 2: "sub_header", 3: "sub_sub_header"}

# Marker patterns in precedence order (first match wins)
BLOCK_MARKERS = [
    (re.compile(r'^(#{1,6})\s+(.*)$'), 'heading'),
    (re.compile(r'^(?:-{3,}|\*{3,}|_{3,})\s*$'), 'divider'),
    (re.compile(r'^[-*+] \[([ xX])\] (.*)$'), 'to_do'),
    (re.compile(r'^\d+[.)] (.*)$'), 'numbered_list'),
    (re.compile(r'^[-*+] (.*)$'), 'bulleted_list'),
    (re.compile(r'^>\s?(.*)$'), 'quote'),
]

CODE_FENCE = re.compile(r'^(```|~~~)\s*([\w+#.-]*)\s*$')


def _block(block_type: str, text: str, **extra_properties) -> dict:
    properties = {"title": parse_inline(text)}
    properties.update(extra_properties)
    return {"type": block_type, "properties": properties}


def _match_marker(line: str) -> tuple[Optional[str], Optional[re.Match]]:
    for pattern, block_type in BLOCK_MARKERS:
        match = pattern.match(line)
        if match:
            return block_type, match
    return None, None


def markdown_to_blocks(markdown: str) -> list[dict]:
    """Convert markdown into ``[{"type", "properties"?}]`` block definitions.

    Consecutive plain lines form one paragraph and consecutive ``>`` lines one
    quote. Headings deeper than three levels become ``sub_sub_header``.
    """
    if not markdown.strip():
        return []

    blocks: list[dict] = []
    paragraph: list[str] = []
    quote: list[str] = []

    def flush():
        if paragraph:
            blocks.append(_block("text", "\n".join(paragraph)))
            paragraph.clear()
        if quote:
            blocks.append(_block("quote", "\n".join(quote)))
            quote.clear()

    lines = markdown.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i].rstrip()
        stripped = line.strip()
        i += 1

        fence = CODE_FENCE.match(stripped)
        if fence:
            flush()
            body = []
            while i < len(lines) and lines[i].strip() != fence.group(1):
                body.append(lines[i])
                i += 1
            i += 1  # closing fence
            blocks.append({
                "type": "code",
                "properties": {
                    "title": [["\n".join(body)]],
                    "language": [[fence.group(2) or "plain text"]],
                },
            })
            continue

        if not stripped:
            flush()
            continue

        block_type, match = _match_marker(stripped)
        if block_type == "quote":
            if paragraph:
                flush()
            quote.append(match.group(1))
            continue
        if block_type is None:
            if quote:
                flush()
            paragraph.append(stripped)
            continue

        flush()
        if block_type == "heading":
            level = min(len(match.group(1)), 3)
            blocks.append(_block(HEADING_TYPES[level], match.group(2)))
        elif block_type == "divider":
            blocks.append({"type": "divider"})
        elif block_type == "to_do":
            checked = "Yes" if match.group(1).lower() == "x" else "No"
            blocks.append(_block("to_do", match.group(2), checked=[[checked]]))
        else:
            blocks.append(_block(block_type, match.group(1)))

    flush()
    return blocks


def read_markdown_input(markdown: str | None = None, markdown_file: str | None = None) -> str:
    """Return markdown from exactly one of an inline string or a file path.

    Raises:
        ValueError: If both or neither source is given.
    """
    if markdown and markdown_file:
        raise ValueError("Provide either --markdown or --markdown-file, not both")
    if not markdown and not markdown_file:
        raise ValueError("Provide either --markdown or --markdown-file")
    if markdown:
        return markdown
    return Path(markdown_file).expanduser().read_text(encoding="utf-8")
