# =============================================================================
# Citations — Claim Tags, Expert Bracket Citations, Reasoning Segments
# =============================================================================
#
# Two citation syntaxes meet in the pipeline:
#
#   Document experts answer with bracket citations:
#       Revenue was $611.3B [[Page: 45 | Quote: "Net sales... $611.3 billion"]]
#
#   The final report (and the Web/URL experts) use claim tags:
#       <claim source="10-K.pdf" page="45" quote="Net sales... $611.3 billion"
#              logic="optional derivation">Revenue was $611.3B</claim>
#
# Bracket citations carry no source, so they are normalized into claim
# tags using the name of the expert that produced them, before the text
# reaches the synthesizer and again on anything it echoes back verbatim.
# Sources already present in claim tags (e.g. web URLs) are never renamed.
#
# The synthesizer's reply starts with a <thinking>...</thinking>
# segment; split_thinking() separates it from the cited body.
# =============================================================================

from __future__ import annotations

import html
import re
from collections.abc import Callable, Iterable

from research_swarm.models.schemas import Citation, ExpertResult

THINKING_PATTERN = re.compile(r"<thinking>(.*?)</thinking>", re.DOTALL)

CLAIM_PATTERN = re.compile(r"<claim\s+([^>]*?)>(.*?)</claim>", re.DOTALL)
_ATTRIBUTE_PATTERN = re.compile(r'(\w+)\s*=\s*"([^"]*)"')

BRACKET_PATTERN = re.compile(
    r"\[\[\s*Page:\s*(?P<page>[^|\]]*?)\s*\|\s*Quote:\s*"
    r"(?P<q>[\"'“])(?P<quote>.*?)[\"'”]\s*\]\]",
    re.DOTALL,
)

# Sentence boundary: terminal punctuation followed by whitespace, a
# newline, or the end of a previous claim tag.
_BOUNDARY_PATTERN = re.compile(r"[.!?](?=\s)|\n|</claim>")


def split_thinking(text: str) -> tuple[str, str]:
    """
    Split the reasoning segment from the report body.

    Returns:
        (thinking, content). Thinking is "" when no segment is present.
    """
    match = THINKING_PATTERN.search(text)
    if not match:
        return "", text.strip()
    thinking = match.group(1).strip()
    content = (text[:match.start()] + text[match.end():]).strip()
    return thinking, content


def claim_tag(
    text: str,
    source: str,
    quote: str,
    page: str | None = None,
    logic: str | None = None,
) -> str:
    """Render one <claim> tag with escaped attribute values."""
    attrs = [f'source="{_attr(source)}"']
    if page:
        attrs.append(f'page="{_attr(page)}"')
    attrs.append(f'quote="{_attr(quote)}"')
    if logic:
        attrs.append(f'logic="{_attr(logic)}"')
    return f"<claim {' '.join(attrs)}>{text}</claim>"


def _attr(value: str) -> str:
    return html.escape(value.strip(), quote=True)


def normalize_bracket_citations(text: str, source: str) -> str:
    """
    Rewrite every [[Page: X | Quote: "..."]] citation as a claim tag
    attributed to `source`, wrapping the sentence that precedes it.
    """
    return _rewrite_brackets(text, lambda quote: source)


def attribute_bracket_citations(text: str, results: Iterable[ExpertResult]) -> str:
    """
    Normalize bracket citations left in a synthesized report.

    The source of each citation is the expert whose answer contains the
    quoted text. Unmatched citations get the source "Unattributed".
    """
    results = list(results)

    def _source_for(quote: str) -> str:
        for result in results:
            if quote and quote in result.answer:
                return result.expert
        return "Unattributed"

    return _rewrite_brackets(text, _source_for)


def _rewrite_brackets(text: str, source_for: Callable[[str], str]) -> str:
    pieces: list[str] = []
    cursor = 0
    for match in BRACKET_PATTERN.finditer(text):
        prefix, claim = _split_claim(text[cursor:match.start()])
        quote = match.group("quote")
        page = match.group("page").strip() or None
        pieces.append(prefix)
        pieces.append(claim_tag(claim or quote, source_for(quote), quote, page=page))
        cursor = match.end()
    pieces.append(text[cursor:])
    return "".join(pieces)


def _split_claim(segment: str) -> tuple[str, str]:
    """Split `segment` into (leading text, its final sentence)."""
    body = segment.rstrip()
    cut = 0
    for boundary in _BOUNDARY_PATTERN.finditer(body):
        cut = boundary.end()
    claim = body[cut:]
    stripped = claim.lstrip()
    return body[:cut] + claim[:len(claim) - len(stripped)], stripped


def extract_citations(text: str) -> list[Citation]:
    """Parse every <claim> tag in `text` into a Citation record."""
    citations: list[Citation] = []
    for match in CLAIM_PATTERN.finditer(text):
        attrs = {
            key.lower(): html.unescape(value)
            for key, value in _ATTRIBUTE_PATTERN.findall(match.group(1))
        }
        if "source" not in attrs:
            continue
        citations.append(Citation(
            source=attrs["source"],
            quote=attrs.get("quote", ""),
            page=attrs.get("page"),
            logic=attrs.get("logic"),
            text=match.group(2).strip(),
        ))
    return citations
