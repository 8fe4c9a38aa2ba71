from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict

from as_built.config import DELIMITERS, DOCUMENT_FILENAMES, DocumentKind
from as_built.logging import logger
from as_built.models import ParsedOutput, ParseOutcome

HEADER_PATTERNS: dict[DocumentKind, re.Pattern[str]] = {
    DocumentKind.AGENT: re.compile(r"^#\s+AS_BUILT_AGENT\.md", re.MULTILINE),
    DocumentKind.HUMAN: re.compile(r"^#\s+AS_BUILT_HUMAN\.md", re.MULTILINE),
    DocumentKind.DRIFT: re.compile(r"^#\s+PRD_DRIFT\.md", re.MULTILINE),
}


class SectionExtraction(BaseModel):
    """Result of looking for one delimited document."""

    model_config = ConfigDict(frozen=True)

    content: str | None = None
    truncated: bool = False


def extract_section(text: str, begin: str, end: str) -> SectionExtraction:
    """Extract the text between ``begin`` and ``end``.

    When ``begin`` is present but ``end`` is not, everything after ``begin`` is
    salvaged and the extraction is flagged as truncated.

    Args:
        text (str): the raw response
        begin (str): opening delimiter
        end (str): closing delimiter

    Returns:
        SectionExtraction: stripped content (None if absent or empty) and truncation flag
    """
    start = text.find(begin)
    if start == -1:
        return SectionExtraction()
    content_start = start + len(begin)
    stop = text.find(end, content_start)
    if stop == -1:
        return SectionExtraction(content=text[content_start:].strip() or None, truncated=True)
    return SectionExtraction(content=text[content_start:stop].strip() or None)


def extract_by_headers(text: str) -> dict[DocumentKind, str]:
    """Split a response on the documents' top-level headings.

    Each found heading starts a span that runs to the next heading found, or to
    the end of the text.

    Args:
        text (str): the raw response

    Returns:
        dict[DocumentKind, str]: non-empty spans keyed by document
    """
    starts = sorted(
        (match.start(), kind)
        for kind, pattern in HEADER_PATTERNS.items()
        if (match := pattern.search(text)) is not None
    )
    spans: dict[DocumentKind, str] = {}
    for index, (start, kind) in enumerate(starts):
        stop = starts[index + 1][0] if index + 1 < len(starts) else len(text)
        span = text[start:stop].strip()
        if span:
            spans[kind] = span
    return spans


def parse_output(raw_response: str, expect_drift: bool) -> ParsedOutput:
    """Recover the documents from one model response.

    Delimiter extraction comes first, header sniffing runs when an expected
    document is still missing, and as a last resort the whole response becomes
    the manifest document. Malformed input never raises; degradation is
    reported through ``partial``, ``outcome`` and ``warnings``.

    Args:
        raw_response (str): text returned by the model
        expect_drift (bool): whether a drift document was requested

    Returns:
        ParsedOutput: the documents and their recovery metadata
    """
    expected = [DocumentKind.AGENT, DocumentKind.HUMAN]
    if expect_drift:
        expected.append(DocumentKind.DRIFT)

    warnings: list[str] = []
    docs: dict[DocumentKind, str | None] = {}
    truncated = False

    for kind in expected:
        begin, end = DELIMITERS[kind]
        extraction = extract_section(raw_response, begin, end)
        docs[kind] = extraction.content
        if extraction.truncated:
            truncated = True
            warnings.append(
                f"{DOCUMENT_FILENAMES[kind]} section was truncated (end delimiter missing). "
                "Partial content salvaged.",
            )

    if any(not docs[kind] for kind in expected):
        warnings.append("Delimiter-based parsing failed. Attempting header-based extraction.")
        by_header = extract_by_headers(raw_response)
        for kind in expected:
            if not docs[kind] and by_header.get(kind):
                docs[kind] = by_header[kind]

    if not docs[DocumentKind.AGENT] and not docs[DocumentKind.HUMAN] and raw_response.strip():
        warnings.append("Could not extract individual sections. Using entire response as agent output.")
        docs[DocumentKind.AGENT] = raw_response.strip()

    recovered: set[str] = set()
    missing: set[str] = set()
    for kind in expected:
        name = DOCUMENT_FILENAMES[kind]
        if docs[kind]:
            recovered.add(name)
        elif kind is DocumentKind.DRIFT:
            missing.add(name)
            warnings.append(f"{name} section is missing despite PRD being attached.")
        else:
            missing.add(name)
            warnings.append(f"{name} section is missing from output.")

    partial = truncated or bool(missing)
    if not recovered:
        outcome = ParseOutcome.EMPTY
    elif partial:
        outcome = ParseOutcome.PARTIAL
    else:
        outcome = ParseOutcome.COMPLETE

    if warnings:
        logger.info("Parsed LLM output with warnings", outcome=str(outcome), warnings=warnings)

    return ParsedOutput(
        manifest_doc=docs[DocumentKind.AGENT] or "",
        human_doc=docs[DocumentKind.HUMAN] or "",
        drift_doc=docs.get(DocumentKind.DRIFT) or None,
        partial=partial,
        truncated=truncated,
        outcome=outcome,
        warnings=tuple(warnings),
        recovered_sections=frozenset(recovered),
        missing_sections=frozenset(missing),
    )
