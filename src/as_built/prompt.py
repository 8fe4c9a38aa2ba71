from __future__ import annotations

import re
from typing import TYPE_CHECKING

from as_built import prompt_templates as templates
from as_built.config import (
    ANALYSIS_BEGIN,
    ANALYSIS_END,
    DELIMITERS,
    REFERENCE_BEGIN,
    REFERENCE_END,
    DocumentKind,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import date

    from as_built.models import CollectedFile

HIGH_SIGNAL_TAG = " [HIGH-SIGNAL]"
FILE_END_MARKER = "--- END FILE ---"
_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def fill(template: str, **values: object) -> str:
    """Substitute ``{name}`` placeholders in a single pass.

    Unlike :meth:`str.format`, braces that are not a known placeholder are left
    untouched, so templates can show JSON or code. Substituted values are never
    scanned again.

    Args:
        template (str): text with ``{name}`` placeholders
        **values: replacement per placeholder name

    Returns:
        str: the filled text
    """
    return _PLACEHOLDER.sub(lambda m: str(values.get(m[1], m[0])), template)


def file_header(file: CollectedFile) -> str:
    """Opening marker of a file block, carrying path, size and signal tag."""
    tag = HIGH_SIGNAL_TAG if file.high_signal else ""
    return f"--- FILE: {file.relative_path} ({file.size_bytes} bytes){tag} ---"


def format_file_block(file: CollectedFile) -> str:
    """Wrap one file's content in its boundary markers."""
    return f"{file_header(file)}\n{file.content}\n{FILE_END_MARKER}"


def format_tree(tree: Sequence[str]) -> str:
    """Render the flat path list as a fenced block."""
    return "\n".join(["```", *tree, "```"])


def render_output_protocol(*, include_drift: bool) -> str:
    """Build the delimiter instructions from the shared delimiter table.

    Args:
        include_drift (bool): also ask for the drift document

    Returns:
        str: the protocol block of the prompt
    """
    agent_begin, agent_end = DELIMITERS[DocumentKind.AGENT]
    human_begin, human_end = DELIMITERS[DocumentKind.HUMAN]
    drift_begin, drift_end = DELIMITERS[DocumentKind.DRIFT]
    drift_block = ""
    if include_drift:
        drift_block = fill(
            templates.DRIFT_PROTOCOL_BLOCK,
            human_end=human_end,
            drift_begin=drift_begin,
            drift_end=drift_end,
        )
    return fill(
        templates.OUTPUT_PROTOCOL,
        agent_begin=agent_begin,
        agent_end=agent_end,
        human_begin=human_begin,
        human_end=human_end,
        drift_block=drift_block,
    )


def assemble_prompt(
    files: Sequence[CollectedFile],
    tree: Sequence[str],
    project_name: str,
    reference_attached: bool,
    reference_content: str | None = None,
    *,
    scan_date: date,
) -> str:
    """Assemble the single prompt sent to the model for a scan.

    Sections come in a fixed order: preamble, project header, analysis
    checklist, output formats, delimiter protocol, reference document (if
    any), directory tree, then every file in the order given. The result
    depends only on the arguments.

    Args:
        files (Sequence[CollectedFile]): collected files, already ordered
        tree (Sequence[str]): sorted path manifest
        project_name (str): name shown in the generated documents
        reference_attached (bool): whether a reference document came with the scan
        reference_content (str | None): plain text of the reference document
        scan_date (date): date stamped into the documents

    Returns:
        str: the assembled prompt
    """
    include_drift = bool(reference_attached and reference_content and reference_content.strip())
    stamp = scan_date.isoformat()

    formats = [templates.AGENT_OUTPUT_FORMAT, templates.HUMAN_OUTPUT_FORMAT]
    if include_drift:
        formats.append(templates.DRIFT_OUTPUT_FORMAT)
    output_formats = fill("\n\n".join(formats), project_name=project_name, date=stamp)

    sections: list[str] = [
        templates.SYSTEM_PREAMBLE,
        "",
        f"# Project: {project_name}",
        f"# Scan Date: {stamp}",
        f"# Files Analyzed: {len(files)}",
        "",
        templates.ANALYSIS_CHECKLIST,
        "",
        output_formats,
        "",
        render_output_protocol(include_drift=include_drift),
    ]

    if include_drift:
        sections += [
            "",
            "## Attached PRD Document",
            "",
            "This is the original PRD of the project. Use it for the drift analysis.",
            "",
            REFERENCE_BEGIN,
            reference_content or "",
            REFERENCE_END,
        ]

    sections += [
        "",
        "## Project Directory Structure",
        "",
        format_tree(tree),
        "",
        fill(templates.FILES_INTRO, file_count=len(files)),
        "",
    ]
    for file in files:
        sections += [format_file_block(file), ""]

    return "\n".join(sections)


def build_drift_prompt(
    project_name: str,
    reference_content: str,
    manifest_doc: str,
    tree: Sequence[str] | None = None,
    *,
    scan_date: date,
) -> str:
    """Build the standalone comparison prompt used when the drift document is missing.

    Args:
        project_name (str): name shown in the document
        reference_content (str): plain text of the reference document
        manifest_doc (str): the AS_BUILT_AGENT.md already produced
        tree (Sequence[str] | None): optional path manifest for extra context
        scan_date (date): date stamped into the document

    Returns:
        str: the drift prompt
    """
    sections = [fill(templates.DRIFT_STANDALONE, project_name=project_name, date=scan_date.isoformat())]
    if tree:
        sections += ["", "## Project Directory Structure", "", format_tree(tree)]
    sections += [
        "",
        "## Original PRD Document",
        "",
        "Go through this document section by section and extract every requirement.",
        "",
        REFERENCE_BEGIN,
        reference_content,
        REFERENCE_END,
        "",
        "## Codebase Analysis (AS_BUILT_AGENT.md)",
        "",
        "This describes what was actually built. Look here for evidence of each PRD requirement.",
        "",
        ANALYSIS_BEGIN,
        manifest_doc,
        ANALYSIS_END,
        "",
        templates.DRIFT_FINAL_INSTRUCTION,
    ]
    return "\n".join(sections)
