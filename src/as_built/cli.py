"""
as_built: reverse-engineer a codebase into its as-built documentation.

Overview
--------
The tool reads a project (local directory, zip archive or GitHub repository),
keeps the files worth reading, assembles one large prompt and asks an LLM for
three documents:

1) **AS_BUILT_AGENT.md**: a dense manifest meant for coding agents.
2) **AS_BUILT_HUMAN.md**: a narrative overview for people.
3) **PRD_DRIFT.md**: only when a reference document (PRD) is attached, the
   gap between what was specified and what was built.

Usage
-----
Run `as-built --help` for full options. Common examples:
    - Scan the current directory with Gemini:
        as-built scan .

    - Scan a GitHub repository with Claude's premium tier, comparing it to a PRD:
        as-built scan --github https://github.com/owner/repo --provider claude --premium --prd PRD.md

    - Only see what would be sent, without calling a model:
        as-built collect . --subdir src
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import tempfile
import uuid
import zipfile
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING

from as_built import __version__
from as_built.config import DOCUMENT_FILENAMES, DocumentKind, ScanStatus
from as_built.exceptions import AsBuiltError
from as_built.file_manipulation import collect_files, require_subdirectory
from as_built.inputs import GitHubFetcher, extract_archive, parse_github_url, read_reference_document
from as_built.llm import LlmGateway
from as_built.logging import log_to_file, logger
from as_built.models import ScanRequest
from as_built.prompt import assemble_prompt
from as_built.scan import ScanOrchestrator
from as_built.settings import Settings, load_environment
from as_built.store import InMemoryScanStore, JsonFileScanStore
from as_built.tokens import TokenEstimator

if TYPE_CHECKING:
    from collections.abc import Sequence

    from as_built.models import ScanRecord
    from as_built.store import ScanStore

EXIT_OK = 0
EXIT_SCAN_FAILED = 1
EXIT_INPUT_ERROR = 2

INPUT_ERRORS = (AsBuiltError, ValueError, OSError, zipfile.BadZipFile)


# ------------------------------- Arguments -----------------------------------


def _add_common_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("path", nargs="?", default=None, help="Project root (default: current directory).")
    p.add_argument("--subdir", type=str, default=None, help="Only scan this subdirectory.")
    p.add_argument(
        "--provider",
        type=str,
        default=None,
        help="LLM provider: gemini, claude or openai (aliases: google, anthropic, gpt).",
    )
    p.add_argument("--premium", action="store_true", default=None, help="Use the premium model tier.")
    p.add_argument("--log-file", type=str, default=None, help="Log file path.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="as-built",
        description="Generate as-built documentation for a codebase with an LLM.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Scan a project and write the documents.")
    _add_common_arguments(scan)
    source = scan.add_mutually_exclusive_group()
    source.add_argument("--github", type=str, default=None, help="GitHub repository URL or owner/repo.")
    source.add_argument("--archive", type=Path, default=None, help="Zip archive of the project.")
    scan.add_argument("--github-token", type=str, default=None, help="GitHub token (default: $GITHUB_TOKEN).")
    scan.add_argument("--prd", type=Path, default=None, help="Reference document (.md or .txt).")
    scan.add_argument("--output", type=Path, default=None, help="Directory receiving the documents.")
    scan.add_argument("--store-dir", type=Path, default=None, help="Persist scan records as JSON here.")
    scan.add_argument("--deadline", type=float, default=None, help="Execution budget in seconds (default: 300).")
    scan.add_argument("--api-key", type=str, default=None, help="API key overriding the environment.")
    scan.add_argument("--project-name", type=str, default=None, help="Name shown in the documents.")

    collect = sub.add_parser("collect", help="List the files that would be sent and estimate tokens.")
    _add_common_arguments(collect)
    return p


def parse_args(argv: Sequence[str] | None = None) -> Settings:
    args = build_parser().parse_args(argv)
    return Settings.from_sources(vars(args))


# -------------------------------- Helpers ------------------------------------


async def materialize_project(settings: Settings, workdir: Path) -> Path:
    """Return a local directory holding the project to scan.

    Args:
        settings (Settings): resolved options
        workdir (Path): scratch directory for remote or archived sources

    Returns:
        Path: the project root
    """
    if settings.github:
        ref = parse_github_url(settings.github)
        token = settings.github_token or os.environ.get("GITHUB_TOKEN") or None
        result = await GitHubFetcher(token).fetch(ref, workdir / ref.repo)
        if result.size_warning:
            print(f"⚠ Large repository ({result.repo_size_kb / 1024:.0f} MB). The scan may be slow.")
        if result.truncated:
            print("⚠ Repository listing was truncated; some files were not fetched.")
        return result.root
    if settings.archive:
        return extract_archive(settings.archive, workdir / "archive")
    return settings.path


def build_store(settings: Settings) -> ScanStore:
    if settings.store_dir:
        return JsonFileScanStore(settings.store_dir)
    return InMemoryScanStore()


def write_documents(record: ScanRecord, output: Path) -> list[Path]:
    """Write every document present on ``record`` into ``output``.

    Returns:
        list[Path]: the files written
    """
    output.mkdir(parents=True, exist_ok=True)
    contents = {
        DocumentKind.AGENT: record.manifest_doc,
        DocumentKind.HUMAN: record.human_doc,
        DocumentKind.DRIFT: record.drift_doc,
    }
    written: list[Path] = []
    for kind, content in contents.items():
        if not content:
            continue
        target = output / DOCUMENT_FILENAMES[kind]
        target.write_text(content.rstrip() + "\n", encoding="utf-8")
        written.append(target)
    return written


# ------------------------------- Commands ------------------------------------


async def run_scan(settings: Settings) -> ScanRecord:
    reference = read_reference_document(settings.prd) if settings.prd else None
    project_name = settings.resolved_project_name
    with tempfile.TemporaryDirectory(prefix="as-built-") as tmp:
        root = await materialize_project(settings, Path(tmp))
        require_subdirectory(root, settings.subdirectory)
        request = ScanRequest(
            scan_id=uuid.uuid4().hex,
            root=root,
            project_name=project_name,
            provider=settings.provider,
            tier=settings.tier,
            subdirectory=settings.subdirectory,
            reference_content=reference,
            credential=settings.api_key or None,
            deadline_seconds=settings.deadline,
        )
        orchestrator = ScanOrchestrator(build_store(settings), LlmGateway())
        logger.info("Starting scan", scan_id=request.scan_id, root=str(root), provider=str(settings.provider))
        return await orchestrator.run(request)


def scan_command(settings: Settings) -> int:
    record = asyncio.run(run_scan(settings))
    for line in record.progress_log:
        print(line)
    if record.status is ScanStatus.FAILED:
        print(f"error: {record.error_message}", file=sys.stderr)
        return EXIT_SCAN_FAILED
    for path in write_documents(record, settings.output):
        print(f"Wrote {path}")
    print(f"Scan {record.scan_id} finished: {record.status} files={record.file_count}")
    return EXIT_OK


def collect_command(settings: Settings) -> int:
    collection = collect_files(settings.path, settings.subdirectory)
    for file in collection.files:
        tag = " [HIGH-SIGNAL]" if file.high_signal else ""
        print(f"{file.relative_path} ({file.size_bytes} bytes){tag}")
    prompt = assemble_prompt(
        collection.files,
        collection.tree,
        settings.resolved_project_name,
        reference_attached=False,
        scan_date=date.today(),  # noqa: DTZ011
    )
    estimate = TokenEstimator().check_limit(prompt, settings.provider, settings.tier)
    print(
        f"files={collection.file_count} excluded={collection.excluded_count} "
        f"tokens=~{estimate.estimated_tokens:,} "
        f"({estimate.utilization_ratio:.0%} of {settings.provider} {settings.tier})",
    )
    if estimate.exceeds_limit:
        print("⚠ The prompt exceeds the context window of this provider and tier.")
    elif estimate.is_near_limit:
        print("⚠ The prompt is close to the context window of this provider and tier.")
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    load_environment()
    try:
        settings = parse_args(argv)
        if settings.log_file:
            log_to_file(settings.log_file)
        if settings.command == "collect":
            return collect_command(settings)
        return scan_command(settings)
    except INPUT_ERRORS as e:
        logger.error("Invalid input", error=str(e), error_type=type(e).__name__)
        print(f"error: {e}", file=sys.stderr)
        return EXIT_INPUT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
