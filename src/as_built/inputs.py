from __future__ import annotations

import asyncio
import zipfile
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from as_built.exceptions import (
    GitHubApiError,
    GitHubAuthError,
    GitHubInputError,
    GitHubNotFoundError,
    GitHubRateLimitError,
    PayloadTooLargeError,
    UnsupportedReferenceFormatError,
)
from as_built.filters import is_hard_blocked, should_enter_directory, try_decode_utf8
from as_built.logging import logger

if TYPE_CHECKING:
    from collections.abc import Sequence

MAX_ARCHIVE_BYTES = 100 * 1024 * 1024
REFERENCE_EXTENSIONS = (".md", ".txt")

GITHUB_API = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
GITHUB_BATCH_SIZE = 30
GITHUB_MAX_FILES = 20_000
GITHUB_SIZE_WARNING_KB = 200_000


# ------------------------------- Helpers -------------------------------------


def safe_relative_path(raw: str) -> PurePosixPath | None:
    """Normalize an archive or tree path, rejecting anything that escapes its root.

    Args:
        raw (str): path as stored in the archive or returned by an API

    Returns:
        PurePosixPath | None: the relative path, or None if absolute, empty or climbing out
    """
    cleaned = raw.replace("\\", "/")
    path = PurePosixPath(cleaned)
    if not path.parts or path.is_absolute() or ".." in path.parts:
        return None
    # drive-qualified names such as "C:/x" from archives built on Windows
    if ":" in path.parts[0]:
        return None
    return path


def worth_fetching(path: PurePosixPath) -> bool:
    """Skip files the collector would throw away anyway: pruned trees and secrets."""
    if is_hard_blocked(path.name):
        return False
    return all(should_enter_directory(part) for part in path.parts[:-1])


def _write_file(destination: Path, relative: PurePosixPath, data: bytes) -> None:
    target = destination.joinpath(*relative.parts)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


# ------------------------------- Archives ------------------------------------


def detect_common_root(paths: Sequence[str]) -> str:
    """Return ``"top/"`` when every path lives under one single top directory, else ``""``."""
    if not paths:
        return ""
    firsts = {p.split("/", 1)[0] for p in paths}
    if len(firsts) == 1 and all("/" in p for p in paths):
        return firsts.pop() + "/"
    return ""


def extract_archive(archive: Path, destination: Path, max_bytes: int = MAX_ARCHIVE_BYTES) -> Path:
    """Materialize a zip upload into ``destination``.

    A single wrapping top-level directory (as produced by most zip tools and by
    GitHub downloads) is stripped. Entries with absolute paths or ``..``
    components are skipped.

    Args:
        archive (Path): the zip file
        destination (Path): directory to extract into
        max_bytes (int): largest accepted archive size

    Raises:
        PayloadTooLargeError: if the archive is bigger than ``max_bytes``
        zipfile.BadZipFile: if the file is not a zip archive

    Returns:
        Path: ``destination``, ready to be collected
    """
    size = archive.stat().st_size
    if size > max_bytes:
        raise PayloadTooLargeError(
            size_bytes=size,
            limit_bytes=max_bytes,
            message=(
                f"Upload exceeds {max_bytes // (1024 * 1024)} MB limit "
                f"(received {size / 1024 / 1024:.1f} MB)"
            ),
        )

    destination.mkdir(parents=True, exist_ok=True)
    written = 0
    with zipfile.ZipFile(archive) as zf:
        entries = [info for info in zf.infolist() if not info.is_dir()]
        root_prefix = detect_common_root([info.filename.replace("\\", "/") for info in entries])
        for info in entries:
            raw = info.filename.replace("\\", "/").removeprefix(root_prefix)
            relative = safe_relative_path(raw)
            if relative is None:
                logger.warning("Skipping unsafe archive entry", entry=info.filename)
                continue
            _write_file(destination, relative, zf.read(info))
            written += 1

    logger.info("Archive extracted", archive=str(archive), files=written, stripped_root=root_prefix or None)
    return destination


# --------------------------- Reference documents -----------------------------


def read_reference_document(path: Path) -> str:
    """Read the plain text of a reference (PRD) document.

    Args:
        path (Path): ``.md`` or ``.txt`` file

    Raises:
        UnsupportedReferenceFormatError: for any other extension

    Returns:
        str: the document text
    """
    ext = path.suffix.lower()
    if ext not in REFERENCE_EXTENSIONS:
        raise UnsupportedReferenceFormatError(
            file=path,
            message=f'Unsupported PRD format: "{ext}". Supported formats: {", ".join(REFERENCE_EXTENSIONS)}',
        )
    return path.read_bytes().decode("utf-8", errors="replace")


# --------------------------------- GitHub ------------------------------------


class GitHubRepoRef(BaseModel):
    """``owner/repo`` plus an optional branch taken from a ``/tree/<branch>`` URL."""

    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    branch: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


class GitHubFetchResult(BaseModel):
    """What was materialized from a repository."""

    model_config = ConfigDict(frozen=True)

    root: Path
    branch: str
    file_count: int = Field(default=0, ge=0)
    repo_size_kb: int = Field(default=0, ge=0)
    size_warning: bool = Field(default=False, description="Repository is over the size warning threshold")
    truncated: bool = Field(default=False, description="Tree listing or file count was capped")


def parse_github_url(value: str) -> GitHubRepoRef:
    """Parse ``https://github.com/owner/repo[/tree/branch]``, ``github.com/...`` or ``owner/repo``.

    Args:
        value (str): user input

    Raises:
        GitHubInputError: when no ``owner/repo`` pair can be read

    Returns:
        GitHubRepoRef: the parsed reference
    """
    cleaned = value.strip().rstrip("/")
    lowered = cleaned.lower()
    for scheme in ("https://", "http://"):
        if lowered.startswith(scheme):
            cleaned = cleaned[len(scheme) :]
            lowered = cleaned.lower()
    if lowered.startswith("github.com/"):
        cleaned = cleaned[len("github.com/") :]
    cleaned = cleaned.removesuffix(".git")

    segments = [s for s in cleaned.split("/") if s]
    if len(segments) < 2:  # noqa: PLR2004
        raise GitHubInputError(message=f'Invalid GitHub URL: expected "owner/repo" format, got "{value}"')
    branch = "/".join(segments[3:]) if len(segments) > 3 and segments[2] == "tree" else None  # noqa: PLR2004
    return GitHubRepoRef(owner=segments[0], repo=segments[1], branch=branch)


class GitHubFetcher:
    """Downloads a repository snapshot through the GitHub REST API.

    Blobs are fetched in batches of concurrent requests so that large trees do
    not fan out without bound.
    """

    def __init__(
        self,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        *,
        api_url: str = GITHUB_API,
        batch_size: int = GITHUB_BATCH_SIZE,
        max_files: int = GITHUB_MAX_FILES,
    ) -> None:
        self.token = token
        self.client = client
        self.api_url = api_url.rstrip("/")
        self.batch_size = batch_size
        self.max_files = max_files

    def _headers(self, accept: str = "application/vnd.github+json") -> dict[str, str]:
        headers = {"Accept": accept, "X-GitHub-Api-Version": GITHUB_API_VERSION}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @staticmethod
    def raise_for_response(response: httpx.Response) -> None:
        """Map a failed GitHub response to the matching exception.

        Raises:
            GitHubRateLimitError: when the rate limit is exhausted
            GitHubAuthError: on 401/403
            GitHubNotFoundError: on 404
            GitHubApiError: on any other failure
        """
        if response.is_success:
            return
        status = response.status_code
        remaining = response.headers.get("x-ratelimit-remaining")
        reset = response.headers.get("x-ratelimit-reset")
        if status in {401, 403, 429}:
            if remaining == "0" and reset:
                reset_at = datetime.fromtimestamp(int(reset), tz=UTC)
                raise GitHubRateLimitError(
                    message=f"GitHub API rate limit exceeded. Resets at {reset_at:%H:%M:%S} UTC.",
                    reset_at=reset_at,
                )
            raise GitHubAuthError(
                message="GitHub authentication failed. The token may be invalid, expired or revoked.",
            )
        if status == 404:  # noqa: PLR2004
            raise GitHubNotFoundError(
                message=(
                    "Repository not found. It may not exist, or the token may not have access "
                    "to this private repository."
                ),
            )
        raise GitHubApiError(message=f"GitHub API error: {status} {response.reason_phrase}", status_code=status)

    async def _get(self, client: httpx.AsyncClient, url: str, accept: str | None = None) -> httpx.Response:
        headers = self._headers(accept) if accept else self._headers()
        return await client.get(url, headers=headers)

    async def _get_json(self, client: httpx.AsyncClient, path: str) -> Any:  # noqa: ANN401
        response = await self._get(client, f"{self.api_url}{path}")
        self.raise_for_response(response)
        return response.json()

    async def _fetch_blob(
        self,
        client: httpx.AsyncClient,
        ref: GitHubRepoRef,
        entry: dict[str, Any],
    ) -> bytes | None:
        url = f"{self.api_url}/repos/{ref.full_name}/git/blobs/{entry['sha']}"
        try:
            response = await self._get(client, url, accept="application/vnd.github.raw+json")
        except httpx.HTTPError as e:
            logger.warning("Failed to fetch blob", path=entry["path"], error=str(e))
            return None
        if not response.is_success:
            logger.warning("Failed to fetch blob", path=entry["path"], status=response.status_code)
            return None
        return response.content

    async def fetch(self, ref: GitHubRepoRef, destination: Path) -> GitHubFetchResult:
        """Materialize the text files of ``ref`` under ``destination``.

        Args:
            ref (GitHubRepoRef): repository and optional branch
            destination (Path): directory receiving the files

        Returns:
            GitHubFetchResult: branch used, counters and warnings
        """
        if self.client is not None:
            return await self._fetch(self.client, ref, destination)
        async with httpx.AsyncClient(timeout=60.0, follow_redirects=True) as client:
            return await self._fetch(client, ref, destination)

    async def _fetch(self, client: httpx.AsyncClient, ref: GitHubRepoRef, destination: Path) -> GitHubFetchResult:
        meta = await self._get_json(client, f"/repos/{ref.full_name}")
        branch = ref.branch or meta["default_branch"]
        repo_size_kb = int(meta.get("size", 0))
        size_warning = repo_size_kb > GITHUB_SIZE_WARNING_KB
        if size_warning:
            logger.warning("Large repository", repo=ref.full_name, size_kb=repo_size_kb)

        tree = await self._get_json(client, f"/repos/{ref.full_name}/git/trees/{branch}?recursive=1")
        truncated = bool(tree.get("truncated", False))

        blobs: list[tuple[PurePosixPath, dict[str, Any]]] = []
        for entry in tree.get("tree", []):
            if entry.get("type") != "blob":
                continue
            relative = safe_relative_path(entry["path"])
            if relative is None or not worth_fetching(relative):
                continue
            blobs.append((relative, entry))
        if len(blobs) > self.max_files:
            blobs = blobs[: self.max_files]
            truncated = True

        destination.mkdir(parents=True, exist_ok=True)
        written = 0
        for start in range(0, len(blobs), self.batch_size):
            batch = blobs[start : start + self.batch_size]
            contents = await asyncio.gather(*(self._fetch_blob(client, ref, entry) for _, entry in batch))
            for (relative, _), data in zip(batch, contents, strict=True):
                if not data or try_decode_utf8(data) is None:
                    continue
                _write_file(destination, relative, data)
                written += 1

        logger.info(
            "GitHub repository fetched",
            repo=ref.full_name,
            branch=branch,
            files=written,
            truncated=truncated,
        )
        return GitHubFetchResult(
            root=destination,
            branch=branch,
            file_count=written,
            repo_size_kb=repo_size_kb,
            size_warning=size_warning,
            truncated=truncated,
        )
