from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

from as_built.exceptions import SubdirectoryNotFoundError
from as_built.filters import FileFilter, normalize_subdirectory, should_enter_directory, try_decode_utf8
from as_built.logging import logger
from as_built.models import CollectedFile, CollectionResult

if TYPE_CHECKING:
    from collections.abc import Iterable


def relpath(path: Path, root: Path) -> str:
    """Send the relative path of path from root.

    Args:
        path (Path): the path to "relativise"
        root (Path): the root to relativise from

    Returns:
        str: the relative path from root to path, with POSIX separators.
            If path is not under root, returns the original path as a string.
    """
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return str(path)


def order_files(files: Iterable[CollectedFile]) -> tuple[CollectedFile, ...]:
    """High-signal files first, then lexicographic by path."""
    return tuple(sorted(files, key=lambda f: (not f.high_signal, f.relative_path)))


def _log_walk_error(error: OSError) -> None:
    logger.warning("Skipping unreadable directory", path=error.filename, error=error.strerror)


def read_text_file(path: Path) -> str | None:
    """Read a file as UTF-8 text, returning None for unreadable or binary files.

    Args:
        path (Path): the file to read

    Returns:
        str | None: decoded content, or None when it should be skipped
    """
    try:
        data = path.read_bytes()
    except OSError as e:
        logger.info("Skipping unreadable file", path=str(path), error=str(e))
        return None
    text = try_decode_utf8(data)
    if text is None:
        logger.info("Skipping binary or undecodable file", path=str(path))
    return text


def collect_files(root: Path, subdirectory: str | None = None) -> CollectionResult:
    """Walk ``root`` and keep the files the filter policy accepts.

    Noise directories are pruned before descent and each pruned directory counts
    as one exclusion. Every regular file seen is recorded in the tree, kept or
    not; rejected, unreadable and binary files count as excluded. Symbolic links
    are not followed.

    Args:
        root (Path): directory holding the project
        subdirectory (str | None): optional scope relative to ``root``

    Raises:
        NotADirectoryError: if ``root`` is not a directory
        SubdirectoryNotFoundError: if ``subdirectory`` is given but absent or excluded

    Returns:
        CollectionResult: ordered files, sorted tree and counters
    """
    root = Path(root)
    if not root.is_dir():
        msg = f"Not a directory: {root}"
        raise NotADirectoryError(msg)
    require_subdirectory(root, subdirectory)

    file_filter = FileFilter.for_root(root, subdirectory)
    files: list[CollectedFile] = []
    tree: list[str] = []
    excluded = 0

    for current, dirs, filenames in os.walk(root, onerror=_log_walk_error):
        base = Path(current)
        kept_dirs: list[str] = []
        for name in sorted(dirs):
            path = base / name
            if path.is_symlink():
                continue
            if not file_filter.should_enter_directory(name):
                logger.debug("Pruned directory", path=relpath(path, root))
                excluded += 1
                continue
            kept_dirs.append(name)
            tree.append(relpath(path, root) + "/")
        dirs[:] = kept_dirs

        for name in sorted(filenames):
            path = base / name
            if path.is_symlink():
                continue
            rel = relpath(path, root)
            tree.append(rel)
            try:
                size = path.stat().st_size
            except OSError as e:
                logger.info("Skipping file without stat", path=rel, error=str(e))
                excluded += 1
                continue

            decision = file_filter.check(rel, size)
            if not decision.included:
                logger.debug("Excluded file", path=rel, reason=decision.reason)
                excluded += 1
                continue

            content = read_text_file(path)
            if content is None:
                excluded += 1
                continue
            files.append(
                CollectedFile(
                    relative_path=rel,
                    content=content,
                    size_bytes=size,
                    high_signal=decision.high_signal,
                ),
            )

    ordered = order_files(files)
    result = CollectionResult(
        files=ordered,
        tree=tuple(sorted(tree)),
        excluded_count=excluded,
        total_size_bytes=sum(f.size_bytes for f in ordered),
    )
    logger.info(
        "Collected files",
        root=str(root),
        subdirectory=file_filter.subdirectory,
        kept=len(ordered),
        excluded=excluded,
        total_size_bytes=result.total_size_bytes,
    )
    return result


def subdirectory_exists(root: Path, subdirectory: str) -> bool:
    """Whether ``subdirectory`` is a directory the collector would descend into.

    Symbolic links, ``..`` segments and pruned noise directories do not count.

    Args:
        root (Path): project root
        subdirectory (str): scope relative to ``root``

    Returns:
        bool: True when the scope can hold collected files
    """
    scope = normalize_subdirectory(subdirectory)
    if not scope:
        return True
    current = Path(root)
    for part in scope.split("/"):
        if part in {"", ".", ".."} or not should_enter_directory(part):
            return False
        current = current / part
        if current.is_symlink() or not current.is_dir():
            return False
    return True


def require_subdirectory(root: Path, subdirectory: str | None) -> None:
    """Validate a scope before committing to a scan.

    Raises:
        SubdirectoryNotFoundError: if the scope does not exist under ``root``
    """
    if subdirectory and not subdirectory_exists(root, subdirectory):
        raise SubdirectoryNotFoundError(
            subdirectory=subdirectory,
            message=f"Subdirectory not found: {subdirectory!r} does not exist in the project or is excluded.",
        )
