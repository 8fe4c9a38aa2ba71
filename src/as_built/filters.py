from __future__ import annotations

import posixpath
import re
from typing import TYPE_CHECKING

import pathspec
from pydantic import BaseModel, ConfigDict

from as_built.config import (
    BINARY_NONPRINTABLE_RATIO,
    BINARY_SNIFF_CHARS,
    CONFIG_JSON_NAMES,
    EDITOR_TEMP_SUFFIXES,
    EGG_INFO_SUFFIX,
    EXCLUDED_COMPOUND_SUFFIXES,
    EXCLUDED_DIRS,
    EXCLUDED_EXTENSIONS,
    EXCLUDED_FILENAMES,
    HARD_BLOCKED_NAMES,
    HARD_BLOCKED_PREFIX,
    HIGH_SIGNAL_NAMES,
    HIGH_SIGNAL_PATH_PATTERNS,
    HIGH_SIGNAL_PREFIXES,
    LOCK_FILES,
    SIZE_GATED_EXTENSIONS,
    SIZE_THRESHOLD_BYTES,
)
from as_built.logging import logger

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

GITIGNORE_FILENAME = ".gitignore"
_NON_PRINTABLE = re.compile(r"[\x00-\x08\x0E-\x1F\x7F]")


class FilterDecision(BaseModel):
    """Verdict of the filter policy for one path."""

    model_config = ConfigDict(frozen=True)

    included: bool
    high_signal: bool = False
    reason: str | None = None


def _excluded(reason: str) -> FilterDecision:
    return FilterDecision(included=False, reason=reason)


def normalize_subdirectory(subdirectory: str | None) -> str | None:
    """Normalize a user-supplied scope to ``a/b`` form.

    Backslashes become slashes; leading and trailing slashes are stripped.

    Args:
        subdirectory (str | None): raw scope

    Returns:
        str | None: the normalized scope, or None when it is empty
    """
    if not subdirectory:
        return None
    normalized = subdirectory.replace("\\", "/").strip("/")
    return normalized or None


def is_hard_blocked(filename: str) -> bool:
    """``.env`` and ``.env.*`` never leave the machine."""
    return filename in HARD_BLOCKED_NAMES or filename.startswith(HARD_BLOCKED_PREFIX)


def is_in_scope(relative_path: str, scope: str | None) -> bool:
    """Check that ``relative_path`` is the scope itself or lives below it."""
    if not scope:
        return True
    return relative_path == scope or relative_path.startswith(scope + "/")


def is_high_signal(filename: str, relative_path: str) -> bool:
    """Whether a kept file is a manifest, config, workflow or doc worth reading first.

    Args:
        filename (str): basename of the file
        relative_path (str): forward-slash path relative to the root

    Returns:
        bool: True when the name, a name prefix or the path matches the allow-list
    """
    if filename in HIGH_SIGNAL_NAMES:
        return True
    if filename.startswith(HIGH_SIGNAL_PREFIXES):
        return True
    return any(pattern.match(relative_path) for pattern in HIGH_SIGNAL_PATH_PATTERNS)


def should_enter_directory(name: str) -> bool:
    """Directory pruning: noise directories are never descended into."""
    return name not in EXCLUDED_DIRS and not name.endswith(EGG_INFO_SUFFIX)


def build_gitignore_spec(lines: Iterable[str]) -> pathspec.PathSpec | None:
    """Compile gitignore lines into a matcher.

    Args:
        lines (Iterable[str]): raw ``.gitignore`` lines

    Returns:
        pathspec.PathSpec | None: the matcher, or None when no pattern is active
    """
    spec = pathspec.PathSpec.from_lines("gitwildmatch", lines)
    return spec if any(p.include is not None for p in spec.patterns) else None


def load_gitignore(root: Path) -> pathspec.PathSpec | None:
    """Load the root ``.gitignore`` of a project, if any.

    Args:
        root (Path): project root

    Returns:
        pathspec.PathSpec | None: matcher over root-relative paths, or None
    """
    gitignore = root / GITIGNORE_FILENAME
    try:
        text = gitignore.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("Could not read .gitignore", path=str(gitignore), error=str(e))
        return None
    return build_gitignore_spec(text.splitlines())


def _excluded_suffix(filename: str) -> str | None:
    lower = filename.lower()
    for suffix in EXCLUDED_COMPOUND_SUFFIXES:
        if lower.endswith(suffix):
            return suffix
    return None


def decide(
    relative_path: str,
    size_bytes: int,
    gitignore: pathspec.PathSpec | None = None,
    subdirectory: str | None = None,
) -> FilterDecision:
    """Apply the layered inclusion policy to one file.

    The first matching rule wins: hard block, subdirectory scope, gitignore,
    name rules, extension rules, size gate, then default acceptance with the
    high-signal flag. The function is pure.

    Args:
        relative_path (str): forward-slash path relative to the root
        size_bytes (int): file size in bytes
        gitignore (pathspec.PathSpec | None): root gitignore matcher
        subdirectory (str | None): scope, or None

    Returns:
        FilterDecision: included flag, high-signal flag and exclusion reason
    """
    filename = posixpath.basename(relative_path)
    ext = posixpath.splitext(filename)[1].lower()
    subdirectory = normalize_subdirectory(subdirectory)

    if is_hard_blocked(filename):
        return _excluded("hard-blocked (.env)")

    if not is_in_scope(relative_path, subdirectory):
        return _excluded(f"outside subdirectory: {subdirectory}")

    if gitignore is not None and gitignore.match_file(relative_path):
        return _excluded(GITIGNORE_FILENAME)

    if filename in LOCK_FILES:
        return _excluded("lock file")
    if filename in EXCLUDED_FILENAMES:
        return _excluded("excluded filename")
    if filename.endswith(EDITOR_TEMP_SUFFIXES):
        return _excluded("editor temp file")

    suffix = _excluded_suffix(filename)
    if suffix:
        return _excluded(f"excluded suffix: {suffix}")
    if ext in EXCLUDED_EXTENSIONS:
        return _excluded(f"excluded extension: {ext}")

    if (
        ext in SIZE_GATED_EXTENSIONS
        and size_bytes > SIZE_THRESHOLD_BYTES
        and filename not in CONFIG_JSON_NAMES
    ):
        return _excluded(f"data file over 1MB ({size_bytes / SIZE_THRESHOLD_BYTES:.1f}MB)")

    return FilterDecision(included=True, high_signal=is_high_signal(filename, relative_path))


class FileFilter:
    """Filter policy bound to one project root.

    Bundles the root's gitignore matcher and the normalized subdirectory scope
    so the collector can ask per-path questions without re-reading anything.
    """

    def __init__(
        self,
        gitignore: pathspec.PathSpec | None = None,
        subdirectory: str | None = None,
    ) -> None:
        self.gitignore = gitignore
        self.subdirectory = normalize_subdirectory(subdirectory)

    @classmethod
    def for_root(cls, root: Path, subdirectory: str | None = None) -> FileFilter:
        """Build a filter for ``root``, loading its ``.gitignore`` if present."""
        return cls(gitignore=load_gitignore(root), subdirectory=subdirectory)

    def check(self, relative_path: str, size_bytes: int) -> FilterDecision:
        """Decide whether a file under the root is kept."""
        return decide(relative_path, size_bytes, self.gitignore, self.subdirectory)

    def should_enter_directory(self, name: str) -> bool:
        """Decide whether the walker may descend into a directory named ``name``."""
        return should_enter_directory(name)


def looks_binary(text: str) -> bool:
    """Binary safety net over decoded text.

    Args:
        text (str): decoded content

    Returns:
        bool: True when more than 10% of the leading sample is non-printable
    """
    sample = text[:BINARY_SNIFF_CHARS]
    if not sample:
        return False
    hits = len(_NON_PRINTABLE.findall(sample))
    return hits / len(sample) > BINARY_NONPRINTABLE_RATIO


def try_decode_utf8(data: bytes) -> str | None:
    """Decode bytes as UTF-8 text unless they look binary.

    Args:
        data (bytes): raw file content

    Returns:
        str | None: the text, or None when undecodable or binary
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if looks_binary(text):
        return None
    return text
