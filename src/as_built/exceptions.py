from dataclasses import dataclass
from datetime import datetime
from pathlib import Path


@dataclass(frozen=True)
class AsBuiltError(Exception):
    """Base exception for errors in the as_built package."""

    def __str__(self) -> str:
        return getattr(self, "message", "") or type(self).__name__


@dataclass(frozen=True)
class NoFilesAfterFilteringError(AsBuiltError):
    """Raised when collection yields no file once every filter has been applied."""

    root: Path
    excluded_count: int = 0
    message: str = (
        "No files found after filtering. The project may be empty or fully excluded by ignore rules."
    )


@dataclass(frozen=True)
class ContextWindowExceededError(AsBuiltError):
    """Raised before any model call when the prompt cannot fit the context window."""

    estimated_tokens: int
    context_window: int
    message: str


@dataclass(frozen=True)
class DeadlineExceededError(AsBuiltError):
    """Raised when a scan runs out of its execution budget."""

    deadline_seconds: float
    message: str = "Scan exceeded its execution deadline."


@dataclass(frozen=True)
class UnsupportedReferenceFormatError(AsBuiltError):
    """Raised when a reference document has a format we cannot extract text from."""

    file: Path
    message: str = "Unsupported reference document format."


@dataclass(frozen=True)
class PayloadTooLargeError(AsBuiltError):
    """Raised when an uploaded archive exceeds the accepted size."""

    size_bytes: int
    limit_bytes: int
    message: str = "Upload exceeds the size limit."


@dataclass(frozen=True)
class ScanNotFoundError(AsBuiltError):
    """Raised when a store has no record for the requested scan id."""

    scan_id: str
    message: str = "Scan not found."


@dataclass(frozen=True)
class InvalidStatusTransitionError(AsBuiltError):
    """Raised when a scan record is asked to move to an unreachable status."""

    scan_id: str
    current: str
    requested: str
    message: str = "Invalid scan status transition."


@dataclass(frozen=True)
class GitHubInputError(AsBuiltError):
    """Raised when a GitHub repository reference cannot be parsed."""

    message: str


@dataclass(frozen=True)
class GitHubAuthError(AsBuiltError):
    """Raised when GitHub rejects the supplied token."""

    message: str


@dataclass(frozen=True)
class GitHubNotFoundError(AsBuiltError):
    """Raised when the repository does not exist or is not visible to the token."""

    message: str


@dataclass(frozen=True)
class GitHubRateLimitError(AsBuiltError):
    """Raised when the GitHub API rate limit is exhausted."""

    message: str
    reset_at: datetime | None = None


@dataclass(frozen=True)
class GitHubApiError(AsBuiltError):
    """Raised for any other non-success GitHub API response."""

    message: str
    status_code: int = 0


@dataclass(frozen=True)
class EmptyModelOutputError(AsBuiltError):
    """Raised when a model answered but nothing usable could be recovered."""

    message: str = "The model returned no usable output."


@dataclass(frozen=True)
class SubdirectoryNotFoundError(AsBuiltError):
    """Raised when a requested scan scope is not a directory of the project."""

    subdirectory: str
    message: str = "Subdirectory not found."
