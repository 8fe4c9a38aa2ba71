from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum, auto
from pathlib import Path  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from as_built.config import NEAR_LIMIT_RATIO, LlmProvider, LlmTier, ScanStatus


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


class CollectedFile(BaseModel):
    """One text file that survived filtering, ready to be embedded in a prompt.

    Attributes:
        relative_path: Forward-slash path relative to the scanned root.
        content: Decoded UTF-8 content.
        size_bytes: Size on disk, in bytes.
        high_signal: Whether the file is a manifest, config, workflow or doc.
    """

    model_config = ConfigDict(frozen=True)

    relative_path: str = Field(..., description="Forward-slash path relative to the root")
    content: str = Field(..., description="UTF-8 file content")
    size_bytes: int = Field(..., ge=0, description="File size in bytes")
    high_signal: bool = Field(default=False, description="Manifest/config/workflow/docs file")


class CollectionResult(BaseModel):
    """Outcome of walking a root: the kept files plus the structural tree."""

    model_config = ConfigDict(frozen=True)

    files: tuple[CollectedFile, ...] = Field(default=(), description="High-signal first, then by path")
    tree: tuple[str, ...] = Field(default=(), description="Sorted visited paths, directories end with '/'")
    excluded_count: int = Field(default=0, ge=0, description="Files and pruned directories left out")
    total_size_bytes: int = Field(default=0, ge=0, description="Sum of the kept files' sizes")

    @model_validator(mode="after")
    def files_are_in_tree(self) -> CollectionResult:
        known = set(self.tree)
        stray = [f.relative_path for f in self.files if f.relative_path not in known]
        if stray:
            msg = f"Collected files missing from the tree: {stray}"
            raise ValueError(msg)
        return self

    @computed_field
    @property
    def file_count(self) -> int:
        """Number of kept files."""
        return len(self.files)


class TokenEstimate(BaseModel):
    """Pre-flight comparison of a prompt's estimated size against a context window."""

    model_config = ConfigDict(frozen=True)

    estimated_tokens: int = Field(..., ge=0)
    context_window: int = Field(..., gt=0)

    @computed_field
    @property
    def utilization_ratio(self) -> float:
        """Fraction of the window consumed by the prompt (may exceed 1)."""
        return self.estimated_tokens / self.context_window

    @computed_field
    @property
    def is_near_limit(self) -> bool:
        """True once the prompt eats 85% of the window or more."""
        return self.utilization_ratio >= NEAR_LIMIT_RATIO

    @computed_field
    @property
    def exceeds_limit(self) -> bool:
        """True when the prompt alone fills the window."""
        return self.utilization_ratio >= 1


class TokenUsage(BaseModel):
    """Token accounting reported by a provider for one or more calls."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)

    @computed_field
    @property
    def total_tokens(self) -> int:
        """Prompt plus completion tokens."""
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


class LlmResponse(BaseModel):
    """Normalized answer from any provider."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., description="Concatenated text output")
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    model_id: str = Field(..., description="Concrete model that answered")
    finish_reason: str = Field(
        default="stop",
        description="'stop', 'length' (hit the output budget) or the provider's raw reason, lower-cased",
    )

    @computed_field
    @property
    def was_truncated(self) -> bool:
        """Whether the provider stopped because it ran out of output tokens."""
        return self.finish_reason == "length"


class ParseOutcome(StrEnum):
    """Tagged result of parsing a model response."""

    COMPLETE = auto()
    PARTIAL = auto()
    EMPTY = auto()


class ParsedOutput(BaseModel):
    """Documents recovered from one model response, with degradation metadata."""

    model_config = ConfigDict(frozen=True)

    manifest_doc: str = Field(default="", description="AS_BUILT_AGENT.md content")
    human_doc: str = Field(default="", description="AS_BUILT_HUMAN.md content")
    drift_doc: str | None = Field(default=None, description="PRD_DRIFT.md content, when recovered")
    partial: bool = False
    truncated: bool = Field(default=False, description="An end delimiter was missing somewhere")
    outcome: ParseOutcome = ParseOutcome.COMPLETE
    warnings: tuple[str, ...] = ()
    recovered_sections: frozenset[str] = frozenset()
    missing_sections: frozenset[str] = frozenset()


class ScanRequest(BaseModel):
    """Everything the orchestrator needs to run one scan over a materialized root."""

    model_config = ConfigDict(frozen=True)

    scan_id: str = Field(..., min_length=1)
    root: Path = Field(..., description="Local directory holding the project")
    project_name: str = Field(..., min_length=1)
    provider: LlmProvider = LlmProvider.GEMINI
    tier: LlmTier = LlmTier.DEFAULT
    subdirectory: str | None = Field(default=None, description="Scope the scan to this path")
    reference_content: str | None = Field(default=None, description="Plain text of the attached PRD")
    credential: str | None = Field(default=None, description="API key overriding the environment")
    deadline_seconds: float = Field(default=300.0, gt=0, description="Budget for the whole run")

    @computed_field
    @property
    def expects_drift(self) -> bool:
        """A drift document is requested only for a non-blank reference document."""
        return bool(self.reference_content and self.reference_content.strip())


class ScanOutputPayload(BaseModel):
    """Final documents and accounting written once a scan reaches a success state."""

    model_config = ConfigDict(frozen=True)

    manifest_doc: str
    human_doc: str
    drift_doc: str | None = None
    project_name: str
    file_count: int = Field(default=0, ge=0)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class ScanRecord(BaseModel):
    """Persisted lifecycle record of one scan.

    Only a store mutates it; readers get copies.
    """

    scan_id: str
    project_name: str = ""
    provider: LlmProvider | None = None
    tier: LlmTier | None = None
    status: ScanStatus = ScanStatus.PENDING
    progress_log: list[str] = Field(default_factory=list)
    manifest_doc: str | None = None
    human_doc: str | None = None
    drift_doc: str | None = None
    token_usage: TokenUsage | None = None
    error_message: str | None = None
    file_count: int | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @computed_field
    @property
    def is_terminal(self) -> bool:
        """Whether the record has reached completed, partial or failed."""
        return self.status.is_terminal
