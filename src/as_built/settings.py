from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from as_built.config import LlmProvider, LlmTier, resolve_provider
from as_built.inputs import parse_github_url
from as_built.logging import logger

ENV_FILE = find_dotenv(usecwd=True)
RC_FILENAME = ".asbuiltrc"
DEFAULT_DEADLINE_SECONDS = 300.0


def load_environment(env_file: str | Path | None = None) -> bool:
    """Load the tool's own credentials from a ``.env`` file.

    Values already present in the process environment always win.

    Args:
        env_file: Explicit dotenv path; defaults to the one found from the cwd upwards.

    Returns:
        bool: True if at least one variable was read from the file.
    """
    target = env_file or ENV_FILE
    if not target:
        return False
    return load_dotenv(target, override=False)


def load_project_defaults(root: Path) -> dict[str, Any]:
    """Read scan defaults from ``.asbuiltrc`` at the project root.

    The file may be YAML or JSON (JSON being valid YAML). Unknown keys are kept
    and rejected later by :class:`Settings` validation.

    Args:
        root (Path): project root to look in

    Raises:
        ValueError: if the file exists but is not a mapping

    Returns:
        dict[str, Any]: the defaults, with dashed keys normalized to underscores
    """
    rc_path = root / RC_FILENAME
    if not rc_path.is_file():
        return {}
    try:
        data = yaml.safe_load(rc_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        msg = f"{rc_path} is neither valid YAML nor JSON: {e}"
        raise ValueError(msg) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"{rc_path} must contain a mapping, got {type(data).__name__}"
        raise ValueError(msg)  # noqa: TRY004
    logger.info("Loaded project defaults", path=str(rc_path), keys=sorted(data))
    return {str(k).replace("-", "_"): v for k, v in data.items()}


class Settings(BaseModel):
    """Resolved options for one CLI invocation."""

    model_config = ConfigDict(extra="forbid")

    command: str = Field(default="scan", description="Subcommand: scan or collect.")
    path: Path = Field(default_factory=Path.cwd, description="Project root.")
    github: str = Field(default="", description="GitHub repository URL or owner/repo.")
    github_token: str = Field(default="", description="GitHub token for private repositories.")
    archive: Path | None = Field(default=None, description="Zip archive of the project.")
    provider: LlmProvider = Field(default=LlmProvider.GEMINI, description="LLM provider.")
    premium: bool = Field(default=False, description="Use the premium model tier.")
    prd: Path | None = Field(default=None, description="Reference document (.md or .txt).")
    subdir: str = Field(default="", description="Scope the scan to this subdirectory.")
    output: Path = Field(default=Path("."), description="Directory receiving the documents.")
    store_dir: Path | None = Field(default=None, description="Directory of persisted scan records.")
    deadline: float = Field(
        default=DEFAULT_DEADLINE_SECONDS,
        gt=0,
        description="Execution budget for one scan, in seconds.",
    )
    api_key: str = Field(default="", description="API key overriding the environment.")
    log_file: str = Field(default="", description="Log file path.")
    project_name: str = Field(default="", description="Name shown in the generated documents.")

    @field_validator("provider", mode="before")
    @classmethod
    def resolve_alias(cls, value: Any) -> LlmProvider:  # noqa: ANN401
        if isinstance(value, LlmProvider):
            return value
        return resolve_provider(str(value) if value else None)

    @property
    def tier(self) -> LlmTier:
        """Tier selected by ``--premium``."""
        return LlmTier.PREMIUM if self.premium else LlmTier.DEFAULT

    @property
    def subdirectory(self) -> str | None:
        """Subdirectory scope, or None when the whole tree is scanned."""
        return self.subdir or None

    @property
    def resolved_project_name(self) -> str:
        """Explicit project name, else the repository or directory name."""
        if self.project_name:
            return self.project_name
        if self.github:
            return parse_github_url(self.github).repo
        if self.archive:
            return self.archive.stem
        return self.path.resolve().name or "project"

    @classmethod
    def from_sources(cls, cli_values: dict[str, Any]) -> Settings:
        """Merge ``.asbuiltrc`` defaults under explicitly given CLI values.

        Args:
            cli_values (dict[str, Any]): argparse namespace as a dict; None means "not given"

        Returns:
            Settings: the validated settings
        """
        given = {k: v for k, v in cli_values.items() if v is not None}
        root = Path(given.get("path") or Path.cwd())
        merged = load_project_defaults(root)
        merged.update(given)
        return cls.model_validate(merged)
