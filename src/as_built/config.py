from __future__ import annotations

import re
from enum import StrEnum, auto

from pydantic import BaseModel, ConfigDict, Field


class LlmProvider(StrEnum):
    """Remote model vendors a scan can be sent to."""

    GEMINI = auto()
    CLAUDE = auto()
    OPENAI = auto()


class LlmTier(StrEnum):
    """Model tier: ``default`` is the fast/cheap model, ``premium`` the strongest one."""

    DEFAULT = auto()
    PREMIUM = auto()


class ScanStatus(StrEnum):
    """Lifecycle states of a scan record.

    ``pending`` and ``processing`` are transient; the three others are terminal.
    """

    PENDING = auto()
    PROCESSING = auto()
    COMPLETED = auto()
    PARTIAL = auto()
    FAILED = auto()

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is allowed out of this status."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ScanStatus.COMPLETED, ScanStatus.PARTIAL, ScanStatus.FAILED})

STATUS_TRANSITIONS: dict[ScanStatus, frozenset[ScanStatus]] = {
    ScanStatus.PENDING: frozenset({ScanStatus.PROCESSING, ScanStatus.FAILED}),
    ScanStatus.PROCESSING: frozenset(TERMINAL_STATUSES),
    ScanStatus.COMPLETED: frozenset(),
    ScanStatus.PARTIAL: frozenset(),
    ScanStatus.FAILED: frozenset(),
}

PROVIDER_ALIASES: dict[str, LlmProvider] = {
    "gemini": LlmProvider.GEMINI,
    "google": LlmProvider.GEMINI,
    "claude": LlmProvider.CLAUDE,
    "anthropic": LlmProvider.CLAUDE,
    "openai": LlmProvider.OPENAI,
    "gpt": LlmProvider.OPENAI,
}

# ------------------------------ Filter tables --------------------------------

HARD_BLOCKED_NAMES = frozenset({".env"})
HARD_BLOCKED_PREFIX = ".env."

EXCLUDED_DIRS = frozenset({
    # dependencies
    "node_modules",
    "bower_components",
    ".pnp",
    ".yarn",
    "vendor",
    # version control
    ".git",
    ".svn",
    ".hg",
    ".fossil",
    # build output
    "dist",
    "build",
    "out",
    ".next",
    ".nuxt",
    ".output",
    ".svelte-kit",
    "target",
    "bin",
    "obj",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    "coverage",
    ".nyc_output",
    "htmlcov",
    ".tox",
    # virtual environments
    ".venv",
    "venv",
    "env",
    ".virtualenv",
    ".conda",
    # IDE
    ".idea",
    ".vscode",
    ".vs",
    ".settings",
    # OS
    ".DS_Store",
    # infra and tool caches
    ".docker",
    ".terraform",
    ".serverless",
    ".vercel",
    ".firebase",
    "tmp",
    "temp",
    ".cache",
    ".parcel-cache",
    ".turbo",
})

EGG_INFO_SUFFIX = ".egg-info"

LOCK_FILES = frozenset({
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "Pipfile.lock",
    "poetry.lock",
    "uv.lock",
    "composer.lock",
    "Gemfile.lock",
    "Cargo.lock",
    "go.sum",
})

EXCLUDED_FILENAMES = frozenset({
    ".eslintcache",
    ".stylelintcache",
    "Thumbs.db",
    "Desktop.ini",
    "ehthumbs.db",
    ".DS_Store",
    ".project",
    ".classpath",
})

EDITOR_TEMP_SUFFIXES = (".swp", ".swo", "~")

# Checked before EXCLUDED_EXTENSIONS so that ``app.min.js`` is reported as minified.
EXCLUDED_COMPOUND_SUFFIXES = (
    ".js.map",
    ".css.map",
    ".min.js",
    ".min.css",
    ".bundle.js",
    ".chunk.js",
)

EXCLUDED_EXTENSIONS = frozenset({
    # binary & compiled
    ".exe",
    ".dll",
    ".so",
    ".dylib",
    ".o",
    ".obj",
    ".a",
    ".lib",
    ".class",
    ".jar",
    ".war",
    ".ear",
    ".pyc",
    ".pyo",
    ".pyd",
    ".wasm",
    # media
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".bmp",
    ".ico",
    ".webp",
    ".svg",
    ".mp4",
    ".avi",
    ".mov",
    ".wmv",
    ".flv",
    ".webm",
    ".mp3",
    ".wav",
    ".ogg",
    ".flac",
    ".aac",
    ".ttf",
    ".otf",
    ".woff",
    ".woff2",
    ".eot",
    # archives
    ".zip",
    ".tar",
    ".gz",
    ".bz2",
    ".rar",
    ".7z",
    ".tgz",
    # databases
    ".sqlite",
    ".sqlite3",
    ".db",
    ".mdb",
    ".accdb",
    # sourcemaps
    ".map",
    # certificates & secrets
    ".pem",
    ".key",
    ".crt",
    ".cer",
    ".p12",
    ".pfx",
    ".jks",
    # documents & design
    ".pdf",
    ".doc",
    ".docx",
    ".xls",
    ".xlsx",
    ".ppt",
    ".pptx",
    ".sketch",
    ".fig",
    ".psd",
    ".ai",
    # logs
    ".log",
})

SIZE_THRESHOLD_BYTES = 1_048_576  # 1 MiB, exclusive: only sizes above it are dropped

SIZE_GATED_EXTENSIONS = frozenset({".csv", ".xml", ".sql", ".json"})

CONFIG_JSON_NAMES = frozenset({
    "package.json",
    "tsconfig.json",
    "jsconfig.json",
    "composer.json",
    ".eslintrc.json",
    ".prettierrc.json",
    "firebase.json",
    "vercel.json",
})

HIGH_SIGNAL_NAMES = frozenset({
    # dependency manifests
    "package.json",
    "requirements.txt",
    "setup.py",
    "setup.cfg",
    "pyproject.toml",
    "Cargo.toml",
    "go.mod",
    "Gemfile",
    "composer.json",
    "build.gradle",
    "pom.xml",
    "CMakeLists.txt",
    "Makefile",
    # config
    "tsconfig.json",
    "jsconfig.json",
    "Dockerfile",
    "vercel.json",
    "netlify.toml",
    "fly.toml",
    "firebase.json",
    ".firebaserc",
    ".pre-commit-config.yaml",
    # documentation
    "README.md",
    "CHANGELOG.md",
    "CONTRIBUTING.md",
})

HIGH_SIGNAL_PREFIXES = (
    "next.config",
    "nuxt.config",
    "vite.config",
    "webpack.config",
    "tailwind.config",
    "postcss.config",
    ".eslintrc",
    ".prettierrc",
    "docker-compose",
    "drizzle.config",
)

HIGH_SIGNAL_PATH_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\.github/workflows/[^/].*\.ya?ml$"),
    re.compile(r"^prisma/schema\.prisma$"),
    re.compile(r"^docs/.*\.md$"),
)

# Leading sample inspected by the binary safety net, and the tolerated share of
# non-printable characters within it.
BINARY_SNIFF_CHARS = 8192
BINARY_NONPRINTABLE_RATIO = 0.10

# ------------------------------ Output protocol ------------------------------


class DocumentKind(StrEnum):
    """Documents the model is asked to write, keyed by their delimiter tag."""

    AGENT = "AGENT"
    HUMAN = "HUMAN"
    DRIFT = "DRIFT"


DOCUMENT_FILENAMES: dict[DocumentKind, str] = {
    DocumentKind.AGENT: "AS_BUILT_AGENT.md",
    DocumentKind.HUMAN: "AS_BUILT_HUMAN.md",
    DocumentKind.DRIFT: "PRD_DRIFT.md",
}


def begin_delimiter(kind: DocumentKind) -> str:
    """Return the line that opens ``kind`` in a model response.

    Args:
        kind (DocumentKind): the document being delimited

    Returns:
        str: the opening sentinel, e.g. ``===BEGIN_AGENT_OUTPUT===``
    """
    return f"===BEGIN_{kind.value}_OUTPUT==="


def end_delimiter(kind: DocumentKind) -> str:
    """Return the line that closes ``kind`` in a model response.

    Args:
        kind (DocumentKind): the document being delimited

    Returns:
        str: the closing sentinel, e.g. ``===END_AGENT_OUTPUT===``
    """
    return f"===END_{kind.value}_OUTPUT==="


DELIMITERS: dict[DocumentKind, tuple[str, str]] = {
    kind: (begin_delimiter(kind), end_delimiter(kind)) for kind in DocumentKind
}

REFERENCE_BEGIN = "===BEGIN_PRD==="
REFERENCE_END = "===END_PRD==="
ANALYSIS_BEGIN = "===BEGIN_ANALYSIS==="
ANALYSIS_END = "===END_ANALYSIS==="

# ------------------------------ Provider table -------------------------------


class ProviderProfile(BaseModel):
    """Static facts about one provider: model ids, windows and credentials."""

    model_config = ConfigDict(frozen=True)

    model_ids: dict[LlmTier, str] = Field(..., description="Model identifier per tier")
    context_windows: dict[LlmTier, int] = Field(..., description="Context window (tokens) per tier")
    max_output_tokens: int = Field(..., gt=0, description="Completion budget requested per call")
    api_key_env: str = Field(..., description="Environment variable holding the API key")
    base_url: str = Field(..., description="Root URL of the vendor REST API")


class ProviderTable(BaseModel):
    """Immutable provider configuration handed to the gateway and the token estimator.

    Tests build their own table instead of patching module state.
    """

    model_config = ConfigDict(frozen=True)

    profiles: dict[LlmProvider, ProviderProfile]

    def profile(self, provider: LlmProvider) -> ProviderProfile:
        """Return the profile for ``provider``.

        Args:
            provider (LlmProvider): the provider to look up

        Raises:
            KeyError: if the table has no entry for ``provider``

        Returns:
            ProviderProfile: the provider's static configuration
        """
        return self.profiles[provider]

    def model_id(self, provider: LlmProvider, tier: LlmTier) -> str:
        """Return the concrete model id for a provider and tier."""
        return self.profiles[provider].model_ids[tier]

    def context_window(self, provider: LlmProvider, tier: LlmTier) -> int:
        """Return the context window, in tokens, for a provider and tier."""
        return self.profiles[provider].context_windows[tier]


DEFAULT_PROVIDER_TABLE = ProviderTable(
    profiles={
        LlmProvider.GEMINI: ProviderProfile(
            model_ids={LlmTier.DEFAULT: "gemini-2.5-flash", LlmTier.PREMIUM: "gemini-2.5-pro"},
            context_windows={LlmTier.DEFAULT: 1_000_000, LlmTier.PREMIUM: 1_000_000},
            max_output_tokens=65_536,
            api_key_env="GEMINI_API_KEY",
            base_url="https://generativelanguage.googleapis.com",
        ),
        LlmProvider.CLAUDE: ProviderProfile(
            model_ids={LlmTier.DEFAULT: "claude-sonnet-4-5", LlmTier.PREMIUM: "claude-opus-4-1"},
            context_windows={LlmTier.DEFAULT: 200_000, LlmTier.PREMIUM: 200_000},
            max_output_tokens=32_000,
            api_key_env="ANTHROPIC_API_KEY",
            base_url="https://api.anthropic.com",
        ),
        LlmProvider.OPENAI: ProviderProfile(
            model_ids={LlmTier.DEFAULT: "gpt-4o-mini", LlmTier.PREMIUM: "gpt-4o"},
            context_windows={LlmTier.DEFAULT: 128_000, LlmTier.PREMIUM: 128_000},
            max_output_tokens=16_384,
            api_key_env="OPENAI_API_KEY",
            base_url="https://api.openai.com",
        ),
    },
)


def resolve_provider(name: str | None) -> LlmProvider:
    """Map a user-supplied provider name (or alias) onto :class:`LlmProvider`.

    Args:
        name (str | None): provider name such as ``"anthropic"``; None selects gemini

    Raises:
        ValueError: if ``name`` is not a known provider or alias

    Returns:
        LlmProvider: the resolved provider
    """
    if not name:
        return LlmProvider.GEMINI
    try:
        return PROVIDER_ALIASES[name.strip().lower()]
    except KeyError:
        valid = ", ".join(sorted(PROVIDER_ALIASES))
        msg = f"Unknown provider {name!r}. Valid options: {valid}"
        raise ValueError(msg) from None

# ------------------------------ Token budget ---------------------------------

CHARS_PER_TOKEN = 4
NEAR_LIMIT_RATIO = 0.85
