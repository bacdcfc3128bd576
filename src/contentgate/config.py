"""Configuration management for contentgate."""

import logging
import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field

try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # Python < 3.11

logger = logging.getLogger(__name__)

DEFAULT_MIN_FIELD_LENGTH = 8
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_STALE_CLAIM_SECONDS = 900
DEFAULT_PLACEHOLDER_TERMS = [
    "TODO",
    "FIXME",
    "TBD",
    "XXX",
    "lorem ipsum",
    "[insert",
]


def _find_repo_root(start_dir: Path) -> Path:
    """Find repository root by walking upward looking for .git or pyproject.toml."""
    current_dir = start_dir

    while True:
        if (current_dir / ".git").exists() or (current_dir / "pyproject.toml").exists():
            return current_dir

        parent_dir = current_dir.parent

        # Stop if we reach filesystem root
        if parent_dir == current_dir:
            return start_dir

        current_dir = parent_dir


def _load_repo_config_data(repo_root: Path) -> Optional[dict]:
    """Load repo config data from .contentgate/config.toml if it exists."""
    config_file = repo_root / ".contentgate" / "config.toml"

    if not config_file.exists():
        return None

    try:
        with open(config_file, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Ignoring malformed repo config {config_file}: {e}")
        return None


def _load_repo_workspace(data: Optional[dict]) -> Optional[Path]:
    """Extract workspace_root from repo config data."""
    if not data:
        return None
    workspace_root = data.get("workspace_root")
    if isinstance(workspace_root, str) and workspace_root:
        return Path(workspace_root).resolve()
    return None


def _pipeline_section(data: Optional[dict]) -> dict:
    if not data:
        return {}
    section = data.get("pipeline")
    return section if isinstance(section, dict) else {}


def _as_int(value, *, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Invalid config: {name} must be an int")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValueError(f"Invalid config: {name} must be an int")


def _has_workspace_markers(workspace_path: Path) -> bool:
    """Check if a directory contains contentgate workspace markers."""
    return (workspace_path / "system" / "config.yaml").exists()


def resolve_workspace_root(
    mode: Literal["use_existing", "create_ok"],
    cli_workspace_path: Optional[str] = None,
) -> Path:
    """Resolve workspace root path with the following precedence:

    1. CLI --workspace option (if provided)
    2. repo-local .contentgate/config.toml (walk upward from CWD)
    3. CONTENTGATE_WORKSPACE environment variable
    4. CONTENTGATE_WORKSPACE_PATH environment variable or ./contentgate_workspace

    Args:
        mode: "use_existing" requires workspace markers to exist, "create_ok" allows new workspaces
        cli_workspace_path: Workspace path from CLI --workspace option

    Returns:
        Absolute path to workspace root directory

    Raises:
        FileNotFoundError: If mode is "use_existing" and the resolved path is not a workspace
    """
    candidates: list[tuple[str, Optional[Path]]] = [
        ("--workspace", Path(cli_workspace_path).resolve() if cli_workspace_path else None),
        (
            ".contentgate/config.toml",
            _load_repo_workspace(_load_repo_config_data(_find_repo_root(Path.cwd()))),
        ),
        (
            "CONTENTGATE_WORKSPACE",
            Path(os.environ["CONTENTGATE_WORKSPACE"]).resolve()
            if os.environ.get("CONTENTGATE_WORKSPACE")
            else None,
        ),
    ]

    for source, path in candidates:
        if path is None:
            continue
        if mode == "use_existing" and not _has_workspace_markers(path):
            raise FileNotFoundError(
                f"Workspace from {source} is not an initialized contentgate workspace: {path}\n"
                "Run 'contentgate init' first."
            )
        return path

    default_path = Path(os.environ.get("CONTENTGATE_WORKSPACE_PATH", "./contentgate_workspace")).resolve()
    if mode == "use_existing" and not _has_workspace_markers(default_path):
        raise FileNotFoundError(
            "Workspace not found. Searched for:\n"
            "  - --workspace option\n"
            f"  - .contentgate/config.toml in repo at {_find_repo_root(Path.cwd())}\n"
            "  - CONTENTGATE_WORKSPACE environment variable\n"
            f"  - default location {default_path}\n"
            "Run 'contentgate init' or pass --workspace."
        )
    return default_path


class PipelineConfig(BaseModel):
    """Configuration for the quality gate and remediation workers."""

    workspace_path: Path = Field(
        default_factory=lambda: Path(
            os.environ.get("CONTENTGATE_WORKSPACE_PATH", "./contentgate_workspace")
        )
    )
    min_field_length: int = Field(default=DEFAULT_MIN_FIELD_LENGTH, ge=0)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    stale_claim_seconds: int = Field(default=DEFAULT_STALE_CLAIM_SECONDS, ge=1)
    placeholder_terms: list[str] = Field(default_factory=lambda: list(DEFAULT_PLACEHOLDER_TERMS))
    build_dir: str = Field(default="build/data")

    model_config = {"frozen": False}

    @classmethod
    def from_env(
        cls,
        cli_workspace_path: Optional[str] = None,
        mode: Literal["use_existing", "create_ok"] = "use_existing",
    ) -> "PipelineConfig":
        """Load configuration from environment variables, repo config, or defaults.

        Environment variables win over the [pipeline] table of the repo config.
        """
        workspace_path = resolve_workspace_root(mode, cli_workspace_path)
        section = _pipeline_section(_load_repo_config_data(_find_repo_root(Path.cwd())))

        def knob(env_name: str, key: str, default: int) -> int:
            raw = os.environ.get(env_name)
            if raw is not None:
                return _as_int(raw, name=env_name)
            return _as_int(section.get(key, default), name=f"[pipeline].{key}")

        placeholder_terms = section.get("placeholder_terms")
        env_terms = os.environ.get("CONTENTGATE_PLACEHOLDER_TERMS")
        if env_terms:
            placeholder_terms = [t.strip() for t in env_terms.split(",") if t.strip()]
        if not isinstance(placeholder_terms, list) or not placeholder_terms:
            placeholder_terms = list(DEFAULT_PLACEHOLDER_TERMS)

        return cls(
            workspace_path=workspace_path,
            min_field_length=knob("CONTENTGATE_MIN_FIELD_LENGTH", "min_field_length", DEFAULT_MIN_FIELD_LENGTH),
            max_attempts=knob("CONTENTGATE_MAX_ATTEMPTS", "max_attempts", DEFAULT_MAX_ATTEMPTS),
            stale_claim_seconds=knob(
                "CONTENTGATE_STALE_CLAIM_SECONDS", "stale_claim_seconds", DEFAULT_STALE_CLAIM_SECONDS
            ),
            placeholder_terms=[str(t) for t in placeholder_terms],
            build_dir=os.environ.get("CONTENTGATE_BUILD_DIR", str(section.get("build_dir", "build/data"))),
        )

    def to_yaml_str(self) -> str:
        """Generate YAML configuration string."""
        terms = "\n".join(f"  - '{term}'" for term in self.placeholder_terms)
        return f"""# contentgate configuration

workspace_path: {self.workspace_path}

# Quality gate
min_field_length: {self.min_field_length}
placeholder_terms:
{terms}

# Work queue
max_attempts: {self.max_attempts}
stale_claim_seconds: {self.stale_claim_seconds}

# Build export
build_dir: '{self.build_dir}'
"""
