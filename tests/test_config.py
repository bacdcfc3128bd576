"""Tests for workspace resolution and pipeline configuration."""

import pytest

from contentgate.config import (
    DEFAULT_MIN_FIELD_LENGTH,
    DEFAULT_PLACEHOLDER_TERMS,
    PipelineConfig,
    resolve_workspace_root,
)

ENV_VARS = [
    "CONTENTGATE_WORKSPACE",
    "CONTENTGATE_WORKSPACE_PATH",
    "CONTENTGATE_MIN_FIELD_LENGTH",
    "CONTENTGATE_MAX_ATTEMPTS",
    "CONTENTGATE_STALE_CLAIM_SECONDS",
    "CONTENTGATE_PLACEHOLDER_TERMS",
    "CONTENTGATE_BUILD_DIR",
]


@pytest.fixture
def repo(tmp_path, monkeypatch):
    """An isolated repo root as the working directory, with a clean environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    root = tmp_path / "repo"
    root.mkdir()
    (root / "pyproject.toml").write_text("[project]\nname = 'scratch'\n")
    monkeypatch.chdir(root)
    return root


def _make_workspace(path):
    (path / "system").mkdir(parents=True)
    (path / "system" / "config.yaml").write_text("# contentgate configuration\n")
    return path


def _write_repo_config(repo, body):
    config_dir = repo / ".contentgate"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "config.toml").write_text(body)


def test_cli_path_wins(repo, tmp_path, monkeypatch):
    cli_ws = _make_workspace(tmp_path / "cli_ws")
    env_ws = _make_workspace(tmp_path / "env_ws")
    monkeypatch.setenv("CONTENTGATE_WORKSPACE", str(env_ws))

    assert resolve_workspace_root("use_existing", str(cli_ws)) == cli_ws.resolve()


def test_repo_config_beats_environment(repo, tmp_path, monkeypatch):
    repo_ws = _make_workspace(tmp_path / "repo_ws")
    env_ws = _make_workspace(tmp_path / "env_ws")
    _write_repo_config(repo, f'workspace_root = "{repo_ws}"\n')
    monkeypatch.setenv("CONTENTGATE_WORKSPACE", str(env_ws))

    assert resolve_workspace_root("use_existing") == repo_ws.resolve()


def test_repo_config_found_from_subdirectory(repo, tmp_path, monkeypatch):
    repo_ws = _make_workspace(tmp_path / "repo_ws")
    _write_repo_config(repo, f'workspace_root = "{repo_ws}"\n')
    nested = repo / "src" / "deep"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert resolve_workspace_root("use_existing") == repo_ws.resolve()


def test_environment_variable(repo, tmp_path, monkeypatch):
    env_ws = _make_workspace(tmp_path / "env_ws")
    monkeypatch.setenv("CONTENTGATE_WORKSPACE", str(env_ws))

    assert resolve_workspace_root("use_existing") == env_ws.resolve()


def test_default_location(repo):
    assert resolve_workspace_root("create_ok") == (repo / "contentgate_workspace").resolve()


def test_use_existing_requires_markers(repo, tmp_path):
    with pytest.raises(FileNotFoundError, match="contentgate init"):
        resolve_workspace_root("use_existing", str(tmp_path / "nowhere"))

    with pytest.raises(FileNotFoundError, match="Workspace not found"):
        resolve_workspace_root("use_existing")


def test_malformed_repo_config_is_ignored(repo, tmp_path, monkeypatch):
    env_ws = _make_workspace(tmp_path / "env_ws")
    _write_repo_config(repo, "workspace_root = [unterminated\n")
    monkeypatch.setenv("CONTENTGATE_WORKSPACE", str(env_ws))

    assert resolve_workspace_root("use_existing") == env_ws.resolve()


# ============================================================================
# PipelineConfig
# ============================================================================


def test_defaults(repo, tmp_path):
    config = PipelineConfig.from_env(str(tmp_path / "ws"), mode="create_ok")

    assert config.min_field_length == DEFAULT_MIN_FIELD_LENGTH
    assert config.placeholder_terms == DEFAULT_PLACEHOLDER_TERMS
    assert config.build_dir == "build/data"


def test_pipeline_table_is_read(repo, tmp_path):
    _write_repo_config(
        repo,
        '[pipeline]\nmin_field_length = 12\nmax_attempts = 5\nplaceholder_terms = ["WIP"]\nbuild_dir = "out"\n',
    )

    config = PipelineConfig.from_env(str(tmp_path / "ws"), mode="create_ok")

    assert config.min_field_length == 12
    assert config.max_attempts == 5
    assert config.placeholder_terms == ["WIP"]
    assert config.build_dir == "out"


def test_environment_overrides_pipeline_table(repo, tmp_path, monkeypatch):
    _write_repo_config(repo, "[pipeline]\nmin_field_length = 12\n")
    monkeypatch.setenv("CONTENTGATE_MIN_FIELD_LENGTH", "20")
    monkeypatch.setenv("CONTENTGATE_PLACEHOLDER_TERMS", "WIP, DRAFT ,")

    config = PipelineConfig.from_env(str(tmp_path / "ws"), mode="create_ok")

    assert config.min_field_length == 20
    assert config.placeholder_terms == ["WIP", "DRAFT"]


def test_invalid_knob_is_rejected(repo, tmp_path, monkeypatch):
    monkeypatch.setenv("CONTENTGATE_MAX_ATTEMPTS", "several")

    with pytest.raises(ValueError, match="CONTENTGATE_MAX_ATTEMPTS"):
        PipelineConfig.from_env(str(tmp_path / "ws"), mode="create_ok")


def test_yaml_rendering(tmp_path):
    config = PipelineConfig(workspace_path=tmp_path, placeholder_terms=["TODO", "TBD"], min_field_length=10)
    rendered = config.to_yaml_str()

    assert f"workspace_path: {tmp_path}" in rendered
    assert "min_field_length: 10" in rendered
    assert "  - 'TODO'\n  - 'TBD'" in rendered
