"""Pytest fixtures for contentgate tests."""

import json

import pytest

from contentgate.config import PipelineConfig
from contentgate.corpus import CorpusStore
from contentgate.ledger import LedgerWriter
from contentgate.models.content import ContentRecord
from contentgate.paths import WorkspacePaths
from contentgate.quality_gate import detect_format
from contentgate.work_queue import WorkQueue


@pytest.fixture
def temp_workspace(tmp_path):
    """Create a temporary workspace for testing.

    Args:
        tmp_path: pytest's built-in temporary directory fixture

    Returns:
        Path to temporary workspace root
    """
    workspace_root = tmp_path / "test_workspace"
    workspace_root.mkdir()
    return workspace_root


@pytest.fixture
def pipeline_config(temp_workspace):
    """Create PipelineConfig pointing to temporary workspace.

    Args:
        temp_workspace: Temporary workspace root path

    Returns:
        PipelineConfig instance
    """
    return PipelineConfig(workspace_path=temp_workspace)


@pytest.fixture
def workspace_paths(pipeline_config):
    """Create WorkspacePaths for temporary workspace.

    Args:
        pipeline_config: PipelineConfig instance

    Returns:
        WorkspacePaths instance
    """
    paths = WorkspacePaths.from_config(pipeline_config)

    for directory in paths.get_all_directories():
        directory.mkdir(parents=True, exist_ok=True)

    paths.config_file.write_text(pipeline_config.to_yaml_str())
    paths.ledger_file.touch()

    return paths


@pytest.fixture
def corpus(workspace_paths):
    return CorpusStore(workspace_paths.corpus_db)


@pytest.fixture
def queue(workspace_paths, pipeline_config):
    return WorkQueue(workspace_paths.queue_db, max_attempts=pipeline_config.max_attempts)


@pytest.fixture
def ledger(workspace_paths):
    return LedgerWriter(workspace_paths.ledger_file)


@pytest.fixture
def choice_payload():
    """Build a structured-choice answer payload.

    Returns:
        Function(correct_index=0, count=4) -> JSON string
    """

    def _build(correct_index: int = 0, count: int = 4) -> str:
        return json.dumps(
            [
                {"id": chr(ord("a") + i), "text": f"Option number {i + 1}", "isCorrect": i == correct_index}
                for i in range(count)
            ]
        )

    return _build


@pytest.fixture
def make_record():
    """Build ContentRecords with sensible valid defaults.

    Returns:
        Function(record_id, channel_id="system-design", prompt=..., answer=..., **metadata)
    """

    def _build(
        record_id: str,
        channel_id: str = "system-design",
        prompt: str = "What is a load balancer used for?",
        answer: str = "It spreads incoming traffic across several backend servers.",
        **metadata,
    ) -> ContentRecord:
        return ContentRecord(
            id=record_id,
            channel_id=channel_id,
            prompt_text=prompt,
            answer_payload=answer,
            format_kind=detect_format(answer),
            metadata=metadata,
        )

    return _build
