"""Path management and workspace structure for contentgate."""

from pathlib import Path

from .config import PipelineConfig


class WorkspacePaths:
    """Manages paths within a contentgate workspace."""

    def __init__(self, workspace_root: Path, build_dir: str = "build/data"):
        """Initialize workspace paths from root directory.

        Args:
            workspace_root: Root directory of the workspace
            build_dir: Bundle output directory, relative to the root unless absolute
        """
        self.root = workspace_root

        # Top-level directories
        self.corpus = workspace_root / "corpus"
        self.queue = workspace_root / "queue"
        self.system = workspace_root / "system"

        build_path = Path(build_dir)
        self.build = build_path if build_path.is_absolute() else workspace_root / build_path

        # Storage files
        self.corpus_db = self.corpus / "corpus.sqlite"
        self.queue_db = self.queue / "work_queue.sqlite"

        # System files
        self.config_file = self.system / "config.yaml"
        self.ledger_file = self.system / "ledger.jsonl"

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "WorkspacePaths":
        """Create WorkspacePaths from a PipelineConfig."""
        return cls(config.workspace_path, config.build_dir)

    def get_all_directories(self) -> list[Path]:
        """Get list of all directories that should exist in the workspace."""
        return [
            self.corpus,
            self.queue,
            self.system,
            self.build,
        ]
