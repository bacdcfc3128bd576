"""Error taxonomy for the remediation pipeline."""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ValidationFailure(PipelineError):
    """A content record failed the quality gate.

    Recoverable: the record is routed to the work queue instead of crashing
    the caller.
    """

    def __init__(self, item_ref: str, issues: list[str]):
        self.item_ref = item_ref
        self.issues = list(issues)
        super().__init__(f"{item_ref} failed validation: {', '.join(self.issues)}")


class DuplicateActiveItem(PipelineError):
    """An active (pending or in-progress) work item already exists for the record."""

    def __init__(self, item_ref: str, existing_id: str | None = None):
        self.item_ref = item_ref
        self.existing_id = existing_id
        super().__init__(f"Active work item already exists for {item_ref}")


class InvalidTransition(PipelineError):
    """A work item state transition was attempted from the wrong state."""

    def __init__(self, item_id: str, current: str | None, target: str):
        self.item_id = item_id
        self.current = current
        self.target = target
        super().__init__(f"Cannot move work item {item_id} from {current or 'missing'} to {target}")


class StaleClaim(InvalidTransition):
    """The caller no longer holds the claim on a work item (swept or reclaimed)."""

    def __init__(self, item_id: str, worker_id: str, holder: str | None):
        self.worker_id = worker_id
        self.holder = holder
        PipelineError.__init__(
            self,
            f"Worker {worker_id} no longer holds work item {item_id} (holder: {holder or 'none'})",
        )
        self.item_id = item_id
        self.current = None
        self.target = "in-progress"


class StorageUnavailable(PipelineError):
    """Ledger, queue or corpus storage could not be read or written."""


class RecordNotFound(PipelineError):
    """A referenced content record does not exist in the corpus."""

    def __init__(self, item_ref: str):
        self.item_ref = item_ref
        super().__init__(f"Content record not found: {item_ref}")


class RelocationConflict(PipelineError):
    """The structured-test corpus already holds an entry with the relocated record's id."""

    def __init__(self, item_ref: str):
        self.item_ref = item_ref
        super().__init__(f"Structured-test corpus already contains {item_ref}")
