"""Pydantic models for content records and the structured-test corpus."""

from enum import Enum

from pydantic import BaseModel, Field

# Channel ids name bundle files, so they must be plain file stems.
CHANNEL_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"


class FormatKind(str, Enum):
    """Shape of an answer payload."""

    PLAIN_TEXT = "plain-text"
    STRUCTURED_CHOICE = "structured-choice"
    UNKNOWN = "unknown"


class CorpusKind(str, Enum):
    """Which corpus a record lives in, and therefore which payload shape it expects."""

    FREE_TEXT = "free-text"
    STRUCTURED = "structured"


class ItemRef(BaseModel):
    """Reference to one record: channel plus record id (unique within the channel)."""

    channel_id: str = Field(pattern=CHANNEL_ID_PATTERN, description="Channel the record belongs to")
    record_id: str = Field(description="Record identifier, unique within its channel")

    model_config = {"frozen": True}

    @property
    def key(self) -> str:
        return f"{self.channel_id}/{self.record_id}"

    @classmethod
    def from_key(cls, key: str) -> "ItemRef":
        channel_id, sep, record_id = key.partition("/")
        if not sep or not channel_id or not record_id:
            raise ValueError(f"Malformed item reference: {key!r}")
        return cls(channel_id=channel_id, record_id=record_id)

    def __str__(self) -> str:
        return self.key


class ContentRecord(BaseModel):
    """One question/answer unit stored in a channel's regular corpus."""

    id: str = Field(description="Stable identifier, unique within its channel")
    channel_id: str = Field(pattern=CHANNEL_ID_PATTERN, description="Owning channel")
    prompt_text: str = Field(default="", description="Question text")
    answer_payload: str = Field(default="", description="Opaque answer payload")
    format_kind: FormatKind = Field(default=FormatKind.UNKNOWN, description="Detected payload shape")
    channel_mutation_version: int = Field(
        default=0,
        ge=0,
        description="Channel counter value at the record's last write",
    )
    metadata: dict = Field(
        default_factory=dict,
        description="Pass-through fields from ingestion (difficulty, tags, explanation, ...)",
    )

    model_config = {"frozen": True}

    @property
    def ref(self) -> ItemRef:
        return ItemRef(channel_id=self.channel_id, record_id=self.id)


class ChoiceOption(BaseModel):
    """One option of a multiple-choice payload."""

    id: str = Field(description="Option identifier (a, b, c, ...)")
    text: str = Field(description="Option text")
    is_correct: bool = Field(default=False, description="Whether this option is a correct answer")

    model_config = {"frozen": True}


class StructuredTestEntry(BaseModel):
    """A multiple-choice entry in the structured-test corpus.

    Relocated entries keep the original payload verbatim in ``source_payload``
    so the move can be audited and replayed.
    """

    id: str = Field(description="Entry identifier, unique within its channel")
    channel_id: str = Field(pattern=CHANNEL_ID_PATTERN, description="Owning channel")
    prompt_text: str = Field(description="Question text")
    options: list[ChoiceOption] = Field(default_factory=list, description="Decoded options")
    source_payload: str = Field(description="Authoritative structured payload as stored")
    relocated_from: ItemRef | None = Field(
        default=None,
        description="Regular-corpus record this entry was relocated from",
    )
    channel_mutation_version: int = Field(default=0, ge=0)
    metadata: dict = Field(default_factory=dict)

    model_config = {"frozen": True}

    @property
    def ref(self) -> ItemRef:
        return ItemRef(channel_id=self.channel_id, record_id=self.id)

    def as_record(self) -> ContentRecord:
        """View this entry as a ContentRecord for quality-gate evaluation."""
        return ContentRecord(
            id=self.id,
            channel_id=self.channel_id,
            prompt_text=self.prompt_text,
            answer_payload=self.source_payload,
            format_kind=FormatKind.STRUCTURED_CHOICE,
            channel_mutation_version=self.channel_mutation_version,
            metadata=dict(self.metadata),
        )
