"""Deterministic quality gate for content records.

The gate classifies a record as valid or invalid without side effects.
Rules run in a fixed order; the first failing rule is the primary reason
but every applicable issue is reported.
"""

import json
import re
import string
from typing import Callable, Optional

from .config import DEFAULT_MIN_FIELD_LENGTH, DEFAULT_PLACEHOLDER_TERMS, PipelineConfig
from .models.content import ChoiceOption, ContentRecord, CorpusKind, FormatKind
from .models.validation import IssueKind, ValidationResult

COLLECTION_OPENERS = ("[", "{")
MIN_CHOICE_OPTIONS = 2

_TEXT_KEYS = ("text", "option", "label")
_CORRECT_KEYS = ("isCorrect", "is_correct", "correct")


# ============================================================================
# Payload shape detection
# ============================================================================


def _option_entries(decoded: object) -> Optional[list]:
    """Return the raw option list inside a decoded payload, if it has one."""
    if isinstance(decoded, dict):
        decoded = decoded.get("options")
    if isinstance(decoded, list):
        return decoded
    return None


def _to_option(entry: object, index: int) -> Optional[ChoiceOption]:
    if not isinstance(entry, dict):
        return None
    text = next((entry[k] for k in _TEXT_KEYS if isinstance(entry.get(k), str)), None)
    if text is None:
        return None
    option_id = entry.get("id")
    if not isinstance(option_id, (str, int)) or isinstance(option_id, bool):
        option_id = string.ascii_lowercase[index % 26]
    is_correct = any(entry.get(k) is True for k in _CORRECT_KEYS)
    return ChoiceOption(id=str(option_id), text=text, is_correct=is_correct)


def decode_choices(payload: str) -> Optional[list[ChoiceOption]]:
    """Decode a multiple-choice payload into options.

    Accepts a JSON array of option objects or an object wrapping one under
    ``options``. Returns None unless at least MIN_CHOICE_OPTIONS option-like
    entries decode.
    """
    stripped = (payload or "").strip()
    if not stripped.startswith(COLLECTION_OPENERS):
        return None
    try:
        decoded = json.loads(stripped)
    except (json.JSONDecodeError, ValueError):
        return None

    entries = _option_entries(decoded)
    if entries is None:
        return None

    options = []
    for index, entry in enumerate(entries):
        option = _to_option(entry, index)
        if option is not None:
            options.append(option)

    if len(options) < MIN_CHOICE_OPTIONS:
        return None
    return options


def _is_structured_choice(payload: str) -> bool:
    return decode_choices(payload) is not None


def _opens_collection(payload: str) -> bool:
    return (payload or "").strip().startswith(COLLECTION_OPENERS)


def _is_plain_text(payload: str) -> bool:
    return bool((payload or "").strip())


# Evaluated in order; the first matching predicate decides the kind.
FORMAT_PREDICATES: tuple[tuple[FormatKind, Callable[[str], bool]], ...] = (
    (FormatKind.STRUCTURED_CHOICE, _is_structured_choice),
    (FormatKind.UNKNOWN, _opens_collection),
    (FormatKind.PLAIN_TEXT, _is_plain_text),
)


def detect_format(payload: str) -> FormatKind:
    """Classify an answer payload's shape."""
    for kind, predicate in FORMAT_PREDICATES:
        if predicate(payload):
            return kind
    return FormatKind.UNKNOWN


# ============================================================================
# Quality gate
# ============================================================================


def _compile_placeholder(term: str) -> re.Pattern:
    pattern = re.escape(term)
    if term[:1].isalnum():
        pattern = r"\b" + pattern
    if term[-1:].isalnum():
        pattern = pattern + r"\b"
    return re.compile(pattern, re.IGNORECASE)


class QualityGate:
    """Structural validator deciding whether a record is publishable."""

    def __init__(
        self,
        min_field_length: int = DEFAULT_MIN_FIELD_LENGTH,
        placeholder_terms: Optional[list[str]] = None,
    ):
        self.min_field_length = min_field_length
        terms = placeholder_terms if placeholder_terms is not None else DEFAULT_PLACEHOLDER_TERMS
        self._placeholders = [(term, _compile_placeholder(term)) for term in terms if term]

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "QualityGate":
        return cls(
            min_field_length=config.min_field_length,
            placeholder_terms=config.placeholder_terms,
        )

    def validate(
        self,
        record: ContentRecord,
        corpus: CorpusKind = CorpusKind.FREE_TEXT,
    ) -> ValidationResult:
        """Validate a record against the expectations of the corpus it lives in."""
        issues: list[IssueKind] = []
        details: list[str] = []

        for issue, rule in (
            (IssueKind.WRONG_FORMAT, self._check_format),
            (IssueKind.MISSING_CONTENT, self._check_missing),
            (IssueKind.PLACEHOLDER_CONTENT, self._check_placeholder),
        ):
            detail = rule(record, corpus)
            if detail is not None:
                issues.append(issue)
                details.append(detail)

        return ValidationResult(is_valid=not issues, issues=issues, details=details)

    def _check_format(self, record: ContentRecord, corpus: CorpusKind) -> Optional[str]:
        kind = detect_format(record.answer_payload)
        if corpus == CorpusKind.FREE_TEXT:
            if kind == FormatKind.STRUCTURED_CHOICE:
                return "Answer is a structured-choice payload; it belongs in the structured-test corpus"
            return None

        options = decode_choices(record.answer_payload)
        if options is None:
            return f"Structured-test entry payload is {kind.value}, expected structured-choice"
        if not any(option.is_correct for option in options):
            return "Structured-test entry has no correct option"
        return None

    def _check_missing(self, record: ContentRecord, corpus: CorpusKind) -> Optional[str]:
        short = []
        if len(record.prompt_text.strip()) < self.min_field_length:
            short.append("prompt")
        if len(record.answer_payload.strip()) < self.min_field_length:
            short.append("answer")
        if short:
            return f"{' and '.join(short).capitalize()} shorter than {self.min_field_length} characters"
        return None

    def _check_placeholder(self, record: ContentRecord, corpus: CorpusKind) -> Optional[str]:
        for term, pattern in self._placeholders:
            if pattern.search(record.prompt_text) or pattern.search(record.answer_payload):
                return f"Contains placeholder: {term!r}"
        return None


def validate(
    record: ContentRecord,
    corpus: CorpusKind = CorpusKind.FREE_TEXT,
) -> ValidationResult:
    """Validate with default thresholds."""
    return QualityGate().validate(record, corpus)
