"""Domain models for queue records, commands and job outcomes."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

RecordId = str


class Status(str, Enum):
    """Visible record lifecycle states, valued by their names in the store."""

    ON_QUEUE = "On queue"
    IN_PROGRESS = "In progress"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(frozen=True, slots=True)
class TextValue:
    """Rich text or title field, kept as its plain-text segments."""

    segments: tuple[str, ...] = ()

    @property
    def plain_text(self) -> str:
        return "".join(self.segments)


@dataclass(frozen=True, slots=True)
class SelectValue:
    """Single-select field; ``name`` is None when nothing is selected."""

    name: str | None = None


@dataclass(frozen=True, slots=True)
class NumberValue:
    """Number field; ``number`` is None when the cell is empty."""

    number: int | float | None = None


@dataclass(frozen=True, slots=True)
class StatusValue:
    name: str | None = None


@dataclass(frozen=True, slots=True)
class UnsupportedValue:
    """Any store field type the translator does not read."""

    kind: str


FieldValue = TextValue | SelectValue | NumberValue | StatusValue | UnsupportedValue


@dataclass(frozen=True, slots=True)
class QueueRecord:
    """Opaque store entry: a stable id plus named, typed fields."""

    record_id: RecordId
    fields: Mapping[str, FieldValue] = field(default_factory=dict)
    last_edited_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class CommonArgs:
    """Arguments shared by every image-generation command."""

    prompt: str
    steps: int | None = None
    width: int | None = None
    height: int | None = None

    def __post_init__(self) -> None:
        if not self.prompt.strip():
            raise ValueError("prompt must not be blank.")
        if (self.width is None) != (self.height is None):
            raise ValueError("width and height must be set together.")
        for name in ("steps", "width", "height"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}.")


@dataclass(frozen=True, slots=True)
class Txt2Img:
    """Text-to-image generation."""

    common_args: CommonArgs


Command = Txt2Img


@dataclass(frozen=True, slots=True)
class Item:
    """Decoded unit of work, consumed once by the executor."""

    record_id: RecordId
    command: Command


@dataclass(frozen=True, slots=True)
class Ok:
    pass


@dataclass(frozen=True, slots=True)
class Failed:
    reason: str


Outcome = Ok | Failed


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of one item, consumed once when it is reported to the store."""

    record_id: RecordId
    outcome: Outcome

    @property
    def ok(self) -> bool:
        return isinstance(self.outcome, Ok)


@dataclass(frozen=True, slots=True)
class StatusUpdate:
    """Full replacement of a record's status and its status-specific fields."""

    status: Status
    reason: str | None = None

    def __post_init__(self) -> None:
        if (self.status is Status.FAILED) != (self.reason is not None):
            raise ValueError("A reason is required for Failed and forbidden otherwise.")

    @classmethod
    def on_queue(cls) -> StatusUpdate:
        return cls(status=Status.ON_QUEUE)

    @classmethod
    def in_progress(cls) -> StatusUpdate:
        return cls(status=Status.IN_PROGRESS)

    @classmethod
    def done(cls) -> StatusUpdate:
        return cls(status=Status.DONE)

    @classmethod
    def failed(cls, reason: str) -> StatusUpdate:
        return cls(status=Status.FAILED, reason=reason)
