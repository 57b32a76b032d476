"""Pure mapping between store records, typed items and status updates."""

from __future__ import annotations

from notion_sd_runner.queue.models import (
    CommonArgs,
    ExecutionResult,
    FieldValue,
    Item,
    NumberValue,
    Ok,
    QueueRecord,
    SelectValue,
    StatusUpdate,
    TextValue,
    Txt2Img,
)

TYPE_FIELD = "Type"
PROMPT_FIELD = "Prompt"
STEPS_FIELD = "Steps"
WIDTH_FIELD = "Width"
HEIGHT_FIELD = "Height"

TXT2IMG = "txt2img"

MAX_INT_VALUE = 2**63 - 1


class DecodeError(ValueError):
    """Record cannot be turned into a runnable item; never retried."""


def decode(record: QueueRecord) -> Item:
    """Build a typed item from a store record or raise ``DecodeError``."""

    kind = _select(record, TYPE_FIELD)
    if kind == TXT2IMG:
        command = Txt2Img(common_args=_common_args(record))
    else:
        raise DecodeError(f"Unrecognized type: {kind!r}")
    return Item(record_id=record.record_id, command=command)


def encode(result: ExecutionResult) -> StatusUpdate:
    """Map an execution outcome to the terminal status written back to the store."""

    if isinstance(result.outcome, Ok):
        return StatusUpdate.done()
    return StatusUpdate.failed(result.outcome.reason)


def _common_args(record: QueueRecord) -> CommonArgs:
    prompt = _text(record, PROMPT_FIELD)
    steps = _optional_int(record, STEPS_FIELD)
    width = _optional_int(record, WIDTH_FIELD)
    height = _optional_int(record, HEIGHT_FIELD)
    if (width is None) != (height is None):
        raise DecodeError(
            f"{WIDTH_FIELD} and {HEIGHT_FIELD} must be set together "
            f"(got {WIDTH_FIELD}={width}, {HEIGHT_FIELD}={height})",
        )
    return CommonArgs(prompt=prompt, steps=steps, width=width, height=height)


def _get(record: QueueRecord, name: str) -> FieldValue:
    try:
        return record.fields[name]
    except KeyError as error:
        raise DecodeError(f"Missing {name}") from error


def _text(record: QueueRecord, name: str) -> str:
    value = _get(record, name)
    if not isinstance(value, TextValue):
        raise DecodeError(f"Unrecognized text when looking for {name}: {value!r}")
    if not value.segments:
        raise DecodeError(f"Missing {name}")
    text = value.plain_text
    if not text.strip():
        raise DecodeError(f"{name} is blank")
    return text


def _select(record: QueueRecord, name: str) -> str:
    value = _get(record, name)
    if not isinstance(value, SelectValue) or value.name is None:
        raise DecodeError(f"Unrecognized select when looking for {name}: {value!r}")
    return value.name


def _optional_int(record: QueueRecord, name: str) -> int | None:
    value = record.fields.get(name)
    if value is None:
        return None
    if not isinstance(value, NumberValue):
        raise DecodeError(f"Unrecognized number when looking for {name}: {value!r}")
    number = value.number
    if number is None:
        return None
    if isinstance(number, bool):
        raise DecodeError(f"Non-integer number in {name}: {number!r}")
    if isinstance(number, float):
        if not number.is_integer():
            raise DecodeError(f"Non-integer number in {name}: {number!r}")
        number = int(number)
    if not 0 < number <= MAX_INT_VALUE:
        raise DecodeError(f"{name} out of range (1..{MAX_INT_VALUE}): {number!r}")
    return number
