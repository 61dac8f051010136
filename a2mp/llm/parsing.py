"""
Decoding of structured model output.

Model text is reduced to the first balanced-brace JSON object (markdown
fences stripped) and validated against a pydantic schema. The result is a
tagged `Decoded` value: either `value` is set, or `failure` names what went
wrong, so call sites can handle every failure mode explicitly.
"""
import enum
import json
import re
from dataclasses import dataclass
from typing import Generic, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from a2mp.llm.errors import MalformedOutputError

M = TypeVar("M", bound=BaseModel)

_FENCE = re.compile(r"```(?:json)?\s*\n?", re.IGNORECASE)


class DecodeFailure(str, enum.Enum):
    EMPTY = "empty"
    NO_OBJECT = "no_object"
    INCOMPLETE = "incomplete"
    INVALID_JSON = "invalid_json"
    SCHEMA = "schema"


@dataclass
class Decoded(Generic[M]):
    value: Optional[M] = None
    failure: Optional[DecodeFailure] = None
    detail: str = ""
    raw_text: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None

    def unwrap(self, operation: str = "model output") -> M:
        """Return the value or raise a (non-retryable) MalformedOutputError"""
        if self.failure is not None:
            raise MalformedOutputError(
                f"{operation}: {self.failure.value} ({self.detail})",
                failure=self.failure.value,
                raw_text=self.raw_text,
            )
        return self.value


def extract_json_object(text: str) -> tuple[Optional[str], Optional[DecodeFailure]]:
    """
    Locate the first complete {...} object in `text`.

    Braces inside string literals are ignored.
    """
    cleaned = _FENCE.sub("", text or "").strip()
    if not cleaned:
        return None, DecodeFailure.EMPTY

    start = cleaned.find("{")
    if start == -1:
        return None, DecodeFailure.NO_OBJECT

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(cleaned)):
        char = cleaned[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return cleaned[start:index + 1], None

    return None, DecodeFailure.INCOMPLETE


def decode(text: str, schema: Type[M]) -> Decoded[M]:
    """Extract and validate one JSON object from raw model text"""
    raw_text = text or ""
    candidate, failure = extract_json_object(raw_text)
    if failure is not None:
        return Decoded(failure=failure, detail=f"length {len(raw_text)}", raw_text=raw_text)

    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as e:
        return Decoded(failure=DecodeFailure.INVALID_JSON, detail=str(e), raw_text=raw_text)

    try:
        return Decoded(value=schema.model_validate(payload), raw_text=raw_text)
    except ValidationError as e:
        return Decoded(
            failure=DecodeFailure.SCHEMA,
            detail=f"{e.error_count()} validation error(s): {e.errors()[0]['msg']}",
            raw_text=raw_text,
        )
