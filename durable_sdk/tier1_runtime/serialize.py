"""
durable_sdk.tier1_runtime.serialize
────────────────────────────────────
Payload encoding for workflow arguments, outputs, log results and signal
arguments, plus structured exception capture.

Every payload starts with a one-byte format tag so stored rows stay
readable after the configured format changes:
  p  pickle  (default; round-trips arbitrary application values)
  j  json    (portable; pydantic-core encoder)

Configure via: DURABLE_SERIALIZE_FORMAT=pickle|json
"""
from __future__ import annotations

import json
import linecache
import pickle
import traceback
from typing import Any

from pydantic import BaseModel, Field
from pydantic_core import PydanticSerializationError, to_json, to_jsonable_python

from durable_sdk.tier0_core.errors import EncodingError

_PICKLE = b"p"
_JSON = b"j"

# Lines captured around the failing line: 3 before, the line, 3 after.
SNIPPET_RADIUS = 3


def _format() -> str:
    from durable_sdk.tier0_core.config import get_config
    return get_config().serialize_format


def serialize(value: Any, format: str | None = None) -> bytes:
    """
    Encode any value to a tagged payload.

    Usage:
        payload = serialize(("order-1", 42))
        args = deserialize(payload)
    """
    fmt = (format or _format()).lower()
    if fmt == "pickle":
        try:
            return _PICKLE + pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
        except (pickle.PicklingError, TypeError, AttributeError) as exc:
            raise EncodingError(
                f"Could not encode value of type {type(value).__name__}.",
                detail=str(exc),
            ) from exc
    if fmt == "json":
        try:
            return _JSON + to_json(value)
        except PydanticSerializationError as exc:
            raise EncodingError(
                f"Could not encode value of type {type(value).__name__}.",
                detail=str(exc),
            ) from exc
    raise ValueError(f"Unsupported serialize format: {fmt!r}. Supported: pickle, json")


def deserialize(payload: bytes | None) -> Any:
    """Decode a tagged payload produced by serialize(). ``None`` decodes to ``None``."""
    if payload is None:
        return None
    tag, body = payload[:1], payload[1:]
    if tag == _PICKLE:
        return pickle.loads(body)
    if tag == _JSON:
        return json.loads(body)
    raise EncodingError(f"Unknown payload format tag {tag!r}.")


def encode_json(value: Any) -> str:
    """
    Encode a value for notifications. Raises EncodingError when the value has
    no JSON representation.
    """
    try:
        return json.dumps(to_jsonable_python(value))
    except (PydanticSerializationError, TypeError, ValueError) as exc:
        raise EncodingError("Could not encode value as JSON.", detail=str(exc)) from exc


# ── Exception capture ──────────────────────────────────────────────────────

class FrameDetail(BaseModel):
    file: str
    line: int | None = None
    function: str


class ExceptionDetail(BaseModel):
    """Structured failure record stored with exceptions and sent with events."""
    kind: str
    message: str
    code: int | str = 0
    file: str | None = None
    line: int | None = None
    snippet: list[str] = Field(default_factory=list)
    trace: list[FrameDetail] = Field(default_factory=list)


def _snippet(filename: str, lineno: int) -> list[str]:
    start = max(1, lineno - SNIPPET_RADIUS)
    lines = [linecache.getline(filename, n) for n in range(start, lineno + SNIPPET_RADIUS + 1)]
    return [line.rstrip("\n") for line in lines if line]


def describe_exception(exc: BaseException) -> ExceptionDetail:
    """Capture kind, message, code, origin, source snippet and stack frames."""
    frames = traceback.extract_tb(exc.__traceback__) if exc.__traceback__ else []
    code = getattr(exc, "code", 0)
    if not isinstance(code, (int, str)):
        code = str(code)
    detail = ExceptionDetail(
        kind=f"{type(exc).__module__}.{type(exc).__qualname__}",
        message=str(exc),
        code=code,
        trace=[FrameDetail(file=f.filename, line=f.lineno, function=f.name) for f in frames],
    )
    if frames:
        origin = frames[-1]
        detail.file = origin.filename
        detail.line = origin.lineno
        if origin.lineno:
            detail.snippet = _snippet(origin.filename, origin.lineno)
    return detail


def load_exception_detail(payload: str) -> ExceptionDetail:
    return ExceptionDetail.model_validate_json(payload)


__all__ = [
    "serialize",
    "deserialize",
    "encode_json",
    "ExceptionDetail",
    "FrameDetail",
    "describe_exception",
    "load_exception_detail",
]
