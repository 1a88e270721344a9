"""
Serialization helpers shared by the coordination primitives.

Throttle outcomes travel through both the cache key and pub/sub, so they are
pickled (to keep exception types intact) and base64 encoded, which keeps them
readable through clients created with ``decode_responses=True``.

ThrottleQueue payloads are stored as canonical JSON; the md5 of that JSON is
the payload signature used for deduplication.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import json
import pickle
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from pydantic import BaseModel

from ..errors import CodecError


def to_str(value: Union[str, bytes, None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8")
    return str(value)


@dataclass
class Outcome:
    key: str
    value: Any = None
    error: Optional[BaseException] = None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


def dump_outcome(outcome: Outcome) -> str:
    try:
        raw = pickle.dumps(outcome)
    except (pickle.PicklingError, TypeError, AttributeError) as e:
        raise CodecError(f"Cannot serialize result for {outcome.key}", e) from e
    return base64.b64encode(raw).decode("ascii")


def load_outcome(payload: Union[str, bytes]) -> Outcome:
    try:
        outcome = pickle.loads(base64.b64decode(payload, validate=True))
    except (binascii.Error, pickle.UnpicklingError, TypeError, AttributeError, EOFError, ImportError) as e:
        raise CodecError("Cannot deserialize cached result", e) from e
    if not isinstance(outcome, Outcome):
        raise CodecError(f"Unexpected cached result type {type(outcome).__name__}")
    return outcome


def _normalize(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, dict):
        return {str(k): _normalize(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_normalize(v) for v in data]
    return data


def canonical_json(data: Any) -> str:
    """JSON with object keys sorted at every level and no insignificant whitespace."""
    try:
        return json.dumps(_normalize(data), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise CodecError("Payload is not JSON serializable", e) from e


def signature(data: Any) -> Tuple[str, str]:
    """Returns ``(md5 hex digest, canonical json)`` of ``data``."""
    text = canonical_json(data)
    return hashlib.md5(text.encode("utf-8")).hexdigest(), text
