"""
Forkpoint Serialization - Storable representation of application values

Values are stored in a single string field together with a type marker:

- "json": the value is JSON-safe and is stored as plain JSON text
  (cheap, and readable when inspecting the store directly)
- "opaque": the value is handed to a pluggable Serializer, and the
  resulting (type_tag, bytes) pair is stored as a small JSON wrapper
  {"__serde_type__": tag, "__serde_data__": hex}

Rows written by older releases used the marker "serde" for the opaque
path, and some carry the wrapper under a "json" marker; both still decode.
"""

import json
import math
import pickle
from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Protocol, Tuple, Union

from .errors import SerializationError

JSON_TYPE = "json"
OPAQUE_TYPE = "opaque"
LEGACY_OPAQUE_TYPE = "serde"

SERDE_TYPE_KEY = "__serde_type__"
SERDE_DATA_KEY = "__serde_data__"


class Serializer(Protocol):
    """Codec used for values that are not JSON-safe"""

    def dumps_typed(self, obj: Any) -> Tuple[str, bytes]: ...

    def loads_typed(self, type_tag: str, data: bytes) -> Any: ...


class PickleSerializer:
    """
    Default Serializer backed by pickle.

    Unpickling runs arbitrary code, so only use it with a store that no
    untrusted party can write to. Pass a different Serializer to
    CheckpointSaver(serde=...) otherwise.
    """

    type_tag = "pickle"

    def dumps_typed(self, obj: Any) -> Tuple[str, bytes]:
        return self.type_tag, pickle.dumps(obj)

    def loads_typed(self, type_tag: str, data: bytes) -> Any:
        if type_tag != self.type_tag:
            raise ValueError(f"PickleSerializer cannot load type tag '{type_tag}'")
        return pickle.loads(data)


@dataclass(frozen=True)
class JsonValue:
    """A value stored directly as JSON text"""
    text: str

    type: ClassVar[str] = JSON_TYPE

    @property
    def payload(self) -> str:
        return self.text


@dataclass(frozen=True)
class OpaqueValue:
    """A value stored as Serializer output"""
    type_tag: str
    data: bytes

    type: ClassVar[str] = OPAQUE_TYPE

    @property
    def payload(self) -> str:
        return json.dumps({
            SERDE_TYPE_KEY: self.type_tag,
            SERDE_DATA_KEY: self.data.hex(),
        })


EncodedValue = Union[JsonValue, OpaqueValue]


def is_json_safe(value: Any) -> bool:
    """
    Check whether a value survives a JSON round trip unchanged.

    Exact types only: tuples, subclasses such as enums, and non-finite
    floats would come back as something else, so they are not JSON-safe.
    """
    kind = type(value)
    if value is None or kind in (bool, int, str):
        return True
    if kind is float:
        return math.isfinite(value)
    if kind is list:
        return all(is_json_safe(item) for item in value)
    if kind is dict:
        return all(
            type(k) is str and is_json_safe(v)
            for k, v in value.items()
        )
    return False


def _looks_like_wrapper(value: Any) -> bool:
    return isinstance(value, dict) and SERDE_TYPE_KEY in value and SERDE_DATA_KEY in value


class ValueCodec:
    """
    Encodes values for storage and decodes them back.

    Example:
        codec = ValueCodec()
        type_, payload = codec.dump({"messages": ["hi"]})   # ("json", '{"messages": ["hi"]}')
        value = codec.load(type_, payload)
    """

    def __init__(self, serde: Optional[Serializer] = None):
        self.serde = serde or PickleSerializer()

    def encode(self, value: Any) -> EncodedValue:
        # A JSON-safe value shaped like the opaque wrapper would be
        # mistaken for one on read, so it takes the opaque path too.
        if is_json_safe(value) and not _looks_like_wrapper(value):
            try:
                return JsonValue(json.dumps(value))
            except (TypeError, ValueError):
                # e.g. ints past the interpreter's digit limit
                pass

        try:
            type_tag, data = self.serde.dumps_typed(value)
        except Exception as err:
            raise SerializationError(
                f"Cannot serialize value of type {type(value).__name__}: {err}"
            ) from err
        if not isinstance(data, (bytes, bytearray)):
            raise SerializationError(
                f"Serializer returned {type(data).__name__}, expected bytes"
            )
        return OpaqueValue(type_tag=type_tag, data=bytes(data))

    def decode(self, encoded: EncodedValue) -> Any:
        if isinstance(encoded, JsonValue):
            return self.load(JSON_TYPE, encoded.text)
        return self._load_opaque(encoded.type_tag, encoded.data)

    def dump(self, value: Any) -> Tuple[str, str]:
        """Encode a value into a (type, payload) pair for a store row"""
        encoded = self.encode(value)
        return encoded.type, encoded.payload

    def load(self, type_: str, payload: str) -> Any:
        """Decode a (type, payload) pair read from a store row"""
        try:
            parsed = json.loads(payload)
        except (TypeError, ValueError) as err:
            raise SerializationError(f"Stored {type_} payload is not valid JSON: {err}") from err

        if type_ in (OPAQUE_TYPE, LEGACY_OPAQUE_TYPE) or _looks_like_wrapper(parsed):
            if not _looks_like_wrapper(parsed):
                raise SerializationError(f"Stored {type_} payload is missing the serde wrapper")
            try:
                data = bytes.fromhex(parsed[SERDE_DATA_KEY])
            except (TypeError, ValueError) as err:
                raise SerializationError(f"Stored serde data is not valid hex: {err}") from err
            return self._load_opaque(parsed[SERDE_TYPE_KEY], data)

        if type_ != JSON_TYPE:
            raise SerializationError(f"Unknown stored value type '{type_}'")
        return parsed

    def _load_opaque(self, type_tag: str, data: bytes) -> Any:
        try:
            return self.serde.loads_typed(type_tag, data)
        except Exception as err:
            raise SerializationError(
                f"Cannot deserialize value with type tag '{type_tag}': {err}"
            ) from err
