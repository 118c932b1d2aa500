# Copyright 2025 The qqfarm Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Descriptor driven protobuf wire-format codec for farm gateway messages.

Values are plain dicts keyed by field name. Encoding writes every field that
is present and not None; decoding only returns fields found on the wire, so
`decode(encode(v)) == v` for every accepted value except that an empty
repeated field decodes as absent. Unknown field numbers are skipped when
decoding.
"""

import enum
import struct
from typing import Any, Dict, List, Mapping, Optional, Tuple

from qqfarm.harness.farm_errors import DecodeError, EncodeError, UnknownTypeError
from qqfarm.harness.farm_schema import (INTEGER_TYPES, FieldDescriptor,
                                        SchemaRegistry, default_registry)

GATE_MESSAGE = "GateMessage"

# Wire types
WIRE_VARINT = 0
WIRE_I64 = 1
WIRE_LEN = 2
WIRE_I32 = 5

MAX_VARINT_BYTES = 10
_UINT64_MASK = (1 << 64) - 1

_INT_RANGES = {
    "int32": (-(1 << 31), (1 << 31) - 1),
    "sint32": (-(1 << 31), (1 << 31) - 1),
    "uint32": (0, (1 << 32) - 1),
    "int64": (-(1 << 63), (1 << 63) - 1),
    "sint64": (-(1 << 63), (1 << 63) - 1),
    "uint64": (0, (1 << 64) - 1),
}

_PACKABLE_TYPES = INTEGER_TYPES | {"bool", "enum", "double"}


class GateMessageType(enum.IntEnum):
  """Values of GateMeta.message_type."""

  UNKNOWN = 0
  REQUEST = 1
  RESPONSE = 2
  NOTIFY = 3


def encode_varint(value: int) -> bytes:
  out = bytearray()
  value = int(value)
  if value < 0:
    # int32/int64 two's complement
    value &= _UINT64_MASK
  while True:
    b = value & 0x7F
    value >>= 7
    if value:
      out.append(b | 0x80)
    else:
      out.append(b)
      break
  return bytes(out)


def decode_varint(data: bytes, idx: int) -> Tuple[int, int]:
  """Reads a varint starting at `idx`.

  Returns:
    (value, next_index)

  Raises:
    DecodeError: If the varint is truncated or longer than 10 bytes.
  """
  shift = 0
  value = 0
  start = idx
  while idx < len(data):
    b = data[idx]
    idx += 1
    value |= (b & 0x7F) << shift
    if not b & 0x80:
      return value, idx
    shift += 7
    if idx - start >= MAX_VARINT_BYTES:
      raise DecodeError(f"varint at offset {start} exceeds {MAX_VARINT_BYTES} bytes")
  raise DecodeError(f"truncated varint at offset {start}")


def _zigzag_encode(value: int) -> int:
  return (value << 1) ^ (value >> 63)


def _zigzag_decode(value: int) -> int:
  return (value >> 1) ^ -(value & 1)


def _to_signed64(value: int) -> int:
  value &= _UINT64_MASK
  return value - (1 << 64) if value >= (1 << 63) else value


def _wire_type(fd: FieldDescriptor) -> int:
  if fd.type == "double":
    return WIRE_I64
  if fd.type in ("string", "bytes", "message"):
    return WIRE_LEN
  return WIRE_VARINT


class MessageCodec:
  """Encodes and decodes named messages described by a SchemaRegistry."""

  def __init__(self, registry: Optional[SchemaRegistry] = None):
    self.registry = registry or default_registry()

  # ---------------------------------------------------------------------------
  # Encoding
  # ---------------------------------------------------------------------------

  def encode(self, name: str, value: Mapping[str, Any]) -> bytes:
    """Serializes `value` according to the message named `name`.

    Raises:
      UnknownTypeError: If `name` or a nested type is undefined.
      EncodeError: If a required field is missing, a key is not a field of
        the message, or a value has the wrong type or range.
    """
    return bytes(self._encode_message(name, value, path=name))

  def _encode_message(self, name: str, value: Any, path: str) -> bytearray:
    desc = self.registry.describe(name)
    if not isinstance(value, Mapping):
      raise EncodeError(f"{path}: expected a mapping, got {type(value).__name__}")

    unknown = set(value) - desc.field_names
    if unknown:
      raise EncodeError(f"{path}: unknown field(s) {sorted(unknown)}")

    out = bytearray()
    for fd in desc.fields:
      field_path = f"{path}.{fd.name}"
      item = value.get(fd.name)
      if item is None:
        if fd.required:
          raise EncodeError(f"{field_path}: required field missing")
        continue
      if fd.repeated:
        if not isinstance(item, (list, tuple)):
          raise EncodeError(
              f"{field_path}: repeated field needs a list, got {type(item).__name__}"
          )
        for i, element in enumerate(item):
          out += self._encode_field(fd, element, f"{field_path}[{i}]")
      else:
        out += self._encode_field(fd, item, field_path)
    return out

  def _encode_field(self, fd: FieldDescriptor, value: Any, path: str) -> bytes:
    key = encode_varint((fd.number << 3) | _wire_type(fd))

    if fd.type in INTEGER_TYPES:
      number = self._check_int(fd.type, value, path)
      if fd.type.startswith("sint"):
        number = _zigzag_encode(number)
      return key + encode_varint(number)

    if fd.type == "bool":
      if not isinstance(value, bool):
        raise EncodeError(f"{path}: expected bool, got {type(value).__name__}")
      return key + encode_varint(1 if value else 0)

    if fd.type == "enum":
      return key + encode_varint(self._enum_number(fd, value, path))

    if fd.type == "double":
      if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise EncodeError(f"{path}: expected a number, got {type(value).__name__}")
      return key + struct.pack("<d", float(value))

    if fd.type == "string":
      if not isinstance(value, str):
        raise EncodeError(f"{path}: expected str, got {type(value).__name__}")
      payload = value.encode("utf-8")
    elif fd.type == "bytes":
      if not isinstance(value, (bytes, bytearray, memoryview)):
        raise EncodeError(f"{path}: expected bytes, got {type(value).__name__}")
      payload = bytes(value)
    else:
      payload = bytes(self._encode_message(fd.type_name, value, path))
    return key + encode_varint(len(payload)) + payload

  @staticmethod
  def _check_int(type_name: str, value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
      raise EncodeError(f"{path}: expected int, got {type(value).__name__}")
    low, high = _INT_RANGES[type_name]
    if not low <= value <= high:
      raise EncodeError(f"{path}: {value} out of range for {type_name}")
    return value

  def _enum_number(self, fd: FieldDescriptor, value: Any, path: str) -> int:
    enum_desc = self.registry.describe_enum(fd.type_name)
    if isinstance(value, str):
      try:
        return enum_desc.number_of(value)
      except UnknownTypeError as e:
        raise EncodeError(f"{path}: {e}") from e
    if isinstance(value, bool) or not isinstance(value, int):
      raise EncodeError(
          f"{path}: expected {fd.type_name} name or number, got {type(value).__name__}"
      )
    if not enum_desc.has_number(value):
      raise EncodeError(f"{path}: {value} is not a {fd.type_name} value")
    return int(value)

  # ---------------------------------------------------------------------------
  # Decoding
  # ---------------------------------------------------------------------------

  def decode(self, name: str, payload: bytes) -> Dict[str, Any]:
    """Reconstructs a dict from a payload of the message named `name`.

    Raises:
      UnknownTypeError: If `name` or a nested type is undefined.
      DecodeError: If the payload is truncated, malformed, or lacks a
        required field.
    """
    if not isinstance(payload, (bytes, bytearray, memoryview)):
      raise DecodeError(f"{name}: payload must be bytes, got {type(payload).__name__}")
    return self._decode_message(name, bytes(payload), path=name)

  def _decode_message(self, name: str, data: bytes, path: str) -> Dict[str, Any]:
    desc = self.registry.describe(name)
    result: Dict[str, Any] = {}
    idx = 0
    total = len(data)

    while idx < total:
      key, idx = decode_varint(data, idx)
      number, wire_type = key >> 3, key & 0x07
      if number == 0:
        raise DecodeError(f"{path}: invalid field number 0")

      fd = desc.field_by_number(number)
      if fd is None:
        idx = self._skip_field(data, idx, wire_type, path)
        continue

      field_path = f"{path}.{fd.name}"
      if fd.repeated and fd.type in _PACKABLE_TYPES and wire_type == WIRE_LEN:
        length, idx = decode_varint(data, idx)
        end = idx + length
        if end > total:
          raise DecodeError(f"{field_path}: truncated packed field")
        values = result.setdefault(fd.name, [])
        while idx < end:
          value, idx = self._read_scalar(fd, data, idx, field_path)
          values.append(value)
        if idx != end:
          raise DecodeError(f"{field_path}: packed field overruns its length")
        continue

      if wire_type != _wire_type(fd):
        raise DecodeError(
            f"{field_path}: wire type {wire_type} does not match {fd.type}"
        )
      value, idx = self._read_value(fd, data, idx, field_path)
      if fd.repeated:
        result.setdefault(fd.name, []).append(value)
      else:
        result[fd.name] = value

    for fd in desc.fields:
      if fd.required and fd.name not in result:
        raise DecodeError(f"{path}.{fd.name}: required field missing")
    return result

  def _read_value(
      self, fd: FieldDescriptor, data: bytes, idx: int, path: str
  ) -> Tuple[Any, int]:
    if fd.type not in ("string", "bytes", "message"):
      return self._read_scalar(fd, data, idx, path)

    length, idx = decode_varint(data, idx)
    end = idx + length
    if end > len(data):
      raise DecodeError(f"{path}: length {length} runs past end of payload")
    chunk = data[idx:end]
    if fd.type == "string":
      try:
        return chunk.decode("utf-8"), end
      except UnicodeDecodeError as e:
        raise DecodeError(f"{path}: invalid utf-8: {e}") from e
    if fd.type == "bytes":
      return chunk, end
    return self._decode_message(fd.type_name, chunk, path), end

  @staticmethod
  def _read_scalar(
      fd: FieldDescriptor, data: bytes, idx: int, path: str
  ) -> Tuple[Any, int]:
    if fd.type == "double":
      if idx + 8 > len(data):
        raise DecodeError(f"{path}: truncated double")
      return struct.unpack_from("<d", data, idx)[0], idx + 8

    raw, idx = decode_varint(data, idx)
    if fd.type == "bool":
      return raw != 0, idx
    if fd.type in ("sint32", "sint64"):
      return _zigzag_decode(raw), idx
    if fd.type == "uint32":
      return raw & 0xFFFFFFFF, idx
    if fd.type == "uint64":
      return raw & _UINT64_MASK, idx
    # int32, int64, enum
    return _to_signed64(raw), idx

  @staticmethod
  def _skip_field(data: bytes, idx: int, wire_type: int, path: str) -> int:
    if wire_type == WIRE_VARINT:
      _, idx = decode_varint(data, idx)
      return idx
    if wire_type == WIRE_I64:
      end = idx + 8
    elif wire_type == WIRE_I32:
      end = idx + 4
    elif wire_type == WIRE_LEN:
      length, idx = decode_varint(data, idx)
      end = idx + length
    else:
      raise DecodeError(f"{path}: unsupported wire type {wire_type}")
    if end > len(data):
      raise DecodeError(f"{path}: truncated unknown field")
    return end

  # ---------------------------------------------------------------------------
  # Gate envelope
  # ---------------------------------------------------------------------------

  def encode_frame(self, meta: Mapping[str, Any], body: bytes = b"") -> bytes:
    """Wraps an encoded body in a GateMessage envelope."""
    return self.encode(GATE_MESSAGE, {"meta": dict(meta), "body": body})

  def decode_frame(self, data: bytes) -> Tuple[Dict[str, Any], bytes]:
    """Splits a GateMessage envelope into (meta, body)."""
    message = self.decode(GATE_MESSAGE, data)
    return message["meta"], message.get("body", b"")

  def encode_request_frame(
      self,
      request_name: str,
      value: Mapping[str, Any],
      client_seq: int,
      server_seq: int = 0,
  ) -> bytes:
    """Encodes a routed request and its envelope in one step."""
    route = self.registry.route(request_name)
    body = self.encode(request_name, value)
    meta = {
        "service_name": route.service,
        "method_name": route.method,
        "message_type": int(GateMessageType.REQUEST),
        "client_seq": client_seq,
        "server_seq": server_seq,
    }
    return self.encode_frame(meta, body)


def repeated(value: Mapping[str, Any], name: str) -> List[Any]:
  """Returns a repeated field of a decoded dict, empty when absent."""
  return list(value.get(name) or [])
