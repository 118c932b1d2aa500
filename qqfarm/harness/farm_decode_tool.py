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

"""Debugging helpers for the message catalogue.

`verify_schema` checks that every route and push resolves and that every
request encodes; `decode_payload` turns a captured base64 or hex payload
back into readable fields, optionally unwrapping the gate envelope first.
"""

import base64
import binascii
import json
from typing import Any, Dict, List, Optional

from qqfarm.harness.farm_codec import GateMessageType, MessageCodec
from qqfarm.harness.farm_errors import DecodeError, UnknownTypeError
from qqfarm.harness.farm_schema import SchemaRegistry, default_registry


def verify_schema(registry: Optional[SchemaRegistry] = None) -> List[str]:
  """Returns one report line per route and push.

  Raises:
    SchemaLoadError: If the catalogue does not load.
    ProtocolError: If a request with no required fields fails to encode.
  """
  registry = registry or default_registry()
  codec = MessageCodec(registry)
  lines = [f"{len(registry.names())} message types loaded"]
  for route in registry.routes():
    request = registry.describe(route.request)
    reply = registry.describe(route.reply)
    if not any(fd.required for fd in request.fields):
      codec.encode(route.request, {})
    lines.append(
        f"{route.service}.{route.method}: {route.request} "
        f"({len(request.fields)} fields) -> {route.reply} ({len(reply.fields)} fields)"
    )
  for method in ("LandsNotify", "ItemNotify", "TaskInfoNotify", "BasicNotify", "Kickout"):
    lines.append(f"push {method}: {registry.notify_descriptor(method)}")
  return lines


def parse_payload(data: str, hex_input: bool = False) -> bytes:
  """Turns a base64 (default) or hex string into bytes.

  Raises:
    DecodeError: If the text is not valid base64 or hex.
  """
  text = "".join(data.split())
  try:
    if hex_input:
      return bytes.fromhex(text)
    return base64.b64decode(text, validate=True)
  except (ValueError, binascii.Error) as e:
    kind = "hex" if hex_input else "base64"
    raise DecodeError(f"input is not valid {kind}: {e}") from e


def _body_type(registry: SchemaRegistry, meta: Dict[str, Any]) -> Optional[str]:
  service = meta.get("service_name", "")
  method = meta.get("method_name", "")
  message_type = meta.get("message_type", GateMessageType.UNKNOWN)
  try:
    if message_type == GateMessageType.NOTIFY:
      return registry.notify_descriptor(method)
    route = registry.reply_route(service, method)
  except UnknownTypeError:
    return None
  if message_type == GateMessageType.REQUEST:
    return route.request
  return route.reply


def decode_payload(
    payload: bytes,
    type_name: Optional[str] = None,
    gate: bool = False,
    registry: Optional[SchemaRegistry] = None,
) -> Dict[str, Any]:
  """Decodes a captured payload.

  Args:
    payload: Raw bytes.
    type_name: Message type of the payload, or of the gate body when `gate`
      is set. With `gate` it defaults to the type named by the route.
    gate: Whether the payload is a full GateMessage frame.
    registry: Schema registry, defaults to the bundled catalogue.

  Returns:
    The decoded message, or {"meta": ..., "body": ...} for a gate frame.
    A gate body whose type is unknown is returned as raw bytes.
  """
  registry = registry or default_registry()
  codec = MessageCodec(registry)
  if not gate:
    if not type_name:
      raise ValueError("type_name is required unless gate is set")
    return codec.decode(type_name, payload)

  meta, body = codec.decode_frame(payload)
  body_type = type_name or _body_type(registry, meta)
  decoded_body: Any = body
  if body_type:
    decoded_body = codec.decode(body_type, body)
  return {"meta": meta, "body_type": body_type, "body": decoded_body}


def format_decoded(value: Any) -> str:
  """Pretty JSON with bytes shown as hex."""

  def _default(obj):
    if isinstance(obj, (bytes, bytearray)):
      return obj.hex()
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")

  return json.dumps(value, indent=2, ensure_ascii=False, default=_default)
