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

"""Schema registry for the farm gateway message catalogue.

The catalogue is a JSON document describing every message the client can
send or receive:

    {
        "package": "qqfarm",
        "enums": {"PlantStage": {"EMPTY": 0, "MATURE": 2, ...}},
        "messages": {
            "LandInfo": {"fields": [
                {"name": "id", "number": 1, "type": "int64", "label": "required"},
                {"name": "plant", "number": 3, "type": "message",
                 "type_name": "PlantInfo"}
            ]}
        },
        "routes": [{"request": "HarvestRequest", "reply": "HarvestReply",
                    "service": "gamepb.plantpb.PlantService",
                    "method": "Harvest"}],
        "notifies": [{"method": "LandsNotify", "message": "LandsNotify"}]
    }

This module provides:
  1. Pydantic models validating the catalogue shape
  2. SchemaRegistry, which resolves cross references and swaps the loaded
     table in atomically

Example usage:
    >>> registry = SchemaRegistry().load()
    >>> registry.describe("LandInfo").field("plant").type_name
    'PlantInfo'
    >>> registry.route("HarvestRequest").method
    'Harvest'
"""

import enum
import functools
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import (BaseModel, ConfigDict, Field, ValidationError,
                      field_validator, model_validator)

from qqfarm.harness.farm_errors import SchemaLoadError, UnknownTypeError

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA_PATH = Path(__file__).parent / "schemas" / "farm_messages.json"

# Largest field number protobuf allows (2^29 - 1)
MAX_FIELD_NUMBER = 536_870_911

INTEGER_TYPES = frozenset(
    {"int32", "int64", "uint32", "uint64", "sint32", "sint64"}
)
SCALAR_TYPES = INTEGER_TYPES | {"bool", "enum", "double"}
FIELD_TYPES = SCALAR_TYPES | {"string", "bytes", "message"}

SchemaSource = Union[str, os.PathLike, Mapping[str, Any]]


class FieldLabel(str, enum.Enum):
  """Cardinality of a message field."""

  OPTIONAL = "optional"
  REQUIRED = "required"
  REPEATED = "repeated"


# =============================================================================
# Descriptor Models
# =============================================================================


class FieldDescriptor(BaseModel):
  """One field of a message layout."""

  model_config = ConfigDict(frozen=True, extra="forbid")

  name: str = Field(..., min_length=1, description="Field name in decoded dicts")
  number: int = Field(..., ge=1, le=MAX_FIELD_NUMBER, description="Wire tag")
  type: str = Field(..., description="Scalar type, 'message' or 'enum'")
  label: FieldLabel = Field(FieldLabel.OPTIONAL, description="Cardinality")
  type_name: Optional[str] = Field(
      None, description="Referenced message or enum for composite fields"
  )

  @field_validator("type")
  @classmethod
  def check_known_type(cls, v: str) -> str:
    if v not in FIELD_TYPES:
      raise ValueError(f"unsupported field type {v!r}")
    return v

  @model_validator(mode="after")
  def check_type_name(self) -> "FieldDescriptor":
    composite = self.type in ("message", "enum")
    if composite and not self.type_name:
      raise ValueError(f"field {self.name!r} of type {self.type} needs type_name")
    if not composite and self.type_name:
      raise ValueError(f"field {self.name!r} of type {self.type} takes no type_name")
    return self

  @property
  def repeated(self) -> bool:
    return self.label == FieldLabel.REPEATED

  @property
  def required(self) -> bool:
    return self.label == FieldLabel.REQUIRED


class MessageDescriptor(BaseModel):
  """Field layout of one named message type."""

  model_config = ConfigDict(frozen=True, populate_by_name=True)

  name: str
  field_list: Tuple[FieldDescriptor, ...] = Field(default=(), alias="fields")

  @model_validator(mode="after")
  def check_unique(self) -> "MessageDescriptor":
    names = set()
    numbers = set()
    for fd in self.field_list:
      if fd.name in names:
        raise ValueError(f"{self.name}: duplicate field name {fd.name!r}")
      if fd.number in numbers:
        raise ValueError(f"{self.name}: duplicate field number {fd.number}")
      names.add(fd.name)
      numbers.add(fd.number)
    return self

  @functools.cached_property
  def fields_by_name(self) -> Dict[str, FieldDescriptor]:
    return {fd.name: fd for fd in self.field_list}

  @functools.cached_property
  def fields_by_number(self) -> Dict[int, FieldDescriptor]:
    return {fd.number: fd for fd in self.field_list}

  @functools.cached_property
  def fields(self) -> Tuple[FieldDescriptor, ...]:
    """Fields in ascending field-number order."""
    return tuple(sorted(self.field_list, key=lambda f: f.number))

  @property
  def field_names(self) -> frozenset:
    return frozenset(self.fields_by_name)

  def field(self, name: str) -> FieldDescriptor:
    try:
      return self.fields_by_name[name]
    except KeyError:
      raise UnknownTypeError(f"{self.name}.{name}", kind="field") from None

  def field_by_number(self, number: int) -> Optional[FieldDescriptor]:
    return self.fields_by_number.get(number)


class EnumDescriptor(BaseModel):
  """Named enum values."""

  model_config = ConfigDict(frozen=True)

  name: str
  values: Dict[str, int]

  @model_validator(mode="after")
  def check_values(self) -> "EnumDescriptor":
    if not self.values:
      raise ValueError(f"enum {self.name} has no values")
    return self

  def number_of(self, value_name: str) -> int:
    try:
      return self.values[value_name]
    except KeyError:
      raise UnknownTypeError(f"{self.name}.{value_name}", kind="enum value") from None

  def has_number(self, number: int) -> bool:
    return number in self.values.values()

  def name_of(self, number: int) -> Optional[str]:
    for value_name, value in self.values.items():
      if value == number:
        return value_name
    return None


class RouteDescriptor(BaseModel):
  """Maps a request message onto its gateway service method and reply."""

  model_config = ConfigDict(frozen=True, extra="forbid")

  request: str
  reply: str
  service: str = Field(..., min_length=1)
  method: str = Field(..., min_length=1)


class NotifyDescriptor(BaseModel):
  """Maps a server push method name onto the message it carries."""

  model_config = ConfigDict(frozen=True, extra="forbid")

  method: str = Field(..., min_length=1)
  message: str


class _MessageBody(BaseModel):
  model_config = ConfigDict(extra="forbid", populate_by_name=True)

  field_list: List[FieldDescriptor] = Field(default_factory=list, alias="fields")


class SchemaCatalogue(BaseModel):
  """Top level shape of the descriptor source."""

  model_config = ConfigDict(extra="forbid")

  package: str = "qqfarm"
  enums: Dict[str, Dict[str, int]] = Field(default_factory=dict)
  messages: Dict[str, _MessageBody] = Field(default_factory=dict)
  routes: List[RouteDescriptor] = Field(default_factory=list)
  notifies: List[NotifyDescriptor] = Field(default_factory=list)


# =============================================================================
# Registry
# =============================================================================


class _SchemaTable:
  """Immutable, fully resolved view of one catalogue."""

  def __init__(
      self,
      messages: Dict[str, MessageDescriptor],
      enums: Dict[str, EnumDescriptor],
      routes: Dict[str, RouteDescriptor],
      notifies: Dict[str, str],
  ):
    self.messages = messages
    self.enums = enums
    self.routes = routes
    self.notifies = notifies
    self.routes_by_method = {
        (r.service, r.method): r for r in routes.values()
    }

  @classmethod
  def build(cls, catalogue: SchemaCatalogue) -> "_SchemaTable":
    try:
      enums = {
          name: EnumDescriptor(name=name, values=values)
          for name, values in catalogue.enums.items()
      }
      messages = {
          name: MessageDescriptor(name=name, fields=tuple(body.field_list))
          for name, body in catalogue.messages.items()
      }
    except ValidationError as e:
      raise SchemaLoadError(f"Invalid descriptor: {e}") from e

    for message in messages.values():
      for fd in message.fields:
        if fd.type == "message" and fd.type_name not in messages:
          raise SchemaLoadError(
              f"{message.name}.{fd.name} references undefined message "
              f"{fd.type_name!r}"
          )
        if fd.type == "enum" and fd.type_name not in enums:
          raise SchemaLoadError(
              f"{message.name}.{fd.name} references undefined enum "
              f"{fd.type_name!r}"
          )

    routes: Dict[str, RouteDescriptor] = {}
    for route in catalogue.routes:
      for ref in (route.request, route.reply):
        if ref not in messages:
          raise SchemaLoadError(
              f"Route {route.service}.{route.method} references undefined "
              f"message {ref!r}"
          )
      if route.request in routes:
        raise SchemaLoadError(f"Duplicate route for {route.request}")
      routes[route.request] = route

    notifies: Dict[str, str] = {}
    for notify in catalogue.notifies:
      if notify.message not in messages:
        raise SchemaLoadError(
            f"Notify {notify.method} references undefined message "
            f"{notify.message!r}"
        )
      notifies[notify.method] = notify.message

    return cls(messages, enums, routes, notifies)


def _read_source(source: SchemaSource) -> Mapping[str, Any]:
  if isinstance(source, Mapping):
    return source
  path = Path(source)
  try:
    text = path.read_text(encoding="utf-8")
  except OSError as e:
    raise SchemaLoadError(f"Cannot read schema file {path}: {e}") from e
  try:
    data = json.loads(text)
  except json.JSONDecodeError as e:
    raise SchemaLoadError(f"Malformed schema file {path}: {e}") from e
  if not isinstance(data, dict):
    raise SchemaLoadError(f"Schema root in {path} must be an object")
  return data


class SchemaRegistry:
  """Named message descriptors used by the codec.

  Stateless after load. Re-loading builds a complete new table first and
  only then replaces the current one, so a failing reload leaves the
  previously loaded catalogue in place.
  """

  def __init__(self, source: Optional[SchemaSource] = None):
    self._source = source if source is not None else DEFAULT_SCHEMA_PATH
    self._table: Optional[_SchemaTable] = None
    self._lock = threading.Lock()

  def load(self, source: Optional[SchemaSource] = None) -> "SchemaRegistry":
    """Parses and resolves the catalogue.

    Args:
      source: Path to a JSON catalogue or an already parsed mapping. Defaults
        to the source given at construction.

    Returns:
      self, so that `SchemaRegistry().load()` can be chained.

    Raises:
      SchemaLoadError: If the source is malformed or references undefined
        types.
    """
    source = source if source is not None else self._source
    data = _read_source(source)
    try:
      catalogue = SchemaCatalogue.model_validate(data)
    except ValidationError as e:
      raise SchemaLoadError(f"Invalid schema catalogue: {e}") from e
    table = _SchemaTable.build(catalogue)

    with self._lock:
      self._table = table
      self._source = source
    logger.debug(
        f"Loaded {len(table.messages)} messages, {len(table.enums)} enums, "
        f"{len(table.routes)} routes"
    )
    return self

  @property
  def loaded(self) -> bool:
    return self._table is not None

  def _require_table(self) -> _SchemaTable:
    table = self._table
    if table is None:
      self.load()
      table = self._table
    return table

  def describe(self, name: str) -> MessageDescriptor:
    """Returns the descriptor for a message type.

    Raises:
      UnknownTypeError: If no message with that name is defined.
    """
    try:
      return self._require_table().messages[name]
    except KeyError:
      raise UnknownTypeError(name) from None

  def describe_enum(self, name: str) -> EnumDescriptor:
    try:
      return self._require_table().enums[name]
    except KeyError:
      raise UnknownTypeError(name, kind="enum") from None

  def route(self, request_name: str) -> RouteDescriptor:
    """Returns the gateway route used to send `request_name`."""
    try:
      return self._require_table().routes[request_name]
    except KeyError:
      raise UnknownTypeError(request_name, kind="route") from None

  def reply_route(self, service: str, method: str) -> RouteDescriptor:
    try:
      return self._require_table().routes_by_method[(service, method)]
    except KeyError:
      raise UnknownTypeError(f"{service}.{method}", kind="route") from None

  def notify_descriptor(self, method: str) -> str:
    """Returns the message name carried by a push with method `method`."""
    try:
      return self._require_table().notifies[method]
    except KeyError:
      raise UnknownTypeError(method, kind="notify") from None

  def names(self) -> List[str]:
    return sorted(self._require_table().messages)

  def routes(self) -> List[RouteDescriptor]:
    return list(self._require_table().routes.values())


_default_registry: Optional[SchemaRegistry] = None
_default_registry_lock = threading.Lock()


def default_registry() -> SchemaRegistry:
  """Process-wide registry loaded once from the bundled catalogue."""
  global _default_registry
  with _default_registry_lock:
    if _default_registry is None:
      _default_registry = SchemaRegistry().load()
    return _default_registry
