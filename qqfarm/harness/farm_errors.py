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

"""Exception hierarchy for the farm protocol, session and loops.

  FarmError
  ├── ProtocolError: SchemaLoadError, UnknownTypeError, EncodeError, DecodeError
  ├── RequestError: RequestTimeout, ServerError
  └── SessionError: SessionClosed, SessionNotReady, AuthenticationError

Loops treat ProtocolError and RequestError as failures of a single entity.
SessionError means the shared session is gone and the current pass is over.
"""

from typing import Optional


class FarmError(Exception):
  """Base class for all qqfarm errors."""


class ProtocolError(FarmError):
  """Schema or codec level failure."""


class SchemaLoadError(ProtocolError):
  """The descriptor catalogue is malformed or references undefined types."""


class UnknownTypeError(ProtocolError):
  """A message, enum or route name is not in the registry."""

  def __init__(self, name: str, kind: str = "message"):
    super().__init__(f"Unknown {kind} type: {name}")
    self.name = name
    self.kind = kind


class EncodeError(ProtocolError):
  """A value does not match its descriptor."""


class DecodeError(ProtocolError):
  """A payload is truncated, malformed or misses a required field."""


class RequestError(FarmError):
  """A single request did not produce a usable reply."""


class RequestTimeout(RequestError):
  """No reply arrived before the request deadline."""

  def __init__(self, descriptor_name: str, seq: int, timeout: float):
    super().__init__(
        f"{descriptor_name} (seq={seq}) timed out after {timeout:.1f}s"
    )
    self.descriptor_name = descriptor_name
    self.seq = seq
    self.timeout = timeout


class ServerError(RequestError):
  """The backend answered with a non-zero error code."""

  def __init__(self, code: int, message: str = "", descriptor_name: str = ""):
    text = f"server error {code}"
    if message:
      text += f": {message}"
    if descriptor_name:
      text = f"{descriptor_name} failed with {text}"
    super().__init__(text)
    self.code = code
    self.message = message
    self.descriptor_name = descriptor_name


class SessionError(FarmError):
  """The shared session cannot carry requests."""


class SessionClosed(SessionError):
  """The session was closed while a request was outstanding."""

  def __init__(self, reason: str = "session closed", code: Optional[int] = None):
    super().__init__(reason)
    self.reason = reason
    self.code = code


class SessionNotReady(SessionError):
  """A request was attempted outside the READY state."""


class AuthenticationError(SessionError):
  """The backend rejected the login credential or login never completed."""

  def __init__(self, reason: str, code: Optional[int] = None):
    super().__init__(reason)
    self.reason = reason
    self.code = code
