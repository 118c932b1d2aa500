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

"""Websocket session with the farm gateway.

One FarmSession owns one websocket. A single reader task consumes every
inbound frame: responses are matched to their pending request by client
sequence number, folded into the state cache and then handed to the waiting
caller; pushes go straight to the cache. A heartbeat task keeps the session
alive while it is READY.

Lifecycle:

    CLOSED -> CONNECTING -> AUTHENTICATING -> READY -> CLOSING -> CLOSED

Any state may drop directly to CLOSED on an unrecoverable transport error.
The session never reconnects on its own; callers watch `next_event()` for
`Disconnected` and decide.
"""

import asyncio
import dataclasses
import enum
import inspect
import logging
import time
from collections import OrderedDict
from typing import (Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple,
                    Union)

import tenacity
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from qqfarm.harness.farm.config import ConnectionConfig
from qqfarm.harness.farm_codec import GateMessageType, MessageCodec
from qqfarm.harness.farm_errors import (AuthenticationError, ProtocolError,
                                        RequestError, RequestTimeout,
                                        ServerError, SessionClosed,
                                        SessionError, SessionNotReady,
                                        UnknownTypeError)
from qqfarm.harness.farm_schema import SchemaRegistry, default_registry
from qqfarm.harness.farm_state import FarmStateCache, UserProfile

logger = logging.getLogger(__name__)

# Close codes reported in Disconnected events
CLOSE_NORMAL = 1000
CLOSE_ABNORMAL = 1006
CLOSE_HEARTBEAT_TIMEOUT = 4000
CLOSE_KICKOUT = 4001

MAX_WEBSOCKET_SIZE = 5 * 10**6  # 5MB limit for inbound frames
BACKGROUND_TASK_SHUTDOWN_TIMEOUT = 5.0

Connector = Callable[[str], Awaitable[Any]]
Callback = Callable[..., Union[None, Awaitable[None]]]


class SessionState(enum.Enum):
  """Session lifecycle states."""

  CONNECTING = "connecting"
  AUTHENTICATING = "authenticating"
  READY = "ready"
  CLOSING = "closing"
  CLOSED = "closed"


# =============================================================================
# Events
# =============================================================================


@dataclasses.dataclass(frozen=True)
class LoginSucceeded:
  profile: UserProfile


@dataclasses.dataclass(frozen=True)
class LoginFailed:
  """Authentication was rejected or never completed."""
  reason: str
  code: Optional[int] = None


@dataclasses.dataclass(frozen=True)
class Disconnected:
  """A session that had logged in is gone, or the client abandoned a login."""
  code: int
  reason: str
  by_client: bool = False


SessionEvent = Union[LoginSucceeded, LoginFailed, Disconnected]


# =============================================================================
# Request correlation
# =============================================================================


@dataclasses.dataclass
class PendingRequest:
  seq: int
  descriptor_name: str
  reply_name: str
  request: Mapping[str, Any]
  future: asyncio.Future
  created_at: float = dataclasses.field(default_factory=time.monotonic)


class PendingRequestTable:
  """Outstanding requests keyed by client sequence number.

  Entries leave the table before their future is resolved, so each request
  completes exactly once no matter whether the reply, the deadline or a
  close gets there first.
  """

  def __init__(self, max_size: int = 64):
    if max_size <= 0:
      raise ValueError("max_size must be positive")
    self._max_size = max_size
    self._entries: "OrderedDict[int, PendingRequest]" = OrderedDict()

  def add(
      self,
      seq: int,
      descriptor_name: str,
      reply_name: str,
      request: Mapping[str, Any],
  ) -> PendingRequest:
    """Registers a request awaiting its reply.

    Raises:
      RequestError: If the table is full or `seq` is already pending.
    """
    if seq in self._entries:
      raise RequestError(f"sequence {seq} is already pending")
    if len(self._entries) >= self._max_size:
      raise RequestError(
          f"{descriptor_name}: {len(self._entries)} requests already outstanding"
      )
    future = asyncio.get_running_loop().create_future()
    entry = PendingRequest(seq, descriptor_name, reply_name, request, future)
    self._entries[seq] = entry
    return entry

  def pop(self, seq: int) -> Optional[PendingRequest]:
    return self._entries.pop(seq, None)

  def reject_all(self, error: Exception) -> int:
    """Fails every outstanding request with `error`.

    Returns:
      Number of requests rejected.
    """
    entries = list(self._entries.values())
    self._entries.clear()
    for entry in entries:
      if not entry.future.done():
        entry.future.set_exception(error)
        # Nobody may be left awaiting; mark the exception as retrieved
        entry.future.exception()
    return len(entries)

  def __len__(self) -> int:
    return len(self._entries)

  def __contains__(self, seq: int) -> bool:
    return seq in self._entries


def _log_retry_warning(retry_state: tenacity.RetryCallState) -> None:
  exception = retry_state.outcome.exception() if retry_state.outcome else None
  logger.warning(
      "Opening gateway socket failed (attempt %d): %s",
      retry_state.attempt_number,
      exception,
  )


def _close_code(error: ConnectionClosed) -> int:
  rcvd = getattr(error, "rcvd", None)
  if rcvd is not None:
    return rcvd.code
  return CLOSE_ABNORMAL


async def _maybe_await(result: Any) -> None:
  if inspect.isawaitable(result):
    await result


# =============================================================================
# Session
# =============================================================================


class FarmSession:
  """Authenticated request/response channel to the farm gateway."""

  def __init__(
      self,
      config: Optional[ConnectionConfig] = None,
      registry: Optional[SchemaRegistry] = None,
      state_cache: Optional[FarmStateCache] = None,
      connector: Optional[Connector] = None,
  ):
    """Initialize the session.

    Args:
      config: Connection settings. Defaults to ConnectionConfig().
      registry: Schema registry. Defaults to the bundled catalogue.
      state_cache: Cache receiving every reply and push.
      connector: Coroutine function opening a websocket for a URL. Defaults
        to `websockets.connect`.
    """
    self.config = config or ConnectionConfig()
    self.registry = registry or default_registry()
    self.codec = MessageCodec(self.registry)
    self.state_cache = state_cache if state_cache is not None else FarmStateCache()
    self._connector = connector or self._open_websocket

    self._state = SessionState.CLOSED
    self._websocket: Optional[Any] = None
    self._credential: Optional[str] = None
    self._client_seq = 0
    self._server_seq = 0
    self._pending = PendingRequestTable(self.config.max_pending_requests)
    self._events: asyncio.Queue = asyncio.Queue()
    self._kickout: Optional[Dict[str, Any]] = None
    # (code, reason) of a client close that interrupted login
    self._login_cancelled: Optional[Tuple[int, str]] = None

    # Background tasks
    self._reader_task: Optional[asyncio.Task] = None
    self._heartbeat_task: Optional[asyncio.Task] = None

  # ---------------------------------------------------------------------------
  # Properties
  # ---------------------------------------------------------------------------

  @property
  def state(self) -> SessionState:
    return self._state

  @property
  def is_ready(self) -> bool:
    return self._state == SessionState.READY

  @property
  def last_server_seq(self) -> int:
    return self._server_seq

  @property
  def pending_count(self) -> int:
    return len(self._pending)

  # ---------------------------------------------------------------------------
  # Connect / login
  # ---------------------------------------------------------------------------

  async def connect(
      self,
      credential: str,
      on_success: Optional[Callback] = None,
      on_error: Optional[Callback] = None,
  ) -> bool:
    """Opens the socket and logs in with `credential`.

    Args:
      credential: Login code issued by the platform.
      on_success: Called with no arguments once the session is READY.
      on_error: Called with an AuthenticationError if login fails.

    A `close()` before login completes ends the attempt with
    `Disconnected(by_client=True)` instead of `LoginFailed`, and `on_error`
    is not called.

    Returns:
      True if the session reached READY, False otherwise.

    Raises:
      SessionError: If the session is not CLOSED.
    """
    if self._state != SessionState.CLOSED:
      raise SessionError(f"cannot connect while {self._state.value}")

    self._client_seq = 0
    self._server_seq = 0
    self._kickout = None
    self._login_cancelled = None
    self._pending.reject_all(SessionClosed("superseded by a new connection"))
    self._credential = credential
    self._state = SessionState.CONNECTING

    try:
      self._websocket = await self._open_with_retry()
    except (OSError, asyncio.TimeoutError, WebSocketException) as e:
      return await self._fail_login(f"connection failed: {e}", None, on_error)
    if self._login_cancelled is not None:
      return await self._cancel_login()

    self._state = SessionState.AUTHENTICATING
    self._reader_task = asyncio.create_task(self._read_loop())
    login = {
        "code": credential,
        "platform": self.config.platform,
        "client_version": self.config.client_version,
        "os": self.config.os,
    }
    try:
      await self._request("LoginRequest", login, self.config.login_timeout)
    except ServerError as e:
      return await self._fail_login(e.message or str(e), e.code, on_error)
    except RequestTimeout:
      return await self._fail_login(
          f"login timed out after {self.config.login_timeout:.1f}s", None, on_error
      )
    except (SessionError, ProtocolError, RequestError) as e:
      return await self._fail_login(str(e), getattr(e, "code", None), on_error)

    if self._state != SessionState.AUTHENTICATING:
      return await self._fail_login("connection lost during login", None, on_error)

    self._state = SessionState.READY
    self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
    profile = self.state_cache.profile
    logger.info(f"Logged in as {profile.name or '?'} (gid={profile.gid}, level={profile.level})")
    self._events.put_nowait(LoginSucceeded(profile))
    if on_success is not None:
      await _maybe_await(on_success())
    return True

  async def _fail_login(
      self, reason: str, code: Optional[int], on_error: Optional[Callback]
  ) -> bool:
    if self._login_cancelled is not None:
      return await self._cancel_login()
    logger.error(f"Login failed: {reason}" + (f" (code {code})" if code else ""))
    await self._teardown(reason, code)
    self._state = SessionState.CLOSED
    self._events.put_nowait(LoginFailed(reason, code))
    if on_error is not None:
      await _maybe_await(on_error(AuthenticationError(reason, code)))
    return False

  async def _cancel_login(self) -> bool:
    code, reason = self._login_cancelled
    await self._teardown(reason, code)
    self._state = SessionState.CLOSED
    logger.info(f"Login cancelled: {reason}")
    self._events.put_nowait(Disconnected(code, reason, by_client=True))
    return False

  async def _open_with_retry(self) -> Any:
    retrying = tenacity.AsyncRetrying(
        retry=tenacity.retry_if_exception_type((OSError, asyncio.TimeoutError)),
        wait=tenacity.wait_random_exponential(multiplier=0.5, max=5),
        stop=tenacity.stop_after_attempt(self.config.connect_attempts),
        before_sleep=_log_retry_warning,
        reraise=True,
    )
    return await retrying(self._open_once)

  async def _open_once(self) -> Any:
    websocket = await asyncio.wait_for(
        self._connector(self.config.url), timeout=self.config.connect_timeout
    )
    logger.info(f"Connected to {self.config.url}")
    return websocket

  async def _open_websocket(self, url: str) -> Any:
    return await websockets.connect(
        url,
        ping_interval=None,  # Application level heartbeat instead
        max_size=MAX_WEBSOCKET_SIZE,
        close_timeout=self.config.close_timeout,
    )

  # ---------------------------------------------------------------------------
  # Requests
  # ---------------------------------------------------------------------------

  async def send(
      self,
      descriptor_name: str,
      value: Mapping[str, Any],
      timeout: Optional[float] = None,
  ) -> Dict[str, Any]:
    """Sends a request and waits for its decoded reply.

    The reply has already been applied to the state cache when this returns.

    Raises:
      SessionNotReady: If the session is not READY. Nothing is transmitted.
      RequestTimeout: If no reply arrives in time.
      ServerError: If the reply carries a non-zero error code.
      SessionClosed: If the session closes while the request is pending.
      EncodeError, UnknownTypeError: If `value` cannot be encoded.
    """
    if self._state != SessionState.READY:
      raise SessionNotReady(
          f"cannot send {descriptor_name} while {self._state.value}"
      )
    return await self._request(
        descriptor_name, value, timeout or self.config.request_timeout
    )

  async def _request(
      self, descriptor_name: str, value: Mapping[str, Any], timeout: float
  ) -> Dict[str, Any]:
    route = self.registry.route(descriptor_name)
    seq = self._client_seq + 1
    frame = self.codec.encode_request_frame(
        descriptor_name, value, seq, self._server_seq
    )
    entry = self._pending.add(seq, descriptor_name, route.reply, dict(value))
    self._client_seq = seq

    websocket = self._websocket
    try:
      if websocket is None:
        raise SessionClosed("no open socket")
      await websocket.send(frame)
    except (ConnectionClosed, WebSocketException, OSError) as e:
      self._pending.pop(seq)
      raise SessionClosed(f"send failed: {e}") from e
    except SessionClosed:
      self._pending.pop(seq)
      raise
    logger.debug(f"-> {descriptor_name} seq={seq}")

    try:
      return await asyncio.wait_for(entry.future, timeout)
    except asyncio.TimeoutError:
      self._pending.pop(seq)
      raise RequestTimeout(descriptor_name, seq, timeout) from None
    except asyncio.CancelledError:
      self._pending.pop(seq)
      raise

  # ---------------------------------------------------------------------------
  # Inbound path
  # ---------------------------------------------------------------------------

  async def _read_loop(self) -> None:
    """Single consumer of the websocket."""
    websocket = self._websocket
    try:
      while True:
        data = await websocket.recv()
        if isinstance(data, str):
          logger.debug(f"Dropping text frame: {data[:80]}")
          continue
        self._dispatch(data)
        if self._kickout is not None:
          reason = self._kickout.get("reason") or "kicked out by server"
          await self._terminate(CLOSE_KICKOUT, reason, by_client=False)
          return
    except asyncio.CancelledError:
      raise
    except ConnectionClosed as e:
      logger.warning(f"Gateway closed the connection: {e}")
      await self._terminate(_close_code(e), str(e) or "connection closed", by_client=False)
    except (WebSocketException, OSError) as e:
      logger.warning(f"Gateway transport error: {e}")
      await self._terminate(CLOSE_ABNORMAL, str(e), by_client=False)

  def _dispatch(self, data: bytes) -> None:
    try:
      meta, body = self.codec.decode_frame(data)
    except ProtocolError as e:
      logger.warning(f"Dropping malformed frame ({len(data)} bytes): {e}")
      return

    server_seq = meta.get("server_seq", 0)
    if server_seq > self._server_seq:
      self._server_seq = server_seq

    message_type = meta.get("message_type", GateMessageType.UNKNOWN)
    if message_type == GateMessageType.RESPONSE:
      self._dispatch_response(meta, body)
    elif message_type == GateMessageType.NOTIFY:
      self._dispatch_notify(meta, body)
    else:
      logger.warning(
          f"Dropping frame of type {message_type} for "
          f"{meta.get('service_name', '')}.{meta.get('method_name', '')}"
      )

  def _dispatch_response(self, meta: Mapping[str, Any], body: bytes) -> None:
    seq = meta.get("client_seq", 0)
    entry = self._pending.pop(seq)
    if entry is None:
      logger.debug(f"Dropping stale response seq={seq} {meta.get('method_name', '')}")
      return
    if entry.future.done():
      return

    error_code = meta.get("error_code", 0)
    if error_code:
      entry.future.set_exception(
          ServerError(error_code, meta.get("error_message", ""), entry.descriptor_name)
      )
      return

    try:
      reply = self.codec.decode(entry.reply_name, body)
    except ProtocolError as e:
      entry.future.set_exception(e)
      return

    try:
      self.state_cache.apply_reply(entry.reply_name, reply, entry.request)
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.warning(f"Cache update failed for {entry.reply_name}: {e}")
    elapsed = time.monotonic() - entry.created_at
    logger.debug(f"<- {entry.reply_name} seq={seq} in {elapsed * 1000:.0f}ms")
    entry.future.set_result(reply)

  def _dispatch_notify(self, meta: Mapping[str, Any], body: bytes) -> None:
    method = meta.get("method_name", "")
    try:
      name = self.registry.notify_descriptor(method)
      value = self.codec.decode(name, body)
    except UnknownTypeError:
      logger.debug(f"Dropping unknown push {method}")
      return
    except ProtocolError as e:
      logger.warning(f"Dropping malformed push {method}: {e}")
      return

    if name == "KickoutNotify":
      logger.warning(f"Kicked out by server: {value.get('reason', '')}")
      self._kickout = value
      return
    self.state_cache.apply_push(name, value)

  # ---------------------------------------------------------------------------
  # Heartbeat
  # ---------------------------------------------------------------------------

  async def _heartbeat_loop(self) -> None:
    """Sends a heartbeat every interval while READY."""
    missed = 0
    while self._state == SessionState.READY:
      await asyncio.sleep(self.config.heartbeat_interval)
      if self._state != SessionState.READY:
        return
      heartbeat = {
          "gid": self.state_cache.profile.gid,
          "client_version": self.config.client_version,
      }
      try:
        await self._request(
            "HeartbeatRequest", heartbeat, self.config.heartbeat_ack_timeout
        )
        missed = 0
      except RequestTimeout:
        missed += 1
        logger.warning(
            f"Heartbeat not acknowledged ({missed}/{self.config.max_missed_heartbeats})"
        )
        if missed >= self.config.max_missed_heartbeats:
          await self._terminate(
              CLOSE_HEARTBEAT_TIMEOUT,
              f"{missed} heartbeats missed",
              by_client=False,
          )
          return
      except ServerError as e:
        # Any answer proves the link is alive
        logger.warning(f"Heartbeat rejected: {e}")
        missed = 0
      except SessionClosed as e:
        # The transport failed under a READY session
        if self._state == SessionState.READY:
          logger.warning(f"Heartbeat send failed: {e}")
          await self._terminate(CLOSE_ABNORMAL, str(e), by_client=False)
        return
      except (SessionError, RequestError) as e:
        logger.debug(f"Heartbeat stopped: {e}")
        return

  # ---------------------------------------------------------------------------
  # Close
  # ---------------------------------------------------------------------------

  async def next_event(self, timeout: Optional[float] = None) -> SessionEvent:
    """Waits for the next lifecycle event.

    Raises:
      asyncio.TimeoutError: If `timeout` elapses first.
    """
    if timeout is None:
      return await self._events.get()
    return await asyncio.wait_for(self._events.get(), timeout)

  async def close(self, reason: str = "client closed", code: int = CLOSE_NORMAL) -> None:
    """Closes the session. Safe to call more than once."""
    await self._terminate(code, reason, by_client=True)

  async def _terminate(self, code: int, reason: str, by_client: bool) -> None:
    if self._state in (SessionState.CLOSING, SessionState.CLOSED):
      return
    was_ready = self._state == SessionState.READY
    if by_client and self._state in (SessionState.CONNECTING,
                                     SessionState.AUTHENTICATING):
      self._login_cancelled = (code, reason)
    self._state = SessionState.CLOSING
    await self._teardown(reason, code)
    self._state = SessionState.CLOSED
    if was_ready:
      logger.info(f"Session closed: {reason} (code {code})")
      self._events.put_nowait(Disconnected(code, reason, by_client))

  async def _teardown(self, reason: str, code: Optional[int]) -> None:
    """Stops background tasks, fails pending requests and closes the socket."""
    current = asyncio.current_task()
    tasks = [
        task for task in (self._reader_task, self._heartbeat_task)
        if task is not None and task is not current and not task.done()
    ]
    for task in tasks:
      task.cancel()
    if tasks:
      await asyncio.wait(tasks, timeout=BACKGROUND_TASK_SHUTDOWN_TIMEOUT)
    self._reader_task = None
    self._heartbeat_task = None

    rejected = self._pending.reject_all(SessionClosed(reason, code))
    if rejected:
      logger.debug(f"Rejected {rejected} pending requests: {reason}")

    websocket, self._websocket = self._websocket, None
    if websocket is not None:
      try:
        await asyncio.wait_for(websocket.close(), timeout=self.config.close_timeout)
      except asyncio.TimeoutError:
        logger.warning(f"WebSocket close timed out after {self.config.close_timeout}s")
      except (WebSocketException, OSError) as e:
        logger.warning(f"Error closing WebSocket: {e}")
