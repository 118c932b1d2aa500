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

"""Tests for the gateway session: login, correlation, heartbeat and close."""

import asyncio
import dataclasses
import unittest

from qqfarm.harness.farm.config import ConnectionConfig
from qqfarm.harness.farm_errors import (AuthenticationError, RequestError,
                                        RequestTimeout, ServerError,
                                        SessionClosed, SessionError,
                                        SessionNotReady)
from qqfarm.harness.farm_session import (CLOSE_ABNORMAL,
                                         CLOSE_HEARTBEAT_TIMEOUT,
                                         CLOSE_KICKOUT, CLOSE_NORMAL,
                                         Disconnected, FarmSession,
                                         LoginFailed, LoginSucceeded,
                                         PendingRequestTable, SessionState)
from qqfarm.harness.farm_state import PlantStage
from qqfarm.harness.tests.mock_farm_server import MockFarmServer
from qqfarm.harness.tests.test_helpers import (MATURE, NO_REPLY, PLAYER_GID,
                                               FakeFarmServer, ServerFault,
                                               fast_config, land, wait_until)


def _connection(**overrides) -> ConnectionConfig:
  return dataclasses.replace(fast_config().connection, **overrides)


class TestPendingRequestTable(unittest.IsolatedAsyncioTestCase):
  """Correlation table bookkeeping."""

  async def test_full_table_rejects_new_requests(self):
    table = PendingRequestTable(max_size=2)
    table.add(1, "BagRequest", "BagReply", {})
    table.add(2, "BagRequest", "BagReply", {})
    with self.assertRaises(RequestError):
      table.add(3, "BagRequest", "BagReply", {})
    self.assertEqual(len(table), 2)

  async def test_duplicate_sequence_rejected(self):
    table = PendingRequestTable()
    table.add(1, "BagRequest", "BagReply", {})
    with self.assertRaises(RequestError):
      table.add(1, "ShopRequest", "ShopReply", {})

  async def test_reject_all_fails_every_future_once(self):
    table = PendingRequestTable()
    first = table.add(1, "BagRequest", "BagReply", {})
    second = table.add(2, "ShopRequest", "ShopReply", {})
    self.assertEqual(table.reject_all(SessionClosed("bye")), 2)
    self.assertEqual(len(table), 0)
    self.assertNotIn(1, table)
    for entry in (first, second):
      self.assertIsInstance(entry.future.exception(), SessionClosed)
    self.assertIsNone(table.pop(1))


class TestFarmSessionLogin(unittest.IsolatedAsyncioTestCase):
  """Connect and authenticate."""

  def setUp(self):
    self.server = FakeFarmServer()

  def _session(self, config=None) -> FarmSession:
    return FarmSession(config or _connection(), connector=self.server.connect)

  async def test_login_success(self):
    """A good code reaches READY and reports the profile."""
    session = self._session()
    called = []
    ok = await session.connect("good-code", on_success=lambda: called.append(True))

    self.assertTrue(ok)
    self.assertEqual(called, [True])
    self.assertEqual(session.state, SessionState.READY)
    event = await session.next_event(timeout=1)
    self.assertIsInstance(event, LoginSucceeded)
    self.assertEqual(event.profile.gid, PLAYER_GID)
    self.assertEqual(session.state_cache.profile.name, "tester")

    login = self.server.requests_named("LoginRequest")[0]
    self.assertEqual(login["code"], "good-code")
    self.assertEqual(login["platform"], "qq")
    await session.close()

  async def test_async_success_callback_is_awaited(self):
    session = self._session()
    called = []

    async def on_success():
      called.append(True)

    self.assertTrue(await session.connect("good-code", on_success=on_success))
    self.assertEqual(called, [True])
    await session.close()

  async def test_login_rejected(self):
    """A rejected code yields LoginFailed and on_error with the reason."""
    self.server.world.login_fault = ServerFault(1001, "invalid code")
    session = self._session()
    errors = []
    ok = await session.connect("bad-code", on_error=errors.append)

    self.assertFalse(ok)
    self.assertEqual(session.state, SessionState.CLOSED)
    self.assertEqual(len(errors), 1)
    self.assertIsInstance(errors[0], AuthenticationError)
    self.assertEqual(errors[0].reason, "invalid code")
    self.assertEqual(errors[0].code, 1001)
    event = await session.next_event(timeout=1)
    self.assertEqual(event, LoginFailed("invalid code", 1001))
    self.assertTrue(self.server.websocket.closed)

  async def test_login_timeout(self):
    self.server.on("LoginRequest", lambda value: NO_REPLY)
    session = self._session()
    self.assertFalse(await session.connect("slow-code"))
    event = await session.next_event(timeout=1)
    self.assertIsInstance(event, LoginFailed)
    self.assertIn("timed out", event.reason)
    self.assertEqual(session.pending_count, 0)

  async def test_close_during_login_is_not_a_rejection(self):
    self.server.on("LoginRequest", lambda value: NO_REPLY)
    session = self._session()
    errors = []
    connecting = asyncio.create_task(
        session.connect("good-code", on_error=errors.append)
    )
    await wait_until(lambda: self.server.requests_named("LoginRequest"))

    await session.close("shutdown")
    self.assertFalse(await connecting)
    event = await session.next_event(timeout=1)
    self.assertEqual(event, Disconnected(CLOSE_NORMAL, "shutdown", by_client=True))
    self.assertEqual(errors, [])
    self.assertEqual(session.state, SessionState.CLOSED)
    self.assertTrue(self.server.websocket.closed)

  async def test_connect_retries_socket_open(self):
    """Refused socket opens are retried; the login itself is sent once."""
    self.server.connect_failures = 1
    session = self._session()
    self.assertTrue(await session.connect("good-code"))
    self.assertEqual(len(self.server.requests_named("LoginRequest")), 1)
    await session.close()

  async def test_connect_gives_up_after_attempts(self):
    self.server.connect_failures = 5
    session = self._session(_connection(connect_attempts=1))
    self.assertFalse(await session.connect("good-code"))
    event = await session.next_event(timeout=1)
    self.assertIsInstance(event, LoginFailed)
    self.assertIn("connection failed", event.reason)
    self.assertEqual(self.server.requests, [])

  async def test_connect_twice_rejected(self):
    session = self._session()
    await session.connect("good-code")
    with self.assertRaises(SessionError):
      await session.connect("good-code")
    await session.close()


class TestFarmSessionRequests(unittest.IsolatedAsyncioTestCase):
  """Request/response correlation once logged in."""

  async def asyncSetUp(self):
    self.server = FakeFarmServer()
    self.server.world.set_land(0, MATURE)
    self.session = FarmSession(_connection(), connector=self.server.connect)
    self.assertTrue(await self.session.connect("good-code"))
    await self.session.next_event(timeout=1)

  async def asyncTearDown(self):
    await self.session.close()

  async def test_reply_is_applied_before_send_returns(self):
    reply = await self.session.send("AllLandsRequest", {})
    self.assertEqual(len(reply["lands"]), 1)
    self.assertEqual(self.session.state_cache.plot(0).stage, PlantStage.MATURE)

  async def test_sequence_numbers_increase(self):
    await self.session.send("BagRequest", {})
    await self.session.send("BagRequest", {})
    seqs = [meta["client_seq"] for _, _, meta in self.server.requests]
    self.assertEqual(seqs, [1, 2, 3])
    # The last server sequence seen is echoed back
    self.assertEqual(self.server.requests[-1][2]["server_seq"], 2)
    self.assertEqual(self.session.last_server_seq, 3)

  async def test_server_error(self):
    self.server.on("SellRequest", lambda value: ServerFault(1010, "bad item"))
    with self.assertRaises(ServerError) as ctx:
      await self.session.send("SellRequest", {"item_id": 1, "count": 1})
    self.assertEqual(ctx.exception.code, 1010)
    self.assertEqual(ctx.exception.message, "bad item")
    self.assertTrue(self.session.is_ready)

  async def test_timeout_then_late_reply_is_dropped(self):
    """A request completes exactly once even if its reply arrives late."""
    self.server.on("AllLandsRequest", lambda value: NO_REPLY)
    with self.assertRaises(RequestTimeout):
      await self.session.send("AllLandsRequest", {}, timeout=0.1)
    self.assertEqual(self.session.pending_count, 0)

    self.server.on("AllLandsRequest", self.server.world.all_lands)
    late = self.server.respond(self.server.websocket.sent[-1])
    self.server.websocket.deliver(late)
    await asyncio.sleep(0.05)

    self.assertTrue(self.session.is_ready)
    self.assertIsNone(self.session.state_cache.plot(0))
    reply = await self.session.send("BagRequest", {})
    self.assertEqual(reply, {})

  async def test_malformed_frames_are_dropped(self):
    self.server.websocket.deliver(b"\xff\xff\xff")
    self.server.websocket.deliver("text frame")
    await self.session.send("BagRequest", {})
    self.assertTrue(self.session.is_ready)

  async def test_push_updates_cache(self):
    self.server.push("LandsNotify", {"lands": [land(5, MATURE)]})
    await wait_until(lambda: self.session.state_cache.plot(5) is not None)
    self.assertEqual(self.session.state_cache.plot(5).stage, PlantStage.MATURE)

  async def test_unknown_push_is_ignored(self):
    frame = self.server.codec.encode_frame({
        "service_name": "gamepb.notify", "method_name": "FutureNotify",
        "message_type": 3,
    })
    self.server.websocket.deliver(frame)
    await self.session.send("BagRequest", {})
    self.assertTrue(self.session.is_ready)


class TestFarmSessionClose(unittest.IsolatedAsyncioTestCase):
  """Disconnects from either side."""

  async def asyncSetUp(self):
    self.server = FakeFarmServer()

  async def _logged_in(self, config=None) -> FarmSession:
    session = FarmSession(config or _connection(), connector=self.server.connect)
    self.assertTrue(await session.connect("good-code"))
    self.assertIsInstance(await session.next_event(timeout=1), LoginSucceeded)
    return session

  async def _assert_no_event(self, session):
    with self.assertRaises(asyncio.TimeoutError):
      await session.next_event(timeout=0.2)

  async def test_close_is_idempotent(self):
    session = await self._logged_in()
    await session.close()
    await session.close()
    event = await session.next_event(timeout=1)
    self.assertEqual(event, Disconnected(CLOSE_NORMAL, "client closed", by_client=True))
    await self._assert_no_event(session)
    self.assertEqual(session.state, SessionState.CLOSED)

  async def test_send_after_close_transmits_nothing(self):
    session = await self._logged_in()
    await session.close()
    sent = len(self.server.requests)
    with self.assertRaises(SessionNotReady):
      await session.send("BagRequest", {})
    self.assertEqual(len(self.server.requests), sent)

  async def test_send_before_connect_transmits_nothing(self):
    session = FarmSession(_connection(), connector=self.server.connect)
    with self.assertRaises(SessionNotReady):
      await session.send("BagRequest", {})
    self.assertEqual(self.server.requests, [])

  async def test_close_rejects_pending_requests(self):
    self.server.on("AllLandsRequest", lambda value: NO_REPLY)
    session = await self._logged_in()
    request = asyncio.create_task(session.send("AllLandsRequest", {}, timeout=5))
    await wait_until(lambda: session.pending_count == 1)
    await session.close()
    with self.assertRaises(SessionClosed):
      await request

  async def test_server_drop(self):
    session = await self._logged_in()
    self.server.websocket.drop()
    event = await session.next_event(timeout=1)
    self.assertIsInstance(event, Disconnected)
    self.assertEqual(event.code, CLOSE_ABNORMAL)
    self.assertFalse(event.by_client)

  async def test_kickout(self):
    session = await self._logged_in()
    self.server.push("Kickout", {"reason": "logged in elsewhere"})
    event = await session.next_event(timeout=1)
    self.assertEqual(event, Disconnected(CLOSE_KICKOUT, "logged in elsewhere"))
    self.assertEqual(session.state, SessionState.CLOSED)

  async def test_missed_heartbeats_disconnect_once(self):
    """Consecutive unacknowledged heartbeats close the session exactly once."""
    self.server.on("HeartbeatRequest", lambda value: NO_REPLY)
    session = await self._logged_in(_connection(
        heartbeat_interval=0.05, heartbeat_ack_timeout=0.05
    ))
    event = await session.next_event(timeout=2)
    self.assertEqual(event.code, CLOSE_HEARTBEAT_TIMEOUT)
    self.assertFalse(event.by_client)
    self.assertEqual(len(self.server.requests_named("HeartbeatRequest")), 3)
    await session.close()
    await self._assert_no_event(session)

  async def test_heartbeat_send_failure_closes_session(self):
    session = await self._logged_in(_connection(heartbeat_interval=0.05))
    # Outbound side broken, inbound side still open
    self.server.websocket.closed = True
    event = await session.next_event(timeout=1)
    self.assertEqual(event.code, CLOSE_ABNORMAL)
    self.assertFalse(event.by_client)
    self.assertEqual(session.state, SessionState.CLOSED)
    await self._assert_no_event(session)

  async def test_acknowledged_heartbeats_keep_session(self):
    session = await self._logged_in(_connection(heartbeat_interval=0.05))
    await wait_until(
        lambda: len(self.server.requests_named("HeartbeatRequest")) >= 3
    )
    self.assertTrue(session.is_ready)
    heartbeat = self.server.requests_named("HeartbeatRequest")[0]
    self.assertEqual(heartbeat["gid"], PLAYER_GID)
    await session.close()

  async def test_reconnect_after_close(self):
    session = await self._logged_in()
    await session.close()
    await session.next_event(timeout=1)
    self.assertTrue(await session.connect("good-code"))
    self.assertEqual(len(self.server.sockets), 2)
    # Sequence numbers restart with the new connection
    self.assertEqual(self.server.requests[-1][2]["client_seq"], 1)
    await session.close()


class TestFarmSessionOverWebSocket(unittest.IsolatedAsyncioTestCase):
  """End-to-end over a real localhost websocket."""

  async def asyncSetUp(self):
    self.server = MockFarmServer()
    self.server.backend.world.set_land(0, MATURE)
    await self.server.start()

  async def asyncTearDown(self):
    await self.server.stop()

  async def test_login_request_and_server_close(self):
    session = FarmSession(_connection(url=self.server.url, login_timeout=2,
                                      request_timeout=2))
    self.assertTrue(await session.connect("good-code"))
    self.assertIsInstance(await session.next_event(timeout=2), LoginSucceeded)

    await session.send("AllLandsRequest", {})
    self.assertEqual(session.state_cache.plot(0).stage, PlantStage.MATURE)

    await self.server.push("BasicNotify", {"basic": {"gold": 7}})
    await wait_until(lambda: session.state_cache.profile.gold == 7)

    await self.server.kick_all()
    event = await session.next_event(timeout=2)
    self.assertIsInstance(event, Disconnected)
    self.assertFalse(event.by_client)
    await session.close()


if __name__ == "__main__":
  unittest.main()
