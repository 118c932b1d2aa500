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

"""Wires the session to the four automation loops.

The pilot starts the loops when the session reports a successful login and
stops them when the session fails or drops. It never reconnects; `run()`
returns the terminal event and the caller decides what happens next.

Example usage:
    >>> pilot = FarmPilot(FarmBotConfig.from_env())
    >>> event = await pilot.run(code)
    >>> if isinstance(event, LoginFailed):
    ...   print(event.reason)
"""

import logging
from typing import Optional

from qqfarm.harness.farm.config import FarmBotConfig
from qqfarm.harness.farm_loop_base import PassReport, ScheduledLoop
from qqfarm.harness.farm_schema import SchemaRegistry
from qqfarm.harness.farm_session import (CLOSE_NORMAL, Callback, Connector,
                                         Disconnected, FarmSession,
                                         LoginFailed, LoginSucceeded,
                                         SessionEvent)
from qqfarm.harness.farm_state import FarmStateCache
from qqfarm.harness.friend_patrol_loop import FriendPatrolLoop
from qqfarm.harness.own_farm_loop import OwnFarmLoop
from qqfarm.harness.task_loop import TaskLoop
from qqfarm.harness.warehouse_loop import WarehouseLoop

logger = logging.getLogger(__name__)


class FarmPilot:
  """Owns the cache, the session and the loops of one farm account."""

  def __init__(
      self,
      config: Optional[FarmBotConfig] = None,
      registry: Optional[SchemaRegistry] = None,
      connector: Optional[Connector] = None,
  ):
    self.config = config or FarmBotConfig()
    self.config.validate()
    self.cache = FarmStateCache()
    self.session = FarmSession(
        self.config.connection, registry, self.cache, connector
    )
    loops = self.config.loops
    self.own_farm_loop = OwnFarmLoop(self.session, loops)
    self.friend_patrol_loop = FriendPatrolLoop(self.session, loops)
    self.task_loop = TaskLoop(self.session, loops)
    self.warehouse_loop = WarehouseLoop(self.session, loops)
    self._shutdown_requested = False

  @property
  def loops(self) -> tuple:
    return (self.own_farm_loop, self.friend_patrol_loop, self.task_loop,
            self.warehouse_loop)

  async def run(
      self,
      credential: str,
      on_success: Optional[Callback] = None,
      on_error: Optional[Callback] = None,
  ) -> SessionEvent:
    """Logs in and drives the loops until the session ends.

    Returns:
      The LoginFailed or Disconnected event that ended the run.
    """
    if self._shutdown_requested:
      return Disconnected(CLOSE_NORMAL, "shutdown", by_client=True)
    await self.session.connect(credential, on_success, on_error)
    while True:
      event = await self.session.next_event()
      if isinstance(event, LoginSucceeded):
        self.start_loops()
        continue
      if isinstance(event, LoginFailed):
        logger.error(f"Login failed: {event.reason}")
      elif isinstance(event, Disconnected):
        logger.warning(
            f"Disconnected (code {event.code}, "
            f"{'by client' if event.by_client else 'by server'}): {event.reason}"
        )
      await self.stop_loops()
      return event

  def start_loops(self) -> None:
    self.start_own_farm_loop()
    self.start_friend_patrol_loop()
    self.start_task_loop()
    self.start_warehouse_loop()

  async def stop_loops(self) -> None:
    for loop in self.loops:
      await loop.stop()

  async def shutdown(self) -> None:
    """Stops every loop, then closes the session."""
    self._shutdown_requested = True
    await self.stop_loops()
    await self.session.close("shutdown")

  async def sell_now(self) -> PassReport:
    return await self.warehouse_loop.sell_now()

  # ---------------------------------------------------------------------------
  # Individual loops
  # ---------------------------------------------------------------------------

  def _start_if(self, loop: ScheduledLoop, enabled: bool) -> bool:
    if not enabled:
      logger.info(f"{loop.name} loop disabled")
      return False
    loop.start()
    return True

  def start_own_farm_loop(self) -> bool:
    return self._start_if(self.own_farm_loop, self.config.loops.farm_check_interval > 0)

  async def stop_own_farm_loop(self) -> None:
    await self.own_farm_loop.stop()

  def start_friend_patrol_loop(self) -> bool:
    return self._start_if(self.friend_patrol_loop, self.config.loops.friend_patrol_enabled)

  async def stop_friend_patrol_loop(self) -> None:
    await self.friend_patrol_loop.stop()

  def start_task_loop(self) -> bool:
    return self._start_if(self.task_loop, self.config.loops.task_check_interval > 0)

  async def stop_task_loop(self) -> None:
    await self.task_loop.stop()

  def start_warehouse_loop(self) -> bool:
    return self._start_if(self.warehouse_loop, self.config.loops.sell_interval > 0)

  async def stop_warehouse_loop(self) -> None:
    await self.warehouse_loop.stop()
