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

"""Visits friends' farms to help with chores and steal ripe crops."""

import logging
from typing import Any, Dict, List, Tuple

from qqfarm.harness.farm_errors import ProtocolError, RequestError
from qqfarm.harness.farm_loop_base import PassReport, ScheduledLoop
from qqfarm.harness.farm_state import FriendRef, Plot, PlantStage

logger = logging.getLogger(__name__)


def plan_friend_commands(
    plots: Tuple[Plot, ...], host_gid: int, max_steals: int
) -> List[Tuple[str, str, Dict[str, Any]]]:
  """Lists (label, descriptor, request) commands for a friend's farm.

  Help comes before stealing; at most `max_steals` harvests are planned.
  """
  commands = []
  steals = []
  for plot in plots:
    ids = [plot.index]
    if plot.has_pest:
      commands.append(("pest", "InsecticideRequest", {"land_ids": ids, "host_gid": host_gid}))
    if plot.has_weed:
      commands.append(("weed", "WeedOutRequest", {"land_ids": ids, "host_gid": host_gid}))
    if plot.needs_water:
      commands.append(("water", "WaterLandRequest", {"land_ids": ids, "host_gid": host_gid}))
    if plot.stage == PlantStage.MATURE and plot.stealable:
      steals.append(("steal", "HarvestRequest", {"land_ids": ids, "host_gid": host_gid}))
  return commands + steals[:max_steals]


class FriendPatrolLoop(ScheduledLoop):
  """Walks the friend list once per pass."""

  name = "friends"

  @property
  def interval(self) -> float:
    return self.config.friend_check_interval

  async def _run_pass(self, report: PassReport) -> None:
    if await self._command(report, "friends", "FriendListRequest", {}) is None:
      return

    for friend in self.cache.friends():
      if self.config.skip_idle_friends and not friend.has_work:
        continue
      try:
        await self._patrol(report, friend)
      except (RequestError, ProtocolError) as e:
        report.record_failure(f"friend {friend.gid}", e)

  async def _patrol(self, report: PassReport, friend: FriendRef) -> None:
    entity = f"friend {friend.gid}"
    visit = {"host_gid": friend.gid}
    if await self._command(report, entity, "VisitFriendRequest", visit) is None:
      return

    try:
      snapshot = self.cache.friend(friend.gid)
      plots = snapshot.plots if snapshot is not None else ()
      commands = plan_friend_commands(
          plots, friend.gid, self.config.max_steals_per_friend
      )
      done: Dict[str, int] = {}
      for label, descriptor, value in commands[:self.config.friend_action_budget]:
        if await self._command(report, entity, descriptor, value) is not None:
          done[label] = done.get(label, 0) + 1
      if done:
        summary = ", ".join(f"{label} x{count}" for label, count in done.items())
        report.record_action(f"{friend.name or friend.gid}: {summary}")
    finally:
      if self.session.is_ready:
        await self._command(report, entity, "LeaveFriendRequest", visit)
