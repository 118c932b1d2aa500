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

"""Sells harvested fruit from the bag."""

import logging

from qqfarm.harness.farm_loop_base import PassReport, ScheduledLoop

logger = logging.getLogger(__name__)


class WarehouseLoop(ScheduledLoop):

  name = "warehouse"

  @property
  def interval(self) -> float:
    return self.config.sell_interval

  @property
  def initial_delay(self) -> float:
    return self.config.initial_sell_delay

  async def sell_now(self) -> PassReport:
    """Runs a pass immediately, after any pass already in progress."""
    return await self.run_pass()

  async def _run_pass(self, report: PassReport) -> None:
    if await self._command(report, "bag", "BagRequest", {}) is None:
      return

    gold_before = self.cache.profile.gold
    for item in self.cache.sellable_items():
      sell = {"item_id": item.id, "count": item.quantity}
      reply = await self._command(report, f"item {item.id}", "SellRequest", sell)
      if reply is None:
        continue
      sold = reply.get("sold_count", item.quantity)
      report.record_action(f"sold {sold} x item {item.id}")

    earned = self.cache.profile.gold - gold_before
    if earned > 0:
      logger.info(f"Warehouse pass earned {earned} gold")
