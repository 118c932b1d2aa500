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

"""Harvests, clears, tends, replants and fertilises the player's own plots."""

import enum
import logging
from typing import Any, Dict, Optional, Tuple

from qqfarm.harness.farm_loop_base import PassReport, ScheduledLoop
from qqfarm.harness.farm_state import Plot, PlantStage, ShopGoods

logger = logging.getLogger(__name__)

# A plot never needs more commands than there are distinct actions
MAX_STEPS_PER_PLOT = 6


class FarmAction(enum.Enum):
  """Per-plot actions in priority order."""

  HARVEST = "harvest"
  REMOVE = "remove"
  TREAT_PEST = "treat_pest"
  WEED = "weed"
  WATER = "water"
  PLANT = "plant"
  SKIP = "skip"


def resolve_action(plot: Plot, can_plant: bool = True) -> FarmAction:
  """Picks the most urgent action for a plot.

  Harvest > Remove > Treat-pest > Weed > Water > Plant. A plot that is
  MATURE or WITHERED is never planted.
  """
  if not plot.unlocked:
    return FarmAction.SKIP
  if plot.stage == PlantStage.MATURE:
    return FarmAction.HARVEST
  if plot.stage == PlantStage.WITHERED:
    return FarmAction.REMOVE
  if plot.has_pest:
    return FarmAction.TREAT_PEST
  if plot.has_weed:
    return FarmAction.WEED
  if plot.needs_water:
    return FarmAction.WATER
  if plot.stage == PlantStage.EMPTY and can_plant:
    return FarmAction.PLANT
  return FarmAction.SKIP


class OwnFarmLoop(ScheduledLoop):
  """Keeps every own plot productive."""

  name = "farm"

  def __init__(self, *args, **kwargs):
    super().__init__(*args, **kwargs)
    self._shop_fetched = False
    self._planting_blocked = False

  @property
  def interval(self) -> float:
    return self.config.farm_check_interval

  async def _run_pass(self, report: PassReport) -> None:
    self._shop_fetched = False
    self._planting_blocked = False

    if await self._command(report, "lands", "AllLandsRequest", {}) is None:
      return
    # A stale bag only costs an extra shop visit
    await self._command(report, "bag", "BagRequest", {})

    for plot in self.cache.plots():
      await self._tend(report, plot.index)

  async def _tend(self, report: PassReport, index: int) -> None:
    """Runs actions on one plot until it needs nothing more."""
    plot = self.cache.plot(index)
    for _ in range(MAX_STEPS_PER_PLOT):
      if plot is None:
        return
      action = resolve_action(plot, can_plant=not self._planting_blocked)
      if action == FarmAction.SKIP:
        return

      request = await self._build_request(report, plot, action)
      if request is None:
        return
      descriptor, value = request
      if await self._command(report, f"plot {index}", descriptor, value) is None:
        return
      report.record_action(f"{action.value} plot {index}")
      if action == FarmAction.PLANT:
        await self._fertilize(report, index)

      updated = self.cache.plot(index)
      if updated == plot:
        logger.debug(f"Plot {index} unchanged after {action.value}")
        return
      plot = updated

  async def _build_request(
      self, report: PassReport, plot: Plot, action: FarmAction
  ) -> Optional[Tuple[str, Dict[str, Any]]]:
    gid = self.cache.profile.gid
    land_ids = [plot.index]
    if action == FarmAction.HARVEST:
      return "HarvestRequest", {"land_ids": land_ids, "host_gid": gid, "is_all": True}
    if action == FarmAction.REMOVE:
      return "RemovePlantRequest", {"land_ids": land_ids}
    if action == FarmAction.TREAT_PEST:
      return "InsecticideRequest", {"land_ids": land_ids, "host_gid": gid}
    if action == FarmAction.WEED:
      return "WeedOutRequest", {"land_ids": land_ids, "host_gid": gid}
    if action == FarmAction.WATER:
      return "WaterLandRequest", {"land_ids": land_ids, "host_gid": gid}
    seed_id = await self._ensure_seed(report)
    if seed_id is None:
      return None
    return "PlantRequest", {"land_id": plot.index, "seed_id": seed_id}

  async def _fertilize(self, report: PassReport, index: int) -> None:
    """Applies each configured fertiliser the bag still holds."""
    for fertilizer_id in self.config.fertilizer_ids:
      item = self.cache.item(fertilizer_id)
      if item is None or item.quantity < 1:
        continue
      value = {"land_ids": [index], "fertilizer_id": fertilizer_id}
      if await self._command(report, f"plot {index}", "FertilizeRequest", value) is None:
        continue
      report.record_action(f"fertilize plot {index} with {fertilizer_id}")

  # ---------------------------------------------------------------------------
  # Seeds
  # ---------------------------------------------------------------------------

  def _seed_in_stock(self) -> Optional[int]:
    seeds = self.cache.seeds()
    if not seeds:
      return None
    preferred = self.config.preferred_seed_id
    for seed in seeds:
      if seed.id == preferred:
        return seed.id
    return seeds[0].id

  async def _ensure_seed(self, report: PassReport) -> Optional[int]:
    """Returns a seed to plant, buying some if the bag has none."""
    seed_id = self._seed_in_stock()
    if seed_id is not None or self._planting_blocked:
      return seed_id

    if not self._shop_fetched:
      self._shop_fetched = True
      shop = {"shop_id": self.config.shop_id}
      if await self._command(report, "shop", "ShopRequest", shop) is None:
        self._planting_blocked = True
        return None

    goods = self.best_goods()
    count = self._plots_to_plant()
    if goods is not None and goods.price > 0:
      count = min(count, self.cache.profile.gold // goods.price)
    if goods is None or count < 1:
      logger.info("No affordable seed in the shop, planting skipped this pass")
      self._planting_blocked = True
      return None

    buy = {"goods_id": goods.goods_id, "num": count, "price": goods.price}
    if await self._command(report, f"goods {goods.goods_id}", "BuyGoodsRequest", buy) is None:
      self._planting_blocked = True
      return None
    report.record_action(f"bought {count} of seed {goods.item_id}")

    seed_id = self._seed_in_stock()
    if seed_id is None:
      self._planting_blocked = True
    return seed_id

  def best_goods(self) -> Optional[ShopGoods]:
    """Picks the seed to buy: the preferred one if affordable, else the
    highest level seed the player can use and afford."""
    profile = self.cache.profile
    candidates = [
        goods for goods in self.cache.shop_goods()
        if goods.unlocked and goods.item_id
        and goods.level_required <= profile.level
        and goods.price <= profile.gold
    ]
    if not candidates:
      return None
    for goods in candidates:
      if goods.item_id == self.config.preferred_seed_id:
        return goods
    return max(candidates, key=lambda g: (g.level_required, g.price))

  def _plots_to_plant(self) -> int:
    return sum(
        1 for plot in self.cache.plots()
        if plot.unlocked and plot.stage in (
            PlantStage.EMPTY, PlantStage.MATURE, PlantStage.WITHERED)
    )
