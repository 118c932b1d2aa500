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

"""Local mirror of the farm, inventory, tasks and friends.

The session feeds every decoded reply and push into `FarmStateCache`; the
loops only read snapshots. Entities are frozen pydantic models, so a
snapshot handed to a loop never changes under it. Updates replace entities.

Inventory counts carried by replies and pushes are totals, not deltas. When
a Plant, BuyGoods or Sell reply carries no item list, the cache adjusts the
affected item from the request instead.
"""

import enum
import logging
import time
from typing import (Any, Callable, Dict, Iterable, List, Mapping, Optional,
                    Tuple)

from pydantic import BaseModel, ConfigDict, Field

from qqfarm.harness.farm_codec import repeated

logger = logging.getLogger(__name__)

PushListener = Callable[[str, Mapping[str, Any]], None]


class PlantStage(enum.IntEnum):
  EMPTY = 0
  GROWING = 1
  MATURE = 2
  WITHERED = 3


class ItemKind(enum.IntEnum):
  OTHER = 0
  SEED = 1
  FRUIT = 2


def _enum_value(enum_cls, value: Any, default):
  try:
    return enum_cls(value)
  except ValueError:
    return default


# =============================================================================
# Entity Models
# =============================================================================


class FarmEntity(BaseModel):
  model_config = ConfigDict(frozen=True)


class Plot(FarmEntity):
  """One farm slot, own or remote."""

  index: int
  crop_id: Optional[int] = Field(None, description="None when nothing grows")
  crop_name: str = ""
  stage: PlantStage = PlantStage.EMPTY
  needs_water: bool = False
  has_weed: bool = False
  has_pest: bool = False
  planted_at: int = 0
  unlocked: bool = True
  fruit_num: int = 0
  stealable: bool = False

  @classmethod
  def from_land(cls, land: Mapping[str, Any]) -> "Plot":
    """Builds a Plot from a decoded LandInfo dict."""
    plant = land.get("plant") or {}
    stage = _enum_value(PlantStage, plant.get("stage", 0), PlantStage.GROWING)
    crop_id = plant.get("crop_id") or None
    if stage == PlantStage.EMPTY:
      crop_id = None
    return cls(
        index=land["id"],
        crop_id=crop_id,
        crop_name=plant.get("name", ""),
        stage=stage,
        needs_water=plant.get("need_water", False),
        has_weed=plant.get("has_weed", False),
        has_pest=plant.get("has_pest", False),
        planted_at=plant.get("planted_at", 0),
        unlocked=land.get("unlocked", True),
        fruit_num=plant.get("fruit_num", 0),
        stealable=plant.get("stealable", False),
    )

  @property
  def is_empty(self) -> bool:
    return self.stage == PlantStage.EMPTY


class InventoryItem(FarmEntity):
  id: int
  quantity: int = 0
  kind: ItemKind = ItemKind.OTHER

  @classmethod
  def from_item(cls, item: Mapping[str, Any]) -> "InventoryItem":
    return cls(
        id=item["id"],
        quantity=item.get("count", 0),
        kind=_enum_value(ItemKind, item.get("kind", 0), ItemKind.OTHER),
    )

  @property
  def sellable(self) -> bool:
    return self.kind == ItemKind.FRUIT


class TaskRecord(FarmEntity):
  """A game task and whether its reward was collected."""

  id: int
  description: str = ""
  progress: int = 0
  total: int = 0
  unlocked: bool = True
  completed: bool = False
  claimed: bool = False
  share_eligible: bool = False
  share_multiple: int = 0

  @classmethod
  def from_info(cls, info: Mapping[str, Any]) -> "TaskRecord":
    progress = info.get("progress", 0)
    total = info.get("total", 0)
    return cls(
        id=info["id"],
        description=info.get("desc", ""),
        progress=progress,
        total=total,
        unlocked=info.get("is_unlocked", True),
        completed=info.get("is_completed", False) or (total > 0 and progress >= total),
        claimed=info.get("is_claimed", False),
        share_eligible=info.get("can_share", False) or info.get("share_multiple", 0) > 1,
        share_multiple=info.get("share_multiple", 0),
    )

  @property
  def claimable(self) -> bool:
    return self.completed and not self.claimed


class FriendRef(FarmEntity):
  """A friend, the preview from the friend list and the last farm snapshot."""

  gid: int
  name: str = ""
  level: int = 0
  last_visited: Optional[float] = None
  plots: Tuple[Plot, ...] = ()
  steal_num: int = 0
  dry_num: int = 0
  weed_num: int = 0
  pest_num: int = 0

  @property
  def has_work(self) -> bool:
    return any((self.steal_num, self.dry_num, self.weed_num, self.pest_num))


class UserProfile(FarmEntity):
  gid: int = 0
  name: str = ""
  level: int = 0
  exp: int = 0
  gold: int = 0
  server_time_offset: float = Field(
      0.0, description="Server clock minus local clock, in seconds"
  )


class ShopGoods(FarmEntity):
  goods_id: int
  item_id: int = 0
  price: int = 0
  level_required: int = 0
  unlocked: bool = False

  @classmethod
  def from_goods(cls, goods: Mapping[str, Any]) -> "ShopGoods":
    return cls(
        goods_id=goods["goods_id"],
        item_id=goods.get("item_id", 0),
        price=goods.get("price", 0),
        level_required=goods.get("level_required", 0),
        unlocked=goods.get("unlocked", False),
    )


# =============================================================================
# Cache
# =============================================================================


class FarmStateCache:
  """Mutable holder of the latest known game state.

  Only `apply_reply` and `apply_push` write. Readers get tuples of frozen
  entities.
  """

  # Replies whose lands refresh plots of the farm named by request host_gid
  _LAND_REPLIES = frozenset({
      "AllLandsReply", "HarvestReply", "RemovePlantReply", "WaterLandReply",
      "WeedOutReply", "InsecticideReply", "PlantReply", "FertilizeReply",
  })

  def __init__(self):
    self._plots: Dict[int, Plot] = {}
    self._items: Dict[int, InventoryItem] = {}
    self._tasks: Dict[int, TaskRecord] = {}
    self._friends: Dict[int, FriendRef] = {}
    self._shop: Dict[int, ShopGoods] = {}
    self._profile = UserProfile()
    self._claimed_task_ids: set = set()
    self._visiting_gid: Optional[int] = None
    self._push_listeners: List[PushListener] = []

    self._reply_handlers = {
        "LoginReply": self._on_login,
        "HeartbeatReply": self._on_heartbeat,
        "BagReply": self._on_bag,
        "ShopReply": self._on_shop,
        "BuyGoodsReply": self._on_buy,
        "SellReply": self._on_sell,
        "FriendListReply": self._on_friend_list,
        "VisitFriendReply": self._on_visit,
        "LeaveFriendReply": self._on_leave,
        "TaskInfoReply": self._on_task_list,
        "ClaimTaskRewardReply": self._on_claim,
    }
    self._push_handlers = {
        "LandsNotify": self._on_lands_push,
        "ItemNotify": self._on_items_push,
        "TaskInfoNotify": self._on_tasks_push,
        "BasicNotify": self._on_basic_push,
    }

  # ---------------------------------------------------------------------------
  # Writers
  # ---------------------------------------------------------------------------

  def apply_reply(
      self,
      descriptor: str,
      reply: Mapping[str, Any],
      request: Optional[Mapping[str, Any]] = None,
  ) -> None:
    """Folds a confirmed reply into the cache.

    Args:
      descriptor: Reply message name, e.g. "HarvestReply".
      reply: Decoded reply.
      request: The request value that produced the reply.
    """
    request = request or {}
    if descriptor in self._LAND_REPLIES:
      self._on_lands_reply(descriptor, reply, request)
      return
    handler = self._reply_handlers.get(descriptor)
    if handler is not None:
      handler(reply, request)

  def apply_push(self, name: str, value: Mapping[str, Any]) -> None:
    """Folds a server push into the cache and notifies listeners."""
    handler = self._push_handlers.get(name)
    if handler is None:
      logger.debug(f"No cache handler for push {name}")
    else:
      handler(value)
    for listener in list(self._push_listeners):
      try:
        listener(name, value)
      except Exception as e:  # pylint: disable=broad-exception-caught
        logger.warning(f"Push listener failed for {name}: {e}")

  def add_push_listener(self, listener: PushListener) -> None:
    self._push_listeners.append(listener)

  def remove_push_listener(self, listener: PushListener) -> None:
    if listener in self._push_listeners:
      self._push_listeners.remove(listener)

  def clear(self) -> None:
    """Forgets game state. The claimed task ids survive for the process."""
    self._plots.clear()
    self._items.clear()
    self._tasks.clear()
    self._friends.clear()
    self._shop.clear()
    self._profile = UserProfile()
    self._visiting_gid = None

  # ---------------------------------------------------------------------------
  # Readers
  # ---------------------------------------------------------------------------

  @property
  def profile(self) -> UserProfile:
    return self._profile

  def plots(self) -> Tuple[Plot, ...]:
    """Own plots in index order."""
    return tuple(self._plots[i] for i in sorted(self._plots))

  def plot(self, index: int) -> Optional[Plot]:
    return self._plots.get(index)

  def items(self) -> Tuple[InventoryItem, ...]:
    return tuple(self._items[i] for i in sorted(self._items))

  def item(self, item_id: int) -> Optional[InventoryItem]:
    return self._items.get(item_id)

  def seeds(self) -> Tuple[InventoryItem, ...]:
    """Seed items with a positive quantity."""
    return tuple(
        item for item in self.items()
        if item.kind == ItemKind.SEED and item.quantity > 0
    )

  def sellable_items(self) -> Tuple[InventoryItem, ...]:
    return tuple(
        item for item in self.items() if item.sellable and item.quantity > 0
    )

  def shop_goods(self) -> Tuple[ShopGoods, ...]:
    return tuple(self._shop.values())

  def tasks(self) -> Tuple[TaskRecord, ...]:
    return tuple(self._tasks[i] for i in sorted(self._tasks))

  def task(self, task_id: int) -> Optional[TaskRecord]:
    return self._tasks.get(task_id)

  def claimable_tasks(self) -> Tuple[TaskRecord, ...]:
    return tuple(
        task for task in self.tasks()
        if task.claimable and task.id not in self._claimed_task_ids
    )

  def is_claimed(self, task_id: int) -> bool:
    return task_id in self._claimed_task_ids

  @property
  def claimed_task_ids(self) -> frozenset:
    return frozenset(self._claimed_task_ids)

  def friends(self) -> Tuple[FriendRef, ...]:
    """Friends in the order the server listed them."""
    return tuple(self._friends.values())

  def friend(self, gid: int) -> Optional[FriendRef]:
    return self._friends.get(gid)

  @property
  def visiting_gid(self) -> Optional[int]:
    return self._visiting_gid

  def server_now(self) -> float:
    return time.time() + self._profile.server_time_offset

  # ---------------------------------------------------------------------------
  # Reply handlers
  # ---------------------------------------------------------------------------

  def _is_remote(self, host_gid: Optional[int]) -> bool:
    return bool(host_gid) and host_gid != self._profile.gid

  def _update_plots(self, host_gid: Optional[int], lands: Iterable[Mapping[str, Any]],
                    replace: bool = False) -> None:
    plots = [Plot.from_land(land) for land in lands]
    if self._is_remote(host_gid):
      self._update_friend_plots(host_gid, plots, replace)
      return
    if replace:
      self._plots = {}
    for plot in plots:
      self._plots[plot.index] = plot

  def _update_friend_plots(self, gid: int, plots: List[Plot], replace: bool) -> None:
    friend = self._friends.get(gid) or FriendRef(gid=gid)
    if replace:
      merged = {plot.index: plot for plot in plots}
    else:
      merged = {plot.index: plot for plot in friend.plots}
      merged.update((plot.index, plot) for plot in plots)
    self._friends[gid] = friend.model_copy(
        update={"plots": tuple(merged[i] for i in sorted(merged))}
    )

  def _on_lands_reply(self, descriptor: str, reply: Mapping[str, Any],
                      request: Mapping[str, Any]) -> None:
    self._update_plots(
        request.get("host_gid"),
        repeated(reply, "lands"),
        replace=descriptor == "AllLandsReply",
    )
    if "items" in reply:
      self._upsert_items(repeated(reply, "items"))
    elif descriptor == "PlantReply" and "seed_id" in request:
      self._adjust_item(request["seed_id"], -1)
    elif descriptor == "FertilizeReply" and "fertilizer_id" in request:
      self._adjust_item(
          request["fertilizer_id"], -len(repeated(request, "land_ids"))
      )

  def _on_login(self, reply: Mapping[str, Any], request: Mapping[str, Any]) -> None:
    del request
    self._update_profile(reply.get("basic") or {})
    self._sync_clock(reply.get("server_time"))

  def _on_heartbeat(self, reply: Mapping[str, Any], request: Mapping[str, Any]) -> None:
    del request
    self._sync_clock(reply.get("server_time"))

  def _on_bag(self, reply: Mapping[str, Any], request: Mapping[str, Any]) -> None:
    del request
    self._items = {}
    self._upsert_items(repeated(reply, "items"))

  def _on_shop(self, reply: Mapping[str, Any], request: Mapping[str, Any]) -> None:
    del request
    goods = [ShopGoods.from_goods(g) for g in repeated(reply, "goods")]
    self._shop = {g.goods_id: g for g in goods}

  def _on_buy(self, reply: Mapping[str, Any], request: Mapping[str, Any]) -> None:
    if "items" in reply:
      self._upsert_items(repeated(reply, "items"))
    else:
      goods = self._shop.get(request.get("goods_id"))
      if goods is not None:
        self._adjust_item(goods.item_id, request.get("num", 0), ItemKind.SEED)
    if "gold" in reply:
      self._profile = self._profile.model_copy(update={"gold": reply["gold"]})

  def _on_sell(self, reply: Mapping[str, Any], request: Mapping[str, Any]) -> None:
    sold = reply.get("sold_count", request.get("count", 0))
    if "item_id" in request:
      self._adjust_item(request["item_id"], -sold)
    if "gold" in reply:
      self._profile = self._profile.model_copy(update={"gold": reply["gold"]})

  def _on_friend_list(self, reply: Mapping[str, Any], request: Mapping[str, Any]) -> None:
    del request
    friends: Dict[int, FriendRef] = {}
    for info in repeated(reply, "friends"):
      gid = info["gid"]
      if gid == self._profile.gid:
        continue
      preview = info.get("preview") or {}
      known = self._friends.get(gid)
      friends[gid] = FriendRef(
          gid=gid,
          name=info.get("name", ""),
          level=info.get("level", 0),
          last_visited=known.last_visited if known else None,
          plots=known.plots if known else (),
          steal_num=preview.get("steal_num", 0),
          dry_num=preview.get("dry_num", 0),
          weed_num=preview.get("weed_num", 0),
          pest_num=preview.get("pest_num", 0),
      )
    self._friends = friends

  def _on_visit(self, reply: Mapping[str, Any], request: Mapping[str, Any]) -> None:
    gid = reply.get("host_gid") or request.get("host_gid")
    if not gid:
      return
    self._visiting_gid = gid
    self._update_friend_plots(
        gid, [Plot.from_land(land) for land in repeated(reply, "lands")], replace=True
    )
    self._friends[gid] = self._friends[gid].model_copy(
        update={"last_visited": time.time()}
    )

  def _on_leave(self, reply: Mapping[str, Any], request: Mapping[str, Any]) -> None:
    del reply, request
    self._visiting_gid = None

  def _on_task_list(self, reply: Mapping[str, Any], request: Mapping[str, Any]) -> None:
    del request
    self._tasks = {}
    self._upsert_tasks(repeated(reply, "tasks"))

  def _on_claim(self, reply: Mapping[str, Any], request: Mapping[str, Any]) -> None:
    task_id = request.get("id")
    if task_id is None:
      return
    self._claimed_task_ids.add(task_id)
    task = reply.get("task")
    if task:
      record = TaskRecord.from_info(task)
    else:
      record = self._tasks.get(task_id) or TaskRecord(id=task_id, completed=True)
    self._tasks[task_id] = record.model_copy(update={"claimed": True})

  # ---------------------------------------------------------------------------
  # Push handlers
  # ---------------------------------------------------------------------------

  def _on_lands_push(self, value: Mapping[str, Any]) -> None:
    self._update_plots(value.get("host_gid"), repeated(value, "lands"))

  def _on_items_push(self, value: Mapping[str, Any]) -> None:
    self._upsert_items(repeated(value, "items"))

  def _on_tasks_push(self, value: Mapping[str, Any]) -> None:
    self._upsert_tasks(repeated(value, "tasks"))

  def _on_basic_push(self, value: Mapping[str, Any]) -> None:
    self._update_profile(value.get("basic") or {})

  # ---------------------------------------------------------------------------
  # Helpers
  # ---------------------------------------------------------------------------

  def _upsert_items(self, items: Iterable[Mapping[str, Any]]) -> None:
    for raw in items:
      item = InventoryItem.from_item(raw)
      known = self._items.get(item.id)
      if known is not None and "kind" not in raw:
        item = item.model_copy(update={"kind": known.kind})
      self._items[item.id] = item

  def _adjust_item(self, item_id: int, delta: int,
                   kind: ItemKind = ItemKind.OTHER) -> None:
    known = self._items.get(item_id)
    if known is None:
      if delta <= 0:
        return
      known = InventoryItem(id=item_id, quantity=0, kind=kind)
    quantity = max(known.quantity + delta, 0)
    self._items[item_id] = known.model_copy(update={"quantity": quantity})

  def _upsert_tasks(self, tasks: Iterable[Mapping[str, Any]]) -> None:
    for info in tasks:
      record = TaskRecord.from_info(info)
      if record.id in self._claimed_task_ids and not record.claimed:
        record = record.model_copy(update={"claimed": True})
      self._tasks[record.id] = record

  def _update_profile(self, basic: Mapping[str, Any]) -> None:
    if not basic:
      return
    update = {
        key: basic[key] for key in ("gid", "name", "level", "exp", "gold")
        if key in basic
    }
    self._profile = self._profile.model_copy(update=update)

  def _sync_clock(self, server_time: Optional[int]) -> None:
    if not server_time:
      return
    # Server time is reported in milliseconds
    offset = server_time / 1000.0 - time.time()
    self._profile = self._profile.model_copy(update={"server_time_offset": offset})
