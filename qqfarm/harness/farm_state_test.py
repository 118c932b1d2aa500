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

"""Tests for the farm state cache."""

from absl.testing import absltest

import pydantic

from qqfarm.harness.farm_state import (FarmStateCache, ItemKind, PlantStage,
                                       Plot, TaskRecord)

OWN_GID = 1001


def _logged_in_cache():
  cache = FarmStateCache()
  cache.apply_reply("LoginReply", {
      "basic": {"gid": OWN_GID, "name": "tester", "level": 10, "gold": 500},
  })
  return cache


def _land(index, stage=0, **plant):
  value = {"id": index, "unlocked": True}
  if stage:
    value["plant"] = {"crop_id": 101, "stage": stage, **plant}
  return value


class PlotTest(absltest.TestCase):

  def test_from_land(self):
    plot = Plot.from_land(_land(3, 2, has_pest=True, fruit_num=4, name="carrot"))
    self.assertEqual(plot.index, 3)
    self.assertEqual(plot.stage, PlantStage.MATURE)
    self.assertEqual(plot.crop_id, 101)
    self.assertTrue(plot.has_pest)
    self.assertEqual(plot.fruit_num, 4)

  def test_empty_land_has_no_crop(self):
    plot = Plot.from_land({"id": 0})
    self.assertTrue(plot.is_empty)
    self.assertIsNone(plot.crop_id)

  def test_entities_are_frozen(self):
    plot = Plot.from_land(_land(0))
    with self.assertRaises(pydantic.ValidationError):
      plot.stage = PlantStage.MATURE


class TaskRecordTest(absltest.TestCase):

  def test_progress_completes_task(self):
    task = TaskRecord.from_info({"id": 1, "progress": 3, "total": 3})
    self.assertTrue(task.completed)
    self.assertTrue(task.claimable)

  def test_share_multiple_makes_share_eligible(self):
    self.assertTrue(TaskRecord.from_info({"id": 1, "share_multiple": 2}).share_eligible)
    self.assertFalse(TaskRecord.from_info({"id": 1, "share_multiple": 1}).share_eligible)


class FarmStateCacheTest(absltest.TestCase):

  def test_login_sets_profile_and_clock(self):
    cache = FarmStateCache()
    cache.apply_reply("LoginReply", {
        "basic": {"gid": OWN_GID, "name": "tester", "level": 10},
        "server_time": 1_700_000_000_000,
    })
    self.assertEqual(cache.profile.gid, OWN_GID)
    self.assertEqual(cache.profile.name, "tester")
    self.assertAlmostEqual(cache.server_now(), 1_700_000_000, delta=5)

  def test_all_lands_replaces_own_plots(self):
    cache = _logged_in_cache()
    cache.apply_reply("AllLandsReply", {"lands": [_land(0), _land(1), _land(2)]},
                      {})
    cache.apply_reply("AllLandsReply", {"lands": [_land(1, 1)]}, {})
    self.assertEqual([p.index for p in cache.plots()], [1])
    self.assertEqual(cache.plot(1).stage, PlantStage.GROWING)

  def test_action_reply_updates_only_touched_plots(self):
    cache = _logged_in_cache()
    cache.apply_reply("AllLandsReply", {"lands": [_land(0, 2), _land(1, 1)]}, {})
    cache.apply_reply("HarvestReply", {"lands": [_land(0)]},
                      {"land_ids": [0], "host_gid": OWN_GID})
    self.assertTrue(cache.plot(0).is_empty)
    self.assertEqual(cache.plot(1).stage, PlantStage.GROWING)

  def test_friend_lands_do_not_touch_own_plots(self):
    cache = _logged_in_cache()
    cache.apply_reply("AllLandsReply", {"lands": [_land(0, 1)]}, {})
    cache.apply_reply("VisitFriendReply", {"host_gid": 7, "lands": [_land(0, 2)]},
                      {"host_gid": 7})
    cache.apply_reply("HarvestReply", {"lands": [_land(0, 2, stealable=False)]},
                      {"land_ids": [0], "host_gid": 7})
    self.assertEqual(cache.plot(0).stage, PlantStage.GROWING)
    self.assertEqual(cache.visiting_gid, 7)
    friend = cache.friend(7)
    self.assertEqual(friend.plots[0].stage, PlantStage.MATURE)
    self.assertFalse(friend.plots[0].stealable)
    self.assertIsNotNone(friend.last_visited)
    cache.apply_reply("LeaveFriendReply", {}, {"host_gid": 7})
    self.assertIsNone(cache.visiting_gid)

  def test_bag_replaces_inventory(self):
    cache = _logged_in_cache()
    cache.apply_reply("BagReply", {"items": [
        {"id": 20001, "count": 2, "kind": 1}, {"id": 40001, "count": 5, "kind": 2},
    ]})
    cache.apply_reply("BagReply", {"items": [{"id": 40001, "count": 1, "kind": 2}]})
    self.assertIsNone(cache.item(20001))
    self.assertEqual(cache.item(40001).quantity, 1)

  def test_reply_items_are_totals(self):
    cache = _logged_in_cache()
    cache.apply_reply("BagReply", {"items": [{"id": 40001, "count": 5, "kind": 2}]})
    cache.apply_reply("HarvestReply", {"lands": [_land(0)],
                                       "items": [{"id": 40001, "count": 9}]},
                      {"land_ids": [0]})
    item = cache.item(40001)
    self.assertEqual(item.quantity, 9)
    self.assertEqual(item.kind, ItemKind.FRUIT)

  def test_plant_without_items_consumes_one_seed(self):
    cache = _logged_in_cache()
    cache.apply_reply("BagReply", {"items": [{"id": 20001, "count": 2, "kind": 1}]})
    cache.apply_reply("PlantReply", {"lands": [_land(0, 1)]},
                      {"land_id": 0, "seed_id": 20001})
    self.assertEqual(cache.item(20001).quantity, 1)

  def test_buy_without_items_credits_goods(self):
    cache = _logged_in_cache()
    cache.apply_reply("ShopReply", {"goods": [
        {"goods_id": 1, "item_id": 20001, "price": 10, "unlocked": True},
    ]})
    cache.apply_reply("BuyGoodsReply", {"gold": 470},
                      {"goods_id": 1, "num": 3, "price": 10})
    self.assertEqual(cache.profile.gold, 470)
    self.assertEqual([s.id for s in cache.seeds()], [20001])
    self.assertEqual(cache.item(20001).quantity, 3)

  def test_sell_uses_sold_count(self):
    cache = _logged_in_cache()
    cache.apply_reply("BagReply", {"items": [{"id": 40001, "count": 5, "kind": 2}]})
    cache.apply_reply("SellReply", {"sold_count": 5, "gold": 515},
                      {"item_id": 40001, "count": 5})
    self.assertEqual(cache.item(40001).quantity, 0)
    self.assertEqual(cache.sellable_items(), ())
    self.assertEqual(cache.profile.gold, 515)

  def test_friend_list_skips_self_and_keeps_snapshots(self):
    cache = _logged_in_cache()
    cache.apply_reply("VisitFriendReply", {"host_gid": 7, "lands": [_land(0, 2)]},
                      {"host_gid": 7})
    cache.apply_reply("FriendListReply", {"friends": [
        {"gid": OWN_GID, "name": "me"},
        {"gid": 7, "name": "alice", "preview": {"steal_num": 1}},
        {"gid": 8, "name": "bob"},
    ]})
    self.assertEqual([f.gid for f in cache.friends()], [7, 8])
    self.assertTrue(cache.friend(7).has_work)
    self.assertEqual(len(cache.friend(7).plots), 1)
    self.assertFalse(cache.friend(8).has_work)

  def test_claimed_task_stays_claimed(self):
    cache = _logged_in_cache()
    cache.apply_reply("TaskInfoReply", {"tasks": [
        {"id": 1, "is_completed": True}, {"id": 2, "is_completed": True},
    ]})
    cache.apply_reply("ClaimTaskRewardReply", {}, {"id": 1})
    self.assertTrue(cache.is_claimed(1))
    self.assertEqual([t.id for t in cache.claimable_tasks()], [2])

    # A stale listing that still says unclaimed does not resurrect it
    cache.apply_reply("TaskInfoReply", {"tasks": [{"id": 1, "is_completed": True}]})
    self.assertTrue(cache.task(1).claimed)
    self.assertEqual(cache.claimable_tasks(), ())

    cache.clear()
    self.assertEqual(cache.claimed_task_ids, frozenset({1}))

  def test_pushes_update_state_and_notify_listeners(self):
    cache = _logged_in_cache()
    seen = []
    cache.add_push_listener(lambda name, value: seen.append(name))
    cache.apply_push("LandsNotify", {"lands": [_land(4, 2)]})
    cache.apply_push("ItemNotify", {"items": [{"id": 40001, "count": 2, "kind": 2}]})
    cache.apply_push("BasicNotify", {"basic": {"gold": 42}})
    self.assertEqual(cache.plot(4).stage, PlantStage.MATURE)
    self.assertEqual(cache.item(40001).quantity, 2)
    self.assertEqual(cache.profile.gold, 42)
    self.assertEqual(seen, ["LandsNotify", "ItemNotify", "BasicNotify"])

  def test_failing_listener_does_not_break_others(self):
    cache = _logged_in_cache()
    seen = []

    def broken(name, value):
      raise RuntimeError("boom")

    cache.add_push_listener(broken)
    cache.add_push_listener(lambda name, value: seen.append(name))
    cache.apply_push("TaskInfoNotify", {"tasks": [{"id": 3, "is_completed": True}]})
    self.assertEqual(seen, ["TaskInfoNotify"])
    self.assertEqual(cache.task(3).id, 3)

    cache.remove_push_listener(broken)
    cache.apply_push("ItemNotify", {})
    self.assertEqual(seen, ["TaskInfoNotify", "ItemNotify"])


if __name__ == "__main__":
  absltest.main()
