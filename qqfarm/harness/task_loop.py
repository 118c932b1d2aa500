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

"""Claims rewards of completed tasks, sharing first when that pays more.

A task id enters the claimed set only when the server confirms the claim,
and the set lives as long as the process, so no task is claimed twice even
if a later task list still reports it unclaimed.
"""

import logging
from typing import Any, Mapping

from qqfarm.harness.farm_loop_base import PassReport, ScheduledLoop
from qqfarm.harness.farm_state import TaskRecord

logger = logging.getLogger(__name__)


class TaskLoop(ScheduledLoop):

  name = "tasks"

  @property
  def interval(self) -> float:
    return self.config.task_check_interval

  def start(self, initial_delay=None) -> None:
    if not self.running:
      self.cache.add_push_listener(self._on_push)
    super().start(initial_delay)

  async def stop(self) -> None:
    self.cache.remove_push_listener(self._on_push)
    await super().stop()

  def _on_push(self, name: str, value: Mapping[str, Any]) -> None:
    del value
    if name == "TaskInfoNotify" and self.cache.claimable_tasks():
      logger.debug("Claimable task pushed, running task pass now")
      self.trigger()

  async def _run_pass(self, report: PassReport) -> None:
    if await self._command(report, "tasks", "TaskInfoRequest", {}) is None:
      return
    for task in self.cache.claimable_tasks():
      await self._claim(report, task)

  async def _claim(self, report: PassReport, task: TaskRecord) -> None:
    if self.cache.is_claimed(task.id):
      return
    entity = f"task {task.id}"

    do_shared = False
    if task.share_eligible:
      reply = await self._command(
          report, entity, "ShareTaskRequest", {"task_id": task.id},
          record_failure=False,
      )
      do_shared = reply is not None and reply.get("success", True)
      logger.debug(f"Share for task {task.id}: {'ok' if do_shared else 'skipped'}")

    claim = {"id": task.id, "do_shared": do_shared}
    if await self._command(report, entity, "ClaimTaskRewardRequest", claim) is None:
      return
    bonus = " (shared)" if do_shared else ""
    report.record_action(f"claimed task {task.id} {task.description}{bonus}".strip())
