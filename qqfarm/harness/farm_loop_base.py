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

"""Self-rescheduling background loop shared by the automation loops.

Each loop runs one pass, waits its interval, and runs the next pass. Passes
never overlap: a manual `trigger()` only shortens the current wait, and
`run_pass()` called from outside takes the same lock as the scheduled
passes.
"""

import abc
import asyncio
import dataclasses
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

from qqfarm.harness.farm.config import LoopConfig
from qqfarm.harness.farm_errors import (DecodeError, EncodeError, RequestError,
                                        SessionError)
from qqfarm.harness.farm_session import FarmSession
from qqfarm.harness.farm_state import FarmStateCache

logger = logging.getLogger(__name__)

LOOP_SHUTDOWN_TIMEOUT = 5.0

# Failures confined to one plot, friend, task or item
ENTITY_ERRORS = (RequestError, EncodeError, DecodeError)


@dataclasses.dataclass
class PassReport:
  """What one pass did and what went wrong."""

  loop: str
  started_at: float = dataclasses.field(default_factory=time.monotonic)
  finished_at: Optional[float] = None
  actions: List[str] = dataclasses.field(default_factory=list)
  failures: List[Tuple[str, str]] = dataclasses.field(default_factory=list)
  aborted: Optional[str] = None

  def record_action(self, description: str) -> None:
    self.actions.append(description)

  def record_failure(self, entity: str, error: Exception) -> None:
    self.failures.append((entity, str(error)))

  @property
  def ok(self) -> bool:
    return not self.failures and self.aborted is None

  @property
  def duration(self) -> float:
    end = self.finished_at if self.finished_at is not None else time.monotonic()
    return end - self.started_at


class ScheduledLoop(abc.ABC):
  """Base class of the own-farm, friend, task and warehouse loops."""

  name = "loop"

  def __init__(self, session: FarmSession, config: Optional[LoopConfig] = None):
    self.session = session
    self.config = config or LoopConfig()
    self._task: Optional[asyncio.Task] = None
    self._stopped = True
    self._wake = asyncio.Event()
    self._pass_lock = asyncio.Lock()
    self.passes = 0
    self.last_report: Optional[PassReport] = None

  @property
  def cache(self) -> FarmStateCache:
    return self.session.state_cache

  @property
  @abc.abstractmethod
  def interval(self) -> float:
    """Seconds to wait after a pass before the next one."""

  @property
  def initial_delay(self) -> float:
    return 0.0

  @property
  def running(self) -> bool:
    return self._task is not None and not self._task.done()

  def start(self, initial_delay: Optional[float] = None) -> None:
    """Schedules the first pass. A running loop is left alone."""
    if self.running:
      return
    delay = self.initial_delay if initial_delay is None else initial_delay
    self._stopped = False
    self._wake.clear()
    self._task = asyncio.create_task(self._run(delay), name=f"{self.name}-loop")
    logger.info(f"Started {self.name} loop (every {self.interval:.0f}s)")

  async def stop(self) -> None:
    """Stops scheduling passes and cancels the loop task."""
    self._stopped = True
    self._wake.set()
    task, self._task = self._task, None
    if task is None or task.done() or task is asyncio.current_task():
      return
    task.cancel()
    await asyncio.wait([task], timeout=LOOP_SHUTDOWN_TIMEOUT)
    logger.info(f"Stopped {self.name} loop")

  def trigger(self) -> None:
    """Runs the next pass now, or right after the current one."""
    self._wake.set()

  async def run_pass(self) -> PassReport:
    """Runs one pass, waiting for a running pass to finish first."""
    async with self._pass_lock:
      report = PassReport(self.name)
      try:
        await self._run_pass(report)
      except SessionError as e:
        report.aborted = str(e)
        logger.warning(f"{self.name} pass aborted: {e}")
      report.finished_at = time.monotonic()
      self.passes += 1
      self.last_report = report
      return report

  @abc.abstractmethod
  async def _run_pass(self, report: PassReport) -> None:
    """Does the work of one pass, recording into `report`."""

  async def _run(self, initial_delay: float) -> None:
    if initial_delay > 0:
      await self._sleep(initial_delay)
    while not self._stopped:
      try:
        report = await self.run_pass()
      except asyncio.CancelledError:
        raise
      except Exception:  # pylint: disable=broad-exception-caught
        logger.exception(f"Unexpected error in {self.name} pass")
      else:
        self._log_report(report)
      if self._stopped:
        break
      await self._sleep(self.interval)

  async def _sleep(self, seconds: float) -> None:
    try:
      await asyncio.wait_for(self._wake.wait(), timeout=seconds)
    except asyncio.TimeoutError:
      pass
    self._wake.clear()

  def _log_report(self, report: PassReport) -> None:
    if report.actions:
      logger.info(f"[{self.name}] {'; '.join(report.actions)}")
    for entity, error in report.failures:
      logger.warning(f"[{self.name}] {entity}: {error}")

  async def _command(
      self,
      report: PassReport,
      entity: str,
      descriptor_name: str,
      value: Mapping[str, Any],
      record_failure: bool = True,
  ) -> Optional[Dict[str, Any]]:
    """Sends one request, confining its failure to `entity`.

    Returns:
      The decoded reply, or None if the request failed.

    Raises:
      SessionError: If the session cannot carry requests any more.
    """
    try:
      return await self.session.send(descriptor_name, value)
    except ENTITY_ERRORS as e:
      if record_failure:
        report.record_failure(entity, e)
      else:
        logger.debug(f"[{self.name}] {entity}: {descriptor_name} failed: {e}")
      return None
