"""Configuration constants and settings for the farm client.

This module consolidates all timing constants and tunables into typed,
frozen dataclasses. A configuration is built once (from defaults, the
environment or command-line values) before any loop starts and is handed to
each component by reference; nothing mutates it afterwards.
"""

import dataclasses
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

DEFAULT_GATEWAY_URL = "wss://gate-obt.nqf.qq.com/prod/ws"
DEFAULT_CLIENT_VERSION = "1.6.0.14_20251224"
PLATFORMS = ("qq", "wx")

# Fertiliser applied to freshly planted plots
NORMAL_FERTILIZER_ID = 1011
ORGANIC_FERTILIZER_ID = 1012
FERTILIZER_MODES = ("none", "normal", "organic", "both")

# Intervals given on the command line are floored to this many seconds
MIN_INTERVAL_SECONDS = 1.0


def _env_float(name: str, default: float) -> float:
  return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
  return int(os.getenv(name, str(default)))


@dataclass(frozen=True)
class ConnectionConfig:
  """Gateway connection, request and heartbeat settings."""
  url: str = DEFAULT_GATEWAY_URL
  platform: str = "qq"  # 'qq' or 'wx'
  client_version: str = DEFAULT_CLIENT_VERSION
  os: str = "iOS"

  # Connection timeouts
  connect_timeout: float = 10.0  # Opening the websocket
  connect_attempts: int = 3  # Attempts to open the websocket (not to log in)
  login_timeout: float = 15.0  # Waiting for the login reply
  request_timeout: float = 10.0  # Deadline of every other request
  close_timeout: float = 5.0  # Closing the websocket

  # Heartbeat/keepalive
  heartbeat_interval: float = 25.0  # Between heartbeat requests
  heartbeat_ack_timeout: float = 10.0  # Window for each acknowledgement
  max_missed_heartbeats: int = 3  # Consecutive misses before disconnecting

  # Correlation table
  max_pending_requests: int = 64

  @classmethod
  def from_env(cls) -> 'ConnectionConfig':
    """Create configuration from environment variables."""
    return cls(
        url=os.getenv('QQFARM_GATEWAY_URL', DEFAULT_GATEWAY_URL),
        platform=os.getenv('PLATFORM', 'qq'),
        client_version=os.getenv('QQFARM_CLIENT_VERSION', DEFAULT_CLIENT_VERSION),
        request_timeout=_env_float('QQFARM_REQUEST_TIMEOUT', 10.0),
        heartbeat_interval=_env_float('QQFARM_HEARTBEAT_INTERVAL', 25.0),
        max_missed_heartbeats=_env_int('QQFARM_MAX_MISSED_HEARTBEATS', 3),
    )


@dataclass(frozen=True)
class LoopConfig:
  """Cadence and budgets of the automation loops.

  A zero interval disables the corresponding loop.
  """
  farm_check_interval: float = 10.0  # Wait after an own-farm pass
  friend_check_interval: float = 1.0  # Wait after a friend patrol pass
  task_check_interval: float = 60.0  # Wait after a task pass
  sell_interval: float = 60.0  # Wait after a warehouse pass
  initial_sell_delay: float = 5.0  # First warehouse pass after login

  # Friend patrol budgets
  friend_action_budget: int = 12  # Commands per friend per pass
  max_steals_per_friend: int = 5  # Harvest commands per friend per pass
  skip_idle_friends: bool = True  # Trust the friend list preview counters

  # Own farm
  preferred_seed_id: Optional[int] = None  # Seed item to buy when affordable
  shop_id: int = 2  # Seed shop
  fertilizer: str = "both"  # One of FERTILIZER_MODES

  # The friend patrol has historically been gated on the own-farm interval
  # being non-zero. Set to gate it on its own interval instead.
  gate_friend_patrol_on_friend_interval: bool = False

  @classmethod
  def from_env(cls) -> 'LoopConfig':
    """Create configuration from environment variables."""
    seed = os.getenv('QQFARM_PREFERRED_SEED')
    return cls(
        farm_check_interval=_env_float('INTERVAL', 10.0),
        friend_check_interval=_env_float('FRIEND_INTERVAL', 1.0),
        task_check_interval=_env_float('QQFARM_TASK_INTERVAL', 60.0),
        sell_interval=_env_float('QQFARM_SELL_INTERVAL', 60.0),
        friend_action_budget=_env_int('QQFARM_FRIEND_ACTION_BUDGET', 12),
        max_steals_per_friend=_env_int('QQFARM_MAX_STEALS_PER_FRIEND', 5),
        preferred_seed_id=int(seed) if seed else None,
        fertilizer=os.getenv('QQFARM_FERTILIZER', 'both'),
    )

  @property
  def fertilizer_ids(self) -> Tuple[int, ...]:
    """Fertiliser items to apply after planting, in order."""
    ids = []
    if self.fertilizer in ("normal", "both"):
      ids.append(NORMAL_FERTILIZER_ID)
    if self.fertilizer in ("organic", "both"):
      ids.append(ORGANIC_FERTILIZER_ID)
    return tuple(ids)

  @property
  def friend_patrol_enabled(self) -> bool:
    if self.gate_friend_patrol_on_friend_interval:
      return self.friend_check_interval > 0
    return self.farm_check_interval > 0


@dataclass(frozen=True)
class FarmBotConfig:
  """Root configuration aggregating all sub-configurations."""
  connection: ConnectionConfig = field(default_factory=ConnectionConfig)
  loops: LoopConfig = field(default_factory=LoopConfig)

  @classmethod
  def from_env(cls) -> 'FarmBotConfig':
    """Create complete configuration from environment variables."""
    return cls(
        connection=ConnectionConfig.from_env(),
        loops=LoopConfig.from_env(),
    )

  def with_intervals(
      self,
      farm_seconds: Optional[float] = None,
      friend_seconds: Optional[float] = None,
  ) -> 'FarmBotConfig':
    """Returns a copy with the two user-facing intervals overridden.

    Missing or zero values keep the current interval; given values are
    floored to one second.
    """
    loops = self.loops
    if farm_seconds:
      loops = dataclasses.replace(
          loops, farm_check_interval=max(float(farm_seconds), MIN_INTERVAL_SECONDS)
      )
    if friend_seconds:
      loops = dataclasses.replace(
          loops,
          friend_check_interval=max(float(friend_seconds), MIN_INTERVAL_SECONDS),
      )
    return dataclasses.replace(self, loops=loops)

  def with_platform(self, platform: str) -> 'FarmBotConfig':
    return dataclasses.replace(
        self, connection=dataclasses.replace(self.connection, platform=platform)
    )

  def validate(self) -> None:
    """Validate configuration values are sensible.

    Raises:
        ValueError: If configuration contains invalid values.
    """
    conn = self.connection
    if conn.platform not in PLATFORMS:
      raise ValueError(f"platform must be one of {PLATFORMS}")
    if not conn.url:
      raise ValueError("url must not be empty")
    if conn.connect_timeout <= 0 or conn.login_timeout <= 0:
      raise ValueError("connect and login timeouts must be positive")
    if conn.connect_attempts < 1:
      raise ValueError("connect_attempts must be at least 1")
    if conn.request_timeout <= 0:
      raise ValueError("request_timeout must be positive")
    if conn.heartbeat_interval <= 0 or conn.heartbeat_ack_timeout <= 0:
      raise ValueError("heartbeat interval and ack timeout must be positive")
    if conn.max_missed_heartbeats < 1:
      raise ValueError("max_missed_heartbeats must be at least 1")
    if conn.max_pending_requests < 1:
      raise ValueError("max_pending_requests must be at least 1")

    loops = self.loops
    for name in ("farm_check_interval", "friend_check_interval",
                 "task_check_interval", "sell_interval", "initial_sell_delay"):
      if getattr(loops, name) < 0:
        raise ValueError(f"{name} cannot be negative")
    if loops.friend_action_budget < 1:
      raise ValueError("friend_action_budget must be at least 1")
    if loops.max_steals_per_friend < 0:
      raise ValueError("max_steals_per_friend cannot be negative")
    if loops.fertilizer not in FERTILIZER_MODES:
      raise ValueError(f"fertilizer must be one of {FERTILIZER_MODES}")


# Default configuration instance
DEFAULT_CONFIG = FarmBotConfig()
