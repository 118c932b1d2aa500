"""Farm client configuration.

This package provides the immutable configuration shared by the session
and the automation loops.
"""

from qqfarm.harness.farm.config import (
    DEFAULT_CONFIG,
    FERTILIZER_MODES,
    MIN_INTERVAL_SECONDS,
    NORMAL_FERTILIZER_ID,
    ORGANIC_FERTILIZER_ID,
    PLATFORMS,
    ConnectionConfig,
    FarmBotConfig,
    LoopConfig,
)

__all__ = [
    "DEFAULT_CONFIG",
    "FERTILIZER_MODES",
    "MIN_INTERVAL_SECONDS",
    "NORMAL_FERTILIZER_ID",
    "ORGANIC_FERTILIZER_ID",
    "PLATFORMS",
    "ConnectionConfig",
    "FarmBotConfig",
    "LoopConfig",
]
