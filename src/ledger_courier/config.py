"""Courier configuration.

Provides repository-side and client-side settings with env var support.
Uses a protocol-based injection pattern so the calling application
can provide its own config implementation.

Channel secrets are never part of configuration; they are passed to each
Channel explicitly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from .channels.counters import CounterStore, InMemoryCounterStore, JsonFileCounterStore
from .channels.types import EpochPolicy
from .notification import (
    DEFAULT_EPOCH_CAPACITY,
    DEFAULT_FALSE_POSITIVE_RATE,
    DEFAULT_MAX_ARCHIVED_EPOCHS,
    FilterAggregator,
)


@runtime_checkable
class CourierConfigProtocol(Protocol):
    """Protocol defining courier configuration requirements.

    Calling applications implement this protocol and register it via
    set_courier_config().
    """

    @property
    def filter_false_positive_rate(self) -> float:
        """Target false-positive rate of each epoch filter."""
        ...

    @property
    def epoch_policy(self) -> EpochPolicy:
        """How the repository decides epoch boundaries."""
        ...

    @property
    def epoch_capacity(self) -> int:
        """Writes per epoch (WRITE_COUNT) or filter sizing (FIXED_INTERVAL)."""
        ...

    @property
    def epoch_interval_seconds(self) -> float:
        """Epoch length under FIXED_INTERVAL."""
        ...


@dataclass
class CourierSettings:
    """Concrete courier configuration.

    Reads from environment variables with COURIER_ prefix.
    Can be instantiated directly for testing.
    """

    # Notification filters (repository side; fixed and public)
    filter_false_positive_rate: float = DEFAULT_FALSE_POSITIVE_RATE
    epoch_policy: EpochPolicy = EpochPolicy.WRITE_COUNT
    epoch_capacity: int = DEFAULT_EPOCH_CAPACITY
    epoch_interval_seconds: float = 60.0
    max_archived_epochs: int = DEFAULT_MAX_ARCHIVED_EPOCHS

    # Client-side counter persistence; in-memory when unset
    counter_directory: str | None = None

    def __post_init__(self) -> None:
        if not 0.0 < self.filter_false_positive_rate < 1.0:
            raise ValueError("filter_false_positive_rate must be in (0, 1)")
        if self.epoch_capacity < 1:
            raise ValueError("epoch_capacity must be at least 1")
        if self.epoch_interval_seconds <= 0:
            raise ValueError("epoch_interval_seconds must be positive")
        self.epoch_policy = EpochPolicy(self.epoch_policy)

    @classmethod
    def from_env(cls) -> CourierSettings:
        """Create settings from environment variables."""
        return cls(
            filter_false_positive_rate=float(
                os.environ.get("COURIER_FILTER_FALSE_POSITIVE_RATE", str(DEFAULT_FALSE_POSITIVE_RATE))
            ),
            epoch_policy=EpochPolicy(os.environ.get("COURIER_EPOCH_POLICY", EpochPolicy.WRITE_COUNT.value)),
            epoch_capacity=int(os.environ.get("COURIER_EPOCH_CAPACITY", str(DEFAULT_EPOCH_CAPACITY))),
            epoch_interval_seconds=float(os.environ.get("COURIER_EPOCH_INTERVAL_SECONDS", "60")),
            max_archived_epochs=int(
                os.environ.get("COURIER_MAX_ARCHIVED_EPOCHS", str(DEFAULT_MAX_ARCHIVED_EPOCHS))
            ),
            counter_directory=os.environ.get("COURIER_COUNTER_DIR") or None,
        )

    def build_aggregator(self) -> FilterAggregator:
        """Filter aggregator for a repository node."""
        return FilterAggregator(
            policy=self.epoch_policy,
            capacity=self.epoch_capacity,
            false_positive_rate=self.filter_false_positive_rate,
            interval_seconds=self.epoch_interval_seconds,
            max_archived_epochs=self.max_archived_epochs,
        )

    def build_counter_store(self) -> CounterStore:
        """Counter store for client channels."""
        if self.counter_directory:
            return JsonFileCounterStore(self.counter_directory)
        return InMemoryCounterStore()


# Global courier config - set by application layer at startup
_courier_config: CourierConfigProtocol | None = None
_core_settings: CourierSettings | None = None


def set_courier_config(config: CourierConfigProtocol) -> None:
    """Set the global courier config.

    Args:
        config: An object implementing CourierConfigProtocol
    """
    global _courier_config
    _courier_config = config


def get_courier_config() -> CourierConfigProtocol:
    """Get the global courier config.

    Raises:
        RuntimeError: If courier config hasn't been set yet.
    """
    if _courier_config is None:
        raise RuntimeError("Courier config not initialized. Call set_courier_config() at application startup.")
    return _courier_config


def clear_courier_config() -> None:
    """Clear the global courier config. For testing."""
    global _courier_config
    _courier_config = None


def get_config() -> CourierSettings:
    """Get courier settings, loaded from the environment on first use."""
    global _core_settings
    if _core_settings is None:
        _core_settings = CourierSettings.from_env()
    return _core_settings


def clear_config_cache() -> None:
    """Clear the config cache. For testing."""
    global _core_settings
    _core_settings = None
