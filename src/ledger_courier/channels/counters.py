"""Durable storage for per-channel send and receive counters.

A channel must never reuse a sequence index, so the next local send
counter is saved before an index is handed out. Receive positions are
saved too so that a restarted client resumes where it left off.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .exceptions import CounterCorruptionError

logger = logging.getLogger(__name__)


@dataclass
class CounterState:
    """Persisted counters for one member's view of one channel."""

    # Next local counter this member will allocate
    next_local_counter: int = 0

    # Writer key (hex) -> highest contiguously delivered global index
    last_seen: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "next_local_counter": self.next_local_counter,
            "last_seen": dict(self.last_seen),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CounterState:
        """Create from dictionary.

        Raises:
            CounterCorruptionError: If fields are missing or negative
        """
        try:
            next_local_counter = int(data["next_local_counter"])
            last_seen = {str(k): int(v) for k, v in data.get("last_seen", {}).items()}
        except (KeyError, TypeError, ValueError) as e:
            raise CounterCorruptionError(f"Malformed counter state: {e}") from e

        if next_local_counter < 0 or any(v < -1 for v in last_seen.values()):
            raise CounterCorruptionError("Counter state contains negative positions")

        return cls(next_local_counter=next_local_counter, last_seen=last_seen)


@runtime_checkable
class CounterStore(Protocol):
    """Where channels keep their counters between restarts."""

    def load(self, fingerprint: str) -> CounterState | None:
        """Return saved state, or None for a never-seen channel."""
        ...

    def save(self, fingerprint: str, state: CounterState) -> None:
        """Durably persist state before returning."""
        ...


class InMemoryCounterStore:
    """Process-local counter store (tests and short-lived clients)."""

    def __init__(self) -> None:
        self._states: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def load(self, fingerprint: str) -> CounterState | None:
        with self._lock:
            data = self._states.get(fingerprint)
        return CounterState.from_dict(data) if data is not None else None

    def save(self, fingerprint: str, state: CounterState) -> None:
        with self._lock:
            self._states[fingerprint] = state.to_dict()

    def clear(self) -> None:
        """Forget everything (for testing)."""
        with self._lock:
            self._states.clear()


class JsonFileCounterStore:
    """One JSON file per channel under a directory.

    Writes go to a temporary file that is fsynced and atomically renamed
    over the previous state, so a crash leaves either the old or the new
    counters on disk.
    """

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, fingerprint: str) -> Path:
        if not fingerprint or not all(c in "0123456789abcdef" for c in fingerprint):
            raise ValueError("Counter fingerprint must be lowercase hex")
        return self.directory / f"{fingerprint}.json"

    def load(self, fingerprint: str) -> CounterState | None:
        path = self._path(fingerprint)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CounterCorruptionError(
                f"Unreadable counter file for channel {fingerprint}",
                {"path": str(path), "error": str(e)},
            ) from e
        if not isinstance(data, dict):
            raise CounterCorruptionError(f"Counter file for channel {fingerprint} is not an object")
        return CounterState.from_dict(data)

    def save(self, fingerprint: str, state: CounterState) -> None:
        path = self._path(fingerprint)
        payload = json.dumps(state.to_dict(), sort_keys=True)
        with self._lock:
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{fingerprint}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        logger.debug("Saved counters for channel %s", fingerprint)
