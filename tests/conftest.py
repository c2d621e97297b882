"""Global test fixtures for ledger-courier test suite."""

from __future__ import annotations

import os
from typing import Any

import pytest

from ledger_courier.keys import generate_keypair
from ledger_courier.messenger import Messenger
from ledger_courier.notification import FilterAggregator
from ledger_courier.proofs import ProofGateway
from ledger_courier.repository import InMemoryLedger, RepositoryClient


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "slow: Slow tests (>5s)")


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Any:
    """Remove all COURIER_ environment variables."""
    from ledger_courier.config import clear_config_cache, clear_courier_config

    for key in list(os.environ.keys()):
        if key.startswith("COURIER_"):
            monkeypatch.delenv(key, raising=False)
    clear_config_cache()
    clear_courier_config()
    yield
    clear_config_cache()
    clear_courier_config()


# ============================================================================
# Clock
# ============================================================================


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Key Fixtures
# ============================================================================


@pytest.fixture
def shared_secret() -> bytes:
    """A fixed 32-byte channel secret."""
    return bytes(range(1, 33))


@pytest.fixture
def other_secret() -> bytes:
    """A different secret, for third parties."""
    return bytes(range(101, 133))


@pytest.fixture
def alice() -> bytes:
    """Alice's public key."""
    return generate_keypair()[1]


@pytest.fixture
def bob() -> bytes:
    """Bob's public key."""
    return generate_keypair()[1]


@pytest.fixture
def carol() -> bytes:
    """Carol's public key."""
    return generate_keypair()[1]


# ============================================================================
# Repository Fixtures
# ============================================================================


@pytest.fixture
def gateway() -> ProofGateway:
    return ProofGateway()


@pytest.fixture
def ledger(clock: FakeClock) -> InMemoryLedger:
    """In-memory ledger with small epochs for filter tests."""
    return InMemoryLedger(aggregator=FilterAggregator(capacity=64, clock=clock), clock=clock)


@pytest.fixture
def repository(ledger: InMemoryLedger, gateway: ProofGateway) -> RepositoryClient:
    return RepositoryClient(ledger, gateway)


@pytest.fixture
def messenger(repository: RepositoryClient) -> Messenger:
    return Messenger(repository)
