"""Pytest configuration and fixtures for recordops tests."""

import os
from typing import Callable, List

import pytest

from recordops.config import BatchConfig, RetryConfig, StoreConfig
from recordops.core import BatchExecutor, RetryCoordinator, TransactionManager
from recordops.models import BatchRequest, Record
from recordops.persistence import InMemoryStore


@pytest.fixture
def store_config() -> StoreConfig:
    """Accounts need a name; emails are unique."""
    return StoreConfig(
        namespace="test",
        required_fields={"account": ["name"]},
        unique_fields={"account": ["email"]},
    )


@pytest.fixture
def store(store_config) -> InMemoryStore:
    return InMemoryStore(store_config)


@pytest.fixture
def executor(store) -> BatchExecutor:
    return BatchExecutor(store, BatchConfig(max_batch_size=50))


@pytest.fixture
def tm(store) -> TransactionManager:
    return TransactionManager(store)


@pytest.fixture
def coordinator(executor) -> RetryCoordinator:
    return RetryCoordinator(executor, RetryConfig(budget=3, base_delay_ms=0))


@pytest.fixture
def make_account() -> Callable[..., Record]:
    """Build an account record; pass name=None to leave the name out."""

    def _make(name="Acme", **fields) -> Record:
        values = dict(fields)
        if name is not None:
            values["name"] = name
        return Record(record_type="account", fields=values)

    return _make


@pytest.fixture
def inserted(executor, make_account) -> Callable[..., List[Record]]:
    """Insert ``n`` accounts and return them with identities assigned."""

    def _insert(n: int = 3, prefix: str = "Account") -> List[Record]:
        records = [make_account(f"{prefix} {i}") for i in range(n)]
        results = executor.execute(BatchRequest.insert(records))
        assert all(result.success for result in results)
        return records

    return _insert


# Pytest configuration hooks


def pytest_configure(config):
    """Configure pytest environment."""
    os.environ["RECORDOPS_ENV"] = "test"

    config.addinivalue_line("markers", "unit: unit tests that don't require external services")
    config.addinivalue_line("markers", "property: hypothesis property-based tests")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on path."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
