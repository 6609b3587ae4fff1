"""Persistence layer for recordops.

Provides the abstract store contract the engine drives and an in-memory
implementation for tests and scratch use.
"""

from recordops.persistence.interface import Store
from recordops.persistence.memory_backend import InMemoryStore

__all__ = [
    "Store",
    "InMemoryStore",
]
